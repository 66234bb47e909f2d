"""Property test: integration event envelopes.

Any event the platform can publish decodes back to an equal event, and
arbitrary bytes never crash the decoder with anything but
DeserializationError.
"""

from datetime import datetime, timezone

import pytest
from hypothesis import given, settings, strategies as st

from emis.core.errors import DeserializationError
from emis.integration import codec
from emis.integration.events import (
    MentionData,
    MessageSentIntegrationEvent,
    ParentInfo,
    StudentCreatedIntegrationEvent,
    TenantCreatedIntegrationEvent,
)

ids = st.uuids().map(str)
names = st.text(min_size=1, max_size=40)
moments = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(timezone.utc),
)

tenant_created = st.builds(
    TenantCreatedIntegrationEvent,
    tenant_id=ids,
    tenant_name=names,
    subdomain=st.from_regex(r"[a-z0-9][a-z0-9-]{1,20}[a-z0-9]", fullmatch=True),
    school_admin_id=ids,
    subscription_plan=st.sampled_from(["Trial", "Basic", "Standard", "Professional", "Enterprise"]),
    subscription_expires_at=moments,
    max_users=st.integers(min_value=1, max_value=2_147_483_647),
    connection_string=st.none() | names,
)

student_created = st.builds(
    StudentCreatedIntegrationEvent,
    tenant_id=ids,
    student_id=ids,
    student_name=names,
    class_id=st.none() | ids,
    parents=st.lists(
        st.builds(
            ParentInfo,
            parent_id=ids,
            parent_name=names,
            phone_number=st.from_regex(r"0[0-9]{9}", fullmatch=True),
            relationship=st.sampled_from(["Father", "Mother", "Guardian", "Other"]),
        ),
        max_size=3,
    ).map(tuple),
    created_by=names,
)

message_sent = st.builds(
    MessageSentIntegrationEvent,
    tenant_id=ids,
    message_id=ids,
    conversation_id=ids,
    sender_id=ids,
    sender_name=names,
    content=st.text(min_size=1, max_size=200),
    sent_at=moments,
    reply_to_message_id=st.none() | ids,
    mentions=st.lists(
        st.builds(
            MentionData,
            user_id=ids,
            user_name=names,
            start_index=st.integers(min_value=0, max_value=200),
            length=st.integers(min_value=1, max_value=40),
        ),
        max_size=3,
    ).map(tuple),
    recipient_user_ids=st.lists(ids, max_size=5).map(tuple),
)

any_event = st.one_of(tenant_created, student_created, message_sent)


@given(event=any_event)
@settings(max_examples=150)
def test_decode_inverts_encode(event):
    raw = codec.encode(event)
    assert codec.decode(raw) == event
    assert codec.decode(raw.encode("utf-8")) == event

    info = codec.describe(raw)
    assert info.event_type == type(event).__name__
    assert info.event_id == event.event_id
    assert info.tenant_id == event.tenant_id


@given(raw=st.one_of(st.text(max_size=200), st.binary(max_size=200)))
@settings(max_examples=200)
def test_garbage_only_raises_deserialization_error(raw):
    try:
        codec.decode(raw)
    except DeserializationError:
        pass
    codec.describe(raw)


@given(event=message_sent)
def test_chat_messages_are_keyed_by_conversation(event):
    assert event.ordering_key() == event.conversation_id


@pytest.mark.parametrize("payload", ["{}", "[]", "null", '{"eventType": 5}'])
def test_structurally_wrong_envelopes(payload):
    with pytest.raises(DeserializationError):
        codec.decode(payload)
