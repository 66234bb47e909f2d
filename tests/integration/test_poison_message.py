"""Bad messages are isolated without stopping the partition behind them."""

from __future__ import annotations

import pytest

from emis.bus.broker import partition_for
from emis.core.enums import ConversationType, DeadLetterReason, UserRole
from emis.services.chat import Conversation
from emis.services.identity import User, register_tenant
from emis.services.student import ParentContact, create_student
from emis.services.teacher import create_teacher
from emis.tenancy.context import tenant_scope

pytestmark = pytest.mark.integration


async def _onboard(platform):
    tenant, _ = await register_tenant(
        platform["identity"].uow_factory(),
        name="Sunrise Kindergarten",
        subdomain="sunrise",
        admin_name="Le Thi Hoa",
        admin_phone="0987654321",
    )
    await platform.pump()
    return tenant


@pytest.mark.asyncio
async def test_undecodable_message_is_dead_lettered_and_skipped(platform):
    tenant = await _onboard(platform)
    partition = partition_for(tenant.id, platform.broker.partition_count("emis.student"))
    platform.broker.inject("emis.student", partition, "{not json", key=tenant.id)

    with tenant_scope(tenant.id):
        student = await create_student(
            platform["student"].uow_factory(),
            student_code="S001",
            full_name="Minh Anh",
            parents=(ParentContact("p-1", "Tran Thi Lan", "0901234567"),),
        )
    await platform.pump()

    chat = platform["chat"]
    [letter] = chat.consumer.dead_letters
    assert letter.reason == DeadLetterReason.DESERIALIZATION
    assert letter.raw_value == "{not json"
    assert letter.group == "emis-chat-consumer-group"
    assert await chat.dead_letters.recent("emis.student") == [letter]

    # The message queued behind the poison one still arrived.
    groups = [
        c for c in chat.database.rows(Conversation)
        if c.conversation_type == ConversationType.STUDENT_GROUP
    ]
    assert [g.student_id for g in groups] == [student.id]


@pytest.mark.asyncio
async def test_business_rule_violation_dead_letters_on_first_attempt(platform):
    tenant = await _onboard(platform)

    # Same phone as the school admin already registered in identity.
    with tenant_scope(tenant.id):
        teacher = await create_teacher(
            platform["teacher"].uow_factory(), full_name="Le Thi Hoa", phone_number="0987654321",
        )
    await platform.pump()

    identity = platform["identity"]
    [letter] = identity.consumer.dead_letters
    assert letter.reason == DeadLetterReason.NON_RETRYABLE
    assert letter.attempts == 1
    assert letter.handler == "identity.create_teacher_user"
    assert letter.tenant_id == tenant.id
    assert letter.event_type == "TeacherCreatedIntegrationEvent"
    assert all(u.entity_id != teacher.id for u in identity.database.rows(User))

    # Other consumers of the topic are unaffected.
    assert platform["teacher"].consumer.dead_letters == []


@pytest.mark.asyncio
async def test_transient_failure_is_retried_to_success(platform):
    tenant = await _onboard(platform)
    identity = platform["identity"]
    identity.database.fail_next_commit = ConnectionError("database restarting")

    with tenant_scope(tenant.id):
        teacher = await create_teacher(
            platform["teacher"].uow_factory(), full_name="Nguyen Van Binh", phone_number="0912345678",
        )
    await platform.pump()

    teachers = [u for u in identity.database.rows(User) if u.role == UserRole.TEACHER]
    assert [u.entity_id for u in teachers] == [teacher.id]
    assert identity.consumer.dead_letters == []
    errors = identity.consumer.get_error_counts()
    assert errors["emis.teacher/emis-identity-consumer-group"] == 1
