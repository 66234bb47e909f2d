"""Integration event contracts shared between services.

All integration events inherit from :class:`IntegrationEvent` and are
frozen Pydantic models.  Field names are serialized in camelCase and are
part of the cross-service contract: evolve them additively only.

Payloads are deliberately denormalized (names as well as ids) because
consumers must never call back into the publishing service.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from emis.core.ids import new_id, utc_now


class IntegrationEvent(BaseModel):
    """Base for all integration events. Provides identity, time, and tenant."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    event_id: str = Field(default_factory=new_id)
    occurred_at: datetime = Field(default_factory=utc_now)
    tenant_id: str = Field(min_length=1)

    def ordering_key(self) -> str:
        """Broker message key.

        Events from the same tenant share a partition by default.  Event
        types that need finer ordering override this.
        """
        return self.tenant_id


# ===========================================================================
# Topic: emis.identity.tenants
# ===========================================================================

class TenantCreatedIntegrationEvent(IntegrationEvent):
    tenant_name: str
    subdomain: str
    school_admin_id: str
    subscription_plan: str
    subscription_expires_at: datetime
    max_users: int
    connection_string: str | None = None


class TenantSuspendedIntegrationEvent(IntegrationEvent):
    tenant_name: str
    reason: str
    suspended_at: datetime


class TenantPlanUpgradedIntegrationEvent(IntegrationEvent):
    previous_plan: str
    subscription_plan: str
    subscription_expires_at: datetime
    max_users: int


# ===========================================================================
# Topic: emis.student
# ===========================================================================

class ParentInfo(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    parent_id: str
    parent_name: str
    phone_number: str
    relationship: str


class StudentCreatedIntegrationEvent(IntegrationEvent):
    student_id: str
    student_name: str
    class_id: str | None = None
    parents: tuple[ParentInfo, ...] = ()
    created_by: str = ""


class StudentDeletedIntegrationEvent(IntegrationEvent):
    student_id: str
    student_name: str


# ===========================================================================
# Topic: emis.teacher
# ===========================================================================

class TeacherCreatedIntegrationEvent(IntegrationEvent):
    teacher_id: str
    full_name: str
    phone_number: str
    email: str | None = None


class TeacherDeletedIntegrationEvent(IntegrationEvent):
    teacher_id: str


# ===========================================================================
# Topic: emis.chat.messages
# ===========================================================================

class MentionData(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    user_id: str
    user_name: str
    start_index: int
    length: int


class MessageSentIntegrationEvent(IntegrationEvent):
    message_id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    content: str
    sent_at: datetime
    reply_to_message_id: str | None = None
    mentions: tuple[MentionData, ...] = ()
    recipient_user_ids: tuple[str, ...] = ()

    def ordering_key(self) -> str:
        # Messages of one conversation must be applied in send order.
        return self.conversation_id
