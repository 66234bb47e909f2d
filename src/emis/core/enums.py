"""Enumerations used across the platform."""

from enum import Enum


class BrokerBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"
    POSTGRES = "postgres"


class ServiceName(str, Enum):
    IDENTITY = "identity"
    STUDENT = "student"
    TEACHER = "teacher"
    CHAT = "chat"


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------

class MessageState(str, Enum):
    """Lifecycle of one inbound broker message on the consumer side."""

    RECEIVED = "received"
    PROCESSING = "processing"
    ACKNOWLEDGED = "acknowledged"
    REDELIVERY_PENDING = "redelivery_pending"
    DEAD_LETTERED = "dead_lettered"


class Disposition(str, Enum):
    """What the consumer loop does with a message after routing it."""

    ACK = "ack"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class DeadLetterReason(str, Enum):
    DESERIALIZATION = "deserialization"
    NON_RETRYABLE = "non_retryable"
    RETRIES_EXHAUSTED = "retries_exhausted"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class SubscriptionPlan(str, Enum):
    """Plans in ascending order; ``rank`` is used to forbid downgrades."""

    TRIAL = "Trial"
    BASIC = "Basic"
    STANDARD = "Standard"
    PROFESSIONAL = "Professional"
    ENTERPRISE = "Enterprise"

    @property
    def rank(self) -> int:
        return list(SubscriptionPlan).index(self)


class TenantStatus(str, Enum):
    ACTIVE = "Active"
    SUSPENDED = "Suspended"
    INACTIVE = "Inactive"
    TRIAL = "Trial"


class UserRole(str, Enum):
    SCHOOL_ADMIN = "SchoolAdmin"
    TEACHER = "Teacher"
    PARENT = "Parent"


class UserStatus(str, Enum):
    ACTIVE = "Active"
    PENDING_ACTIVATION = "PendingActivation"
    INACTIVE = "Inactive"


# ---------------------------------------------------------------------------
# School records
# ---------------------------------------------------------------------------

class StudentStatus(str, Enum):
    ACTIVE = "Active"
    DELETED = "Deleted"


class TeacherStatus(str, Enum):
    ACTIVE = "Active"
    DELETED = "Deleted"


class ParentRelationship(str, Enum):
    FATHER = "Father"
    MOTHER = "Mother"
    GUARDIAN = "Guardian"
    OTHER = "Other"


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class ConversationType(str, Enum):
    ONE_TO_ONE = "OneToOne"
    STUDENT_GROUP = "StudentGroup"
    CLASS_GROUP = "ClassGroup"
    TEACHER_GROUP = "TeacherGroup"
    ANNOUNCEMENT_CHANNEL = "AnnouncementChannel"


class ParticipantRole(str, Enum):
    MEMBER = "Member"
    ADMIN = "Admin"
    READ_ONLY = "ReadOnly"
