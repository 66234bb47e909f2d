"""Topic → schema registry.

Maps broker topic names to the integration event types that may appear on
them.  The mapping is static and frozen at import time: an event type that
is not listed here is never published and never routed.
"""

from __future__ import annotations

from types import MappingProxyType

from emis.core.errors import UnregisteredEventType

from .events import (
    IntegrationEvent,
    MessageSentIntegrationEvent,
    StudentCreatedIntegrationEvent,
    StudentDeletedIntegrationEvent,
    TeacherCreatedIntegrationEvent,
    TeacherDeletedIntegrationEvent,
    TenantCreatedIntegrationEvent,
    TenantPlanUpgradedIntegrationEvent,
    TenantSuspendedIntegrationEvent,
)

TOPIC_PREFIX = "emis"

TENANTS_TOPIC = f"{TOPIC_PREFIX}.identity.tenants"
STUDENT_TOPIC = f"{TOPIC_PREFIX}.student"
TEACHER_TOPIC = f"{TOPIC_PREFIX}.teacher"
CHAT_MESSAGES_TOPIC = f"{TOPIC_PREFIX}.chat.messages"

# Topic name → event types that can appear on that topic
TOPIC_SCHEMAS: MappingProxyType[str, tuple[type[IntegrationEvent], ...]] = MappingProxyType({
    TENANTS_TOPIC: (
        TenantCreatedIntegrationEvent,
        TenantSuspendedIntegrationEvent,
        TenantPlanUpgradedIntegrationEvent,
    ),
    STUDENT_TOPIC: (
        StudentCreatedIntegrationEvent,
        StudentDeletedIntegrationEvent,
    ),
    TEACHER_TOPIC: (
        TeacherCreatedIntegrationEvent,
        TeacherDeletedIntegrationEvent,
    ),
    CHAT_MESSAGES_TOPIC: (MessageSentIntegrationEvent,),
})

# Flat maps built once from TOPIC_SCHEMAS
EVENT_TYPE_MAP: MappingProxyType[str, type[IntegrationEvent]] = MappingProxyType({
    cls.__name__: cls for schemas in TOPIC_SCHEMAS.values() for cls in schemas
})

_TOPIC_BY_TYPE: MappingProxyType[type[IntegrationEvent], str] = MappingProxyType({
    cls: topic for topic, schemas in TOPIC_SCHEMAS.items() for cls in schemas
})


def get_event_class(event_type_name: str) -> type[IntegrationEvent]:
    """Look up event class by wire type name."""
    try:
        return EVENT_TYPE_MAP[event_type_name]
    except KeyError:
        raise UnregisteredEventType(f"Unknown integration event type: {event_type_name}") from None


def get_topic_for_type(event_type: type[IntegrationEvent]) -> str:
    try:
        return _TOPIC_BY_TYPE[event_type]
    except KeyError:
        raise UnregisteredEventType(
            f"{event_type.__name__} has no topic binding"
        ) from None


def get_topic_for_event(event: IntegrationEvent) -> str:
    """Find the topic a given event is published on."""
    return get_topic_for_type(type(event))


def all_topics() -> list[str]:
    return list(TOPIC_SCHEMAS)
