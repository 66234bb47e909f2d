"""Teacher domain events with an external contract."""

from __future__ import annotations

from emis.core.enums import ServiceName
from emis.integration.events import (
    TeacherCreatedIntegrationEvent,
    TeacherDeletedIntegrationEvent,
)
from emis.integration.translator import Translator

from .events import TeacherCreated, TeacherDeleted

translator = Translator(ServiceName.TEACHER.value)


@translator.register(TeacherCreated)
def teacher_created(event: TeacherCreated) -> TeacherCreatedIntegrationEvent:
    return TeacherCreatedIntegrationEvent(
        occurred_at=event.occurred_at,
        tenant_id=event.tenant_id,
        teacher_id=event.aggregate_id,
        full_name=event.full_name,
        phone_number=event.phone_number,
        email=event.email,
    )


@translator.register(TeacherDeleted)
def teacher_deleted(event: TeacherDeleted) -> TeacherDeletedIntegrationEvent:
    return TeacherDeletedIntegrationEvent(
        occurred_at=event.occurred_at,
        tenant_id=event.tenant_id,
        teacher_id=event.aggregate_id,
    )
