"""Student domain events with an external contract."""

from __future__ import annotations

from emis.core.enums import ServiceName
from emis.integration.events import (
    ParentInfo,
    StudentCreatedIntegrationEvent,
    StudentDeletedIntegrationEvent,
)
from emis.integration.translator import Translator

from .events import StudentCreated, StudentDeleted

translator = Translator(ServiceName.STUDENT.value)


@translator.register(StudentCreated)
def student_created(event: StudentCreated) -> StudentCreatedIntegrationEvent:
    return StudentCreatedIntegrationEvent(
        occurred_at=event.occurred_at,
        tenant_id=event.tenant_id,
        student_id=event.aggregate_id,
        student_name=event.student_name,
        class_id=event.class_id,
        parents=tuple(
            ParentInfo(
                parent_id=p.parent_id,
                parent_name=p.full_name,
                phone_number=p.phone_number,
                relationship=p.relationship.value,
            )
            for p in event.parents
        ),
        created_by=event.created_by,
    )


@translator.register(StudentDeleted)
def student_deleted(event: StudentDeleted) -> StudentDeletedIntegrationEvent:
    return StudentDeletedIntegrationEvent(
        occurred_at=event.occurred_at,
        tenant_id=event.tenant_id,
        student_id=event.aggregate_id,
        student_name=event.student_name,
    )
