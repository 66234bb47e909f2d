"""Identity reactions to the teacher topic.

A teacher created in the teacher service gets a login account here in
``PendingActivation`` until the teacher sets a password.  Deleting the
teacher deactivates that account.
"""

from __future__ import annotations

import asyncio
import logging

from emis.core.enums import UserRole
from emis.core.errors import BusinessRuleViolation, NotFoundError
from emis.integration.events import (
    TeacherCreatedIntegrationEvent,
    TeacherDeletedIntegrationEvent,
)
from emis.integration.retry import ErrorPolicy
from emis.integration.router import SubscriptionTable
from emis.storage.memory import UowFactory

from .model import User

logger = logging.getLogger(__name__)


class CreateTeacherUser:
    def __init__(self, uow_factory: UowFactory) -> None:
        self._uow_factory = uow_factory

    async def __call__(self, event: TeacherCreatedIntegrationEvent, cancel: asyncio.Event) -> None:
        async with self._uow_factory() as uow:
            users = uow.repository(User)
            if await users.find_one(lambda u: u.entity_id == event.teacher_id) is not None:
                logger.info("User for teacher %s already exists", event.teacher_id)
                return
            if await users.find_one(lambda u: u.phone_number == event.phone_number) is not None:
                raise BusinessRuleViolation(
                    f"Phone number of teacher {event.teacher_id} is already registered"
                )
            user = User.create(
                event.tenant_id,
                event.full_name,
                event.phone_number,
                UserRole.TEACHER,
                email=event.email,
                entity_id=event.teacher_id,
            )
            await users.add(user)
            await uow.commit()
        logger.info("Created pending user %s for teacher %s", user.id, event.teacher_id)


class DeactivateTeacherUser:
    def __init__(self, uow_factory: UowFactory) -> None:
        self._uow_factory = uow_factory

    async def __call__(self, event: TeacherDeletedIntegrationEvent, cancel: asyncio.Event) -> None:
        async with self._uow_factory() as uow:
            user = await uow.repository(User).find_one(
                lambda u: u.entity_id == event.teacher_id
            )
            if user is None:
                raise NotFoundError(f"No user for teacher {event.teacher_id}")
            user.deactivate()
            await uow.commit()
        logger.info("Deactivated user %s of deleted teacher %s", user.id, event.teacher_id)


def subscribe(table: SubscriptionTable, uow_factory: UowFactory, *, max_attempts: int = 5) -> None:
    table.subscribe(
        TeacherCreatedIntegrationEvent,
        CreateTeacherUser(uow_factory),
        policy=ErrorPolicy(max_attempts=max_attempts),
        name="identity.create_teacher_user",
    )
    table.subscribe(
        TeacherDeletedIntegrationEvent,
        DeactivateTeacherUser(uow_factory),
        # Nothing to deactivate is a finished job.
        policy=ErrorPolicy(max_attempts=max_attempts, ack_on=(NotFoundError,)),
        name="identity.deactivate_teacher_user",
    )
