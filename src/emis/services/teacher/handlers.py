"""Teacher subscriptions: only the tenant topic."""

from __future__ import annotations

from emis.core.enums import ServiceName
from emis.integration.router import SubscriptionTable
from emis.services.provisioning import subscribe_provisioning
from emis.storage.memory import UowFactory


def subscribe(table: SubscriptionTable, uow_factory: UowFactory, *, max_attempts: int = 5) -> None:
    subscribe_provisioning(
        table,
        uow_factory,
        service=ServiceName.TEACHER.value,
        max_attempts=max_attempts,
    )
