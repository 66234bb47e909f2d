"""Registry of the platform services the runtime can host."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from types import MappingProxyType

from emis.core.enums import ServiceName
from emis.core.errors import ConfigError
from emis.integration.router import SubscriptionTable
from emis.integration.translator import Translator
from emis.storage.memory import UowFactory

from . import chat, identity, student, teacher

SubscribeFn = Callable[..., None]


@dataclass(frozen=True)
class ServiceDefinition:
    name: ServiceName
    translator: Translator
    subscribe: SubscribeFn

    def bind(
        self,
        table: SubscriptionTable,
        uow_factory: UowFactory,
        *,
        max_attempts: int = 5,
    ) -> SubscriptionTable:
        self.subscribe(table, uow_factory, max_attempts=max_attempts)
        return table


SERVICES: MappingProxyType[ServiceName, ServiceDefinition] = MappingProxyType(
    {
        ServiceName.IDENTITY: ServiceDefinition(ServiceName.IDENTITY, identity.translator, identity.subscribe),
        ServiceName.STUDENT: ServiceDefinition(ServiceName.STUDENT, student.translator, student.subscribe),
        ServiceName.TEACHER: ServiceDefinition(ServiceName.TEACHER, teacher.translator, teacher.subscribe),
        ServiceName.CHAT: ServiceDefinition(ServiceName.CHAT, chat.translator, chat.subscribe),
    }
)


def get_service(name: ServiceName | str) -> ServiceDefinition:
    try:
        return SERVICES[ServiceName(name)]
    except ValueError as exc:
        raise ConfigError(
            f"Unknown service {name!r}; expected one of {[s.value for s in ServiceName]}"
        ) from exc
