"""Domain-to-integration event translation.

Each service owns one :class:`Translator` and registers one explicit
function per domain event type that has an external contract::

    translator = Translator("student")

    @translator.register(StudentCreated)
    def _student_created(event: StudentCreated) -> StudentCreatedIntegrationEvent:
        return StudentCreatedIntegrationEvent(...)

Translation is the only place where internal domain fields meet the wire
contract.  A translator either returns a complete event or raises
:class:`TranslationError`; it never returns a partial event.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from emis.core.errors import TranslationError, UnregisteredEventType
from emis.domain.events import DomainEvent

from .events import IntegrationEvent
from .schemas import get_topic_for_event

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=DomainEvent)
TranslateFn = Callable[[Any], IntegrationEvent]


class Translator:
    """Registry of per-type translation functions for one service."""

    def __init__(self, service: str) -> None:
        self.service = service
        self._functions: dict[type[DomainEvent], TranslateFn] = {}

    def register(
        self, event_type: type[E],
    ) -> Callable[[Callable[[E], IntegrationEvent]], Callable[[E], IntegrationEvent]]:
        """Decorator: bind a translation function to *event_type*."""

        def decorator(fn: Callable[[E], IntegrationEvent]) -> Callable[[E], IntegrationEvent]:
            if event_type in self._functions:
                raise ValueError(
                    f"{self.service}: {event_type.__name__} already has a translator"
                )
            self._functions[event_type] = fn
            return fn

        return decorator

    def handles(self, event_type: type[DomainEvent]) -> bool:
        return event_type in self._functions

    @property
    def registered_types(self) -> list[type[DomainEvent]]:
        return list(self._functions)

    def translate(self, event: DomainEvent) -> IntegrationEvent | None:
        """Build the integration event for *event*.

        Returns ``None`` for domain events that stay internal.

        Raises:
            TranslationError: The mapping failed, produced an unroutable
                event, or produced an event for another tenant.
        """
        fn = self._functions.get(type(event))
        if fn is None:
            return None

        try:
            result = fn(event)
        except TranslationError:
            raise
        except Exception as exc:
            raise TranslationError(
                f"{self.service}: cannot translate {event.event_type} {event.event_id}: {exc}"
            ) from exc

        if not isinstance(result, IntegrationEvent):
            raise TranslationError(
                f"{self.service}: translator for {event.event_type} returned "
                f"{type(result).__name__}"
            )
        try:
            get_topic_for_event(result)
        except UnregisteredEventType as exc:
            raise TranslationError(str(exc)) from exc
        if result.tenant_id != event.tenant_id:
            raise TranslationError(
                f"{self.service}: {type(result).__name__} tenant {result.tenant_id!r} "
                f"does not match domain event tenant {event.tenant_id!r}"
            )

        logger.debug(
            "Translated %s %s -> %s %s",
            event.event_type,
            event.event_id,
            type(result).__name__,
            result.event_id,
        )
        return result
