"""Subscription table and message router for one consuming service.

At startup a service subscribes one handler per integration event type it
cares about, each with an explicit :class:`ErrorPolicy`.  When the
consumer starts, the table is frozen; from then on it is read-only and
shared by every partition worker.

For every inbound message the router:

1. decodes the envelope (failure means dead-letter, never an exception
   into the consumer loop);
2. restores the event's tenant into the tenant context;
3. invokes each handler bound to the event type, in registration order,
   with a bounded timeout and the consumer's cancellation signal;
4. folds the handler outcomes into one :class:`Disposition`.  Any
   dead-letter decision wins over retry, and retry wins over ack.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from emis.bus.broker import BrokerMessage
from emis.core.enums import DeadLetterReason, Disposition
from emis.core.errors import ConfigError, DeserializationError, TenancyError
from emis.observability.metrics import HANDLER_DURATION
from emis.tenancy.context import tenant_scope

from . import codec
from .events import IntegrationEvent
from .idempotency import IIdempotencyStore
from .retry import ErrorPolicy
from .schemas import get_topic_for_event, get_topic_for_type

logger = logging.getLogger(__name__)

# Type alias for async integration event handlers.
IntegrationEventHandler = Callable[[Any, asyncio.Event], Awaitable[None]]


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Subscription:
    event_type: type[IntegrationEvent]
    handler: IntegrationEventHandler
    name: str
    policy: ErrorPolicy
    topic: str


class SubscriptionTable:
    """Static ``event type -> handlers`` bindings for one consumer group."""

    def __init__(self, group: str) -> None:
        self.group = group
        self._pending: dict[type[IntegrationEvent], list[Subscription]] = defaultdict(list)
        self._frozen: MappingProxyType[type[IntegrationEvent], tuple[Subscription, ...]] | None = None

    def subscribe(
        self,
        event_type: type[IntegrationEvent],
        handler: IntegrationEventHandler,
        *,
        policy: ErrorPolicy,
        name: str | None = None,
    ) -> Subscription:
        """Bind *handler* to *event_type*.  Only allowed before :meth:`freeze`."""
        if self._frozen is not None:
            raise ConfigError(
                f"Subscriptions of {self.group} are frozen; cannot add {event_type.__name__}"
            )
        topic = get_topic_for_type(event_type)
        name = name or getattr(handler, "__qualname__", None) or type(handler).__name__
        if any(s.name == name for s in self._pending[event_type]):
            raise ConfigError(f"{name} is already subscribed to {event_type.__name__}")

        subscription = Subscription(
            event_type=event_type,
            handler=handler,
            name=name,
            policy=policy,
            topic=topic,
        )
        self._pending[event_type].append(subscription)
        return subscription

    def freeze(self) -> None:
        if self._frozen is None:
            self._frozen = MappingProxyType(
                {t: tuple(subs) for t, subs in self._pending.items()}
            )

    @property
    def frozen(self) -> bool:
        return self._frozen is not None

    def _bindings(self) -> MappingProxyType[type[IntegrationEvent], tuple[Subscription, ...]]:
        if self._frozen is not None:
            return self._frozen
        return MappingProxyType({t: tuple(subs) for t, subs in self._pending.items()})

    def bindings_for(self, event_type: type[IntegrationEvent]) -> tuple[Subscription, ...]:
        return self._bindings().get(event_type, ())

    @property
    def topics(self) -> list[str]:
        return sorted({s.topic for subs in self._bindings().values() for s in subs})

    def __iter__(self) -> Iterator[Subscription]:
        return iter([s for subs in self._bindings().values() for s in subs])

    def __len__(self) -> int:
        return sum(len(subs) for subs in self._bindings().values())


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HandlerFailure:
    handler: str
    error: BaseException
    disposition: Disposition
    reason: DeadLetterReason | None = None


@dataclass
class RouteResult:
    disposition: Disposition
    event: IntegrationEvent | None = None
    completed: frozenset[str] = frozenset()
    failures: list[HandlerFailure] = field(default_factory=list)

    @property
    def reason(self) -> DeadLetterReason | None:
        for failure in self.failures:
            if failure.disposition == Disposition.DEAD_LETTER:
                return failure.reason
        return None

    @property
    def error_summary(self) -> str:
        return "; ".join(
            f"{f.handler}: {type(f.error).__name__}: {f.error}" for f in self.failures
        )

    @property
    def failed_handler(self) -> str | None:
        return self.failures[0].handler if self.failures else None


class MessageRouter:
    """Decodes one broker message and runs the handlers bound to its type."""

    def __init__(
        self,
        subscriptions: SubscriptionTable,
        *,
        handler_timeout: float = 10.0,
        idempotency: IIdempotencyStore | None = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._timeout = handler_timeout
        self._idempotency = idempotency

    @property
    def subscriptions(self) -> SubscriptionTable:
        return self._subscriptions

    async def route(
        self,
        message: BrokerMessage,
        *,
        attempt: int = 1,
        completed: Iterable[str] = (),
        cancel: asyncio.Event | None = None,
    ) -> RouteResult:
        """Route *message*; handlers named in *completed* are skipped."""
        try:
            event = codec.decode(message.value)
            if get_topic_for_event(event) != message.topic:
                raise DeserializationError(
                    f"{type(event).__name__} is not bound to topic {message.topic}"
                )
        except DeserializationError as exc:
            return self._reject(message, exc, completed)

        bindings = self._subscriptions.bindings_for(type(event))
        if not bindings:
            logger.debug("No handler for %s on %s; acking", type(event).__name__, message.topic)
            return RouteResult(disposition=Disposition.ACK, event=event)

        cancel = cancel or asyncio.Event()
        done = set(completed)
        failures: list[HandlerFailure] = []

        # Handler errors never escape _invoke, so only the scope itself raises here.
        try:
            with tenant_scope(event.tenant_id):
                for binding in bindings:
                    if binding.name in done:
                        continue
                    failure = await self._invoke(binding, event, attempt, cancel)
                    if failure is None:
                        done.add(binding.name)
                    else:
                        failures.append(failure)
        except TenancyError as exc:
            return self._reject(message, exc, completed, event=event)

        if any(f.disposition == Disposition.DEAD_LETTER for f in failures):
            disposition = Disposition.DEAD_LETTER
        elif failures:
            disposition = Disposition.RETRY
        else:
            disposition = Disposition.ACK

        return RouteResult(
            disposition=disposition,
            event=event,
            completed=frozenset(done),
            failures=failures,
        )

    @staticmethod
    def _reject(
        message: BrokerMessage,
        exc: Exception,
        completed: Iterable[str],
        event: IntegrationEvent | None = None,
    ) -> RouteResult:
        """Dead-letter a message no handler can run against."""
        logger.error(
            "Undeliverable message %s/%s@%s: %s",
            message.topic,
            message.partition,
            message.offset,
            exc,
        )
        return RouteResult(
            disposition=Disposition.DEAD_LETTER,
            event=event,
            completed=frozenset(completed),
            failures=[
                HandlerFailure(
                    handler="codec",
                    error=exc,
                    disposition=Disposition.DEAD_LETTER,
                    reason=DeadLetterReason.DESERIALIZATION,
                )
            ],
        )

    async def _invoke(
        self,
        binding: Subscription,
        event: IntegrationEvent,
        attempt: int,
        cancel: asyncio.Event,
    ) -> HandlerFailure | None:
        """Run one handler; return ``None`` when it is done with the event."""
        started = time.monotonic()
        try:
            if self._idempotency is not None and await self._idempotency.is_processed(
                binding.name, event.event_id,
            ):
                logger.info(
                    "Skipping %s for already processed %s %s",
                    binding.name,
                    type(event).__name__,
                    event.event_id,
                )
                return None

            await asyncio.wait_for(binding.handler(event, cancel), timeout=self._timeout)

            if self._idempotency is not None:
                await self._idempotency.mark_processed(binding.name, event.event_id)
            return None

        except Exception as exc:
            disposition = binding.policy.classify(exc, attempt)
            if disposition == Disposition.ACK:
                logger.info(
                    "%s treats %s as handled for %s: %s",
                    binding.name,
                    type(exc).__name__,
                    event.event_id,
                    exc,
                )
                return None

            reason = None
            if disposition == Disposition.DEAD_LETTER:
                reason = (
                    DeadLetterReason.NON_RETRYABLE
                    if isinstance(exc, binding.policy.non_retryable)
                    else DeadLetterReason.RETRIES_EXHAUSTED
                )
            logger.warning(
                "Handler %s failed on %s %s (attempt %d/%d) -> %s: %s",
                binding.name,
                type(event).__name__,
                event.event_id,
                attempt,
                binding.policy.max_attempts,
                disposition.value,
                repr(exc),
            )
            return HandlerFailure(
                handler=binding.name,
                error=exc,
                disposition=disposition,
                reason=reason,
            )
        finally:
            HANDLER_DURATION.labels(handler=binding.name).observe(time.monotonic() - started)
