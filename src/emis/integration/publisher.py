"""Integration event publisher.

``publish(event, tenant_id)`` resolves the event's topic from the static
bindings, serializes it to the envelope, and makes exactly one broker
write keyed by :meth:`IntegrationEvent.ordering_key`.  It never retries:
any broker or serialization failure is raised as :class:`TransportError`
and the caller (the outbox relay) decides when to try again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from emis.bus.broker import IBroker
from emis.core.errors import TenantMismatchError, TransportError, UnregisteredEventType
from emis.observability.metrics import EVENTS_PUBLISHED, PUBLISH_FAILURES

from . import codec
from .events import IntegrationEvent
from .schemas import get_topic_for_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishOutcome:
    event_id: str
    topic: str
    partition: int
    offset: str
    key: str


def message_headers(event: IntegrationEvent) -> dict[str, str]:
    return {
        "event-type": type(event).__name__,
        "event-id": event.event_id,
        "tenant-id": event.tenant_id,
        "ordering-key": event.ordering_key(),
        "timestamp": event.occurred_at.isoformat(),
    }


class IntegrationEventPublisher:
    """Writes integration events to the broker."""

    def __init__(self, broker: IBroker) -> None:
        self._broker = broker

    async def publish(
        self,
        event: IntegrationEvent,
        tenant_id: str | None = None,
    ) -> PublishOutcome:
        """Send *event* to its topic.

        Raises:
            UnregisteredEventType: *event* has no topic binding.
            TenantMismatchError: *tenant_id* disagrees with the event.
            TransportError: Serialization or the broker write failed.
        """
        if tenant_id is not None and tenant_id != event.tenant_id:
            raise TenantMismatchError(
                f"Publishing {type(event).__name__} {event.event_id} for tenant "
                f"{tenant_id!r} but the event belongs to {event.tenant_id!r}"
            )

        topic = get_topic_for_event(event)
        key = event.ordering_key()

        try:
            value = codec.encode(event)
        except UnregisteredEventType:
            raise
        except Exception as exc:
            PUBLISH_FAILURES.labels(topic=topic).inc()
            raise TransportError(
                f"Cannot serialize {type(event).__name__} {event.event_id}: {exc}"
            ) from exc

        try:
            receipt = await self._broker.send(topic, key, value, message_headers(event))
        except Exception as exc:
            PUBLISH_FAILURES.labels(topic=topic).inc()
            raise TransportError(
                f"Broker write to {topic} failed for {event.event_id}: {exc}"
            ) from exc

        EVENTS_PUBLISHED.labels(topic=topic, event_type=type(event).__name__).inc()
        logger.info(
            "Published %s %s to %s[%d]@%s",
            type(event).__name__,
            event.event_id,
            topic,
            receipt.partition,
            receipt.offset,
        )
        return PublishOutcome(
            event_id=event.event_id,
            topic=topic,
            partition=receipt.partition,
            offset=receipt.offset,
            key=key,
        )
