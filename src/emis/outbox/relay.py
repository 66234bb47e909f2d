"""Outbox relay: drains committed outbox rows to the broker.

Runs beside the request path, never inside it, so a broker outage can
delay notifications but can never fail the command that produced them.

Per row:

* success → ``published``;
* :class:`TransportError` → attempt recorded, next try scheduled with
  exponential backoff plus jitter, and later rows with the same ordering
  key wait behind it;
* attempts exhausted, or a row that can never be published → ``failed``,
  logged at CRITICAL and counted in ``emis_outbox_failed_total`` for
  alerting.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from emis.core.config import OutboxConfig
from emis.core.errors import EmisError, TransportError
from emis.core.ids import utc_now
from emis.integration import codec
from emis.integration.publisher import IntegrationEventPublisher
from emis.integration.retry import backoff_delay
from emis.observability.metrics import OUTBOX_FAILED, OUTBOX_PENDING

from .store import IOutboxStore, OutboxMessage

logger = logging.getLogger(__name__)


class OutboxRelay:
    """Publishes pending outbox rows in order with bounded retries."""

    def __init__(
        self,
        store: IOutboxStore,
        publisher: IntegrationEventPublisher,
        config: OutboxConfig | None = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._config = config or OutboxConfig()
        self._stopping = asyncio.Event()
        self._published = 0
        self._failed = 0

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    async def run_once(self, now: datetime | None = None) -> int:
        """Publish one batch of due rows; return how many were published."""
        now = now or utc_now()
        batch = await self._store.fetch_due(self._config.batch_size, now)
        blocked: set[tuple[str, str]] = set()
        published = 0

        for message in batch:
            if message.ordering_slot in blocked:
                continue
            if await self._relay(message, now):
                published += 1
            else:
                blocked.add(message.ordering_slot)

        OUTBOX_PENDING.set(await self._store.pending_count())
        return published

    async def _relay(self, message: OutboxMessage, now: datetime) -> bool:
        try:
            event = codec.decode(message.payload)
            await self._publisher.publish(event, message.tenant_id)
        except TransportError as exc:
            attempts = message.attempts + 1
            if attempts >= self._config.max_attempts:
                await self._give_up(message, attempts, str(exc))
                return False
            delay = backoff_delay(
                attempts,
                self._config.backoff_base_seconds,
                self._config.backoff_max_seconds,
            )
            await self._store.mark_retry(
                message.message_id, str(exc), now + timedelta(seconds=delay),
            )
            logger.warning(
                "Publish of %s %s failed (attempt %d/%d), retrying in %.1fs: %s",
                message.event_type,
                message.message_id,
                attempts,
                self._config.max_attempts,
                delay,
                exc,
            )
            return False
        except EmisError as exc:
            # Undecodable row or broken contract: retrying cannot help.
            await self._give_up(message, message.attempts + 1, str(exc))
            return False

        await self._store.mark_published(message.message_id, utc_now())
        self._published += 1
        return True

    async def _give_up(self, message: OutboxMessage, attempts: int, error: str) -> None:
        await self._store.mark_failed(message.message_id, error)
        self._failed += 1
        OUTBOX_FAILED.inc()
        logger.critical(
            "Outbox row %s (%s, tenant %s) abandoned after %d attempt(s): %s",
            message.message_id,
            message.event_type,
            message.tenant_id,
            attempts,
            error,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Poll until :meth:`stop` is called."""
        logger.info("Outbox relay started (poll every %.1fs)", self._config.poll_interval_seconds)
        while not self._stopping.is_set():
            try:
                published = await self.run_once()
            except Exception:
                logger.exception("Outbox relay pass failed")
                published = 0
            if published >= self._config.batch_size:
                continue  # Backlog: go again immediately.
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self._config.poll_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox relay stopped")

    def stop(self) -> None:
        self._stopping.set()

    @property
    def published(self) -> int:
        return self._published

    @property
    def failed(self) -> int:
        return self._failed
