"""Service bootstrap.

Wires one platform service onto the event choreography core: broker,
publisher, outbox relay, unit-of-work factory, subscriptions and
consumer, then runs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import Any

from .bus.broker import IBroker
from .bus.bus import create_broker
from .core.config import Settings, load_settings
from .core.enums import ServiceName, StoreBackend
from .core.errors import ConfigError
from .domain.dispatcher import DomainEventDispatcher
from .integration.consumer import IntegrationEventConsumer
from .integration.dead_letter import (
    IDeadLetterStore,
    InMemoryDeadLetterStore,
    RedisDeadLetterStore,
)
from .integration.idempotency import (
    IIdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
)
from .integration.publisher import IntegrationEventPublisher
from .integration.router import SubscriptionTable
from .observability.logger import setup_logging
from .observability.metrics import start_metrics_server
from .outbox.relay import OutboxRelay
from .outbox.store import IOutboxStore
from .services.catalog import ServiceDefinition, get_service
from .storage.memory import InMemoryDatabase, UowFactory, memory_uow_factory

logger = logging.getLogger(__name__)


@dataclass
class ServiceRuntime:
    """Everything one service process runs."""

    settings: Settings
    service: ServiceDefinition
    broker: IBroker
    database: InMemoryDatabase
    dispatcher: DomainEventDispatcher
    publisher: IntegrationEventPublisher
    relay: OutboxRelay
    uow_factory: UowFactory
    subscriptions: SubscriptionTable
    consumer: IntegrationEventConsumer
    dead_letters: IDeadLetterStore
    idempotency: IIdempotencyStore
    engine: Any = None
    _relay_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def outbox(self) -> IOutboxStore:
        return self.database.outbox

    async def start(self) -> None:
        await self.broker.start()
        for store in (self.dead_letters, self.idempotency):
            connect = getattr(store, "connect", None)
            if connect is not None:
                await connect()
        await self.consumer.start()
        self._relay_task = asyncio.create_task(self.relay.run(), name="outbox-relay")
        logger.info(
            "Service %s running (group %s)",
            self.service.name.value,
            self.subscriptions.group,
        )

    async def stop(self) -> None:
        self.relay.stop()
        await self.consumer.stop()
        if self._relay_task is not None:
            await self._relay_task
            self._relay_task = None
        await self.broker.stop()
        for store in (self.dead_letters, self.idempotency):
            close = getattr(store, "close", None)
            if close is not None:
                await close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Service %s stopped", self.service.name.value)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_session_factory(settings: Settings) -> tuple[Any, Any]:
    if not settings.postgres_url:
        return None, None
    from .storage.postgres import create_engine, create_session_factory

    engine = create_engine(settings.postgres_url)
    return engine, create_session_factory(engine)


def build_dead_letter_store(settings: Settings, sessions: Any = None) -> IDeadLetterStore:
    backend = settings.consumer.dead_letter_backend
    if backend == StoreBackend.REDIS:
        return RedisDeadLetterStore(
            settings.broker.redis_url,
            max_stream_length=settings.broker.max_stream_length,
        )
    if backend == StoreBackend.POSTGRES:
        if sessions is None:
            raise ConfigError("dead_letter_backend=postgres requires postgres_url")
        from .storage.postgres import SqlDeadLetterStore

        return SqlDeadLetterStore(sessions)
    return InMemoryDeadLetterStore()


def build_idempotency_store(settings: Settings) -> IIdempotencyStore:
    if settings.idempotency.backend == StoreBackend.REDIS:
        return RedisIdempotencyStore(
            settings.broker.redis_url,
            group=settings.consumer_group,
            prefix=settings.idempotency.key_prefix,
            ttl_seconds=settings.idempotency.ttl_seconds,
        )
    if settings.idempotency.backend == StoreBackend.POSTGRES:
        raise ConfigError("Idempotency markers support the memory and redis backends only")
    return InMemoryIdempotencyStore()


def build_runtime(
    settings: Settings,
    service: ServiceName | str | None = None,
    *,
    broker: IBroker | None = None,
    database: InMemoryDatabase | None = None,
) -> ServiceRuntime:
    """Assemble a :class:`ServiceRuntime`; nothing is started yet."""
    definition = get_service(service or settings.service)
    if definition.name != settings.service:
        settings = settings.model_copy(update={"service": definition.name})
    engine, sessions = build_session_factory(settings)

    if database is None:
        outbox = None
        if sessions is not None:
            from .storage.postgres import SqlOutboxStore

            outbox = SqlOutboxStore(sessions)
        database = InMemoryDatabase(outbox=outbox)

    broker = broker or create_broker(settings.broker)
    dispatcher = DomainEventDispatcher()
    publisher = IntegrationEventPublisher(broker)
    relay = OutboxRelay(database.outbox, publisher, settings.outbox)
    uow_factory = memory_uow_factory(
        database, translator=definition.translator, dispatcher=dispatcher,
    )

    subscriptions = definition.bind(
        SubscriptionTable(settings.consumer_group),
        uow_factory,
        max_attempts=settings.consumer.max_attempts,
    )
    dead_letters = build_dead_letter_store(settings, sessions)
    idempotency = build_idempotency_store(settings)
    consumer = IntegrationEventConsumer(
        broker,
        subscriptions,
        config=settings.consumer,
        dead_letters=dead_letters,
        idempotency=idempotency,
        batch_size=settings.broker.batch_size,
        block_ms=settings.broker.block_ms,
    )

    return ServiceRuntime(
        settings=settings,
        service=definition,
        broker=broker,
        database=database,
        dispatcher=dispatcher,
        publisher=publisher,
        relay=relay,
        uow_factory=uow_factory,
        subscriptions=subscriptions,
        consumer=consumer,
        dead_letters=dead_letters,
        idempotency=idempotency,
        engine=engine,
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))


async def run(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
    service: str | None = None,
) -> None:
    """Main entry point.  Load config, wire the service, run until signalled."""

    # 1. Load settings
    settings = load_settings(config_path=config_path, overrides=overrides)
    if service:
        settings.service = ServiceName(service)

    # 2. Set up logging and metrics
    setup_logging(settings.observability.log_level, settings.observability.log_format)
    if settings.observability.metrics_enabled:
        start_metrics_server(settings.observability.metrics_port, settings.service.value)

    # 3. Wire and start
    runtime = build_runtime(settings)
    stop = asyncio.Event()
    _install_signal_handlers(stop)
    await runtime.start()

    # 4. Run until SIGINT / SIGTERM
    try:
        await stop.wait()
        logger.info("Shutdown requested")
    finally:
        await runtime.stop()
        logger.info("Shutdown complete")


async def run_relay(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
    service: str | None = None,
) -> None:
    """Run only the outbox relay of a service against its PostgreSQL outbox."""
    settings = load_settings(config_path=config_path, overrides=overrides)
    if service:
        settings.service = ServiceName(service)
    if not settings.postgres_url:
        raise ConfigError("A standalone relay needs postgres_url; the in-memory outbox is per process")

    setup_logging(settings.observability.log_level, settings.observability.log_format)
    runtime = build_runtime(settings)
    stop = asyncio.Event()
    _install_signal_handlers(stop)

    await runtime.broker.start()
    task = asyncio.create_task(runtime.relay.run(), name="outbox-relay")
    try:
        await stop.wait()
    finally:
        runtime.relay.stop()
        await task
        await runtime.broker.stop()
        if runtime.engine is not None:
            await runtime.engine.dispose()
