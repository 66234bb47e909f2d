"""Shared fixtures for the emis-events test suite."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from emis.bus.memory_bus import MemoryBroker
from emis.core.config import ConsumerConfig, Settings
from emis.core.enums import ServiceName
from emis.domain.dispatcher import DomainEventDispatcher
from emis.integration.events import (
    MessageSentIntegrationEvent,
    ParentInfo,
    StudentCreatedIntegrationEvent,
    TeacherCreatedIntegrationEvent,
    TenantCreatedIntegrationEvent,
)
from emis.integration.publisher import IntegrationEventPublisher
from emis.main import ServiceRuntime, build_runtime
from emis.storage.memory import InMemoryDatabase

FIXED_TIME = datetime(2026, 1, 5, 8, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------

@pytest.fixture
def tenant_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def other_tenant_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

@pytest.fixture
def broker() -> MemoryBroker:
    return MemoryBroker(default_partitions=4)


@pytest.fixture
def publisher(broker: MemoryBroker) -> IntegrationEventPublisher:
    return IntegrationEventPublisher(broker)


@pytest.fixture
def database() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def dispatcher() -> DomainEventDispatcher:
    return DomainEventDispatcher()


@pytest.fixture
def fast_consumer_config() -> ConsumerConfig:
    """Consumer settings with near-zero backoff for tests."""
    return ConsumerConfig(
        handler_timeout_seconds=1.0,
        shutdown_grace_seconds=0.5,
        max_attempts=3,
        backoff_base_seconds=0.001,
        backoff_max_seconds=0.01,
    )


# ---------------------------------------------------------------------------
# Integration event factories
# ---------------------------------------------------------------------------

def make_tenant_created(tenant_id: str, **overrides) -> TenantCreatedIntegrationEvent:
    defaults = dict(
        tenant_id=tenant_id,
        tenant_name="Sunrise Kindergarten",
        subdomain="sunrise",
        school_admin_id=str(uuid.uuid4()),
        subscription_plan="Trial",
        subscription_expires_at=FIXED_TIME + timedelta(days=30),
        max_users=50,
    )
    defaults.update(overrides)
    return TenantCreatedIntegrationEvent(**defaults)


def make_student_created(tenant_id: str, **overrides) -> StudentCreatedIntegrationEvent:
    defaults = dict(
        tenant_id=tenant_id,
        student_id=str(uuid.uuid4()),
        student_name="Minh Anh",
        class_id=str(uuid.uuid4()),
        parents=(
            ParentInfo(
                parent_id=str(uuid.uuid4()),
                parent_name="Tran Thi Lan",
                phone_number="0901234567",
                relationship="Mother",
            ),
        ),
        created_by="admin",
    )
    defaults.update(overrides)
    return StudentCreatedIntegrationEvent(**defaults)


def make_teacher_created(tenant_id: str, **overrides) -> TeacherCreatedIntegrationEvent:
    defaults = dict(
        tenant_id=tenant_id,
        teacher_id=str(uuid.uuid4()),
        full_name="Nguyen Van Binh",
        phone_number="0912345678",
        email="binh@example.edu",
    )
    defaults.update(overrides)
    return TeacherCreatedIntegrationEvent(**defaults)


def make_message_sent(tenant_id: str, conversation_id: str, **overrides) -> MessageSentIntegrationEvent:
    defaults = dict(
        tenant_id=tenant_id,
        message_id=str(uuid.uuid4()),
        conversation_id=conversation_id,
        sender_id=str(uuid.uuid4()),
        sender_name="Tran Thi Lan",
        content="Hello teacher",
        sent_at=FIXED_TIME,
    )
    defaults.update(overrides)
    return MessageSentIntegrationEvent(**defaults)


# ---------------------------------------------------------------------------
# Whole platform on one in-memory broker
# ---------------------------------------------------------------------------

class Platform:
    """All four services wired onto one shared :class:`MemoryBroker`."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings(
            consumer={"max_attempts": 3, "backoff_base_seconds": 0.001, "backoff_max_seconds": 0.01},
        )
        self.broker = MemoryBroker(default_partitions=4)
        self.runtimes = {
            name: build_runtime(self.settings, name, broker=self.broker) for name in ServiceName
        }

    def __getitem__(self, name: str) -> ServiceRuntime:
        return self.runtimes[ServiceName(name)]

    async def pump(self, max_rounds: int = 50) -> int:
        """Relay every outbox and drain every consumer until nothing moves."""
        total = 0
        for _ in range(max_rounds):
            moved = 0
            for runtime in self.runtimes.values():
                moved += await runtime.relay.run_once()
            for runtime in self.runtimes.values():
                moved += await runtime.consumer.drain()
            if moved == 0:
                break
            total += moved
        return total


@pytest.fixture
def platform() -> Platform:
    return Platform()
