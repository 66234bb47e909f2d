"""Tests for service wiring and the CLI."""

from __future__ import annotations

import asyncio

import pytest
from click.testing import CliRunner

from emis.bus.memory_bus import MemoryBroker
from emis.cli import main as cli
from emis.core.config import Settings
from emis.core.enums import ServiceName
from emis.core.errors import ConfigError
from emis.integration.dead_letter import InMemoryDeadLetterStore, RedisDeadLetterStore
from emis.integration.idempotency import InMemoryIdempotencyStore, RedisIdempotencyStore
from emis.main import build_dead_letter_store, build_idempotency_store, build_runtime
from emis.services.catalog import SERVICES, get_service
from emis.services.identity import register_tenant
from emis.services.provisioning import TenantProfile


def _settings(**overrides) -> Settings:
    defaults = {
        "broker": {"block_ms": 10},
        "consumer": {"shutdown_grace_seconds": 0.5, "backoff_base_seconds": 0.001},
        "outbox": {"poll_interval_seconds": 0.01},
    }
    defaults.update(overrides)
    return Settings(**defaults)


class TestCatalog:
    def test_every_service_registered(self):
        assert set(SERVICES) == set(ServiceName)

    def test_unknown_service(self):
        with pytest.raises(ConfigError):
            get_service("billing")


class TestBuildRuntime:
    def test_memory_defaults(self):
        runtime = build_runtime(_settings(), "chat")

        assert runtime.service.name == ServiceName.CHAT
        assert isinstance(runtime.broker, MemoryBroker)
        assert isinstance(runtime.dead_letters, InMemoryDeadLetterStore)
        assert isinstance(runtime.idempotency, InMemoryIdempotencyStore)
        assert runtime.subscriptions.group == "emis-chat-consumer-group"
        assert runtime.consumer.group == "emis-chat-consumer-group"
        assert runtime.engine is None

    def test_redis_stores(self):
        settings = _settings(
            consumer={"dead_letter_backend": "redis"},
            idempotency={"backend": "redis"},
        )
        assert isinstance(build_dead_letter_store(settings), RedisDeadLetterStore)
        assert isinstance(build_idempotency_store(settings), RedisIdempotencyStore)

    def test_postgres_dead_letters_need_url(self):
        with pytest.raises(ConfigError):
            build_dead_letter_store(_settings(consumer={"dead_letter_backend": "postgres"}))

    def test_postgres_idempotency_unsupported(self):
        with pytest.raises(ConfigError):
            build_idempotency_store(_settings(idempotency={"backend": "postgres"}))

    @pytest.mark.asyncio
    async def test_two_services_share_a_broker(self):
        broker = MemoryBroker(default_partitions=2)
        identity = build_runtime(_settings(), "identity", broker=broker)
        student = build_runtime(_settings(), "student", broker=broker)

        tenant, _ = await register_tenant(
            identity.uow_factory(),
            name="Sunrise Kindergarten",
            subdomain="sunrise",
            admin_name="Le Thi Hoa",
            admin_phone="0987654321",
        )

        assert await identity.relay.run_once() == 1
        assert await student.consumer.drain() == 1

        [profile] = student.database.rows(TenantProfile)
        assert profile.tenant_id == tenant.id
        assert profile.max_users == 50

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        runtime = build_runtime(_settings(), "teacher")
        await runtime.start()
        assert runtime.consumer.running
        await asyncio.wait_for(runtime.stop(), timeout=5)
        assert not runtime.consumer.running


class TestCli:
    def test_topics(self):
        result = CliRunner().invoke(cli, ["topics"])
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert "emis.identity.tenants" in lines
        assert "  TenantCreatedIntegrationEvent" in lines
        assert "  MessageSentIntegrationEvent" in lines

    def test_dead_letters_need_a_durable_backend(self, monkeypatch):
        monkeypatch.delenv("EMIS_CONSUMER__DEAD_LETTER_BACKEND", raising=False)
        result = CliRunner().invoke(cli, ["dead-letters", "--topic", "emis.student"])
        assert result.exit_code == 1
        assert "process memory" in result.output

    def test_relay_needs_postgres(self, monkeypatch):
        monkeypatch.delenv("EMIS_POSTGRES_URL", raising=False)
        result = CliRunner().invoke(cli, ["relay", "--service", "student"])
        assert result.exit_code == 1
        assert "postgres_url" in result.output

    def test_run_rejects_unknown_service(self):
        result = CliRunner().invoke(cli, ["run", "--service", "billing"])
        assert result.exit_code == 2
