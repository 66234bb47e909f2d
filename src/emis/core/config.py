"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding
(prefix ``EMIS_``, nested delimiter ``__``, e.g.
``EMIS_BROKER__REDIS_URL``).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from .enums import BrokerBackend, ServiceName, StoreBackend


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class BrokerConfig(BaseModel):
    backend: BrokerBackend = BrokerBackend.MEMORY
    redis_url: str = "redis://localhost:6379/0"
    topic_prefix: str = "emis"
    partitions: int = 4  # Default partitions per topic
    topic_partitions: dict[str, int] = Field(default_factory=dict)
    block_ms: int = 1000
    batch_size: int = 10
    max_stream_length: int = 100_000
    consumer_instance: str = ""  # Stable per-process id; empty: one process per group

    @field_validator("partitions")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("partitions must be >= 1")
        return v


class ConsumerConfig(BaseModel):
    group_id: str = ""  # Empty: derived from the service name
    handler_timeout_seconds: float = 10.0
    shutdown_grace_seconds: float = 15.0
    max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    dead_letter_backend: StoreBackend = StoreBackend.MEMORY


class OutboxConfig(BaseModel):
    poll_interval_seconds: float = 1.0
    batch_size: int = 100
    max_attempts: int = 10
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0


class IdempotencyConfig(BaseModel):
    backend: StoreBackend = StoreBackend.MEMORY
    ttl_seconds: int = 7 * 24 * 3600
    key_prefix: str = "emis:processed:"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"  # "json" | "console"
    metrics_port: int = 9090
    metrics_enabled: bool = False


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level service settings.

    Loaded from TOML config files, overridden by environment variables.
    """

    service: ServiceName = ServiceName.IDENTITY

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    consumer: ConsumerConfig = Field(default_factory=ConsumerConfig)
    outbox: OutboxConfig = Field(default_factory=OutboxConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # Infrastructure
    postgres_url: str = ""  # Empty: in-memory persistence

    model_config = {"env_prefix": "EMIS_", "env_nested_delimiter": "__"}

    @property
    def consumer_group(self) -> str:
        return self.consumer.group_id or f"emis-{self.service.value}-consumer-group"

    def partitions_for(self, topic: str) -> int:
        return self.broker.topic_partitions.get(topic, self.broker.partitions)


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from TOML file + env vars.

    Args:
        config_path: Path to TOML config file (optional).
        overrides: Dict of overrides to apply on top.
    """
    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            import tomli

            with open(path, "rb") as f:
                data = tomli.load(f)

    if overrides:
        data.update(overrides)

    return Settings(**data)
