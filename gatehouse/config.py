"""
Configuration models.

All settings have defaults suitable for a single worker process. They can be
overridden in code or from environment variables::

    GATEHOUSE_DATABASE_URL=postgresql+asyncpg://...
    GATEHOUSE_BROKER_URL=http://broker-ingress.knative-eventing.svc.cluster.local
    GATEHOUSE_OUTBOX_BATCH_SIZE=100
    GATEHOUSE_OUTBOX_LIMITED_EVENT_TYPES=invoice.email,invoice.pdf
    GATEHOUSE_WORKER_IDLE_BACKOFF_MAX_SECONDS=10
"""

import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, model_validator

from gatehouse.retry import RetryPolicy

# Settings read from <prefix>WORKER_<NAME>; everything else is <prefix>OUTBOX_<NAME>
_WORKER_LOOP_SETTINGS = (
    "tick_max_seconds",
    "tick_max_items",
    "idle_backoff_min_seconds",
    "idle_backoff_max_seconds",
    "idle_backoff_jitter_seconds",
    "busy_loop_delay_seconds",
    "error_backoff_seconds",
    "shutdown_timeout_seconds",
)


class OutboxWorkerConfig(BaseModel):
    """Outbox worker tuning. Every setting affects timing or throughput only."""

    batch_size: int = Field(50, ge=1)
    concurrency: int = Field(10, ge=1)
    limited_event_types: frozenset[str] = frozenset()
    limited_concurrency: int = Field(2, ge=1)

    lease_duration_seconds: float = Field(60.0, gt=0)
    lease_heartbeat_seconds: float = Field(15.0, gt=0)

    max_attempts: int = Field(3, ge=1)
    retry_base_seconds: float = Field(5.0, ge=0)
    retry_max_seconds: float = Field(120.0, ge=0)
    retry_jitter_seconds: float = Field(0.5, ge=0)

    event_timeout_seconds: float | None = Field(None, gt=0)

    tick_max_seconds: float = Field(30.0, gt=0)
    tick_max_items: int = Field(500, ge=1)
    idle_backoff_min_seconds: float = Field(1.0, ge=0)
    idle_backoff_max_seconds: float = Field(30.0, ge=0)
    idle_backoff_jitter_seconds: float = Field(0.5, ge=0)
    busy_loop_delay_seconds: float = Field(0.25, ge=0)
    error_backoff_seconds: float = Field(30.0, ge=0)
    shutdown_timeout_seconds: float = Field(30.0, ge=0)

    @model_validator(mode="after")
    def _check_ranges(self) -> "OutboxWorkerConfig":
        if self.lease_heartbeat_seconds >= self.lease_duration_seconds:
            raise ValueError("lease_heartbeat_seconds must be shorter than lease_duration_seconds")
        if self.idle_backoff_min_seconds > self.idle_backoff_max_seconds:
            raise ValueError("idle_backoff_min_seconds must not exceed idle_backoff_max_seconds")
        if self.retry_base_seconds > self.retry_max_seconds:
            raise ValueError("retry_base_seconds must not exceed retry_max_seconds")
        return self

    @property
    def effective_event_timeout_seconds(self) -> float:
        """Per-event timeout; defaults to 75% of the lease duration."""
        if self.event_timeout_seconds is not None:
            return self.event_timeout_seconds
        return self.lease_duration_seconds * 0.75

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_seconds=self.retry_base_seconds,
            max_seconds=self.retry_max_seconds,
            jitter_seconds=self.retry_jitter_seconds,
        )

    @classmethod
    def from_env(
        cls, prefix: str = "GATEHOUSE_", environ: Mapping[str, str] | None = None
    ) -> "OutboxWorkerConfig":
        """Build a config from environment variables; unset variables keep defaults."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            group = "WORKER_" if name in _WORKER_LOOP_SETTINGS else "OUTBOX_"
            raw = env.get(f"{prefix}{group}{name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            if name == "limited_event_types":
                values[name] = frozenset(t.strip() for t in raw.split(",") if t.strip())
            else:
                values[name] = raw.strip()
        return cls(**values)


class GatehouseConfig(BaseModel):
    """Top-level configuration for a Gatehouse process."""

    database_url: str = "sqlite:///gatehouse.db"
    broker_url: str | None = None
    event_source: str = "gatehouse"
    worker_id: str | None = None
    outbox: OutboxWorkerConfig = Field(default_factory=OutboxWorkerConfig)

    @classmethod
    def from_env(
        cls, prefix: str = "GATEHOUSE_", environ: Mapping[str, str] | None = None
    ) -> "GatehouseConfig":
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {"outbox": OutboxWorkerConfig.from_env(prefix, env)}
        for name in ("database_url", "broker_url", "event_source", "worker_id"):
            raw = env.get(f"{prefix}{name.upper()}")
            if raw:
                values[name] = raw
        return cls(**values)
