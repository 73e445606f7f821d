"""
Tests for configuration models and the retry policy.

Tests cover:
- Defaults and derived values
- Range validation
- Environment variable parsing
- Exponential backoff with cap and jitter
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from gatehouse.config import GatehouseConfig, OutboxWorkerConfig
from gatehouse.retry import RetryPolicy


class TestOutboxWorkerConfig:
    def test_defaults(self):
        config = OutboxWorkerConfig()
        assert config.batch_size == 50
        assert config.concurrency == 10
        assert config.lease_duration_seconds == 60
        assert config.max_attempts == 3
        assert config.effective_event_timeout_seconds == 45
        assert config.limited_event_types == frozenset()

    def test_explicit_event_timeout(self):
        assert OutboxWorkerConfig(event_timeout_seconds=5).effective_event_timeout_seconds == 5

    def test_retry_policy_follows_config(self):
        policy = OutboxWorkerConfig(max_attempts=7, retry_base_seconds=2).retry_policy()
        assert policy == RetryPolicy(max_attempts=7, base_seconds=2, max_seconds=120, jitter_seconds=0.5)

    @pytest.mark.parametrize(
        "values",
        [
            {"batch_size": 0},
            {"lease_duration_seconds": 10, "lease_heartbeat_seconds": 10},
            {"idle_backoff_min_seconds": 5, "idle_backoff_max_seconds": 1},
            {"retry_base_seconds": 200},
            {"max_attempts": 0},
        ],
    )
    def test_invalid_values(self, values):
        with pytest.raises(PydanticValidationError):
            OutboxWorkerConfig(**values)

    def test_from_env(self):
        config = OutboxWorkerConfig.from_env(
            environ={
                "GATEHOUSE_OUTBOX_BATCH_SIZE": "100",
                "GATEHOUSE_OUTBOX_LIMITED_EVENT_TYPES": "invoice.email, invoice.pdf,,",
                "GATEHOUSE_OUTBOX_LEASE_DURATION_SECONDS": "120",
                "GATEHOUSE_WORKER_IDLE_BACKOFF_MAX_SECONDS": "10",
                "GATEHOUSE_OUTBOX_IDLE_BACKOFF_MAX_SECONDS": "99",
                "GATEHOUSE_OUTBOX_CONCURRENCY": "",
            }
        )
        assert config.batch_size == 100
        assert config.limited_event_types == frozenset({"invoice.email", "invoice.pdf"})
        assert config.lease_duration_seconds == 120
        assert config.idle_backoff_max_seconds == 10
        assert config.concurrency == 10

    def test_from_env_rejects_garbage(self):
        with pytest.raises(PydanticValidationError):
            OutboxWorkerConfig.from_env(environ={"GATEHOUSE_OUTBOX_BATCH_SIZE": "lots"})


class TestGatehouseConfig:
    def test_from_env(self):
        config = GatehouseConfig.from_env(
            environ={
                "GATEHOUSE_DATABASE_URL": "postgresql+asyncpg://db/gatehouse",
                "GATEHOUSE_BROKER_URL": "http://broker",
                "GATEHOUSE_WORKER_ID": "worker-1",
                "GATEHOUSE_OUTBOX_MAX_ATTEMPTS": "5",
            }
        )
        assert config.database_url == "postgresql+asyncpg://db/gatehouse"
        assert config.broker_url == "http://broker"
        assert config.event_source == "gatehouse"
        assert config.worker_id == "worker-1"
        assert config.outbox.max_attempts == 5

    def test_defaults(self):
        config = GatehouseConfig.from_env(environ={})
        assert config.database_url == "sqlite:///gatehouse.db"
        assert config.broker_url is None
        assert config.outbox == OutboxWorkerConfig()


class TestRetryPolicy:
    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(max_attempts=10, base_seconds=5, max_seconds=60, jitter_seconds=0)
        assert [policy.backoff_seconds(n) for n in range(1, 6)] == [5, 10, 20, 40, 60]
        assert policy.backoff_seconds(1000) == 60

    def test_jitter_is_bounded(self):
        policy = RetryPolicy(base_seconds=1, max_seconds=1, jitter_seconds=0.5)
        for _ in range(50):
            assert 1 <= policy.backoff_seconds(1) <= 1.5

    def test_exhaustion(self):
        policy = RetryPolicy(max_attempts=3)
        assert not policy.is_exhausted(2)
        assert policy.is_exhausted(3)

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(base_seconds=-1)
