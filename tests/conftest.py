"""
Pytest configuration and fixtures for Gatehouse tests.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from gatehouse.config import OutboxWorkerConfig
from gatehouse.gate import ApprovalGate, ApprovalRequest
from gatehouse.idempotency import IdempotencyLedger
from gatehouse.policies import ApprovalPolicyStore
from gatehouse.storage.sqlalchemy_storage import SQLAlchemyStorage
from gatehouse.workflow import WorkflowEngine


@pytest_asyncio.fixture
async def sqlite_storage():
    """Create an in-memory SQLite storage for testing."""
    # Use StaticPool to ensure all connections share the same in-memory database
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    storage = SQLAlchemyStorage(engine)
    await storage.initialize()

    yield storage
    await storage.close()


@pytest_asyncio.fixture
async def file_storage(tmp_path):
    """
    Create a file-backed SQLite storage.

    Used by tests that run sessions concurrently (workers, racing callers);
    every session gets its own connection to the same database file.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gatehouse.db'}", echo=False)
    storage = SQLAlchemyStorage(engine)
    await storage.initialize()

    yield storage
    await storage.close()


@pytest.fixture
def ledger(sqlite_storage):
    return IdempotencyLedger(sqlite_storage)


@pytest.fixture
def policies(sqlite_storage):
    return ApprovalPolicyStore(sqlite_storage)


@pytest.fixture
def workflows(sqlite_storage):
    return WorkflowEngine(sqlite_storage)


@pytest.fixture
def gate(sqlite_storage):
    return ApprovalGate(sqlite_storage)


@pytest.fixture
def make_request():
    """Factory for approval requests with sensible defaults."""

    def _make(**overrides):
        values = {
            "tenant_id": "tenant-1",
            "user_id": "user-1",
            "action_key": "invoice.pay",
            "entity_type": "invoice",
            "entity_id": "inv-1",
            "idempotency_key": "key-1",
            "payload": {"amount": 5000, "currency": "EUR"},
        }
        values.update(overrides)
        return ApprovalRequest(**values)

    return _make


@pytest.fixture
def fast_worker_config():
    """Worker config with no backoff delays."""
    return OutboxWorkerConfig(
        batch_size=10,
        concurrency=4,
        max_attempts=3,
        retry_base_seconds=0,
        retry_max_seconds=0,
        retry_jitter_seconds=0,
        lease_duration_seconds=30,
        lease_heartbeat_seconds=10,
        idle_backoff_min_seconds=0.01,
        idle_backoff_max_seconds=0.05,
        idle_backoff_jitter_seconds=0,
        busy_loop_delay_seconds=0,
        error_backoff_seconds=0.01,
        shutdown_timeout_seconds=5,
    )
