"""
Tests for the transactional outbox and the outbox worker.

Tests cover:
- enqueue_event requires a transaction and rolls back with it
- Delivery, retries with backoff and permanent failure
- Unknown event types and handler timeouts
- Lease ownership and expiry
- Queue stats and cleanup of sent events
- Concurrency limits for rate limited event types
- Background loop start/stop
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import BaseModel

from gatehouse.config import OutboxWorkerConfig
from gatehouse.exceptions import PermanentDeliveryError, TransientDeliveryError
from gatehouse.outbox import OutboxWorker, enqueue_event
from gatehouse.retry import RetryPolicy


class InvoicePaid(BaseModel):
    invoice_id: str
    amount: int


async def enqueue(storage, event_type="invoice.paid", payload=None, **kwargs):
    async with storage.transaction():
        return await enqueue_event(
            storage, "t1", event_type, payload or {"invoiceId": "inv-1"}, **kwargs
        )


class Recorder:
    """Handler that records messages and fails on demand."""

    def __init__(self, failures=0, error=TransientDeliveryError, delay=0.0):
        self.failures = failures
        self.error = error
        self.delay = delay
        self.messages = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def handle(self, message):
        self.messages.append(message)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                self.failures -= 1
                raise self.error("broker unavailable")
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
class TestEnqueue:
    """Writing events in the caller's transaction."""

    async def test_requires_transaction(self, file_storage):
        with pytest.raises(RuntimeError):
            await enqueue_event(file_storage, "t1", "invoice.paid", {})

    async def test_rolled_back_with_transaction(self, file_storage):
        with pytest.raises(ValueError):
            async with file_storage.transaction():
                await enqueue_event(file_storage, "t1", "invoice.paid", {"invoiceId": "inv-1"})
                raise ValueError("state change failed")

        assert await file_storage.list_outbox_events() == []

    async def test_committed_event_is_pending(self, file_storage):
        event_id = await enqueue(file_storage, payload=InvoicePaid(invoice_id="inv-1", amount=10))

        event = await file_storage.get_outbox_event(event_id)
        assert event["status"] == "PENDING"
        assert event["attempts"] == 0
        assert event["payload"] == {"invoice_id": "inv-1", "amount": 10}
        assert event["available_at"].tzinfo is not None


@pytest.mark.asyncio
class TestDelivery:
    """run_once outcomes."""

    async def test_successful_delivery(self, file_storage, fast_worker_config):
        handler = Recorder()
        worker = OutboxWorker(
            file_storage, handlers={"invoice.paid": handler}, config=fast_worker_config
        )
        event_id = await enqueue(file_storage, correlation_id="instance-1")

        report = await worker.run_once()

        assert (report.claimed, report.processed, report.errors) == (1, 1, 0)
        assert handler.messages[0].event_id == event_id
        assert handler.messages[0].correlation_id == "instance-1"
        event = await file_storage.get_outbox_event(event_id)
        assert event["status"] == "SENT"
        assert event["sent_at"] is not None
        assert event["locked_by"] is None

        assert (await worker.run_once()).claimed == 0

    async def test_callable_handler(self, file_storage, fast_worker_config):
        seen = []

        async def on_paid(message):
            seen.append(message.event_type)

        worker = OutboxWorker(file_storage, handlers={"invoice.paid": on_paid}, config=fast_worker_config)
        await enqueue(file_storage)
        await worker.run_once()
        assert seen == ["invoice.paid"]

    async def test_retries_until_success(self, file_storage, fast_worker_config):
        handler = Recorder(failures=fast_worker_config.max_attempts - 1)
        worker = OutboxWorker(file_storage, default_handler=handler, config=fast_worker_config)
        event_id = await enqueue(file_storage)

        report = await worker.run_once()

        assert report.processed == 1
        assert report.errors == fast_worker_config.max_attempts - 1
        event = await file_storage.get_outbox_event(event_id)
        assert event["status"] == "SENT"
        assert event["attempts"] == fast_worker_config.max_attempts - 1
        assert "broker unavailable" in event["last_error"]

    async def test_exhausted_retries_fail(self, file_storage, fast_worker_config):
        handler = Recorder(failures=100)
        worker = OutboxWorker(file_storage, default_handler=handler, config=fast_worker_config)
        event_id = await enqueue(file_storage)

        await worker.run_once()

        event = await file_storage.get_outbox_event(event_id)
        assert event["status"] == "FAILED"
        assert event["attempts"] == fast_worker_config.max_attempts
        assert len(handler.messages) == fast_worker_config.max_attempts
        assert (await worker.run_once()).claimed == 0

    async def test_permanent_error_fails_immediately(self, file_storage, fast_worker_config):
        handler = Recorder(failures=1, error=PermanentDeliveryError)
        worker = OutboxWorker(file_storage, default_handler=handler, config=fast_worker_config)
        event_id = await enqueue(file_storage)

        await worker.run_once()

        event = await file_storage.get_outbox_event(event_id)
        assert event["status"] == "FAILED"
        assert event["attempts"] == 1
        assert event["last_error"].startswith("PermanentDeliveryError")

    async def test_unknown_event_type_fails(self, file_storage, fast_worker_config):
        worker = OutboxWorker(file_storage, handlers={"other": Recorder()}, config=fast_worker_config)
        event_id = await enqueue(file_storage, event_type="invoice.mystery")

        report = await worker.run_once()

        assert report.errors == 1
        event = await file_storage.get_outbox_event(event_id)
        assert event["status"] == "FAILED"
        assert "UnknownEventTypeError" in event["last_error"]

    async def test_handler_timeout(self, file_storage, fast_worker_config):
        config = fast_worker_config.model_copy(
            update={"event_timeout_seconds": 0.05, "max_attempts": 1}
        )
        worker = OutboxWorker(file_storage, default_handler=Recorder(delay=1.0), config=config)
        event_id = await enqueue(file_storage)

        await worker.run_once()

        event = await file_storage.get_outbox_event(event_id)
        assert event["status"] == "FAILED"
        assert "OutboxEventTimeoutError" in event["last_error"]

    async def test_not_yet_available_events_wait(self, file_storage, fast_worker_config):
        worker = OutboxWorker(file_storage, default_handler=Recorder(), config=fast_worker_config)
        await enqueue(file_storage, available_at=datetime.now(UTC) + timedelta(hours=1))

        assert (await worker.run_once()).claimed == 0

    async def test_limited_event_types_share_a_slot(self, file_storage, fast_worker_config):
        config = fast_worker_config.model_copy(
            update={"limited_event_types": frozenset({"invoice.email"}), "limited_concurrency": 1}
        )
        limited = Recorder(delay=0.05)
        unlimited = Recorder(delay=0.05)
        worker = OutboxWorker(
            file_storage,
            handlers={"invoice.email": limited, "invoice.paid": unlimited},
            config=config,
        )
        for _ in range(3):
            await enqueue(file_storage, event_type="invoice.email")
            await enqueue(file_storage, event_type="invoice.paid")

        report = await worker.run_once()

        assert report.processed == 6
        assert limited.max_in_flight == 1
        assert unlimited.max_in_flight > 1

    async def test_concurrent_delivery_on_in_memory_database(
        self, sqlite_storage, fast_worker_config
    ):
        handler = Recorder(delay=0.01)
        worker = OutboxWorker(
            sqlite_storage,
            default_handler=handler,
            config=fast_worker_config.model_copy(update={"concurrency": 5}),
        )
        for _ in range(5):
            await enqueue(sqlite_storage)

        report = await worker.run_once()

        assert (report.claimed, report.processed, report.errors) == (5, 5, 0)
        # Handlers still overlap; only storage calls take turns
        assert handler.max_in_flight > 1
        assert len(await sqlite_storage.list_outbox_events(status="SENT")) == 5


@pytest.mark.asyncio
class TestLeases:
    """Lease ownership against the storage directly."""

    async def test_active_lease_is_not_leased_again(self, file_storage):
        event_id = await enqueue(file_storage)
        now = datetime.now(UTC)

        leased = await file_storage.lease_outbox_events("worker-a", 10, 30, now=now)
        assert [e["event_id"] for e in leased] == [event_id]
        assert leased[0]["status"] == "LEASED"
        assert leased[0]["locked_by"] == "worker-a"

        assert await file_storage.lease_outbox_events("worker-b", 10, 30, now=now) == []

    async def test_expired_lease_moves_to_another_worker(self, file_storage):
        event_id = await enqueue(file_storage)
        now = datetime.now(UTC)
        await file_storage.lease_outbox_events("worker-a", 10, 30, now=now)

        later = now + timedelta(seconds=60)
        leased = await file_storage.lease_outbox_events("worker-b", 10, 30, now=later)
        assert [e["locked_by"] for e in leased] == ["worker-b"]

        # The old owner can no longer settle the event
        assert await file_storage.mark_outbox_sent(event_id, "worker-a") is False
        result = await file_storage.mark_outbox_failed(
            event_id, "worker-a", "late", RetryPolicy()
        )
        assert result["outcome"] == "skipped"
        assert await file_storage.mark_outbox_sent(event_id, "worker-b") is True

    async def test_extend_lease_only_for_owner(self, file_storage):
        event_id = await enqueue(file_storage)
        now = datetime.now(UTC)
        await file_storage.lease_outbox_events("worker-a", 10, 30, now=now)

        assert await file_storage.extend_outbox_lease(event_id, "worker-b", 30) is False
        assert await file_storage.extend_outbox_lease(
            event_id, "worker-a", 300, now=now
        ) is True
        event = await file_storage.get_outbox_event(event_id)
        assert event["locked_until"] == now + timedelta(seconds=300)

    async def test_failure_backoff_and_error_truncation(self, file_storage):
        event_id = await enqueue(file_storage)
        now = datetime.now(UTC)
        await file_storage.lease_outbox_events("worker-a", 10, 30, now=now)

        policy = RetryPolicy(max_attempts=3, base_seconds=10, max_seconds=60, jitter_seconds=0)
        result = await file_storage.mark_outbox_failed(
            event_id, "worker-a", "x" * 5000, policy, now=now
        )

        assert result["outcome"] == "retried"
        assert result["attempts"] == 1
        assert result["next_available_at"] == now + timedelta(seconds=10)
        event = await file_storage.get_outbox_event(event_id)
        assert event["status"] == "PENDING"
        assert event["locked_by"] is None
        assert len(event["last_error"]) == 2000


@pytest.mark.asyncio
class TestMaintenance:
    """Stats and cleanup."""

    async def test_stats_count_due_events(self, file_storage):
        await enqueue(file_storage)
        await enqueue(file_storage, available_at=datetime.now(UTC) + timedelta(hours=1))

        stats = await file_storage.get_outbox_stats()
        assert stats["due_pending_count"] == 1
        assert stats["oldest_due_pending_age_seconds"] >= 0

    async def test_empty_stats(self, file_storage):
        stats = await file_storage.get_outbox_stats()
        assert stats == {"due_pending_count": 0, "oldest_due_pending_age_seconds": None}

    async def test_cleanup_removes_only_old_sent_events(self, file_storage, fast_worker_config):
        worker = OutboxWorker(file_storage, handlers={"invoice.paid": Recorder()}, config=fast_worker_config)
        sent_id = await enqueue(file_storage)
        await worker.run_once()
        pending_id = await enqueue(file_storage, event_type="invoice.later",
                                   available_at=datetime.now(UTC) + timedelta(hours=1))

        assert await worker.cleanup_sent_events(older_than_hours=1) == 0
        assert await worker.cleanup_sent_events(older_than_hours=0) == 1

        assert await file_storage.get_outbox_event(sent_id) is None
        assert await file_storage.get_outbox_event(pending_id) is not None


@pytest.mark.asyncio
class TestBackgroundLoop:
    """start() / stop()."""

    async def test_loop_delivers_and_stops(self, file_storage, fast_worker_config):
        handler = Recorder()
        worker = OutboxWorker(file_storage, default_handler=handler, config=fast_worker_config)
        await worker.start()
        assert worker.running

        event_id = await enqueue(file_storage)
        for _ in range(100):
            if (await file_storage.get_outbox_event(event_id))["status"] == "SENT":
                break
            await asyncio.sleep(0.02)

        await worker.stop()
        assert not worker.running
        assert [m.event_id for m in handler.messages] == [event_id]

    async def test_stop_without_start(self, file_storage):
        worker = OutboxWorker(file_storage, config=OutboxWorkerConfig())
        await worker.stop()
        assert not worker.running
