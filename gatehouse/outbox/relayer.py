"""
Outbox worker for delivering transactional outbox events.

The worker leases due events from the outbox table, hands each one to the
handler registered for its event type and records the outcome:

- success: SENT (terminal)
- retryable failure with attempts left: back to PENDING after a backoff delay
- permanent failure or attempts exhausted: FAILED

Leases make it safe to run any number of workers against one database: an
event is owned by one worker until its lease runs out, and a worker that dies
mid-delivery simply lets the lease expire so another worker picks it up.
Delivery is therefore at-least-once; handlers must tolerate duplicates (see
``IdempotentHandler``).
"""

import asyncio
import contextlib
import logging
import random
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from gatehouse.config import OutboxWorkerConfig
from gatehouse.exceptions import OutboxEventTimeoutError, UnknownEventTypeError
from gatehouse.outbox.handlers import EventHandler, OutboxMessage
from gatehouse.storage.protocol import StorageProtocol

logger = logging.getLogger(__name__)

HandlerLike = EventHandler | Callable[[OutboxMessage], Awaitable[None]]


@dataclass
class TickReport:
    """Summary of one ``run_once()`` call."""

    claimed: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0


class OutboxWorker:
    """
    Background worker that delivers outbox events.

    Example:
        >>> worker = OutboxWorker(
        ...     storage,
        ...     handlers={"approval.approved": notify_requester},
        ...     default_handler=CloudEventsPublisher(broker_url),
        ... )
        >>> await worker.start()
        >>> # ... later
        >>> await worker.stop()
    """

    def __init__(
        self,
        storage: StorageProtocol,
        handlers: Mapping[str, HandlerLike] | None = None,
        default_handler: HandlerLike | None = None,
        config: OutboxWorkerConfig | None = None,
        worker_id: str | None = None,
    ):
        """
        Initialize the outbox worker.

        Args:
            storage: Storage backend for outbox events
            handlers: Handlers by event type
            default_handler: Handler for event types without their own handler
            config: Worker tuning (defaults to ``OutboxWorkerConfig()``)
            worker_id: Lease owner id (defaults to a random one)
        """
        self.storage = storage
        self.handlers: dict[str, HandlerLike] = dict(handlers or {})
        self.default_handler = default_handler
        self.config = config or OutboxWorkerConfig()
        self.worker_id = worker_id or f"outbox-{uuid.uuid4().hex[:12]}"
        self.retry_policy = self.config.retry_policy()

        self._limited_semaphore = asyncio.Semaphore(self.config.limited_concurrency)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[Any] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def register_handler(self, event_type: str, handler: HandlerLike) -> None:
        self.handlers[event_type] = handler

    def resolve_handler(self, event_type: str) -> HandlerLike:
        handler = self.handlers.get(event_type, self.default_handler)
        if handler is None:
            raise UnknownEventTypeError(event_type)
        return handler

    # -------------------------------------------------------------------------
    # Lease operations
    # -------------------------------------------------------------------------

    async def claim(self, limit: int | None = None, now: datetime | None = None) -> list[OutboxMessage]:
        """Lease up to ``limit`` (default ``batch_size``) due events."""
        rows = await self.storage.lease_outbox_events(
            self.worker_id,
            limit or self.config.batch_size,
            self.config.lease_duration_seconds,
            now=now,
        )
        return [OutboxMessage.from_row(row) for row in rows]

    async def extend_lease(self, event_id: str) -> bool:
        return await self.storage.extend_outbox_lease(
            event_id, self.worker_id, self.config.lease_duration_seconds
        )

    async def mark_sent(self, event_id: str) -> bool:
        return await self.storage.mark_outbox_sent(event_id, self.worker_id)

    async def mark_failed(self, event_id: str, error: str, retryable: bool = True) -> dict[str, Any]:
        return await self.storage.mark_outbox_failed(
            event_id, self.worker_id, error, self.retry_policy, retryable=retryable
        )

    async def cleanup_sent_events(self, older_than_hours: int = 24) -> int:
        deleted = await self.storage.cleanup_sent_events(older_than_hours)
        if deleted:
            logger.info(f"Deleted {deleted} sent outbox events older than {older_than_hours}h")
        return deleted

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def run_once(self) -> TickReport:
        """
        Run one tick: lease and deliver batches until the queue is drained or
        the tick budget (``tick_max_seconds`` / ``tick_max_items``) is used up.
        """
        report = TickReport()
        started = time.monotonic()

        stats = await self.storage.get_outbox_stats()
        if stats["due_pending_count"]:
            logger.debug(
                f"Outbox queue: {stats['due_pending_count']} due, oldest "
                f"{stats['oldest_due_pending_age_seconds']:.1f}s"
            )

        while not self._stop_event.is_set():
            remaining_items = self.config.tick_max_items - report.claimed
            if remaining_items <= 0:
                break
            if time.monotonic() - started >= self.config.tick_max_seconds:
                break

            messages = await self.claim(min(self.config.batch_size, remaining_items))
            if not messages:
                break
            report.claimed += len(messages)

            outcomes = await self._process_batch(messages)
            for outcome in outcomes:
                if outcome == "sent":
                    report.processed += 1
                elif outcome == "skipped":
                    report.skipped += 1
                else:
                    report.errors += 1

        report.duration_seconds = time.monotonic() - started
        if report.claimed:
            logger.info(
                f"Outbox tick: claimed={report.claimed} sent={report.processed} "
                f"errors={report.errors} skipped={report.skipped} "
                f"in {report.duration_seconds:.2f}s"
            )
        return report

    async def _process_batch(self, messages: list[OutboxMessage]) -> list[str]:
        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def process(message: OutboxMessage) -> str:
            async with semaphore:
                if message.event_type in self.config.limited_event_types:
                    async with self._limited_semaphore:
                        return await self._deliver(message)
                return await self._deliver(message)

        return list(await asyncio.gather(*(process(m) for m in messages)))

    async def _deliver(self, message: OutboxMessage) -> str:
        """Deliver one leased message and record the outcome; never raises."""
        heartbeat = asyncio.create_task(self._heartbeat(message.event_id))
        timeout = self.config.effective_event_timeout_seconds
        try:
            handler = self.resolve_handler(message.event_type)
            await asyncio.wait_for(self._invoke(handler, message), timeout=timeout)
        except TimeoutError:
            error: Exception = OutboxEventTimeoutError(
                message.event_id, message.event_type, timeout
            )
            return await self._record_failure(message, error)
        except Exception as e:
            return await self._record_failure(message, e)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        if await self.mark_sent(message.event_id):
            logger.debug(f"Delivered outbox event {message.event_id} ({message.event_type})")
            return "sent"
        logger.warning(
            f"Outbox event {message.event_id} delivered but lease was lost; "
            f"it may be delivered again"
        )
        return "skipped"

    async def _record_failure(self, message: OutboxMessage, error: Exception) -> str:
        retryable = bool(getattr(error, "retryable", True))
        detail = f"{type(error).__name__}: {error}"
        result = await self.mark_failed(message.event_id, detail, retryable=retryable)
        outcome = result["outcome"]
        if outcome == "failed":
            logger.error(
                f"Outbox event {message.event_id} ({message.event_type}) failed permanently "
                f"after {result['attempts']} attempt(s): {detail}"
            )
        elif outcome == "retried":
            logger.warning(
                f"Outbox event {message.event_id} ({message.event_type}) attempt "
                f"{result['attempts']} failed, retrying at {result['next_available_at']}: {detail}"
            )
        else:
            logger.warning(f"Outbox event {message.event_id} failed but lease was lost: {detail}")
        return outcome

    @staticmethod
    async def _invoke(handler: HandlerLike, message: OutboxMessage) -> None:
        if isinstance(handler, EventHandler):
            await handler.handle(message)
        else:
            await handler(message)

    async def _heartbeat(self, event_id: str) -> None:
        while True:
            await asyncio.sleep(self.config.lease_heartbeat_seconds)
            try:
                extended = await self.extend_lease(event_id)
            except Exception as e:
                logger.warning(f"Lease heartbeat for {event_id} failed: {e}")
                continue
            if not extended:
                logger.warning(f"Lease for outbox event {event_id} is no longer held")
                return

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the polling loop in the background."""
        if self.running:
            logger.warning("Outbox worker already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Outbox worker {self.worker_id} started")

    async def stop(self) -> None:
        """
        Stop the polling loop.

        The current tick finishes its in-flight deliveries; after
        ``shutdown_timeout_seconds`` the loop is cancelled.
        """
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), self.config.shutdown_timeout_seconds)
        except TimeoutError:
            logger.warning(
                f"Outbox worker did not stop within {self.config.shutdown_timeout_seconds}s; "
                f"cancelling"
            )
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        logger.info(f"Outbox worker {self.worker_id} stopped")

    async def _run_loop(self) -> None:
        idle_delay = self.config.idle_backoff_min_seconds
        while not self._stop_event.is_set():
            try:
                report = await self.run_once()
            except Exception as e:
                logger.error(f"Outbox tick failed: {e}", exc_info=True)
                delay = self.config.error_backoff_seconds
            else:
                if report.claimed:
                    idle_delay = self.config.idle_backoff_min_seconds
                    delay = self.config.busy_loop_delay_seconds
                else:
                    delay = idle_delay + random.uniform(
                        0, self.config.idle_backoff_jitter_seconds
                    )
                    idle_delay = min(
                        max(idle_delay * 2, self.config.idle_backoff_min_seconds),
                        self.config.idle_backoff_max_seconds,
                    )
            await self._sleep(delay)

    async def _sleep(self, seconds: float) -> None:
        # Wakes up early on stop()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
