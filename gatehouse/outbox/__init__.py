"""Transactional outbox: enqueue inside a transaction, deliver with a leasing worker."""

from gatehouse.outbox.handlers import (
    CloudEventsPublisher,
    EventHandler,
    IdempotentHandler,
    OutboxMessage,
)
from gatehouse.outbox.relayer import OutboxWorker, TickReport
from gatehouse.outbox.transactional import enqueue_event

__all__ = [
    "CloudEventsPublisher",
    "EventHandler",
    "IdempotentHandler",
    "OutboxMessage",
    "OutboxWorker",
    "TickReport",
    "enqueue_event",
]
