"""
Transactional outbox enqueue.

Events are written to the outbox table in the same database transaction as the
state change they report, so either both are committed or neither is. The
outbox worker delivers them afterwards.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from gatehouse.storage.protocol import StorageProtocol

logger = logging.getLogger(__name__)


async def enqueue_event(
    storage: StorageProtocol,
    tenant_id: str,
    event_type: str,
    payload: dict[str, Any] | BaseModel,
    correlation_id: str | None = None,
    available_at: datetime | None = None,
) -> str:
    """
    Add an event to the outbox inside the caller's transaction.

    Args:
        storage: Storage backend
        tenant_id: Tenant the event belongs to
        event_type: Event type (e.g. ``"approval.requested"``)
        payload: Event payload (JSON dict or Pydantic model)
        correlation_id: Optional id tying the event to a workflow instance
        available_at: Earliest delivery time (defaults to now)

    Returns:
        The new event id

    Raises:
        RuntimeError: If called outside a storage transaction

    Example:
        >>> async with storage.transaction():
        ...     await storage.update_instance_state(...)
        ...     await enqueue_event(storage, "acme", "approval.approved", {"instanceId": iid})
    """
    if not storage.in_transaction():
        raise RuntimeError(
            "enqueue_event() must be called within a transaction. "
            "Use 'async with storage.transaction():' around the state change."
        )

    data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    event_id = str(uuid.uuid4())
    await storage.add_outbox_event(
        event_id=event_id,
        tenant_id=tenant_id,
        event_type=event_type,
        payload=data,
        correlation_id=correlation_id,
        available_at=available_at,
    )
    logger.debug(f"Enqueued outbox event {event_id} ({event_type}) for tenant {tenant_id}")
    return event_id
