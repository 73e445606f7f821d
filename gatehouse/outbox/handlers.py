"""
Outbox event handlers.

The outbox worker hands each leased event to a handler chosen by event type.
A handler signals failure by raising: ``PermanentDeliveryError`` (or any
exception with ``retryable = False``) fails the event immediately, anything
else is retried with backoff.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import httpx
from cloudevents.conversion import to_structured
from cloudevents.http import CloudEvent

from gatehouse.exceptions import PermanentDeliveryError, TransientDeliveryError
from gatehouse.hashing import hash_canonical_payload
from gatehouse.idempotency import GLOBAL_TENANT, IdempotencyLedger, IdempotencyMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxMessage:
    """
    An outbox event as seen by a handler.

    Attributes:
        event_id: Outbox event id (stable across redeliveries)
        tenant_id: Tenant the event belongs to
        event_type: Event type (e.g. "approval.approved")
        payload: JSON payload
        correlation_id: Workflow instance id, when the event belongs to one
        attempts: Failed delivery attempts so far
        created_at: When the event was enqueued
    """

    event_id: str
    tenant_id: str
    event_type: str
    payload: dict[str, Any]
    correlation_id: str | None = None
    attempts: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "OutboxMessage":
        return cls(
            event_id=row["event_id"],
            tenant_id=row["tenant_id"],
            event_type=row["event_type"],
            payload=row["payload"],
            correlation_id=row.get("correlation_id"),
            attempts=row.get("attempts", 0),
            created_at=row.get("created_at"),
        )


@runtime_checkable
class EventHandler(Protocol):
    """Delivers one outbox message. Must be safe to call more than once per event."""

    async def handle(self, message: OutboxMessage) -> None: ...


class CloudEventsPublisher:
    """
    Publish outbox events to a broker as structured CloudEvents over HTTP.

    The CloudEvent id is the outbox event id, so consumers can deduplicate
    redeliveries.

    Example:
        >>> publisher = CloudEventsPublisher(
        ...     "http://broker-ingress.knative-eventing.svc.cluster.local/default/default",
        ...     source="gatehouse",
        ... )
        >>> worker = OutboxWorker(storage, default_handler=publisher)
    """

    def __init__(
        self,
        broker_url: str,
        source: str = "gatehouse",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.broker_url = broker_url
        self.source = source
        self.timeout = timeout
        self._client = client

    def build_event(self, message: OutboxMessage) -> CloudEvent:
        attributes = {
            "type": message.event_type,
            "source": self.source,
            "id": message.event_id,
            "datacontenttype": "application/json",
            "tenantid": message.tenant_id,
        }
        if message.correlation_id:
            attributes["correlationid"] = message.correlation_id
        if message.created_at is not None:
            attributes["time"] = message.created_at.isoformat()
        return CloudEvent(attributes, message.payload)

    async def handle(self, message: OutboxMessage) -> None:
        headers, body = to_structured(self.build_event(message))
        try:
            if self._client is not None:
                response = await self._client.post(
                    self.broker_url, headers=headers, content=body, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.broker_url, headers=headers, content=body, timeout=self.timeout
                    )
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"Broker request failed: {e}") from e

        if response.is_success:
            logger.debug(f"Published {message.event_type} ({message.event_id})")
            return

        error = f"Broker returned {response.status_code} for {message.event_id}"
        if 400 <= response.status_code < 500 and response.status_code not in (408, 429):
            raise PermanentDeliveryError(error)
        raise TransientDeliveryError(error)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class IdempotentHandler:
    """
    Run a handler at most once per outbox event.

    Deliveries are deduplicated in the idempotency ledger under the action
    key ``outbox:<eventType>`` and idempotency key ``<eventType>:<eventId>``.
    A delivery that is already recorded as done is skipped. When the wrapped
    handler fails its claim is released, so the retry starts fresh.
    """

    def __init__(self, ledger: IdempotencyLedger, handler: EventHandler):
        self.ledger = ledger
        self.handler = handler

    async def handle(self, message: OutboxMessage) -> None:
        action_key = f"outbox:{message.event_type}"
        idempotency_key = f"{message.event_type}:{message.event_id}"

        start = await self.ledger.start_or_replay(
            action_key,
            GLOBAL_TENANT,
            None,
            idempotency_key,
            hash_canonical_payload(message.payload),
        )
        if start.mode in (IdempotencyMode.REPLAY, IdempotencyMode.FAILED):
            logger.debug(f"Skipping already processed event {message.event_id}")
            return
        if start.mode is IdempotencyMode.IN_PROGRESS:
            raise TransientDeliveryError(
                f"Event {message.event_id} is being processed by another consumer"
            )
        if start.mode is IdempotencyMode.MISMATCH:
            raise PermanentDeliveryError(
                f"Event {message.event_id} was processed before with a different payload"
            )

        try:
            await self.handler.handle(message)
        except BaseException:
            await self.ledger.release(action_key, GLOBAL_TENANT, idempotency_key)
            raise

        await self.ledger.complete(
            action_key,
            GLOBAL_TENANT,
            idempotency_key,
            200,
            {"eventId": message.event_id, "eventType": message.event_type},
        )
