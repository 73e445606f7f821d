"""
Idempotency ledger.

The ledger deduplicates retried requests. The first caller with a given
``(tenant_id, action_key, idempotency_key)`` claims the key by inserting an
IN_PROGRESS record; everyone after that is told how to behave from the stored
record:

- same request hash, COMPLETED: replay the stored response
- same request hash, FAILED: replay the stored (failure) response
- same request hash, IN_PROGRESS: the original request is still running
- different request hash: the key was reused for another payload

IN_PROGRESS is plain data (a row and its timestamp), never an in-memory lock,
so a crashed request stays IN_PROGRESS until an operator releases it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from gatehouse.exceptions import ValidationError
from gatehouse.storage.protocol import StorageProtocol

logger = logging.getLogger(__name__)

# Tenant used by cross-tenant callers (e.g. the outbox worker)
GLOBAL_TENANT = "global"


class IdempotencyMode(str, Enum):
    """How the caller must proceed after ``start_or_replay``."""

    FRESH = "FRESH"
    REPLAY = "REPLAY"
    FAILED = "FAILED"
    IN_PROGRESS = "IN_PROGRESS"
    MISMATCH = "MISMATCH"


@dataclass(frozen=True)
class StartResult:
    """Outcome of claiming an idempotency key."""

    mode: IdempotencyMode
    response_status: int | None = None
    response_body: Any = None

    @property
    def is_fresh(self) -> bool:
        return self.mode is IdempotencyMode.FRESH


class IdempotencyLedger:
    """
    Durable request deduplication on top of a storage backend.

    Example:
        >>> ledger = IdempotencyLedger(storage)
        >>> result = await ledger.start_or_replay(
        ...     "invoice.pay", "acme", "u-1", "key-123", hash_canonical_payload(body)
        ... )
        >>> if result.mode is IdempotencyMode.FRESH:
        ...     response = await do_work()
        ...     await ledger.complete("invoice.pay", "acme", "key-123", 200, response)
    """

    def __init__(self, storage: StorageProtocol):
        self.storage = storage

    async def start_or_replay(
        self,
        action_key: str,
        tenant_id: str | None,
        user_id: str | None,
        idempotency_key: str,
        request_hash: str,
    ) -> StartResult:
        """
        Claim an idempotency key or report how it was used before.

        The claim is a single insert guarded by the composite primary key and
        committed on its own, so two concurrent callers never both see FRESH.
        """
        _validate_key(action_key, idempotency_key)
        if not request_hash:
            raise ValidationError("request_hash is required")
        tenant = tenant_id or GLOBAL_TENANT

        inserted = await self.storage.insert_idempotency_record(
            tenant, action_key, idempotency_key, user_id, request_hash
        )
        if inserted:
            return StartResult(IdempotencyMode.FRESH)

        record = await self.storage.get_idempotency_record(tenant, action_key, idempotency_key)
        if record is None:
            # Released between our insert and read; the caller may retry
            logger.debug(f"Idempotency record {action_key}/{idempotency_key} vanished")
            return StartResult(IdempotencyMode.IN_PROGRESS)
        return classify_record(record, request_hash)

    async def complete(
        self,
        action_key: str,
        tenant_id: str | None,
        idempotency_key: str,
        response_status: int,
        response_body: Any,
        failed: bool = False,
    ) -> bool:
        """
        Store the response for an IN_PROGRESS key.

        Returns:
            False (and changes nothing) if the record is absent or already terminal
        """
        _validate_key(action_key, idempotency_key)
        completed = await self.storage.complete_idempotency_record(
            tenant_id or GLOBAL_TENANT,
            action_key,
            idempotency_key,
            "FAILED" if failed else "COMPLETED",
            response_status,
            response_body,
        )
        if not completed:
            logger.debug(f"Idempotency record {action_key}/{idempotency_key} already terminal")
        return completed

    async def get(
        self, action_key: str, tenant_id: str | None, idempotency_key: str
    ) -> dict[str, Any] | None:
        _validate_key(action_key, idempotency_key)
        return await self.storage.get_idempotency_record(
            tenant_id or GLOBAL_TENANT, action_key, idempotency_key
        )

    async def release(self, action_key: str, tenant_id: str | None, idempotency_key: str) -> bool:
        """Drop an IN_PROGRESS claim so the next attempt starts FRESH."""
        _validate_key(action_key, idempotency_key)
        released = await self.storage.delete_in_progress_idempotency_record(
            tenant_id or GLOBAL_TENANT, action_key, idempotency_key
        )
        if released:
            logger.info(f"Released idempotency key {action_key}/{idempotency_key}")
        return released

    async def list_stale_in_progress(
        self, older_than: datetime, limit: int = 100
    ) -> list[dict[str, Any]]:
        """IN_PROGRESS records older than ``older_than``, for operator sweeps."""
        return await self.storage.list_stale_in_progress_records(older_than, limit)


def classify_record(record: dict[str, Any], request_hash: str) -> StartResult:
    """Map an existing ledger record to the caller's mode."""
    if record["request_hash"] != request_hash:
        return StartResult(IdempotencyMode.MISMATCH)
    if record["status"] == "COMPLETED":
        return StartResult(
            IdempotencyMode.REPLAY, record["response_status"], record["response_body"]
        )
    if record["status"] == "FAILED":
        return StartResult(
            IdempotencyMode.FAILED, record["response_status"], record["response_body"]
        )
    return StartResult(IdempotencyMode.IN_PROGRESS)


def _validate_key(action_key: str, idempotency_key: str) -> None:
    if not action_key or not action_key.strip():
        raise ValidationError("action_key is required")
    if not idempotency_key or not idempotency_key.strip():
        raise ValidationError("idempotency_key is required")
