"""
Storage protocol definition for Gatehouse.

This module defines the StorageProtocol using Python's structural typing (Protocol).
Any storage implementation that conforms to this protocol can be used by the
idempotency ledger, the policy store, the workflow engine, the approval gate
and the outbox worker.

All reads and writes are partitioned by ``tenant_id``. Rows are returned as
plain dictionaries with JSON columns already decoded.
"""

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from gatehouse.retry import RetryPolicy


@runtime_checkable
class StorageProtocol(Protocol):
    """
    Protocol for storage backend implementations.

    This protocol defines all the methods that a storage backend must implement
    to work with Gatehouse. It covers idempotency records, approval policies,
    workflow instances and tasks, audit entries, domain events and the
    transactional outbox.
    """

    async def initialize(self) -> None:
        """
        Initialize storage (create tables, connections, etc.).

        This method should be idempotent - calling it multiple times
        should not cause errors.
        """
        ...

    async def close(self) -> None:
        """Close storage connections and cleanup resources."""
        ...

    # -------------------------------------------------------------------------
    # Transaction Management Methods
    # -------------------------------------------------------------------------

    async def begin_transaction(self) -> None:
        """
        Begin a new transaction.

        If a transaction is already in progress, this will create a nested
        transaction using savepoints.
        """
        ...

    async def commit_transaction(self) -> None:
        """
        Commit the current transaction.

        Raises:
            RuntimeError: If not in a transaction
        """
        ...

    async def rollback_transaction(self) -> None:
        """
        Rollback the current transaction.

        Raises:
            RuntimeError: If not in a transaction
        """
        ...

    def in_transaction(self) -> bool:
        """Check if currently in a transaction (no I/O)."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """
        Async context manager wrapping begin/commit/rollback.

        Example:
            async with storage.transaction():
                await storage.append_audit_entry(...)
                await storage.add_outbox_event(...)
                # Both commit, or both roll back
        """
        ...

    # -------------------------------------------------------------------------
    # Idempotency Ledger Methods
    # -------------------------------------------------------------------------

    async def insert_idempotency_record(
        self,
        tenant_id: str,
        action_key: str,
        idempotency_key: str,
        user_id: str | None,
        request_hash: str,
    ) -> bool:
        """
        Atomically insert an IN_PROGRESS record if none exists.

        Always runs in its own committed transaction so that concurrent callers
        are serialized by the primary key.

        Returns:
            True if this call inserted the record, False if one already existed
        """
        ...

    async def get_idempotency_record(
        self, tenant_id: str, action_key: str, idempotency_key: str
    ) -> dict[str, Any] | None:
        """
        Get an idempotency record.

        Expected keys: tenant_id, action_key, idempotency_key, user_id,
        request_hash, status, response_status, response_body, created_at,
        completed_at
        """
        ...

    async def complete_idempotency_record(
        self,
        tenant_id: str,
        action_key: str,
        idempotency_key: str,
        status: str,
        response_status: int,
        response_body: Any,
    ) -> bool:
        """
        Transition an IN_PROGRESS record to COMPLETED or FAILED.

        Returns:
            True if the record was transitioned, False if it was absent or
            already terminal
        """
        ...

    async def delete_in_progress_idempotency_record(
        self, tenant_id: str, action_key: str, idempotency_key: str
    ) -> bool:
        """Delete a record only while it is still IN_PROGRESS."""
        ...

    async def list_stale_in_progress_records(
        self, older_than: datetime, limit: int = 100
    ) -> list[dict[str, Any]]:
        """List IN_PROGRESS records created before ``older_than`` (all tenants)."""
        ...

    # -------------------------------------------------------------------------
    # Approval Policy Methods
    # -------------------------------------------------------------------------

    async def create_policy_version(
        self,
        policy_id: str,
        tenant_id: str,
        action_key: str,
        name: str | None,
        rules: dict[str, Any] | None,
        workflow_template: dict[str, Any],
        created_by: str | None,
    ) -> dict[str, Any]:
        """
        Insert a new ACTIVE policy version and deactivate the previous one.

        The version number is ``max(version) + 1`` for the action key. Both
        writes happen in one transaction.
        """
        ...

    async def find_active_policy(self, tenant_id: str, action_key: str) -> dict[str, Any] | None:
        """Get the ACTIVE policy for an action key, or None."""
        ...

    async def get_policy(self, tenant_id: str, policy_id: str) -> dict[str, Any] | None:
        """Get a policy by id."""
        ...

    async def list_policies(
        self, tenant_id: str, action_key: str | None = None
    ) -> list[dict[str, Any]]:
        """List policies, newest version first."""
        ...

    async def update_policy_status(
        self,
        tenant_id: str,
        policy_id: str,
        status: str,
        expected_status: str | None = None,
    ) -> bool:
        """Change a policy's status (optionally only from ``expected_status``)."""
        ...

    # -------------------------------------------------------------------------
    # Workflow Instance Methods
    # -------------------------------------------------------------------------

    async def create_instance_if_absent(
        self,
        instance_id: str,
        tenant_id: str,
        definition_id: str,
        business_key: str,
        context: dict[str, Any],
        start_event: dict[str, Any] | None,
        task_names: list[str],
    ) -> tuple[dict[str, Any], bool]:
        """
        Create a workflow instance with its tasks unless the business key exists.

        Returns:
            (instance, created). When another instance already owns the
            business key it is returned with ``created=False``.
        """
        ...

    async def get_instance(self, tenant_id: str, instance_id: str) -> dict[str, Any] | None:
        """Get a workflow instance."""
        ...

    async def find_instance_by_business_key(
        self, tenant_id: str, business_key: str
    ) -> dict[str, Any] | None:
        """Get the workflow instance owning ``business_key``."""
        ...

    async def update_instance_state(
        self,
        tenant_id: str,
        instance_id: str,
        status: str,
        current_state: str,
        expected_status: str | None = None,
    ) -> bool:
        """
        Update instance status and state.

        Returns:
            False if the instance is missing or not in ``expected_status``
        """
        ...

    # -------------------------------------------------------------------------
    # Workflow Task Methods
    # -------------------------------------------------------------------------

    async def list_tasks(self, tenant_id: str, instance_id: str) -> list[dict[str, Any]]:
        """List an instance's tasks ordered by position."""
        ...

    async def get_task(self, tenant_id: str, task_id: str) -> dict[str, Any] | None:
        """Get a task."""
        ...

    async def update_task(
        self,
        tenant_id: str,
        task_id: str,
        status: str,
        output: dict[str, Any] | None = None,
        completed_by: str | None = None,
        expected_status: str | None = None,
    ) -> bool:
        """Update a task's status (optionally only from ``expected_status``)."""
        ...

    # -------------------------------------------------------------------------
    # Audit Log / Domain Event Methods
    # -------------------------------------------------------------------------

    async def append_audit_entry(
        self,
        tenant_id: str,
        user_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: dict[str, Any],
    ) -> str:
        """Append an audit entry and return its id."""
        ...

    async def list_audit_entries(
        self,
        tenant_id: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
    ) -> list[dict[str, Any]]:
        """List audit entries, oldest first."""
        ...

    async def append_domain_event(
        self, tenant_id: str, event_type: str, payload: dict[str, Any]
    ) -> str:
        """Append a domain event and return its id."""
        ...

    async def list_domain_events(
        self, tenant_id: str, event_type: str | None = None
    ) -> list[dict[str, Any]]:
        """List domain events, oldest first."""
        ...

    # -------------------------------------------------------------------------
    # Transactional Outbox Methods
    # -------------------------------------------------------------------------

    async def add_outbox_event(
        self,
        event_id: str,
        tenant_id: str,
        event_type: str,
        payload: dict[str, Any],
        correlation_id: str | None = None,
        available_at: datetime | None = None,
    ) -> None:
        """Add a PENDING event to the transactional outbox."""
        ...

    async def lease_outbox_events(
        self,
        worker_id: str,
        limit: int,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """
        Lease due events for delivery.

        Due events are PENDING with ``available_at <= now`` or LEASED with an
        expired ``locked_until``. Each one is marked LEASED with
        ``locked_by=worker_id`` by a conditional update, so an event is leased by
        at most one worker at a time.
        """
        ...

    async def extend_outbox_lease(
        self,
        event_id: str,
        worker_id: str,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> bool:
        """Push ``locked_until`` forward if ``worker_id`` still owns the lease."""
        ...

    async def mark_outbox_sent(
        self, event_id: str, worker_id: str, now: datetime | None = None
    ) -> bool:
        """Mark a leased event SENT if ``worker_id`` still owns the lease."""
        ...

    async def mark_outbox_failed(
        self,
        event_id: str,
        worker_id: str,
        error: str,
        retry_policy: RetryPolicy,
        retryable: bool = True,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Record a failed delivery attempt.

        Returns:
            ``{"outcome": "retried" | "failed" | "skipped", "attempts": int | None,
            "next_available_at": datetime | None}``
        """
        ...

    async def get_outbox_event(self, event_id: str) -> dict[str, Any] | None:
        """Get an outbox event."""
        ...

    async def list_outbox_events(
        self,
        tenant_id: str | None = None,
        status: str | None = None,
        event_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """List outbox events, oldest first."""
        ...

    async def get_outbox_stats(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Queue depth for monitoring.

        Expected keys: due_pending_count, oldest_due_pending_age_seconds
        """
        ...

    async def cleanup_sent_events(self, older_than_hours: int = 24) -> int:
        """Delete SENT events older than the threshold; returns the count."""
        ...
