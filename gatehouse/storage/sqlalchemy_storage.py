"""
SQLAlchemy storage implementation for Gatehouse.

This module provides a SQLAlchemy-based implementation of the StorageProtocol,
supporting SQLite, PostgreSQL, and MySQL with database-based exclusive control
(conditional updates and leases) and the transactional outbox pattern.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, event, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.pool import StaticPool

from gatehouse.retry import RetryPolicy
from gatehouse.storage.models import (
    CURRENT_SCHEMA_VERSION,
    ApprovalPolicy,
    AuditEntry,
    Base,
    DomainEvent,
    IdempotencyRecord,
    OutboxEvent,
    SchemaVersion,
    WorkflowInstance,
    WorkflowTask,
)

logger = logging.getLogger(__name__)

# last_error is truncated to keep rows small
MAX_ERROR_LENGTH = 2000

TERMINAL_INSTANCE_STATUSES = ("COMPLETED", "FAILED", "CANCELLED")


@dataclass
class TransactionContext:
    """
    Transaction context for managing nested transactions.

    Uses savepoints for nested transaction support across all databases.
    """

    depth: int = 0
    """Current transaction depth (0 = not in transaction, 1+ = in transaction)"""

    savepoint_stack: list[Any] = field(default_factory=list)
    """Stack of nested transaction objects for savepoint support"""

    session: "AsyncSession | None" = None
    """The actual session for this transaction"""


# Context variable for transaction state (asyncio-safe)
_transaction_context: ContextVar[TransactionContext | None] = ContextVar(
    "_transaction_context", default=None
)


def _utc(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; every stored time is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _configure_sqlite(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy control SQLite transactions.

    The driver's implicit BEGIN is disabled and every transaction starts with
    BEGIN IMMEDIATE, so SAVEPOINTs nest inside a real transaction and writers
    queue on the busy timeout instead of failing on lock upgrades.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _loads(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


def _dumps(value: Any) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


# ============================================================================
# SQLAlchemyStorage
# ============================================================================


class SQLAlchemyStorage:
    """
    SQLAlchemy implementation of StorageProtocol.

    Supports SQLite, PostgreSQL, and MySQL.

    Transaction Architecture:
    - Lease and ledger-insert operations: Always use separate session
      (isolated, immediately committed transactions)
    - Everything else: Use transaction context session when available
    - Explicit transactions via begin/commit/rollback or ``transaction()``
    """

    def __init__(self, engine: AsyncEngine):
        """
        Initialize SQLAlchemy storage.

        Args:
            engine: SQLAlchemy AsyncEngine instance
        """
        self.engine = engine
        if engine.dialect.name == "sqlite":
            _configure_sqlite(engine)
        # StaticPool hands every session the same connection, so only one
        # session may hold it at a time
        self._connection_lock: asyncio.Lock | None = (
            asyncio.Lock() if isinstance(engine.sync_engine.pool, StaticPool) else None
        )

    async def initialize(self) -> None:
        """Initialize database connection and create tables."""
        async with self._serialized():
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            await self._initialize_schema_version()

    async def close(self) -> None:
        """Close database connection."""
        await self.engine.dispose()

    async def _initialize_schema_version(self) -> None:
        """Initialize schema version for a fresh database."""
        async with AsyncSession(self.engine) as session:
            result = await session.execute(select(func.count()).select_from(SchemaVersion))
            count = result.scalar()

            if count == 0:
                version = SchemaVersion(
                    version=CURRENT_SCHEMA_VERSION,
                    description="Initial schema: ledger, policies, workflows, outbox",
                )
                session.add(version)
                await session.commit()
                logger.info(f"Initialized schema version to {CURRENT_SCHEMA_VERSION}")

    def _get_session_for_operation(self, is_lock_operation: bool = False) -> AsyncSession:
        """
        Get the appropriate session for an operation.

        Lock operations ALWAYS use a new session (separate transactions).
        Other operations prefer: transaction session > new session.

        Args:
            is_lock_operation: True for lease and ledger-insert operations

        Returns:
            AsyncSession to use for the operation
        """
        if is_lock_operation:
            return AsyncSession(self.engine, expire_on_commit=False)

        ctx = _transaction_context.get()
        if ctx is not None and ctx.session is not None:
            return ctx.session

        return AsyncSession(self.engine, expire_on_commit=False)

    def _is_managed_session(self, session: AsyncSession) -> bool:
        """Check if session is managed by transaction context."""
        ctx = _transaction_context.get()
        return ctx is not None and ctx.session == session

    @asynccontextmanager
    async def _session_scope(self, session: AsyncSession) -> AsyncIterator[AsyncSession]:
        """
        Context manager for session usage.

        If session is managed (transaction context), use it directly without closing.
        If session is new, manage its lifecycle (commit/rollback/close).
        """
        if self._is_managed_session(session):
            yield session
        else:
            async with self._serialized():
                try:
                    yield session
                    await self._commit_if_not_in_transaction(session)
                except Exception:
                    await session.rollback()
                    raise
                finally:
                    await session.close()

    @asynccontextmanager
    async def _serialized(self) -> AsyncIterator[None]:
        """Hold the shared connection for the enclosed block (StaticPool only)."""
        if self._connection_lock is None or self.in_transaction():
            yield
            return
        async with self._connection_lock:
            yield

    @staticmethod
    def _now(now: datetime | None = None) -> datetime:
        return _utc(now) if now is not None else datetime.now(UTC)  # type: ignore[return-value]

    # -------------------------------------------------------------------------
    # Transaction Management Methods
    # -------------------------------------------------------------------------

    async def begin_transaction(self) -> None:
        """
        Begin a new transaction.

        If a transaction is already in progress, creates a nested transaction
        using savepoints. This is asyncio-safe using ContextVar.
        """
        ctx = _transaction_context.get()

        if ctx is None:
            if self._connection_lock is not None:
                await self._connection_lock.acquire()
            session = AsyncSession(self.engine, expire_on_commit=False)
            ctx = TransactionContext(session=session)
            _transaction_context.set(ctx)

        ctx.depth += 1

        if ctx.depth == 1:
            logger.debug("Beginning top-level transaction")
            try:
                await ctx.session.begin()  # type: ignore[union-attr]
            except BaseException:
                await self._end_top_level(ctx)
                raise
        else:
            nested_tx = await ctx.session.begin_nested()  # type: ignore[union-attr]
            ctx.savepoint_stack.append(nested_tx)
            logger.debug(f"Created nested transaction (savepoint) at depth={ctx.depth}")

    async def commit_transaction(self) -> None:
        """
        Commit the current transaction.

        For nested transactions, releases the savepoint.
        For top-level transactions, commits to the database.
        """
        ctx = _transaction_context.get()
        if ctx is None or ctx.depth == 0:
            raise RuntimeError("Not in a transaction")

        if ctx.depth == 1:
            logger.debug("Committing top-level transaction")
            try:
                await ctx.session.commit()  # type: ignore[union-attr]
            finally:
                await self._end_top_level(ctx)
            return

        nested_tx = ctx.savepoint_stack.pop()
        await nested_tx.commit()
        logger.debug(f"Committed nested transaction (savepoint) at depth={ctx.depth}")
        ctx.depth -= 1

    async def rollback_transaction(self) -> None:
        """
        Rollback the current transaction.

        For nested transactions, rolls back to the savepoint.
        For top-level transactions, rolls back all changes.
        """
        ctx = _transaction_context.get()
        if ctx is None or ctx.depth == 0:
            raise RuntimeError("Not in a transaction")

        if ctx.depth == 1:
            logger.debug("Rolling back top-level transaction")
            try:
                await ctx.session.rollback()  # type: ignore[union-attr]
            finally:
                await self._end_top_level(ctx)
            return

        nested_tx = ctx.savepoint_stack.pop()
        await nested_tx.rollback()
        logger.debug(f"Rolled back nested transaction (savepoint) at depth={ctx.depth}")
        ctx.depth -= 1

    async def _end_top_level(self, ctx: TransactionContext) -> None:
        try:
            await ctx.session.close()  # type: ignore[union-attr]
        finally:
            ctx.depth = 0
            _transaction_context.set(None)
            if self._connection_lock is not None:
                self._connection_lock.release()

    def in_transaction(self) -> bool:
        """
        Check if currently in a transaction.

        Returns:
            True if in a transaction, False otherwise.
        """
        ctx = _transaction_context.get()
        return ctx is not None and ctx.depth > 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Run the enclosed block in a transaction (a savepoint when nested).

        Example:
            >>> async with storage.transaction():
            ...     await storage.append_audit_entry(...)
            ...     await storage.add_outbox_event(...)
        """
        await self.begin_transaction()
        try:
            yield
        except BaseException:
            await self.rollback_transaction()
            raise
        await self.commit_transaction()

    async def _commit_if_not_in_transaction(self, session: AsyncSession) -> None:
        """
        Commit session if not in a transaction (auto-commit mode).

        Operations outside of explicit transactions are committed immediately,
        while operations inside transactions are deferred until the
        transaction is committed.

        Args:
            session: Database session
        """
        ctx = _transaction_context.get()
        if ctx is not None and ctx.session == session:
            return

        if not self.in_transaction():
            await session.commit()

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
        Insert an IN_PROGRESS record unless the key exists.

        Note: ALWAYS uses separate session so the claim is committed before the
        caller does any work.
        """
        session = self._get_session_for_operation(is_lock_operation=True)
        async with self._session_scope(session) as session:
            session.add(
                IdempotencyRecord(
                    tenant_id=tenant_id,
                    action_key=action_key,
                    idempotency_key=idempotency_key,
                    user_id=user_id,
                    request_hash=request_hash,
                    status="IN_PROGRESS",
                    created_at=datetime.now(UTC),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug(
                    f"Idempotency key already claimed: tenant={tenant_id}, "
                    f"action={action_key}, key={idempotency_key}"
                )
                return False
            return True

    async def get_idempotency_record(
        self, tenant_id: str, action_key: str, idempotency_key: str
    ) -> dict[str, Any] | None:
        """Get an idempotency record."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                select(IdempotencyRecord)
                .where(
                    and_(
                        IdempotencyRecord.tenant_id == tenant_id,
                        IdempotencyRecord.action_key == action_key,
                        IdempotencyRecord.idempotency_key == idempotency_key,
                    )
                )
                .execution_options(populate_existing=True)
            )
            record = result.scalar_one_or_none()
            return self._idempotency_to_dict(record) if record is not None else None

    async def complete_idempotency_record(
        self,
        tenant_id: str,
        action_key: str,
        idempotency_key: str,
        status: str,
        response_status: int,
        response_body: Any,
    ) -> bool:
        """Transition IN_PROGRESS to a terminal status (compare-and-set)."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                update(IdempotencyRecord)
                .where(
                    and_(
                        IdempotencyRecord.tenant_id == tenant_id,
                        IdempotencyRecord.action_key == action_key,
                        IdempotencyRecord.idempotency_key == idempotency_key,
                        IdempotencyRecord.status == "IN_PROGRESS",
                    )
                )
                .values(
                    status=status,
                    response_status=response_status,
                    response_body=_dumps(response_body),
                    completed_at=datetime.now(UTC),
                )
            )
            await self._commit_if_not_in_transaction(session)
            return bool(result.rowcount and result.rowcount > 0)  # type: ignore[attr-defined]

    async def delete_in_progress_idempotency_record(
        self, tenant_id: str, action_key: str, idempotency_key: str
    ) -> bool:
        """Delete a record only while it is still IN_PROGRESS."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(
                    and_(
                        IdempotencyRecord.tenant_id == tenant_id,
                        IdempotencyRecord.action_key == action_key,
                        IdempotencyRecord.idempotency_key == idempotency_key,
                        IdempotencyRecord.status == "IN_PROGRESS",
                    )
                )
            )
            await self._commit_if_not_in_transaction(session)
            return bool(result.rowcount and result.rowcount > 0)  # type: ignore[attr-defined]

    async def list_stale_in_progress_records(
        self, older_than: datetime, limit: int = 100
    ) -> list[dict[str, Any]]:
        """List IN_PROGRESS records created before ``older_than``."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                select(IdempotencyRecord)
                .where(
                    and_(
                        IdempotencyRecord.status == "IN_PROGRESS",
                        IdempotencyRecord.created_at < _utc(older_than),
                    )
                )
                .order_by(IdempotencyRecord.created_at.asc())
                .limit(limit)
            )
            return [self._idempotency_to_dict(r) for r in result.scalars().all()]

    @staticmethod
    def _idempotency_to_dict(record: IdempotencyRecord) -> dict[str, Any]:
        return {
            "tenant_id": record.tenant_id,
            "action_key": record.action_key,
            "idempotency_key": record.idempotency_key,
            "user_id": record.user_id,
            "request_hash": record.request_hash,
            "status": record.status,
            "response_status": record.response_status,
            "response_body": _loads(record.response_body),  # type: ignore[arg-type]
            "created_at": _utc(record.created_at),  # type: ignore[arg-type]
            "completed_at": _utc(record.completed_at),  # type: ignore[arg-type]
        }

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
        """Insert the next ACTIVE version and deactivate the previous one."""
        async with self.transaction():
            session = self._get_session_for_operation()
            result = await session.execute(
                select(func.max(ApprovalPolicy.version)).where(
                    and_(
                        ApprovalPolicy.tenant_id == tenant_id,
                        ApprovalPolicy.action_key == action_key,
                    )
                )
            )
            version = (result.scalar() or 0) + 1

            await session.execute(
                update(ApprovalPolicy)
                .where(
                    and_(
                        ApprovalPolicy.tenant_id == tenant_id,
                        ApprovalPolicy.action_key == action_key,
                        ApprovalPolicy.status == "ACTIVE",
                    )
                )
                .values(status="INACTIVE")
            )

            policy = ApprovalPolicy(
                policy_id=policy_id,
                tenant_id=tenant_id,
                action_key=action_key,
                version=version,
                name=name,
                rules=_dumps(rules),
                workflow_template=json.dumps(workflow_template),
                status="ACTIVE",
                created_by=created_by,
                created_at=datetime.now(UTC),
            )
            session.add(policy)
            await session.flush()
            return self._policy_to_dict(policy)

    async def find_active_policy(self, tenant_id: str, action_key: str) -> dict[str, Any] | None:
        """Get the ACTIVE policy for an action key."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                select(ApprovalPolicy)
                .where(
                    and_(
                        ApprovalPolicy.tenant_id == tenant_id,
                        ApprovalPolicy.action_key == action_key,
                        ApprovalPolicy.status == "ACTIVE",
                    )
                )
                .order_by(ApprovalPolicy.version.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
            policy = result.scalar_one_or_none()
            return self._policy_to_dict(policy) if policy is not None else None

    async def get_policy(self, tenant_id: str, policy_id: str) -> dict[str, Any] | None:
        """Get a policy by id."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                select(ApprovalPolicy)
                .where(
                    and_(
                        ApprovalPolicy.tenant_id == tenant_id,
                        ApprovalPolicy.policy_id == policy_id,
                    )
                )
                .execution_options(populate_existing=True)
            )
            policy = result.scalar_one_or_none()
            return self._policy_to_dict(policy) if policy is not None else None

    async def list_policies(
        self, tenant_id: str, action_key: str | None = None
    ) -> list[dict[str, Any]]:
        """List policies, newest version first."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            query = select(ApprovalPolicy).where(ApprovalPolicy.tenant_id == tenant_id)
            if action_key is not None:
                query = query.where(ApprovalPolicy.action_key == action_key)
            query = query.order_by(
                ApprovalPolicy.action_key.asc(), ApprovalPolicy.version.desc()
            ).execution_options(populate_existing=True)
            result = await session.execute(query)
            return [self._policy_to_dict(p) for p in result.scalars().all()]

    async def update_policy_status(
        self,
        tenant_id: str,
        policy_id: str,
        status: str,
        expected_status: str | None = None,
    ) -> bool:
        """Change a policy's status."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            conditions = [
                ApprovalPolicy.tenant_id == tenant_id,
                ApprovalPolicy.policy_id == policy_id,
            ]
            if expected_status is not None:
                conditions.append(ApprovalPolicy.status == expected_status)
            result = await session.execute(
                update(ApprovalPolicy).where(and_(*conditions)).values(status=status)
            )
            await self._commit_if_not_in_transaction(session)
            return bool(result.rowcount and result.rowcount > 0)  # type: ignore[attr-defined]

    @staticmethod
    def _policy_to_dict(policy: ApprovalPolicy) -> dict[str, Any]:
        return {
            "policy_id": policy.policy_id,
            "tenant_id": policy.tenant_id,
            "action_key": policy.action_key,
            "version": policy.version,
            "name": policy.name,
            "rules": _loads(policy.rules),  # type: ignore[arg-type]
            "workflow_template": json.loads(policy.workflow_template),  # type: ignore[arg-type]
            "status": policy.status,
            "created_by": policy.created_by,
            "created_at": _utc(policy.created_at),  # type: ignore[arg-type]
        }

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
        Create an instance and its tasks unless the business key is taken.

        The insert runs in a savepoint; a unique violation on
        ``(tenant_id, business_key)`` means a concurrent caller won, and its
        instance is returned instead.
        """
        async with self.transaction():
            existing = await self.find_instance_by_business_key(tenant_id, business_key)
            if existing is not None:
                return existing, False

            current_time = datetime.now(UTC)
            try:
                async with self.transaction():
                    session = self._get_session_for_operation()
                    session.add(
                        WorkflowInstance(
                            instance_id=instance_id,
                            tenant_id=tenant_id,
                            definition_id=definition_id,
                            business_key=business_key,
                            status="ACTIVE",
                            current_state="start",
                            context=json.dumps(context, default=str),
                            start_event=_dumps(start_event),
                            created_at=current_time,
                            updated_at=current_time,
                        )
                    )
                    await session.flush()
                    for position, name in enumerate(task_names):
                        session.add(
                            WorkflowTask(
                                task_id=f"{instance_id}:{position}",
                                tenant_id=tenant_id,
                                instance_id=instance_id,
                                name=name,
                                position=position,
                                status="OPEN" if position == 0 else "WAITING",
                                created_at=current_time,
                            )
                        )
                    await session.flush()
            except IntegrityError:
                existing = await self.find_instance_by_business_key(tenant_id, business_key)
                if existing is None:
                    raise
                logger.debug(f"Instance for {business_key} created concurrently; reusing it")
                return existing, False

            created = await self.get_instance(tenant_id, instance_id)
            return created, True  # type: ignore[return-value]

    async def get_instance(self, tenant_id: str, instance_id: str) -> dict[str, Any] | None:
        """Get a workflow instance."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                select(WorkflowInstance)
                .where(
                    and_(
                        WorkflowInstance.tenant_id == tenant_id,
                        WorkflowInstance.instance_id == instance_id,
                    )
                )
                .execution_options(populate_existing=True)
            )
            instance = result.scalar_one_or_none()
            return self._instance_to_dict(instance) if instance is not None else None

    async def find_instance_by_business_key(
        self, tenant_id: str, business_key: str
    ) -> dict[str, Any] | None:
        """Get the instance owning a business key."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                select(WorkflowInstance)
                .where(
                    and_(
                        WorkflowInstance.tenant_id == tenant_id,
                        WorkflowInstance.business_key == business_key,
                    )
                )
                .execution_options(populate_existing=True)
            )
            instance = result.scalar_one_or_none()
            return self._instance_to_dict(instance) if instance is not None else None

    async def update_instance_state(
        self,
        tenant_id: str,
        instance_id: str,
        status: str,
        current_state: str,
        expected_status: str | None = None,
    ) -> bool:
        """Update instance status and state (compare-and-set on status)."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            current_time = datetime.now(UTC)
            conditions = [
                WorkflowInstance.tenant_id == tenant_id,
                WorkflowInstance.instance_id == instance_id,
            ]
            if expected_status is not None:
                conditions.append(WorkflowInstance.status == expected_status)

            values: dict[str, Any] = {
                "status": status,
                "current_state": current_state,
                "updated_at": current_time,
            }
            if status in TERMINAL_INSTANCE_STATUSES:
                values["completed_at"] = current_time

            result = await session.execute(
                update(WorkflowInstance).where(and_(*conditions)).values(**values)
            )
            await self._commit_if_not_in_transaction(session)
            return bool(result.rowcount and result.rowcount > 0)  # type: ignore[attr-defined]

    @staticmethod
    def _instance_to_dict(instance: WorkflowInstance) -> dict[str, Any]:
        return {
            "instance_id": instance.instance_id,
            "tenant_id": instance.tenant_id,
            "definition_id": instance.definition_id,
            "business_key": instance.business_key,
            "status": instance.status,
            "current_state": instance.current_state,
            "context": json.loads(instance.context),  # type: ignore[arg-type]
            "start_event": _loads(instance.start_event),  # type: ignore[arg-type]
            "created_at": _utc(instance.created_at),  # type: ignore[arg-type]
            "updated_at": _utc(instance.updated_at),  # type: ignore[arg-type]
            "completed_at": _utc(instance.completed_at),  # type: ignore[arg-type]
        }

    # -------------------------------------------------------------------------
    # Workflow Task Methods
    # -------------------------------------------------------------------------

    async def list_tasks(self, tenant_id: str, instance_id: str) -> list[dict[str, Any]]:
        """List an instance's tasks ordered by position."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                select(WorkflowTask)
                .where(
                    and_(
                        WorkflowTask.tenant_id == tenant_id,
                        WorkflowTask.instance_id == instance_id,
                    )
                )
                .order_by(WorkflowTask.position.asc())
                .execution_options(populate_existing=True)
            )
            return [self._task_to_dict(t) for t in result.scalars().all()]

    async def get_task(self, tenant_id: str, task_id: str) -> dict[str, Any] | None:
        """Get a task."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                select(WorkflowTask)
                .where(and_(WorkflowTask.tenant_id == tenant_id, WorkflowTask.task_id == task_id))
                .execution_options(populate_existing=True)
            )
            task = result.scalar_one_or_none()
            return self._task_to_dict(task) if task is not None else None

    async def update_task(
        self,
        tenant_id: str,
        task_id: str,
        status: str,
        output: dict[str, Any] | None = None,
        completed_by: str | None = None,
        expected_status: str | None = None,
    ) -> bool:
        """Update a task's status (compare-and-set on ``expected_status``)."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            conditions = [WorkflowTask.tenant_id == tenant_id, WorkflowTask.task_id == task_id]
            if expected_status is not None:
                conditions.append(WorkflowTask.status == expected_status)

            values: dict[str, Any] = {"status": status}
            if output is not None:
                values["output"] = json.dumps(output, default=str)
            if completed_by is not None:
                values["completed_by"] = completed_by
            if status in ("COMPLETED", "CANCELLED"):
                values["completed_at"] = datetime.now(UTC)

            result = await session.execute(
                update(WorkflowTask).where(and_(*conditions)).values(**values)
            )
            await self._commit_if_not_in_transaction(session)
            return bool(result.rowcount and result.rowcount > 0)  # type: ignore[attr-defined]

    @staticmethod
    def _task_to_dict(task: WorkflowTask) -> dict[str, Any]:
        return {
            "task_id": task.task_id,
            "tenant_id": task.tenant_id,
            "instance_id": task.instance_id,
            "name": task.name,
            "position": task.position,
            "status": task.status,
            "output": _loads(task.output),  # type: ignore[arg-type]
            "completed_by": task.completed_by,
            "created_at": _utc(task.created_at),  # type: ignore[arg-type]
            "completed_at": _utc(task.completed_at),  # type: ignore[arg-type]
        }

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
        """Append an audit entry."""
        entry_id = str(uuid.uuid4())
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            session.add(
                AuditEntry(
                    entry_id=entry_id,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    metadata_json=json.dumps(metadata, default=str),
                    created_at=datetime.now(UTC),
                )
            )
            await self._commit_if_not_in_transaction(session)
        return entry_id

    async def list_audit_entries(
        self,
        tenant_id: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
    ) -> list[dict[str, Any]]:
        """List audit entries, oldest first."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            query = select(AuditEntry).where(AuditEntry.tenant_id == tenant_id)
            if entity_type is not None:
                query = query.where(AuditEntry.entity_type == entity_type)
            if entity_id is not None:
                query = query.where(AuditEntry.entity_id == entity_id)
            if action is not None:
                query = query.where(AuditEntry.action == action)
            result = await session.execute(query.order_by(AuditEntry.created_at.asc()))
            return [
                {
                    "entry_id": e.entry_id,
                    "tenant_id": e.tenant_id,
                    "user_id": e.user_id,
                    "action": e.action,
                    "entity_type": e.entity_type,
                    "entity_id": e.entity_id,
                    "metadata": json.loads(e.metadata_json),  # type: ignore[arg-type]
                    "created_at": _utc(e.created_at),  # type: ignore[arg-type]
                }
                for e in result.scalars().all()
            ]

    async def append_domain_event(
        self, tenant_id: str, event_type: str, payload: dict[str, Any]
    ) -> str:
        """Append a domain event."""
        event_id = str(uuid.uuid4())
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            session.add(
                DomainEvent(
                    event_id=event_id,
                    tenant_id=tenant_id,
                    event_type=event_type,
                    payload=json.dumps(payload, default=str),
                    created_at=datetime.now(UTC),
                )
            )
            await self._commit_if_not_in_transaction(session)
        return event_id

    async def list_domain_events(
        self, tenant_id: str, event_type: str | None = None
    ) -> list[dict[str, Any]]:
        """List domain events, oldest first."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            query = select(DomainEvent).where(DomainEvent.tenant_id == tenant_id)
            if event_type is not None:
                query = query.where(DomainEvent.event_type == event_type)
            result = await session.execute(query.order_by(DomainEvent.created_at.asc()))
            return [
                {
                    "event_id": e.event_id,
                    "tenant_id": e.tenant_id,
                    "event_type": e.event_type,
                    "payload": json.loads(e.payload),  # type: ignore[arg-type]
                    "created_at": _utc(e.created_at),  # type: ignore[arg-type]
                }
                for e in result.scalars().all()
            ]

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
        """Add an event to the transactional outbox."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            current_time = datetime.now(UTC)
            session.add(
                OutboxEvent(
                    event_id=event_id,
                    tenant_id=tenant_id,
                    event_type=event_type,
                    payload=json.dumps(payload, default=str),
                    correlation_id=correlation_id,
                    status="PENDING",
                    attempts=0,
                    available_at=_utc(available_at) or current_time,
                    created_at=current_time,
                    updated_at=current_time,
                )
            )
            await self._commit_if_not_in_transaction(session)

    @staticmethod
    def _due_condition(current_time: datetime) -> Any:
        # PENDING and due, or LEASED by a worker whose lease ran out
        return or_(
            and_(OutboxEvent.status == "PENDING", OutboxEvent.available_at <= current_time),
            and_(OutboxEvent.status == "LEASED", OutboxEvent.locked_until < current_time),
        )

    async def lease_outbox_events(
        self,
        worker_id: str,
        limit: int,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """
        Lease due outbox events (with row-level locking where supported).

        Candidates are selected with SELECT FOR UPDATE SKIP LOCKED
        (PostgreSQL/MySQL; ignored by SQLite). Each candidate is then claimed
        by a conditional UPDATE that re-checks the due condition, so a row
        claimed by another worker in between is skipped.

        Note: ALWAYS uses separate session (not external session).
        """
        session = self._get_session_for_operation(is_lock_operation=True)
        async with self._session_scope(session) as session:
            current_time = self._now(now)
            lease_until = current_time + timedelta(seconds=lease_seconds)
            due = self._due_condition(current_time)

            result = await session.execute(
                select(OutboxEvent.event_id)
                .where(due)
                .order_by(OutboxEvent.available_at.asc(), OutboxEvent.created_at.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            candidate_ids = list(result.scalars().all())

            leased_ids: list[str] = []
            for event_id in candidate_ids:
                claimed = await session.execute(
                    update(OutboxEvent)
                    .where(and_(OutboxEvent.event_id == event_id, due))
                    .values(
                        status="LEASED",
                        locked_by=worker_id,
                        locked_until=lease_until,
                        updated_at=current_time,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:  # type: ignore[attr-defined]
                    leased_ids.append(event_id)
                else:
                    logger.debug(f"Outbox event {event_id} was leased by another worker")

            events: list[dict[str, Any]] = []
            if leased_ids:
                result = await session.execute(
                    select(OutboxEvent).where(OutboxEvent.event_id.in_(leased_ids))
                )
                by_id = {row.event_id: row for row in result.scalars().all()}
                events = [self._outbox_to_dict(by_id[eid]) for eid in leased_ids if eid in by_id]

            await session.commit()
            return events

    async def extend_outbox_lease(
        self,
        event_id: str,
        worker_id: str,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> bool:
        """
        Extend a lease that ``worker_id`` still owns.

        Note: ALWAYS uses separate session (not external session).
        """
        session = self._get_session_for_operation(is_lock_operation=True)
        async with self._session_scope(session) as session:
            current_time = self._now(now)
            result = await session.execute(
                update(OutboxEvent)
                .where(
                    and_(
                        OutboxEvent.event_id == event_id,
                        OutboxEvent.status == "LEASED",
                        OutboxEvent.locked_by == worker_id,
                    )
                )
                .values(
                    locked_until=current_time + timedelta(seconds=lease_seconds),
                    updated_at=current_time,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return bool(result.rowcount and result.rowcount > 0)  # type: ignore[attr-defined]

    async def mark_outbox_sent(
        self, event_id: str, worker_id: str, now: datetime | None = None
    ) -> bool:
        """
        Mark a leased event SENT (only the lease owner can).

        Note: ALWAYS uses separate session (not external session).
        """
        session = self._get_session_for_operation(is_lock_operation=True)
        async with self._session_scope(session) as session:
            current_time = self._now(now)
            result = await session.execute(
                update(OutboxEvent)
                .where(
                    and_(
                        OutboxEvent.event_id == event_id,
                        OutboxEvent.status == "LEASED",
                        OutboxEvent.locked_by == worker_id,
                    )
                )
                .values(
                    status="SENT",
                    sent_at=current_time,
                    locked_by=None,
                    locked_until=None,
                    updated_at=current_time,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return bool(result.rowcount and result.rowcount > 0)  # type: ignore[attr-defined]

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

        The event goes back to PENDING with a backoff delay while attempts
        remain and the error is retryable; otherwise it becomes FAILED.

        Note: ALWAYS uses separate session (not external session).
        """
        session = self._get_session_for_operation(is_lock_operation=True)
        async with self._session_scope(session) as session:
            current_time = self._now(now)
            owned = and_(
                OutboxEvent.event_id == event_id,
                OutboxEvent.status == "LEASED",
                OutboxEvent.locked_by == worker_id,
            )
            result = await session.execute(
                select(OutboxEvent.attempts).where(owned).with_for_update()
            )
            previous_attempts = result.scalar_one_or_none()
            if previous_attempts is None:
                await session.commit()
                logger.warning(
                    f"Skipping failure update for outbox event {event_id}: "
                    f"lease no longer owned by {worker_id}"
                )
                return {"outcome": "skipped", "attempts": None, "next_available_at": None}

            attempts = previous_attempts + 1
            values: dict[str, Any] = {
                "attempts": attempts,
                "last_error": error[:MAX_ERROR_LENGTH],
                "locked_by": None,
                "locked_until": None,
                "updated_at": current_time,
            }
            next_available_at = None
            if retryable and not retry_policy.is_exhausted(attempts):
                next_available_at = current_time + timedelta(
                    seconds=retry_policy.backoff_seconds(attempts)
                )
                values["status"] = "PENDING"
                values["available_at"] = next_available_at
                outcome = "retried"
            else:
                values["status"] = "FAILED"
                outcome = "failed"

            updated = await session.execute(
                update(OutboxEvent)
                .where(and_(owned, OutboxEvent.attempts == previous_attempts))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if not updated.rowcount:  # type: ignore[attr-defined]
                return {"outcome": "skipped", "attempts": None, "next_available_at": None}
            return {
                "outcome": outcome,
                "attempts": attempts,
                "next_available_at": next_available_at,
            }

    async def get_outbox_event(self, event_id: str) -> dict[str, Any] | None:
        """Get an outbox event."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            result = await session.execute(
                select(OutboxEvent)
                .where(OutboxEvent.event_id == event_id)
                .execution_options(populate_existing=True)
            )
            event = result.scalar_one_or_none()
            return self._outbox_to_dict(event) if event is not None else None

    async def list_outbox_events(
        self,
        tenant_id: str | None = None,
        status: str | None = None,
        event_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """List outbox events, oldest first."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            query = select(OutboxEvent)
            if tenant_id is not None:
                query = query.where(OutboxEvent.tenant_id == tenant_id)
            if status is not None:
                query = query.where(OutboxEvent.status == status)
            if event_type is not None:
                query = query.where(OutboxEvent.event_type == event_type)
            result = await session.execute(
                query.order_by(OutboxEvent.created_at.asc()).execution_options(
                    populate_existing=True
                )
            )
            return [self._outbox_to_dict(e) for e in result.scalars().all()]

    async def get_outbox_stats(self, now: datetime | None = None) -> dict[str, Any]:
        """Count due PENDING events and the age of the oldest one."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            current_time = self._now(now)
            result = await session.execute(
                select(func.count(), func.min(OutboxEvent.available_at)).where(
                    and_(
                        OutboxEvent.status == "PENDING",
                        OutboxEvent.available_at <= current_time,
                    )
                )
            )
            count, oldest = result.one()
            age = None
            if oldest is not None:
                age = max(0.0, (current_time - _utc(oldest)).total_seconds())  # type: ignore[operator]
            return {"due_pending_count": count or 0, "oldest_due_pending_age_seconds": age}

    async def cleanup_sent_events(self, older_than_hours: int = 24) -> int:
        """Clean up successfully sent events older than threshold."""
        session = self._get_session_for_operation()
        async with self._session_scope(session) as session:
            threshold = datetime.now(UTC) - timedelta(hours=older_than_hours)

            result = await session.execute(
                delete(OutboxEvent).where(
                    and_(
                        OutboxEvent.status == "SENT",
                        OutboxEvent.sent_at < threshold,
                    )
                )
            )
            await self._commit_if_not_in_transaction(session)
            return result.rowcount or 0  # type: ignore[attr-defined]

    @staticmethod
    def _outbox_to_dict(event: OutboxEvent) -> dict[str, Any]:
        return {
            "event_id": event.event_id,
            "tenant_id": event.tenant_id,
            "event_type": event.event_type,
            "payload": json.loads(event.payload),  # type: ignore[arg-type]
            "correlation_id": event.correlation_id,
            "status": event.status,
            "attempts": event.attempts,
            "available_at": _utc(event.available_at),  # type: ignore[arg-type]
            "locked_by": event.locked_by,
            "locked_until": _utc(event.locked_until),  # type: ignore[arg-type]
            "last_error": event.last_error,
            "created_at": _utc(event.created_at),  # type: ignore[arg-type]
            "updated_at": _utc(event.updated_at),  # type: ignore[arg-type]
            "sent_at": _utc(event.sent_at),  # type: ignore[arg-type]
        }
