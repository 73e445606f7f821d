"""
SQLAlchemy ORM models for Gatehouse.

This module defines the tables for idempotency records, approval policies,
workflow instances and tasks, the transactional outbox, the audit log and the
domain event history. Every table carries ``tenant_id``.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import declarative_base

# Declarative base for ORM models
Base = declarative_base()

# Current schema version
CURRENT_SCHEMA_VERSION = 1


class SchemaVersion(Base):  # type: ignore[valid-type, misc]
    """Schema version tracking."""

    __tablename__ = "schema_version"

    version = Column(Integer, primary_key=True)
    applied_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    description = Column(Text, nullable=False)


class IdempotencyRecord(Base):  # type: ignore[valid-type, misc]
    """Ledger entry for one (tenant, action, idempotency key)."""

    __tablename__ = "idempotency_records"

    tenant_id = Column(String(255), primary_key=True)
    action_key = Column(String(255), primary_key=True)
    idempotency_key = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=True)
    request_hash = Column(String(128), nullable=False)
    status = Column(String(20), nullable=False, server_default=text("'IN_PROGRESS'"))
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('IN_PROGRESS', 'COMPLETED', 'FAILED')",
            name="valid_idempotency_status",
        ),
        Index("idx_idempotency_status_created", "status", "created_at"),
    )


class ApprovalPolicy(Base):  # type: ignore[valid-type, misc]
    """Versioned approval policy for one action key."""

    __tablename__ = "approval_policies"

    policy_id = Column(String(255), primary_key=True)
    tenant_id = Column(String(255), nullable=False)
    action_key = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False)
    name = Column(String(255), nullable=True)
    rules = Column(Text, nullable=True)  # JSON rule tree
    workflow_template = Column(Text, nullable=False)  # JSON
    status = Column(String(20), nullable=False, server_default=text("'ACTIVE'"))
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'INACTIVE', 'ARCHIVED')",
            name="valid_policy_status",
        ),
        UniqueConstraint("tenant_id", "action_key", "version", name="unique_policy_version"),
        Index("idx_policies_lookup", "tenant_id", "action_key", "status"),
    )


class WorkflowInstance(Base):  # type: ignore[valid-type, misc]
    """One approval process for a business entity."""

    __tablename__ = "workflow_instances"

    instance_id = Column(String(255), primary_key=True)
    tenant_id = Column(String(255), nullable=False)
    definition_id = Column(String(255), nullable=False)
    business_key = Column(String(512), nullable=False)
    status = Column(String(20), nullable=False, server_default=text("'ACTIVE'"))
    current_state = Column(String(50), nullable=False, server_default=text("'start'"))
    context = Column(Text, nullable=False)  # JSON
    start_event = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'COMPLETED', 'FAILED', 'CANCELLED')",
            name="valid_instance_status",
        ),
        UniqueConstraint("tenant_id", "business_key", name="unique_instance_business_key"),
        Index("idx_instances_status", "tenant_id", "status"),
        Index("idx_instances_definition", "definition_id"),
    )


class WorkflowTask(Base):  # type: ignore[valid-type, misc]
    """Human decision point inside a workflow instance."""

    __tablename__ = "workflow_tasks"

    task_id = Column(String(255), primary_key=True)
    tenant_id = Column(String(255), nullable=False)
    instance_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, server_default=text("'WAITING'"))
    output = Column(Text, nullable=True)  # JSON
    completed_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        ForeignKeyConstraint(
            ["instance_id"],
            ["workflow_instances.instance_id"],
            ondelete="CASCADE",
        ),
        CheckConstraint(
            "status IN ('WAITING', 'OPEN', 'COMPLETED', 'CANCELLED')",
            name="valid_task_status",
        ),
        UniqueConstraint("instance_id", "position", name="unique_instance_task_position"),
        Index("idx_tasks_instance", "instance_id", "position"),
        Index("idx_tasks_open", "tenant_id", "status"),
    )


class OutboxEvent(Base):  # type: ignore[valid-type, misc]
    """Transactional outbox pattern events."""

    __tablename__ = "outbox_events"

    event_id = Column(String(255), primary_key=True)
    tenant_id = Column(String(255), nullable=False)
    event_type = Column(String(255), nullable=False)
    payload = Column(Text, nullable=False)  # JSON
    correlation_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, server_default=text("'PENDING'"))
    attempts = Column(Integer, nullable=False, server_default=text("0"))
    available_at = Column(DateTime(timezone=True), nullable=False)
    locked_by = Column(String(255), nullable=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'LEASED', 'SENT', 'FAILED')",
            name="valid_outbox_status",
        ),
        Index("idx_outbox_due", "status", "available_at", "created_at"),
        Index("idx_outbox_lease", "status", "locked_until"),
        Index("idx_outbox_sent", "sent_at"),
        Index("idx_outbox_tenant", "tenant_id", "event_type"),
    )


class AuditEntry(Base):  # type: ignore[valid-type, misc]
    """Who did what to which entity."""

    __tablename__ = "audit_log"

    entry_id = Column(String(255), primary_key=True)
    tenant_id = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=True)
    action = Column(String(255), nullable=False)
    entity_type = Column(String(255), nullable=False)
    entity_id = Column(String(255), nullable=False)
    metadata_json = Column("metadata", Text, nullable=False)  # JSON
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_audit_entity", "tenant_id", "entity_type", "entity_id"),
        Index("idx_audit_action", "tenant_id", "action"),
    )


class DomainEvent(Base):  # type: ignore[valid-type, misc]
    """Local history of approval facts."""

    __tablename__ = "domain_events"

    event_id = Column(String(255), primary_key=True)
    tenant_id = Column(String(255), nullable=False)
    event_type = Column(String(255), nullable=False)
    payload = Column(Text, nullable=False)  # JSON
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_domain_events_type", "tenant_id", "event_type", "created_at"),)
