"""
Gatehouse - idempotent approval gate with a transactional outbox.

Example:
    >>> from gatehouse import ApprovalRequest, GatehouseApp
    >>>
    >>> app = GatehouseApp(db_url="sqlite:///gatehouse.db", outbox_enabled=True)
    >>> await app.initialize()
    >>> await app.policies.create_policy(
    ...     "acme", "invoice.pay", {"all": [{"field": "amount", "operator": "gt", "value": 10000}]}
    ... )
    >>> result = await app.require_approval(
    ...     ApprovalRequest(
    ...         tenant_id="acme",
    ...         user_id="u-1",
    ...         action_key="invoice.pay",
    ...         entity_type="invoice",
    ...         entity_id="inv-42",
    ...         idempotency_key="pay-inv-42",
    ...         payload={"amount": 12000},
    ...     )
    ... )
"""

from gatehouse.app import GatehouseApp
from gatehouse.config import GatehouseConfig, OutboxWorkerConfig
from gatehouse.exceptions import (
    GatehouseError,
    IdempotencyKeyMismatchError,
    NotFoundError,
    PermanentDeliveryError,
    TransientDeliveryError,
    UnknownEventTypeError,
    ValidationError,
    WorkflowStateError,
)
from gatehouse.gate import ApprovalGate, ApprovalRequest, ApprovalResult, ApprovalStatus
from gatehouse.idempotency import GLOBAL_TENANT, IdempotencyLedger, IdempotencyMode
from gatehouse.outbox import (
    CloudEventsPublisher,
    IdempotentHandler,
    OutboxMessage,
    OutboxWorker,
    enqueue_event,
)
from gatehouse.policies import ApprovalPolicyStore
from gatehouse.retry import RetryPolicy
from gatehouse.rules import evaluate, parse_rules
from gatehouse.workflow import WorkflowEngine

__version__ = "0.1.0"

__all__ = [
    "GatehouseApp",
    "GatehouseConfig",
    "OutboxWorkerConfig",
    "ApprovalGate",
    "ApprovalRequest",
    "ApprovalResult",
    "ApprovalStatus",
    "ApprovalPolicyStore",
    "WorkflowEngine",
    "IdempotencyLedger",
    "IdempotencyMode",
    "GLOBAL_TENANT",
    "OutboxWorker",
    "OutboxMessage",
    "CloudEventsPublisher",
    "IdempotentHandler",
    "enqueue_event",
    "RetryPolicy",
    "evaluate",
    "parse_rules",
    "GatehouseError",
    "ValidationError",
    "IdempotencyKeyMismatchError",
    "NotFoundError",
    "WorkflowStateError",
    "TransientDeliveryError",
    "PermanentDeliveryError",
    "UnknownEventTypeError",
]
