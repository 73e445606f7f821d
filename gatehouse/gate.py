"""
Approval gate.

``ApprovalGate.require_approval`` decides whether a business action may
proceed now, must wait for a human decision, or was already decided:

1. The idempotency ledger deduplicates retries of the same request.
2. Without an active policy, or when the policy's rules do not match the
   payload, the action is auto-approved.
3. Otherwise a workflow instance is started (or found) for the entity and the
   caller is told to wait.

Steps 2 and 3 and the ledger completion run in one storage transaction, so
audit entries, domain events, outbox events and the stored response are
committed together.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gatehouse.exceptions import IdempotencyKeyMismatchError, ValidationError
from gatehouse.hashing import hash_canonical_payload
from gatehouse.idempotency import IdempotencyLedger, IdempotencyMode
from gatehouse.outbox.transactional import enqueue_event
from gatehouse.policies import ApprovalPolicyStore
from gatehouse.rules import evaluate, parse_rules
from gatehouse.storage.protocol import StorageProtocol
from gatehouse.workflow import WorkflowEngine

logger = logging.getLogger(__name__)

LEDGER_ACTION_PREFIX = "approvalGate"


class ApprovalStatus(str, Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"


# HTTP-style status stored with each ledger response
RESPONSE_STATUS = {
    ApprovalStatus.APPROVED: 200,
    ApprovalStatus.REJECTED: 409,
    ApprovalStatus.PENDING: 202,
}


@dataclass(frozen=True)
class ApprovalRequest:
    """A business action asking to pass the gate."""

    tenant_id: str
    user_id: str
    action_key: str
    entity_type: str
    entity_id: str
    idempotency_key: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApprovalResult:
    """
    Gate decision.

    Attributes:
        status: APPROVED, PENDING or REJECTED
        reason: Why (``no_policy``, ``rules_not_matched``, ``already_approved``,
            ``already_rejected``, ``workflow_not_active``,
            ``idempotency_in_progress``); None for a fresh PENDING
        instance_id: Workflow instance deciding the action, if any
        policy_id: Policy that applied, if any
    """

    status: ApprovalStatus
    reason: str | None = None
    instance_id: str | None = None
    policy_id: str | None = None

    @property
    def response_status(self) -> int:
        return RESPONSE_STATUS[self.status]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.instance_id is not None:
            data["instanceId"] = self.instance_id
        if self.policy_id is not None:
            data["policyId"] = self.policy_id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ApprovalResult":
        return cls(
            status=ApprovalStatus(data["status"]),
            reason=data.get("reason"),
            instance_id=data.get("instanceId"),
            policy_id=data.get("policyId"),
        )


def map_instance(instance: Mapping[str, Any], policy_id: str | None = None) -> ApprovalResult:
    """Translate a workflow instance into the gate's result."""
    status = instance["status"]
    state = (instance.get("current_state") or "").lower()
    policy_id = policy_id or instance.get("definition_id")

    if status == "COMPLETED" and state == "approved":
        return ApprovalResult(
            ApprovalStatus.APPROVED, "already_approved", instance["instance_id"], policy_id
        )
    if status == "COMPLETED" and state == "rejected":
        return ApprovalResult(
            ApprovalStatus.REJECTED, "already_rejected", instance["instance_id"], policy_id
        )
    if status in ("FAILED", "CANCELLED"):
        return ApprovalResult(
            ApprovalStatus.REJECTED, "workflow_not_active", instance["instance_id"], policy_id
        )
    return ApprovalResult(ApprovalStatus.PENDING, None, instance["instance_id"], policy_id)


class ApprovalGate:
    """
    Idempotent approval gate for business actions.

    Example:
        >>> gate = ApprovalGate(storage)
        >>> result = await gate.require_approval(
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
        >>> result.status
        <ApprovalStatus.PENDING: 'PENDING'>
    """

    def __init__(
        self,
        storage: StorageProtocol,
        ledger: IdempotencyLedger | None = None,
        policies: ApprovalPolicyStore | None = None,
        workflows: WorkflowEngine | None = None,
    ):
        self.storage = storage
        self.ledger = ledger or IdempotencyLedger(storage)
        self.policies = policies or ApprovalPolicyStore(storage)
        self.workflows = workflows or WorkflowEngine(storage)

    async def require_approval(self, request: ApprovalRequest) -> ApprovalResult:
        """
        Decide whether ``request`` may proceed.

        Returns:
            APPROVED (proceed), PENDING (wait for the workflow) or REJECTED

        Raises:
            ValidationError: If the request is incomplete (nothing is written)
            IdempotencyKeyMismatchError: If the key was used for another payload
        """
        _validate_request(request)
        ledger_action = f"{LEDGER_ACTION_PREFIX}:{request.action_key}"
        request_hash = hash_canonical_payload(
            {
                "actionKey": request.action_key,
                "entityId": request.entity_id,
                "payload": dict(request.payload),
            }
        )

        start = await self.ledger.start_or_replay(
            ledger_action,
            request.tenant_id,
            request.user_id,
            request.idempotency_key,
            request_hash,
        )
        if start.mode in (IdempotencyMode.REPLAY, IdempotencyMode.FAILED):
            logger.debug(f"Replaying gate result for key {request.idempotency_key}")
            return ApprovalResult.from_dict(start.response_body)
        if start.mode is IdempotencyMode.IN_PROGRESS:
            return ApprovalResult(ApprovalStatus.PENDING, "idempotency_in_progress")
        if start.mode is IdempotencyMode.MISMATCH:
            raise IdempotencyKeyMismatchError(ledger_action, request.idempotency_key)

        async with self.storage.transaction():
            result = await self._decide(request)
            await self.ledger.complete(
                ledger_action,
                request.tenant_id,
                request.idempotency_key,
                result.response_status,
                result.to_dict(),
            )

        logger.info(
            f"Approval gate {request.action_key} for {request.entity_type}:{request.entity_id} "
            f"-> {result.status.value} ({result.reason or 'workflow'})"
        )
        return result

    async def get_status(
        self, tenant_id: str, action_key: str, entity_id: str
    ) -> ApprovalResult | None:
        """
        Current decision for an entity, read from its workflow instance.

        Unlike ``require_approval`` this never consults the ledger, so it
        reflects decisions made after the original request was answered.
        """
        instance = await self.workflows.find_instance_by_business_key(
            tenant_id, business_key(action_key, entity_id)
        )
        if instance is None:
            return None
        return map_instance(instance)

    async def _decide(self, request: ApprovalRequest) -> ApprovalResult:
        policy = await self.policies.find_active_policy(request.tenant_id, request.action_key)
        if policy is None:
            return await self._auto_approve(request, "no_policy", None)

        rules = parse_rules(policy["rules"])
        if rules is not None and not evaluate(rules, request.payload):
            return await self._auto_approve(request, "rules_not_matched", policy["policy_id"])

        instance, created = await self.workflows.start_instance(
            tenant_id=request.tenant_id,
            definition_id=policy["policy_id"],
            business_key=business_key(request.action_key, request.entity_id),
            context={
                "actionKey": request.action_key,
                "entityType": request.entity_type,
                "entityId": request.entity_id,
                "payload": dict(request.payload),
                "requestedBy": request.user_id,
            },
            start_event={
                "type": "approval.requested",
                "payload": {
                    "actionKey": request.action_key,
                    "entityId": request.entity_id,
                    "payload": dict(request.payload),
                },
            },
            steps=policy["workflow_template"],
        )

        if created:
            await self._record_requested(request, instance["instance_id"], policy["policy_id"])

        return map_instance(instance, policy["policy_id"])

    async def _auto_approve(
        self, request: ApprovalRequest, reason: str, policy_id: str | None
    ) -> ApprovalResult:
        metadata: dict[str, Any] = {"actionKey": request.action_key, "reason": reason}
        if policy_id is not None:
            metadata["policyId"] = policy_id
        await self.storage.append_audit_entry(
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            action="approval.gate.skipped",
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            metadata=metadata,
        )
        await enqueue_event(
            self.storage,
            request.tenant_id,
            "approval.auto_approved",
            {
                "actionKey": request.action_key,
                "entityType": request.entity_type,
                "entityId": request.entity_id,
                "reason": reason,
                "policyId": policy_id,
            },
        )
        return ApprovalResult(ApprovalStatus.APPROVED, reason)

    async def _record_requested(
        self, request: ApprovalRequest, instance_id: str, policy_id: str
    ) -> None:
        payload = {
            "actionKey": request.action_key,
            "instanceId": instance_id,
            "entityId": request.entity_id,
        }
        await self.storage.append_audit_entry(
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            action="approval.requested",
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            metadata={**payload, "policyId": policy_id},
        )
        await self.storage.append_domain_event(request.tenant_id, "approval.requested", payload)
        await enqueue_event(
            self.storage,
            request.tenant_id,
            "approval.requested",
            {**payload, "entityType": request.entity_type, "policyId": policy_id},
            correlation_id=instance_id,
        )


def business_key(action_key: str, entity_id: str) -> str:
    return f"{action_key}:{entity_id}"


def _validate_request(request: ApprovalRequest) -> None:
    for name in ("tenant_id", "user_id", "action_key", "entity_type", "entity_id"):
        value = getattr(request, name)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} is required")
    if not isinstance(request.idempotency_key, str) or not request.idempotency_key.strip():
        raise ValidationError("idempotency_key is required")
    if not isinstance(request.payload, Mapping):
        raise ValidationError("payload must be an object")
