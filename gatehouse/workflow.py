"""
Workflow instance engine for approvals.

A workflow instance is one approval process for one business entity. It owns
an ordered list of tasks (one per review step of the policy's template); only
one task is OPEN at a time. Decisions move the instance through these states::

    start -> in_review -> approved
      |          |
      +----------+-----> rejected
      +----------------> cancelled

Every terminal transition writes an audit entry, a domain event and an outbox
event in the same transaction as the state change.
"""

import logging
import uuid
from collections.abc import Mapping, Sequence
from typing import Any

from gatehouse.exceptions import NotFoundError, ValidationError, WorkflowStateError
from gatehouse.outbox.transactional import enqueue_event
from gatehouse.policies import step_names
from gatehouse.storage.protocol import StorageProtocol

logger = logging.getLogger(__name__)

APPROVE = "APPROVE"
REJECT = "REJECT"

OPEN_TASK_STATUSES = ("OPEN", "WAITING")


def resolve_decision(output: Mapping[str, Any] | None, event: Mapping[str, Any] | None) -> str:
    """
    Read the decision from a task output, falling back to the event type.

    ``{"decision": "approve"}`` and an event of type ``"task.approved"`` both
    mean APPROVE.

    Raises:
        ValidationError: If no decision can be determined
    """
    decision = (output or {}).get("decision")
    if isinstance(decision, str) and decision.strip():
        normalized = decision.strip().upper()
        if normalized in (APPROVE, REJECT):
            return normalized
        raise ValidationError(f"Unknown decision: {decision!r}")

    event_type = str((event or {}).get("type") or "").lower()
    if event_type.endswith("approved"):
        return APPROVE
    if event_type.endswith("rejected"):
        return REJECT
    raise ValidationError("Task output must contain a decision (APPROVE or REJECT)")


class WorkflowEngine:
    """Starts approval workflows and applies reviewer decisions."""

    def __init__(self, storage: StorageProtocol):
        self.storage = storage

    async def start_instance(
        self,
        tenant_id: str,
        definition_id: str,
        business_key: str,
        context: dict[str, Any],
        start_event: dict[str, Any] | None,
        steps: Sequence[str] | Mapping[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        """
        Return the instance for ``business_key``, creating it if needed.

        Args:
            tenant_id: Owning tenant
            definition_id: Policy id the instance was started from
            business_key: ``actionKey:entityId``; unique per tenant
            context: Snapshot of the triggering request
            start_event: Event that started the workflow
            steps: Step names, or a workflow template with a ``steps`` list

        Returns:
            (instance, created). ``created`` is False when an instance already
            existed, in any status.
        """
        names = step_names(steps) if isinstance(steps, Mapping) else list(steps)
        if not names:
            raise ValidationError("A workflow needs at least one step")

        instance, created = await self.storage.create_instance_if_absent(
            instance_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            definition_id=definition_id,
            business_key=business_key,
            context=context,
            start_event=start_event,
            task_names=names,
        )
        if created:
            logger.info(f"Started workflow {instance['instance_id']} for {business_key}")
        return instance, created

    async def get_instance(self, tenant_id: str, instance_id: str) -> dict[str, Any]:
        instance = await self.storage.get_instance(tenant_id, instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        return instance

    async def find_instance_by_business_key(
        self, tenant_id: str, business_key: str
    ) -> dict[str, Any] | None:
        return await self.storage.find_instance_by_business_key(tenant_id, business_key)

    async def list_tasks(self, tenant_id: str, instance_id: str) -> list[dict[str, Any]]:
        return await self.storage.list_tasks(tenant_id, instance_id)

    async def complete_task(
        self,
        tenant_id: str,
        instance_id: str,
        task_id: str,
        output: dict[str, Any] | None,
        event: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Record a reviewer decision on the instance's OPEN task.

        REJECT completes the instance as ``rejected`` and cancels the remaining
        tasks. APPROVE opens the next task, or completes the instance as
        ``approved`` when it was the last one.

        Returns:
            The updated instance

        Raises:
            ValidationError: If the decision is missing or unknown
            NotFoundError: If the instance or task does not exist
            WorkflowStateError: If the task is not OPEN or the instance is not ACTIVE
        """
        decision = resolve_decision(output, event)

        async with self.storage.transaction():
            instance = await self.get_instance(tenant_id, instance_id)
            task = await self.storage.get_task(tenant_id, task_id)
            if task is None or task["instance_id"] != instance_id:
                raise NotFoundError(f"Task {task_id} not found in instance {instance_id}")
            if instance["status"] != "ACTIVE":
                raise WorkflowStateError(
                    f"Workflow instance {instance_id} is {instance['status']}, not ACTIVE"
                )
            if task["status"] != "OPEN":
                raise WorkflowStateError(f"Task {task_id} is {task['status']}, not OPEN")

            completed = await self.storage.update_task(
                tenant_id,
                task_id,
                "COMPLETED",
                output={**(output or {}), "decision": decision},
                completed_by=user_id,
                expected_status="OPEN",
            )
            if not completed:
                raise WorkflowStateError(f"Task {task_id} was completed concurrently")

            tasks = await self.storage.list_tasks(tenant_id, instance_id)
            remaining = [t for t in tasks if t["position"] > task["position"]]

            if decision == REJECT:
                await self._cancel_tasks(tenant_id, remaining)
                await self._finish(instance, "rejected", task, user_id)
            else:
                next_task = next((t for t in remaining if t["status"] == "WAITING"), None)
                if next_task is None:
                    await self._finish(instance, "approved", task, user_id)
                else:
                    await self.storage.update_task(
                        tenant_id, next_task["task_id"], "OPEN", expected_status="WAITING"
                    )
                    await self._transition(instance, "ACTIVE", "in_review")
                    logger.debug(f"Workflow {instance_id} moved to step {next_task['name']}")

            return await self.get_instance(tenant_id, instance_id)

    async def cancel_instance(
        self, tenant_id: str, instance_id: str, cancelled_by: str | None, reason: str | None = None
    ) -> bool:
        """
        Cancel an ACTIVE instance and its open tasks.

        Returns:
            False if the instance was already terminal
        """
        async with self.storage.transaction():
            instance = await self.get_instance(tenant_id, instance_id)
            if instance["status"] != "ACTIVE":
                return False
            if not await self.storage.update_instance_state(
                tenant_id, instance_id, "CANCELLED", "cancelled", expected_status="ACTIVE"
            ):
                return False

            tasks = await self.storage.list_tasks(tenant_id, instance_id)
            await self._cancel_tasks(tenant_id, tasks)

            payload = {**self._event_payload(instance), "cancelledBy": cancelled_by}
            if reason:
                payload["reason"] = reason
            await self._record(instance, cancelled_by, "approval.cancelled", payload)
            await enqueue_event(
                self.storage,
                tenant_id,
                "approval.cancelled",
                payload,
                correlation_id=instance_id,
            )

        logger.info(f"Cancelled workflow {instance_id} (by {cancelled_by})")
        return True

    async def _cancel_tasks(self, tenant_id: str, tasks: list[dict[str, Any]]) -> None:
        for task in tasks:
            if task["status"] in OPEN_TASK_STATUSES:
                await self.storage.update_task(
                    tenant_id, task["task_id"], "CANCELLED", expected_status=task["status"]
                )

    async def _transition(self, instance: dict[str, Any], status: str, state: str) -> None:
        changed = await self.storage.update_instance_state(
            instance["tenant_id"], instance["instance_id"], status, state, expected_status="ACTIVE"
        )
        if not changed:
            raise WorkflowStateError(
                f"Workflow instance {instance['instance_id']} changed concurrently"
            )

    async def _finish(
        self,
        instance: dict[str, Any],
        outcome: str,
        task: dict[str, Any],
        user_id: str | None,
    ) -> None:
        await self._transition(instance, "COMPLETED", outcome)

        event_type = f"approval.{outcome}"
        payload = {
            **self._event_payload(instance),
            "decision": APPROVE if outcome == "approved" else REJECT,
            "taskId": task["task_id"],
            "decidedBy": user_id,
        }
        await self._record(instance, user_id, "approval.decided", payload, event_type)
        await enqueue_event(
            self.storage,
            instance["tenant_id"],
            event_type,
            payload,
            correlation_id=instance["instance_id"],
        )
        logger.info(f"Workflow {instance['instance_id']} {outcome}")

    async def _record(
        self,
        instance: dict[str, Any],
        user_id: str | None,
        audit_action: str,
        payload: dict[str, Any],
        event_type: str | None = None,
    ) -> None:
        context = instance.get("context") or {}
        await self.storage.append_audit_entry(
            tenant_id=instance["tenant_id"],
            user_id=user_id,
            action=audit_action,
            entity_type=context.get("entityType") or "workflow_instance",
            entity_id=context.get("entityId") or instance["instance_id"],
            metadata=payload,
        )
        await self.storage.append_domain_event(
            instance["tenant_id"], event_type or audit_action, payload
        )

    @staticmethod
    def _event_payload(instance: dict[str, Any]) -> dict[str, Any]:
        context = instance.get("context") or {}
        return {
            "instanceId": instance["instance_id"],
            "policyId": instance["definition_id"],
            "businessKey": instance["business_key"],
            "actionKey": context.get("actionKey"),
            "entityType": context.get("entityType"),
            "entityId": context.get("entityId"),
        }
