"""
Approval policy store.

A policy says which actions need a human decision. Policies are versioned per
``(tenant_id, action_key)``: creating a policy inserts the next version as
ACTIVE and deactivates the previous one, so at most one version is ever ACTIVE.
Apart from their status, stored policies never change.

The workflow template is an ordered list of review steps::

    {"steps": [{"name": "manager_review"}, {"name": "finance_review"}]}
"""

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from gatehouse.exceptions import NotFoundError, ValidationError
from gatehouse.rules import parse_rules
from gatehouse.storage.protocol import StorageProtocol

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_TEMPLATE: dict[str, Any] = {"steps": [{"name": "review"}]}


def normalize_workflow_template(template: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Validate a workflow template and return it in canonical form.

    Steps may be given as strings or as ``{"name": ...}`` objects.

    Raises:
        ValidationError: If there are no steps or a step has no name
    """
    if template is None:
        return {"steps": [dict(step) for step in DEFAULT_WORKFLOW_TEMPLATE["steps"]]}
    if not isinstance(template, Mapping):
        raise ValidationError("workflow_template must be an object with a 'steps' list")

    steps = template.get("steps")
    if not isinstance(steps, list) or not steps:
        raise ValidationError("workflow_template.steps must be a non-empty list")

    normalized = []
    for index, step in enumerate(steps):
        if isinstance(step, str):
            step = {"name": step}
        if not isinstance(step, Mapping):
            raise ValidationError(f"workflow_template.steps[{index}] must be an object")
        name = step.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"workflow_template.steps[{index}].name is required")
        normalized.append({**step, "name": name})
    return {**template, "steps": normalized}


def step_names(template: Mapping[str, Any]) -> list[str]:
    return [step["name"] for step in normalize_workflow_template(template)["steps"]]


class ApprovalPolicyStore:
    """Create, look up and retire approval policies."""

    def __init__(self, storage: StorageProtocol):
        self.storage = storage

    async def create_policy(
        self,
        tenant_id: str,
        action_key: str,
        rules: Mapping[str, Any] | None,
        workflow_template: Mapping[str, Any] | None = None,
        name: str | None = None,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        """
        Create the next ACTIVE version of the policy for ``action_key``.

        Args:
            tenant_id: Owning tenant
            action_key: Action the policy gates (e.g. ``"invoice.pay"``)
            rules: Rule tree; None means every request needs approval
            workflow_template: Review steps (defaults to a single ``review`` step)
            name: Human readable name
            created_by: User creating the policy

        Returns:
            The stored policy

        Raises:
            ValidationError: If the rules or template are malformed
        """
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        if not action_key:
            raise ValidationError("action_key is required")

        parsed = parse_rules(rules)
        template = normalize_workflow_template(workflow_template)

        policy = await self.storage.create_policy_version(
            policy_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            action_key=action_key,
            name=name,
            rules=parsed.to_dict() if parsed is not None else None,
            workflow_template=template,
            created_by=created_by,
        )
        logger.info(
            f"Created approval policy {policy['policy_id']} "
            f"({action_key} v{policy['version']}) for tenant {tenant_id}"
        )
        return policy

    async def find_active_policy(self, tenant_id: str, action_key: str) -> dict[str, Any] | None:
        return await self.storage.find_active_policy(tenant_id, action_key)

    async def get_policy(self, tenant_id: str, policy_id: str) -> dict[str, Any]:
        policy = await self.storage.get_policy(tenant_id, policy_id)
        if policy is None:
            raise NotFoundError(f"Approval policy {policy_id} not found")
        return policy

    async def list_policies(
        self, tenant_id: str, action_key: str | None = None
    ) -> list[dict[str, Any]]:
        return await self.storage.list_policies(tenant_id, action_key)

    async def deactivate_policy(self, tenant_id: str, policy_id: str) -> bool:
        """ACTIVE -> INACTIVE. Returns False if the policy was not ACTIVE."""
        await self.get_policy(tenant_id, policy_id)
        changed = await self.storage.update_policy_status(
            tenant_id, policy_id, "INACTIVE", expected_status="ACTIVE"
        )
        if changed:
            logger.info(f"Deactivated approval policy {policy_id}")
        return changed

    async def archive_policy(self, tenant_id: str, policy_id: str) -> bool:
        await self.get_policy(tenant_id, policy_id)
        changed = await self.storage.update_policy_status(tenant_id, policy_id, "ARCHIVED")
        if changed:
            logger.info(f"Archived approval policy {policy_id}")
        return changed
