"""
Tests for the workflow engine.

Tests cover:
- start_instance is idempotent per business key
- Multi-step approval: tasks open one after another
- Rejection cancels the remaining tasks
- Terminal transitions write audit entries, domain events and outbox events
- State errors (task not OPEN, instance not ACTIVE)
- Cancellation
"""

import pytest

from gatehouse.exceptions import NotFoundError, ValidationError, WorkflowStateError
from gatehouse.workflow import APPROVE, REJECT, resolve_decision

CONTEXT = {
    "actionKey": "invoice.pay",
    "entityType": "invoice",
    "entityId": "inv-1",
    "payload": {"amount": 5000},
    "requestedBy": "user-1",
}


async def start(workflows, steps=("manager", "finance"), business_key="invoice.pay:inv-1"):
    return await workflows.start_instance(
        tenant_id="t1",
        definition_id="policy-1",
        business_key=business_key,
        context=CONTEXT,
        start_event={"type": "approval.requested"},
        steps=list(steps),
    )


class TestResolveDecision:
    """Decision parsing."""

    @pytest.mark.parametrize(
        "output,event,expected",
        [
            ({"decision": "approve"}, None, APPROVE),
            ({"decision": " Reject "}, None, REJECT),
            (None, {"type": "task.approved"}, APPROVE),
            ({}, {"type": "Manager.REJECTED"}, REJECT),
            ({"decision": "approve"}, {"type": "task.rejected"}, APPROVE),
        ],
    )
    def test_decisions(self, output, event, expected):
        assert resolve_decision(output, event) == expected

    @pytest.mark.parametrize(
        "output,event",
        [({"decision": "maybe"}, None), ({}, None), (None, {"type": "task.completed"})],
    )
    def test_undecidable(self, output, event):
        with pytest.raises(ValidationError):
            resolve_decision(output, event)


@pytest.mark.asyncio
class TestStartInstance:
    """Creating instances."""

    async def test_creates_instance_and_tasks(self, workflows):
        instance, created = await start(workflows)
        assert created is True
        assert instance["status"] == "ACTIVE"
        assert instance["current_state"] == "start"
        assert instance["context"] == CONTEXT
        assert instance["definition_id"] == "policy-1"

        tasks = await workflows.list_tasks("t1", instance["instance_id"])
        assert [(t["name"], t["status"]) for t in tasks] == [
            ("manager", "OPEN"),
            ("finance", "WAITING"),
        ]

    async def test_same_business_key_returns_existing(self, workflows):
        first, _ = await start(workflows)
        second, created = await start(workflows, steps=("other",))
        assert created is False
        assert second["instance_id"] == first["instance_id"]
        assert len(await workflows.list_tasks("t1", first["instance_id"])) == 2

    async def test_steps_from_template(self, workflows):
        instance, _ = await workflows.start_instance(
            "t1", "policy-1", "k", CONTEXT, None, {"steps": [{"name": "review"}]}
        )
        tasks = await workflows.list_tasks("t1", instance["instance_id"])
        assert [t["name"] for t in tasks] == ["review"]

    async def test_requires_steps(self, workflows):
        with pytest.raises(ValidationError):
            await start(workflows, steps=())

    async def test_unknown_instance(self, workflows):
        with pytest.raises(NotFoundError):
            await workflows.get_instance("t1", "missing")
        assert await workflows.find_instance_by_business_key("t1", "missing") is None


@pytest.mark.asyncio
class TestCompleteTask:
    """Applying decisions."""

    async def test_multi_step_approval(self, workflows, sqlite_storage):
        instance, _ = await start(workflows)
        instance_id = instance["instance_id"]
        manager, finance = await workflows.list_tasks("t1", instance_id)

        updated = await workflows.complete_task(
            "t1", instance_id, manager["task_id"], {"decision": "approve"}, user_id="boss"
        )
        assert updated["status"] == "ACTIVE"
        assert updated["current_state"] == "in_review"
        tasks = await workflows.list_tasks("t1", instance_id)
        assert [t["status"] for t in tasks] == ["COMPLETED", "OPEN"]
        assert tasks[0]["completed_by"] == "boss"
        assert tasks[0]["output"] == {"decision": APPROVE}
        assert await sqlite_storage.list_outbox_events("t1") == []

        final = await workflows.complete_task(
            "t1", instance_id, finance["task_id"], None, event={"type": "finance.approved"},
            user_id="cfo",
        )
        assert final["status"] == "COMPLETED"
        assert final["current_state"] == "approved"
        assert final["completed_at"] is not None

        events = await sqlite_storage.list_outbox_events("t1")
        assert [e["event_type"] for e in events] == ["approval.approved"]
        assert events[0]["correlation_id"] == instance_id
        assert events[0]["payload"]["decidedBy"] == "cfo"
        assert events[0]["payload"]["entityId"] == "inv-1"

        audit = await sqlite_storage.list_audit_entries("t1", action="approval.decided")
        assert len(audit) == 1
        assert audit[0]["entity_type"] == "invoice"
        assert audit[0]["metadata"]["decision"] == APPROVE

        domain = await sqlite_storage.list_domain_events("t1", "approval.approved")
        assert len(domain) == 1

    async def test_reject_cancels_remaining_tasks(self, workflows, sqlite_storage):
        instance, _ = await start(workflows, steps=("a", "b", "c"))
        instance_id = instance["instance_id"]
        first = (await workflows.list_tasks("t1", instance_id))[0]

        final = await workflows.complete_task(
            "t1", instance_id, first["task_id"], {"decision": "reject", "comment": "too much"}
        )
        assert final["status"] == "COMPLETED"
        assert final["current_state"] == "rejected"

        tasks = await workflows.list_tasks("t1", instance_id)
        assert [t["status"] for t in tasks] == ["COMPLETED", "CANCELLED", "CANCELLED"]
        assert tasks[0]["output"] == {"decision": REJECT, "comment": "too much"}

        events = await sqlite_storage.list_outbox_events("t1", event_type="approval.rejected")
        assert len(events) == 1

    async def test_task_must_be_open(self, workflows):
        instance, _ = await start(workflows)
        waiting = (await workflows.list_tasks("t1", instance["instance_id"]))[1]
        with pytest.raises(WorkflowStateError):
            await workflows.complete_task(
                "t1", instance["instance_id"], waiting["task_id"], {"decision": "approve"}
            )

    async def test_completed_instance_rejects_decisions(self, workflows):
        instance, _ = await start(workflows, steps=("only",))
        task = (await workflows.list_tasks("t1", instance["instance_id"]))[0]
        await workflows.complete_task(
            "t1", instance["instance_id"], task["task_id"], {"decision": "approve"}
        )
        with pytest.raises(WorkflowStateError):
            await workflows.complete_task(
                "t1", instance["instance_id"], task["task_id"], {"decision": "reject"}
            )

    async def test_task_of_another_instance(self, workflows):
        first, _ = await start(workflows, business_key="k1")
        second, _ = await start(workflows, business_key="k2")
        foreign = (await workflows.list_tasks("t1", second["instance_id"]))[0]
        with pytest.raises(NotFoundError):
            await workflows.complete_task(
                "t1", first["instance_id"], foreign["task_id"], {"decision": "approve"}
            )

    async def test_failed_decision_leaves_no_trace(self, workflows, sqlite_storage):
        instance, _ = await start(workflows)
        with pytest.raises(ValidationError):
            await workflows.complete_task("t1", instance["instance_id"], "x", {"decision": "?"})
        tasks = await workflows.list_tasks("t1", instance["instance_id"])
        assert tasks[0]["status"] == "OPEN"


@pytest.mark.asyncio
class TestCancelInstance:
    """Cancellation."""

    async def test_cancel_active_instance(self, workflows, sqlite_storage):
        instance, _ = await start(workflows)
        instance_id = instance["instance_id"]

        assert await workflows.cancel_instance("t1", instance_id, "admin", "duplicate") is True

        cancelled = await workflows.get_instance("t1", instance_id)
        assert cancelled["status"] == "CANCELLED"
        assert cancelled["current_state"] == "cancelled"
        tasks = await workflows.list_tasks("t1", instance_id)
        assert {t["status"] for t in tasks} == {"CANCELLED"}

        events = await sqlite_storage.list_outbox_events("t1", event_type="approval.cancelled")
        assert events[0]["payload"]["reason"] == "duplicate"
        assert events[0]["payload"]["cancelledBy"] == "admin"

    async def test_cancel_terminal_instance_is_noop(self, workflows, sqlite_storage):
        instance, _ = await start(workflows)
        await workflows.cancel_instance("t1", instance["instance_id"], "admin")
        assert await workflows.cancel_instance("t1", instance["instance_id"], "admin") is False
        assert len(await sqlite_storage.list_outbox_events("t1")) == 1
