"""
Tests for the GatehouseApp composition root.

Tests cover:
- Storage URL handling (plain sqlite URLs, in-memory databases)
- End-to-end: gate -> workflow decision -> outbox delivery
- Worker lifecycle with the app
"""

import asyncio

import pytest

from gatehouse.app import GatehouseApp, generate_worker_id
from gatehouse.gate import ApprovalRequest, ApprovalStatus


def request(**overrides):
    values = {
        "tenant_id": "acme",
        "user_id": "u-1",
        "action_key": "invoice.pay",
        "entity_type": "invoice",
        "entity_id": "inv-42",
        "idempotency_key": "pay-inv-42",
        "payload": {"amount": 12000},
    }
    values.update(overrides)
    return ApprovalRequest(**values)


def test_worker_id_is_unique():
    first = generate_worker_id("billing")
    assert first.startswith("billing-")
    assert first != generate_worker_id("billing")


def test_plain_sqlite_url_uses_aiosqlite(tmp_path):
    app = GatehouseApp(db_url=f"sqlite:///{tmp_path / 'app.db'}")
    assert app.storage.engine.url.drivername == "sqlite+aiosqlite"


@pytest.mark.asyncio
class TestGatehouseApp:
    async def test_in_memory_app(self):
        async with GatehouseApp(db_url="sqlite:///:memory:") as app:
            result = await app.require_approval(request())
            assert result.status is ApprovalStatus.APPROVED
            assert result.reason == "no_policy"

    async def test_approval_flow_is_delivered(self, tmp_path, fast_worker_config):
        delivered = []

        async def record(message):
            delivered.append(message.event_type)

        app = GatehouseApp(
            db_url=f"sqlite:///{tmp_path / 'app.db'}",
            outbox_enabled=True,
            outbox_config=fast_worker_config,
            handlers={"approval.requested": record, "approval.approved": record},
        )
        async with app:
            await app.policies.create_policy(
                "acme",
                "invoice.pay",
                {"all": [{"field": "amount", "operator": "gt", "value": 10000}]},
                workflow_template={"steps": ["manager"]},
            )
            pending = await app.require_approval(request())
            assert pending.status is ApprovalStatus.PENDING

            task = (await app.workflows.list_tasks("acme", pending.instance_id))[0]
            await app.workflows.complete_task(
                "acme", pending.instance_id, task["task_id"], {"decision": "approve"}, user_id="boss"
            )

            for _ in range(100):
                if len(delivered) == 2:
                    break
                await asyncio.sleep(0.02)

            again = await app.require_approval(request(idempotency_key="pay-inv-42-retry"))
            assert again.status is ApprovalStatus.APPROVED
            assert again.reason == "already_approved"

        assert delivered == ["approval.requested", "approval.approved"]
        assert app.outbox_worker is not None
        assert not app.outbox_worker.running
