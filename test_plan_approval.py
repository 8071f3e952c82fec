"""
Plan Approval Gate Tests
========================

Tests for registering, resolving, cancelling and timing out approvals.
Run with: pytest test_plan_approval.py
"""

import asyncio

import pytest

from errors import PlanApprovalTimeoutError, PlanCancelledError
from plan_approval import PlanApprovalGate


def test_resolve_delivers_result_and_removes_entry(tmp_path):
    async def scenario():
        gate = PlanApprovalGate()
        future = gate.wait_for_approval("feat-1", tmp_path)
        assert gate.has_pending("feat-1")
        assert gate.get_project_path("feat-1") == tmp_path

        assert gate.resolve("feat-1", approved=False, feedback="add tests") is True
        result = await future

        assert result.approved is False
        assert result.has_feedback
        assert not result.has_edits
        assert not gate.has_pending("feat-1")
        assert gate.resolve("feat-1", approved=True) is False

    asyncio.run(scenario())


def test_cancel_rejects_waiter():
    async def scenario():
        gate = PlanApprovalGate()
        future = gate.wait_for_approval("feat-1", ".")

        assert gate.cancel("feat-1") is True
        with pytest.raises(PlanCancelledError):
            await future
        assert gate.pending_job_ids() == []
        assert gate.cancel("feat-1") is False

    asyncio.run(scenario())


def test_timeout_rejects_waiter():
    async def scenario():
        gate = PlanApprovalGate(timeout_seconds=0.01)
        future = gate.wait_for_approval("feat-1", ".")

        with pytest.raises(PlanApprovalTimeoutError):
            await future
        assert not gate.has_pending("feat-1")

    asyncio.run(scenario())


def test_new_wait_supersedes_previous():
    async def scenario():
        gate = PlanApprovalGate()
        first = gate.wait_for_approval("feat-1", ".")
        second = gate.wait_for_approval("feat-1", ".")

        with pytest.raises(PlanCancelledError):
            await first
        assert gate.has_pending("feat-1")

        gate.resolve("feat-1", approved=True, edited_plan="  ")
        result = await second
        assert result.approved
        assert not result.has_edits

    asyncio.run(scenario())


def test_cancelled_waiter_cleans_up():
    async def scenario():
        gate = PlanApprovalGate()
        future = gate.wait_for_approval("feat-1", ".")
        future.cancel()
        await asyncio.sleep(0)
        assert not gate.has_pending("feat-1")

    asyncio.run(scenario())
