"""
Tests for the pure step ledger rules (``approval_kernel.domain.ledger``).

Invariants tested:
- Step indices are contiguous 0..N per instance.
- Index 0 is the requester's submission, born approved.
- A placeholder is decided at most once and only by an allowed approver.
"""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from approval_kernel.domain import ledger
from approval_kernel.domain.graph import GraphNode, NodeKind
from approval_kernel.domain.workflow import StepDecision, StepRecord
from approval_kernel.exceptions import (
    ApproverMismatchError,
    InvalidDecisionError,
    StepAlreadyDecidedError,
    StepSequenceError,
)

NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)

START = GraphNode(node_id="start", kind=NodeKind.START)
OPEN_NODE = GraphNode(node_id="approver-1", kind=NodeKind.APPROVER)


def _step(instance_id, index, decision=StepDecision.PENDING, node_id="approver-1"):
    return StepRecord(
        step_id=uuid4(),
        instance_id=instance_id,
        node_id=node_id,
        step_index=index,
        decision=decision,
    )


class TestIndexing:
    """Append and contiguity checks."""

    def test_empty_ledger(self):
        assert ledger.last_index([]) == -1
        assert ledger.next_index([]) == 0

    def test_append_must_extend_by_one(self):
        instance_id = uuid4()
        steps = [_step(instance_id, 0), _step(instance_id, 1)]
        ledger.check_append(instance_id, steps, _step(instance_id, 2))

        with pytest.raises(StepSequenceError) as exc_info:
            ledger.check_append(instance_id, steps, _step(instance_id, 3))
        assert exc_info.value.expected_index == 2
        assert exc_info.value.received_index == 3

    def test_duplicate_index_refused(self):
        instance_id = uuid4()
        steps = [_step(instance_id, 0), _step(instance_id, 1)]
        with pytest.raises(StepSequenceError):
            ledger.check_append(instance_id, steps, _step(instance_id, 1))

    def test_verify_contiguous_accepts_any_order(self):
        instance_id = uuid4()
        ledger.verify_contiguous(
            instance_id, [_step(instance_id, 2), _step(instance_id, 0), _step(instance_id, 1)],
        )

    def test_verify_contiguous_finds_gap(self):
        instance_id = uuid4()
        with pytest.raises(StepSequenceError) as exc_info:
            ledger.verify_contiguous(instance_id, [_step(instance_id, 0), _step(instance_id, 2)])
        assert exc_info.value.expected_index == 1


class TestSeedRecords:
    """Submission step and placeholders."""

    def test_submission_step_is_approved_by_requester(self):
        instance_id, requester = uuid4(), uuid4()
        step = ledger.submission_step(instance_id, START, requester, NOW)
        assert step.step_index == 0
        assert step.node_id == "start"
        assert step.decision == StepDecision.APPROVED
        assert step.approver_id == requester
        assert step.decided_at == NOW

    def test_placeholder_is_pending(self):
        step = ledger.placeholder_step(uuid4(), OPEN_NODE, 1, NOW)
        assert step.decision == StepDecision.PENDING
        assert step.approver_id is None
        assert step.decided_at is None
        assert not step.is_decided

    def test_placeholder_names_single_assigned_approver(self):
        approver = uuid4()
        node = GraphNode(
            node_id="approver-1", kind=NodeKind.APPROVER, approver_ids=frozenset({str(approver)}),
        )
        assert ledger.placeholder_step(uuid4(), node, 1, NOW).approver_id == approver

    def test_placeholder_ignores_non_uuid_assignee(self):
        node = GraphNode(
            node_id="approver-1", kind=NodeKind.APPROVER, approver_ids=frozenset({"finance-team"}),
        )
        assert ledger.placeholder_step(uuid4(), node, 1, NOW).approver_id is None


class TestDecide:
    """Placeholder -> decision."""

    def test_approve(self):
        approver = uuid4()
        pending = _step(uuid4(), 1)
        decided = ledger.decide(pending, OPEN_NODE, StepDecision.APPROVED, approver, "ok", NOW)

        assert decided.step_id == pending.step_id
        assert decided.decision == StepDecision.APPROVED
        assert decided.approver_id == approver
        assert decided.comment == "ok"
        assert decided.decided_at == NOW
        assert pending.decision == StepDecision.PENDING

    def test_reject_accepts_string(self):
        decided = ledger.decide(_step(uuid4(), 1), OPEN_NODE, "rejected", uuid4(), None, NOW)
        assert decided.decision == StepDecision.REJECTED

    def test_decided_once(self):
        decided = ledger.decide(
            _step(uuid4(), 1), OPEN_NODE, StepDecision.APPROVED, uuid4(), None, NOW,
        )
        with pytest.raises(StepAlreadyDecidedError) as exc_info:
            ledger.decide(decided, OPEN_NODE, StepDecision.REJECTED, uuid4(), None, NOW)
        assert exc_info.value.decision == "approved"

    def test_approver_not_on_node(self):
        allowed = uuid4()
        node = GraphNode(
            node_id="approver-1", kind=NodeKind.APPROVER, approver_ids=frozenset({str(allowed)}),
        )
        with pytest.raises(ApproverMismatchError) as exc_info:
            ledger.decide(_step(uuid4(), 1), node, StepDecision.APPROVED, uuid4(), None, NOW)
        assert exc_info.value.allowed == [str(allowed)]

        decided = ledger.decide(_step(uuid4(), 1), node, StepDecision.APPROVED, allowed, None, NOW)
        assert decided.approver_id == allowed

    def test_placeholder_assignee_binds(self):
        assignee = uuid4()
        pending = StepRecord(
            step_id=uuid4(), instance_id=uuid4(), node_id="approver-1",
            step_index=1, approver_id=assignee,
        )
        with pytest.raises(ApproverMismatchError):
            ledger.decide(pending, OPEN_NODE, StepDecision.APPROVED, uuid4(), None, NOW)


class TestCoerceDecision:

    @pytest.mark.parametrize("value", ["approved", "rejected", StepDecision.APPROVED])
    def test_terminal_decisions_accepted(self, value):
        assert ledger.coerce_decision(value) in (StepDecision.APPROVED, StepDecision.REJECTED)

    @pytest.mark.parametrize("value", ["pending", StepDecision.PENDING, "maybe", ""])
    def test_everything_else_refused(self, value):
        with pytest.raises(InvalidDecisionError):
            ledger.coerce_decision(value)
