"""
Step ledger rules (``approval_kernel.domain.ledger``).

Responsibility
--------------
Pure functions that decide whether a step record may be appended to an
instance's ledger and how a pending placeholder becomes a decision.  The
``StepLedger`` service applies these rules against the repository.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.

Invariants enforced
-------------------
* Step indices per instance are contiguous ``0..N``: an appended record
  must carry exactly ``last_index + 1`` (``0`` for an empty ledger).
* Index 0 is the requester's synthetic submission step, born approved.
* A record is decided at most once, and only by an approver the node
  allows.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID, uuid4

from approval_kernel.domain.graph import GraphNode
from approval_kernel.domain.workflow import (
    TERMINAL_DECISIONS,
    StepDecision,
    StepRecord,
)
from approval_kernel.exceptions import (
    ApproverMismatchError,
    InvalidDecisionError,
    StepAlreadyDecidedError,
    StepSequenceError,
)

SUBMISSION_INDEX = 0


def last_index(steps: Sequence[StepRecord]) -> int:
    """Highest step index in ``steps``, or -1 for an empty ledger."""
    return max((s.step_index for s in steps), default=-1)


def next_index(steps: Sequence[StepRecord]) -> int:
    return last_index(steps) + 1


def check_append(instance_id: UUID, steps: Sequence[StepRecord], step: StepRecord) -> None:
    """Raise ``StepSequenceError`` unless ``step`` extends ``steps`` by one."""
    expected = next_index(steps)
    if step.step_index != expected:
        raise StepSequenceError(str(instance_id), expected, step.step_index)


def verify_contiguous(instance_id: UUID, steps: Sequence[StepRecord]) -> None:
    """Raise ``StepSequenceError`` at the first gap or duplicate."""
    for expected, step in enumerate(sorted(steps, key=lambda s: s.step_index)):
        if step.step_index != expected:
            raise StepSequenceError(str(instance_id), expected, step.step_index)


def submission_step(
    instance_id: UUID,
    start_node: GraphNode,
    requester_id: UUID,
    at: datetime,
) -> StepRecord:
    """Step 0: the requester's acknowledgment, recorded as already approved."""
    return StepRecord(
        step_id=uuid4(),
        instance_id=instance_id,
        node_id=start_node.node_id,
        step_index=SUBMISSION_INDEX,
        decision=StepDecision.APPROVED,
        approver_id=requester_id,
        decided_at=at,
        created_at=at,
    )


def placeholder_step(
    instance_id: UUID,
    node: GraphNode,
    step_index: int,
    at: datetime,
) -> StepRecord:
    """A pending record for an approver node awaiting its decision."""
    assigned = node.assigned_approver
    return StepRecord(
        step_id=uuid4(),
        instance_id=instance_id,
        node_id=node.node_id,
        step_index=step_index,
        decision=StepDecision.PENDING,
        approver_id=UUID(assigned) if assigned and _is_uuid(assigned) else None,
        created_at=at,
    )


def decide(
    step: StepRecord,
    node: GraphNode,
    decision: StepDecision,
    approver_id: UUID,
    comment: str | None,
    at: datetime,
) -> StepRecord:
    """Transition a pending placeholder into ``approved``/``rejected``."""
    decision = coerce_decision(decision)
    if step.is_decided:
        raise StepAlreadyDecidedError(
            str(step.instance_id), step.step_index, step.decision.value,
        )
    if not node.allows(approver_id) or (
        step.approver_id is not None and step.approver_id != approver_id
    ):
        raise ApproverMismatchError(
            node.node_id, str(approver_id), sorted(node.approver_ids),
        )
    return StepRecord(
        step_id=step.step_id,
        instance_id=step.instance_id,
        node_id=step.node_id,
        step_index=step.step_index,
        decision=decision,
        approver_id=approver_id,
        comment=comment,
        decided_at=at,
        created_at=step.created_at,
    )


def coerce_decision(decision: StepDecision | str) -> StepDecision:
    """Accept ``approved``/``rejected`` (enum or string) and nothing else."""
    try:
        value = StepDecision(decision)
    except ValueError:
        raise InvalidDecisionError(str(decision)) from None
    if value not in TERMINAL_DECISIONS:
        raise InvalidDecisionError(value.value)
    return value


def _is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except ValueError:
        return False
    return True
