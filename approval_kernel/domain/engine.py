"""
Workflow state machine (``approval_kernel.domain.engine``).

Responsibility
--------------
The pure core of the workflow engine.  Given a validated template graph,
a flow instance and its ledger, compute what request creation or an
incoming decision changes: the new instance, the ledger records to write
and the request projection.  The ``WorkflowEngine`` service persists the
resulting plans atomically.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.  The clock reading
and all ids are passed in by the caller.

Transition rules
----------------
* Terminal instance (completed/rejected)  -> ``AlreadyTerminalError``.
* ``node_id != current_node_id``          -> ``NodeMismatchError``.
* ``rejected``: decide the current placeholder as rejected; instance
  becomes ``rejected`` and stays on its node.
* ``approved``: decide the current placeholder as approved; ``next =
  successor(current)``.  End node -> ``completed`` at the end node;
  otherwise ``in-progress`` at ``next`` and a new placeholder is appended.

Every check runs before any value is built, so a refused decision leaves
nothing to persist.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from uuid import UUID

from approval_kernel.domain import graph as graph_ops
from approval_kernel.domain import ledger
from approval_kernel.domain.approval import (
    REQUEST_STATUS_FOR_FLOW,
    RequestProjection,
)
from approval_kernel.domain.graph import NodeKind, TemplateGraph
from approval_kernel.domain.workflow import (
    FLOW_TRANSITIONS,
    FlowInstance,
    FlowStatus,
    StepDecision,
    StepRecord,
)
from approval_kernel.exceptions import (
    AlreadyTerminalError,
    InvalidFlowTransitionError,
    NodeMismatchError,
    StepNotFoundError,
)


@dataclass(frozen=True)
class CreationPlan:
    """Everything request creation writes besides the request row."""

    instance: FlowInstance
    steps: tuple[StepRecord, ...]
    projection: RequestProjection
    total_steps: int


@dataclass(frozen=True)
class TransitionPlan:
    """Everything one accepted decision writes."""

    previous: FlowInstance
    instance: FlowInstance
    decided_step: StepRecord
    next_step: StepRecord | None
    projection: RequestProjection


def check_flow_transition(current: FlowStatus, new: FlowStatus) -> None:
    """Raise ``InvalidFlowTransitionError`` if ``new`` is not reachable."""
    if new not in FLOW_TRANSITIONS.get(current, frozenset()):
        raise InvalidFlowTransitionError(current.value, new.value)


def plan_creation(
    graph: TemplateGraph,
    *,
    instance_id: UUID,
    template_id: UUID,
    request_id: UUID,
    requester_id: UUID,
    now: datetime,
) -> CreationPlan:
    """Place a new instance on the first approver and seed its ledger."""
    first = graph_ops.first_approver(graph)
    total_steps = graph_ops.count_approvers(graph)

    instance = FlowInstance(
        instance_id=instance_id,
        template_id=template_id,
        request_id=request_id,
        current_node_id=first.node_id,
        status=FlowStatus.IN_PROGRESS,
        version=1,
        created_at=now,
        updated_at=now,
    )
    submission = ledger.submission_step(instance_id, graph.start_node, requester_id, now)
    placeholder = ledger.placeholder_step(instance_id, first, submission.step_index + 1, now)

    return CreationPlan(
        instance=instance,
        steps=(submission, placeholder),
        projection=RequestProjection(
            status=REQUEST_STATUS_FOR_FLOW[instance.status],
            current_step=placeholder.step_index,
            updated_at=now,
        ),
        total_steps=total_steps,
    )


def plan_transition(
    graph: TemplateGraph,
    instance: FlowInstance,
    steps: Sequence[StepRecord],
    *,
    node_id: str,
    approver_id: UUID,
    decision: StepDecision | str,
    comment: str | None,
    now: datetime,
) -> TransitionPlan:
    """Apply one decision to ``instance`` and return the resulting plan."""
    if instance.is_terminal:
        raise AlreadyTerminalError(str(instance.instance_id), instance.status.value)
    if node_id != instance.current_node_id:
        raise NodeMismatchError(
            str(instance.instance_id), instance.current_node_id, node_id,
        )
    decision = ledger.coerce_decision(decision)

    current_node = graph.node(instance.current_node_id)
    current_index = ledger.last_index(steps)
    pending = next(
        (s for s in steps if s.step_index == current_index), None,
    )
    if pending is None or pending.node_id != current_node.node_id:
        raise StepNotFoundError(str(instance.instance_id), current_index)

    decided = ledger.decide(pending, current_node, decision, approver_id, comment, now)

    next_step: StepRecord | None = None
    if decision == StepDecision.REJECTED:
        new_status = FlowStatus.REJECTED
        new_node_id = instance.current_node_id
        completed_at = now
    else:
        following = graph_ops.successor(graph, current_node.node_id)
        new_node_id = following.node_id
        if following.kind == NodeKind.END:
            new_status = FlowStatus.COMPLETED
            completed_at = now
        else:
            new_status = FlowStatus.IN_PROGRESS
            completed_at = None
            next_step = ledger.placeholder_step(
                instance.instance_id, following, decided.step_index + 1, now,
            )

    check_flow_transition(instance.status, new_status)

    updated = replace(
        instance,
        current_node_id=new_node_id,
        status=new_status,
        version=instance.version + 1,
        updated_at=now,
        completed_at=completed_at,
    )
    current_step = next_step.step_index if next_step is not None else decided.step_index

    return TransitionPlan(
        previous=instance,
        instance=updated,
        decided_step=decided,
        next_step=next_step,
        projection=RequestProjection(
            status=REQUEST_STATUS_FOR_FLOW[new_status],
            current_step=current_step,
            updated_at=now,
        ),
    )
