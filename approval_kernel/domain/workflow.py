"""
Flow workflow types (``approval_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the live side of an approval flow: the flow
instance lifecycle state machine, step ledger records, and the template
record that binds a validated graph to an id and version.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  May import
only from ``domain/graph``.

Invariants enforced
-------------------
* ``FLOW_TRANSITIONS`` defines the only valid instance status changes;
  terminal states (completed, rejected) have no outgoing edges.
* A ``StepRecord`` is decided at most once: ``pending`` is the only
  non-terminal decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from approval_kernel.domain.graph import TemplateGraph


# =========================================================================
# Flow Instance Lifecycle
# =========================================================================


class FlowStatus(str, Enum):
    """Flow instance lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


FLOW_TRANSITIONS: dict[FlowStatus, frozenset[FlowStatus]] = {
    FlowStatus.PENDING: frozenset({
        FlowStatus.IN_PROGRESS,
        FlowStatus.COMPLETED,
        FlowStatus.REJECTED,
    }),
    FlowStatus.IN_PROGRESS: frozenset({
        FlowStatus.IN_PROGRESS,
        FlowStatus.COMPLETED,
        FlowStatus.REJECTED,
    }),
    FlowStatus.COMPLETED: frozenset(),
    FlowStatus.REJECTED: frozenset(),
}

TERMINAL_FLOW_STATUSES: frozenset[FlowStatus] = frozenset({
    FlowStatus.COMPLETED,
    FlowStatus.REJECTED,
})


class StepDecision(str, Enum):
    """Decision carried by a step record."""

    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"


TERMINAL_DECISIONS: frozenset[StepDecision] = frozenset({
    StepDecision.APPROVED,
    StepDecision.REJECTED,
})


# =========================================================================
# Template record
# =========================================================================


@dataclass(frozen=True)
class FlowTemplate:
    """A saved, validated template version.

    Templates are immutable: a revision is a new ``FlowTemplate`` with the
    same ``lineage_id`` and ``version + 1``.
    """

    template_id: UUID
    name: str
    graph: TemplateGraph
    description: str = ""
    category: str = ""
    version: int = 1
    lineage_id: UUID | None = None
    created_by: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    is_active: bool = True


# =========================================================================
# Flow instance and step records
# =========================================================================


@dataclass(frozen=True)
class FlowInstance:
    """The live execution pointer of one request.

    ``version`` increments on every persisted change and backs the
    compare-and-set that serializes writers.
    """

    instance_id: UUID
    template_id: UUID
    request_id: UUID
    current_node_id: str
    status: FlowStatus = FlowStatus.IN_PROGRESS
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_FLOW_STATUSES


@dataclass(frozen=True)
class StepRecord:
    """One ledger entry: a decision (or placeholder) at a traversal index."""

    step_id: UUID
    instance_id: UUID
    node_id: str
    step_index: int
    decision: StepDecision = StepDecision.PENDING
    approver_id: UUID | None = None
    comment: str | None = None
    decided_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_decided(self) -> bool:
        return self.decision in TERMINAL_DECISIONS
