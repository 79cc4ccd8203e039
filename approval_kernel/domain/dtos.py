"""
Commands and result DTOs exchanged at the kernel boundary.

Responsibility:
    Frozen inputs accepted by the services (request creation, decision
    submission, template definition) and the frozen results they return.
    Nothing here performs I/O or validation beyond type coercion.

Architecture position:
    Kernel > Domain.  May import from other ``domain`` modules only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any
from uuid import UUID

from approval_kernel.domain.approval import (
    ApprovalAction,
    ApprovalRequest,
    Priority,
    RequestStatus,
)
from approval_kernel.domain.workflow import (
    FlowInstance,
    StepDecision,
    StepRecord,
)


# =========================================================================
# Commands
# =========================================================================


@dataclass(frozen=True)
class CreateRequestCommand:
    """Input of the request creation interface."""

    template_id: UUID
    title: str
    description: str = ""
    priority: Priority | None = None
    category: str = ""
    due_date: date | None = None
    attachments: tuple[str, ...] = ()


@dataclass(frozen=True)
class DecisionCommand:
    """Input of the decision submission interface."""

    instance_id: UUID
    node_id: str
    approver_id: UUID
    decision: StepDecision
    comment: str | None = None


@dataclass(frozen=True)
class TemplateDefinition:
    """A template as authored: raw editor node/edge JSON plus metadata."""

    name: str
    nodes: tuple[dict[str, Any], ...]
    edges: tuple[dict[str, Any], ...]
    description: str = ""
    category: str = ""


# =========================================================================
# Results
# =========================================================================


@dataclass(frozen=True)
class RequestSnapshot:
    """A committed, consistent view of request + instance + ledger."""

    request: ApprovalRequest
    instance: FlowInstance
    steps: tuple[StepRecord, ...] = ()


@dataclass(frozen=True)
class DecisionOutcome:
    """What one accepted decision changed."""

    request: ApprovalRequest
    instance: FlowInstance
    decided_step: StepRecord
    action: ApprovalAction
    next_step: StepRecord | None = None


# =========================================================================
# Read-side aggregates
# =========================================================================


@dataclass(frozen=True)
class ApprovalStats:
    """Request counts by outward status."""

    total: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    in_progress: int = 0

    @classmethod
    def from_statuses(cls, statuses: list[RequestStatus]) -> ApprovalStats:
        return cls(
            total=len(statuses),
            pending=statuses.count(RequestStatus.PENDING),
            approved=statuses.count(RequestStatus.APPROVED),
            rejected=statuses.count(RequestStatus.REJECTED),
            in_progress=statuses.count(RequestStatus.IN_PROGRESS),
        )


@dataclass(frozen=True)
class CategoryStats:
    """Request counts for one category."""

    category: str
    stats: ApprovalStats = field(default_factory=ApprovalStats)


@dataclass(frozen=True)
class TemplateStats:
    """Usage of one template version."""

    template_id: UUID
    template_name: str
    usage_count: int
    approval_rate: float
    average_completion_seconds: float | None = None
