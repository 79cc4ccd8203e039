"""
Approval request domain types (``approval_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the request side of the tracker: the outward
request status vocabulary and its projection from flow status, request
priority, the request record itself, the decision action log, and users.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``total_steps`` is captured at creation and never recomputed.
* ``current_step <= total_steps``.
* Request status is a projection of the bound flow instance status
  (``REQUEST_STATUS_FOR_FLOW``); ``approved`` is the outward name of
  ``completed``.
* Only priority, due date and attachments are editable after creation
  (``RequestDetails``); they never touch status or ``current_step``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from uuid import UUID

from approval_kernel.domain.workflow import FlowStatus, StepDecision


class RequestStatus(str, Enum):
    """Externally visible request status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in-progress"


REQUEST_STATUS_FOR_FLOW: dict[FlowStatus, RequestStatus] = {
    FlowStatus.PENDING: RequestStatus.PENDING,
    FlowStatus.IN_PROGRESS: RequestStatus.IN_PROGRESS,
    FlowStatus.COMPLETED: RequestStatus.APPROVED,
    FlowStatus.REJECTED: RequestStatus.REJECTED,
}


class Priority(str, Enum):
    """Request priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ApprovalRequest:
    """Immutable snapshot of an approval request."""

    request_id: UUID
    title: str
    requester_id: UUID
    template_id: UUID
    flow_instance_id: UUID
    total_steps: int
    description: str = ""
    status: RequestStatus = RequestStatus.IN_PROGRESS
    priority: Priority = Priority.MEDIUM
    category: str = ""
    current_step: int = 0
    due_date: date | None = None
    attachments: tuple[str, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class RequestProjection:
    """The request fields derived from its flow instance."""

    status: RequestStatus
    current_step: int
    updated_at: datetime | None = None


@dataclass(frozen=True)
class RequestDetails:
    """The request fields its requester may edit after creation."""

    priority: Priority
    due_date: date | None = None
    attachments: tuple[str, ...] = ()
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalAction:
    """Append-only record of one approver decision. Immutable."""

    action_id: UUID
    request_id: UUID
    instance_id: UUID
    approver_id: UUID
    action: StepDecision
    step_index: int
    comment: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class User:
    """A stored user.  Identity is resolved outside the kernel."""

    user_id: UUID
    name: str
    email: str
    role: str = ""
    department: str = ""
    created_at: datetime | None = None
