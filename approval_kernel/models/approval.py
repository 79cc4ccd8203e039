"""
Module: approval_kernel.models.approval
Responsibility: ORM persistence for approval requests and the decision
    action log.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain value objects (for DTO conversion) only.

Invariants enforced:
    - Request status values limited by check constraint.
    - current_step <= total_steps (check constraint).
    - total_steps is written once at creation; only the projection columns
      (status, current_step, updated_at), the editable details (priority,
      due_date, attachments) and the tombstone change later.
    - ApprovalActionModel is append-only: no UPDATE except the tombstone,
      no DELETE.

Failure modes:
    - IntegrityError on invalid status or step bounds.
    - ImmutabilityViolationError on prohibited mutation.
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import TOMBSTONE_COLUMNS, TrackedBase, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError
from approval_kernel.models.flow import changed_columns

if TYPE_CHECKING:
    from approval_kernel.domain.approval import ApprovalAction, ApprovalRequest


_PROJECTION_COLUMNS = frozenset({"status", "current_step", "updated_at"})
_DETAIL_COLUMNS = frozenset({"priority", "due_date", "attachments", "updated_at"})


class ApprovalRequestModel(TrackedBase):
    """Persistent approval request bound to one template version."""

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'in-progress')",
            name="ck_approval_requests_valid_status",
        ),
        CheckConstraint(
            "priority IN ('low', 'medium', 'high')",
            name="ck_approval_requests_valid_priority",
        ),
        CheckConstraint(
            "current_step <= total_steps",
            name="ck_approval_requests_step_bounds",
        ),
        Index("ix_approval_requests_requester", "requester_id"),
        Index("ix_approval_requests_status", "status"),
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    requester_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_flow_templates.id"), nullable=False,
    )
    flow_instance_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    category: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    attachments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<ApprovalRequest {self.id} {self.title!r} status={self.status}>"

    def to_dto(self) -> ApprovalRequest:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import (
            ApprovalRequest as ApprovalRequestDTO,
            Priority,
            RequestStatus,
        )

        return ApprovalRequestDTO(
            request_id=self.id,
            title=self.title,
            description=self.description,
            requester_id=self.requester_id,
            template_id=self.template_id,
            flow_instance_id=self.flow_instance_id,
            status=RequestStatus(self.status),
            priority=Priority(self.priority),
            category=self.category,
            current_step=self.current_step,
            total_steps=self.total_steps,
            due_date=self.due_date,
            attachments=tuple(self.attachments or ()),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalRequest) -> ApprovalRequestModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.request_id,
            title=dto.title,
            description=dto.description,
            requester_id=dto.requester_id,
            template_id=dto.template_id,
            flow_instance_id=dto.flow_instance_id,
            status=dto.status.value,
            priority=dto.priority.value,
            category=dto.category,
            current_step=dto.current_step,
            total_steps=dto.total_steps,
            due_date=dto.due_date,
            attachments=list(dto.attachments),
            created_at=dto.created_at,
            updated_at=dto.updated_at or dto.created_at,
        )


class ApprovalActionModel(TrackedBase):
    """Append-only decision log entry. Immutable after insert."""

    __tablename__ = "approval_actions"

    __table_args__ = (
        CheckConstraint(
            "action IN ('approved', 'rejected')",
            name="ck_approval_actions_valid_action",
        ),
        Index("ix_approval_actions_request", "request_id"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False,
    )
    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_flow_instances.id"), nullable=False,
    )
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ApprovalAction {self.id} {self.action} step={self.step_index}>"

    def to_dto(self) -> ApprovalAction:
        from approval_kernel.domain.approval import ApprovalAction as ApprovalActionDTO
        from approval_kernel.domain.workflow import StepDecision

        return ApprovalActionDTO(
            action_id=self.id,
            request_id=self.request_id,
            instance_id=self.instance_id,
            approver_id=self.approver_id,
            action=StepDecision(self.action),
            step_index=self.step_index,
            comment=self.comment,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalAction) -> ApprovalActionModel:
        return cls(
            id=dto.action_id,
            request_id=dto.request_id,
            instance_id=dto.instance_id,
            approver_id=dto.approver_id,
            action=dto.action.value,
            step_index=dto.step_index,
            comment=dto.comment,
            created_at=dto.created_at,
            updated_at=dto.created_at,
        )


# =============================================================================
# ORM-Level Immutability Enforcement
# =============================================================================


@event.listens_for(ApprovalRequestModel, "before_update")
def restrict_request_update(mapper, connection, target):
    """Only the flow projection, the editable details and the tombstone may change."""
    allowed = _PROJECTION_COLUMNS | _DETAIL_COLUMNS | TOMBSTONE_COLUMNS
    changed = changed_columns(target)
    if changed <= allowed:
        return
    raise ImmutabilityViolationError(
        entity_type="ApprovalRequest",
        entity_id=str(target.id),
        reason=f"Request fields are fixed after creation -- cannot modify "
        f"{sorted(changed - allowed)}",
    )


@event.listens_for(ApprovalActionModel, "before_update")
def prevent_action_update(mapper, connection, target):
    """Prevent modification of decision log entries."""
    changed = changed_columns(target)
    if changed <= TOMBSTONE_COLUMNS:
        return
    raise ImmutabilityViolationError(
        entity_type="ApprovalAction",
        entity_id=str(target.id),
        reason="Approval actions are append-only -- cannot modify after creation",
    )


@event.listens_for(ApprovalActionModel, "before_delete")
def prevent_action_delete(mapper, connection, target):
    """Prevent deletion of decision log entries."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalAction",
        entity_id=str(target.id),
        reason="Approval actions are append-only -- cannot delete",
    )
