"""
Module: approval_kernel.models.flow
Responsibility: ORM persistence for flow templates, flow instances and the
    per-instance step ledger.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain value objects (for DTO conversion) only.

Invariants enforced:
    - Templates persist their graph as editor-shaped JSON; to_dto() decodes
      and validates it, so no untyped graph ever leaves this module.
    - One flow instance per request (UNIQUE request_id).
    - Instance status values limited by check constraint; every UPDATE is a
      compare-and-set on ``version`` (mapper version_id_col).
    - Ledger: UNIQUE(instance_id, step_index).  Step rows are append-only:
      the only permitted UPDATEs are a pending placeholder receiving its
      decision, and the logical tombstone.  DELETE is refused.

Failure modes:
    - IntegrityError on a duplicate (instance_id, step_index).
    - StaleDataError when the instance version moved under the writer.
    - ImmutabilityViolationError on any other step mutation.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import TOMBSTONE_COLUMNS, TrackedBase, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.workflow import (
        FlowInstance,
        FlowTemplate,
        StepRecord,
    )


_DECISION_COLUMNS = frozenset({"decision", "approver_id", "comment", "decided_at", "updated_at"})


def changed_columns(target) -> set[str]:
    """Names of the mapped attributes with pending changes on ``target``."""
    state = inspect(target)
    return {attr.key for attr in state.attrs if attr.history.has_changes()}


class FlowTemplateModel(TrackedBase):
    """Persistent template version.  The graph columns are write-once."""

    __tablename__ = "approval_flow_templates"

    __table_args__ = (
        UniqueConstraint("lineage_id", "version", name="uq_flow_templates_lineage_version"),
        Index("ix_flow_templates_active", "is_active", "is_deleted"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    category: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    nodes: Mapped[list] = mapped_column(JSON, nullable=False)
    edges: Mapped[list] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    lineage_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    created_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<FlowTemplate {self.id} {self.name!r} v{self.version}>"

    def to_dto(self) -> FlowTemplate:
        """Convert ORM model to frozen domain DTO (decoding the graph)."""
        from approval_kernel.domain.graph import build_graph
        from approval_kernel.domain.workflow import FlowTemplate as FlowTemplateDTO

        return FlowTemplateDTO(
            template_id=self.id,
            name=self.name,
            description=self.description,
            category=self.category,
            graph=build_graph(self.nodes, self.edges),
            version=self.version,
            lineage_id=self.lineage_id,
            created_by=self.created_by,
            created_at=self.created_at,
            updated_at=self.updated_at,
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto: FlowTemplate) -> FlowTemplateModel:
        """Create ORM model from domain DTO."""
        from approval_kernel.domain.graph import encode_graph

        nodes, edges = encode_graph(dto.graph)
        return cls(
            id=dto.template_id,
            name=dto.name,
            description=dto.description,
            category=dto.category,
            nodes=nodes,
            edges=edges,
            version=dto.version,
            lineage_id=dto.lineage_id or dto.template_id,
            created_by=dto.created_by,
            created_at=dto.created_at,
            updated_at=dto.updated_at or dto.created_at,
            is_active=dto.is_active,
        )


class FlowInstanceModel(TrackedBase):
    """Persistent flow instance; the per-request execution pointer."""

    __tablename__ = "approval_flow_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in-progress', 'completed', 'rejected')",
            name="ck_flow_instances_valid_status",
        ),
        UniqueConstraint("request_id", name="uq_flow_instances_request"),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_flow_templates.id"), nullable=False,
    )
    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False,
    )
    current_node_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": False,
    }

    def __repr__(self) -> str:
        return (
            f"<FlowInstance {self.id} request={self.request_id} "
            f"node={self.current_node_id} status={self.status}>"
        )

    def to_dto(self) -> FlowInstance:
        from approval_kernel.domain.workflow import (
            FlowInstance as FlowInstanceDTO,
            FlowStatus,
        )

        return FlowInstanceDTO(
            instance_id=self.id,
            template_id=self.template_id,
            request_id=self.request_id,
            current_node_id=self.current_node_id,
            status=FlowStatus(self.status),
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )

    @classmethod
    def from_dto(cls, dto: FlowInstance) -> FlowInstanceModel:
        return cls(
            id=dto.instance_id,
            template_id=dto.template_id,
            request_id=dto.request_id,
            current_node_id=dto.current_node_id,
            status=dto.status.value,
            version=dto.version,
            created_at=dto.created_at,
            updated_at=dto.updated_at or dto.created_at,
            completed_at=dto.completed_at,
        )


class FlowStepModel(TrackedBase):
    """Persistent step ledger record. Append-only.

    Guarantees:
        - UNIQUE(instance_id, step_index).
        - Only pending -> approved/rejected and the tombstone may UPDATE.
    """

    __tablename__ = "approval_flow_steps"

    __table_args__ = (
        UniqueConstraint("instance_id", "step_index", name="uq_flow_steps_index"),
        CheckConstraint(
            "decision IN ('approved', 'rejected', 'pending')",
            name="ck_flow_steps_valid_decision",
        ),
        Index("ix_flow_steps_pending_approver", "decision", "approver_id"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_flow_instances.id"), nullable=False,
    )
    node_id: Mapped[str] = mapped_column(String(100), nullable=False)
    approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    decision: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<FlowStep {self.instance_id}#{self.step_index} "
            f"node={self.node_id} decision={self.decision}>"
        )

    def to_dto(self) -> StepRecord:
        from approval_kernel.domain.workflow import (
            StepDecision,
            StepRecord as StepRecordDTO,
        )

        return StepRecordDTO(
            step_id=self.id,
            instance_id=self.instance_id,
            node_id=self.node_id,
            step_index=self.step_index,
            decision=StepDecision(self.decision),
            approver_id=self.approver_id,
            comment=self.comment,
            decided_at=self.decided_at,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto: StepRecord) -> FlowStepModel:
        return cls(
            id=dto.step_id,
            instance_id=dto.instance_id,
            node_id=dto.node_id,
            step_index=dto.step_index,
            decision=dto.decision.value,
            approver_id=dto.approver_id,
            comment=dto.comment,
            decided_at=dto.decided_at,
            created_at=dto.created_at,
            updated_at=dto.decided_at or dto.created_at,
        )


# =============================================================================
# ORM-Level Append-Only Enforcement for Steps
# =============================================================================


@event.listens_for(FlowStepModel, "before_update")
def prevent_step_rewrite(mapper, connection, target):
    """Allow only a placeholder's decision or a tombstone."""
    changed = changed_columns(target)
    if not changed or changed <= TOMBSTONE_COLUMNS:
        return
    if changed <= _DECISION_COLUMNS:
        history = inspect(target).attrs.decision.history
        previous = history.deleted[0] if history.deleted else target.decision
        if previous == "pending" and target.decision in ("approved", "rejected"):
            return
    raise ImmutabilityViolationError(
        entity_type="FlowStep",
        entity_id=str(target.id),
        reason=f"Step records are append-only -- cannot modify {sorted(changed)}",
    )


@event.listens_for(FlowStepModel, "before_delete")
def prevent_step_delete(mapper, connection, target):
    """Prevent physical deletion of step records."""
    raise ImmutabilityViolationError(
        entity_type="FlowStep",
        entity_id=str(target.id),
        reason="Step records are never deleted -- tombstone instead",
    )
