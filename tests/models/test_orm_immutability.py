"""
ORM-level protections on the SQL schema.

Invariants tested:
- Step rows are append-only: the only UPDATE is a pending placeholder
  receiving its decision (plus the logical tombstone); DELETE is refused.
- Approval actions are append-only.
- Requests only change their flow projection and editable details.
- Deletion is logical: tombstoned rows stay in the database.
- Instance writes are a compare-and-set on version.
- UNIQUE(instance_id, step_index).
"""

from dataclasses import replace
from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.db.engine import get_session_factory
from approval_kernel.domain.dtos import CreateRequestCommand, DecisionCommand
from approval_kernel.domain.workflow import StepDecision, StepRecord
from approval_kernel.exceptions import (
    ConcurrencyConflictError,
    ImmutabilityViolationError,
    PersistenceError,
)
from approval_kernel.models import (
    ApprovalActionModel,
    ApprovalRequestModel,
    FlowInstanceModel,
    FlowStepModel,
    FlowTemplateModel,
)
from approval_kernel.services.template_service import TemplateService
from approval_kernel.services.workflow_engine import WorkflowEngine
from tests.helpers import linear_definition


@pytest.fixture
def sql_engine_service(sql_repository, deterministic_clock):
    return WorkflowEngine(sql_repository, deterministic_clock)


@pytest.fixture
def decided_request(sql_repository, sql_engine_service, deterministic_clock, test_actor_id):
    """A two-approver request whose first step is approved."""
    template = TemplateService(sql_repository, deterministic_clock).create_template(
        linear_definition(None, None)
    )
    snapshot = sql_engine_service.create_request(
        CreateRequestCommand(template_id=template.template_id, title="Monitor"),
        test_actor_id,
    )
    deterministic_clock.tick()
    sql_engine_service.submit_decision(DecisionCommand(
        instance_id=snapshot.instance.instance_id,
        node_id="approver-1",
        approver_id=uuid4(),
        decision=StepDecision.APPROVED,
        comment="ok",
    ))
    return snapshot


@pytest.fixture
def session(sql_engine):
    with get_session_factory()() as session:
        yield session
        session.rollback()


def _step(session, instance_id, index):
    return session.scalars(
        select(FlowStepModel).where(
            FlowStepModel.instance_id == instance_id,
            FlowStepModel.step_index == index,
        )
    ).one()


class TestStepImmutability:

    def test_decided_step_cannot_be_rewritten(self, session, decided_request):
        step = _step(session, decided_request.instance.instance_id, 1)
        step.comment = "edited later"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_decision_cannot_be_reverted(self, session, decided_request):
        step = _step(session, decided_request.instance.instance_id, 1)
        step.decision = "pending"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_node_cannot_change(self, session, decided_request):
        step = _step(session, decided_request.instance.instance_id, 2)
        step.node_id = "approver-1"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_placeholder_may_receive_decision(self, session, decided_request):
        step = _step(session, decided_request.instance.instance_id, 2)
        step.decision = "rejected"
        step.approver_id = uuid4()
        session.flush()

    def test_step_delete_refused(self, session, decided_request):
        session.delete(_step(session, decided_request.instance.instance_id, 0))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_duplicate_index_refused(self, sql_repository, decided_request):
        duplicate = StepRecord(
            step_id=uuid4(),
            instance_id=decided_request.instance.instance_id,
            node_id="approver-2",
            step_index=2,
        )
        with pytest.raises(PersistenceError):
            sql_repository.append_step(duplicate)


class TestActionAndRequestImmutability:

    def test_action_update_refused(self, session, decided_request):
        action = session.scalars(select(ApprovalActionModel)).one()
        action.comment = "rewritten"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_action_delete_refused(self, session, decided_request):
        session.delete(session.scalars(select(ApprovalActionModel)).one())
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_request_title_immutable(self, session, decided_request):
        request = session.get(ApprovalRequestModel, decided_request.request.request_id)
        request.title = "Renamed"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_request_projection_writable(self, session, decided_request):
        request = session.get(ApprovalRequestModel, decided_request.request.request_id)
        request.current_step = 2
        request.status = "in-progress"
        session.flush()

    def test_request_details_writable(self, session, decided_request):
        request = session.get(ApprovalRequestModel, decided_request.request.request_id)
        request.priority = "high"
        request.due_date = date(2024, 3, 1)
        request.attachments = ["quote.pdf"]
        session.flush()

    @pytest.mark.parametrize("column, value", [
        ("requester_id", uuid4()),
        ("total_steps", 5),
        ("category", "travel"),
    ])
    def test_request_identity_columns_immutable(self, session, decided_request, column, value):
        request = session.get(ApprovalRequestModel, decided_request.request.request_id)
        setattr(request, column, value)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestLogicalDeletion:

    def test_tombstoned_rows_remain(self, session, sql_engine_service, decided_request):
        request_id = decided_request.request.request_id
        instance_id = decided_request.instance.instance_id
        sql_engine_service.delete_request(request_id)

        request = session.get(ApprovalRequestModel, request_id)
        assert request is not None
        assert request.is_deleted
        assert request.deleted_at is not None

        instance = session.get(FlowInstanceModel, instance_id)
        assert instance.is_deleted

        steps = session.scalars(
            select(FlowStepModel).where(FlowStepModel.instance_id == instance_id)
        ).all()
        assert len(steps) == 3
        assert all(s.is_deleted for s in steps)

        actions = session.scalars(select(ApprovalActionModel)).all()
        assert len(actions) == 1
        assert actions[0].is_deleted

    def test_template_tombstone_keeps_row(self, session, sql_repository, deterministic_clock):
        service = TemplateService(sql_repository, deterministic_clock)
        template = service.create_template(linear_definition(None))
        service.delete_template(template.template_id)

        count = session.scalar(select(func.count()).select_from(FlowTemplateModel))
        assert count == 1
        assert session.get(FlowTemplateModel, template.template_id).is_deleted


class TestVersionCompareAndSet:

    def test_stale_row_version(self, session, decided_request):
        instance_id = decided_request.instance.instance_id
        model = session.get(FlowInstanceModel, instance_id)
        assert model.version == 2

        # Another writer moves the row on
        session.execute(
            update(FlowInstanceModel.__table__)
            .where(FlowInstanceModel.__table__.c.id == instance_id)
            .values(version=3)
        )

        model.version = 3
        model.current_node_id = "end"
        with pytest.raises(StaleDataError):
            session.flush()

    def test_repository_reports_conflict(self, sql_repository, decided_request):
        current = sql_repository.get_instance_by_id(decided_request.instance.instance_id)
        with pytest.raises(ConcurrencyConflictError):
            sql_repository.update_instance(
                replace(current, version=current.version + 1),
                expected_version=current.version - 1,
            )
