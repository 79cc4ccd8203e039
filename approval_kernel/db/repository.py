"""
Module: approval_kernel.db.repository
Responsibility: SQLAlchemy implementation of the WorkflowRepository port.
    Converts between ORM models and domain DTOs and maps database failures
    onto the kernel's typed exceptions.
Architecture position: Kernel > DB.  May import from models/, domain/ and
    exceptions.  Services receive an instance by injection.

Invariants enforced:
    - One session per unit of work per thread; ``atomic()`` commits on
      normal exit and rolls back on any exception.  Nested calls join.
    - Per-instance writer lock: ``SELECT ... FOR UPDATE NOWAIT`` (or with a
      ``lock_timeout`` on PostgreSQL when a timeout is configured).
    - Every instance UPDATE is a compare-and-set on ``version``.
    - Tombstoned rows are filtered from every read.

Failure modes:
    - InstanceLockedError: the row lock is held by another transaction.
    - ConcurrencyConflictError: StaleDataError from the version check.
    - PersistenceError: any other SQLAlchemyError (transaction rolled back).
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, text, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.db.base import TrackedBase
from approval_kernel.domain.approval import (
    ApprovalAction,
    ApprovalRequest,
    RequestDetails,
    RequestProjection,
    User,
)
from approval_kernel.domain.workflow import FlowInstance, FlowTemplate, StepRecord
from approval_kernel.exceptions import (
    ConcurrencyConflictError,
    InstanceLockedError,
    InstanceNotFoundError,
    PersistenceError,
    RequestNotFoundError,
    StepNotFoundError,
    TemplateNotFoundError,
    UserNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval import ApprovalActionModel, ApprovalRequestModel
from approval_kernel.models.flow import (
    FlowInstanceModel,
    FlowStepModel,
    FlowTemplateModel,
)
from approval_kernel.models.user import UserModel

logger = get_logger("db.repository")

# PostgreSQL SQLSTATE for "lock_not_available" (NOWAIT / lock_timeout).
_PG_LOCK_NOT_AVAILABLE = "55P03"


def _is_lock_failure(exc: OperationalError) -> bool:
    return getattr(exc.orig, "pgcode", None) == _PG_LOCK_NOT_AVAILABLE


class SqlWorkflowRepository:
    """WorkflowRepository over a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker[Session], *, lock_timeout: float = 0.0):
        self._session_factory = session_factory
        self._lock_timeout = lock_timeout
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if self._current() is not None:
            yield
            return

        session = self._session_factory()
        self._local.session = session
        try:
            yield
            session.commit()
        except StaleDataError as exc:
            session.rollback()
            logger.warning("transaction_rolled_back", extra={"reason": "stale_version"})
            raise ConcurrencyConflictError("FlowInstance", "unknown") from exc
        except OperationalError as exc:
            session.rollback()
            logger.warning("transaction_rolled_back", extra={"reason": str(exc.orig)})
            raise PersistenceError("commit", str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("transaction_rolled_back", extra={"reason": str(exc)})
            raise PersistenceError("commit", str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            self._local.session = None
            session.close()

    def _current(self) -> Session | None:
        return getattr(self._local, "session", None)

    def _session(self) -> Session:
        session = self._current()
        if session is None:
            raise RuntimeError("No open unit of work; wrap the call in atomic()")
        return session

    @contextmanager
    def _reading(self) -> Iterator[Session]:
        session = self._current()
        if session is not None:
            yield session
            return
        with self._session_factory() as session:
            yield session

    def lock_instance(self, instance_id: UUID) -> FlowInstance:
        session = self._session()
        if self._lock_timeout > 0 and session.get_bind().dialect.name == "postgresql":
            session.execute(
                text(f"SET LOCAL lock_timeout = '{int(self._lock_timeout * 1000)}ms'")
            )
            stmt = self._live_instance_stmt(instance_id).with_for_update()
        else:
            stmt = self._live_instance_stmt(instance_id).with_for_update(nowait=True)

        try:
            model = session.scalars(
                stmt.execution_options(populate_existing=True)
            ).one_or_none()
        except OperationalError as exc:
            if _is_lock_failure(exc):
                logger.info("instance_lock_contended", extra={"instance_id": str(instance_id)})
                raise InstanceLockedError(str(instance_id)) from exc
            raise
        if model is None:
            raise InstanceNotFoundError(str(instance_id))
        return model.to_dto()

    @staticmethod
    def _live_instance_stmt(instance_id: UUID):
        return select(FlowInstanceModel).where(
            FlowInstanceModel.id == instance_id,
            FlowInstanceModel.is_deleted.is_(False),
        )

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def get_template(
        self,
        template_id: UUID,
        *,
        include_inactive: bool = False,
        include_deleted: bool = False,
    ) -> FlowTemplate:
        stmt = select(FlowTemplateModel).where(FlowTemplateModel.id == template_id)
        if not include_deleted:
            stmt = stmt.where(FlowTemplateModel.is_deleted.is_(False))
        if not include_inactive:
            stmt = stmt.where(FlowTemplateModel.is_active.is_(True))
        with self._reading() as session:
            model = session.scalars(stmt).one_or_none()
            if model is None:
                raise TemplateNotFoundError(str(template_id))
            return model.to_dto()

    def add_template(self, template: FlowTemplate) -> None:
        with self.atomic():
            session = self._session()
            session.add(FlowTemplateModel.from_dto(template))
            session.flush()

    def update_template(self, template: FlowTemplate) -> None:
        with self.atomic():
            model = self._session().get(FlowTemplateModel, template.template_id)
            if model is None:
                raise TemplateNotFoundError(str(template.template_id))
            model.is_active = template.is_active
            model.updated_at = template.updated_at or model.updated_at

    def list_templates(self, *, include_inactive: bool = False) -> list[FlowTemplate]:
        stmt = select(FlowTemplateModel).where(FlowTemplateModel.is_deleted.is_(False))
        if not include_inactive:
            stmt = stmt.where(FlowTemplateModel.is_active.is_(True))
        stmt = stmt.order_by(FlowTemplateModel.name, FlowTemplateModel.version)
        with self._reading() as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def tombstone_template(self, template_id: UUID, at: datetime) -> bool:
        with self.atomic():
            model = self._session().get(FlowTemplateModel, template_id)
            if model is None or model.is_deleted:
                return False
            model.is_active = False
            model.tombstone(at)
            return True

    # ------------------------------------------------------------------
    # Requests and instances
    # ------------------------------------------------------------------

    def get_request(self, request_id: UUID) -> ApprovalRequest:
        with self._reading() as session:
            model = session.get(ApprovalRequestModel, request_id)
            if model is None or model.is_deleted:
                raise RequestNotFoundError(str(request_id))
            return model.to_dto()

    def add_request(self, request: ApprovalRequest) -> None:
        with self.atomic():
            session = self._session()
            session.add(ApprovalRequestModel.from_dto(request))
            session.flush()

    def list_requests(self) -> list[ApprovalRequest]:
        stmt = (
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.is_deleted.is_(False))
            .order_by(ApprovalRequestModel.created_at.desc())
        )
        with self._reading() as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def update_request_projection(self, request_id: UUID, projection: RequestProjection) -> None:
        with self.atomic():
            model = self._session().get(ApprovalRequestModel, request_id)
            if model is None or model.is_deleted:
                raise RequestNotFoundError(str(request_id))
            model.status = projection.status.value
            model.current_step = projection.current_step
            if projection.updated_at is not None:
                model.updated_at = projection.updated_at

    def update_request_details(self, request_id: UUID, details: RequestDetails) -> None:
        with self.atomic():
            model = self._session().get(ApprovalRequestModel, request_id)
            if model is None or model.is_deleted:
                raise RequestNotFoundError(str(request_id))
            model.priority = details.priority.value
            model.due_date = details.due_date
            model.attachments = list(details.attachments)
            if details.updated_at is not None:
                model.updated_at = details.updated_at

    def get_instance(self, request_id: UUID) -> FlowInstance:
        stmt = select(FlowInstanceModel).where(
            FlowInstanceModel.request_id == request_id,
            FlowInstanceModel.is_deleted.is_(False),
        )
        with self._reading() as session:
            model = session.scalars(stmt).one_or_none()
            if model is None:
                raise InstanceNotFoundError(f"request:{request_id}")
            return model.to_dto()

    def get_instance_by_id(self, instance_id: UUID) -> FlowInstance:
        with self._reading() as session:
            model = session.scalars(self._live_instance_stmt(instance_id)).one_or_none()
            if model is None:
                raise InstanceNotFoundError(str(instance_id))
            return model.to_dto()

    def add_instance(self, instance: FlowInstance) -> None:
        with self.atomic():
            session = self._session()
            session.add(FlowInstanceModel.from_dto(instance))
            session.flush()

    def update_instance(self, instance: FlowInstance, expected_version: int) -> None:
        with self.atomic():
            session = self._session()
            model = session.get(FlowInstanceModel, instance.instance_id)
            if model is None or model.is_deleted:
                raise InstanceNotFoundError(str(instance.instance_id))
            if model.version != expected_version:
                raise ConcurrencyConflictError("FlowInstance", str(instance.instance_id))
            model.current_node_id = instance.current_node_id
            model.status = instance.status.value
            model.version = instance.version
            model.updated_at = instance.updated_at or model.updated_at
            model.completed_at = instance.completed_at
            try:
                session.flush()
            except StaleDataError as exc:
                raise ConcurrencyConflictError(
                    "FlowInstance", str(instance.instance_id),
                ) from exc

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def append_step(self, step: StepRecord) -> None:
        with self.atomic():
            session = self._session()
            session.add(FlowStepModel.from_dto(step))
            session.flush()

    def update_step(self, step: StepRecord) -> None:
        with self.atomic():
            model = self._session().get(FlowStepModel, step.step_id)
            if model is None or model.is_deleted or model.step_index != step.step_index:
                raise StepNotFoundError(str(step.instance_id), step.step_index)
            model.decision = step.decision.value
            model.approver_id = step.approver_id
            model.comment = step.comment
            model.decided_at = step.decided_at
            model.updated_at = step.decided_at or model.updated_at

    def list_steps(self, instance_id: UUID) -> list[StepRecord]:
        stmt = (
            select(FlowStepModel)
            .where(
                FlowStepModel.instance_id == instance_id,
                FlowStepModel.is_deleted.is_(False),
            )
            .order_by(FlowStepModel.step_index)
        )
        with self._reading() as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def iter_pending_steps(self) -> Iterator[StepRecord]:
        stmt = (
            select(FlowStepModel)
            .where(
                FlowStepModel.decision == "pending",
                FlowStepModel.is_deleted.is_(False),
            )
            .order_by(FlowStepModel.created_at)
        )
        with self._reading() as session:
            steps = [m.to_dto() for m in session.scalars(stmt)]
        yield from steps

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def add_action(self, action: ApprovalAction) -> None:
        with self.atomic():
            session = self._session()
            session.add(ApprovalActionModel.from_dto(action))
            session.flush()

    def list_actions(self, request_id: UUID) -> list[ApprovalAction]:
        stmt = (
            select(ApprovalActionModel)
            .where(
                ApprovalActionModel.request_id == request_id,
                ApprovalActionModel.is_deleted.is_(False),
            )
            .order_by(ApprovalActionModel.step_index)
        )
        with self._reading() as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def tombstone_cascade(self, request_id: UUID, at: datetime) -> bool:
        with self.atomic():
            session = self._session()
            request = session.get(ApprovalRequestModel, request_id)
            if request is None or request.is_deleted:
                return False

            tombstone = TrackedBase.tombstone_values(at)
            instance_ids = list(session.scalars(
                select(FlowInstanceModel.id).where(FlowInstanceModel.request_id == request_id)
            ))
            session.execute(
                update(FlowStepModel)
                .where(FlowStepModel.instance_id.in_(instance_ids))
                .values(**tombstone)
            )
            session.execute(
                update(ApprovalActionModel)
                .where(ApprovalActionModel.request_id == request_id)
                .values(**tombstone)
            )
            session.execute(
                update(FlowInstanceModel)
                .where(FlowInstanceModel.request_id == request_id)
                .values(**tombstone)
            )
            request.tombstone(at)
            return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, user: User) -> None:
        with self.atomic():
            session = self._session()
            session.add(UserModel.from_dto(user))
            session.flush()

    def get_user(self, user_id: UUID) -> User:
        with self._reading() as session:
            model = session.get(UserModel, user_id)
            if model is None or model.is_deleted:
                raise UserNotFoundError(str(user_id))
            return model.to_dto()

    def get_user_by_email(self, email: str) -> User | None:
        stmt = select(UserModel).where(
            UserModel.email == email.lower(),
            UserModel.is_deleted.is_(False),
        )
        with self._reading() as session:
            model = session.scalars(stmt).one_or_none()
            return model.to_dto() if model is not None else None

    def list_users(self) -> list[User]:
        stmt = (
            select(UserModel)
            .where(UserModel.is_deleted.is_(False))
            .order_by(UserModel.name)
        )
        with self._reading() as session:
            return [m.to_dto() for m in session.scalars(stmt)]
