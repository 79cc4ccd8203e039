"""
Module: approval_kernel.db.memory
Responsibility: In-memory implementation of the WorkflowRepository port for
    tests, scripts and embedding without a database.
Architecture position: Kernel > DB.  Holds domain DTOs only; no ORM.

Invariants enforced:
    - Units of work are all-or-nothing.  Writes inside ``atomic()`` are
      staged on a private copy of the store and replayed onto a fresh copy
      of the committed store at commit time, which is then published in a
      single reference swap.  A published store is never mutated, so readers
      always see a fully committed state.
    - ``update_instance`` is a compare-and-set on ``version``; the check runs
      when staged and again at commit against the latest committed state.
    - One step per (instance_id, step_index), checked the same way.
    - Per-instance writer lock: a ``threading.Lock`` acquired with the
      configured timeout (0 = fail fast), held until the unit ends.

Failure modes:
    - InstanceLockedError if another unit holds the instance lock.
    - ConcurrencyConflictError if the instance version moved before commit.
    - StepSequenceError on a duplicate step index at commit.
"""

from __future__ import annotations

import threading
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from uuid import UUID

from approval_kernel.domain.approval import (
    ApprovalAction,
    ApprovalRequest,
    RequestDetails,
    RequestProjection,
    User,
)
from approval_kernel.domain.ledger import next_index
from approval_kernel.domain.workflow import FlowInstance, FlowTemplate, StepDecision, StepRecord
from approval_kernel.exceptions import (
    ConcurrencyConflictError,
    InstanceLockedError,
    InstanceNotFoundError,
    RequestNotFoundError,
    StepNotFoundError,
    StepSequenceError,
    TemplateNotFoundError,
    UserNotFoundError,
)
from approval_kernel.logging_config import get_logger

logger = get_logger("db.memory")


class _Tables:
    """One version of the whole store."""

    def __init__(self) -> None:
        self.templates: dict[UUID, FlowTemplate] = {}
        self.requests: dict[UUID, ApprovalRequest] = {}
        self.instances: dict[UUID, FlowInstance] = {}
        self.steps: dict[UUID, dict[int, StepRecord]] = {}
        self.actions: dict[UUID, list[ApprovalAction]] = {}
        self.users: dict[UUID, User] = {}
        self.deleted: set[UUID] = set()

    def copy(self) -> _Tables:
        clone = _Tables()
        clone.templates = dict(self.templates)
        clone.requests = dict(self.requests)
        clone.instances = dict(self.instances)
        clone.steps = {k: dict(v) for k, v in self.steps.items()}
        clone.actions = {k: list(v) for k, v in self.actions.items()}
        clone.users = dict(self.users)
        clone.deleted = set(self.deleted)
        return clone

    def live(self, entity_id: UUID) -> bool:
        return entity_id not in self.deleted


class _Unit:
    def __init__(self, view: _Tables) -> None:
        self.view = view
        self.ops: list[Callable[[_Tables], None]] = []
        self.locks: dict[UUID, threading.Lock] = {}


class InMemoryWorkflowRepository:
    """WorkflowRepository backed by process memory."""

    def __init__(self, *, lock_timeout: float = 0.0):
        self._tables = _Tables()
        self._commit_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        # An entry lives only while some unit holds or waits on its lock
        self._instance_locks: weakref.WeakValueDictionary[UUID, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._lock_timeout = lock_timeout
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if self._unit() is not None:
            yield
            return

        unit = _Unit(self._tables.copy())
        self._local.unit = unit
        try:
            yield
            self._commit(unit)
        except Exception:
            logger.debug("transaction_rolled_back", extra={"staged_ops": len(unit.ops)})
            raise
        finally:
            self._local.unit = None
            for lock in unit.locks.values():
                lock.release()

    def lock_instance(self, instance_id: UUID) -> FlowInstance:
        unit = self._unit()
        if unit is None:
            raise RuntimeError("lock_instance() requires an open atomic() unit")

        if instance_id not in unit.locks:
            with self._registry_lock:
                lock = self._instance_locks.setdefault(instance_id, threading.Lock())
            if self._lock_timeout > 0:
                acquired = lock.acquire(timeout=self._lock_timeout)
            else:
                acquired = lock.acquire(blocking=False)
            if not acquired:
                logger.info("instance_lock_contended", extra={"instance_id": str(instance_id)})
                raise InstanceLockedError(str(instance_id))
            unit.locks[instance_id] = lock
            self._refresh(unit.view, instance_id)

        return self._live_instance(unit.view, instance_id)

    def _unit(self) -> _Unit | None:
        return getattr(self._local, "unit", None)

    def _read(self) -> _Tables:
        unit = self._unit()
        return unit.view if unit is not None else self._tables

    def _write(self, op: Callable[[_Tables], None]) -> None:
        unit = self._unit()
        if unit is None:
            with self.atomic():
                self._write(op)
            return
        op(unit.view)
        unit.ops.append(op)

    def _commit(self, unit: _Unit) -> None:
        if not unit.ops:
            return
        with self._commit_lock:
            candidate = self._tables.copy()
            for op in unit.ops:
                op(candidate)
            self._tables = candidate
        logger.debug("transaction_committed", extra={"staged_ops": len(unit.ops)})

    def _refresh(self, view: _Tables, instance_id: UUID) -> None:
        """Pull the committed state of one instance aggregate into ``view``."""
        committed = self._tables
        instance = committed.instances.get(instance_id)
        if instance is None:
            return
        view.instances[instance_id] = instance
        view.steps[instance_id] = dict(committed.steps.get(instance_id, {}))
        request_id = instance.request_id
        if request_id in committed.requests:
            view.requests[request_id] = committed.requests[request_id]
        view.actions[request_id] = list(committed.actions.get(request_id, []))
        for entity_id in (instance_id, request_id):
            if entity_id in committed.deleted:
                view.deleted.add(entity_id)

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
        tables = self._read()
        template = tables.templates.get(template_id)
        if (
            template is None
            or not (tables.live(template_id) or include_deleted)
            or not (template.is_active or include_inactive)
        ):
            raise TemplateNotFoundError(str(template_id))
        return template

    def add_template(self, template: FlowTemplate) -> None:
        self._write(lambda t: t.templates.__setitem__(template.template_id, template))

    def update_template(self, template: FlowTemplate) -> None:
        def op(t: _Tables) -> None:
            if template.template_id not in t.templates:
                raise TemplateNotFoundError(str(template.template_id))
            t.templates[template.template_id] = template

        self._write(op)

    def list_templates(self, *, include_inactive: bool = False) -> list[FlowTemplate]:
        tables = self._read()
        templates = [
            tpl for tid, tpl in tables.templates.items()
            if tables.live(tid) and (tpl.is_active or include_inactive)
        ]
        return sorted(templates, key=lambda tpl: (tpl.name, tpl.version))

    def tombstone_template(self, template_id: UUID, at: datetime) -> bool:
        tables = self._read()
        if template_id not in tables.templates or not tables.live(template_id):
            return False

        def op(t: _Tables) -> None:
            t.templates[template_id] = replace(
                t.templates[template_id], is_active=False, updated_at=at,
            )
            t.deleted.add(template_id)

        self._write(op)
        return True

    # ------------------------------------------------------------------
    # Requests and instances
    # ------------------------------------------------------------------

    def get_request(self, request_id: UUID) -> ApprovalRequest:
        tables = self._read()
        request = tables.requests.get(request_id)
        if request is None or not tables.live(request_id):
            raise RequestNotFoundError(str(request_id))
        return request

    def add_request(self, request: ApprovalRequest) -> None:
        self._write(lambda t: t.requests.__setitem__(request.request_id, request))

    def list_requests(self) -> list[ApprovalRequest]:
        tables = self._read()
        live = [r for rid, r in tables.requests.items() if tables.live(rid)]
        return sorted(live, key=lambda r: r.created_at, reverse=True)

    def update_request_projection(self, request_id: UUID, projection: RequestProjection) -> None:
        def op(t: _Tables) -> None:
            request = t.requests.get(request_id)
            if request is None or not t.live(request_id):
                raise RequestNotFoundError(str(request_id))
            t.requests[request_id] = replace(
                request,
                status=projection.status,
                current_step=projection.current_step,
                updated_at=projection.updated_at or request.updated_at,
            )

        self._write(op)

    def update_request_details(self, request_id: UUID, details: RequestDetails) -> None:
        def op(t: _Tables) -> None:
            request = t.requests.get(request_id)
            if request is None or not t.live(request_id):
                raise RequestNotFoundError(str(request_id))
            t.requests[request_id] = replace(
                request,
                priority=details.priority,
                due_date=details.due_date,
                attachments=tuple(details.attachments),
                updated_at=details.updated_at or request.updated_at,
            )

        self._write(op)

    def get_instance(self, request_id: UUID) -> FlowInstance:
        tables = self._read()
        for instance_id, instance in tables.instances.items():
            if instance.request_id == request_id and tables.live(instance_id):
                return instance
        raise InstanceNotFoundError(f"request:{request_id}")

    def get_instance_by_id(self, instance_id: UUID) -> FlowInstance:
        return self._live_instance(self._read(), instance_id)

    def add_instance(self, instance: FlowInstance) -> None:
        def op(t: _Tables) -> None:
            t.instances[instance.instance_id] = instance
            t.steps.setdefault(instance.instance_id, {})

        self._write(op)

    def update_instance(self, instance: FlowInstance, expected_version: int) -> None:
        def op(t: _Tables) -> None:
            current = self._live_instance(t, instance.instance_id)
            if current.version != expected_version:
                raise ConcurrencyConflictError("FlowInstance", str(instance.instance_id))
            t.instances[instance.instance_id] = instance

        self._write(op)

    @staticmethod
    def _live_instance(tables: _Tables, instance_id: UUID) -> FlowInstance:
        instance = tables.instances.get(instance_id)
        if instance is None or not tables.live(instance_id):
            raise InstanceNotFoundError(str(instance_id))
        return instance

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def append_step(self, step: StepRecord) -> None:
        def op(t: _Tables) -> None:
            self._live_instance(t, step.instance_id)
            ledger = t.steps.setdefault(step.instance_id, {})
            if step.step_index in ledger:
                raise StepSequenceError(
                    str(step.instance_id), next_index(list(ledger.values())), step.step_index,
                )
            ledger[step.step_index] = step

        self._write(op)

    def update_step(self, step: StepRecord) -> None:
        def op(t: _Tables) -> None:
            ledger = t.steps.get(step.instance_id, {})
            current = ledger.get(step.step_index)
            if current is None or current.step_id != step.step_id:
                raise StepNotFoundError(str(step.instance_id), step.step_index)
            if current.decision != StepDecision.PENDING:
                raise ConcurrencyConflictError("FlowStep", str(step.step_id))
            ledger[step.step_index] = step

        self._write(op)

    def list_steps(self, instance_id: UUID) -> list[StepRecord]:
        tables = self._read()
        if not tables.live(instance_id):
            return []
        ledger = tables.steps.get(instance_id, {})
        return [ledger[i] for i in sorted(ledger)]

    def iter_pending_steps(self) -> Iterator[StepRecord]:
        tables = self._read()
        for instance_id, ledger in tables.steps.items():
            if not tables.live(instance_id):
                continue
            for index in sorted(ledger):
                if ledger[index].decision == StepDecision.PENDING:
                    yield ledger[index]

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def add_action(self, action: ApprovalAction) -> None:
        self._write(lambda t: t.actions.setdefault(action.request_id, []).append(action))

    def list_actions(self, request_id: UUID) -> list[ApprovalAction]:
        tables = self._read()
        if not tables.live(request_id):
            return []
        return sorted(tables.actions.get(request_id, []), key=lambda a: a.step_index)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def tombstone_cascade(self, request_id: UUID, at: datetime) -> bool:
        tables = self._read()
        if request_id not in tables.requests or not tables.live(request_id):
            return False

        def op(t: _Tables) -> None:
            request = t.requests.get(request_id)
            if request is None or not t.live(request_id):
                raise RequestNotFoundError(str(request_id))
            t.requests[request_id] = replace(request, updated_at=at)
            t.deleted.add(request_id)
            for instance_id, instance in t.instances.items():
                if instance.request_id == request_id:
                    t.deleted.add(instance_id)
                    t.deleted.update(s.step_id for s in t.steps.get(instance_id, {}).values())
            t.deleted.update(a.action_id for a in t.actions.get(request_id, []))

        self._write(op)
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, user: User) -> None:
        stored = replace(user, email=user.email.lower())
        self._write(lambda t: t.users.__setitem__(stored.user_id, stored))

    def get_user(self, user_id: UUID) -> User:
        tables = self._read()
        user = tables.users.get(user_id)
        if user is None or not tables.live(user_id):
            raise UserNotFoundError(str(user_id))
        return user

    def get_user_by_email(self, email: str) -> User | None:
        tables = self._read()
        wanted = email.lower()
        for user_id, user in tables.users.items():
            if user.email == wanted and tables.live(user_id):
                return user
        return None

    def list_users(self) -> list[User]:
        tables = self._read()
        live = [u for uid, u in tables.users.items() if tables.live(uid)]
        return sorted(live, key=lambda u: u.name)
