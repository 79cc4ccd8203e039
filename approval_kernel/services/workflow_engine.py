"""
approval_kernel.services.workflow_engine -- Approval request lifecycle.

Responsibility:
    The imperative shell of the approval workflow.  Creates requests bound
    to a template version, applies approver decisions, tombstones requests,
    and serves consistent request snapshots.  The pure state machine lives
    in ``approval_kernel.domain.engine``; this service owns units of work,
    the per-instance lock, the request projection, the decision action log
    and the structured log trail.

Architecture position:
    Kernel > Services.  May import from domain/, exceptions and
    logging_config.  Storage arrives through the injected
    ``WorkflowRepository``; there is no global database object.

Invariants enforced:
    - Creation (request + instance + step 0 + first placeholder) is one
      unit of work.
    - Every decision runs under the per-instance writer lock; instance,
      ledger, projection and action log change together or not at all.
    - Request status/current_step are only ever written from the
      instance's transition plan.
    - Detail edits (priority, due date, attachments) never change status,
      current_step or the instance.
    - Deletion tombstones request, instance, steps and actions together.

Failure modes:
    - TemplateNotFoundError / RequestNotFoundError / InstanceNotFoundError.
    - InvalidRequestError on a malformed creation command or detail edit.
    - AlreadyTerminalError / NodeMismatchError / InvalidDecisionError.
    - LedgerError subclasses (stale caller or approver not allowed).
    - InstanceLockedError / ConcurrencyConflictError (safe to retry).
    - PersistenceError (store failure, rolled back).
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from uuid import UUID, uuid4

from approval_kernel.domain.approval import (
    ApprovalAction,
    ApprovalRequest,
    Priority,
    RequestDetails,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.dtos import (
    CreateRequestCommand,
    DecisionCommand,
    DecisionOutcome,
    RequestSnapshot,
)
from approval_kernel.domain.repository import WorkflowRepository
from approval_kernel.domain.workflow import FlowStatus
from approval_kernel.exceptions import (
    ApprovalKernelError,
    InvalidRequestError,
    RequestNotFoundError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.services.flow_instance_manager import FlowInstanceManager
from approval_kernel.services.step_ledger import StepLedger

logger = get_logger("services.workflow_engine")


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Marks an omitted argument where None is a meaningful value
UNSET = _Unset()


def _coerce_priority(value: Priority | str | None, default: Priority) -> Priority:
    if value is None:
        return default
    try:
        return Priority(value)
    except ValueError:
        raise InvalidRequestError("priority", f"unknown priority {value!r}") from None


class WorkflowEngine:
    """Drives approval requests through their flow templates."""

    def __init__(
        self,
        repository: WorkflowRepository,
        clock: Clock | None = None,
        default_priority: Priority | str = Priority.MEDIUM,
    ):
        self._repo = repository
        self._clock = clock or SystemClock()
        self._default_priority = Priority(default_priority)
        self._ledger = StepLedger(repository, self._clock)
        self._instances = FlowInstanceManager(repository, self._clock, self._ledger)

    @property
    def ledger(self) -> StepLedger:
        return self._ledger

    @property
    def instances(self) -> FlowInstanceManager:
        return self._instances

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_request(
        self,
        command: CreateRequestCommand,
        requester_id: UUID,
    ) -> RequestSnapshot:
        """Create a request, its flow instance and the seed ledger records."""
        title = (command.title or "").strip()
        if not title:
            raise InvalidRequestError("title", "must not be empty")
        priority = _coerce_priority(command.priority, self._default_priority)

        request_id = uuid4()
        instance_id = uuid4()
        now = self._clock.now()

        with LogContext.bind(
            request_id=request_id,
            instance_id=instance_id,
            actor_id=requester_id,
            template_id=command.template_id,
        ):
            with self._repo.atomic():
                template = self._repo.get_template(command.template_id)
                plan = self._instances.plan(
                    template, request_id, requester_id,
                    instance_id=instance_id, now=now,
                )
                request = ApprovalRequest(
                    request_id=request_id,
                    title=title,
                    description=command.description,
                    requester_id=requester_id,
                    template_id=template.template_id,
                    flow_instance_id=instance_id,
                    status=plan.projection.status,
                    priority=priority,
                    category=command.category or template.category,
                    current_step=plan.projection.current_step,
                    total_steps=plan.total_steps,
                    due_date=command.due_date,
                    attachments=tuple(command.attachments),
                    created_at=now,
                    updated_at=now,
                )
                self._repo.add_request(request)
                instance = self._instances.write(plan)

            self._instances.log_created(plan)
            logger.info(
                "approval_request_created",
                extra={
                    "title": title,
                    "priority": priority.value,
                    "total_steps": plan.total_steps,
                    "current_node_id": instance.current_node_id,
                    "template_version": template.version,
                },
            )

        return RequestSnapshot(request=request, instance=instance, steps=plan.steps)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def submit_decision(self, command: DecisionCommand) -> DecisionOutcome:
        """Apply one approver decision to the instance's current node."""
        with LogContext.bind(instance_id=command.instance_id, actor_id=command.approver_id):
            now = self._clock.now()
            try:
                with self._repo.atomic():
                    plan = self._instances.apply(command, now=now)
                    request_id = plan.instance.request_id
                    self._repo.update_request_projection(request_id, plan.projection)
                    action = ApprovalAction(
                        action_id=uuid4(),
                        request_id=request_id,
                        instance_id=plan.instance.instance_id,
                        approver_id=command.approver_id,
                        action=plan.decided_step.decision,
                        step_index=plan.decided_step.step_index,
                        comment=command.comment,
                        created_at=now,
                    )
                    self._repo.add_action(action)
                    request = self._repo.get_request(request_id)
            except ApprovalKernelError as exc:
                logger.warning(
                    "decision_refused",
                    extra={
                        "error_code": exc.code,
                        "node_id": command.node_id,
                        "decision": str(getattr(command.decision, "value", command.decision)),
                    },
                )
                raise

            with LogContext.bind(request_id=request_id):
                self._instances.log_advanced(plan)
                logger.info(
                    "decision_recorded",
                    extra={
                        "node_id": command.node_id,
                        "decision": plan.decided_step.decision.value,
                        "step_index": plan.decided_step.step_index,
                        "status": request.status.value,
                        "current_step": request.current_step,
                        "total_steps": request.total_steps,
                    },
                )
                if plan.instance.status == FlowStatus.COMPLETED:
                    logger.info(
                        "instance_completed",
                        extra={"end_node_id": plan.instance.current_node_id},
                    )
                elif plan.instance.status == FlowStatus.REJECTED:
                    logger.info(
                        "instance_rejected",
                        extra={"node_id": plan.instance.current_node_id},
                    )

        return DecisionOutcome(
            request=request,
            instance=plan.instance,
            decided_step=plan.decided_step,
            action=action,
            next_step=plan.next_step,
        )

    # ------------------------------------------------------------------
    # Editable details
    # ------------------------------------------------------------------

    def update_request_details(
        self,
        request_id: UUID,
        *,
        priority: Priority | str | None = None,
        due_date: date | None | _Unset = UNSET,
        attachments: Sequence[str] | None = None,
        actor_id: UUID | None = None,
    ) -> ApprovalRequest:
        """Change priority, due date and/or attachments of a live request.

        Omitted arguments keep their stored value; ``due_date=None`` clears
        the due date.  Status, ``current_step`` and the flow instance are
        never touched, whatever state the request is in.
        """
        if priority is None and due_date is UNSET and attachments is None:
            raise InvalidRequestError("details", "nothing to update")
        if isinstance(attachments, str):
            raise InvalidRequestError("attachments", "must be a list of strings")

        with LogContext.bind(request_id=request_id, actor_id=actor_id):
            with self._repo.atomic():
                current = self._repo.get_request(request_id)
                details = RequestDetails(
                    priority=_coerce_priority(priority, current.priority),
                    due_date=current.due_date if due_date is UNSET else due_date,
                    attachments=(
                        current.attachments if attachments is None
                        else tuple(str(a) for a in attachments)
                    ),
                    updated_at=self._clock.now(),
                )
                self._repo.update_request_details(request_id, details)
                request = self._repo.get_request(request_id)

            logger.info(
                "request_details_updated",
                extra={
                    "priority": request.priority.value,
                    "due_date": request.due_date,
                    "attachment_count": len(request.attachments),
                },
            )
        return request

    # ------------------------------------------------------------------
    # Deletion and reads
    # ------------------------------------------------------------------

    def delete_request(self, request_id: UUID, actor_id: UUID | None = None) -> None:
        """Tombstone a request together with its instance, steps and actions."""
        with LogContext.bind(request_id=request_id, actor_id=actor_id):
            with self._repo.atomic():
                self._repo.get_request(request_id)
                instance = self._repo.get_instance(request_id)
                self._repo.lock_instance(instance.instance_id)
                if not self._repo.tombstone_cascade(request_id, self._clock.now()):
                    raise RequestNotFoundError(str(request_id))

            logger.info(
                "request_tombstoned",
                extra={"instance_id": str(instance.instance_id)},
            )

    def get_request(self, request_id: UUID) -> RequestSnapshot:
        """Committed request, instance and ledger, read in one unit."""
        with self._repo.atomic():
            request = self._repo.get_request(request_id)
            instance = self._repo.get_instance(request_id)
            steps = self._ledger.history(instance.instance_id)
        return RequestSnapshot(request=request, instance=instance, steps=steps)
