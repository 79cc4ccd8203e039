"""
FlowInstanceManager -- creation and advancement of flow instances.

Responsibility:
    Binds a new flow instance to a template version, seeds its ledger
    (requester submission at index 0 plus the first placeholder), and
    advances an instance by one decision under the per-instance writer
    lock.  The transition itself is computed by the pure state machine
    in ``approval_kernel.domain.engine``.

Architecture position:
    Kernel > Services.  Used by ``WorkflowEngine``; callable directly by
    tooling that manages instances without the request projection.

Invariants enforced:
    - A new instance always points at the first approver node.
    - Every advance runs under ``lock_instance`` inside one unit of work
      and writes the instance with a version compare-and-set.
    - Lifecycle events are logged only after the outermost unit commits.

Failure modes:
    - InstanceLockedError / ConcurrencyConflictError under contention.
    - AlreadyTerminalError / NodeMismatchError / LedgerError subclasses
      from the state machine; nothing is written in that case.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.dtos import DecisionCommand
from approval_kernel.domain.engine import (
    CreationPlan,
    TransitionPlan,
    plan_creation,
    plan_transition,
)
from approval_kernel.domain.repository import WorkflowRepository
from approval_kernel.domain.workflow import FlowInstance, FlowTemplate
from approval_kernel.logging_config import get_logger
from approval_kernel.services.step_ledger import StepLedger

logger = get_logger("services.flow_instance_manager")


class FlowInstanceManager:
    """Creates and advances flow instances."""

    def __init__(
        self,
        repository: WorkflowRepository,
        clock: Clock | None = None,
        ledger: StepLedger | None = None,
    ):
        self._repo = repository
        self._clock = clock or SystemClock()
        self._ledger = ledger or StepLedger(repository, self._clock)

    def plan(
        self,
        template: FlowTemplate,
        request_id: UUID,
        requester_id: UUID,
        *,
        instance_id: UUID | None = None,
        now: datetime | None = None,
    ) -> CreationPlan:
        return plan_creation(
            template.graph,
            instance_id=instance_id or uuid4(),
            template_id=template.template_id,
            request_id=request_id,
            requester_id=requester_id,
            now=now or self._clock.now(),
        )

    def write(self, plan: CreationPlan) -> FlowInstance:
        """Write the instance and its seed ledger records.

        Joins the caller's unit of work and logs nothing; the caller reports
        ``log_created`` once its unit has committed.
        """
        with self._repo.atomic():
            self._repo.add_instance(plan.instance)
            for step in plan.steps:
                self._ledger.append(plan.instance.instance_id, step)
        return plan.instance

    def create(
        self,
        template: FlowTemplate,
        request_id: UUID,
        requester_id: UUID,
        *,
        instance_id: UUID | None = None,
    ) -> FlowInstance:
        """Create an instance on the first approver of ``template``."""
        plan = self.plan(template, request_id, requester_id, instance_id=instance_id)
        instance = self.write(plan)
        self.log_created(plan)
        return instance

    def apply(self, command: DecisionCommand, *, now: datetime | None = None) -> TransitionPlan:
        """Apply one decision to the instance named by ``command``.

        Joins the caller's unit of work and logs nothing.  Returns the
        applied plan; ``plan.instance`` is the new state.
        """
        with self._repo.atomic():
            instance = self._repo.lock_instance(command.instance_id)
            template = self._repo.get_template(
                instance.template_id, include_inactive=True, include_deleted=True,
            )
            steps = self._repo.list_steps(instance.instance_id)

            plan = plan_transition(
                template.graph,
                instance,
                steps,
                node_id=command.node_id,
                approver_id=command.approver_id,
                decision=command.decision,
                comment=command.comment,
                now=now or self._clock.now(),
            )

            self._ledger.write_decision(plan.decided_step)
            if plan.next_step is not None:
                self._ledger.append(instance.instance_id, plan.next_step)
            self._repo.update_instance(plan.instance, expected_version=instance.version)
        return plan

    def advance(self, command: DecisionCommand, *, now: datetime | None = None) -> TransitionPlan:
        """``apply``, then log the transition once it has committed."""
        plan = self.apply(command, now=now)
        self.log_advanced(plan)
        return plan

    # -- log events, emitted only after the enclosing unit commits --------

    @staticmethod
    def log_created(plan: CreationPlan) -> None:
        logger.info(
            "flow_instance_created",
            extra={
                "instance_id": str(plan.instance.instance_id),
                "request_id": str(plan.instance.request_id),
                "template_id": str(plan.instance.template_id),
                "current_node_id": plan.instance.current_node_id,
                "total_steps": plan.total_steps,
            },
        )

    @staticmethod
    def log_advanced(plan: TransitionPlan) -> None:
        logger.info(
            "flow_instance_advanced",
            extra={
                "instance_id": str(plan.instance.instance_id),
                "from_node_id": plan.previous.current_node_id,
                "to_node_id": plan.instance.current_node_id,
                "status": plan.instance.status.value,
                "version": plan.instance.version,
            },
        )

    def get(self, request_id: UUID) -> FlowInstance:
        return self._repo.get_instance(request_id)
