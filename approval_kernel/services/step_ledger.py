"""
StepLedger -- append-only per-instance ledger of approval steps.

Responsibility:
    Applies the pure ledger rules in ``approval_kernel.domain.ledger``
    against the injected repository: appending records at the next index,
    turning a pending placeholder into a decision, and reading the ordered
    history of one instance.

Architecture position:
    Kernel > Services -- imperative shell around ``domain/ledger``.

Invariants enforced:
    - Indices are contiguous ``0..N`` per instance.
    - A placeholder is decided at most once, only by an allowed approver.

Failure modes:
    - InstanceNotFoundError: unknown or deleted instance.
    - StepSequenceError: appended index is not ``last_index + 1``.
    - StepNotFoundError: no record at the given index.
    - StepAlreadyDecidedError / ApproverMismatchError / InvalidDecisionError.
    - LivePlaceholderError: the step is the current placeholder of an
      in-progress instance.
    - InstanceLockedError: another writer holds the instance.
"""

from __future__ import annotations

from uuid import UUID

from approval_kernel.domain import ledger
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.repository import WorkflowRepository
from approval_kernel.domain.workflow import FlowInstance, StepDecision, StepRecord
from approval_kernel.exceptions import LivePlaceholderError, StepNotFoundError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.step_ledger")


def _live_placeholder(instance: FlowInstance, steps: list[StepRecord]) -> StepRecord | None:
    """The pending record the engine will decide next, if any."""
    if instance.is_terminal or not steps:
        return None
    last = steps[-1]
    if last.decision == StepDecision.PENDING and last.node_id == instance.current_node_id:
        return last
    return None


class StepLedger:
    """Append-only ledger operations for flow instances."""

    def __init__(self, repository: WorkflowRepository, clock: Clock | None = None):
        self._repo = repository
        self._clock = clock or SystemClock()

    def append(self, instance_id: UUID, step: StepRecord) -> StepRecord:
        """Append ``step`` at the next index of ``instance_id``'s ledger.

        An in-progress instance is refused: its current placeholder must
        stay the last record for the engine to decide it.
        """
        with self._repo.atomic():
            instance = self._repo.lock_instance(instance_id)
            steps = self._repo.list_steps(instance_id)
            live = _live_placeholder(instance, steps)
            if live is not None:
                raise LivePlaceholderError(str(instance_id), live.step_index, live.node_id)
            ledger.check_append(instance_id, steps, step)
            self._repo.append_step(step)

        logger.debug(
            "step_appended",
            extra={
                "instance_id": str(instance_id),
                "step_index": step.step_index,
                "node_id": step.node_id,
                "decision": step.decision.value,
            },
        )
        return step

    def record_decision(
        self,
        instance_id: UUID,
        step_index: int,
        decision: StepDecision | str,
        approver_id: UUID,
        comment: str | None = None,
    ) -> StepRecord:
        """Decide the placeholder at ``step_index``.

        The node's approver restriction is read from the template version
        the instance is bound to.  The current placeholder of an
        in-progress instance is refused with ``LivePlaceholderError``;
        ``WorkflowEngine.submit_decision`` owns that step.
        """
        decision = ledger.coerce_decision(decision)
        with self._repo.atomic():
            instance = self._repo.lock_instance(instance_id)
            steps = self._repo.list_steps(instance_id)
            step = next((s for s in steps if s.step_index == step_index), None)
            if step is None:
                raise StepNotFoundError(str(instance_id), step_index)
            if step is _live_placeholder(instance, steps):
                raise LivePlaceholderError(str(instance_id), step_index, step.node_id)
            template = self._repo.get_template(
                instance.template_id, include_inactive=True, include_deleted=True,
            )
            decided = ledger.decide(
                step,
                template.graph.node(step.node_id),
                decision,
                approver_id,
                comment,
                self._clock.now(),
            )
            self.write_decision(decided)
        return decided

    def write_decision(self, decided: StepRecord) -> None:
        """Persist an already-validated decision on its placeholder."""
        self._repo.update_step(decided)
        logger.debug(
            "step_decided",
            extra={
                "instance_id": str(decided.instance_id),
                "step_index": decided.step_index,
                "decision": decided.decision.value,
                "approver_id": str(decided.approver_id),
            },
        )

    def history(self, instance_id: UUID) -> tuple[StepRecord, ...]:
        """All live records of ``instance_id`` ordered by index."""
        steps = self._repo.list_steps(instance_id)
        ledger.verify_contiguous(instance_id, steps)
        return tuple(steps)
