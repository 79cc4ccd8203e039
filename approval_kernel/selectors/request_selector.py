"""
Module: approval_kernel.selectors.request_selector
Responsibility: Read-only queries over approval requests: listings, approver
    inboxes, flow history, the decision log and dashboard statistics.
Architecture position: Kernel > Selectors.  Reads through the injected
    WorkflowRepository only; never writes.

Invariants enforced:
    - Tombstoned requests, instances, steps and actions are invisible.
    - Each query reads inside one unit of work so counts and listings come
      from a single committed state.
"""

from __future__ import annotations

from collections import defaultdict
from uuid import UUID

from approval_kernel.domain.approval import ApprovalAction, ApprovalRequest, RequestStatus
from approval_kernel.domain.dtos import ApprovalStats, CategoryStats, TemplateStats
from approval_kernel.domain.repository import WorkflowRepository
from approval_kernel.domain.workflow import StepRecord
from approval_kernel.exceptions import NotFoundError


class RequestSelector:
    """Read-side access to approval requests."""

    def __init__(self, repository: WorkflowRepository):
        self._repo = repository

    def list_requests(self) -> list[ApprovalRequest]:
        """All live requests, newest first."""
        return self._repo.list_requests()

    def list_by_requester(self, requester_id: UUID) -> list[ApprovalRequest]:
        return [r for r in self._repo.list_requests() if r.requester_id == requester_id]

    def list_pending_for_approver(self, approver_id: UUID) -> list[ApprovalRequest]:
        """Requests whose open placeholder ``approver_id`` may decide."""
        with self._repo.atomic():
            request_ids: set[UUID] = set()
            for step in self._repo.iter_pending_steps():
                if step.approver_id is not None and step.approver_id != approver_id:
                    continue
                try:
                    instance = self._repo.get_instance_by_id(step.instance_id)
                    template = self._repo.get_template(
                        instance.template_id, include_inactive=True, include_deleted=True,
                    )
                except NotFoundError:
                    continue
                if instance.is_terminal or instance.current_node_id != step.node_id:
                    continue
                if template.graph.node(step.node_id).allows(approver_id):
                    request_ids.add(instance.request_id)
            return [r for r in self._repo.list_requests() if r.request_id in request_ids]

    def get_flow_history(self, request_id: UUID) -> tuple[StepRecord, ...]:
        """Ledger of the request's flow instance ordered by step index."""
        with self._repo.atomic():
            self._repo.get_request(request_id)
            instance = self._repo.get_instance(request_id)
            return tuple(self._repo.list_steps(instance.instance_id))

    def list_actions(self, request_id: UUID) -> list[ApprovalAction]:
        with self._repo.atomic():
            self._repo.get_request(request_id)
            return self._repo.list_actions(request_id)

    def get_stats(self) -> ApprovalStats:
        return ApprovalStats.from_statuses([r.status for r in self._repo.list_requests()])

    def get_category_stats(self) -> list[CategoryStats]:
        by_category: dict[str, list[RequestStatus]] = defaultdict(list)
        for request in self._repo.list_requests():
            by_category[request.category].append(request.status)
        return [
            CategoryStats(category=category, stats=ApprovalStats.from_statuses(statuses))
            for category, statuses in sorted(by_category.items())
        ]

    def get_template_stats(self) -> list[TemplateStats]:
        """Usage, approval rate and mean time to a terminal state per template.

        Approval rate is approved requests over all requests bound to the
        template version.
        """
        with self._repo.atomic():
            requests = self._repo.list_requests()
            stats: list[TemplateStats] = []
            for template in self._repo.list_templates(include_inactive=True):
                bound = [r for r in requests if r.template_id == template.template_id]
                approved = sum(1 for r in bound if r.status == RequestStatus.APPROVED)
                durations = []
                for request in bound:
                    instance = self._repo.get_instance(request.request_id)
                    if instance.completed_at is not None and instance.created_at is not None:
                        durations.append(
                            (instance.completed_at - instance.created_at).total_seconds()
                        )
                stats.append(TemplateStats(
                    template_id=template.template_id,
                    template_name=template.name,
                    usage_count=len(bound),
                    approval_rate=approved / len(bound) if bound else 0.0,
                    average_completion_seconds=(
                        sum(durations) / len(durations) if durations else None
                    ),
                ))
            return stats
