"""
Repository port (``approval_kernel.domain.repository``).

Responsibility
--------------
The storage contract the services are written against.  Injected into
every service; there is no global database object.  Implementations:

* ``approval_kernel.db.repository.SqlWorkflowRepository`` (SQLAlchemy)
* ``approval_kernel.db.memory.InMemoryWorkflowRepository``

Contract
--------
* ``atomic()`` opens one unit of work.  Every write made inside it is
  committed together on normal exit and discarded on exception.  Nested
  calls join the outer unit.
* ``lock_instance()`` may only be called inside ``atomic()``; it takes the
  per-instance writer lock for the rest of the unit, failing fast with
  ``InstanceLockedError``, and returns the committed instance state.
* ``update_instance()`` is a compare-and-set on ``expected_version``;
  a lost race surfaces as ``ConcurrencyConflictError`` (at the latest on
  commit).
* ``append_step()`` enforces one record per ``(instance_id, step_index)``.
* Readers never observe a partially committed unit.
* Tombstoned rows are invisible to every getter and lister; getters raise
  the matching ``NotFoundError`` subclass.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol
from uuid import UUID

from approval_kernel.domain.approval import (
    ApprovalAction,
    ApprovalRequest,
    RequestDetails,
    RequestProjection,
    User,
)
from approval_kernel.domain.workflow import FlowInstance, FlowTemplate, StepRecord


class WorkflowRepository(Protocol):
    """Storage for templates, requests, instances, steps, actions, users."""

    # -- unit of work -----------------------------------------------------

    def atomic(self) -> AbstractContextManager[None]:
        ...

    def lock_instance(self, instance_id: UUID) -> FlowInstance:
        ...

    # -- templates --------------------------------------------------------

    def get_template(
        self,
        template_id: UUID,
        *,
        include_inactive: bool = False,
        include_deleted: bool = False,
    ) -> FlowTemplate:
        """Active, live template.  Bound instances read with both flags set."""
        ...

    def add_template(self, template: FlowTemplate) -> None:
        ...

    def update_template(self, template: FlowTemplate) -> None:
        """Persist ``is_active``/``updated_at`` changes (the graph is immutable)."""
        ...

    def list_templates(self, *, include_inactive: bool = False) -> list[FlowTemplate]:
        ...

    def tombstone_template(self, template_id: UUID, at: datetime) -> bool:
        ...

    # -- requests and instances -------------------------------------------

    def get_request(self, request_id: UUID) -> ApprovalRequest:
        ...

    def add_request(self, request: ApprovalRequest) -> None:
        ...

    def list_requests(self) -> list[ApprovalRequest]:
        """All live requests, newest first."""
        ...

    def update_request_projection(self, request_id: UUID, projection: RequestProjection) -> None:
        ...

    def update_request_details(self, request_id: UUID, details: RequestDetails) -> None:
        """Persist priority, due date and attachments; status is untouched."""
        ...

    def get_instance(self, request_id: UUID) -> FlowInstance:
        ...

    def get_instance_by_id(self, instance_id: UUID) -> FlowInstance:
        ...

    def add_instance(self, instance: FlowInstance) -> None:
        ...

    def update_instance(self, instance: FlowInstance, expected_version: int) -> None:
        ...

    # -- ledger -----------------------------------------------------------

    def append_step(self, step: StepRecord) -> None:
        ...

    def update_step(self, step: StepRecord) -> None:
        """Persist a placeholder's decision; nothing else may change."""
        ...

    def list_steps(self, instance_id: UUID) -> list[StepRecord]:
        """Live steps of one instance ordered by ``step_index``."""
        ...

    def iter_pending_steps(self) -> Iterator[StepRecord]:
        """Every live ``pending`` placeholder."""
        ...

    # -- actions ----------------------------------------------------------

    def add_action(self, action: ApprovalAction) -> None:
        ...

    def list_actions(self, request_id: UUID) -> list[ApprovalAction]:
        ...

    # -- deletion ---------------------------------------------------------

    def tombstone_cascade(self, request_id: UUID, at: datetime) -> bool:
        """Tombstone request, instance, steps and actions; False if absent."""
        ...

    # -- users ------------------------------------------------------------

    def add_user(self, user: User) -> None:
        ...

    def get_user(self, user_id: UUID) -> User:
        ...

    def get_user_by_email(self, email: str) -> User | None:
        ...

    def list_users(self) -> list[User]:
        ...
