"""
TemplateService -- saving, revising and retiring flow templates.

Responsibility:
    Turns authored template definitions (editor node/edge JSON) into
    validated, immutable ``FlowTemplate`` versions.  A revision never edits
    a saved template: it writes a new version on the same lineage and
    deactivates the previous one, so running instances keep the graph they
    were created from.

Architecture position:
    Kernel > Services.

Invariants enforced:
    - No graph reaches storage without passing ``graph.validate``.
    - Exactly one active version per lineage.
    - Deleted or inactive templates are not offered for new requests.

Failure modes:
    - GraphError subclasses for structurally invalid definitions.
    - InvalidRequestError for a blank template name.
    - TemplateNotFoundError for unknown, inactive or deleted templates.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from uuid import UUID, uuid4

from approval_kernel.domain import graph as graph_ops
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.dtos import TemplateDefinition
from approval_kernel.domain.repository import WorkflowRepository
from approval_kernel.domain.workflow import FlowTemplate
from approval_kernel.exceptions import (
    GraphError,
    InvalidRequestError,
    TemplateNotFoundError,
)
from approval_kernel.logging_config import LogContext, get_logger

logger = get_logger("services.template_service")


class TemplateService:
    """Lifecycle of flow template versions."""

    def __init__(self, repository: WorkflowRepository, clock: Clock | None = None):
        self._repo = repository
        self._clock = clock or SystemClock()

    def create_template(
        self,
        definition: TemplateDefinition,
        created_by: UUID | None = None,
    ) -> FlowTemplate:
        """Validate ``definition`` and save it as version 1 of a new lineage."""
        template_id = uuid4()
        template = self._build(definition, template_id, template_id, 1, created_by)
        self._repo.add_template(template)
        self._log_saved("template_created", template)
        return template

    def revise_template(
        self,
        template_id: UUID,
        definition: TemplateDefinition,
        revised_by: UUID | None = None,
    ) -> FlowTemplate:
        """Save ``definition`` as the next version of ``template_id``'s lineage."""
        with self._repo.atomic():
            current = self._repo.get_template(template_id)
            revision = self._build(
                definition,
                uuid4(),
                current.lineage_id or current.template_id,
                current.version + 1,
                revised_by,
            )
            self._repo.update_template(
                replace(current, is_active=False, updated_at=revision.created_at)
            )
            self._repo.add_template(revision)

        logger.info(
            "template_deactivated",
            extra={"template_id": str(current.template_id), "version": current.version},
        )
        self._log_saved("template_revised", revision)
        return revision

    def get_template(self, template_id: UUID, *, include_inactive: bool = False) -> FlowTemplate:
        return self._repo.get_template(template_id, include_inactive=include_inactive)

    def list_templates(self, *, include_inactive: bool = False) -> list[FlowTemplate]:
        return self._repo.list_templates(include_inactive=include_inactive)

    def delete_template(self, template_id: UUID, actor_id: UUID | None = None) -> None:
        """Tombstone a template version.  Running instances are unaffected."""
        with LogContext.bind(template_id=template_id, actor_id=actor_id):
            if not self._repo.tombstone_template(template_id, self._clock.now()):
                raise TemplateNotFoundError(str(template_id))
            logger.info("template_tombstoned")

    def load_definitions(
        self,
        definitions: Iterable[TemplateDefinition],
        created_by: UUID | None = None,
    ) -> list[FlowTemplate]:
        """Create one template per definition, all in a single unit of work.

        Any invalid definition aborts the whole load.
        """
        created: list[FlowTemplate] = []
        with self._repo.atomic():
            for definition in definitions:
                try:
                    created.append(self.create_template(definition, created_by))
                except GraphError as exc:
                    logger.warning(
                        "template_definition_rejected",
                        extra={"template_name": definition.name, "error_code": exc.code},
                    )
                    raise
        logger.info("template_definitions_loaded", extra={"count": len(created)})
        return created

    def _build(
        self,
        definition: TemplateDefinition,
        template_id: UUID,
        lineage_id: UUID,
        version: int,
        author: UUID | None,
    ) -> FlowTemplate:
        name = (definition.name or "").strip()
        if not name:
            raise InvalidRequestError("name", "must not be empty")
        now = self._clock.now()
        return FlowTemplate(
            template_id=template_id,
            name=name,
            description=definition.description,
            category=definition.category,
            graph=graph_ops.build_graph(list(definition.nodes), list(definition.edges)),
            version=version,
            lineage_id=lineage_id,
            created_by=author,
            created_at=now,
            updated_at=now,
            is_active=True,
        )

    @staticmethod
    def _log_saved(event: str, template: FlowTemplate) -> None:
        logger.info(
            event,
            extra={
                "template_id": str(template.template_id),
                "template_name": template.name,
                "version": template.version,
                "approver_count": graph_ops.count_approvers(template.graph),
            },
        )
