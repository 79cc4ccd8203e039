"""
Pytest fixtures for the approval kernel test suite.

Provides:
- Structured logging configuration and a JSON log capture fixture
- Deterministic clock
- Both repository implementations: in-memory, and SQLAlchemy over an
  in-memory SQLite database shared across threads through a StaticPool
- Service fixtures wired to the parametrized ``repository``
- Factories for templates, users and requests

Environment Variables:
- DATABASE_URL: when set, the SQL fixtures run against that database
  instead of in-memory SQLite (tables are created and dropped per test).
"""

import json
import logging
import os
from io import StringIO
from uuid import UUID, uuid4

import pytest

from approval_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from approval_kernel.db.memory import InMemoryWorkflowRepository
from approval_kernel.db.repository import SqlWorkflowRepository
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.dtos import CreateRequestCommand, DecisionCommand
from approval_kernel.domain.workflow import StepDecision
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_kernel.selectors.request_selector import RequestSelector
from approval_kernel.services.template_service import TemplateService
from approval_kernel.services.user_service import UserService
from approval_kernel.services.workflow_engine import WorkflowEngine
from tests.helpers import linear_definition

DEFAULT_TEST_DATABASE_URL = "sqlite://"


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_TEST_DATABASE_URL)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow_engine):
            workflow_engine.create_request(...)
            logs = captured_logs()
            assert any(r["message"] == "approval_request_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Clock and identity fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


@pytest.fixture
def test_actor_id() -> UUID:
    return uuid4()


# =============================================================================
# Repository fixtures
# =============================================================================


@pytest.fixture
def memory_repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def sql_engine():
    """Fresh schema per test.  In-memory SQLite unless DATABASE_URL is set."""
    url = get_database_url()
    engine = init_engine_from_url(url, pool_size=5, max_overflow=5)
    create_tables()
    yield engine
    if not url.startswith("sqlite"):
        drop_tables()
    reset_engine()


@pytest.fixture
def sql_repository(sql_engine):
    return SqlWorkflowRepository(get_session_factory())


@pytest.fixture(params=["memory", "sql"])
def repository(request):
    """Every service test runs against both repository implementations."""
    return request.getfixturevalue(f"{request.param}_repository")


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def workflow_engine(repository, deterministic_clock) -> WorkflowEngine:
    return WorkflowEngine(repository, deterministic_clock)


@pytest.fixture
def template_service(repository, deterministic_clock) -> TemplateService:
    return TemplateService(repository, deterministic_clock)


@pytest.fixture
def user_service(repository, deterministic_clock) -> UserService:
    return UserService(repository, deterministic_clock)


@pytest.fixture
def request_selector(repository) -> RequestSelector:
    return RequestSelector(repository)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_template(template_service):
    """Save a linear template with ``steps`` unrestricted approver nodes."""

    def _make(steps=3, *, approvers=None, name="Test flow", category="general"):
        groups = approvers if approvers is not None else [None] * steps
        return template_service.create_template(
            linear_definition(*groups, name=name, category=category)
        )

    return _make


@pytest.fixture
def make_request(workflow_engine, deterministic_clock, test_actor_id):
    """Create a request against a template; the clock ticks once per call."""

    def _make(template, *, requester_id=None, title="Laptop purchase", **fields):
        deterministic_clock.tick()
        command = CreateRequestCommand(
            template_id=template.template_id,
            title=title,
            **fields,
        )
        return workflow_engine.create_request(command, requester_id or test_actor_id)

    return _make


@pytest.fixture
def decide(workflow_engine, deterministic_clock):
    """Submit a decision on the instance's current node."""

    def _decide(snapshot_or_instance, decision=StepDecision.APPROVED, *,
                approver_id=None, node_id=None, comment=None):
        instance = getattr(snapshot_or_instance, "instance", snapshot_or_instance)
        current = workflow_engine.instances.get(instance.request_id)
        deterministic_clock.tick()
        return workflow_engine.submit_decision(DecisionCommand(
            instance_id=current.instance_id,
            node_id=node_id or current.current_node_id,
            approver_id=approver_id or uuid4(),
            decision=decision,
            comment=comment,
        ))

    return _decide
