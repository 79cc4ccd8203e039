"""Tests for approval_kernel.logging_config: JSON lines, context and setup."""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest

from approval_kernel.domain.workflow import FlowStatus
from approval_kernel.exceptions import NodeMismatchError
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _fresh_logging():
    """Each test configures logging itself; the suite config comes back afterwards."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


class _JsonSink:
    """A stream handler plus helpers to read back what it received."""

    def __init__(self):
        self.stream = StringIO()
        self.handler = logging.StreamHandler(self.stream)

    def records(self) -> list[dict]:
        return [json.loads(line) for line in self.stream.getvalue().splitlines() if line]

    def first(self) -> dict:
        return self.records()[0]


@pytest.fixture
def sink():
    return _JsonSink()


@pytest.fixture
def logger(sink):
    configure_logging(handler=sink.handler)
    return get_logger("services.workflow_engine")


class TestStructuredFormatter:

    def test_envelope(self, sink, logger):
        logger.info("approval_request_created")

        record = sink.first()
        assert record["level"] == "INFO"
        assert record["message"] == "approval_request_created"
        assert record["logger"] == "approval_kernel.services.workflow_engine"
        assert record["ts"].endswith("+00:00")

    def test_every_line_is_json(self, sink, logger):
        logger.info("decision_recorded")
        logger.warning("decision_refused", extra={"error_code": "NODE_MISMATCH"})
        logger.debug("below_default_level")

        records = sink.records()
        assert [r["message"] for r in records] == ["decision_recorded", "decision_refused"]
        assert all({"ts", "level", "logger", "message"} <= r.keys() for r in records)

    def test_extra_fields(self, sink, logger):
        logger.info("decision_recorded", extra={"step_index": 2, "decision": "approved"})

        record = sink.first()
        assert record["step_index"] == 2
        assert record["decision"] == "approved"

    def test_uuid_enum_and_set_values(self, sink, logger):
        step_id = uuid4()
        logger.info(
            "step_written",
            extra={
                "step_id": step_id,
                "status": FlowStatus.IN_PROGRESS,
                "approver_ids": frozenset({"b", "a"}),
            },
        )

        record = sink.first()
        assert record["step_id"] == str(step_id)
        assert record["status"] == "in-progress"
        assert record["approver_ids"] == ["a", "b"]

    def test_context_fields(self, sink, logger):
        LogContext.set(correlation_id="corr-1", request_id="req-1")
        logger.info("approval_request_created")

        record = sink.first()
        assert record["correlation_id"] == "corr-1"
        assert record["request_id"] == "req-1"

    def test_no_context_when_unset(self, sink, logger):
        logger.info("bare")
        assert not {"correlation_id", "request_id", "instance_id"} & sink.first().keys()

    def test_context_wins_over_extra(self, sink, logger):
        LogContext.set(instance_id="from-context")
        logger.info("decision_recorded", extra={"instance_id": "from-extra"})
        assert sink.first()["instance_id"] == "from-context"

    def test_plain_exception(self, sink, logger):
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("unexpected", exc_info=True)

        record = sink.first()
        assert (record["exc_type"], record["exc_message"]) == ("ValueError", "boom")
        assert "exc_code" not in record
        assert "Traceback" in record["traceback"]

    def test_kernel_exception_code_and_attributes(self, sink, logger):
        try:
            raise NodeMismatchError("inst-1", "approver-2", "approver-1")
        except NodeMismatchError:
            logger.warning("decision_refused", exc_info=True)

        record = sink.first()
        assert record["exc_type"] == "NodeMismatchError"
        assert record["exc_code"] == "NODE_MISMATCH"
        assert record["exc_instance_id"] == "inst-1"
        assert record["exc_current_node_id"] == "approver-2"
        assert record["exc_received_node_id"] == "approver-1"

    def test_formatter_usable_on_any_handler(self):
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(StructuredFormatter())
        record = logging.LogRecord("approval_kernel.x", logging.INFO, __file__, 1, "hi", (), None)
        handler.emit(record)
        assert json.loads(stream.getvalue())["message"] == "hi"


class TestLogContext:

    def test_set_is_additive(self):
        LogContext.set(correlation_id="a")
        LogContext.set(template_id="b")
        assert LogContext.get_all() == {"correlation_id": "a", "template_id": "b"}

    def test_none_never_overwrites(self):
        LogContext.set(request_id="r")
        LogContext.set(request_id=None, instance_id="i")
        assert LogContext.get_all() == {"request_id": "r", "instance_id": "i"}

    def test_clear(self):
        LogContext.set(correlation_id="x", actor_id="y")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_restores_previous_value(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner"):
            assert LogContext.get_all()["correlation_id"] == "inner"
        assert LogContext.get_all()["correlation_id"] == "outer"

    def test_bind_removes_field_it_added(self):
        with LogContext.bind(request_id="temp"):
            assert LogContext.get_all() == {"request_id": "temp"}
        assert LogContext.get_all() == {}

    def test_bind_stringifies_and_skips_none(self):
        actor = uuid4()
        with LogContext.bind(actor_id=actor, template_id=None):
            assert LogContext.get_all() == {"actor_id": str(actor)}

    def test_unknown_fields_ignored(self):
        with LogContext.bind(request_id="r", colour="blue"):
            assert LogContext.get_all() == {"request_id": "r"}

    def test_nested_binds(self):
        with LogContext.bind(request_id="r"):
            with LogContext.bind(instance_id="i"):
                assert LogContext.get_all() == {"request_id": "r", "instance_id": "i"}
            assert LogContext.get_all() == {"request_id": "r"}

    def test_all_five_fields(self):
        LogContext.set(
            correlation_id="c", request_id="r", instance_id="i", actor_id="a", template_id="t",
        )
        assert sorted(LogContext.get_all()) == [
            "actor_id", "correlation_id", "instance_id", "request_id", "template_id",
        ]


class TestConfigureLogging:

    def test_second_call_is_ignored(self):
        configure_logging(handler=_JsonSink().handler)
        configure_logging(handler=_JsonSink().handler)
        assert len(logging.getLogger("approval_kernel").handlers) == 1

    def test_does_not_propagate_to_root(self, logger):
        assert logging.getLogger("approval_kernel").propagate is False

    def test_children_inherit_configuration(self, sink):
        configure_logging(handler=sink.handler, level=logging.DEBUG)
        get_logger("db.memory").debug("unit_committed")

        record = sink.first()
        assert record["message"] == "unit_committed"
        assert record["logger"] == "approval_kernel.db.memory"

    @pytest.mark.parametrize("level", ["WARNING", "warning", logging.WARNING])
    def test_level_by_name_or_number(self, sink, level):
        configure_logging(handler=sink.handler, level=level)
        log = get_logger("config")
        log.info("dropped")
        log.warning("kept")

        assert [r["message"] for r in sink.records()] == ["kept"]

    def test_reset_allows_reconfiguration(self, sink):
        configure_logging(handler=_JsonSink().handler)
        reset_logging()
        configure_logging(handler=sink.handler)
        get_logger("x").info("after_reset")
        assert sink.first()["message"] == "after_reset"
