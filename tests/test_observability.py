"""
Tests for operation logging, correlation ids and operation spans.
"""

import io
import json
import logging

import pytest

from arbor.config import get_config_manager
from arbor.errors import CycleDetected
from arbor.observability import (
    ArborLogger,
    OperationHandler,
    OperationRecord,
    Tracer,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
    span_id_var,
)


def _record(message="link_non_fungible ok", **extra):
    record = logging.LogRecord("arbor.protocol", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


@pytest.fixture
def capture():
    """Point a component logger at an in-memory stream."""
    redirected = []

    def attach(logger: ArborLogger) -> io.StringIO:
        stream = io.StringIO()
        logger.handler._stream = stream
        redirected.append(logger.handler)
        return stream

    yield attach
    for handler in redirected:
        handler._stream = None


class TestOperationHandler:
    def test_json_line(self):
        stream = io.StringIO()
        handler = OperationHandler(stream=stream)
        token = set_correlation_id("corr-test")
        try:
            handler.emit(_record(operation="link_non_fungible", outcome="ok", source="x:1", details={"actor": "a"}))
        finally:
            correlation_id_var.reset(token)

        (data,) = _lines(stream)
        assert data["level"] == "info"
        assert data["correlation_id"] == "corr-test"
        assert data["operation"] == "link_non_fungible"
        assert data["source"] == "x:1"
        assert data["details"] == {"actor": "a"}
        assert "duration_ms" not in data
        assert "target" not in data

    def test_text_line(self):
        stream = io.StringIO()
        handler = OperationHandler(stream=stream, fmt="text")
        handler.emit(_record(
            "link_non_fungible failed: cycle",
            error_code="cycle_detected",
            compensated=0,
            duration_ms=1.5,
            details={"b": 2, "a": 1},
        ))

        line = stream.getvalue().strip()
        assert "ERROR" not in line
        assert "INFO arbor.protocol link_non_fungible failed: cycle" in line
        assert "error_code=cycle_detected compensated=0 duration_ms=1.50" in line
        assert line.endswith("a=1 b=2")

    def test_empty_fields_dropped(self):
        entry = OperationRecord(timestamp="t", level="info", logger="l", message="m")
        assert entry.to_dict() == {"timestamp": "t", "level": "info", "logger": "l", "message": "m"}


class TestArborLogger:
    def test_failed_operation(self, capture):
        logger = ArborLogger("unit", level="debug")
        stream = capture(logger)

        logger.operation(
            "link_non_fungible", 2.0, error=CycleDetected("would cycle"), compensated=1,
            source="x:1", target="x:2", actor="0xabc",
        )

        (data,) = _lines(stream)
        assert data["logger"] == "arbor.unit"
        assert data["level"] == "warning"
        assert data["message"] == "link_non_fungible failed: would cycle"
        assert data["outcome"] == "failed"
        assert data["error_code"] == "cycle_detected"
        assert data["compensated"] == 1
        assert (data["source"], data["target"]) == ("x:1", "x:2")
        assert data["details"] == {"actor": "0xabc"}

    def test_level_from_config(self, capture):
        get_config_manager().set("observability.log_level", "warning")
        logger = ArborLogger("quiet")
        stream = capture(logger)
        logger.operation("unlink_fungible", 1.0, resource="0x22")
        assert stream.getvalue() == ""

    def test_handler_not_duplicated(self):
        ArborLogger("dup")
        logger = ArborLogger("dup", fmt="text")
        handlers = [h for h in logging.getLogger("arbor.dup").handlers if isinstance(h, OperationHandler)]
        assert handlers == [logger.handler]
        assert logger.handler.fmt == "text"


class TestCorrelation:
    def test_generated_once_per_context(self):
        token = correlation_id_var.set("")
        try:
            first = get_correlation_id()
            assert first.startswith("corr-")
            assert get_correlation_id() == first
        finally:
            correlation_id_var.reset(token)


class TestTracer:
    def test_nested_spans(self, capture):
        logger = ArborLogger("spans", level="debug")
        stream = capture(logger)
        tracer = Tracer(logger)

        with tracer.span("outer", source="x:1") as outer:
            with tracer.span("inner") as inner:
                assert span_id_var.get() == inner.span_id
            assert span_id_var.get() == outer.span_id
        assert span_id_var.get() == ""

        inner_line, outer_line = _lines(stream)
        assert inner.parent_span_id == outer.span_id
        assert inner_line["parent_span_id"] == outer.span_id
        assert outer_line["message"] == "span outer ok"
        assert outer_line["source"] == "x:1"
        assert outer.duration_ms is not None

    def test_error_status(self, capture):
        logger = ArborLogger("failing", level="debug")
        stream = capture(logger)
        with pytest.raises(KeyError):
            with Tracer(logger).span("failing") as span:
                raise KeyError("x")

        assert span.status == "error"
        (data,) = _lines(stream)
        assert data["message"] == "span failing error"
        assert data["details"] == {"exception_type": "KeyError"}


class TestProtocolRecords:
    """One record per operation, carrying its nodes and outcome."""

    @pytest.fixture
    def logged_world(self, make_world, capture):
        get_config_manager().set("observability.log_level", "debug")
        world = make_world()
        return world, capture(world.protocol._log)

    def test_success_record(self, logged_world):
        world, stream = logged_world
        a, b = world.mint(world.alice, 1, 2)
        world.protocol.link_non_fungible(world.alice, a, b)

        op_line, span_line = [d for d in _lines(stream) if "link_non_fungible" in d["message"]]
        assert op_line["message"] == "link_non_fungible ok"
        assert op_line["outcome"] == "ok"
        assert (op_line["source"], op_line["target"]) == (str(a), str(b))
        assert span_line["message"] == "span protocol.link_non_fungible ok"
        assert span_line["span_id"] == op_line["span_id"]

    def test_failure_record(self, logged_world):
        world, stream = logged_world
        a, b = world.mint(world.alice, 1, 2)
        world.protocol.link_non_fungible(world.alice, a, b)
        with pytest.raises(CycleDetected):
            world.protocol.link_non_fungible(world.alice, b, a)

        (failed,) = [d for d in _lines(stream) if d.get("outcome") == "failed"]
        assert failed["error_code"] == "cycle_detected"
        assert failed["compensated"] == 0
        assert failed["source"] == str(b)

    def test_tracing_disabled(self, logged_world):
        world, stream = logged_world
        get_config_manager().set("observability.enable_tracing", False)
        a, b = world.mint(world.alice, 1, 2)
        world.protocol.link_non_fungible(world.alice, a, b)

        lines = _lines(stream)
        assert not any(d["message"].startswith("span ") for d in lines)
        assert [d["outcome"] for d in lines if "outcome" in d] == ["ok"]
