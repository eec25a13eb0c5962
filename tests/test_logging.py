"""Tests for the structured logging system (loan_kernel/logging_config.py)."""

import json
import logging
import threading
from io import StringIO
from uuid import uuid4

import pytest

from loan_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests and restore the suite's configuration."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "loan_kernel.test"
        assert "ts" in record
        assert "thread" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("application_decided", extra={"credit_score": 720, "status": "Approved"})

        record = _parse_log(stream)
        assert record["credit_score"] == 720
        assert record["status"] == "Approved"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", worker_id="worker-2")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["worker_id"] == "worker-2"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_fields_extracted(self):
        """Kernel exceptions carry a .code attribute and structured fields."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        from loan_kernel.exceptions import ApplicationNotFoundError

        try:
            raise ApplicationNotFoundError("app-1")
        except ApplicationNotFoundError:
            get_logger("test").error("lookup_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "APPLICATION_NOT_FOUND"
        assert record["exc_type"] == "ApplicationNotFoundError"
        assert record["exc_application_id"] == "app-1"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "application_id" not in record

    def test_uuid_and_decimal_serialized(self):
        from decimal import Decimal

        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_values", extra={"application_id": uid, "amount": Decimal("5000.00")})

        record = _parse_log(stream)
        assert record["application_id"] == str(uid)
        assert record["amount"] == "5000.00"

    def test_level_filters_debug(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        assert [r["message"] for r in logs] == ["first", "second"]


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_set_and_get(self):
        LogContext.set(correlation_id="x", application_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "application_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_restores_previous(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner", actor="cli"):
            assert LogContext.get_all() == {"correlation_id": "inner", "actor": "cli"}
        assert LogContext.get_all() == {"correlation_id": "outer"}

    def test_bind_skips_none_and_stringifies(self):
        uid = uuid4()
        with LogContext.bind(application_id=uid, actor=None):
            assert LogContext.get_all() == {"application_id": str(uid)}
        assert LogContext.get_all() == {}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError):
            LogContext.set(trace_id="t")
        with pytest.raises(TypeError):
            with LogContext.bind(worker_id="w", trace_id="t"):
                pass
        assert LogContext.get_all() == {}

    def test_context_is_per_thread(self):
        LogContext.set(worker_id="main")
        seen = {}

        def other():
            seen["ctx"] = LogContext.get_all()

        thread = threading.Thread(target=other)
        thread.start()
        thread.join()

        assert seen["ctx"] == {}
        assert LogContext.get_all() == {"worker_id": "main"}


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        handlers = logging.getLogger("loan_kernel").handlers
        assert h1 in handlers
        assert h2 not in handlers
        assert sum(isinstance(h.formatter, StructuredFormatter) for h in handlers) == 1

    def test_level_name_accepted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level="debug")
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "loan_kernel.deep.nested.module"

    def test_does_not_propagate_to_root(self):
        configure_logging(handler=_make_handler()[0])
        assert logging.getLogger("loan_kernel").propagate is False
