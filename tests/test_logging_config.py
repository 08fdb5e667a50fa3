"""
Tests for the structured logging configuration.

Validates:
- JSONFormatter produces valid JSON with required fields
- DevFormatter produces human-readable colored text
- ContextFilter injects panel_id from thread-local storage
- configure_logging() switches mode based on PANELFLOW_ENV
"""

from __future__ import annotations

import json
import logging
import os
import threading
from io import StringIO
from unittest.mock import patch

import pytest

from panelflow.observability.logging_config import (
    ContextFilter,
    DevFormatter,
    JSONFormatter,
    clear_panel_id,
    configure_logging,
    get_panel_id,
    panel_context,
    set_panel_id,
)
from panelflow.workflow.states import WorkflowState


# ─── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _cleanup_panel_id():
    clear_panel_id()
    yield
    clear_panel_id()


@pytest.fixture
def root_logger():
    """Root logger, stripped of handlers after the test."""
    root = logging.getLogger()
    level = root.level
    yield root
    for h in root.handlers[:]:
        root.removeHandler(h)
    root.setLevel(level)


def _make_record(
    msg: str = "test message",
    level: int = logging.INFO,
    name: str = "panelflow.test",
    extra: dict | None = None,
) -> logging.LogRecord:
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )
    if extra:
        for key, value in extra.items():
            setattr(record, key, value)
    return record


# ─── JSONFormatter Tests ──────────────────────────────────────────────


class TestJSONFormatter:

    def test_includes_required_fields(self):
        record = _make_record("test", level=logging.WARNING, name="panelflow.workflow")
        parsed = json.loads(JSONFormatter().format(record))

        assert "T" in parsed["timestamp"]
        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "panelflow.workflow"
        assert parsed["message"] == "test"

    def test_includes_extra_fields(self):
        record = _make_record(
            "transition",
            extra={"panel_id": "P1", "from_state": "SCANNED", "to_state": "IN_PROGRESS"},
        )
        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["panel_id"] == "P1"
        assert parsed["from_state"] == "SCANNED"
        assert parsed["to_state"] == "IN_PROGRESS"

    def test_handles_exception_info(self):
        try:
            raise ValueError("sink down")
        except ValueError:
            import sys
            record = _make_record("error occurred")
            record.exc_info = sys.exc_info()

        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["error_type"] == "ValueError"
        assert "ValueError" in parsed["exception"]
        assert "sink down" in parsed["exception"]

    def test_other_extras_nested_and_stringified(self):
        record = _make_record("test", extra={"complex_obj": object(), "attempt": 2})
        parsed = json.loads(JSONFormatter().format(record))
        assert isinstance(parsed["extra"]["complex_obj"], str)
        assert parsed["extra"]["attempt"] == 2
        assert "complex_obj" not in parsed

    def test_enums_serialized_by_value(self):
        record = _make_record("test", extra={"to_state": WorkflowState.PASSED, "version": 3})
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["to_state"] == "PASSED"
        assert parsed["version"] == 3

    def test_none_fields_omitted(self):
        record = _make_record("test", extra={"operator_id": None})
        parsed = json.loads(JSONFormatter().format(record))
        assert "operator_id" not in parsed
        assert "extra" not in parsed

    def test_includes_thread_name(self):
        parsed = json.loads(JSONFormatter().format(_make_record()))
        assert parsed["thread"] == threading.current_thread().name


# ─── DevFormatter Tests ───────────────────────────────────────────────


class TestDevFormatter:

    def test_includes_message_level_and_logger(self):
        record = _make_record("hello", level=logging.WARNING, name="panelflow.criteria")
        output = DevFormatter().format(record)
        assert "hello" in output
        assert "WARNING" in output
        assert "panelflow.criteria" in output

    def test_panel_and_station_prefix(self):
        record = _make_record(
            "test",
            extra={"panel_id": "P1", "station_id": "STATION_2", "decision": "FAIL"},
        )
        output = DevFormatter().format(record)
        assert "P1 @STATION_2 panelflow.test: test" in output
        assert "decision=FAIL" in output

    def test_state_change_rendered_as_arrow(self):
        record = _make_record(
            "transition",
            extra={"from_state": "SCANNED", "to_state": WorkflowState.IN_PROGRESS},
        )
        assert "SCANNED→IN_PROGRESS" in DevFormatter().format(record)

    def test_plain_record_has_no_suffix(self):
        output = DevFormatter().format(_make_record("hello"))
        assert output.endswith("panelflow.test: hello")

    def test_color_codes_present_for_error(self):
        output = DevFormatter().format(_make_record("error!", level=logging.ERROR))
        assert "\033[31m" in output


# ─── Panel Context ────────────────────────────────────────────────────


class TestPanelContext:

    def test_set_get_clear(self):
        set_panel_id("P1")
        assert get_panel_id() == "P1"
        clear_panel_id()
        assert get_panel_id() is None

    def test_context_manager_restores_outer_panel(self):
        with panel_context("outer"):
            with panel_context("inner"):
                assert get_panel_id() == "inner"
            assert get_panel_id() == "outer"
        assert get_panel_id() is None

    def test_context_is_thread_local(self):
        seen = []
        set_panel_id("main-thread")

        def worker():
            seen.append(get_panel_id())

        t = threading.Thread(target=worker)
        t.start()
        t.join()

        assert seen == [None]
        assert get_panel_id() == "main-thread"

    def test_filter_injects_panel_id(self):
        record = _make_record("test")
        with panel_context("P7"):
            assert ContextFilter().filter(record) is True
        assert record.panel_id == "P7"  # type: ignore[attr-defined]

    def test_filter_keeps_explicit_panel_id(self):
        record = _make_record("test", extra={"panel_id": "explicit"})
        with panel_context("P7"):
            ContextFilter().filter(record)
        assert record.panel_id == "explicit"  # type: ignore[attr-defined]

    def test_filter_without_context_adds_nothing(self):
        record = _make_record("test")
        ContextFilter().filter(record)
        assert not hasattr(record, "panel_id")


# ─── configure_logging Tests ──────────────────────────────────────────


class TestConfigureLogging:

    def test_production_uses_json_formatter(self, root_logger):
        configure_logging(env="production")
        assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)

    def test_development_uses_dev_formatter(self, root_logger):
        configure_logging(env="development")
        assert isinstance(root_logger.handlers[0].formatter, DevFormatter)

    def test_reads_env_var(self, root_logger):
        with patch.dict(os.environ, {"PANELFLOW_ENV": "production"}):
            configure_logging()
        assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)

    def test_defaults_to_development(self, root_logger):
        with patch.dict(os.environ, {}, clear=True):
            configure_logging()
        assert isinstance(root_logger.handlers[0].formatter, DevFormatter)

    def test_removes_existing_handlers(self, root_logger):
        root_logger.addHandler(logging.StreamHandler())
        configure_logging(env="development")
        assert len(root_logger.handlers) == 1
        assert ContextFilter in [type(f) for f in root_logger.handlers[0].filters]

    def test_json_output_carries_panel_context(self, root_logger):
        stream = StringIO()
        configure_logging(env="production", stream=stream)

        with panel_context("P42"):
            logging.getLogger("panelflow.test").info(
                "station_decision_recorded", extra={"decision": "PASS"}
            )

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["message"] == "station_decision_recorded"
        assert parsed["panel_id"] == "P42"
        assert parsed["decision"] == "PASS"

    def test_explicit_stream_and_returned_handler(self, root_logger):
        stream = StringIO()
        handler = configure_logging(env="development", level="DEBUG", stream=stream)
        assert root_logger.handlers == [handler]
        assert root_logger.level == logging.DEBUG

        logging.getLogger("panelflow.test").debug("queued")
        assert "queued" in stream.getvalue()

    def test_level_from_env(self, root_logger):
        with patch.dict(os.environ, {"PANELFLOW_LOG_LEVEL": "warning"}):
            configure_logging(env="development")
        assert root_logger.level == logging.WARNING

    def test_unknown_level_name_falls_back_to_info(self, root_logger):
        configure_logging(env="development", level="LOUD")
        assert root_logger.level == logging.INFO
