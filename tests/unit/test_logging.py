"""Unit tests for the JSON log formatter."""

from __future__ import annotations

import io
import json
import logging
import sys

import pytest

from clawback.orchestrator.logging import JsonFormatter, configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_formatter_includes_extra_context() -> None:
    record = logging.LogRecord("clawback.test", logging.INFO, __file__, 1, "Run %s", ("started",), None)
    record.run_id = "run_1"

    line = json.loads(JsonFormatter().format(record))

    assert line["level"] == "INFO"
    assert line["logger"] == "clawback.test"
    assert line["message"] == "Run started"
    assert line["extra"] == {"run_id": "run_1"}
    assert "exception" not in line


def test_formatter_renders_exceptions() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord(
            "clawback.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
        )

    line = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: boom" in line["exception"]
    assert "extra" not in line


def test_configure_logging_writes_json_lines(restore_root_logger) -> None:
    stream = io.StringIO()
    configure_logging("debug", stream=stream)

    logging.getLogger("clawback.test").info("Event enqueued", extra={"event_id": "evt_1"})

    line = json.loads(stream.getvalue().strip())
    assert line["message"] == "Event enqueued"
    assert line["extra"] == {"event_id": "evt_1"}
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.INFO
