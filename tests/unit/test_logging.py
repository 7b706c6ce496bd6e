from __future__ import annotations

import io
import json
import logging
import sys
from datetime import date
from decimal import Decimal

import pytest

from callexport.utils.logging import JsonFormatter, _json_formatter, configure_logging

EXPECTED_ROWS = 10


@pytest.fixture
def bare_root(monkeypatch) -> logging.Logger:
    """Root logger with no handlers; handlers and level are restored afterwards."""
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)
    return root


def _record(**attrs) -> logging.LogRecord:
    record = logging.LogRecord(
        name="callexport.export.worker",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="[RECORD SKIPPED] %s",
        args=("bad line",),
        exc_info=None,
    )
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


def test_json_formatter_serializes_dates_and_decimals() -> None:
    payload = json.loads(
        _json_formatter(_record(day=date(2002, 12, 29), amount=Decimal("3300.10"), rows=EXPECTED_ROWS))
    )

    assert payload["message"] == "[RECORD SKIPPED] bad line"
    assert payload["level"] == "WARNING"
    assert payload["day"] == "2002-12-29"
    assert payload["amount"] == "3300.10"
    assert payload["rows"] == EXPECTED_ROWS


def test_json_formatter_includes_exception_text() -> None:
    try:
        raise ValueError("not a date")
    except ValueError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(_json_formatter(record))

    assert "ValueError: not a date" in payload["exc_info"]


def test_extra_fields_reach_json_output() -> None:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    logger = logging.getLogger("callexport.tests.json")
    logger.propagate = False
    logger.addHandler(handler)
    try:
        logger.warning(
            "[BATCH RETRY] attempt 1 failed",
            extra={"task_id": 2, "offset": 300, "first_day": date(2020, 1, 1)},
        )
    finally:
        logger.removeHandler(handler)

    payload = json.loads(stream.getvalue())
    assert payload["task_id"] == 2
    assert payload["offset"] == 300
    assert payload["first_day"] == "2020-01-01"


def test_configure_without_force_keeps_existing_handler(bare_root) -> None:
    existing = logging.NullHandler()
    bare_root.addHandler(existing)

    configure_logging(level="DEBUG", json_logs=True, force=False)

    assert bare_root.handlers == [existing]


def test_configure_without_force_sets_up_bare_root(bare_root) -> None:
    configure_logging(level="DEBUG", json_logs=True, force=False)

    assert len(bare_root.handlers) == 1
    assert isinstance(bare_root.handlers[0].formatter, JsonFormatter)
    assert bare_root.level == logging.DEBUG


def test_configure_with_force_replaces_handlers(bare_root) -> None:
    existing = logging.NullHandler()
    bare_root.addHandler(existing)

    configure_logging(level="INFO", json_logs=False)

    assert existing not in bare_root.handlers
    assert len(bare_root.handlers) == 1
    assert not isinstance(bare_root.handlers[0].formatter, JsonFormatter)
    assert "%(processName)s" in bare_root.handlers[0].formatter._fmt
