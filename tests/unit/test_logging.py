"""Tests for deckhand._logging — JSON formatter and configuration.

Test Techniques Used:
    - Specification-based Testing: JsonFormatter output schema
    - State Inspection: root logger handlers and level after configure
    - Fixture Isolation: save/restore root logger state
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import pytest

from deckhand._logging import JsonFormatter, configure_logging
from deckhand._settings import LoggingSettings


@pytest.fixture
def _restore_root_logger() -> Iterator[None]:
    """Save and restore root logger handlers and level."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    for h in root.handlers:
        if h not in original_handlers:
            h.close()
    root.handlers = original_handlers
    root.setLevel(original_level)


def _record(message: str = "hello", **extra: Any) -> logging.LogRecord:
    record = logging.LogRecord(
        name="deckhand.test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _format(formatter: JsonFormatter, record: logging.LogRecord) -> dict[str, Any]:
    return json.loads(formatter.format(record))


# ---------------------------------------------------------------------------
# JsonFormatter
# ---------------------------------------------------------------------------


class TestJsonFormatter:
    """Technique: Specification-based Testing."""

    def test_required_fields(self) -> None:
        entry = _format(JsonFormatter(service="deckhand", version="1.2.3"), _record())
        assert entry["level"] == "INFO"
        assert entry["logger"] == "deckhand.test"
        assert entry["message"] == "hello"
        assert entry["service"] == "deckhand"
        assert entry["version"] == "1.2.3"
        assert datetime.fromisoformat(entry["timestamp"]).tzinfo == UTC

    def test_empty_version_omitted(self) -> None:
        entry = _format(JsonFormatter(service="deckhand"), _record())
        assert "version" not in entry

    def test_context_fields_from_extra(self) -> None:
        record = _record(token_id=7, device_id="BUT-1", room="Lobby", unrelated="x")
        entry = _format(JsonFormatter(service="deckhand"), record)
        assert (entry["token_id"], entry["device_id"], entry["room"]) == (7, "BUT-1", "Lobby")
        assert "unrelated" not in entry

    def test_absent_context_fields_omitted(self) -> None:
        entry = _format(JsonFormatter(service="deckhand"), _record())
        assert not {"token_id", "device_id", "room"} & entry.keys()

    def test_exception_included(self) -> None:
        formatter = JsonFormatter(service="deckhand")
        try:
            raise ValueError("bad claim")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()
        entry = _format(formatter, record)
        assert "ValueError: bad claim" in entry["exception"]

    def test_single_line(self) -> None:
        line = JsonFormatter(service="deckhand").format(_record("multi\nline"))
        assert "\n" not in line


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("_restore_root_logger")
class TestConfigureLogging:
    """Technique: State Inspection."""

    def test_json_handler_and_level(self) -> None:
        configure_logging(LoggingSettings(level="DEBUG"), service="deckhand", version="1.0")
        root = logging.getLogger()
        [handler] = root.handlers
        assert isinstance(handler.formatter, JsonFormatter)
        assert root.level == logging.DEBUG

    def test_text_format(self) -> None:
        configure_logging(LoggingSettings(format="text"), service="deckhand")
        [handler] = logging.getLogger().handlers
        assert not isinstance(handler.formatter, JsonFormatter)

    def test_replaces_existing_handlers(self) -> None:
        configure_logging(LoggingSettings(), service="deckhand")
        configure_logging(LoggingSettings(), service="deckhand")
        assert len(logging.getLogger().handlers) == 1

    def test_file_handler_rotation(self, tmp_path: Path) -> None:
        log_file = tmp_path / "deckhand.log"
        settings = LoggingSettings(file=str(log_file), max_file_size_mb=2, backup_count=5)

        configure_logging(settings, service="deckhand")
        logging.getLogger("deckhand.test").warning("written", extra={"token_id": 3})

        rotating = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
        [handler] = rotating
        assert handler.maxBytes == 2 * 1024 * 1024
        assert handler.backupCount == 5
        handler.flush()
        entry = json.loads(log_file.read_text().splitlines()[-1])
        assert (entry["message"], entry["token_id"]) == ("written", 3)
