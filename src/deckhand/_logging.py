"""Structured JSON log formatter and logging configuration.

Coordinator and simulators run unattended, so their logs are emitted as
JSON Lines by default.  Each line carries ``service`` and ``version``
for correlation, plus ``token_id`` / ``device_id`` whenever the call
site passes them through ``extra=``::

    logger.info("Token claimed", extra={"token_id": 7, "device_id": did})

Text output remains available for local runs (``--log-format text``).
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from deckhand._settings import LoggingSettings

_MB = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_CONTEXT_FIELDS = ("token_id", "device_id", "room")


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects (NDJSON).

    Fields: ``timestamp`` (UTC ISO 8601), ``level``, ``logger``,
    ``message``, ``service``, ``version`` (omitted when empty), the
    provisioning context fields when present on the record, and
    ``exception`` / ``stack_info`` when applicable.

    Args:
        service: Service name included in every line.
        version: Service version; omitted from output when empty.
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        """Format *record* as one JSON line with no embedded newlines."""
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Configure the root logger from *settings*.

    Replaces any existing root handlers with a stderr handler and, when
    ``settings.file`` is set, a :class:`RotatingFileHandler` sized by
    ``settings.max_file_size_mb``.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * _MB,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)
