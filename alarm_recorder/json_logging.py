"""
json_logging.py — JSON-lines logging shared by every recorder module.

Each record becomes one JSON object per line:

    {"ts": ..., "level": ..., "logger": ..., "msg": ..., "service": ..., <extra>}

``service`` and any other static fields are fixed when
:func:`configure_logging` installs the handler; per-call fields come from
``extra=``.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Mapping, Optional

_ROOT_LOGGER_NAME = "alarm_recorder"
DEFAULT_SERVICE = "alarm-recorder"

_RESERVED = frozenset(
    vars(logging.LogRecord("", logging.NOTSET, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """Render a record and its ``extra=`` fields as one JSON line.

    Args:
        static_fields: Key/value pairs stamped on every line, e.g. the
            service name.  Per-record extras with the same key win.
    """

    def __init__(self, static_fields: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__()
        self.static_fields: Dict[str, Any] = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **self.static_fields,
        }
        payload.update(
            (key, value) for key, value in vars(record).items() if key not in _RESERVED
        )
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_logger(name: str) -> logging.Logger:
    """Return the ``alarm_recorder.<name>`` logger.

    Handlers live on the package root only (see :func:`configure_logging`).
    """
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")


def configure_logging(
    level: str | int = logging.INFO,
    service: str = DEFAULT_SERVICE,
) -> logging.Logger:
    """Attach a JSON stdout handler to the package root logger.

    Idempotent: later calls adjust the level and the ``service`` field of
    the existing handler instead of adding another.

    Args:
        level: Level name or number; unknown names fall back to ``INFO``.
        service: Value of the ``service`` field on every line.

    Returns:
        The package root :class:`logging.Logger`.
    """
    root = logging.getLogger(_ROOT_LOGGER_NAME)
    formatters = [h.formatter for h in root.handlers if isinstance(h.formatter, JsonFormatter)]
    if formatters:
        for formatter in formatters:
            formatter.static_fields["service"] = service
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter(static_fields={"service": service}))
        root.addHandler(handler)

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)
    return root
