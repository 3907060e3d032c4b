"""Logging configuration for the GrabLink service.

Every record is written to stdout as one JSON object. Context such as
``download_id``, ``platform``, ``command`` or ``attempt`` travels through
``extra=`` and lands as top-level keys, so a single download can be followed
across the probe, download, transcode and retrieval steps.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Attributes present on every LogRecord; anything else arrived through ``extra=``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys() | {"message", "asctime", "taskName"}
)

# Third-party loggers and the level they are held at outside debug mode.
_QUIET_LOGGERS: dict[str, int] = {
    "uvicorn.access": logging.WARNING,
    "asyncio": logging.WARNING,
    "httpx": logging.WARNING,
}


class JsonFormatter(logging.Formatter):
    """Render records as JSON lines tagged with the service name.

    Notes
    -----
    - Keys passed through ``extra=`` are merged at the top level; they never
      overwrite the fixed keys below.
    - Values that are not JSON-serializable (paths, enums) are stringified.
    """

    def __init__(self, service: str = "GrabLink") -> None:
        super().__init__()
        self.service: str = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and key not in payload:
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(debug: bool, service: str = "GrabLink") -> None:
    """Install the JSON handler on the root logger.

    Parameters
    ----------
    debug: bool
        Log at DEBUG (including spawned commands and poll attempts) instead of INFO.
    service: str
        Value of the ``service`` key on every line.
    """

    level: int = logging.DEBUG if debug else logging.INFO
    handler: logging.Handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(service))

    root_logger: logging.Logger = logging.getLogger()
    root_logger.setLevel(level)
    # Replace handlers uvicorn may have installed before the app factory ran
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn").setLevel(level)
    logging.getLogger("uvicorn.error").setLevel(level)
    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level if debug else quiet_level)
