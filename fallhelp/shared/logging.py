"""Single-line JSON logging shared by every FallHelp process.

Records carry the service name, the trace id of the telemetry message being
routed and, while a handler runs, the serial of the device that sent it.
Anything passed through ``extra=`` becomes a top-level field.
"""
from __future__ import annotations

import json
import logging
import os
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
device_id_var: ContextVar[str] = ContextVar("device_id", default="")

# attributes every LogRecord has; whatever else is on a record came from extra=
_STANDARD_FIELDS = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


def _utc_stamp(created: float) -> str:
    moment = datetime.fromtimestamp(created, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        name: value
        for name, value in vars(record).items()
        if name not in _STANDARD_FIELDS and not name.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = dict(
            ts=_utc_stamp(record.created),
            level=record.levelname,
            service=self.service,
            logger=record.name,
            msg=record.getMessage(),
            trace_id=trace_id_var.get(),
        )
        device_id = device_id_var.get()
        if device_id:
            entry["device_id"] = device_id
        entry.update(_extra_fields(record))
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(service: str, level: str | None = None) -> None:
    """Replace root handlers with one JSON stream handler.

    ``SERVICE_NAME`` and ``LOG_LEVEL`` from the environment override the
    arguments; an unrecognised level name falls back to INFO.
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(level_name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(os.getenv("SERVICE_NAME", service)))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(resolved)
    # paho logs every PINGREQ at DEBUG
    logging.getLogger("paho").setLevel(max(resolved, logging.INFO))


def log_event(logger: logging.Logger, msg: str, level: str = "INFO", **context) -> None:
    """Emit ``msg`` at ``level`` with ``context`` as structured fields."""
    numeric = logging.getLevelName(level.upper())
    logger.log(numeric if isinstance(numeric, int) else logging.INFO, msg, extra=context)


def log_exception(
    logger: logging.Logger,
    message: str,
    exception: BaseException,
    context: Optional[dict] = None,
) -> None:
    """Log an exception as error_type/error fields, without a traceback."""
    fields = dict(context or {})
    fields["error_type"] = type(exception).__name__
    fields["error"] = str(exception)
    logger.error(message, extra=fields)
