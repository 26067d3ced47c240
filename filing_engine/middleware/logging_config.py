"""
Structured logging configuration.

Two output formats, chosen by LOG_FORMAT (``json`` | ``readable``):
    - json:      one object per line; filing/workflow identifiers passed via
                 ``extra=`` are grouped under "context"
    - readable:  ``12:00:01 INFO  filing_engine.services.x [filing=… exec=…] message``

Default format is json outside DEBUG/TESTING. LOG_LEVEL sets the level.
Every handler carries RequestIdFilter so log lines emitted while serving a
request can be correlated with the X-Request-ID response header.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Domain identifiers services pass through ``extra=``
CONTEXT_FIELDS = ("tenant_id", "filing_id", "workflow_id", "execution_id", "step_id", "event_type")

# Per-request fields set by the timing middleware
REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")

_SHORT_TAGS = {
    "tenant_id": "tenant",
    "filing_id": "filing",
    "workflow_id": "wf",
    "execution_id": "exec",
    "step_id": "step",
    "event_type": "event",
}


def _collect(record, fields):
    return {key: getattr(record, key) for key in fields if getattr(record, key, None) is not None}


class RequestIdFilter(logging.Filter):
    """Stamp ``request_id`` from flask.g onto records that lack one."""

    def filter(self, record):
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_collect(record, REQUEST_FIELDS))
        context = _collect(record, CONTEXT_FIELDS)
        if context:
            entry["context"] = context
        if record.levelno >= logging.WARNING:
            entry["where"] = f"{record.module}.{record.funcName}:{record.lineno}"
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Single-line developer format; colours only when writing to a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color=False):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<7}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        tags = " ".join(f"{_SHORT_TAGS[k]}={v}" for k, v in _collect(record, CONTEXT_FIELDS).items())
        line = f"{ts} {level} {record.name}"
        if tags:
            line += f" [{tags}]"
        line += f" {record.getMessage()}"

        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def build_formatter(log_format, stream=None):
    if log_format == "json":
        return JSONFormatter()
    if log_format == "readable":
        stream = stream or sys.stderr
        return ReadableFormatter(use_color=hasattr(stream, "isatty") and stream.isatty())
    raise ValueError(f"Unknown LOG_FORMAT {log_format!r} (expected 'json' or 'readable')")


def configure_logging(app):
    """Install one root handler according to LOG_LEVEL / LOG_FORMAT."""
    is_testing = app.config.get("TESTING", False)
    is_dev = app.config.get("DEBUG", False) or is_testing

    level_name = (app.config.get("LOG_LEVEL")
                  or ("DEBUG" if is_dev else "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = (app.config.get("LOG_FORMAT")
                  or ("readable" if is_dev else "json")).lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(build_formatter(log_format, sys.stderr))
    handler.addFilter(RequestIdFilter())
    handler.setLevel(level)

    # Replace rather than add, so repeated create_app() calls don't duplicate lines
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, log_format)
