"""
Regulatory Filing Platform
Request timing middleware.

Every response gets X-Request-Duration-Ms and X-Request-ID (echoed when the
caller sent one). Each request is logged once with the filing / workflow
ids taken from the URL, so a filing's HTTP traffic can be grepped out of the
JSON log by ``filing_id``.

    > SLOW_REQUEST_MS      WARNING  "Slow request"
    5xx                   ERROR    "Server error"
    otherwise             DEBUG
"""

import logging
import time
import uuid

from flask import Flask, current_app, g, request

logger = logging.getLogger(__name__)

_SKIP_LOG = frozenset({"/api/v1/health"})

# URL parameters copied onto the request log line
_SCOPE_ARGS = ("filing_id", "workflow_id", "execution_id", "step_id")


def _request_scope() -> dict:
    scope = {k: v for k, v in (request.view_args or {}).items() if k in _SCOPE_ARGS}

    tenant_id = request.args.get("tenant_id", type=int)
    if tenant_id is None:
        body = request.get_json(silent=True) if request.is_json else None
        if isinstance(body, dict):
            tenant_id = body.get("tenant_id")
    if tenant_id is not None:
        scope["tenant_id"] = tenant_id
    return scope


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = g.request_id

        if request.path in _SKIP_LOG:
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 1),
            "remote_addr": request.remote_addr,
            **_request_scope(),
        }
        args = (request.method, request.path, response.status_code, duration_ms)
        if duration_ms > current_app.config.get("SLOW_REQUEST_MS", 1000):
            logger.warning("Slow request: %s %s %d (%.0fms)", *args, extra=extra)
        elif response.status_code >= 500:
            logger.error("Server error: %s %s %d (%.0fms)", *args, extra=extra)
        else:
            logger.debug("%s %s %d (%.0fms)", *args, extra=extra)
        return response
