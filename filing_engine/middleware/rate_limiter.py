"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in filing_engine/__init__.py with no default
limits; this module applies limits per route category, keyed by tenant when
the request names one.

Usage:
    from filing_engine.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
SUBMISSION_LIMIT = "10/minute"


def tenant_rate_limit_key():
    """Rate limit key: tenant_id if the request carries one, else remote IP."""
    tenant_id = flask_request.args.get("tenant_id")
    if tenant_id is None and flask_request.is_json:
        body = flask_request.get_json(silent=True) or {}
        if isinstance(body, dict):
            tenant_id = body.get("tenant_id")
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per tenant, falling back to remote IP):
        - Filing submission: 10/minute (each call reaches the regulator gateway)
        - Filing/workflow:   60/minute
        - Health check:      exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    submit_view = app.view_functions.get("filing_bp.submit_filing")
    if submit_view:
        app.view_functions["filing_bp.submit_filing"] = limiter.limit(
            SUBMISSION_LIMIT, key_func=tenant_rate_limit_key)(submit_view)

    for bp_name in ("filing_bp", "workflow_bp", "notification_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT, key_func=tenant_rate_limit_key)(bp)

    health = app.view_functions.get("health")
    if health:
        limiter.exempt(health)

    app.logger.info("Rate limiter configured — submit: %s, api: %s", SUBMISSION_LIMIT, WRITE_LIMIT)
