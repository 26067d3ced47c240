"""
Regulatory Filing Platform
Blueprint registry.

Shared request helpers and the error-handler set every API blueprint
registers: service exceptions map to HTTP status codes in one place.
"""

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from filing_engine.core.exceptions import FilingPlatformError, ValidationError
from filing_engine.models import db

logger = logging.getLogger(__name__)


def request_data():
    """JSON body as a dict (empty dict for missing or non-object bodies)."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def tenant_id_from_request(required=True):
    """Resolve tenant_id from the query string first, then the JSON body."""
    raw = request.args.get("tenant_id")
    if raw is None:
        raw = request_data().get("tenant_id")
    if raw in (None, ""):
        if required:
            raise ValidationError("tenant_id is required", details={"tenant_id": None})
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("tenant_id must be an integer", details={"tenant_id": raw})


def int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def register_error_handlers(bp):
    """Attach the service-exception → HTTP mapping to ``bp``."""

    @bp.errorhandler(FilingPlatformError)
    def _handle_platform_error(error):
        if error.http_status >= 500:
            logger.error("%s in %s: %s", type(error).__name__, request.endpoint, error)
        else:
            logger.info("%s %s → %d: %s", request.method, request.path, error.http_status, error)
        return jsonify(error.payload()), error.http_status

    @bp.errorhandler(Exception)
    def _handle_unexpected(error):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500
