"""
Regulatory Filing Platform
Filing Blueprint.

Provides:
    - Filing preparation, retrieval and listing
    - Form-data edits and supporting documents while draft/review
    - Validation, regulator submission and amendments
    - Deadline view, 13F holdings analysis and Form PF requirement checks

tenant_id travels in the JSON body or the query string.
"""

import logging

from flask import Blueprint, jsonify, request

from filing_engine.blueprints import (
    int_arg,
    register_error_handlers,
    request_data,
    tenant_id_from_request,
)
from filing_engine.core.exceptions import ValidationError
from filing_engine.services.filing_lifecycle import FilingLifecycle
from filing_engine.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

filing_bp = Blueprint("filing_bp", __name__, url_prefix="/api/v1")
register_error_handlers(filing_bp)


def _require(data, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}",
                              details={"missing": missing})


# ═══════════════════════════════════════════════════════════════════════════
#  FILINGS
# ═══════════════════════════════════════════════════════════════════════════

@filing_bp.route("/filings", methods=["POST"])
def prepare_filing():
    """Create a draft filing."""
    data = request_data()
    tenant_id = tenant_id_from_request()
    _require(data, "form_type", "reporting_period_end", "prepared_by")

    filing = FilingLifecycle().prepare(
        tenant_id=tenant_id,
        form_type=data["form_type"],
        jurisdiction=data.get("jurisdiction"),
        reporting_period_end=data["reporting_period_end"],
        data=data.get("form_data") or {},
        prepared_by=data["prepared_by"],
        filing_frequency=data.get("filing_frequency"),
    )
    return jsonify(filing.to_dict()), 201


@filing_bp.route("/filings", methods=["GET"])
def list_filings():
    """List a tenant's filings, newest period first."""
    tenant_id = tenant_id_from_request()
    filings = FilingLifecycle().list_filings(
        tenant_id,
        form_type=request.args.get("form_type"),
        status=request.args.get("status"),
    )
    return jsonify({
        "items": [f.to_dict(include_audit=False) for f in filings],
        "total": len(filings),
    })


@filing_bp.route("/filings/<filing_id>", methods=["GET"])
def get_filing(filing_id):
    tenant_id = tenant_id_from_request(required=False)
    filing = FilingLifecycle().get(filing_id, tenant_id=tenant_id)
    include_audit = request.args.get("include_audit", "true").lower() != "false"
    return jsonify(filing.to_dict(include_audit=include_audit))


@filing_bp.route("/filings/<filing_id>/form-data", methods=["PATCH"])
def update_form_data(filing_id):
    """Merge changes into a draft/review filing's form data."""
    data = request_data()
    _require(data, "updated_by")
    changes = data.get("changes")
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("changes must be a non-empty object", details={"changes": changes})

    filing = FilingLifecycle().update_form_data(
        filing_id, changes, data["updated_by"],
        tenant_id=tenant_id_from_request(required=False),
    )
    return jsonify(filing.to_dict())


@filing_bp.route("/filings/<filing_id>/attachments", methods=["POST"])
def attach_document(filing_id):
    data = request_data()
    _require(data, "name")
    attachment = FilingLifecycle().attach_document(
        filing_id,
        name=data["name"],
        size=data.get("size", 0),
        content_type=data.get("content_type"),
        uploaded_by=data.get("uploaded_by"),
        tenant_id=tenant_id_from_request(required=False),
    )
    return jsonify(attachment), 201


# ── Validation / submission ─────────────────────────────────────────────

@filing_bp.route("/filings/<filing_id>/validate", methods=["POST"])
def validate_filing(filing_id):
    """Run the form's rule set. Always 200; the result carries the verdict."""
    data = request_data()
    result = FilingLifecycle().validate(
        filing_id, actor=data.get("actor"),
        tenant_id=tenant_id_from_request(required=False),
    )
    return jsonify(result.to_dict())


@filing_bp.route("/filings/<filing_id>/submit", methods=["POST"])
def submit_filing(filing_id):
    """
    Submit to the regulator.

    A regulator rejection is a recorded outcome, so the response is 200 with
    status "rejected"; rule violations return 422 before any submission.
    """
    data = request_data()
    _require(data, "submitted_by")
    filing = FilingLifecycle().submit(
        filing_id, data["submitted_by"],
        options=data.get("options") or {},
        tenant_id=tenant_id_from_request(required=False),
    )
    return jsonify(filing.to_dict())


@filing_bp.route("/filings/<filing_id>/amend", methods=["POST"])
def amend_filing(filing_id):
    """Create an amendment draft linked to this filing."""
    data = request_data()
    _require(data, "reason", "amended_by")
    amendment = FilingLifecycle().amend(
        filing_id,
        changes=data.get("changes") or {},
        reason=data["reason"],
        amended_by=data["amended_by"],
        tenant_id=tenant_id_from_request(required=False),
    )
    return jsonify(amendment.to_dict()), 201


# ═══════════════════════════════════════════════════════════════════════════
#  ANALYTICS
# ═══════════════════════════════════════════════════════════════════════════

@filing_bp.route("/filings/<filing_id>/holdings-analysis", methods=["GET"])
def holdings_analysis(filing_id):
    analysis = FilingLifecycle().analyze_holdings(
        filing_id,
        top_n=int_arg("top_n", 10),
        tenant_id=tenant_id_from_request(required=False),
    )
    return jsonify(analysis)


@filing_bp.route("/filings/deadlines", methods=["GET"])
def upcoming_deadlines():
    tenant_id = tenant_id_from_request()
    today = request.args.get("today")
    deadlines = FilingLifecycle().upcoming_deadlines(
        tenant_id,
        today=parse_date_input(today, "today") if today else None,
        within_days=int_arg("within_days", 30),
    )
    return jsonify({"items": deadlines, "total": len(deadlines)})


@filing_bp.route("/filings/form-pf/requirements", methods=["POST"])
def form_pf_requirements():
    """Which private funds must file Form PF, and how often."""
    data = request_data()
    funds = data.get("funds")
    if not isinstance(funds, list):
        raise ValidationError("funds must be a list", details={"funds": funds})
    today = data.get("today")
    requirements = FilingLifecycle().filing_requirements(
        funds,
        today=parse_date_input(today, "today") if today else None,
        jurisdiction=data.get("jurisdiction") or "SEC",
    )
    return jsonify({"items": requirements, "total": len(requirements)})
