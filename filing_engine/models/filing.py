"""
Regulatory Filing Platform
Filing domain models.

Models:
    - Filing:             one regulatory submission instance (13F, PF, ADV, ...)
    - FilingAuditEntry:   append-only audit trail row for a filing

Architecture:
    Tenant ──1:N──▶ Filing ──1:N──▶ FilingAuditEntry
    Filing ──0:1──▶ Filing  (amendment → original via original_filing_id)

Lifecycle states:
    Filing:  draft ⇄ review → filed | rejected
             (review → draft only when re-validation finds new errors)
"""

import sqlalchemy as sa
from sqlalchemy import event

from filing_engine.core.exceptions import PreconditionFailed
from filing_engine.models import db
from filing_engine.models.base import TenantModel, _utcnow, iso, new_id, one_of


# ── Constants ────────────────────────────────────────────────────────────────

FILING_STATUSES = {"draft", "review", "filed", "rejected"}

# Statuses in which form data may still change and submission is allowed.
EDITABLE_STATUSES = {"draft", "review"}

FILING_FREQUENCIES = {"annual", "quarterly", "amendment", "ad_hoc", "other"}

AUDIT_ACTIONS = {
    "created", "updated", "validated", "status_changed", "submitted",
    "filed", "rejected", "amendment_created", "amended_by", "attachment_added",
}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

FILING_TRANSITIONS = {
    "draft":    ["review"],
    "review":   ["draft", "filed", "rejected"],
    "filed":    [],
    "rejected": [],
}


def validate_filing_transition(old_status, new_status):
    """Return True if Filing status transition is valid."""
    return new_status in FILING_TRANSITIONS.get(old_status, [])


# Columns that are frozen once a filing reaches ``filed``.
FROZEN_AFTER_FILING = (
    "form_data", "status", "reporting_period_end", "due_date",
    "confirmation", "submitted_by", "submitted_at", "filed_at",
    "compliance_checks", "attachments",
)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Filing
# ═════════════════════════════════════════════════════════════════════════════


class Filing(TenantModel):
    """
    A single regulatory filing with its own lifecycle and audit trail.

    form_data is the form-type-specific payload; derived aggregates are
    computed at prepare time so validation can reconcile them against the
    itemized records.
    """

    __tablename__ = "filings"
    __table_args__ = (
        TenantModel.tenant_composite_index("filings", "status"),
        TenantModel.tenant_composite_index("filings", "form_type"),
        one_of("status", FILING_STATUSES, "ck_filings_status"),
        one_of("filing_frequency", FILING_FREQUENCIES, "ck_filings_frequency"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    form_type = db.Column(db.String(30), nullable=False, index=True)
    jurisdiction = db.Column(db.String(10), nullable=False, default="SEC")
    filing_frequency = db.Column(db.String(20), nullable=True,
                                 comment="annual, quarterly, amendment, ad_hoc, other")
    reporting_period_end = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="draft")

    form_data = db.Column(db.JSON, default=dict)
    last_validation = db.Column(db.JSON, nullable=True,
                                comment="Most recent ValidationResult.to_dict()")
    completion_percentage = db.Column(db.Float, default=0.0)

    # Amendment chain
    amendment_number = db.Column(db.Integer, default=0)
    original_filing_id = db.Column(
        db.String(36), db.ForeignKey("filings.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    amendment_reason = db.Column(db.Text, nullable=True)

    compliance_checks = db.Column(db.JSON, default=list)
    attachments = db.Column(db.JSON, default=list)

    # Submission
    confirmation = db.Column(db.JSON, nullable=True,
                             comment="confirmation_number, submission_id, accepted_at, filing_url")
    prepared_by = db.Column(db.String(150), nullable=True)
    submitted_by = db.Column(db.String(150), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    filed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    audit_entries = db.relationship(
        "FilingAuditEntry", backref="filing", lazy="select",
        order_by="FilingAuditEntry.id", cascade="all, delete-orphan",
    )

    @property
    def is_editable(self):
        return self.status in EDITABLE_STATUSES

    def add_compliance_check(self, check_type, status, message):
        """Append a compliance check entry (reassigns so the JSON column is dirtied)."""
        checks = list(self.compliance_checks or [])
        checks.append({
            "check_type": check_type,
            "status": status,
            "message": message,
            "checked_at": _utcnow().isoformat(),
        })
        self.compliance_checks = checks

    def to_dict(self, include_audit=True):
        result = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "form_type": self.form_type,
            "jurisdiction": self.jurisdiction,
            "filing_frequency": self.filing_frequency,
            "reporting_period_end": iso(self.reporting_period_end),
            "due_date": iso(self.due_date),
            "status": self.status,
            "form_data": self.form_data or {},
            "last_validation": self.last_validation,
            "completion_percentage": self.completion_percentage,
            "amendment_number": self.amendment_number,
            "original_filing_id": self.original_filing_id,
            "amendment_reason": self.amendment_reason,
            "compliance_checks": self.compliance_checks or [],
            "attachments": self.attachments or [],
            "confirmation": self.confirmation,
            "prepared_by": self.prepared_by,
            "submitted_by": self.submitted_by,
            "submitted_at": iso(self.submitted_at),
            "filed_at": iso(self.filed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_audit:
            result["audit_trail"] = [e.to_dict() for e in self.audit_entries]
        return result

    def __repr__(self):
        return f"<Filing {self.id} {self.form_type} [{self.status}]>"


@event.listens_for(Filing, "before_update")
def _guard_filed_filing(mapper, connection, target):
    """Refuse to flush changes to a filing that was already filed."""
    state = sa.inspect(target)
    # Attribute history is empty for expired instances; the stored row is authoritative.
    previous = connection.execute(
        sa.select(Filing.__table__.c.status).where(Filing.__table__.c.id == target.id)
    ).scalar()
    if previous != "filed":
        return
    changed = [col for col in FROZEN_AFTER_FILING if state.attrs[col].history.has_changes()]
    if changed:
        raise PreconditionFailed(
            f"Filing {target.id} is filed and immutable (attempted change: {', '.join(changed)})",
            current_state="filed",
        )


# ═════════════════════════════════════════════════════════════════════════════
# 2. FilingAuditEntry
# ═════════════════════════════════════════════════════════════════════════════


class FilingAuditEntry(db.Model):
    """
    Append-only audit row.

    Kept outside the Filing row so a filed original can still receive the
    ``amended_by`` link without its frozen columns changing.
    """

    __tablename__ = "filing_audit_entries"
    __table_args__ = (
        one_of("action", AUDIT_ACTIONS, "ck_filing_audit_action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    filing_id = db.Column(
        db.String(36), db.ForeignKey("filings.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    action = db.Column(db.String(40), nullable=False)
    actor = db.Column(db.String(150), nullable=True)
    details = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "filing_id": self.filing_id,
            "action": self.action,
            "actor": self.actor,
            "details": self.details or {},
            "timestamp": iso(self.created_at),
        }

    def __repr__(self):
        return f"<FilingAuditEntry {self.filing_id}:{self.action}>"
