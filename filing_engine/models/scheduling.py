"""
Regulatory Filing Platform
Reminder & scheduled-job models.

Models:
    - FilingReminder: due-date-relative reminder for a workflow (sent exactly once)
    - ScheduledJob:   persisted registry of background jobs (run history + config)
"""

from datetime import timedelta

from filing_engine.models import db
from filing_engine.models.base import TenantModel, _utcnow, as_utc, iso


# ── Constants ────────────────────────────────────────────────────────────────

# days_before_due at or below this value produce an urgent reminder
URGENT_REMINDER_DAYS = 7

NOTIFICATION_METHODS = {"in_app", "email", "system", "both"}


def recipient_key(roles):
    """Canonical, order-independent key for a recipient role list."""
    return ",".join(sorted({str(r).strip() for r in roles or [] if str(r).strip()}))


class FilingReminder(TenantModel):
    """
    One reminder for one workflow, date and recipient-role set.

    The unique constraint on (workflow_id, reminder_date, recipient_key)
    keeps re-initiation from creating duplicates. ``sent`` flips once via a
    conditional UPDATE in the reminder repository.
    """

    __tablename__ = "filing_reminders"
    __table_args__ = (
        db.UniqueConstraint(
            "workflow_id", "reminder_date", "recipient_key",
            name="uq_filing_reminder_workflow_date_recipients",
        ),
        db.Index("ix_filing_reminders_due", "sent", "reminder_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.String(36), db.ForeignKey("filing_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    due_date = db.Column(db.Date, nullable=False)
    reminder_date = db.Column(db.Date, nullable=False)
    reminder_type = db.Column(db.String(20), nullable=False, default="initial")
    recipients = db.Column(db.JSON, default=list)
    recipient_key = db.Column(db.String(500), nullable=False, default="")
    notification_method = db.Column(db.String(20), default="in_app")
    sent = db.Column(db.Boolean, nullable=False, default=False)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "workflow_id": self.workflow_id,
            "due_date": iso(self.due_date),
            "reminder_date": iso(self.reminder_date),
            "reminder_type": self.reminder_type,
            "recipients": self.recipients or [],
            "notification_method": self.notification_method,
            "sent": self.sent,
            "sent_at": iso(self.sent_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<FilingReminder {self.workflow_id}@{self.reminder_date} [{self.reminder_type}]>"


class ScheduledJob(db.Model):
    """
    Registry of scheduled background jobs.

    Tracks interval configuration, last run time and run history for the
    reminder sweep and any other registered job.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_seconds = db.Column(db.Integer, default=3600)
    status = db.Column(db.String(20), default="active",
                       comment="active, paused")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True,
                                comment="success, failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Record a job execution."""
        self.last_run_at = _utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def next_run_at(self):
        last = as_utc(self.last_run_at)
        if last is None:
            return None
        return last + timedelta(seconds=self.interval_seconds or 0)

    def is_due(self, now):
        """Enabled and never run, or its interval has elapsed by ``now``."""
        if not self.is_enabled:
            return False
        next_run = self.next_run_at()
        return next_run is None or now >= next_run

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_seconds": self.interval_seconds,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": iso(self.last_run_at),
            "next_run_at": iso(self.next_run_at()),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
