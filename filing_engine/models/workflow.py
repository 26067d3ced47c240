"""
Regulatory Filing Platform
Filing workflow domain models.

Models:
    - FilingWorkflow:      reusable step-graph blueprint for producing a filing
    - WorkflowExecution:   one run of a workflow against a specific filing

Architecture:
    Tenant ──1:N──▶ FilingWorkflow ──1:N──▶ WorkflowExecution ──N:1──▶ Filing
    FilingWorkflow.steps[].dependencies ──▶ FilingWorkflow.steps[].step_id  (DAG)

Lifecycle states:
    WorkflowExecution:  initiated → in_progress → completed | failed
    Step (step_status): pending → in_progress → completed | failed
                        pending → skipped, failed → in_progress (manual takeover)
"""

from filing_engine.models import db
from filing_engine.models.base import TenantModel, _utcnow, iso, new_id, one_of


# ── Constants ────────────────────────────────────────────────────────────────

STEP_TYPES = {
    "data_collection", "validation", "review",
    "approval", "filing", "confirmation",
}

AUTOMATION_LEVELS = {"manual", "semi_automated", "fully_automated"}

SCHEDULE_FREQUENCIES = {"monthly", "quarterly", "semi_annual", "annual", "ad_hoc"}

EXECUTION_STATUSES = {"initiated", "in_progress", "completed", "failed"}

ACTIVE_EXECUTION_STATUSES = {"initiated", "in_progress"}

# Step states that satisfy a dependent step's dependency.
SATISFIED_STEP_STATUSES = {"completed", "skipped"}

STEP_ACTIONS = {"start", "complete", "approve", "reject", "skip"}

ISSUE_SEVERITIES = {"low", "medium", "high", "critical"}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

EXECUTION_TRANSITIONS = {
    "initiated":   ["in_progress", "completed", "failed"],
    "in_progress": ["completed", "failed"],
    "completed":   [],
    "failed":      [],
}

STEP_TRANSITIONS = {
    "pending":     ["in_progress", "completed", "failed", "skipped"],
    "in_progress": ["completed", "failed"],
    "failed":      ["in_progress"],
    "completed":   [],
    "skipped":     [],
}


def validate_execution_transition(old_status, new_status):
    """Return True if WorkflowExecution status transition is valid."""
    return new_status in EXECUTION_TRANSITIONS.get(old_status, [])


def validate_step_transition(old_status, new_status):
    """Return True if a step status transition is valid."""
    return new_status in STEP_TRANSITIONS.get(old_status, [])


def is_automated(step):
    """A step counts as automated when its automated action is enabled."""
    action = step.get("automated_action") or {}
    return bool(action.get("enabled")) and bool(action.get("action_type"))


# ═════════════════════════════════════════════════════════════════════════════
# 1. FilingWorkflow
# ═════════════════════════════════════════════════════════════════════════════


class FilingWorkflow(TenantModel):
    """
    Workflow template instance owned by a tenant.

    steps is a list of dicts:
        {step_id, step_name, step_type, assigned_role, estimated_duration,
         dependencies[], automated_action{enabled, action_type, parameters},
         required_documents[], requires_valid_filing}
    schedule is {frequency, due_date{days_after_period_end}, reminder_schedule[]}.
    """

    __tablename__ = "filing_workflows"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    form_type = db.Column(db.String(30), nullable=False, index=True)
    jurisdiction = db.Column(db.String(10), nullable=False, default="SEC")
    template_id = db.Column(db.String(60), nullable=True,
                            comment="Built-in template this workflow was created from")
    is_active = db.Column(db.Boolean, default=True)
    automation_level = db.Column(db.String(20), default="semi_automated")

    schedule = db.Column(db.JSON, default=dict)
    steps = db.Column(db.JSON, default=list)
    approval_workflow = db.Column(db.JSON, default=dict)
    data_sources = db.Column(db.JSON, default=list)
    quality_checks = db.Column(db.JSON, default=list)

    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    executions = db.relationship("WorkflowExecution", backref="workflow", lazy="dynamic")

    def get_step(self, step_id):
        for step in self.steps or []:
            if step.get("step_id") == step_id:
                return step
        return None

    @property
    def total_estimated_hours(self):
        return sum(float(s.get("estimated_duration") or 0) for s in self.steps or [])

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "form_type": self.form_type,
            "jurisdiction": self.jurisdiction,
            "template_id": self.template_id,
            "is_active": self.is_active,
            "automation_level": self.automation_level,
            "schedule": self.schedule or {},
            "steps": self.steps or [],
            "approval_workflow": self.approval_workflow or {},
            "data_sources": self.data_sources or [],
            "quality_checks": self.quality_checks or [],
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<FilingWorkflow {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. WorkflowExecution
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowExecution(TenantModel):
    """
    One run of a FilingWorkflow.

    step_status maps step_id → {status, assigned_to, started_at, completed_at,
    notes, artifacts, approvals}. JSON columns are always reassigned, never
    mutated in place, so SQLAlchemy sees the change.
    """

    __tablename__ = "workflow_executions"
    __table_args__ = (
        one_of("status", EXECUTION_STATUSES, "ck_workflow_executions_status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    workflow_id = db.Column(
        db.String(36), db.ForeignKey("filing_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    filing_id = db.Column(
        db.String(36), db.ForeignKey("filings.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    status = db.Column(db.String(20), nullable=False, default="initiated")
    current_step = db.Column(db.String(60), nullable=True)

    initiated_by = db.Column(db.String(150), nullable=True)
    initiated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    reporting_period_end = db.Column(db.Date, nullable=False)
    statutory_due_date = db.Column(db.Date, nullable=True)
    scheduled_completion_date = db.Column(db.Date, nullable=True)
    actual_completion_date = db.Column(db.DateTime(timezone=True), nullable=True)

    step_status = db.Column(db.JSON, default=dict)
    issues = db.Column(db.JSON, default=list)
    metrics = db.Column(db.JSON, default=dict)

    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def is_active(self):
        return self.status in ACTIVE_EXECUTION_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "workflow_id": self.workflow_id,
            "filing_id": self.filing_id,
            "status": self.status,
            "current_step": self.current_step,
            "initiated_by": self.initiated_by,
            "initiated_at": iso(self.initiated_at),
            "reporting_period_end": iso(self.reporting_period_end),
            "statutory_due_date": iso(self.statutory_due_date),
            "scheduled_completion_date": iso(self.scheduled_completion_date),
            "actual_completion_date": iso(self.actual_completion_date),
            "step_status": self.step_status or {},
            "issues": self.issues or [],
            "metrics": self.metrics or {},
        }

    def __repr__(self):
        return f"<WorkflowExecution {self.id} [{self.status}]>"
