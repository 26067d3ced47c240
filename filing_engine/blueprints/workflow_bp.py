"""
Regulatory Filing Platform
Workflow Blueprint.

Provides:
    - Built-in workflow template catalogue
    - Tenant workflow registration (custom or from template), activation
    - Execution initiation, step actions, issues and filing linkage
    - Reminder dispatch and scheduled job management
"""

import logging
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from filing_engine.blueprints import register_error_handlers, request_data, tenant_id_from_request
from filing_engine.core.exceptions import NotFoundError, ValidationError
from filing_engine.models.workflow import STEP_ACTIONS
from filing_engine.services.reminder_scheduler import ReminderScheduler
from filing_engine.services.scheduler_service import SchedulerService
from filing_engine.services.workflow_orchestrator import WorkflowOrchestrator
from filing_engine.services.workflow_templates import WorkflowTemplateRegistry

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


def _require(data, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}",
                              details={"missing": missing})


# ═══════════════════════════════════════════════════════════════════════════
#  TEMPLATES & WORKFLOWS
# ═══════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflow-templates", methods=["GET"])
def list_templates():
    templates = WorkflowTemplateRegistry().list_templates(
        form_type=request.args.get("form_type"),
        category=request.args.get("category"),
    )
    return jsonify({"items": templates, "total": len(templates)})


@workflow_bp.route("/workflow-templates/<template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(WorkflowTemplateRegistry().get_template(template_id))


@workflow_bp.route("/workflows", methods=["POST"])
def register_workflow():
    """Register a custom workflow definition."""
    data = request_data()
    tenant_id = tenant_id_from_request()
    config = {k: v for k, v in data.items() if k not in ("tenant_id", "created_by")}
    workflow = WorkflowTemplateRegistry().register_workflow(
        tenant_id, config, created_by=data.get("created_by"))
    return jsonify(workflow.to_dict()), 201


@workflow_bp.route("/workflows/from-template", methods=["POST"])
def create_from_template():
    data = request_data()
    tenant_id = tenant_id_from_request()
    _require(data, "template_id", "name")
    workflow = WorkflowTemplateRegistry().create_from_template(
        tenant_id,
        data["template_id"],
        data["name"],
        customizations=data.get("customizations") or {},
        created_by=data.get("created_by"),
    )
    return jsonify(workflow.to_dict()), 201


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    tenant_id = tenant_id_from_request()
    active_only = request.args.get("active_only", "false").lower() == "true"
    workflows = WorkflowTemplateRegistry().list_workflows(tenant_id, active_only=active_only)
    return jsonify({"items": [w.to_dict() for w in workflows], "total": len(workflows)})


@workflow_bp.route("/workflows/<workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    workflow = WorkflowTemplateRegistry().get_workflow(
        workflow_id, tenant_id=tenant_id_from_request(required=False))
    return jsonify(workflow.to_dict())


@workflow_bp.route("/workflows/<workflow_id>/activate", methods=["POST"])
def set_workflow_active(workflow_id):
    """Body: {"is_active": true|false} (defaults to true)."""
    data = request_data()
    workflow = WorkflowTemplateRegistry().set_active(
        workflow_id, data.get("is_active", True),
        tenant_id=tenant_id_from_request(required=False))
    return jsonify(workflow.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  EXECUTIONS
# ═══════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/workflows/<workflow_id>/executions", methods=["POST"])
def initiate_execution(workflow_id):
    """Start a run of the workflow for one reporting period."""
    data = request_data()
    _require(data, "reporting_period_end", "initiated_by")
    execution = WorkflowOrchestrator().initiate(
        workflow_id,
        data["reporting_period_end"],
        data["initiated_by"],
        filing_id=data.get("filing_id"),
        tenant_id=tenant_id_from_request(required=False),
    )
    return jsonify(execution.to_dict()), 201


@workflow_bp.route("/workflows/<workflow_id>/executions", methods=["GET"])
def list_executions(workflow_id):
    executions = WorkflowOrchestrator().list_executions(
        workflow_id, tenant_id=tenant_id_from_request(required=False))
    return jsonify({"items": [e.to_dict() for e in executions], "total": len(executions)})


@workflow_bp.route("/executions/<execution_id>", methods=["GET"])
def get_execution(execution_id):
    execution = WorkflowOrchestrator().get_execution(
        execution_id, tenant_id=tenant_id_from_request(required=False))
    return jsonify(execution.to_dict())


@workflow_bp.route("/executions/<execution_id>/steps/<step_id>/<action>", methods=["POST"])
def process_step(execution_id, step_id, action):
    """
    Apply a step action: start, complete, approve, reject or skip.

    Body: {actor, notes?, artifacts?, role?}; role is the approver role for
    approve/reject.
    """
    if action not in STEP_ACTIONS:
        raise NotFoundError(resource="StepAction", resource_id=action)
    data = request_data()
    _require(data, "actor")
    execution = WorkflowOrchestrator().process_step(
        execution_id,
        step_id,
        action,
        data["actor"],
        notes=data.get("notes"),
        artifacts=data.get("artifacts"),
        role=data.get("role"),
        tenant_id=tenant_id_from_request(required=False),
    )
    return jsonify(execution.to_dict())


@workflow_bp.route("/executions/<execution_id>/filing", methods=["POST"])
def attach_filing(execution_id):
    data = request_data()
    _require(data, "filing_id")
    execution = WorkflowOrchestrator().attach_filing(
        execution_id, data["filing_id"], tenant_id=tenant_id_from_request(required=False))
    return jsonify(execution.to_dict())


@workflow_bp.route("/executions/<execution_id>/issues", methods=["POST"])
def record_issue(execution_id):
    data = request_data()
    _require(data, "severity", "description")
    issue = WorkflowOrchestrator().record_issue(
        execution_id,
        data.get("step_id"),
        data["severity"],
        data["description"],
        actor=data.get("actor"),
        tenant_id=tenant_id_from_request(required=False),
    )
    return jsonify(issue), 201


@workflow_bp.route("/executions/<execution_id>/issues/<issue_id>/resolve", methods=["POST"])
def resolve_issue(execution_id, issue_id):
    data = request_data()
    _require(data, "resolution", "actor")
    issue = WorkflowOrchestrator().resolve_issue(
        execution_id, issue_id, data["resolution"], data["actor"],
        tenant_id=tenant_id_from_request(required=False))
    return jsonify(issue)


# ═══════════════════════════════════════════════════════════════════════════
#  REMINDERS & SCHEDULED JOBS
# ═══════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/reminders/dispatch", methods=["POST"])
def dispatch_reminders():
    """Run one reminder sweep now. Body may carry ``now`` (ISO datetime)."""
    data = request_data()
    now = datetime.now(timezone.utc)
    if data.get("now"):
        try:
            now = datetime.fromisoformat(str(data["now"]))
        except ValueError:
            raise ValidationError("now must be an ISO-8601 datetime", details={"now": data["now"]})
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
    return jsonify(ReminderScheduler().dispatch_due(now))


@workflow_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"items": SchedulerService.list_jobs()})


@workflow_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    """Manually trigger a scheduled job; status "skipped" if it is already running."""
    return jsonify(SchedulerService.run_job(job_name))


@workflow_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job(job_name):
    data = request_data()
    if data.get("enabled") is None:
        raise ValidationError("'enabled' field is required (true/false)")
    job = SchedulerService.toggle_job(job_name, bool(data["enabled"]))
    if job is None:
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return jsonify(job)
