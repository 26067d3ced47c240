"""
Regulatory Filing Platform
Workflow Orchestrator — state machine over a workflow's step DAG.

Execution:  initiated → in_progress → completed | failed
Step:       pending → in_progress → completed | failed
            pending → skipped, failed → in_progress (manual takeover)

Rules:
    - A step may only be started or completed once every dependency is
      completed or skipped.
    - After any completion the orchestrator advances: every eligible
      automated pending step runs synchronously, then current_step moves to
      the first eligible pending step in topological order.
    - An automated step whose executor fails is marked failed with the error
      in its notes and a high-severity issue; the execution keeps running.
      Starting the failed step again is the recovery path.
    - Only reject on an approval step fails the whole execution. There is
      no automatic retry.
    - Mutations of one execution are serialized by a per-execution lock.
    - A filing has at most one active execution; the check and the write
      that links the filing run under a per-filing lock.

Metrics (recomputed after every mutation):
    automation_efficiency = automated steps / total steps × 100
    quality_score         = max(0, (completed/total × 0.7 − failed/total × 0.3) × 100)
"""

import copy
import logging
import math
from contextlib import nullcontext
from datetime import datetime, timedelta, timezone

from flask import current_app

from filing_engine.core.exceptions import (
    EXECUTOR_FAILED,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
    ValidationFailed,
)
from filing_engine.models.base import _utcnow, new_id
from filing_engine.models.workflow import (
    ISSUE_SEVERITIES,
    SATISFIED_STEP_STATUSES,
    STEP_ACTIONS,
    WorkflowExecution,
    is_automated,
    validate_execution_transition,
    validate_step_transition,
)
from filing_engine.repositories import (
    SqlAlchemyExecutionRepository,
    SqlAlchemyWorkflowRepository,
)
from filing_engine.services import event_publisher as events
from filing_engine.services.filing_lifecycle import FilingLifecycle
from filing_engine.services.reminder_scheduler import ReminderScheduler
from filing_engine.services.step_executors import (
    ActionType,
    ExecutorResult,
    StepContext,
    StepExecutorRegistry,
    step_executors,
)
from filing_engine.services.workflow_templates import build_step_graph
from filing_engine.utils.helpers import KeyedLocks, parse_date_input

logger = logging.getLogger(__name__)

__all__ = [
    "ActionType",
    "ExecutorResult",
    "StepExecutorRegistry",
    "WorkflowOrchestrator",
    "compute_metrics",
]

DEFAULT_DAYS_AFTER_PERIOD_END = 45
DEFAULT_HOURS_PER_DAY = 8
DEFAULT_BUFFER_DAYS = 5

_execution_locks = KeyedLocks()
# Taken after an execution lock, never before one
_filing_link_locks = KeyedLocks()


def _filing_link(filing_id):
    """Serializes the active-execution check for ``filing_id`` with the write that links it."""
    return _filing_link_locks.hold(filing_id) if filing_id else nullcontext()


def _as_aware(value):
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _seconds_between(start, end):
    start, end = _as_aware(start), _as_aware(end)
    if start is None or end is None:
        return None
    return round((end - start).total_seconds(), 3)


def scheduled_completion_date(due_date, total_hours, hours_per_day=DEFAULT_HOURS_PER_DAY,
                              buffer_days=DEFAULT_BUFFER_DAYS):
    """Walk back from the due date by the estimated working days plus a buffer."""
    working_days = math.ceil(float(total_hours or 0) / hours_per_day) if hours_per_day else 0
    return due_date - timedelta(days=working_days + buffer_days)


def compute_metrics(steps, step_status, initiated_at=None, completed_at=None):
    total = len(steps)
    automated = sum(1 for s in steps if is_automated(s))
    statuses = [(step_status.get(s["step_id"]) or {}).get("status") for s in steps]
    completed = statuses.count("completed")
    failed = statuses.count("failed")

    durations = {}
    for step in steps:
        entry = step_status.get(step["step_id"]) or {}
        seconds = _seconds_between(entry.get("started_at"), entry.get("completed_at"))
        if seconds is not None:
            durations[step["step_id"]] = seconds

    if total:
        efficiency = automated / total * 100
        quality = max(0.0, (completed / total * 0.7 - failed / total * 0.3) * 100)
    else:
        efficiency = quality = 0.0

    return {
        "automation_efficiency": round(efficiency, 2),
        "quality_score": round(quality, 2),
        "step_durations": durations,
        "total_duration": _seconds_between(initiated_at, completed_at),
        "completed_steps": completed,
        "failed_steps": failed,
        "total_steps": total,
    }


class WorkflowOrchestrator:
    """Drives WorkflowExecutions through their step graphs."""

    def __init__(self, workflow_repository=None, execution_repository=None, lifecycle=None,
                 reminder_scheduler=None, publisher=None, executors=None, app_config=None):
        self.workflows = workflow_repository or SqlAlchemyWorkflowRepository()
        self.executions = execution_repository or SqlAlchemyExecutionRepository()
        self.lifecycle = lifecycle or FilingLifecycle(publisher=publisher, app_config=app_config)
        self.reminders = reminder_scheduler or ReminderScheduler(publisher=publisher)
        self.executors = executors or step_executors
        self._publisher = publisher
        self._config = app_config

    @property
    def config(self):
        return self._config if self._config is not None else current_app.config

    @property
    def publisher(self):
        return self._publisher or events.get_publisher()

    # ── Initiate ──────────────────────────────────────────────────────────

    def initiate(self, workflow_id, reporting_period_end, initiated_by, filing_id=None, tenant_id=None):
        workflow = self.workflows.get(workflow_id, tenant_id=tenant_id)
        if not workflow.is_active:
            raise PreconditionFailed(f"Workflow {workflow.id} is not active", current_state="inactive")
        graph = build_step_graph(workflow.steps)
        period_end = parse_date_input(reporting_period_end, "reporting_period_end")
        if filing_id:
            self.lifecycle.get(filing_id, tenant_id=workflow.tenant_id)

        due_rule = (workflow.schedule or {}).get("due_date") or {}
        due_date = period_end + timedelta(
            days=int(due_rule.get("days_after_period_end", DEFAULT_DAYS_AFTER_PERIOD_END)))
        completion = scheduled_completion_date(
            due_date,
            workflow.total_estimated_hours,
            hours_per_day=self.config.get("WORKFLOW_HOURS_PER_DAY", DEFAULT_HOURS_PER_DAY),
            buffer_days=self.config.get("WORKFLOW_SCHEDULE_BUFFER_DAYS", DEFAULT_BUFFER_DAYS),
        )

        step_status = {
            sid: {
                "status": "pending",
                "assigned_to": graph.steps[sid].get("assigned_role"),
                "started_at": None,
                "completed_at": None,
                "notes": None,
                "artifacts": {},
                "approvals": [],
            }
            for sid in graph.order
        }
        execution = WorkflowExecution(
            id=new_id(),
            tenant_id=workflow.tenant_id,
            workflow_id=workflow.id,
            filing_id=filing_id,
            status="initiated",
            initiated_by=initiated_by,
            initiated_at=_utcnow(),
            reporting_period_end=period_end,
            statutory_due_date=due_date,
            scheduled_completion_date=completion,
            issues=[],
        )

        emitted = [(events.WORKFLOW_INITIATED, {
            "execution_id": execution.id,
            "workflow_id": workflow.id,
            "tenant_id": workflow.tenant_id,
            "form_type": workflow.form_type,
            "scheduled_completion_date": completion.isoformat(),
            "initiated_by": initiated_by,
        })]
        with _filing_link(filing_id):
            if filing_id:
                self._require_no_active_execution(filing_id)
            emitted += self._advance(execution, workflow, graph, step_status)
            self._store(execution, workflow, step_status)

        self.reminders.schedule(workflow, completion)
        logger.info("Execution %s initiated for workflow %s (due %s, scheduled %s)",
                    execution.id, workflow.id, due_date, completion,
                    extra={"execution_id": execution.id, "workflow_id": workflow.id})
        self._emit(emitted)
        return execution

    def _require_no_active_execution(self, filing_id, exclude_id=None):
        active = self.executions.find_active_for_filing(filing_id)
        if active is not None and active.id != exclude_id:
            raise PreconditionFailed(
                f"Filing {filing_id} already has an active workflow execution {active.id}",
                current_state=active.status,
            )

    # ── Process step ──────────────────────────────────────────────────────

    def process_step(self, execution_id, step_id, action, actor, notes=None, artifacts=None,
                     role=None, tenant_id=None):
        if action not in STEP_ACTIONS:
            raise ValidationError(f"Unknown step action: {action!r}",
                                  details={"action": sorted(STEP_ACTIONS)})

        with _execution_locks.hold(execution_id):
            execution = self.executions.get(execution_id, tenant_id=tenant_id)
            if not execution.is_active:
                raise PreconditionFailed(
                    f"Execution {execution.id} is {execution.status}", current_state=execution.status)
            workflow = self.workflows.get(execution.workflow_id)
            step = workflow.get_step(step_id)
            if step is None:
                raise NotFoundError(resource="WorkflowStep", resource_id=step_id)
            graph = build_step_graph(workflow.steps)
            step_status = copy.deepcopy(execution.step_status or {})
            entry = step_status.setdefault(step_id, {"status": "pending", "approvals": []})

            handler = {
                "start": self._start,
                "complete": self._complete,
                "approve": self._approve,
                "reject": self._reject,
                "skip": self._skip,
            }[action]
            emitted = handler(execution, workflow, graph, step_status, step, entry,
                              actor=actor, notes=notes, artifacts=artifacts, role=role)
            self._store(execution, workflow, step_status)

        logger.info("Execution %s step %s: %s by %s → %s", execution.id, step_id, action, actor,
                    step_status[step_id]["status"],
                    extra={"execution_id": execution.id, "step_id": step_id})
        self._emit(emitted)
        return execution

    def _require_dependencies(self, graph, step_status, step_id, action):
        if not graph.dependencies_satisfied(step_id, step_status, SATISFIED_STEP_STATUSES):
            open_deps = [d for d in graph.dependencies[step_id]
                         if (step_status.get(d) or {}).get("status") not in SATISFIED_STEP_STATUSES]
            raise PreconditionFailed(
                f"Cannot {action} step {step_id}: dependencies not complete ({', '.join(open_deps)})",
                current_state=step_status[step_id].get("status"),
            )

    def _set_step(self, entry, step_id, new_status):
        if not validate_step_transition(entry.get("status"), new_status):
            raise PreconditionFailed(
                f"Step {step_id} cannot move from {entry.get('status')} to {new_status}",
                current_state=entry.get("status"),
            )
        entry["status"] = new_status

    def _mark_in_progress(self, execution):
        if execution.status == "initiated":
            execution.status = "in_progress"

    def _start(self, execution, workflow, graph, step_status, step, entry, *, actor, notes, **_):
        step_id = step["step_id"]
        self._require_dependencies(graph, step_status, step_id, "start")
        self._set_step(entry, step_id, "in_progress")
        entry["started_at"] = _utcnow().isoformat()
        entry["completed_at"] = None
        entry["assigned_to"] = actor
        if notes:
            entry["notes"] = notes
        execution.current_step = step_id
        self._mark_in_progress(execution)
        return [(events.WORKFLOW_STEP_STARTED, self._step_payload(execution, step_id, actor))]

    def _complete(self, execution, workflow, graph, step_status, step, entry, *, actor, notes,
                  artifacts, **_):
        step_id = step["step_id"]
        if step.get("step_type") == "approval":
            raise PreconditionFailed(f"Step {step_id} is an approval step; use approve or reject",
                                     current_state=entry.get("status"))
        self._require_dependencies(graph, step_status, step_id, "complete")
        if entry.get("status") not in ("pending", "in_progress"):
            raise PreconditionFailed(f"Step {step_id} is {entry.get('status')}",
                                     current_state=entry.get("status"))
        if step.get("requires_valid_filing") or step.get("step_type") == "filing":
            self._require_valid_filing(execution, step_id, actor)

        self._finish_step(entry, step_id, actor, notes, artifacts)
        self._mark_in_progress(execution)
        emitted = [(events.WORKFLOW_STEP_COMPLETED, self._step_payload(execution, step_id, actor))]
        return emitted + self._advance(execution, workflow, graph, step_status)

    def _require_valid_filing(self, execution, step_id, actor):
        if not execution.filing_id:
            raise PreconditionFailed(f"Step {step_id} needs a filing attached to the execution",
                                     current_state=execution.status)
        result = self.lifecycle.validate(execution.filing_id, actor=actor)
        if not result.is_valid:
            raise ValidationFailed(result, filing_id=execution.filing_id)

    def _finish_step(self, entry, step_id, actor, notes, artifacts):
        now = _utcnow().isoformat()
        self._set_step(entry, step_id, "completed")
        entry["started_at"] = entry.get("started_at") or now
        entry["completed_at"] = now
        entry["completed_by"] = actor
        if notes is not None:
            entry["notes"] = notes
        if artifacts:
            merged = dict(entry.get("artifacts") or {})
            merged.update(artifacts if isinstance(artifacts, dict) else {"documents": list(artifacts)})
            entry["artifacts"] = merged

    def _approval_chain(self, workflow):
        config = workflow.approval_workflow or {}
        if not config.get("enabled"):
            return [], False
        approvers = sorted(config.get("approvers") or [], key=lambda a: a.get("sequence", 0))
        return approvers, bool(config.get("parallel_approval"))

    def _approve(self, execution, workflow, graph, step_status, step, entry, *, actor, notes,
                 role=None, **_):
        step_id = step["step_id"]
        if step.get("step_type") != "approval":
            raise PreconditionFailed(f"Step {step_id} is not an approval step",
                                     current_state=entry.get("status"))
        self._require_dependencies(graph, step_status, step_id, "approve")
        if entry.get("status") not in ("pending", "in_progress"):
            raise PreconditionFailed(f"Step {step_id} is {entry.get('status')}",
                                     current_state=entry.get("status"))

        approvers, parallel = self._approval_chain(workflow)
        approvals = list(entry.get("approvals") or [])
        approved_roles = {a["role"] for a in approvals}
        required = [a["role"] for a in approvers if a.get("required", True)]
        outstanding = [r for r in required if r not in approved_roles]

        if approvers:
            roles = [a["role"] for a in approvers]
            if role is None:
                role = outstanding[0] if outstanding else None
            if role not in roles:
                raise ValidationError(f"{role!r} is not an approver for this workflow",
                                      details={"approvers": roles})
            if role in approved_roles:
                raise PreconditionFailed(f"Step {step_id} already approved by {role}",
                                         current_state=entry.get("status"))
            if not parallel and outstanding and role in required and role != outstanding[0]:
                raise PreconditionFailed(
                    f"Step {step_id} is awaiting approval from {outstanding[0]}",
                    current_state=entry.get("status"),
                )
        else:
            role = role or step.get("assigned_role")

        now = _utcnow().isoformat()
        approvals.append({"role": role, "approved_by": actor, "approved_at": now, "notes": notes})
        entry["approvals"] = approvals
        if entry.get("status") == "pending":
            self._set_step(entry, step_id, "in_progress")
            entry["started_at"] = now
        self._mark_in_progress(execution)
        execution.current_step = step_id

        remaining = [r for r in required if r not in {a["role"] for a in approvals}]
        if remaining:
            return [(events.WORKFLOW_STEP_STARTED, self._step_payload(execution, step_id, actor))]

        self._finish_step(entry, step_id, actor, notes, None)
        emitted = [(events.WORKFLOW_STEP_COMPLETED, self._step_payload(execution, step_id, actor))]
        return emitted + self._advance(execution, workflow, graph, step_status)

    def _reject(self, execution, workflow, graph, step_status, step, entry, *, actor, notes, **_):
        step_id = step["step_id"]
        if step.get("step_type") != "approval":
            raise PreconditionFailed(f"Step {step_id} is not an approval step",
                                     current_state=entry.get("status"))
        self._require_dependencies(graph, step_status, step_id, "reject")
        self._set_step(entry, step_id, "failed")
        now = _utcnow()
        reason = notes or "Step rejected"
        entry["completed_at"] = now.isoformat()
        entry["notes"] = reason
        entry["rejected_by"] = actor
        execution.current_step = step_id
        self._transition(execution, "failed")
        execution.actual_completion_date = now
        self._append_issue(execution, step_id, "high", f"Rejected by {actor}: {reason}",
                           actor=actor, kind="rejected")
        return [
            (events.WORKFLOW_STEP_FAILED, self._step_payload(execution, step_id, actor)),
            (events.WORKFLOW_FAILED, {
                "execution_id": execution.id,
                "workflow_id": execution.workflow_id,
                "tenant_id": execution.tenant_id,
                "failed_step_id": step_id,
                "reason": reason,
            }),
        ]

    def _skip(self, execution, workflow, graph, step_status, step, entry, *, actor, notes, **_):
        step_id = step["step_id"]
        if step.get("step_type") == "approval":
            raise PreconditionFailed(f"Approval step {step_id} cannot be skipped",
                                     current_state=entry.get("status"))
        if entry.get("status") != "pending":
            raise PreconditionFailed(f"Only pending steps can be skipped ({step_id} is {entry.get('status')})",
                                     current_state=entry.get("status"))
        self._set_step(entry, step_id, "skipped")
        entry["completed_at"] = _utcnow().isoformat()
        entry["notes"] = notes or f"Skipped by {actor}"
        self._mark_in_progress(execution)
        return self._advance(execution, workflow, graph, step_status)

    # ── Advance ───────────────────────────────────────────────────────────

    def _eligible(self, graph, step_status):
        return [
            sid for sid in graph.order
            if step_status[sid]["status"] == "pending"
            and graph.dependencies_satisfied(sid, step_status, SATISFIED_STEP_STATUSES)
        ]

    def _advance(self, execution, workflow, graph, step_status):
        """Run eligible automated steps until none remain; then settle current_step and completion."""
        emitted = []
        attempted = set()
        while True:
            runnable = [sid for sid in self._eligible(graph, step_status)
                        if is_automated(graph.steps[sid]) and sid not in attempted]
            if not runnable:
                break
            sid = runnable[0]
            attempted.add(sid)
            emitted += self._run_automated(execution, workflow, graph.steps[sid], step_status)

        eligible = self._eligible(graph, step_status)
        if eligible:
            execution.current_step = eligible[0]
        elif execution.current_step is None and graph.order:
            execution.current_step = graph.order[0]

        statuses = [step_status[sid]["status"] for sid in graph.order]
        if statuses and all(s in SATISFIED_STEP_STATUSES for s in statuses):
            self._transition(execution, "completed")
            execution.actual_completion_date = _utcnow()
            execution.current_step = None
            emitted.append((events.WORKFLOW_COMPLETED, {
                "execution_id": execution.id,
                "workflow_id": execution.workflow_id,
                "tenant_id": execution.tenant_id,
            }))
        return emitted

    def _run_automated(self, execution, workflow, step, step_status):
        step_id = step["step_id"]
        action = step["automated_action"]
        entry = step_status[step_id]
        self._set_step(entry, step_id, "in_progress")
        entry["started_at"] = _utcnow().isoformat()
        entry["assigned_to"] = "system"
        self._mark_in_progress(execution)

        context = StepContext(execution=execution, workflow=workflow, step=step,
                              lifecycle=self.lifecycle, actor="system")
        result = self.executors.execute(action["action_type"], context, action.get("parameters"))

        entry["completed_at"] = _utcnow().isoformat()
        entry["artifacts"] = dict(result.artifacts or {})
        if result.success:
            self._set_step(entry, step_id, "completed")
            entry["completed_by"] = "system"
            return [(events.WORKFLOW_STEP_COMPLETED, self._step_payload(execution, step_id, "system"))]

        self._set_step(entry, step_id, "failed")
        entry["notes"] = f"Automated execution failed: {result.error}"
        self._append_issue(execution, step_id, "high", entry["notes"], actor="system",
                           kind=EXECUTOR_FAILED)
        logger.warning("Automated step %s (%s) failed: %s", step_id, action["action_type"], result.error,
                       extra={"execution_id": execution.id, "step_id": step_id})
        payload = self._step_payload(execution, step_id, "system")
        payload["error"] = result.error
        return [(events.WORKFLOW_STEP_FAILED, payload)]

    # ── Issues ────────────────────────────────────────────────────────────

    def _append_issue(self, execution, step_id, severity, description, actor=None, kind=None):
        issue = {
            "issue_id": new_id(),
            "step_id": step_id,
            "severity": severity,
            "kind": kind,
            "description": description,
            "reported_by": actor,
            "reported_at": _utcnow().isoformat(),
            "resolution": None,
            "resolved_by": None,
            "resolved_at": None,
        }
        execution.issues = list(execution.issues or []) + [issue]
        return issue

    def record_issue(self, execution_id, step_id, severity, description, actor=None, tenant_id=None):
        if severity not in ISSUE_SEVERITIES:
            raise ValidationError(f"Invalid severity: {severity!r}",
                                  details={"severity": sorted(ISSUE_SEVERITIES)})
        if not description:
            raise ValidationError("Issue description is required")
        with _execution_locks.hold(execution_id):
            execution = self.executions.get(execution_id, tenant_id=tenant_id)
            if step_id is not None:
                workflow = self.workflows.get(execution.workflow_id)
                if workflow.get_step(step_id) is None:
                    raise NotFoundError(resource="WorkflowStep", resource_id=step_id)
            issue = self._append_issue(execution, step_id, severity, description, actor=actor,
                                       kind="manual")
            self.executions.save(execution)
        return issue

    def resolve_issue(self, execution_id, issue_id, resolution, actor, tenant_id=None):
        with _execution_locks.hold(execution_id):
            execution = self.executions.get(execution_id, tenant_id=tenant_id)
            issues = copy.deepcopy(execution.issues or [])
            issue = next((i for i in issues if i.get("issue_id") == issue_id), None)
            if issue is None:
                raise NotFoundError(resource="WorkflowIssue", resource_id=issue_id)
            if issue.get("resolved_at"):
                raise PreconditionFailed(f"Issue {issue_id} is already resolved", current_state="resolved")
            issue["resolution"] = resolution
            issue["resolved_by"] = actor
            issue["resolved_at"] = _utcnow().isoformat()
            execution.issues = issues
            self.executions.save(execution)
        return issue

    # ── Filing link & queries ─────────────────────────────────────────────

    def attach_filing(self, execution_id, filing_id, tenant_id=None):
        with _execution_locks.hold(execution_id):
            execution = self.executions.get(execution_id, tenant_id=tenant_id)
            if not execution.is_active:
                raise PreconditionFailed(f"Execution {execution.id} is {execution.status}",
                                         current_state=execution.status)
            self.lifecycle.get(filing_id, tenant_id=execution.tenant_id)
            with _filing_link(filing_id):
                self._require_no_active_execution(filing_id, exclude_id=execution.id)
                execution.filing_id = filing_id
                self.executions.save(execution)
        logger.info("Execution %s attached to filing %s", execution.id, filing_id,
                    extra={"execution_id": execution.id, "filing_id": filing_id})
        return execution

    def get_execution(self, execution_id, tenant_id=None):
        return self.executions.get(execution_id, tenant_id=tenant_id)

    def list_executions(self, workflow_id, tenant_id=None):
        workflow = self.workflows.get(workflow_id, tenant_id=tenant_id)
        return self.executions.list_for_workflow(workflow.id)

    # ── Internals ─────────────────────────────────────────────────────────

    def _transition(self, execution, new_status):
        if not validate_execution_transition(execution.status, new_status):
            raise PreconditionFailed(
                f"Execution {execution.id} cannot move from {execution.status} to {new_status}",
                current_state=execution.status,
            )
        execution.status = new_status

    def _store(self, execution, workflow, step_status):
        execution.step_status = step_status
        execution.metrics = compute_metrics(
            workflow.steps or [], step_status,
            initiated_at=execution.initiated_at,
            completed_at=execution.actual_completion_date,
        )
        self.executions.save(execution)

    def _step_payload(self, execution, step_id, actor):
        return {
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "tenant_id": execution.tenant_id,
            "step_id": step_id,
            "actor": actor,
        }

    def _emit(self, emitted):
        for event_type, payload in emitted:
            self.publisher.publish(event_type, payload)
