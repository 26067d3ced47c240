"""
Regulatory Filing Platform
Automated Step Executors.

Each automated workflow step names an ActionType; the orchestrator resolves
it through StepExecutorRegistry and runs the executor synchronously.

Executors:
    - extract_portfolio_data: snapshot of the source data behind the filing
    - validate_form_data:     run the filing's rule set
    - run_quality_checks:     evaluate the workflow's automated quality checks
    - submit_to_regulator:    submit the filing through FilingLifecycle
    - confirm_filing:         verify a filed filing carries a confirmation
    - notify_stakeholders:    in-app notification to the step's recipients

Contract: execute() always returns an ExecutorResult. An executor that
raises is reported as a failed result with the exception text as error.

Usage:
    @step_executors.register(ActionType.RUN_QUALITY_CHECKS)
    def run_quality_checks(context, parameters):
        return ExecutorResult(success=True, artifacts={...})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from filing_engine.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Closed set of automated step actions."""
    EXTRACT_PORTFOLIO_DATA = "extract_portfolio_data"
    VALIDATE_FORM_DATA = "validate_form_data"
    RUN_QUALITY_CHECKS = "run_quality_checks"
    SUBMIT_TO_REGULATOR = "submit_to_regulator"
    CONFIRM_FILING = "confirm_filing"
    NOTIFY_STAKEHOLDERS = "notify_stakeholders"


# Names used by older template definitions
_ACTION_ALIASES = {
    "submit_to_sec": ActionType.SUBMIT_TO_REGULATOR,
    "submit_filing": ActionType.SUBMIT_TO_REGULATOR,
}


def parse_action_type(value) -> ActionType:
    """Coerce a string to ActionType, raising ValidationError for unknown actions."""
    if isinstance(value, ActionType):
        return value
    if value in _ACTION_ALIASES:
        return _ACTION_ALIASES[value]
    try:
        return ActionType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown automated action type: {value!r}",
            details={"action_type": sorted(a.value for a in ActionType)},
        ) from None


@dataclass
class ExecutorResult:
    success: bool
    artifacts: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class StepContext:
    """What an executor may look at. ``lifecycle`` is the FilingLifecycle in use."""
    execution: Any
    workflow: Any
    step: dict
    lifecycle: Any
    actor: str = "system"

    @property
    def filing_id(self):
        return self.execution.filing_id


class StepExecutorRegistry:
    """ActionType → executor callable."""

    def __init__(self) -> None:
        self._executors: dict[ActionType, Callable[[StepContext, dict], ExecutorResult]] = {}

    def register(self, action_type):
        """Decorator to register an executor for an action type."""
        action = parse_action_type(action_type)

        def decorator(fn):
            self._executors[action] = fn
            return fn
        return decorator

    def is_registered(self, action_type) -> bool:
        try:
            return parse_action_type(action_type) in self._executors
        except ValidationError:
            return False

    def registered(self) -> list[str]:
        return sorted(a.value for a in self._executors)

    def execute(self, action_type, context: StepContext, parameters: dict | None = None) -> ExecutorResult:
        try:
            action = parse_action_type(action_type)
        except ValidationError as exc:
            return ExecutorResult(success=False, error=str(exc))
        fn = self._executors.get(action)
        if fn is None:
            return ExecutorResult(success=False, error=f"No executor registered for {action.value}")
        try:
            result = fn(context, dict(parameters or {}))
        except Exception as exc:
            logger.warning("Executor %s raised: %s", action.value, exc,
                           extra={"execution_id": context.execution.id,
                                  "step_id": context.step.get("step_id")})
            return ExecutorResult(success=False, error=str(exc) or exc.__class__.__name__)
        if not isinstance(result, ExecutorResult):
            return ExecutorResult(success=False, error=f"Executor {action.value} returned no result")
        return result


step_executors = StepExecutorRegistry()


def _require_filing(context):
    if not context.filing_id:
        raise ValidationError("No filing is attached to this workflow execution")
    return context.lifecycle.get(context.filing_id)


# ═══════════════════════════════════════════════════════════════════════════
#  Built-in executors
# ═══════════════════════════════════════════════════════════════════════════


@step_executors.register(ActionType.EXTRACT_PORTFOLIO_DATA)
def extract_portfolio_data(context, parameters):
    """Record which source the data came from and what the filing holds."""
    artifacts = {
        "source": parameters.get("source", "portfolio_management_system"),
        "data_sources": [s.get("source_identifier") for s in context.workflow.data_sources or []],
    }
    if context.filing_id:
        filing = context.lifecycle.get(context.filing_id)
        form_data = filing.form_data or {}
        artifacts["sections"] = sorted(form_data.keys())
        artifacts["record_counts"] = {
            key: len(value) for key, value in form_data.items() if isinstance(value, list)
        }
    return ExecutorResult(success=True, artifacts=artifacts)


@step_executors.register(ActionType.VALIDATE_FORM_DATA)
def validate_form_data(context, parameters):
    filing = _require_filing(context)
    result = context.lifecycle.validate(filing.id, actor=context.actor)
    artifacts = {
        "is_valid": result.is_valid,
        "completion_percentage": result.completion_percentage,
        "errors": len(result.errors),
        "warnings": len(result.warnings),
    }
    if not result.is_valid:
        return ExecutorResult(success=False, artifacts=artifacts,
                              error=f"Form data has {len(result.errors)} validation error(s)")
    return ExecutorResult(success=True, artifacts=artifacts)


@step_executors.register(ActionType.RUN_QUALITY_CHECKS)
def run_quality_checks(context, parameters):
    """
    Automated quality checks against the filing's latest validation.

    completeness → completion is 100 %; accuracy/consistency → no errors;
    compliance → no regulator-submission failure recorded. A failing check
    with criticality high or critical fails the step.
    """
    filing = _require_filing(context)
    validation = filing.last_validation or context.lifecycle.validate(filing.id).to_dict()
    outcomes = []
    blocking = []
    for check in context.workflow.quality_checks or []:
        if not check.get("automated_check", True):
            continue
        kind = check.get("check_type")
        if kind == "completeness":
            passed = validation.get("completion_percentage", 0) >= 100
        elif kind in ("accuracy", "consistency"):
            passed = not validation.get("errors")
        elif kind == "compliance":
            passed = not any(c.get("check_type") == "regulator_submission" and c.get("status") == "failed"
                             for c in filing.compliance_checks or [])
        else:
            continue
        outcomes.append({"check_type": kind, "passed": passed,
                         "criticality_level": check.get("criticality_level", "medium")})
        if not passed and check.get("criticality_level") in ("high", "critical"):
            blocking.append(kind)

    artifacts = {"checks": outcomes}
    if blocking:
        return ExecutorResult(success=False, artifacts=artifacts,
                              error=f"Quality checks failed: {', '.join(blocking)}")
    return ExecutorResult(success=True, artifacts=artifacts)


@step_executors.register(ActionType.SUBMIT_TO_REGULATOR)
def submit_to_regulator(context, parameters):
    filing = _require_filing(context)
    filing = context.lifecycle.submit(
        filing.id,
        submitted_by=context.actor,
        options={
            "test_filing": bool(parameters.get("test_filing", False)),
            "expedited_processing": bool(parameters.get("expedited_processing", False)),
        },
    )
    artifacts = {"status": filing.status, "confirmation": filing.confirmation}
    if filing.status != "filed":
        checks = [c for c in filing.compliance_checks or [] if c.get("check_type") == "regulator_submission"]
        reason = checks[-1]["message"] if checks else "Submission rejected"
        return ExecutorResult(success=False, artifacts=artifacts, error=reason)
    return ExecutorResult(success=True, artifacts=artifacts)


@step_executors.register(ActionType.CONFIRM_FILING)
def confirm_filing(context, parameters):
    filing = _require_filing(context)
    number = (filing.confirmation or {}).get("confirmation_number")
    if filing.status != "filed" or not number:
        return ExecutorResult(success=False,
                              error=f"Filing {filing.id} has no regulator confirmation (status {filing.status})")
    return ExecutorResult(success=True, artifacts={"confirmation_number": number})


@step_executors.register(ActionType.NOTIFY_STAKEHOLDERS)
def notify_stakeholders(context, parameters):
    from filing_engine.services.notification import NotificationService

    recipients = parameters.get("recipients") or [context.step.get("assigned_role") or "all"]
    notifications = NotificationService.broadcast(
        title=parameters.get("title") or f"{context.workflow.name}: {context.step.get('step_name')}",
        message=parameters.get("message", ""),
        category="workflow",
        tenant_id=context.execution.tenant_id,
        entity_type="workflow_execution",
        entity_id=context.execution.id,
        recipients=recipients,
        commit=False,
    )
    return ExecutorResult(success=True, artifacts={"notified": recipients,
                                                   "notifications": len(notifications)})
