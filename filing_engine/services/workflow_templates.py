"""
Regulatory Filing Platform
Workflow Template Registry.

Built-in templates are reusable step graphs for producing a filing. A tenant
instantiates one with create_from_template() (or registers a fully custom
workflow with register_workflow()); either way the step graph is checked
once here:

    - step ids are unique
    - every dependency names an existing step
    - the dependency graph is acyclic (Kahn topological sort)

The orchestrator re-runs build_step_graph() at initiation time.

Usage:
    graph = build_step_graph(steps)
    graph.order                 # ['data-collection', 'form-preparation', ...]
    graph.dependents['data-collection']
"""

import copy
import heapq
import logging
from dataclasses import dataclass, field

from filing_engine.core.exceptions import NotFoundError, ValidationError
from filing_engine.models.workflow import (
    AUTOMATION_LEVELS,
    SCHEDULE_FREQUENCIES,
    STEP_TYPES,
    FilingWorkflow,
)
from filing_engine.repositories import SqlAlchemyWorkflowRepository
from filing_engine.services.step_executors import parse_action_type
from filing_engine.services.validation import FormType, parse_form_type, parse_jurisdiction

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
#  Step graph
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class StepGraph:
    """Materialized dependency DAG of a workflow's steps."""
    steps: dict[str, dict]
    dependencies: dict[str, list[str]]
    dependents: dict[str, list[str]]
    order: list[str] = field(default_factory=list)

    def roots(self):
        return [sid for sid in self.order if not self.dependencies[sid]]

    def dependencies_satisfied(self, step_id, step_status, satisfied_statuses):
        return all(
            (step_status.get(dep) or {}).get("status") in satisfied_statuses
            for dep in self.dependencies[step_id]
        )


def build_step_graph(steps):
    """
    Build the adjacency lists and a deterministic topological order.

    Ties are broken by declaration order, so a linear template keeps its
    authored order.

    Raises:
        ValidationError: duplicate step ids, unknown dependencies, or a cycle.
    """
    by_id = {}
    declared = []
    for step in steps or []:
        step_id = (step or {}).get("step_id")
        if not step_id:
            raise ValidationError("Every workflow step needs a step_id", details={"step": step})
        if step_id in by_id:
            raise ValidationError(f"Duplicate step id: {step_id}", details={"step_id": step_id})
        by_id[step_id] = step
        declared.append(step_id)

    dependencies = {}
    dependents = {sid: [] for sid in declared}
    for sid in declared:
        deps = list(by_id[sid].get("dependencies") or [])
        for dep in deps:
            if dep not in by_id:
                raise ValidationError(
                    f"Invalid dependency: {dep} not found in workflow steps",
                    details={"step_id": sid, "dependency": dep},
                )
        dependencies[sid] = deps
        for dep in deps:
            dependents[dep].append(sid)

    position = {sid: i for i, sid in enumerate(declared)}
    in_degree = {sid: len(set(dependencies[sid])) for sid in declared}
    ready = [position[sid] for sid in declared if in_degree[sid] == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        sid = declared[heapq.heappop(ready)]
        order.append(sid)
        for child in dict.fromkeys(dependents[sid]):
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, position[child])

    if len(order) != len(declared):
        cyclic = sorted(sid for sid in declared if sid not in order)
        raise ValidationError("Workflow step dependencies contain a cycle",
                              details={"steps": cyclic})

    return StepGraph(steps=by_id, dependencies=dependencies, dependents=dependents, order=order)


# ═════════════════════════════════════════════════════════════════════════════
#  Built-in templates
# ═════════════════════════════════════════════════════════════════════════════


def _step(step_id, name, step_type, role, hours, dependencies=(), action=None,
          enabled=True, parameters=None, documents=(), requires_valid_filing=None):
    step = {
        "step_id": step_id,
        "step_name": name,
        "step_type": step_type,
        "assigned_role": role,
        "estimated_duration": hours,
        "dependencies": list(dependencies),
        "required_documents": list(documents),
        "requires_valid_filing": step_type == "filing" if requires_valid_filing is None
        else requires_valid_filing,
    }
    if action:
        step["automated_action"] = {
            "enabled": enabled,
            "action_type": action,
            "parameters": dict(parameters or {}),
        }
    return step


_PORTFOLIO_DB_SOURCE = {
    "source_type": "database",
    "source_identifier": "portfolio_db",
    "data_mapping": {"aum": "total_assets_under_management"},
    "validation_rules": ["aum > 0", "client_count > 0"],
}

WORKFLOW_TEMPLATES = {
    "form-adv-template": {
        "id": "form-adv-template",
        "name": "Form ADV Annual Filing",
        "description": "Complete workflow for Form ADV annual filing with SEC",
        "form_type": FormType.FORM_ADV.value,
        "jurisdiction": "SEC",
        "category": "regulatory_filing",
        "complexity": "moderate",
        "estimated_setup_time": 4,
        "frequency": "annual",
        "steps": [
            _step("data-collection", "Data Collection", "data_collection", "compliance_analyst", 8,
                  action="extract_portfolio_data",
                  parameters={"source": "portfolio_management_system"},
                  documents=["AUM calculations", "Client list", "Fee schedule"]),
            _step("form-preparation", "Form Preparation", "validation", "compliance_officer", 16,
                  dependencies=["data-collection"], action="validate_form_data", enabled=False,
                  documents=["Draft Form ADV"]),
            _step("review-approval", "Review and Approval", "approval", "chief_compliance_officer", 4,
                  dependencies=["form-preparation"],
                  documents=["Completed Form ADV", "Supporting documentation"]),
            _step("sec-filing", "SEC Filing", "filing", "compliance_officer", 2,
                  dependencies=["review-approval"], action="submit_to_regulator",
                  parameters={"system": "edgar"}, documents=["Approved Form ADV"]),
        ],
        "data_sources": [_PORTFOLIO_DB_SOURCE],
        "best_practices": [
            "Start data collection 60 days before due date",
            "Maintain supporting documentation for all disclosures",
            "Review fee schedule updates annually",
        ],
    },
    "form-13f-template": {
        "id": "form-13f-template",
        "name": "Form 13F Quarterly Holdings Report",
        "description": "Quarterly 13F holdings report for institutional investment managers",
        "form_type": FormType.FORM_13F.value,
        "jurisdiction": "SEC",
        "category": "regulatory_filing",
        "complexity": "moderate",
        "estimated_setup_time": 3,
        "frequency": "quarterly",
        "steps": [
            _step("holdings-extract", "Holdings Extract", "data_collection", "operations_analyst", 4,
                  action="extract_portfolio_data", parameters={"source": "custodian_positions"},
                  documents=["Quarter-end positions"]),
            _step("cusip-validation", "CUSIP and Value Validation", "validation", "compliance_analyst", 6,
                  dependencies=["holdings-extract"], action="validate_form_data"),
            _step("quality-checks", "Quality Checks", "review", "compliance_analyst", 2,
                  dependencies=["cusip-validation"], action="run_quality_checks"),
            _step("cco-approval", "CCO Approval", "approval", "chief_compliance_officer", 2,
                  dependencies=["quality-checks"], documents=["Draft information table"]),
            _step("edgar-filing", "EDGAR Filing", "filing", "compliance_officer", 1,
                  dependencies=["cco-approval"], action="submit_to_regulator",
                  parameters={"system": "edgar"}),
            _step("filing-confirmation", "Filing Confirmation", "confirmation", "compliance_officer", 1,
                  dependencies=["edgar-filing"], action="confirm_filing"),
        ],
        "data_sources": [{
            "source_type": "api",
            "source_identifier": "custodian_positions",
            "data_mapping": {"market_value": "value", "cusip": "cusip"},
            "validation_rules": ["cusip matches ^[0-9A-Z]{9}$"],
        }],
        "best_practices": [
            "Reconcile positions to the custodian before the 45-day deadline",
            "Review confidential treatment requests each quarter",
        ],
    },
    "form-pf-template": {
        "id": "form-pf-template",
        "name": "Form PF Private Fund Report",
        "description": "Form PF filing for private fund advisers, annual or quarterly by fund size",
        "form_type": FormType.FORM_PF.value,
        "jurisdiction": "SEC",
        "category": "regulatory_filing",
        "complexity": "complex",
        "estimated_setup_time": 8,
        "frequency": "annual",
        "steps": [
            _step("fund-data-collection", "Fund Data Collection", "data_collection", "fund_accountant", 16,
                  action="extract_portfolio_data", parameters={"source": "fund_accounting"},
                  documents=["Fund NAV statements", "Monthly returns"]),
            _step("risk-metrics", "Liquidity and Risk Metrics", "data_collection", "risk_manager", 8,
                  documents=["Liquidity profile", "Counterparty exposure"]),
            _step("form-validation", "Form Validation", "validation", "compliance_officer", 8,
                  dependencies=["fund-data-collection", "risk-metrics"], action="validate_form_data"),
            _step("cco-approval", "CCO Approval", "approval", "chief_compliance_officer", 4,
                  dependencies=["form-validation"]),
            _step("pfrd-filing", "PFRD Filing", "filing", "compliance_officer", 2,
                  dependencies=["cco-approval"], action="submit_to_regulator",
                  parameters={"system": "pfrd"}),
        ],
        "data_sources": [_PORTFOLIO_DB_SOURCE],
        "best_practices": [
            "Confirm large-fund status at each quarter end",
            "Align liquidity buckets with the risk system",
        ],
    },
    "best-execution-template": {
        "id": "best-execution-template",
        "name": "Best Execution Quarterly Review",
        "description": "Quarterly venue analysis and best execution report",
        "form_type": FormType.BEST_EXECUTION.value,
        "jurisdiction": "SEC",
        "category": "compliance_reporting",
        "complexity": "simple",
        "estimated_setup_time": 2,
        "frequency": "quarterly",
        "steps": [
            _step("execution-data", "Execution Data Extract", "data_collection", "trading_operations", 4,
                  action="extract_portfolio_data", parameters={"source": "order_management_system"}),
            _step("venue-analysis", "Venue Analysis", "validation", "best_execution_committee", 8,
                  dependencies=["execution-data"], action="validate_form_data"),
            _step("committee-approval", "Committee Approval", "approval", "chief_compliance_officer", 2,
                  dependencies=["venue-analysis"]),
            _step("stakeholder-notice", "Notify Stakeholders", "confirmation", "compliance_officer", 1,
                  dependencies=["committee-approval"], action="notify_stakeholders",
                  parameters={"recipients": ["trading_desk", "portfolio_manager"],
                              "title": "Best execution review approved"}),
        ],
        "data_sources": [{
            "source_type": "database",
            "source_identifier": "oms_executions",
            "data_mapping": {"venue": "venue_id", "notional": "total_notional"},
            "validation_rules": ["fill_rate between 0 and 100"],
        }],
        "best_practices": [
            "Document the venue selection process every review",
            "Escalate venue concentration above the HHI threshold",
        ],
    },
}

DEFAULT_SCHEDULE = {
    "frequency": "quarterly",
    "due_date": {"days_after_period_end": 45},
    "reminder_schedule": [
        {"days_before_due": 30, "recipient_roles": ["compliance_officer"],
         "notification_method": "email"},
        {"days_before_due": 7, "recipient_roles": ["compliance_officer", "portfolio_manager"],
         "notification_method": "both"},
    ],
}

DEFAULT_APPROVAL_WORKFLOW = {
    "enabled": True,
    "approvers": [
        {"role": "compliance_officer", "sequence": 1, "required": True},
        {"role": "chief_compliance_officer", "sequence": 2, "required": True},
    ],
    "parallel_approval": False,
}

DEFAULT_QUALITY_CHECKS = [
    {"check_type": "completeness", "description": "Verify all required fields are populated",
     "automated_check": True, "criticality_level": "critical"},
    {"check_type": "accuracy", "description": "Validate data accuracy against source systems",
     "automated_check": True, "criticality_level": "high"},
]


# ═════════════════════════════════════════════════════════════════════════════
#  Registry service
# ═════════════════════════════════════════════════════════════════════════════


def _validate_workflow_config(config):
    """Structural checks shared by register_workflow and create_from_template."""
    name = (config.get("name") or "").strip()
    if not name:
        raise ValidationError("Workflow name is required", details={"name": config.get("name")})
    steps = config.get("steps") or []
    if not steps:
        raise ValidationError("Workflow must have at least one step")

    for step in steps:
        if step.get("step_type") not in STEP_TYPES:
            raise ValidationError(
                f"Invalid step type {step.get('step_type')!r} for step {step.get('step_id')}",
                details={"step_type": sorted(STEP_TYPES)},
            )
        action = step.get("automated_action")
        if action and action.get("action_type"):
            parsed = parse_action_type(action["action_type"])
            action["action_type"] = parsed.value
        try:
            if float(step.get("estimated_duration") or 0) < 0:
                raise ValueError
        except (TypeError, ValueError):
            raise ValidationError(
                f"estimated_duration must be a non-negative number for step {step.get('step_id')}",
            ) from None

    if config.get("automation_level", "semi_automated") not in AUTOMATION_LEVELS:
        raise ValidationError("Invalid automation_level", details={"automation_level": sorted(AUTOMATION_LEVELS)})

    schedule = config.get("schedule") or {}
    if schedule.get("frequency") and schedule["frequency"] not in SCHEDULE_FREQUENCIES:
        raise ValidationError("Invalid schedule frequency",
                              details={"frequency": sorted(SCHEDULE_FREQUENCIES)})
    days = (schedule.get("due_date") or {}).get("days_after_period_end")
    if days is not None and (not isinstance(days, int) or days < 0):
        raise ValidationError("days_after_period_end must be a non-negative integer")
    for reminder in schedule.get("reminder_schedule") or []:
        if not isinstance(reminder.get("days_before_due"), int) or reminder["days_before_due"] < 0:
            raise ValidationError("Reminder days_before_due must be a non-negative integer",
                                  details={"reminder": reminder})
        if not reminder.get("recipient_roles"):
            raise ValidationError("Reminder needs at least one recipient role", details={"reminder": reminder})

    build_step_graph(steps)


class WorkflowTemplateRegistry:
    """Built-in templates plus tenant-owned workflow definitions."""

    def __init__(self, repository=None, templates=None):
        self.repository = repository or SqlAlchemyWorkflowRepository()
        self.templates = templates if templates is not None else WORKFLOW_TEMPLATES

    # ── Templates ─────────────────────────────────────────────────────────

    def list_templates(self, form_type=None, category=None):
        templates = list(self.templates.values())
        if form_type:
            form = parse_form_type(form_type).value
            templates = [t for t in templates if t["form_type"] == form]
        if category:
            templates = [t for t in templates if t.get("category") == category]
        return [copy.deepcopy(t) for t in templates]

    def get_template(self, template_id):
        template = self.templates.get(template_id)
        if template is None:
            raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
        return copy.deepcopy(template)

    # ── Workflows ─────────────────────────────────────────────────────────

    def register_workflow(self, tenant_id, config, created_by=None):
        """Validate a workflow definition (including the DAG check) and persist it."""
        config = copy.deepcopy(config or {})
        form = parse_form_type(config.get("form_type"))
        region = parse_jurisdiction(config.get("jurisdiction") or "SEC")
        _validate_workflow_config(config)

        workflow = FilingWorkflow(
            tenant_id=tenant_id,
            name=config["name"].strip(),
            description=config.get("description", ""),
            form_type=form.value,
            jurisdiction=region.value,
            template_id=config.get("template_id"),
            is_active=config.get("is_active", True),
            automation_level=config.get("automation_level", "semi_automated"),
            schedule=config.get("schedule") or {},
            steps=config["steps"],
            approval_workflow=config.get("approval_workflow") or {},
            data_sources=config.get("data_sources") or [],
            quality_checks=config.get("quality_checks") or [],
            created_by=created_by,
        )
        self.repository.save(workflow)
        logger.info("Workflow %s registered: %s (%s, %d steps)", workflow.id, workflow.name,
                    workflow.form_type, len(workflow.steps),
                    extra={"tenant_id": tenant_id, "workflow_id": workflow.id})
        return workflow

    def create_from_template(self, tenant_id, template_id, name, customizations=None, created_by=None):
        template = self.get_template(template_id)
        config = {
            "name": name,
            "description": template["description"],
            "form_type": template["form_type"],
            "jurisdiction": template["jurisdiction"],
            "template_id": template["id"],
            "is_active": True,
            "automation_level": "semi_automated",
            "schedule": copy.deepcopy(DEFAULT_SCHEDULE),
            "steps": template["steps"],
            "approval_workflow": copy.deepcopy(DEFAULT_APPROVAL_WORKFLOW),
            "data_sources": template["data_sources"],
            "quality_checks": copy.deepcopy(DEFAULT_QUALITY_CHECKS),
        }
        config.update(customizations or {})
        return self.register_workflow(tenant_id, config, created_by=created_by)

    def get_workflow(self, workflow_id, tenant_id=None):
        return self.repository.get(workflow_id, tenant_id=tenant_id)

    def list_workflows(self, tenant_id, active_only=False):
        return self.repository.list_by_tenant(tenant_id, active_only=active_only)

    def set_active(self, workflow_id, is_active, tenant_id=None):
        workflow = self.repository.get(workflow_id, tenant_id=tenant_id)
        workflow.is_active = bool(is_active)
        self.repository.save(workflow)
        logger.info("Workflow %s %s", workflow.id, "activated" if workflow.is_active else "deactivated",
                    extra={"workflow_id": workflow.id})
        return workflow
