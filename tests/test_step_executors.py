"""
Tests for the automated step executors.

Covers:
    - registry contract: execute() never raises
    - action-type parsing and legacy aliases
    - built-in executors against real filings
"""

from types import SimpleNamespace

import pytest

from filing_engine.core.exceptions import ValidationError
from filing_engine.models import db
from filing_engine.models.notification import Notification
from filing_engine.services.filing_lifecycle import FilingLifecycle
from filing_engine.services.step_executors import (
    ActionType,
    ExecutorResult,
    StepContext,
    StepExecutorRegistry,
    parse_action_type,
    step_executors,
)
from filing_engine.services.workflow_templates import DEFAULT_QUALITY_CHECKS


def _context(tenant, filing=None, step=None, **workflow):
    execution = SimpleNamespace(id="exec-1", tenant_id=tenant.id,
                                filing_id=filing.id if filing else None)
    workflow.setdefault("name", "Form ADV 2024")
    workflow.setdefault("data_sources", [])
    workflow.setdefault("quality_checks", DEFAULT_QUALITY_CHECKS)
    return StepContext(
        execution=execution,
        workflow=SimpleNamespace(**workflow),
        step=step or {"step_id": "s1", "step_name": "Notify", "assigned_role": "compliance_officer"},
        lifecycle=FilingLifecycle(),
    )


class TestActionTypes:
    def test_aliases(self):
        assert parse_action_type("submit_to_sec") is ActionType.SUBMIT_TO_REGULATOR
        assert parse_action_type("submit_filing") is ActionType.SUBMIT_TO_REGULATOR
        assert parse_action_type(ActionType.CONFIRM_FILING) is ActionType.CONFIRM_FILING

    def test_unknown(self):
        with pytest.raises(ValidationError):
            parse_action_type("launch_rocket")

    def test_builtins_registered(self):
        assert step_executors.registered() == sorted(a.value for a in ActionType)


class TestRegistry:
    def test_raising_executor_becomes_failed_result(self, default_tenant):
        registry = StepExecutorRegistry()

        @registry.register("run_quality_checks")
        def _boom(context, parameters):
            raise KeyError("missing")

        result = registry.execute("run_quality_checks", _context(default_tenant))
        assert result.success is False
        assert "missing" in result.error

    def test_unregistered_action(self, default_tenant):
        result = StepExecutorRegistry().execute("confirm_filing", _context(default_tenant))
        assert result.success is False
        assert "No executor registered" in result.error

    def test_unknown_action(self, default_tenant):
        result = StepExecutorRegistry().execute("launch_rocket", _context(default_tenant))
        assert result.success is False

    def test_non_result_return(self, default_tenant):
        registry = StepExecutorRegistry()
        registry.register("confirm_filing")(lambda context, parameters: {"ok": True})
        result = registry.execute("confirm_filing", _context(default_tenant))
        assert result.success is False

    def test_parameters_passed(self, default_tenant):
        registry = StepExecutorRegistry()
        registry.register("extract_portfolio_data")(
            lambda context, parameters: ExecutorResult(success=True, artifacts=parameters))
        result = registry.execute("extract_portfolio_data", _context(default_tenant), {"source": "oms"})
        assert result.artifacts == {"source": "oms"}
        assert registry.is_registered("extract_portfolio_data")
        assert not registry.is_registered("launch_rocket")


class TestBuiltinExecutors:
    def test_extract_without_filing(self, default_tenant):
        context = _context(default_tenant, data_sources=[{"source_identifier": "pms-main"}])
        result = step_executors.execute("extract_portfolio_data", context, {})
        assert result.success is True
        assert result.artifacts["data_sources"] == ["pms-main"]
        assert "sections" not in result.artifacts

    def test_extract_with_filing(self, default_tenant, f13_input):
        filing = FilingLifecycle().prepare(default_tenant.id, "form_13f", "SEC", "2024-03-31",
                                           f13_input, "analyst")
        result = step_executors.execute("extract_portfolio_data", _context(default_tenant, filing))
        assert result.artifacts["record_counts"]["holdings"] == 2

    def test_validate_needs_filing(self, default_tenant):
        result = step_executors.execute("validate_form_data", _context(default_tenant))
        assert result.success is False
        assert "No filing is attached" in result.error

    def test_validate_reports_errors(self, default_tenant, f13_input):
        f13_input["holdings"][0]["cusip"] = "BAD"
        filing = FilingLifecycle().prepare(default_tenant.id, "form_13f", "SEC", "2024-03-31",
                                           f13_input, "analyst")
        result = step_executors.execute("validate_form_data", _context(default_tenant, filing))
        assert result.success is False
        assert result.artifacts["is_valid"] is False
        assert result.artifacts["errors"] >= 1

    def test_quality_checks_pass_for_complete_filing(self, default_tenant, adv_input):
        filing = FilingLifecycle().prepare(default_tenant.id, "form_adv", "SEC", "2023-12-31",
                                           adv_input, "analyst")
        result = step_executors.execute("run_quality_checks", _context(default_tenant, filing))
        assert result.success is True
        assert [c["passed"] for c in result.artifacts["checks"]] == [True, True]

    def test_quality_checks_block_on_critical_failure(self, default_tenant, adv_input):
        del adv_input["fee_structure"]
        filing = FilingLifecycle().prepare(default_tenant.id, "form_adv", "SEC", "2023-12-31",
                                           adv_input, "analyst")
        result = step_executors.execute("run_quality_checks", _context(default_tenant, filing))
        assert result.success is False
        assert "completeness" in result.error

    def test_submit_then_confirm(self, default_tenant, adv_input):
        filing = FilingLifecycle().prepare(default_tenant.id, "form_adv", "SEC", "2023-12-31",
                                           adv_input, "analyst")
        context = _context(default_tenant, filing)

        confirm = step_executors.execute("confirm_filing", context)
        assert confirm.success is False

        submitted = step_executors.execute("submit_to_sec", context, {"test_filing": True})
        assert submitted.success is True
        assert submitted.artifacts["status"] == "filed"
        assert submitted.artifacts["confirmation"]["confirmation_number"].startswith("TEST-")

        confirm = step_executors.execute("confirm_filing", context)
        assert confirm.success is True

    def test_notify_stakeholders(self, default_tenant):
        result = step_executors.execute(
            "notify_stakeholders", _context(default_tenant),
            {"recipients": ["compliance_officer", "portfolio_manager"], "message": "Filed"})
        db.session.commit()

        assert result.artifacts == {"notified": ["compliance_officer", "portfolio_manager"],
                                    "notifications": 2}
        notes = Notification.query.filter_by(entity_id="exec-1").all()
        assert {n.recipient for n in notes} == {"compliance_officer", "portfolio_manager"}
        assert notes[0].title == "Form ADV 2024: Notify"

    def test_notify_defaults_to_step_role(self, default_tenant):
        result = step_executors.execute("notify_stakeholders", _context(default_tenant))
        assert result.artifacts["notified"] == ["compliance_officer"]
