"""
Tests for the filing lifecycle service.

Covers:
    - prepare(): draft status, due-date rules, frequency check, audit trail
    - validate(): derived draft/review status, review → draft regression
    - submit(): validation gate (gateway never called), threshold
      precondition (13F and best-execution minimum), sandbox acceptance,
      regulator rejection, gateway errors,
      concurrent submits of one filing reach the gateway once
    - filed immutability (service guard and model flush guard)
    - amend(): amendment chain linkage without mutating the original
    - attachments, tenant scoping, deadlines, holdings analysis
    - filing outcome notifications via the event publisher
"""

import threading
import time
from datetime import date
from unittest.mock import MagicMock

import pytest

from filing_engine.core.exceptions import (
    GATEWAY_REJECTED,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
    ValidationFailed,
)
from filing_engine.integrations.submission_gateway import SubmissionResult
from filing_engine.models import db
from filing_engine.models.notification import Notification
from filing_engine.services.filing_lifecycle import FilingLifecycle, content_type_for


def _actions(filing):
    return [e.action for e in filing.audit_entries]


def _prepare_13f(lifecycle, tenant, data, period=date(2024, 3, 31)):
    return lifecycle.prepare(tenant.id, "form_13f", "SEC", period, data, prepared_by="analyst")


def _best_execution_report():
    venues = [
        {"venue_id": vid, "venue_name": f"Venue {vid}",
         "order_flow": {"total_orders": 1000, "total_shares": 50_000,
                        "total_notional_value": 2_000_000, "market_orders": 600,
                        "limit_orders": 350, "other_orders": 50},
         "execution_quality": {"marketable_order_fill_rate": 90, "price_improvement_rate": 10,
                               "average_effective_spread": 0.002}}
        for vid in ("V1", "V2")
    ]
    return {
        "report_type": "quarterly",
        "reporting_period": {"start_date": "2024-01-01", "end_date": "2024-03-31"},
        "venues": venues,
    }


def _filed_13f(tenant, f13_input):
    lifecycle = FilingLifecycle()
    filing = _prepare_13f(lifecycle, tenant, f13_input)
    return lifecycle, lifecycle.submit(filing.id, submitted_by="cco")


# ═════════════════════════════════════════════════════════════════════════════
# Prepare
# ═════════════════════════════════════════════════════════════════════════════


class TestPrepare:
    def test_creates_draft_with_due_date(self, default_tenant, f13_input):
        filing = _prepare_13f(FilingLifecycle(), default_tenant, f13_input)
        assert filing.status == "draft"
        assert filing.form_type == "form_13f"
        assert filing.filing_frequency == "quarterly"
        assert filing.due_date == date(2024, 5, 15)
        assert filing.amendment_number == 0
        assert filing.form_data["summary"]["total_value_portfolio"] == 125_000

    def test_adv_annual_due_date(self, default_tenant, adv_input):
        filing = FilingLifecycle().prepare(default_tenant.id, "form_adv", "SEC",
                                           "2023-12-31", adv_input, prepared_by="analyst")
        assert filing.filing_frequency == "annual"
        assert filing.due_date == date(2024, 3, 30)

    def test_pf_quarterly_due_date(self, default_tenant):
        filing = FilingLifecycle().prepare(default_tenant.id, "form_pf", "SEC", "2024-03-31",
                                           {"filing_type": "quarterly"}, prepared_by="analyst")
        assert filing.due_date == date(2024, 5, 30)

    def test_unknown_frequency_rejected(self, default_tenant, f13_input):
        with pytest.raises(ValidationError, match="filing frequency"):
            FilingLifecycle().prepare(default_tenant.id, "form_13f", "SEC", "2024-03-31",
                                      f13_input, prepared_by="analyst",
                                      filing_frequency="fortnightly")

    def test_created_audit_entry(self, default_tenant, f13_input):
        filing = _prepare_13f(FilingLifecycle(), default_tenant, f13_input)
        assert _actions(filing) == ["created"]
        assert filing.audit_entries[0].actor == "analyst"

    def test_unknown_form_type(self, default_tenant):
        with pytest.raises(ValidationError):
            FilingLifecycle().prepare(default_tenant.id, "form_x", "SEC", "2024-03-31", {}, "analyst")

    def test_bad_period_end(self, default_tenant, f13_input):
        with pytest.raises(ValidationError):
            FilingLifecycle().prepare(default_tenant.id, "form_13f", "SEC", "not-a-date",
                                      f13_input, "analyst")


# ═════════════════════════════════════════════════════════════════════════════
# Validate
# ═════════════════════════════════════════════════════════════════════════════


class TestValidate:
    def test_valid_complete_filing_moves_to_review(self, default_tenant, f13_input):
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        result = lifecycle.validate(filing.id, actor="analyst")
        filing = lifecycle.get(filing.id)
        assert result.is_valid
        assert filing.status == "review"
        assert filing.completion_percentage == 100.0
        assert filing.last_validation["is_valid"] is True
        assert "status_changed" in _actions(filing)

    def test_invalid_filing_stays_draft(self, default_tenant, f13_input):
        f13_input["manager"]["cik"] = "123"
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        result = lifecycle.validate(filing.id)
        assert not result.is_valid
        assert lifecycle.get(filing.id).status == "draft"

    def test_new_errors_move_review_back_to_draft(self, default_tenant, f13_input):
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        lifecycle.validate(filing.id)
        lifecycle.update_form_data(filing.id, {"cover_page": {}}, updated_by="analyst")
        lifecycle.validate(filing.id)
        assert lifecycle.get(filing.id).status == "draft"

    def test_validation_check_recorded(self, default_tenant, f13_input):
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        lifecycle.validate(filing.id)
        checks = lifecycle.get(filing.id).compliance_checks
        assert checks[-1]["check_type"] == "validation"
        assert checks[-1]["status"] == "passed"


# ═════════════════════════════════════════════════════════════════════════════
# Submit
# ═════════════════════════════════════════════════════════════════════════════


class TestSubmit:
    def test_invalid_filing_never_reaches_gateway(self, default_tenant, f13_input):
        gateway = MagicMock()
        lifecycle = FilingLifecycle(gateway=gateway)
        f13_input["holdings"][0]["cusip"] = "BAD"
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)

        with pytest.raises(ValidationFailed) as exc:
            lifecycle.submit(filing.id, submitted_by="cco")

        gateway.submit.assert_not_called()
        assert exc.value.filing_id == filing.id
        assert not exc.value.result.is_valid
        assert lifecycle.get(filing.id).status == "draft"

    def test_below_threshold_is_precondition_failure(self, default_tenant, small_f13_input):
        gateway = MagicMock()
        lifecycle = FilingLifecycle(gateway=gateway)
        filing = _prepare_13f(lifecycle, default_tenant, small_f13_input)

        with pytest.raises(PreconditionFailed):
            lifecycle.submit(filing.id, submitted_by="cco")
        gateway.submit.assert_not_called()

    def test_best_execution_below_notional_minimum_is_not_filed(self, app, default_tenant):
        config = dict(app.config, FILING_THRESHOLDS={
            "SEC": {"best_execution": {"min_reportable_notional": 1e15}}})
        gateway = MagicMock()
        lifecycle = FilingLifecycle(gateway=gateway, app_config=config)
        filing = lifecycle.prepare(default_tenant.id, "best_execution", "SEC", "2024-03-31",
                                   _best_execution_report(), prepared_by="analyst")

        with pytest.raises(PreconditionFailed):
            lifecycle.submit(filing.id, submitted_by="cco")
        gateway.submit.assert_not_called()
        assert lifecycle.get(filing.id).status != "filed"

    def test_sandbox_acceptance_files_filing(self, default_tenant, f13_input):
        _, filing = _filed_13f(default_tenant, f13_input)
        assert filing.status == "filed"
        assert filing.submitted_by == "cco"
        assert filing.filed_at is not None
        assert filing.confirmation["confirmation_number"].startswith("SBX-")
        assert filing.compliance_checks[-1]["check_type"] == "regulator_submission"
        assert _actions(filing)[-2:] == ["submitted", "filed"]

    def test_test_filing_confirmation_prefix(self, default_tenant, f13_input):
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        filing = lifecycle.submit(filing.id, submitted_by="cco", options={"test_filing": True})
        assert filing.confirmation["confirmation_number"].startswith("TEST-")

    def test_gateway_receives_payload_and_attachments(self, default_tenant, f13_input):
        gateway = MagicMock()
        gateway.submit.return_value = SubmissionResult(success=True, confirmation_number="ACC-1")
        lifecycle = FilingLifecycle(gateway=gateway)
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        lifecycle.attach_document(filing.id, "holdings.xml", 2048, uploaded_by="analyst")

        lifecycle.submit(filing.id, submitted_by="cco")

        payload, options = gateway.submit.call_args.args
        assert payload["filing_id"] == filing.id
        assert payload["form_type"] == "form_13f"
        assert payload["reporting_period_end"] == "2024-03-31"
        assert [a["name"] for a in options.attachments] == ["holdings.xml"]

    def test_regulator_rejection(self, default_tenant, f13_input):
        gateway = MagicMock()
        gateway.submit.return_value = SubmissionResult(success=False, errors=["CIK mismatch"])
        lifecycle = FilingLifecycle(gateway=gateway)
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)

        filing = lifecycle.submit(filing.id, submitted_by="cco")

        assert filing.status == "rejected"
        assert filing.confirmation is None
        assert filing.compliance_checks[-1]["status"] == "failed"
        assert "CIK mismatch" in filing.compliance_checks[-1]["message"]
        rejected = [e for e in filing.audit_entries if e.action == "rejected"][0]
        assert rejected.details["kind"] == GATEWAY_REJECTED

    def test_gateway_exception_is_recorded_as_rejection(self, default_tenant, f13_input):
        gateway = MagicMock()
        gateway.submit.side_effect = RuntimeError("connection reset")
        lifecycle = FilingLifecycle(gateway=gateway)
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)

        filing = lifecycle.submit(filing.id, submitted_by="cco")
        assert filing.status == "rejected"
        assert "connection reset" in filing.compliance_checks[-1]["message"]

    def test_rejected_filing_cannot_be_resubmitted(self, default_tenant, f13_input):
        gateway = MagicMock()
        gateway.submit.return_value = SubmissionResult(success=False, errors=["bad"])
        lifecycle = FilingLifecycle(gateway=gateway)
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        lifecycle.submit(filing.id, submitted_by="cco")

        with pytest.raises(PreconditionFailed) as exc:
            lifecycle.submit(filing.id, submitted_by="cco")
        assert exc.value.current_state == "rejected"
        assert gateway.submit.call_count == 1


class _InMemoryFilings:
    """Filing repository holding transient filings, usable from worker threads."""

    def __init__(self):
        self.filings = {}
        self.audit = []

    def get(self, filing_id, tenant_id=None):
        return self.filings[filing_id]

    def save(self, filing):
        self.filings[filing.id] = filing
        return filing

    def append_audit(self, filing_id, action, actor, details=None):
        self.audit.append((filing_id, action))


def _slow_gateway(delay=0.05):
    def submit(payload, options):
        time.sleep(delay)
        return SubmissionResult(success=True, confirmation_number="SEC-0001")

    gateway = MagicMock()
    gateway.submit.side_effect = submit
    return gateway


class TestConcurrentSubmit:
    def test_same_filing_reaches_gateway_once(self, app, f13_input):
        repository = _InMemoryFilings()
        gateway = _slow_gateway()
        lifecycle = FilingLifecycle(repository=repository, gateway=gateway,
                                    publisher=MagicMock(), app_config=dict(app.config))
        filing = _prepare_13f(lifecycle, MagicMock(id=1), f13_input)

        barrier = threading.Barrier(2)
        outcomes = []

        def submit():
            barrier.wait()
            try:
                lifecycle.submit(filing.id, submitted_by="cco")
                outcomes.append("submitted")
            except PreconditionFailed as exc:
                outcomes.append(f"refused:{exc.current_state}")

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert sorted(outcomes) == ["refused:filed", "submitted"]
        assert gateway.submit.call_count == 1
        assert repository.filings[filing.id].status == "filed"
        assert [a for _, a in repository.audit].count("submitted") == 1


# ═════════════════════════════════════════════════════════════════════════════
# Filed immutability
# ═════════════════════════════════════════════════════════════════════════════


class TestFiledImmutability:
    def test_update_refused(self, default_tenant, f13_input):
        lifecycle, filing = _filed_13f(default_tenant, f13_input)
        with pytest.raises(PreconditionFailed):
            lifecycle.update_form_data(filing.id, {"summary": {}}, updated_by="analyst")

    def test_resubmit_refused(self, default_tenant, f13_input):
        lifecycle, filing = _filed_13f(default_tenant, f13_input)
        with pytest.raises(PreconditionFailed):
            lifecycle.submit(filing.id, submitted_by="cco")

    def test_attachment_refused(self, default_tenant, f13_input):
        lifecycle, filing = _filed_13f(default_tenant, f13_input)
        with pytest.raises(PreconditionFailed):
            lifecycle.attach_document(filing.id, "late.pdf", 10)

    def test_direct_model_change_refused_at_flush(self, default_tenant, f13_input):
        _, filing = _filed_13f(default_tenant, f13_input)
        filing.form_data = {"tampered": True}
        with pytest.raises(PreconditionFailed):
            db.session.commit()
        db.session.rollback()

    def test_revalidation_is_read_only(self, default_tenant, f13_input):
        lifecycle, filing = _filed_13f(default_tenant, f13_input)
        before = len(filing.audit_entries)
        result = lifecycle.validate(filing.id)
        filing = lifecycle.get(filing.id)
        assert result.is_valid
        assert filing.status == "filed"
        assert len(filing.audit_entries) == before


# ═════════════════════════════════════════════════════════════════════════════
# Amendments
# ═════════════════════════════════════════════════════════════════════════════


class TestAmend:
    def test_amendment_links_to_original(self, default_tenant, f13_input):
        lifecycle, original = _filed_13f(default_tenant, f13_input)
        amendment = lifecycle.amend(original.id, {"cover_page": {"manager_name": "HP Capital"}},
                                    reason="Corrected manager name", amended_by="cco")

        assert amendment.status == "draft"
        assert amendment.amendment_number == 1
        assert amendment.original_filing_id == original.id
        assert amendment.amendment_reason == "Corrected manager name"
        assert amendment.form_data["cover_page"] == {"manager_name": "HP Capital"}
        assert amendment.form_data["holdings"] == original.form_data["holdings"]
        assert _actions(amendment) == ["amendment_created"]

        original = lifecycle.get(original.id)
        assert original.status == "filed"
        link = [e for e in original.audit_entries if e.action == "amended_by"][0]
        assert link.details["amendment_id"] == amendment.id

    def test_amendment_of_amendment_increments(self, default_tenant, f13_input):
        lifecycle, original = _filed_13f(default_tenant, f13_input)
        first = lifecycle.amend(original.id, {}, reason="r1", amended_by="cco")
        second = lifecycle.amend(first.id, {}, reason="r2", amended_by="cco")
        assert second.amendment_number == 2
        assert second.original_filing_id == first.id

    def test_amendment_does_not_copy_submission_state(self, default_tenant, f13_input):
        lifecycle, original = _filed_13f(default_tenant, f13_input)
        amendment = lifecycle.amend(original.id, {}, reason="r", amended_by="cco")
        assert amendment.confirmation is None
        assert amendment.compliance_checks == []
        assert amendment.due_date == original.due_date


# ═════════════════════════════════════════════════════════════════════════════
# Attachments, scoping, queries
# ═════════════════════════════════════════════════════════════════════════════


class TestAttachments:
    def test_attach_records_document(self, default_tenant, f13_input):
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        attachment = lifecycle.attach_document(filing.id, "support.pdf", 1024, uploaded_by="analyst")
        assert attachment["content_type"] == "application/pdf"
        assert attachment["size"] == 1024
        filing = lifecycle.get(filing.id)
        assert filing.attachments[0]["attachment_id"] == attachment["attachment_id"]
        assert "attachment_added" in _actions(filing)

    def test_name_required(self, default_tenant, f13_input):
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        with pytest.raises(ValidationError):
            lifecycle.attach_document(filing.id, "", 10)

    def test_content_type_by_extension(self):
        assert content_type_for("table.XML") == "application/xml"
        assert content_type_for("data.bin") == "application/octet-stream"
        assert content_type_for("README") == "application/octet-stream"


class TestTenantScoping:
    def test_other_tenant_sees_not_found(self, default_tenant, other_tenant, f13_input):
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        with pytest.raises(NotFoundError):
            lifecycle.get(filing.id, tenant_id=other_tenant.id)
        with pytest.raises(NotFoundError):
            lifecycle.submit(filing.id, submitted_by="x", tenant_id=other_tenant.id)

    def test_list_filters(self, default_tenant, other_tenant, f13_input, adv_input):
        lifecycle = FilingLifecycle()
        _prepare_13f(lifecycle, default_tenant, f13_input)
        lifecycle.prepare(default_tenant.id, "form_adv", "SEC", "2023-12-31", adv_input, "analyst")
        lifecycle.prepare(other_tenant.id, "form_adv", "SEC", "2023-12-31", adv_input, "analyst")

        assert len(lifecycle.list_filings(default_tenant.id)) == 2
        assert len(lifecycle.list_filings(default_tenant.id, form_type="form_adv")) == 1
        assert lifecycle.list_filings(default_tenant.id, status="filed") == []


class TestQueries:
    def test_upcoming_deadlines(self, default_tenant, f13_input):
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)

        upcoming = lifecycle.upcoming_deadlines(default_tenant.id, today=date(2024, 5, 1))
        assert [d["filing_id"] for d in upcoming] == [filing.id]
        assert upcoming[0]["days_remaining"] == 14
        assert upcoming[0]["overdue"] is False

        overdue = lifecycle.upcoming_deadlines(default_tenant.id, today=date(2024, 5, 20))
        assert overdue[0]["days_remaining"] == -5
        assert overdue[0]["overdue"] is True

        assert lifecycle.upcoming_deadlines(default_tenant.id, today=date(2024, 1, 1)) == []

    def test_filed_filings_have_no_deadline(self, default_tenant, f13_input):
        lifecycle, _ = _filed_13f(default_tenant, f13_input)
        assert lifecycle.upcoming_deadlines(default_tenant.id, today=date(2024, 5, 1)) == []

    def test_holdings_analysis(self, default_tenant, f13_input):
        lifecycle = FilingLifecycle()
        filing = _prepare_13f(lifecycle, default_tenant, f13_input)
        analysis = lifecycle.analyze_holdings(filing.id, top_n=5)
        assert analysis["total_holdings"] == 2

    def test_holdings_analysis_only_for_13f(self, default_tenant, adv_input):
        lifecycle = FilingLifecycle()
        filing = lifecycle.prepare(default_tenant.id, "form_adv", "SEC", "2023-12-31",
                                   adv_input, "analyst")
        with pytest.raises(ValidationError):
            lifecycle.analyze_holdings(filing.id)

    def test_filing_requirements_use_configured_thresholds(self):
        result = FilingLifecycle().filing_requirements(
            [{"fund_id": "F1", "fund_name": "Fund", "aum": 200_000_000}], today=date(2024, 5, 15))
        assert result[0]["filing_frequency"] == "annual"

    def test_to_dict_includes_audit_trail(self, default_tenant, f13_input):
        filing = _prepare_13f(FilingLifecycle(), default_tenant, f13_input)
        data = filing.to_dict()
        assert data["audit_trail"][0]["action"] == "created"
        assert "audit_trail" not in filing.to_dict(include_audit=False)


# ═════════════════════════════════════════════════════════════════════════════
# Events
# ═════════════════════════════════════════════════════════════════════════════


class TestOutcomeNotifications:
    def test_filed_event_notifies_preparer(self, default_tenant, f13_input, publisher):
        _, filing = _filed_13f(default_tenant, f13_input)
        publisher.drain()
        notes = Notification.query.filter_by(entity_id=filing.id).all()
        assert len(notes) == 1
        assert notes[0].recipient == "analyst"
        assert notes[0].severity == "success"
        assert filing.confirmation["confirmation_number"] in notes[0].message

    def test_rejected_event_notifies_preparer(self, default_tenant, f13_input, publisher):
        gateway = MagicMock()
        gateway.submit.return_value = SubmissionResult(success=False, errors=["CIK mismatch"])
        lifecycle = FilingLifecycle(gateway=gateway)
        filing = lifecycle.submit(_prepare_13f(lifecycle, default_tenant, f13_input).id,
                                  submitted_by="cco")
        publisher.drain()
        note = Notification.query.filter_by(entity_id=filing.id).one()
        assert note.severity == "error"
        assert "CIK mismatch" in note.message
