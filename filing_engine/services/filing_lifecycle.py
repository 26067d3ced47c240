"""
Regulatory Filing Platform
Filing Lifecycle Service.

Owns every status change of a Filing:

    draft ⇄ review → filed | rejected

    - validate() derives draft/review from the rule-set outcome
      (review iff valid and completion ≥ 95 %); filed/rejected filings are
      re-validated read-only.
    - submit() is the only path to filed/rejected and the only caller of the
      SubmissionGateway. A filing that fails validation never reaches it.
    - amend() never touches the original's frozen columns; the link is an
      audit entry on the original plus original_filing_id on the amendment.

Usage:
    lifecycle = FilingLifecycle()
    filing = lifecycle.prepare(tenant_id=1, form_type="form_13f", jurisdiction="SEC",
                               reporting_period_end=date(2024, 3, 31), data={...},
                               prepared_by="analyst")
    result = lifecycle.validate(filing.id)
    filing = lifecycle.submit(filing.id, submitted_by="cco")
"""

import copy
import logging
from datetime import date, timedelta

from flask import current_app

from filing_engine.core.exceptions import (
    GATEWAY_REJECTED,
    PreconditionFailed,
    ValidationError,
    ValidationFailed,
)
from filing_engine.integrations.submission_gateway import (
    SubmissionOptions,
    SubmissionResult,
    build_submission_gateway,
)
from filing_engine.models.base import _utcnow, new_id
from filing_engine.models.filing import FILING_FREQUENCIES, Filing, validate_filing_transition
from filing_engine.repositories import SqlAlchemyFilingRepository
from filing_engine.services import event_publisher as events
from filing_engine.services.validation import (
    FormType,
    get_handler,
    parse_form_type,
    parse_jurisdiction,
    resolve_thresholds,
    validate as run_rules,
)
from filing_engine.services.validation.form_13f import analyze_holdings as _analyze_13f
from filing_engine.services.validation.form_pf import filing_requirements as _pf_requirements
from filing_engine.utils.helpers import KeyedLocks, parse_date_input

logger = logging.getLogger(__name__)

# Minimum completion for a valid filing to move into review
REVIEW_COMPLETION_THRESHOLD = 95.0

DEFAULT_FREQUENCY = {
    FormType.FORM_13F: "quarterly",
    FormType.FORM_ADV: "annual",
    FormType.FORM_PF: "annual",
    FormType.BEST_EXECUTION: "quarterly",
    FormType.GIPS_COMPOSITE: "annual",
}

_MIME_TYPES = {
    "xml": "application/xml",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "csv": "text/csv",
    "json": "application/json",
}

# Shared across service instances: one submit per filing at a time
_filing_locks = KeyedLocks()


def content_type_for(filename):
    """MIME type from the file extension; unknown → application/octet-stream."""
    extension = (filename or "").rsplit(".", 1)[-1].lower() if "." in (filename or "") else ""
    return _MIME_TYPES.get(extension, "application/octet-stream")


class FilingLifecycle:
    """State machine and persistence orchestration for filings."""

    def __init__(self, repository=None, gateway=None, publisher=None, app_config=None):
        self.repository = repository or SqlAlchemyFilingRepository()
        self._gateway = gateway
        self._publisher = publisher
        self._config = app_config

    # ── Collaborators ─────────────────────────────────────────────────────

    @property
    def config(self):
        return self._config if self._config is not None else current_app.config

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = (current_app.extensions.get("submission_gateway")
                             or build_submission_gateway(self.config))
        return self._gateway

    @property
    def publisher(self):
        return self._publisher or events.get_publisher()

    def _thresholds(self, filing):
        return resolve_thresholds(self.config.get("FILING_THRESHOLDS"),
                                  filing.form_type, filing.jurisdiction)

    def due_date_for(self, form_type, filing_frequency, reporting_period_end):
        rules = (self.config.get("FILING_DUE_DATE_RULES") or {}).get(parse_form_type(form_type).value, {})
        days = rules.get(filing_frequency, rules.get("default"))
        if days is None:
            return None
        return reporting_period_end + timedelta(days=int(days))

    # ── Prepare / edit ────────────────────────────────────────────────────

    def prepare(self, tenant_id, form_type, jurisdiction, reporting_period_end, data,
                prepared_by, filing_frequency=None):
        """Create a draft filing from caller input; derived aggregates are computed here."""
        form = parse_form_type(form_type)
        region = parse_jurisdiction(jurisdiction or "SEC")
        period_end = parse_date_input(reporting_period_end, "reporting_period_end")
        data = data or {}

        handler = get_handler(form)
        form_data = handler.prepare(data)
        frequency = (filing_frequency or data.get("filing_frequency")
                     or form_data.get("filing_type") or DEFAULT_FREQUENCY[form])
        if frequency not in FILING_FREQUENCIES:
            raise ValidationError(f"Unknown filing frequency {frequency!r}",
                                  details={"allowed": sorted(FILING_FREQUENCIES)})

        filing = Filing(
            id=new_id(),
            tenant_id=tenant_id,
            form_type=form.value,
            jurisdiction=region.value,
            filing_frequency=frequency,
            reporting_period_end=period_end,
            due_date=self.due_date_for(form, frequency, period_end),
            status="draft",
            form_data=form_data,
            amendment_number=0,
            compliance_checks=[],
            attachments=[],
            prepared_by=prepared_by,
        )
        self.repository.append_audit(filing.id, "created", prepared_by,
                                     {"form_type": form.value, "jurisdiction": region.value})
        self.repository.save(filing)
        logger.info("Filing %s prepared (%s/%s, period %s)", filing.id, form.value, region.value,
                    period_end, extra={"tenant_id": tenant_id, "filing_id": filing.id})
        self.publisher.publish(events.FILING_PREPARED, {
            "filing_id": filing.id, "tenant_id": tenant_id, "form_type": form.value,
        })
        return filing

    def _require_editable(self, filing, action):
        if not filing.is_editable:
            raise PreconditionFailed(
                f"Cannot {action} filing {filing.id} in status '{filing.status}'",
                current_state=filing.status,
            )

    def update_form_data(self, filing_id, changes, updated_by, tenant_id=None):
        """Shallow-merge ``changes`` into form data of a draft/review filing."""
        filing = self.repository.get(filing_id, tenant_id=tenant_id)
        self._require_editable(filing, "update")
        merged = copy.deepcopy(filing.form_data or {})
        merged.update(changes or {})
        filing.form_data = merged
        self.repository.append_audit(filing.id, "updated", updated_by,
                                     {"fields": sorted((changes or {}).keys())})
        return self.repository.save(filing)

    def attach_document(self, filing_id, name, size, content_type=None,
                        uploaded_by=None, tenant_id=None):
        """Record a supporting document on a draft/review filing."""
        filing = self.repository.get(filing_id, tenant_id=tenant_id)
        self._require_editable(filing, "attach documents to")
        if not name:
            raise ValidationError("Attachment name is required", details={"name": name})
        attachment = {
            "attachment_id": new_id(),
            "name": name,
            "size": int(size or 0),
            "content_type": content_type or content_type_for(name),
            "uploaded_by": uploaded_by,
            "uploaded_at": _utcnow().isoformat(),
        }
        filing.attachments = list(filing.attachments or []) + [attachment]
        self.repository.append_audit(filing.id, "attachment_added", uploaded_by,
                                     {"attachment_id": attachment["attachment_id"], "name": name})
        self.repository.save(filing)
        return attachment

    # ── Validate ──────────────────────────────────────────────────────────

    def _apply_validation(self, filing, result, actor):
        """Write last validation, completion and derived status onto an editable filing."""
        filing.last_validation = result.to_dict()
        filing.completion_percentage = result.completion_percentage
        filing.add_compliance_check(
            "validation",
            "passed" if result.is_valid else "failed",
            f"{len(result.errors)} error(s), {len(result.warnings)} warning(s)",
        )

        derived = ("review" if result.is_valid
                   and result.completion_percentage >= REVIEW_COMPLETION_THRESHOLD else "draft")
        if derived != filing.status and validate_filing_transition(filing.status, derived):
            old = filing.status
            filing.status = derived
            self.repository.append_audit(filing.id, "status_changed", actor,
                                         {"from": old, "to": derived})
            self.publisher.publish(events.FILING_STATUS_CHANGED, {
                "filing_id": filing.id, "from": old, "to": derived,
            })
        self.repository.append_audit(filing.id, "validated", actor, {
            "is_valid": result.is_valid,
            "errors": len(result.errors),
            "warnings": len(result.warnings),
            "completion_percentage": result.completion_percentage,
        })

    def validate(self, filing_id, actor=None, tenant_id=None):
        """Run the rule set; persist the derived status unless the filing is terminal."""
        filing = self.repository.get(filing_id, tenant_id=tenant_id)
        result = run_rules(filing.form_type, filing.form_data or {}, self._thresholds(filing))
        if filing.is_editable:
            self._apply_validation(filing, result, actor)
            self.repository.save(filing)
        logger.info("Filing %s validated: valid=%s completion=%.2f status=%s",
                    filing.id, result.is_valid, result.completion_percentage, filing.status,
                    extra={"filing_id": filing.id})
        return result

    # ── Submit ────────────────────────────────────────────────────────────

    def _payload(self, filing):
        return {
            "filing_id": filing.id,
            "form_type": filing.form_type,
            "jurisdiction": filing.jurisdiction,
            "reporting_period_end": filing.reporting_period_end.isoformat(),
            "amendment_number": filing.amendment_number or 0,
            "original_filing_id": filing.original_filing_id,
            "form_data": filing.form_data or {},
        }

    def submit(self, filing_id, submitted_by, options=None, tenant_id=None):
        """
        Validate and send a draft/review filing to the regulator.

        Raises:
            PreconditionFailed: filing already filed/rejected, or below its
                reporting threshold.
            ValidationFailed: rule-set errors; the gateway is not called.
        """
        with _filing_locks.hold(filing_id):
            filing = self.repository.get(filing_id, tenant_id=tenant_id)
            self._require_editable(filing, "submit")

            result = run_rules(filing.form_type, filing.form_data or {}, self._thresholds(filing))
            self._apply_validation(filing, result, submitted_by)
            if not result.is_valid:
                self.repository.save(filing)
                logger.warning("Filing %s submission blocked: %d validation error(s)",
                               filing.id, len(result.errors), extra={"filing_id": filing.id})
                raise ValidationFailed(result, filing_id=filing.id)

            blocker = get_handler(filing.form_type).submission_precondition(result)
            if blocker:
                self.repository.save(filing)
                raise PreconditionFailed(blocker, current_state=filing.status)

            if isinstance(options, SubmissionOptions):
                submit_options = options
            else:
                submit_options = SubmissionOptions.from_dict(options)
            if not submit_options.attachments:
                submit_options.attachments = list(filing.attachments or [])

            try:
                outcome = self.gateway.submit(self._payload(filing), submit_options)
            except Exception as exc:
                logger.exception("Submission gateway raised for filing %s", filing.id,
                                 extra={"filing_id": filing.id})
                outcome = SubmissionResult(success=False, errors=[str(exc) or exc.__class__.__name__])

            now = _utcnow()
            filing.submitted_by = submitted_by
            filing.submitted_at = now
            self.repository.append_audit(filing.id, "submitted", submitted_by,
                                         {"test_filing": submit_options.test_filing,
                                          "gateway": outcome.to_log_dict()})
            if outcome.success:
                filing.status = "filed"
                filing.filed_at = now
                filing.confirmation = {
                    "confirmation_number": outcome.confirmation_number,
                    "submission_id": outcome.submission_id,
                    "accepted_at": outcome.accepted_at or now.isoformat(),
                    "filing_url": outcome.filing_url,
                }
                filing.add_compliance_check("regulator_submission", "passed",
                                            f"Accepted: {outcome.confirmation_number}")
                self.repository.append_audit(filing.id, "filed", submitted_by, filing.confirmation)
                event_type = events.FILING_FILED
            else:
                message = "; ".join(outcome.errors) or "Submission rejected"
                filing.status = "rejected"
                filing.add_compliance_check("regulator_submission", "failed", message)
                self.repository.append_audit(filing.id, "rejected", submitted_by,
                                             {"kind": GATEWAY_REJECTED, "errors": outcome.errors})
                event_type = events.FILING_REJECTED

            self.repository.save(filing)

        logger.info("Filing %s submitted → %s", filing.id, filing.status,
                    extra={"filing_id": filing.id, "tenant_id": filing.tenant_id})
        self.publisher.publish(event_type, {
            "filing_id": filing.id,
            "tenant_id": filing.tenant_id,
            "form_type": filing.form_type,
            "status": filing.status,
            "confirmation_number": (filing.confirmation or {}).get("confirmation_number"),
        })
        return filing

    # ── Amend ─────────────────────────────────────────────────────────────

    def amend(self, original_id, changes, reason, amended_by, tenant_id=None):
        """Create a draft amendment; the original is linked through its audit trail only."""
        original = self.repository.get(original_id, tenant_id=tenant_id)
        form_data = copy.deepcopy(original.form_data or {})
        form_data.update(changes or {})

        amendment = Filing(
            id=new_id(),
            tenant_id=original.tenant_id,
            form_type=original.form_type,
            jurisdiction=original.jurisdiction,
            filing_frequency=original.filing_frequency,
            reporting_period_end=original.reporting_period_end,
            due_date=original.due_date,
            status="draft",
            form_data=form_data,
            amendment_number=(original.amendment_number or 0) + 1,
            original_filing_id=original.id,
            amendment_reason=reason,
            compliance_checks=[],
            attachments=[],
            prepared_by=amended_by,
        )
        self.repository.append_audit(amendment.id, "amendment_created", amended_by, {
            "original_filing_id": original.id, "reason": reason,
        })
        self.repository.append_audit(original.id, "amended_by", amended_by, {
            "amendment_id": amendment.id, "amendment_number": amendment.amendment_number,
        })
        self.repository.save(amendment)
        logger.info("Filing %s amended by %s (amendment #%d)", original.id, amendment.id,
                    amendment.amendment_number, extra={"filing_id": amendment.id})
        self.publisher.publish(events.FILING_AMENDED, {
            "filing_id": amendment.id, "original_filing_id": original.id,
        })
        return amendment

    # ── Queries ───────────────────────────────────────────────────────────

    def get(self, filing_id, tenant_id=None):
        return self.repository.get(filing_id, tenant_id=tenant_id)

    def list_filings(self, tenant_id, form_type=None, status=None):
        if form_type:
            form_type = parse_form_type(form_type).value
        return self.repository.list_by_tenant(tenant_id, form_type=form_type, status=status)

    def analyze_holdings(self, filing_id, top_n=10, tenant_id=None):
        filing = self.repository.get(filing_id, tenant_id=tenant_id)
        if filing.form_type != FormType.FORM_13F.value:
            raise ValidationError(
                "Holdings analysis is only available for Form 13F filings",
                details={"form_type": filing.form_type},
            )
        return _analyze_13f(filing.form_data, top_n=top_n)

    def upcoming_deadlines(self, tenant_id, today=None, within_days=30):
        """Open (draft/review) filings due within ``within_days``; overdue ones are flagged."""
        today = today or date.today()
        horizon = today + timedelta(days=within_days)
        deadlines = []
        for filing in self.repository.list_by_tenant(tenant_id):
            if not filing.is_editable or filing.due_date is None or filing.due_date > horizon:
                continue
            days_remaining = (filing.due_date - today).days
            deadlines.append({
                "filing_id": filing.id,
                "form_type": filing.form_type,
                "jurisdiction": filing.jurisdiction,
                "status": filing.status,
                "due_date": filing.due_date.isoformat(),
                "days_remaining": days_remaining,
                "overdue": days_remaining < 0,
            })
        deadlines.sort(key=lambda d: d["due_date"])
        return deadlines

    def filing_requirements(self, funds, today=None, jurisdiction="SEC"):
        thresholds = resolve_thresholds(self.config.get("FILING_THRESHOLDS"),
                                        FormType.FORM_PF, jurisdiction)
        return _pf_requirements(funds, today or date.today(), thresholds)
