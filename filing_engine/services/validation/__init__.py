"""
Regulatory Filing Platform
Validation Engine — per-form-type rule sets.

Usage:
    from filing_engine.services.validation import FormType, validate
    result = validate(FormType.FORM_13F, form_data, thresholds={"reporting_threshold": 1e8})
    # -> ValidationResult(is_valid=..., errors=[...], warnings=[...], ...)

Each FormType maps to exactly one FormHandler in FORM_HANDLERS. validate()
is a pure function of (form type, form data, thresholds).
"""

from __future__ import annotations

import logging

from filing_engine.core.exceptions import ValidationError
from filing_engine.services.validation.base import (
    FormHandler,
    FormType,
    IssueSeverity,
    Jurisdiction,
    ValidationIssue,
    ValidationResult,
)
from filing_engine.services.validation.best_execution import BestExecutionHandler
from filing_engine.services.validation.form_13f import Form13FHandler
from filing_engine.services.validation.form_adv import FormADVHandler
from filing_engine.services.validation.form_pf import FormPFHandler
from filing_engine.services.validation.gips_composite import GIPSCompositeHandler

logger = logging.getLogger(__name__)

__all__ = [
    "FORM_HANDLERS",
    "FormHandler",
    "FormType",
    "IssueSeverity",
    "Jurisdiction",
    "ValidationIssue",
    "ValidationResult",
    "get_handler",
    "parse_form_type",
    "parse_jurisdiction",
    "resolve_thresholds",
    "validate",
]


FORM_HANDLERS: dict[FormType, FormHandler] = {
    handler.form_type: handler
    for handler in (
        Form13FHandler(),
        FormPFHandler(),
        FormADVHandler(),
        BestExecutionHandler(),
        GIPSCompositeHandler(),
    )
}


def parse_form_type(value) -> FormType:
    """Coerce a string to FormType, raising ValidationError for unknown forms."""
    try:
        return FormType(value)
    except ValueError:
        raise ValidationError(
            f"Unsupported form type: {value!r}",
            details={"form_type": sorted(f.value for f in FormType)},
        ) from None


def parse_jurisdiction(value) -> Jurisdiction:
    try:
        return Jurisdiction(value)
    except ValueError:
        raise ValidationError(
            f"Unsupported jurisdiction: {value!r}",
            details={"jurisdiction": sorted(j.value for j in Jurisdiction)},
        ) from None


def get_handler(form_type) -> FormHandler:
    return FORM_HANDLERS[parse_form_type(form_type)]


def resolve_thresholds(threshold_config: dict | None, form_type, jurisdiction) -> dict:
    """
    Pick the threshold constants for one form type × jurisdiction pair.

    threshold_config is the FILING_THRESHOLDS mapping
    (jurisdiction → form type → {name: value}); missing entries fall back
    to the handler defaults.
    """
    form_key = parse_form_type(form_type).value
    jurisdiction_key = parse_jurisdiction(jurisdiction).value
    return dict(((threshold_config or {}).get(jurisdiction_key) or {}).get(form_key) or {})


def validate(form_type, form_data: dict, thresholds: dict | None = None) -> ValidationResult:
    """Run the rule set for form_type over form_data. Never mutates form_data."""
    handler = get_handler(form_type)
    result = handler.validate(form_data or {}, thresholds)
    logger.debug(
        "Validated %s: valid=%s errors=%d warnings=%d completion=%.1f",
        handler.form_type.value, result.is_valid, len(result.errors),
        len(result.warnings), result.completion_percentage,
    )
    return result
