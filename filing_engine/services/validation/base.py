"""
Validation engine building blocks.

Every form type owns a FormHandler that turns caller input into form data
(prepare) and evaluates its rule set exhaustively (validate). Handlers
never short-circuit: one call reports every violation.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class FormType(str, Enum):
    """Closed set of supported filing forms."""
    FORM_13F = "form_13f"
    FORM_PF = "form_pf"
    FORM_ADV = "form_adv"
    BEST_EXECUTION = "best_execution"
    GIPS_COMPOSITE = "gips_composite"


class Jurisdiction(str, Enum):
    SEC = "SEC"
    FINRA = "FINRA"
    FCA = "FCA"
    ESMA = "ESMA"


class IssueSeverity(str, Enum):
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ValidationIssue:
    """Single rule violation. Warnings carry no severity."""
    section: str
    field: str
    message: str
    severity: IssueSeverity | None = None

    def to_dict(self) -> dict:
        data = {"section": self.section, "field": self.field, "message": self.message}
        if self.severity is not None:
            data["severity"] = self.severity.value
        return data


@dataclass
class ValidationResult:
    """Aggregate outcome of one rule-set evaluation."""
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    completion_percentage: float = 0.0
    threshold_analysis: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "completion_percentage": self.completion_percentage,
            "threshold_analysis": self.threshold_analysis,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Rule helpers
# ═════════════════════════════════════════════════════════════════════════════

def completion_percentage(required_field_count: int, error_count: int) -> float:
    """max(0, (required − errors) / required × 100), rounded to 2 dp."""
    if required_field_count <= 0:
        return 0.0 if error_count else 100.0
    pct = (required_field_count - error_count) / required_field_count * 100
    return round(max(0.0, pct), 2)


def to_number(value, default=0.0) -> float:
    """Coerce a JSON number (or numeric string) to float; junk → default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def numbers_in(values, rules: RuleCollector, section: str, field_name: str) -> list[float]:
    """
    Finite numbers from a JSON series, in order.

    Entries that are not numbers are reported as errors on
    ``field_name[i]`` and left out; missing (null) entries are skipped.
    """
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        rules.error(section, field_name, f"{field_name} must be a list of numbers")
        return []
    numbers = []
    for idx, value in enumerate(values):
        if value is None:
            continue
        number = to_number(value, default=None)
        if number is None or not math.isfinite(number):
            rules.error(section, f"{field_name}[{idx}]",
                        f"{field_name}[{idx}] must be a number, got {value!r}")
        else:
            numbers.append(number)
    return numbers


def records_in(items, rules: RuleCollector, section: str, noun: str) -> list[tuple[int, dict]]:
    """(index, record) pairs for the object entries of a JSON list; anything else is an error."""
    if not items:
        return []
    if not isinstance(items, list):
        rules.error(section, section, f"{section} must be a list of {noun} records")
        return []
    pairs = []
    for idx, item in enumerate(items):
        if isinstance(item, dict):
            pairs.append((idx, item))
        else:
            rules.error(f"{section}[{idx}]", section,
                        f"Each {noun} must be an object, got {type(item).__name__}")
    return pairs


def is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def differs_by_more_than(actual: float, expected: float, tolerance_pct: float) -> bool:
    """True when |actual − expected| exceeds tolerance_pct of expected."""
    return abs(actual - expected) > abs(expected) * tolerance_pct / 100


class RuleCollector:
    """Accumulates errors and warnings while a rule set runs."""

    def __init__(self) -> None:
        self.errors: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []

    def error(self, section: str, field_name: str, message: str,
              severity: IssueSeverity = IssueSeverity.ERROR) -> None:
        self.errors.append(ValidationIssue(section, field_name, message, severity))

    def warn(self, section: str, field_name: str, message: str) -> None:
        self.warnings.append(ValidationIssue(section, field_name, message))

    def require(self, value, section: str, field_name: str, message: str) -> bool:
        """Record an error when value is blank. Returns True when present."""
        if is_blank(value):
            self.error(section, field_name, message)
            return False
        return True

    def require_pattern(self, value, pattern: re.Pattern, section: str,
                        field_name: str, message: str) -> bool:
        if is_blank(value) or not pattern.match(str(value)):
            self.error(section, field_name, message)
            return False
        return True

    def require_positive(self, value, section: str, field_name: str, message: str) -> bool:
        if to_number(value) <= 0:
            self.error(section, field_name, message)
            return False
        return True

    def build(self, required_field_count: int, threshold_analysis: dict) -> ValidationResult:
        return ValidationResult(
            errors=list(self.errors),
            warnings=list(self.warnings),
            completion_percentage=completion_percentage(required_field_count, len(self.errors)),
            threshold_analysis=threshold_analysis,
        )


class FormHandler:
    """
    Base class for a form-type rule set.

    Subclasses set ``form_type`` and ``default_thresholds`` and implement
    ``validate``. ``prepare`` derives aggregates from itemized input;
    ``submission_precondition`` returns a message when the filing must not
    be sent even though it is valid (e.g. below the reporting threshold).
    """

    form_type: FormType
    default_thresholds: dict[str, float] = {}

    def thresholds(self, overrides: dict | None) -> dict[str, float]:
        merged = dict(self.default_thresholds)
        merged.update(overrides or {})
        return merged

    def prepare(self, data: dict) -> dict:
        return dict(data or {})

    def validate(self, form_data: dict, thresholds: dict | None = None) -> ValidationResult:
        raise NotImplementedError

    def submission_precondition(self, result: ValidationResult) -> str | None:
        return None
