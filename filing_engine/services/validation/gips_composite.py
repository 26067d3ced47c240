"""
GIPS composite presentation rule set.

Annual returns are percentages. Dispersion and the trailing three-year
standard deviation are derived at prepare time when member portfolio
returns or monthly composite returns are supplied.

Form data layout:
    composite_name, benchmark_name, benchmark_description
    definition: {investment_objective, investment_strategy, inclusion_criteria[]}
    performance_data: [{year, composite_gross_return, composite_net_return,
                        benchmark_return, number_of_portfolios, composite_assets,
                        composite_dispersion, composite_standard_deviation}]
    monthly_returns: {composite[], benchmark[]}
    fee_schedule: {fee_structure[]}
    compliance: {claim_of_compliance}
"""

from __future__ import annotations

import math

from filing_engine.services import financial_stats
from filing_engine.services.validation.base import (
    FormHandler,
    FormType,
    RuleCollector,
    ValidationResult,
    is_blank,
    numbers_in,
    records_in,
    to_number,
)

BASE_REQUIRED_FIELDS = 12
FIELDS_PER_YEAR = 3

MIN_OBJECTIVE_LENGTH = 10
MIN_STRATEGY_LENGTH = 20
RECOMMENDED_YEARS_OF_HISTORY = 5

# Risk measure (3-year std) is expected for periods from this year on
STD_REQUIRED_FROM_YEAR = 2011


def _clean_series(values) -> list[float] | None:
    """Numbers of a series, or None when any entry is not a finite number."""
    if not isinstance(values, (list, tuple)):
        return None
    numbers = [to_number(v, default=None) for v in values]
    if any(n is None or not math.isfinite(n) for n in numbers):
        return None
    return numbers


def _number_field(record, key, rules, section) -> float | None:
    """Optional numeric field; a non-numeric value is reported and treated as absent."""
    value = record.get(key)
    if value is None:
        return None
    number = to_number(value, default=None)
    if number is None or not math.isfinite(number):
        rules.error(section, key, f"{key} must be a number, got {value!r}")
        return None
    return number


class GIPSCompositeHandler(FormHandler):
    form_type = FormType.GIPS_COMPOSITE
    default_thresholds = {"min_composite_assets": 0}

    def prepare(self, data: dict) -> dict:
        form = dict(data or {})
        records, others = [], []
        for record in form.get("performance_data") or []:
            if not isinstance(record, dict):
                others.append(record)
                continue
            record = dict(record)
            member_returns = _clean_series(record.get("portfolio_returns"))
            if member_returns is not None:
                del record["portfolio_returns"]
            if member_returns and record.get("composite_dispersion") is None:
                record["number_of_portfolios"] = record.get("number_of_portfolios") or len(member_returns)
                if len(member_returns) >= financial_stats.MIN_PORTFOLIOS_FOR_DISPERSION:
                    record["composite_dispersion"] = round(financial_stats.dispersion(member_returns), 4)
            records.append(record)
        records.sort(key=lambda r: int(to_number(r.get("year"))))

        monthly_returns = form.get("monthly_returns")
        monthly = _clean_series(monthly_returns.get("composite")
                                if isinstance(monthly_returns, dict) else None)
        std = financial_stats.three_year_std(monthly) if monthly else None
        if std is not None and records and records[-1].get("composite_standard_deviation") is None:
            records[-1]["composite_standard_deviation"] = round(std, 4)
        # Non-object entries are kept for validation to report
        form["performance_data"] = records + others
        return form

    def validate(self, form_data: dict, thresholds: dict | None = None) -> ValidationResult:
        limits = self.thresholds(thresholds)
        rules = RuleCollector()
        form_data = form_data or {}
        definition = form_data.get("definition") or {}
        raw_records = form_data.get("performance_data") or []
        records = [r for _, r in records_in(raw_records, rules, "performance_data",
                                            "performance year")]

        # RULE-GIPS-01..04: composite definition
        rules.require(form_data.get("composite_name"), "composite", "composite_name",
                      "Composite name is required")
        if len((definition.get("investment_objective") or "").strip()) < MIN_OBJECTIVE_LENGTH:
            rules.error("definition", "investment_objective",
                        "Investment objective must be clearly defined with at least 10 characters")
        if len((definition.get("investment_strategy") or "").strip()) < MIN_STRATEGY_LENGTH:
            rules.error("definition", "investment_strategy",
                        "Investment strategy must be detailed with at least 20 characters")
        if not definition.get("inclusion_criteria"):
            rules.error("definition", "inclusion_criteria",
                        "At least one inclusion criterion is required")

        # RULE-GIPS-05..08: performance history
        if not raw_records:
            rules.error("performance_data", "performance_data",
                        "At least one year of performance data is required")
        elif len(records) < RECOMMENDED_YEARS_OF_HISTORY:
            rules.warn("performance_data", "performance_data",
                       f"Only {len(records)} year(s) of history; "
                       f"{RECOMMENDED_YEARS_OF_HISTORY} years are expected")

        gross_returns, net_returns = [], []
        paired_gross, benchmark_returns = [], []
        for record in records:
            year = int(to_number(record.get("year")))
            section = f"performance_data[{year}]"
            gross = _number_field(record, "composite_gross_return", rules, section)
            net = _number_field(record, "composite_net_return", rules, section)
            benchmark = _number_field(record, "benchmark_return", rules, section)
            portfolios = int(to_number(record.get("number_of_portfolios")))
            if (gross or 0.0) < (net or 0.0):
                rules.error(section, "composite_gross_return",
                            f"Gross return cannot be less than net return for year {year}")
            if portfolios <= 0:
                rules.error(section, "number_of_portfolios",
                            f"Number of portfolios must be greater than zero for year {year}")
            rules.require_positive(record.get("composite_assets"), section, "composite_assets",
                                   f"Composite assets must be greater than zero for year {year}")
            if "portfolio_returns" in record:
                numbers_in(record.get("portfolio_returns"), rules, section, "portfolio_returns")
            if year >= STD_REQUIRED_FROM_YEAR and record.get("composite_standard_deviation") is None:
                rules.warn(section, "composite_standard_deviation",
                           f"Three-year standard deviation should be presented for year {year}")
            if (portfolios >= financial_stats.MIN_PORTFOLIOS_FOR_DISPERSION
                    and record.get("composite_dispersion") is None):
                rules.warn(section, "composite_dispersion",
                           f"Composite dispersion is required with {portfolios} portfolios (year {year})")

            if gross is not None:
                gross_returns.append(gross)
            if net is not None:
                net_returns.append(net)
            if gross is not None and benchmark is not None:
                paired_gross.append(gross)
                benchmark_returns.append(benchmark)

        # RULE-GIPS-09..11: disclosures
        fee_schedule = form_data.get("fee_schedule") or {}
        if not fee_schedule.get("fee_structure"):
            rules.error("additional_info", "fee_schedule", "Fee schedule is required for GIPS compliance")
        claim = (form_data.get("compliance") or {}).get("claim_of_compliance") or ""
        if "GIPS" not in claim:
            rules.warn("compliance", "claim_of_compliance",
                       "Claim of compliance should reference GIPS standards")
        if is_blank(form_data.get("benchmark_name")) or is_blank(form_data.get("benchmark_description")):
            rules.warn("composite", "benchmark",
                       "Benchmark name and description should be provided")

        monthly = form_data.get("monthly_returns") or {}
        if not isinstance(monthly, dict):
            rules.error("monthly_returns", "monthly_returns", "Monthly returns must be an object")
            monthly = {}
        composite_monthly = numbers_in(monthly.get("composite"), rules, "monthly_returns", "composite")
        numbers_in(monthly.get("benchmark"), rules, "monthly_returns", "benchmark")
        three_year = financial_stats.three_year_std(composite_monthly)

        # RULE-GIPS-12: minimum composite assets (warning, gates submission)
        latest_assets = to_number(records[-1].get("composite_assets")) if records else 0.0
        min_assets = limits["min_composite_assets"]
        threshold_met = latest_assets >= min_assets
        if not threshold_met:
            rules.warn("performance_data", "composite_assets",
                       f"Latest composite assets (${latest_assets:,.0f}) are below the "
                       f"presentation minimum (${min_assets:,.0f})")

        analysis = {
            "reporting_threshold_met": threshold_met,
            "min_composite_assets": min_assets,
            "years_of_history": len(records),
            "annualized_gross_return": round(financial_stats.annualized_return(gross_returns), 4),
            "annualized_net_return": round(financial_stats.annualized_return(net_returns), 4),
            "annualized_benchmark_return": round(financial_stats.annualized_return(benchmark_returns), 4),
            "tracking_error": round(financial_stats.tracking_error(paired_gross, benchmark_returns), 4),
            "information_ratio": round(financial_stats.information_ratio(paired_gross, benchmark_returns), 4),
            "benchmark_correlation": round(financial_stats.correlation(paired_gross, benchmark_returns), 4),
            "three_year_std": round(three_year, 4) if three_year is not None else None,
        }
        required = BASE_REQUIRED_FIELDS + FIELDS_PER_YEAR * len(records)
        return rules.build(required, analysis)

    def submission_precondition(self, result: ValidationResult) -> str | None:
        if not result.threshold_analysis.get("reporting_threshold_met"):
            return "Composite assets are below the presentation minimum; the composite is not reported"
        return None
