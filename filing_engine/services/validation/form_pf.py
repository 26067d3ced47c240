"""
Form PF (private fund risk report) rule set.

Fund size drives the obligations: section 4 becomes mandatory at the
section-4 threshold and quarterly reporting applies to large private funds.

Form data layout:
    filing_type: "annual" | "quarterly"
    section_1: {fund_legal_name, primary_business_address{street, city, state, country}}
    section_2: {advisor_crd_number, reporting_fund_aum}
    section_3: {investment_strategy{<strategy>: bool, other: str}, geographic_focus{<region>: pct}}
    section_4: {portfolio_liquidity{<bucket>: pct}, monthly_net_return[pct], leverage_ratio}
"""

from __future__ import annotations

from datetime import date, timedelta

from filing_engine.services import financial_stats
from filing_engine.services.validation.base import (
    FormHandler,
    FormType,
    RuleCollector,
    ValidationResult,
    is_blank,
    numbers_in,
    to_number,
)

REQUIRED_FIELDS_WITH_SECTION_4 = 25
REQUIRED_FIELDS_WITHOUT_SECTION_4 = 18

ALLOCATION_TOLERANCE_PCT = 1

ANNUAL_DUE_DAYS = 120
QUARTERLY_DUE_DAYS = 60


def _allocation_total(allocation) -> float:
    if not isinstance(allocation, dict):
        return 0.0
    return sum(to_number(v) for v in allocation.values())


def _has_strategy(strategy) -> bool:
    if isinstance(strategy, list):
        return any(not is_blank(s) for s in strategy)
    if isinstance(strategy, dict):
        return any(v is True for v in strategy.values()) or not is_blank(strategy.get("other"))
    return False


class FormPFHandler(FormHandler):
    form_type = FormType.FORM_PF
    default_thresholds = {
        "reporting_threshold": 150_000_000,
        "section_4_threshold": 500_000_000,
        "large_fund_threshold": 1_500_000_000,
    }

    def prepare(self, data: dict) -> dict:
        """Map fund and adviser details onto the sectioned form layout."""
        data = data or {}
        if "section_1" in data:
            return dict(data)
        fund = data.get("fund") or {}
        advisor = data.get("advisor") or {}
        form = {
            "filing_type": data.get("filing_type", "annual"),
            "section_1": {
                "fund_legal_name": fund.get("legal_name") or fund.get("name") or "",
                "primary_business_address": fund.get("address") or {},
            },
            "section_2": {
                "advisor_crd_number": advisor.get("crd_number") or "",
                "reporting_fund_aum": to_number(fund.get("aum")),
            },
            "section_3": {
                "investment_strategy": fund.get("strategies") or {},
                "geographic_focus": fund.get("geographic_focus") or {},
            },
        }
        if data.get("liquidity") or data.get("monthly_returns"):
            form["section_4"] = {
                "portfolio_liquidity": data.get("liquidity") or {},
                "monthly_net_return": list(data.get("monthly_returns") or []),
                "leverage_ratio": data.get("leverage_ratio"),
            }
        return form

    def validate(self, form_data: dict, thresholds: dict | None = None) -> ValidationResult:
        limits = self.thresholds(thresholds)
        rules = RuleCollector()
        form_data = form_data or {}
        s1 = form_data.get("section_1") or {}
        s2 = form_data.get("section_2") or {}
        s3 = form_data.get("section_3") or {}
        s4 = form_data.get("section_4")
        if s4 and not isinstance(s4, dict):
            rules.error("section_4", "section_4", "Section 4 must be an object")
            s4 = None
        filing_type = form_data.get("filing_type", "annual")

        # RULE-PF-01..05: identification and size
        rules.require(s1.get("fund_legal_name"), "section_1", "fund_legal_name",
                      "Fund legal name is required")
        address = s1.get("primary_business_address") or {}
        if is_blank(address.get("street")) or is_blank(address.get("city")):
            rules.error("section_1", "primary_business_address",
                        "Primary business address is required")
        rules.require(s2.get("advisor_crd_number"), "section_2", "advisor_crd_number",
                      "Adviser CRD number is required")
        aum = to_number(s2.get("reporting_fund_aum"))
        rules.require_positive(aum, "section_2", "reporting_fund_aum",
                               "Reporting fund AUM must be greater than zero")
        if not _has_strategy(s3.get("investment_strategy")):
            rules.error("section_3", "investment_strategy",
                        "At least one investment strategy must be selected")

        # RULE-PF-06: geographic allocation reconciles to 100%
        geo = s3.get("geographic_focus")
        if geo and abs(_allocation_total(geo) - 100) > ALLOCATION_TOLERANCE_PCT:
            rules.warn("section_3", "geographic_focus",
                       "Geographic focus percentages should total 100%")

        # RULE-PF-07: section 4 cascade
        requires_section_4 = aum >= limits["section_4_threshold"]
        is_large = aum >= limits["large_fund_threshold"]
        if requires_section_4 and not s4:
            rules.error("section_4", "section_4",
                        f"Section 4 is required for funds with NAV >= ${limits['section_4_threshold']:,.0f}")

        volatility = None
        if s4:
            liquidity = s4.get("portfolio_liquidity")
            if abs(_allocation_total(liquidity) - 100) > ALLOCATION_TOLERANCE_PCT:
                rules.warn("section_4", "portfolio_liquidity",
                           "Portfolio liquidity percentages should total 100%")
            returns = numbers_in(s4.get("monthly_net_return"), rules, "section_4", "monthly_net_return")
            if filing_type == "annual" and len(returns) < 12:
                rules.warn("section_4", "monthly_net_return",
                           "Annual filings should include 12 months of return data")
            if returns:
                volatility = round(financial_stats.annualized_volatility(returns), 4)

        # RULE-PF-08: reporting frequency matches fund size
        if filing_type == "quarterly" and not is_large:
            rules.warn("filing_type", "filing_type",
                       "Quarterly filing is only required for large private funds")

        # RULE-PF-09: reporting threshold (warning, gates submission)
        threshold_met = aum >= limits["reporting_threshold"]
        if not threshold_met:
            rules.warn("section_2", "reporting_fund_aum",
                       f"Fund AUM (${aum:,.0f}) is below the Form PF reporting threshold "
                       f"(${limits['reporting_threshold']:,.0f})")

        analysis = {
            "requires_section_4": requires_section_4,
            "is_large_private_fund": is_large,
            "reporting_threshold_met": threshold_met,
            "reporting_fund_aum": aum,
            "annualized_volatility": volatility,
        }
        required = (REQUIRED_FIELDS_WITH_SECTION_4 if requires_section_4
                    else REQUIRED_FIELDS_WITHOUT_SECTION_4)
        return rules.build(required, analysis)

    def submission_precondition(self, result: ValidationResult) -> str | None:
        if not result.threshold_analysis.get("reporting_threshold_met"):
            return "Fund does not meet the minimum reporting threshold for Form PF"
        return None


def _quarter_end(day: date) -> date:
    quarter_last_month = ((day.month - 1) // 3 + 1) * 3
    if quarter_last_month == 12:
        return date(day.year, 12, 31)
    return date(day.year, quarter_last_month + 1, 1) - timedelta(days=1)


def filing_requirements(funds: list[dict], today: date, thresholds: dict | None = None) -> list[dict]:
    """
    Determine Form PF obligations for a set of funds.

    Each fund is {fund_id, fund_name, aum}. Frequency is ``none`` below the
    reporting threshold, ``quarterly`` for large private funds, otherwise
    ``annual``.
    """
    limits = FormPFHandler().thresholds(thresholds)
    results = []
    for fund in funds or []:
        aum = to_number(fund.get("aum"))
        if aum < limits["reporting_threshold"]:
            frequency, next_due = "none", None
        elif aum >= limits["large_fund_threshold"]:
            frequency = "quarterly"
            next_due = _quarter_end(today) + timedelta(days=QUARTERLY_DUE_DAYS)
        else:
            frequency = "annual"
            next_due = date(today.year, 12, 31) + timedelta(days=ANNUAL_DUE_DAYS)
        results.append({
            "fund_id": fund.get("fund_id"),
            "fund_name": fund.get("fund_name"),
            "aum": aum,
            "filing_frequency": frequency,
            "requires_section_4": aum >= limits["section_4_threshold"],
            "next_due_date": next_due.isoformat() if next_due else None,
        })
    return results
