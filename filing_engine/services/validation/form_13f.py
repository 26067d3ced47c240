"""
Form 13F (institutional investment manager holdings) rule set.

Holding values are reported in thousands of dollars; the reporting
threshold is compared against the dollar total.

Form data layout:
    cover_page: {manager_name, manager_cik, report_type, report_calendar_quarter,
                 table_entry_total, table_value_total}
    holdings:   [{cusip, name_of_issuer, title_of_class, value,
                  shares_or_principal_amount, shares_or_principal_type,
                  investment_discretion, voting_authority{sole, shared, none}}]
    summary:    {total_value_portfolio, total_number_of_holdings}
"""

from __future__ import annotations

import re
from collections import Counter

from filing_engine.services import financial_stats
from filing_engine.services.validation.base import (
    FormHandler,
    FormType,
    IssueSeverity,
    RuleCollector,
    ValidationResult,
    differs_by_more_than,
    is_blank,
    records_in,
    to_number,
)

CIK_PATTERN = re.compile(r"^\d{10}$")
CUSIP_PATTERN = re.compile(r"^[0-9A-Z]{9}$")
INVESTMENT_DISCRETION = {"SOLE", "SHARED", "NONE"}

# Fixed cover/summary fields plus per-holding fields
BASE_REQUIRED_FIELDS = 10
FIELDS_PER_HOLDING = 6

RECONCILIATION_TOLERANCE_PCT = 1


def _thousands(amount) -> int:
    return int(round(to_number(amount) / 1000))


class Form13FHandler(FormHandler):
    form_type = FormType.FORM_13F
    default_thresholds = {"reporting_threshold": 100_000_000}

    # ── Prepare ──────────────────────────────────────────────────────────

    def prepare(self, data: dict) -> dict:
        """
        Build 13F form data from manager details and positions.

        Positions may carry ``market_value`` in dollars or ``value`` already
        in thousands. Cover and summary totals are derived here.
        """
        data = data or {}
        manager = data.get("manager") or data.get("cover_page") or {}
        holdings = []
        for position in data.get("holdings") or []:
            if not isinstance(position, dict):
                # Left as-is so validation reports it
                holdings.append(position)
                continue
            if "market_value" in position:
                value = _thousands(position.get("market_value"))
            else:
                value = int(round(to_number(position.get("value"))))
            shares = to_number(position.get("shares_or_principal_amount", position.get("shares")))
            voting = position.get("voting_authority") or {"sole": shares, "shared": 0, "none": 0}
            holdings.append({
                "cusip": (position.get("cusip") or "").strip().upper(),
                "name_of_issuer": position.get("name_of_issuer") or position.get("security_name") or "",
                "title_of_class": position.get("title_of_class") or "COM",
                "value": value,
                "shares_or_principal_amount": shares,
                "shares_or_principal_type": position.get("shares_or_principal_type", "SH"),
                "put_call": position.get("put_call"),
                "investment_discretion": position.get("investment_discretion", "SOLE"),
                "voting_authority": voting,
            })

        total_value = sum(h["value"] for h in holdings if isinstance(h, dict))
        return {
            "cover_page": {
                "manager_name": manager.get("manager_name") or manager.get("name") or "",
                "manager_cik": manager.get("manager_cik") or manager.get("cik") or "",
                "report_type": manager.get("report_type", "13F HOLDINGS REPORT"),
                "report_calendar_quarter": manager.get("report_calendar_quarter"),
                "table_entry_total": len(holdings),
                "table_value_total": total_value,
            },
            "holdings": holdings,
            "summary": {
                "total_value_portfolio": total_value,
                "total_number_of_holdings": len(holdings),
            },
        }

    # ── Validate ─────────────────────────────────────────────────────────

    def validate(self, form_data: dict, thresholds: dict | None = None) -> ValidationResult:
        limits = self.thresholds(thresholds)
        rules = RuleCollector()
        form_data = form_data or {}
        cover = form_data.get("cover_page") or {}
        holdings = form_data.get("holdings") or []
        summary = form_data.get("summary")
        records = records_in(holdings, rules, "holdings", "holding")
        holding_count = len(holdings) if isinstance(holdings, list) else len(records)

        # RULE-13F-01/02: manager identification
        rules.require(cover.get("manager_name"), "cover_page", "manager_name",
                      "Manager name is required")
        rules.require_pattern(cover.get("manager_cik"), CIK_PATTERN, "cover_page", "manager_cik",
                              "Manager CIK must be exactly 10 digits")

        # RULE-13F-03..09: per-holding fields
        for idx, holding in records:
            section = f"holdings[{idx}]"
            label = holding.get("name_of_issuer") or f"holding {idx + 1}"
            rules.require_pattern(holding.get("cusip"), CUSIP_PATTERN, section, "cusip",
                                  f"Invalid CUSIP for {label}: must be 9 alphanumeric characters")
            rules.require(holding.get("name_of_issuer"), section, "name_of_issuer",
                          "Name of issuer is required")
            rules.require(holding.get("title_of_class"), section, "title_of_class",
                          f"Title of class is required for {label}")
            rules.require_positive(holding.get("value"), section, "value",
                                   f"Value must be greater than zero for {label}")
            rules.require_positive(holding.get("shares_or_principal_amount"), section,
                                   "shares_or_principal_amount",
                                   f"Shares or principal amount is required for {label}")
            if holding.get("investment_discretion") not in INVESTMENT_DISCRETION:
                rules.error(section, "investment_discretion",
                            f"Investment discretion must be one of SOLE, SHARED, NONE for {label}")

            # RULE-13F-10: voting authority reconciles with position size (warning)
            voting = holding.get("voting_authority")
            expected = to_number(holding.get("shares_or_principal_amount"))
            if isinstance(voting, dict) and expected > 0:
                voting_total = sum(to_number(voting.get(k)) for k in ("sole", "shared", "none"))
                if differs_by_more_than(voting_total, expected, RECONCILIATION_TOLERANCE_PCT):
                    rules.warn(section, "voting_authority",
                               f"Voting authority total ({voting_total:g}) does not match "
                               f"shares/principal ({expected:g}) for {label}")

        # RULE-13F-11: summary block present and consistent
        calculated_total = sum(to_number(h.get("value")) for _, h in records)
        if not isinstance(summary, dict) or is_blank(summary):
            rules.error("summary", "summary", "Summary page is required",
                        severity=IssueSeverity.CRITICAL)
            reported_total = calculated_total
        else:
            reported_count = int(to_number(summary.get("total_number_of_holdings"), -1))
            if reported_count != holding_count:
                rules.error("summary", "total_number_of_holdings",
                            f"Total number of holdings ({reported_count}) does not match "
                            f"actual holdings count ({holding_count})")
            reported_total = to_number(summary.get("total_value_portfolio"))
            if differs_by_more_than(calculated_total, reported_total, RECONCILIATION_TOLERANCE_PCT):
                rules.warn("summary", "total_value_portfolio",
                           f"Total portfolio value ({reported_total:g}) differs from the sum "
                           f"of holdings ({calculated_total:g}) by more than 1%")

        # RULE-13F-12: duplicate CUSIPs
        cusip_counts = Counter(h.get("cusip") for _, h in records if h.get("cusip"))
        duplicates = sorted(c for c, n in cusip_counts.items() if n > 1)
        if duplicates:
            rules.warn("holdings", "cusip",
                       f"Duplicate CUSIPs found: {', '.join(duplicates)}")

        # RULE-13F-13: reporting threshold (warning, gates submission)
        total_dollars = reported_total * 1000
        threshold = limits["reporting_threshold"]
        threshold_met = total_dollars >= threshold
        if not threshold_met:
            rules.warn("summary", "total_value_portfolio",
                       f"Portfolio value (${total_dollars:,.0f}) is below the 13F reporting "
                       f"threshold (${threshold:,.0f})")

        values = [to_number(h.get("value")) for _, h in records]
        analysis = {
            "reporting_threshold_met": threshold_met,
            "reporting_threshold": threshold,
            "total_holdings": holding_count,
            "total_value": total_dollars,
            "duplicate_holdings": len(duplicates),
            "missing_cusips": sum(1 for _, h in records if is_blank(h.get("cusip"))),
            "herfindahl_index": round(financial_stats.herfindahl_index(values), 2),
            "top5_concentration": round(financial_stats.concentration(values, 5), 2),
            "top10_concentration": round(financial_stats.concentration(values, 10), 2),
        }
        required = BASE_REQUIRED_FIELDS + FIELDS_PER_HOLDING * holding_count
        return rules.build(required, analysis)

    def submission_precondition(self, result: ValidationResult) -> str | None:
        if not result.threshold_analysis.get("reporting_threshold_met"):
            return "Portfolio value is below the 13F reporting threshold; no filing is required"
        return None


def analyze_holdings(form_data: dict, top_n: int = 10) -> dict:
    """Concentration and voting profile of a 13F holdings table."""
    holdings = [h for h in (form_data or {}).get("holdings") or [] if isinstance(h, dict)]
    values = [to_number(h.get("value")) for h in holdings]
    total = sum(values)
    ranked = sorted(holdings, key=lambda h: to_number(h.get("value")), reverse=True)

    voting = {"sole": 0.0, "shared": 0.0, "none": 0.0}
    for h in holdings:
        for key in voting:
            voting[key] += to_number((h.get("voting_authority") or {}).get(key))

    return {
        "total_holdings": len(holdings),
        "total_value": total * 1000,
        "top_holdings": [
            {
                "cusip": h.get("cusip"),
                "name_of_issuer": h.get("name_of_issuer"),
                "value": to_number(h.get("value")) * 1000,
                "percentage": round(to_number(h.get("value")) / total * 100, 2) if total else 0.0,
            }
            for h in ranked[:top_n]
        ],
        "top5_concentration": round(financial_stats.concentration(values, 5), 2),
        "top10_concentration": round(financial_stats.concentration(values, 10), 2),
        "herfindahl_index": round(financial_stats.herfindahl_index(values), 2),
        "voting_authority": voting,
    }
