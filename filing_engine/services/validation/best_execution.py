"""
Best-execution (order routing / execution quality) report rule set.

Form data layout:
    report_type: "quarterly" | "annual" | "ad_hoc"
    reporting_period: {start_date, end_date}            (ISO dates)
    venues: [{venue_id, venue_name,
              order_flow{total_orders, total_shares, total_notional_value,
                         market_orders, limit_orders, other_orders},
              execution_quality{marketable_order_fill_rate, price_improvement_rate,
                                average_effective_spread}}]
    order_analysis: {total_orders, orders_by_asset_class[{asset_class, order_count}],
                     orders_by_size[{size_bucket, order_count}]}
    best_execution_analysis: {venue_selection{selection_process, primary_factors[]}}
"""

from __future__ import annotations

from datetime import date

from filing_engine.services import financial_stats
from filing_engine.services.validation.base import (
    FormHandler,
    FormType,
    RuleCollector,
    ValidationResult,
    differs_by_more_than,
    records_in,
    to_number,
)

BASE_REQUIRED_FIELDS = 8
FIELDS_PER_VENUE = 6

ORDER_TYPE_TOLERANCE_PCT = 1
BREAKDOWN_TOLERANCE_PCT = 5
MIN_SELECTION_PROCESS_LENGTH = 50
MIN_PRIMARY_FACTORS = 3

QUARTERLY_DAYS = (85, 95)
ANNUAL_DAYS = (360, 370)


def _parse_date(value) -> date | None:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except (TypeError, ValueError):
        return None


def venue_score(venue: dict) -> float:
    """
    Execution quality score for one venue (0–100).

    40% price improvement (rate × 5, capped at 100), 40% fill rate,
    20% spread (100 − spread × 10 000, floored at 0).
    """
    quality = venue.get("execution_quality") or {}
    improvement = min(100.0, to_number(quality.get("price_improvement_rate")) * 5)
    fill = to_number(quality.get("marketable_order_fill_rate"))
    spread = max(0.0, 100 - to_number(quality.get("average_effective_spread")) * 10000)
    return improvement * 0.4 + fill * 0.4 + spread * 0.2


def average_execution_quality(venues: list[dict]) -> float:
    """Notional-weighted mean of venue scores."""
    weights = [to_number((v.get("order_flow") or {}).get("total_notional_value")) for v in venues]
    total = sum(weights)
    if total <= 0:
        return 0.0
    return sum(venue_score(v) * w for v, w in zip(venues, weights)) / total


def compliance_score(error_count: int, warning_count: int) -> float:
    return float(max(0, 100 - 15 * error_count - 5 * warning_count))


class BestExecutionHandler(FormHandler):
    form_type = FormType.BEST_EXECUTION
    default_thresholds = {"min_reportable_notional": 0, "venue_concentration_hhi": 2500}

    def prepare(self, data: dict) -> dict:
        form = dict(data or {})
        venues = [v for v in form.get("venues") or [] if isinstance(v, dict)]
        analysis = dict(form.get("order_analysis") or {})
        if "total_orders" not in analysis:
            analysis["total_orders"] = int(sum(
                to_number((v.get("order_flow") or {}).get("total_orders")) for v in venues
            ))
        form["order_analysis"] = analysis
        return form

    def validate(self, form_data: dict, thresholds: dict | None = None) -> ValidationResult:
        limits = self.thresholds(thresholds)
        rules = RuleCollector()
        form_data = form_data or {}
        report_type = form_data.get("report_type", "quarterly")
        period = form_data.get("reporting_period") or {}
        raw_venues = form_data.get("venues") or []
        order_analysis = form_data.get("order_analysis") or {}
        selection = (form_data.get("best_execution_analysis") or {}).get("venue_selection") or {}

        # RULE-BX-01: reporting period
        start, end = _parse_date(period.get("start_date")), _parse_date(period.get("end_date"))
        reporting_days = (end - start).days if start and end else 0
        if reporting_days <= 0:
            rules.error("reporting_period", "date_range", "End date must be after start date")
        elif report_type == "quarterly" and not QUARTERLY_DAYS[0] <= reporting_days <= QUARTERLY_DAYS[1]:
            rules.warn("reporting_period", "date_range",
                       "Quarterly reports should cover approximately 90 days")
        elif report_type == "annual" and not ANNUAL_DAYS[0] <= reporting_days <= ANNUAL_DAYS[1]:
            rules.warn("reporting_period", "date_range",
                       "Annual reports should cover approximately 365 days")

        # RULE-BX-02..07: venues
        if not raw_venues:
            rules.error("venues", "venues", "At least one execution venue is required")
        venue_records = records_in(raw_venues, rules, "venues", "venue")
        venues = [venue for _, venue in venue_records]

        venue_orders = 0.0
        venue_notional = []
        for idx, venue in venue_records:
            section = f"venues[{idx}]"
            flow = venue.get("order_flow") or {}
            quality = venue.get("execution_quality") or {}
            rules.require(venue.get("venue_name"), section, "venue_name", "Venue name is required")
            rules.require(venue.get("venue_id"), section, "venue_id", "Venue ID is required")
            total_orders = to_number(flow.get("total_orders"))
            rules.require_positive(total_orders, section, "order_flow.total_orders",
                                   "Total orders must be greater than zero")
            rules.require_positive(flow.get("total_shares"), section, "order_flow.total_shares",
                                   "Total shares must be greater than zero")
            rules.require_positive(flow.get("total_notional_value"), section,
                                   "order_flow.total_notional_value",
                                   "Total notional value must be greater than zero")

            by_type = sum(to_number(flow.get(k)) for k in ("market_orders", "limit_orders", "other_orders"))
            if total_orders > 0 and differs_by_more_than(by_type, total_orders, ORDER_TYPE_TOLERANCE_PCT):
                rules.warn(section, "order_flow",
                           f"Order type breakdown does not match total orders for venue "
                           f"{venue.get('venue_name') or idx}")

            for rate_field, label in (("marketable_order_fill_rate", "Fill rate"),
                                      ("price_improvement_rate", "Price improvement rate")):
                rate = to_number(quality.get(rate_field))
                if rate < 0 or rate > 100:
                    rules.error(section, f"execution_quality.{rate_field}",
                                f"{label} must be between 0 and 100")

            venue_orders += total_orders
            venue_notional.append(to_number(flow.get("total_notional_value")))

        # RULE-BX-08..10: order analysis reconciliation
        analysis_total = to_number(order_analysis.get("total_orders"))
        if analysis_total != venue_orders:
            rules.warn("order_analysis", "total_orders",
                       "Total orders in analysis should match sum of venue order flows")
        for key, message in (("orders_by_asset_class", "Asset class breakdown should account for most orders"),
                             ("orders_by_size", "Size breakdown should account for most orders")):
            buckets = records_in(order_analysis.get(key), rules, f"order_analysis.{key}", "bucket")
            breakdown = sum(to_number(b.get("order_count")) for _, b in buckets)
            if differs_by_more_than(breakdown, analysis_total, BREAKDOWN_TOLERANCE_PCT):
                rules.warn("order_analysis", key, message)

        # RULE-BX-11/12: venue selection documentation
        if len(selection.get("selection_process") or "") < MIN_SELECTION_PROCESS_LENGTH:
            rules.warn("best_execution_analysis", "venue_selection.selection_process",
                       "Venue selection process should be thoroughly documented")
        if len(selection.get("primary_factors") or []) < MIN_PRIMARY_FACTORS:
            rules.warn("best_execution_analysis", "venue_selection.primary_factors",
                       "At least 3 primary factors should be considered for venue selection")

        # RULE-BX-13: venue concentration
        hhi = financial_stats.herfindahl_index(venue_notional)
        if hhi > limits["venue_concentration_hhi"]:
            rules.warn("venues", "venue_concentration",
                       f"Order flow is highly concentrated (HHI {hhi:,.0f})")

        # RULE-BX-14: reportable notional (warning, gates submission)
        total_notional = sum(venue_notional)
        min_notional = limits["min_reportable_notional"]
        threshold_met = total_notional >= min_notional
        if not threshold_met:
            rules.warn("venues", "total_notional_value",
                       f"Total executed notional (${total_notional:,.0f}) is below the "
                       f"reportable minimum (${min_notional:,.0f})")

        analysis = {
            "reporting_threshold_met": threshold_met,
            "min_reportable_notional": min_notional,
            "total_execution_value": total_notional,
            "total_orders": venue_orders,
            "venue_concentration": round(hhi, 2),
            "average_execution_quality": round(average_execution_quality(venues), 2),
            "compliance_score": compliance_score(len(rules.errors), len(rules.warnings)),
        }
        required = BASE_REQUIRED_FIELDS + FIELDS_PER_VENUE * len(venues)
        return rules.build(required, analysis)

    def submission_precondition(self, result: ValidationResult) -> str | None:
        if not result.threshold_analysis.get("reporting_threshold_met"):
            return "Executed notional is below the reportable minimum; no report is required"
        return None
