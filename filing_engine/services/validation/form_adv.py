"""
Form ADV (investment adviser registration) rule set.

Form data layout:
    filing_type: "annual" | "amendment" | "other"
    part_1a: {firm_name, business_address{street, city, state, country},
              executive_officers[{name, title}], owners_and_executives[],
              assets_under_management, sec_registered}
    part_2a: {business_description, fee_structure}
"""

from __future__ import annotations

from filing_engine.services.validation.base import (
    FormHandler,
    FormType,
    RuleCollector,
    ValidationResult,
    is_blank,
    records_in,
    to_number,
)

BASE_REQUIRED_FIELDS = 16
FIELDS_PER_OFFICER = 2


class FormADVHandler(FormHandler):
    form_type = FormType.FORM_ADV
    default_thresholds = {"sec_registration_threshold": 100_000_000}

    def prepare(self, data: dict) -> dict:
        data = data or {}
        if "part_1a" in data:
            return dict(data)
        firm = data.get("firm") or {}
        return {
            "filing_type": data.get("filing_type", "annual"),
            "part_1a": {
                "firm_name": firm.get("name") or "",
                "business_address": firm.get("address") or {},
                "executive_officers": list(firm.get("executive_officers") or []),
                "owners_and_executives": list(firm.get("owners_and_executives") or []),
                "assets_under_management": to_number(firm.get("aum")),
                "sec_registered": bool(firm.get("sec_registered", False)),
            },
            "part_2a": {
                "business_description": data.get("business_description") or "",
                "fee_structure": data.get("fee_structure") or "",
            },
        }

    def validate(self, form_data: dict, thresholds: dict | None = None) -> ValidationResult:
        limits = self.thresholds(thresholds)
        rules = RuleCollector()
        form_data = form_data or {}
        part_1a = form_data.get("part_1a") or {}
        part_2a = form_data.get("part_2a") or {}

        # RULE-ADV-01: business address
        address = part_1a.get("business_address") or {}
        if is_blank(address.get("street")) or is_blank(address.get("city")):
            rules.error("part_1a", "business_address", "Business address is required")

        # RULE-ADV-02: executive officers, each named and titled
        officers = part_1a.get("executive_officers") or []
        if not officers:
            rules.error("part_1a", "executive_officers",
                        "At least one executive officer is required")
        officer_records = records_in(officers, rules, "part_1a.executive_officers",
                                     "executive officer")
        for idx, officer in officer_records:
            section = f"part_1a.executive_officers[{idx}]"
            rules.require(officer.get("name"), section, "name", "Executive officer name is required")
            rules.require(officer.get("title"), section, "title", "Executive officer title is required")

        # RULE-ADV-03: AUM
        aum = to_number(part_1a.get("assets_under_management"))
        rules.require_positive(aum, "part_1a", "assets_under_management",
                               "Assets under management must be greater than zero")

        # RULE-ADV-04/05: brochure content
        rules.require(part_2a.get("business_description"), "part_2a", "business_description",
                      "Business description is required")
        rules.require(part_2a.get("fee_structure"), "part_2a", "fee_structure",
                      "Fee structure is required")

        if not part_1a.get("owners_and_executives"):
            rules.warn("part_1a", "owners_and_executives",
                       "Schedule A owners and executives information is missing")

        # RULE-ADV-06: SEC registration threshold
        threshold = limits["sec_registration_threshold"]
        threshold_met = aum >= threshold
        if threshold_met and not part_1a.get("sec_registered"):
            rules.warn("part_1a", "sec_registered",
                       f"Advisers with AUM >= ${threshold:,.0f} must register with the SEC")
        elif not threshold_met:
            rules.warn("part_1a", "assets_under_management",
                       f"AUM (${aum:,.0f}) is below the SEC registration threshold "
                       f"(${threshold:,.0f}); state registration may apply")

        analysis = {
            "reporting_threshold_met": threshold_met,
            "sec_registration_required": threshold_met,
            "assets_under_management": aum,
        }
        required = BASE_REQUIRED_FIELDS + FIELDS_PER_OFFICER * len(officers)
        return rules.build(required, analysis)
