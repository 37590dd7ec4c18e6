"""Tests for the declarative rule catalog."""

from datetime import date, datetime

import pytest

from trialguard.database.enums import DiscrepancyType, Severity
from trialguard.exceptions import RuleEvaluationError
from trialguard.quality.rules import (
    RuleCatalog,
    RuleContext,
    allowed_values,
    build_default_catalog,
    date_order,
    date_window,
    numeric_range,
    ordered_bounds,
    parse_number,
    pending_result,
    required_field,
    required_when,
    try_parse_date,
    valid_date,
    VITAL_SIGN_RANGES,
)


@pytest.fixture
def ctx():
    return RuleContext(now=datetime(2026, 3, 2, 9, 0))


class TestRuleCatalog:
    def test_default_catalog_covers_core_domains(self):
        """Every supported domain has at least one rule."""
        catalog = build_default_catalog()
        assert catalog.domains() == ["AE", "DM", "LB", "PD", "SAE", "SV", "VS"]
        assert len(catalog) > 0

    def test_rules_for_is_case_insensitive_and_ordered(self):
        catalog = build_default_catalog()
        ids = [r.rule_id for r in catalog.rules_for("lb")]
        assert ids == ["LB_RESULT_RANGE", "LB_RANGE_ORDER", "LB_UNIT_FOR_RESULT",
                       "LB_DATE_VALID", "LB_RESULT_PENDING"]

    def test_unknown_domain_has_no_rules(self):
        assert build_default_catalog().rules_for("XX") == []

    def test_duplicate_rule_id_rejected(self):
        catalog = RuleCatalog([required_field("R1", "LB", "LBTEST")])
        with pytest.raises(ValueError):
            catalog.register(required_field("R1", "LB", "LBORRES"))

    def test_rules_for_returns_a_copy(self):
        catalog = RuleCatalog([required_field("R1", "LB", "LBTEST")])
        catalog.rules_for("LB").clear()
        assert len(catalog.rules_for("LB")) == 1


class TestRequiredField:
    def test_blank_and_missing_values_fire(self, ctx):
        rule = required_field("VS_TESTCD", "VS", "VSTESTCD")
        assert rule.check({}, ctx) == {"field": "VSTESTCD"}
        assert rule.check({"VSTESTCD": "   "}, ctx) == {"field": "VSTESTCD"}
        assert rule.check({"VSTESTCD": "SYSBP"}, ctx) is None

    def test_metadata(self):
        rule = required_field("VS_TESTCD", "VS", "VSTESTCD")
        assert rule.discrepancy_type == DiscrepancyType.MISSING_FIELD
        assert rule.severity == Severity.MEDIUM
        assert rule.render_message({"field": "VSTESTCD"}) == "Required field VSTESTCD is missing"


class TestNumericRange:
    def test_record_bounds(self, ctx):
        rule = numeric_range("LB_RESULT_RANGE", "LB", "LBORRES",
                             low_field="LBSTNRLO", high_field="LBSTNRHI")
        params = rule.check({"LBORRES": "25.5", "LBSTNRLO": "13.0", "LBSTNRHI": "17.0"}, ctx)
        assert params["value"] == "25.5"
        assert rule.render_message(params) == "LBORRES value 25.5 is outside the reference range [13, 17]"

    def test_bounds_are_inclusive(self, ctx):
        rule = numeric_range("R", "LB", "LBORRES", low_field="LBSTNRLO", high_field="LBSTNRHI")
        assert rule.check({"LBORRES": "17", "LBSTNRLO": "13", "LBSTNRHI": "17"}, ctx) is None
        assert rule.check({"LBORRES": "13", "LBSTNRLO": "13", "LBSTNRHI": "17"}, ctx) is None

    def test_missing_value_or_bounds_do_not_apply(self, ctx):
        rule = numeric_range("R", "LB", "LBORRES", low_field="LBSTNRLO", high_field="LBSTNRHI")
        assert rule.check({"LBSTNRLO": "13", "LBSTNRHI": "17"}, ctx) is None
        assert rule.check({"LBORRES": "99"}, ctx) is None

    def test_one_sided_bound(self, ctx):
        rule = numeric_range("R", "LB", "LBORRES", low_field="LBSTNRLO", high_field="LBSTNRHI")
        params = rule.check({"LBORRES": "5", "LBSTNRLO": "13"}, ctx)
        assert params["high"] == "inf"

    def test_table_bounds_by_test_code(self, ctx):
        rule = numeric_range("VS", "VS", "VSORRES", table=VITAL_SIGN_RANGES, key_field="VSTESTCD")
        assert rule.check({"VSTESTCD": "sysbp", "VSORRES": "300"}, ctx)["label"] == "SYSBP"
        assert rule.check({"VSTESTCD": "SYSBP", "VSORRES": "120"}, ctx) is None
        assert rule.check({"VSTESTCD": "UNKNOWN", "VSORRES": "300"}, ctx) is None

    def test_non_numeric_value_raises(self, ctx):
        rule = numeric_range("R", "LB", "LBORRES", low_field="LBSTNRLO", high_field="LBSTNRHI")
        with pytest.raises(RuleEvaluationError) as exc:
            rule.check({"LBORRES": "abc", "LBSTNRLO": "1", "LBSTNRHI": "2"}, ctx)
        assert exc.value.rule_id == "R"


class TestValueRules:
    def test_allowed_values_case_insensitive(self, ctx):
        rule = allowed_values("DM_SEX_VALUES", "DM", "SEX", ["M", "F", "U"])
        assert rule.check({"SEX": "f"}, ctx) is None
        assert rule.check({}, ctx) is None
        params = rule.check({"SEX": "X"}, ctx)
        assert params["value"] == "X"
        assert params["allowed"] == "F, M, U"

    def test_valid_date_rejects_impossible_dates(self, ctx):
        rule = valid_date("SV_START_VALID", "SV", "SVSTDTC")
        assert rule.check({"SVSTDTC": "2023-02-30"}, ctx) == {"field": "SVSTDTC", "value": "2023-02-30"}
        assert rule.check({"SVSTDTC": "2023-02-28T10:30"}, ctx) is None
        assert rule.discrepancy_type == DiscrepancyType.INVALID_VALUE

    def test_try_parse_date_formats(self):
        assert try_parse_date("2024-01-05") == date(2024, 1, 5)
        assert try_parse_date("2024-01-05 08:00:00") == date(2024, 1, 5)
        assert try_parse_date("05/01/2024") is None

    def test_parse_number_blank_is_none(self):
        assert parse_number({"X": ""}, "X", "R") is None
        assert parse_number({"X": 4}, "X", "R") == 4.0


class TestCrossFieldRules:
    def test_date_order(self, ctx):
        rule = date_order("AE_DATES", "AE", "AESTDTC", "AEENDTC")
        assert rule.check({"AESTDTC": "2024-02-01", "AEENDTC": "2024-01-01"}, ctx) is not None
        assert rule.check({"AESTDTC": "2024-02-01", "AEENDTC": "2024-02-01"}, ctx) is None
        assert rule.check({"AESTDTC": "2024-02-01"}, ctx) is None

    def test_date_order_unparseable_raises(self, ctx):
        rule = date_order("AE_DATES", "AE", "AESTDTC", "AEENDTC")
        with pytest.raises(RuleEvaluationError):
            rule.check({"AESTDTC": "yesterday", "AEENDTC": "2024-01-01"}, ctx)

    def test_date_window_needs_a_window(self, ctx):
        rule = date_window("SV_START_WINDOW", "SV", "SVSTDTC")
        record = {"SVSTDTC": "2020-01-01"}
        assert rule.check(record, ctx) is None

        windowed = RuleContext(now=ctx.now, study_start=date(2024, 1, 1), study_end=date(2025, 12, 31))
        assert rule.check(record, windowed)["start"] == "2024-01-01"
        assert rule.check({"SVSTDTC": "2024-06-01"}, windowed) is None

    def test_required_when(self, ctx):
        rule = required_when("AE_SEV_FOR_TERM", "AE", "AETERM", "AESEV")
        assert rule.check({"AETERM": "Headache"}, ctx)["trigger_value"] == "Headache"
        assert rule.check({"AETERM": "Headache", "AESEV": "MILD"}, ctx) is None
        assert rule.check({}, ctx) is None

    def test_ordered_bounds(self, ctx):
        rule = ordered_bounds("LB_RANGE_ORDER", "LB", "LBSTNRLO", "LBSTNRHI")
        assert rule.check({"LBSTNRLO": "20", "LBSTNRHI": "10"}, ctx) is not None
        assert rule.check({"LBSTNRLO": "10", "LBSTNRHI": "20"}, ctx) is None


class TestPendingResult:
    def test_stale_after_threshold(self, ctx):
        rule = pending_result("LB_RESULT_PENDING", "LB", "LBDTC", "LBORRES")
        params = rule.check({"LBDTC": "2026-01-01"}, ctx)
        assert params["days"] == 60
        assert rule.discrepancy_type == DiscrepancyType.STALE_DATA

    def test_recent_or_reported_results_are_fine(self, ctx):
        rule = pending_result("LB_RESULT_PENDING", "LB", "LBDTC", "LBORRES")
        assert rule.check({"LBDTC": "2026-02-20"}, ctx) is None
        assert rule.check({"LBDTC": "2026-01-01", "LBORRES": "4.2"}, ctx) is None
