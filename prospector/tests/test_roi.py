from __future__ import annotations

import pytest

from prospector.config import ROIAssumptions, load_roi_assumptions
from prospector.roi import estimate_roi, field_worker_count, margin_loss_percent, weekly_admin_hours
from prospector.tests.factories import make_assessment


class TestLookups:
    @pytest.mark.parametrize("bracket,expected", [
        ("250+", 250), ("100-249", 150), ("50-99", 75), ("20-49", 35), ("1-19", 15), ("", 10),
    ])
    def test_field_worker_count(self, bracket, expected):
        assert field_worker_count(bracket) == expected

    @pytest.mark.parametrize("bucket,expected", [
        ("20+", 20), ("10-20", 15), ("5-10", 7.5), ("Less than 5", 3), ("Not sure", 12), ("???", 10),
    ])
    def test_weekly_admin_hours(self, bucket, expected):
        assert weekly_admin_hours(bucket) == expected

    def test_margin_loss_scales_with_urgency_and_caps(self):
        pains = ["Tracking job profitability", "Material ordering chaos", "Losing money on jobs", "Scheduling"]
        assert margin_loss_percent(pains, 10) == 8
        assert margin_loss_percent(pains, 5) == pytest.approx(4)
        assert margin_loss_percent([], 10) == 0


class TestEstimateROI:
    def test_example_assessment(self, assessment):
        roi = estimate_roi(assessment)
        assert roi.field_workers == 150
        assert roi.estimated_revenue == 18_000_000
        assert roi.hours_per_week == 15
        assert roi.hours_per_year == 780
        assert roi.time_cost_per_year == 27_300
        assert roi.margin_loss_percent == pytest.approx(3.6)
        assert roi.profit_margin_loss == pytest.approx(648_000)
        assert roi.change_order_loss == pytest.approx(1_440_000)
        assert roi.compliance_costs == 0
        assert roi.seat_count == 153
        assert roi.investment.software == 18_360
        assert roi.investment.training == 700
        assert roi.investment.total == 25_060
        assert roi.total_annual_savings == pytest.approx(20_475 + 388_800 + 1_152_000)
        assert roi.roi_percentage > 0
        assert roi.has_measurable_return is True

    def test_pain_point_table(self, assessment):
        rows = {r.pain_point: r for r in estimate_roi(assessment).pain_point_costs}
        assert rows["Time tracking and payroll"].annual_cost == 8190
        assert rows["Tracking job profitability"].annual_cost == 900_000
        assert rows["Tracking job profitability"].savings == 540_000
        assert rows["Change orders"].savings_percent == 80

    def test_unrecognized_pain_point_uses_default_bucket(self):
        roi = estimate_roi(make_assessment(pain_points=["Something unusual"]))
        (row,) = roi.pain_point_costs
        assert row.solution == "Integrated platform addressing this challenge"
        assert row.annual_cost == 1365
        assert row.savings_percent == 60

    def test_compliance_gated_by_pain_point(self):
        roi = estimate_roi(make_assessment(pain_points=["Safety compliance paperwork"]))
        assert roi.compliance_costs == 15_000
        assert roi.compliance_savings == pytest.approx(10_500)

    def test_small_crew_floors_at_zero(self):
        roi = estimate_roi(make_assessment(
            field_workers="1-19", hours_per_week="Less than 5", pain_points=[], urgency=0,
        ))
        assert roi.seat_count == 18
        assert roi.roi_percentage == 0
        assert roi.has_measurable_return is False
        assert roi.payback_months > 0

    def test_minimum_seats(self):
        assumptions = ROIAssumptions(field_workers_by_bracket={"1-19": 2})
        roi = estimate_roi(make_assessment(field_workers="1-19"), assumptions)
        assert roi.seat_count == 10

    @pytest.mark.parametrize("overrides", [
        {"urgency": 0, "pain_points": [], "hours_per_week": "Less than 5", "field_workers": "250+"},
        {"urgency": 10, "pain_points": ["Change orders"] * 3},
        {"field_workers": "", "hours_per_week": ""},
    ])
    def test_never_negative(self, overrides):
        roi = estimate_roi(make_assessment(**overrides))
        assert roi.roi_percentage >= 0
        assert roi.payback_months >= 0


class TestAssumptionsFile:
    def test_yaml_override_merges_over_defaults(self, tmp_path):
        path = tmp_path / "roi.yaml"
        path.write_text("roi:\n  revenue_per_worker: 100000\n  admin_hourly_rate: 40\n", encoding="utf-8")
        assumptions = load_roi_assumptions(path)
        assert assumptions.revenue_per_worker == 100_000
        assert assumptions.admin_hourly_rate == 40
        assert assumptions.onboarding_cost == 6_000

    def test_top_level_keys(self, tmp_path):
        path = tmp_path / "roi.yaml"
        path.write_text("onboarding_cost: 9000\n", encoding="utf-8")
        assert load_roi_assumptions(path).onboarding_cost == 9_000

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_roi_assumptions(tmp_path / "nope.yaml") == ROIAssumptions()

    def test_override_changes_estimate(self, assessment):
        roi = estimate_roi(assessment, ROIAssumptions(revenue_per_worker=100_000))
        assert roi.estimated_revenue == 15_000_000
