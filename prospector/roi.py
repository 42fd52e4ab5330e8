"""ROI model: annual cost of the status quo versus platform investment and savings."""
from __future__ import annotations

from prospector.config import ROIAssumptions
from prospector.schemas import AssessmentInput, Investment, PainPointCost, ROICalculation

DEFAULT_ASSUMPTIONS = ROIAssumptions()

# (keywords, basis, factor, solution, savings %). "hours" rules take a share of
# weekly admin time; "revenue" rules take a share of estimated revenue.
# First match wins; the trailing entry is the default bucket.
PAIN_POINT_RULES: tuple[tuple[tuple[str, ...], str, float, str, float], ...] = (
    (("Time tracking", "payroll"), "hours", 0.30,
     "Automated mobile timesheets with union payroll calculations", 75),
    (("job profitability",), "revenue", 0.05,
     "Real-time job costing and profitability dashboards", 60),
    (("Invoicing", "billing"), "hours", 0.20,
     "Automated progress billing and invoicing", 70),
    (("Material ordering",), "revenue", 0.03,
     "Material request to PO to receiving workflow", 50),
    (("Change orders",), "revenue", 0.08,
     "Mobile change order capture and tracking", 80),
    (("Scheduling",), "hours", 0.15,
     "Automated crew scheduling with certification cross-referencing", 65),
    (("Paper forms", "documents"), "hours", 0.10,
     "Digital forms and document management", 80),
    (("communication",), "hours", 0.10,
     "Integrated field-office communication hub", 50),
)
DEFAULT_PAIN_POINT_RULE = ((), "hours", 0.05, "Integrated platform addressing this challenge", 60)


def _lookup(value: str, table: dict[str, float], default: float) -> float:
    for key, mapped in table.items():
        if key in value:
            return mapped
    return default


def field_worker_count(bracket: str, assumptions: ROIAssumptions = DEFAULT_ASSUMPTIONS) -> int:
    return int(_lookup(bracket, assumptions.field_workers_by_bracket, assumptions.default_field_workers))


def weekly_admin_hours(bucket: str, assumptions: ROIAssumptions = DEFAULT_ASSUMPTIONS) -> float:
    return float(_lookup(bucket, assumptions.hours_by_bucket, assumptions.default_hours_per_week))


def _mentions(pain_points: list[str], *needles: str) -> bool:
    return any(n in p for p in pain_points for n in needles)


def margin_loss_components(pain_points: list[str],
                           assumptions: ROIAssumptions = DEFAULT_ASSUMPTIONS) -> dict[str, float]:
    """Revenue-loss percent per configured pain point the prospect mentioned."""
    return {
        keyword: loss for keyword, loss in assumptions.margin_loss_by_pain_point.items()
        if _mentions(pain_points, keyword)
    }


def margin_loss_percent(pain_points: list[str], urgency: int,
                        assumptions: ROIAssumptions = DEFAULT_ASSUMPTIONS) -> float:
    """Percent of revenue eroded, scaled by urgency/10 and capped."""
    percent = sum(margin_loss_components(pain_points, assumptions).values())
    percent *= urgency / 10
    return min(percent, assumptions.margin_loss_cap_percent)


def pain_point_costs(pain_points: list[str], hours_per_week: float, revenue: float,
                     assumptions: ROIAssumptions = DEFAULT_ASSUMPTIONS) -> list[PainPointCost]:
    hourly_cost = assumptions.weeks_per_year * assumptions.admin_hourly_rate
    rows: list[PainPointCost] = []
    for pain in pain_points:
        rule = next(
            (r for r in PAIN_POINT_RULES if any(k in pain for k in r[0])),
            DEFAULT_PAIN_POINT_RULE,
        )
        _, basis, factor, solution, percent = rule
        if basis == "revenue":
            annual = round(revenue * factor)
        else:
            annual = round(hours_per_week * factor * hourly_cost)
        rows.append(PainPointCost(
            pain_point=pain,
            basis=basis,
            factor=factor,
            annual_cost=annual,
            solution=solution,
            savings=round(annual * percent / 100),
            savings_percent=percent,
        ))
    return rows


def estimate_roi(assessment: AssessmentInput,
                 assumptions: ROIAssumptions = DEFAULT_ASSUMPTIONS) -> ROICalculation:
    """Estimate annual costs, investment, savings, ROI and payback for an assessment."""
    a = assumptions
    pains = assessment.pain_points

    workers = field_worker_count(assessment.field_workers, a)
    revenue = workers * a.revenue_per_worker
    hours_per_week = weekly_admin_hours(assessment.hours_per_week, a)
    hours_per_year = hours_per_week * a.weeks_per_year
    time_cost = hours_per_year * a.admin_hourly_rate

    loss_percent = margin_loss_percent(pains, assessment.urgency, a)
    margin_loss = revenue * loss_percent / 100
    change_order_percent = a.change_order_loss_percent if _mentions(pains, "Change orders") else 0
    change_order_loss = revenue * change_order_percent / 100
    compliance_applies = _mentions(pains, "Safety", "compliance")
    compliance = a.compliance_annual_cost if compliance_applies else 0
    money_cost = margin_loss + change_order_loss + compliance
    total_cost = time_cost + money_cost

    seats = max(workers + a.office_staff_buffer, a.minimum_seats)
    software = seats * a.seat_price_monthly * 12
    training = a.training_hours * a.admin_hourly_rate
    investment = Investment(
        software=software,
        onboarding=a.onboarding_cost,
        training=training,
        total=software + a.onboarding_cost + training,
    )

    time_savings = time_cost * a.time_savings_rate
    improvement_percent = min(loss_percent * a.margin_recovery_rate, a.margin_recovery_cap_percent)
    profit_improvement = revenue * improvement_percent / 100
    change_order_capture = change_order_loss * a.change_order_capture_rate
    compliance_savings = compliance * a.compliance_savings_rate
    total_savings = time_savings + profit_improvement + change_order_capture + compliance_savings

    # One-time costs are excluded from net annual value
    net_value = total_savings - investment.software
    raw_roi = (net_value - investment.onboarding - investment.training) / investment.total * 100
    raw_payback = investment.total / (total_savings / 12) if total_savings > 0 else 0.0

    return ROICalculation(
        field_workers=workers,
        estimated_revenue=revenue,
        hours_per_week=hours_per_week,
        hours_per_year=hours_per_year,
        time_cost_per_year=time_cost,
        urgency=assessment.urgency,
        margin_loss_components=margin_loss_components(pains, a),
        margin_loss_percent=loss_percent,
        profit_margin_loss=margin_loss,
        change_order_loss_percent=change_order_percent,
        change_order_loss=change_order_loss,
        compliance_applies=compliance_applies,
        compliance_costs=compliance,
        money_cost_per_year=money_cost,
        total_annual_cost=total_cost,
        seat_count=seats,
        investment=investment,
        time_savings=time_savings,
        profit_improvement_percent=improvement_percent,
        profit_improvement=profit_improvement,
        change_order_capture=change_order_capture,
        compliance_savings=compliance_savings,
        total_annual_savings=total_savings,
        net_annual_value=net_value,
        roi_percentage=max(raw_roi, 0.0),
        payback_months=max(raw_payback, 0.0),
        has_measurable_return=raw_roi > 0 and total_savings > 0,
        pain_point_costs=pain_point_costs(pains, hours_per_week, revenue, a),
    )
