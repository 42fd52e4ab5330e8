"""Report composition: customer report, admin report and derivation traces.

Pure assembly over already-computed score, ROI and research.  Sections whose
research is missing are omitted, never rendered as errors.
"""
from __future__ import annotations

import re
from datetime import UTC, datetime

from prospector.audit import AuditTrail
from prospector.citations import CitationTracker
from prospector.config import ROIAssumptions
from prospector.roi import DEFAULT_ASSUMPTIONS
from prospector.scorer import FACTORS
from prospector.schemas import (
    AdminReport,
    AdminSalesIntelligence,
    Advantage,
    AssessmentInput,
    AssessmentSummary,
    BuyingSignal,
    CompanyResearch,
    CompetitiveIntelligence,
    ContactInfo,
    CustomerReport,
    DerivationStep,
    DerivationTrace,
    FormulaTrace,
    IndustryInsights,
    KnowledgeIntelligence,
    KnowledgeSummary,
    MoneyCost,
    NextStep,
    Objection,
    OpportunityScore,
    QueryTrace,
    Risk,
    ROICalculation,
    SolutionLine,
    TalkingPoint,
    TimeCost,
    Transparency,
    Vision,
)

DEFAULT_VISION_TITLE = "Transform Your Operations"

FACTOR_LABELS = {
    "urgency": "Urgency",
    "pain_severity": "Pain Severity",
    "company_size": "Company Size",
    "timeline": "Timeline",
    "likelihood": "Likelihood",
    "current_state": "Current State",
    "budget_indicators": "Budget Indicators",
}

# (pain-point keywords, before, after)
VISION_RULES: tuple[tuple[tuple[str, ...], str, str], ...] = (
    (("Time tracking", "payroll"),
     "Spending 15+ hours/week processing timesheets and payroll",
     "Automated timesheets reduce payroll processing to under 2 hours/week"),
    (("job profitability",),
     "Finding out jobs are over budget weeks after it's too late",
     "Real-time job costing shows profitability daily so issues are caught early"),
    (("Material ordering",),
     "Chaotic material requests, lost POs and cost tracking headaches",
     "Streamlined material request to PO to receiving workflow with automatic cost posting"),
    (("Change orders",),
     "Change orders fall through the cracks and money is left on the table",
     "Capture every billable change order with mobile documentation"),
    (("Paper forms",),
     "Paper forms everywhere, hard to find and easy to lose",
     "All forms digital, searchable and audit-ready in one place"),
    (("Scheduling",),
     "Scheduling conflicts and crew allocation headaches",
     "Automated scheduling with certification cross-referencing prevents conflicts"),
)


def format_currency(amount: float) -> str:
    if amount >= 1_000_000:
        return f"${amount / 1_000_000:.1f}M"
    if amount >= 1_000:
        return f"${amount / 1_000:.0f}K"
    return f"${round(amount):,}"


def _money(amount: float) -> str:
    return f"${amount:,.2f}"


# ---------------------------------------------------------------------------
# Customer report
# ---------------------------------------------------------------------------


def build_vision(assessment: AssessmentInput, roi: ROICalculation) -> Vision:
    pains = assessment.pain_points
    before: list[str] = []
    after: list[str] = []
    for keywords, was, will_be in VISION_RULES:
        if any(k in p for p in pains for k in keywords):
            before.append(was)
            after.append(will_be)
    if not before:
        before = ["Manual processes eating into your margins",
                  "Multiple disconnected systems creating chaos"]
        after = ["One integrated platform streamlining all operations",
                 "Automated workflows saving time and reducing errors"]
    impact = (
        f"Save {round(roi.hours_per_week)} hours/week and {format_currency(roi.total_annual_savings)} "
        f"annually while improving job profitability by {roi.profit_improvement_percent:.1f}%"
    )
    return Vision(title=assessment.magic_wand or DEFAULT_VISION_TITLE,
                  before=before, after=after, impact=impact)


def _company_background(research: CompanyResearch | None) -> str | None:
    if research is None:
        return None
    if research.company_info and research.company_info.description:
        return research.company_info.description
    history = research.website_analysis.company_history if research.website_analysis else None
    if history is None:
        return None
    if history.summary:
        return history.summary
    facts = []
    if history.founded:
        facts.append(f"Founded {history.founded}")
    if history.headquarters:
        facts.append(f"headquartered in {history.headquarters}")
    return ", ".join(facts) or None


def _has_industry(insights: IndustryInsights | None) -> bool:
    return insights is not None and bool(insights.trends or insights.challenges or insights.opportunities)


def compose_customer_report(
    score: OpportunityScore,
    roi: ROICalculation,
    research: CompanyResearch | None,
    assessment: AssessmentInput,
) -> CustomerReport:
    money_total = roi.profit_margin_loss + roi.change_order_loss + roi.compliance_costs
    return CustomerReport(
        company_name=assessment.company_name,
        trade=assessment.trade or "Contractor",
        field_workers=assessment.field_workers,
        top_pain_points=assessment.pain_points[:5],
        magic_wand=assessment.magic_wand,
        urgency=assessment.urgency,
        time_cost=TimeCost(
            hours_per_week=roi.hours_per_week,
            hours_per_year=roi.hours_per_year,
            cost_per_year=roi.time_cost_per_year,
        ),
        money_cost=MoneyCost(
            profit_margin_loss=roi.profit_margin_loss,
            change_order_loss=roi.change_order_loss,
            compliance_costs=roi.compliance_costs,
            total=money_total,
        ),
        total_cost=roi.total_annual_cost,
        solutions=[
            SolutionLine(pain_point=row.pain_point, solution=row.solution, savings=row.savings)
            for row in roi.pain_point_costs
        ],
        investment=roi.investment.total,
        annual_savings=roi.total_annual_savings,
        net_value=roi.net_annual_value,
        roi_percentage=roi.roi_percentage,
        payback_months=roi.payback_months,
        vision=build_vision(assessment, roi),
        recommended_demo_focus=assessment.demo_focus[:3],
        timeline=assessment.timeline,
        grade=score.grade,
        company_background=_company_background(research),
        industry_context=research.industry_insights
        if research is not None and _has_industry(research.industry_insights) else None,
    )


# ---------------------------------------------------------------------------
# Admin report: sales-intelligence normalization
# ---------------------------------------------------------------------------

_SOURCE_RE = re.compile(r"(?:Based on|From|Source:)\s*([^:()]+)", re.IGNORECASE)
_ADVANTAGE_SOURCE_RE = re.compile(r"(?:from|based on|source:)\s*([^,.()]+)", re.IGNORECASE)
_PAIR_SPLIT = r"\s[—–-]\s|{label}:"


def _split_pair(text: str, label: str) -> tuple[str, str] | None:
    parts = [p.strip() for p in re.split(_PAIR_SPLIT.format(label=label), text, maxsplit=1, flags=re.IGNORECASE)]
    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    return None


def _research_source(text: str) -> str:
    return "Knowledge Base" if "Knowledge Base" in text else "Research Analysis"


def format_talking_points(points: list[str]) -> list[TalkingPoint]:
    out = []
    for point in points:
        match = _SOURCE_RE.search(point)
        quantified = any(marker in point for marker in ("ROI", "%", "$"))
        out.append(TalkingPoint(
            point=point,
            source=match.group(1).strip() if match else "Research Analysis",
            evidence="Quantified data" if quantified else None,
        ))
    return out


def format_objections(objections: list[str]) -> list[Objection]:
    out = []
    for text in objections:
        pair = _split_pair(text, "Response") or _split_pair(text, "because")
        if pair:
            out.append(Objection(objection=pair[0], response=pair[1], source=_research_source(text)))
        else:
            out.append(Objection(objection=text, response="Address during demo with specific examples",
                                 source="Research Analysis"))
    return out


def format_advantages(advantages: list[str]) -> list[Advantage]:
    out = []
    for text in advantages:
        match = _ADVANTAGE_SOURCE_RE.search(text)
        evidence = text if ("unlike" in text or "because" in text) else "Research comparison"
        out.append(Advantage(
            advantage=text, evidence=evidence,
            source=match.group(1).strip() if match else "Research Analysis",
        ))
    return out


def format_buying_signals(signals: list[str], assessment: AssessmentInput) -> list[BuyingSignal]:
    out = []
    for text in signals:
        pair = _split_pair(text, "Evidence")
        if pair:
            out.append(BuyingSignal(signal=pair[0], evidence=pair[1], source="Assessment + Research"))
        else:
            out.append(BuyingSignal(signal=text, evidence="Assessment responses", source="Assessment"))
    if "Within 1 month" in assessment.timeline:
        out.append(BuyingSignal(signal="Urgent timeline", evidence=f"Timeline: {assessment.timeline}",
                                source="Assessment Response"))
    if assessment.urgency >= 8:
        out.append(BuyingSignal(signal="High urgency", evidence=f"Urgency score: {assessment.urgency}/10",
                                source="Assessment Response"))
    return out


def format_risks(risks: list[str]) -> list[Risk]:
    out = []
    for text in risks:
        pair = _split_pair(text, "Mitigation")
        if pair:
            out.append(Risk(risk=pair[0], mitigation=pair[1], source=_research_source(text)))
        else:
            out.append(Risk(risk=text, mitigation="Address proactively during sales process",
                            source="Research Analysis"))
    return out


def success_patterns(intel: KnowledgeIntelligence | None) -> list[str]:
    if intel is None or not intel.similar_customers:
        return []
    patterns = []
    if len(intel.similar_customers) >= 3:
        patterns.append(f"{len(intel.similar_customers)} similar customers found in knowledge base")
    if intel.case_studies:
        patterns.append(f"{len(intel.case_studies)} relevant case studies available")
    return patterns


def next_steps(assessment: AssessmentInput, score: OpportunityScore,
               research: CompanyResearch | None, roi: ROICalculation) -> list[NextStep]:
    steps: list[NextStep] = []
    intel = research.knowledge_intelligence if research else None
    similar = len(intel.similar_customers) if intel else 0
    cases = len(intel.case_studies) if intel else 0

    if score.priority == "High":
        steps.append(NextStep(
            action="Schedule demo within 24-48 hours",
            rationale=f"High priority opportunity (score: {score.total_score}/{score.max_score}, grade: {score.grade})",
            source="Opportunity Score Analysis",
        ))
        steps.append(NextStep(
            action="Send personalized ROI report",
            rationale=f"ROI: {roi.roi_percentage:.0f}%, Annual Savings: ${roi.total_annual_savings:,.0f}",
            source="ROI Calculation",
        ))
    elif score.priority == "Medium":
        steps.append(NextStep(
            action="Schedule demo within 1 week",
            rationale=f"Medium priority opportunity (score: {score.total_score}/{score.max_score})",
            source="Opportunity Score Analysis",
        ))
        if cases:
            steps.append(NextStep(action="Follow up with relevant case studies",
                                  rationale=f"{cases} case studies available from the knowledge base",
                                  source="Knowledge Base"))
    else:
        steps.append(NextStep(action="Add to nurture sequence",
                              rationale="Low priority - maintain engagement",
                              source="Opportunity Score Analysis"))

    if "Within 1 month" in assessment.timeline:
        steps.append(NextStep(action="Fast-track onboarding process",
                              rationale=f"Timeline: {assessment.timeline}", source="Assessment Response"))
        if similar:
            steps.append(NextStep(action="Reference similar customer implementation timelines",
                                  rationale=f"{similar} similar customers in the knowledge base",
                                  source="Knowledge Base"))

    tools = research.tools_research.mentioned if research and research.tools_research else []
    if tools:
        steps.append(NextStep(action=f"Research integration with: {', '.join(tools)}",
                              rationale=f"Current tools identified: {', '.join(tools)}",
                              source="Assessment + Website Analysis"))
    if assessment.evaluating:
        names = ", ".join(assessment.evaluating)
        steps.append(NextStep(action=f"Prepare competitive comparison vs: {names}",
                              rationale=f"Competitors being evaluated: {names}",
                              source="Assessment Response"))
    if similar:
        steps.append(NextStep(action="Prepare success stories from similar customers",
                              rationale=f"{similar} similar customers found in the knowledge base",
                              source="Knowledge Base"))
    return steps


def market_position(assessment: AssessmentInput) -> str:
    size, trade = assessment.field_workers, assessment.trade
    if "250+" in size:
        return f"Large {trade} contractor - enterprise opportunity"
    if "100-249" in size:
        return f"Mid-large {trade} contractor - growth opportunity"
    if "50-99" in size:
        return f"Mid-size {trade} contractor - scaling opportunity"
    return f"Small {trade} contractor - efficiency opportunity"


def compose_admin_report(
    assessment: AssessmentInput,
    score: OpportunityScore,
    roi: ROICalculation,
    research: CompanyResearch | None,
    citations: CitationTracker | None = None,
) -> AdminReport:
    intel = research.sales_intelligence if research else None
    knowledge = research.knowledge_intelligence if research else None

    badges: dict[str, str] = {}
    if citations is not None and research is not None:
        for section, ids in research.sources.items():
            badge = citations.format_badge(ids)
            if badge:
                badges[section] = badge

    return AdminReport(
        assessment_id=assessment.submission_id,
        submitted_at=datetime.now(UTC),
        contact_info=ContactInfo(
            name=assessment.contact_name or None, email=assessment.email or None,
            company_name=assessment.company_name or None, role=assessment.role or None,
        ),
        opportunity_score=score,
        roi=roi,
        company_research=research,
        assessment_summary=AssessmentSummary(
            trade=assessment.trade,
            field_workers=assessment.field_workers,
            top_pain_points=list(assessment.pain_points),
            urgency=assessment.urgency,
            timeline=assessment.timeline,
            likelihood=assessment.likelihood,
            current_tools=assessment.current_tools,
            demo_focus=list(assessment.demo_focus),
        ),
        sales_intelligence=AdminSalesIntelligence(
            priority=score.priority,
            next_steps=next_steps(assessment, score, research, roi),
            demo_focus=list(assessment.demo_focus),
            talking_points=format_talking_points(intel.talking_points if intel else []),
            objections=format_objections(intel.objections if intel else []),
            competitive_advantages=format_advantages(intel.competitive_advantages if intel else []),
            buying_signals=format_buying_signals(intel.buying_signals if intel else [], assessment),
            risks=format_risks(intel.risks if intel else []),
            key_contacts=list(intel.key_contacts) if intel else [],
            decision_makers=list(intel.decision_makers) if intel else [],
        ),
        competitive_intelligence=CompetitiveIntelligence(
            competitors=list(research.competitors),
            market_position=market_position(assessment),
        ) if research is not None and research.competitors is not None else None,
        industry_context=research.industry_insights
        if research is not None and _has_industry(research.industry_insights) else None,
        knowledge_summary=KnowledgeSummary(
            similar_customers_count=len(knowledge.similar_customers),
            case_studies_count=len(knowledge.case_studies),
            key_insights=list(knowledge.insights),
            success_patterns=success_patterns(knowledge),
        ) if knowledge is not None else None,
        source_badges=badges,
    )


# ---------------------------------------------------------------------------
# Derivation traces
# ---------------------------------------------------------------------------


def _pain_point_formulas(roi: ROICalculation, a: ROIAssumptions) -> list[FormulaTrace]:
    rows = []
    for row in roi.pain_point_costs:
        if row.basis == "revenue":
            cost = f"round({_money(roi.estimated_revenue)} × {row.factor:g}) = {_money(row.annual_cost)}"
            inputs = {"estimated_revenue": roi.estimated_revenue, "factor": row.factor}
        else:
            cost = (f"round({roi.hours_per_week:g} h/week × {row.factor:g} × {a.weeks_per_year} weeks × "
                    f"{_money(a.admin_hourly_rate)}/h) = {_money(row.annual_cost)}")
            inputs = {"hours_per_week": roi.hours_per_week, "factor": row.factor,
                      "weeks_per_year": a.weeks_per_year, "admin_hourly_rate": a.admin_hourly_rate}
        rows.append(FormulaTrace(
            name=f"pain_point.{row.pain_point}.annual_cost",
            formula=cost, inputs={"basis": row.basis, **inputs}, result=row.annual_cost,
        ))
        rows.append(FormulaTrace(
            name=f"pain_point.{row.pain_point}.savings",
            formula=f"round({_money(row.annual_cost)} × {row.savings_percent:g}%) = {_money(row.savings)}",
            inputs={"annual_cost": row.annual_cost, "savings_percent": row.savings_percent},
            result=row.savings,
        ))
    return rows


def roi_formulas(roi: ROICalculation, a: ROIAssumptions = DEFAULT_ASSUMPTIONS) -> list[FormulaTrace]:
    inv = roi.investment
    components = roi.margin_loss_components
    summed = " + ".join(f"{v:g}" for v in components.values()) or "0"
    rows = [
        FormulaTrace(
            name="estimated_revenue",
            formula=f"{roi.field_workers} field workers × {_money(a.revenue_per_worker)} = {_money(roi.estimated_revenue)}",
            inputs={"field_workers": roi.field_workers, "revenue_per_worker": a.revenue_per_worker},
            result=roi.estimated_revenue,
        ),
        FormulaTrace(
            name="hours_per_year",
            formula=f"{roi.hours_per_week:g} h/week × {a.weeks_per_year} weeks = {roi.hours_per_year:g} h",
            inputs={"hours_per_week": roi.hours_per_week, "weeks_per_year": a.weeks_per_year},
            result=roi.hours_per_year,
        ),
        FormulaTrace(
            name="time_cost_per_year",
            formula=(f"{roi.hours_per_week} h/week × {a.weeks_per_year} weeks × "
                     f"{_money(a.admin_hourly_rate)}/h = {_money(roi.time_cost_per_year)}"),
            inputs={"hours_per_week": roi.hours_per_week, "weeks_per_year": a.weeks_per_year,
                    "admin_hourly_rate": a.admin_hourly_rate},
            result=roi.time_cost_per_year,
        ),
        FormulaTrace(
            name="margin_loss_percent",
            formula=(f"min(({summed}) × {roi.urgency}/10, {a.margin_loss_cap_percent:g}%) "
                     f"= {roi.margin_loss_percent:.2f}%"),
            inputs={"components": dict(components), "urgency": roi.urgency,
                    "cap_percent": a.margin_loss_cap_percent},
            result=roi.margin_loss_percent,
        ),
        FormulaTrace(
            name="profit_margin_loss",
            formula=(f"{_money(roi.estimated_revenue)} × {roi.margin_loss_percent:.2f}% "
                     f"= {_money(roi.profit_margin_loss)}"),
            inputs={"estimated_revenue": roi.estimated_revenue, "margin_loss_percent": roi.margin_loss_percent,
                    "cap_percent": a.margin_loss_cap_percent},
            result=roi.profit_margin_loss,
        ),
        FormulaTrace(
            name="change_order_loss",
            formula=(f"{_money(roi.estimated_revenue)} × {roi.change_order_loss_percent:g}% "
                     f"= {_money(roi.change_order_loss)}"),
            inputs={"estimated_revenue": roi.estimated_revenue,
                    "change_order_loss_percent": roi.change_order_loss_percent},
            result=roi.change_order_loss,
        ),
        FormulaTrace(
            name="compliance_costs",
            formula=(f"{_money(a.compliance_annual_cost) if roi.compliance_applies else '$0.00'} "
                     f"(safety/compliance pain point {'mentioned' if roi.compliance_applies else 'not mentioned'}) "
                     f"= {_money(roi.compliance_costs)}"),
            inputs={"compliance_applies": roi.compliance_applies,
                    "compliance_annual_cost": a.compliance_annual_cost},
            result=roi.compliance_costs,
        ),
        FormulaTrace(
            name="money_cost_per_year",
            formula=(f"{_money(roi.profit_margin_loss)} + {_money(roi.change_order_loss)} + "
                     f"{_money(roi.compliance_costs)} = {_money(roi.money_cost_per_year)}"),
            inputs={"margin_loss": roi.profit_margin_loss, "change_order_loss": roi.change_order_loss,
                    "compliance": roi.compliance_costs},
            result=roi.money_cost_per_year,
        ),
        FormulaTrace(
            name="total_annual_cost",
            formula=(f"{_money(roi.time_cost_per_year)} + {_money(roi.profit_margin_loss)} + "
                     f"{_money(roi.change_order_loss)} + {_money(roi.compliance_costs)} = {_money(roi.total_annual_cost)}"),
            inputs={"time_cost": roi.time_cost_per_year, "margin_loss": roi.profit_margin_loss,
                    "change_order_loss": roi.change_order_loss, "compliance": roi.compliance_costs},
            result=roi.total_annual_cost,
        ),
        FormulaTrace(
            name="seat_count",
            formula=f"max({roi.field_workers} + {a.office_staff_buffer}, {a.minimum_seats}) = {roi.seat_count}",
            inputs={"field_workers": roi.field_workers, "office_staff_buffer": a.office_staff_buffer,
                    "minimum_seats": a.minimum_seats},
            result=roi.seat_count,
        ),
        FormulaTrace(
            name="investment_total",
            formula=(f"{roi.seat_count} seats × {_money(a.seat_price_monthly)} × 12 = {_money(inv.software)}; "
                     f"+ onboarding {_money(inv.onboarding)} + training {a.training_hours} h × "
                     f"{_money(a.admin_hourly_rate)} = {_money(inv.total)}"),
            inputs={"seat_count": roi.seat_count, "software": inv.software,
                    "onboarding": inv.onboarding, "training": inv.training},
            result=inv.total,
        ),
        FormulaTrace(
            name="profit_improvement_percent",
            formula=(f"min({roi.margin_loss_percent:.2f}% × {a.margin_recovery_rate:g}, "
                     f"{a.margin_recovery_cap_percent:g}%) = {roi.profit_improvement_percent:.2f}%"),
            inputs={"margin_loss_percent": roi.margin_loss_percent,
                    "margin_recovery_rate": a.margin_recovery_rate,
                    "cap_percent": a.margin_recovery_cap_percent},
            result=roi.profit_improvement_percent,
        ),
        FormulaTrace(
            name="total_annual_savings",
            formula=(f"{_money(roi.time_cost_per_year)} × {a.time_savings_rate} + "
                     f"{_money(roi.estimated_revenue)} × {roi.profit_improvement_percent:.2f}% + "
                     f"{_money(roi.change_order_loss)} × {a.change_order_capture_rate} + "
                     f"{_money(roi.compliance_costs)} × {a.compliance_savings_rate} = {_money(roi.total_annual_savings)}"),
            inputs={"time_savings": roi.time_savings, "profit_improvement": roi.profit_improvement,
                    "change_order_capture": roi.change_order_capture,
                    "compliance_savings": roi.compliance_savings},
            result=roi.total_annual_savings,
        ),
        FormulaTrace(
            name="net_annual_value",
            formula=f"{_money(roi.total_annual_savings)} - {_money(inv.software)} = {_money(roi.net_annual_value)}",
            inputs={"total_annual_savings": roi.total_annual_savings, "software": inv.software},
            result=roi.net_annual_value,
        ),
        FormulaTrace(
            name="roi_percentage",
            formula=(f"max(0, ({_money(roi.net_annual_value)} - {_money(inv.onboarding)} - "
                     f"{_money(inv.training)}) / {_money(inv.total)} × 100) = {roi.roi_percentage:.1f}%"),
            inputs={"net_annual_value": roi.net_annual_value, "onboarding": inv.onboarding,
                    "training": inv.training, "investment_total": inv.total},
            result=roi.roi_percentage,
        ),
        FormulaTrace(
            name="payback_months",
            formula=(f"max(0, {_money(inv.total)} / ({_money(roi.total_annual_savings)} / 12)) "
                     f"= {roi.payback_months:.1f} months"),
            inputs={"investment_total": inv.total, "total_annual_savings": roi.total_annual_savings},
            result=roi.payback_months,
        ),
    ]
    return rows + _pain_point_formulas(roi, a)


def score_formulas(score: OpportunityScore) -> list[FormulaTrace]:
    weighted = score.breakdown.model_dump()
    weights_total = score.max_score
    rows = []
    for factor in FACTORS:
        raw = score.raw_breakdown[factor]
        ceiling = score.subscale_max[factor]
        weight = score.weights[factor]
        rows.append(FormulaTrace(
            name=f"score.{factor}",
            formula=f"round({raw:g} / {ceiling} × {weight}) = {weighted[factor]}",
            inputs={"raw": raw, "subscale_max": ceiling, "weight": weight},
            result=weighted[factor],
        ))
    parts = " + ".join(str(weighted[f]) for f in FACTORS)
    rows.append(FormulaTrace(
        name="score.total",
        formula=f"{parts} = {score.total_score}",
        inputs=weighted,
        result=score.total_score,
    ))
    rows.append(FormulaTrace(
        name="score.percentage",
        formula=f"round({score.total_score} / {weights_total} × 100) = {score.percentage}",
        inputs={"total_score": score.total_score, "weights_total": weights_total},
        result=score.percentage,
    ))
    return rows


def query_traces(audit: AuditTrail | None) -> list[QueryTrace]:
    if audit is None:
        return []
    kinds = {"llm_query": "llm", "knowledge_query": "knowledge", "web_search": "web", "web_scrape": "web"}
    out = []
    for entry in audit.entries:
        if entry.type not in kinds:
            continue
        d = entry.details
        usage = d.response.token_usage if d.response and d.response.token_usage else None
        out.append(QueryTrace(
            type=kinds[entry.type],
            purpose=entry.action,
            query=(d.prompt or d.query or d.url or "")[:500],
            tokens=usage.input + usage.output if usage else 0,
        ))
    return out


def _roi_narrative(roi: ROICalculation, a: ROIAssumptions) -> str:
    inv = roi.investment
    verdict = "" if roi.has_measurable_return else " (no measurable return yet)"
    return "\n".join([
        "ROI was calculated as follows:",
        f"1. Time costs: {roi.hours_per_week} hours/week × {a.weeks_per_year} weeks × "
        f"{_money(a.admin_hourly_rate)}/hour = {_money(roi.time_cost_per_year)}/year",
        f"2. Money costs: margin loss {roi.margin_loss_percent:.1f}% of {_money(roi.estimated_revenue)} revenue "
        f"+ change orders {_money(roi.change_order_loss)} + compliance {_money(roi.compliance_costs)} "
        f"= {_money(roi.money_cost_per_year)}/year",
        f"3. Total annual cost: {_money(roi.total_annual_cost)}",
        f"4. Investment: {_money(inv.onboarding + inv.training)} one-time + {_money(inv.software)}/year",
        f"5. Annual savings: {_money(roi.total_annual_savings)}",
        f"6. ROI: ({_money(roi.net_annual_value)} - {_money(inv.onboarding + inv.training)}) / "
        f"{_money(inv.total)} × 100 = {roi.roi_percentage:.1f}%{verdict}",
        f"7. Payback: {roi.payback_months:.1f} months",
    ])


def _score_narrative(score: OpportunityScore) -> str:
    weighted = score.breakdown.model_dump()
    lines = [f"Opportunity score breakdown (total: {score.total_score}/{score.max_score}):"]
    for factor in FACTORS:
        lines.append(
            f"- {FACTOR_LABELS[factor]}: {weighted[factor]} "
            f"(raw {score.raw_breakdown[factor]:g}/{score.subscale_max[factor]})"
        )
    lines.append(f"Grade: {score.grade} ({score.percentage}%)")
    lines.append(f"Priority: {score.priority}")
    return "\n".join(lines)


def _assumptions(a: ROIAssumptions) -> list[str]:
    return [
        f"Average admin rate: {_money(a.admin_hourly_rate)}/hour",
        f"Revenue per field worker: {_money(a.revenue_per_worker)}/year",
        f"Time savings: {a.time_savings_rate:.0%} reduction of admin time",
        f"Profit improvement: {a.margin_recovery_rate:.0%} recovery of margin loss, capped at {a.margin_recovery_cap_percent:g}%",
        f"Change order capture: {a.change_order_capture_rate:.0%} of lost change orders",
        f"Compliance savings: {a.compliance_savings_rate:.0%} of compliance overhead",
    ]


def _research_steps(research: CompanyResearch | None) -> list[DerivationStep]:
    r = research or CompanyResearch()
    return [
        DerivationStep(step=1, name="Company Web Research",
                       description="Searched the web for the company website and basic details",
                       inputs=["company_name", "trade"], outputs=["company_info", "website"],
                       success=bool(r.company_info or r.website)),
        DerivationStep(step=2, name="Website Analysis",
                       description="Scraped and analyzed the company website",
                       inputs=["website"], outputs=["website_analysis"],
                       success=r.website_analysis is not None),
        DerivationStep(step=3, name="Competitor Research",
                       description="Identified local competitors and their differentiation",
                       inputs=["trade", "location"], outputs=["competitors"],
                       success=bool(r.competitors)),
        DerivationStep(step=4, name="Industry Research",
                       description="Researched industry trends, challenges and opportunities",
                       inputs=["trade", "field_workers"], outputs=["industry_insights"],
                       success=r.industry_insights is not None),
        DerivationStep(step=5, name="Tools Research",
                       description="Analyzed the current software stack",
                       inputs=["current_tools"], outputs=["tools_research"],
                       success=r.tools_research is not None),
        DerivationStep(step=6, name="Knowledge Base Research",
                       description="Queried the knowledge base for similar customers and case studies",
                       inputs=["trade", "field_workers", "pain_points"], outputs=["knowledge_intelligence"],
                       success=r.knowledge_intelligence is not None),
        DerivationStep(step=7, name="Sales Intelligence Generation",
                       description="Generated talking points, objections, advantages, signals and risks",
                       inputs=["all_research", "assessment"], outputs=["sales_intelligence"],
                       success=r.sales_intelligence is not None),
    ]


def explain(
    report: CustomerReport | AdminReport,
    score: OpportunityScore,
    roi: ROICalculation,
    research: CompanyResearch | None,
    audit: AuditTrail | None = None,
    assumptions: ROIAssumptions = DEFAULT_ASSUMPTIONS,
) -> DerivationTrace:
    """Explain how every number and claim in *report* was produced."""
    is_admin = isinstance(report, AdminReport)
    calculations = roi_formulas(roi, assumptions) + score_formulas(score)
    data_sources = {
        "assessment_data": True,
        "roi_calculation": True,
        "opportunity_score": True,
        "company_research": research is not None,
        "generated_content": bool(audit and audit.summary.total_llm_queries),
    }

    if is_admin:
        steps = _research_steps(research)
        recommendations = "\n".join([
            "Sales recommendations were generated from:",
            "1. Company research (web search, website, competitors, industry)",
            "2. Tools and software stack analysis",
            "3. Knowledge-base queries for similar customers",
            "4. Generated analysis of buying signals and objections",
            "5. Assessment responses (timeline, likelihood, demo focus)",
        ])
        sources = ["Assessment form responses", "Web search", "Company website",
                   "Competitor research", "Industry research", "Knowledge base",
                   "Generative analysis (sales intelligence)"]
        assumptions_made = _assumptions(assumptions) + [
            "Company website accurately represents their operations",
            "Competitor information from web search is current",
            "Similar customers in the knowledge base are relevant comparisons",
        ]
    else:
        steps = [
            DerivationStep(step=1, name="Data Collection", description="Collected assessment responses",
                           inputs=["assessment"], outputs=["assessment_data"], success=True),
            DerivationStep(step=2, name="ROI Calculation",
                           description="Calculated annual costs, savings and ROI from crew size, pain points and admin hours",
                           inputs=["field_workers", "hours_per_week", "pain_points", "urgency"],
                           outputs=["total_annual_cost", "total_annual_savings", "roi_percentage", "payback_months"],
                           success=True),
            DerivationStep(step=3, name="Opportunity Scoring",
                           description="Scored the opportunity on seven weighted factors",
                           inputs=list(FACTORS), outputs=["total_score", "grade", "priority"], success=True),
            DerivationStep(step=4, name="Report Generation",
                           description="Assembled ROI, solutions and vision into the customer report",
                           inputs=["assessment_data", "roi", "score"], outputs=["customer_report"], success=True),
            DerivationStep(step=5, name="Research Context",
                           description="Added company background and industry context where research found them",
                           inputs=["company_research"], outputs=["company_background", "industry_context"],
                           success=research is not None),
        ]
        recommendations = "\n".join([
            "Recommendations were generated from:",
            "1. Assessment responses (pain points, urgency, timeline, likelihood)",
            "2. ROI calculations showing specific savings opportunities",
            "3. Rule checks on pain points, competitors being evaluated and demo focus",
        ])
        sources = ["Assessment form responses", "ROI calculation engine", "Opportunity scoring algorithm"]
        if research is not None:
            sources.append("Company research")
        assumptions_made = _assumptions(assumptions)

    return DerivationTrace(
        report_type="admin" if is_admin else "customer",
        generated_at=datetime.now(UTC),
        data_sources=data_sources,
        steps=steps,
        calculations=calculations,
        queries=query_traces(audit),
        transparency=Transparency(
            how_roi_was_calculated=_roi_narrative(roi, assumptions),
            how_score_was_calculated=_score_narrative(score),
            how_recommendations_were_generated=recommendations,
            data_sources_used=sources,
            assumptions_made=assumptions_made,
        ),
    )
