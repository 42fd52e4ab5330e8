"""Pydantic models for assessments, scores, ROI, research and reports."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


class AssessmentInput(BaseModel):
    """A prospect's submitted assessment. Frozen once constructed."""

    model_config = ConfigDict(frozen=True)

    submission_id: str = ""
    company_name: str = ""
    contact_name: str = ""
    email: str = ""
    role: str = ""
    website: str = ""
    location: str = ""

    trade: str = ""
    field_workers: str = ""
    pain_points: list[str] = []
    magic_wand: str = ""
    urgency: int = Field(0, ge=0, le=10)
    hours_per_week: str = ""

    timesheet_method: str = ""
    unionized: str = ""
    accounting_software: str = ""
    payroll_software: str = ""
    construction_software: str = ""
    not_doing: list[str] = []

    demo_focus: list[str] = []

    timeline: str = ""
    evaluating: list[str] = []
    next_steps: list[str] = []
    likelihood: int = Field(0, ge=0, le=10)

    @property
    def current_tools(self) -> list[str]:
        tools = (self.accounting_software, self.payroll_software, self.construction_software)
        return [t for t in tools if t]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class ScoringWeights(BaseModel):
    urgency: int = 20
    pain_severity: int = 20
    company_size: int = 15
    timeline: int = 15
    likelihood: int = 15
    current_state: int = 10
    budget_indicators: int = 5

    @property
    def total(self) -> int:
        return sum(self.model_dump().values())


class ScoringConfig(BaseModel):
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    grade_thresholds: dict[str, float] = Field(default_factory=lambda: {
        "A+": 90, "A": 85, "B+": 75, "B": 65, "C+": 55, "C": 45, "D": 0,
    })
    priority_thresholds: dict[str, float] = Field(default_factory=lambda: {
        "High": 75, "Medium": 55, "Low": 0,
    })
    custom_prompts: dict[str, str] = {}


class ScoreBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    urgency: int = 0
    pain_severity: int = 0
    company_size: int = 0
    timeline: int = 0
    likelihood: int = 0
    current_state: int = 0
    budget_indicators: int = 0

    @property
    def total(self) -> int:
        return sum(self.model_dump().values())


class OpportunityScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_score: int
    max_score: int
    percentage: int
    grade: str
    priority: str
    breakdown: ScoreBreakdown
    raw_breakdown: dict[str, float]
    subscale_max: dict[str, int]
    weights: dict[str, int]
    recommendations: list[str] = []


# ---------------------------------------------------------------------------
# ROI
# ---------------------------------------------------------------------------


class Investment(BaseModel):
    model_config = ConfigDict(frozen=True)

    software: float
    onboarding: float
    training: float
    total: float


class PainPointCost(BaseModel):
    model_config = ConfigDict(frozen=True)

    pain_point: str
    basis: str
    factor: float
    annual_cost: float
    solution: str
    savings: float
    savings_percent: float


class ROICalculation(BaseModel):
    model_config = ConfigDict(frozen=True)

    field_workers: int
    estimated_revenue: float
    hours_per_week: float
    hours_per_year: float
    time_cost_per_year: float

    urgency: int
    margin_loss_components: dict[str, float]
    margin_loss_percent: float
    profit_margin_loss: float
    change_order_loss_percent: float
    change_order_loss: float
    compliance_applies: bool
    compliance_costs: float
    money_cost_per_year: float
    total_annual_cost: float

    seat_count: int
    investment: Investment

    time_savings: float
    profit_improvement_percent: float
    profit_improvement: float
    change_order_capture: float
    compliance_savings: float
    total_annual_savings: float

    net_annual_value: float
    roi_percentage: float
    payback_months: float
    has_measurable_return: bool

    pain_point_costs: list[PainPointCost] = []


# ---------------------------------------------------------------------------
# Research
# ---------------------------------------------------------------------------


class CompanyInfo(BaseModel):
    description: str | None = None
    location: str | None = None
    industry: str | None = None
    size: str | None = None
    founded: str | None = None


class CompanyHistory(BaseModel):
    founded: str | None = None
    headquarters: str | None = None
    milestones: list[str] = []
    summary: str | None = None


class WebsiteAnalysis(BaseModel):
    technologies: list[str] = []
    services: list[str] = []
    value_propositions: list[str] = []
    pain_points: list[str] = []
    key_pages: list[str] = []
    company_history: CompanyHistory | None = None


class Competitor(BaseModel):
    name: str
    website: str | None = None
    description: str | None = None
    differentiation: str | None = None


class IndustryInsights(BaseModel):
    trends: list[str] = []
    challenges: list[str] = []
    opportunities: list[str] = []
    market_size: str | None = None


class ToolsResearch(BaseModel):
    mentioned: list[str] = []
    likely_using: list[str] = []
    analysis: str = ""


class KnowledgeIntelligence(BaseModel):
    similar_customers: list[dict[str, Any]] = []
    case_studies: list[dict[str, Any]] = []
    relevant_examples: list[dict[str, Any]] = []
    insights: list[str] = []


class KeyContact(BaseModel):
    name: str | None = None
    role: str | None = None
    email: str | None = None
    source: str | None = None


class SalesIntelligence(BaseModel):
    talking_points: list[str] = []
    objections: list[str] = []
    competitive_advantages: list[str] = []
    buying_signals: list[str] = []
    risks: list[str] = []
    key_contacts: list[KeyContact] = []
    decision_makers: list[str] = []


class CompanyResearch(BaseModel):
    """Research bundle built up state by state; missing fields stay ``None``."""

    company_name: str = ""
    website: str | None = None
    contact_email: str | None = None
    company_info: CompanyInfo | None = None
    website_analysis: WebsiteAnalysis | None = None
    competitors: list[Competitor] | None = None
    industry_insights: IndustryInsights | None = None
    tools_research: ToolsResearch | None = None
    knowledge_intelligence: KnowledgeIntelligence | None = None
    sales_intelligence: SalesIntelligence | None = None
    # section name -> citation ids backing it
    sources: dict[str, list[str]] = {}


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class TimeCost(BaseModel):
    hours_per_week: float
    hours_per_year: float
    cost_per_year: float


class MoneyCost(BaseModel):
    profit_margin_loss: float
    change_order_loss: float
    compliance_costs: float
    total: float


class SolutionLine(BaseModel):
    pain_point: str
    solution: str
    savings: float


class Vision(BaseModel):
    title: str
    before: list[str]
    after: list[str]
    impact: str


class CustomerReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    company_name: str
    trade: str
    field_workers: str
    top_pain_points: list[str]
    magic_wand: str
    urgency: int
    time_cost: TimeCost
    money_cost: MoneyCost
    total_cost: float
    solutions: list[SolutionLine]
    investment: float
    annual_savings: float
    net_value: float
    roi_percentage: float
    payback_months: float
    vision: Vision
    recommended_demo_focus: list[str]
    timeline: str
    grade: str
    # Present only when research produced the underlying data
    company_background: str | None = None
    industry_context: IndustryInsights | None = None


class ContactInfo(BaseModel):
    name: str | None = None
    email: str | None = None
    company_name: str | None = None
    role: str | None = None


class AssessmentSummary(BaseModel):
    trade: str
    field_workers: str
    top_pain_points: list[str]
    urgency: int
    timeline: str
    likelihood: int
    current_tools: list[str]
    demo_focus: list[str]


class TalkingPoint(BaseModel):
    point: str
    source: str
    evidence: str | None = None


class Objection(BaseModel):
    objection: str
    response: str
    source: str | None = None


class Advantage(BaseModel):
    advantage: str
    evidence: str
    source: str | None = None


class BuyingSignal(BaseModel):
    signal: str
    evidence: str
    source: str | None = None


class Risk(BaseModel):
    risk: str
    mitigation: str
    source: str | None = None


class NextStep(BaseModel):
    action: str
    rationale: str
    source: str | None = None


class AdminSalesIntelligence(BaseModel):
    priority: str
    next_steps: list[NextStep]
    demo_focus: list[str]
    talking_points: list[TalkingPoint]
    objections: list[Objection]
    competitive_advantages: list[Advantage]
    buying_signals: list[BuyingSignal]
    risks: list[Risk]
    key_contacts: list[KeyContact] = []
    decision_makers: list[str] = []


class CompetitiveIntelligence(BaseModel):
    competitors: list[Competitor]
    market_position: str


class KnowledgeSummary(BaseModel):
    similar_customers_count: int
    case_studies_count: int
    key_insights: list[str]
    success_patterns: list[str]


class AdminReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    assessment_id: str
    submitted_at: datetime
    contact_info: ContactInfo
    opportunity_score: OpportunityScore
    roi: ROICalculation
    company_research: CompanyResearch | None = None
    assessment_summary: AssessmentSummary
    sales_intelligence: AdminSalesIntelligence
    competitive_intelligence: CompetitiveIntelligence | None = None
    industry_context: IndustryInsights | None = None
    knowledge_summary: KnowledgeSummary | None = None
    # section name -> rendered "[Sources: ...]" badge
    source_badges: dict[str, str] = {}


# ---------------------------------------------------------------------------
# Derivation trace
# ---------------------------------------------------------------------------


class DerivationStep(BaseModel):
    step: int
    name: str
    description: str
    inputs: list[str]
    outputs: list[str]
    success: bool
    error: str | None = None


class FormulaTrace(BaseModel):
    name: str
    formula: str
    inputs: dict[str, Any]
    result: float


class QueryTrace(BaseModel):
    type: str
    purpose: str
    query: str
    tokens: int = 0


class Transparency(BaseModel):
    how_roi_was_calculated: str
    how_score_was_calculated: str
    how_recommendations_were_generated: str
    data_sources_used: list[str]
    assumptions_made: list[str]


class DerivationTrace(BaseModel):
    model_config = ConfigDict(frozen=True)

    report_type: str
    generated_at: datetime
    data_sources: dict[str, bool]
    steps: list[DerivationStep]
    calculations: list[FormulaTrace]
    queries: list[QueryTrace] = []
    transparency: Transparency


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


class RunOut(BaseModel):
    id: int
    submission_id: str
    company_name: str
    status: str
    error: str | None = None
    created_at: str
    completed_at: str | None = None


class RunDetail(RunOut):
    score: dict[str, Any] | None = None
    roi: dict[str, Any] | None = None
    research: dict[str, Any] | None = None
    customer_report: dict[str, Any] | None = None
    admin_report: dict[str, Any] | None = None
    derivations: dict[str, Any] | None = None
    audit: dict[str, Any] | None = None
