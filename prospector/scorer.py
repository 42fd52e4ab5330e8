"""Opportunity scoring: seven bounded sub-scales re-weighted to the config."""
from __future__ import annotations

from prospector.errors import ConfigurationError
from prospector.schemas import (
    AssessmentInput,
    OpportunityScore,
    ScoreBreakdown,
    ScoringConfig,
)
from prospector.utils import round_half_up

FACTORS = (
    "urgency", "pain_severity", "company_size", "timeline",
    "likelihood", "current_state", "budget_indicators",
)

SUBSCALE_MAX: dict[str, int] = {
    "urgency": 20,
    "pain_severity": 20,
    "company_size": 15,
    "timeline": 15,
    "likelihood": 15,
    "current_state": 10,
    "budget_indicators": 5,
}

DEFAULT_SCORING_CONFIG = ScoringConfig()

HOURS_POINTS: dict[str, float] = {
    "20+": 10, "10-20": 7, "5-10": 4, "Less than 5": 2, "Not sure": 5,
}

COMPANY_SIZE_POINTS: dict[str, float] = {
    "250+": 15, "100-249": 13, "50-99": 11, "20-49": 9, "1-19": 6,
}

# Checked in order; "Within 1 month" must win over "1-3 months" etc.
TIMELINE_POINTS: tuple[tuple[str, float], ...] = (
    ("Within 1 month", 15),
    ("1-3 months", 12),
    ("3-6 months", 8),
    ("6+ months", 4),
    ("Researching now", 2),
)


def validate_scoring_config(config: ScoringConfig) -> None:
    """Raise ConfigurationError unless the weights sum to exactly 100."""
    total = config.weights.total
    if total != 100:
        raise ConfigurationError(f"Scoring weights must total 100 (got {total})")
    if any(w < 0 for w in config.weights.model_dump().values()):
        raise ConfigurationError("Scoring weights must be non-negative")
    if not config.grade_thresholds or not config.priority_thresholds:
        raise ConfigurationError("Grade and priority thresholds must not be empty")


# ---------------------------------------------------------------------------
# Sub-scales
# ---------------------------------------------------------------------------


def urgency_points(urgency: int) -> float:
    if urgency >= 9:
        return 20
    if urgency >= 7:
        return 15 + (urgency - 7) * 2
    if urgency >= 4:
        return 6 + (urgency - 4) * 3
    return urgency * 2


def pain_severity_points(assessment: AssessmentInput) -> float:
    points = min(len(assessment.pain_points) * 1.5, 10)
    points += HOURS_POINTS.get(assessment.hours_per_week, 0)
    return min(points, 20)


def company_size_points(field_workers: str) -> float:
    return COMPANY_SIZE_POINTS.get(field_workers, 0)


def timeline_points(timeline: str) -> float:
    for marker, points in TIMELINE_POINTS:
        if marker in timeline:
            return points
    return 0


def likelihood_points(likelihood: int) -> float:
    if likelihood >= 9:
        return 15
    if likelihood >= 7:
        return 10 + (likelihood - 7) * 2.5
    if likelihood >= 4:
        return 6 + (likelihood - 4) * 1.5
    return likelihood * 1.5


def current_state_points(assessment: AssessmentInput) -> float:
    points = 0.0
    method = assessment.timesheet_method
    if "Paper" in method or "Excel" in method:
        points += 5
    if "No formal" in method:
        points += 5

    software = assessment.construction_software
    if "No, using paper/Excel" in software:
        points += 3
    if "No" in software:
        points += 2

    points += min(len(assessment.not_doing) * 0.5, 2)
    return min(points, 10)


def budget_points(assessment: AssessmentInput) -> float:
    points = 0.0
    if assessment.evaluating and "Not looking at alternatives yet" not in assessment.evaluating:
        points += 3
    if "Pricing information" in assessment.next_steps:
        points += 1
    if "See how it integrates" in assessment.next_steps:
        points += 1
    return min(points, 5)


def raw_points(assessment: AssessmentInput) -> dict[str, float]:
    """Raw sub-scale points per factor, each within ``SUBSCALE_MAX``."""
    raw = {
        "urgency": urgency_points(assessment.urgency),
        "pain_severity": pain_severity_points(assessment),
        "company_size": company_size_points(assessment.field_workers),
        "timeline": timeline_points(assessment.timeline),
        "likelihood": likelihood_points(assessment.likelihood),
        "current_state": current_state_points(assessment),
        "budget_indicators": budget_points(assessment),
    }
    return {k: max(0.0, min(float(v), SUBSCALE_MAX[k])) for k, v in raw.items()}


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------


def threshold_label(value: float, thresholds: dict[str, float]) -> str:
    """Highest threshold label whose minimum is <= *value* (inclusive).

    Falls back to the lowest label when *value* is below every minimum.
    """
    ordered = sorted(thresholds.items(), key=lambda kv: kv[1], reverse=True)
    for label, minimum in ordered:
        if value >= minimum:
            return label
    return ordered[-1][0]


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------


def recommendations(assessment: AssessmentInput, breakdown: ScoreBreakdown) -> list[str]:
    """Independent rule checks; every rule that fires adds a line."""
    recs: list[str] = []
    pains = assessment.pain_points

    if breakdown.urgency >= 15:
        recs.append("High urgency - schedule demo within 24-48 hours")
    if assessment.unionized == "Yes":
        recs.append("Unionized workforce - emphasize union payroll and certified rate handling")
    if len(pains) >= 5:
        recs.append("Multiple pain points - position the integrated platform over point solutions")
    if any("Material ordering" in p for p in pains):
        recs.append("Material ordering pain - demo the request to PO to receiving workflow")
    if any("Service work" in p for p in pains):
        recs.append("Service work pain - show service dispatch and work order tracking")
    if any("job profitability" in p for p in pains):
        recs.append("Job profitability pain - lead with real-time job costing")
    if any("Procore" in e for e in assessment.evaluating):
        recs.append("Evaluating Procore - prepare a competitive comparison on field and payroll depth")
    if assessment.demo_focus:
        recs.append(f"Focus demo on: {', '.join(assessment.demo_focus[:3])}")
    if "Within 1 month" in assessment.timeline:
        recs.append("Fast decision timeline - fast-track onboarding and pricing conversations")
    return recs


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def score(assessment: AssessmentInput, config: ScoringConfig | None = None) -> OpportunityScore:
    """Score an assessment against *config* (defaults when ``None``)."""
    config = config or DEFAULT_SCORING_CONFIG
    validate_scoring_config(config)
    weights = config.weights.model_dump()

    raw = raw_points(assessment)
    weighted = {
        factor: round_half_up(raw[factor] / SUBSCALE_MAX[factor] * weights[factor])
        for factor in FACTORS
    }
    breakdown = ScoreBreakdown(**weighted)
    total = breakdown.total
    max_score = config.weights.total
    percentage = round_half_up(total / max_score * 100) if max_score else 0

    return OpportunityScore(
        total_score=total,
        max_score=max_score,
        percentage=percentage,
        grade=threshold_label(percentage, config.grade_thresholds),
        priority=threshold_label(total, config.priority_thresholds),
        breakdown=breakdown,
        raw_breakdown=raw,
        subscale_max=dict(SUBSCALE_MAX),
        weights=weights,
        recommendations=recommendations(assessment, breakdown),
    )
