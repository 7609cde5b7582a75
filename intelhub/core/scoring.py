"""
Deterministic deal scoring.

``score_deal`` turns a deal snapshot into a 0-100 score made of five bounded
sub-scores, plus grade, priority, health and recommendations. It performs no
I/O and takes ``now`` explicitly, so the same snapshot and clock always give
the same result. Scores are recomputed on read and never stored as state.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

_DAY_SECONDS = 60 * 60 * 24

# Pipeline progression (0-100) per normalised stage label
STAGE_PROGRESSION: dict[str, int] = {
    "appointmentscheduled": 10,
    "qualifiedtobuy": 15,
    "new": 10,
    "lead": 10,
    "contacted": 15,
    "presentationscheduled": 20,
    "discovery": 25,
    "qualified": 35,
    "decisionmakerboughtin": 40,
    "proposal": 50,
    "contractsent": 60,
    "negotiation": 70,
    "closedwon": 100,
    "closedlost": 0,
}
DEFAULT_STAGE_PROGRESSION = 30

STAGE_LABELS: dict[str, str] = {
    "appointmentscheduled": "Appointment Scheduled",
    "qualifiedtobuy": "Qualified to Buy",
    "presentationscheduled": "Presentation Scheduled",
    "decisionmakerboughtin": "Decision Maker Bought In",
    "contractsent": "Contract Sent",
    "closedwon": "Closed Won",
    "closedlost": "Closed Lost",
    "new": "New",
    "lead": "Lead",
    "contacted": "Contacted",
    "discovery": "Discovery",
    "qualified": "Qualified",
    "proposal": "Proposal",
    "negotiation": "Negotiation",
}

# (minimum amount, score), checked top-down
VALUE_TIERS: list[tuple[float, int]] = [
    (100_000, 25),
    (50_000, 22),
    (25_000, 19),
    (10_000, 15),
    (5_000, 12),
    (1_000, 8),
]

# (upper bound on days until close, score) for close dates in the future or today
FUTURE_CLOSE_TIERS: list[tuple[int, int]] = [
    (7, 20),
    (14, 18),
    (30, 15),
    (60, 12),
    (90, 10),
    (180, 7),
]

# (upper bound on days since last activity, score)
ACTIVITY_TIERS: list[tuple[int, int]] = [
    (1, 15),
    (3, 13),
    (7, 11),
    (14, 9),
    (30, 7),
    (60, 5),
    (90, 3),
]

GRADE_THRESHOLDS: list[tuple[int, str]] = [
    (90, "A+"),
    (80, "A"),
    (70, "B+"),
    (60, "B"),
    (50, "C+"),
    (40, "C"),
    (30, "D"),
]

# Stale-activity placeholder when a deal has no activity or update timestamp
_NO_ACTIVITY_DAYS = 999


class Priority(str, Enum):
    HOT = "Hot"
    WARM = "Warm"
    COOL = "Cool"
    COLD = "Cold"


class Health(str, Enum):
    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"
    AT_RISK = "At Risk"
    CRITICAL = "Critical"


class DealSnapshot(BaseModel):
    """The deal fields the scorer reads."""

    deal_id: str
    dealname: str = ""
    amount: Any = None
    dealstage: str | None = None
    closedate: datetime | None = None
    is_closed: bool = False
    is_won: bool = False
    is_lost: bool = False
    company_ids: list[str] = Field(default_factory=list)
    contact_ids: list[str] = Field(default_factory=list)
    last_activity_date: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, deal) -> "DealSnapshot":
        return cls(
            deal_id=deal.hubspot_id,
            dealname=deal.dealname or "",
            amount=deal.amount,
            dealstage=deal.dealstage,
            closedate=deal.closedate,
            is_closed=bool(deal.is_closed),
            is_won=bool(deal.is_won),
            is_lost=bool(deal.is_lost),
            company_ids=list(deal.company_ids or []),
            contact_ids=list(deal.contact_ids or []),
            last_activity_date=deal.last_activity_date,
            updated_at=deal.updated_at,
        )


class DealScoreBreakdown(BaseModel):
    stage_score: int
    value_score: int
    timeline_score: int
    activity_score: int
    association_score: int


class DealScore(BaseModel):
    total_score: int
    percentage: int
    grade: str
    priority: Priority
    health_indicator: Health
    breakdown: DealScoreBreakdown
    recommendations: list[str]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_stage(stage: str | None) -> str:
    return "".join((stage or "").lower().split())


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _ceil_days(later: datetime, earlier: datetime) -> int:
    delta = (_as_utc(later) - _as_utc(earlier)).total_seconds()
    return math.ceil(delta / _DAY_SECONDS)


def _parse_amount(amount: Any) -> float | None:
    if amount is None or isinstance(amount, bool):
        return None
    try:
        value = float(str(amount).replace(",", "").strip())
    except ValueError:
        return None
    if math.isnan(value):
        return None
    return value


def _is_won(deal: DealSnapshot) -> bool:
    return deal.is_won or normalize_stage(deal.dealstage) == "closedwon"


def _is_lost(deal: DealSnapshot) -> bool:
    return deal.is_lost or normalize_stage(deal.dealstage) == "closedlost"


def _days_since_activity(deal: DealSnapshot, now: datetime) -> int | None:
    last_activity = deal.last_activity_date or deal.updated_at
    if last_activity is None:
        return None
    return _ceil_days(now, last_activity)


def _is_overdue(deal: DealSnapshot, now: datetime) -> bool:
    return deal.closedate is not None and _as_utc(deal.closedate) < _as_utc(now)


# ---------------------------------------------------------------------------
# Sub-scores
# ---------------------------------------------------------------------------


def stage_score(deal: DealSnapshot) -> int:
    """Stage progression scaled to 0-25."""
    if _is_won(deal):
        return 25
    if _is_lost(deal):
        return 0
    progression = STAGE_PROGRESSION.get(
        normalize_stage(deal.dealstage), DEFAULT_STAGE_PROGRESSION
    )
    return _round_half_up(progression / 100 * 25)


def value_score(deal: DealSnapshot) -> int:
    """Tiered on deal amount, 0-25. Missing or non-positive amounts floor at 3."""
    amount = _parse_amount(deal.amount)
    if amount is None or amount <= 0:
        return 3
    for minimum, score in VALUE_TIERS:
        if amount >= minimum:
            return score
    return 5


def timeline_score(deal: DealSnapshot, now: datetime) -> int:
    """Days from now to the close date, 0-20. Overdue decays faster than far-future."""
    if deal.closedate is None:
        return 5
    days_until_close = _ceil_days(deal.closedate, now)
    if days_until_close < -30:
        return 2
    if days_until_close < -7:
        return 5
    if days_until_close < 0:
        return 8
    for upper, score in FUTURE_CLOSE_TIERS:
        if days_until_close <= upper:
            return score
    return 5


def activity_score(deal: DealSnapshot, now: datetime) -> int:
    """Recency of the last activity (or update), 0-15."""
    days_since = _days_since_activity(deal, now)
    if days_since is None:
        return 3
    for upper, score in ACTIVITY_TIERS:
        if days_since <= upper:
            return score
    return 1


def association_score(deal: DealSnapshot) -> int:
    """Linked companies (max 7) and contacts (max 8), 0-15."""
    score = 0
    companies = len(deal.company_ids)
    contacts = len(deal.contact_ids)

    if companies >= 1:
        score += 5
    if companies >= 2:
        score += 2

    if contacts >= 1:
        score += 3
    if contacts >= 2:
        score += 2
    if contacts >= 3:
        score += 2
    if contacts >= 4:
        score += 1

    return min(score, 15)


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------


def get_grade(percentage: int) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if percentage >= threshold:
            return grade
    return "F"


def get_priority(percentage: int, deal: DealSnapshot) -> Priority:
    if _is_lost(deal):
        return Priority.COLD
    if _is_won(deal):
        return Priority.COOL
    if percentage >= 70:
        return Priority.HOT
    if percentage >= 50:
        return Priority.WARM
    if percentage >= 30:
        return Priority.COOL
    return Priority.COLD


def get_health(percentage: int, deal: DealSnapshot, now: datetime) -> Health:
    if _is_lost(deal):
        return Health.CRITICAL

    overdue = _is_overdue(deal, now)
    days_since = _days_since_activity(deal, now)
    if days_since is None:
        days_since = _NO_ACTIVITY_DAYS

    # Override rules, independent of the numeric score
    if overdue and days_since > 30:
        return Health.CRITICAL
    if overdue or days_since > 60:
        return Health.AT_RISK

    if percentage >= 75:
        return Health.EXCELLENT
    if percentage >= 55:
        return Health.GOOD
    if percentage >= 35:
        return Health.FAIR
    return Health.AT_RISK


def generate_recommendations(
    deal: DealSnapshot, breakdown: DealScoreBreakdown, now: datetime
) -> list[str]:
    recommendations = []

    if breakdown.stage_score < 10:
        recommendations.append("Move deal forward in pipeline - schedule discovery call")
    if breakdown.value_score < 10:
        recommendations.append("Update deal amount to reflect true opportunity value")
    if breakdown.timeline_score < 8:
        if _is_overdue(deal, now):
            recommendations.append(
                "Deal is overdue - update close date or close the deal"
            )
        else:
            recommendations.append("Set a realistic close date to track progress")
    if breakdown.activity_score < 7:
        recommendations.append("Deal is stale - reach out to re-engage")
    if breakdown.association_score < 5:
        recommendations.append(
            "Add company and key contacts to deal for better tracking"
        )

    if not recommendations:
        recommendations.append("Deal is well-positioned - focus on closing")

    return recommendations


def score_deal(deal: DealSnapshot, now: datetime | None = None) -> DealScore:
    """
    Score a deal snapshot.

    Args:
        deal: Deal fields as read from the local cache
        now: Reference time for timeline and activity buckets (defaults to UTC now)

    Returns:
        DealScore with total, percentage, grade, priority, health, breakdown
        and recommendations
    """
    now = _as_utc(now or datetime.now(timezone.utc))

    breakdown = DealScoreBreakdown(
        stage_score=stage_score(deal),
        value_score=value_score(deal),
        timeline_score=timeline_score(deal, now),
        activity_score=activity_score(deal, now),
        association_score=association_score(deal),
    )
    total = (
        breakdown.stage_score
        + breakdown.value_score
        + breakdown.timeline_score
        + breakdown.activity_score
        + breakdown.association_score
    )
    percentage = min(100, total)

    return DealScore(
        total_score=total,
        percentage=percentage,
        grade=get_grade(percentage),
        priority=get_priority(percentage, deal),
        health_indicator=get_health(percentage, deal, now),
        breakdown=breakdown,
        recommendations=generate_recommendations(deal, breakdown, now),
    )


def get_stage_label(stage: str) -> str:
    """Human label for a pipeline stage id, or the id itself when unknown."""
    return STAGE_LABELS.get(normalize_stage(stage), stage)


def format_deal_amount(amount: Any) -> str:
    """Compact currency string: $1.5M, $150K, $950."""
    value = _parse_amount(amount)
    if not value:
        return "$0"
    if value >= 1_000_000:
        return f"${value / 1_000_000:.1f}M"
    if value >= 1_000:
        return f"${value / 1_000:.0f}K"
    return f"${value:,.0f}" if value.is_integer() else f"${value:,}"
