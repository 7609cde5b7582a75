"""
Change detection and bounded history for intelligence job reruns.

History snapshots are compressed copies of a prior job (identity, result,
timing, stats). The tool-call log is never carried over.
"""

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

HISTORY_LIMIT = 20

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WORD_OVERLAP_THRESHOLD = 0.6


class ChangeDetectionResult(BaseModel):
    has_changes: bool = False
    score_change: float | None = None
    previous_score: float | None = None
    current_score: float | None = None
    changed_fields: list[str] = Field(default_factory=list)
    new_insights: list[str] = Field(default_factory=list)
    new_risks: list[str] = Field(default_factory=list)
    resolved_risks: list[str] = Field(default_factory=list)
    new_opportunities: list[str] = Field(default_factory=list)
    resolved_opportunities: list[str] = Field(default_factory=list)
    summary: str = ""


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def extract_score(result: dict[str, Any] | None) -> float | None:
    """Primary score of a result: deal score, then health, then engagement."""
    if not result:
        return None
    deal_score = result.get("deal_score")
    if isinstance(deal_score, dict) and deal_score.get("total_score") is not None:
        return deal_score["total_score"]
    if isinstance(deal_score, (int, float)):
        return deal_score
    for key in ("health_score", "engagement_score"):
        if result.get(key) is not None:
            return result[key]
    return None


def _normalize(text: str) -> str:
    return _NON_ALNUM_RE.sub("", text.lower()).strip()


def is_similar(a: str, b: str) -> bool:
    """Loose text match: equal, contained, or more than 60% shared words."""
    norm_a = _normalize(a)
    norm_b = _normalize(b)
    if not norm_a or not norm_b:
        return norm_a == norm_b
    if norm_a == norm_b:
        return True
    if norm_a in norm_b or norm_b in norm_a:
        return True

    words_a = set(norm_a.split())
    words_b = set(norm_b.split())
    overlap = len(words_a & words_b) / min(len(words_a), len(words_b))
    return overlap > _WORD_OVERLAP_THRESHOLD


def find_new_items(current: list[str] | None, previous: list[str] | None) -> list[str]:
    """Items of ``current`` with no similar counterpart in ``previous``."""
    previous = [p for p in (previous or []) if isinstance(p, str)]
    return [
        item
        for item in (current or [])
        if isinstance(item, str) and not any(is_similar(p, item) for p in previous)
    ]


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def generate_change_summary(changes: ChangeDetectionResult) -> str:
    if not changes.has_changes:
        return "No significant changes detected since the last analysis."

    parts = []
    if changes.score_change:
        direction = "improved" if changes.score_change > 0 else "declined"
        parts.append(
            f"Score {direction} by {abs(changes.score_change):g} points "
            f"({changes.previous_score:g} → {changes.current_score:g})"
        )
    if changes.new_insights:
        n = len(changes.new_insights)
        parts.append(f"{n} new {_plural(n, 'insight', 'insights')} discovered")
    if changes.new_risks:
        n = len(changes.new_risks)
        parts.append(f"{n} new {_plural(n, 'risk', 'risks')} identified")
    if changes.resolved_risks:
        n = len(changes.resolved_risks)
        parts.append(f"{n} {_plural(n, 'risk', 'risks')} resolved")
    if changes.new_opportunities:
        n = len(changes.new_opportunities)
        parts.append(
            f"{n} new {_plural(n, 'opportunity', 'opportunities')} found"
        )
    if changes.resolved_opportunities:
        n = len(changes.resolved_opportunities)
        parts.append(
            f"{n} {_plural(n, 'opportunity', 'opportunities')} addressed"
        )
    if not parts:
        parts.append(f"Updated: {', '.join(changes.changed_fields)}")

    return ". ".join(parts) + "."


def detect_changes(
    current: dict[str, Any] | None, previous: dict[str, Any] | None
) -> ChangeDetectionResult:
    """
    Diff two job results.

    Args:
        current: Result of the job that just completed
        previous: Result of the job it superseded, or None for a first run

    Returns:
        ChangeDetectionResult with per-field deltas and a readable summary
    """
    changes = ChangeDetectionResult()
    if not previous:
        changes.summary = "Initial analysis - no previous data to compare."
        return changes

    current = current or {}

    current_score = extract_score(current)
    previous_score = extract_score(previous)
    if current_score is not None and previous_score is not None:
        diff = current_score - previous_score
        if diff != 0:
            changes.has_changes = True
            changes.score_change = diff
            changes.previous_score = previous_score
            changes.current_score = current_score
            changes.changed_fields.append("score")

    changes.new_insights = find_new_items(
        current.get("insights"), previous.get("insights")
    )
    if changes.new_insights:
        changes.has_changes = True
        changes.changed_fields.append("insights")

    changes.new_risks = find_new_items(
        current.get("risk_factors"), previous.get("risk_factors")
    )
    changes.resolved_risks = find_new_items(
        previous.get("risk_factors"), current.get("risk_factors")
    )
    if changes.new_risks or changes.resolved_risks:
        changes.has_changes = True
        changes.changed_fields.append("risk_factors")

    changes.new_opportunities = find_new_items(
        current.get("opportunity_signals"), previous.get("opportunity_signals")
    )
    changes.resolved_opportunities = find_new_items(
        previous.get("opportunity_signals"), current.get("opportunity_signals")
    )
    if changes.new_opportunities or changes.resolved_opportunities:
        changes.has_changes = True
        changes.changed_fields.append("opportunity_signals")

    current_actions = current.get("recommended_actions")
    previous_actions = previous.get("recommended_actions")
    if find_new_items(current_actions, previous_actions) or find_new_items(
        previous_actions, current_actions
    ):
        changes.has_changes = True
        changes.changed_fields.append("recommended_actions")

    changes.summary = generate_change_summary(changes)
    return changes


def create_history_snapshot(
    job, changes: ChangeDetectionResult | dict | None = None
) -> dict[str, Any]:
    """Compress a completed job into a history entry (no logs, no trace)."""
    if isinstance(changes, ChangeDetectionResult):
        changes = changes.model_dump()
    return {
        "analysis_id": job.analysis_id,
        "job_id": str(job.job_id),
        "version": job.version,
        "entity_name": job.entity_name,
        "result": job.result,
        "stats": job.stats,
        "started_at": _isoformat(job.started_at),
        "completed_at": _isoformat(job.completed_at),
        "user_id": job.user_id,
        "changes": (
            {
                "score_change": changes.get("score_change"),
                "new_insights": changes.get("new_insights", []),
                "new_risks": changes.get("new_risks", []),
                "resolved_risks": changes.get("resolved_risks", []),
                "summary": changes.get("summary", ""),
            }
            if changes
            else None
        ),
    }


def append_history(
    history: list[dict[str, Any]] | None,
    snapshot: dict[str, Any],
    limit: int = HISTORY_LIMIT,
) -> list[dict[str, Any]]:
    """Return a new history list with ``snapshot`` appended, oldest evicted first."""
    entries = list(history or []) + [snapshot]
    return entries[-limit:]
