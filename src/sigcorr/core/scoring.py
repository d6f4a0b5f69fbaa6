from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Optional, Sequence

TIME_WEIGHT = 0.4
ENVIRONMENT_WEIGHT = 0.2
PROJECT_WEIGHT = 0.2
SEVERITY_WEIGHT = 0.1
STATUS_WEIGHT = 0.1

PROXIMITY_TAG_SECONDS = 60.0
HIGH_CORRELATION_SCORE = 0.8
EARLIER_PENALTY = 0.7


def _gap_seconds(a: Any, b: Any) -> float:
    return abs((a.first_seen_at - b.first_seen_at).total_seconds())


def correlation_score(target: Any, candidate: Any, window: timedelta) -> float:
    """Weighted sum of time proximity and attribute agreement, at most 1.0."""
    window_s = window.total_seconds()
    proximity = max(0.0, 1.0 - _gap_seconds(target, candidate) / window_s) if window_s > 0 else 0.0
    score = proximity * TIME_WEIGHT
    if target.environment == candidate.environment:
        score += ENVIRONMENT_WEIGHT
    if target.project == candidate.project:
        score += PROJECT_WEIGHT
    if target.severity == candidate.severity:
        score += SEVERITY_WEIGHT
    if target.status == candidate.status:
        score += STATUS_WEIGHT
    return min(score, 1.0)


def correlation_reason(target: Any, candidate: Any, score: float) -> str:
    """Informational tags; independent of how the score was built."""
    reasons: List[str] = []
    if _gap_seconds(target, candidate) < PROXIMITY_TAG_SECONDS:
        reasons.append("time_proximity")
    if target.environment == candidate.environment and target.project == candidate.project:
        reasons.append("same_service")
    elif target.environment == candidate.environment:
        reasons.append("same_environment")
    if target.severity == "CRITICAL" or candidate.severity == "CRITICAL":
        reasons.append("critical_severity")
    if score > HIGH_CORRELATION_SCORE:
        reasons.append("high_correlation")
    return ", ".join(reasons) or "general_correlation"


@dataclass
class RootCauseSuggestion:
    root_cause_group_id: Optional[str]
    confidence: float
    explanation: str


NO_CORRELATION = "No correlated alerts found"


def pick_root_cause(target: Any, correlated: Sequence[Any]) -> RootCauseSuggestion:
    """
    Earliest correlated incident as the probable root cause.

    ``correlated`` holds items with ``group`` and ``score``. A candidate that
    did not start before the target keeps only 70% of its score.
    """
    if not correlated:
        return RootCauseSuggestion(None, 0.0, NO_CORRELATION)

    first = min(correlated, key=lambda c: c.group.first_seen_at)
    group = first.group
    elapsed = int((target.first_seen_at - group.first_seen_at).total_seconds())
    if group.first_seen_at < target.first_seen_at:
        confidence = first.score
        scope = "the same" if group.environment == target.environment else "the"
        explanation = (
            f'Incident "{group.title}" started {elapsed}s earlier '
            f"in {scope} {group.environment} environment"
        )
        if group.severity == "CRITICAL":
            explanation += " with CRITICAL severity"
    else:
        confidence = first.score * EARLIER_PENALTY
        explanation = (
            f'Highly correlated with "{group.title}" (score: {first.score:.2f}), '
            f"started {abs(elapsed)}s after this incident"
        )
        if group.severity == "CRITICAL":
            explanation += " with CRITICAL severity"
    return RootCauseSuggestion(group.id, confidence, explanation)
