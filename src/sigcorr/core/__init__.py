"""Core algorithms for sigcorr: group keys, severity, baselines, pair mining, scoring."""

from .group_key import generate_group_key, group_key_for
from .pairs import mine_pair_rules
from .scoring import correlation_reason, correlation_score, pick_root_cause
from .severity import Severity, normalize_severity, resolve_severity, severity_rank
from .stats import compute_baseline, grouping_velocity, spike_threshold

__all__ = [
    "generate_group_key",
    "group_key_for",
    "mine_pair_rules",
    "correlation_reason",
    "correlation_score",
    "pick_root_cause",
    "Severity",
    "normalize_severity",
    "resolve_severity",
    "severity_rank",
    "compute_baseline",
    "grouping_velocity",
    "spike_threshold",
]
