from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple


@dataclass
class RuleStats:
    src: str
    dst: str
    support: int
    occurrences: int
    confidence: float


def count_pairs(
    events: Sequence[Tuple[Optional[str], datetime]],
    window: timedelta,
) -> Tuple[Dict[Tuple[str, str], int], Dict[str, int]]:
    """
    Count ordered (A, B) co-occurrences where B follows A within ``window``.

    ``events`` must be sorted by time ascending. Events without a group key
    are skipped. The inner scan stops at the first event past the window,
    so the cost is O(n*w) with w the events inside one window.
    """
    pair_counts: Dict[Tuple[str, str], int] = {}
    occurrences: Dict[str, int] = {}
    n = len(events)
    for i in range(n):
        key_a, ts_a = events[i]
        if not key_a:
            continue
        occurrences[key_a] = occurrences.get(key_a, 0) + 1
        limit = ts_a + window
        for j in range(i + 1, n):
            key_b, ts_b = events[j]
            if ts_b > limit:
                break
            if not key_b or key_b == key_a:
                continue
            pair = (key_a, key_b)
            pair_counts[pair] = pair_counts.get(pair, 0) + 1
    return pair_counts, occurrences


def mine_pair_rules(
    events: Sequence[Tuple[Optional[str], datetime]],
    window: timedelta = timedelta(minutes=5),
    min_support: int = 3,
    min_confidence: float = 0.5,
) -> List[RuleStats]:
    """
    Directional rules A->B with confidence = pairs(A, B) / occurrences(A).

    A pair needs at least ``min_support`` co-occurrences. Confidence is
    capped at 1.0 since several B events can follow one A inside a window.
    Rules are returned by confidence, then support, descending.
    """
    pair_counts, occurrences = count_pairs(events, window)
    rules: List[RuleStats] = []
    for (src, dst), support in pair_counts.items():
        if support < min_support:
            continue
        occ = occurrences.get(src) or support
        confidence = min(1.0, support / occ)
        if confidence < min_confidence:
            continue
        rules.append(RuleStats(src=src, dst=dst, support=support, occurrences=occ, confidence=confidence))
    rules.sort(key=lambda r: (-r.confidence, -r.support, r.src, r.dst))
    return rules
