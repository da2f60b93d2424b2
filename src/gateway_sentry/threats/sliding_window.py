# Threats Module - Sliding Window Scan
#
# Shared skeleton for every pattern detector:
#
#   1. partition the batch by a detector-specific key
#   2. stable-sort each group ascending by timestamp
#   3. for each event i, advance the window start while
#      t[i] - t[start] > window, then evaluate events[start..i]
#   4. stop scanning a group at its first qualifying window
#
# Step 4 means one pattern instance per group per run.  Callers must
# not re-run detection over ranges that were already reported; the
# repository upserts by dedup key as a second line of protection.

from collections import defaultdict
from datetime import timedelta
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Sequence

from .models import ThreatEvent, ThreatPattern

GroupKey = Callable[[ThreatEvent], Hashable]
WindowEvaluator = Callable[[Hashable, Sequence[ThreatEvent]], Optional[ThreatPattern]]


def scan_windows(
    events: Iterable[ThreatEvent],
    group_key: GroupKey,
    window: timedelta,
    evaluate: WindowEvaluator,
    accepts: Optional[Callable[[ThreatEvent], bool]] = None,
    min_events: int = 1,
) -> List[ThreatPattern]:
    """Run a sliding-window scan and collect at most one pattern per group.

    Args:
        events: The batch to analyse. It is not mutated.
        group_key: Maps an event to the key it is partitioned by.
        window: Maximum span between the first and last event of a window.
        evaluate: Called with ``(key, window_events)``; returns a pattern
            when the window qualifies, else None.
        accepts: Optional pre-filter applied before grouping.
        min_events: Windows with fewer events are not evaluated.

    Returns:
        Patterns in group first-appearance order.
    """
    groups: Dict[Hashable, List[ThreatEvent]] = defaultdict(list)
    for event in events:
        if accepts is not None and not accepts(event):
            continue
        groups[group_key(event)].append(event)

    patterns: List[ThreatPattern] = []
    for key, group in groups.items():
        ordered = sorted(group, key=lambda e: e.timestamp)
        start = 0
        for i, event in enumerate(ordered):
            while start < i and event.timestamp - ordered[start].timestamp > window:
                start += 1
            if i - start + 1 < min_events:
                continue
            pattern = evaluate(key, ordered[start:i + 1])
            if pattern is not None:
                patterns.append(pattern)
                break
    return patterns
