"""
Pure statistics used by channel benchmarking.

Tier classification, peer-tier widening, nearest-rank percentiles and
ratio scoring. No I/O.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Tier:
    """Subscriber-count bucket covering the half-open range [min_subscribers, max_subscribers)."""

    name: str
    min_subscribers: int
    max_subscribers: Optional[int]  # None = unbounded
    max_videos: int  # Ingestion depth for channels in this tier

    def contains(self, subscriber_count: int) -> bool:
        if subscriber_count < self.min_subscribers:
            return False
        return self.max_subscribers is None or subscriber_count < self.max_subscribers


TIERS: Tuple[Tier, ...] = (
    Tier("emerging", 0, 10_000, max_videos=50),
    Tier("growing", 10_000, 100_000, max_videos=100),
    Tier("established", 100_000, 500_000, max_videos=150),
    Tier("major", 500_000, 1_000_000, max_videos=200),
    Tier("elite", 1_000_000, None, max_videos=200),
)

TIER_NAMES: Tuple[str, ...] = tuple(t.name for t in TIERS)
_TIERS_BY_NAME: Dict[str, Tier] = {t.name: t for t in TIERS}

ABOVE_RATIO = 1.2
BELOW_RATIO = 0.8


def get_tier(name: str) -> Tier:
    """Look up a tier by name."""
    try:
        return _TIERS_BY_NAME[name]
    except KeyError:
        raise ValueError(f"Unknown tier: {name!r}") from None


def classify_tier(subscriber_count: int) -> str:
    """Return the name of the single tier whose range contains subscriber_count."""
    if subscriber_count < 0:
        raise ValueError("subscriber_count must be non-negative")
    for tier in TIERS:
        if tier.contains(subscriber_count):
            return tier.name
    # Unreachable while TIERS covers [0, inf)
    raise ValueError(f"No tier covers subscriber_count={subscriber_count}")


def widen_tiers(tier: str) -> List[str]:
    """Return the tier plus its immediate lower and upper neighbours, lowest first."""
    idx = TIER_NAMES.index(get_tier(tier).name)
    low = max(idx - 1, 0)
    high = min(idx + 1, len(TIER_NAMES) - 1)
    return list(TIER_NAMES[low:high + 1])


def tier_span(tier_names: Sequence[str]) -> Tuple[int, Optional[int]]:
    """Subscriber span [min, max) covered by a set of tiers; max is None when unbounded."""
    if not tier_names:
        raise ValueError("tier_names must not be empty")
    tiers = [get_tier(name) for name in tier_names]
    low = min(t.min_subscribers for t in tiers)
    if any(t.max_subscribers is None for t in tiers):
        return low, None
    return low, max(t.max_subscribers for t in tiers)


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile of an ascending sequence; 0 for an empty one."""
    n = len(sorted_values)
    if n == 0:
        return 0
    idx = math.ceil((p / 100.0) * n) - 1
    idx = max(0, min(idx, n - 1))
    return sorted_values[idx]


def ratio_status(ratio: float) -> str:
    if ratio >= ABOVE_RATIO:
        return "above"
    if ratio < BELOW_RATIO:
        return "below"
    return "at"


def safe_ratio(value: float, baseline: float) -> Optional[float]:
    """value / baseline, or None when the baseline is not positive."""
    if baseline is None or baseline <= 0:
        return None
    return value / baseline


def engagement_rate(views: int, likes: int, comments: int) -> float:
    """(likes + comments) / views with views floored at 1."""
    return ((likes or 0) + (comments or 0)) / max(views or 0, 1)
