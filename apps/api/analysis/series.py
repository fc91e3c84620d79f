"""
Content series detection.

Pass 1 groups videos by title patterns (episode markers, bracketed prefixes,
recurring leading words). Pass 2 (semantic grouping) is driven by the audit
stage through the analysis provider; this module only turns its parsed output
into series and merges it with the pattern results.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from analysis.models import SeriesInfo, VideoRef
from analysis.stats import engagement_rate

MIN_SERIES_VIDEOS = 3
MIN_SEMANTIC_CANDIDATES = 5
MAX_SEMANTIC_TITLES = 100
SEMANTIC_OVERLAP_LIMIT = 0.5
NEW_SERIES_MAX_AGE_DAYS = 180

_MARKER = r"(?:ep(?:isode)?\.?\s*\d+|part\s*\d+|#\d+)"

EPISODE_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"^(.+?)\s*[|\-–—]\s*" + _MARKER, re.IGNORECASE),
    re.compile(r"^" + _MARKER + r"\s*[|\-–—:]\s*(.+)", re.IGNORECASE),
    re.compile(r"^(.{5,}?)\s+" + _MARKER + r"\s*$", re.IGNORECASE),
)
BRACKET_PATTERN = re.compile(r"^\[([^\]]{3,})\]|^\(([^)]{3,})\)")


def clean_series_name(raw: str) -> str:
    name = re.sub(r"[:\-–—|]\s*$", "", raw or "")
    name = re.sub(r"^\s*[:\-–—|]", "", name)
    return re.sub(r"\s+", " ", name).strip()


def detect_series_by_pattern(videos: Sequence[VideoRef]) -> Tuple[List[Dict[str, Any]], List[VideoRef]]:
    """
    Group videos by title patterns.

    Returns:
        (series, uncategorized) where each series is a dict with
        name, video_ids and pattern. Only groups of 3+ videos are kept.
    """
    groups: Dict[str, Dict[str, Any]] = {}
    assigned = set()

    def _add(name: str, video_id: str, pattern: str) -> None:
        group = groups.setdefault(name, {"video_ids": [], "pattern": pattern})
        group["video_ids"].append(video_id)
        assigned.add(video_id)

    # Explicit episode markers
    for video in videos:
        for regex in EPISODE_PATTERNS:
            match = regex.search(video.title or "")
            if not match:
                continue
            name = clean_series_name(match.group(1))
            if len(name) >= 3:
                _add(name, video.id, regex.pattern)
                break

    # Bracketed prefixes
    for video in videos:
        if video.id in assigned:
            continue
        match = BRACKET_PATTERN.search(video.title or "")
        if match:
            _add(clean_series_name(match.group(1) or match.group(2)), video.id, "bracket_prefix")

    # Recurring 2-5 word prefixes, longest first
    prefix_ids: Dict[str, List[str]] = {}
    for video in videos:
        if video.id in assigned:
            continue
        words = (video.title or "").split()[:6]
        for length in range(2, min(len(words), 5) + 1):
            prefix_ids.setdefault(" ".join(words[:length]), []).append(video.id)

    candidates = sorted(
        ((prefix, ids) for prefix, ids in prefix_ids.items() if len(ids) >= MIN_SERIES_VIDEOS),
        key=lambda item: (-len(item[0].split(" ")), -len(item[1])),
    )
    for prefix, ids in candidates:
        free = [vid for vid in ids if vid not in assigned]
        if len(free) >= MIN_SERIES_VIDEOS:
            name = clean_series_name(prefix)
            for vid in free:
                _add(name, vid, f'prefix: "{prefix}"')

    series = [
        {"name": name, "video_ids": group["video_ids"], "pattern": group["pattern"]}
        for name, group in groups.items()
        if len(group["video_ids"]) >= MIN_SERIES_VIDEOS
    ]
    in_series = {vid for s in series for vid in s["video_ids"]}
    uncategorized = [v for v in videos if v.id not in in_series]
    return series, uncategorized


def semantic_groups_from_payload(payload: Any, candidates: Sequence[VideoRef]) -> List[Dict[str, Any]]:
    """Map a parsed ``{"series": [{name, videoIndices}]}`` payload back to video ids."""
    if not isinstance(payload, dict):
        return []
    groups = []
    for entry in payload.get("series") or []:
        if not isinstance(entry, dict):
            continue
        indices = entry.get("videoIndices") or entry.get("video_indices") or []
        video_ids = []
        for idx in indices:
            if isinstance(idx, int) and 0 <= idx < len(candidates):
                video_ids.append(candidates[idx].id)
        video_ids = list(dict.fromkeys(video_ids))
        name = clean_series_name(str(entry.get("name") or ""))
        if name and len(video_ids) >= MIN_SERIES_VIDEOS:
            groups.append({"name": name, "video_ids": video_ids, "pattern": None})
    return groups


def merge_semantic(pattern_series: List[Dict[str, Any]], semantic: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Append semantic groups that do not overlap an existing series by more than half."""
    merged = list(pattern_series)
    for group in semantic:
        ids = group["video_ids"]
        overlaps = any(
            len(set(ids) & set(existing["video_ids"])) / len(ids) > SEMANTIC_OVERLAP_LIMIT
            for existing in merged
        )
        if not overlaps:
            merged.append(group)
    return merged


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def build_series_info(
    name: str,
    video_ids: Sequence[str],
    videos_by_id: Dict[str, VideoRef],
    detection_method: str,
    pattern: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SeriesInfo:
    """Aggregate views, engagement, cadence and trend for one series."""
    now = now or datetime.now(timezone.utc)
    members = [videos_by_id[vid] for vid in video_ids if vid in videos_by_id]
    # Oldest first so the trend compares earlier episodes against later ones
    members.sort(key=lambda v: _as_utc(v.published_at) if v.published_at else now)

    views = [v.view_count or 0 for v in members]
    total_views = int(sum(views))
    avg_views = int(round(float(np.mean(views)))) if views else 0
    rates = [engagement_rate(v.view_count, v.like_count, v.comment_count) for v in members]
    avg_engagement = float(np.mean(rates)) if rates else 0.0

    dates = sorted(_as_utc(v.published_at) for v in members if v.published_at)
    cadence_days = None
    if len(dates) >= 2:
        span_days = (dates[-1] - dates[0]).total_seconds() / 86400
        cadence_days = int(round(span_days / (len(dates) - 1)))

    trend = "stable"
    if len(members) >= 4:
        half = len(members) // 2
        first_avg = float(np.mean(views[:half]))
        second_avg = float(np.mean(views[half:]))
        if second_avg > first_avg * 1.2:
            trend = "growing"
        elif second_avg < first_avg * 0.8:
            trend = "declining"
    elif dates and (now - dates[0]).days < NEW_SERIES_MAX_AGE_DAYS:
        trend = "new"

    return SeriesInfo(
        name=name,
        detection_method=detection_method,
        pattern=pattern,
        video_ids=[v.id for v in members],
        video_count=len(members),
        total_views=total_views,
        avg_views=avg_views,
        avg_engagement_rate=avg_engagement,
        first_published=dates[0] if dates else None,
        last_published=dates[-1] if dates else None,
        cadence_days=cadence_days,
        performance_trend=trend,
    )
