"""
Tier-stratified peer benchmarking.

Finds peer channels in the subject's tier and its neighbours, pulls their
recent uploads through the channel data source and summarises them as
nearest-rank distributions the subject channel can be compared against.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np

from analysis.models import (
    METRIC_LABELS,
    BenchmarkResult,
    ChannelRef,
    ComparisonResult,
    ContentMix,
    Distribution,
    MetricComparison,
    PeerFilters,
    UploadFrequency,
    VideoRef,
)
from analysis.stats import (
    engagement_rate,
    percentile,
    ratio_status,
    safe_ratio,
    tier_span,
    widen_tiers,
)
from services.audit_errors import call_with_timeout
from services.channel_source import ChannelDataSource

logger = logging.getLogger(__name__)

NO_PEERS_REASON = "No peer channels found in database. Add competitors to improve benchmarking."
NO_VIDEOS_REASON = "Peer channels have no uploads inside the benchmark window."


def _distribution(values: Sequence[float]) -> Distribution:
    ordered = sorted(values)
    return Distribution(
        median=percentile(ordered, 50),
        p25=percentile(ordered, 25),
        p75=percentile(ordered, 75),
        count=len(ordered),
    )


def _published_within(video: VideoRef, cutoff: datetime) -> bool:
    if video.published_at is None:
        return False
    published = video.published_at
    if published.tzinfo is None:
        published = published.replace(tzinfo=timezone.utc)
    return published >= cutoff


def _mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return float(np.mean(values))


def channel_metrics_from_videos(
    videos: Sequence[VideoRef],
    window_days: int = 90,
    now: Optional[datetime] = None,
) -> Dict[str, Optional[float]]:
    """Subject-channel metrics over the same window used for peer benchmarks."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=window_days)
    recent = [v for v in videos if _published_within(v, cutoff)]
    long_form = [v.view_count for v in recent if v.format_type == "long"]
    short_form = [v.view_count for v in recent if v.format_type == "short"]

    avg_views = _mean([v.view_count for v in recent])
    return {
        "avg_views": round(avg_views) if avg_views is not None else None,
        "avg_views_long_form": _mean(long_form),
        "avg_views_short_form": _mean(short_form),
        "avg_engagement": _mean([engagement_rate(v.view_count, v.like_count, v.comment_count) for v in recent]),
        "upload_frequency": len(recent) / (window_days / 7),
        "videos_analyzed": len(recent),
    }


def compare_against_benchmarks(
    channel_metrics: Dict[str, Optional[float]],
    benchmarks: Optional[BenchmarkResult],
) -> ComparisonResult:
    """
    Ratio of each channel metric to the peer median.

    Metrics missing on either side, or whose peer median is zero, are left out.
    The overall score is the mean ratio, or None when nothing was comparable.
    """
    if benchmarks is None or not benchmarks.has_benchmarks:
        return ComparisonResult(metrics=[], overall_score=None, has_benchmarks=False)

    medians = benchmarks.peer_medians()
    metrics: List[MetricComparison] = []
    ratios: List[float] = []
    for name, label in METRIC_LABELS.items():
        value = channel_metrics.get(name)
        if value is None:
            continue
        ratio = safe_ratio(value, medians.get(name))
        if ratio is None:
            continue
        ratios.append(ratio)
        metrics.append(
            MetricComparison(
                name=name,
                label=label,
                value=value,
                benchmark=medians[name],
                ratio=round(ratio, 2),
                status=ratio_status(ratio),
            )
        )

    overall = round(float(np.mean(ratios)), 2) if ratios else None
    return ComparisonResult(metrics=metrics, overall_score=overall, has_benchmarks=True)


class BenchmarkEngine:
    """Peer discovery and benchmark statistics on top of a ChannelDataSource."""

    def __init__(
        self,
        source: ChannelDataSource,
        peer_fetch_workers: int = 4,
        videos_per_peer: int = 50,
        call_timeout: Optional[float] = None,
    ):
        self.source = source
        self.peer_fetch_workers = max(1, int(peer_fetch_workers))
        self.videos_per_peer = videos_per_peer
        self.call_timeout = call_timeout

    async def find_peers(
        self,
        channel_id: str,
        tier: str,
        filters: Optional[PeerFilters] = None,
    ) -> List[ChannelRef]:
        """Channels in the widened tier span, largest first, subject excluded."""
        filters = filters or PeerFilters()
        filters = filters.model_copy(update={"exclude_channel_id": channel_id})
        low, high = tier_span(widen_tiers(tier))

        candidates = await call_with_timeout(
            self.source.query_peers((low, high), filters),
            self.call_timeout,
            "query_peers",
        )

        peers = []
        seen = set()
        for peer in candidates:
            if peer.id == channel_id or peer.id in seen:
                continue
            if peer.subscriber_count < low or (high is not None and peer.subscriber_count >= high):
                continue
            if filters.category and peer.category != filters.category:
                continue
            seen.add(peer.id)
            peers.append(peer)

        peers.sort(key=lambda p: p.subscriber_count, reverse=True)
        peers = peers[:filters.limit]
        logger.info(f"Found {len(peers)} peers for {channel_id} in tiers {widen_tiers(tier)}")
        return peers

    async def _fetch_peer_videos(self, peer_ids: Sequence[str]) -> Dict[str, List[VideoRef]]:
        semaphore = asyncio.Semaphore(self.peer_fetch_workers)

        async def _fetch(peer_id: str) -> List[VideoRef]:
            async with semaphore:
                return await call_with_timeout(
                    self.source.fetch_videos(peer_id, self.videos_per_peer),
                    self.call_timeout,
                    f"fetch_videos({peer_id})",
                )

        results = await asyncio.gather(*(_fetch(pid) for pid in peer_ids))
        return dict(zip(peer_ids, results))

    async def compute_benchmarks(
        self,
        peer_ids: Sequence[str],
        window_days: int = 90,
        now: Optional[datetime] = None,
    ) -> BenchmarkResult:
        """Distributions over peer uploads published within ``window_days``."""
        peer_ids = list(dict.fromkeys(peer_ids))
        if not peer_ids:
            return BenchmarkResult.unavailable(NO_PEERS_REASON, window_days=window_days)

        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=window_days)
        by_peer = await self._fetch_peer_videos(peer_ids)

        videos: List[VideoRef] = []
        for peer_id in peer_ids:
            videos.extend(v for v in by_peer.get(peer_id, []) if _published_within(v, cutoff))

        if not videos:
            return BenchmarkResult.unavailable(
                NO_VIDEOS_REASON, peer_count=len(peer_ids), window_days=window_days
            )

        long_views = [v.view_count for v in videos if v.format_type == "long"]
        short_views = [v.view_count for v in videos if v.format_type == "short"]
        rates = [engagement_rate(v.view_count, v.like_count, v.comment_count) for v in videos]

        weeks = window_days / 7
        per_peer = Counter(v.channel_id for v in videos)
        frequencies = sorted(count / weeks for count in per_peer.values())

        shorts_ratio = len(short_views) / len(videos)

        return BenchmarkResult(
            has_benchmarks=True,
            peer_count=len(peer_ids),
            videos_analyzed=len(videos),
            window_days=window_days,
            all=_distribution([v.view_count for v in videos]),
            long_form=_distribution(long_views),
            short_form=_distribution(short_views),
            engagement_rate=_distribution(rates),
            upload_frequency=UploadFrequency(
                avg=float(np.mean(frequencies)),
                median=percentile(frequencies, 50),
                p25=percentile(frequencies, 25),
                p75=percentile(frequencies, 75),
                count=len(frequencies),
            ),
            content_mix=ContentMix(
                shorts_pct=round(shorts_ratio * 100),
                long_form_pct=round((1 - shorts_ratio) * 100),
            ),
        )

    def compare(
        self,
        channel_metrics: Dict[str, Optional[float]],
        benchmarks: Optional[BenchmarkResult],
    ) -> ComparisonResult:
        return compare_against_benchmarks(channel_metrics, benchmarks)
