"""
Analysis models and schemas.

Channel/video references exchanged with the data source, benchmark
distributions, and the result payload of every audit stage.
"""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


SHORT_FORM_MAX_SECONDS = 180


class AuditType(str, Enum):
    PROSPECT = "prospect"
    BASELINE = "baseline"


class ChannelRef(BaseModel):
    """A channel as returned by a ChannelDataSource."""
    id: str
    title: str = ""
    handle: Optional[str] = None
    category: Optional[str] = None
    subscriber_count: int = 0
    video_count: int = 0
    view_count: int = 0
    thumbnail_url: Optional[str] = None


class VideoRef(BaseModel):
    """A single upload with its public stats."""
    id: str
    channel_id: str
    title: str = ""
    published_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    video_type: Optional[str] = None  # short, long
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0

    @property
    def format_type(self) -> str:
        if self.video_type in ("short", "long"):
            return self.video_type
        if not self.duration_seconds or self.duration_seconds <= 0:
            return "unknown"
        return "short" if self.duration_seconds <= SHORT_FORM_MAX_SECONDS else "long"


class PeerFilters(BaseModel):
    """Narrowing applied when querying peer channels."""
    exclude_channel_id: Optional[str] = None
    category: Optional[str] = None
    limit: int = Field(default=20, ge=1)


class Distribution(BaseModel):
    median: float = 0
    p25: float = 0
    p75: float = 0
    count: int = 0


class UploadFrequency(BaseModel):
    """Videos per peer per week over the benchmark window."""
    avg: float = 0.0
    median: float = 0.0
    p25: float = 0.0
    p75: float = 0.0
    count: int = 0


class ContentMix(BaseModel):
    shorts_pct: int = 0
    long_form_pct: int = 0


class BenchmarkResult(BaseModel):
    """Peer-set distributions, split by content-length bucket and overall."""
    has_benchmarks: bool = False
    reason: Optional[str] = None
    peer_count: int = 0
    videos_analyzed: int = 0
    window_days: int = 90
    all: Distribution = Field(default_factory=Distribution)
    long_form: Distribution = Field(default_factory=Distribution)
    short_form: Distribution = Field(default_factory=Distribution)
    engagement_rate: Distribution = Field(default_factory=Distribution)
    upload_frequency: UploadFrequency = Field(default_factory=UploadFrequency)
    content_mix: ContentMix = Field(default_factory=ContentMix)

    @classmethod
    def unavailable(cls, reason: str, *, peer_count: int = 0, window_days: int = 90) -> "BenchmarkResult":
        return cls(has_benchmarks=False, reason=reason, peer_count=peer_count, window_days=window_days)

    def peer_medians(self) -> Dict[str, float]:
        """Peer median for every comparable channel metric."""
        return {
            "avg_views": self.all.median,
            "avg_views_long_form": self.long_form.median,
            "avg_views_short_form": self.short_form.median,
            "avg_engagement": self.engagement_rate.median,
            "upload_frequency": self.upload_frequency.median,
        }


METRIC_LABELS: Dict[str, str] = {
    "avg_views": "Average Views per Video",
    "avg_views_long_form": "Average Long-form Views",
    "avg_views_short_form": "Average Short-form Views",
    "avg_engagement": "Engagement Rate",
    "upload_frequency": "Upload Frequency (per week)",
}


class MetricComparison(BaseModel):
    name: str
    label: str
    value: float
    benchmark: float
    ratio: float
    status: str  # above, at, below


class ComparisonResult(BaseModel):
    metrics: List[MetricComparison] = Field(default_factory=list)
    overall_score: Optional[float] = None
    has_benchmarks: bool = False


class TokenUsage(BaseModel):
    """Usage reported by one AnalysisProvider call."""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CostDelta(BaseModel):
    """Cost accrued by one stage, added to the audit ledger."""
    tokens: int = 0
    cost: float = 0.0
    api_calls: int = 0

    def is_empty(self) -> bool:
        return self.tokens == 0 and self.cost == 0 and self.api_calls == 0

    def __add__(self, other: "CostDelta") -> "CostDelta":
        return CostDelta(
            tokens=self.tokens + other.tokens,
            cost=self.cost + other.cost,
            api_calls=self.api_calls + other.api_calls,
        )


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


class StageResult(BaseModel):
    """Base for persisted stage payloads; bump SCHEMA_VERSION on breaking changes."""
    SCHEMA_VERSION: ClassVar[int] = 1
    schema_version: int = 1


class FormatMix(BaseModel):
    long_count: int = 0
    short_count: int = 0

    @property
    def has_long_form(self) -> bool:
        return self.long_count > 0

    @property
    def has_short_form(self) -> bool:
        return self.short_count > 0

    @property
    def has_both_formats(self) -> bool:
        return self.has_long_form and self.has_short_form


class ChannelSnapshot(BaseModel):
    channel_id: str
    title: str = ""
    handle: Optional[str] = None
    category: Optional[str] = None
    thumbnail_url: Optional[str] = None
    subscriber_count: int = 0
    total_view_count: int = 0
    video_count: int = 0
    size_tier: str
    snapshot_date: str
    total_videos_analyzed: int = 0
    recent_videos_90d: int = 0
    avg_views_recent: int = 0
    avg_engagement_recent: float = 0.0


class IngestionResult(StageResult):
    channel: ChannelRef
    snapshot: ChannelSnapshot
    videos: List[VideoRef] = Field(default_factory=list)
    format_mix: FormatMix = Field(default_factory=FormatMix)

    @property
    def size_tier(self) -> str:
        return self.snapshot.size_tier

    @property
    def has_videos(self) -> bool:
        return bool(self.videos)


class SeriesInfo(BaseModel):
    name: str
    detection_method: str  # pattern, semantic
    pattern: Optional[str] = None
    video_ids: List[str] = Field(default_factory=list)
    video_count: int = 0
    total_views: int = 0
    avg_views: int = 0
    avg_engagement_rate: float = 0.0
    first_published: Optional[datetime] = None
    last_published: Optional[datetime] = None
    cadence_days: Optional[int] = None
    performance_trend: str = "stable"  # growing, stable, declining, new


class SeriesSummary(StageResult):
    series: List[SeriesInfo] = Field(default_factory=list)
    uncategorized_count: int = 0
    total_series: int = 0
    semantic_pass: str = "skipped"  # skipped, structured, fallback


class PeerMatchResult(StageResult):
    tier: str
    searched_tiers: List[str] = Field(default_factory=list)
    subscriber_span: Tuple[int, Optional[int]] = (0, None)
    category: Optional[str] = None
    peers: List[ChannelRef] = Field(default_factory=list)

    @property
    def peer_ids(self) -> List[str]:
        return [p.id for p in self.peers]


class BenchmarkData(StageResult):
    tier: str
    peer_count: int = 0
    peer_names: List[str] = Field(default_factory=list)
    benchmarks: BenchmarkResult = Field(default_factory=BenchmarkResult)
    comparison: ComparisonResult = Field(default_factory=ComparisonResult)
    channel_metrics: Dict[str, Optional[float]] = Field(default_factory=dict)

    @property
    def has_benchmarks(self) -> bool:
        return self.benchmarks.has_benchmarks


class ContentGap(BaseModel):
    gap: str
    evidence: str = ""
    potential_impact: str = "medium"
    suggested_action: str = ""


class GrowthLever(BaseModel):
    lever: str
    current_state: str = ""
    target_state: str = ""
    evidence: str = ""
    priority: str = "medium"


class OpportunityResult(StageResult):
    content_gaps: List[ContentGap] = Field(default_factory=list)
    growth_levers: List[GrowthLever] = Field(default_factory=list)
    market_potential: Optional[Dict[str, Any]] = None
    source: str = "provider"  # provider, heuristic


class Recommendation(BaseModel):
    action: str
    rationale: str = ""
    evidence: str = ""
    impact: str = "medium"
    effort: Optional[str] = None


class RecommendationResult(StageResult):
    stop: List[Recommendation] = Field(default_factory=list)
    start: List[Recommendation] = Field(default_factory=list)
    optimize: List[Recommendation] = Field(default_factory=list)
    source: str = "provider"  # provider, heuristic
    incomplete: bool = False

    def is_empty(self) -> bool:
        return not (self.stop or self.start or self.optimize)


class ExecutiveSummaryResult(StageResult):
    summary: str = ""
    audit_type: AuditType = AuditType.PROSPECT
