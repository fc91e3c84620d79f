"""
Audit stage units.

Each stage receives a frozen input built only from the outputs it declares
plus the shared run context, and returns a pydantic result. Stages never touch
the audit store; provider usage goes through the stage's CostMeter.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from analysis.benchmark import BenchmarkEngine, channel_metrics_from_videos
from analysis.models import (
    AuditType,
    BenchmarkData,
    ChannelRef,
    ChannelSnapshot,
    ContentGap,
    ExecutiveSummaryResult,
    FormatMix,
    GrowthLever,
    IngestionResult,
    OpportunityResult,
    PeerFilters,
    PeerMatchResult,
    Recommendation,
    RecommendationResult,
    SeriesSummary,
    StageResult,
    VideoRef,
)
from analysis.series import (
    MAX_SEMANTIC_TITLES,
    MIN_SEMANTIC_CANDIDATES,
    build_series_info,
    detect_series_by_pattern,
    merge_semantic,
    semantic_groups_from_payload,
)
from analysis.stats import classify_tier, engagement_rate, get_tier, tier_span, widen_tiers
from analysis.structured import parse_structured
from services import audit_prompts
from services.analysis_provider import CostMeter
from services.audit_config import AuditRunConfig
from services.audit_errors import call_with_timeout
from services.channel_source import ChannelDataSource

logger = logging.getLogger(__name__)

Reporter = Callable[[float, str], None]
ItemModel = TypeVar("ItemModel", bound=BaseModel)

LOW_ENGAGEMENT_RATE = 0.02
MIN_UPLOADS_PER_90D = 6


@dataclass(frozen=True)
class RunContext:
    """Shared, read-only context for every stage of one run."""

    audit_id: str
    channel: ChannelRef
    audit_type: AuditType
    config: AuditRunConfig
    now: datetime


@dataclass
class StageTools:
    """Collaborators handed to a stage for one execution."""

    source: ChannelDataSource
    engine: BenchmarkEngine
    meter: CostMeter
    report: Reporter = field(default=lambda fraction, message: None)


# ---------------------------------------------------------------------------
# Stage inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IngestionInput:
    VERSION: ClassVar[int] = 1
    channel: ChannelRef
    max_videos: int
    force_refresh: bool


@dataclass(frozen=True)
class SeriesInput:
    VERSION: ClassVar[int] = 1
    videos: Tuple[VideoRef, ...]


@dataclass(frozen=True)
class PeerMatchInput:
    VERSION: ClassVar[int] = 1
    channel_id: str
    tier: str
    category: Optional[str]
    peer_limit: int


@dataclass(frozen=True)
class BenchmarkInput:
    VERSION: ClassVar[int] = 1
    tier: str
    peers: PeerMatchResult
    videos: Tuple[VideoRef, ...]
    window_days: int


@dataclass(frozen=True)
class OpportunityInput:
    VERSION: ClassVar[int] = 1
    snapshot: ChannelSnapshot
    format_mix: FormatMix
    series: SeriesSummary
    benchmark: BenchmarkData
    videos: Tuple[VideoRef, ...]


@dataclass(frozen=True)
class RecommendationInput:
    VERSION: ClassVar[int] = 1
    snapshot: ChannelSnapshot
    format_mix: FormatMix
    series: SeriesSummary
    benchmark: BenchmarkData
    opportunities: OpportunityResult
    videos: Tuple[VideoRef, ...]


@dataclass(frozen=True)
class SummaryInput:
    VERSION: ClassVar[int] = 1
    audit_type: AuditType
    snapshot: ChannelSnapshot
    format_mix: FormatMix
    series: SeriesSummary
    benchmark: BenchmarkData
    opportunities: OpportunityResult
    recommendations: RecommendationResult


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def _recent(videos, days: int, now: datetime) -> List[VideoRef]:
    cutoff = now - timedelta(days=days)
    out = []
    for v in videos:
        if v.published_at is None:
            continue
        published = v.published_at if v.published_at.tzinfo else v.published_at.replace(tzinfo=timezone.utc)
        if published > cutoff:
            out.append(v)
    return out


async def run_ingestion(inp: IngestionInput, ctx: RunContext, tools: StageTools) -> IngestionResult:
    channel = inp.channel
    tools.report(0.2, f"Fetching videos (up to {inp.max_videos})...")
    videos = await call_with_timeout(
        tools.source.fetch_videos(channel.id, inp.max_videos, inp.force_refresh),
        ctx.config.external_timeout_seconds,
        "fetch_videos",
    )
    videos = list(videos)[:inp.max_videos]

    recent = _recent(videos, 90, ctx.now)
    avg_views_recent = round(sum(v.view_count for v in recent) / len(recent)) if recent else 0
    avg_engagement_recent = (
        sum(engagement_rate(v.view_count, v.like_count, v.comment_count) for v in recent) / len(recent)
        if recent else 0.0
    )

    snapshot = ChannelSnapshot(
        channel_id=channel.id,
        title=channel.title,
        handle=channel.handle,
        category=channel.category,
        thumbnail_url=channel.thumbnail_url,
        subscriber_count=channel.subscriber_count,
        total_view_count=channel.view_count,
        video_count=channel.video_count,
        size_tier=classify_tier(channel.subscriber_count),
        snapshot_date=ctx.now.date().isoformat(),
        total_videos_analyzed=len(videos),
        recent_videos_90d=len(recent),
        avg_views_recent=avg_views_recent,
        avg_engagement_recent=avg_engagement_recent,
    )
    format_mix = FormatMix(
        long_count=sum(1 for v in videos if v.format_type == "long"),
        short_count=sum(1 for v in videos if v.format_type == "short"),
    )
    if not videos:
        logger.warning(f"Audit {ctx.audit_id}: channel {channel.id} has no videos")
    return IngestionResult(channel=channel, snapshot=snapshot, videos=videos, format_mix=format_mix)


async def run_series_detection(inp: SeriesInput, ctx: RunContext, tools: StageTools) -> SeriesSummary:
    videos = list(inp.videos)
    pattern_series, uncategorized = detect_series_by_pattern(videos)
    tools.report(
        0.35,
        f"Found {len(pattern_series)} pattern series, analyzing {len(uncategorized)} remaining videos...",
    )

    semantic_pass = "skipped"
    semantic_groups: List[Dict[str, Any]] = []
    if len(uncategorized) >= MIN_SEMANTIC_CANDIDATES:
        candidates = uncategorized[:MAX_SEMANTIC_TITLES]
        generation = await tools.meter.generate(
            audit_prompts.series_prompt(candidates, [s["name"] for s in pattern_series]),
            audit_prompts.SERIES_SYSTEM_PROMPT,
            2000,
        )
        parsed = parse_structured(generation.text, {"series": []})
        semantic_pass = parsed.kind
        if parsed.is_structured:
            semantic_groups = semantic_groups_from_payload(parsed.data, candidates)
        else:
            logger.warning(f"Audit {ctx.audit_id}: semantic series pass fell back ({parsed.reason})")

    merged = merge_semantic(pattern_series, semantic_groups)
    by_id = {v.id: v for v in videos}
    series = [
        build_series_info(
            name=group["name"],
            video_ids=group["video_ids"],
            videos_by_id=by_id,
            detection_method="pattern" if group.get("pattern") else "semantic",
            pattern=group.get("pattern"),
            now=ctx.now,
        )
        for group in merged
    ]
    series.sort(key=lambda s: s.total_views, reverse=True)

    return SeriesSummary(
        series=series,
        uncategorized_count=len(videos) - sum(s.video_count for s in series),
        total_series=len(series),
        semantic_pass=semantic_pass,
    )


async def run_competitor_matching(inp: PeerMatchInput, ctx: RunContext, tools: StageTools) -> PeerMatchResult:
    filters = PeerFilters(category=inp.category, limit=inp.peer_limit)
    peers = await tools.engine.find_peers(inp.channel_id, inp.tier, filters)
    searched = widen_tiers(inp.tier)
    return PeerMatchResult(
        tier=inp.tier,
        searched_tiers=searched,
        subscriber_span=tier_span(searched),
        category=inp.category,
        peers=peers,
    )


async def run_benchmarking(inp: BenchmarkInput, ctx: RunContext, tools: StageTools) -> BenchmarkData:
    tools.report(0.1, f"Computing benchmarks from {len(inp.peers.peers)} peer channels...")
    benchmarks = await tools.engine.compute_benchmarks(inp.peers.peer_ids, inp.window_days, now=ctx.now)
    metrics = channel_metrics_from_videos(inp.videos, inp.window_days, now=ctx.now)
    comparison = tools.engine.compare(metrics, benchmarks)
    return BenchmarkData(
        tier=inp.tier,
        peer_count=len(inp.peers.peers),
        peer_names=[p.title for p in inp.peers.peers[:10]],
        benchmarks=benchmarks,
        comparison=comparison,
        channel_metrics=metrics,
    )


def heuristic_opportunities(inp: OpportunityInput) -> OpportunityResult:
    """Opportunities derived from the audit data alone."""
    gaps: List[ContentGap] = []
    levers: List[GrowthLever] = []

    for s in inp.series.series:
        if s.performance_trend == "declining":
            gaps.append(ContentGap(
                gap=f'Refresh the "{s.name}" series',
                evidence=f"Later episodes average below the first half ({s.avg_views:,} avg views overall)",
                potential_impact="medium",
                suggested_action="Rework the format or retire it in favour of stronger series",
            ))
        elif s.performance_trend == "growing":
            levers.append(GrowthLever(
                lever=f'Double down on "{s.name}"',
                current_state=f"{s.video_count} videos, {s.avg_views:,} avg views",
                target_state="Regular cadence with more frequent episodes",
                evidence="Recent episodes outperform earlier ones",
                priority="high",
            ))

    if not inp.format_mix.has_short_form:
        gaps.append(ContentGap(
            gap="No Shorts published",
            evidence=f"{inp.format_mix.long_count} long-form videos and no short-form content",
            potential_impact="medium",
            suggested_action="Test Shorts cut from the best-performing long-form videos",
        ))
    elif not inp.format_mix.has_long_form:
        gaps.append(ContentGap(
            gap="No long-form content",
            evidence=f"{inp.format_mix.short_count} Shorts and no long-form videos",
            potential_impact="medium",
            suggested_action="Expand the strongest Shorts topics into long-form videos",
        ))

    if inp.benchmark.has_benchmarks:
        for m in inp.benchmark.comparison.metrics:
            if m.status == "below":
                levers.append(GrowthLever(
                    lever=f"Close the gap on {m.label.lower()}",
                    current_state=f"{m.value:,.4g}",
                    target_state=f"Peer median {m.benchmark:,.4g}",
                    evidence=f"{m.ratio}x of peer median",
                    priority="high" if m.ratio < 0.5 else "medium",
                ))
    else:
        snap = inp.snapshot
        if snap.recent_videos_90d < MIN_UPLOADS_PER_90D:
            levers.append(GrowthLever(
                lever="Upload consistency",
                current_state=f"{snap.recent_videos_90d} uploads in the last 90 days",
                target_state="At least one upload every two weeks",
                evidence="Low recent output",
                priority="high",
            ))
        if snap.recent_videos_90d and snap.avg_engagement_recent < LOW_ENGAGEMENT_RATE:
            levers.append(GrowthLever(
                lever="Audience engagement",
                current_state=f"{snap.avg_engagement_recent * 100:.2f}% engagement",
                target_state=f"{LOW_ENGAGEMENT_RATE * 100:.0f}% or higher",
                evidence="Recent engagement below typical levels",
                priority="medium",
            ))

    return OpportunityResult(content_gaps=gaps, growth_levers=levers, source="heuristic")


def _valid_items(model: Type[ItemModel], items: Any, required: str) -> List[ItemModel]:
    """
    Provider items that validate as model. Null fields take the model defaults;
    items that still fail validation are dropped.
    """
    if not isinstance(items, list):
        return []
    valid = []
    for raw in items:
        if not isinstance(raw, dict) or not raw.get(required):
            continue
        try:
            valid.append(model.model_validate({k: v for k, v in raw.items() if v is not None}))
        except ValidationError as exc:
            logger.warning(f"Dropping malformed {model.__name__} from provider output: {exc.error_count()} errors")
    return valid


def _opportunity_from_payload(data: Any) -> OpportunityResult:
    if not isinstance(data, dict):
        return OpportunityResult()
    gaps = _valid_items(ContentGap, data.get("content_gaps"), "gap")
    levers = _valid_items(GrowthLever, data.get("growth_levers"), "lever")
    potential = data.get("market_potential")
    return OpportunityResult(
        content_gaps=gaps,
        growth_levers=levers,
        market_potential=potential if isinstance(potential, dict) else None,
    )


async def run_opportunity_analysis(inp: OpportunityInput, ctx: RunContext, tools: StageTools) -> OpportunityResult:
    generation = await tools.meter.generate(
        audit_prompts.opportunities_prompt(inp.snapshot, inp.series, inp.benchmark, inp.videos, ctx.now),
        audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT,
        2500,
    )
    parsed = parse_structured(generation.text, {"content_gaps": [], "growth_levers": [], "market_potential": None})
    result = _opportunity_from_payload(parsed.data) if parsed.is_structured else OpportunityResult()
    if not result.content_gaps and not result.growth_levers:
        logger.warning(f"Audit {ctx.audit_id}: no opportunities from provider, using heuristics")
        fallback = heuristic_opportunities(inp)
        return fallback.model_copy(update={"market_potential": result.market_potential})
    return result


def heuristic_recommendations(inp: RecommendationInput) -> RecommendationResult:
    """Stop/start/optimize items derived from the audit data alone."""
    stop = [
        Recommendation(
            action=f'Stop investing in "{s.name}" in its current form',
            rationale="The series is losing views episode over episode",
            evidence=f"{s.video_count} videos, {s.avg_views:,} avg views, declining",
            impact="medium",
        )
        for s in inp.series.series if s.performance_trend == "declining"
    ]
    start = [
        Recommendation(action=g.suggested_action or g.gap, rationale=g.gap, evidence=g.evidence, impact=g.potential_impact, effort="medium")
        for g in inp.opportunities.content_gaps
    ]
    optimize = [
        Recommendation(action=l.lever, rationale=f"{l.current_state} -> {l.target_state}", evidence=l.evidence, impact=l.priority)
        for l in inp.opportunities.growth_levers
    ]

    if not stop:
        stop.append(Recommendation(
            action="Stop publishing formats that underperform the channel average",
            rationale="Underperforming uploads dilute recommendation signals",
            evidence=f"Recent average is {inp.snapshot.avg_views_recent:,} views",
            impact="low",
        ))
    if not start:
        start.append(Recommendation(
            action="Start a recurring, named series around the best-performing topic",
            rationale="Series build returning viewers",
            evidence=f"{inp.series.total_series} series detected",
            impact="medium",
            effort="medium",
        ))
    if not optimize:
        optimize.append(Recommendation(
            action="Optimize titles and thumbnails of the top 10 videos' topics for new uploads",
            rationale="Top performers show what the audience clicks",
            evidence=f"{inp.snapshot.total_videos_analyzed} videos analyzed",
            impact="medium",
        ))

    return RecommendationResult(stop=stop[:5], start=start[:5], optimize=optimize[:5], source="heuristic", incomplete=True)


def _recommendations_from_payload(data: Any) -> RecommendationResult:
    if not isinstance(data, dict):
        return RecommendationResult()

    def _items(key: str) -> List[Recommendation]:
        return _valid_items(Recommendation, data.get(key), "action")

    return RecommendationResult(stop=_items("stop"), start=_items("start"), optimize=_items("optimize"))


async def run_recommendations(inp: RecommendationInput, ctx: RunContext, tools: StageTools) -> RecommendationResult:
    prompt = audit_prompts.recommendations_prompt(
        inp.snapshot, inp.series, inp.benchmark, inp.opportunities, inp.videos, ctx.now
    )
    fallback_shape = {"stop": [], "start": [], "optimize": []}

    generation = await tools.meter.generate(prompt, audit_prompts.RECOMMENDATIONS_SYSTEM_PROMPT, 4000)
    parsed = parse_structured(generation.text, fallback_shape)
    result = _recommendations_from_payload(parsed.data) if parsed.is_structured else RecommendationResult()
    if not result.is_empty():
        return result

    logger.warning(f"Audit {ctx.audit_id}: empty recommendations, retrying once")
    tools.report(0.5, "Retrying recommendations...")
    retry = await tools.meter.generate(
        prompt + audit_prompts.CONCISE_RETRY_HINT,
        audit_prompts.RECOMMENDATIONS_SYSTEM_PROMPT,
        4000,
    )
    parsed = parse_structured(retry.text, fallback_shape)
    result = _recommendations_from_payload(parsed.data) if parsed.is_structured else RecommendationResult()
    if not result.is_empty():
        return result

    logger.warning(f"Audit {ctx.audit_id}: recommendations incomplete, using heuristics")
    return heuristic_recommendations(inp)


def _fallback_summary(inp: SummaryInput) -> str:
    snap = inp.snapshot
    lines = [
        f"## {snap.title or snap.channel_id}",
        "",
        f"- {snap.subscriber_count:,} subscribers ({snap.size_tier} tier)",
        f"- {snap.recent_videos_90d} uploads in the last 90 days averaging {snap.avg_views_recent:,} views",
        f"- {inp.series.total_series} content series detected",
    ]
    if inp.benchmark.has_benchmarks and inp.benchmark.comparison.overall_score is not None:
        lines.append(f"- {inp.benchmark.comparison.overall_score}x the peer median across compared metrics")
    return "\n".join(lines)


async def run_executive_summary(inp: SummaryInput, ctx: RunContext, tools: StageTools) -> ExecutiveSummaryResult:
    generation = await tools.meter.generate(
        audit_prompts.summary_prompt(
            inp.audit_type,
            inp.snapshot,
            inp.format_mix,
            inp.series,
            inp.benchmark,
            inp.opportunities,
            inp.recommendations,
        ),
        audit_prompts.SUMMARY_SYSTEM_PROMPTS[inp.audit_type],
        2000,
    )
    summary = (generation.text or "").strip()
    if not summary:
        logger.warning(f"Audit {ctx.audit_id}: empty summary, using data outline")
        summary = _fallback_summary(inp)
    return ExecutiveSummaryResult(summary=summary, audit_type=inp.audit_type)


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------


Outputs = Dict[str, StageResult]


def _ingestion(outputs: Outputs) -> IngestionResult:
    return outputs["ingestion"]


def build_ingestion_input(outputs: Outputs, ctx: RunContext) -> IngestionInput:
    tier = get_tier(classify_tier(ctx.channel.subscriber_count))
    return IngestionInput(
        channel=ctx.channel,
        max_videos=ctx.config.max_videos or tier.max_videos,
        force_refresh=ctx.config.force_refresh,
    )


def build_series_input(outputs: Outputs, ctx: RunContext) -> SeriesInput:
    return SeriesInput(videos=tuple(_ingestion(outputs).videos))


def build_peer_match_input(outputs: Outputs, ctx: RunContext) -> PeerMatchInput:
    ingestion = _ingestion(outputs)
    return PeerMatchInput(
        channel_id=ingestion.channel.id,
        tier=ingestion.size_tier,
        category=ctx.config.category or ingestion.channel.category,
        peer_limit=ctx.config.peer_limit,
    )


def build_benchmark_input(outputs: Outputs, ctx: RunContext) -> BenchmarkInput:
    ingestion = _ingestion(outputs)
    return BenchmarkInput(
        tier=ingestion.size_tier,
        peers=outputs["competitor_matching"],
        videos=tuple(ingestion.videos),
        window_days=ctx.config.benchmark_window_days,
    )


def build_opportunity_input(outputs: Outputs, ctx: RunContext) -> OpportunityInput:
    ingestion = _ingestion(outputs)
    return OpportunityInput(
        snapshot=ingestion.snapshot,
        format_mix=ingestion.format_mix,
        series=outputs["series_detection"],
        benchmark=outputs["benchmarking"],
        videos=tuple(ingestion.videos),
    )


def build_recommendation_input(outputs: Outputs, ctx: RunContext) -> RecommendationInput:
    ingestion = _ingestion(outputs)
    return RecommendationInput(
        snapshot=ingestion.snapshot,
        format_mix=ingestion.format_mix,
        series=outputs["series_detection"],
        benchmark=outputs["benchmarking"],
        opportunities=outputs["opportunity_analysis"],
        videos=tuple(ingestion.videos),
    )


def build_summary_input(outputs: Outputs, ctx: RunContext) -> SummaryInput:
    ingestion = _ingestion(outputs)
    return SummaryInput(
        audit_type=ctx.audit_type,
        snapshot=ingestion.snapshot,
        format_mix=ingestion.format_mix,
        series=outputs["series_detection"],
        benchmark=outputs["benchmarking"],
        opportunities=outputs["opportunity_analysis"],
        recommendations=outputs["recommendations"],
    )


@dataclass(frozen=True)
class StageSpec:
    name: str
    start_pct: int
    end_pct: int
    label: str
    result_model: Type[StageResult]
    input_type: Type[Any]
    requires: Tuple[str, ...]
    build_input: Callable[[Outputs, RunContext], Any]
    run: Callable[[Any, RunContext, StageTools], Any]

    def missing_inputs(self, outputs: Outputs) -> List[str]:
        """Upstream stages this one reads that have no output yet."""
        return [name for name in self.requires if name not in outputs]


PIPELINE: Tuple[StageSpec, ...] = (
    StageSpec("ingestion", 0, 15, "Ingesting channel data", IngestionResult, IngestionInput, (),
              build_ingestion_input, run_ingestion),
    StageSpec("series_detection", 15, 30, "Detecting content series", SeriesSummary, SeriesInput,
              ("ingestion",), build_series_input, run_series_detection),
    StageSpec("competitor_matching", 30, 40, "Finding peer channels", PeerMatchResult, PeerMatchInput,
              ("ingestion",), build_peer_match_input, run_competitor_matching),
    StageSpec("benchmarking", 40, 55, "Benchmarking against peers", BenchmarkData, BenchmarkInput,
              ("ingestion", "competitor_matching"), build_benchmark_input, run_benchmarking),
    StageSpec("opportunity_analysis", 55, 70, "Analyzing opportunities", OpportunityResult, OpportunityInput,
              ("ingestion", "series_detection", "benchmarking"), build_opportunity_input, run_opportunity_analysis),
    StageSpec("recommendations", 70, 85, "Generating recommendations", RecommendationResult, RecommendationInput,
              ("ingestion", "series_detection", "benchmarking", "opportunity_analysis"),
              build_recommendation_input, run_recommendations),
    StageSpec("executive_summary", 85, 100, "Writing executive summary", ExecutiveSummaryResult, SummaryInput,
              ("ingestion", "series_detection", "benchmarking", "opportunity_analysis", "recommendations"),
              build_summary_input, run_executive_summary),
)
