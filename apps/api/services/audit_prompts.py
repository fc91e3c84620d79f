"""Prompt builders for the provider-backed audit stages."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from analysis.models import (
    AuditType,
    BenchmarkData,
    ChannelSnapshot,
    FormatMix,
    OpportunityResult,
    RecommendationResult,
    SeriesSummary,
    VideoRef,
)

SERIES_SYSTEM_PROMPT = """You are a YouTube content analyst. Given video titles from one channel, identify recurring content series or thematic groupings.

A series is 3 or more videos sharing a recurring theme, format or subject, even when the creator never names it.

Rules:
- Only include groupings with 3 or more videos
- Use clear, descriptive series names
- A video belongs to at most one series
- Group by recurring intent, not keyword overlap
- Return ONLY valid JSON"""

OPPORTUNITIES_SYSTEM_PROMPT = """You are a YouTube content strategist running the opportunity analysis of a channel audit. Use the channel data, series performance and peer benchmarks to identify growth opportunities.

Rules:
- Reference actual numbers from the data
- Focus on gaps between the channel and its peers
- Identify at least 2 content gaps and 2 growth levers
- Without peer benchmarks, compare against typical channels of the same size tier
- Return ONLY valid JSON starting with { and ending with }"""

RECOMMENDATIONS_SYSTEM_PROMPT = """You are a YouTube growth strategist turning a channel audit into Stop, Start and Optimize recommendations.

Rules:
- Each recommendation cites specific data from the analysis
- Be direct and actionable
- 3 to 5 recommendations per category, at least 1 in each
- Calibrate advice to the channel's size tier
- Without benchmark data, rely on the channel's own performance patterns
- Return ONLY valid JSON starting with { and ending with }"""

SUMMARY_SYSTEM_PROMPTS = {
    AuditType.PROSPECT: """You are a YouTube growth consultant writing the executive summary of an audit for a prospective client. Show a clear grasp of the channel's strengths and weaknesses and make the case for how the agency can help.

Professional, approachable tone. Markdown. Specific data points. 400 to 600 words.
If the channel publishes both Shorts and long-form, compare the formats briefly; if only one, say whether the other is an opportunity.""",
    AuditType.BASELINE: """You are a YouTube growth consultant writing the executive summary of a baseline audit for a new client. Establish current performance, the biggest opportunities and realistic growth expectations. This is the "before" snapshot.

Professional, approachable tone. Markdown. Specific data points. 400 to 600 words.
If the channel publishes both Shorts and long-form, compare the formats briefly; if only one, say whether the other is an opportunity.""",
}

CONCISE_RETRY_HINT = "\n\nIMPORTANT: Keep each recommendation to 1-2 sentences per field. Return valid JSON only."


def _pct(rate: float) -> str:
    return f"{(rate or 0) * 100:.2f}%"


def _recent(videos: Sequence[VideoRef], days: int, now: datetime) -> List[VideoRef]:
    cutoff = now - timedelta(days=days)
    recent = []
    for video in videos:
        if video.published_at is None:
            continue
        published = video.published_at
        if published.tzinfo is None:
            published = published.replace(tzinfo=timezone.utc)
        if published > cutoff:
            recent.append(video)
    return recent


def _channel_block(snapshot: ChannelSnapshot) -> str:
    return "\n".join([
        f"- Name: {snapshot.title or 'Unknown'}",
        f"- Subscribers: {snapshot.subscriber_count:,}",
        f"- Size Tier: {snapshot.size_tier}",
        f"- Total Videos Analyzed: {snapshot.total_videos_analyzed}",
        f"- Recent Videos (90d): {snapshot.recent_videos_90d}",
        f"- Avg Views (90d): {snapshot.avg_views_recent:,}",
        f"- Avg Engagement (90d): {_pct(snapshot.avg_engagement_recent)}",
    ])


def _series_block(series: SeriesSummary, limit: Optional[int] = None, detailed: bool = False) -> str:
    items = series.series[:limit] if limit else series.series
    if not items:
        return "No series detected"
    lines = []
    for s in items:
        line = f'- "{s.name}": {s.video_count} videos, {s.avg_views:,} avg views, trend: {s.performance_trend}'
        if detailed:
            cadence = f"{s.cadence_days} days" if s.cadence_days else "irregular"
            line += f", engagement: {_pct(s.avg_engagement_rate)}, cadence: {cadence}"
        lines.append(line)
    return "\n".join(lines)


def _comparison_block(benchmark: BenchmarkData) -> str:
    lines = [
        f"- {m.label}: {m.value:,.4g} vs peer median {m.benchmark:,.4g} ({m.ratio}x, {m.status})"
        for m in benchmark.comparison.metrics
    ]
    return "\n".join(lines)


def series_prompt(candidates: Sequence[VideoRef], existing_names: Sequence[str]) -> str:
    titles = "\n".join(
        f'{i}. "{v.title}" ({v.view_count:,} views)' for i, v in enumerate(candidates)
    )
    return f"""Here are {len(candidates)} video titles from a YouTube channel that match no obvious title pattern.

Series already detected by title patterns: {', '.join(existing_names) if existing_names else 'None'}

Videos:
{titles}

Identify implicit series. Respond with:
{{
  "series": [
    {{"name": "Descriptive Series Name", "videoIndices": [0, 3, 7], "confidence": "high"}}
  ]
}}"""


def opportunities_prompt(
    snapshot: ChannelSnapshot,
    series: SeriesSummary,
    benchmark: BenchmarkData,
    videos: Sequence[VideoRef],
    now: datetime,
) -> str:
    top = sorted(videos, key=lambda v: v.view_count, reverse=True)[:10]
    recent = _recent(videos, 90, now)[:20]
    top_lines = "\n".join(f'- "{v.title}": {v.view_count:,} views' for v in top)
    recent_lines = "\n".join(f'- "{v.title}": {v.view_count:,} views, {v.format_type}' for v in recent)

    if benchmark.has_benchmarks:
        b = benchmark.benchmarks
        bench = "\n".join([
            f"Peer count: {benchmark.peer_count}",
            f"Peer median views: {b.all.median:,}",
            f"Peer median engagement: {_pct(b.engagement_rate.median)}",
            f"Peer median upload frequency: {b.upload_frequency.median:.1f}/week",
            f"Peer content mix: {b.content_mix.shorts_pct}% shorts / {b.content_mix.long_form_pct}% long-form",
            _comparison_block(benchmark),
        ])
    else:
        bench = "No peer benchmarks available. Compare against typical channels of this size tier instead."

    return f"""Analyze opportunities for this YouTube channel:

## Channel Overview
{_channel_block(snapshot)}

## Series Performance
{_series_block(series)}
Uncategorized videos: {series.uncategorized_count}

## Competitive Benchmarks
{bench}

## Top Performing Videos
{top_lines or 'None'}

## Recent Videos (last 90 days)
{recent_lines or 'None'}

Respond with:
{{
  "content_gaps": [
    {{"gap": "...", "evidence": "...", "potential_impact": "high|medium|low", "suggested_action": "..."}}
  ],
  "growth_levers": [
    {{"lever": "...", "current_state": "...", "target_state": "...", "evidence": "...", "priority": "high|medium|low"}}
  ],
  "market_potential": {{
    "tier_position": "...",
    "growth_ceiling": "...",
    "key_differentiators": ["..."],
    "biggest_risk": "..."
  }}
}}"""


def recommendations_prompt(
    snapshot: ChannelSnapshot,
    series: SeriesSummary,
    benchmark: BenchmarkData,
    opportunities: OpportunityResult,
    videos: Sequence[VideoRef],
    now: datetime,
) -> str:
    threshold = snapshot.avg_views_recent * 0.3
    underperformers = [v for v in _recent(videos, 180, now) if v.view_count < threshold][:10]

    comparison = _comparison_block(benchmark) or "No benchmarks available. Base advice on the channel's own data."
    if benchmark.comparison.overall_score is not None:
        comparison += f"\nOverall benchmark score: {benchmark.comparison.overall_score}x peer median"

    gaps = "\n".join(f"- {g.gap} ({g.potential_impact} impact)" for g in opportunities.content_gaps)
    levers = "\n".join(
        f"- {l.lever}: {l.current_state} -> {l.target_state} ({l.priority} priority)"
        for l in opportunities.growth_levers
    )
    under = "\n".join(f'- "{v.title}": {v.view_count:,} views ({v.format_type})' for v in underperformers)

    return f"""Generate strategic recommendations for this YouTube channel from the full audit:

## Channel Overview
{_channel_block(snapshot)}

## Series Analysis
{_series_block(series, detailed=True)}

## Benchmark Comparison
{comparison}

## Identified Opportunities
Content Gaps:
{gaps or 'None identified'}

Growth Levers:
{levers or 'None identified'}

## Underperforming Content (last 180 days, under 30% of average views)
{under or 'None identified'}

Respond with:
{{
  "stop": [{{"action": "...", "rationale": "...", "evidence": "...", "impact": "high|medium|low"}}],
  "start": [{{"action": "...", "rationale": "...", "evidence": "...", "impact": "high|medium|low", "effort": "high|medium|low"}}],
  "optimize": [{{"action": "...", "rationale": "...", "evidence": "...", "impact": "high|medium|low"}}]
}}"""


def summary_prompt(
    audit_type: AuditType,
    snapshot: ChannelSnapshot,
    format_mix: FormatMix,
    series: SeriesSummary,
    benchmark: BenchmarkData,
    opportunities: OpportunityResult,
    recommendations: RecommendationResult,
) -> str:
    is_prospect = audit_type == AuditType.PROSPECT
    b = benchmark.benchmarks

    if format_mix.has_both_formats:
        long_line = f"- Long-form: {format_mix.long_count} videos"
        if b.long_form.median:
            long_line += f", peer median: {b.long_form.median:,}"
        short_line = f"- Shorts: {format_mix.short_count} videos"
        if b.short_form.median:
            short_line += f", peer median: {b.short_form.median:,}"
        formats = f"{long_line}\n{short_line}"
    elif format_mix.has_short_form:
        formats = f"Shorts-only channel: {format_mix.short_count} videos"
    else:
        formats = f"Long-form only: {format_mix.long_count} videos, no Shorts published"

    if benchmark.has_benchmarks:
        overall = benchmark.comparison.overall_score
        bench = "\n".join(
            [f"Compared against {benchmark.peer_count} peer channels."]
            + [f"Overall score: {overall if overall is not None else 'N/A'}x peer median."]
            + [f"- {m.label}: {m.status} peers ({m.ratio}x)" for m in benchmark.comparison.metrics]
        )
    else:
        bench = "No peer benchmarks available."

    def _actions(items) -> str:
        return "; ".join(r.action for r in items) or "None"

    framing = (
        "Frame this as a pitch: highlight what the agency can unlock for this channel."
        if is_prospect
        else "Frame this as a baseline: establish measurable starting points and realistic growth targets."
    )

    gaps = "\n".join(f"- {g.gap} ({g.potential_impact} impact)" for g in opportunities.content_gaps[:3])
    levers = "\n".join(f"- {l.lever} ({l.priority} priority)" for l in opportunities.growth_levers[:3])

    return f"""Write an executive summary for this {'prospect' if is_prospect else 'client baseline'} YouTube channel audit:

## Channel
{_channel_block(snapshot)}

## Format Performance
{formats}

## Series ({series.total_series} detected)
{_series_block(series, limit=5)}

## Peer Benchmarks
{bench}

## Top Opportunities
{gaps or 'None identified'}

## Key Growth Levers
{levers or 'None identified'}

## Recommendations Summary
Stop: {_actions(recommendations.stop)}
Start: {_actions(recommendations.start)}
Optimize: {_actions(recommendations.optimize)}

{framing}"""
