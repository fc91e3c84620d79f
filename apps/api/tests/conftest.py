import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from analysis.models import ChannelRef, TokenUsage, VideoRef
from database import Base
from services import audit_prompts
from services.analysis_provider import Generation
from services.audit_errors import ChannelResolutionError, ProviderError
from services.audit_store import SqlAuditStore


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

SUBJECT = ChannelRef(
    id="UC_subject",
    title="Subject Channel",
    handle="@subject",
    category="Education",
    subscriber_count=50_000,
    video_count=40,
    view_count=2_000_000,
)


def make_video(
    video_id: str,
    channel_id: str = SUBJECT.id,
    title: str = "",
    days_ago: float = 10,
    views: int = 1000,
    likes: int = 50,
    comments: int = 10,
    duration: Optional[int] = 600,
) -> VideoRef:
    return VideoRef(
        id=video_id,
        channel_id=channel_id,
        title=title or f"Video {video_id}",
        published_at=NOW - timedelta(days=days_ago),
        duration_seconds=duration,
        view_count=views,
        like_count=likes,
        comment_count=comments,
    )


MISC_TITLES = (
    "How I cook rice",
    "Why the sky is blue",
    "My desk setup tour",
    "Reacting to old videos",
    "Ten tips for focus",
    "Visiting Tokyo alone",
)


def subject_videos() -> List[VideoRef]:
    videos = [
        make_video(f"s-ep{i}", title=f"Deep Dive - Episode {i}", days_ago=80 - i * 10, views=1000 + i * 400)
        for i in range(1, 5)
    ]
    videos += [
        make_video(f"s-misc{i}", title=title, days_ago=5 + i, views=800, duration=45)
        for i, title in enumerate(MISC_TITLES)
    ]
    return videos


PEERS = [
    ChannelRef(id="UC_peer_a", title="Peer A", category="Education", subscriber_count=80_000),
    ChannelRef(id="UC_peer_b", title="Peer B", category="Education", subscriber_count=30_000),
    ChannelRef(id="UC_peer_c", title="Peer C", category="Education", subscriber_count=8_000),
]


def peer_videos(channel_id: str) -> List[VideoRef]:
    return [
        make_video(f"{channel_id}-{i}", channel_id=channel_id, days_ago=7 * i + 1, views=2000, duration=600 if i % 2 else 30)
        for i in range(4)
    ]


class FakeChannelDataSource:
    """In-memory ChannelDataSource counting one API call per request."""

    def __init__(
        self,
        channel: ChannelRef = SUBJECT,
        videos: Optional[List[VideoRef]] = None,
        peers: Optional[List[ChannelRef]] = None,
        peer_videos_by_id: Optional[Dict[str, List[VideoRef]]] = None,
        fetch_delay: float = 0,
    ):
        self.channel = channel
        self.videos = subject_videos() if videos is None else videos
        self.peers = list(PEERS) if peers is None else peers
        self.peer_videos_by_id = peer_videos_by_id or {p.id: peer_videos(p.id) for p in self.peers}
        self.fetch_delay = fetch_delay
        self.api_calls = 0
        self.fetch_calls: List[str] = []
        self.fail_resolve: Optional[Exception] = None
        self.failing_channels: set = set()

    async def resolve_channel(self, channel_input: str, force_refresh: bool = False) -> ChannelRef:
        self.api_calls += 1
        if self.fail_resolve is not None:
            raise self.fail_resolve
        if channel_input.startswith("missing"):
            raise ChannelResolutionError(f"Could not resolve channel from '{channel_input}'")
        return self.channel

    async def fetch_videos(self, channel_id: str, max_results: int, force_refresh: bool = False) -> List[VideoRef]:
        self.api_calls += 2
        self.fetch_calls.append(channel_id)
        if channel_id in self.failing_channels:
            raise ProviderError(f"quota exceeded for {channel_id}")
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if channel_id == self.channel.id:
            return self.videos[:max_results]
        return self.peer_videos_by_id.get(channel_id, [])[:max_results]

    async def query_peers(self, span, filters) -> List[ChannelRef]:
        low, high = span
        return [
            p for p in self.peers
            if p.id != filters.exclude_channel_id
            and p.subscriber_count >= low
            and (high is None or p.subscriber_count < high)
        ]


RECOMMENDATIONS_JSON = (
    '{"stop": [{"action": "Stop long intros", "impact": "medium"}],'
    ' "start": [{"action": "Start a weekly live Q&A", "impact": "high"}],'
    ' "optimize": [{"action": "Tighten thumbnails", "impact": "medium"}]}'
)

OPPORTUNITIES_JSON = (
    '```json\n{"content_gaps": [{"gap": "No tutorials for beginners", "potential_impact": "high"}],'
    ' "growth_levers": [{"lever": "Upload cadence", "priority": "high"}],'
    ' "market_potential": {"ceiling": "high"}}\n```'
)

SERIES_JSON = '{"series": [{"name": "Random Topics", "videoIndices": [0, 1, 2, 3]}]}'


def respond_by_prompt(system_prompt: str, prompt: str) -> str:
    if system_prompt == audit_prompts.SERIES_SYSTEM_PROMPT:
        return SERIES_JSON
    if system_prompt == audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT:
        return OPPORTUNITIES_JSON
    if system_prompt == audit_prompts.RECOMMENDATIONS_SYSTEM_PROMPT:
        return RECOMMENDATIONS_JSON
    return "## Summary\n\nA solid channel with room to grow."


class FakeAnalysisProvider:
    """
    Scripted AnalysisProvider. Each call costs 100 input + 50 output tokens at $0.001.

    fail_on names a system prompt whose calls raise ProviderError once
    fail_after calls with it have succeeded.
    """

    def __init__(
        self,
        responder=respond_by_prompt,
        fail_on: Optional[str] = None,
        fail_after: int = 0,
        delay: float = 0,
    ):
        self.responder = responder
        self.fail_on = fail_on
        self.fail_after = fail_after
        self.delay = delay
        self.calls: List[Dict[str, str]] = []

    async def generate(self, prompt: str, system_prompt: str, max_tokens: int = 2000) -> Generation:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on is not None and system_prompt == self.fail_on:
            succeeded = sum(1 for c in self.calls if c["system_prompt"] == system_prompt)
            if succeeded >= self.fail_after:
                raise ProviderError("provider exploded")
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt})
        return Generation(
            text=self.responder(system_prompt, prompt),
            usage=TokenUsage(input_tokens=100, output_tokens=50, cost=0.001),
        )


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "audits.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()


@pytest.fixture
def store(session_maker):
    return SqlAuditStore(session_maker)


@pytest.fixture
def source():
    return FakeChannelDataSource()


@pytest.fixture
def provider():
    return FakeAnalysisProvider()
