"""
Channel data source used by audit ingestion and benchmarking.

YouTubeChannelDataSource resolves and fetches channels through the YouTube Data
API, keeps the local channels/videos catalogue up to date, reuses catalogue
rows synced within the cache window, and answers peer queries from the
catalogue.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from analysis.models import SHORT_FORM_MAX_SECONDS, ChannelRef, PeerFilters, VideoRef
from analysis.stats import classify_tier
from ingestion.youtube import YouTubeAPIError, YouTubeClient
from models.channel import Channel
from models.video import Video
from services.audit_errors import ChannelResolutionError, ProviderError, call_with_timeout

logger = logging.getLogger(__name__)

SubscriberSpan = Tuple[int, Optional[int]]


class ChannelDataSource(Protocol):
    """Where channels, their uploads and candidate peers come from."""

    api_calls: int

    async def resolve_channel(self, channel_input: str, force_refresh: bool = False) -> ChannelRef: ...

    async def fetch_videos(self, channel_id: str, max_results: int, force_refresh: bool = False) -> List[VideoRef]: ...

    async def query_peers(self, span: SubscriberSpan, filters: PeerFilters) -> List[ChannelRef]: ...


def _parse_published(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _channel_ref(row: Channel) -> ChannelRef:
    return ChannelRef(
        id=row.id,
        title=row.title or "",
        handle=row.handle,
        category=row.category,
        subscriber_count=row.subscriber_count or 0,
        video_count=row.video_count or 0,
        view_count=row.view_count or 0,
        thumbnail_url=row.thumbnail_url,
    )


def _video_ref(row: Video) -> VideoRef:
    return VideoRef(
        id=row.id,
        channel_id=row.channel_id,
        title=row.title or "",
        published_at=row.published_at,
        duration_seconds=row.duration_seconds,
        video_type=row.video_type,
        view_count=row.view_count or 0,
        like_count=row.like_count or 0,
        comment_count=row.comment_count or 0,
    )


def _is_fresh(row: Channel, cache_hours: int, now: datetime) -> bool:
    if row.last_synced_at is None:
        return False
    synced = row.last_synced_at
    if synced.tzinfo is None:
        synced = synced.replace(tzinfo=timezone.utc)
    return now - synced < timedelta(hours=cache_hours)


class YouTubeChannelDataSource:
    """ChannelDataSource on the YouTube Data API plus the local catalogue."""

    def __init__(
        self,
        client: YouTubeClient,
        session_maker: async_sessionmaker,
        timeout: Optional[float] = None,
        cache_hours: int = 24,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.session_maker = session_maker
        self.timeout = timeout
        self.cache_hours = cache_hours
        self.clock = clock

    @property
    def api_calls(self) -> int:
        return self.client.api_calls

    async def _call(self, what: str, fn, *args, **kwargs):
        try:
            return await call_with_timeout(asyncio.to_thread(fn, *args, **kwargs), self.timeout, what)
        except YouTubeAPIError as exc:
            raise ProviderError(str(exc)) from exc

    async def _cached_channel(self, channel_id: str) -> Optional[Channel]:
        async with self.session_maker() as db:
            return await db.get(Channel, channel_id)

    async def resolve_channel(self, channel_input: str, force_refresh: bool = False) -> ChannelRef:
        channel_id = await self._call("resolve_channel", self.client.resolve_channel_identifier, channel_input)
        if not channel_id:
            raise ChannelResolutionError(f"Could not resolve channel from '{channel_input}'")

        now = self.clock()
        cached = await self._cached_channel(channel_id)
        if cached is not None and not force_refresh and _is_fresh(cached, self.cache_hours, now):
            logger.info(f"Using cached channel data for {channel_id}")
            return _channel_ref(cached)

        info = await self._call("get_channel_info", self.client.get_channel_info, channel_id)
        if not info:
            raise ChannelResolutionError(f"Channel {channel_id} not found")

        async with self.session_maker() as db:
            row = await db.get(Channel, channel_id)
            if row is None:
                row = Channel(id=channel_id, created_via="audit")
                db.add(row)
            row.title = info.get("title") or ""
            row.handle = info.get("custom_url") or row.handle
            row.category = row.category or info.get("category")
            row.subscriber_count = info.get("subscriber_count", 0)
            row.video_count = info.get("video_count", 0)
            row.view_count = info.get("view_count", 0)
            row.thumbnail_url = info.get("thumbnail_url")
            row.uploads_playlist_id = info.get("uploads_playlist_id")
            row.size_tier = classify_tier(row.subscriber_count or 0)
            await db.commit()
            return _channel_ref(row)

    async def _stored_videos(self, channel_id: str, max_results: int) -> List[VideoRef]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Video)
                .where(Video.channel_id == channel_id)
                .order_by(Video.published_at.desc())
                .limit(max_results)
            )
            return [_video_ref(row) for row in result.scalars().all()]

    async def fetch_videos(self, channel_id: str, max_results: int, force_refresh: bool = False) -> List[VideoRef]:
        now = self.clock()
        cached = await self._cached_channel(channel_id)
        if cached is not None and not force_refresh and _is_fresh(cached, self.cache_hours, now):
            return await self._stored_videos(channel_id, max_results)

        uploads_playlist_id = cached.uploads_playlist_id if cached is not None else None
        items = await self._call(
            "get_channel_videos",
            self.client.get_channel_videos,
            channel_id,
            max_results,
            uploads_playlist_id,
        )
        details = await self._call(
            "get_video_details",
            self.client.get_video_details,
            [item["id"] for item in items],
        )
        await self._store_videos(channel_id, items, details, now)
        return await self._stored_videos(channel_id, max_results)

    async def _store_videos(
        self,
        channel_id: str,
        items: List[Dict[str, Any]],
        details: Dict[str, Dict[str, Any]],
        now: datetime,
    ) -> None:
        async with self.session_maker() as db:
            channel = await db.get(Channel, channel_id)
            if channel is None:
                channel = Channel(id=channel_id, created_via="audit")
                db.add(channel)
            for item in items:
                stats = details.get(item["id"], {})
                row = await db.get(Video, item["id"])
                if row is None:
                    row = Video(id=item["id"], channel_id=channel_id)
                    db.add(row)
                duration = stats.get("duration_seconds")
                row.title = item.get("title") or ""
                row.published_at = _parse_published(item.get("published_at"))
                row.duration_seconds = duration
                if duration:
                    row.video_type = "short" if duration <= SHORT_FORM_MAX_SECONDS else "long"
                row.view_count = stats.get("view_count", 0)
                row.like_count = stats.get("like_count", 0)
                row.comment_count = stats.get("comment_count", 0)
                row.metrics_updated_at = now
            channel.last_synced_at = now
            await db.commit()
        logger.info(f"Stored {len(items)} videos for channel {channel_id}")

    async def query_peers(self, span: SubscriberSpan, filters: PeerFilters) -> List[ChannelRef]:
        low, high = span
        async with self.session_maker() as db:
            query = select(Channel).where(
                Channel.sync_enabled.is_(True),
                Channel.subscriber_count >= low,
            )
            if high is not None:
                query = query.where(Channel.subscriber_count < high)
            if filters.exclude_channel_id:
                query = query.where(Channel.id != filters.exclude_channel_id)
            if filters.category:
                query = query.where(Channel.category == filters.category)
            query = query.order_by(Channel.subscriber_count.desc()).limit(filters.limit)
            result = await db.execute(query)
            return [_channel_ref(row) for row in result.scalars().all()]
