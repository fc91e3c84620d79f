"""
Thin YouTube Data API v3 wrapper used by channel ingestion and peer fetches.

Every request goes through YouTubeClient._execute so the audit ledger can
count quota-consuming calls.
"""

import logging
import re
from typing import Any, Dict, Iterator, List, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

PAGE_SIZE = 50

_CHANNEL_ID = re.compile(r"^UC[\w-]{22}$")
_DURATION = re.compile(r"P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")

# Checked in order; the first match wins
_IDENTIFIER_PATTERNS = (
    re.compile(r"youtube\.com/channel/(UC[\w-]{22})"),
    re.compile(r"youtube\.com/@([\w.-]+)"),
    re.compile(r"youtube\.com/(?:c|user)/([\w.-]+)"),
    re.compile(r"^@([\w.-]+)$"),
)


class YouTubeAPIError(Exception):
    """A YouTube Data API request failed."""


def _count(stats: Dict[str, Any], key: str) -> int:
    return int(stats.get(key, 0) or 0)


def _channel_from_item(item: Dict[str, Any]) -> Dict[str, Any]:
    snippet = item.get("snippet", {})
    stats = item.get("statistics", {})
    topics = item.get("topicDetails", {}).get("topicCategories") or []
    playlists = item.get("contentDetails", {}).get("relatedPlaylists", {})
    return {
        "id": item["id"],
        "title": snippet.get("title", ""),
        "custom_url": snippet.get("customUrl", ""),
        # Topic categories are wikipedia URLs; keep the article name
        "category": topics[0].rsplit("/", 1)[-1] if topics else None,
        "thumbnail_url": snippet.get("thumbnails", {}).get("high", {}).get("url", ""),
        "subscriber_count": _count(stats, "subscriberCount"),
        "video_count": _count(stats, "videoCount"),
        "view_count": _count(stats, "viewCount"),
        "uploads_playlist_id": playlists.get("uploads"),
    }


def parse_duration(duration: Optional[str]) -> int:
    """ISO 8601 duration (PT1H2M3S) in seconds, 0 when unparseable."""
    match = _DURATION.match(duration or "")
    if not match:
        return 0
    days, hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return ((days * 24 + hours) * 60 + minutes) * 60 + seconds


class YouTubeClient:
    """Synchronous client; callers run it in a worker thread."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("api_key must be provided")
        self.youtube = build("youtube", "v3", developerKey=api_key, cache_discovery=False)
        self.api_calls = 0

    def _execute(self, request, what: str) -> Dict[str, Any]:
        self.api_calls += 1
        try:
            return request.execute()
        except HttpError as e:
            logger.warning(f"YouTube API call failed ({what}): {e}")
            raise YouTubeAPIError(f"{what} failed: {e}") from e

    def resolve_channel_identifier(self, identifier: str) -> Optional[str]:
        """
        Channel id for a channel id, channel/handle/custom/user URL, @handle
        or free-text name. None when nothing matches.
        """
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        if _CHANNEL_ID.match(identifier):
            return identifier

        query = identifier
        for pattern in _IDENTIFIER_PATTERNS:
            match = pattern.search(identifier)
            if match:
                query = match.group(1)
                break
        if _CHANNEL_ID.match(query):
            return query
        return self._lookup_channel_id(query)

    def _lookup_channel_id(self, query: str) -> Optional[str]:
        handle = query.lstrip("@")
        response = self._execute(
            self.youtube.channels().list(part="id", forHandle=handle),
            f"handle lookup '{handle}'",
        )
        items = response.get("items") or []
        if items:
            return items[0]["id"]

        response = self._execute(
            self.youtube.search().list(part="snippet", q=query, type="channel", maxResults=1),
            f"channel search '{query}'",
        )
        items = response.get("items") or []
        return items[0]["snippet"]["channelId"] if items else None

    def get_channel_info(self, channel_id: str) -> Optional[Dict[str, Any]]:
        """Channel metadata and statistics, or None for an unknown id."""
        response = self._execute(
            self.youtube.channels().list(part="snippet,statistics,contentDetails,topicDetails", id=channel_id),
            f"channel {channel_id}",
        )
        items = response.get("items") or []
        return _channel_from_item(items[0]) if items else None

    def _playlist_pages(self, playlist_id: str, limit: int) -> Iterator[Dict[str, Any]]:
        fetched = 0
        page_token = None
        while fetched < limit:
            response = self._execute(
                self.youtube.playlistItems().list(
                    part="snippet,contentDetails",
                    playlistId=playlist_id,
                    maxResults=min(PAGE_SIZE, limit - fetched),
                    pageToken=page_token,
                ),
                f"playlist {playlist_id}",
            )
            items = response.get("items", [])
            fetched += len(items)
            yield from items
            page_token = response.get("nextPageToken")
            if not page_token or not items:
                return

    def get_channel_videos(
        self,
        channel_id: str,
        max_results: int = 50,
        uploads_playlist_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Most recent uploads (id, title, published_at, channel_id), newest first."""
        if not uploads_playlist_id:
            info = self.get_channel_info(channel_id)
            uploads_playlist_id = (info or {}).get("uploads_playlist_id")
            if not uploads_playlist_id:
                return []

        videos = []
        for item in self._playlist_pages(uploads_playlist_id, max_results):
            snippet = item.get("snippet", {})
            content = item.get("contentDetails", {})
            if not content.get("videoId"):
                continue
            videos.append(
                {
                    "id": content["videoId"],
                    "title": snippet.get("title", ""),
                    "published_at": content.get("videoPublishedAt") or snippet.get("publishedAt"),
                    "channel_id": channel_id,
                }
            )
        return videos[:max_results]

    def get_video_details(self, video_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Statistics and duration per video id, one request per 50 ids."""
        details: Dict[str, Dict[str, Any]] = {}
        for start in range(0, len(video_ids), PAGE_SIZE):
            batch = video_ids[start:start + PAGE_SIZE]
            response = self._execute(
                self.youtube.videos().list(part="statistics,contentDetails", id=",".join(batch)),
                f"details for {len(batch)} videos",
            )
            for item in response.get("items", []):
                stats = item.get("statistics", {})
                details[item["id"]] = {
                    "view_count": _count(stats, "viewCount"),
                    "like_count": _count(stats, "likeCount"),
                    "comment_count": _count(stats, "commentCount"),
                    "duration_seconds": parse_duration(item.get("contentDetails", {}).get("duration")),
                }
        return details


def create_youtube_client_with_api_key(api_key: str) -> YouTubeClient:
    return YouTubeClient(api_key=api_key)
