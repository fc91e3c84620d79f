from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from analysis.models import PeerFilters
from ingestion.youtube import YouTubeAPIError, YouTubeClient, parse_duration
from models.channel import Channel
from services.audit_errors import ChannelResolutionError, ProviderError
from services.channel_source import YouTubeChannelDataSource
from conftest import NOW


@pytest.fixture
def mock_youtube_client():
    client = MagicMock(spec=YouTubeClient)
    client.api_calls = 0

    client.resolve_channel_identifier.side_effect = lambda url: "UC_MOCK_CHANNEL_ID" if "valid" in url else None

    client.get_channel_info.return_value = {
        "id": "UC_MOCK_CHANNEL_ID",
        "title": "Mock Channel",
        "custom_url": "@mockchannel",
        "category": "Education",
        "thumbnail_url": "http://example.com/thumb.jpg",
        "subscriber_count": 120_000,
        "video_count": 50,
        "view_count": 100000,
        "uploads_playlist_id": "UU_MOCK_PLAYLIST_ID",
    }

    client.get_channel_videos.return_value = [
        {"id": "video1", "title": "Test Video 1", "published_at": "2026-09-20T00:00:00Z", "channel_id": "UC_MOCK_CHANNEL_ID"},
        {"id": "video2", "title": "Test Video 2", "published_at": "2026-09-25T00:00:00Z", "channel_id": "UC_MOCK_CHANNEL_ID"},
    ]

    client.get_video_details.return_value = {
        "video1": {"view_count": 100, "like_count": 10, "comment_count": 5, "duration_seconds": 60},
        "video2": {"view_count": 200, "like_count": 20, "comment_count": 10, "duration_seconds": 720},
    }
    return client


@pytest.fixture
def data_source(mock_youtube_client, session_maker):
    return YouTubeChannelDataSource(mock_youtube_client, session_maker, timeout=5, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_resolve_channel_upserts_catalogue(data_source, session_maker):
    channel = await data_source.resolve_channel("https://youtube.com/@valid")

    assert channel.id == "UC_MOCK_CHANNEL_ID"
    assert channel.subscriber_count == 120_000
    async with session_maker() as db:
        row = await db.get(Channel, "UC_MOCK_CHANNEL_ID")
        assert row.size_tier == "established"
        assert row.created_via == "audit"
        assert row.uploads_playlist_id == "UU_MOCK_PLAYLIST_ID"


@pytest.mark.asyncio
async def test_unresolvable_channel(data_source):
    with pytest.raises(ChannelResolutionError):
        await data_source.resolve_channel("nothing here")


@pytest.mark.asyncio
async def test_fetch_videos_stores_and_reuses_fresh_catalogue(data_source, mock_youtube_client):
    await data_source.resolve_channel("valid")
    videos = await data_source.fetch_videos("UC_MOCK_CHANNEL_ID", 10)

    assert [v.id for v in videos] == ["video2", "video1"]
    assert videos[0].video_type == "long"
    assert videos[1].video_type == "short"
    mock_youtube_client.get_channel_videos.assert_called_once_with("UC_MOCK_CHANNEL_ID", 10, "UU_MOCK_PLAYLIST_ID")

    # Synced within the cache window
    again = await data_source.fetch_videos("UC_MOCK_CHANNEL_ID", 10)
    await data_source.resolve_channel("valid")
    assert [v.id for v in again] == ["video2", "video1"]
    assert mock_youtube_client.get_channel_videos.call_count == 1
    assert mock_youtube_client.get_channel_info.call_count == 1

    await data_source.fetch_videos("UC_MOCK_CHANNEL_ID", 10, force_refresh=True)
    assert mock_youtube_client.get_channel_videos.call_count == 2


@pytest.mark.asyncio
async def test_api_errors_become_provider_errors(data_source, mock_youtube_client):
    mock_youtube_client.get_channel_info.side_effect = YouTubeAPIError("quota exceeded")
    with pytest.raises(ProviderError):
        await data_source.resolve_channel("valid")


@pytest.mark.asyncio
async def test_query_peers_reads_catalogue(data_source, session_maker):
    async with session_maker() as db:
        db.add_all(
            [
                Channel(id="a", title="A", subscriber_count=20_000, category="Education"),
                Channel(id="b", title="B", subscriber_count=90_000, category="Gaming"),
                Channel(id="c", title="C", subscriber_count=700_000, category="Education"),
                Channel(id="d", title="D", subscriber_count=40_000, category="Education", sync_enabled=False),
                Channel(id="self", title="Self", subscriber_count=30_000, category="Education"),
            ]
        )
        await db.commit()

    peers = await data_source.query_peers((0, 500_000), PeerFilters(exclude_channel_id="self"))
    assert [p.id for p in peers] == ["b", "a"]

    education = await data_source.query_peers((0, None), PeerFilters(category="Education", limit=1))
    assert [p.id for p in education] == ["c"]

    async with session_maker() as db:
        rows = (await db.execute(select(Channel))).scalars().all()
        assert len(rows) == 5


def test_parse_duration():
    assert parse_duration("PT1H2M3S") == 3723
    assert parse_duration("P1DT1S") == 86401
    assert parse_duration("PT45S") == 45
    assert parse_duration("") == 0
    assert parse_duration(None) == 0


def test_resolve_identifier_counts_api_calls():
    with patch("ingestion.youtube.build") as mock_build:
        client = YouTubeClient(api_key="test-key")
    api = mock_build.return_value
    api.channels.return_value.list.return_value.execute.return_value = {"items": [{"id": "UC" + "h" * 22}]}

    channel_id = "UC" + "x" * 22
    assert client.resolve_channel_identifier(channel_id) == channel_id
    assert client.resolve_channel_identifier(f"https://www.youtube.com/channel/{channel_id}") == channel_id
    assert client.api_calls == 0

    assert client.resolve_channel_identifier("https://youtube.com/@mockchannel") == "UC" + "h" * 22
    api.channels.return_value.list.assert_called_with(part="id", forHandle="mockchannel")
    assert client.api_calls == 1
    assert client.resolve_channel_identifier("   ") is None
