from analysis.series import (
    build_series_info,
    detect_series_by_pattern,
    merge_semantic,
    semantic_groups_from_payload,
)
from conftest import NOW, make_video


def test_episode_markers_group_videos():
    videos = [make_video(f"v{i}", title=f"Budget Builds | Ep {i}") for i in range(1, 4)]
    videos.append(make_video("solo", title="A one-off vlog"))

    series, uncategorized = detect_series_by_pattern(videos)

    assert len(series) == 1
    assert series[0]["name"] == "Budget Builds"
    assert series[0]["video_ids"] == ["v1", "v2", "v3"]
    assert [v.id for v in uncategorized] == ["solo"]


def test_bracket_prefix_and_recurring_words():
    videos = [make_video(f"b{i}", title=f"[Live Coding] session {i}") for i in range(3)]
    videos += [make_video(f"w{i}", title=f"Morning routine with {name}") for i, name in enumerate(["cats", "dogs", "kids"])]

    series, uncategorized = detect_series_by_pattern(videos)
    names = {s["name"]: s for s in series}

    assert names["Live Coding"]["pattern"] == "bracket_prefix"
    assert set(names["Morning routine with"]["video_ids"]) == {"w0", "w1", "w2"}
    assert uncategorized == []


def test_groups_below_three_videos_are_dropped():
    videos = [make_video(f"v{i}", title=f"Short Run - Part {i}") for i in range(1, 3)]
    series, uncategorized = detect_series_by_pattern(videos)
    assert series == []
    assert len(uncategorized) == 2


def test_semantic_payload_maps_indices_and_skips_bad_entries():
    candidates = [make_video(f"c{i}") for i in range(5)]
    payload = {
        "series": [
            {"name": "Travel", "videoIndices": [0, 1, 1, 4, 99]},
            {"name": "Too small", "videoIndices": [2]},
            "not a dict",
        ]
    }
    groups = semantic_groups_from_payload(payload, candidates)
    assert groups == [{"name": "Travel", "video_ids": ["c0", "c1", "c4"], "pattern": None}]
    assert semantic_groups_from_payload(["nope"], candidates) == []


def test_merge_semantic_rejects_overlapping_groups():
    pattern = [{"name": "A", "video_ids": ["1", "2", "3"], "pattern": "p"}]
    semantic = [
        {"name": "A again", "video_ids": ["1", "2", "9"], "pattern": None},
        {"name": "B", "video_ids": ["1", "7", "8"], "pattern": None},
    ]
    merged = merge_semantic(pattern, semantic)
    assert [g["name"] for g in merged] == ["A", "B"]


def test_series_info_trend_and_cadence():
    videos = [
        make_video("e1", days_ago=40, views=4000),
        make_video("e2", days_ago=30, views=3800),
        make_video("e3", days_ago=20, views=1000),
        make_video("e4", days_ago=10, views=900),
    ]
    by_id = {v.id: v for v in videos}

    # Given newest first; members are re-ordered oldest first
    info = build_series_info("Show", ["e4", "e3", "e2", "e1"], by_id, "pattern", "p", now=NOW)

    assert info.video_ids == ["e1", "e2", "e3", "e4"]
    assert info.performance_trend == "declining"
    assert info.cadence_days == 10
    assert info.total_views == 9700
    assert info.avg_views == 2425


def test_small_recent_series_is_new():
    videos = [make_video(f"n{i}", days_ago=30 - i * 7) for i in range(3)]
    info = build_series_info("Fresh", [v.id for v in videos], {v.id: v for v in videos}, "semantic", now=NOW)
    assert info.performance_trend == "new"
    assert info.detection_method == "semantic"
