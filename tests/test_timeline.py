from dataclasses import replace

import pytest

from aicut.models import AUTO, Fixed, Scene
from aicut.timeline import (
    AUDIO_TRACK_ID,
    TEXT_TRACK_ID,
    VIDEO_TRACK_ID,
    active_clips,
    clip_id,
    rebuild_tracks,
    resize_clip,
    ripple_update,
    total_duration,
    track_by_id,
)


def _scenes():
    return (
        Scene(id="s1", visual_description="Dawn", audio_design="Waves", duration=Fixed(3)),
        Scene(id="s2", visual_description="Keeper", dialogue_content="Hello sea", duration=AUTO),
        Scene(id="s3", visual_description="Whale", audio_design="Song",
              dialogue_content="Goodbye", duration=Fixed(5)),
    )


def _starts(tracks, track_id=VIDEO_TRACK_ID):
    return [c.start_time for c in track_by_id(tracks, track_id).clips]


def test_clip_id_prefixes():
    assert clip_id("video", "s1") == "v-s1"
    assert clip_id("audio", "s1") == "a-s1"
    assert clip_id("text", "s1") == "t-s1"
    with pytest.raises(ValueError):
        clip_id("image", "s1")


def test_rebuild_tracks_layout():
    tracks = rebuild_tracks(_scenes())
    assert [t.id for t in tracks] == [VIDEO_TRACK_ID, AUDIO_TRACK_ID, TEXT_TRACK_ID]
    assert _starts(tracks) == [0, 3, 6]
    assert [c.id for c in track_by_id(tracks, AUDIO_TRACK_ID).clips] == ["a-s1", "a-s3"]
    assert [c.id for c in track_by_id(tracks, TEXT_TRACK_ID).clips] == ["t-s2", "t-s3"]
    # Clips of one scene share start and duration on every track.
    assert _starts(tracks, TEXT_TRACK_ID) == [3, 6]
    assert total_duration(tracks) == 11


def test_rebuild_tracks_is_deterministic():
    assert rebuild_tracks(_scenes()) == rebuild_tracks(_scenes())


def test_rebuild_tracks_audio_url_creates_audio_clip():
    scenes = (Scene(id="s1", audio_url="file:///a.mp3", duration=Fixed(2)),)
    audio = track_by_id(rebuild_tracks(scenes), AUDIO_TRACK_ID)
    assert [c.audio_url for c in audio.clips] == ["file:///a.mp3"]


def test_total_duration_empty():
    assert total_duration(rebuild_tracks(())) == 0
    assert total_duration(()) == 0


def test_ripple_update_matches_rebuild():
    scenes = _scenes()
    tracks = rebuild_tracks(scenes)
    rippled = ripple_update(tracks, scenes, "s2", 4)

    updated = tuple(replace(s, duration=Fixed(4)) if s.id == "s2" else s for s in scenes)
    assert rippled == rebuild_tracks(updated)
    assert _starts(rippled) == [0, 3, 7]
    assert total_duration(rippled) == 12


def test_ripple_update_keeps_other_clip_fields():
    scenes = _scenes()
    tracks = rebuild_tracks(scenes)
    video = track_by_id(tracks, VIDEO_TRACK_ID)
    loaded = replace(video.clips[2], video_url="http://v/3.mp4")
    tracks = (replace(video, clips=video.clips[:2] + (loaded,)),) + tracks[1:]

    rippled = ripple_update(tracks, scenes, "s1", 1.5)
    clip = track_by_id(rippled, VIDEO_TRACK_ID).clips[2]
    assert clip.video_url == "http://v/3.mp4"
    assert clip.start_time == 4.5


def test_ripple_update_unknown_scene_is_noop():
    scenes = _scenes()
    tracks = rebuild_tracks(scenes)
    assert ripple_update(tracks, scenes, "missing", 10) == tracks


def test_ripple_update_fractional_durations_stay_exact():
    scenes = tuple(Scene(id=f"s{i}", duration=Fixed(0.1)) for i in range(10))
    tracks = rebuild_tracks(scenes)
    rippled = ripple_update(tracks, scenes, "s0", 0.2)
    updated = (Scene(id="s0", duration=Fixed(0.2)),) + scenes[1:]
    assert rippled == rebuild_tracks(updated)


def test_resize_clip_right_edge():
    tracks = rebuild_tracks(_scenes())
    resized = resize_clip(tracks, "v-s1", "right", -10)
    assert track_by_id(resized, VIDEO_TRACK_ID).clips[0].duration == 0.5


def test_resize_clip_left_edge_preserves_end():
    tracks = rebuild_tracks(_scenes())
    resized = resize_clip(tracks, "v-s3", "left", 2)
    clip = track_by_id(resized, VIDEO_TRACK_ID).clips[2]
    assert clip.start_time == 8
    assert clip.duration == 3
    assert clip.end_time == 11


def test_resize_clip_left_edge_clamps_start():
    tracks = rebuild_tracks(_scenes())
    resized = resize_clip(tracks, "v-s1", "left", -2)
    clip = track_by_id(resized, VIDEO_TRACK_ID).clips[0]
    assert clip.start_time == 0
    assert clip.duration == 3


def test_resize_clip_rejects_bad_edge():
    with pytest.raises(ValueError):
        resize_clip(rebuild_tracks(_scenes()), "v-s1", "top", 1)


def test_active_clips():
    tracks = rebuild_tracks(_scenes())
    assert {c.id for c in active_clips(tracks, 3.5)} == {"v-s2", "t-s2"}
    assert active_clips(tracks, 11) == []
