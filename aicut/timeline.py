"""Timeline synchronization: derive video/audio/text tracks from scenes.

``scenes`` is the single source of truth; tracks are a cache that can always
be rebuilt with ``rebuild_tracks``. ``ripple_update`` patches an existing
track set in place of a full rebuild when one scene's duration changes, and
must produce exactly what a rebuild would.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Sequence

from aicut.models import DEFAULT_DURATION, Clip, Scene, Track

VIDEO_TRACK_ID = "track-1"
AUDIO_TRACK_ID = "track-2"
TEXT_TRACK_ID = "track-3"

_TRACK_LAYOUT = (
    (VIDEO_TRACK_ID, "Track 1", "video", "v-"),
    (AUDIO_TRACK_ID, "Track 2", "audio", "a-"),
    (TEXT_TRACK_ID, "Track 3", "text", "t-"),
)

MIN_CLIP_DURATION = 0.5

# Start times are sums of float durations; quantizing keeps an incremental
# ripple and a full rebuild bit-identical.
_PRECISION = 6


def _q(value: float) -> float:
    return round(value, _PRECISION)


def clip_id(kind: str, scene_id: str) -> str:
    """Deterministic clip id for a scene, e.g. ``clip_id("video", "s1") == "v-s1"``."""
    for _, _, clip_type, prefix in _TRACK_LAYOUT:
        if clip_type == kind:
            return prefix + scene_id
    raise ValueError(f"Unknown clip kind: {kind!r}")


def scene_duration(scene: Scene, default_duration: float = DEFAULT_DURATION) -> float:
    """Seconds the scene occupies on the timeline (``AUTO`` resolves to the default)."""
    return scene.duration.resolve(default_duration)


def _title(text: str, limit: int = 20) -> str:
    return text[:limit]


def _scene_clips(scene: Scene, start: float, duration: float) -> dict[str, Clip]:
    clips = {
        "video": Clip(
            id=clip_id("video", scene.id),
            type="video",
            start_time=start,
            duration=duration,
            content=scene.visual_description,
            scene_id=scene.id,
            image_url=scene.image_url,
            video_url=scene.video_url,
            title=f"Scene {scene.id[:4]}",
        ),
    }
    if scene.audio_design or scene.audio_url:
        clips["audio"] = Clip(
            id=clip_id("audio", scene.id),
            type="audio",
            start_time=start,
            duration=duration,
            content=scene.audio_design,
            scene_id=scene.id,
            audio_url=scene.audio_url,
            title=_title(scene.audio_design or scene.dialogue_content),
        )
    if scene.dialogue_content:
        clips["text"] = Clip(
            id=clip_id("text", scene.id),
            type="text",
            start_time=start,
            duration=duration,
            content=scene.dialogue_content,
            scene_id=scene.id,
            title=_title(scene.dialogue_content),
        )
    return clips


def rebuild_tracks(
    scenes: Sequence[Scene],
    default_duration: float = DEFAULT_DURATION,
) -> tuple[Track, ...]:
    """Build the three fixed tracks from scenes in array order.

    All tracks share one elapsed cursor, so audio and text clips stay aligned
    to the scene boundaries of the video track even when some scenes have no
    audio or dialogue.
    """
    lanes: dict[str, list[Clip]] = {kind: [] for _, _, kind, _ in _TRACK_LAYOUT}
    elapsed = 0.0
    for scene in scenes:
        duration = _q(scene_duration(scene, default_duration))
        for kind, clip in _scene_clips(scene, _q(elapsed), duration).items():
            lanes[kind].append(clip)
        elapsed += duration

    return tuple(
        Track(id=track_id, name=name, clips=tuple(lanes[kind]))
        for track_id, name, kind, _ in _TRACK_LAYOUT
    )


def ripple_update(
    tracks: Sequence[Track],
    scenes: Sequence[Scene],
    scene_id: str,
    new_duration: float,
    default_duration: float = DEFAULT_DURATION,
) -> tuple[Track, ...]:
    """Change one scene's clip duration and shift everything after it.

    ``scenes`` is the scene list *before* the change; it supplies the scene
    order and the old duration. Clips of the changed scene get the new
    duration, clips of every later scene move by ``new - old``. Other clip
    fields (loaded media URLs, titles) are kept as they are.
    """
    index = next((i for i, s in enumerate(scenes) if s.id == scene_id), None)
    if index is None:
        return tuple(tracks)

    old = _q(scene_duration(scenes[index], default_duration))
    new = _q(new_duration if new_duration > 0 else default_duration)
    delta = new - old
    if delta == 0:
        return tuple(tracks)

    later = {s.id for s in scenes[index + 1:]}
    updated: list[Track] = []
    for track in tracks:
        clips = []
        for clip in track.clips:
            if clip.scene_id == scene_id:
                clip = replace(clip, duration=new)
            elif clip.scene_id in later:
                clip = replace(clip, start_time=_q(clip.start_time + delta))
            clips.append(clip)
        updated.append(replace(track, clips=tuple(clips)))
    return tuple(updated)


def resize_clip(
    tracks: Sequence[Track],
    target_id: str,
    edge: str,
    delta: float,
) -> tuple[Track, ...]:
    """Interactive resize of one clip.

    ``edge="right"`` changes only the duration. ``edge="left"`` moves the
    start and shrinks/grows the duration so the end stays put. Durations are
    floored at 0.5s and start times at 0.
    """
    if edge not in ("left", "right"):
        raise ValueError(f"edge must be 'left' or 'right', got {edge!r}")

    updated: list[Track] = []
    for track in tracks:
        clips = []
        for clip in track.clips:
            if clip.id == target_id:
                if edge == "right":
                    clip = replace(clip, duration=max(MIN_CLIP_DURATION, clip.duration + delta))
                else:
                    start = max(0.0, clip.start_time + delta)
                    duration = max(MIN_CLIP_DURATION, clip.duration - (start - clip.start_time))
                    clip = replace(clip, start_time=start, duration=duration)
            clips.append(clip)
        updated.append(replace(track, clips=tuple(clips)))
    return tuple(updated)


def total_duration(tracks: Iterable[Track]) -> float:
    """End time of the last clip across all tracks, 0 when empty."""
    return max((clip.end_time for track in tracks for clip in track.clips), default=0.0)


def active_clips(tracks: Iterable[Track], at: float) -> list[Clip]:
    """Clips covering playback time ``at``."""
    return [
        clip
        for track in tracks
        for clip in track.clips
        if clip.start_time <= at < clip.end_time
    ]


def track_by_id(tracks: Iterable[Track], track_id: str) -> Track | None:
    for track in tracks:
        if track.id == track_id:
            return track
    return None
