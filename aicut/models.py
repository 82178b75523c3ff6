"""Data models for the aicut video skeleton and its generation jobs.

Document types are frozen: every update builds a new value with
``dataclasses.replace`` so that a reader holding an older snapshot never sees
it change underneath. ``to_dict``/``from_dict`` convert to and from the
camelCase shape used on the wire and in persisted history.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Union

DEFAULT_DURATION = 3
AUTO_DURATION_VALUE = -1

ASPECT_RATIOS = ("16:9", "9:16", "1:1", "4:3", "3:4")
DEFAULT_ASPECT_RATIO = "16:9"

CLIP_TYPES = ("video", "audio", "text")
ASSET_TYPES = ("audio", "video", "image")

_NUMBER_PREFIX = re.compile(r"^\s*(-?\d+(?:\.\d+)?)")


# ----------------------------------------------------------------------
# Duration
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Fixed:
    """A scene duration in seconds chosen by the author or measured from media."""
    seconds: float

    @property
    def is_auto(self) -> bool:
        return False

    def resolve(self, default: float = DEFAULT_DURATION) -> float:
        return self.seconds if self.seconds > 0 else default

    def to_number(self) -> float:
        return self.seconds


@dataclass(frozen=True)
class Auto:
    """Duration left for downstream inference (serialized as ``-1``)."""

    @property
    def is_auto(self) -> bool:
        return True

    def resolve(self, default: float = DEFAULT_DURATION) -> float:
        return default

    def to_number(self) -> int:
        return AUTO_DURATION_VALUE


AUTO = Auto()

Duration = Union[Fixed, Auto]


def parse_duration(value: Any, fallback: float = DEFAULT_DURATION) -> Duration:
    """Normalize a raw duration (number, numeric string, ``-1``) to a Duration.

    Unparseable values fall back to ``fallback`` seconds.
    """
    if isinstance(value, (Fixed, Auto)):
        return value
    if isinstance(value, bool) or value is None:
        return Fixed(fallback)
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        match = _NUMBER_PREFIX.match(value)
        if not match:
            return Fixed(fallback)
        text = match.group(1)
        number = float(text) if "." in text else int(text)
    else:
        return Fixed(fallback)

    if number == AUTO_DURATION_VALUE:
        return AUTO
    return Fixed(number)


# ----------------------------------------------------------------------
# Roster entities
# ----------------------------------------------------------------------

def _str(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _opt_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    if not value:
        return None
    return value if isinstance(value, str) else str(value)


@dataclass(frozen=True)
class Character:
    """A recurring character with an optional portrait reference image."""
    id: str
    prototype: str = ""
    description: str = ""
    image_url: str | None = None

    def to_dict(self) -> dict:
        data = {"id": self.id, "prototype": self.prototype, "description": self.description}
        if self.image_url:
            data["imageUrl"] = self.image_url
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Character:
        return cls(
            id=_str(data, "id"),
            prototype=_str(data, "prototype"),
            description=_str(data, "description"),
            image_url=_opt_str(data, "imageUrl"),
        )


@dataclass(frozen=True)
class SceneDesign:
    """A reusable background/location plate."""
    id: str
    prototype: str = ""
    description: str = ""
    image_url: str | None = None

    def to_dict(self) -> dict:
        data = {"id": self.id, "prototype": self.prototype, "description": self.description}
        if self.image_url:
            data["imageUrl"] = self.image_url
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SceneDesign:
        return cls(
            id=_str(data, "id"),
            prototype=_str(data, "prototype"),
            description=_str(data, "description"),
            image_url=_opt_str(data, "imageUrl"),
        )


@dataclass(frozen=True)
class Scene:
    """One shot of the storyboard.

    Attributes:
        id: Unique scene identifier.
        visual_description: What the frame shows.
        character_ids: Ids into ``Skeleton.characters``; dangling ids are allowed.
        scene_id: Id into ``Skeleton.scene_designs``.
        camera_design: Shot type, movement, framing.
        audio_design: Ambient sound and effects.
        voice_actor: Voice id used for text-to-speech.
        dialogue_content: Spoken line or narration.
        duration: ``Fixed`` seconds or ``AUTO``.
        image_url / video_url / audio_url: Generated media, attached asynchronously.
    """
    id: str
    visual_description: str = ""
    character_ids: tuple[str, ...] = ()
    scene_id: str | None = None
    camera_design: str = ""
    audio_design: str = ""
    voice_actor: str = ""
    dialogue_content: str = ""
    duration: Duration = Fixed(DEFAULT_DURATION)
    image_url: str | None = None
    video_url: str | None = None
    audio_url: str | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "visualDescription": self.visual_description,
            "characterIds": list(self.character_ids),
            "cameraDesign": self.camera_design,
            "audioDesign": self.audio_design,
            "voiceActor": self.voice_actor,
            "dialogueContent": self.dialogue_content,
            "duration": self.duration.to_number(),
        }
        if self.scene_id:
            data["sceneId"] = self.scene_id
        for key, value in (
            ("imageUrl", self.image_url),
            ("videoUrl", self.video_url),
            ("audioUrl", self.audio_url),
        ):
            if value:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict, fallback_duration: float = DEFAULT_DURATION) -> Scene:
        raw_ids = data.get("characterIds") or ()
        if isinstance(raw_ids, str):
            raw_ids = (raw_ids,)
        elif not isinstance(raw_ids, (list, tuple)):
            raw_ids = ()
        return cls(
            id=_str(data, "id"),
            visual_description=_str(data, "visualDescription"),
            character_ids=tuple(str(c) for c in raw_ids if c is not None),
            scene_id=_opt_str(data, "sceneId"),
            camera_design=_str(data, "cameraDesign"),
            audio_design=_str(data, "audioDesign"),
            voice_actor=_str(data, "voiceActor"),
            dialogue_content=_str(data, "dialogueContent"),
            duration=parse_duration(data.get("duration"), fallback_duration),
            image_url=_opt_str(data, "imageUrl"),
            video_url=_opt_str(data, "videoUrl"),
            audio_url=_opt_str(data, "audioUrl"),
        )


# ----------------------------------------------------------------------
# Timeline
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Clip:
    """A timeline item derived from one scene."""
    id: str
    type: str
    start_time: float
    duration: float
    content: str = ""
    scene_id: str = ""
    image_url: str | None = None
    video_url: str | None = None
    audio_url: str | None = None
    title: str = ""

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "startTime": self.start_time,
            "duration": self.duration,
            "content": self.content,
            "sceneId": self.scene_id,
            "title": self.title,
        }
        for key, value in (
            ("imageUrl", self.image_url),
            ("videoUrl", self.video_url),
            ("audioUrl", self.audio_url),
        ):
            if value:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Clip:
        return cls(
            id=_str(data, "id"),
            type=_str(data, "type") or "video",
            start_time=float(data.get("startTime") or 0),
            duration=float(data.get("duration") or 0),
            content=_str(data, "content"),
            scene_id=_str(data, "sceneId"),
            image_url=_opt_str(data, "imageUrl"),
            video_url=_opt_str(data, "videoUrl"),
            audio_url=_opt_str(data, "audioUrl"),
            title=_str(data, "title"),
        )


@dataclass(frozen=True)
class Track:
    """An ordered lane of clips of one media kind."""
    id: str
    name: str
    clips: tuple[Clip, ...] = ()

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "clips": [c.to_dict() for c in self.clips]}

    @classmethod
    def from_dict(cls, data: dict) -> Track:
        return cls(
            id=_str(data, "id"),
            name=_str(data, "name"),
            clips=tuple(Clip.from_dict(c) for c in data.get("clips") or () if isinstance(c, dict)),
        )


# ----------------------------------------------------------------------
# Skeleton
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Skeleton:
    """The project document: metadata, rosters, scenes and the derived timeline.

    ``tracks`` is a cache derived from ``scenes``; ``None`` until first built.
    """
    theme: str = ""
    story_overview: str = ""
    art_style: str = ""
    characters: tuple[Character, ...] = ()
    scene_designs: tuple[SceneDesign, ...] = ()
    scenes: tuple[Scene, ...] = ()
    tracks: tuple[Track, ...] | None = None
    aspect_ratio: str = DEFAULT_ASPECT_RATIO

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "theme": self.theme,
            "storyOverview": self.story_overview,
            "artStyle": self.art_style,
            "characters": [c.to_dict() for c in self.characters],
            "sceneDesigns": [s.to_dict() for s in self.scene_designs],
            "scenes": [s.to_dict() for s in self.scenes],
            "aspectRatio": self.aspect_ratio,
        }
        if self.tracks is not None:
            data["tracks"] = [t.to_dict() for t in self.tracks]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Skeleton:
        tracks = data.get("tracks")
        aspect_ratio = data.get("aspectRatio")
        return cls(
            theme=_str(data, "theme"),
            story_overview=_str(data, "storyOverview"),
            art_style=_str(data, "artStyle"),
            characters=_entities(Character, data.get("characters")),
            scene_designs=_entities(SceneDesign, data.get("sceneDesigns")),
            scenes=_entities(Scene, data.get("scenes")),
            tracks=(
                tuple(Track.from_dict(t) for t in tracks if isinstance(t, dict))
                if isinstance(tracks, list) else None
            ),
            aspect_ratio=aspect_ratio if aspect_ratio in ASPECT_RATIOS else DEFAULT_ASPECT_RATIO,
        )

    def find(self, collection: str, entity_id: str) -> Character | SceneDesign | Scene | None:
        for entity in getattr(self, COLLECTIONS[collection]):
            if entity.id == entity_id:
                return entity
        return None


def _entities(model: type, items: Any) -> tuple:
    if not isinstance(items, list):
        return ()
    return tuple(model.from_dict(item) for item in items if isinstance(item, dict))


# Wire collection name -> Skeleton attribute name.
COLLECTIONS = {
    "characters": "characters",
    "sceneDesigns": "scene_designs",
    "scenes": "scenes",
}


# ----------------------------------------------------------------------
# Persistence, jobs, chat
# ----------------------------------------------------------------------

@dataclass
class HistoryItem:
    """A persisted snapshot of a project."""
    id: int | None
    timestamp: float
    prompt: str
    skeleton: Skeleton
    thumbnail: str | None = None


@dataclass
class Asset:
    """A persisted binary payload keyed by the owning scene id."""
    id: str
    blob: bytes
    type: str
    created_at: float


@dataclass
class TaskStatus:
    """Status of a video generation task.

    Attributes:
        task_id: The task identifier returned on submission.
        status: One of "pending", "queued", "running", "succeeded", "failed".
        video_url: URL of the generated video once succeeded.
        error: Error message if the task failed.
    """
    task_id: str
    status: str
    video_url: str | None = None
    error: str | None = None

    @property
    def is_done(self) -> bool:
        """Whether the task has reached a terminal state."""
        return self.status in ("succeeded", "failed", "cancelled", "expired")

    @property
    def is_success(self) -> bool:
        return self.status == "succeeded" and self.video_url is not None


@dataclass
class Message:
    """One chat message sent to the completion service."""
    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class EpisodeSummary:
    """One planned episode of a series."""
    id: str
    index: int
    title: str = ""
    summary: str = ""
    status: str = "pending"  # pending | generated

    @classmethod
    def from_dict(cls, data: dict, position: int = 0) -> EpisodeSummary:
        raw_index = data.get("index")
        try:
            index = int(raw_index)
        except (TypeError, ValueError):
            index = position + 1
        return cls(
            id=_str(data, "id") or f"ep-{index}",
            index=index,
            title=_str(data, "title"),
            summary=_str(data, "summary"),
            status=_str(data, "status") or "pending",
        )


@dataclass
class SeriesBible:
    """Series-wide art style and rosters shared by every episode."""
    id: str
    title: str = ""
    art_style: str = ""
    characters: tuple[Character, ...] = ()
    scene_designs: tuple[SceneDesign, ...] = ()
    episodes: list[EpisodeSummary] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> SeriesBible:
        return cls(
            id=_str(data, "id"),
            title=_str(data, "title"),
            art_style=_str(data, "artStyle"),
            characters=_entities(Character, data.get("characters")),
            scene_designs=_entities(SceneDesign, data.get("sceneDesigns")),
        )
