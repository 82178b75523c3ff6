"""Skeleton document operations and the serialized patch reducer.

Every operation here is pure: it takes a ``Skeleton`` and returns a new one.
Asynchronous completions never edit a captured document; they dispatch a
patch to a ``DocumentStore``, which applies patches one at a time against the
latest snapshot.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping

from aicut.models import (
    COLLECTIONS,
    DEFAULT_DURATION,
    Character,
    Duration,
    Scene,
    SceneDesign,
    Skeleton,
    parse_duration,
)
from aicut.timeline import rebuild_tracks, resize_clip, ripple_update
from aicut.voices import get_voice_id

logger = logging.getLogger(__name__)

METADATA_FIELDS = {
    "theme": "theme",
    "storyOverview": "story_overview",
    "artStyle": "art_style",
}

# camelCase field -> dataclass attribute, per collection
_FIELD_NAMES = {
    "characters": {"prototype": "prototype", "description": "description", "imageUrl": "image_url"},
    "sceneDesigns": {"prototype": "prototype", "description": "description", "imageUrl": "image_url"},
    "scenes": {
        "visualDescription": "visual_description",
        "characterIds": "character_ids",
        "sceneId": "scene_id",
        "cameraDesign": "camera_design",
        "audioDesign": "audio_design",
        "voiceActor": "voice_actor",
        "dialogueContent": "dialogue_content",
        "duration": "duration",
        "imageUrl": "image_url",
        "videoUrl": "video_url",
        "audioUrl": "audio_url",
    },
}


def new_id() -> str:
    """Short random id for entities the model returned without one."""
    return uuid.uuid4().hex[:9]


# ----------------------------------------------------------------------
# Pure operations
# ----------------------------------------------------------------------

def merge_metadata(doc: Skeleton, fields: Mapping[str, Any]) -> Skeleton:
    """Shallow-merge streamed top-level fields into the document.

    String metadata (theme, storyOverview, artStyle) overwrites when present.
    Roster lists are taken only when the delta carries them as lists of
    objects. Keys absent from ``fields`` are left untouched.
    """
    changes: dict[str, Any] = {}
    for key, attr in METADATA_FIELDS.items():
        value = fields.get(key)
        if isinstance(value, str):
            changes[attr] = value
    if isinstance(fields.get("characters"), list):
        changes["characters"] = tuple(
            Character.from_dict(c) for c in fields["characters"] if isinstance(c, dict)
        )
    if isinstance(fields.get("sceneDesigns"), list):
        changes["scene_designs"] = tuple(
            SceneDesign.from_dict(s) for s in fields["sceneDesigns"] if isinstance(s, dict)
        )
    if not changes:
        return doc
    return replace(doc, **changes)


def rebuild(doc: Skeleton, default_duration: float = DEFAULT_DURATION) -> Skeleton:
    """Re-derive the tracks cache from scenes."""
    return replace(doc, tracks=rebuild_tracks(doc.scenes, default_duration))


def replace_scenes(
    doc: Skeleton,
    scenes: Iterable[Scene],
    default_duration: float = DEFAULT_DURATION,
) -> Skeleton:
    """Replace the scene list wholesale and re-derive tracks."""
    return rebuild(replace(doc, scenes=tuple(scenes)), default_duration)


def _coerce_field(attr: str, value: Any) -> Any:
    if attr == "duration":
        return parse_duration(value)
    if attr == "character_ids":
        if isinstance(value, str):
            return (value,)
        return tuple(value or ())
    return value


def patch_entity(
    doc: Skeleton,
    collection: str,
    entity_id: str,
    fields: Mapping[str, Any],
) -> Skeleton:
    """Shallow-merge ``fields`` into the entity with ``entity_id``.

    ``fields`` may use camelCase wire names or attribute names. Unknown ids
    are a no-op: a job may finish after the user deleted its entity.
    """
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection!r}")
    attr_name = COLLECTIONS[collection]
    names = _FIELD_NAMES[collection]
    allowed = set(names.values())

    changes = {}
    for key, value in fields.items():
        attr = names.get(key, key)
        if attr in allowed:
            changes[attr] = _coerce_field(attr, value)

    entities = getattr(doc, attr_name)
    found = False
    updated = []
    for entity in entities:
        if entity.id == entity_id and not found:
            entity = replace(entity, **changes)
            found = True
        updated.append(entity)
    if not found:
        logger.debug("patch_entity: %s %s not found, ignoring", collection, entity_id)
        return doc
    return replace(doc, **{attr_name: tuple(updated)})


def set_scene_duration(
    doc: Skeleton,
    scene_id: str,
    duration: Duration | float,
    default_duration: float = DEFAULT_DURATION,
) -> Skeleton:
    """Update one scene's duration and ripple downstream clip start times."""
    new_duration = parse_duration(duration, default_duration)
    scene = doc.find("scenes", scene_id)
    if scene is None:
        return doc

    scenes = tuple(
        replace(s, duration=new_duration) if s.id == scene_id else s for s in doc.scenes
    )
    if doc.tracks is None:
        tracks = rebuild_tracks(scenes, default_duration)
    else:
        tracks = ripple_update(
            doc.tracks, doc.scenes, scene_id, new_duration.resolve(default_duration), default_duration,
        )
    return replace(doc, scenes=scenes, tracks=tracks)


def normalize_scene(
    raw: Mapping[str, Any],
    fallback_duration: float = DEFAULT_DURATION,
) -> Scene:
    """Turn one storyboard entry from the model into a ``Scene``.

    Assigns an id when missing, parses the duration (strings allowed, ``-1``
    means auto) and maps the voice actor onto a catalog voice id when one
    matches.
    """
    data = dict(raw)
    if not data.get("id"):
        data["id"] = new_id()
    voice = data.get("voiceActor")
    if isinstance(voice, str):
        data["voiceActor"] = get_voice_id(voice) or voice
    return Scene.from_dict(data, fallback_duration)


def ensure_ids(doc: Skeleton) -> Skeleton:
    """Give every character and scene design an id."""
    return replace(
        doc,
        characters=tuple(c if c.id else replace(c, id=new_id()) for c in doc.characters),
        scene_designs=tuple(s if s.id else replace(s, id=new_id()) for s in doc.scene_designs),
    )


# ----------------------------------------------------------------------
# Patches
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class MergeMetadata:
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class ReplaceScenes:
    scenes: tuple[Scene, ...]


@dataclass(frozen=True)
class PatchEntity:
    collection: str
    entity_id: str
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class SetSceneDuration:
    scene_id: str
    duration: Duration | float


@dataclass(frozen=True)
class RebuildTracks:
    pass


@dataclass(frozen=True)
class ReplaceDocument:
    doc: Skeleton


@dataclass(frozen=True)
class ResizeClip:
    clip_id: str
    edge: str
    delta: float


Patch = (
    MergeMetadata | ReplaceScenes | PatchEntity | SetSceneDuration
    | RebuildTracks | ReplaceDocument | ResizeClip
)


def apply_patch(
    doc: Skeleton,
    patch: Patch,
    default_duration: float = DEFAULT_DURATION,
) -> Skeleton:
    """The single reducer: ``apply(latest_snapshot, delta) -> new snapshot``."""
    if isinstance(patch, MergeMetadata):
        return merge_metadata(doc, patch.fields)
    if isinstance(patch, ReplaceScenes):
        return replace_scenes(doc, patch.scenes, default_duration)
    if isinstance(patch, PatchEntity):
        return patch_entity(doc, patch.collection, patch.entity_id, patch.fields)
    if isinstance(patch, SetSceneDuration):
        return set_scene_duration(doc, patch.scene_id, patch.duration, default_duration)
    if isinstance(patch, RebuildTracks):
        return rebuild(doc, default_duration)
    if isinstance(patch, ReplaceDocument):
        return patch.doc
    if isinstance(patch, ResizeClip):
        if doc.tracks is None:
            return doc
        return replace(doc, tracks=resize_clip(doc.tracks, patch.clip_id, patch.edge, patch.delta))
    raise TypeError(f"Unsupported patch: {patch!r}")


Listener = Callable[[Skeleton], None]


@dataclass
class DocumentStore:
    """Holds the latest snapshot and applies patches in FIFO order.

    Patches dispatched while another patch is being applied (for example from
    a listener) are queued and drained by the outer ``dispatch`` call, so the
    reducer never runs re-entrantly and no update is lost.
    """
    snapshot: Skeleton = field(default_factory=Skeleton)
    default_duration: float = DEFAULT_DURATION
    _pending: deque = field(default_factory=deque, init=False, repr=False)
    _draining: bool = field(default=False, init=False, repr=False)
    _listeners: list[Listener] = field(default_factory=list, init=False, repr=False)
    version: int = field(default=0, init=False)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with every new snapshot. Returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def dispatch(self, patch: Patch) -> Skeleton:
        self._pending.append(patch)
        if self._draining:
            return self.snapshot
        self._draining = True
        listener_error: Exception | None = None
        try:
            while self._pending:
                current = self._pending.popleft()
                updated = apply_patch(self.snapshot, current, self.default_duration)
                if updated is self.snapshot:
                    continue
                self.snapshot = updated
                self.version += 1
                for listener in list(self._listeners):
                    try:
                        listener(updated)
                    except Exception as exc:
                        # Queued patches are still applied; the first error is raised after.
                        logger.error("Document listener failed: %s", exc)
                        listener_error = listener_error or exc
        finally:
            self._draining = False
        if listener_error is not None:
            raise listener_error
        return self.snapshot

    def reset(self, doc: Skeleton | None = None) -> Skeleton:
        return self.dispatch(ReplaceDocument(doc or Skeleton()))
