import itertools

import pytest

from aicut.document import (
    DocumentStore,
    MergeMetadata,
    PatchEntity,
    RebuildTracks,
    ReplaceDocument,
    ReplaceScenes,
    ResizeClip,
    SetSceneDuration,
    apply_patch,
    ensure_ids,
    merge_metadata,
    normalize_scene,
    patch_entity,
    set_scene_duration,
)
from aicut.models import AUTO, Character, Fixed, Scene, Skeleton
from aicut.timeline import VIDEO_TRACK_ID, rebuild_tracks, total_duration, track_by_id


def _doc():
    scenes = (
        Scene(id="s1", visual_description="Dawn", duration=Fixed(3)),
        Scene(id="s2", visual_description="Keeper", dialogue_content="Hello", duration=AUTO),
        Scene(id="s3", visual_description="Whale", duration=Fixed(5)),
    )
    return Skeleton(
        theme="Sea",
        characters=(Character(id="c1", prototype="Keeper"),),
        scenes=scenes,
        tracks=rebuild_tracks(scenes),
    )


def test_merge_metadata_overwrites_present_keys_only():
    doc = Skeleton(theme="Old", art_style="Ink")
    merged = merge_metadata(doc, {"theme": "New", "storyOverview": "Story"})
    assert merged.theme == "New"
    assert merged.story_overview == "Story"
    assert merged.art_style == "Ink"


def test_merge_metadata_without_changes_returns_same_object():
    doc = Skeleton(theme="Sea")
    assert merge_metadata(doc, {"unknown": 1}) is doc


def test_merge_metadata_takes_roster_lists():
    merged = merge_metadata(Skeleton(), {"characters": [{"id": "c1", "prototype": "Keeper"}, "junk"]})
    assert merged.characters == (Character(id="c1", prototype="Keeper"),)


def test_patch_entity_camel_case_and_unknown_id():
    doc = _doc()
    patched = patch_entity(doc, "scenes", "s2", {"imageUrl": "http://img/2.png", "bogus": 1})
    assert patched.find("scenes", "s2").image_url == "http://img/2.png"
    assert patch_entity(doc, "scenes", "missing", {"imageUrl": "x"}) is doc


def test_patch_entity_rejects_unknown_collection():
    with pytest.raises(ValueError):
        patch_entity(_doc(), "props", "p1", {})


def test_set_scene_duration_ripples_downstream():
    doc = set_scene_duration(_doc(), "s2", 4)
    video = track_by_id(doc.tracks, VIDEO_TRACK_ID)
    assert [c.start_time for c in video.clips] == [0, 3, 7]
    assert total_duration(doc.tracks) == 12
    assert doc.tracks == rebuild_tracks(doc.scenes)


def test_set_scene_duration_builds_missing_tracks():
    doc = Skeleton(scenes=(Scene(id="s1", duration=Fixed(2)),))
    updated = set_scene_duration(doc, "s1", 6)
    assert total_duration(updated.tracks) == 6


def test_normalize_scene_assigns_id_and_parses_duration():
    scene = normalize_scene({"visualDescription": "x", "duration": "7s", "voiceActor": "Unknown voice"})
    assert scene.id
    assert scene.duration == Fixed(7)
    assert scene.voice_actor == "Unknown voice"

    assert normalize_scene({"duration": -1}).duration is AUTO
    assert normalize_scene({"duration": "soon"}).duration == Fixed(3)


def test_normalize_scene_maps_voice_name():
    scene = normalize_scene({"id": "s1", "voiceActor": "BV001_streaming"})
    assert scene.voice_actor == "BV001_streaming"


def test_ensure_ids_keeps_existing_ids():
    doc = ensure_ids(Skeleton(characters=(Character(id="c1"), Character(id=""))))
    assert doc.characters[0].id == "c1"
    assert doc.characters[1].id


def test_apply_patch_resize_clip_without_tracks_is_noop():
    doc = Skeleton()
    assert apply_patch(doc, ResizeClip("v-s1", "right", 1)) is doc


def test_apply_patch_rejects_unknown_patch():
    with pytest.raises(TypeError):
        apply_patch(Skeleton(), object())


def test_store_notifies_listeners_and_skips_noops():
    store = DocumentStore(snapshot=_doc())
    seen = []
    unsubscribe = store.subscribe(seen.append)

    store.dispatch(PatchEntity("scenes", "missing", {"imageUrl": "x"}))
    assert seen == []
    store.dispatch(MergeMetadata({"theme": "Ocean"}))
    assert [doc.theme for doc in seen] == ["Ocean"]
    assert store.version == 1

    unsubscribe()
    store.dispatch(MergeMetadata({"theme": "River"}))
    assert len(seen) == 1


def test_store_queues_reentrant_dispatches_in_order():
    store = DocumentStore(snapshot=_doc())
    themes = []

    def listener(doc):
        themes.append(doc.theme)
        if doc.theme == "A":
            store.dispatch(MergeMetadata({"theme": "B"}))

    store.subscribe(listener)
    result = store.dispatch(MergeMetadata({"theme": "A"}))
    assert themes == ["A", "B"]
    assert result.theme == "B"


def test_store_applies_queued_patches_when_a_listener_raises():
    store = DocumentStore(snapshot=_doc())

    def listener(doc):
        if doc.theme == "A":
            store.dispatch(MergeMetadata({"theme": "B"}))
            raise RuntimeError("listener broke")

    store.subscribe(listener)
    with pytest.raises(RuntimeError, match="listener broke"):
        store.dispatch(MergeMetadata({"theme": "A"}))
    assert store.snapshot.theme == "B"
    assert store.version == 2

    store.dispatch(MergeMetadata({"storyOverview": "later"}))
    assert store.snapshot.story_overview == "later"


@pytest.mark.parametrize("raw, expected", [
    (1, ()),
    (True, ()),
    ({"id": "c1"}, ()),
    ("c1", ("c1",)),
    (["c1", None, 2], ("c1", "2")),
])
def test_scene_character_ids_tolerate_malformed_values(raw, expected):
    scene = Scene.from_dict({"id": "s1", "characterIds": raw})
    assert scene.character_ids == expected


def test_concurrent_completions_commute():
    patches = [
        PatchEntity("scenes", "s1", {"imageUrl": "http://img/1"}),
        PatchEntity("scenes", "s3", {"videoUrl": "http://vid/3"}),
        PatchEntity("characters", "c1", {"imageUrl": "http://img/c1"}),
        SetSceneDuration("s2", 4),
    ]
    results = set()
    for order in itertools.permutations(patches):
        store = DocumentStore(snapshot=_doc())
        for patch in order:
            store.dispatch(patch)
        store.dispatch(RebuildTracks())
        results.add(store.snapshot)
    assert len(results) == 1


def test_patches_are_idempotent():
    patch = PatchEntity("scenes", "s1", {"imageUrl": "http://img/1"})
    once = apply_patch(_doc(), patch)
    assert apply_patch(once, patch) == once


def test_replace_scenes_and_reset():
    store = DocumentStore(snapshot=_doc())
    store.dispatch(ReplaceScenes((Scene(id="n1", duration=Fixed(2)),)))
    assert total_duration(store.snapshot.tracks) == 2

    store.dispatch(ReplaceDocument(Skeleton(theme="Fresh")))
    assert store.snapshot.scenes == ()
    assert store.reset().theme == ""
