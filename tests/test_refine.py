import asyncio
import json

from aicut.document import DocumentStore, RebuildTracks
from aicut.models import Character, Fixed, Message, Scene, Skeleton
from aicut.refine import merge_refined, refine
from aicut.timeline import total_duration

from helpers import FakeClient


def _store():
    doc = Skeleton(
        theme="Sea",
        art_style="Ink",
        characters=(Character(id="c1", prototype="Keeper", image_url="https://img/c1.png"),),
        scenes=(
            Scene(id="s1", visual_description="Dawn", duration=Fixed(3), image_url="https://img/s1.png"),
            Scene(id="s2", visual_description="Dusk", duration=Fixed(4)),
        ),
        aspect_ratio="9:16",
    )
    store = DocumentStore(snapshot=doc)
    store.dispatch(RebuildTracks())
    return store


def test_refine_replaces_document_and_keeps_media():
    reply = "Here is the update:\n```json\n" + json.dumps({
        "theme": "Happier sea",
        "artStyle": "Ink",
        "characters": [{"prototype": "Keeper", "description": "smiling"}],
        "scenes": [
            {"id": "s1", "visualDescription": "Bright dawn", "duration": 3},
            {"id": "s2", "visualDescription": "Golden dusk", "duration": 6},
            {"visualDescription": "Rainbow", "duration": 2},
        ],
    }) + "\n```"
    client = FakeClient([reply])
    store = _store()

    answer = asyncio.run(refine(client, store, [Message("assistant", "Hi!")], "Make it happier"))

    assert answer == reply
    doc = store.snapshot
    assert doc.theme == "Happier sea"
    assert doc.aspect_ratio == "9:16"
    assert doc.characters[0].id == "c1"
    assert doc.characters[0].image_url == "https://img/c1.png"
    assert doc.scenes[0].image_url == "https://img/s1.png"
    assert doc.scenes[2].id not in ("s1", "s2")
    assert total_duration(doc.tracks) == 11

    messages = client.chat_calls[0]
    assert messages[0].role == "system"
    assert "Current video skeleton:" in messages[0].content
    assert '"theme": "Sea"' in messages[0].content
    assert messages[1].content == "Hi!"
    assert messages[-1].role == "user"


def test_refine_plain_reply_leaves_document():
    store = _store()
    before = store.snapshot
    answer = asyncio.run(refine(FakeClient(["Maybe add a storm?"]), store, [], "Ideas?"))
    assert answer == "Maybe add a storm?"
    assert store.snapshot is before


def test_refine_json_without_theme_is_plain_text():
    store = _store()
    before = store.snapshot
    asyncio.run(refine(FakeClient(['{"note": "no changes"}']), store, [], "Check it"))
    assert store.snapshot is before


def test_refine_image_command():
    client = FakeClient()
    store = _store()
    answer = asyncio.run(refine(client, store, [], "/image a red kite"))
    assert answer == "Generated image: a red kite\nhttps://img.test/1.png"
    assert client.image_calls == [("a red kite", "1440x2560", [])]
    assert client.chat_calls == []


def test_merge_refined_keeps_rosters_absent_from_reply():
    current = _store().snapshot
    merged = merge_refined(current, {"theme": "New"})
    assert merged.characters == current.characters
    assert [s.id for s in merged.scenes] == ["s1", "s2"]
    assert merged.art_style == "Ink"
    assert merged.tracks is None
