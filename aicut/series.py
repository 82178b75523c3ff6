"""Series mode: turn a novel into a bible, an episode plan and episode skeletons."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from aicut.aspect_ratio import PORTRAIT_RESOLUTION, resolution_for
from aicut.client import GenerationClient
from aicut.document import (
    DocumentStore,
    PatchEntity,
    ReplaceDocument,
    ReplaceScenes,
    RebuildTracks,
    ensure_ids,
    new_id,
    normalize_scene,
)
from aicut.errors import AicutError, ParseError
from aicut.extract import extract_structured
from aicut.models import EpisodeSummary, Scene, SeriesBible, Skeleton
from aicut.orchestrator import storyboard_items
from aicut.prompts import (
    build_messages,
    character_image_prompt,
    dumps,
    episode_scene_image_prompt,
    scene_design_image_prompt,
)

logger = logging.getLogger(__name__)

DETAIL_BATCH_SIZE = 5
IMAGE_CONCURRENCY = 3

# AUTO scenes are previewed at this length until speech is synthesized.
EPISODE_PREVIEW_DURATION = 5


async def analyze_bible(client: GenerationClient, novel_text: str) -> SeriesBible:
    """Extract art style, characters and scene designs shared by every episode.

    Raises:
        ParseError: If the response holds no JSON object.
    """
    text = await client.chat_complete(build_messages("analyze_series_bible", novel_text))
    data = extract_structured(text)
    if not isinstance(data, dict):
        raise ParseError("Series bible response is not a JSON object", text=text)

    bible = SeriesBible.from_dict(data)
    roster = ensure_ids(Skeleton(characters=bible.characters, scene_designs=bible.scene_designs))
    bible.characters = roster.characters
    bible.scene_designs = roster.scene_designs
    if not bible.id:
        bible.id = new_id()
    logger.info("Series bible %s: %d characters, %d scene designs",
                bible.id, len(bible.characters), len(bible.scene_designs))
    return bible


async def generate_bible_images(
    client: GenerationClient,
    bible: SeriesBible,
    aspect_ratio: str | None = None,
) -> list[str]:
    """Generate reference images for bible entries that have none, in parallel.

    Returns:
        Ids of the entries whose image failed.
    """
    failed: list[str] = []

    async def render(entity, prompt: str, size: str):
        try:
            result = await client.generate_image(prompt, size)
        except AicutError as exc:
            logger.error("bible %s: image failed: %s", entity.id, exc)
            failed.append(entity.id)
            return entity
        return replace(entity, image_url=result.url)

    characters = [
        render(c, character_image_prompt(bible.art_style, c), PORTRAIT_RESOLUTION)
        if not c.image_url else _done(c)
        for c in bible.characters
    ]
    designs = [
        render(d, scene_design_image_prompt(bible.art_style, d), resolution_for(aspect_ratio))
        if not d.image_url else _done(d)
        for d in bible.scene_designs
    ]
    results = await asyncio.gather(*characters, *designs)
    bible.characters = tuple(results[:len(characters)])
    bible.scene_designs = tuple(results[len(characters):])
    return failed


async def _done(entity):
    return entity


async def segment_episodes(client: GenerationClient, novel_text: str) -> list[EpisodeSummary]:
    """Split the novel into episodes, all starting as ``pending``."""
    text = await client.chat_complete(build_messages("segment_episodes", novel_text))
    data = extract_structured(text)
    if isinstance(data, dict):
        data = data.get("episodes")
    if not isinstance(data, list):
        raise ParseError("Episode list response is not a JSON array", text=text)

    episodes = []
    for position, item in enumerate(x for x in data if isinstance(x, dict)):
        episode = EpisodeSummary.from_dict(item, position)
        episode.status = "pending"
        episodes.append(episode)
    logger.info("Segmented novel into %d episodes", len(episodes))
    return episodes


def _outline_scene(raw: dict) -> Scene:
    data = dict(raw)
    data.setdefault("visualDescription", data.get("action", ""))
    data.setdefault("cameraDesign", "Medium Shot")
    data.setdefault("audioDesign", "Ambient sound")
    data.setdefault("voiceActor", "")
    return normalize_scene(data)


async def _fill_details(
    client: GenerationClient,
    bible: SeriesBible,
    store: DocumentStore,
) -> None:
    scenes = list(store.snapshot.scenes)
    for start in range(0, len(scenes), DETAIL_BATCH_SIZE):
        batch = scenes[start:start + DETAIL_BATCH_SIZE]
        payload = {
            "bible": {"artStyle": bible.art_style},
            "scenes": [s.to_dict() for s in batch],
        }
        if start > 0:
            payload["previousScene"] = scenes[start - 1].to_dict()
        try:
            text = await client.chat_complete(build_messages("generate_scene_details", dumps(payload)))
            updated = extract_structured(text)
        except AicutError as exc:
            logger.error("Scene details batch %d failed: %s", start // DETAIL_BATCH_SIZE + 1, exc)
            continue
        if not isinstance(updated, list):
            logger.error("Scene details batch %d: response is not a list",
                         start // DETAIL_BATCH_SIZE + 1)
            continue

        for offset, fields in enumerate(updated):
            if start + offset >= len(scenes) or not isinstance(fields, dict):
                continue
            merged = {**scenes[start + offset].to_dict(), **fields, "id": scenes[start + offset].id}
            scenes[start + offset] = normalize_scene(merged)
        store.dispatch(ReplaceScenes(tuple(scenes)))


async def _scene_images(
    client: GenerationClient,
    bible: SeriesBible,
    store: DocumentStore,
    concurrency: int = IMAGE_CONCURRENCY,
) -> list[str]:
    doc = store.snapshot
    queue: asyncio.Queue[Scene] = asyncio.Queue()
    for scene in doc.scenes:
        if not scene.image_url:
            queue.put_nowait(scene)
    failed: list[str] = []

    async def worker() -> None:
        while True:
            try:
                scene = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            references = [c.image_url for c in bible.characters
                          if c.id in scene.character_ids and c.image_url]
            design = next((d for d in bible.scene_designs if d.id == scene.scene_id), None)
            if design is not None and design.image_url:
                references.append(design.image_url)
            try:
                result = await client.generate_image(
                    episode_scene_image_prompt(bible.art_style, scene),
                    resolution_for(doc.aspect_ratio),
                    references or None,
                )
            except AicutError as exc:
                logger.error("scene %s: image failed: %s", scene.id, exc)
                failed.append(scene.id)
                continue
            store.dispatch(PatchEntity("scenes", scene.id, {"imageUrl": result.url}))
            store.dispatch(RebuildTracks())

    await asyncio.gather(*(worker() for _ in range(min(concurrency, queue.qsize()))))
    return failed


async def generate_episode_skeleton(
    client: GenerationClient,
    bible: SeriesBible,
    episode: EpisodeSummary,
    aspect_ratio: str,
    store: DocumentStore | None = None,
    with_images: bool = True,
) -> Skeleton:
    """Build the skeleton of one episode.

    The script outline comes first and is published immediately; scene
    details are then filled in batches (a failing batch is logged and
    skipped), and finally scene images are generated with bible references.

    Raises:
        TransportError: If the outline request fails.
        ParseError: If the outline cannot be parsed.
    """
    store = store or DocumentStore(default_duration=EPISODE_PREVIEW_DURATION)
    payload = {
        "index": episode.index,
        "title": episode.title,
        "summary": episode.summary,
        "bible": {
            "artStyle": bible.art_style,
            "characters": [c.to_dict() for c in bible.characters],
            "sceneDesigns": [s.to_dict() for s in bible.scene_designs],
        },
    }
    text = await client.chat_complete(build_messages("generate_episode_script", dumps(payload)))
    script = extract_structured(text)
    scenes = tuple(_outline_scene(raw) for raw in storyboard_items(script))
    meta = script if isinstance(script, dict) else {}

    store.dispatch(ReplaceDocument(Skeleton(
        theme=str(meta.get("theme") or episode.title),
        story_overview=str(meta.get("storyOverview") or episode.summary),
        art_style=bible.art_style,
        characters=bible.characters,
        scene_designs=bible.scene_designs,
        aspect_ratio=aspect_ratio,
    )))
    store.dispatch(ReplaceScenes(scenes))
    episode.status = "generated"
    logger.info("Episode %d outline: %d scenes", episode.index, len(scenes))

    await _fill_details(client, bible, store)
    if with_images:
        failed = await _scene_images(client, bible, store)
        if failed:
            logger.warning("Episode %d: %d scene images failed", episode.index, len(failed))
    return store.snapshot

