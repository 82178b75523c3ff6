"""Chat refinement of an existing skeleton."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Sequence

from aicut.aspect_ratio import resolution_for
from aicut.client import GenerationClient
from aicut.document import (
    DocumentStore,
    RebuildTracks,
    ReplaceDocument,
    ensure_ids,
    new_id,
    normalize_scene,
)
from aicut.errors import ParseError
from aicut.extract import extract_structured
from aicut.models import DEFAULT_DURATION, Message, Skeleton
from aicut.prompts import get_prompt

logger = logging.getLogger(__name__)

IMAGE_COMMAND = "/image "

_MEDIA_KEYS = ("imageUrl", "videoUrl", "audioUrl")


def _carry_over(items: list, existing: Sequence[dict]) -> list[dict]:
    """Keep ids and generated media of entities the reply left out.

    Entities without an id inherit the id of the existing entity at the same
    position, unless the reply already uses that id. Missing media URLs are
    copied from the existing entity with the same id.
    """
    by_id = {e["id"]: e for e in existing if e.get("id")}
    used = {item.get("id") for item in items if isinstance(item, dict) and item.get("id")}
    result = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        data = dict(item)
        if not data.get("id"):
            candidate = existing[index].get("id") if index < len(existing) else None
            data["id"] = candidate if candidate and candidate not in used else new_id()
            used.add(data["id"])
        previous = by_id.get(data["id"])
        if previous:
            for key in _MEDIA_KEYS:
                if not data.get(key) and previous.get(key):
                    data[key] = previous[key]
        result.append(data)
    return result


def merge_refined(
    current: Skeleton,
    reply: dict,
    default_duration: float = DEFAULT_DURATION,
) -> Skeleton:
    """Build the refined document from a reply skeleton. Tracks are left for a rebuild."""
    old = current.to_dict()
    data = {**old, **reply}
    for key in ("characters", "sceneDesigns", "scenes"):
        items = reply.get(key)
        data[key] = _carry_over(items, old[key]) if isinstance(items, list) else old[key]
    data["aspectRatio"] = current.aspect_ratio
    data.pop("tracks", None)

    doc = ensure_ids(Skeleton.from_dict({**data, "scenes": []}))
    return replace(doc, scenes=tuple(normalize_scene(s, default_duration) for s in data["scenes"]))


async def refine(
    client: GenerationClient,
    store: DocumentStore,
    history_messages: Sequence[Message],
    user_message: str,
) -> str:
    """Send one chat turn about the current skeleton and apply any update.

    ``/image PROMPT`` generates a standalone image instead. When the reply
    carries a skeleton JSON object with a ``theme`` the document is replaced;
    any other reply leaves it untouched.

    Returns:
        The assistant reply text.
    """
    if user_message.startswith(IMAGE_COMMAND):
        prompt = user_message[len(IMAGE_COMMAND):].strip()
        result = await client.generate_image(prompt, resolution_for(store.snapshot.aspect_ratio))
        return f"Generated image: {prompt}\n{result.url}"

    system, user = get_prompt("chat_refine", user_message)
    current = store.snapshot
    system += "\n\nCurrent video skeleton:\n" + json.dumps(
        current.to_dict(), ensure_ascii=False, indent=2,
    )
    messages = [Message("system", system), *history_messages, Message("user", user)]
    reply = await client.chat_complete(messages)

    try:
        data = extract_structured(reply)
    except ParseError:
        return reply
    if isinstance(data, dict) and data.get("theme"):
        updated = merge_refined(current, data, store.default_duration)
        store.dispatch(ReplaceDocument(updated))
        store.dispatch(RebuildTracks())
        logger.info("Skeleton refined: %d scenes", len(updated.scenes))
    return reply
