"""Prompt templates for the language model and prompt builders for media generation."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from aicut.models import Character, Message, Scene, SceneDesign

_JSON_HINT = (
    "Output JSON directly. If you add any explanation, wrap the JSON in "
    "```json and ``` fences."
)


@dataclass(frozen=True)
class PromptTemplate:
    system: str
    user: Callable[[str], str]


PROMPT_TEMPLATES: dict[str, PromptTemplate] = {
    "generate_skeleton": PromptTemplate(
        system=(
            "You are a professional video creative director and screenwriter. "
            "Given a theme from the user, produce a first video skeleton as a JSON object with:\n"
            "- theme: the theme\n"
            "- storyOverview: story overview\n"
            "- artStyle: art style description\n"
            "- characters: list of {id, prototype, description}. Describe only the character "
            "itself: pure white background, no scenery, a single character standing, full body "
            "visible, no large movements, so a clean character reference can be generated.\n"
            "- sceneDesigns: list of {id, prototype, description}. Describe only the environment: "
            "empty, no characters or people, background only, so a clean plate can be generated.\n"
            + _JSON_HINT
        ),
        user=lambda text: f"Generate a video skeleton for this theme: {text}",
    ),
    "generate_storyboard": PromptTemplate(
        system=(
            "You are a professional storyboard director. From the provided video skeleton "
            "(story overview, art style, characters, scene designs) write a detailed shot list. "
            "Every shot has:\n"
            "- visualDescription: what the frame shows, actions, environment, lighting\n"
            "- characterIds: ids of the characters in the shot (from the provided characters)\n"
            "- sceneId: id of the scene design the shot takes place in\n"
            "- cameraDesign: shot type, movement, motion amplitude, eye level, composition\n"
            "- audioDesign: ambient sound and effects\n"
            "- voiceActor: who speaks (Narrator or a character name)\n"
            "- dialogueContent: the spoken line or narration\n"
            "- duration: suggested duration in seconds, or -1 to infer it from the speech\n"
            "The output must be a JSON array, one element per shot. " + _JSON_HINT
        ),
        user=lambda text: f"Write the storyboard for this video skeleton:\n{text}",
    ),
    "chat_refine": PromptTemplate(
        system=(
            "You are a professional video creation assistant. The user suggests changes to a "
            "video skeleton; answer in a professional and inspiring tone. When the user wants to "
            "modify, improve or regenerate any part of the skeleton, include the complete updated "
            "skeleton JSON in the reply, with theme, storyOverview, artStyle, characters "
            "(id, prototype, description, imageUrl), sceneDesigns (id, prototype, description, "
            "imageUrl) and scenes (id, visualDescription, characterIds, sceneId, cameraDesign, "
            "audioDesign, voiceActor, dialogueContent, duration, imageUrl).\n"
            "1. For plain questions do not output JSON.\n"
            "2. Keep existing ids unchanged (except for new items) and keep existing imageUrl values.\n"
            "3. Wrap the JSON in ```json and ``` fences.\n"
            "4. Outside the JSON, briefly explain what you changed."
        ),
        user=lambda text: text,
    ),
    "analyze_series_bible": PromptTemplate(
        system=(
            "You are a showrunner adapting a novel into a video series. Read the novel and "
            "extract the series bible as a JSON object with: title, artStyle, characters "
            "(list of {id, prototype, description}, character only on a white background) and "
            "sceneDesigns (list of {id, prototype, description}, empty environments only). "
            + _JSON_HINT
        ),
        user=lambda text: f"Analyze this novel:\n{text}",
    ),
    "segment_episodes": PromptTemplate(
        system=(
            "You are a showrunner. Split the novel into episodes of a short video series. "
            "Return a JSON array of {id, index, title, summary}, index starting at 1. "
            + _JSON_HINT
        ),
        user=lambda text: f"Split this novel into episodes:\n{text}",
    ),
    "generate_episode_script": PromptTemplate(
        system=(
            "You are a screenwriter. From the episode summary and the series bible write the "
            "episode outline as a JSON object with theme, storyOverview and scenes. Each scene "
            "has id, action, characterIds, sceneId, dialogueContent and duration (seconds, or "
            "-1 to infer it from speech). Only use character and scene design ids from the bible. "
            + _JSON_HINT
        ),
        user=lambda text: f"Write the episode outline for:\n{text}",
    ),
    "generate_scene_details": PromptTemplate(
        system=(
            "You are a storyboard director. For every scene in the input, fill in "
            "visualDescription, cameraDesign, audioDesign and voiceActor, keeping id and all "
            "other fields. Stay consistent with the art style and the previous scene. "
            "Return a JSON array with one element per input scene, in the same order. "
            + _JSON_HINT
        ),
        user=lambda text: f"Fill in the scene details:\n{text}",
    ),
}


def get_prompt(kind: str, text: str) -> tuple[str, str]:
    """Return ``(system, user)`` prompt strings for a template.

    Raises:
        ValueError: If the template name is unknown.
    """
    template = PROMPT_TEMPLATES.get(kind)
    if template is None:
        raise ValueError(f"Unknown prompt type: {kind}")
    return template.system, template.user(text)


def build_messages(kind: str, text: str) -> list[Message]:
    """System and user messages for a template."""
    system, user = get_prompt(kind, text)
    return [Message("system", system), Message("user", user)]


def dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False)


# ----------------------------------------------------------------------
# Media prompts
# ----------------------------------------------------------------------

_SAFETY = "Safe for work, avoid copyright."


def character_image_prompt(art_style: str, character: Character) -> str:
    return (
        f"Art style: {art_style}. Character: {character.description}. "
        "Full body, standing, no action, pure white background, no scenery, character only, "
        f"high quality, masterpiece, original design. {_SAFETY}"
    )


def scene_design_image_prompt(art_style: str, design: SceneDesign) -> str:
    return (
        f"Art style: {art_style}. Scene: {design.description}. "
        "No characters, empty scene, background only, high quality, masterpiece, "
        f"original design. {_SAFETY}"
    )


def scene_image_prompt(
    art_style: str,
    scene: Scene,
    characters: Sequence[Character],
    design: SceneDesign | None,
    image_urls: Mapping[str, str],
) -> tuple[str, list[str]]:
    """Composite prompt for one scene plus its ordered reference images.

    Reference ``[Image N]`` numbering follows the order of the returned URL
    list: characters that have an image first, then the scene design.
    """
    references: list[str] = []
    lines: list[str] = []
    for character in characters:
        url = image_urls.get(character.id)
        if url:
            references.append(url)
            lines.append(
                f'[Image {len(references)}] is the reference of character "{character.prototype}": '
                f"{character.description}."
            )
    if design is not None and image_urls.get(design.id):
        references.append(image_urls[design.id])
        lines.append(
            f'[Image {len(references)}] is the background plate of scene "{design.prototype}": '
            f"{design.description}."
        )

    prompt = "\n".join(
        [
            f"Art style: {art_style}.",
            *lines,
            f"Shot description: {scene.visual_description}.",
            f"Camera: {scene.camera_design}.",
            "Blend the referenced characters and background into this shot, keeping their "
            "features and atmosphere consistent.",
            "High quality, masterpiece, cinematic composition, original design, no copyrighted "
            "characters or logos, safe for work.",
        ]
    )
    return prompt, references


def episode_scene_image_prompt(art_style: str, scene: Scene) -> str:
    prompt = f"Art style: {art_style}. Shot description: {scene.visual_description}."
    if scene.camera_design:
        prompt += f" Camera: {scene.camera_design}."
    return prompt + " High quality, cinematic, 8k."


def video_prompt(scene: Scene) -> str:
    """Video prompt: the visual description with the spoken line appended."""
    prompt = scene.visual_description
    if scene.dialogue_content:
        prompt += f' Character says: "{scene.dialogue_content}"'
    return prompt
