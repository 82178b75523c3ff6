import pytest

from aicut.aspect_ratio import PORTRAIT_RESOLUTION, canvas_size, resolution_for
from aicut.models import Character, Scene, SceneDesign
from aicut.prompts import PROMPT_TEMPLATES, build_messages, get_prompt, scene_image_prompt, video_prompt
from aicut.voices import DEFAULT_VOICE, VOICES, get_voice_id, get_voice_name, resolve_voice


def test_every_template_builds_messages():
    for kind in PROMPT_TEMPLATES:
        system, user = build_messages(kind, "payload")
        assert system.role == "system" and system.content
        assert user.role == "user" and "payload" in user.content


def test_unknown_template():
    with pytest.raises(ValueError):
        get_prompt("write_poem", "x")


def test_scene_image_prompt_numbers_references():
    characters = [
        Character(id="c1", prototype="Keeper", description="old man"),
        Character(id="c2", prototype="Child", description="girl"),
    ]
    design = SceneDesign(id="d1", prototype="Tower", description="stone tower")
    scene = Scene(id="s1", visual_description="They wave", camera_design="Wide")
    urls = {"c2": "https://img/c2.png", "d1": "https://img/d1.png"}

    prompt, references = scene_image_prompt("Ink", scene, characters, design, urls)

    assert references == ["https://img/c2.png", "https://img/d1.png"]
    assert '[Image 1] is the reference of character "Child"' in prompt
    assert '[Image 2] is the background plate of scene "Tower"' in prompt
    assert "Keeper" not in prompt
    assert "Shot description: They wave." in prompt


def test_video_prompt_appends_dialogue():
    assert video_prompt(Scene(id="s1", visual_description="Waves")) == "Waves"
    scene = Scene(id="s1", visual_description="Waves", dialogue_content="Hi")
    assert video_prompt(scene) == 'Waves Character says: "Hi"'


def test_resolution_table():
    assert resolution_for("16:9") == "2560x1440"
    assert resolution_for("3:4") == "1728x2304"
    assert resolution_for("21:9") == "2560x1440"
    assert resolution_for(None) == "2560x1440"
    assert PORTRAIT_RESOLUTION == "1728x2304"


@pytest.mark.parametrize(
    "ratio, size",
    [("16:9", (1280, 720)), ("9:16", (720, 1280)), ("1:1", (720, 720)),
     ("4:3", (960, 720)), ("3:4", (720, 960)), ("bogus", (1280, 720))],
)
def test_canvas_size(ratio, size):
    assert canvas_size(ratio) == size


def test_voice_lookup():
    voice = VOICES[0]
    assert get_voice_id(voice.name) == voice.id
    assert get_voice_id(voice.id) == voice.id
    assert get_voice_id("Nobody") is None
    assert get_voice_name(voice.id) == voice.name
    assert get_voice_name("custom") == "custom"


def test_resolve_voice():
    assert resolve_voice("") == DEFAULT_VOICE
    assert resolve_voice("", "BV700_streaming") == "BV700_streaming"
    assert resolve_voice(VOICES[0].name) == VOICES[0].id
    assert resolve_voice("custom_voice") == "custom_voice"
