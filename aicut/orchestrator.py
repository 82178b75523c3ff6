"""Multi-stage generation pipeline.

A run streams the skeleton metadata, then the storyboard, then fans out image
jobs in two waves (reference images, then per-scene composites). Video
generation (wave 3) and speech synthesis are separate, user-triggered stages.

Every completion is applied as a patch through the ``DocumentStore``; no job
holds on to a copy of the document it started from.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from aicut.aspect_ratio import PORTRAIT_RESOLUTION, resolution_for
from aicut.client import GenerationClient, clamp_video_duration
from aicut.config import get_section
from aicut.document import (
    MergeMetadata,
    PatchEntity,
    RebuildTracks,
    ReplaceDocument,
    ReplaceScenes,
    SetSceneDuration,
    DocumentStore,
    ensure_ids,
    new_id,
    normalize_scene,
)
from aicut.errors import AicutError, JobFailedError, JobTimeoutError, ParseError
from aicut.extract import extract_partial, extract_partial_array, extract_structured
from aicut.media import MediaCache, probe_duration
from aicut.models import Scene, Skeleton, TaskStatus
from aicut.prompts import (
    build_messages,
    character_image_prompt,
    dumps,
    scene_design_image_prompt,
    scene_image_prompt,
    video_prompt,
)
from aicut.storage import AssetStore, HistoryStore, upsert_history_snapshot
from aicut.voices import resolve_voice

logger = logging.getLogger(__name__)


class RunState(str, enum.Enum):
    IDLE = "idle"
    STREAMING_METADATA = "streaming_metadata"
    STREAMING_STORYBOARD = "streaming_storyboard"
    GENERATING_ASSETS = "generating_assets"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class Failure:
    stage: str
    entity_id: str
    error: Exception

    def __str__(self) -> str:
        return f"{self.stage} {self.entity_id}: {self.error}"


@dataclass
class RunReport:
    """Progress counters and per-entity failures of the current stage."""
    completed: int = 0
    total: int = 0
    failures: list[Failure] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.completed - len(self.failures)


def storyboard_items(data: Any) -> list[dict]:
    """The list of scene objects in a parsed storyboard response.

    A bare array is taken as is; an object is searched for a ``scenes`` list,
    then for the first list value.

    Raises:
        ParseError: If no list of scenes can be found.
    """
    if isinstance(data, dict):
        if isinstance(data.get("scenes"), list):
            data = data["scenes"]
        else:
            data = next((v for v in data.values() if isinstance(v, list)), None)
    if not isinstance(data, list):
        raise ParseError("Storyboard response is not a list of scenes")
    return [item for item in data if isinstance(item, dict)]


class Pipeline:
    """Drives one project through generation.

    Args:
        client: Generation client used for every external call.
        store: Document store holding the live skeleton.
        config: Parsed config dict (only the ``generation``, ``polling``,
            ``video``, ``tts`` and ``storage`` sections are read).
        history: Optional history store; the project is saved after the
            storyboard and again when a stage completes.
        assets: Optional asset store for synthesized speech.
        media: Optional media cache, needed for ``sync_media_durations``.
        sleep: Awaitable sleep, injectable for tests.
        probe: Duration probe for audio files.
        output_dir: Where synthesized audio files are written.
    """

    def __init__(
        self,
        client: GenerationClient,
        store: DocumentStore | None = None,
        *,
        config: dict | None = None,
        history: HistoryStore | None = None,
        assets: AssetStore | None = None,
        media: MediaCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        probe: Callable[[Path], float | None] = probe_duration,
        output_dir: str | Path | None = None,
        history_id: int | None = None,
        prompt: str = "",
    ) -> None:
        self.client = client
        self.generation = get_section(config, "generation")
        self.polling = get_section(config, "polling")
        self.video = get_section(config, "video")
        self.tts = get_section(config, "tts")
        self.store = store or DocumentStore(default_duration=self.generation["default_duration"])
        self.history = history
        self.assets = assets
        self.media = media
        self._sleep = sleep
        self._probe = probe
        self.output_dir = Path(output_dir or get_section(config, "storage")["output_dir"])
        self.history_id = history_id
        self.prompt = prompt
        self.state = RunState.IDLE
        self.report = RunReport()
        self.on_progress: Callable[[RunReport], None] | None = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def doc(self) -> Skeleton:
        return self.store.snapshot

    def _set_state(self, state: RunState) -> None:
        logger.debug("Pipeline state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _start_report(self, total: int) -> RunReport:
        self.report = RunReport(total=total)
        return self.report

    def _record_failure(self, stage: str, entity_id: str, exc: Exception) -> None:
        if isinstance(exc, JobTimeoutError):
            logger.warning("%s %s timed out after %d polls", stage, entity_id, exc.attempts)
        else:
            logger.error("%s %s failed: %s", stage, entity_id, exc)
        self.report.failures.append(Failure(stage, entity_id, exc))

    def _tick(self) -> None:
        self.report.completed += 1
        if self.on_progress is not None:
            self.on_progress(self.report)

    def save_history(self) -> int | None:
        """Persist the current document; no-op without a history store."""
        if self.history is None:
            return None
        self.history_id = upsert_history_snapshot(
            self.history, self.history_id, self.doc, self.prompt or self.doc.theme or "Untitled",
        )
        return self.history_id

    # ------------------------------------------------------------------
    # Stage 1: metadata
    # ------------------------------------------------------------------

    async def stream_metadata(self, prompt: str, aspect_ratio: str | None = None) -> Skeleton:
        """Stream the skeleton metadata and rosters for ``prompt``.

        Partial fields are merged as they arrive; the final parse replaces
        them. Scenes are left empty for the storyboard stage.

        Raises:
            TransportError: If the stream fails.
            ParseError: If the final response holds no JSON object.
        """
        self._set_state(RunState.STREAMING_METADATA)
        self.prompt = prompt
        ratio = aspect_ratio or self.generation["aspect_ratio"]
        self.store.dispatch(ReplaceDocument(Skeleton(aspect_ratio=ratio)))

        buffer: list[str] = []

        def on_chunk(fragment: str) -> None:
            buffer.append(fragment)
            fields = extract_partial("".join(buffer))
            if fields:
                self.store.dispatch(MergeMetadata(fields))

        await self.client.chat_stream(
            build_messages("generate_skeleton", prompt), on_chunk, json_mode=True,
        )

        data = extract_structured("".join(buffer))
        if not isinstance(data, dict):
            raise ParseError("Skeleton response is not a JSON object", text="".join(buffer))
        data = {**data, "scenes": [], "aspectRatio": ratio}
        data.pop("tracks", None)
        doc = ensure_ids(Skeleton.from_dict(data))
        self.store.dispatch(ReplaceDocument(doc))
        logger.info("Skeleton: %r, %d characters, %d scene designs",
                    doc.theme, len(doc.characters), len(doc.scene_designs))
        return doc

    # ------------------------------------------------------------------
    # Stage 2: storyboard
    # ------------------------------------------------------------------

    async def stream_storyboard(self) -> Skeleton:
        """Stream the shot list for the current skeleton.

        Raises:
            TransportError: If the stream fails.
            ParseError: If the final response holds no list of scenes.
        """
        self._set_state(RunState.STREAMING_STORYBOARD)
        doc = self.doc
        payload = dumps({
            "theme": doc.theme,
            "storyOverview": doc.story_overview,
            "artStyle": doc.art_style,
            "characters": [c.to_dict() for c in doc.characters],
            "sceneDesigns": [s.to_dict() for s in doc.scene_designs],
        })
        default = self.generation["default_duration"]

        buffer: list[str] = []
        ids: list[str] = []
        seen = 0

        def scenes_from(items: list[dict]) -> list[Scene]:
            # Provisional scenes keep the same id from chunk to chunk.
            while len(ids) < len(items):
                ids.append(new_id())
            scenes = []
            for i, item in enumerate(items):
                data = dict(item)
                if not data.get("id"):
                    data["id"] = ids[i]
                scenes.append(normalize_scene(data, default))
            return scenes

        def on_chunk(fragment: str) -> None:
            nonlocal seen
            buffer.append(fragment)
            items = extract_partial_array("".join(buffer))
            if len(items) > seen:
                seen = len(items)
                self.store.dispatch(ReplaceScenes(tuple(scenes_from(items))))

        await self.client.chat_stream(build_messages("generate_storyboard", payload), on_chunk)

        items = storyboard_items(extract_structured("".join(buffer)))
        scenes = scenes_from(items)
        self.store.dispatch(ReplaceScenes(tuple(scenes)))
        logger.info("Storyboard: %d scenes", len(scenes))
        self.save_history()
        return self.doc

    # ------------------------------------------------------------------
    # Stage 3: image waves
    # ------------------------------------------------------------------

    async def _stagger(self, index: int) -> None:
        delay = self.generation.get("image_submit_delay") or 0
        if delay and index:
            await self._sleep(delay * index)

    async def _character_image(self, index: int, character, image_urls: dict[str, str]) -> None:
        try:
            await self._stagger(index)
            result = await self.client.generate_image(
                character_image_prompt(self.doc.art_style, character), PORTRAIT_RESOLUTION,
            )
        except AicutError as exc:
            self._record_failure("character", character.id, exc)
        else:
            image_urls[character.id] = result.url
            self.store.dispatch(PatchEntity("characters", character.id, {"imageUrl": result.url}))
            logger.info("character %s: image ready", character.id)
        finally:
            self._tick()

    async def _design_image(self, index: int, design, image_urls: dict[str, str]) -> None:
        try:
            await self._stagger(index)
            result = await self.client.generate_image(
                scene_design_image_prompt(self.doc.art_style, design),
                resolution_for(self.doc.aspect_ratio),
            )
        except AicutError as exc:
            self._record_failure("scene_design", design.id, exc)
        else:
            image_urls[design.id] = result.url
            self.store.dispatch(PatchEntity("sceneDesigns", design.id, {"imageUrl": result.url}))
            logger.info("scene design %s: image ready", design.id)
        finally:
            self._tick()

    async def _render_scene_image(self, scene: Scene, image_urls: dict[str, str]) -> str:
        doc = self.doc
        characters = [c for c in doc.characters if c.id in scene.character_ids]
        design = doc.find("sceneDesigns", scene.scene_id) if scene.scene_id else None
        prompt, references = scene_image_prompt(doc.art_style, scene, characters, design, image_urls)
        result = await self.client.generate_image(
            prompt, resolution_for(doc.aspect_ratio), references or None,
        )
        self.store.dispatch(PatchEntity("scenes", scene.id, {"imageUrl": result.url}))
        self.store.dispatch(RebuildTracks())
        return result.url

    async def _scene_image(self, index: int, scene: Scene, image_urls: dict[str, str]) -> None:
        try:
            await self._stagger(index)
            await self._render_scene_image(scene, image_urls)
        except AicutError as exc:
            self._record_failure("scene_image", scene.id, exc)
        else:
            logger.info("scene %s: image ready", scene.id)
        finally:
            self._tick()

    async def generate_assets(self) -> RunReport:
        """Generate reference images, then one composite image per scene.

        Entities that already have an image are skipped. Failures are isolated
        per entity and collected in the returned report.
        """
        self._set_state(RunState.GENERATING_ASSETS)
        doc = self.doc

        image_urls: dict[str, str] = {}
        for entity in (*doc.characters, *doc.scene_designs):
            if entity.image_url:
                image_urls[entity.id] = entity.image_url

        characters = [c for c in doc.characters if not c.image_url]
        designs = [s for s in doc.scene_designs if not s.image_url]
        pending_scenes = [s for s in doc.scenes if not s.image_url]
        self._start_report(len(characters) + len(designs) + len(pending_scenes))

        wave1 = [self._character_image(i, c, image_urls) for i, c in enumerate(characters)]
        wave1 += [
            self._design_image(len(characters) + i, s, image_urls) for i, s in enumerate(designs)
        ]
        await asyncio.gather(*wave1)

        # Scenes are re-read so edits made during wave 1 are honoured.
        current = {s.id: s for s in self.doc.scenes}
        wave2 = []
        for i, s in enumerate(pending_scenes):
            if s.id not in current:
                logger.info("scene %s: removed before its image, skipping", s.id)
                self._tick()
                continue
            wave2.append(self._scene_image(i, current[s.id], image_urls))
        await asyncio.gather(*wave2)

        if self.report.completed >= self.report.total:
            self._set_state(RunState.COMPLETE)
            self.save_history()
        logger.info("Assets: %d/%d done, %d failed",
                    self.report.succeeded, self.report.total, len(self.report.failures))
        return self.report

    # ------------------------------------------------------------------
    # Video (wave 3)
    # ------------------------------------------------------------------

    async def poll_video_task(self, task_id: str) -> TaskStatus | None:
        """Poll a video task until it reaches a terminal state.

        Returns:
            The terminal TaskStatus, or None after ``max_attempts`` polls that
            were all non-terminal.
        """
        interval = self.polling["interval_seconds"]
        max_attempts = self.polling["max_attempts"]
        for attempt in range(1, max_attempts + 1):
            await self._sleep(interval)
            status = await self.client.query_video_status(task_id)
            logger.debug("Task %s: status=%s (attempt %d/%d)",
                         task_id, status.status, attempt, max_attempts)
            if status.is_done:
                return status
        logger.warning("Task %s still not done after %d polls", task_id, max_attempts)
        return None

    def _video_duration(self, scene: Scene) -> int:
        if self.video.get("clamp_duration", True):
            return clamp_video_duration(
                scene.duration, self.video["min_duration"], self.video["max_duration"],
            )
        return int(math.floor(scene.duration.to_number() + 0.5))

    async def _render_video(self, scene: Scene, last_frame: str | None) -> str:
        task_id = await self.client.generate_video(
            video_prompt(scene),
            scene.image_url,
            duration=self._video_duration(scene),
            aspect_ratio=self.doc.aspect_ratio,
            last_frame_image_url=last_frame,
        )
        status = await self.poll_video_task(task_id)
        if status is None:
            raise JobTimeoutError(
                f"Video task {task_id} did not finish", task_id=task_id,
                attempts=self.polling["max_attempts"],
            )
        if not status.is_success:
            raise JobFailedError(
                status.error or f"Video task {task_id} ended with status {status.status}",
                task_id=task_id,
            )
        self.store.dispatch(PatchEntity("scenes", scene.id, {"videoUrl": status.video_url}))
        self.store.dispatch(RebuildTracks())
        logger.info("scene %s: video ready", scene.id)
        return status.video_url

    def _next_image(self, scene_id: str) -> str | None:
        scenes = self.doc.scenes
        for i, scene in enumerate(scenes):
            if scene.id == scene_id:
                return scenes[i + 1].image_url if i + 1 < len(scenes) else None
        return None

    async def generate_scene_videos(self, regenerate: bool = False) -> RunReport:
        """Generate a video for every scene that has an image.

        Scenes without an image are skipped with a warning. Each submission
        uses the next scene's image as last frame. At most
        ``video_concurrency`` jobs run at once.
        """
        queue: asyncio.Queue[str] = asyncio.Queue()
        for scene in self.doc.scenes:
            if not scene.image_url:
                logger.warning("scene %s: no image, skipping video", scene.id)
                continue
            if scene.video_url and not regenerate:
                continue
            queue.put_nowait(scene.id)
        report = self._start_report(queue.qsize())

        async def worker() -> None:
            while True:
                try:
                    scene_id = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                scene = self.doc.find("scenes", scene_id)
                try:
                    if scene is None:
                        continue
                    await self._render_video(scene, self._next_image(scene_id))
                except AicutError as exc:
                    self._record_failure("video", scene_id, exc)
                finally:
                    self._tick()

        workers = min(self.generation["video_concurrency"], queue.qsize())
        await asyncio.gather(*(worker() for _ in range(workers)))
        if report.total:
            self.save_history()
        return report

    async def regenerate_video(self, scene_id: str) -> str:
        """Regenerate one scene's video.

        Raises:
            ValueError: If the scene does not exist or has no image.
            JobFailedError / JobTimeoutError / TransportError: On job failure.
        """
        scene = self.doc.find("scenes", scene_id)
        if scene is None:
            raise ValueError(f"Unknown scene: {scene_id}")
        if not scene.image_url:
            raise ValueError(f"Scene {scene_id} has no image yet")
        url = await self._render_video(scene, self._next_image(scene_id))
        self.save_history()
        return url

    async def regenerate_image(self, collection: str, entity_id: str) -> str:
        """Regenerate the image of one character, scene design or scene."""
        doc = self.doc
        entity = doc.find(collection, entity_id)
        if entity is None:
            raise ValueError(f"Unknown {collection} id: {entity_id}")

        if collection == "scenes":
            image_urls = {
                e.id: e.image_url for e in (*doc.characters, *doc.scene_designs) if e.image_url
            }
            url = await self._render_scene_image(entity, image_urls)
        else:
            if collection == "characters":
                prompt, size = character_image_prompt(doc.art_style, entity), PORTRAIT_RESOLUTION
            else:
                prompt = scene_design_image_prompt(doc.art_style, entity)
                size = resolution_for(doc.aspect_ratio)
            url = (await self.client.generate_image(prompt, size)).url
            self.store.dispatch(PatchEntity(collection, entity_id, {"imageUrl": url}))
        self.save_history()
        return url

    # ------------------------------------------------------------------
    # Audio
    # ------------------------------------------------------------------

    @property
    def audio_dir(self) -> Path:
        return self.output_dir / "audio"

    def _write_audio(self, scene_id: str, blob: bytes) -> Path:
        self.audio_dir.mkdir(parents=True, exist_ok=True)
        path = self.audio_dir / f"{scene_id}.mp3"
        path.write_bytes(blob)
        return path

    async def generate_scene_audio(self, scene_id: str, regenerate: bool = False) -> str:
        """Synthesize the dialogue of one scene.

        The scene duration becomes the measured speech length rounded up to
        whole seconds, and later clips ripple accordingly.

        Raises:
            ValueError: If the scene does not exist or has no dialogue.
            GenerationError / TransportError: If synthesis fails.
        """
        scene = self.doc.find("scenes", scene_id)
        if scene is None:
            raise ValueError(f"Unknown scene: {scene_id}")
        if not scene.dialogue_content:
            raise ValueError(f"Scene {scene_id} has no dialogue")
        if scene.audio_url and not regenerate:
            return scene.audio_url

        voice = resolve_voice(scene.voice_actor, self.tts["default_voice"])
        blob = await self.client.synthesize_speech(scene.dialogue_content, voice)
        if self.assets is not None:
            self.assets.put(scene_id, blob, "audio")
        path = self._write_audio(scene_id, blob)

        measured = await asyncio.to_thread(self._probe, path)
        if measured:
            self.store.dispatch(SetSceneDuration(scene_id, math.ceil(measured)))
        else:
            logger.warning("scene %s: could not measure audio, keeping duration", scene_id)
        self.store.dispatch(PatchEntity("scenes", scene_id, {"audioUrl": str(path)}))
        self.store.dispatch(RebuildTracks())
        logger.info("scene %s: audio ready (%.2fs)", scene_id, measured or 0)
        return str(path)

    async def generate_missing_audio(self) -> RunReport:
        """Synthesize speech for every scene with dialogue and no audio, one at a time."""
        pending = [s.id for s in self.doc.scenes if s.dialogue_content and not s.audio_url]
        report = self._start_report(len(pending))
        delay = self.generation["audio_delay_seconds"]
        for i, scene_id in enumerate(pending):
            if i and delay:
                await self._sleep(delay)
            try:
                await self.generate_scene_audio(scene_id)
            except AicutError as exc:
                self._record_failure("audio", scene_id, exc)
            finally:
                self._tick()
        if report.total:
            self.save_history()
        return report

    def restore_audio_assets(self) -> int:
        """Reattach stored speech to scenes after reloading a project.

        Returns:
            Number of scenes whose audio was restored.
        """
        if self.assets is None:
            return 0
        restored = 0
        for scene in self.doc.scenes:
            asset = self.assets.get(scene.id)
            if asset is None or asset.type != "audio":
                continue
            path = self.audio_dir / f"{scene.id}.mp3"
            if not path.exists():
                path = self._write_audio(scene.id, asset.blob)
            self.store.dispatch(PatchEntity("scenes", scene.id, {"audioUrl": str(path)}))
            restored += 1
        if restored:
            self.store.dispatch(RebuildTracks())
        logger.info("Restored audio for %d scenes", restored)
        return restored

    async def sync_media_durations(self, tolerance: float = 0.1) -> int:
        """Adopt the real length of generated videos as scene durations.

        Returns:
            Number of scenes whose duration changed.
        """
        if self.media is None:
            raise ValueError("A media cache is required to measure videos")
        changed = 0
        for scene in self.doc.scenes:
            if not scene.video_url:
                continue
            path = await self.media.fetch(scene.video_url)
            measured = await asyncio.to_thread(self._probe, path)
            current = scene.duration.resolve(self.store.default_duration)
            if measured and abs(measured - current) > tolerance:
                self.store.dispatch(SetSceneDuration(scene.id, measured))
                changed += 1
        if changed:
            self.save_history()
        return changed

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def run(
        self,
        prompt: str,
        aspect_ratio: str | None = None,
        generate_assets: bool = True,
    ) -> Skeleton:
        """Metadata, storyboard, then the image waves.

        On a stage failure the state becomes FAILED, the partial document is
        kept in the store and the error is re-raised.
        """
        try:
            await self.stream_metadata(prompt, aspect_ratio)
            await self.stream_storyboard()
            if generate_assets:
                await self.generate_assets()
            else:
                self._set_state(RunState.COMPLETE)
        except Exception:
            self._set_state(RunState.FAILED)
            raise
        return self.doc
