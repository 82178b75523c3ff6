"""Export compositor: render the finished timeline into one video file.

Uses FFmpeg. Every scene video is letterboxed onto a fixed canvas at 30 fps
with its audio resampled onto a shared stereo bus, the segments are
concatenated into a Matroska intermediate, and that is transcoded to MP4.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Awaitable, Callable

from aicut.aspect_ratio import canvas_size
from aicut.errors import AicutError, ExportError
from aicut.media import has_audio_stream
from aicut.models import Scene, Skeleton

logger = logging.getLogger(__name__)

FPS = 30
SAMPLE_RATE = 44100

EXPORT_FAILED_MESSAGE = (
    "Export failed; make sure every video is generated and reachable, then retry "
    "(reinstall/reload ffmpeg if the transcoding engine is unavailable)"
)

Fetch = Callable[[str], Awaitable[Path]]
Progress = Callable[[int], None]


def _run_ffmpeg(cmd: list[str], what: str) -> None:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise RuntimeError("ffmpeg not found on PATH") from exc
    if result.returncode != 0:
        raise RuntimeError(f"FFmpeg failed for {what}: {result.stderr[-500:]}")


def segment_command(
    video: Path,
    audio: Path | None,
    output: Path,
    width: int,
    height: int,
) -> list[str]:
    """FFmpeg command compositing one scene onto the export canvas.

    ``audio`` is the scene's own track (narration or the clip's sound); when
    it is None a silent track is generated so every segment has audio.
    """
    if audio is None:
        audio_input = ["-f", "lavfi", "-i", f"anullsrc=channel_layout=stereo:sample_rate={SAMPLE_RATE}"]
    else:
        audio_input = ["-i", str(audio)]

    vf = (
        f"[0:v]scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:black,setsar=1,fps={FPS}[v]"
    )
    af = f"[1:a]aresample={SAMPLE_RATE},aformat=channel_layouts=stereo,apad[a]"

    return [
        "ffmpeg", "-y",
        "-i", str(video),
        *audio_input,
        "-filter_complex", f"{vf};{af}",
        "-map", "[v]",
        "-map", "[a]",
        "-shortest",
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-ar", str(SAMPLE_RATE),
        "-ac", "2",
        str(output),
    ]


async def _segment_audio(scene: Scene, video: Path, fetch: Fetch) -> Path | None:
    if scene.audio_url:
        return await fetch(scene.audio_url)
    if await asyncio.to_thread(has_audio_stream, video):
        return video
    return None


async def export_video(
    doc: Skeleton,
    output_path: str | Path,
    *,
    fetch: Fetch,
    progress: Progress | None = None,
) -> Path:
    """Export every scene with a video, in scene order, to ``output_path``.

    Args:
        doc: The project document.
        output_path: Target ``.mp4`` path.
        fetch: Coroutine returning a local path for a media URL (usually
            ``MediaCache.fetch``).
        progress: Called with a percentage: up to 80 while compositing
            scenes, 90 after concatenation, 100 when done.

    Returns:
        The written file. If MP4 transcoding fails this is the Matroska
        intermediate placed next to ``output_path``.

    Raises:
        ExportError: If no scene has a video or any step fails.
    """
    scenes = [s for s in doc.scenes if s.video_url]
    if not scenes:
        raise ExportError("No videos to export; generate scene videos first")

    report = progress or (lambda pct: None)
    width, height = canvas_size(doc.aspect_ratio)
    output = Path(output_path)

    tmpdir = tempfile.mkdtemp(prefix="aicut_export_")
    try:
        return await _export_inner(scenes, output, width, height, fetch, report, Path(tmpdir))
    except ExportError:
        raise
    except (AicutError, RuntimeError, OSError) as exc:
        logger.error("Export failed: %s", exc)
        raise ExportError(EXPORT_FAILED_MESSAGE) from exc
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


async def _export_inner(
    scenes: list[Scene],
    output: Path,
    width: int,
    height: int,
    fetch: Fetch,
    report: Progress,
    tmp: Path,
) -> Path:
    # Step 1: composite each scene onto the canvas
    segments: list[Path] = []
    total = len(scenes)
    for i, scene in enumerate(scenes):
        video = await fetch(scene.video_url)
        audio = await _segment_audio(scene, video, fetch)
        segment = tmp / f"seg_{i:03d}.mkv"
        logger.info("Compositing scene %s (%d/%d)", scene.id, i + 1, total)
        await asyncio.to_thread(
            _run_ffmpeg, segment_command(video, audio, segment, width, height), f"scene {scene.id}",
        )
        segments.append(segment)
        report(round((i + 1) / total * 80))

    # Step 2: concatenate into the native intermediate
    concat_list = tmp / "concat.txt"
    with open(concat_list, "w", encoding="utf-8") as f:
        for seg in segments:
            f.write(f"file '{seg}'\n")

    native = tmp / "export.mkv"
    await asyncio.to_thread(
        _run_ffmpeg,
        ["ffmpeg", "-y", "-f", "concat", "-safe", "0", "-i", str(concat_list), "-c", "copy", str(native)],
        "concat",
    )
    report(90)

    # Step 3: transcode to MP4, falling back to the native container
    output.parent.mkdir(parents=True, exist_ok=True)
    try:
        await asyncio.to_thread(
            _run_ffmpeg,
            [
                "ffmpeg", "-y",
                "-i", str(native),
                "-c:v", "libx264",
                "-preset", "ultrafast",
                "-pix_fmt", "yuv420p",
                "-c:a", "aac",
                "-movflags", "+faststart",
                str(output),
            ],
            "transcode",
        )
        result = output
    except RuntimeError as exc:
        result = output.with_suffix(".mkv")
        logger.warning("MP4 transcode failed, keeping Matroska output %s: %s", result, exc)
        shutil.copyfile(native, result)

    report(100)
    logger.info("Exported: %s", result)
    return result
