"""CLI runner for the aicut video studio pipeline.

Usage:
    aicut generate "A lighthouse keeper befriends a whale"
    aicut videos 3
    aicut audio 3
    aicut export 3 --output output/story.mp4
    aicut refine 3 "Make the ending happier"
    aicut series novel.txt --episode 1
    aicut history list
    aicut status 3
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from aicut.config import _DEFAULT_CONFIG, get_section, load_config, require_credentials, resolve_path
from aicut.errors import AicutError, ConfigurationError
from aicut.models import ASPECT_RATIOS, HistoryItem
from aicut.timeline import (
    AUDIO_TRACK_ID,
    TEXT_TRACK_ID,
    VIDEO_TRACK_ID,
    active_clips,
    total_duration,
    track_by_id,
)
from aicut.voices import get_voice_name

console = Console()


def _setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet down HTTP libraries unless debugging
    if not verbose:
        for name in ("httpx", "httpcore", "openai"):
            logging.getLogger(name).setLevel(logging.WARNING)


def _run(coro: Awaitable, interrupted: str = "Interrupted.") -> object:
    """Run a command coroutine, turning known failures into exit codes."""
    try:
        return asyncio.run(coro)
    except FileNotFoundError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        sys.exit(1)
    except AicutError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print(f"\n[yellow]{interrupted}[/yellow]")
        sys.exit(130)


class _Project:
    """Database, stores, client and pipeline for one CLI invocation."""

    def __init__(self, config: dict, conn: sqlite3.Connection, client) -> None:
        from aicut.media import MediaCache
        from aicut.storage import AssetStore, HistoryStore

        self.config = config
        self.conn = conn
        self.client = client
        self.history = HistoryStore(conn)
        self.assets = AssetStore(conn)
        self.media = MediaCache(resolve_path(config, "storage.media_cache_dir"), client)
        self.output_dir = resolve_path(config, "storage.output_dir")

    def pipeline(self, item: HistoryItem | None = None):
        from aicut.document import DocumentStore
        from aicut.orchestrator import Pipeline

        default = get_section(self.config, "generation")["default_duration"]
        store = DocumentStore(default_duration=default)
        if item is not None:
            store.reset(item.skeleton)
        return Pipeline(
            self.client,
            store,
            config=self.config,
            history=self.history,
            assets=self.assets,
            media=self.media,
            output_dir=self.output_dir,
            history_id=item.id if item else None,
            prompt=item.prompt if item else "",
        )

    def load(self, history_id: int) -> HistoryItem:
        item = self.history.get(history_id)
        if item is None:
            raise AicutError(f"No history item with id {history_id}")
        return item


@asynccontextmanager
async def _open_project(config_path: str, *capabilities: str) -> AsyncIterator[_Project]:
    from aicut.client import GenerationClient
    from aicut.storage import open_database

    config = load_config(config_path)
    require_credentials(config, *capabilities)
    conn = open_database(resolve_path(config, "storage.db_path"))
    try:
        async with GenerationClient(config) as client:
            yield _Project(config, conn, client)
    finally:
        conn.close()


def _open_stores(config_path: str):
    from aicut.storage import AssetStore, HistoryStore, open_database

    config = load_config(config_path)
    conn = open_database(resolve_path(config, "storage.db_path"))
    return HistoryStore(conn), AssetStore(conn)


def _open_history(config_path: str):
    return _open_stores(config_path)[0]


def _report_progress(progress: Progress, task_id) -> Callable:
    def update(report) -> None:
        progress.update(task_id, completed=report.completed, total=report.total or None)
    return update


def _print_failures(report) -> None:
    for failure in report.failures:
        console.print(f"  [red]FAILED[/red] {failure}")


@click.group()
@click.option("--config", "-c", default=_DEFAULT_CONFIG, help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: bool) -> None:
    """AI video studio: prompt -> skeleton -> images -> videos -> export."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    _setup_logging(verbose)


@cli.command("generate")
@click.argument("prompt")
@click.option("--aspect-ratio", "-a", type=click.Choice(ASPECT_RATIOS), default=None,
              help="Frame aspect ratio (defaults to generation.aspect_ratio)")
@click.option("--no-assets", is_flag=True, help="Stop after the storyboard")
@click.pass_context
def cmd_generate(ctx: click.Context, prompt: str, aspect_ratio: str | None, no_assets: bool) -> None:
    """Generate a skeleton, storyboard and images for PROMPT."""

    async def run() -> None:
        capabilities = ("llm",) if no_assets else ("llm", "image")
        async with _open_project(ctx.obj["config"], *capabilities) as project:
            pipeline = project.pipeline()

            console.rule("[bold blue]Step 1: Skeleton[/bold blue]")
            await pipeline.stream_metadata(prompt, aspect_ratio)
            console.print(f"Theme: [cyan]{pipeline.doc.theme}[/cyan]")

            console.rule("[bold blue]Step 2: Storyboard[/bold blue]")
            await pipeline.stream_storyboard()
            console.print(f"Scenes: {len(pipeline.doc.scenes)} (history #{pipeline.history_id})")

            if not no_assets:
                console.rule("[bold blue]Step 3: Images[/bold blue]")
                with Progress(
                    TextColumn("[progress.description]{task.description}"),
                    BarColumn(),
                    TaskProgressColumn(),
                    console=console,
                ) as progress:
                    task = progress.add_task("Generating images", total=None)
                    pipeline.on_progress = _report_progress(progress, task)
                    report = await pipeline.generate_assets()
                console.print(f"Images: {report.succeeded}/{report.total} completed")
                _print_failures(report)

            console.rule("[bold green]Done[/bold green]")
            console.print(f"Saved as history #{pipeline.history_id}")

    _run(run(), "Interrupted. The last storyboard was saved to history.")


@cli.command("videos")
@click.argument("history_id", type=int)
@click.option("--regenerate", is_flag=True, help="Also regenerate scenes that already have a video")
@click.pass_context
def cmd_videos(ctx: click.Context, history_id: int, regenerate: bool) -> None:
    """Generate scene videos for a saved project."""

    async def run() -> None:
        async with _open_project(ctx.obj["config"], "video") as project:
            pipeline = project.pipeline(project.load(history_id))
            with Progress(console=console) as progress:
                task = progress.add_task("Generating videos", total=None)
                pipeline.on_progress = _report_progress(progress, task)
                report = await pipeline.generate_scene_videos(regenerate=regenerate)
            console.print(f"Videos: {report.succeeded}/{report.total} completed")
            _print_failures(report)

    _run(run(), "Interrupted. Submitted tasks keep running on the server.")


@cli.command("audio")
@click.argument("history_id", type=int)
@click.option("--scene", "scene_id", default=None, help="Only synthesize this scene")
@click.option("--regenerate", is_flag=True, help="Replace existing audio of --scene")
@click.pass_context
def cmd_audio(ctx: click.Context, history_id: int, scene_id: str | None, regenerate: bool) -> None:
    """Synthesize dialogue audio and fit scene durations to it."""

    async def run() -> None:
        async with _open_project(ctx.obj["config"], "tts") as project:
            pipeline = project.pipeline(project.load(history_id))
            pipeline.restore_audio_assets()
            if scene_id:
                try:
                    path = await pipeline.generate_scene_audio(scene_id, regenerate=regenerate)
                except ValueError as exc:
                    raise AicutError(str(exc)) from exc
                pipeline.save_history()
                console.print(f"Audio for {scene_id}: {path}")
            else:
                report = await pipeline.generate_missing_audio()
                console.print(f"Audio: {report.succeeded}/{report.total} completed")
                _print_failures(report)
            tracks = pipeline.doc.tracks or ()
            console.print(f"Timeline length: {total_duration(tracks):.1f}s")

    _run(run())


@cli.command("export")
@click.argument("history_id", type=int)
@click.option("--output", "-o", default=None, help="Output .mp4 path")
@click.pass_context
def cmd_export(ctx: click.Context, history_id: int, output: str | None) -> None:
    """Export the scene videos of a saved project into one file."""
    from aicut.export import export_video

    async def run() -> None:
        async with _open_project(ctx.obj["config"]) as project:
            pipeline = project.pipeline(project.load(history_id))
            pipeline.restore_audio_assets()
            target = Path(output) if output else project.output_dir / f"export_{history_id}.mp4"
            with Progress(console=console) as progress:
                task = progress.add_task("Exporting", total=100)
                result = await export_video(
                    pipeline.doc,
                    target,
                    fetch=project.media.fetch,
                    progress=lambda pct: progress.update(task, completed=pct),
                )
            console.print(f"[green]Exported:[/green] {result}")

    _run(run())


@cli.command("refine")
@click.argument("history_id", type=int)
@click.argument("message")
@click.pass_context
def cmd_refine(ctx: click.Context, history_id: int, message: str) -> None:
    """Ask the assistant to revise a saved project (or '/image PROMPT')."""
    from aicut.refine import IMAGE_COMMAND, refine

    async def run() -> None:
        capabilities = ("image",) if message.startswith(IMAGE_COMMAND) else ("llm",)
        async with _open_project(ctx.obj["config"], *capabilities) as project:
            pipeline = project.pipeline(project.load(history_id))
            version = pipeline.store.version
            reply = await refine(project.client, pipeline.store, [], message)
            console.print(reply)
            if pipeline.store.version != version:
                pipeline.save_history()
                console.print(f"[green]Project #{history_id} updated[/green]")

    _run(run())


@cli.command("series")
@click.argument("novel_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--episode", "-e", type=int, default=None, help="Episode number to build")
@click.option("--aspect-ratio", "-a", type=click.Choice(ASPECT_RATIOS), default=None)
@click.option("--no-images", is_flag=True, help="Skip bible and scene images")
@click.pass_context
def cmd_series(
    ctx: click.Context,
    novel_file: str,
    episode: int | None,
    aspect_ratio: str | None,
    no_images: bool,
) -> None:
    """Plan a series from a novel and build one episode."""
    from aicut.series import (
        analyze_bible,
        generate_bible_images,
        generate_episode_skeleton,
        segment_episodes,
    )
    from aicut.storage import upsert_history_snapshot

    novel = Path(novel_file).read_text(encoding="utf-8")

    async def run() -> None:
        capabilities = ("llm",) if no_images else ("llm", "image")
        async with _open_project(ctx.obj["config"], *capabilities) as project:
            ratio = aspect_ratio or get_section(project.config, "generation")["aspect_ratio"]

            console.rule("[bold blue]Step 1: Series bible[/bold blue]")
            bible = await analyze_bible(project.client, novel)
            if not no_images:
                failed = await generate_bible_images(project.client, bible, ratio)
                if failed:
                    console.print(f"[yellow]{len(failed)} bible images failed[/yellow]")

            console.rule("[bold blue]Step 2: Episodes[/bold blue]")
            episodes = await segment_episodes(project.client, novel)
            bible.episodes = episodes
            table = Table(title=bible.title or "Episodes")
            table.add_column("#", justify="right")
            table.add_column("Title", style="cyan")
            table.add_column("Summary", max_width=60)
            for ep in episodes:
                table.add_row(str(ep.index), ep.title, ep.summary)
            console.print(table)

            if episode is None:
                return
            chosen = next((ep for ep in episodes if ep.index == episode), None)
            if chosen is None:
                raise AicutError(f"No episode {episode} in the plan")

            console.rule(f"[bold blue]Step 3: Episode {episode}[/bold blue]")
            doc = await generate_episode_skeleton(
                project.client, bible, chosen, ratio, with_images=not no_images,
            )
            prompt = f"{bible.title or Path(novel_file).stem} - Episode {chosen.index}: {chosen.title}"
            saved = upsert_history_snapshot(project.history, None, doc, prompt)
            console.print(f"Episode saved as history #{saved} ({len(doc.scenes)} scenes)")

    _run(run())


@cli.group("history")
def history_group() -> None:
    """Manage saved projects."""


@history_group.command("list")
@click.option("--limit", "-n", type=int, default=20)
@click.pass_context
def cmd_history_list(ctx: click.Context, limit: int) -> None:
    """List saved projects, newest first."""
    from datetime import datetime

    try:
        history = _open_history(ctx.obj["config"])
    except FileNotFoundError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)

    items = history.list(limit)
    if not items:
        console.print("[yellow]No saved projects yet.[/yellow]")
        return
    table = Table(title="History")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Saved")
    table.add_column("Prompt", max_width=50)
    table.add_column("Scenes", justify="center")
    for item in items:
        saved = datetime.fromtimestamp(item.timestamp).strftime("%Y-%m-%d %H:%M")
        table.add_row(str(item.id), saved, item.prompt, str(len(item.skeleton.scenes)))
    console.print(table)


@history_group.command("show")
@click.argument("history_id", type=int)
@click.pass_context
def cmd_history_show(ctx: click.Context, history_id: int) -> None:
    """Print the saved skeleton as JSON."""
    try:
        item = _open_history(ctx.obj["config"]).get(history_id)
    except FileNotFoundError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    if item is None:
        console.print(f"[red]No history item with id {history_id}[/red]")
        sys.exit(1)
    console.print_json(data=item.skeleton.to_dict())


@history_group.command("delete")
@click.argument("history_id", type=int)
@click.pass_context
def cmd_history_delete(ctx: click.Context, history_id: int) -> None:
    """Delete a saved project."""
    try:
        deleted = _open_history(ctx.obj["config"]).delete(history_id)
    except FileNotFoundError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    if not deleted:
        console.print(f"[yellow]No history item with id {history_id}[/yellow]")
        sys.exit(1)
    console.print(f"Deleted #{history_id}")


def _mark(value: str | None) -> str:
    return "[green]yes[/green]" if value else "[dim]-[/dim]"


@cli.command("status")
@click.argument("history_id", type=int)
@click.option("--at", "at_seconds", type=float, default=None,
              help="Also list the clips playing at this time (seconds)")
@click.pass_context
def cmd_status(ctx: click.Context, history_id: int, at_seconds: float | None) -> None:
    """Show characters, scene designs, scenes and timeline of a project."""
    try:
        history, assets = _open_stores(ctx.obj["config"])
        item = history.get(history_id)
        stored_audio = set(assets.list_ids("audio"))
    except FileNotFoundError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    if item is None:
        console.print(f"[red]No history item with id {history_id}[/red]")
        sys.exit(1)

    doc = item.skeleton
    console.print(f"[bold]{doc.theme or 'Untitled'}[/bold] ({doc.aspect_ratio})")
    if doc.story_overview:
        console.print(doc.story_overview)
    console.print()

    for title, entities in (("Characters", doc.characters), ("Scene designs", doc.scene_designs)):
        if not entities:
            continue
        table = Table(title=title, show_lines=True)
        table.add_column("ID", style="cyan")
        table.add_column("Prototype")
        table.add_column("Description", max_width=50)
        table.add_column("Image", justify="center")
        for entity in entities:
            table.add_row(entity.id, entity.prototype, entity.description, _mark(entity.image_url))
        console.print(table)
        console.print()

    if doc.scenes:
        table = Table(title="Scenes", show_lines=True)
        table.add_column("#", justify="right")
        table.add_column("ID", style="cyan")
        table.add_column("Duration", justify="center")
        table.add_column("Voice")
        table.add_column("Dialogue", max_width=40)
        table.add_column("Image", justify="center")
        table.add_column("Video", justify="center")
        table.add_column("Audio", justify="center")
        for i, scene in enumerate(doc.scenes, 1):
            duration = "auto" if scene.duration.is_auto else f"{scene.duration.to_number():g}s"
            table.add_row(
                str(i), scene.id, duration, get_voice_name(scene.voice_actor),
                scene.dialogue_content, _mark(scene.image_url), _mark(scene.video_url),
                _mark(scene.audio_url),
            )
        console.print(table)
        console.print()

    tracks = doc.tracks or ()
    if tracks:
        table = Table(title="Tracks")
        table.add_column("Track", style="cyan")
        table.add_column("Clips", justify="right")
        table.add_column("Ends at", justify="right")
        for name, track_id in (("Video", VIDEO_TRACK_ID), ("Audio", AUDIO_TRACK_ID),
                               ("Text", TEXT_TRACK_ID)):
            track = track_by_id(tracks, track_id)
            if track is None:
                continue
            table.add_row(name, str(len(track.clips)), f"{total_duration([track]):.1f}s")
        console.print(table)
        console.print()

    if at_seconds is not None:
        playing = active_clips(tracks, at_seconds)
        console.print(f"[bold]At {at_seconds:g}s:[/bold]")
        if not playing:
            console.print("  [dim]nothing playing[/dim]")
        for clip in playing:
            console.print(f"  {clip.type}: {clip.id} ({clip.start_time:g}s-{clip.end_time:g}s)")
        console.print()

    audio_saved = sum(1 for s in doc.scenes if s.id in stored_audio)
    console.print("[bold]Summary:[/bold]")
    console.print(f"  Scenes: {len(doc.scenes)}")
    console.print(f"  Videos: {sum(1 for s in doc.scenes if s.video_url)}/{len(doc.scenes)}")
    console.print(f"  Stored audio: {audio_saved}/{len(doc.scenes)}")
    console.print(f"  Timeline: {total_duration(tracks):.1f}s across {len(tracks)} tracks")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
