"""Local media cache and ffprobe helpers."""

from __future__ import annotations

import hashlib
import logging
import subprocess
from pathlib import Path
from urllib.parse import urlparse

from aicut.client import GenerationClient

logger = logging.getLogger(__name__)


def _suffix(url: str) -> str:
    suffix = Path(urlparse(url).path).suffix
    return suffix if 0 < len(suffix) <= 5 else ""


def local_path(url: str) -> Path | None:
    """Path for ``file://`` URLs and plain filesystem paths, else None."""
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(parsed.path)
    if parsed.scheme in ("http", "https"):
        return None
    return Path(url)


class MediaCache:
    """Content-addressed on-disk cache of remote media.

    Generated media URLs are immutable, so an entry is keyed by the SHA-1 of
    its URL and never revalidated.
    """

    def __init__(self, directory: str | Path, client: GenerationClient) -> None:
        self.directory = Path(directory)
        self.client = client

    def path_for(self, url: str) -> Path:
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}{_suffix(url)}"

    async def fetch(self, url: str) -> Path:
        """Return a local file for ``url``, downloading it on first use."""
        local = local_path(url)
        if local is not None:
            if not local.exists():
                raise FileNotFoundError(f"Media not found: {local}")
            return local

        target = self.path_for(url)
        if target.exists() and target.stat().st_size > 0:
            logger.debug("Media cache hit: %s", url)
            return target

        partial = target.with_name(target.name + ".part")
        await self.client.download(url, partial)
        partial.replace(target)
        return target


def probe_duration(path: str | Path) -> float | None:
    """Media duration in seconds via ffprobe, or None if it cannot be read."""
    try:
        result = subprocess.run(
            [
                "ffprobe", "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(path),
            ],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        logger.warning("ffprobe not found on PATH")
        return None
    try:
        return float(result.stdout.strip())
    except ValueError:
        logger.warning("Could not read duration of %s: %s", path, result.stderr.strip()[-200:])
        return None


def has_audio_stream(path: str | Path) -> bool:
    """Whether the file carries at least one audio stream."""
    try:
        result = subprocess.run(
            [
                "ffprobe", "-v", "error",
                "-select_streams", "a",
                "-show_entries", "stream=index",
                "-of", "csv=p=0",
                str(path),
            ],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return False
    return result.returncode == 0 and bool(result.stdout.strip())
