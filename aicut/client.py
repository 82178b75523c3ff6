"""Async client for the external generation services.

Chat completion and image generation go through OpenAI-compatible endpoints
(``openai.AsyncOpenAI``). Video jobs, text-to-speech and media downloads use
``httpx`` directly with retry on rate limiting and server errors.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import logging
import math
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

import httpx
import openai

from aicut.config import get_section
from aicut.errors import GenerationError, TransportError
from aicut.models import AUTO_DURATION_VALUE, Auto, Fixed, Message, TaskStatus

logger = logging.getLogger(__name__)

# Retry configuration
_MAX_RETRIES = 5
_RETRY_BACKOFF_BASE = 2.0
_DEFAULT_TIMEOUT = 60.0
_DOWNLOAD_TIMEOUT = 300.0

_TTS_SUCCESS_CODE = 3000

ChunkCallback = Callable[[str], "Awaitable[None] | None"]


@dataclass
class ImageResult:
    url: str


def clamp_video_duration(duration: Any, lo: int = 4, hi: int = 12) -> int:
    """Clamp a requested video duration to the range the video model accepts.

    ``AUTO`` (or ``-1``) passes through as ``-1``; anything else is rounded
    half up and clamped to ``[lo, hi]``.

    >>> [clamp_video_duration(d) for d in (3, 4, 12, 13, -1, 7.6)]
    [4, 4, 12, 12, -1, 8]
    """
    if isinstance(duration, Auto):
        return AUTO_DURATION_VALUE
    if isinstance(duration, Fixed):
        duration = duration.seconds
    if duration == AUTO_DURATION_VALUE:
        return AUTO_DURATION_VALUE
    rounded = math.floor(float(duration) + 0.5)
    return max(lo, min(hi, rounded))


def _upstream_message(response: httpx.Response) -> str:
    """Best-effort error message from an upstream error body."""
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if data.get("message"):
            return str(data["message"])
    return response.text


class GenerationClient:
    """Async client for chat, image, video and speech generation.

    Usage::

        async with GenerationClient(config) as client:
            text = await client.chat_complete(messages)
            image = await client.generate_image("A cat on Mars", "2560x1440")
            task_id = await client.generate_video("The cat waves", image.url)
    """

    def __init__(
        self,
        config: dict,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.llm_config = get_section(config, "llm")
        self.image_config = get_section(config, "image")
        self.video_config = get_section(config, "video")
        self.tts_config = get_section(config, "tts")
        self._sleep = sleep
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(_DEFAULT_TIMEOUT, connect=10.0),
        )
        self._llm: openai.AsyncOpenAI | None = None
        self._images: openai.AsyncOpenAI | None = None

    async def __aenter__(self) -> GenerationClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP clients."""
        for sdk in (self._llm, self._images):
            if sdk is not None:
                await sdk.close()
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _openai(self, section: dict) -> openai.AsyncOpenAI:
        return openai.AsyncOpenAI(
            api_key=section["api_key"],
            base_url=section["base_url"],
            max_retries=section.get("max_retries", 2),
            http_client=self._client,
        )

    @property
    def llm(self) -> openai.AsyncOpenAI:
        if self._llm is None:
            self._llm = self._openai(self.llm_config)
        return self._llm

    @property
    def images(self) -> openai.AsyncOpenAI:
        if self._images is None:
            self._images = self._openai(self.image_config)
        return self._images

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        error_cls: type[TransportError] = TransportError,
        **kwargs: Any,
    ) -> httpx.Response:
        """Execute an HTTP request with retry logic for 429, 5xx and timeouts."""
        last_exc: Exception | None = None
        last_status: int | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                last_exc = exc
                wait = _RETRY_BACKOFF_BASE ** attempt
                logger.warning(
                    "Request timeout. Retrying in %.1fs (attempt %d/%d)",
                    wait, attempt + 1, _MAX_RETRIES,
                )
                await self._sleep(wait)
                continue
            except httpx.HTTPError as exc:
                raise TransportError(f"Request to {url} failed: {exc}") from exc

            if response.status_code == 429:
                last_status = 429
                try:
                    retry_after = float(response.headers.get("Retry-After", ""))
                except ValueError:
                    retry_after = _RETRY_BACKOFF_BASE ** attempt
                logger.warning(
                    "Rate limited (429). Retrying in %.1fs (attempt %d/%d)",
                    retry_after, attempt + 1, _MAX_RETRIES,
                )
                await self._sleep(retry_after)
                continue

            if response.status_code >= 500:
                last_status = response.status_code
                wait = _RETRY_BACKOFF_BASE ** attempt
                logger.warning(
                    "Server error %d. Retrying in %.1fs (attempt %d/%d)",
                    response.status_code, wait, attempt + 1, _MAX_RETRIES,
                )
                await self._sleep(wait)
                continue

            if response.status_code >= 400:
                raise error_cls(
                    _upstream_message(response),
                    status_code=response.status_code,
                    body=response.text,
                )
            return response

        raise error_cls(
            f"Max retries ({_MAX_RETRIES}) exceeded",
            status_code=last_status,
        ) from last_exc

    def _video_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.video_config['api_key']}",
            "Content-Type": "application/json",
        }

    def _tasks_url(self) -> str:
        return self.video_config["base_url"].rstrip("/") + "/contents/generations/tasks"

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat_stream(
        self,
        messages: Sequence[Message],
        on_chunk: ChunkCallback,
        json_mode: bool = False,
    ) -> None:
        """Stream a chat completion, calling ``on_chunk`` for each text fragment.

        Fragments are delivered in arrival order; empty fragments are skipped.
        ``on_chunk`` may be a plain function or a coroutine function.

        Raises:
            TransportError: On network failure or a non-2xx response. No
                further callbacks happen after the error.
        """
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        logger.debug("Chat stream: %d messages, json_mode=%s", len(messages), json_mode)
        try:
            stream = await self.llm.chat.completions.create(
                model=self.llm_config["model"],
                messages=[m.to_dict() for m in messages],
                stream=True,
                **kwargs,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if not content:
                    continue
                result = on_chunk(content)
                if inspect.isawaitable(result):
                    await result
        except openai.APIStatusError as exc:
            raise TransportError(
                exc.message or "Failed to fetch from LLM API",
                status_code=exc.status_code,
                body=exc.body,
            ) from exc
        except openai.APIError as exc:
            raise TransportError(f"LLM request failed: {exc}") from exc

    async def chat_complete(self, messages: Sequence[Message], json_mode: bool = False) -> str:
        """Run a chat completion and return the concatenated text."""
        parts: list[str] = []
        await self.chat_stream(messages, parts.append, json_mode=json_mode)
        return "".join(parts)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def generate_image(
        self,
        prompt: str,
        size: str,
        reference_images: Sequence[str] | None = None,
    ) -> ImageResult:
        """Generate one image.

        Args:
            prompt: The image prompt.
            size: ``WxH`` size string.
            reference_images: Ordered reference image URLs, matching the
                ``[Image N]`` numbering used in the prompt.

        Returns:
            ImageResult with the URL of the generated image.

        Raises:
            GenerationError: If the endpoint rejects the request or returns no image.
            TransportError: On network failure.
        """
        extra_body: dict[str, Any] = {"watermark": bool(self.image_config.get("watermark", True))}
        if reference_images:
            extra_body["image"] = list(reference_images)

        logger.info("Generating image: size=%s refs=%d prompt=%r",
                    size, len(reference_images or ()), prompt[:80])
        try:
            response = await self.images.images.generate(
                model=self.image_config["model"],
                prompt=prompt,
                size=size,
                response_format="url",
                extra_body=extra_body,
            )
        except openai.APIStatusError as exc:
            raise GenerationError(
                exc.message or "Failed to generate image",
                status_code=exc.status_code,
                body=exc.body,
            ) from exc
        except openai.APIError as exc:
            raise TransportError(f"Image request failed: {exc}") from exc

        if not response.data or not response.data[0].url:
            raise GenerationError("Image generation returned no image")
        return ImageResult(url=response.data[0].url)

    # ------------------------------------------------------------------
    # Video
    # ------------------------------------------------------------------

    async def generate_video(
        self,
        prompt: str,
        first_frame_image_url: str,
        duration: int | None = None,
        aspect_ratio: str | None = None,
        last_frame_image_url: str | None = None,
    ) -> str:
        """Submit an image-to-video task.

        Args:
            prompt: Motion/dialogue prompt.
            first_frame_image_url: Image the video starts from (required).
            duration: Requested seconds, already clamped; ``-1`` lets the model decide.
            aspect_ratio: Output aspect ratio, e.g. "16:9".
            last_frame_image_url: Optional image the video should end on.

        Returns:
            The task id for polling.

        Raises:
            ValueError: If no first frame is given.
            GenerationError: If the endpoint rejects the task.
        """
        if not first_frame_image_url:
            raise ValueError("first_frame_image_url is required for image-to-video generation")

        content: list[dict[str, Any]] = [
            {"type": "image_url", "image_url": {"url": first_frame_image_url}, "role": "first_frame"},
        ]
        if last_frame_image_url:
            content.append(
                {"type": "image_url", "image_url": {"url": last_frame_image_url}, "role": "last_frame"},
            )
        if prompt:
            content.append({"type": "text", "text": prompt})

        body: dict[str, Any] = {"model": self.video_config["model"], "content": content}
        if duration is not None:
            body["duration"] = duration
        if aspect_ratio:
            body["ratio"] = aspect_ratio

        logger.info("Creating video task: prompt=%r, last_frame=%s, duration=%s",
                    prompt[:80], bool(last_frame_image_url), duration)
        response = await self._request_with_retry(
            "POST", self._tasks_url(), GenerationError,
            headers=self._video_headers(), json=body,
        )
        data = response.json()
        task_id = data.get("id") or (data.get("data") or {}).get("id")
        if not task_id:
            raise GenerationError(f"Could not extract task id from response: {data}", body=data)
        logger.info("Video task created: %s", task_id)
        return task_id

    async def query_video_status(self, task_id: str) -> TaskStatus:
        """Fetch the current status of a video task."""
        response = await self._request_with_retry(
            "GET", f"{self._tasks_url()}/{task_id}", GenerationError,
            headers=self._video_headers(),
        )
        data = response.json()
        content = data.get("content")
        video_url = content.get("video_url") if isinstance(content, dict) else None

        error: str | None = None
        err = data.get("error")
        if isinstance(err, dict):
            error = err.get("message")
        elif isinstance(err, str) and err:
            error = err

        return TaskStatus(
            task_id=data.get("id") or task_id,
            status=data.get("status", "unknown"),
            video_url=video_url or data.get("video_url"),
            error=error,
        )

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------

    async def synthesize_speech(
        self,
        text: str,
        voice_id: str | None = None,
        speed_ratio: float = 1.0,
        pitch_ratio: float = 1.0,
        volume_ratio: float = 1.0,
    ) -> bytes:
        """Synthesize speech and return MP3 bytes.

        Raises:
            ValueError: If ``text`` is empty.
            GenerationError: If the service reports an error or returns no audio.
        """
        if not text:
            raise ValueError("Text is required")

        cfg = self.tts_config
        body = {
            "app": {"appid": cfg["app_id"], "token": cfg["token"], "cluster": cfg["cluster"]},
            "user": {"uid": "aicut"},
            "audio": {
                "voice_type": voice_id or cfg["default_voice"],
                "encoding": "mp3",
                "speed_ratio": speed_ratio,
                "volume_ratio": volume_ratio,
                "pitch_ratio": pitch_ratio,
            },
            "request": {
                "reqid": str(uuid.uuid4()),
                "text": text,
                "text_type": "plain",
                "operation": "query",
            },
        }
        headers = {
            "Authorization": f"Bearer; {cfg['token']}",
            "Content-Type": "application/json",
        }

        logger.info("Synthesizing speech: voice=%s text=%r", body["audio"]["voice_type"], text[:60])
        response = await self._request_with_retry(
            "POST", cfg["url"], GenerationError, headers=headers, json=body,
        )
        data = response.json()
        audio = data.get("data")
        if data.get("code") != _TTS_SUCCESS_CODE and not audio:
            raise GenerationError(
                f"TTS error (code={data.get('code')}): {data.get('message', data)}",
                body=data,
            )
        if not audio:
            raise GenerationError("No audio data received", body=data)
        return base64.b64decode(audio)

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def download(self, url: str, dest: str | Path) -> Path:
        """Download a file from a URL to a local path.

        Raises:
            TransportError: On download errors.
        """
        output = Path(dest)
        output.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Downloading %s -> %s", url, output)
        try:
            async with self._client.stream("GET", url, timeout=_DOWNLOAD_TIMEOUT) as response:
                if response.status_code >= 400:
                    raise TransportError(
                        f"Download failed for {url}: HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                with open(output, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=8192):
                        f.write(chunk)
        except httpx.HTTPError as exc:
            raise TransportError(f"Download failed for {url}: {exc}") from exc

        logger.info("Downloaded: %s (%.1f KB)", output, output.stat().st_size / 1024)
        return output
