"""Shared test doubles: mocked HTTP transport and a scripted generation client."""

from __future__ import annotations

import json
from typing import Callable

import httpx

from aicut.client import GenerationClient, ImageResult
from aicut.errors import GenerationError
from aicut.models import TaskStatus

TEST_CONFIG = {
    "llm": {"api_key": "llm-key", "base_url": "https://llm.test/v1", "model": "chat-model",
            "max_retries": 0},
    "image": {"api_key": "ark-key", "base_url": "https://ark.test/api/v3", "model": "image-model",
              "max_retries": 0},
    "video": {"api_key": "ark-key", "base_url": "https://ark.test/api/v3", "model": "video-model"},
    "tts": {"app_id": "app", "token": "tok", "url": "https://tts.test/api/v1/tts"},
    "polling": {"interval_seconds": 5, "max_attempts": 60},
    "generation": {"audio_delay_seconds": 1.0},
}


class SleepRecorder:
    """Awaitable stand-in for ``asyncio.sleep`` that returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_client(
    handler: Callable[[httpx.Request], httpx.Response],
    sleep: SleepRecorder | None = None,
    config: dict | None = None,
) -> GenerationClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GenerationClient(config or TEST_CONFIG, http_client=http, sleep=sleep or SleepRecorder())


def sse_response(*fragments: str) -> httpx.Response:
    """A streamed chat completion delivering ``fragments`` in order."""
    lines = []
    for fragment in fragments:
        chunk = {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 0,
            "model": "chat-model",
            "choices": [{"index": 0, "delta": {"content": fragment}, "finish_reason": None}],
        }
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    lines.append("data: [DONE]\n\n")
    return httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content="".join(lines).encode(),
    )


def chunks(text: str, size: int = 7) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


class FakeClient:
    """Scripted ``GenerationClient`` replacement for pipeline tests.

    Chat replies are popped in order; image URLs are derived from the prompt
    order; video tasks follow ``video_statuses`` per task.
    """

    def __init__(self, chat_replies=(), video_statuses=None, failing_prompts=(), speech=b"ID3audio"):
        self.chat_replies = list(chat_replies)
        self.chat_calls: list[list] = []
        self.image_calls: list[tuple] = []
        self.video_calls: list[dict] = []
        self.speech_calls: list[tuple] = []
        self.video_statuses = video_statuses or {}
        self.failing_prompts = tuple(failing_prompts)
        self.speech = speech
        self.polls: dict[str, int] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def chat_stream(self, messages, on_chunk, json_mode=False):
        self.chat_calls.append(list(messages))
        for fragment in chunks(self.chat_replies.pop(0)):
            on_chunk(fragment)

    async def chat_complete(self, messages, json_mode=False):
        self.chat_calls.append(list(messages))
        return self.chat_replies.pop(0)

    async def generate_image(self, prompt, size, reference_images=None):
        self.image_calls.append((prompt, size, list(reference_images or ())))
        if any(marker in prompt for marker in self.failing_prompts):
            raise GenerationError("content rejected", status_code=400)
        return ImageResult(url=f"https://img.test/{len(self.image_calls)}.png")

    async def generate_video(self, prompt, first_frame_image_url, duration=None,
                             aspect_ratio=None, last_frame_image_url=None):
        task_id = f"task-{len(self.video_calls) + 1}"
        self.video_calls.append({
            "task_id": task_id,
            "prompt": prompt,
            "first": first_frame_image_url,
            "last": last_frame_image_url,
            "duration": duration,
        })
        return task_id

    async def query_video_status(self, task_id):
        self.polls[task_id] = self.polls.get(task_id, 0) + 1
        script = self.video_statuses.get(task_id, ["succeeded"])
        status = script[min(self.polls[task_id], len(script)) - 1]
        url = f"https://vid.test/{task_id}.mp4" if status == "succeeded" else None
        error = "moderation" if status == "failed" else None
        return TaskStatus(task_id=task_id, status=status, video_url=url, error=error)

    async def synthesize_speech(self, text, voice_id=None, **kwargs):
        self.speech_calls.append((text, voice_id))
        return self.speech
