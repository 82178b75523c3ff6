import asyncio
import base64
import json

import httpx
import pytest

from aicut.client import clamp_video_duration
from aicut.errors import GenerationError, TransportError
from aicut.models import AUTO, Fixed, Message

from helpers import SleepRecorder, make_client, sse_response

TASKS_URL = "https://ark.test/api/v3/contents/generations/tasks"


@pytest.mark.parametrize(
    "requested, expected",
    [(3, 4), (4, 4), (12, 12), (13, 12), (-1, -1), (7.6, 8), (7.5, 8), (Fixed(5), 5), (AUTO, -1)],
)
def test_clamp_video_duration(requested, expected):
    assert clamp_video_duration(requested) == expected


def test_clamp_video_duration_custom_bounds():
    assert clamp_video_duration(2, lo=2, hi=10) == 2
    assert clamp_video_duration(15, lo=2, hi=10) == 10


def test_chat_stream_delivers_fragments_in_order():
    requests = []

    def handler(request):
        requests.append(json.loads(request.content))
        return sse_response("Hel", "", "lo ", "world")

    async def run():
        fragments = []
        async with make_client(handler) as client:
            await client.chat_stream([Message("user", "hi")], fragments.append, json_mode=True)
        return fragments

    assert asyncio.run(run()) == ["Hel", "lo ", "world"]
    assert requests[0]["stream"] is True
    assert requests[0]["model"] == "chat-model"
    assert requests[0]["response_format"] == {"type": "json_object"}
    assert requests[0]["messages"] == [{"role": "user", "content": "hi"}]


def test_chat_stream_accepts_async_callback():
    async def run():
        seen = []

        async def on_chunk(fragment):
            seen.append(fragment)

        async with make_client(lambda r: sse_response("a", "b")) as client:
            await client.chat_stream([Message("user", "x")], on_chunk)
        return seen

    assert asyncio.run(run()) == ["a", "b"]


def test_chat_complete_concatenates():
    async def run():
        async with make_client(lambda r: sse_response('{"the', 'me": "Sea"}')) as client:
            return await client.chat_complete([Message("user", "x")])

    assert asyncio.run(run()) == '{"theme": "Sea"}'


def test_chat_stream_error_carries_upstream_message():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

    async def run():
        async with make_client(handler) as client:
            await client.chat_complete([Message("user", "x")])

    with pytest.raises(TransportError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status_code == 401
    assert "Incorrect API key provided" in str(exc_info.value)


def test_generate_image_sends_references_in_order():
    bodies = []

    def handler(request):
        assert request.url.path == "/api/v3/images/generations"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"created": 0, "data": [{"url": "https://img.test/1.png"}]})

    async def run():
        async with make_client(handler) as client:
            return await client.generate_image("A whale", "2560x1440", ["https://a", "https://b"])

    result = asyncio.run(run())
    assert result.url == "https://img.test/1.png"
    assert bodies[0]["image"] == ["https://a", "https://b"]
    assert bodies[0]["size"] == "2560x1440"
    assert bodies[0]["watermark"] is True


def test_generate_image_rejection_raises_generation_error():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "sensitive content"}})

    async def run():
        async with make_client(handler) as client:
            await client.generate_image("x", "1024x1024")

    with pytest.raises(GenerationError) as exc_info:
        asyncio.run(run())
    assert "sensitive content" in str(exc_info.value)


def test_generate_video_builds_two_keyframe_request():
    bodies = []

    def handler(request):
        assert str(request.url) == TASKS_URL
        assert request.headers["Authorization"] == "Bearer ark-key"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "cgt-1"})

    async def run():
        async with make_client(handler) as client:
            return await client.generate_video(
                "The whale sings", "https://img/1.png", duration=5, aspect_ratio="9:16",
                last_frame_image_url="https://img/2.png",
            )

    assert asyncio.run(run()) == "cgt-1"
    content = bodies[0]["content"]
    assert [c.get("role") for c in content] == ["first_frame", "last_frame", None]
    assert content[2] == {"type": "text", "text": "The whale sings"}
    assert bodies[0]["duration"] == 5
    assert bodies[0]["ratio"] == "9:16"


def test_generate_video_requires_first_frame():
    async def run():
        async with make_client(lambda r: httpx.Response(200, json={"id": "x"})) as client:
            await client.generate_video("prompt", "")

    with pytest.raises(ValueError):
        asyncio.run(run())


def test_rate_limit_honours_retry_after():
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(200, json={"id": "cgt-2"}),
    ])
    sleep = SleepRecorder()

    async def run():
        async with make_client(lambda r: next(responses), sleep) as client:
            return await client.generate_video("p", "https://img/1.png")

    assert asyncio.run(run()) == "cgt-2"
    assert sleep.calls == [7.0]


def test_server_errors_back_off_then_raise():
    sleep = SleepRecorder()
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="unavailable")

    async def run():
        async with make_client(handler, sleep) as client:
            await client.query_video_status("cgt-1")

    with pytest.raises(GenerationError) as exc_info:
        asyncio.run(run())
    assert len(calls) == 5
    assert sleep.calls == [1, 2, 4, 8, 16]
    assert exc_info.value.status_code == 503


def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"code": "InvalidParameter", "message": "bad ratio"}})

    async def run():
        async with make_client(handler) as client:
            await client.generate_video("p", "https://img/1.png", aspect_ratio="7:3")

    with pytest.raises(GenerationError) as exc_info:
        asyncio.run(run())
    assert len(calls) == 1
    assert str(exc_info.value) == "bad ratio"
    assert exc_info.value.status_code == 400


def test_timeouts_are_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={"id": "cgt-1", "status": "running"})

    sleep = SleepRecorder()

    async def run():
        async with make_client(handler, sleep) as client:
            return await client.query_video_status("cgt-1")

    status = asyncio.run(run())
    assert status.status == "running"
    assert sleep.calls == [1, 2]


def test_query_video_status_parses_success_and_failure():
    payloads = {
        "ok": {"id": "ok", "status": "succeeded", "content": {"video_url": "https://vid/ok.mp4"}},
        "bad": {"id": "bad", "status": "failed", "error": {"message": "moderation"}},
    }

    def handler(request):
        return httpx.Response(200, json=payloads[request.url.path.rsplit("/", 1)[-1]])

    async def run():
        async with make_client(handler) as client:
            return await client.query_video_status("ok"), await client.query_video_status("bad")

    ok, bad = asyncio.run(run())
    assert ok.is_done and ok.is_success
    assert ok.video_url == "https://vid/ok.mp4"
    assert bad.is_done and not bad.is_success
    assert bad.error == "moderation"


def test_synthesize_speech_decodes_audio():
    bodies = []

    def handler(request):
        assert request.headers["Authorization"] == "Bearer; tok"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"code": 3000, "data": base64.b64encode(b"mp3bytes").decode()})

    async def run():
        async with make_client(handler) as client:
            return await client.synthesize_speech("Hello", "BV700_streaming", speed_ratio=1.2)

    assert asyncio.run(run()) == b"mp3bytes"
    assert bodies[0]["audio"]["voice_type"] == "BV700_streaming"
    assert bodies[0]["audio"]["speed_ratio"] == 1.2
    assert bodies[0]["request"]["text"] == "Hello"


def test_synthesize_speech_error_code():
    def handler(request):
        return httpx.Response(200, json={"code": 3001, "message": "invalid voice"})

    async def run():
        async with make_client(handler) as client:
            await client.synthesize_speech("Hello")

    with pytest.raises(GenerationError, match="invalid voice"):
        asyncio.run(run())


def test_download_writes_file(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b"video-bytes")

    async def run():
        async with make_client(handler) as client:
            return await client.download("https://vid.test/a.mp4", tmp_path / "sub" / "a.mp4")

    path = asyncio.run(run())
    assert path.read_bytes() == b"video-bytes"


def test_download_http_error(tmp_path):
    async def run():
        async with make_client(lambda r: httpx.Response(404)) as client:
            await client.download("https://vid.test/missing.mp4", tmp_path / "a.mp4")

    with pytest.raises(TransportError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status_code == 404
