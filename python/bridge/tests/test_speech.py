import json

import httpx
import pytest

from lora_bridge.errors import SpeechUnavailable, TranscriptionUnavailable
from lora_bridge.speech import OpenAISpeechClient


class RequestRecorder:
    def __init__(self):
        self.requests: list[httpx.Request] = []

    def record(self, request: httpx.Request) -> None:
        self.requests.append(request)


async def _client_with(handler, api_key="sk-test") -> OpenAISpeechClient:
    client = OpenAISpeechClient(api_key=api_key, base_url="http://speech.test")
    await client.client.aclose()
    client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=10)
    return client


@pytest.mark.asyncio
async def test_transcribe_posts_multipart_audio():
    recorder = RequestRecorder()

    def handler(request: httpx.Request) -> httpx.Response:
        recorder.record(request)
        if request.url.path == "/v1/audio/transcriptions":
            assert request.headers["authorization"] == "Bearer sk-test"
            assert b'filename="audio.webm"' in request.content
            return httpx.Response(200, json={"text": "run the tests"})
        raise AssertionError(f"Unexpected request: {request.method} {request.url}")

    client = await _client_with(handler)
    text = await client.transcribe(b"\x00" * 100, "audio/webm")

    assert text == "run the tests"
    assert len(recorder.requests) == 1
    await client.close()


@pytest.mark.asyncio
async def test_synthesize_returns_mp3_bytes():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/audio/speech":
            body = json.loads(request.content.decode())
            assert body["input"] == "Done."
            assert body["voice"] == "nova"
            assert body["response_format"] == "mp3"
            return httpx.Response(200, content=b"ID3fake")
        raise AssertionError(f"Unexpected request: {request.method} {request.url}")

    client = await _client_with(handler)
    assert await client.synthesize("Done.") == b"ID3fake"
    await client.close()


@pytest.mark.asyncio
async def test_missing_key_is_a_configuration_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("No request expected without a key")

    client = await _client_with(handler, api_key=None)

    assert client.available is False
    with pytest.raises(TranscriptionUnavailable):
        await client.transcribe(b"audio")
    with pytest.raises(SpeechUnavailable):
        await client.synthesize("hello")
    await client.close()


@pytest.mark.asyncio
async def test_http_errors_propagate():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    client = await _client_with(handler)
    with pytest.raises(httpx.HTTPStatusError):
        await client.transcribe(b"audio")
    await client.close()
