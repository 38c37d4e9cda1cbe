"""Tests for HttpTranscriptionClient and its provider dialects."""

from __future__ import annotations

import io
import json
import logging
import wave

import httpx
import pytest

from errors import ModelResolutionError, StreamUnavailableError, TranscriptionError
from models import (
    DiarizedSegment,
    FinalTranscription,
    ModelChoice,
    ModelSelection,
    RetryPolicy,
    TranscriptionRequest,
)
from transcription_client import (
    HttpTranscriptionClient,
    TranscriptionClientOptions,
    _Dialect,
    _pcm_to_wav,
    create_transcription_client,
    generic_stream_url,
    is_diarization_model,
    normalize_segments,
    openai_realtime_url,
    openai_transcriptions_url,
    resolve_model_id,
)

OPENAI_URL = "https://api.openai.com/v1"
GENERIC_URL = "https://asr.example.com/api"


def _client(handler, base_url: str = OPENAI_URL, **kwargs) -> HttpTranscriptionClient:  # noqa: ANN001, ANN003
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    options = TranscriptionClientOptions(base_url=base_url, http_client=http_client, **kwargs)
    return create_transcription_client(options)


def _request(model: ModelSelection | None = None, **kwargs) -> TranscriptionRequest:  # noqa: ANN003
    return TranscriptionRequest(audio=b"\x00\x00" * 1600, model=model or ModelSelection(), **kwargs)


# ---------------------------------------------------------------
# Model resolution
# ---------------------------------------------------------------


def test_model_resolution() -> None:
    assert resolve_model_id(ModelSelection(ModelChoice.FAST)) == "gpt-4o-mini-transcribe"
    assert resolve_model_id(ModelSelection(ModelChoice.ACCURATE)) == "gpt-4o-transcribe"
    meeting = resolve_model_id(ModelSelection(ModelChoice.MEETING))
    assert is_diarization_model(meeting)
    assert resolve_model_id(ModelSelection.pinned("whisper-large-v3")) == "whisper-large-v3"


def test_pinned_without_id_raises() -> None:
    with pytest.raises(ModelResolutionError):
        resolve_model_id(ModelSelection(ModelChoice.PINNED))


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------


def test_pcm_to_wav_header() -> None:
    pcm = b"\x00\x00" * 160
    wav = _pcm_to_wav(pcm, sample_rate=16000)

    assert wav[:4] == b"RIFF"
    assert wav[8:12] == b"WAVE"
    assert len(wav) == 44 + len(pcm)
    with wave.open(io.BytesIO(wav), "rb") as wf:
        assert wf.getframerate() == 16000
        assert wf.getnchannels() == 1
        assert wf.getsampwidth() == 2


def test_normalize_segments_drops_invalid_entries() -> None:
    raw = [
        {"start": 0, "end": 1.5, "text": "Hello", "speaker": "speaker_0", "id": 1},
        {"start": "2", "end": "3", "text": "there"},
        {"start": None, "end": 2, "text": "bad start"},
        {"start": 3, "end": float("inf"), "text": "bad end"},
        {"start": 4, "end": 5, "text": "   "},
        "not a segment",
    ]

    segments = normalize_segments(raw)

    assert segments == (
        DiarizedSegment(start=0.0, end=1.5, text="Hello", speaker="speaker_0", id="1"),
        DiarizedSegment(start=2.0, end=3.0, text="there"),
    )
    assert normalize_segments(None) == ()


@pytest.mark.parametrize(
    ("base_url", "expected"),
    [
        ("https://api.openai.com/v1", "https://api.openai.com/v1/audio/transcriptions"),
        ("https://api.openai.com/v1/", "https://api.openai.com/v1/audio/transcriptions"),
        ("https://api.openai.com", "https://api.openai.com/v1/audio/transcriptions"),
        ("https://api.openai.com/v1/audio", "https://api.openai.com/v1/audio/transcriptions"),
    ],
)
def test_openai_transcriptions_url(base_url: str, expected: str) -> None:
    assert openai_transcriptions_url(base_url) == expected


def test_stream_urls() -> None:
    assert openai_realtime_url("https://api.openai.com/v1") == (
        "wss://api.openai.com/v1/realtime?intent=transcription"
    )
    assert openai_realtime_url("https://api.openai.com") == (
        "wss://api.openai.com/v1/realtime?intent=transcription"
    )
    assert generic_stream_url("http://localhost:8080/asr", "m1") == "ws://localhost:8080/asr/stream?model=m1"


# ---------------------------------------------------------------
# Batch transcription
# ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_openai_multipart_request() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        await request.aread()
        seen.append(request)
        return httpx.Response(200, json={"text": "hello world", "language": "en"})

    client = _client(handler, api_key="sk-test")
    events = await client.transcribe(_request(language="en"))

    assert client.provider == "openai"
    assert events == [FinalTranscription(text="hello world", timestamp=events[0].timestamp, language="en")]
    request = seen[0]
    assert str(request.url) == "https://api.openai.com/v1/audio/transcriptions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert request.headers["Content-Type"].startswith("multipart/form-data")
    body = request.content
    assert b'name="model"' in body
    assert b"gpt-4o-mini-transcribe" in body
    assert b'name="language"' in body
    assert b'filename="audio.wav"' in body
    assert b"RIFF" in body
    assert b"diarized_json" not in body


@pytest.mark.asyncio
async def test_openai_diarization_request_and_segments() -> None:
    seen: list[bytes] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(await request.aread())
        payload = {
            "text": "Hello there. Hi.",
            "segments": [
                {"start": 0, "end": 1, "text": "Hello there.", "speaker": "speaker_0"},
                {"start": 1, "end": 2, "text": "Hi.", "speaker": "speaker_1"},
                {"start": "x", "end": 3, "text": "dropped"},
            ],
        }
        return httpx.Response(200, json=payload)

    client = _client(handler, api_key="sk-test")
    events = await client.transcribe(_request(ModelSelection(ModelChoice.MEETING)))

    assert b"gpt-4o-transcribe-diarize" in seen[0]
    assert b"diarized_json" in seen[0]
    assert b'name="chunking_strategy"' in seen[0]
    final = events[0]
    assert final.text == "Hello there. Hi."
    assert [s.speaker for s in final.segments] == ["speaker_0", "speaker_1"]


@pytest.mark.asyncio
async def test_openai_plain_text_response() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="  plain words \n", headers={"content-type": "text/plain"})

    client = _client(handler, api_key="sk-test")
    events = await client.transcribe(_request())

    assert events[0].text == "plain words"


@pytest.mark.asyncio
async def test_openai_requires_api_key() -> None:
    calls = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"text": "x"})

    client = _client(handler)
    with pytest.raises(TranscriptionError, match="API key is required"):
        await client.transcribe(_request())
    assert calls == 0


@pytest.mark.asyncio
async def test_generic_octet_stream_request() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        await request.aread()
        seen.append(request)
        return httpx.Response(200, json={"text": "generic text"})

    client = _client(handler, base_url=GENERIC_URL + "/")
    request = _request(
        ModelSelection(ModelChoice.ACCURATE),
        language="de",
        silence_removal=True,
        max_latency_hint_ms=250,
    )
    events = await client.transcribe(request)

    assert client.provider == "generic"
    assert events[0].text == "generic text"
    sent = seen[0]
    assert str(sent.url) == "https://asr.example.com/api/transcriptions"
    assert sent.headers["Content-Type"] == "application/octet-stream"
    assert sent.headers["X-Model-Id"] == "gpt-4o-transcribe"
    assert sent.headers["X-Language"] == "de"
    assert sent.headers["X-Silence-Removal"] == "true"
    assert sent.headers["X-Max-Latency-Hint-Ms"] == "250"
    assert "Authorization" not in sent.headers
    assert sent.content == request.audio


def test_dialect_base_is_abstract() -> None:
    client = HttpTranscriptionClient(TranscriptionClientOptions(base_url=GENERIC_URL))
    with pytest.raises(TypeError):
        _Dialect(client)  # type: ignore[abstract]


@pytest.mark.asyncio
async def test_http_error_raises_with_status_and_body() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    client = _client(handler, base_url=GENERIC_URL)
    with pytest.raises(TranscriptionError, match="Transcription failed: 503") as excinfo:
        await client.transcribe(_request())
    assert excinfo.value.status == 503
    assert excinfo.value.body == "overloaded"


# ---------------------------------------------------------------
# Retry helper
# ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_retry_succeeds_after_two_failures() -> None:
    calls = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls <= 2:
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json={"text": "third time"})

    client = _client(handler, base_url=GENERIC_URL, retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=50))
    events = await client.transcribe_with_fallback(_request())

    assert events[0].text == "third time"
    assert calls == 3


@pytest.mark.asyncio
async def test_retry_reraises_original_error() -> None:
    calls = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(500, text=f"failure {calls}")

    client = _client(handler, base_url=GENERIC_URL, retry_policy=RetryPolicy(max_attempts=2, base_delay_ms=50))
    with pytest.raises(TranscriptionError) as excinfo:
        await client.transcribe_with_fallback(_request())

    assert calls == 2
    assert excinfo.value.status == 500
    assert excinfo.value.body == "failure 2"


@pytest.mark.asyncio
async def test_retry_backoff_grows_linearly(caplog: pytest.LogCaptureFixture) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    client = _client(handler, base_url=GENERIC_URL, retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=50))
    with caplog.at_level(logging.WARNING, logger="transcription_client"):
        with pytest.raises(TranscriptionError):
            await client.transcribe_with_fallback(_request())

    retries = [r for r in caplog.records if r.name == "transcription_client" and "retrying" in r.getMessage()]
    assert [r.args[0] for r in retries] == [1, 2]
    assert [r.args[1] for r in retries] == pytest.approx([0.05, 0.10])


def test_retry_policy_validation() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=6)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay_ms=10)


# ---------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_open_stream_uses_realtime_url_and_headers(fake_connection) -> None:  # noqa: ANN001
    opened: list[tuple[str, dict]] = []

    async def factory(url, headers):  # noqa: ANN001, ANN202
        opened.append((url, dict(headers)))
        return fake_connection

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    client = _client(handler, api_key="sk-test", websocket_factory=factory)
    handle = await client.open_stream(_request(language="en"), lambda _e: None)
    await handle.cancel()

    url, headers = opened[0]
    assert url == "wss://api.openai.com/v1/realtime?intent=transcription"
    assert headers == {"Authorization": "Bearer sk-test", "OpenAI-Beta": "realtime=v1"}
    first = json.loads(fake_connection.sent[0])
    assert first["type"] == "transcription_session.update"
    assert first["session"]["input_audio_transcription"] == {
        "model": "gpt-4o-mini-transcribe",
        "language": "en",
    }


@pytest.mark.asyncio
async def test_open_stream_without_key_is_unavailable() -> None:
    async def factory(url, headers):  # noqa: ANN001, ANN202
        raise AssertionError("should not connect")

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    client = _client(handler, websocket_factory=factory)
    with pytest.raises(StreamUnavailableError, match="API key is required"):
        await client.open_stream(_request(), lambda _e: None)


@pytest.mark.asyncio
async def test_open_stream_wraps_connection_errors() -> None:
    async def factory(url, headers):  # noqa: ANN001, ANN202
        raise OSError("connection refused")

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    client = _client(handler, base_url=GENERIC_URL, websocket_factory=factory)
    with pytest.raises(StreamUnavailableError, match="connection refused"):
        await client.open_stream(_request(), lambda _e: None)


@pytest.mark.asyncio
async def test_stream_generic_dialect(fake_connection) -> None:  # noqa: ANN001
    opened: list[str] = []

    async def factory(url, headers):  # noqa: ANN001, ANN202
        opened.append(url)
        return fake_connection

    def respond(conn, frame) -> None:  # noqa: ANN001
        if frame == b"":
            conn.push({"kind": "final", "text": "streamed", "timestamp": 7})
            conn.server_close()

    async def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("batch should not be called")

    fake_connection.responder = respond
    client = _client(handler, base_url=GENERIC_URL, websocket_factory=factory)
    events = []
    await client.stream(_request(), events.append)

    assert opened == ["wss://asr.example.com/api/stream?model=gpt-4o-mini-transcribe"]
    assert events == [FinalTranscription(text="streamed", timestamp=7)]


@pytest.mark.asyncio
async def test_stream_falls_back_to_batch_when_unavailable() -> None:
    async def factory(url, headers):  # noqa: ANN001, ANN202
        raise OSError("no socket")

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"text": "from batch"})

    client = _client(handler, base_url=GENERIC_URL, websocket_factory=factory)
    events = []
    await client.stream(_request(), events.append)

    assert [e.text for e in events] == ["from batch"]


@pytest.mark.asyncio
async def test_stream_falls_back_to_batch_on_protocol_error(fake_connection) -> None:  # noqa: ANN001
    async def factory(url, headers):  # noqa: ANN001, ANN202
        return fake_connection

    def respond(conn, frame) -> None:  # noqa: ANN001
        if isinstance(frame, str) and json.loads(frame)["type"] == "input_audio_buffer.commit":
            conn.push({"type": "error", "message": "server exploded"})

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"text": "recovered"})

    fake_connection.responder = respond
    client = _client(handler, api_key="sk-test", websocket_factory=factory)
    events = []
    await client.stream(TranscriptionRequest(audio=b"\x00" * 9600), events.append)

    assert [e.text for e in events] == ["recovered"]
    assert fake_connection.closed is True


@pytest.mark.asyncio
async def test_close_keeps_injected_http_client_open() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"text": "x"})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    async with HttpTranscriptionClient(
        TranscriptionClientOptions(base_url=GENERIC_URL, http_client=http_client)
    ) as client:
        await client.transcribe(_request())

    assert http_client.is_closed is False
    await http_client.aclose()
