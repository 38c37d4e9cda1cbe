"""Transcription client over batch HTTP and duplex WebSocket transports.

The provider dialect is chosen once from ``base_url``: OpenAI hosts get the
multipart WAV upload and the realtime streaming protocol, every other host gets
the generic octet-stream upload and the generic streaming protocol. Callers
only ever see ``transcribe``, ``stream``, ``open_stream`` and
``transcribe_with_fallback``.
"""

from __future__ import annotations

import io
import json
import logging
import math
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_incrementing
from websockets.asyncio.client import connect

from errors import ModelResolutionError, StreamProtocolError, StreamUnavailableError, TranscriptionError
from interfaces import EventCallback, StreamHandle, WebSocketConnection, WebSocketFactory
from limits import MAX_UPLOAD_BYTES, exceeds_upload_limit
from models import (
    DEFAULT_BATCH_SAMPLE_RATE,
    DEFAULT_STREAMING_SAMPLE_RATE,
    DiarizedSegment,
    FinalTranscription,
    ModelChoice,
    ModelSelection,
    RetryPolicy,
    TranscriptionEvent,
    TranscriptionRequest,
    now_ms,
)
from stream_protocols import GenericStream, RealtimeStream

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENAI_HOST = "api.openai.com"

MODEL_IDS = {
    ModelChoice.FAST: "gpt-4o-mini-transcribe",
    ModelChoice.ACCURATE: "gpt-4o-transcribe",
    ModelChoice.MEETING: "gpt-4o-transcribe-diarize",
}


def resolve_model_id(selection: ModelSelection) -> str:
    if selection.selection == ModelChoice.PINNED:
        if not selection.pinned_model_id:
            raise ModelResolutionError("Pinned model selection requires pinned_model_id")
        return selection.pinned_model_id
    return MODEL_IDS[ModelChoice(selection.selection)]


def is_diarization_model(model_id: str) -> bool:
    return "diarize" in model_id.lower()


def _pcm_to_wav(
    pcm: bytes,
    sample_rate: int = DEFAULT_BATCH_SAMPLE_RATE,
    channels: int = 1,
    sample_width: int = 2,
) -> bytes:
    """Wrap raw PCM bytes in a 44-byte RIFF/WAVE header."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def normalize_segments(raw_segments: Any) -> tuple[DiarizedSegment, ...]:
    """Keep segments with finite ``start``/``end`` and non-empty text; drop the rest."""
    if not isinstance(raw_segments, list):
        return ()
    segments: list[DiarizedSegment] = []
    for raw in raw_segments:
        if not isinstance(raw, dict):
            continue
        start = _finite_number(raw.get("start"))
        end = _finite_number(raw.get("end"))
        text = raw.get("text")
        if start is None or end is None or not isinstance(text, str) or not text.strip():
            continue
        speaker = raw.get("speaker")
        segment_id = raw.get("id")
        segments.append(
            DiarizedSegment(
                start=start,
                end=end,
                text=text,
                speaker=str(speaker) if speaker is not None else None,
                id=str(segment_id) if segment_id is not None else None,
            )
        )
    return tuple(segments)


def _is_openai_url(base_url: str) -> bool:
    return OPENAI_HOST in (urlsplit(base_url).hostname or "")


def _path_segments(path: str) -> list[str]:
    return [segment for segment in path.split("/") if segment]


def openai_transcriptions_url(base_url: str) -> str:
    parts = urlsplit(base_url)
    path = parts.path.rstrip("/")
    segments = _path_segments(path)
    if segments and segments[-1] == "audio":
        path = f"{path}/transcriptions"
    elif "v1" in segments:
        path = f"{path}/audio/transcriptions"
    else:
        path = f"{path}/v1/audio/transcriptions"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def _websocket_scheme(scheme: str) -> str:
    return {"https": "wss", "http": "ws"}.get(scheme, scheme)


def openai_realtime_url(base_url: str) -> str:
    parts = urlsplit(base_url)
    segments = _path_segments(parts.path)
    if "v1" in segments:
        segments = segments[: segments.index("v1") + 1]
    else:
        segments.append("v1")
    path = "/" + "/".join(segments + ["realtime"])
    query = urlencode({"intent": "transcription"})
    return urlunsplit((_websocket_scheme(parts.scheme), parts.netloc, path, query, ""))


def generic_stream_url(base_url: str, model_id: str) -> str:
    parts = urlsplit(base_url)
    path = parts.path.rstrip("/") + "/stream"
    query = urlencode({"model": model_id})
    return urlunsplit((_websocket_scheme(parts.scheme), parts.netloc, path, query, ""))


async def connect_websocket(url: str, headers: Mapping[str, str]) -> WebSocketConnection:
    return await connect(url, additional_headers=dict(headers))


@dataclass
class TranscriptionClientOptions:
    base_url: str = DEFAULT_OPENAI_BASE_URL
    api_key: Optional[str] = None
    timeout: float = 60.0
    realtime_sample_rate: int = DEFAULT_STREAMING_SAMPLE_RATE
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    http_client: Optional[httpx.AsyncClient] = None
    websocket_factory: WebSocketFactory = connect_websocket


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    wait_s = state.next_action.sleep if state.next_action else None
    logger.warning(
        "transcription retrying (attempt=%s, wait_s=%s, error=%s)",
        state.attempt_number,
        wait_s,
        exc,
    )


class _Dialect(ABC):
    """Provider-specific framing for one transcription service."""

    name = "dialect"

    def __init__(self, client: "HttpTranscriptionClient") -> None:
        self.client = client
        self.options = client.options
        self.base_url = client.base_url

    @abstractmethod
    async def transcribe(self, request: TranscriptionRequest, model_id: str) -> list[TranscriptionEvent]:
        """Run one batch call and normalise the response."""

    @abstractmethod
    def stream_target(self, model_id: str) -> tuple[str, dict[str, str]]:
        """WebSocket URL and headers for a streaming session."""

    @abstractmethod
    async def start_stream(
        self,
        connection: WebSocketConnection,
        request: TranscriptionRequest,
        model_id: str,
        on_event: EventCallback,
    ) -> StreamHandle:
        """Wrap an open connection in the dialect's stream protocol."""


class OpenAIDialect(_Dialect):
    """Multipart WAV uploads and the realtime transcription protocol."""

    name = "openai"

    async def transcribe(self, request: TranscriptionRequest, model_id: str) -> list[TranscriptionEvent]:
        if not self.options.api_key:
            raise TranscriptionError("OpenAI API key is required for transcription.")

        wav = _pcm_to_wav(request.audio, request.sample_rate or DEFAULT_BATCH_SAMPLE_RATE)
        if exceeds_upload_limit(len(wav)):
            logger.warning(
                "transcription upload exceeds provider limit (bytes=%s, limit=%s)",
                len(wav),
                MAX_UPLOAD_BYTES,
            )
        data = {"model": model_id}
        if request.language:
            data["language"] = request.language
        if is_diarization_model(model_id):
            data["response_format"] = "diarized_json"
            data["chunking_strategy"] = "auto"

        response = await self.client.post(
            openai_transcriptions_url(self.base_url),
            headers={"Authorization": f"Bearer {self.options.api_key}"},
            files={"file": ("audio.wav", wav, "audio/wav")},
            data=data,
        )
        text, segments, language = self._parse_response(response)
        return [
            FinalTranscription(
                text=text,
                timestamp=now_ms(),
                language=language or request.language,
                segments=segments,
            )
        ]

    def _parse_response(
        self,
        response: httpx.Response,
    ) -> tuple[str, tuple[DiarizedSegment, ...], Optional[str]]:
        content_type = response.headers.get("content-type", "")
        if "json" not in content_type and not response.text.lstrip().startswith("{"):
            return response.text.strip(), (), None
        try:
            payload = response.json()
        except json.JSONDecodeError:
            return response.text.strip(), (), None
        if not isinstance(payload, dict):
            return "", (), None
        text = payload.get("text")
        language = payload.get("language")
        return (
            text if isinstance(text, str) else "",
            normalize_segments(payload.get("segments")),
            language if isinstance(language, str) else None,
        )

    def stream_target(self, model_id: str) -> tuple[str, dict[str, str]]:
        if not self.options.api_key:
            raise StreamUnavailableError("OpenAI API key is required for realtime transcription.")
        headers = {
            "Authorization": f"Bearer {self.options.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        return openai_realtime_url(self.base_url), headers

    async def start_stream(
        self,
        connection: WebSocketConnection,
        request: TranscriptionRequest,
        model_id: str,
        on_event: EventCallback,
    ) -> StreamHandle:
        stream = RealtimeStream(
            connection,
            on_event,
            model_id,
            language=request.language,
            sample_rate=request.sample_rate or self.options.realtime_sample_rate,
        )
        try:
            await stream.configure()
        except Exception as exc:
            await stream.cancel()
            raise StreamUnavailableError(f"Could not configure realtime session: {exc}") from exc
        stream.start()
        return stream


class GenericDialect(_Dialect):
    """Octet-stream uploads with metadata headers and the generic stream protocol."""

    name = "generic"

    async def transcribe(self, request: TranscriptionRequest, model_id: str) -> list[TranscriptionEvent]:
        headers = {
            "Content-Type": "application/octet-stream",
            "X-Model-Id": model_id,
        }
        headers.update(self._auth_headers())
        if request.language:
            headers["X-Language"] = request.language
        if request.silence_removal is not None:
            headers["X-Silence-Removal"] = "true" if request.silence_removal else "false"
        if request.max_latency_hint_ms is not None:
            headers["X-Max-Latency-Hint-Ms"] = str(request.max_latency_hint_ms)

        response = await self.client.post(
            f"{self.base_url}/transcriptions",
            headers=headers,
            content=request.audio,
        )
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise TranscriptionError(
                "Transcription response is not JSON",
                status=response.status_code,
                body=response.text,
            ) from exc
        text = payload.get("text") if isinstance(payload, dict) else None
        return [FinalTranscription(text=text if isinstance(text, str) else "", timestamp=now_ms())]

    def _auth_headers(self) -> dict[str, str]:
        if not self.options.api_key:
            return {}
        return {"Authorization": f"Bearer {self.options.api_key}"}

    def stream_target(self, model_id: str) -> tuple[str, dict[str, str]]:
        return generic_stream_url(self.base_url, model_id), self._auth_headers()

    async def start_stream(
        self,
        connection: WebSocketConnection,
        request: TranscriptionRequest,
        model_id: str,
        on_event: EventCallback,
    ) -> StreamHandle:
        stream = GenericStream(connection, on_event)
        stream.start()
        return stream


class HttpTranscriptionClient:
    """Batch and streaming transcription against one configured provider."""

    def __init__(self, options: TranscriptionClientOptions) -> None:
        self.options = options
        self.base_url = options.base_url.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = options.http_client
        self._owns_client = options.http_client is None
        dialect_cls = OpenAIDialect if _is_openai_url(self.base_url) else GenericDialect
        self.dialect: _Dialect = dialect_cls(self)

    @property
    def provider(self) -> str:
        return self.dialect.name

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.options.timeout))
        return self._client

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        client = self._get_client()
        try:
            response = await client.post(url, **kwargs)
        except httpx.HTTPError as exc:
            raise TranscriptionError(f"Transcription request failed: {exc}") from exc
        if not response.is_success:
            logger.debug("transcription http error (status=%s, url=%s)", response.status_code, url)
            raise TranscriptionError(
                f"Transcription failed: {response.status_code}",
                status=response.status_code,
                body=response.text,
            )
        return response

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def transcribe(self, request: TranscriptionRequest) -> list[TranscriptionEvent]:
        model_id = resolve_model_id(request.model)
        return await self.dialect.transcribe(request, model_id)

    async def transcribe_with_fallback(
        self,
        request: TranscriptionRequest,
    ) -> list[TranscriptionEvent]:
        """Retry ``transcribe`` with linear backoff; re-raise the last error."""
        policy = self.options.retry_policy
        step_s = policy.base_delay_ms / 1000
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_incrementing(start=step_s, increment=step_s),
            retry=retry_if_exception_type(TranscriptionError),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.transcribe(request)
        raise TranscriptionError("Transcription failed")  # pragma: no cover

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def open_stream(
        self,
        request: TranscriptionRequest,
        on_event: EventCallback,
    ) -> StreamHandle:
        model_id = resolve_model_id(request.model)
        url, headers = self.dialect.stream_target(model_id)
        logger.debug("opening %s stream (url=%s, model=%s)", self.provider, url, model_id)
        try:
            connection = await self.options.websocket_factory(url, headers)
        except Exception as exc:
            raise StreamUnavailableError(f"Could not open transcription stream: {exc}") from exc
        return await self.dialect.start_stream(connection, request, model_id, on_event)

    async def stream(self, request: TranscriptionRequest, on_event: EventCallback) -> None:
        """Stream ``request.audio``; fall back to one batch call if streaming fails."""
        try:
            handle = await self.open_stream(request, on_event)
            try:
                if request.audio:
                    handle.send_audio(request.audio)
                await handle.finalize()
            except Exception:
                await handle.cancel()
                raise
        except (StreamUnavailableError, StreamProtocolError) as exc:
            logger.warning("streaming failed, falling back to batch transcription: %s", exc)
            for event in await self.transcribe(request):
                on_event(event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "HttpTranscriptionClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def create_transcription_client(
    options: TranscriptionClientOptions,
) -> HttpTranscriptionClient:
    return HttpTranscriptionClient(options)
