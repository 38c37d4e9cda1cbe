"""Duplex streaming protocols spoken over a WebSocket connection.

Two dialects share one shape: audio goes out through an ordered send queue
drained by a writer task, and a reader task turns incoming frames into
``TranscriptionEvent`` callbacks. ``finalize()`` resolves when the server
signals completion; ``cancel()`` closes the socket without waiting for it.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

from websockets.exceptions import ConnectionClosed

from errors import StreamProtocolError
from interfaces import EventCallback, WebSocketConnection
from limits import PCM_BYTES_PER_SAMPLE
from models import (
    DEFAULT_STREAMING_SAMPLE_RATE,
    FinalTranscription,
    PartialTranscription,
    TranscriptionEvent,
    now_ms,
)

logger = logging.getLogger(__name__)
MIN_COMMIT_MS = 100

REALTIME_VAD_THRESHOLD = 0.5
REALTIME_VAD_PREFIX_PADDING_MS = 300
REALTIME_VAD_SILENCE_DURATION_MS = 600

_DELTA_EVENT = "conversation.item.input_audio_transcription.delta"
_COMPLETED_EVENT = "conversation.item.input_audio_transcription.completed"

Frame = Union[str, bytes]


def min_commit_bytes(sample_rate: int) -> int:
    """Smallest mono PCM16 buffer the realtime protocol accepts on commit."""
    return sample_rate * PCM_BYTES_PER_SAMPLE * MIN_COMMIT_MS // 1000


def _decode_json(frame: Any) -> Optional[dict]:
    if isinstance(frame, (bytes, bytearray)):
        try:
            frame = bytes(frame).decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(frame, str):
        return None
    try:
        payload = json.loads(frame)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


class _DuplexStream(ABC):
    protocol = "duplex"

    def __init__(self, connection: WebSocketConnection, on_event: EventCallback) -> None:
        self._connection = connection
        self._on_event = on_event
        self._outgoing: asyncio.Queue[Frame] = asyncio.Queue()
        self._done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._reader: Optional[asyncio.Task[None]] = None
        self._writer: Optional[asyncio.Task[None]] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())
        self._writer = asyncio.create_task(self._write_loop())

    def send_audio(self, data: bytes) -> None:
        if self._closed or self._failed():
            return
        self._enqueue_audio(bytes(data))

    async def finalize(self) -> None:
        try:
            if not self._closed:
                await self._before_finalize()
                await self._outgoing.join()
                await self._await_completion()
        finally:
            await self._close()

    async def cancel(self) -> None:
        if self._closed:
            return
        logger.debug("%s stream cancelled", self.protocol)
        # An in-flight finalize() returns quietly instead of waiting for the server.
        self._resolve()
        await self._close()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _enqueue_audio(self, data: bytes) -> None:
        """Queue one audio frame in the dialect's wire format."""

    async def _before_finalize(self) -> None:
        return None

    async def _await_completion(self) -> None:
        await asyncio.shield(self._done)

    @abstractmethod
    def _handle_frame(self, frame: Frame) -> None:
        """Turn one incoming frame into events or a completion."""

    def _handle_close(self) -> None:
        self._resolve()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _emit(self, event: TranscriptionEvent) -> None:
        try:
            self._on_event(event)
        except Exception:
            logger.exception("%s stream listener failed", self.protocol)

    def _resolve(self) -> None:
        if not self._done.done():
            self._done.set_result(None)

    def _failed(self) -> bool:
        return self._done.done() and not self._done.cancelled() and self._done.exception() is not None

    def _reject(self, message: str) -> None:
        if not self._done.done():
            self._done.set_exception(StreamProtocolError(message))

    async def _read_loop(self) -> None:
        try:
            async for frame in self._connection:
                self._handle_frame(frame)
        except ConnectionClosed as exc:
            logger.debug("%s stream connection closed: %s", self.protocol, exc)
        except OSError as exc:
            self._reject(f"{self.protocol} stream socket error: {exc}")
        if not self._closed:
            self._handle_close()

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outgoing.get()
            try:
                if not self._failed():
                    await self._connection.send(frame)
            except Exception as exc:
                self._reject(f"{self.protocol} stream send failed: {exc}")
            finally:
                self._outgoing.task_done()

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        tasks = [task for task in (self._reader, self._writer) if task is not None and task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        while not self._outgoing.empty():
            self._outgoing.get_nowait()
            self._outgoing.task_done()
        if self._done.done() and not self._done.cancelled():
            # Mark a stored error as retrieved when nobody awaited it.
            self._done.exception()
        try:
            await self._connection.close()
        except (ConnectionClosed, OSError) as exc:
            logger.debug("%s stream close failed: %s", self.protocol, exc)


class RealtimeStream(_DuplexStream):
    """Realtime transcription dialect: JSON control messages, base64 audio."""

    protocol = "realtime"

    def __init__(
        self,
        connection: WebSocketConnection,
        on_event: EventCallback,
        model_id: str,
        *,
        language: Optional[str] = None,
        sample_rate: int = DEFAULT_STREAMING_SAMPLE_RATE,
    ) -> None:
        super().__init__(connection, on_event)
        self.model_id = model_id
        self.language = language
        self.sample_rate = sample_rate
        self._bytes_sent = 0
        self._partial = ""
        self._saw_transcript = False
        self._pending_commit = False

    def session_update(self) -> dict:
        transcription: dict[str, Any] = {"model": self.model_id}
        if self.language:
            transcription["language"] = self.language
        return {
            "type": "transcription_session.update",
            "session": {
                "input_audio_format": "pcm16",
                "input_audio_transcription": transcription,
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": REALTIME_VAD_THRESHOLD,
                    "prefix_padding_ms": REALTIME_VAD_PREFIX_PADDING_MS,
                    "silence_duration_ms": REALTIME_VAD_SILENCE_DURATION_MS,
                },
                "input_audio_noise_reduction": {"type": "near_field"},
            },
        }

    async def configure(self) -> None:
        await self._connection.send(json.dumps(self.session_update()))

    def _enqueue_audio(self, data: bytes) -> None:
        if not data:
            return
        self._bytes_sent += len(data)
        message = {
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(data).decode("ascii"),
        }
        self._outgoing.put_nowait(json.dumps(message))

    async def _before_finalize(self) -> None:
        if self._bytes_sent < min_commit_bytes(self.sample_rate):
            logger.debug(
                "realtime commit skipped (bytes_sent=%s, min=%s)",
                self._bytes_sent,
                min_commit_bytes(self.sample_rate),
            )
            self._pending_commit = False
            return
        self._pending_commit = True
        self._outgoing.put_nowait(json.dumps({"type": "input_audio_buffer.commit"}))

    async def _await_completion(self) -> None:
        if not self._pending_commit and not self._done.done():
            # Nothing was committed, so no completion message will follow.
            return
        await super()._await_completion()

    def _handle_frame(self, frame: Frame) -> None:
        payload = _decode_json(frame)
        if payload is None:
            logger.debug("realtime frame ignored: not a JSON object")
            return
        kind = payload.get("type")
        if kind == _DELTA_EVENT:
            delta = payload.get("delta")
            if isinstance(delta, str) and delta:
                self._partial += delta
                self._emit(PartialTranscription(text=self._partial, timestamp=now_ms()))
        elif kind == _COMPLETED_EVENT:
            transcript = payload.get("transcript")
            text = transcript if isinstance(transcript, str) else self._partial
            self._partial = ""
            self._saw_transcript = True
            self._emit(FinalTranscription(text=text, timestamp=now_ms()))
            self._resolve()
        elif kind == "error":
            self._reject(_error_message(payload))
        else:
            logger.debug("realtime frame ignored: type=%s", kind)

    def _handle_close(self) -> None:
        if self._saw_transcript:
            self._resolve()
        else:
            self._reject("Realtime transcription socket closed before a transcript was received")


def _error_message(payload: dict) -> str:
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if payload.get("message"):
        return str(payload["message"])
    return "Realtime transcription error"


class GenericStream(_DuplexStream):
    """Generic dialect: raw binary audio out, ``{kind, text, timestamp}`` JSON in."""

    protocol = "generic"

    def _enqueue_audio(self, data: bytes) -> None:
        if data:
            self._outgoing.put_nowait(data)

    async def _before_finalize(self) -> None:
        # An empty binary frame marks the end of audio.
        self._outgoing.put_nowait(b"")

    def _handle_frame(self, frame: Frame) -> None:
        payload = _decode_json(frame)
        if payload is None:
            logger.debug("generic frame ignored: not a JSON object")
            return
        kind = payload.get("kind")
        text = payload.get("text")
        if not isinstance(text, str):
            return
        timestamp = payload.get("timestamp")
        if not isinstance(timestamp, (int, float)):
            timestamp = now_ms()
        if kind == "partial":
            self._emit(PartialTranscription(text=text, timestamp=timestamp))
        elif kind == "final":
            self._emit(FinalTranscription(text=text, timestamp=timestamp))
