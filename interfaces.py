"""Protocol interfaces consumed by the transcription client and the session controller.

Host collaborators may implement their methods either as plain functions or as
coroutines; the session awaits whatever comes back when it is awaitable.
"""

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable, Mapping, Protocol, TypeVar, Union

from models import (
    HistoryItem,
    InsertResult,
    PipelineContext,
    TelemetryRecord,
    TranscriptionEvent,
    TranscriptionRequest,
)

T = TypeVar("T")
MaybeAwaitable = Union[T, Awaitable[T]]

EventCallback = Callable[[TranscriptionEvent], None]


class Inserter(Protocol):
    def at_cursor(self, text: str) -> MaybeAwaitable[InsertResult]: ...


class Clipboard(Protocol):
    def set(self, text: str) -> MaybeAwaitable[None]: ...

    def get(self) -> MaybeAwaitable[str]: ...


class HistorySink(Protocol):
    def add(self, item: HistoryItem) -> MaybeAwaitable[None]: ...


class Rewriter(Protocol):
    def rewrite(self, text: str, prompt: str) -> MaybeAwaitable[str]: ...


class TelemetrySink(Protocol):
    def add(self, record: TelemetryRecord) -> MaybeAwaitable[None]: ...


class PipelineStage(Protocol):
    id: str

    def enabled(self, context: PipelineContext) -> bool: ...

    def run(self, text: str, context: PipelineContext) -> str: ...


class WebSocketConnection(Protocol):
    """The subset of ``websockets`` client connections used by the stream protocols."""

    async def send(self, message: Union[str, bytes]) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]: ...


WebSocketFactory = Callable[[str, Mapping[str, str]], Awaitable[WebSocketConnection]]


class StreamHandle(Protocol):
    def send_audio(self, data: bytes) -> None: ...

    async def finalize(self) -> None: ...

    async def cancel(self) -> None: ...


class TranscriptionClient(Protocol):
    async def transcribe(self, request: TranscriptionRequest) -> list[TranscriptionEvent]: ...

    async def stream(self, request: TranscriptionRequest, on_event: EventCallback) -> None: ...

    async def open_stream(
        self,
        request: TranscriptionRequest,
        on_event: EventCallback,
    ) -> StreamHandle: ...
