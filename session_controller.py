"""State-machine based orchestration of one dictation turn.

``idle -> recording -> finalizing -> {completed | cancelled | error} -> idle``

Every terminal path emits a ``Completed`` event, attempts exactly one history
record and resets to ``idle``. Collaborator failures never propagate to the
caller; they become ``SessionError`` events classified by ``errors``.
"""

from __future__ import annotations

import inspect
import logging
import re
import uuid
from typing import Any, Callable, Optional, Sequence

from errors import (
    HISTORY_FAILED,
    INSERT_FAILED,
    REWRITE_FAILED,
    STREAMING_UNAVAILABLE,
    TRANSCRIPTION_FAILED,
    ModelResolutionError,
)
from interfaces import Clipboard, HistorySink, Inserter, Rewriter, StreamHandle, TelemetrySink, TranscriptionClient
from models import (
    AudioChunk,
    Completed,
    CompletedOutcome,
    CompletedStatus,
    CopiedToClipboard,
    DiarizedSegment,
    FinalTranscript,
    FinalTranscription,
    HistoryItem,
    HistoryStatus,
    Inserted,
    InsertionOutcome,
    PartialTranscript,
    PartialTranscription,
    PipelineContext,
    SessionError,
    SessionEvent,
    SessionState,
    TelemetryRecord,
    TranscriptionConfig,
    TranscriptionEvent,
    TranscriptionMetadata,
    TranscriptionRequest,
    count_words,
    now_ms,
)
from pipeline import Pipeline
from transcription_client import resolve_model_id

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
EventListener = Callable[[SessionEvent], None]

REWRITE_STEP = "prompt-rewrite"

_NUMBERED_SPEAKER = re.compile(r"^speaker[_\s]?\d+$", re.IGNORECASE)
_NAMED_SPEAKER = re.compile(r"^speaker\b", re.IGNORECASE)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def format_speaker_label(speaker: Optional[str], index: int) -> str:
    trimmed = (speaker or "").strip()
    if not trimmed:
        return f"Speaker {index + 1}"
    if _NUMBERED_SPEAKER.match(trimmed):
        digits = re.sub(r"\D", "", trimmed)
        return f"Speaker {int(digits) + 1}" if digits else "Speaker"
    if _NAMED_SPEAKER.match(trimmed):
        return trimmed
    return f"Speaker {trimmed}"


def build_diarized_transcript(segments: Sequence[DiarizedSegment]) -> str:
    """One ``Speaker N: text`` line per run of consecutive same-speaker segments."""
    lines: list[str] = []
    last_label = ""
    for index, segment in enumerate(segments):
        label = format_speaker_label(segment.speaker, index)
        text = segment.text.strip()
        if not text:
            continue
        if lines and label == last_label:
            lines[-1] = f"{lines[-1]} {text}".strip()
        else:
            lines.append(f"{label}: {text}")
            last_label = label
    return "\n".join(lines)


def merge_final_text(current: Optional[str], incoming: str) -> str:
    if not current:
        return incoming
    if incoming.startswith(current):
        return incoming
    if current.startswith(incoming):
        return current
    return f"{current} {incoming}".strip()


class _Subscription:
    __slots__ = ("listener", "active")

    def __init__(self, listener: EventListener) -> None:
        self.listener = listener
        self.active = True


class SessionController:
    def __init__(
        self,
        transcription: TranscriptionClient,
        inserter: Inserter,
        clipboard: Clipboard,
        history: HistorySink,
        pipeline_context: PipelineContext,
        rewriter: Optional[Rewriter] = None,
        telemetry: Optional[TelemetrySink] = None,
        pipeline: Optional[Pipeline] = None,
        clock: Callable[[], float] = now_ms,
        id_factory: Optional[Callable[[], str]] = None,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        self._transcription = transcription
        self._inserter = inserter
        self._clipboard = clipboard
        self._history = history
        self._pipeline_context = pipeline_context
        self._rewriter = rewriter
        self._telemetry = telemetry
        self._pipeline = pipeline or Pipeline()
        self._clock = clock
        self._id_factory = id_factory or (lambda: f"hist-{uuid.uuid4().hex}")
        self._on_state_change = on_state_change

        self._subscriptions: list[_Subscription] = []
        self._state = SessionState.IDLE
        self._turn_id = 0
        self._reset()

    @property
    def state(self) -> SessionState:
        return self._state

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        subscription = _Subscription(listener)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            subscription.active = False
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    async def start(self, config: TranscriptionConfig) -> None:
        if self._state != SessionState.IDLE:
            return
        self._turn_id += 1
        self._reset()
        self._config = config
        self._started_at = self._clock()
        self._transition(SessionState.RECORDING)
        if config.streaming_enabled:
            await self._open_stream(self._turn_id, config)

    def push_audio_chunk(self, chunk: AudioChunk) -> None:
        if self._state != SessionState.RECORDING or self._config is None:
            return
        data = bytes(chunk.data)
        self._buffered.append(data)
        if chunk.duration_ms:
            self._audio_duration_ms += chunk.duration_ms
        if not self._config.streaming_enabled or self._streaming_failed:
            return
        if self._stream is not None:
            self._stream.send_audio(data)
        else:
            self._pending.append(data)

    async def finalize(self) -> None:
        if self._state != SessionState.RECORDING or self._config is None:
            return
        turn = self._turn_id
        config = self._config
        self._transition(SessionState.FINALIZING)
        request = TranscriptionRequest.from_config(config, b"".join(self._buffered))

        if config.streaming_enabled and self._stream is not None:
            try:
                await self._stream.finalize()
            except Exception as exc:
                self._streaming_failed = True
                logger.warning("stream finalize failed: %s", exc)
                self._emit(SessionError(code=STREAMING_UNAVAILABLE, message=str(exc), retryable=True))
            if self._stale(turn):
                return

        if config.streaming_enabled:
            try:
                events = await self._transcription.transcribe(request)
            except Exception as exc:
                if self._stale(turn):
                    return
                if not self._final_text and not self._streaming_text:
                    await self._fail(TRANSCRIPTION_FAILED, exc)
                    return
                logger.warning("supplementary batch transcription failed: %s", exc)
            else:
                if self._stale(turn):
                    return
                final = _first_final(events)
                if final is not None and final.text:
                    self._final_text = final.text
                if final is not None and final.segments:
                    self._segments = final.segments
        else:
            try:
                events = await self._transcription.transcribe(request)
            except Exception as exc:
                if self._stale(turn):
                    return
                await self._fail(TRANSCRIPTION_FAILED, exc)
                return
            if self._stale(turn):
                return
            final = _first_final(events)
            self._final_text = final.text if final is not None else ""
            if final is not None and final.segments:
                self._segments = final.segments

        await self._complete(turn)

    async def cancel(self) -> None:
        if self._state == SessionState.IDLE:
            return
        self._transition(SessionState.CANCELLED)
        await self._safe_close_stream()
        item = self._history_item(status=HistoryStatus.CANCELLED, text="")
        try:
            await _maybe_await(self._history.add(item))
        except Exception as exc:
            logger.debug("cancelled history record not saved: %s", exc)
        self._emit(Completed(CompletedOutcome(status=CompletedStatus.CANCELLED)))
        self._finish()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _open_stream(self, turn: int, config: TranscriptionConfig) -> None:
        request = TranscriptionRequest.from_config(config)
        try:
            handle = await self._transcription.open_stream(request, self._stream_listener(turn))
        except Exception as exc:
            self._streaming_failed = True
            self._pending = []
            logger.warning("streaming unavailable, continuing in batch mode: %s", exc)
            self._emit(SessionError(code=STREAMING_UNAVAILABLE, message=str(exc), retryable=True))
            return
        if turn != self._turn_id or self._state != SessionState.RECORDING:
            await handle.cancel()
            return
        self._stream = handle
        for data in self._pending:
            handle.send_audio(data)
        self._pending = []

    def _stream_listener(self, turn: int) -> Callable[[TranscriptionEvent], None]:
        def listener(event: TranscriptionEvent) -> None:
            if turn != self._turn_id or self._state not in (SessionState.RECORDING, SessionState.FINALIZING):
                return
            if isinstance(event, PartialTranscription):
                self._streaming_text = event.text
                self._emit(
                    PartialTranscript(text=event.text, timestamp=event.timestamp, confidence=event.confidence)
                )
            elif isinstance(event, FinalTranscription):
                self._final_text = merge_final_text(self._final_text, event.text)
                if event.segments:
                    self._segments = event.segments

        return listener

    async def _complete(self, turn: int) -> None:
        raw_text = self._final_text or ""
        working_text = raw_text
        if self._segments:
            rendered = build_diarized_transcript(self._segments)
            if rendered:
                raw_text = raw_text or rendered
                working_text = rendered
        self._raw_text = raw_text

        result = self._pipeline.run(working_text, self._pipeline_context)
        text = result.text
        steps = list(result.steps_applied)

        mode = self._pipeline_context.mode
        prompt = (mode.rewrite_prompt or "").strip() if mode else ""
        if prompt and self._rewriter is not None:
            try:
                rewritten = await _maybe_await(self._rewriter.rewrite(text, prompt))
            except Exception as exc:
                logger.warning("rewrite failed, keeping pipeline output: %s", exc)
                self._emit(SessionError(code=REWRITE_FAILED, message=str(exc), retryable=True))
            else:
                if isinstance(rewritten, str) and rewritten.strip():
                    text = rewritten.strip()
                    steps.append(REWRITE_STEP)
            if self._stale(turn):
                return

        self._emit(FinalTranscript(text=text, metadata=self._metadata()))

        insertion = await self._insert(turn, text)
        if insertion is None:
            return

        item = self._history_item(
            status=HistoryStatus.SUCCESS,
            text=text,
            processed_text=text,
            word_count=count_words(text),
            processing_steps=tuple(steps),
            insertion=insertion,
        )
        try:
            await _maybe_await(self._history.add(item))
        except Exception as exc:
            if self._stale(turn):
                return
            await self._fail(HISTORY_FAILED, exc)
            return
        if self._stale(turn):
            return

        await self._record_telemetry(success=True)
        status = CompletedStatus.INSERTED if isinstance(insertion, Inserted) else CompletedStatus.CLIPBOARD
        self._transition(SessionState.COMPLETED)
        logger.info("dictation turn completed (status=%s, words=%s)", status.value, item.word_count)
        self._emit(Completed(CompletedOutcome(status=status, insertion=insertion)))
        self._finish()

    async def _insert(self, turn: int, text: str) -> Optional[InsertionOutcome]:
        """Insert at the cursor, falling back to the clipboard; ``None`` ends the turn."""
        result = None
        try:
            result = await _maybe_await(self._inserter.at_cursor(text))
        except Exception as exc:
            logger.warning("insertion failed, falling back to clipboard: %s", exc)
        if self._stale(turn):
            return None
        if result is not None and result.success:
            return Inserted(method=result.method)

        try:
            await _maybe_await(self._clipboard.set(text))
        except Exception as exc:
            if not self._stale(turn):
                await self._fail(INSERT_FAILED, exc)
            return None
        if self._stale(turn):
            return None
        return CopiedToClipboard()

    async def _fail(self, code: str, exc: BaseException) -> None:
        message = str(exc)
        logger.error("dictation turn failed (code=%s): %s", code, message)
        self._transition(SessionState.ERROR)
        self._emit(SessionError(code=code, message=message))
        await self._safe_close_stream()
        item = self._history_item(
            status=HistoryStatus.FAILED,
            text="",
            error_code=code,
            error_message=message,
        )
        try:
            await _maybe_await(self._history.add(item))
        except Exception as history_exc:
            logger.debug("failure history record not saved: %s", history_exc)
        await self._record_telemetry(success=False, error_code=code)
        self._emit(
            Completed(
                CompletedOutcome(
                    status=CompletedStatus.ERROR,
                    error_code=code,
                    error_message=message,
                )
            )
        )
        self._finish()

    async def _record_telemetry(self, success: bool, error_code: Optional[str] = None) -> None:
        if self._telemetry is None:
            return
        record = TelemetryRecord(
            id=f"telemetry-{uuid.uuid4().hex}",
            timestamp=self._clock(),
            model_id=self._model_id() or "unknown",
            latency_ms=self._latency_ms() or 0,
            audio_duration_ms=self._audio_duration_ms,
            success=success,
            error_code=error_code,
        )
        try:
            await _maybe_await(self._telemetry.add(record))
        except Exception as exc:
            logger.debug("telemetry record dropped: %s", exc)

    def _history_item(self, status: HistoryStatus, text: str, **fields: Any) -> HistoryItem:
        mode = self._pipeline_context.mode
        return HistoryItem(
            id=self._id_factory(),
            text=text,
            created_at=self._clock(),
            status=status,
            raw_text=self._raw_text if status == HistoryStatus.SUCCESS else "",
            diarized_segments=self._segments if status == HistoryStatus.SUCCESS else None,
            model_id=self._model_id(),
            mode_id=mode.id if mode else None,
            latency_ms=self._latency_ms(),
            audio_duration_ms=self._audio_duration_ms,
            **fields,
        )

    def _metadata(self) -> TranscriptionMetadata:
        return TranscriptionMetadata(
            model_id=self._model_id() or "unknown",
            language=self._config.language if self._config else None,
            latency_ms=self._latency_ms(),
            audio_duration_ms=self._audio_duration_ms,
        )

    def _model_id(self) -> Optional[str]:
        if self._config is None:
            return None
        try:
            return resolve_model_id(self._config.model)
        except (ModelResolutionError, KeyError, ValueError):
            return None

    def _latency_ms(self) -> Optional[float]:
        if not self._started_at:
            return None
        return self._clock() - self._started_at

    def _stale(self, turn: int) -> bool:
        return turn != self._turn_id or self._state != SessionState.FINALIZING

    async def _safe_close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            await stream.cancel()
        except Exception as exc:
            logger.debug("stream close failed: %s", exc)

    def _emit(self, event: SessionEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                subscription.listener(event)
            except Exception:
                logger.exception("session listener failed for %s", type(event).__name__)

    def _finish(self) -> None:
        self._reset()
        self._transition(SessionState.IDLE)

    def _reset(self) -> None:
        self._config: Optional[TranscriptionConfig] = None
        self._started_at: float = 0
        self._audio_duration_ms = 0
        self._final_text: Optional[str] = None
        self._streaming_text: Optional[str] = None
        self._raw_text = ""
        self._segments: Optional[tuple[DiarizedSegment, ...]] = None
        self._stream: Optional[StreamHandle] = None
        self._streaming_failed = False
        self._pending: list[bytes] = []
        self._buffered: list[bytes] = []

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        logger.debug("session state %s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)


def _first_final(events: Sequence[TranscriptionEvent]) -> Optional[FinalTranscription]:
    for event in events:
        if isinstance(event, FinalTranscription):
            return event
    return None
