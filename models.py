"""Core data models for the dictation core."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

DEFAULT_BATCH_SAMPLE_RATE = 16000
DEFAULT_STREAMING_SAMPLE_RATE = 24000


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class ModelChoice(str, Enum):
    FAST = "fast"
    ACCURATE = "accurate"
    MEETING = "meeting"
    PINNED = "pinned"


class FormattingStyle(str, Enum):
    PLAIN = "plain"
    MARKDOWN = "markdown"
    SLACK = "slack"


class InsertionMethod(str, Enum):
    DIRECT_INSERTION = "direct-insertion"
    CLIPBOARD_PASTE = "clipboard-paste"


class HistoryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CompletedStatus(str, Enum):
    INSERTED = "inserted"
    CLIPBOARD = "clipboard"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ERROR = "error"


# ----------------------------------------------------------------------
# Transcription
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSelection:
    selection: ModelChoice = ModelChoice.FAST
    pinned_model_id: Optional[str] = None

    @classmethod
    def pinned(cls, model_id: str) -> "ModelSelection":
        return cls(selection=ModelChoice.PINNED, pinned_model_id=model_id)


@dataclass
class AudioChunk:
    data: bytes
    timestamp: float = 0.0
    duration_ms: Optional[int] = None


@dataclass(frozen=True)
class TranscriptionConfig:
    model: ModelSelection = field(default_factory=ModelSelection)
    streaming_enabled: bool = True
    language: Optional[str] = None
    silence_removal: Optional[bool] = None
    sample_rate: Optional[int] = None
    max_latency_hint_ms: Optional[int] = None

    @property
    def effective_sample_rate(self) -> int:
        """One rate per turn, shared by the live stream and the batch upload."""
        if self.sample_rate:
            return self.sample_rate
        return DEFAULT_STREAMING_SAMPLE_RATE if self.streaming_enabled else DEFAULT_BATCH_SAMPLE_RATE


@dataclass(frozen=True)
class TranscriptionRequest:
    audio: bytes
    model: ModelSelection = field(default_factory=ModelSelection)
    language: Optional[str] = None
    silence_removal: Optional[bool] = None
    sample_rate: Optional[int] = None
    max_latency_hint_ms: Optional[int] = None

    @classmethod
    def from_config(cls, config: TranscriptionConfig, audio: bytes = b"") -> "TranscriptionRequest":
        return cls(
            audio=audio,
            model=config.model,
            language=config.language,
            silence_removal=config.silence_removal,
            sample_rate=config.effective_sample_rate,
            max_latency_hint_ms=config.max_latency_hint_ms,
        )


@dataclass(frozen=True)
class DiarizedSegment:
    start: float
    end: float
    text: str
    speaker: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class PartialTranscription:
    text: str
    timestamp: float = 0.0
    confidence: Optional[float] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class FinalTranscription:
    text: str
    timestamp: float = 0.0
    confidence: Optional[float] = None
    language: Optional[str] = None
    segments: tuple[DiarizedSegment, ...] = ()


TranscriptionEvent = Union[PartialTranscription, FinalTranscription]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    base_delay_ms: int = 200

    def __post_init__(self) -> None:
        if not 1 <= self.max_attempts <= 5:
            raise ValueError(f"max_attempts must be between 1 and 5, got {self.max_attempts}")
        if self.base_delay_ms < 50:
            raise ValueError(f"base_delay_ms must be at least 50, got {self.base_delay_ms}")


# ----------------------------------------------------------------------
# Pipeline
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Mode:
    id: str
    name: str = ""
    shortcuts_enabled: bool = False
    formatting_enabled: bool = False
    punctuation_commands_enabled: bool = False
    formatting_style: FormattingStyle = FormattingStyle.PLAIN
    punctuation_normalization: Optional[bool] = None
    rewrite_prompt: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    punctuation_normalization: bool = True
    silence_removal: bool = False


@dataclass(frozen=True)
class VocabularyEntry:
    id: str
    source: str
    replacement: str
    mode_id: Optional[str] = None


@dataclass(frozen=True)
class ShortcutEntry:
    id: str
    keyword: str
    snippet: str
    mode_id: Optional[str] = None


@dataclass(frozen=True)
class PipelineContext:
    settings: Settings = field(default_factory=Settings)
    mode: Optional[Mode] = None
    vocabulary: tuple[VocabularyEntry, ...] = ()
    shortcuts: tuple[ShortcutEntry, ...] = ()

    @classmethod
    def for_mode(
        cls,
        mode: Optional[Mode],
        settings: Settings,
        vocabulary: list[VocabularyEntry] | tuple[VocabularyEntry, ...] = (),
        shortcuts: list[ShortcutEntry] | tuple[ShortcutEntry, ...] = (),
    ) -> "PipelineContext":
        """Keep only the global entries and the ones scoped to ``mode``."""
        mode_id = mode.id if mode else None

        def in_scope(entry_mode_id: Optional[str]) -> bool:
            return entry_mode_id is None or entry_mode_id == mode_id

        return cls(
            settings=settings,
            mode=mode,
            vocabulary=tuple(e for e in vocabulary if in_scope(e.mode_id)),
            shortcuts=tuple(s for s in shortcuts if in_scope(s.mode_id)),
        )


@dataclass(frozen=True)
class PipelineResult:
    text: str
    steps_applied: tuple[str, ...] = ()


# ----------------------------------------------------------------------
# Insertion, history, telemetry
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class InsertResult:
    success: bool
    method: InsertionMethod = InsertionMethod.DIRECT_INSERTION


@dataclass(frozen=True)
class Inserted:
    method: InsertionMethod


@dataclass(frozen=True)
class CopiedToClipboard:
    method: InsertionMethod = InsertionMethod.CLIPBOARD_PASTE


@dataclass(frozen=True)
class InsertionFailed:
    pass


InsertionOutcome = Union[Inserted, CopiedToClipboard, InsertionFailed]


@dataclass(frozen=True)
class HistoryItem:
    id: str
    text: str
    created_at: float
    status: HistoryStatus
    raw_text: str = ""
    processed_text: str = ""
    diarized_segments: Optional[tuple[DiarizedSegment, ...]] = None
    word_count: int = 0
    processing_steps: tuple[str, ...] = ()
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    model_id: Optional[str] = None
    mode_id: Optional[str] = None
    latency_ms: Optional[float] = None
    audio_duration_ms: int = 0
    insertion: Optional[InsertionOutcome] = None


@dataclass(frozen=True)
class TelemetryRecord:
    id: str
    timestamp: float
    model_id: str
    latency_ms: float
    audio_duration_ms: int
    success: bool
    error_code: Optional[str] = None


# ----------------------------------------------------------------------
# Session events
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class TranscriptionMetadata:
    model_id: str
    language: Optional[str] = None
    latency_ms: Optional[float] = None
    audio_duration_ms: int = 0
    confidence: Optional[float] = None


@dataclass(frozen=True)
class CompletedOutcome:
    status: CompletedStatus
    insertion: Optional[InsertionOutcome] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class PartialTranscript:
    text: str
    timestamp: float = 0.0
    confidence: Optional[float] = None


@dataclass(frozen=True)
class FinalTranscript:
    text: str
    metadata: TranscriptionMetadata


@dataclass(frozen=True)
class SessionError:
    code: str
    message: str
    retryable: bool = False


@dataclass(frozen=True)
class Completed:
    outcome: CompletedOutcome


SessionEvent = Union[PartialTranscript, FinalTranscript, SessionError, Completed]


_WHITESPACE = re.compile(r"\s+")


def count_words(text: str) -> int:
    trimmed = text.strip()
    if not trimmed:
        return 0
    return len(_WHITESPACE.split(trimmed))


def now_ms() -> int:
    return int(time.time() * 1000)
