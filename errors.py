"""Shared error codes, user-facing messages and exceptions."""

from __future__ import annotations

from typing import Optional

STREAMING_UNAVAILABLE = "streaming_unavailable"
TRANSCRIPTION_FAILED = "transcription_failed"
REWRITE_FAILED = "rewrite_failed"
INSERT_FAILED = "insert_failed"
HISTORY_FAILED = "history_failed"

FATAL_ERROR_CODES = frozenset({TRANSCRIPTION_FAILED, INSERT_FAILED, HISTORY_FAILED})

ERROR_MESSAGES = {
    STREAMING_UNAVAILABLE: "Live transcription is unavailable, using batch transcription.",
    TRANSCRIPTION_FAILED: "Transcription failed, please retry.",
    REWRITE_FAILED: "Rewrite failed, the original text was kept.",
    INSERT_FAILED: "Text could not be inserted or copied to the clipboard.",
    HISTORY_FAILED: "The result could not be saved to history.",
}


def is_fatal(code: str) -> bool:
    return code in FATAL_ERROR_CODES


class DictationError(Exception):
    """Base error for the dictation core."""


class ConfigError(DictationError):
    """Raised when stored configuration is invalid."""


class ModelResolutionError(DictationError):
    """Raised when a model selection cannot be resolved to a model id."""


class TranscriptionError(DictationError):
    """Raised when a batch transcription call fails."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.body = body


class StreamUnavailableError(DictationError):
    """Raised when a streaming session cannot be opened."""


class StreamProtocolError(DictationError):
    """Raised when the streaming server reports an error or closes abnormally."""
