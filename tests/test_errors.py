from __future__ import annotations

from errors import (
    ERROR_MESSAGES,
    HISTORY_FAILED,
    INSERT_FAILED,
    REWRITE_FAILED,
    STREAMING_UNAVAILABLE,
    TRANSCRIPTION_FAILED,
    TranscriptionError,
    is_fatal,
)


def test_fatal_classification() -> None:
    assert is_fatal(TRANSCRIPTION_FAILED)
    assert is_fatal(INSERT_FAILED)
    assert is_fatal(HISTORY_FAILED)
    assert not is_fatal(STREAMING_UNAVAILABLE)
    assert not is_fatal(REWRITE_FAILED)


def test_every_code_has_a_message() -> None:
    codes = {STREAMING_UNAVAILABLE, TRANSCRIPTION_FAILED, REWRITE_FAILED, INSERT_FAILED, HISTORY_FAILED}
    assert set(ERROR_MESSAGES) == codes


def test_transcription_error_keeps_status_and_body() -> None:
    exc = TranscriptionError("Transcription failed: 429", status=429, body="slow down")
    assert str(exc) == "Transcription failed: 429"
    assert exc.status == 429
    assert exc.body == "slow down"
