"""Upload size limits for batch transcription."""

from __future__ import annotations

import math

MAX_UPLOAD_BYTES = 25 * 1024 * 1024
PCM_BYTES_PER_SAMPLE = 2
SAFE_HEADROOM_BYTES = 512 * 1024


def _positive(value: float) -> bool:
    return math.isfinite(value) and value > 0


def estimate_max_duration_ms(
    sample_rate: int,
    max_upload_bytes: int = MAX_UPLOAD_BYTES,
    bytes_per_sample: int = PCM_BYTES_PER_SAMPLE,
) -> int:
    """Longest mono PCM recording that fits in one batch upload."""
    if not (_positive(sample_rate) and _positive(max_upload_bytes) and _positive(bytes_per_sample)):
        return 0
    bytes_per_second = sample_rate * bytes_per_sample
    return math.floor(max_upload_bytes * 1000 / bytes_per_second)


def estimate_safe_duration_ms(sample_rate: int, headroom_bytes: int = SAFE_HEADROOM_BYTES) -> int:
    effective = max(0, MAX_UPLOAD_BYTES - headroom_bytes)
    return estimate_max_duration_ms(sample_rate, effective)


def exceeds_upload_limit(payload_size: int, max_upload_bytes: int = MAX_UPLOAD_BYTES) -> bool:
    return payload_size > max_upload_bytes


def format_duration(duration_ms: float) -> str:
    if not _positive(duration_ms):
        return "00:00"
    total_seconds = int(duration_ms // 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"
