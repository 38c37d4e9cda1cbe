"""Simple JSON-based config store."""

from __future__ import annotations

import json
import os
from pathlib import Path

from errors import ConfigError
from models import DEFAULT_STREAMING_SAMPLE_RATE, RetryPolicy
from transcription_client import DEFAULT_OPENAI_BASE_URL, TranscriptionClientOptions

API_KEY_ENV = "OPENAI_API_KEY"


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "dictation_core" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def get_api_key(self) -> str:
        data = self._read_all()
        key = str(data.get("api_key", "") or "")
        return key or os.environ.get(API_KEY_ENV, "")

    def set_api_key(self, key: str) -> None:
        data = self._read_all()
        data["api_key"] = key
        self._write_all(data)

    def get_base_url(self) -> str:
        data = self._read_all()
        return str(data.get("base_url") or DEFAULT_OPENAI_BASE_URL)

    def set_base_url(self, base_url: str) -> None:
        data = self._read_all()
        data["base_url"] = base_url.rstrip("/")
        self._write_all(data)

    def get_retry_policy(self) -> RetryPolicy:
        raw = self._read_all().get("retry_policy")
        if not isinstance(raw, dict):
            return RetryPolicy()
        defaults = RetryPolicy()
        try:
            return RetryPolicy(
                max_attempts=int(raw.get("max_attempts", defaults.max_attempts)),
                base_delay_ms=int(raw.get("base_delay_ms", defaults.base_delay_ms)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid retry_policy in {self._path}: {exc}") from exc

    def set_retry_policy(self, policy: RetryPolicy) -> None:
        data = self._read_all()
        data["retry_policy"] = {
            "max_attempts": policy.max_attempts,
            "base_delay_ms": policy.base_delay_ms,
        }
        self._write_all(data)

    def get_realtime_sample_rate(self) -> int:
        data = self._read_all()
        value = data.get("realtime_sample_rate", DEFAULT_STREAMING_SAMPLE_RATE)
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigError(f"invalid realtime_sample_rate in {self._path}: {value!r}")
        return value

    def set_realtime_sample_rate(self, sample_rate: int) -> None:
        data = self._read_all()
        data["realtime_sample_rate"] = sample_rate
        self._write_all(data)

    def build_client_options(self) -> TranscriptionClientOptions:
        return TranscriptionClientOptions(
            base_url=self.get_base_url(),
            api_key=self.get_api_key() or None,
            realtime_sample_rate=self.get_realtime_sample_rate(),
            retry_policy=self.get_retry_policy(),
        )

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
