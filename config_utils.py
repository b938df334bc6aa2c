from __future__ import annotations

import os
import time
from dataclasses import dataclass


def read_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_bool_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


def read_str_env(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


@dataclass(frozen=True)
class VoiceSessionSettings:
    poll_ms: float = 100.0
    volume_threshold: float = 0.15
    finalize_short_silence_ms: float = 200.0
    finalize_long_silence_ms: float = 400.0
    finalize_long_text_chars: int = 20
    refresh_silence_ms: float = 1000.0
    refresh_session_age_ms: float = 30000.0
    watchdog_speech_frames: int = 30
    watchdog_activity_timeout_ms: float = 4000.0
    restart_backoff_ms: float = 10.0
    restart_backoff_max_ms: float = 2000.0
    preview_throttle_ms: float = 600.0
    preview_min_growth_chars: int = 2

    @classmethod
    def from_env(cls) -> "VoiceSessionSettings":
        defaults = cls()
        return cls(
            poll_ms=read_float_env("VAD_POLL_MS", defaults.poll_ms),
            volume_threshold=read_float_env("VAD_VOLUME_THRESHOLD", defaults.volume_threshold),
            finalize_short_silence_ms=read_float_env(
                "FINALIZE_SHORT_SILENCE_MS", defaults.finalize_short_silence_ms
            ),
            finalize_long_silence_ms=read_float_env("FINALIZE_LONG_SILENCE_MS", defaults.finalize_long_silence_ms),
            finalize_long_text_chars=read_int_env("FINALIZE_LONG_TEXT_CHARS", defaults.finalize_long_text_chars),
            refresh_silence_ms=read_float_env("REFRESH_SILENCE_MS", defaults.refresh_silence_ms),
            refresh_session_age_ms=read_float_env("REFRESH_SESSION_AGE_MS", defaults.refresh_session_age_ms),
            watchdog_speech_frames=read_int_env("WATCHDOG_SPEECH_FRAMES", defaults.watchdog_speech_frames),
            watchdog_activity_timeout_ms=read_float_env(
                "WATCHDOG_ACTIVITY_TIMEOUT_MS", defaults.watchdog_activity_timeout_ms
            ),
            restart_backoff_ms=read_float_env("RESTART_BACKOFF_MS", defaults.restart_backoff_ms),
            restart_backoff_max_ms=read_float_env("RESTART_BACKOFF_MAX_MS", defaults.restart_backoff_max_ms),
            preview_throttle_ms=read_float_env("PREVIEW_THROTTLE_MS", defaults.preview_throttle_ms),
            preview_min_growth_chars=read_int_env("PREVIEW_MIN_GROWTH_CHARS", defaults.preview_min_growth_chars),
        )


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0
