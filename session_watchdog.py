from __future__ import annotations

from enum import Enum

from silence_detector import SpeechState


class WatchdogVerdict(Enum):
    OK = "ok"
    STALL = "stall"


class SessionWatchdog:
    # 30 polls at 100 ms is roughly 3 s of uninterrupted speech.
    DEFAULT_SPEECH_FRAMES = 30
    DEFAULT_ACTIVITY_TIMEOUT_MS = 4000.0

    def __init__(
        self,
        speech_frame_threshold: int = DEFAULT_SPEECH_FRAMES,
        activity_timeout_ms: float = DEFAULT_ACTIVITY_TIMEOUT_MS,
    ) -> None:
        self.speech_frame_threshold = int(speech_frame_threshold)
        self.activity_timeout_ms = float(activity_timeout_ms)

    def check(self, speech: SpeechState, last_engine_activity_at: float, now_ms: float) -> WatchdogVerdict:
        if speech.continuous_speech_frames < self.speech_frame_threshold:
            return WatchdogVerdict.OK
        if now_ms - last_engine_activity_at < self.activity_timeout_ms:
            return WatchdogVerdict.OK
        return WatchdogVerdict.STALL
