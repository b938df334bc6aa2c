from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from session_controller import Session


@dataclass(frozen=True)
class SpeechState:
    is_speaking: bool
    silence_duration_ms: float
    continuous_speech_frames: int


def frame_rms(frame: np.ndarray) -> float:
    values = np.asarray(frame, dtype=np.float64).reshape(-1)
    if values.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(values))))


class SilenceDetector:
    """Classify polled amplitude frames as speech or silence.

    Frames hold normalized frequency magnitudes in [0, 1]. The detector keeps
    no state of its own; the speech timestamp and the consecutive speech
    counter live on the session passed to ``sample``.
    """

    DEFAULT_VOLUME_THRESHOLD = 0.15

    def __init__(self, volume_threshold: float = DEFAULT_VOLUME_THRESHOLD) -> None:
        self.volume_threshold = float(volume_threshold)

    def is_speech(self, frame: np.ndarray) -> bool:
        return frame_rms(frame) > self.volume_threshold

    def sample(self, frame: np.ndarray, session: Session, now_ms: float) -> SpeechState:
        if self.is_speech(frame):
            session.last_speech_at = now_ms
            session.continuous_speech_frames += 1
            return SpeechState(
                is_speaking=True,
                silence_duration_ms=0.0,
                continuous_speech_frames=session.continuous_speech_frames,
            )

        session.continuous_speech_frames = 0
        return SpeechState(
            is_speaking=False,
            silence_duration_ms=max(0.0, now_ms - session.last_speech_at),
            continuous_speech_frames=0,
        )
