from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import numpy as np

from audio_listener import AudioCaptureUnavailable
from config_utils import VoiceSessionSettings, monotonic_ms
from metrics_reporter import SessionMetricsReporter
from recognition_engine import (
    ERROR_ABORTED,
    ERROR_NO_SPEECH,
    FATAL_ERROR_CODES,
    EngineEvent,
    RecognitionEngine,
    RecognitionUnavailableError,
)
from session_watchdog import SessionWatchdog, WatchdogVerdict
from silence_detector import SilenceDetector


class SessionState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RESTARTING = "restarting"


@dataclass
class Session:
    state: SessionState
    started_at: float
    last_speech_at: float
    last_engine_activity_at: float
    continuous_speech_frames: int = 0
    interim_length: int = 0

    @classmethod
    def open(cls, now_ms: float, state: SessionState = SessionState.LISTENING) -> "Session":
        return cls(
            state=state,
            started_at=now_ms,
            last_speech_at=now_ms,
            last_engine_activity_at=now_ms,
        )


class LevelSource(Protocol):
    def open(self) -> None:
        ...

    def suspend(self) -> None:
        ...

    def close(self) -> None:
        ...

    def read_level_frame(self) -> Optional[np.ndarray]:
        ...


class AudioSessionController:
    """Own the recognition session lifecycle.

    A 100 ms poll samples the microphone level and applies three policies:
    watchdog abort when the engine goes quiet during continuous speech, forced
    finalization when an interim hypothesis is left hanging after the speaker
    pauses, and a proactive refresh of long-lived sessions. Any engine ``end``
    while listening becomes a restart, and ``on_session_reset`` always fires
    before the replacement engine session is started.
    """

    def __init__(
        self,
        loop: Any,
        engine: RecognitionEngine,
        level_source: Optional[LevelSource] = None,
        settings: Optional[VoiceSessionSettings] = None,
        on_frame: Optional[Callable[[str, str], None]] = None,
        on_session_reset: Optional[Callable[[], None]] = None,
        on_fatal_error: Optional[Callable[[str], None]] = None,
        metrics: Optional[SessionMetricsReporter] = None,
        audio_required: bool = False,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self._loop = loop
        self._engine = engine
        self._level_source = level_source
        self._settings = settings or VoiceSessionSettings()
        self._on_frame = on_frame
        self._on_session_reset = on_session_reset
        self._on_fatal_error = on_fatal_error
        self._metrics = metrics
        self._audio_required = audio_required
        self._clock = clock
        self._detector = SilenceDetector(self._settings.volume_threshold)
        self._watchdog = SessionWatchdog(
            speech_frame_threshold=self._settings.watchdog_speech_frames,
            activity_timeout_ms=self._settings.watchdog_activity_timeout_ms,
        )
        self._session = Session.open(clock(), state=SessionState.IDLE)
        self._poll_handle: Optional[asyncio.TimerHandle] = None
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._drain_task: Optional[asyncio.Task[None]] = None
        self._pending_restart_reason: Optional[str] = None
        self._restarts_without_result = 0
        self.vad_available = False
        self.restart_count = 0
        self.stall_count = 0

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def session(self) -> Session:
        return self._session

    def start(self) -> None:
        if self._session.state is not SessionState.IDLE:
            return
        self._engine.ensure_available()
        self._open_level_source()
        self._session = Session.open(self._clock())
        self._pending_restart_reason = None
        self._restarts_without_result = 0
        self._engine.start()
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = self._loop.create_task(self._drain_engine_events(), name="engine-events")
        if self.vad_available:
            self._schedule_poll()
        logging.info("session_started vad=%s", self.vad_available)

    def stop(self) -> None:
        if self._session.state is SessionState.IDLE:
            return
        self._session.state = SessionState.IDLE
        self._cancel_timers()
        self._engine.stop()
        if self._level_source is not None and self.vad_available:
            self._level_source.suspend()
        logging.info("session_stopped restarts=%d stalls=%d", self.restart_count, self.stall_count)

    def close(self) -> None:
        self.stop()
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        self._drain_task = None
        if self._level_source is not None:
            self._level_source.close()
        self.vad_available = False

    def poll(self) -> None:
        session = self._session
        if session.state is not SessionState.LISTENING:
            return
        if self._level_source is None or not self.vad_available:
            return
        frame = self._level_source.read_level_frame()
        if frame is None:
            return

        now = self._clock()
        speech = self._detector.sample(frame, session, now)
        verdict = self._watchdog.check(speech, session.last_engine_activity_at, now)
        if verdict is WatchdogVerdict.STALL:
            session.continuous_speech_frames = 0
            self.stall_count += 1
            logging.warning(
                "watchdog_stall inactivity_ms=%.0f speech_frames=%d",
                now - session.last_engine_activity_at,
                speech.continuous_speech_frames,
            )
            self._record("watchdog_stall", inactivity_ms=now - session.last_engine_activity_at)
            self._pending_restart_reason = "watchdog_stall"
            self._engine.abort()
            return

        if session.interim_length > 0:
            if speech.silence_duration_ms > self._finalize_threshold_ms(session.interim_length):
                logging.info(
                    "forced_finalize interim_chars=%d silence_ms=%.0f",
                    session.interim_length,
                    speech.silence_duration_ms,
                )
                self._record("forced_finalize", interim_chars=session.interim_length)
                self._pending_restart_reason = "forced_finalize"
                session.interim_length = 0
                session.last_speech_at = now
                self._engine.stop()
            return

        session_age = now - session.started_at
        if speech.silence_duration_ms > self._settings.refresh_silence_ms and (
            session_age > self._settings.refresh_session_age_ms
        ):
            logging.info("session_refresh age_ms=%.0f", session_age)
            self._record("session_refresh", age_ms=session_age)
            self._pending_restart_reason = "refresh"
            session.started_at = now
            self._engine.stop()

    def handle_engine_event(self, event: EngineEvent) -> None:
        self._session.last_engine_activity_at = self._clock()
        if event.kind == "start":
            logging.debug("engine_started state=%s", self._session.state.value)
        elif event.kind == "result":
            self._restarts_without_result = 0
            self._session.interim_length = len(event.interim_text)
            if self._on_frame is not None and (event.final_text or event.interim_text):
                self._on_frame(event.final_text, event.interim_text)
        elif event.kind == "end":
            self._on_engine_end()
        elif event.kind == "error":
            self._on_engine_error(event)

    def _finalize_threshold_ms(self, interim_length: int) -> float:
        if interim_length > self._settings.finalize_long_text_chars:
            return self._settings.finalize_short_silence_ms
        return self._settings.finalize_long_silence_ms

    def _restart_delay_ms(self) -> float:
        delay = self._settings.restart_backoff_ms * (2 ** min(self._restarts_without_result, 16))
        return min(delay, self._settings.restart_backoff_max_ms)

    def _on_engine_end(self) -> None:
        if self._session.state is SessionState.IDLE:
            logging.debug("engine_ended state=idle")
            return
        if self._restart_handle is not None:
            return
        self._session.state = SessionState.RESTARTING
        planned = self._pending_restart_reason is not None
        if planned:
            # Only unexpected ends grow the backoff.
            self._restarts_without_result = 0
        delay_ms = self._restart_delay_ms()
        if not planned:
            self._restarts_without_result += 1
        self._restart_handle = self._loop.call_later(delay_ms / 1000.0, self._restart_engine)

    def _restart_engine(self) -> None:
        self._restart_handle = None
        if self._session.state is not SessionState.RESTARTING:
            return
        reason = self._pending_restart_reason or "engine_end"
        self._pending_restart_reason = None
        self.restart_count += 1
        logging.info("session_restart reason=%s restarts=%d", reason, self.restart_count)
        self._record("session_restart", reason=reason)
        if self._on_session_reset is not None:
            self._on_session_reset()
        self._session = Session.open(self._clock())
        try:
            self._engine.start()
        except RecognitionUnavailableError as exc:
            self._fail(str(exc))

    def _on_engine_error(self, event: EngineEvent) -> None:
        if event.code in FATAL_ERROR_CODES:
            logging.error("engine_fatal_error code=%s message=%s", event.code, event.message)
            self._record("engine_error", code=event.code, fatal=True)
            self._fail(event.message or event.code)
            return
        if event.code in (ERROR_NO_SPEECH, ERROR_ABORTED):
            logging.debug("engine_error code=%s message=%s", event.code, event.message)
            return
        logging.warning("engine_error code=%s message=%s", event.code, event.message)
        self._record("engine_error", code=event.code, fatal=False)

    def _fail(self, message: str) -> None:
        self.stop()
        if self._on_fatal_error is not None:
            self._on_fatal_error(message)

    def _open_level_source(self) -> None:
        if self._level_source is None:
            self.vad_available = False
            return
        try:
            self._level_source.open()
        except AudioCaptureUnavailable as exc:
            self.vad_available = False
            if self._audio_required:
                # The level source also feeds the engine; without it nothing is transcribed.
                logging.error("microphone_unavailable error=%s", exc)
                raise
            logging.warning("vad_unavailable error=%s", exc)
            return
        self.vad_available = True

    def _schedule_poll(self) -> None:
        self._poll_handle = self._loop.call_later(self._settings.poll_ms / 1000.0, self._on_poll_timer)

    def _on_poll_timer(self) -> None:
        self._poll_handle = None
        if self._session.state is SessionState.IDLE:
            return
        self.poll()
        if self._session.state is not SessionState.IDLE:
            self._schedule_poll()

    def _cancel_timers(self) -> None:
        for handle in (self._poll_handle, self._restart_handle):
            if handle is not None:
                handle.cancel()
        self._poll_handle = None
        self._restart_handle = None

    async def _drain_engine_events(self) -> None:
        while True:
            event = await self._engine.events.get()
            try:
                self.handle_engine_event(event)
            except Exception:  # noqa: BLE001 - event loop boundary
                logging.exception("engine_event_failed kind=%s", event.kind)

    def _record(self, event_type: str, **details: Any) -> None:
        if self._metrics is not None:
            self._metrics.record_session_event(event_type, **details)
