from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from PyQt6.QtWidgets import QApplication
from qasync import QEventLoop

from audio_listener import MicrophoneLevelSampler, StreamingAudioFrame
from config_utils import VoiceSessionSettings, read_bool_env, read_int_env, read_str_env
from metrics_reporter import SessionMetricsReporter
from overlay_ui import OverlayWindow
from recognition_engine import RealtimeRecognitionEngine, RecognitionEngine
from session_controller import AudioSessionController, LevelSource
from transcript_reconciler import (
    PreviewUpdated,
    ReconcilerEvent,
    SegmentCommitted,
    SessionConsumed,
    TranscriptReconciler,
)
from translation_dispatcher import TranslationDispatcher
from translation_service import TranslationProvider, create_translation_service


class LiveTranslatorApp:
    def __init__(
        self,
        ui: OverlayWindow,
        loop: asyncio.AbstractEventLoop,
        engine: Optional[RecognitionEngine] = None,
        level_source: Optional[LevelSource] = None,
        translator: Optional[TranslationProvider] = None,
        settings: Optional[VoiceSessionSettings] = None,
    ) -> None:
        self.ui = ui
        self.loop = loop
        self.settings = settings or VoiceSessionSettings.from_env()
        self.debug_enabled = read_bool_env("DEBUG_MODE", False)
        self.metrics_reporter = SessionMetricsReporter(
            enabled=read_bool_env("METRICS_ENABLED", True),
            output_path=read_str_env("METRICS_OUTPUT_PATH", "./reports/session_metrics.jsonl"),
            summary_path=read_str_env("METRICS_SUMMARY_PATH", "./reports/session_summary.json"),
            append_mode=read_bool_env("METRICS_APPEND_MODE", False),
        )
        audio_queue: asyncio.Queue[StreamingAudioFrame] = asyncio.Queue(
            maxsize=read_int_env("AUDIO_STREAM_QUEUE_MAXSIZE", 64)
        )
        self.level_source = level_source or MicrophoneLevelSampler(
            loop=loop,
            preferred_device=os.getenv("MIC_DEVICE") or None,
            stream_output_queue=audio_queue,
        )
        self.engine = engine or RealtimeRecognitionEngine(loop=loop, audio_queue=audio_queue)
        self.translator = translator
        self.dispatcher: Optional[TranslationDispatcher] = None
        self.reconciler = TranscriptReconciler(
            throttle_ms=self.settings.preview_throttle_ms,
            min_growth_chars=self.settings.preview_min_growth_chars,
        )
        self.controller = AudioSessionController(
            loop=loop,
            engine=self.engine,
            level_source=self.level_source,
            settings=self.settings,
            on_frame=self._on_frame,
            on_session_reset=self._on_session_reset,
            on_fatal_error=self._on_fatal_error,
            metrics=self.metrics_reporter,
            audio_required=engine is None,
        )
        self.running = False
        self._toggle_task: Optional[asyncio.Task[None]] = None

        self.ui.toggle_listening.connect(self._on_toggle_listening)
        self.ui.clear_requested.connect(self._on_clear_requested)
        self.ui.set_status("Microphone off")

    async def start(self) -> None:
        if self.running:
            return
        try:
            self._ensure_services()
            self.reconciler.reset_session()
            self.ui.on_clear()
            self.metrics_reporter.start_session()
            self.controller.start()
        except Exception as exc:  # noqa: BLE001 - service startup boundary
            logging.error("startup_failed error=%s", exc)
            self.ui.set_status(f"Startup error: {exc}")
            self.ui.set_listening(False)
            return

        self.running = True
        self.ui.set_listening(True)
        if self.controller.vad_available:
            self.ui.set_status("Listening...")
        else:
            self.ui.set_status("Listening... (microphone level unavailable, VAD disabled)")

    async def stop(self) -> None:
        if not self.running:
            self.ui.set_listening(False)
            return
        self.running = False
        self.controller.stop()
        self._finalize_metrics()
        self.ui.set_listening(False)
        self.ui.set_status("Microphone off")

    def shutdown_sync(self) -> None:
        self.running = False
        self.controller.close()
        if self.dispatcher is not None:
            self.dispatcher.cancel_all()
        self._finalize_metrics()
        if self._toggle_task and not self._toggle_task.done():
            self._toggle_task.cancel()

    def _ensure_services(self) -> None:
        if self.translator is None:
            self.translator = create_translation_service()
        if self.dispatcher is None:
            self.dispatcher = TranslationDispatcher(
                loop=self.loop,
                translator=self.translator,
                presenter=self.ui,
                placeholder=read_str_env("TRANSLATION_PLACEHOLDER", TranslationDispatcher.DEFAULT_PLACEHOLDER),
                metrics=self.metrics_reporter,
            )

    def _on_frame(self, final_text: str, interim_text: str) -> None:
        self._apply_events(self.reconciler.on_frame(final_text, interim_text))

    def _on_session_reset(self) -> None:
        self._apply_events(self.reconciler.reset_session())

    def _apply_events(self, events: list[ReconcilerEvent]) -> None:
        if self.dispatcher is None:
            return
        for event in events:
            if isinstance(event, SegmentCommitted):
                if self.debug_enabled:
                    logging.info(
                        "debug_commit segment=%d chars=%d",
                        event.segment.sequence_id,
                        len(event.segment.text),
                    )
                self.dispatcher.dispatch(event.segment)
            elif isinstance(event, PreviewUpdated):
                self.dispatcher.preview(event.text)
            elif isinstance(event, SessionConsumed) and self.debug_enabled:
                logging.info("debug_final_consumed chars=%d", len(event.final_text))

    def _on_fatal_error(self, message: str) -> None:
        self.running = False
        self._finalize_metrics()
        self.ui.set_listening(False)
        self.ui.set_status(f"Recognition error: {message}")

    def _finalize_metrics(self) -> None:
        if not self.metrics_reporter.session_active:
            return
        summary = self.metrics_reporter.finalize_session()
        if self.debug_enabled and summary:
            logging.info("metrics_session_summary %s", summary)

    def _on_toggle_listening(self, should_listen: bool) -> None:
        self._schedule_toggle(should_listen)

    def _on_clear_requested(self) -> None:
        self.ui.on_clear()

    def _schedule_toggle(self, should_listen: bool) -> None:
        if self._toggle_task and not self._toggle_task.done():
            self._toggle_task.cancel()
        task = asyncio.create_task(
            self.start() if should_listen else self.stop(),
            name="toggle-listening",
        )
        self._toggle_task = task

        def _finalize(done_task: asyncio.Task[None]) -> None:
            if self._toggle_task is done_task:
                self._toggle_task = None
            try:
                done_task.result()
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # noqa: BLE001 - task boundary
                self.ui.set_status(f"Toggle error: {exc}")

        task.add_done_callback(_finalize)


def main() -> None:
    load_dotenv()
    log_level_name = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(message)s")

    app = QApplication(sys.argv)
    loop = QEventLoop(app)
    asyncio.set_event_loop(loop)

    overlay = OverlayWindow()
    translator_app = LiveTranslatorApp(overlay, loop)
    app.aboutToQuit.connect(translator_app.shutdown_sync)
    overlay.show()

    with loop:
        loop.run_forever()


if __name__ == "__main__":
    main()
