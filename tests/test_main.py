from __future__ import annotations

import asyncio
import os
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from PyQt6.QtWidgets import QApplication

from audio_listener import AudioCaptureUnavailable
from main import LiveTranslatorApp
from overlay_ui import OverlayWindow
from recognition_engine import EngineEvent, RecognitionUnavailableError
from session_controller import SessionState
from translation_service import TranslationResult


def _engine() -> MagicMock:
    engine = MagicMock()
    engine.events = asyncio.Queue()
    return engine


def _translator() -> MagicMock:
    translator = MagicMock()
    translator.translate = AsyncMock(side_effect=lambda text, *args: TranslationResult(f"en:{text}"))
    return translator


def _level_source() -> MagicMock:
    levels = MagicMock()
    levels.read_level_frame.return_value = None
    return levels


class LiveTranslatorAppTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
        cls._app = QApplication.instance() or QApplication([])

    def setUp(self) -> None:
        self._orig_metrics = os.environ.get("METRICS_ENABLED")
        os.environ["METRICS_ENABLED"] = "0"
        self.window = OverlayWindow()

    def tearDown(self) -> None:
        self.window.close()
        if self._orig_metrics is None:
            os.environ.pop("METRICS_ENABLED", None)
        else:
            os.environ["METRICS_ENABLED"] = self._orig_metrics

    def test_frames_flow_from_engine_to_overlay(self) -> None:
        async def run() -> None:
            engine = _engine()
            app = LiveTranslatorApp(
                self.window,
                asyncio.get_running_loop(),
                engine=engine,
                level_source=_level_source(),
                translator=_translator(),
            )
            await app.start()
            self.assertTrue(app.running)
            self.assertEqual(self.window.status_label.text(), "Listening...")

            engine.events.put_nowait(EngineEvent.result("", "你好，"))
            engine.events.put_nowait(EngineEvent.result("你好，世界", ""))
            await asyncio.sleep(0.01)
            assert app.dispatcher is not None
            await app.dispatcher.drain()

            self.assertEqual(
                self.window.visible_lines(),
                [("你好，", "en:你好，"), ("世界", "en:世界")],
            )

            await app.stop()
            self.assertFalse(app.running)
            self.assertIs(app.controller.state, SessionState.IDLE)
            self.assertEqual(self.window.status_label.text(), "Microphone off")
            engine.stop.assert_called_once()
            app.shutdown_sync()

        asyncio.run(run())

    def test_session_reset_clears_preview(self) -> None:
        async def run() -> None:
            app = LiveTranslatorApp(
                self.window,
                asyncio.get_running_loop(),
                engine=_engine(),
                level_source=_level_source(),
                translator=_translator(),
            )
            await app.start()
            app._on_frame("", "我们")
            assert app.dispatcher is not None
            await app.dispatcher.drain()
            self.assertEqual(self.window.visible_lines(), [("我们", "en:我们")])

            app._on_session_reset()

            self.assertEqual(self.window.visible_lines(), [])
            self.assertEqual(app.reconciler.committed_buffer, "")
            app.shutdown_sync()

        asyncio.run(run())

    def test_startup_error_is_reported(self) -> None:
        async def run() -> None:
            engine = _engine()
            engine.ensure_available.side_effect = RecognitionUnavailableError("OPENAI_API_KEY is required")
            app = LiveTranslatorApp(
                self.window,
                asyncio.get_running_loop(),
                engine=engine,
                level_source=_level_source(),
                translator=_translator(),
            )
            await app.start()

            self.assertFalse(app.running)
            self.assertTrue(self.window.status_label.text().startswith("Startup error:"))
            engine.start.assert_not_called()
            app.shutdown_sync()

        asyncio.run(run())

    def test_missing_microphone_fails_startup_for_streaming_engine(self) -> None:
        async def run() -> None:
            levels = _level_source()
            levels.open.side_effect = AudioCaptureUnavailable("no input device")
            app = LiveTranslatorApp(
                self.window,
                asyncio.get_running_loop(),
                level_source=levels,
                translator=_translator(),
            )
            await app.start()

            self.assertFalse(app.running)
            self.assertIs(app.controller.state, SessionState.IDLE)
            self.assertFalse(app.controller.vad_available)
            self.assertEqual(self.window.status_label.text(), "Startup error: no input device")
            app.shutdown_sync()

        with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test"}):
            asyncio.run(run())

    def test_fatal_engine_error_stops_listening(self) -> None:
        async def run() -> None:
            app = LiveTranslatorApp(
                self.window,
                asyncio.get_running_loop(),
                engine=_engine(),
                level_source=_level_source(),
                translator=_translator(),
            )
            await app.start()
            app.controller.handle_engine_event(EngineEvent.failed("not-allowed", "microphone permission denied"))

            self.assertFalse(app.running)
            self.assertIs(app.controller.state, SessionState.IDLE)
            self.assertEqual(
                self.window.status_label.text(),
                "Recognition error: microphone permission denied",
            )
            app.shutdown_sync()

        asyncio.run(run())


if __name__ == "__main__":
    unittest.main()
