from __future__ import annotations

import asyncio
import unittest
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

from transcript_reconciler import Segment, SegmentKind
from translation_dispatcher import TranslationDispatcher
from translation_service import TranslationResult


class _ScriptedTranslator:
    source_lang = "zh"
    target_lang = "en"

    def __init__(self) -> None:
        self.waiters: dict[str, asyncio.Future[TranslationResult]] = {}

    async def translate(
        self,
        text: str,
        source_lang: Optional[str] = None,
        target_lang: Optional[str] = None,
    ) -> TranslationResult:
        future: asyncio.Future[TranslationResult] = asyncio.get_running_loop().create_future()
        self.waiters[text] = future
        return await future

    async def aclose(self) -> None:
        return None


def _presenter() -> MagicMock:
    presenter = MagicMock()
    presenter.on_commit_placeholder.side_effect = lambda segment_id, text: f"line-{text}"
    return presenter


def _final(text: str, sequence_id: int) -> Segment:
    return Segment(text=text, kind=SegmentKind.FINAL, sequence_id=sequence_id)


class TranslationDispatcherTests(unittest.TestCase):
    def test_placeholder_is_shown_before_translation(self) -> None:
        async def run() -> None:
            translator = _ScriptedTranslator()
            presenter = _presenter()
            dispatcher = TranslationDispatcher(asyncio.get_running_loop(), translator, presenter)

            dispatcher.dispatch(_final("你好", 1))
            presenter.on_commit_placeholder.assert_called_once_with(1, "你好")
            self.assertEqual(dispatcher.pending_count, 1)

            await asyncio.sleep(0)
            translator.waiters["你好"].set_result(TranslationResult("hello"))
            await dispatcher.drain()

            presenter.on_commit_resolved.assert_called_once_with("line-你好", "hello")
            self.assertEqual(dispatcher.pending_count, 0)

        asyncio.run(run())

    def test_out_of_order_completions_land_on_their_own_lines(self) -> None:
        async def run() -> None:
            translator = _ScriptedTranslator()
            presenter = _presenter()
            dispatcher = TranslationDispatcher(asyncio.get_running_loop(), translator, presenter)

            dispatcher.dispatch(_final("一", 1))
            dispatcher.dispatch(_final("二", 2))
            await asyncio.sleep(0)
            translator.waiters["二"].set_result(TranslationResult("two"))
            await asyncio.sleep(0)
            translator.waiters["一"].set_result(TranslationResult("one"))
            await dispatcher.drain()

            resolved = [call.args for call in presenter.on_commit_resolved.call_args_list]
            self.assertEqual(resolved, [("line-二", "two"), ("line-一", "one")])

        asyncio.run(run())

    def test_superseded_job_never_reaches_presenter(self) -> None:
        async def run() -> None:
            translator = _ScriptedTranslator()
            presenter = _presenter()
            dispatcher = TranslationDispatcher(asyncio.get_running_loop(), translator, presenter)

            dispatcher.dispatch(_final("旧", 7))
            dispatcher.dispatch(_final("新", 7))
            await asyncio.sleep(0)
            translator.waiters["新"].set_result(TranslationResult("new"))
            await asyncio.sleep(0)
            translator.waiters["旧"].set_result(TranslationResult("old"))
            await dispatcher.drain()

            presenter.on_commit_resolved.assert_called_once_with("line-新", "new")
            self.assertEqual(dispatcher.pending_count, 0)

        asyncio.run(run())

    def test_failed_translation_uses_placeholder(self) -> None:
        async def run() -> None:
            translator = MagicMock()
            translator.translate = AsyncMock(return_value=TranslationResult("", "translation_failed: timeout"))
            presenter = _presenter()
            metrics = MagicMock()
            metrics.enabled = True
            dispatcher = TranslationDispatcher(
                asyncio.get_running_loop(),
                translator,
                presenter,
                placeholder="[n/a]",
                metrics=metrics,
            )

            dispatcher.dispatch(_final("你好", 1))
            await dispatcher.drain()

            presenter.on_commit_resolved.assert_called_once_with("line-你好", "[n/a]")
            self.assertEqual(dispatcher.translation_fallbacks, 1)
            payload = metrics.record_segment.call_args.args[0]
            self.assertTrue(payload["had_fallback"])
            self.assertEqual(payload["text_length"], 2)
            self.assertNotIn("text", payload)

        asyncio.run(run())

    def test_raising_translator_is_contained(self) -> None:
        async def run() -> None:
            translator = MagicMock()
            translator.translate = AsyncMock(side_effect=RuntimeError("boom"))
            presenter = _presenter()
            dispatcher = TranslationDispatcher(asyncio.get_running_loop(), translator, presenter)

            dispatcher.dispatch(_final("你好", 1))
            await dispatcher.drain()

            presenter.on_commit_resolved.assert_called_once_with(
                "line-你好", TranslationDispatcher.DEFAULT_PLACEHOLDER
            )

        asyncio.run(run())

    def test_preview_translates_and_blank_clears_immediately(self) -> None:
        async def run() -> None:
            translator = MagicMock()
            translator.translate = AsyncMock(return_value=TranslationResult("we"))
            presenter = _presenter()
            dispatcher = TranslationDispatcher(asyncio.get_running_loop(), translator, presenter)

            dispatcher.preview("")
            presenter.on_preview.assert_called_once_with("", "")

            dispatcher.dispatch(Segment(text="我们", kind=SegmentKind.INTERIM, sequence_id=0))
            await dispatcher.drain()

            presenter.on_preview.assert_called_with("我们", "we")
            presenter.on_commit_placeholder.assert_not_called()
            self.assertEqual(dispatcher.pending_count, 0)

        asyncio.run(run())

    def test_cleared_preview_is_not_restored_by_late_translation(self) -> None:
        async def run() -> None:
            translator = _ScriptedTranslator()
            presenter = _presenter()
            dispatcher = TranslationDispatcher(asyncio.get_running_loop(), translator, presenter)

            dispatcher.preview("你好")
            await asyncio.sleep(0)
            dispatcher.preview("")
            translator.waiters["你好"].set_result(TranslationResult("hello"))
            await dispatcher.drain()

            previews = [call.args for call in presenter.on_preview.call_args_list]
            self.assertEqual(previews, [("", "")])

        asyncio.run(run())

    def test_commit_discards_preview_still_in_flight(self) -> None:
        async def run() -> None:
            translator = _ScriptedTranslator()
            presenter = _presenter()
            dispatcher = TranslationDispatcher(asyncio.get_running_loop(), translator, presenter)

            dispatcher.preview("你好")
            await asyncio.sleep(0)
            dispatcher.dispatch(_final("你好，", 1))
            await asyncio.sleep(0)
            translator.waiters["你好"].set_result(TranslationResult("hello"))
            translator.waiters["你好，"].set_result(TranslationResult("Hello,"))
            await dispatcher.drain()

            presenter.on_preview.assert_not_called()
            presenter.on_commit_resolved.assert_called_once_with("line-你好，", "Hello,")

        asyncio.run(run())

    def test_newer_preview_still_shown_after_clear(self) -> None:
        async def run() -> None:
            translator = _ScriptedTranslator()
            presenter = _presenter()
            dispatcher = TranslationDispatcher(asyncio.get_running_loop(), translator, presenter)

            dispatcher.preview("")
            dispatcher.preview("世界")
            await asyncio.sleep(0)
            translator.waiters["世界"].set_result(TranslationResult("world"))
            await dispatcher.drain()

            presenter.on_preview.assert_called_with("世界", "world")

        asyncio.run(run())

    def test_cancel_all_stops_in_flight_jobs(self) -> None:
        async def run() -> None:
            translator = _ScriptedTranslator()
            presenter = _presenter()
            dispatcher = TranslationDispatcher(asyncio.get_running_loop(), translator, presenter)

            dispatcher.dispatch(_final("你好", 1))
            await asyncio.sleep(0)
            dispatcher.cancel_all()
            await dispatcher.drain()

            presenter.on_commit_resolved.assert_not_called()

        asyncio.run(run())


if __name__ == "__main__":
    unittest.main()
