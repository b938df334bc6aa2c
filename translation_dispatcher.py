from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from time import perf_counter
from typing import Any, Coroutine, Optional, Protocol

from metrics_reporter import SessionMetricsReporter
from transcript_reconciler import Segment, SegmentKind
from translation_service import TranslationProvider, TranslationResult


class JobStatus(Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    SUPERSEDED = "superseded"


@dataclass(eq=False)
class TranslationJob:
    segment_id: int
    source_text: str
    handle: Any = None
    status: JobStatus = JobStatus.PENDING
    dispatched_at: float = field(default_factory=perf_counter)


class Presenter(Protocol):
    def on_preview(self, text: str, translation: str) -> None:
        ...

    def on_commit_placeholder(self, segment_id: int, text: str) -> Any:
        ...

    def on_commit_resolved(self, handle: Any, translated_text: str) -> None:
        ...

    def on_clear(self) -> None:
        ...


class TranslationDispatcher:
    """Fire-and-forget translation of committed segments and previews.

    Committed segments are shown at once with a placeholder and tracked in a
    pending map keyed by segment id; a completion is applied only while its
    job still owns that slot. Previews are untracked and simply shown in
    arrival order.
    """

    DEFAULT_PLACEHOLDER = "[translation unavailable]"

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        translator: TranslationProvider,
        presenter: Presenter,
        placeholder: str = DEFAULT_PLACEHOLDER,
        metrics: Optional[SessionMetricsReporter] = None,
    ) -> None:
        self._loop = loop
        self._translator = translator
        self._presenter = presenter
        self._placeholder = placeholder
        self._metrics = metrics
        self._pending: dict[int, TranslationJob] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        # Bumped whenever the preview line is cleared or promoted to a commit.
        self._preview_generation = 0
        self.translation_fallbacks = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def dispatch(self, segment: Segment) -> None:
        if segment.kind is not SegmentKind.FINAL:
            self.preview(segment.text)
            return
        self._preview_generation += 1
        handle = self._presenter.on_commit_placeholder(segment.sequence_id, segment.text)
        job = TranslationJob(segment_id=segment.sequence_id, source_text=segment.text, handle=handle)
        self._pending[segment.sequence_id] = job
        self._spawn(self._run_job(job), name=f"translate-segment-{segment.sequence_id}")

    def preview(self, text: str) -> None:
        if not text.strip():
            self._preview_generation += 1
            self._presenter.on_preview("", "")
            return
        self._spawn(self._run_preview(text, self._preview_generation), name="translate-preview")

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_job(self, job: TranslationJob) -> None:
        result = await self._translate(job.source_text)
        self._complete(job, result)

    async def _run_preview(self, text: str, generation: int) -> None:
        result = await self._translate(text)
        if generation != self._preview_generation:
            logging.debug("preview_dropped generation=%d current=%d", generation, self._preview_generation)
            return
        self._presenter.on_preview(text, result.text if result.ok else self._placeholder)

    async def _translate(self, text: str) -> TranslationResult:
        try:
            return await self._translator.translate(text)
        except Exception as exc:  # noqa: BLE001 - translation boundary
            return TranslationResult("", fallback_reason=f"translation_failed: {exc}")

    def _complete(self, job: TranslationJob, result: TranslationResult) -> None:
        if self._pending.get(job.segment_id) is not job:
            job.status = JobStatus.SUPERSEDED
            logging.debug("translation_superseded segment=%d", job.segment_id)
            return
        del self._pending[job.segment_id]
        job.status = JobStatus.RESOLVED
        translated = result.text if result.ok else self._placeholder
        if not result.ok:
            self.translation_fallbacks += 1
            logging.warning("translation_fallback segment=%d reason=%s", job.segment_id, result.fallback_reason)
        self._presenter.on_commit_resolved(job.handle, translated)
        self._record_segment(job, result)

    def _record_segment(self, job: TranslationJob, result: TranslationResult) -> None:
        if self._metrics is None or not self._metrics.enabled:
            return
        self._metrics.record_segment(
            {
                "event_type": "segment",
                "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
                "segment_id": job.segment_id,
                "text_length": len(job.source_text),
                "latency_total_s": perf_counter() - job.dispatched_at,
                "had_fallback": not result.ok,
                "fallback_reason": result.fallback_reason,
            }
        )

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = self._loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
