from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from config_utils import monotonic_ms

# Shortest text up to and including the first full-width or ASCII mark.
PUNCTUATION_CUT_RE = re.compile(r"^(.+?)([，。？！；,!?.])(.*)$", re.DOTALL)


class SegmentKind(Enum):
    INTERIM = "interim"
    FINAL = "final"


@dataclass(frozen=True)
class Segment:
    text: str
    kind: SegmentKind
    sequence_id: int


@dataclass(frozen=True)
class PreviewUpdated:
    text: str


@dataclass(frozen=True)
class SegmentCommitted:
    segment: Segment


@dataclass(frozen=True)
class SessionConsumed:
    final_text: str


ReconcilerEvent = Union[SessionConsumed, PreviewUpdated, SegmentCommitted]


class TranscriptReconciler:
    """Turn overlapping (final, interim) engine frames into ordered commits.

    ``committed_buffer`` holds the text of the current utterance that was
    already committed from interim punctuation cuts, so neither later interims
    nor the closing final re-emit it.
    """

    def __init__(
        self,
        throttle_ms: float = 600.0,
        min_growth_chars: int = 2,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self._throttle_ms = throttle_ms
        self._min_growth_chars = min_growth_chars
        self._clock = clock
        self._ids = itertools.count(1)
        self._committed = ""
        self._cut_in_flight = False
        self._last_preview_at: Optional[float] = None
        self._last_preview_length = 0

    @property
    def committed_buffer(self) -> str:
        return self._committed

    def on_frame(self, final: str, interim: str) -> list[ReconcilerEvent]:
        events: list[ReconcilerEvent] = []
        if final:
            events.extend(self._consume_final(final))
        if interim and not self._cut_in_flight:
            events.extend(self._consume_interim(interim))
        return events

    def reset_session(self) -> list[ReconcilerEvent]:
        self._committed = ""
        self._cut_in_flight = False
        self._reset_throttle()
        return [PreviewUpdated("")]

    def _consume_final(self, final: str) -> list[ReconcilerEvent]:
        remaining = self._strip_committed(final)
        # Cleared before emitting so the next utterance starts from scratch.
        self._committed = ""
        self._cut_in_flight = False
        self._reset_throttle()
        events: list[ReconcilerEvent] = [SessionConsumed(final)]
        if remaining.strip():
            events.append(SegmentCommitted(self._mint(remaining)))
        return events

    def _consume_interim(self, interim: str) -> list[ReconcilerEvent]:
        effective = self._strip_committed(interim)
        if not effective.strip():
            return []

        match = PUNCTUATION_CUT_RE.match(effective)
        if match is not None:
            self._cut_in_flight = True
            try:
                chunk = match.group(1) + match.group(2)
                self._committed += chunk
                committed = SegmentCommitted(self._mint(chunk))
                self._reset_throttle()
            finally:
                self._cut_in_flight = False
            return [committed]

        now = self._clock()
        grew_by = len(effective) - self._last_preview_length
        window_open = self._last_preview_at is None or now - self._last_preview_at >= self._throttle_ms
        if not window_open and grew_by <= self._min_growth_chars:
            return []
        self._last_preview_at = now
        self._last_preview_length = len(effective)
        return [PreviewUpdated(effective)]

    def _strip_committed(self, text: str) -> str:
        committed = self._committed
        if not committed:
            return text
        if text.startswith(committed):
            return text[len(committed) :]
        # The engine revised earlier words; trust the committed length, not its content.
        if len(text) > len(committed):
            return text[len(committed) :]
        return ""

    def _reset_throttle(self) -> None:
        self._last_preview_at = None
        self._last_preview_length = 0

    def _mint(self, text: str) -> Segment:
        return Segment(text=text, kind=SegmentKind.FINAL, sequence_id=next(self._ids))
