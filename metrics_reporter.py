from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import numpy as np

# Session event types counted in the summary, keyed by their summary field.
SUMMARY_EVENT_FIELDS: dict[str, str] = {
    "session_restarts": "session_restart",
    "watchdog_stalls": "watchdog_stall",
    "forced_finalizations": "forced_finalize",
    "session_refreshes": "session_refresh",
    "engine_errors": "engine_error",
}


@dataclass
class SessionTally:
    started_at: datetime
    translation_latencies: list[float] = field(default_factory=list)
    fallback_segments: int = 0
    events: Counter[str] = field(default_factory=Counter)

    @property
    def segments(self) -> int:
        return len(self.translation_latencies)

    def latency_percentile(self, pct: float) -> float:
        if not self.translation_latencies:
            return 0.0
        return float(np.percentile(self.translation_latencies, pct))


class SessionMetricsReporter:
    """JSONL log of one listening session plus a JSON summary written on finalize.

    Only counters, timings and lengths are recorded, never transcript text.
    """

    def __init__(self, enabled: bool, output_path: str, summary_path: str, append_mode: bool = False) -> None:
        self._enabled = enabled
        self._output_path = Path(output_path)
        self._summary_path = Path(summary_path)
        self._append_mode = append_mode
        self._tally: Optional[SessionTally] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def session_active(self) -> bool:
        return self._tally is not None

    def start_session(self) -> None:
        if not self._enabled:
            return
        self._tally = SessionTally(started_at=datetime.now())
        self._output_path.parent.mkdir(parents=True, exist_ok=True)
        if not self._append_mode:
            self._output_path.write_text("", encoding="utf-8")

    def record_segment(self, payload: dict[str, Any]) -> None:
        tally = self._tally
        if tally is None:
            return
        tally.translation_latencies.append(float(payload.get("latency_total_s") or 0.0))
        if payload.get("had_fallback"):
            tally.fallback_segments += 1
        self._write_event(payload)

    def record_session_event(self, event_type: str, **details: Any) -> None:
        tally = self._tally
        if tally is None:
            return
        tally.events[event_type] += 1
        self._write_event(
            {
                "event_type": event_type,
                "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
                **details,
            }
        )

    def finalize_session(self) -> dict[str, Any]:
        tally, self._tally = self._tally, None
        if tally is None:
            return {}
        summary = self._build_summary(tally, datetime.now())
        self._summary_path.parent.mkdir(parents=True, exist_ok=True)
        self._summary_path.write_text(json.dumps(summary, ensure_ascii=False, indent=2), encoding="utf-8")
        return summary

    @staticmethod
    def _build_summary(tally: SessionTally, ended_at: datetime) -> dict[str, Any]:
        latencies = tally.translation_latencies
        errors = tally.events["engine_error"]
        summary: dict[str, Any] = {
            "session_started_at": tally.started_at.isoformat(timespec="milliseconds"),
            "session_ended_at": ended_at.isoformat(timespec="milliseconds"),
            "session_duration_s": max(0.0, (ended_at - tally.started_at).total_seconds()),
            "segments_logged": tally.segments,
            "fallback_segments": tally.fallback_segments,
        }
        for summary_field, event_type in SUMMARY_EVENT_FIELDS.items():
            summary[summary_field] = tally.events[event_type]
        summary.update(
            {
                "issue_rate_pct": (tally.fallback_segments + errors) / max(1, tally.segments + errors) * 100.0,
                "translation_latency_avg_s": float(np.mean(latencies)) if latencies else 0.0,
                "translation_latency_p50_s": tally.latency_percentile(50),
                "translation_latency_p95_s": tally.latency_percentile(95),
                "translation_latency_max_s": max(latencies, default=0.0),
            }
        )
        return summary

    def _write_event(self, payload: dict[str, Any]) -> None:
        self._output_path.parent.mkdir(parents=True, exist_ok=True)
        with self._output_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False))
            handle.write("\n")
