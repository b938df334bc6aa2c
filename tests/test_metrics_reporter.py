from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from metrics_reporter import SessionMetricsReporter


class SessionMetricsReporterTests(unittest.TestCase):
    def test_writes_jsonl_and_summary(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            output = Path(tmpdir) / "session_metrics.jsonl"
            summary = Path(tmpdir) / "session_summary.json"
            reporter = SessionMetricsReporter(True, str(output), str(summary))
            reporter.start_session()
            self.assertTrue(reporter.session_active)
            reporter.record_segment(
                {
                    "event_type": "segment",
                    "latency_total_s": 1.2,
                    "had_fallback": False,
                }
            )
            reporter.record_segment(
                {
                    "event_type": "segment",
                    "latency_total_s": 2.8,
                    "had_fallback": True,
                }
            )
            reporter.record_session_event("watchdog_stall", inactivity_ms=4100.0)
            reporter.record_session_event("session_restart", reason="watchdog_stall")
            reporter.record_session_event("engine_error", code="network", fatal=False)
            result = reporter.finalize_session()

            self.assertFalse(reporter.session_active)
            self.assertTrue(output.exists())
            self.assertTrue(summary.exists())
            self.assertEqual(result["segments_logged"], 2)
            self.assertEqual(result["fallback_segments"], 1)
            self.assertEqual(result["watchdog_stalls"], 1)
            self.assertEqual(result["session_restarts"], 1)
            self.assertEqual(result["engine_errors"], 1)
            self.assertEqual(result["forced_finalizations"], 0)
            self.assertAlmostEqual(result["translation_latency_avg_s"], 2.0)
            self.assertAlmostEqual(result["translation_latency_max_s"], 2.8)
            self.assertGreater(result["translation_latency_p95_s"], 2.0)
            # One fallback segment plus one engine error over three outcomes.
            self.assertAlmostEqual(result["issue_rate_pct"], 200.0 / 3.0)

            lines = output.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 5)
            parsed = [json.loads(line) for line in lines]
            self.assertEqual(parsed[0]["event_type"], "segment")
            self.assertEqual(parsed[2]["event_type"], "watchdog_stall")
            self.assertEqual(parsed[-1]["code"], "network")

            saved_summary = json.loads(summary.read_text(encoding="utf-8"))
            self.assertEqual(saved_summary["segments_logged"], 2)

    def test_events_outside_a_session_are_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            output = Path(tmpdir) / "metrics.jsonl"
            reporter = SessionMetricsReporter(True, str(output), str(Path(tmpdir) / "summary.json"))
            reporter.record_session_event("session_restart", reason="refresh")

            self.assertFalse(output.exists())
            self.assertEqual(reporter.finalize_session(), {})

    def test_append_mode_keeps_previous_sessions(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            output = Path(tmpdir) / "metrics.jsonl"
            reporter = SessionMetricsReporter(True, str(output), str(Path(tmpdir) / "summary.json"), append_mode=True)
            for _ in range(2):
                reporter.start_session()
                reporter.record_session_event("session_refresh", age_ms=31000.0)
                reporter.finalize_session()

            self.assertEqual(len(output.read_text(encoding="utf-8").splitlines()), 2)

    def test_disabled_reporter_writes_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            output = Path(tmpdir) / "metrics.jsonl"
            summary = Path(tmpdir) / "summary.json"
            reporter = SessionMetricsReporter(False, str(output), str(summary))
            reporter.start_session()
            reporter.record_session_event("session_restart", reason="refresh")

            self.assertEqual(reporter.finalize_session(), {})
            self.assertFalse(output.exists())
            self.assertFalse(summary.exists())


if __name__ == "__main__":
    unittest.main()
