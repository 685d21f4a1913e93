"""Tests for structured logging and session metrics."""

import json
import logging

from sovits_player.logging import StructuredFormatter, get_logger
from sovits_player.metrics import SessionMetrics


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="sovits_player.client",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Attempt %d/%d failed",
        args=(1, 3),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_context_fields_included(self):
        line = StructuredFormatter().format(
            make_record(session_id="abc123", event="attempt_failed", attempt=1, status=500)
        )
        entry = json.loads(line)
        assert entry["message"] == "Attempt 1/3 failed"
        assert entry["level"] == "WARNING"
        assert entry["session_id"] == "abc123"
        assert entry["attempt"] == 1
        assert entry["status"] == 500
        assert "error_code" not in entry

    def test_non_ascii_kept_readable(self):
        record = make_record()
        record.msg, record.args = "合成失败", ()
        assert "合成失败" in StructuredFormatter().format(record)

    def test_logger_namespace(self):
        assert get_logger("orchestrator").name == "sovits_player.orchestrator"


class TestSessionMetrics:
    def test_mark_keeps_first_value(self):
        m = SessionMetrics()
        m.request_started_at = 10.0
        m.first_byte_at = 10.25
        m.mark("first_byte")
        assert m.first_byte_at == 10.25
        assert m.first_byte_latency_ms == 250.0

    def test_latencies_zero_until_marked(self):
        m = SessionMetrics()
        assert m.first_audio_latency_ms == 0.0
        assert m.drain_wait_ms == 0.0

    def test_summary(self):
        m = SessionMetrics(session_id="s1")
        m.request_started_at = 1.0
        m.first_audio_at = 1.5
        m.stream_finished_at = 3.0
        m.drained_at = 3.2
        m.buffers_enqueued = 4
        summary = m.summary()
        assert summary["session_id"] == "s1"
        assert summary["first_audio_latency_ms"] == 500.0
        assert summary["stream_duration_ms"] == 2000.0
        assert summary["drain_wait_ms"] == 200.0
        assert summary["buffers_enqueued"] == 4

    def test_disabled_metrics_do_not_log(self, caplog):
        with caplog.at_level(logging.INFO, logger="sovits_player.metrics"):
            SessionMetrics(enabled=False).emit()
            SessionMetrics(session_id="on").emit()
        assert len(caplog.records) == 1
        assert caplog.records[0].session_id == "on"
