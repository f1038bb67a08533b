"""Tests for per-session logging, metrics and traces."""

from __future__ import annotations

import json
import logging
import os
import time

import pytest

from visaire.logger import SESSION_END, SESSION_START, SessionLogger, prune_sessions
from visaire.models.types import Action, ExecutionRecord


@pytest.fixture
def session(tmp_path):
    log = SessionLogger(tmp_path / "sess_test", session_id="sess_test")
    log.start({"provider": "claude"})
    yield log
    log.end_session()


class TestSessionLog:
    def test_start_and_end_markers(self, session):
        session.end_session({"actions": 2})
        entries = session.read_entries()
        assert entries[0]["message"] == SESSION_START
        assert entries[0]["data"] == {"provider": "claude"}
        assert entries[-1]["message"] == SESSION_END
        assert entries[-1]["data"]["actions"] == 2
        assert all(e["sessionId"] == "sess_test" for e in entries)
        assert (session.session_dir / "metrics.json").exists()
        assert not session.active

    def test_end_is_idempotent(self, session):
        session.end_session()
        session.end_session()
        markers = [e for e in session.read_entries() if e["message"] == SESSION_END]
        assert len(markers) == 1

    def test_module_loggers_captured(self, session):
        logging.getLogger("visaire.tools.exec").warning("command %s slow", "ls")
        logging.getLogger("elsewhere").warning("not ours")
        messages = [e["message"] for e in session.read_entries()]
        assert "command ls slow" in messages
        assert "not ours" not in messages

    def test_secrets_redacted(self, session):
        session.info("using key sk-ant-" + "a" * 30, {"apiKey": "raw", "path": "x.txt"})
        entry = session.read_entries()[-1]
        assert "sk-ant-" not in entry["message"]
        assert entry["data"] == {"apiKey": "[REDACTED]", "path": "x.txt"}

    def test_errors_kept_in_ring(self, session):
        session.error("boom", {"stage": "llm"}, exc=ValueError("bad"))
        assert session.level_counts()["error"] == 1
        recent = session.recent_errors()
        assert recent[0]["message"] == "boom"
        assert recent[0]["data"]["errorType"] == "ValueError"

    def test_export_formats(self, session):
        session.info("hello")
        assert json.loads(session.export("json"))[-1]["message"] == "hello"
        assert "INFO: hello" in session.export("txt")
        with pytest.raises(ValueError):
            session.export("csv")


class TestMetrics:
    def test_action_metrics(self, session):
        action = Action(type="writeFile", tool="filesystem", method="writeFile")
        session.log_action(action, ExecutionRecord(tool="filesystem", method="writeFile",
                                                   success=True, duration=0.2))
        session.log_action(action, ExecutionRecord(tool="filesystem", method="writeFile",
                                                   success=False, duration=0.1))
        stats = session.metrics()["actions"]["writeFile"]
        assert stats["count"] == 2
        assert stats["successes"] == 1
        assert stats["failures"] == 1
        assert stats["total_time"] == pytest.approx(0.3)

    def test_performance_stats(self, session):
        for seconds in (0.1, 0.3):
            session.record_performance("llm", seconds)
        stats = session.performance["llm"]
        assert stats["count"] == 2
        assert stats["avg"] == pytest.approx(0.2)
        assert stats["min"] == 0.1
        assert stats["max"] == 0.3

    def test_traces(self, session):
        trace_id = session.start_trace("prompt", {"token": "secret"})
        session.add_trace_event(trace_id, "llm_done")
        session.end_trace(trace_id, {"ok": True})
        session.add_trace_event("missing", "ignored")

        trace = session.traces[0]
        assert trace["name"] == "prompt"
        assert trace["data"] == {"token": "[REDACTED]"}
        assert [e["name"] for e in trace["events"]] == ["llm_done"]
        assert "trace:prompt" in session.performance

        session.end_session()
        saved = json.loads((session.session_dir / "traces.json").read_text())
        assert saved[0]["id"] == trace_id


def test_prune_sessions(tmp_path):
    root = tmp_path / "sessions"
    old = root / "sess_old"
    fresh = root / "sess_new"
    for d in (old, fresh):
        d.mkdir(parents=True)
        (d / "session.log").write_text("{}\n")

    stale = time.time() - 40 * 86400
    os.utime(old / "session.log", (stale, stale))
    os.utime(old, (stale, stale))

    assert prune_sessions(root, max_age_days=30) == 1
    assert not old.exists()
    assert fresh.exists()
    assert prune_sessions(tmp_path / "absent") == 0


def test_redaction_can_be_disabled(tmp_path):
    log = SessionLogger(tmp_path / "sess_raw", session_id="sess_raw", redact=False)
    log.start()
    try:
        log.info("token sk-ant-" + "a" * 30, {"apiKey": "raw"})
        entry = log.read_entries()[-1]
        assert "sk-ant-" in entry["message"]
        assert entry["data"] == {"apiKey": "raw"}

        trace_id = log.start_trace("prompt", {"token": "raw"})
        log.end_trace(trace_id)
        assert log.traces[0]["data"] == {"token": "raw"}
    finally:
        log.end_session()
