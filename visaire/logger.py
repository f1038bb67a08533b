"""Per-session structured logging, metrics and tracing.

Each agent session owns a directory under the data root:

  <data_root>/sessions/<session_id>/session.log     JSON per line
  <data_root>/sessions/<session_id>/metrics.json    written on end_session
  <data_root>/sessions/<session_id>/traces.json     written when traces exist

Records from every ``visaire.*`` module logger are captured by a
JsonLinesHandler attached to the package logger for the session lifetime,
so modules keep using plain ``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

from .models.types import Action, ExecutionRecord, new_id
from .redact import redact_data, redact_secrets

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "visaire"
SESSION_START = "SESSION_START"
SESSION_END = "SESSION_END"
ERROR_RING_SIZE = 100


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class JsonLinesHandler(logging.Handler):
    """Writes one JSON object per record and keeps per-level counters."""

    def __init__(self, path: Path, session_id: str, redact: bool = True) -> None:
        super().__init__(level=logging.DEBUG)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.session_id = session_id
        self.redact = redact
        self.level_counts: dict[str, int] = {}
        self.errors: deque[dict[str, Any]] = deque(maxlen=ERROR_RING_SIZE)
        self._stream: IO[str] | None = open(path, "a", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = record.levelname.lower()
            self.level_counts[level] = self.level_counts.get(level, 0) + 1

            message = record.getMessage()
            data = getattr(record, "data", None)
            if self.redact:
                message = redact_secrets(message)
                data = redact_data(data)

            entry: dict[str, Any] = {
                "timestamp": _now_iso(),
                "level": level,
                "sessionId": self.session_id,
                "logger": record.name,
                "message": message,
            }
            if data is not None:
                entry["data"] = data
            if record.exc_info and record.exc_info[1] is not None:
                entry["error"] = {
                    "type": type(record.exc_info[1]).__name__,
                    "message": str(record.exc_info[1]),
                }

            if record.levelno >= logging.ERROR:
                self.errors.append(
                    {"timestamp": entry["timestamp"], "message": message, "data": data}
                )

            if self._stream is not None:
                self._stream.write(json.dumps(entry, default=str) + "\n")
                self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
        finally:
            self.release()
        super().close()


class SessionLogger:
    """Session-scoped log file plus in-memory metrics and traces."""

    def __init__(
        self,
        session_dir: Path,
        session_id: str | None = None,
        redact: bool = True,
    ) -> None:
        self.session_id = session_id or new_id("sess")
        self.session_dir = Path(session_dir)
        self.log_path = self.session_dir / "session.log"
        self._redact = redact
        self._log = logging.getLogger(f"{PACKAGE_LOGGER}.session")
        self._handler: JsonLinesHandler | None = None
        self._previous_level = logging.NOTSET
        self._started_at: float | None = None
        self._ended = False

        self.action_metrics: dict[str, dict[str, float]] = {}
        self.performance: dict[str, dict[str, float]] = {}
        self._active_traces: dict[str, dict[str, Any]] = {}
        self.traces: list[dict[str, Any]] = []

    # --- Lifecycle ---

    def start(self, metadata: dict[str, Any] | None = None) -> None:
        if self._handler is not None:
            return
        self._handler = JsonLinesHandler(self.log_path, self.session_id, self._redact)
        pkg = logging.getLogger(PACKAGE_LOGGER)
        self._previous_level = pkg.level
        pkg.setLevel(logging.DEBUG)
        pkg.addHandler(self._handler)
        self._started_at = time.monotonic()
        self.info(SESSION_START, metadata or {})

    def end_session(self, summary: dict[str, Any] | None = None) -> None:
        """Write the SESSION_END marker and sidecars. Safe to call repeatedly."""
        if self._ended or self._handler is None:
            return
        self._ended = True
        duration = time.monotonic() - (self._started_at or time.monotonic())
        self.info(SESSION_END, {"duration": round(duration, 3), **(summary or {})})

        self._write_json(self.session_dir / "metrics.json", self.metrics())
        if self.traces or self._active_traces:
            self._write_json(
                self.session_dir / "traces.json",
                self.traces + list(self._active_traces.values()),
            )

        pkg = logging.getLogger(PACKAGE_LOGGER)
        pkg.removeHandler(self._handler)
        pkg.setLevel(self._previous_level)
        self._handler.close()

    @property
    def active(self) -> bool:
        return self._handler is not None and not self._ended

    # --- Logging ---

    def log(self, level: int, message: str, data: dict[str, Any] | None = None) -> None:
        self._log.log(level, message, extra={"data": data})

    def debug(self, message: str, data: dict[str, Any] | None = None) -> None:
        self.log(logging.DEBUG, message, data)

    def info(self, message: str, data: dict[str, Any] | None = None) -> None:
        self.log(logging.INFO, message, data)

    def warning(self, message: str, data: dict[str, Any] | None = None) -> None:
        self.log(logging.WARNING, message, data)

    def error(
        self,
        message: str,
        data: dict[str, Any] | None = None,
        exc: BaseException | None = None,
    ) -> None:
        payload = dict(data or {})
        if exc is not None:
            payload["errorType"] = type(exc).__name__
            payload["error"] = str(exc)
        self.log(logging.ERROR, message, payload)

    def log_action(self, action: Action, record: ExecutionRecord) -> None:
        stats = self.action_metrics.setdefault(
            action.type,
            {"count": 0, "successes": 0, "failures": 0, "total_time": 0.0},
        )
        stats["count"] += 1
        stats["successes" if record.success else "failures"] += 1
        stats["total_time"] += record.duration
        self.info(
            "action executed" if record.success else "action failed",
            {
                "actionId": action.id,
                "type": action.type,
                "tool": action.tool,
                "method": action.method,
                "success": record.success,
                "duration": round(record.duration, 4),
                "error": record.error,
            },
        )

    def record_performance(self, name: str, seconds: float) -> None:
        stats = self.performance.get(name)
        if stats is None:
            self.performance[name] = {
                "count": 1,
                "total": seconds,
                "avg": seconds,
                "min": seconds,
                "max": seconds,
            }
            return
        stats["count"] += 1
        stats["total"] += seconds
        stats["avg"] = stats["total"] / stats["count"]
        stats["min"] = min(stats["min"], seconds)
        stats["max"] = max(stats["max"], seconds)

    # --- Tracing ---

    def _scrub(self, data: dict[str, Any] | None) -> dict[str, Any]:
        return redact_data(data or {}) if self._redact else dict(data or {})


    def start_trace(self, name: str, data: dict[str, Any] | None = None) -> str:
        trace_id = new_id("trace")
        self._active_traces[trace_id] = {
            "id": trace_id,
            "name": name,
            "start": _now_iso(),
            "_t0": time.monotonic(),
            "data": self._scrub(data),
            "events": [],
        }
        return trace_id

    def add_trace_event(
        self, trace_id: str, name: str, data: dict[str, Any] | None = None
    ) -> None:
        trace = self._active_traces.get(trace_id)
        if trace is None:
            return
        trace["events"].append(
            {
                "name": name,
                "timestamp": _now_iso(),
                "elapsed": round(time.monotonic() - trace["_t0"], 4),
                "data": self._scrub(data),
            }
        )

    def end_trace(self, trace_id: str, result: dict[str, Any] | None = None) -> None:
        trace = self._active_traces.pop(trace_id, None)
        if trace is None:
            return
        t0 = trace.pop("_t0")
        trace["end"] = _now_iso()
        trace["duration"] = round(time.monotonic() - t0, 4)
        trace["result"] = self._scrub(result)
        self.traces.append(trace)
        self.record_performance(f"trace:{trace['name']}", trace["duration"])

    # --- Reporting ---

    def level_counts(self) -> dict[str, int]:
        return dict(self._handler.level_counts) if self._handler else {}

    def recent_errors(self, limit: int = 5) -> list[dict[str, Any]]:
        if self._handler is None:
            return []
        return list(self._handler.errors)[-limit:]

    def metrics(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "levels": self.level_counts(),
            "actions": self.action_metrics,
            "performance": self.performance,
            "recentErrors": self.recent_errors(),
        }

    def export(self, fmt: str = "json") -> str:
        """Export the session log as a JSON array or as plain text lines."""
        entries = self.read_entries()
        if fmt == "json":
            return json.dumps(entries, indent=2, default=str)
        if fmt == "txt":
            return "\n".join(
                f"[{e.get('timestamp')}] {str(e.get('level', '')).upper()}: {e.get('message')}"
                for e in entries
            )
        raise ValueError(f"Unsupported export format: {fmt}")

    def read_entries(self) -> list[dict[str, Any]]:
        if not self.log_path.exists():
            return []
        entries = []
        for line in self.log_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping malformed log line in %s", self.log_path)
        return entries

    def _write_json(self, path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")


def prune_sessions(sessions_root: Path, max_age_days: int = 30) -> int:
    """Remove session directories untouched for more than ``max_age_days``."""
    if not sessions_root.exists():
        return 0
    cutoff = time.time() - max_age_days * 86400
    removed = 0
    for session_dir in sessions_root.iterdir():
        if not session_dir.is_dir():
            continue
        try:
            newest = max(
                (p.stat().st_mtime for p in session_dir.rglob("*")),
                default=session_dir.stat().st_mtime,
            )
        except OSError:
            continue
        if newest < cutoff:
            shutil.rmtree(session_dir, ignore_errors=True)
            removed += 1
    if removed:
        logger.info("Pruned %d session directories older than %d days", removed, max_age_days)
    return removed
