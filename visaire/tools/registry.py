"""Tool registry: schemas, validation, bounded execution, metrics and history."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any

from pydantic import ValidationError

from ..errors import ErrorKind, ValidationFailed, VisaireError
from ..models.types import Action, ExecutionRecord, ValidationReport
from .base import Tool, ToolSchema

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_CONCURRENT = 3
HISTORY_SIZE = 1000


class ToolRegistry:
    """Registry of tools, keyed by name.

    Every execution is validated first, admitted through a semaphore of
    ``max_concurrent`` slots, and wrapped in a timeout. Failures come back
    as ExecutionRecords with success=False; nothing raises to the caller.
    """

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        history_size: int = HISTORY_SIZE,
    ) -> None:
        self.max_concurrent = max_concurrent
        self.timeout_ms = timeout_ms
        self._tools: dict[str, Tool] = {}
        self._schemas: dict[str, ToolSchema] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._running: dict[str, tuple[asyncio.Task, Tool]] = {}
        self._stopped: set[str] = set()
        self._history: deque[ExecutionRecord] = deque(maxlen=history_size)
        self.reset_metrics()

    # --- Registration ---

    def register(self, name: str, tool: Tool, schema: ToolSchema | None = None) -> None:
        self._tools[name] = tool
        self._schemas[name] = schema or tool.schema()
        logger.debug("Registered tool %s (%d methods)", name, len(self._schemas[name].methods))

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)
        self._schemas.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def schema(self, name: str) -> ToolSchema | None:
        return self._schemas.get(name)

    # --- Validation ---

    def validate(self, action: Action | dict[str, Any]) -> ValidationReport:
        """Ordered checks; the first failing stage short-circuits."""
        # 1. structural shape
        if isinstance(action, dict):
            try:
                action = Action.model_validate(action)
            except ValidationError as e:
                reasons = [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                ]
                return ValidationReport(valid=False, errors=reasons, kind=ErrorKind.INVALID_INPUT)
        structural = [
            f"Action is missing '{name}'"
            for name in ("id", "type", "tool", "method")
            if not str(getattr(action, name) or "").strip()
        ]
        if structural:
            return ValidationReport(valid=False, errors=structural, kind=ErrorKind.INVALID_INPUT)

        # 2. tool is registered
        tool = self._tools.get(action.tool)
        if tool is None:
            return ValidationReport(
                valid=False,
                errors=[f"Unknown tool: {action.tool}"],
                kind=ErrorKind.INVALID_INPUT,
            )

        # 3. method exists
        method = self._schemas[action.tool].methods.get(action.method)
        if method is None:
            return ValidationReport(
                valid=False,
                errors=[f"Unknown method {action.tool}.{action.method}"],
                kind=ErrorKind.INVALID_INPUT,
            )

        # 4. parameters satisfy the method schema
        problems = method.check(action.params)
        if problems:
            return ValidationReport(valid=False, errors=problems, kind=ErrorKind.INVALID_INPUT)

        # 5. tool-specific domain checks
        return tool.validate_action(action, method)

    def require_valid(self, action: Action) -> ValidationReport:
        """Like ``validate`` but raises ValidationFailed for a rejected action."""
        report = self.validate(action)
        if not report.valid:
            raise ValidationFailed(report.errors, report.kind)
        return report

    # --- Execution ---

    async def execute(self, action: Action, timeout: int | None = None) -> ExecutionRecord:
        """Validate and run one action. ``timeout`` is in milliseconds."""
        try:
            report = self.require_valid(action)
        except ValidationFailed as e:
            record = ExecutionRecord(
                action_id=action.id,
                tool=action.tool,
                method=action.method,
                success=False,
                error=e.message,
                kind=e.kind,
            )
            self._finish(record)
            return record
        for warning in report.warnings:
            if warning not in action.warnings:
                action.warnings.append(warning)

        tool = self._tools[action.tool]
        method = self._schemas[action.tool].methods[action.method]
        timeout_s = (timeout or self.timeout_ms) / 1000

        async with self._semaphore:
            started = time.monotonic()
            task = asyncio.ensure_future(tool.invoke(method, action.params, action.options))
            self._running[action.id] = (task, tool)
            try:
                result = await asyncio.wait_for(task, timeout_s)
                record = self._record(action, started, success=True, result=result)
            except TimeoutError:
                logger.warning("%s.%s timed out after %.2fs", action.tool, action.method, timeout_s)
                record = self._record(
                    action,
                    started,
                    error=f"timeout after {timeout_s:g}s",
                    kind=ErrorKind.TIMEOUT,
                )
            except asyncio.CancelledError:
                if action.id not in self._stopped:
                    raise
                record = self._record(
                    action, started, error="cancelled by stop_all", kind=ErrorKind.INTERNAL
                )
            except VisaireError as e:
                record = self._record(
                    action, started, error=e.message, kind=e.kind, result=e.detail or None
                )
            except Exception as e:
                logger.error("%s.%s failed", action.tool, action.method, exc_info=True)
                record = self._record(action, started, error=str(e), kind=ErrorKind.INTERNAL)
            finally:
                self._running.pop(action.id, None)
                self._stopped.discard(action.id)

        self._finish(record)
        return record

    async def execute_sequence(
        self,
        actions: list[Action],
        continue_on_error: bool = True,
        timeout: int | None = None,
    ) -> list[ExecutionRecord]:
        records: list[ExecutionRecord] = []
        for action in actions:
            record = await self.execute(action, timeout=timeout)
            records.append(record)
            if not record.success and not continue_on_error:
                logger.info("Stopping sequence after failed action %s", action.id)
                break
        return records

    async def execute_parallel(
        self,
        actions: list[Action],
        max_concurrency: int | None = None,
        timeout: int | None = None,
    ) -> list[ExecutionRecord]:
        """Run independent actions in ordered batches; results follow input order."""
        batch_size = max(1, max_concurrency or self.max_concurrent)
        records: list[ExecutionRecord] = []
        for start in range(0, len(actions), batch_size):
            batch = actions[start:start + batch_size]
            records.extend(
                await asyncio.gather(*(self.execute(a, timeout=timeout) for a in batch))
            )
        return records

    async def stop_all(self) -> int:
        """Cancel every in-flight execution. Idempotent; returns how many were cancelled."""
        cancelled = 0
        tools: dict[int, Tool] = {}
        for action_id, (task, tool) in list(self._running.items()):
            if task.done() or action_id in self._stopped:
                continue
            self._stopped.add(action_id)
            task.cancel()
            tools[id(tool)] = tool
            cancelled += 1
        for tool in tools.values():
            await tool.cancel()
        if cancelled:
            logger.info("Stopped %d running executions", cancelled)
        return cancelled

    # --- Bookkeeping ---

    def _record(
        self,
        action: Action,
        started: float,
        success: bool = False,
        result: Any = None,
        error: str | None = None,
        kind: ErrorKind | None = None,
    ) -> ExecutionRecord:
        return ExecutionRecord(
            action_id=action.id,
            tool=action.tool,
            method=action.method,
            success=success,
            duration=time.monotonic() - started,
            result=result,
            error=error,
            kind=kind,
        )

    def _finish(self, record: ExecutionRecord) -> None:
        self._history.append(record)
        m = self._metrics
        m["total"] += 1
        m["successful" if record.success else "failed"] += 1
        m["total_time"] += record.duration
        m["average_time"] = m["total_time"] / m["total"]

        stats = self._tool_stats.setdefault(
            record.tool,
            {"executions": 0, "successes": 0, "failures": 0, "total_time": 0.0, "average_time": 0.0},
        )
        stats["executions"] += 1
        stats["successes" if record.success else "failures"] += 1
        stats["total_time"] += record.duration
        stats["average_time"] = stats["total_time"] / stats["executions"]

    def reset_metrics(self) -> None:
        self._metrics: dict[str, float] = {
            "total": 0,
            "successful": 0,
            "failed": 0,
            "total_time": 0.0,
            "average_time": 0.0,
        }
        self._tool_stats: dict[str, dict[str, float]] = {}

    @property
    def metrics(self) -> dict[str, Any]:
        return {**self._metrics, "per_tool": {k: dict(v) for k, v in self._tool_stats.items()}}

    def history(self, limit: int | None = None) -> list[ExecutionRecord]:
        items = list(self._history)
        return items[-limit:] if limit else items

    @property
    def running(self) -> int:
        return len(self._running)

    def status(self) -> dict[str, Any]:
        return {
            "tools": {name: schema.method_names() for name, schema in self._schemas.items()},
            "running": self.running,
            "max_concurrent": self.max_concurrent,
            "timeout_ms": self.timeout_ms,
            "history": len(self._history),
            "metrics": self.metrics,
        }


def create_default_registry(
    tool_security: dict[str, Any] | None = None,
    base_dir: Any = None,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> ToolRegistry:
    """Registry with the four built-in tools configured from ``agent.tool_security``."""
    from ..config import DEFAULT_ALLOWED_COMMANDS, DEFAULT_BLOCKED_COMMANDS
    from .analysis import AnalysisTool
    from .exec import ExecTool
    from .filesystem import DEFAULT_MAX_FILE_SIZE, FilesystemTool
    from .network import NetworkTool

    security = tool_security or {}
    timeout_ms = int(security.get("max_execution_time") or DEFAULT_TIMEOUT_MS)

    filesystem = FilesystemTool(
        max_file_size=int(security.get("max_file_size") or DEFAULT_MAX_FILE_SIZE),
        base_dir=base_dir,
    )
    for extra in security.get("allowed_paths") or []:
        filesystem.allow_path(extra)

    registry = ToolRegistry(max_concurrent=max_concurrent, timeout_ms=timeout_ms)
    registry.register("filesystem", filesystem)
    registry.register(
        "exec",
        ExecTool(
            allowed_commands=security.get("allowed_commands", DEFAULT_ALLOWED_COMMANDS),
            blocked_commands=security.get("blocked_commands", DEFAULT_BLOCKED_COMMANDS),
            timeout_ms=timeout_ms,
            max_output_size=int(security.get("max_output_size") or 1024 * 1024),
            cwd=filesystem.base_dir,
        ),
    )
    registry.register(
        "network",
        NetworkTool(
            allowed_domains=security.get("allowed_domains"),
            blocked_domains=security.get("blocked_domains"),
            filesystem=filesystem,
        ),
    )
    registry.register("analysis", AnalysisTool(filesystem=filesystem))
    return registry
