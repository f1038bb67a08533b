"""Agent orchestrator: prompt -> context -> LLM -> plan -> validate -> confirm -> execute.

The Agent owns every other component for the lifetime of a session: the
tool registry, context builder, conversation store, reasoning engine and
session logger. Components hold no reference back to the Agent; progress
is reported outward through listener callbacks.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from . import get_sessions_dir
from .context import ContextBuilder
from .conversation import ConversationStore
from .errors import ErrorKind, ProviderError, VisaireError
from .llm import LLMFn, create_llm_fn
from .logger import SessionLogger
from .models.types import (
    Action,
    ActionOutcome,
    ActionRecord,
    ActionType,
    AgentState,
    AutonomousResult,
    Conversation,
    EffortLevel,
    ErrorEntry,
    ExecutionRecord,
    MessageRole,
    Result,
    SessionOptions,
    SessionSummary,
    Summary,
    new_id,
)
from .reasoning import ReasoningEngine, continuation_prompt, is_complete, max_iterations_for
from .tools.registry import ToolRegistry, create_default_registry

logger = logging.getLogger(__name__)

EVENTS = ("tool_start", "tool_complete", "reasoning_start", "confirmation_required")

COMMAND_TYPES = {ActionType.RUN_COMMAND, ActionType.INSTALL_PACKAGE, ActionType.RUN_SCRIPT}

_BUSY_STATES = {AgentState.THINKING, AgentState.ACTING}
_CLOSED_STATES = {AgentState.SHUTTING_DOWN, AgentState.SHUTDOWN}


def _failure(message: str, kind: ErrorKind, stage: str, **fields: Any) -> Result:
    return Result(
        success=False,
        reason=message,
        errors=[ErrorEntry(kind=kind, message=message, stage=stage)],
        **fields,
    )


_LLM_FIELDS = ("provider", "api_key", "model", "max_tokens", "temperature", "timeout", "max_retries")


def _llm_settings(options: SessionOptions) -> tuple[Any, ...]:
    return tuple(getattr(options, name) for name in _LLM_FIELDS)


async def _call(callback: Callable[..., Any], *args: Any) -> Any:
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def summarize_outcomes(
    planned: int, outcomes: list[ActionRecord], processing_time: float
) -> Summary:
    """Aggregate counters for one processed prompt."""
    executed = [o for o in outcomes if o.execution is not None]
    succeeded = [o for o in executed if o.execution.success]
    return Summary(
        actions_planned=planned,
        actions_executed=len(executed),
        files_created=sum(1 for o in succeeded if o.action.type == ActionType.CREATE_FILE),
        files_modified=sum(1 for o in succeeded if o.action.type == ActionType.WRITE_FILE),
        commands_run=sum(1 for o in executed if o.action.type in COMMAND_TYPES),
        errors=len(executed) - len(succeeded),
        processing_time=round(processing_time, 4),
    )


class Agent:
    """One assistant session over a working directory."""

    def __init__(
        self,
        options: SessionOptions | dict[str, Any] | None = None,
        *,
        llm_fn: LLMFn | None = None,
        registry: ToolRegistry | None = None,
        reasoning: ReasoningEngine | None = None,
        root: str | Path | None = None,
        session_id: str | None = None,
        sessions_dir: Path | None = None,
    ) -> None:
        if isinstance(options, dict):
            options = SessionOptions.model_validate(options)
        self.options = options or SessionOptions()
        self.session_id = session_id or new_id("sess")
        self.root = Path(root or Path.cwd()).resolve()
        self.session_dir = (sessions_dir or get_sessions_dir()) / self.session_id

        self.registry = registry or create_default_registry(
            self.options.tool_security, base_dir=self.root
        )
        self.context = ContextBuilder(
            self.root,
            max_context_size=self.options.max_context_size,
            retention_policy=self.options.retention_policy,
        )
        self.conversations = ConversationStore(
            self.session_dir / "conversations", agent_id=self.session_id
        )
        self.reasoning = reasoning or ReasoningEngine()
        self.logger = SessionLogger(
            self.session_dir, self.session_id, redact=self.options.redact_secrets
        )
        self.llm_fn = llm_fn or create_llm_fn(self.options)
        self._llm_injected = llm_fn is not None

        self.state = AgentState.IDLE
        self.conversation_id: str | None = None
        self.stats: dict[str, int] = {"prompts": 0, "actions": 0, "errors": 0}
        self._listeners: dict[str, list[Callable[..., Any]]] = {name: [] for name in EVENTS}
        self._started = False
        self._interrupted = False
        self._autonomous = False

    # --- Listeners ---

    def on_tool_start(self, callback: Callable[[Action], Any]) -> Callable[[Action], Any]:
        self._listeners["tool_start"].append(callback)
        return callback

    def on_tool_complete(
        self, callback: Callable[[Action, ExecutionRecord], Any]
    ) -> Callable[[Action, ExecutionRecord], Any]:
        self._listeners["tool_complete"].append(callback)
        return callback

    def on_reasoning_start(
        self, callback: Callable[[str, EffortLevel], Any]
    ) -> Callable[[str, EffortLevel], Any]:
        self._listeners["reasoning_start"].append(callback)
        return callback

    def on_confirmation_required(
        self, callback: Callable[[Action], Any]
    ) -> Callable[[Action], Any]:
        """Register an approver for destructive actions; it returns a bool (or awaitable)."""
        self._listeners["confirmation_required"].append(callback)
        return callback

    async def _emit(self, event: str, *args: Any) -> None:
        for callback in self._listeners[event]:
            try:
                await _call(callback, *args)
            except Exception:
                logger.warning("Listener for %s raised", event, exc_info=True)

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.logger.start(
            {
                "provider": self.options.provider,
                "model": self.options.model,
                "root": str(self.root),
                "effort": str(self.options.effort),
            }
        )
        await self.conversations.load()

    async def _conversation(self) -> Conversation:
        if self.conversation_id:
            current = self.conversations.get(self.conversation_id)
            if current is not None and current.is_active:
                return current
        conversation = await self.conversations.start()
        self.conversation_id = conversation.id
        return conversation

    async def new_conversation(self) -> Conversation:
        """End the current conversation and start a fresh one."""
        if self.conversation_id:
            await self.conversations.end(self.conversation_id, "new conversation")
        self.conversation_id = None
        return await self._conversation()

    def _resolve_options(
        self, options: SessionOptions | dict[str, Any] | None
    ) -> SessionOptions:
        if options is None:
            return self.options
        if isinstance(options, SessionOptions):
            return options
        return SessionOptions.model_validate({**self.options.model_dump(), **options})

    def _llm_for(self, opts: SessionOptions) -> LLMFn:
        """The session's LLM function, rebound when per-call options change provider settings."""
        if self._llm_injected or _llm_settings(opts) == _llm_settings(self.options):
            return self.llm_fn
        return create_llm_fn(opts)

    # --- Prompt processing ---

    async def process_prompt(
        self,
        prompt: str,
        options: SessionOptions | dict[str, Any] | None = None,
        *,
        scan_prompt: bool = True,
    ) -> Result:
        """Run one prompt through the full pipeline.

        With ``scan_prompt=False`` only the model reply is searched for
        actions (used for generated continuation prompts).
        """
        if not prompt or not prompt.strip():
            return _failure("Prompt is empty", ErrorKind.INVALID_INPUT, "input")
        if self.state in _CLOSED_STATES:
            return _failure("Agent has been shut down", ErrorKind.INVALID_INPUT, "input")
        if self.state in _BUSY_STATES:
            return _failure(
                "Another operation is already running", ErrorKind.INVALID_INPUT, "input"
            )

        opts = self._resolve_options(options)
        if not self._autonomous:
            self._interrupted = False
        self.state = AgentState.THINKING
        await self.start()
        started = time.monotonic()
        self.stats["prompts"] += 1
        trace_id = self.logger.start_trace("process_prompt", {"prompt": prompt[:200]})

        try:
            result = await self._process(prompt, opts, started, trace_id, scan_prompt)
        except Exception as e:
            logger.error("Prompt processing failed", exc_info=True)
            self.logger.error("prompt processing failed", {"prompt": prompt[:200]}, exc=e)
            self.state = AgentState.ERROR
            kind = e.kind if isinstance(e, VisaireError) else ErrorKind.INTERNAL
            result = _failure(
                str(e), kind, "internal",
                conversation_id=self.conversation_id,
                summary=Summary(processing_time=round(time.monotonic() - started, 4)),
            )
        finally:
            if self.state not in _CLOSED_STATES:
                self.state = AgentState.IDLE

        self.stats["errors"] += len(result.errors)
        self.logger.end_trace(
            trace_id,
            {"success": result.success, "summary": result.summary.model_dump()},
        )
        self.logger.record_performance("process_prompt", time.monotonic() - started)
        return result

    async def _process(
        self,
        prompt: str,
        opts: SessionOptions,
        started: float,
        trace_id: str,
        scan_prompt: bool,
    ) -> Result:
        conversation = await self._conversation()
        snapshot = await self.context.build(conversation.messages)
        await self.conversations.add_message(conversation.id, MessageRole.USER, prompt)
        self.logger.add_trace_event(
            trace_id, "context", {"files": snapshot.total_files, "bytes": snapshot.serialized_size()}
        )

        await self._emit("reasoning_start", prompt, opts.effort)
        enhanced = self.reasoning.compose_prompt(
            prompt, opts.effort, self.context.render(snapshot)
        )
        try:
            reply = await self._llm_for(opts)(enhanced)
        except ProviderError as e:
            self.state = AgentState.ERROR
            self.logger.error("LLM call failed", {"provider": e.provider}, exc=e)
            return _failure(
                str(e), e.kind, "llm",
                conversation_id=conversation.id,
                summary=Summary(processing_time=round(time.monotonic() - started, 4)),
            )
        await self.conversations.add_message(conversation.id, MessageRole.ASSISTANT, reply)
        self.logger.add_trace_event(trace_id, "llm_reply", {"chars": len(reply)})

        if not opts.agent.enabled:
            await self.conversations.update(conversation.id, context_ref=snapshot.id)
            return Result(
                success=True,
                response=reply,
                conversation_id=conversation.id,
                reason="agent disabled",
                summary=Summary(processing_time=round(time.monotonic() - started, 4)),
            )

        actions, dropped, reasoning = self.reasoning.plan(
            prompt if scan_prompt else "",
            reply,
            opts.effort,
            opts.max_actions_per_prompt,
        )
        self.logger.add_trace_event(
            trace_id, "plan", {"actions": len(actions), "dropped": len(dropped)}
        )

        errors: list[ErrorEntry] = []
        outcomes: list[ActionRecord] = []
        approved: list[Action] = []
        for action in actions:
            report = self.registry.validate(action)
            if not report.valid:
                message = "; ".join(report.errors)
                errors.append(
                    ErrorEntry(
                        kind=report.kind or ErrorKind.INVALID_INPUT,
                        message=message,
                        stage="validation",
                        action_id=action.id,
                    )
                )
                outcomes.append(
                    ActionRecord(action=action, outcome=ActionOutcome.REJECTED, reason=message)
                )
                self.logger.warning("action rejected", {"action": action.describe(), "reason": message})
                continue
            action.warnings.extend(w for w in report.warnings if w not in action.warnings)
            approved.append(action)

        self.state = AgentState.ACTING
        halted: str | None = None
        for action in approved:
            if halted is None and self._interrupted:
                halted = "interrupted"
            if halted is not None:
                outcomes.append(
                    ActionRecord(action=action, outcome=ActionOutcome.SKIPPED, reason=halted)
                )
                continue
            if not await self._confirm(action, opts):
                outcomes.append(
                    ActionRecord(
                        action=action, outcome=ActionOutcome.DECLINED, reason="not confirmed"
                    )
                )
                continue

            await self._emit("tool_start", action)
            execution = await self.registry.execute(action)
            self.logger.log_action(action, execution)
            await self._emit("tool_complete", action, execution)
            self.stats["actions"] += 1

            if execution.success:
                outcomes.append(
                    ActionRecord(
                        action=action, outcome=ActionOutcome.EXECUTED, execution=execution
                    )
                )
            else:
                outcomes.append(
                    ActionRecord(
                        action=action,
                        outcome=ActionOutcome.FAILED,
                        execution=execution,
                        reason=execution.error,
                    )
                )
                errors.append(
                    ErrorEntry(
                        kind=execution.kind or ErrorKind.INTERNAL,
                        message=execution.error or "execution failed",
                        stage="execution",
                        action_id=action.id,
                    )
                )
                if not opts.continue_on_error:
                    halted = "previous action failed"

        # Records follow plan order regardless of when they were rejected
        order = {a.id: i for i, a in enumerate(actions)}
        outcomes.sort(key=lambda o: order.get(o.action.id, len(order)))

        executed = [o for o in outcomes if o.execution is not None]
        for record in executed:
            status = "ok" if record.execution.success else f"failed: {record.execution.error}"
            await self.conversations.add_message(
                conversation.id,
                MessageRole.TOOL,
                f"{record.action.describe()} -> {status}",
                {"action_id": record.action.id, "success": record.execution.success},
            )
        await self.conversations.update(
            conversation.id,
            reasoning=reasoning,
            execution_results=outcomes,
            context_ref=snapshot.id,
        )
        self.context.update_after_actions([o.action for o in executed])

        summary = summarize_outcomes(len(actions), outcomes, time.monotonic() - started)
        return Result(
            success=summary.errors == 0,
            response=reply,
            conversation_id=conversation.id,
            actions=actions,
            outcomes=outcomes,
            dropped=dropped,
            reasoning=reasoning,
            summary=summary,
            errors=errors,
            executed=bool(executed),
        )

    async def _confirm(self, action: Action, opts: SessionOptions) -> bool:
        """Confirmation gate. Non-destructive actions always pass."""
        if not action.destructive:
            return True
        if opts.approve_all or not opts.agent.confirmation_enabled:
            return True
        approvers = self._listeners["confirmation_required"]
        if not approvers:
            logger.info("No approver registered; declining %s", action.describe())
            return False
        for approver in approvers:
            try:
                if not await _call(approver, action):
                    return False
            except Exception:
                logger.warning("Approver raised; declining %s", action.describe(), exc_info=True)
                return False
        return True

    # --- Autonomous mode ---

    async def start_autonomous_session(
        self,
        prompt: str,
        max_iterations: int | None = None,
        effort: EffortLevel | str | None = None,
        options: SessionOptions | dict[str, Any] | None = None,
    ) -> AutonomousResult:
        """Repeat process_prompt until complete, idle, capped or interrupted."""
        opts = self._resolve_options(options)
        if effort is not None:
            opts = opts.model_copy(update={"effort": EffortLevel(effort)})
        cap = max_iterations or opts.max_iterations or max_iterations_for(opts.effort)
        started = time.monotonic()
        self._interrupted = False
        self._autonomous = True
        try:
            return await self._run_autonomous(prompt, opts, cap, started)
        finally:
            self._autonomous = False

    async def _run_autonomous(
        self, prompt: str, opts: SessionOptions, cap: int, started: float
    ) -> AutonomousResult:
        iterations: list[Result] = []
        total = Summary(iterations=0)
        stop_reason = "max_iterations"
        current = prompt
        for _ in range(cap):
            if self._interrupted:
                stop_reason = "interrupted"
                break
            result = await self.process_prompt(
                current, opts, scan_prompt=not iterations
            )
            iterations.append(result)
            total = total.merge(result.summary)

            if self._interrupted:
                stop_reason = "interrupted"
                break
            if not result.success and any(e.stage in ("llm", "input", "internal")
                                          for e in result.errors):
                stop_reason = "error"
                break
            if is_complete(result.response):
                stop_reason = "complete"
                break
            if not result.actions:
                stop_reason = "no_actions"
                break
            current = continuation_prompt(prompt, total.actions_executed, total.errors)

        total.processing_time = round(time.monotonic() - started, 4)
        success = stop_reason not in ("error", "interrupted") and total.errors == 0
        session = SessionSummary(
            total_iterations=len(iterations),
            total_actions=total.actions_executed,
            total_files=total.files_created + total.files_modified,
            total_commands=total.commands_run,
            total_errors=total.errors,
            processing_time=total.processing_time,
            success=success,
            stop_reason=stop_reason,
        )
        self.logger.info("autonomous session finished", session.model_dump())
        return AutonomousResult(
            success=success, iterations=iterations, summary=total, session=session
        )

    # --- Control ---

    def interrupt(self) -> None:
        """Ask the running operation to stop after the current action."""
        self._interrupted = True

    async def stop(self) -> int:
        self._interrupted = True
        return await self.registry.stop_all()

    async def shutdown(self, reason: str = "shutdown") -> None:
        """Cancel running tools, close conversations, clear caches, end the log session."""
        if self.state in _CLOSED_STATES:
            return
        self.state = AgentState.SHUTTING_DOWN
        self._interrupted = True
        cancelled = await self.registry.stop_all()
        closed = await self.conversations.close_all(reason)
        self.context.cleanup(full=True)
        self.logger.end_session(
            {"cancelled": cancelled, "conversationsClosed": closed, **self.stats}
        )
        self.state = AgentState.SHUTDOWN
        logger.debug("Agent %s shut down (%s)", self.session_id, reason)

    def status(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": str(self.state),
            "conversation_id": self.conversation_id,
            "root": str(self.root),
            "provider": self.options.provider,
            "model": self.options.model,
            "effort": str(self.options.effort),
            "stats": dict(self.stats),
            "conversations": self.conversations.stats(),
            "context": self.context.cache_stats(),
            "registry": self.registry.status(),
            "log": {
                "levels": self.logger.level_counts(),
                "recent_errors": self.logger.recent_errors(),
            },
        }

    async def __aenter__(self) -> Agent:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()
