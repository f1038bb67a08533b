"""Visaire CLI: main entry point."""

from __future__ import annotations

import asyncio
import json as json_mod
import logging
import os
import signal
import traceback
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__, get_sessions_dir
from .errors import ErrorKind

logger = logging.getLogger(__name__)


class VisaireApp(typer.Typer):
    """Typer app with intent-first routing: `visaire "do X"` -> `visaire ask "do X"`."""

    _DIRECT_COMMANDS = {
        "ask",
        "test-key",
        "config",
        "history",
        "status",
    }

    def __call__(self, *args, **kwargs):
        import sys

        argv = sys.argv[1:]
        if argv and argv[0] not in self._DIRECT_COMMANDS and not argv[0].startswith("-"):
            original_argv = sys.argv[:]
            sys.argv = [sys.argv[0], "ask", *argv]
            try:
                return super().__call__(*args, **kwargs)
            finally:
                sys.argv = original_argv
        return super().__call__(*args, **kwargs)


app = VisaireApp(
    name="visaire",
    help="Visaire: an LLM assistant that can act on your project",
    add_completion=False,
    invoke_without_command=True,
)
console = Console()
err_console = Console(stderr=True)

config_app = typer.Typer(help="View and modify configuration")
app.add_typer(config_app, name="config")


# --- Helpers ---


def _run_async(coro):
    """Run an async function from sync CLI context."""
    return asyncio.run(coro)


def _debug_enabled(flag: bool) -> bool:
    return flag or os.getenv("DEBUG", "").lower() in ("1", "true", "yes")


def _setup_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.WARNING
    handler = logging.StreamHandler()
    handler.setLevel(level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[handler],
    )


def _fail(
    message: str,
    kind: ErrorKind | None = None,
    exc: BaseException | None = None,
    debug: bool = False,
) -> NoReturn:
    err_console.print(f"[red]Error:[/red] {message}")
    if kind is not None:
        err_console.print(f"[dim]{kind.hint()}[/dim]")
    if debug and exc is not None:
        err_console.print("".join(traceback.format_exception(exc)), markup=False)
    raise typer.Exit(code=1)


def _check(label: str, ok: bool) -> None:
    icon = "[green]OK[/green]" if ok else "[red]FAIL[/red]"
    console.print(f"  {icon}  {label}")


def _build_agent(options, root: Path | None = None):
    from .agent import Agent

    return Agent(options, root=root or Path.cwd())


def _confirm_action(action) -> bool:
    return typer.confirm(f"Run {action.describe()}?", default=False)


# --- Top-level commands ---


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
) -> None:
    """Visaire: prompt an LLM and let it act on the current directory."""
    if version:
        console.print(f"visaire {__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(f"[bold]Visaire[/bold] v{__version__}")
        console.print('Ask directly: [cyan]visaire "create a README for this project"[/cyan]')
        console.print("Run [cyan]visaire --help[/cyan] for available commands.")


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="What you want done"),
    provider: str | None = typer.Option(None, "--provider", "-p", help="claude, gpt or gemini"),
    api_key: str | None = typer.Option(None, "--api-key", "-k", help="API key for the provider"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model name"),
    timeout: int | None = typer.Option(None, "--timeout", help="LLM timeout in milliseconds"),
    max_tokens: int | None = typer.Option(None, "--max-tokens", help="Max reply tokens"),
    temperature: float | None = typer.Option(None, "--temperature", help="Sampling temperature"),
    effort: str | None = typer.Option(
        None, "--effort", "-e", help="Reasoning effort: low, medium, high, maximum"
    ),
    agent_mode: bool | None = typer.Option(
        None, "--agent/--no-agent", help="Execute detected actions (default from config)"
    ),
    auto_approve: bool = typer.Option(
        False, "--auto-approve", "-y", help="Run destructive actions without asking"
    ),
    max_iterations: int | None = typer.Option(
        None, "--max-iterations", help="Iteration cap for --autonomous"
    ),
    autonomous: bool = typer.Option(
        False, "--autonomous", help="Keep prompting until the task is complete"
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging and tracebacks"),
) -> None:
    """Send a prompt to the LLM and execute the actions in its reply."""
    from pydantic import ValidationError

    from .config import EFFORT_LEVELS, PROVIDERS, VisaireConfig
    from .models.types import AutonomousResult

    debug = _debug_enabled(debug)
    _setup_logging(debug)

    if provider and provider not in PROVIDERS:
        _fail(f"Unknown provider: {provider} (expected one of {', '.join(PROVIDERS)})",
              ErrorKind.INVALID_INPUT)
    if effort and effort not in EFFORT_LEVELS:
        _fail(f"Unknown effort level: {effort}", ErrorKind.INVALID_INPUT)

    config = VisaireConfig.load()
    try:
        options = config.to_session_options(
            provider=provider,
            api_key=api_key,
            model=model,
            timeout=timeout,
            max_tokens=max_tokens,
            temperature=temperature,
            effort=effort,
            auto_approve=auto_approve or None,
            max_iterations=max_iterations,
            debug=debug or None,
        )
    except ValidationError as e:
        _fail(f"Invalid options: {e}", ErrorKind.INVALID_INPUT, e, debug)
    if agent_mode is not None:
        options.agent = options.agent.model_copy(update={"enabled": agent_mode})
    if not options.api_key:
        _fail(
            f"No API key for {options.provider} "
            f"(set {options.provider.upper()}_API_KEY or pass --api-key)",
            ErrorKind.UPSTREAM_AUTH,
        )

    async def _ask():
        agent = _build_agent(options)
        if not json_output:
            if not options.approve_all:
                agent.on_confirmation_required(_confirm_action)
            agent.on_tool_start(lambda a: console.print(f"[dim]-> {a.describe()}[/dim]"))

        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        interrupted = False

        def _handle_signal(sig: signal.Signals) -> None:
            nonlocal interrupted
            logger.info("Received signal %s", sig.name)
            interrupted = True
            agent.interrupt()
            task.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable; Ctrl+C falls back to default")
                break

        outcome = None
        try:
            if autonomous:
                outcome = await agent.start_autonomous_session(
                    prompt, max_iterations=max_iterations, options=options
                )
            else:
                outcome = await agent.process_prompt(prompt, options)
        except asyncio.CancelledError:
            if not interrupted:
                raise
            task.uncancel()
        finally:
            await agent.shutdown("shutdown" if interrupted else "completed")
        return outcome, interrupted

    try:
        outcome, interrupted = _run_async(_ask())
    except Exception as e:
        _fail(str(e), getattr(e, "kind", ErrorKind.INTERNAL), e, debug)

    if interrupted:
        err_console.print("[yellow]Interrupted; session shut down.[/yellow]")
        raise typer.Exit(code=1)

    if json_output:
        print(json_mod.dumps(outcome.model_dump(mode="json"), default=str))
    elif isinstance(outcome, AutonomousResult):
        _render_autonomous(outcome)
    else:
        _render_result(outcome)

    if not outcome.success:
        raise typer.Exit(code=1)


def _render_result(result) -> None:
    if result.response:
        console.print(result.response)
    if result.outcomes:
        table = Table(title="Actions")
        table.add_column("Action")
        table.add_column("Outcome")
        table.add_column("Detail", style="dim")
        colors = {"executed": "green", "failed": "red", "rejected": "red", "declined": "yellow"}
        for record in result.outcomes:
            color = colors.get(str(record.outcome), "white")
            table.add_row(
                record.action.describe(),
                f"[{color}]{record.outcome}[/{color}]",
                record.reason or "",
            )
        console.print(table)
    if result.dropped:
        console.print(
            f"[yellow]{len(result.dropped)} action(s) detected but not executed "
            f"(per-prompt limit)[/yellow]"
        )
    s = result.summary
    if result.actions:
        console.print(
            f"[dim]{s.actions_executed}/{s.actions_planned} executed, "
            f"{s.files_created} created, {s.files_modified} modified, "
            f"{s.commands_run} commands, {s.errors} errors in {s.processing_time:.2f}s[/dim]"
        )
    for error in result.errors:
        err_console.print(f"[red]{error.kind}:[/red] {error.message}")
        if error.stage in ("llm", "input", "internal"):
            err_console.print(f"[dim]{error.kind.hint()}[/dim]")


def _render_autonomous(outcome) -> None:
    for n, result in enumerate(outcome.iterations, 1):
        console.rule(f"Iteration {n}")
        _render_result(result)
    session = outcome.session
    table = Table(title="Autonomous session")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Iterations", str(session.total_iterations))
    table.add_row("Actions", str(session.total_actions))
    table.add_row("Files", str(session.total_files))
    table.add_row("Commands", str(session.total_commands))
    table.add_row("Errors", str(session.total_errors))
    table.add_row("Time", f"{session.processing_time:.2f}s")
    table.add_row("Stopped", session.stop_reason)
    console.print(table)


@app.command("test-key")
def test_key(
    provider: str | None = typer.Option(None, "--provider", "-p", help="claude, gpt or gemini"),
    api_key: str | None = typer.Option(None, "--api-key", "-k", help="Key to test"),
) -> None:
    """Check that an API key is well-formed and accepted by the provider."""
    from .config import PROVIDERS, VisaireConfig
    from .llm import probe_api_key, validate_api_key_format

    config = VisaireConfig.load()
    name = provider or config.default_provider
    if name not in PROVIDERS:
        _fail(f"Unknown provider: {name}", ErrorKind.INVALID_INPUT)
    key = api_key or config.get_api_key(name)
    if not key:
        _fail(f"No API key configured for {name}", ErrorKind.UPSTREAM_AUTH)

    format_ok = validate_api_key_format(name, key)
    _check(f"{name} key format", format_ok)
    if not format_ok:
        raise typer.Exit(code=1)

    model = config.default_model if name == config.default_provider else None
    ok = _run_async(probe_api_key(name, key, model or None))
    _check(f"{name} API accepts the key", ok)
    if not ok:
        console.print(f"[dim]{ErrorKind.UPSTREAM_AUTH.hint()}[/dim]")
        raise typer.Exit(code=1)


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Max conversations to list"),
    search: str | None = typer.Option(None, "--search", "-s", help="Filter by text"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List stored conversations across sessions."""
    from .conversation import ConversationStore

    async def _history():
        found = []
        root = get_sessions_dir()
        if not root.is_dir():
            return found
        for session_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            store = ConversationStore(session_dir / "conversations", agent_id=session_dir.name)
            await store.load()
            if search:
                found.extend(hit["conversation"] for hit in store.search(search, limit=limit))
            else:
                found.extend(store.get_history(limit=limit))
        found.sort(key=lambda c: c.start_time, reverse=True)
        return found[:limit]

    conversations = _run_async(_history())

    if json_output:
        print(json_mod.dumps([c.model_dump(mode="json") for c in conversations], default=str))
        return
    if not conversations:
        console.print("[dim]No conversations found.[/dim]")
        return

    table = Table(title="Conversations")
    table.add_column("ID", style="cyan")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Messages", justify="right")
    table.add_column("Actions", justify="right")
    table.add_column("First prompt", max_width=50)
    for c in conversations:
        first = next((m.content for m in c.messages if m.role == "user"), "")
        table.add_row(
            c.id,
            c.start_time.strftime("%Y-%m-%d %H:%M"),
            str(c.status),
            str(len(c.messages)),
            str(len(c.actions)),
            first.splitlines()[0][:50] if first else "",
        )
    console.print(table)


@app.command()
def status(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show configuration health and the tool registry."""
    from dataclasses import asdict

    from .config import VisaireConfig, default_config_path
    from .tools.registry import create_default_registry

    config = VisaireConfig.load()
    registry = create_default_registry(asdict(config.agent.tool_security), base_dir=Path.cwd())
    info: dict[str, Any] = registry.status()
    issues = config.validate()

    if json_output:
        payload = {
            "version": __version__,
            "provider": config.default_provider,
            "api_key_configured": bool(config.get_api_key(config.default_provider)),
            "config_issues": issues,
            "registry": info,
        }
        print(json_mod.dumps(payload, default=str))
        return

    console.print(f"[bold]Visaire[/bold] v{__version__}")
    _check(f"Config file ({default_config_path()})", default_config_path().exists())
    _check("Configuration valid", not issues)
    for issue in issues:
        console.print(f"       [yellow]{issue}[/yellow]")
    _check(
        f"{config.default_provider} API key",
        bool(config.get_api_key(config.default_provider)),
    )

    table = Table(title="Tools")
    table.add_column("Tool", style="cyan")
    table.add_column("Methods")
    for name, methods in info["tools"].items():
        table.add_row(name, ", ".join(methods))
    console.print(table)
    console.print(
        f"[dim]max concurrent {info['max_concurrent']}, "
        f"timeout {info['timeout_ms']} ms[/dim]"
    )


# --- Config sub-commands ---


@config_app.command("show")
def config_show() -> None:
    """Show current configuration (API keys masked)."""
    from dataclasses import asdict

    import yaml
    from rich.syntax import Syntax

    from .config import VisaireConfig

    config = VisaireConfig.load()
    data = asdict(config)
    data["api_keys"] = {
        name: (key[:6] + "..." if key else key) for name, key in data["api_keys"].items()
    }
    content = yaml.dump(data, default_flow_style=False, sort_keys=False)
    console.print(Syntax(content, "yaml", theme="monokai"))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Dotted config key, e.g. agent.effort"),
    value: str = typer.Argument(..., help="Config value"),
) -> None:
    """Set a configuration value."""
    from .config import VisaireConfig
    from .errors import ConfigError

    config = VisaireConfig.load()
    try:
        parsed = config.set(key, value)
    except ConfigError as e:
        _fail(e.message, e.kind)
    config.save()
    console.print(f"[green]Set[/green] {key} = {parsed}")


@config_app.command("reset")
def config_reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Restore the default configuration."""
    from .config import default_config_path, get_default_config_content

    if not yes and not typer.confirm("Reset configuration to defaults?", default=False):
        raise typer.Exit(code=1)
    config_path = default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(get_default_config_content(), encoding="utf-8")
    console.print(f"[green]Configuration reset to defaults[/green] ({config_path})")
