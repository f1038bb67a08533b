"""Exec tool: shell commands under an allow/deny policy with timeout and output cap."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import platform
import re
import shlex
import shutil
import signal
import sys
import time
import tomllib
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..errors import ErrorKind, ToolError
from ..models.types import Action, ValidationReport
from .base import MethodSchema, Param, Tool

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_OUTPUT = 1024 * 1024

# Fatal: these forms abort before anything is spawned
DANGEROUS_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("rm -rf", re.compile(r"\brm\s+-[a-zA-Z]*(?:r[a-zA-Z]*f|f[a-zA-Z]*r)")),
    ("redirect to device", re.compile(r">\s*/dev/(?!null\b)")),
    ("chained rm", re.compile(r"(?:;|&&|\|\|?)\s*rm\b")),
    ("sudo", re.compile(r"\bsudo\b")),
    ("su", re.compile(r"(?:^|[;&|]\s*)su(?:\s|$)")),
]

# Non-fatal: reported as warnings
METACHARACTER_PATTERNS: list[re.Pattern] = [
    re.compile(r"[;&|`]"),
    re.compile(r"\$\{"),
    re.compile(r"\$\("),
]

NPM_PACKAGE = re.compile(r"^(@[a-z0-9-~][a-z0-9-._~]*/)?[a-z0-9-~][a-z0-9-._~]*$")
PY_PACKAGE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*(\[[A-Za-z0-9,._-]+\])?$")
VERSION_PIN = re.compile(r"^[\w.^~<>=*+-]+$")

_SEGMENT_SPLIT = re.compile(r"&&|\|\||[;|]")

_CMD = Param("command", "command")
_OPTS = Param("options", "options", required=False)


def command_heads(command: str) -> list[str]:
    """Leading program names of every chained segment of a shell command."""
    heads: list[str] = []
    for segment in _SEGMENT_SPLIT.split(command):
        segment = segment.strip()
        if not segment:
            continue
        try:
            words = shlex.split(segment)
        except ValueError:
            words = segment.split()
        # Skip leading VAR=value assignments
        while words and re.match(r"^[A-Za-z_][A-Za-z0-9_]*=", words[0]):
            words = words[1:]
        if words:
            heads.append(os.path.basename(words[0]))
    return heads


class ExecTool(Tool):
    """Runs shell commands with a policy gate, a total timeout and an output cap."""

    name = "exec"
    methods = (
        MethodSchema("executeCommand", "execute_command", (_CMD, _OPTS)),
        MethodSchema("installPackage", "install_package", (Param("package", "string"), _OPTS)),
        MethodSchema("runScript", "run_script", (Param("script", "string"), _OPTS)),
        MethodSchema("spawnProcess", "spawn_process", (_CMD, _OPTS)),
        MethodSchema("checkCommand", "check_command", (Param("name", "string"),)),
        MethodSchema("getEnvironment", "get_environment", ()),
    )

    def __init__(
        self,
        allowed_commands: list[str] | None = None,
        blocked_commands: list[str] | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_output_size: int = DEFAULT_MAX_OUTPUT,
        cwd: Path | None = None,
    ) -> None:
        self.allowed_commands = list(allowed_commands or [])
        self.blocked_commands = list(blocked_commands or [])
        self.timeout_ms = timeout_ms
        self.max_output_size = max_output_size
        self.cwd = Path(cwd or Path.cwd())
        self._running: dict[int, asyncio.subprocess.Process] = {}

    # --- Policy ---

    def check_policy(self, command: str) -> list[str]:
        """Raise Blocked for a forbidden command; return warnings otherwise."""
        if not command.strip():
            raise ToolError("Empty command", ErrorKind.INVALID_INPUT)

        for label, pattern in DANGEROUS_PATTERNS:
            if pattern.search(command):
                raise ToolError(
                    f"Command matches dangerous pattern ({label}): {command}",
                    ErrorKind.BLOCKED,
                    {"command": command},
                )

        for head in command_heads(command):
            if head in self.blocked_commands:
                raise ToolError(
                    f"Command '{head}' is blocked",
                    ErrorKind.BLOCKED,
                    {"command": command},
                )
            if self.allowed_commands and head not in self.allowed_commands:
                raise ToolError(
                    f"Command '{head}' is not in the allowed command list",
                    ErrorKind.BLOCKED,
                    {"command": command},
                )

        warnings: list[str] = []
        if any(p.search(command) for p in METACHARACTER_PATTERNS):
            warnings.append(f"Command contains shell metacharacters: {command}")
        return warnings

    def validate_action(self, action: Action, method: MethodSchema) -> ValidationReport:
        try:
            if method.name in ("executeCommand", "spawnProcess"):
                warnings = self.check_policy(action.params[0])
            elif method.name == "installPackage":
                self._package_spec(action.params[0], (action.params[1:2] or [None])[0] or {})
                warnings = []
            else:
                warnings = []
        except ToolError as e:
            return ValidationReport(valid=False, errors=[e.message], kind=e.kind)
        return ValidationReport(valid=True, warnings=warnings)

    # --- Process plumbing ---

    def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    async def _run(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: int | None = None,
        on_output: Callable[[str, str], Any] | None = None,
    ) -> dict[str, Any]:
        timeout_s = (timeout or self.timeout_ms) / 1000
        workdir = Path(cwd) if cwd else self.cwd
        if not workdir.is_dir():
            raise ToolError(f"Working directory not found: {workdir}", ErrorKind.NOT_FOUND)

        started = time.monotonic()
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workdir),
            env={**os.environ, **(env or {})},
            start_new_session=os.name == "posix",
        )
        self._running[proc.pid] = proc
        buffers = {"stdout": bytearray(), "stderr": bytearray()}
        exceeded = False

        async def _pump(stream: asyncio.StreamReader, name: str) -> None:
            nonlocal exceeded
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    return
                total = len(buffers["stdout"]) + len(buffers["stderr"]) + len(chunk)
                if total > self.max_output_size:
                    exceeded = True
                    self._terminate(proc)
                    return
                buffers[name].extend(chunk)
                if on_output is not None:
                    on_output(name, chunk.decode("utf-8", errors="replace"))

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _pump(proc.stdout, "stdout"),
                    _pump(proc.stderr, "stderr"),
                    proc.wait(),
                ),
                timeout_s,
            )
        except TimeoutError as e:
            raise ToolError(
                f"Command timeout after {timeout_s:g}s: {command}",
                ErrorKind.TIMEOUT,
                {"command": command},
            ) from e
        finally:
            if proc.returncode is None:
                self._terminate(proc)
                try:
                    await asyncio.shield(proc.wait())
                except asyncio.CancelledError:
                    logger.debug("Cancelled while reaping pid %s", proc.pid)
            self._running.pop(proc.pid, None)

        result = {
            "command": command,
            "exitCode": proc.returncode,
            "stdout": buffers["stdout"].decode("utf-8", errors="replace"),
            "stderr": buffers["stderr"].decode("utf-8", errors="replace"),
            "duration": round(time.monotonic() - started, 4),
        }
        if exceeded:
            raise ToolError(
                f"Output limit exceeded ({self.max_output_size} bytes): {command}",
                ErrorKind.TOO_LARGE,
                result,
            )
        if proc.returncode != 0:
            tail = result["stderr"].strip().splitlines()[-1:] or [""]
            raise ToolError(
                f"Command exited with code {proc.returncode}: {tail[0]}".rstrip(": "),
                ErrorKind.INTERNAL,
                result,
            )
        return result

    async def cancel(self) -> None:
        for proc in list(self._running.values()):
            self._terminate(proc)

    @property
    def running(self) -> int:
        return len(self._running)

    # --- Methods ---

    async def execute_command(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> dict[str, Any]:
        warnings = self.check_policy(command)
        result = await self._run(command, cwd=cwd, env=env, timeout=timeout)
        if warnings:
            result["warnings"] = warnings
        return result

    async def spawn_process(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: int | None = None,
        on_output: Callable[[str, str], Any] | None = None,
    ) -> dict[str, Any]:
        """Like execute_command, streaming each output chunk to ``on_output(stream, text)``."""
        self.check_policy(command)
        return await self._run(command, cwd=cwd, env=env, timeout=timeout, on_output=on_output)

    def _package_manager(self) -> str:
        if (self.cwd / "package.json").exists():
            return "npm"
        if any((self.cwd / marker).exists() for marker in ("pyproject.toml", "requirements.txt")):
            return "pip"
        return "npm"

    def _package_spec(self, package: str, options: dict[str, Any]) -> list[str]:
        manager = options.get("manager") or self._package_manager()
        version = options.get("version")
        if version is not None and not VERSION_PIN.match(str(version)):
            raise ToolError(f"Invalid version specifier: {version}", ErrorKind.INVALID_INPUT)

        if manager == "npm":
            if not NPM_PACKAGE.match(package):
                raise ToolError(f"Invalid package name: {package}", ErrorKind.INVALID_INPUT)
            spec = f"{package}@{version}" if version else package
            return ["npm", "install", "--save-dev" if options.get("dev") else "--save", spec]
        if manager == "pip":
            if not PY_PACKAGE.match(package):
                raise ToolError(f"Invalid package name: {package}", ErrorKind.INVALID_INPUT)
            spec = f"{package}=={version}" if version else package
            return [sys.executable, "-m", "pip", "install", spec]
        raise ToolError(f"Unsupported package manager: {manager}", ErrorKind.INVALID_INPUT)

    async def install_package(
        self,
        package: str,
        dev: bool = False,
        version: str | None = None,
        manager: str | None = None,
        timeout: int | None = None,
    ) -> dict[str, Any]:
        argv = self._package_spec(
            package, {"dev": dev, "version": version, "manager": manager}
        )
        result = await self._run(shlex.join(argv), timeout=timeout or self.timeout_ms * 4)
        result["package"] = package
        return result

    def _find_script(self, script: str) -> str:
        manifest = self.cwd / "package.json"
        if manifest.exists():
            try:
                scripts = json.loads(manifest.read_text(encoding="utf-8")).get("scripts", {})
            except json.JSONDecodeError as e:
                raise ToolError(f"Invalid package.json: {e}", ErrorKind.INVALID_INPUT) from e
            if script in scripts:
                return shlex.join(["npm", "run", script])

        pyproject = self.cwd / "pyproject.toml"
        if pyproject.exists():
            with open(pyproject, "rb") as f:
                data = tomllib.load(f)
            if script in data.get("project", {}).get("scripts", {}):
                return shlex.quote(script)

        raise ToolError(f"Script not found: {script}", ErrorKind.NOT_FOUND)

    async def run_script(
        self,
        script: str,
        timeout: int | None = None,
        env: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        command = self._find_script(script)
        result = await self._run(command, env=env, timeout=timeout)
        result["script"] = script
        return result

    async def check_command(self, name: str) -> dict[str, Any]:
        location = shutil.which(name)
        return {"command": name, "available": location is not None, "path": location}

    async def get_environment(self) -> dict[str, Any]:
        env: dict[str, Any] = {
            "platform": sys.platform,
            "system": platform.system(),
            "release": platform.release(),
            "arch": platform.machine(),
            "python": platform.python_version(),
            "cwd": str(self.cwd),
            "shell": os.environ.get("SHELL", ""),
        }
        for tool in ("node", "npm", "git"):
            if shutil.which(tool) is None:
                env[tool] = None
                continue
            try:
                out = await self._run(f"{tool} --version", timeout=5000)
                env[tool] = out["stdout"].strip()
            except ToolError:
                env[tool] = None
        return env
