"""Context builder: a bounded snapshot of the working directory for the prompt.

Sections:
  files / recent_files / project_structure   -- what is on disk
  code_structure / dependency_map            -- parsed summaries of top code files
  dependencies                               -- from package.json / pyproject.toml / requirements.txt
  conversation                               -- the last few messages
  environment                                -- OS, runtime, cwd

Code summaries are cached by (path, mtime) and expire after an hour.
When the serialized snapshot exceeds ``max_context_size`` the retention
policy trims it until it fits.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import sys
import time
from collections import Counter, deque
from pathlib import Path
from typing import Any

from .errors import ToolError
from .ignore import IgnoreRules
from .models.types import (
    Action,
    ContextSnapshot,
    FileDescriptor,
    Message,
    RetentionPolicy,
)
from .tools.analysis import (
    CODE_EXTENSIONS,
    JS_EXTENSIONS,
    PYTHON_EXTENSIONS,
    is_binary,
    read_manifest,
    summarize_source,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_SIZE = 100_000
MAX_FILES = 50
MAX_RECENT = 10
MAX_CODE_FILES = 10
MAX_SCAN_FILES = 5000
MAX_PARSE_SIZE = 512 * 1024
CONVERSATION_WINDOW = 5
MESSAGE_PREVIEW = 500

# Caps applied once the budget is exceeded
RETAINED_FILES = 20
RETAINED_STRUCTURES = 5

CACHE_TTL = 3600.0
SNAPSHOT_HISTORY = 10

_DAY = 86_400

IMPORTANT_FILES = frozenset({
    "package.json", "pyproject.toml", "setup.py", "setup.cfg", "requirements.txt",
    "readme", "readme.md", "readme.rst", "readme.txt",
    "main.py", "app.py", "__main__.py", "cli.py", "manage.py",
    "index.js", "index.ts", "main.js", "main.ts", "server.js", "app.js",
    "cargo.toml", "go.mod", "makefile", "dockerfile", "docker-compose.yml",
})

_TYPE_BY_EXT = {
    ".py": "python", ".pyi": "python",
    ".js": "javascript", ".jsx": "javascript", ".mjs": "javascript", ".cjs": "javascript",
    ".ts": "typescript", ".tsx": "typescript",
    ".json": "json", ".yaml": "yaml", ".yml": "yaml", ".toml": "toml",
    ".md": "markdown", ".rst": "markdown", ".txt": "text",
    ".html": "html", ".css": "css", ".sh": "shell",
}

# Drop order when trimming files alone is not enough
_DROPPABLE_SECTIONS = (
    "conversation",
    "dependency_map",
    "code_structure",
    "recent_files",
    "dependencies",
    "project_structure",
    "environment",
)

# (marker path, pattern name)
_PROJECT_MARKERS = (
    ("package.json", "node"),
    ("pyproject.toml", "python-package"),
    ("setup.py", "python-package"),
    ("requirements.txt", "python"),
    ("Dockerfile", "docker"),
    ("docker-compose.yml", "docker-compose"),
    (".github/workflows", "github-actions"),
    ("tests", "tests"),
    ("test", "tests"),
    ("src", "src-layout"),
    ("tsconfig.json", "typescript"),
)


def file_type(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext in _TYPE_BY_EXT:
        return _TYPE_BY_EXT[ext]
    return ext.lstrip(".") or "file"


def importance_score(rel_path: str, size: int, mtime: float, now: float | None = None) -> int:
    """Heuristic ranking: root manifests and entry points, code, recency, small size."""
    now = time.time() if now is None else now
    name = rel_path.rsplit("/", 1)[-1].lower()
    at_root = "/" not in rel_path
    score = 0
    if at_root and name in IMPORTANT_FILES:
        score += 10
    if os.path.splitext(name)[1] in CODE_EXTENSIONS:
        score += 5
    if at_root:
        score += 3

    age = now - mtime
    if age < _DAY:
        score += 5
    elif age < 7 * _DAY:
        score += 3
    elif age < 30 * _DAY:
        score += 1

    if size < 1024:
        score += 2
    elif size < 10 * 1024:
        score += 1
    return score


def order_files(files: list[FileDescriptor], policy: RetentionPolicy) -> list[FileDescriptor]:
    """Files ranked for retention. ``files`` must be in scan order for fifo."""
    if policy == RetentionPolicy.RECENCY:
        return sorted(files, key=lambda f: (-f.mtime, f.path))
    if policy == RetentionPolicy.FIFO:
        return list(files)
    return sorted(files, key=lambda f: (-f.importance, f.path))


class ContextBuilder:
    """Builds ContextSnapshots for one working directory."""

    def __init__(
        self,
        root: str | Path | None = None,
        max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE,
        retention_policy: RetentionPolicy | str = RetentionPolicy.IMPORTANCE,
        extra_ignores: list[str] | None = None,
        max_scan_files: int = MAX_SCAN_FILES,
    ) -> None:
        self.root = Path(root or Path.cwd()).resolve()
        self.max_context_size = max_context_size
        self.retention_policy = RetentionPolicy(retention_policy)
        self.extra_ignores = list(extra_ignores or [])
        self.max_scan_files = max_scan_files
        # rel path -> (mtime, cached_at, summary)
        self._ast_cache: dict[str, tuple[float, float, dict[str, Any]]] = {}
        self._snapshots: deque[ContextSnapshot] = deque(maxlen=SNAPSHOT_HISTORY)
        self.cache_hits = 0
        self.cache_misses = 0

    @property
    def last_snapshot(self) -> ContextSnapshot | None:
        return self._snapshots[-1] if self._snapshots else None

    async def build(self, messages: list[Message] | None = None) -> ContextSnapshot:
        snapshot = await asyncio.to_thread(self._build, messages or [])
        self._snapshots.append(snapshot)
        return snapshot

    # --- Scanning ---

    def scan(self) -> list[FileDescriptor]:
        """Descriptors for every non-ignored file, in walk order."""
        rules = IgnoreRules.for_root(self.root, self.extra_ignores)
        now = time.time()
        found: list[FileDescriptor] = []
        for path in rules.walk(self.root):
            try:
                st = path.stat()
            except OSError:
                continue
            rel = path.relative_to(self.root).as_posix()
            found.append(
                FileDescriptor(
                    path=rel,
                    size=st.st_size,
                    mtime=st.st_mtime,
                    type=file_type(rel),
                    importance=importance_score(rel, st.st_size, st.st_mtime, now),
                )
            )
            if len(found) >= self.max_scan_files:
                logger.info("Context scan stopped at %d files", self.max_scan_files)
                break
        return found

    def _build(self, messages: list[Message]) -> ContextSnapshot:
        scanned = self.scan()
        ranked = order_files(scanned, RetentionPolicy.IMPORTANCE)

        code_files = [
            f for f in ranked
            if os.path.splitext(f.path)[1] in PYTHON_EXTENSIONS | JS_EXTENSIONS
        ][:MAX_CODE_FILES]
        code_structure: dict[str, dict[str, Any]] = {}
        for f in code_files:
            summary = self.summarize(f)
            if summary is not None:
                code_structure[f.path] = summary

        snapshot = ContextSnapshot(
            root=str(self.root),
            files=ranked[:MAX_FILES],
            recent_files=[f.path for f in order_files(scanned, RetentionPolicy.RECENCY)][
                :MAX_RECENT
            ],
            project_structure=self._project_structure(scanned),
            total_files=len(scanned),
            code_structure=code_structure,
            dependency_map=self._dependency_map(code_structure),
            dependencies=self._dependencies(),
            conversation=[
                {"role": str(m.role), "content": m.content[:MESSAGE_PREVIEW]}
                for m in messages[-CONVERSATION_WINDOW:]
            ],
            environment=self._environment(),
        )
        return self._apply_retention(snapshot, scanned)

    def _project_structure(self, files: list[FileDescriptor]) -> dict[str, Any]:
        directories = sorted({f.path.split("/", 1)[0] for f in files if "/" in f.path})
        patterns = []
        for marker, name in _PROJECT_MARKERS:
            if (self.root / marker).exists() and name not in patterns:
                patterns.append(name)
        return {
            "directories": directories,
            "fileTypes": dict(Counter(f.type for f in files).most_common()),
            "patterns": patterns,
        }

    # --- Code summaries ---

    def summarize(self, descriptor: FileDescriptor) -> dict[str, Any] | None:
        """Cached code summary for one file; None for binary or oversized files."""
        now = time.time()
        cached = self._ast_cache.get(descriptor.path)
        if cached and cached[0] == descriptor.mtime and now - cached[1] < CACHE_TTL:
            self.cache_hits += 1
            return cached[2]
        self.cache_misses += 1

        if descriptor.size > MAX_PARSE_SIZE:
            return None
        path = self.root / descriptor.path
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.debug("Skipping %s: %s", descriptor.path, e)
            return None
        if is_binary(data[:8192]):
            return None
        summary = summarize_source(path, data.decode("utf-8", errors="replace"))
        self._ast_cache[descriptor.path] = (descriptor.mtime, now, summary)
        return summary

    @staticmethod
    def _dependency_map(code_structure: dict[str, dict[str, Any]]) -> dict[str, list[str]]:
        dep_map: dict[str, list[str]] = {}
        for path, summary in code_structure.items():
            for imp in summary.get("imports", []):
                source = imp.get("source")
                if source:
                    dep_map.setdefault(source, []).append(path)
        return {k: sorted(set(v)) for k, v in sorted(dep_map.items())}

    def _dependencies(self) -> dict[str, Any]:
        try:
            manifest, language, declared, dev = read_manifest(self.root)
        except (ToolError, OSError, ValueError) as e:
            logger.warning("Could not read project manifest: %s", e)
            return {}
        if manifest is None:
            return {}
        return {
            "manifest": manifest,
            "language": language,
            "dependencies": declared,
            "devDependencies": dev,
        }

    def _environment(self) -> dict[str, Any]:
        return {
            "os": platform.system(),
            "platform": platform.platform(),
            "python": platform.python_version(),
            "executable": sys.executable,
            "cwd": str(self.root),
            "shell": os.environ.get("SHELL") or os.environ.get("COMSPEC"),
        }

    # --- Retention ---

    def _apply_retention(
        self, snapshot: ContextSnapshot, scanned: list[FileDescriptor]
    ) -> ContextSnapshot:
        if snapshot.serialized_size() <= self.max_context_size:
            return snapshot

        policy = self.retention_policy
        before = snapshot.serialized_size()
        ordered = order_files(scanned, policy)
        snapshot.files = ordered[:RETAINED_FILES]
        rank = {f.path: i for i, f in enumerate(ordered)}
        kept = sorted(snapshot.code_structure, key=lambda p: rank.get(p, len(rank)))
        snapshot.code_structure = {
            p: snapshot.code_structure[p] for p in kept[:RETAINED_STRUCTURES]
        }
        snapshot.retention_applied = policy

        while snapshot.serialized_size() > self.max_context_size and len(snapshot.files) > 1:
            snapshot.files = snapshot.files[: len(snapshot.files) // 2]

        for section in _DROPPABLE_SECTIONS:
            if snapshot.serialized_size() <= self.max_context_size:
                break
            default = [] if isinstance(getattr(snapshot, section), list) else {}
            setattr(snapshot, section, default)

        if snapshot.serialized_size() > self.max_context_size:
            snapshot.files = []
        size = snapshot.serialized_size()
        if size > self.max_context_size:
            logger.warning(
                "Context snapshot still %d bytes after retention (budget %d)",
                size, self.max_context_size,
            )
        logger.debug(
            "Retention %s trimmed context from %d to %d bytes", policy, before, size
        )
        return snapshot

    # --- Rendering ---

    def render(self, snapshot: ContextSnapshot | None = None, max_files: int = 20) -> str:
        """Plain-text digest of a snapshot for inclusion in the prompt."""
        snapshot = snapshot or self.last_snapshot
        if snapshot is None:
            return ""
        lines = [f"Working directory: {snapshot.root}"]
        if snapshot.files:
            lines.append(f"Files ({snapshot.total_files} total, most relevant first):")
            for f in snapshot.files[:max_files]:
                lines.append(f"  {f.path} ({f.type}, {f.size} bytes)")
        if snapshot.recent_files:
            lines.append("Recently modified: " + ", ".join(snapshot.recent_files))
        patterns = snapshot.project_structure.get("patterns")
        if patterns:
            lines.append("Project type: " + ", ".join(patterns))
        deps = snapshot.dependencies
        if deps.get("dependencies"):
            names = ", ".join(list(deps["dependencies"])[:20])
            lines.append(f"Dependencies ({deps.get('manifest')}): {names}")
        for path, summary in list(snapshot.code_structure.items())[:RETAINED_STRUCTURES]:
            symbols = summary.get("classes", [])[:8] + summary.get("functions", [])[:8]
            if symbols:
                lines.append(f"  {path}: {', '.join(symbols)}")
        env = snapshot.environment
        if env:
            lines.append(f"Environment: {env.get('os')} / Python {env.get('python')}")
        return "\n".join(lines)

    # --- Cache maintenance ---

    def invalidate(self, paths: list[str] | None = None) -> None:
        """Drop cached summaries for ``paths`` (relative or absolute), or all of them."""
        if paths is None:
            self._ast_cache.clear()
            return
        for raw in paths:
            p = Path(raw)
            if p.is_absolute():
                try:
                    p = p.resolve().relative_to(self.root)
                except ValueError:
                    continue
            self._ast_cache.pop(p.as_posix(), None)

    def update_after_actions(self, actions: list[Action]) -> None:
        """Invalidate summaries of files touched by filesystem actions."""
        touched = [
            str(param)
            for action in actions
            if action.tool == "filesystem"
            for param in action.params
            if isinstance(param, str) and param
        ]
        # Content params may be long strings; only path-like values can match
        self.invalidate([t for t in touched if "\n" not in t and len(t) < 1024])

    def evict_expired(self) -> int:
        now = time.time()
        stale = [k for k, (_, cached_at, _) in self._ast_cache.items()
                 if now - cached_at >= CACHE_TTL]
        for key in stale:
            del self._ast_cache[key]
        return len(stale)

    def cleanup(self, full: bool = False) -> int:
        """Drop summaries older than CACHE_TTL; ``full`` empties every cache and the history.

        The snapshot history is already bounded to the last SNAPSHOT_HISTORY
        builds. Returns the number of cache entries removed.
        """
        if not full:
            return self.evict_expired()
        removed = len(self._ast_cache)
        self._ast_cache.clear()
        self._snapshots.clear()
        self.cache_hits = self.cache_misses = 0
        return removed

    def cache_stats(self) -> dict[str, int]:
        return {
            "entries": len(self._ast_cache),
            "hits": self.cache_hits,
            "misses": self.cache_misses,
            "snapshots": len(self._snapshots),
        }
