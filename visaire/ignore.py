"""Ignore rules shared by the context builder and directory-walking tools."""

from __future__ import annotations

import fnmatch
import os
from collections.abc import Iterator
from pathlib import Path

DEFAULT_IGNORES: tuple[str, ...] = (
    "node_modules",
    ".git",
    ".visaire",
    "__pycache__",
    ".venv",
    "venv",
    ".pytest_cache",
    ".mypy_cache",
    "dist",
    "build",
    "coverage",
    "*.log",
    ".DS_Store",
    "Thumbs.db",
    "*.tmp",
    "*.temp",
)

IGNORE_FILES = (".gitignore", ".visaireignore")


class IgnoreRules:
    """fnmatch-based matcher over POSIX-style paths relative to a root.

    A pattern without a slash matches any path component; a pattern with a
    slash matches the whole relative path.
    """

    def __init__(self, patterns: list[str] | tuple[str, ...] = DEFAULT_IGNORES) -> None:
        self.patterns: list[str] = []
        for pattern in patterns:
            self.add(pattern)

    @classmethod
    def for_root(cls, root: Path, extra: list[str] | None = None) -> IgnoreRules:
        rules = cls(DEFAULT_IGNORES)
        for name in IGNORE_FILES:
            ignore_file = root / name
            if not ignore_file.is_file():
                continue
            try:
                lines = ignore_file.read_text(encoding="utf-8").splitlines()
            except OSError:
                continue
            for line in lines:
                line = line.strip()
                # Negations are not supported
                if line and not line.startswith(("#", "!")):
                    rules.add(line)
        for pattern in extra or []:
            rules.add(pattern)
        return rules

    def add(self, pattern: str) -> None:
        pattern = pattern.strip().lstrip("/").rstrip("/")
        if pattern and pattern not in self.patterns:
            self.patterns.append(pattern)

    def matches(self, rel_path: str) -> bool:
        rel = rel_path.replace("\\", "/").strip("/")
        if not rel:
            return False
        parts = rel.split("/")
        for pattern in self.patterns:
            if "/" in pattern:
                if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(rel, pattern + "/*"):
                    return True
            elif any(fnmatch.fnmatch(part, pattern) for part in parts):
                return True
        return False

    def walk(self, root: Path, include_hidden: bool = True) -> Iterator[Path]:
        """Yield files under root, pruning ignored directories early."""
        for dirpath, dirnames, filenames in os.walk(root):
            base = Path(dirpath)
            rel_dir = base.relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            dirnames[:] = sorted(
                d
                for d in dirnames
                if not self.matches(f"{rel_dir}/{d}" if rel_dir else d)
                and (include_hidden or not d.startswith("."))
            )
            for name in sorted(filenames):
                if not include_hidden and name.startswith("."):
                    continue
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if not self.matches(rel):
                    yield base / name
