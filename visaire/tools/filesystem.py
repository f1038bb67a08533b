"""Filesystem tool: path-guarded file and directory operations."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..errors import ErrorKind, ToolError
from ..ignore import IgnoreRules
from ..models.types import Action, ValidationReport
from .base import MethodSchema, Param, Tool

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_BLOCKED_EXTENSIONS = (".exe", ".bat", ".sh", ".cmd", ".com")

_PATH = Param("path", "path")
_SRC = Param("source", "path")
_DST = Param("destination", "path")


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat()


class FilesystemTool(Tool):
    """Read/write/list/copy/move/delete confined to allow-listed roots."""

    name = "filesystem"
    methods = (
        MethodSchema("readFile", "read_file", (_PATH,)),
        MethodSchema("writeFile", "write_file", (_PATH, Param("content", "content"))),
        MethodSchema(
            "createFile",
            "create_file",
            (_PATH, Param("content", "content", required=False)),
        ),
        MethodSchema("deleteFile", "delete_file", (_PATH,)),
        MethodSchema("createDirectory", "create_directory", (_PATH,)),
        MethodSchema(
            "listDirectory",
            "list_directory",
            (Param("path", "path", required=False), Param("options", "options", required=False)),
        ),
        MethodSchema("copyFile", "copy_file", (_SRC, _DST)),
        MethodSchema("moveFile", "move_file", (_SRC, _DST)),
        MethodSchema("getStats", "get_stats", (_PATH,)),
        MethodSchema(
            "searchFiles",
            "search_files",
            (Param("pattern", "pattern"), Param("path", "path", required=False)),
        ),
    )

    def __init__(
        self,
        allowed_paths: list[str | Path] | None = None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        blocked_extensions: tuple[str, ...] | list[str] = DEFAULT_BLOCKED_EXTENSIONS,
        base_dir: Path | None = None,
    ) -> None:
        self.base_dir = Path(base_dir or Path.cwd()).resolve()
        roots = allowed_paths if allowed_paths is not None else [
            self.base_dir,
            tempfile.gettempdir(),
        ]
        self.allowed_roots: list[Path] = []
        for root in roots:
            self.allow_path(root)
        self.max_file_size = max_file_size
        self.blocked_extensions = tuple(e.lower() for e in blocked_extensions)

    # --- Path policy ---

    def allow_path(self, root: str | Path) -> None:
        resolved = Path(root).expanduser().resolve()
        if resolved not in self.allowed_roots:
            self.allowed_roots.append(resolved)

    def resolve(self, path: str | Path) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.base_dir / candidate
        return candidate.resolve()

    def is_allowed(self, path: str | Path) -> bool:
        resolved = self.resolve(path)
        return any(resolved == root or resolved.is_relative_to(root) for root in self.allowed_roots)

    def check_path(self, path: str | Path) -> Path:
        """Resolve ``path`` or raise AccessDenied / Blocked."""
        resolved = self.resolve(path)
        if not any(
            resolved == root or resolved.is_relative_to(root) for root in self.allowed_roots
        ):
            raise ToolError(
                f"Access denied: {resolved} is outside the allowed paths",
                ErrorKind.ACCESS_DENIED,
                {"path": str(resolved)},
            )
        if resolved.suffix.lower() in self.blocked_extensions:
            raise ToolError(
                f"Blocked file extension: {resolved.suffix}",
                ErrorKind.BLOCKED,
                {"path": str(resolved)},
            )
        return resolved

    def _check_size(self, size: int, what: str) -> None:
        if size > self.max_file_size:
            raise ToolError(
                f"{what} too large: {size} bytes (max: {self.max_file_size})",
                ErrorKind.TOO_LARGE,
            )

    def validate_action(self, action: Action, method: MethodSchema) -> ValidationReport:
        errors: list[str] = []
        warnings: list[str] = []
        kind: ErrorKind | None = None
        for raw in method.values_of(action.params, "path"):
            if ".." in Path(str(raw)).parts:
                warnings.append(f"Path contains '..' traversal: {raw}")
            try:
                self.check_path(raw)
            except ToolError as e:
                errors.append(e.message)
                kind = kind or e.kind
        for content in method.values_of(action.params, "content"):
            size = len(str(content).encode("utf-8"))
            if size > self.max_file_size:
                errors.append(f"Content too large: {size} bytes (max: {self.max_file_size})")
                kind = kind or ErrorKind.TOO_LARGE
        return ValidationReport(valid=not errors, errors=errors, warnings=warnings, kind=kind)

    # --- Methods ---

    async def read_file(self, path: str, encoding: str = "utf-8") -> dict[str, Any]:
        target = self.check_path(path)
        if not target.exists():
            raise ToolError(f"File not found: {path}", ErrorKind.NOT_FOUND)
        if not target.is_file():
            raise ToolError(f"Not a file: {path}", ErrorKind.INVALID_INPUT)
        size = target.stat().st_size
        self._check_size(size, "File")

        def _read() -> str:
            with open(target, encoding=encoding, newline="") as f:
                return f.read()

        content = await asyncio.to_thread(_read)
        return {"path": str(target), "content": content, "size": size}

    async def write_file(
        self, path: str, content: str = "", encoding: str = "utf-8"
    ) -> dict[str, Any]:
        target = self.check_path(path)
        data = content.encode(encoding)
        self._check_size(len(data), "Content")
        existed = target.exists()

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("Wrote %d bytes to %s", len(data), target)
        return {"path": str(target), "size": len(data), "created": not existed}

    async def create_file(
        self,
        path: str,
        content: str = "",
        overwrite: bool = False,
        encoding: str = "utf-8",
    ) -> dict[str, Any]:
        target = self.check_path(path)
        if target.exists() and not overwrite:
            raise ToolError(
                f"File already exists: {path} (pass overwrite=true to replace it)",
                ErrorKind.INVALID_INPUT,
            )
        return await self.write_file(path, content, encoding)

    async def delete_file(self, path: str) -> dict[str, Any]:
        target = self.check_path(path)
        if not target.exists():
            raise ToolError(f"File not found: {path}", ErrorKind.NOT_FOUND)
        if target.is_dir():
            raise ToolError(f"Refusing to delete a directory: {path}", ErrorKind.INVALID_INPUT)
        await asyncio.to_thread(target.unlink)
        return {"path": str(target), "deleted": True}

    async def create_directory(self, path: str) -> dict[str, Any]:
        target = self.check_path(path)
        existed = target.is_dir()
        if target.exists() and not existed:
            raise ToolError(f"A file exists at {path}", ErrorKind.INVALID_INPUT)
        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
        return {"path": str(target), "created": not existed}

    async def list_directory(
        self,
        path: str = ".",
        recursive: bool = False,
        include_hidden: bool = False,
        detailed: bool = False,
    ) -> dict[str, Any]:
        target = self.check_path(path)
        if not target.exists():
            raise ToolError(f"Directory not found: {path}", ErrorKind.NOT_FOUND)
        if not target.is_dir():
            raise ToolError(f"Not a directory: {path}", ErrorKind.INVALID_INPUT)

        def _list() -> list[dict[str, Any]]:
            entries: list[dict[str, Any]] = []
            children = target.rglob("*") if recursive else target.iterdir()
            for child in sorted(children):
                rel = child.relative_to(target)
                if not include_hidden and any(p.startswith(".") for p in rel.parts):
                    continue
                entry: dict[str, Any] = {
                    "name": child.name,
                    "path": rel.as_posix(),
                    "type": "directory" if child.is_dir() else "file",
                }
                if detailed:
                    st = child.stat()
                    entry.update(
                        size=st.st_size,
                        modified=_iso(st.st_mtime),
                        permissions=oct(st.st_mode & 0o777),
                    )
                entries.append(entry)
            return entries

        entries = await asyncio.to_thread(_list)
        return {"path": str(target), "entries": entries, "count": len(entries)}

    async def copy_file(self, source: str, destination: str) -> dict[str, Any]:
        src = self.check_path(source)
        dst = self.check_path(destination)
        if not src.is_file():
            raise ToolError(f"Source file not found: {source}", ErrorKind.NOT_FOUND)
        self._check_size(src.stat().st_size, "File")

        def _copy() -> None:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)

        await asyncio.to_thread(_copy)
        return {"source": str(src), "destination": str(dst)}

    async def move_file(self, source: str, destination: str) -> dict[str, Any]:
        src = self.check_path(source)
        dst = self.check_path(destination)
        if not src.exists():
            raise ToolError(f"Source not found: {source}", ErrorKind.NOT_FOUND)

        def _move() -> None:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(src, dst)

        await asyncio.to_thread(_move)
        return {"source": str(src), "destination": str(dst)}

    async def get_stats(self, path: str) -> dict[str, Any]:
        target = self.check_path(path)
        if not target.exists():
            return {"path": str(target), "exists": False}
        st = target.stat()
        return {
            "path": str(target),
            "exists": True,
            "type": "directory" if target.is_dir() else "file",
            "size": st.st_size,
            "created": _iso(st.st_ctime),
            "modified": _iso(st.st_mtime),
            "accessed": _iso(st.st_atime),
            "isReadable": os.access(target, os.R_OK),
            "isWritable": os.access(target, os.W_OK),
        }

    async def search_files(
        self,
        pattern: str,
        path: str = ".",
        include_hidden: bool = False,
        max_results: int = 1000,
    ) -> dict[str, Any]:
        root = self.check_path(path)
        if not root.is_dir():
            raise ToolError(f"Directory not found: {path}", ErrorKind.NOT_FOUND)
        rules = IgnoreRules.for_root(root)

        def _search() -> list[str]:
            found: list[str] = []
            for file in rules.walk(root, include_hidden=include_hidden):
                rel = file.relative_to(root).as_posix()
                if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(file.name, pattern):
                    found.append(rel)
                    if len(found) >= max_results:
                        break
            return found

        files = await asyncio.to_thread(_search)
        return {"root": str(root), "pattern": pattern, "files": files, "count": len(files)}
