"""Analysis tool: lightweight code summaries, regex search and dependency audit."""

from __future__ import annotations

import ast
import asyncio
import fnmatch
import json
import logging
import re
import sys
import tomllib
from pathlib import Path
from typing import Any

from ..errors import ErrorKind, ToolError
from ..ignore import IgnoreRules
from ..models.types import Action, ValidationReport
from .base import MethodSchema, Param, Tool
from .filesystem import FilesystemTool

logger = logging.getLogger(__name__)

PYTHON_EXTENSIONS = {".py", ".pyi"}
JS_EXTENSIONS = {".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx"}
CODE_EXTENSIONS = PYTHON_EXTENSIONS | JS_EXTENSIONS | {
    ".go", ".rs", ".java", ".kt", ".rb", ".php", ".c", ".h", ".cpp", ".hpp", ".cs", ".swift",
}

LOCK_FILES = (
    "package-lock.json", "yarn.lock", "pnpm-lock.yaml",
    "poetry.lock", "uv.lock", "Pipfile.lock",
)

NODE_BUILTINS = frozenset({
    "assert", "buffer", "child_process", "cluster", "crypto", "dgram", "dns", "events",
    "fs", "http", "http2", "https", "net", "os", "path", "perf_hooks", "process",
    "querystring", "readline", "stream", "string_decoder", "timers", "tls", "tty", "url",
    "util", "v8", "vm", "worker_threads", "zlib",
})

_JS_IMPORT = re.compile(
    r"""^\s*import\s+(?:(?P<what>[\w*\s{},]+?)\s+from\s+)?['"](?P<src>[^'"]+)['"]""",
    re.MULTILINE,
)
_JS_REQUIRE = re.compile(
    r"""(?:const|let|var)\s+(?P<what>[\w{}\s,]+?)\s*=\s*require\(\s*['"](?P<src>[^'"]+)['"]\s*\)"""
)
_JS_EXPORT = re.compile(
    r"^\s*export\s+(?:default\s+)?(?:async\s+)?(?:function\*?|class|const|let|var)\s+(\w+)",
    re.MULTILINE,
)
_JS_MODULE_EXPORTS = re.compile(r"module\.exports\s*=\s*\{([^}]*)\}|module\.exports\.(\w+)")
_JS_FUNCTION = re.compile(
    r"(?:^|\s)(?:async\s+)?function\*?\s+(\w+)\s*\("
    r"|(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s+)?(?:\([^)]*\)|\w+)\s*=>",
    re.MULTILINE,
)
_JS_CLASS = re.compile(r"^\s*(?:export\s+(?:default\s+)?)?class\s+(\w+)", re.MULTILINE)
_JS_VARIABLE = re.compile(r"^\s*(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=", re.MULTILINE)
_JS_BRANCH = re.compile(r"\b(?:if|while|for|switch)\b")

_PY_BRANCHES = (
    ast.If, ast.While, ast.For, ast.AsyncFor, ast.IfExp, ast.ExceptHandler,
    ast.With, ast.AsyncWith, ast.BoolOp, ast.match_case, ast.comprehension,
)


def is_binary(data: bytes) -> bool:
    """More than 1% NUL bytes in the sample means binary."""
    if not data:
        return False
    return data.count(b"\x00") / len(data) > 0.01


def _split_symbols(raw: str) -> list[str]:
    cleaned = raw.replace("{", ",").replace("}", ",")
    symbols = []
    for part in cleaned.split(","):
        part = part.strip()
        if not part:
            continue
        # "a as b" keeps the local name
        symbols.append(part.split(" as ")[-1].strip())
    return symbols


def summarize_python(text: str) -> dict[str, Any]:
    tree = ast.parse(text)
    imports: list[dict[str, Any]] = []
    functions: list[str] = []
    classes: list[str] = []
    variables: list[str] = []
    exports: list[str] = []
    complexity = 0

    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                imports.append({"source": alias.name, "symbols": [alias.asname or alias.name]})
        elif isinstance(node, ast.ImportFrom):
            source = "." * node.level + (node.module or "")
            imports.append({"source": source, "symbols": [a.asname or a.name for a in node.names]})
        elif isinstance(node, ast.FunctionDef | ast.AsyncFunctionDef):
            complexity += 1
        elif isinstance(node, ast.ClassDef):
            complexity += 2
        elif isinstance(node, _PY_BRANCHES):
            complexity += 1

    for node in tree.body:
        if isinstance(node, ast.FunctionDef | ast.AsyncFunctionDef):
            functions.append(node.name)
        elif isinstance(node, ast.ClassDef):
            classes.append(node.name)
        elif isinstance(node, ast.Assign | ast.AnnAssign):
            targets = node.targets if isinstance(node, ast.Assign) else [node.target]
            for target in targets:
                if isinstance(target, ast.Name):
                    if target.id == "__all__" and isinstance(node.value, ast.List | ast.Tuple):
                        exports = [
                            e.value for e in node.value.elts
                            if isinstance(e, ast.Constant) and isinstance(e.value, str)
                        ]
                    else:
                        variables.append(target.id)

    if not exports:
        exports = [n for n in functions + classes if not n.startswith("_")]

    return {
        "language": "python",
        "imports": imports,
        "exports": exports,
        "functions": functions,
        "classes": classes,
        "variables": variables,
        "complexity": complexity,
        "lines": len(text.splitlines()),
    }


def summarize_javascript(text: str) -> dict[str, Any]:
    imports = [
        {"source": m.group("src"), "symbols": _split_symbols(m.group("what") or "")}
        for m in _JS_IMPORT.finditer(text)
    ]
    imports += [
        {"source": m.group("src"), "symbols": _split_symbols(m.group("what"))}
        for m in _JS_REQUIRE.finditer(text)
    ]
    exports = [m.group(1) for m in _JS_EXPORT.finditer(text)]
    for m in _JS_MODULE_EXPORTS.finditer(text):
        exports += _split_symbols(m.group(1)) if m.group(1) else [m.group(2)]
    functions = [m.group(1) or m.group(2) for m in _JS_FUNCTION.finditer(text)]
    classes = [m.group(1) for m in _JS_CLASS.finditer(text)]
    variables = [v for v in (m.group(1) for m in _JS_VARIABLE.finditer(text)) if v not in functions]
    complexity = len(functions) + 2 * len(classes) + len(_JS_BRANCH.findall(text))
    return {
        "language": "javascript",
        "imports": imports,
        "exports": list(dict.fromkeys(exports)),
        "functions": functions,
        "classes": classes,
        "variables": variables,
        "complexity": complexity,
        "lines": len(text.splitlines()),
    }


def summarize_text(text: str, size: int | None = None) -> dict[str, Any]:
    return {
        "language": "text",
        "lines": len(text.splitlines()),
        "size": size if size is not None else len(text.encode("utf-8")),
        "isEmpty": not text.strip(),
        "wordCount": len(text.split()),
    }


def json_shape(value: Any, depth: int = 0, max_depth: int = 3) -> Any:
    if isinstance(value, dict):
        if depth >= max_depth:
            return {"type": "object", "keys": len(value)}
        return {
            "type": "object",
            "properties": {k: json_shape(v, depth + 1, max_depth) for k, v in value.items()},
        }
    if isinstance(value, list):
        if depth >= max_depth or not value:
            return {"type": "array", "length": len(value)}
        return {"type": "array", "length": len(value), "items": json_shape(value[0], depth + 1)}
    if value is None:
        return {"type": "null"}
    return {"type": type(value).__name__}


def summarize_source(path: Path, text: str) -> dict[str, Any]:
    """File-type-specific summary; parse failures fall back to the text summary."""
    ext = path.suffix.lower()
    try:
        if ext in PYTHON_EXTENSIONS:
            return summarize_python(text)
        if ext in JS_EXTENSIONS:
            return summarize_javascript(text)
        if ext == ".json":
            data = json.loads(text)
            return {
                "language": "json",
                "keys": list(data.keys()) if isinstance(data, dict) else [],
                "structure": json_shape(data),
                "lines": len(text.splitlines()),
            }
    except (SyntaxError, ValueError, RecursionError) as e:
        logger.debug("Falling back to text summary for %s: %s", path, e)
        summary = summarize_text(text)
        summary["parseError"] = str(e)
        return summary
    summary = summarize_text(text)
    if ext in CODE_EXTENSIONS:
        summary["language"] = ext.lstrip(".")
    return summary


def _module_root(source: str, language: str) -> str | None:
    """Package name an import refers to, or None for relative imports."""
    if not source or source.startswith("."):
        return None
    if language == "python":
        return source.split(".")[0]
    if source.startswith("node:"):
        return source[5:]
    parts = source.split("/")
    return "/".join(parts[:2]) if source.startswith("@") else parts[0]


def _normalize_dist(name: str) -> str:
    return re.split(r"[\[<>=!~; ]", name.strip(), maxsplit=1)[0].lower().replace("-", "_")


class AnalysisTool(Tool):
    """analyzeCode / findPattern / getDependencies."""

    name = "analysis"
    methods = (
        MethodSchema(
            "analyzeCode",
            "analyze_code",
            (Param("path", "path"), Param("options", "options", required=False)),
        ),
        MethodSchema(
            "findPattern",
            "find_pattern",
            (
                Param("pattern", "pattern"),
                Param("directory", "path", required=False),
                Param("options", "options", required=False),
            ),
        ),
        MethodSchema(
            "getDependencies",
            "get_dependencies",
            (Param("directory", "path", required=False),),
        ),
    )

    def __init__(self, filesystem: FilesystemTool | None = None, max_scan_files: int = 500) -> None:
        self.filesystem = filesystem or FilesystemTool()
        self.max_scan_files = max_scan_files

    def validate_action(self, action: Action, method: MethodSchema) -> ValidationReport:
        errors: list[str] = []
        kind: ErrorKind | None = None
        for raw in method.values_of(action.params, "path"):
            if not self.filesystem.is_allowed(raw):
                errors.append(f"Access denied: {raw} is outside the allowed paths")
                kind = ErrorKind.ACCESS_DENIED
        if method.name == "findPattern":
            try:
                re.compile(action.params[0])
            except re.error as e:
                errors.append(f"Invalid regular expression: {e}")
                kind = kind or ErrorKind.INVALID_INPUT
        return ValidationReport(valid=not errors, errors=errors, kind=kind)

    def _root(self, directory: str) -> Path:
        root = self.filesystem.resolve(directory)
        if not self.filesystem.is_allowed(root):
            raise ToolError(
                f"Access denied: {root} is outside the allowed paths", ErrorKind.ACCESS_DENIED
            )
        if not root.is_dir():
            raise ToolError(f"Directory not found: {directory}", ErrorKind.NOT_FOUND)
        return root

    # --- Methods ---

    async def analyze_code(self, path: str) -> dict[str, Any]:
        target = self.filesystem.resolve(path)
        if not self.filesystem.is_allowed(target):
            raise ToolError(
                f"Access denied: {target} is outside the allowed paths", ErrorKind.ACCESS_DENIED
            )
        if not target.is_file():
            raise ToolError(f"File not found: {path}", ErrorKind.NOT_FOUND)
        size = target.stat().st_size
        if size > self.filesystem.max_file_size:
            raise ToolError(f"File too large: {size} bytes", ErrorKind.TOO_LARGE)

        raw = await asyncio.to_thread(target.read_bytes)
        if is_binary(raw[:8192]):
            return {"path": str(target), "language": "binary", "size": size}
        summary = summarize_source(target, raw.decode("utf-8", errors="replace"))
        summary.setdefault("size", size)
        return {"path": str(target), **summary}

    async def find_pattern(
        self,
        pattern: str,
        directory: str = ".",
        file_pattern: str = "**/*",
        case_sensitive: bool = True,
        max_results: int = 100,
        context_lines: int = 2,
    ) -> dict[str, Any]:
        try:
            regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
        except re.error as e:
            raise ToolError(f"Invalid regular expression: {e}", ErrorKind.INVALID_INPUT) from e
        root = self._root(directory)
        rules = IgnoreRules.for_root(root)
        match_all = file_pattern in ("**/*", "*", "**")

        def _search() -> dict[str, Any]:
            results: list[dict[str, Any]] = []
            files_searched = 0
            files_with_matches = 0
            truncated = False
            for file in rules.walk(root):
                rel = file.relative_to(root).as_posix()
                if not match_all and not (
                    fnmatch.fnmatch(rel, file_pattern) or fnmatch.fnmatch(file.name, file_pattern)
                ):
                    continue
                try:
                    raw = file.read_bytes()
                except OSError:
                    continue
                if len(raw) > self.filesystem.max_file_size or is_binary(raw[:8192]):
                    continue
                files_searched += 1
                lines = raw.decode("utf-8", errors="replace").splitlines()
                found_here = False
                for idx, line in enumerate(lines):
                    hits = regex.findall(line)
                    if not hits:
                        continue
                    found_here = True
                    results.append(
                        {
                            "file": rel,
                            "line": idx + 1,
                            "content": line,
                            "matches": len(hits),
                            "before": lines[max(0, idx - context_lines):idx],
                            "after": lines[idx + 1:idx + 1 + context_lines],
                        }
                    )
                    if len(results) >= max_results:
                        truncated = True
                        break
                files_with_matches += found_here
                if truncated:
                    break
            return {
                "pattern": pattern,
                "results": results,
                "summary": {
                    "filesSearched": files_searched,
                    "matches": len(results),
                    "filesWithMatches": files_with_matches,
                    "truncated": truncated,
                },
            }

        return await asyncio.to_thread(_search)

    async def get_dependencies(self, directory: str = ".") -> dict[str, Any]:
        root = self._root(directory)
        return await asyncio.to_thread(self._dependencies, root)

    def _dependencies(self, root: Path) -> dict[str, Any]:
        manifest, language, declared, dev = read_manifest(root)
        lock_files = [name for name in LOCK_FILES if (root / name).exists()]

        observed: dict[str, list[str]] = {}
        scanned = 0
        for file in IgnoreRules.for_root(root).walk(root):
            ext = file.suffix.lower()
            if ext not in PYTHON_EXTENSIONS | JS_EXTENSIONS:
                continue
            scanned += 1
            if scanned > self.max_scan_files:
                break
            try:
                text = file.read_text(encoding="utf-8", errors="replace")
                summary = summarize_source(file, text)
            except OSError:
                continue
            lang = "python" if ext in PYTHON_EXTENSIONS else "javascript"
            for imp in summary.get("imports", []):
                module = _module_root(imp["source"], lang)
                if module:
                    observed.setdefault(module, []).append(file.relative_to(root).as_posix())

        declared_all = {_normalize_dist(n): n for n in list(declared) + list(dev)}
        observed_norm = {_normalize_dist(m): m for m in observed}
        local_modules = {p.stem.lower() for p in root.iterdir()} if root.is_dir() else set()

        unused = [
            original for norm, original in declared_all.items()
            if norm not in observed_norm and original not in dev
        ]
        missing = []
        for norm, module in observed_norm.items():
            if norm in declared_all or module.lower() in local_modules:
                continue
            if module in sys.stdlib_module_names or module in NODE_BUILTINS:
                continue
            missing.append(module)

        return {
            "manifest": manifest,
            "language": language,
            "dependencies": declared,
            "devDependencies": dev,
            "lockFiles": lock_files,
            "imports": {k: sorted(set(v)) for k, v in sorted(observed.items())},
            "unused": sorted(unused),
            "missing": sorted(missing),
        }


def read_manifest(root: Path) -> tuple[str | None, str | None, dict[str, str], dict[str, str]]:
    """(manifest name, language, dependencies, dev dependencies) for a project root."""
    package_json = root / "package.json"
    if package_json.exists():
        try:
            data = json.loads(package_json.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ToolError(f"Invalid package.json: {e}", ErrorKind.INVALID_INPUT) from e
        declared = {**data.get("dependencies", {}), **data.get("peerDependencies", {})}
        return "package.json", "javascript", declared, dict(data.get("devDependencies", {}))

    pyproject = root / "pyproject.toml"
    if pyproject.exists():
        with open(pyproject, "rb") as f:
            data = tomllib.load(f)
        project = data.get("project", {})
        declared = {_normalize_dist(d): d for d in project.get("dependencies", [])}
        dev: dict[str, str] = {}
        for extra in project.get("optional-dependencies", {}).values():
            dev.update({_normalize_dist(d): d for d in extra})
        return "pyproject.toml", "python", declared, dev

    requirements = root / "requirements.txt"
    if requirements.exists():
        declared = {}
        for line in requirements.read_text(encoding="utf-8").splitlines():
            line = line.split("#", 1)[0].strip()
            if line and not line.startswith("-"):
                declared[_normalize_dist(line)] = line
        return "requirements.txt", "python", declared, {}

    return None, None, {}, {}
