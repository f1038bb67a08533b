"""Reasoning engine: turns (prompt, model reply) into an ordered action plan.

The catalog is a flat, ordered list of ActionPattern entries. Each entry
pairs a regular expression with a target tool method and an extraction
function ``(match, text) -> params | None``. Declaration order matters:
when two patterns claim overlapping text, the earlier entry wins.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .models.types import (
    DESTRUCTIVE_TYPES,
    Action,
    ActionType,
    EffortLevel,
    ReasoningRecord,
)

logger = logging.getLogger(__name__)

# Methods that overwrite, delete, move or run something
DESTRUCTIVE_METHODS = frozenset(
    {
        "writeFile", "deleteFile", "moveFile",
        "executeCommand", "installPackage", "runScript", "spawnProcess",
    }
)

# Replies matching any of these end an autonomous session
COMPLETION_SENTINELS: tuple[str, ...] = (
    "task complete",
    "done",
    "finished",
    "successfully completed",
)
_COMPLETION_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(s) for s in COMPLETION_SENTINELS) + r")\b",
    re.IGNORECASE,
)

ITERATION_CAPS: dict[EffortLevel, int] = {
    EffortLevel.LOW: 1,
    EffortLevel.MEDIUM: 3,
    EffortLevel.HIGH: 6,
    EffortLevel.MAXIMUM: 10,
}

_BASE_PROMPT = (
    "You are Visaire, a command-line assistant that can act on the user's "
    "project. Your reply is scanned for actions:\n"
    "- To create or change a file, name it in backticks (e.g. create `app.py`) "
    "and put its complete content in the fenced code block right after.\n"
    "- To run a shell command, write: run `<command>`.\n"
    "- To install a dependency, write: install package `<name>`.\n"
    "Only describe actions you actually want executed."
)

SYSTEM_PROMPTS: dict[EffortLevel, str] = {
    EffortLevel.LOW: _BASE_PROMPT + "\nBe brief. Prefer a single direct action.",
    EffortLevel.MEDIUM: _BASE_PROMPT
    + "\nThink through the request, then give a short plan followed by the actions.",
    EffortLevel.HIGH: _BASE_PROMPT
    + "\nAnalyze the project context carefully. Consider edge cases, error handling "
    "and tests. Explain your plan step by step before the actions.",
    EffortLevel.MAXIMUM: _BASE_PROMPT
    + "\nWork exhaustively: study the project structure and dependencies, plan in "
    "detail, anticipate failure modes, verify assumptions, include tests and "
    "documentation where they help. Explain every decision.",
}

USER_INSTRUCTION = (
    "Respond with your plan and the concrete actions. When the whole task is "
    'finished, say "task complete".'
)

# A fenced code block: ```lang\n ... \n```
CODE_BLOCK_RE = re.compile(r"```[\w+-]*\n([\s\S]*?)\n```")

_Q = r"[`'\"]?"
_FILE = r"([\w][\w./-]*\.[A-Za-z0-9]+)"
_PATHISH = r"([\w./~][\w./~-]*)"
_STOP_WORDS = frozenset(
    {"it", "them", "the", "a", "an", "all", "this", "that", "dependencies", "packages",
     "package", "deps", "requirements"}
)


def _clean(value: str) -> str:
    return value.strip().strip("`'\"").rstrip(".,;:)")


@dataclass
class _TextIndex:
    """Code blocks of the combined text, computed once per extraction."""

    text: str
    blocks: list[re.Match] = field(default_factory=list)

    @classmethod
    def of(cls, text: str) -> _TextIndex:
        return cls(text=text, blocks=list(CODE_BLOCK_RE.finditer(text)))

    def content_for(self, filename: str, match: re.Match) -> str | None:
        """Nearest code block for ``filename``.

        Preference: a block whose lead-in mentions the file, then the first
        block after the match, then the closest block before it.
        """
        if not self.blocks:
            return None
        base = filename.rsplit("/", 1)[-1]
        for block in self.blocks:
            if block.start() < match.start():
                continue
            if base in self._lead_in(block):
                return block.group(1)
        after = [b for b in self.blocks if b.start() >= match.end()]
        if after:
            return after[0].group(1)
        before = [b for b in self.blocks if b.end() <= match.start()]
        return before[-1].group(1) if before else None

    def _lead_in(self, block: re.Match) -> str:
        """Last non-empty line within 200 chars before ``block``."""
        window = self.text[max(0, block.start() - 200):block.start()]
        lines = [line for line in window.splitlines() if line.strip()]
        return lines[-1] if lines else ""


_WITH_CLAUSE = re.compile(
    r"^\s*,?\s*(?:with|containing)\s+(?:the\s+)?(?:content|text)?\s*:?\s*(.+)$",
    re.IGNORECASE | re.MULTILINE,
)


def _inline_content(text: str, match: re.Match) -> str | None:
    line_end = text.find("\n", match.end())
    rest = text[match.end():line_end if line_end != -1 else len(text)]
    m = _WITH_CLAUSE.match(rest)
    if not m:
        return None
    return _clean(m.group(1))


# --- Extraction strategies ---

Extractor = Callable[[re.Match, _TextIndex], list[Any] | None]


def extract_file_with_content(match: re.Match, index: _TextIndex) -> list[Any] | None:
    filename = _clean(match.group(1))
    content = index.content_for(filename, match)
    if content is None:
        content = _inline_content(index.text, match)
    return [filename, content or ""]


def extract_file_update(match: re.Match, index: _TextIndex) -> list[Any] | None:
    # Without content an update would blank the file
    filename = _clean(match.group(1))
    content = index.content_for(filename, match)
    if content is None:
        content = _inline_content(index.text, match)
    return [filename, content] if content else None


def extract_path(match: re.Match, index: _TextIndex) -> list[Any] | None:
    path = _clean(match.group(1))
    return [path] if path and path.lower() not in _STOP_WORDS else None


def extract_optional_path(match: re.Match, index: _TextIndex) -> list[Any] | None:
    raw = match.group(1)
    return [_clean(raw) if raw else "."]


def extract_two_paths(match: re.Match, index: _TextIndex) -> list[Any] | None:
    return [_clean(match.group(1)), _clean(match.group(2))]


def extract_command(match: re.Match, index: _TextIndex) -> list[Any] | None:
    command = next((g for g in match.groups() if g), None)
    return [command.strip()] if command and command.strip() else None


_DEV_HINT = re.compile(r"--save-dev|\s-D\b|dev[- ]dependenc", re.IGNORECASE)


def extract_package(match: re.Match, index: _TextIndex) -> list[Any] | None:
    spec = _clean(match.group(1))
    if not spec or spec.lower() in _STOP_WORDS:
        return None
    options: dict[str, Any] = {}
    # name@version, keeping the leading @ of scoped packages
    at = spec.find("@", 1)
    if at > 0:
        spec, options["version"] = spec[:at], spec[at + 1:]
    line_end = index.text.find("\n", match.end())
    tail = index.text[match.start():line_end if line_end != -1 else len(index.text)]
    if _DEV_HINT.search(tail):
        options["dev"] = True
    return [spec, options] if options else [spec]


def extract_script(match: re.Match, index: _TextIndex) -> list[Any] | None:
    name = next((g for g in match.groups() if g), None)
    return [_clean(name)] if name else None


# --- Catalog ---


@dataclass(frozen=True)
class ActionPattern:
    """One catalog entry: matcher, target method, extraction strategy."""

    type: str
    regex: re.Pattern
    tool: str
    method: str
    confidence: float
    extract: Extractor
    destructive: bool | None = None  # None: derive from type and method

    @property
    def is_destructive(self) -> bool:
        if self.destructive is not None:
            return self.destructive
        return self.type in DESTRUCTIVE_TYPES or self.method in DESTRUCTIVE_METHODS


def _p(expr: str) -> re.Pattern:
    return re.compile(expr, re.IGNORECASE)


def default_patterns() -> list[ActionPattern]:
    return [
        ActionPattern(
            ActionType.INSTALL_PACKAGE,
            _p(r"\b(?:npm\s+install|pip\s+install|install)\s+(?:the\s+)?"
               r"(?:(?:npm\s+|python\s+)?(?:package|dependency|module|library)\s+)?"
               + _Q + r"(@?[A-Za-z0-9][\w.\-/]*(?:@[\w.^~\-]+)?)" + _Q),
            "exec", "installPackage", 0.9, extract_package,
        ),
        ActionPattern(
            ActionType.RUN_SCRIPT,
            _p(r"\bnpm\s+run\s+([\w:.-]+)|\brun\s+(?:the\s+)?" + _Q + r"([\w:.-]+)" + _Q
               + r"\s+script\b"),
            "exec", "runScript", 0.85, extract_script,
        ),
        ActionPattern(
            ActionType.RUN_COMMAND,
            _p(r"\b(?:run|execute)\s+(?:the\s+)?(?:following\s+)?(?:command\s*:?\s*)?"
               r"(?:`([^`\n]+)`|\"([^\"\n]+)\")"),
            "exec", "executeCommand", 0.8, extract_command,
        ),
        ActionPattern(
            ActionType.CREATE_DIRECTORY,
            _p(r"\b(?:create|make|add)\s+(?:a\s+|an\s+|the\s+)?(?:new\s+)?"
               r"(?:directory|folder|dir)\s+(?:called\s+|named\s+)?" + _Q + r"([\w][\w./-]*)" + _Q),
            "filesystem", "createDirectory", 0.85, extract_path,
        ),
        ActionPattern(
            ActionType.CREATE_FILE,
            _p(r"\b(?:create|make|generate|add)\s+(?:a\s+|an\s+|the\s+)?(?:new\s+)?"
               r"(?:(?:[\w+#-]+\s+)?file\s+)?(?:called\s+|named\s+)?" + _Q + _FILE + _Q),
            "filesystem", "writeFile", 0.9, extract_file_with_content,
        ),
        ActionPattern(
            ActionType.WRITE_FILE,
            _p(r"\b(?:update|modify|edit|overwrite)\s+(?:the\s+)?(?:file\s+)?" + _Q + _FILE + _Q),
            "filesystem", "writeFile", 0.75, extract_file_update,
        ),
        ActionPattern(
            ActionType.WRITE_FILE,
            _p(r"\b(?:write|save|put)\s+(?:[^\n`]{0,40}?\s)?(?:to|into|in)\s+(?:the\s+)?"
               r"(?:file\s+)?" + _Q + _FILE + _Q),
            "filesystem", "writeFile", 0.75, extract_file_update,
        ),
        ActionPattern(
            ActionType.COPY_FILE,
            _p(r"\b(?:copy|duplicate)\s+" + _Q + _PATHISH + _Q + r"\s+(?:to|as|into)\s+"
               + _Q + _PATHISH + _Q),
            "filesystem", "copyFile", 0.85, extract_two_paths,
        ),
        ActionPattern(
            ActionType.MOVE_FILE,
            _p(r"\b(?:move|rename)\s+" + _Q + _PATHISH + _Q + r"\s+(?:to|as|into)\s+"
               + _Q + _PATHISH + _Q),
            "filesystem", "moveFile", 0.85, extract_two_paths,
        ),
        ActionPattern(
            ActionType.DELETE_FILE,
            _p(r"\b(?:delete|remove)\s+(?:the\s+)?(?:file\s+)?" + _Q + _FILE + _Q),
            "filesystem", "deleteFile", 0.85, extract_path,
        ),
        ActionPattern(
            ActionType.READ_FILE,
            _p(r"\b(?:read|open|view|cat|show\s+me)\s+(?:the\s+)?(?:contents\s+of\s+)?"
               r"(?:file\s+)?" + _Q + _FILE + _Q),
            "filesystem", "readFile", 0.7, extract_path,
        ),
        ActionPattern(
            ActionType.LIST_DIRECTORY,
            _p(r"\b(?:list|show)\s+(?:all\s+|the\s+)?(?:files|contents|directory|folder)"
               r"(?:\s+(?:in|of|under)\s+(?:the\s+)?(?:directory\s+|folder\s+)?"
               + _Q + r"([\w./~-]+)" + _Q + r")?"),
            "filesystem", "listDirectory", 0.8, extract_optional_path,
        ),
    ]


@dataclass
class _Hit:
    order: int
    start: int
    end: int
    action: Action


def _inside_longer_command(hit: _Hit, hits: list[_Hit]) -> bool:
    """True for an exec phrase embedded in a run command that says more than it does.

    "Run `npm install x`" stays an install, but in
    "Run `rm -rf build && npm install x`" the whole command line is kept
    so the exec policy sees every part of it.
    """
    if hit.action.tool != "exec" or hit.action.type == ActionType.RUN_COMMAND:
        return False
    phrase = (hit.action.source or "").strip("`'\" ")
    return any(
        other.action.type == ActionType.RUN_COMMAND
        and other.start < hit.start < other.end
        and str(other.action.params[0]).strip() != phrase
        for other in hits
    )


def is_complete(reply: str) -> bool:
    return bool(_COMPLETION_RE.search(reply or ""))


def max_iterations_for(effort: EffortLevel | str) -> int:
    return ITERATION_CAPS[EffortLevel(effort)]


def continuation_prompt(original: str, actions_executed: int, errors: int) -> str:
    """Prompt for the next autonomous iteration."""
    return (
        f'Continue with the original task: "{original}"\n\n'
        f"Progress update:\n"
        f"- actions executed: {actions_executed}\n"
        f"- errors: {errors}\n\n"
        "What is the next step? If the task is fully finished, reply with "
        '"task complete" and no further actions.'
    )


class ReasoningEngine:
    """Pattern-driven action extraction plus effort-scaled prompt composition."""

    def __init__(self, patterns: list[ActionPattern] | None = None) -> None:
        self._patterns: list[ActionPattern] = (
            list(patterns) if patterns is not None else default_patterns()
        )

    def add_action_pattern(self, pattern: ActionPattern) -> None:
        self._patterns.append(pattern)

    def list_patterns(self) -> list[ActionPattern]:
        return list(self._patterns)

    # --- Prompts ---

    def system_prompt(self, effort: EffortLevel | str) -> str:
        return SYSTEM_PROMPTS[EffortLevel(effort)]

    def compose_prompt(
        self,
        prompt: str,
        effort: EffortLevel | str = EffortLevel.MEDIUM,
        context: str = "",
    ) -> str:
        parts = [self.system_prompt(effort)]
        if context:
            parts.append("Project context:\n" + context)
        parts.append(f"User Request: {prompt}")
        parts.append(USER_INSTRUCTION)
        return "\n\n".join(parts)

    # --- Extraction ---

    def extract(self, prompt: str, reply: str) -> list[Action]:
        """All actions found in ``prompt + " " + reply``, highest confidence first.

        Overlapping matches keep the earlier-declared pattern, except that an
        install or script phrase inside a longer run command yields to it; repeated
        actions on the same target keep the first occurrence. Equal
        confidence keeps text order.
        """
        text = f"{prompt} {reply}"
        index = _TextIndex.of(text)

        hits: list[_Hit] = []
        for order, pattern in enumerate(self._patterns):
            for match in pattern.regex.finditer(text):
                try:
                    params = pattern.extract(match, index)
                except (IndexError, ValueError) as e:
                    logger.debug("Pattern %s extraction failed: %s", pattern.type, e)
                    continue
                if params is None:
                    continue
                hits.append(
                    _Hit(
                        order,
                        match.start(),
                        match.end(),
                        Action(
                            type=pattern.type,
                            tool=pattern.tool,
                            method=pattern.method,
                            params=params,
                            confidence=pattern.confidence,
                            destructive=pattern.is_destructive,
                            source=match.group(0),
                            position=match.start(),
                        ),
                    )
                )

        hits = [h for h in hits if not _inside_longer_command(h, hits)]
        accepted: list[_Hit] = []
        for hit in sorted(hits, key=lambda h: (h.order, h.start)):
            if any(hit.start < a.end and a.start < hit.end for a in accepted):
                continue
            accepted.append(hit)

        seen: set[tuple[str, str, str]] = set()
        actions: list[Action] = []
        for hit in sorted(accepted, key=lambda h: h.start):
            a = hit.action
            key = (a.tool, a.method, str(a.params[0]) if a.params else "")
            if key in seen:
                continue
            seen.add(key)
            actions.append(a)

        actions.sort(key=lambda a: (-a.confidence, a.position))
        return actions

    def plan(
        self,
        prompt: str,
        reply: str,
        effort: EffortLevel | str = EffortLevel.MEDIUM,
        max_actions: int | None = None,
    ) -> tuple[list[Action], list[Action], ReasoningRecord]:
        """Extract, cap at ``max_actions`` (dropping lowest confidence), and explain."""
        actions = self.extract(prompt, reply)
        dropped: list[Action] = []
        if max_actions is not None and len(actions) > max_actions:
            actions, dropped = actions[:max_actions], actions[max_actions:]

        decisions = [
            f"{a.describe()} (confidence {a.confidence:.2f}"
            + (", destructive)" if a.destructive else ")")
            for a in actions
        ]
        if actions:
            explanation = f"Detected {len(actions)} action(s) in the request and reply"
        else:
            explanation = "No actionable instructions detected"
        if dropped:
            explanation += f"; {len(dropped)} dropped over the per-prompt limit"

        record = ReasoningRecord(
            effort=EffortLevel(effort),
            explanation=explanation,
            decisions=decisions,
            dropped=[a.describe() for a in dropped],
        )
        return actions, dropped, record
