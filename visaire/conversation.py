"""Durable, branchable conversation records.

One JSON file per conversation under the session's storage directory.
Every mutation rewrites the whole record (temp file + rename), and all
existing records are loaded by ``load()`` at startup.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import ErrorKind, VisaireError
from .models.types import (
    ActionOutcome,
    ActionRecord,
    Conversation,
    ConversationStatus,
    Message,
    MessageRole,
    ReasoningRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ("messages", "reasoning", "actions")
SORT_FIELDS = ("start_time", "end_time", "message_count", "duration")

_FAILED_OUTCOMES = {ActionOutcome.FAILED, ActionOutcome.REJECTED}


class ConversationStore:
    """In-memory index of conversations mirrored to JSON files."""

    def __init__(self, storage_dir: str | Path, agent_id: str | None = None) -> None:
        self.storage_dir = Path(storage_dir)
        self.agent_id = agent_id
        self._conversations: dict[str, Conversation] = {}

    # --- Persistence ---

    def _path(self, conversation_id: str) -> Path:
        return self.storage_dir / f"{conversation_id}.json"

    def _write(self, conversation: Conversation) -> None:
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        target = self._path(conversation.id)
        tmp = target.with_suffix(".tmp")
        tmp.write_text(conversation.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(target)

    async def _persist(self, conversation: Conversation) -> None:
        await asyncio.to_thread(self._write, conversation)

    async def load(self) -> int:
        """Load every stored record; malformed files are skipped."""
        loaded = await asyncio.to_thread(self._read_all)
        self._conversations.update(loaded)
        if loaded:
            logger.debug("Loaded %d conversations from %s", len(loaded), self.storage_dir)
        return len(loaded)

    def _read_all(self) -> dict[str, Conversation]:
        if not self.storage_dir.is_dir():
            return {}
        found: dict[str, Conversation] = {}
        for path in sorted(self.storage_dir.glob("*.json")):
            try:
                conversation = Conversation.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError, json.JSONDecodeError) as e:
                logger.warning("Skipping unreadable conversation %s: %s", path.name, e)
                continue
            found[conversation.id] = conversation
        return found

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise VisaireError(f"Conversation not found: {conversation_id}", ErrorKind.NOT_FOUND)
        return conversation

    # --- Lifecycle ---

    async def start(
        self,
        input: str = "",
        parent_id: str | None = None,
        branch_point: int | None = None,
        agent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        conversation = Conversation(
            agent_id=agent_id or self.agent_id,
            parent_id=parent_id,
            branch_point=branch_point,
            metadata=metadata or {},
        )
        if input:
            conversation.messages.append(Message(role=MessageRole.USER, content=input))
            conversation.metrics.message_count = 1
        self._conversations[conversation.id] = conversation
        await self._persist(conversation)
        logger.debug("Started conversation %s", conversation.id)
        return conversation

    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole | str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        conversation = self._require(conversation_id)
        if not conversation.is_active:
            raise VisaireError(
                f"Conversation {conversation_id} is {conversation.status}",
                ErrorKind.INVALID_INPUT,
            )
        message = Message(role=MessageRole(role), content=content, metadata=metadata or {})
        conversation.messages.append(message)
        conversation.metrics.message_count = len(conversation.messages)
        await self._persist(conversation)
        return message

    async def update(
        self,
        conversation_id: str,
        reasoning: ReasoningRecord | None = None,
        execution_results: list[ActionRecord] | None = None,
        metrics: dict[str, Any] | None = None,
        context_ref: str | None = None,
    ) -> Conversation:
        conversation = self._require(conversation_id)
        if reasoning is not None:
            conversation.reasoning.append(reasoning)
        for record in execution_results or []:
            conversation.actions.append(record)
            if record.execution is not None:
                conversation.metrics.tool_calls += 1
            if record.outcome in _FAILED_OUTCOMES:
                conversation.metrics.errors += 1
        for key, value in (metrics or {}).items():
            if key == "total_tokens":
                conversation.metrics.total_tokens += int(value)
            elif hasattr(conversation.metrics, key):
                setattr(conversation.metrics, key, value)
        if context_ref is not None:
            conversation.context_ref = context_ref
        await self._persist(conversation)
        return conversation

    async def create_branch(
        self, parent_id: str, branch_point: int, new_input: str
    ) -> Conversation:
        """New conversation sharing ``parent.messages[:branch_point]``, then ``new_input``."""
        parent = self._require(parent_id)
        if not 0 <= branch_point <= len(parent.messages):
            raise VisaireError(
                f"Branch point {branch_point} out of range (0..{len(parent.messages)})",
                ErrorKind.INVALID_INPUT,
            )
        branch = Conversation(
            agent_id=parent.agent_id,
            parent_id=parent.id,
            branch_point=branch_point,
            context_ref=parent.context_ref,
            messages=[m.model_copy(deep=True) for m in parent.messages[:branch_point]],
        )
        branch.messages.append(Message(role=MessageRole.USER, content=new_input))
        branch.metrics.message_count = len(branch.messages)
        self._conversations[branch.id] = branch
        await self._persist(branch)
        logger.debug("Branched %s from %s at %d", branch.id, parent.id, branch_point)
        return branch

    async def end(self, conversation_id: str, reason: str = "completed") -> Conversation:
        """Close a conversation. Ending an ended conversation changes nothing."""
        conversation = self._require(conversation_id)
        if not conversation.is_active:
            return conversation
        conversation.status = (
            ConversationStatus.SHUTDOWN if reason == "shutdown" else ConversationStatus.ENDED
        )
        conversation.end_time = utcnow()
        conversation.metrics.duration = (
            conversation.end_time - conversation.start_time
        ).total_seconds()
        conversation.metadata["end_reason"] = reason
        await self._persist(conversation)
        return conversation

    async def close_all(self, reason: str = "shutdown") -> int:
        active = self.list_active()
        for conversation in active:
            await self.end(conversation.id, reason)
        return len(active)

    # --- Queries ---

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def list_active(self) -> list[Conversation]:
        return [c for c in self._conversations.values() if c.is_active]

    def search(
        self,
        query: str,
        search_in: tuple[str, ...] | list[str] = SEARCH_FIELDS,
        case_sensitive: bool = False,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """Conversations whose messages, reasoning or actions contain ``query``."""
        needle = query if case_sensitive else query.lower()
        results: list[dict[str, Any]] = []
        for conversation in self._sorted(list(self._conversations.values()), "start_time", True):
            matches: list[dict[str, Any]] = []
            for field, index, text in self._searchable(conversation, search_in):
                haystack = text if case_sensitive else text.lower()
                if needle in haystack:
                    matches.append({"field": field, "index": index, "text": text[:200]})
            if matches:
                results.append({"conversation": conversation, "matches": matches})
                if len(results) >= limit:
                    break
        return results

    @staticmethod
    def _searchable(conversation: Conversation, search_in):
        if "messages" in search_in:
            for i, m in enumerate(conversation.messages):
                yield "messages", i, m.content
        if "reasoning" in search_in:
            for i, r in enumerate(conversation.reasoning):
                yield "reasoning", i, "\n".join([r.explanation, *r.decisions])
        if "actions" in search_in:
            for i, a in enumerate(conversation.actions):
                yield "actions", i, f"{a.action.describe()} {a.action.source}"

    def get_history(
        self,
        limit: int = 50,
        agent_id: str | None = None,
        status: ConversationStatus | str | None = None,
        sort_by: str = "start_time",
        sort_order: str = "desc",
    ) -> list[Conversation]:
        if sort_by not in SORT_FIELDS:
            raise VisaireError(
                f"Cannot sort by {sort_by}; expected one of {', '.join(SORT_FIELDS)}",
                ErrorKind.INVALID_INPUT,
            )
        items = [
            c for c in self._conversations.values()
            if (agent_id is None or c.agent_id == agent_id)
            and (status is None or c.status == ConversationStatus(status))
        ]
        return self._sorted(items, sort_by, sort_order == "desc")[:limit]

    @staticmethod
    def _sorted(items: list[Conversation], sort_by: str, descending: bool) -> list[Conversation]:
        def key(c: Conversation) -> Any:
            if sort_by == "end_time":
                return (c.end_time or c.start_time).timestamp()
            if sort_by == "message_count":
                return len(c.messages)
            if sort_by == "duration":
                return c.metrics.duration
            return c.start_time.timestamp()

        return sorted(items, key=key, reverse=descending)

    # --- Maintenance ---

    async def cleanup(self, max_age_days: int = 30, keep_active: bool = True) -> int:
        """Remove conversations started more than ``max_age_days`` ago."""
        cutoff = utcnow() - timedelta(days=max_age_days)
        stale = [
            c for c in self._conversations.values()
            if c.start_time < cutoff and not (keep_active and c.is_active)
        ]
        for conversation in stale:
            del self._conversations[conversation.id]
            await asyncio.to_thread(self._path(conversation.id).unlink, missing_ok=True)
        if stale:
            logger.info("Removed %d conversations older than %d days", len(stale), max_age_days)
        return len(stale)

    def stats(self) -> dict[str, Any]:
        conversations = list(self._conversations.values())
        return {
            "total": len(conversations),
            "active": sum(1 for c in conversations if c.is_active),
            "ended": sum(1 for c in conversations if c.status == ConversationStatus.ENDED),
            "branches": sum(1 for c in conversations if c.parent_id),
            "messages": sum(len(c.messages) for c in conversations),
            "tool_calls": sum(c.metrics.tool_calls for c in conversations),
            "errors": sum(c.metrics.errors for c in conversations),
        }
