"""Core domain models for Visaire.

Actions flow from the reasoning engine through the tool registry into
conversation records; everything here is plain data with no I/O.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ErrorKind


def new_id(prefix: str = "") -> str:
    token = uuid.uuid4().hex[:12]
    return f"{prefix}_{token}" if prefix else token


def utcnow() -> datetime:
    return datetime.now(UTC)


# --- Enums ---


class ActionType(StrEnum):
    CREATE_FILE = "createFile"
    WRITE_FILE = "writeFile"
    READ_FILE = "readFile"
    DELETE_FILE = "deleteFile"
    CREATE_DIRECTORY = "createDirectory"
    LIST_DIRECTORY = "listDirectory"
    COPY_FILE = "copyFile"
    MOVE_FILE = "moveFile"
    RUN_COMMAND = "runCommand"
    INSTALL_PACKAGE = "installPackage"
    RUN_SCRIPT = "runScript"
    HTTP_REQUEST = "httpRequest"
    ANALYZE_CODE = "analyzeCode"


# Action types that may overwrite, delete, or invoke a shell.
DESTRUCTIVE_TYPES: frozenset[str] = frozenset(
    {
        ActionType.DELETE_FILE,
        ActionType.WRITE_FILE,
        ActionType.RUN_COMMAND,
        ActionType.INSTALL_PACKAGE,
    }
)


class EffortLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    MAXIMUM = "maximum"


class AgentState(StrEnum):
    IDLE = "idle"
    THINKING = "thinking"
    ACTING = "acting"
    ERROR = "error"
    SHUTTING_DOWN = "shutting_down"
    SHUTDOWN = "shutdown"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ConversationStatus(StrEnum):
    ACTIVE = "active"
    ENDED = "ended"
    SHUTDOWN = "shutdown"


class RetentionPolicy(StrEnum):
    IMPORTANCE = "importance"
    RECENCY = "recency"
    FIFO = "fifo"


class ActionOutcome(StrEnum):
    EXECUTED = "executed"
    FAILED = "failed"
    REJECTED = "rejected"
    DECLINED = "declined"
    SKIPPED = "skipped"


# --- Actions and execution ---


class Action(BaseModel):
    """One tool-method invocation extracted from a model reply."""

    id: str = Field(default_factory=lambda: new_id("act"))
    type: str
    tool: str
    method: str
    params: list[Any] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    destructive: bool = False
    source: str = ""
    position: int = 0
    warnings: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def describe(self) -> str:
        shown = ", ".join(_short(p) for p in self.params)
        return f"{self.type}: {self.tool}.{self.method}({shown})"


def _short(value: Any, limit: int = 40) -> str:
    text = str(value).replace("\n", "\\n")
    return text if len(text) <= limit else text[: limit - 3] + "..."


class ValidationReport(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    kind: ErrorKind | None = None


class ExecutionRecord(BaseModel):
    """Terminal outcome of one action execution."""

    id: str = Field(default_factory=lambda: new_id("exec"))
    action_id: str = ""
    tool: str
    method: str
    success: bool
    duration: float = 0.0  # seconds
    result: Any = None
    error: str | None = None
    kind: ErrorKind | None = None
    timestamp: datetime = Field(default_factory=utcnow)


# --- Conversations ---


class Message(BaseModel):
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReasoningRecord(BaseModel):
    """Why the engine planned what it planned."""

    timestamp: datetime = Field(default_factory=utcnow)
    effort: EffortLevel = EffortLevel.MEDIUM
    explanation: str = ""
    decisions: list[str] = Field(default_factory=list)
    dropped: list[str] = Field(default_factory=list)


class ActionRecord(BaseModel):
    action: Action
    outcome: ActionOutcome
    execution: ExecutionRecord | None = None
    reason: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class ConversationMetrics(BaseModel):
    message_count: int = 0
    tool_calls: int = 0
    errors: int = 0
    total_tokens: int = 0
    duration: float = 0.0


class Conversation(BaseModel):
    """Durable record of one dialog, including branches from a parent."""

    id: str = Field(default_factory=lambda: new_id("conv"))
    agent_id: str | None = None
    parent_id: str | None = None
    branch_point: int | None = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    messages: list[Message] = Field(default_factory=list)
    reasoning: list[ReasoningRecord] = Field(default_factory=list)
    actions: list[ActionRecord] = Field(default_factory=list)
    context_ref: str | None = None
    metrics: ConversationMetrics = Field(default_factory=ConversationMetrics)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE


# --- Context ---


class FileDescriptor(BaseModel):
    path: str  # relative to the scanned root
    size: int
    mtime: float
    type: str
    importance: int = 0


class ContextSnapshot(BaseModel):
    """Bounded, importance-ranked view of the working directory."""

    id: str = Field(default_factory=lambda: new_id("ctx"))
    timestamp: datetime = Field(default_factory=utcnow)
    root: str = ""
    files: list[FileDescriptor] = Field(default_factory=list)
    recent_files: list[str] = Field(default_factory=list)
    project_structure: dict[str, Any] = Field(default_factory=dict)
    total_files: int = 0
    code_structure: dict[str, dict[str, Any]] = Field(default_factory=dict)
    dependency_map: dict[str, list[str]] = Field(default_factory=dict)
    dependencies: dict[str, Any] = Field(default_factory=dict)
    conversation: list[dict[str, Any]] = Field(default_factory=list)
    environment: dict[str, Any] = Field(default_factory=dict)
    retention_applied: RetentionPolicy | None = None

    def serialized_size(self) -> int:
        return len(self.model_dump_json())


# --- Results ---


class Summary(BaseModel):
    actions_planned: int = 0
    actions_executed: int = 0
    files_created: int = 0
    files_modified: int = 0
    commands_run: int = 0
    errors: int = 0
    processing_time: float = 0.0
    iterations: int = 1

    def merge(self, other: Summary) -> Summary:
        return Summary(
            actions_planned=self.actions_planned + other.actions_planned,
            actions_executed=self.actions_executed + other.actions_executed,
            files_created=self.files_created + other.files_created,
            files_modified=self.files_modified + other.files_modified,
            commands_run=self.commands_run + other.commands_run,
            errors=self.errors + other.errors,
            processing_time=self.processing_time + other.processing_time,
            iterations=self.iterations + other.iterations,
        )


class ErrorEntry(BaseModel):
    kind: ErrorKind
    message: str
    stage: str  # llm | validation | confirmation | execution | internal
    action_id: str | None = None


class Result(BaseModel):
    """Outcome of a single processPrompt call."""

    success: bool
    response: str = ""
    conversation_id: str | None = None
    actions: list[Action] = Field(default_factory=list)
    outcomes: list[ActionRecord] = Field(default_factory=list)
    dropped: list[Action] = Field(default_factory=list)
    reasoning: ReasoningRecord | None = None
    summary: Summary = Field(default_factory=Summary)
    errors: list[ErrorEntry] = Field(default_factory=list)
    executed: bool = False
    reason: str | None = None


class SessionSummary(BaseModel):
    total_iterations: int = 0
    total_actions: int = 0
    total_files: int = 0
    total_commands: int = 0
    total_errors: int = 0
    processing_time: float = 0.0
    success: bool = False
    stop_reason: str = ""


class AutonomousResult(BaseModel):
    success: bool
    iterations: list[Result] = Field(default_factory=list)
    summary: Summary = Field(default_factory=lambda: Summary(iterations=0))
    session: SessionSummary = Field(default_factory=SessionSummary)


# --- Session options ---


class AgentOptions(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    enabled: bool = True
    auto_approve: bool = Field(default=False, alias="autoApprove")
    confirmation_enabled: bool = Field(default=True, alias="confirmationEnabled")


class SessionOptions(BaseModel):
    """Validated options record accepted at session construction; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    provider: str = "claude"
    api_key: str | None = Field(default=None, alias="apiKey")
    model: str | None = None
    max_tokens: int = Field(default=4096, alias="maxTokens", ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    timeout: int = Field(default=30000, ge=1000)  # milliseconds
    max_retries: int = Field(default=3, alias="maxRetries", ge=0)
    effort: EffortLevel = EffortLevel.MEDIUM
    auto_approve: bool = Field(default=False, alias="autoApprove")
    max_iterations: int | None = Field(default=None, alias="maxIterations")
    max_actions_per_prompt: int = Field(default=10, alias="maxActionsPerPrompt", ge=1)
    continue_on_error: bool = Field(default=True, alias="continueOnError")
    max_context_size: int = Field(default=100_000, alias="maxContextSize", ge=1)
    retention_policy: RetentionPolicy = Field(
        default=RetentionPolicy.IMPORTANCE, alias="retentionPolicy"
    )
    redact_secrets: bool = Field(default=True, alias="redactSecrets")
    debug: bool = False
    trace: bool = False
    agent: AgentOptions = Field(default_factory=AgentOptions)
    tool_security: dict[str, Any] = Field(default_factory=dict, alias="toolSecurity")

    @property
    def approve_all(self) -> bool:
        return self.auto_approve or self.agent.auto_approve
