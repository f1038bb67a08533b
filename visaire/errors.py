"""Error taxonomy shared by tools, the registry, providers and the orchestrator."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    INVALID_INPUT = "invalid_input"
    ACCESS_DENIED = "access_denied"
    BLOCKED = "blocked"
    TOO_LARGE = "too_large"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    UPSTREAM_AUTH = "upstream_auth"
    UPSTREAM_RATE_LIMIT = "upstream_rate_limit"
    UPSTREAM_SERVER = "upstream_server"
    NETWORK = "network"
    INTERNAL = "internal"

    def hint(self) -> str:
        return _HINTS[self]

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.UPSTREAM_SERVER, ErrorKind.NETWORK)


_HINTS: dict[ErrorKind, str] = {
    ErrorKind.INVALID_INPUT: "Check the prompt or arguments and try again.",
    ErrorKind.ACCESS_DENIED: "The path or command is outside the allowed set.",
    ErrorKind.BLOCKED: "The request matched a blocked pattern and was not run.",
    ErrorKind.TOO_LARGE: "Reduce the size of the input or raise the configured limit.",
    ErrorKind.TIMEOUT: "Increase the timeout with --timeout or simplify the request.",
    ErrorKind.NOT_FOUND: "Check that the file, directory or script exists.",
    ErrorKind.UPSTREAM_AUTH: "Check your API key (visaire test-key).",
    ErrorKind.UPSTREAM_RATE_LIMIT: "Rate limited by the provider; wait and retry.",
    ErrorKind.UPSTREAM_SERVER: "The provider returned a server error; retry later.",
    ErrorKind.NETWORK: "Check your network connectivity.",
    ErrorKind.INTERNAL: "Unexpected failure; rerun with --debug for details.",
}


class VisaireError(Exception):
    """Base error carrying an ErrorKind and optional structured detail."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        kind: ErrorKind | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": str(self.kind), "message": self.message, **self.detail}


class ConfigError(VisaireError):
    kind = ErrorKind.INVALID_INPUT


class ToolError(VisaireError):
    """Raised by tool methods; the registry turns it into a failed ExecutionRecord."""


class ValidationFailed(VisaireError):
    """An action failed validation. ``reasons`` lists every collected message."""

    kind = ErrorKind.INVALID_INPUT

    def __init__(
        self,
        reasons: list[str],
        kind: ErrorKind | None = None,
    ) -> None:
        super().__init__("; ".join(reasons) or "validation failed", kind)
        self.reasons = reasons


class ProviderError(VisaireError):
    """LLM adapter failure with the provider name attached."""

    kind = ErrorKind.UPSTREAM_SERVER

    def __init__(
        self,
        provider: str,
        message: str,
        kind: ErrorKind | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(f"[{provider}] {message}", kind, {"provider": provider})
        self.provider = provider
        self.status_code = status_code
