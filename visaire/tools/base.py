"""Base tool interface and per-method parameter schemas."""

from __future__ import annotations

import inspect
import logging
from abc import ABC
from dataclasses import dataclass, field
from typing import Any

from ..errors import ErrorKind, ToolError
from ..models.types import Action, ValidationReport

logger = logging.getLogger(__name__)

# Parameter types understood by the structural validator
STRING_TYPES = frozenset({"path", "content", "command", "url", "string", "pattern"})


@dataclass(frozen=True)
class Param:
    name: str
    type: str = "string"
    required: bool = True


@dataclass(frozen=True)
class MethodSchema:
    """Ordered parameter contract for one tool method.

    ``handler`` names the Python coroutine implementing the method.
    """

    name: str
    handler: str
    params: tuple[Param, ...] = ()
    description: str = ""

    @property
    def min_arity(self) -> int:
        return sum(1 for p in self.params if p.required)

    @property
    def max_arity(self) -> int:
        return len(self.params)

    def check(self, params: list[Any]) -> list[str]:
        """Arity and type errors for a positional parameter list."""
        errors: list[str] = []
        if not self.min_arity <= len(params) <= self.max_arity:
            if self.min_arity == self.max_arity:
                expected = str(self.min_arity)
            else:
                expected = f"{self.min_arity}-{self.max_arity}"
            errors.append(
                f"{self.name} expects {expected} parameter(s), got {len(params)}"
            )
            return errors
        for spec, value in zip(self.params, params, strict=False):
            if spec.type == "options":
                if value is not None and not isinstance(value, dict):
                    errors.append(f"{self.name}: '{spec.name}' must be an object")
            elif spec.type in STRING_TYPES:
                if not isinstance(value, str):
                    errors.append(f"{self.name}: '{spec.name}' must be a string")
                elif spec.required and spec.type != "content" and not value.strip():
                    errors.append(f"{self.name}: '{spec.name}' must not be empty")
        return errors

    def values_of(self, params: list[Any], kind: str) -> list[Any]:
        return [v for spec, v in zip(self.params, params, strict=False) if spec.type == kind]


@dataclass
class ToolSchema:
    tool: str
    methods: dict[str, MethodSchema] = field(default_factory=dict)

    def method_names(self) -> list[str]:
        return list(self.methods.keys())


class Tool(ABC):
    """A named collection of async methods exposing one local capability.

    Subclasses declare ``name`` and ``methods``; the registry validates
    actions against them and dispatches through ``invoke``.
    """

    name: str = ""
    methods: tuple[MethodSchema, ...] = ()

    def schema(self) -> ToolSchema:
        return ToolSchema(tool=self.name, methods={m.name: m for m in self.methods})

    def validate_action(self, action: Action, method: MethodSchema) -> ValidationReport:
        """Tool-specific domain checks. Overridden by tools that guard resources."""
        return ValidationReport(valid=True)

    async def invoke(
        self,
        method: MethodSchema,
        params: list[Any],
        options: dict[str, Any] | None = None,
    ) -> Any:
        handler = getattr(self, method.handler, None)
        if handler is None:
            raise ToolError(
                f"{self.name} has no implementation for {method.name}",
                ErrorKind.INTERNAL,
            )

        positional: list[Any] = []
        keywords: dict[str, Any] = {}
        for spec, value in zip(method.params, params, strict=False):
            if spec.type == "options":
                keywords.update(value or {})
            else:
                positional.append(value)
        keywords.update(options or {})

        accepted = inspect.signature(handler).parameters
        unknown = [k for k in keywords if k not in accepted]
        for key in unknown:
            logger.debug("Ignoring unknown option %r for %s.%s", key, self.name, method.name)
            keywords.pop(key)

        return await handler(*positional, **keywords)

    async def cancel(self) -> None:
        """Request cancellation of in-flight work. Default: nothing to cancel."""

    def status(self) -> dict[str, Any]:
        return {"name": self.name, "methods": [m.name for m in self.methods]}
