"""Domain exceptions for the problem discovery engine.

All domain-specific exceptions inherit from ``ProblemDiscoveryError`` so
callers can catch the full family with a single ``except`` clause when needed.
Only ``ConfigurationError`` and seeding failures ever escape a discovery run;
oracle and per-problem collaborator failures are absorbed by fallbacks.
"""

from __future__ import annotations

from typing import Any


class ProblemDiscoveryError(Exception):
    """Base exception for all problem discovery errors."""

    def __init__(self, message: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}


class ConfigurationError(ProblemDiscoveryError, ValueError):
    """Raised for invalid configuration or a missing required collaborator."""

    def __init__(
        self,
        message: str = "Invalid configuration",
        field_name: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.field_name = field_name


class OracleError(ProblemDiscoveryError):
    """The semantic assessment oracle could not produce a usable answer.

    ``kind`` is one of ``unavailable`` (no model configured), ``timeout``,
    ``invocation`` (the call raised) or ``schema`` (the response did not
    validate against the requested schema).
    """

    KINDS = ("unavailable", "timeout", "invocation", "schema")

    def __init__(
        self,
        message: str = "Oracle call failed",
        kind: str = "invocation",
        schema_name: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        if kind not in self.KINDS:
            raise ValueError(f"Unknown oracle error kind: {kind!r}")
        self.kind = kind
        self.schema_name = schema_name


class CollaboratorError(ProblemDiscoveryError):
    """A discovery agent (explorer, simulator, ...) failed."""

    def __init__(
        self,
        message: str = "Collaborator failed",
        agent_type: str = "",
        problem_id: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.agent_type = agent_type
        self.problem_id = problem_id


class InvariantViolationError(ProblemDiscoveryError):
    """A derived entity would break a data-model invariant."""

    def __init__(
        self,
        message: str = "Invariant violated",
        problem_id: str = "",
        issues: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.problem_id = problem_id
        self.issues: list[str] = issues or []
