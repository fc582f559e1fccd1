"""Normalized error types for AI queries.

Provider backends translate their library-specific failures into these
classes; :class:`~marginalia.ai.client.ProviderAdapter` then folds them into a
failed :class:`~marginalia.ai.ai_types.QueryResult` so callers only ever see a
single error string plus a machine-readable code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "ErrorCode",
    "QueryError",
    "AuthError",
    "RateLimitError",
    "QueryTimeoutError",
    "TimeoutError",
    "ProviderError",
    "ConfigError",
    "NotFoundError",
]


class ErrorCode:
    """Constants for error codes attached to failed query results."""

    AUTH = "auth_error"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    PROVIDER = "provider_error"
    CONFIG = "config_error"
    NOT_FOUND = "not_found"


@dataclass
class QueryError(Exception):
    """Base exception for every failure surfaced by the query pipeline.

    Attributes:
        message: Human-readable error description shown to the user.
        error_code: Machine-readable error identifier.
        suggestion: Actionable guidance for recovery.
    """

    message: str
    error_code: str = ErrorCode.PROVIDER
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class AuthError(QueryError):
    """The provider rejected the configured API key."""

    message: str = "Invalid API key"
    error_code: str = field(default=ErrorCode.AUTH)
    suggestion: str = field(default="Check the API key configured for this provider")


@dataclass
class RateLimitError(QueryError):
    """The provider throttled the request. Never retried automatically."""

    message: str = "Rate limit exceeded - please try again later"
    error_code: str = field(default=ErrorCode.RATE_LIMITED)
    suggestion: str = field(default="Wait a moment before asking again")

    severity: ClassVar[str] = "warning"


@dataclass
class QueryTimeoutError(QueryError):
    """The provider call exceeded the hard request ceiling."""

    message: str = "Request timeout - please try again"
    error_code: str = field(default=ErrorCode.TIMEOUT)
    suggestion: str = field(default="Retry the question or pick a smaller selection")
    timeout_seconds: float | None = None


TimeoutError = QueryTimeoutError  # noqa: A001


@dataclass
class ProviderError(QueryError):
    """Any other non-success response, transport failure or malformed body."""

    message: str = "AI provider request failed"
    error_code: str = field(default=ErrorCode.PROVIDER)
    suggestion: str = ""
    status_code: int | None = None
    transient: bool = False


@dataclass
class ConfigError(QueryError):
    """A remote provider was selected without the configuration it needs."""

    message: str = "AI provider is not configured"
    error_code: str = field(default=ErrorCode.CONFIG)
    suggestion: str = field(default="Add an API key in the AI settings")
    provider: str | None = None

    @classmethod
    def missing_api_key(cls, provider: str) -> "ConfigError":
        return cls(
            message=f"No API key configured for provider '{provider}'",
            provider=provider,
        )


@dataclass
class NotFoundError(QueryError):
    """An operation targeted a thread that no longer exists."""

    message: str = "Thread not found"
    error_code: str = field(default=ErrorCode.NOT_FOUND)
    suggestion: str = ""
    thread_id: str | None = None

    severity: ClassVar[str] = "info"
