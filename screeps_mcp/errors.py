"""Exception hierarchy shared by the client, the console stream and the tools."""

from __future__ import annotations

from dataclasses import dataclass


class ScreepsError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(ScreepsError):
    """Missing or contradictory connection settings. Fatal at startup."""


@dataclass(frozen=True)
class FieldIssue:
    """One violated field in a tool call."""

    path: str
    message: str

    def __str__(self) -> str:
        if self.path:
            return f"{self.message} at '{self.path}'"
        return self.message


class ValidationError(ScreepsError):
    """Tool arguments that do not satisfy the tool's contract."""

    def __init__(self, issues: list[FieldIssue]) -> None:
        self.issues = list(issues)
        super().__init__("; ".join(str(issue) for issue in self.issues))


class RateLimitError(ScreepsError):
    """Too many calls for one key inside the limiter window."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Rate limit exceeded for {key}. Please wait before retrying.")


class TransportError(ScreepsError):
    """The socket or HTTP transport failed."""


class APIError(TransportError):
    """The server answered with a non-success status."""

    def __init__(self, message: str, status_code: int = 0, reason: str = "") -> None:
        self.status_code = status_code
        self.reason = reason
        super().__init__(message)


class AuthenticationError(APIError):
    """Bad credentials or a token the server rejected."""


class ProtocolDecodeError(ScreepsError):
    """A stream frame that could not be decoded."""
