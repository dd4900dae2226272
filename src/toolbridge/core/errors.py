"""
Error taxonomy shared by the model gateway, the capability dispatcher and the orchestrator.

Every error carries a ``retryable`` class attribute.  The orchestrator's retry loop consults it
before re-attempting a failed tool; the HTTP layer maps the non-retryable request errors to 4xx.
"""

from typing import ClassVar


class BridgeError(RuntimeError):
    """Base class for all toolbridge errors."""

    kind: ClassVar[str] = "BridgeError"
    retryable: ClassVar[bool] = True

    def describe(self) -> str:
        """Return ``"<kind>: <message>"`` for user-facing error strings."""
        return f"{self.kind}: {self}"


class AuthError(BridgeError):
    """Raised when a backend has no credential or rejects the one it was given."""

    kind = "AuthError"
    retryable = False


class RateLimitError(BridgeError):
    """Raised when a backend reports that the caller is being throttled."""

    kind = "RateLimitError"


class RemoteError(BridgeError):
    """Raised when a remote service answers with a non-success status."""

    kind = "RemoteError"

    def __init__(self, status: int | None, detail: str = "") -> None:
        self.status = status
        self.detail = detail
        message = f"remote call failed with status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TimeoutExceededError(BridgeError):
    """Raised when a model call, tool call or readiness wait runs past its deadline."""

    kind = "Timeout"


class ServiceUnavailableError(BridgeError):
    """Raised when a transport refuses the connection or its process is not running."""

    kind = "ServiceUnavailable"


class MalformedStructuredResponse(BridgeError):
    """Raised when no JSON value can be recovered from a model reply."""

    kind = "MalformedStructuredResponse"
    retryable = False


class InvalidRequestError(BridgeError):
    """Raised for requests rejected before dispatch (unknown tool, file too large, bad type)."""

    kind = "ValidationError"
    retryable = False


class NotFoundError(BridgeError):
    """Raised for unknown tools, models or conversations."""

    kind = "NotFound"
    retryable = False
