"""Error taxonomy shared by every Threadline layer.

Each error carries a stable ``code`` and the HTTP ``status_code`` the API
layer renders it with.  Store, service and API code raise these directly;
nothing outside :mod:`threadline.api` needs to know about HTTP.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from threadline.models.session import SessionStatus
    from threadline.ratelimit.limiter import Decision


class ThreadlineError(Exception):
    """Base class for all Threadline errors."""

    code: str = "internal"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UnauthorizedError(ThreadlineError):
    """Raised when the ``api-key`` header is missing or unknown."""

    code = "unauthorized"
    status_code = 401

    def __init__(self, message: str = "Missing or invalid API key") -> None:
        super().__init__(message)


class RateLimitedError(ThreadlineError):
    """Raised by the service when the rate limiter denies a request."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, credential_id: str, decision: Decision) -> None:
        super().__init__(
            f"Rate limit exceeded for the {decision.window} window; "
            f"retry after {decision.reset_at}"
        )
        self.credential_id = credential_id
        self.decision = decision

    @property
    def reset_at(self) -> int:
        """Unix seconds at which the exhausted window resets."""
        return self.decision.reset_at


class SessionNotFoundError(ThreadlineError):
    """Raised when a session id does not exist in the store."""

    code = "not_found"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class MessageNotFoundError(ThreadlineError):
    """Raised when a session has no message with the requested id."""

    code = "not_found"
    status_code = 404

    def __init__(self, session_id: str, message_id: int) -> None:
        super().__init__(f"Message {message_id} not found in session {session_id!r}")
        self.session_id = session_id
        self.message_id = message_id


class SessionNotActiveError(ThreadlineError):
    """Raised when a write targets an EXPIRED or CLOSED session."""

    code = "session_not_active"
    status_code = 409

    def __init__(self, session_id: str, status: SessionStatus) -> None:
        super().__init__(f"Session {session_id!r} is {status.value} and accepts no messages")
        self.session_id = session_id
        self.status = status


class ValidationError(ThreadlineError):
    """Raised for a bad limit, order, message length or message type."""

    code = "validation_error"
    status_code = 422


class InternalError(ThreadlineError):
    """Raised for unexpected failures, typically a wrapped driver error."""

    code = "internal"
    status_code = 500


class StoreNotInitializedError(InternalError):
    """Raised when a store is used before ``initialize()``."""

    def __init__(self) -> None:
        super().__init__("Store is not initialized. Call initialize() first.")
