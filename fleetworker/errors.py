"""Error taxonomy shared by the session lifecycle components."""

from __future__ import annotations

import asyncio
from typing import Optional


class FleetError(Exception):
    """Base class for all session fleet errors."""


class DatabaseUnavailableError(FleetError):
    """Raised when PostgreSQL is required but unavailable."""


class TransientIOError(FleetError):
    """A file lock (busy/permission) outlived the bounded retry budget."""

    def __init__(self, path: str, attempts: int) -> None:
        super().__init__(f"file_locked path={path} attempts={attempts}")
        self.path = path
        self.attempts = attempts


class SessionConflictError(FleetError):
    """The channel identity is active elsewhere; the local handle is invalid."""


class ChannelClosedError(SessionConflictError):
    """The channel handle was already destroyed or never attached."""


class AuthFailureError(FleetError):
    def __init__(self, reason: str, *, fatal: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.fatal = fatal


class SessionTimeoutError(FleetError, asyncio.TimeoutError):
    """Initialization or media download exceeded its hard timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation}_timeout after {timeout:.1f}s")
        self.operation = operation
        self.timeout = timeout


class TerminalError(FleetError):
    """Surfaced to the caller and never retried further."""

    code = "terminal_error"


class ReconnectExhaustedError(TerminalError):
    code = "reauth_required"


class QueueOverflowError(TerminalError):
    code = "queue_overflow"


class SessionNotReadyError(TerminalError):
    code = "session_not_ready"

    def __init__(self, tenant_id: str, state: Optional[str] = None) -> None:
        super().__init__(f"session_not_ready tenant_id={tenant_id} state={state}")
        self.tenant_id = tenant_id
        self.state = state


class SendRejectedError(TerminalError):
    code = "send_rejected"


class InvalidRecipientError(FleetError, ValueError):
    """Recipient cannot be addressed on the channel."""


class InvalidTenantError(FleetError, ValueError):
    """Tenant id cannot name a working directory."""


_CONFLICT_MARKERS = ("CONFLICT", "UNLAUNCHED", "Session closed", "Target closed")


def is_conflict(exc: BaseException) -> bool:
    if isinstance(exc, SessionConflictError):
        return True
    message = str(exc)
    return any(marker in message for marker in _CONFLICT_MARKERS)


__all__ = [
    "AuthFailureError",
    "ChannelClosedError",
    "DatabaseUnavailableError",
    "FleetError",
    "InvalidRecipientError",
    "InvalidTenantError",
    "QueueOverflowError",
    "ReconnectExhaustedError",
    "SendRejectedError",
    "SessionConflictError",
    "SessionNotReadyError",
    "SessionTimeoutError",
    "TerminalError",
    "TransientIOError",
    "is_conflict",
]
