"""Domain errors raised by the disposition engine."""
from __future__ import annotations


class InspectorError(Exception):
    """Base error for inspector operations."""


class ConnectTimeoutError(InspectorError):
    """Raised when no connection could be opened before the deadline (or on cancel)."""

    def __init__(self, message: str, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class AuthenticationFailedError(InspectorError):
    """Raised when the broker refuses the credential (401/403 equivalent)."""


class ResubmitSendError(InspectorError):
    """Raised when the clone of a dead-lettered message could not be sent."""


class NoMessagesAvailableError(InspectorError):
    """Raised when a lock-mode receive returned nothing within the lock wait."""


class TargetNotInPageError(InspectorError):
    """Raised when the target sequence is absent from every batch tried."""
