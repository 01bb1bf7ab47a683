from __future__ import annotations


class TicketAutomationError(RuntimeError):
    """Base class for errors raised by the ticket automation engine."""


class ValidationError(TicketAutomationError):
    """Raised when caller input is malformed. Never retried."""


class InvalidTransitionError(ValidationError):
    """Raised when a request lifecycle transition is not allowed."""

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move request from {current} to {target}")


class NotFoundError(TicketAutomationError):
    """Raised when a request or ticket does not exist."""


class TransportError(TicketAutomationError):
    """Raised when the remote ticketing system cannot be reached or times out."""


class RemoteRejection(TicketAutomationError):
    """Raised when the remote ticketing system validates and rejects a payload."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ConflictError(TicketAutomationError):
    """Raised when a request was modified concurrently (lost update)."""


class PersistenceError(TicketAutomationError):
    """Raised when the store is unavailable."""
