"""Exception hierarchy for task distribution."""

from __future__ import annotations


class DepinError(Exception):
    """Base exception for all depin errors."""


class BrokerConnectionError(DepinError):
    """Raised when the broker stays unreachable after the startup retry budget."""


class BrokerUnavailableError(DepinError):
    """Raised when the broker channel is used while disconnected."""


class MalformedMessageError(DepinError):
    """Raised when a queue payload cannot be parsed into its message type.

    Args:
        message: Human-readable reason.
        body: The raw payload that failed to parse.
    """

    def __init__(self, message: str, *, body: str = "") -> None:
        super().__init__(message)
        self.body = body


class LedgerError(DepinError):
    """Raised when a ledger read or transaction fails or reverts."""


class InferenceError(DepinError):
    """Raised by inference clients when no answer could be produced."""
