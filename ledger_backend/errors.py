from __future__ import annotations


class LedgerError(Exception):
    """Base class for balance engine failures."""


class UnknownCurrency(LedgerError, ValueError):
    """Raised when a conversion needs a rate that is not loaded."""

    def __init__(self, currency: str) -> None:
        super().__init__(f"Unknown currency: {currency}")
        self.currency = currency


class UserNotInitialized(LedgerError):
    """Raised when the user's balance row is absent or has no balance."""


class NotFound(LedgerError):
    """Raised when a referenced record does not exist."""


class PreconditionFailed(LedgerError):
    """Raised when stored state cannot be mutated safely."""


class ConcurrentModification(LedgerError):
    """Raised when the user's balance row changed under an atomic unit."""
