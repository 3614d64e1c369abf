"""Exception taxonomy for the counter service."""

from __future__ import annotations


class CounterError(RuntimeError):
    """Base error for counter operations."""

    def __init__(self, message: str, *, details: str | None = None):
        super().__init__(message)
        self.details = details


class ValidationError(CounterError):
    """Raised for input rejected before storage is touched."""


class InvalidColorError(ValidationError):
    """Raised when a color is not one of the known counters."""


class InvalidAmountError(ValidationError):
    """Raised when an increment amount is not a positive integer."""


class NotFoundError(CounterError):
    """Raised when a counter row is missing (data integrity failure)."""


class StorageError(CounterError):
    """Raised when a storage transaction fails and was rolled back."""


class ProtocolError(CounterError):
    """Raised for real-time messages that cannot be parsed."""


class TransportError(CounterError):
    """Raised when sending to or closing a real-time transport fails."""


class ConfigError(CounterError):
    """Raised when environment configuration is invalid."""
