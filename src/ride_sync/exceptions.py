"""Exception hierarchy for ride synchronization."""

from typing import Any


class RideSyncError(Exception):
    """Base exception for all ride sync errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(RideSyncError):
    """Errors that may succeed when the consumer opens a new session."""

    pass


class ConnectionFailure(TransientError):
    """Channel subscription failed (channel_error or timed_out)."""

    def __init__(
        self,
        message: str,
        channel_name: str,
        reason: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.channel_name = channel_name
        self.reason = reason


class TeardownFailure(TransientError):
    """Unsubscribing a channel raised during session teardown."""

    pass


class PermanentError(RideSyncError):
    """Errors that will not succeed on retry."""

    pass


class PayloadValidationError(PermanentError):
    """Change payload could not be parsed into a typed row."""

    pass


class ConfigurationError(PermanentError):
    """Missing or invalid configuration."""

    pass
