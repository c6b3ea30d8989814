"""Shared exception types for the hedge control loop."""

from typing import Optional


class TransientExternalError(RuntimeError):
    """Raised when a collaborator or the shared store fails in a retryable way."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = source if original is None else f"{source}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original


class ConfigurationError(ValueError):
    """Raised when configuration cannot be loaded or fails validation."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class FatalCondition(RuntimeError):
    """
    Condition after which this instance must stop acting.

    Components raise it; only the outermost composition root decides whether
    to terminate the OS process.
    """

    exit_code = 1


class LockContention(FatalCondition):
    """Another live instance holds the controller lock."""

    def __init__(self, key: str):
        super().__init__(f"Lock '{key}' is held by another instance")
        self.key = key


class LockLost(FatalCondition):
    """Ownership of the controller lock can no longer be confirmed."""

    def __init__(self, key: str, reason: str = "ownership mismatch"):
        super().__init__(f"Lost lock '{key}': {reason}")
        self.key = key
        self.reason = reason
