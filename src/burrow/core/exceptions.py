"""Error taxonomy for the tunnel lifecycle.

Registration and lookup errors are returned directly to callers and never
retried. Transport errors are transient and absorbed by the client's reconnect
loop. Sync errors are advisory: they degrade routing status, never a binding.
"""

from __future__ import annotations


class BurrowError(Exception):
    """Base class for all burrow errors."""

    code = "internal_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DuplicateSubdomainError(BurrowError):
    code = "duplicate_subdomain"

    def __init__(self, subdomain: str) -> None:
        super().__init__(f"Subdomain '{subdomain}' is already in use")
        self.subdomain = subdomain


class InvalidTargetError(BurrowError):
    code = "invalid_target"


class InvalidSubdomainError(BurrowError):
    code = "invalid_subdomain"

    def __init__(self, subdomain: str, reason: str = "not a valid DNS label") -> None:
        super().__init__(f"Invalid subdomain '{subdomain}': {reason}")
        self.subdomain = subdomain


class ResourceExhaustedError(BurrowError):
    code = "resource_exhausted"


class NotFoundError(BurrowError):
    code = "not_found"

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} '{key}' not found")
        self.key = key


class TransportError(BurrowError):
    """Transient failure of the underlying channel."""

    code = "transport_error"
    retryable = True


class TransportTimeoutError(TransportError):
    code = "timeout"

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.timeout = timeout


class SyncError(BurrowError):
    """Reverse-proxy configuration push failed."""

    code = "sync_error"
    retryable = True


class RegistrationRejectedError(BurrowError):
    """The broker answered REGISTER with REGISTER_FAIL."""

    RETRYABLE_REASONS = frozenset({DuplicateSubdomainError.code, ResourceExhaustedError.code})

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or f"Registration rejected: {reason}")
        self.reason = reason
        self.code = reason
        self.retryable = reason in self.RETRYABLE_REASONS


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a single human-readable line."""
    if isinstance(error, BurrowError):
        return error.message
    if isinstance(error, TimeoutError):
        return "Operation timed out"
    if isinstance(error, OSError):
        return f"Network error: {error.strerror or error}"
    return f"{type(error).__name__}: {error}"
