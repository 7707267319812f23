"""Error taxonomy.

Transient      -> retried with backoff until the attempt ceiling
Terminal       -> work discarded with a receipt, prior good state kept
Capacity       -> handled by eviction / shaping policy
OperationRefused -> refused synchronously, no side effects
"""
from .receipt import StopRule


class FieldlinkError(Exception):
    """Base class for all fieldlink errors."""
    pass


class TransientError(FieldlinkError):
    """Retryable failure (timeout, rate limit, cold start)."""
    pass


class TransportTimeout(TransientError):
    pass


class RateLimited(TransientError):
    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ServiceUnavailable(TransientError):
    pass


class ArtifactFetchError(TransientError):
    pass


class TerminalError(FieldlinkError):
    """Non-retryable failure; discard the work, keep prior state."""
    pass


class MalformedResponse(TerminalError):
    pass


class ChecksumMismatch(TerminalError):
    pass


class SizeMismatch(TerminalError):
    pass


class RetriesExhausted(FieldlinkError):
    """Attempt ceiling reached; carries the last underlying error."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"gave up after {attempts} attempts: {last_error!r}")
        self.attempts = attempts
        self.last_error = last_error


class CapacityError(FieldlinkError):
    pass


class PayloadTooLarge(CapacityError):
    def __init__(self, size: int, ceiling: int):
        super().__init__(f"payload of {size} bytes exceeds ceiling of {ceiling} bytes")
        self.size = size
        self.ceiling = ceiling


class OperationRefused(FieldlinkError):
    """Operation refused before any side effect, with a typed reason."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class InferenceError(FieldlinkError):
    """Raised by the on-device inference runtime."""
    pass


class IllegalTransition(StopRule):
    """State machine asked to take an edge not in its transition table."""

    def __init__(self, machine: str, current, target):
        super().__init__(f"{machine}: illegal transition {current} -> {target}")
        self.machine = machine
        self.current = current
        self.target = target


class CacheEntryNotFound(KeyError):
    """Key absent from the cache (never stored, deleted, or evicted)."""
    pass
