"""Error taxonomy for the ingestion pipeline.

Retry policy is decided by type:
- NormalizationError, ResolutionError, BackendError: terminal for the job.
- TransientBackendError: retried (resolver in-process, then the queue).
- ConstraintViolation: absorbed by the resolver as a creation race.
- EnqueueError, InvalidPayloadError: surfaced to the webhook caller.
"""

from __future__ import annotations


class IngestError(Exception):
    """Base class for all pipeline errors."""


class NormalizationError(IngestError):
    """Raised when a raw event cannot be turned into a NormalizedMessage."""

    def __init__(self, reason: str, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class TransientBackendError(IngestError):
    """Store call failed for a reason that may succeed on retry (timeout, reset)."""


class BackendError(IngestError):
    """Store rejected a structurally valid call for a non-transient reason."""


class ConstraintViolation(IngestError):
    """Insert hit a uniqueness constraint."""

    def __init__(self, table: str, constraint: str | None = None) -> None:
        self.table = table
        self.constraint = constraint
        super().__init__(
            f"unique constraint violated on {table}"
            + (f" ({constraint})" if constraint else "")
        )


class ResolutionError(IngestError):
    """User or conversation could not be resolved (terminal)."""


class InvalidPayloadError(IngestError):
    """Webhook body is empty or not a JSON object."""


class EnqueueError(IngestError):
    """Queue did not accept the job."""
