"""Exception taxonomy shared by the messaging pipeline.

Duplicate or stale signals are not errors: they surface as return values
(``InboundResult.duplicate``, ``ReconcileOutcome.applied``) so webhook callers
can acknowledge them like any other success.
"""

from __future__ import annotations

__all__ = [
    "CourierError",
    "ValidationError",
    "InvalidAddressError",
    "MissingFromError",
    "NotFoundError",
    "TransientProviderError",
]


class CourierError(RuntimeError):
    """Base class for errors raised by the messaging pipeline."""

    code = "courier_error"


class ValidationError(CourierError, ValueError):
    """Raised for malformed or missing input; never retried."""

    code = "validation_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidAddressError(ValidationError):
    """Raised when a phone-channel address cannot be normalised to E.164."""

    code = "invalid_phone"


class MissingFromError(ValidationError):
    """Raised when an inbound message carries no sender address."""

    code = "missing_from"


class NotFoundError(CourierError, LookupError):
    """Raised when a referenced contact, thread or message does not exist."""

    code = "not_found"


class TransientProviderError(CourierError):
    """Raised by outbox handlers when a provider hand-off should be retried.

    The pipeline itself never calls providers; handlers registered with the
    drainer raise this so the task is rescheduled instead of dropped.
    """

    code = "provider_unavailable"
