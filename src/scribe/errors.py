"""Error taxonomy for the processing pipeline.

Every error a component can raise while handling a job derives from
ScribeError. The orchestrator recovers all of them at its boundary and
renders them into a structured ProcessingOutcome via to_payload(); only
PersistenceError is fatal and propagates to the caller.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class ScribeError(Exception):
    """Base class for recoverable pipeline errors."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        """Structured fields merged into a failed ProcessingOutcome."""
        return {"error": self.message, "error_code": self.code}


class AuthorizationError(ScribeError):
    """Caller does not own the resource (or it does not exist).

    Both cases share one message so that non-owners cannot probe for
    the existence of other users' jobs.
    """

    code = "not_found"

    def __init__(self, message: str = "Job not found") -> None:
        super().__init__(message)


class PreconditionError(ScribeError):
    """The requested transition is not legal from the job's current state."""

    code = "precondition_failed"


class AlreadyProcessingError(PreconditionError):
    """Another submission won the pending/completed -> processing race."""

    code = "already_processing"

    def __init__(self, message: str = "Job is already processing") -> None:
        super().__init__(message)


class InsufficientCreditsError(ScribeError):
    """Balance too low to pay for the requested processing."""

    code = "insufficient_credits"

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(
            f"Insufficient credits. Need {required} credits, but you have {balance}."
        )
        self.balance = balance
        self.required = required

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "balance": self.balance,
            "required": self.required,
        }


class RateLimitError(ScribeError):
    """Upstream provider (or our own per-user limiter) throttled the request."""

    code = "rate_limited"

    def __init__(
        self,
        message: str,
        reset_at: datetime,
        upgrade_eligible: bool = False,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        self.reset_at = reset_at
        self.upgrade_eligible = upgrade_eligible
        self.provider = provider

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "reset_at": self.reset_at,
            "upgrade_prompt": self.upgrade_eligible,
        }


class ProviderError(ScribeError):
    """Upstream call failed for a reason other than rate limiting.

    raw_message keeps the provider's text for logs and diagnostics; the
    payload shown to end users carries only the generic message.
    """

    code = "provider_error"

    def __init__(self, provider: str, raw_message: str) -> None:
        super().__init__(f"Processing failed with provider '{provider}'")
        self.provider = provider
        self.raw_message = raw_message


class CompressionError(ScribeError):
    """The compression engine failed to initialize or to transcode."""

    code = "compression_failed"


class PersistenceError(Exception):
    """Job or ledger state could not be read or written at all.

    Deliberately not a ScribeError: it is never converted into an
    outcome and aborts the operation.
    """
