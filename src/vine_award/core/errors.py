# src/vine_award/core/errors.py
"""Exception hierarchy shared across the award pipeline."""

from __future__ import annotations


class VineAwardError(RuntimeError):
    """Base exception for award pipeline failures."""


class TransientIOError(VineAwardError):
    """Raised for timeouts, rate limiting and other retryable I/O failures.

    ``retry_after`` carries the server-suggested delay in seconds when the
    remote side provided one.
    """

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class FeedPermissionError(VineAwardError):
    """Raised when a domain cannot be read or written at all."""


class FeedError(VineAwardError):
    """Raised for non-retryable feed failures that are not permission related."""


class LedgerError(VineAwardError):
    """Raised when the external ledger rejects a request."""


class CredentialError(VineAwardError):
    """Raised when signer credentials are missing or malformed."""


class InsufficientFunds(VineAwardError):
    """Raised by preflight when the payer cannot fund the whole batch."""

    def __init__(self, *, balance: int, required: int, count: int) -> None:
        super().__init__(
            f"Payer balance {balance} is below required {required} for {count} operation(s)"
        )
        self.balance = balance
        self.required = required
        self.count = count


class AwardStageError(VineAwardError):
    """Failure of one award pipeline stage, labelled for operators."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


class CoordinatorIdentityError(VineAwardError):
    """Raised when the coordinator identity is neither configured nor discoverable."""
