# Overview: Error taxonomy shared by the ledger, transfer, reconciliation and sync layers.

from __future__ import annotations


class BackofficeError(Exception):
    """Base class for domain errors surfaced to callers."""

    status_code = 400


class ValidationError(BackofficeError, ValueError):
    """400-level input problem."""

    status_code = 400


class NotFoundError(BackofficeError, LookupError):
    """Referenced product, location, transfer or document does not exist."""

    status_code = 404


class InvalidStateTransition(BackofficeError):
    """Action attempted from a state that does not permit it."""

    status_code = 409


class ConflictError(BackofficeError):
    """409-level conflict: write contention after retries, or a failed precondition."""

    status_code = 409


class ExternalSyncError(BackofficeError):
    """
    Pushing stock to a marketplace channel failed.

    Never propagated to the caller of the ledger operation that triggered the sync.
    """

    status_code = 502

    def __init__(self, message: str, *, platform: str | None = None, status: int | None = None):
        super().__init__(message)
        self.platform = platform
        self.status = status
