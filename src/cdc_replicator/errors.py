"""Exception hierarchy shared by the replicator engine."""

from __future__ import annotations

from typing import Optional


class ReplicatorError(Exception):
    """Base class for engine failures surfaced to callers."""


class InvalidPrecondition(ReplicatorError):
    """Raised when an operation is invoked on an object in the wrong state."""


class NotFound(ReplicatorError):
    """Raised when an integration, organization or job id does not resolve."""


class UnknownService(ReplicatorError):
    """Raised when no replicator is registered under a service name."""


class CredentialsMissing(ReplicatorError):
    """Raised when backfill is requested without any credentials configured."""


class DependencyMissing(InvalidPrecondition):
    """Raised when a required dependency integration does not exist."""


class DependencyAmbiguous(InvalidPrecondition):
    """Raised when more than one dependency integration matches a lookup."""


class ValidationRejected(ReplicatorError):
    """Raised when a webhook fails validation and the caller asked to raise."""

    def __init__(self, reason: str, status: int) -> None:
        super().__init__(f"webhook rejected: {reason} (HTTP {status})")
        self.reason = reason
        self.status = status


class UpstreamFetchError(ReplicatorError):
    """Non-success response (or transport failure) from a source API."""

    def __init__(
        self, message: str, *, status: Optional[int] = None, url: str = ""
    ) -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class StoreError(ReplicatorError):
    """Raised when a row-store or control-plane store operation fails."""


__all__ = [
    "CredentialsMissing",
    "DependencyAmbiguous",
    "DependencyMissing",
    "InvalidPrecondition",
    "NotFound",
    "ReplicatorError",
    "StoreError",
    "UnknownService",
    "UpstreamFetchError",
    "ValidationRejected",
]
