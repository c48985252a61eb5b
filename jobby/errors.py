"""Exception types raised by the discovery pipeline."""
from __future__ import annotations


class JobbyError(Exception):
    """Base class for every error raised by jobby."""


class ConfigurationError(JobbyError):
    """The profile or settings cannot drive a run."""


class ProfileNotConfiguredError(ConfigurationError):
    def __init__(self, message: str = "Profile not configured — set target titles first") -> None:
        super().__init__(message)


class SearchError(JobbyError):
    """A single upstream search call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExceededError(SearchError):
    """Every pooled credential reported an exhausted quota for the same query."""


class StoreError(JobbyError):
    """Persistence failed; callers may retry the operation."""

    retryable = True


class DuplicateListingError(StoreError):
    """An insert collided with a listing stored concurrently under the same identity."""
