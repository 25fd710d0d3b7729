"""
Error Taxonomy

Typed errors raised by the collection orchestrator and the job scheduler.
Every error carries a stable ``category`` that is persisted on failed jobs so
operators see a human-readable failure class next to the message.
"""
from typing import Optional


class PerfwatchError(Exception):
    """Base class for all perfwatch errors."""

    category = "PerfwatchError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.category)
        self.message = message or self.category


# Provider errors (collection orchestrator)

class ProviderError(PerfwatchError):
    """A measurement provider call failed after local retries."""

    category = "ProviderError"


class ProviderBlocked(ProviderError):
    category = "ProviderBlocked"


class ProviderRateLimited(ProviderError):
    category = "ProviderRateLimited"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderTimeout(ProviderError):
    category = "ProviderTimeout"


class ProviderInvalidResponse(ProviderError):
    category = "ProviderInvalidResponse"


# Job errors (scheduler)

class JobError(PerfwatchError):
    category = "JobError"


class JobStuck(JobError):
    category = "JobStuck"


class JobTimedOut(JobError):
    category = "JobTimedOut"


class JobRetriesExhausted(JobError):
    category = "JobRetriesExhausted"


class JobStatePersistenceError(JobError):
    """Reading or writing job state failed; the attempt must not guess state."""

    category = "JobStatePersistenceError"


class SiteNotFound(PerfwatchError):
    category = "SiteNotFound"


def error_category(exc: BaseException) -> str:
    """Return the persisted category for an exception."""
    if isinstance(exc, PerfwatchError):
        return exc.category
    return type(exc).__name__
