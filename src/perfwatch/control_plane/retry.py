"""
Retry Policy

Queue-level retry rules evaluated by the scheduler after each failed attempt.
"""
from dataclasses import dataclass
from typing import Tuple, Type

from ..config import RetrySettings
from ..errors import SiteNotFound


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: delay = base_delay * multiplier ** (attempt - 1).

    Attributes:
        max_attempts: Total attempts allowed, the first included
        base_delay: Delay before the first retry, in seconds
        multiplier: Growth factor between consecutive retries
        timeout_seconds: Per-attempt limit after which the attempt is cancelled
        non_retryable: Errors that fail the job on first occurrence
    """

    max_attempts: int = 3
    base_delay: float = 5.0
    multiplier: float = 2.0
    timeout_seconds: float = 600.0
    non_retryable: Tuple[Type[BaseException], ...] = (SiteNotFound,)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            multiplier=settings.multiplier,
            timeout_seconds=settings.timeout_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before the retry that follows failed ``attempt`` (1-based)."""
        return self.base_delay * (self.multiplier ** max(attempt - 1, 0))

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        if isinstance(error, self.non_retryable):
            return False
        return attempt < self.max_attempts
