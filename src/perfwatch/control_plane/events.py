"""
Job Events

Lifecycle notifications for cross-cutting listeners (logging, metrics,
alerting). Listeners are plain callables registered on a JobEventBus.
"""
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from .models import utcnow

logger = logging.getLogger(__name__)


class JobEventType(str, Enum):
    SCHEDULED = "scheduled"
    STARTED = "started"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    REAPED = "reaped"


@dataclass(frozen=True)
class JobEvent:
    type: JobEventType
    job_id: str
    site_id: str
    device: str
    attempt: int = 0
    error: Optional[str] = None
    error_category: Optional[str] = None
    at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class JobOutcome:
    """What ``JobScheduler.process_job`` did with one delivery of a job."""

    job_id: str
    status: str
    attempt: int
    error: Optional[str] = None
    error_category: Optional[str] = None
    retry_in_seconds: Optional[float] = None
    skipped: bool = False


Listener = Callable[[JobEvent], Union[None, Awaitable[None]]]


class JobEventBus:

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def publish(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Job event listener failed for {event.type.value} {event.job_id}: {e}")
