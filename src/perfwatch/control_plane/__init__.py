"""
Control Plane Core

Job models, queue, state, idempotency, retry policy, scheduler and cadence.
"""

from .models import Job, JobExecution, JobKind, JobPriority, JobStatus, PageType, Site
from .queue_manager import QueueManager
from .state_manager import StateManager
from .idempotency_engine import IdempotencyEngine
from .retry import RetryPolicy
from .events import JobEvent, JobEventBus, JobEventType, JobOutcome
from .job_scheduler import JobScheduler
from .cadence import CadenceScheduler

__all__ = [
    "Job",
    "JobExecution",
    "JobKind",
    "JobPriority",
    "JobStatus",
    "PageType",
    "Site",
    "QueueManager",
    "StateManager",
    "IdempotencyEngine",
    "RetryPolicy",
    "JobEvent",
    "JobEventBus",
    "JobEventType",
    "JobOutcome",
    "JobScheduler",
    "CadenceScheduler",
]
