"""
Run Aggregator

Runs several sequential measurements of one (page, device) pair and reduces
them to one representative set of fields by per-field median.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from ..config import CollectionSettings
from ..control_plane.models import utcnow
from ..errors import ProviderError
from ..metrics.fields import METRIC_FIELDS
from .orchestrator import CollectionOrchestrator, Sleep

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RawRunResult:
    batch_id: str
    run_index: int
    fields: Dict[str, Optional[float]]
    measured_at: datetime


def median(values: Iterable[Optional[float]]) -> Optional[float]:
    """Median of the present values; ``None`` when nothing is present."""
    present = sorted(v for v in values if v is not None)
    if not present:
        return None
    mid = len(present) // 2
    if len(present) % 2 == 0:
        return (present[mid - 1] + present[mid]) / 2
    return present[mid]


class RunAggregator:

    def __init__(
        self,
        orchestrator: CollectionOrchestrator,
        settings: CollectionSettings,
        sleep: Sleep = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.settings = settings
        self._sleep = sleep

    async def collect_multiple(
        self,
        url: str,
        device: str,
        n: int,
        batch_id: str,
    ) -> List[RawRunResult]:
        """
        Run ``n`` measurements one after another.

        A failed run is logged and skipped. If every run fails the last
        provider error is raised so the job records a meaningful category.
        """
        if n < 1:
            raise ValueError(f"Run count must be at least 1, got {n}")

        runs: List[RawRunResult] = []
        failures: List[ProviderError] = []

        for run_index in range(1, n + 1):
            try:
                measurement = await self.orchestrator.collect(url, device)
                runs.append(RawRunResult(batch_id, run_index, measurement.fields, utcnow()))
            except ProviderError as e:
                failures.append(e)
                logger.warning(
                    "measurement_run_failed",
                    url=url,
                    device=device,
                    batch_id=batch_id,
                    run=run_index,
                    runs=n,
                    category=e.category,
                    error=e.message,
                )

            if run_index < n:
                await self._sleep(self.settings.inter_run_delay_seconds)

        if not runs:
            # Every run appended a failure
            raise failures[-1]

        logger.info("measurement_batch_collected", url=url, device=device, batch_id=batch_id, succeeded=len(runs), runs=n)
        return runs

    @staticmethod
    def aggregate(runs: Sequence[RawRunResult]) -> Dict[str, Optional[float]]:
        if not runs:
            raise ValueError("No runs provided for aggregation")
        return {name: median(run.fields.get(name) for run in runs) for name in METRIC_FIELDS}
