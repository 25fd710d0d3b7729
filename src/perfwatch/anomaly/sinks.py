"""
Anomaly Sinks

Where detected anomalies are handed to the alerting/insights layer.
"""
import json
from typing import Any, Dict, Iterable, List, Protocol

import redis.asyncio as redis
import structlog

from .models import AnomalyRecord

logger = structlog.get_logger(__name__)


class AnomalySink(Protocol):
    async def emit(self, record: AnomalyRecord) -> None:
        ...


def anomaly_payload(record: AnomalyRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "site_id": record.site_id,
        "device": record.device,
        "page_type": record.page_type,
        "metric": record.metric,
        "current_value": record.current_value,
        "expected_min": record.expected_min,
        "expected_max": record.expected_max,
        "deviation": record.deviation,
        "confidence": record.confidence,
        "status": record.status,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


class LoggingAnomalySink:
    async def emit(self, record: AnomalyRecord) -> None:
        logger.warning("anomaly_detected", **anomaly_payload(record))


class RedisAnomalyPublisher:
    """Publishes anomalies as JSON on a Redis pub/sub channel."""

    def __init__(self, redis_client: redis.Redis, channel: str = "perfwatch:anomalies"):
        self.redis = redis_client
        self.channel = channel

    async def emit(self, record: AnomalyRecord) -> None:
        await self.redis.publish(self.channel, json.dumps(anomaly_payload(record)))


class CompositeAnomalySink:
    """
    Fans a record out to several sinks.

    A failing sink is logged and skipped; the anomaly is already persisted,
    so delivery problems must not fail detection.
    """

    def __init__(self, sinks: Iterable[AnomalySink]):
        self.sinks: List[AnomalySink] = list(sinks)

    async def emit(self, record: AnomalyRecord) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(record)
            except Exception as e:
                logger.error("anomaly_sink_failed", sink=type(sink).__name__, anomaly_id=record.id, error=str(e))
