"""
Idempotency Engine

Remembers which jobs an operator trigger created, keyed by the caller's
Idempotency-Key, so a retried request returns the original jobs instead of
scheduling again.
"""
import json
import logging
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class IdempotencyEngine:
    """
    Stores idempotency_key -> [job_id, ...] mappings in Redis with TTL.

    Lookups fail open: when Redis is unavailable the request proceeds and the
    active-job uniqueness in the database still prevents duplicate work.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 86400):
        """
        Args:
            redis_client: Redis async client
            ttl_seconds: Time-to-live for idempotency keys (default: 24 hours)
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = "perfwatch:idempotency:"

    async def check(self, idempotency_key: Optional[str]) -> Optional[List[str]]:
        """
        Returns:
            Job ids stored for the key, or None if the key is unknown
        """
        if not idempotency_key:
            return None

        try:
            stored = await self.redis.get(f"{self.key_prefix}{idempotency_key}")
        except RedisError as e:
            logger.error(f"Error checking idempotency key {idempotency_key}: {e}")
            return None

        if stored is None:
            return None
        job_ids = json.loads(stored)
        logger.info(f"Idempotency key found: {idempotency_key} -> {len(job_ids)} job(s)")
        return job_ids

    async def store(self, idempotency_key: Optional[str], job_ids: List[str]) -> bool:
        if not idempotency_key:
            return False

        try:
            await self.redis.setex(
                f"{self.key_prefix}{idempotency_key}",
                self.ttl_seconds,
                json.dumps(job_ids),
            )
        except RedisError as e:
            logger.error(f"Error storing idempotency key {idempotency_key}: {e}")
            return False

        logger.debug(f"Stored idempotency key: {idempotency_key} (TTL: {self.ttl_seconds}s)")
        return True
