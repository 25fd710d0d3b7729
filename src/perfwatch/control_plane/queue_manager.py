# src/perfwatch/control_plane/queue_manager.py
import json
import time
from typing import Optional, Dict, Any, List, Tuple

import redis.asyncio as redis
from redis.exceptions import ResponseError

from .models import JobPriority


class QueueManager:
    """
    Durable work queue on Redis Streams.

    One stream per priority, read through a consumer group so each message
    is delivered to a single worker. Retries wait in a sorted set scored by
    their due time until ``promote_due`` moves them back onto a stream.
    """

    def __init__(self, redis_client: redis.Redis, namespace: str = "perfwatch"):
        self.redis = redis_client
        self.stream_key = f"{namespace}:jobs:stream"
        self.consumer_group = "workers"
        self.delayed_key = f"{namespace}:jobs:delayed"
        self.paused_key = f"{namespace}:workers:paused"
        self.priorities: List[Tuple[str, JobPriority]] = [
            ("high", JobPriority.HIGH),
            ("normal", JobPriority.NORMAL),
        ]

    def _stream_for(self, priority: int) -> str:
        if priority <= JobPriority.HIGH:
            return f"{self.stream_key}:high"
        return f"{self.stream_key}:normal"

    async def ensure_consumer_groups(self) -> None:
        """Create the consumer group on every priority stream if missing."""
        for name, _ in self.priorities:
            stream = f"{self.stream_key}:{name}"
            try:
                await self.redis.xgroup_create(
                    name=stream,
                    groupname=self.consumer_group,
                    id="0",
                    mkstream=True,
                )
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def enqueue(self, job_id: str, priority: int, site_id: str, device: str) -> str:
        """
        Append a job to the stream for its priority.

        Args:
            job_id: Job identifier (the message only carries references)
            priority: JobPriority value
            site_id: Site the job measures
            device: Device profile
        """
        message = {
            "job_id": job_id,
            "priority": int(priority),
            "site_id": site_id,
            "device": device,
            "timestamp": time.time(),
        }
        return await self.redis.xadd(
            self._stream_for(priority),
            message,
            maxlen=10000,  # Keep last 10k messages
        )

    async def dequeue(self, consumer_name: str) -> Optional[str]:
        """
        Take the next job id, highest priority first.

        Messages are acknowledged on delivery: a worker that dies mid-job
        leaves its job ``running`` in the database for the reaper.
        """
        for name, _ in self.priorities:
            stream = f"{self.stream_key}:{name}"
            messages = await self.redis.xreadgroup(
                groupname=self.consumer_group,
                consumername=consumer_name,
                streams={stream: ">"},
                count=1,
            )
            for stream_name, message_list in messages or []:
                for message_id, message_data in message_list:
                    await self.redis.xack(stream_name, self.consumer_group, message_id)
                    return message_data.get("job_id")
        return None

    async def requeue(
        self,
        job_id: str,
        priority: int,
        site_id: str,
        device: str,
        delay_seconds: float = 0,
    ) -> str:
        """Requeue a job, immediately or after ``delay_seconds``."""
        if delay_seconds > 0:
            member = json.dumps(
                {"job_id": job_id, "priority": int(priority), "site_id": site_id, "device": device},
                sort_keys=True,
            )
            await self.redis.zadd(self.delayed_key, {member: time.time() + delay_seconds})
            return f"delayed:{job_id}"
        return await self.enqueue(job_id, priority, site_id, device)

    async def promote_due(self, now: Optional[float] = None) -> int:
        """Move delayed jobs whose due time has passed onto their streams."""
        now = time.time() if now is None else now
        due = await self.redis.zrangebyscore(self.delayed_key, 0, now)
        promoted = 0
        for member in due:
            # zrem decides which process owns the promotion
            if await self.redis.zrem(self.delayed_key, member) != 1:
                continue
            data = json.loads(member)
            await self.enqueue(data["job_id"], data["priority"], data["site_id"], data["device"])
            promoted += 1
        return promoted

    async def set_paused(self, paused: bool) -> None:
        if paused:
            await self.redis.set(self.paused_key, "1")
        else:
            await self.redis.delete(self.paused_key)

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self.paused_key))

    async def get_stats(self) -> Dict[str, Any]:
        """Get queue statistics."""
        stats: Dict[str, Any] = {}

        for name, _ in self.priorities:
            stream = f"{self.stream_key}:{name}"
            length = await self.redis.xlen(stream)
            try:
                groups = await self.redis.xinfo_groups(stream)
                lag = sum(int(group.get("lag") or 0) for group in groups)
            except ResponseError:
                lag = 0
            stats[name] = {"length": length, "undelivered": lag}

        stats["delayed"] = {"count": await self.redis.zcard(self.delayed_key)}
        stats["paused"] = await self.is_paused()
        return stats
