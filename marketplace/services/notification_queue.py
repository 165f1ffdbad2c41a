from __future__ import annotations

import asyncio
import heapq
from datetime import datetime
from typing import Dict, List, Protocol, Tuple

from redis.asyncio import Redis

from marketplace.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)


class NotificationQueue(Protocol):
    async def push(self, notification_id: int, due_at: datetime) -> None: ...

    async def pop_due(self, now: datetime, limit: int = 100) -> List[int]: ...

    async def size(self) -> int: ...


class RedisNotificationQueue:
    """
    Delay queue on a Redis sorted set scored by due time.

    ``ZREM`` is the claim: when several workers read the same due ids only the
    one whose ``ZREM`` removes the member processes it. Re-pushing an id
    overwrites its score, so a notification is queued at most once.
    """

    def __init__(self, redis_client: Redis, key: str = "marketplace:notifications:due"):
        self.redis = redis_client
        self.key = key

    async def push(self, notification_id: int, due_at: datetime) -> None:
        await self.redis.zadd(self.key, {str(notification_id): due_at.timestamp()})
        logger.debug("notification_queue.pushed", notification_id=notification_id, due_at=due_at.isoformat())

    async def pop_due(self, now: datetime, limit: int = 100) -> List[int]:
        members = await self.redis.zrangebyscore(self.key, "-inf", now.timestamp(), start=0, num=limit)
        claimed = []
        for member in members:
            if await self.redis.zrem(self.key, member):
                claimed.append(int(member))
        return claimed

    async def size(self) -> int:
        return await self.redis.zcard(self.key)


class MemoryNotificationQueue:
    def __init__(self) -> None:
        self._heap: List[Tuple[float, int]] = []
        self._scores: Dict[int, float] = {}
        self._lock = asyncio.Lock()

    async def push(self, notification_id: int, due_at: datetime) -> None:
        async with self._lock:
            score = due_at.timestamp()
            self._scores[notification_id] = score
            heapq.heappush(self._heap, (score, notification_id))

    async def pop_due(self, now: datetime, limit: int = 100) -> List[int]:
        claimed: List[int] = []
        cutoff = now.timestamp()
        async with self._lock:
            while self._heap and len(claimed) < limit and self._heap[0][0] <= cutoff:
                score, notification_id = heapq.heappop(self._heap)
                # Stale heap entries left behind by a re-push are skipped
                if self._scores.get(notification_id) != score:
                    continue
                del self._scores[notification_id]
                claimed.append(notification_id)
        return claimed

    async def size(self) -> int:
        return len(self._scores)
