import json

import redis.asyncio as redis

from order_engine.config import settings

AUDIT_DLQ_KEY = "queue:audit_log:dlq"

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


class RedisDeadLetterQueue:
    """Audit entries that exhausted their retries. LPUSH in, RPOP out (FIFO); RPUSH to put back."""

    def __init__(self, key: str = AUDIT_DLQ_KEY):
        self.key = key

    async def push(self, body: dict) -> None:
        r = await get_redis()
        await r.lpush(self.key, json.dumps(body))

    async def push_back(self, bodies: list[dict]) -> None:
        if not bodies:
            return
        r = await get_redis()
        # RPOP takes from the tail, so the first body must end up last
        await r.rpush(self.key, *(json.dumps(b) for b in reversed(bodies)))

    async def pop(self, max_items: int) -> list[dict]:
        r = await get_redis()
        items = []
        for _ in range(max_items):
            raw = await r.rpop(self.key)
            if raw is None:
                break
            try:
                items.append(json.loads(raw))
            except json.JSONDecodeError:
                continue
        return items

    async def length(self) -> int:
        r = await get_redis()
        return await r.llen(self.key)
