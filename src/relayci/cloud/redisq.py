from __future__ import annotations

from typing import Optional

import redis

from ..triggers import MemoryTickLedger, RedisTickLedger, TickLedger


def make_ledger(redis_url: Optional[str], *, prefix: str = "relayci:tick", ttl_seconds: int = 24 * 3600) -> TickLedger:
    """
    Schedule-tick ledger shared by every control plane replica.
    Without a Redis URL dedup only holds within this process.
    """
    if not redis_url:
        return MemoryTickLedger()
    client = redis.Redis.from_url(redis_url, decode_responses=True)
    return RedisTickLedger(client, prefix=prefix, ttl_seconds=ttl_seconds)
