# payman_billing/billing/utils/redis_repo.py
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from redis.asyncio import Redis

from billing.config import REDIS_PREFIX, REDIS_URL

LOG = logging.getLogger(__name__)


def _make_redis(url: str = REDIS_URL) -> Redis:
    """
    Connection comes from REDIS_URL (e.g. redis://localhost:6379/0).
    The client connects lazily on first command.
    """
    # decode_responses=True -> str instead of bytes
    return Redis.from_url(
        url,
        decode_responses=True,
        health_check_interval=30,
        socket_timeout=5,
    )


_redis = _make_redis()


def _now_ts() -> int:
    """Unix time seconds."""
    return int(time.time())


class FixedWindowCounterRepo:
    """
    Fixed-window counter for the webhook rate limiter.
    Key: {prefix}:webhook:{ip}:{window_start}
    INCR + EXPIRE in one pipeline; the first hit in a window sets the TTL.
    """

    def __init__(self, redis: Redis, prefix: str = REDIS_PREFIX):
        self.r = redis
        self.prefix = prefix

    def _key(self, key: str, window_start: int) -> str:
        return f"{self.prefix}:webhook:{key}:{window_start}"

    async def hit(self, key: str, *, limit: int, window_sec: int, now_ts: Optional[int] = None) -> Tuple[bool, int, int]:
        """
        Counts one request. Returns (allowed, remaining, reset_at).
        """
        now_ts = _now_ts() if now_ts is None else now_ts
        window_start = now_ts - (now_ts % window_sec)
        reset_at = window_start + window_sec
        k = self._key(key, window_start)
        pipe = self.r.pipeline()
        pipe.incr(k)
        pipe.expire(k, window_sec + 5)
        count, _ = await pipe.execute()
        count = int(count)
        if count > limit:
            return False, 0, reset_at
        return True, max(0, limit - count), reset_at


# === Gateway webhook idempotency ==============================================
class WebhookDedupRepo:
    """
    Idempotency of gateway notifications per authority.
    Key: {prefix}:zp:auth:{authority}  (HASH)
      fields: status, updated_at
    TTL: 144 hours
    Policy:
      - no key           -> store new status, allow=True
      - same status      -> allow=False
      - NOK then OK      -> allow=True (a late success must still be verified)
      - OK then NOK      -> allow=False (OK is final once seen)
    """
    STATUS_RANK = {
        "nok": 1,
        "ok": 2,
    }

    def __init__(self, redis: Redis, prefix: str = REDIS_PREFIX, ttl_sec: int = 144 * 3600):
        self.r = redis
        self.prefix = prefix
        self.ttl = ttl_sec

    def _key(self, authority: str) -> str:
        return f"{self.prefix}:zp:auth:{authority}"

    @asynccontextmanager
    async def _watched(self, key: str):
        pipe = self.r.pipeline()
        await pipe.watch(key)
        try:
            yield pipe
        finally:
            await pipe.reset()

    async def should_process(self, authority: str, new_status: str) -> bool:
        """
        Atomically decides whether this notification needs processing and
        records it (CAS via WATCH/MULTI).
        """
        key = self._key(authority)
        new_status = (new_status or "").strip().lower()
        new_rank = self.STATUS_RANK.get(new_status, 0)
        async with self._watched(key) as pipe:
            cur = await pipe.hget(key, "status")
            cur_status = (cur or "").strip().lower()
            if not cur_status or new_rank > self.STATUS_RANK.get(cur_status, 0):
                pipe.multi()
                pipe.hset(key, mapping={"status": new_status, "updated_at": _now_ts()})
                pipe.expire(key, self.ttl)
                await pipe.execute()
                return True
            return False

    async def forget(self, authority: str) -> None:
        """Drops the marker so a redelivery gets processed again (used when processing crashed)."""
        try:
            await self.r.delete(self._key(authority))
        except Exception as e:
            LOG.warning("WebhookDedupRepo.forget(%s) failed: %s", authority, e)


# Global instances
webhook_counter_repo = FixedWindowCounterRepo(_redis, prefix=REDIS_PREFIX)
webhook_dedup_repo = WebhookDedupRepo(_redis, prefix=REDIS_PREFIX)
