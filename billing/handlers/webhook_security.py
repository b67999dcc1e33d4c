# payman_billing/billing/handlers/webhook_security.py
"""
Security gate in front of the gateway webhook. Runs before anything is parsed or
stored; a refusal raises WebhookRejected and mutates nothing.

Order: content type (415) -> rate limit (429) -> user agent (403)
       -> timestamp freshness (401) -> IP allow-list, production only (403)
"""
from __future__ import annotations

import ipaddress
import logging
import time
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from redis.exceptions import RedisError

from billing.config import (
    IS_PRODUCTION, WEBHOOK_ALLOWED_NETWORKS, WEBHOOK_RATE_LIMIT, WEBHOOK_RATE_WINDOW_SEC,
    WEBHOOK_TRUSTED_PROXIES,
    WEBHOOK_TIMESTAMP_TOLERANCE_SEC, WEBHOOK_USER_AGENT_MARKER,
)
from billing.utils.errors import WebhookRejected

logger = logging.getLogger(__name__)


# =========================
#      Rate limiters
# =========================
class InMemoryRateLimiter:
    """
    Fixed window per key, held in process memory. Single-instance only; counters
    reset on restart. cleanup() drops finished windows.
    """

    def __init__(self, limit: int = WEBHOOK_RATE_LIMIT, window_sec: int = WEBHOOK_RATE_WINDOW_SEC,
                 clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_sec = window_sec
        self.clock = clock
        self._windows: Dict[str, Tuple[int, int]] = {}  # key -> (window_start, count)

    def _window_start(self, now: float) -> int:
        now_i = int(now)
        return now_i - (now_i % self.window_sec)

    async def hit(self, key: str) -> bool:
        start = self._window_start(self.clock())
        cur_start, count = self._windows.get(key, (start, 0))
        if cur_start != start:
            count = 0
        count += 1
        self._windows[key] = (start, count)
        return count <= self.limit

    def cleanup(self) -> int:
        start = self._window_start(self.clock())
        stale = [k for k, (ws, _) in self._windows.items() if ws < start]
        for k in stale:
            del self._windows[k]
        return len(stale)


class RedisRateLimiter:
    """Same fixed window, shared across instances through Redis."""

    def __init__(self, counter_repo, limit: int = WEBHOOK_RATE_LIMIT, window_sec: int = WEBHOOK_RATE_WINDOW_SEC):
        self.counter = counter_repo
        self.limit = limit
        self.window_sec = window_sec

    async def hit(self, key: str) -> bool:
        try:
            allowed, _remaining, _reset = await self.counter.hit(key, limit=self.limit, window_sec=self.window_sec)
        except RedisError as e:
            # fail open: losing the limiter must not stop payment notifications
            logger.warning("Rate limiter unavailable, allowing %s: %s", key, e)
            return True
        return allowed


# =========================
#         Helpers
# =========================
def _lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in headers.items()}


def _parse_networks(networks: Iterable[str]):
    parsed = []
    for n in networks:
        try:
            parsed.append(ipaddress.ip_network(n, strict=False))
        except ValueError:
            logger.warning("Ignoring invalid network in allow-list: %r", n)
    return parsed


def _in_networks(ip: Optional[str], networks) -> bool:
    try:
        addr = ipaddress.ip_address(ip or "")
    except ValueError:
        return False
    return any(addr in net for net in networks)


def client_ip(headers: Mapping[str, str], peer_ip: Optional[str], trusted_proxies=()) -> str:
    """
    The socket peer, unless the peer is one of trusted_proxies (parsed networks):
    then CF-Connecting-IP, then the first X-Forwarded-For hop.
    """
    if not _in_networks(peer_ip, trusted_proxies):
        return peer_ip or "unknown"
    h = _lower_headers(headers)
    cf = (h.get("cf-connecting-ip") or "").strip()
    if cf:
        return cf
    xff = (h.get("x-forwarded-for") or "").strip()
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    return peer_ip or "unknown"


class WebhookSecurityGate:
    def __init__(
        self,
        rate_limiter,
        *,
        clock: Callable[[], float] = time.time,
        production: bool = IS_PRODUCTION,
        allowed_networks: Iterable[str] = WEBHOOK_ALLOWED_NETWORKS,
        trusted_proxies: Iterable[str] = WEBHOOK_TRUSTED_PROXIES,
        user_agent_marker: str = WEBHOOK_USER_AGENT_MARKER,
        timestamp_tolerance_sec: int = WEBHOOK_TIMESTAMP_TOLERANCE_SEC,
    ):
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.production = production
        self.networks = _parse_networks(allowed_networks)
        self.trusted_proxies = _parse_networks(trusted_proxies)
        self.user_agent_marker = (user_agent_marker or "").lower()
        self.tolerance = timestamp_tolerance_sec

    async def check(self, headers: Mapping[str, str], peer_ip: Optional[str]) -> str:
        """Returns the resolved client IP; raises WebhookRejected on the first failed check."""
        h = _lower_headers(headers)
        ip = client_ip(headers, peer_ip, self.trusted_proxies)

        content_type = (h.get("content-type") or "").lower()
        if "application/json" not in content_type:
            raise self._reject(415, "Content-Type must be application/json", ip)

        if not await self.rate_limiter.hit(ip):
            raise self._reject(429, "Too many requests", ip)

        user_agent = (h.get("user-agent") or "").lower()
        if self.user_agent_marker and self.user_agent_marker not in user_agent:
            raise self._reject(403, "Unrecognized user agent", ip)

        raw_ts = (h.get("x-zarinpal-timestamp") or "").strip()
        if raw_ts:
            self._check_timestamp(raw_ts, ip)

        if self.production and not self._ip_allowed(ip):
            raise self._reject(403, "Source address not allowed", ip)
        return ip

    def _check_timestamp(self, raw_ts: str, ip: str) -> None:
        try:
            ts = float(raw_ts)
        except ValueError:
            raise self._reject(401, "Invalid timestamp", ip)
        if ts > 1e12:  # milliseconds
            ts /= 1000.0
        if abs(self.clock() - ts) > self.tolerance:
            raise self._reject(401, "Stale timestamp", ip)

    def _ip_allowed(self, ip: str) -> bool:
        return _in_networks(ip, self.networks)

    @staticmethod
    def _reject(status: int, reason: str, ip: str) -> WebhookRejected:
        logger.warning("Webhook rejected (%s %s) from %s", status, reason, ip)
        return WebhookRejected(status, reason)
