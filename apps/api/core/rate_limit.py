"""
Per-charge verification rate limiting.

A charge id may be verified at most CHARGE_VERIFY_MAX_PER_WINDOW times per
window, with at least CHARGE_VERIFY_MIN_SPACING_S seconds between attempts.
The window restarts once a full window has passed since the last allowed
attempt.

The default backend is an in-process map: it is not shared across
instances, so under scale-out it under-enforces. The gateway stays the
source of truth for charge status. Set CHARGE_RATE_LIMIT_BACKEND=redis to
share counters; if Redis cannot be reached the in-process map is used.
"""
import time
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from redis.exceptions import RedisError

from core.cache import cache_key, get_redis_client
from core.config import settings

logger = logging.getLogger(__name__)

RATE_LIMITED = "charge_rate_limited"
THROTTLED = "charge_throttled"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None


@dataclass
class _ChargeRecord:
    last_verified: float
    count: int


class ChargeRateLimiter:
    """Best-effort limiter keyed by charge id."""

    def __init__(
        self,
        max_per_window: Optional[int] = None,
        window_s: Optional[float] = None,
        min_spacing_s: Optional[float] = None,
        backend: Optional[str] = None,
    ):
        self.max_per_window = max_per_window if max_per_window is not None else settings.CHARGE_VERIFY_MAX_PER_WINDOW
        self.window_s = window_s if window_s is not None else settings.CHARGE_VERIFY_WINDOW_S
        self.min_spacing_s = min_spacing_s if min_spacing_s is not None else settings.CHARGE_VERIFY_MIN_SPACING_S
        self.backend = (backend or settings.CHARGE_RATE_LIMIT_BACKEND or "memory").lower()
        self._records: Dict[str, _ChargeRecord] = {}
        self._lock = threading.Lock()

    def check(self, charge_id: str, now: Optional[float] = None) -> RateLimitDecision:
        now = time.time() if now is None else now
        if self.backend == "redis":
            client = get_redis_client()
            if client is not None:
                try:
                    return self._check_redis(client, charge_id, now)
                except RedisError as e:
                    logger.warning(f"Charge rate limit via Redis failed, using in-process map: {e}")
        return self._check_memory(charge_id, now)

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def _decide(self, last_verified: float, count: int, now: float) -> Optional[str]:
        if count >= self.max_per_window:
            return RATE_LIMITED
        if now - last_verified < self.min_spacing_s:
            return THROTTLED
        return None

    def _check_memory(self, charge_id: str, now: float) -> RateLimitDecision:
        with self._lock:
            record = self._records.get(charge_id)
            if record is None or now - record.last_verified > self.window_s:
                self._records[charge_id] = _ChargeRecord(last_verified=now, count=1)
                return RateLimitDecision(allowed=True)

            reason = self._decide(record.last_verified, record.count, now)
            if reason:
                return RateLimitDecision(allowed=False, reason=reason)

            record.last_verified = now
            record.count += 1
            return RateLimitDecision(allowed=True)

    def _check_redis(self, client, charge_id: str, now: float) -> RateLimitDecision:
        key = cache_key("charge_verify", charge_id)
        ttl = int(self.window_s) + 1
        data = client.hgetall(key)

        if not data or now - float(data.get("last", 0)) > self.window_s:
            client.hset(key, mapping={"last": now, "count": 1})
            client.expire(key, ttl)
            return RateLimitDecision(allowed=True)

        reason = self._decide(float(data["last"]), int(data.get("count", 0)), now)
        if reason:
            return RateLimitDecision(allowed=False, reason=reason)

        client.hset(key, "last", now)
        client.hincrby(key, "count", 1)
        client.expire(key, ttl)
        return RateLimitDecision(allowed=True)


# Process-wide limiter used by the verification endpoints
charge_rate_limiter = ChargeRateLimiter()
