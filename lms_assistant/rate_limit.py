"""
Token-bucket admission control keyed by (client, role tier).

Buckets are created lazily on first sight and swept once idle. Refill and
decrement happen under the bucket's own lock; the table lock only guards
membership, so a slow client never serialises unrelated ones.
"""

import math
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable

import structlog

from lms_assistant.config import RateLimitPolicy
from lms_assistant.schemas.chat import ANONYMOUS_TIER, Identity
from lms_assistant.observability import record_rate_limited

logger = structlog.get_logger("rate_limit")


@dataclass
class RateLimitBucket:
    key: tuple[str, str]
    tokens: float
    capacity: int
    refill_per_second: float
    last_refill: float
    last_seen: float
    lock: Lock = field(default_factory=Lock, repr=False)
    evicted: bool = False

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_per_second)
        self.last_refill = now


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    remaining: int
    capacity: int
    retry_after_ms: int = 0
    reset_after_ms: int = 0


def _ms_until(tokens_needed: float, rate: float) -> int:
    if tokens_needed <= 0:
        return 0
    return math.ceil(tokens_needed / rate * 1000)


class RateLimiter:
    def __init__(
        self,
        policies: dict[str, RateLimitPolicy],
        idle_ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ANONYMOUS_TIER not in policies:
            raise ValueError("rate limit policies must define the anonymous tier")
        self._policies = dict(policies)
        self._idle_ttl = idle_ttl_seconds
        self._clock = clock
        self._buckets: dict[tuple[str, str], RateLimitBucket] = {}
        self._table_lock = Lock()

    def policy_for(self, tier: str) -> RateLimitPolicy:
        return self._policies.get(tier) or self._policies[ANONYMOUS_TIER]

    def _bucket(self, key: tuple[str, str], policy: RateLimitPolicy) -> RateLimitBucket:
        with self._table_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                now = self._clock()
                bucket = RateLimitBucket(
                    key=key,
                    tokens=float(policy.capacity),
                    capacity=policy.capacity,
                    refill_per_second=policy.refill_per_second,
                    last_refill=now,
                    last_seen=now,
                )
                self._buckets[key] = bucket
            return bucket

    def admit(self, identity: Identity) -> AdmissionDecision:
        tier = identity.rate_tier
        policy = self.policy_for(tier)
        key = (identity.client_id, tier)
        while True:
            bucket = self._bucket(key, policy)
            with bucket.lock:
                # Lost a race with the sweeper; start over on a fresh bucket.
                if bucket.evicted:
                    continue
                now = self._clock()
                bucket.refill(now)
                bucket.last_seen = now
                if bucket.tokens >= 1:
                    bucket.tokens -= 1
                    return AdmissionDecision(
                        allowed=True,
                        remaining=int(bucket.tokens),
                        capacity=bucket.capacity,
                        reset_after_ms=_ms_until(bucket.capacity - bucket.tokens, bucket.refill_per_second),
                    )
                retry_after_ms = _ms_until(1 - bucket.tokens, bucket.refill_per_second)
                decision = AdmissionDecision(
                    allowed=False,
                    remaining=0,
                    capacity=bucket.capacity,
                    retry_after_ms=retry_after_ms,
                    reset_after_ms=_ms_until(bucket.capacity - bucket.tokens, bucket.refill_per_second),
                )
            record_rate_limited(tier)
            logger.info("admission_denied", tier=tier, retry_after_ms=retry_after_ms)
            return decision

    def usage(self, identity: Identity) -> dict:
        tier = identity.rate_tier
        policy = self.policy_for(tier)
        with self._table_lock:
            bucket = self._buckets.get((identity.client_id, tier))
        if bucket is None:
            return {"tier": tier, "remaining": policy.capacity, "capacity": policy.capacity}
        with bucket.lock:
            bucket.refill(self._clock())
            return {"tier": tier, "remaining": int(bucket.tokens), "capacity": bucket.capacity}

    def reset(self, identity: Identity) -> bool:
        """Drop the caller's bucket so its next request starts at full capacity."""
        key = (identity.client_id, identity.rate_tier)
        with self._table_lock:
            bucket = self._buckets.pop(key, None)
        if bucket is None:
            return False
        with bucket.lock:
            bucket.evicted = True
        logger.info("rate_limit_reset", tier=identity.rate_tier)
        return True

    def sweep(self) -> int:
        """Evict idle buckets. Buckets whose lock is currently held are skipped."""
        now = self._clock()
        evicted = 0
        with self._table_lock:
            for key, bucket in list(self._buckets.items()):
                if now - bucket.last_seen < self._idle_ttl:
                    continue
                if not bucket.lock.acquire(blocking=False):
                    continue
                try:
                    bucket.evicted = True
                    del self._buckets[key]
                    evicted += 1
                finally:
                    bucket.lock.release()
        if evicted:
            logger.info("rate_limit_sweep", evicted=evicted)
        return evicted

    def stats(self) -> dict:
        with self._table_lock:
            tiers = [tier for _, tier in self._buckets]
        by_tier: dict[str, int] = {}
        for tier in tiers:
            by_tier[tier] = by_tier.get(tier, 0) + 1
        return {"buckets": len(tiers), "by_tier": by_tier}


def rate_limit_headers(decision: AdmissionDecision) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(decision.capacity),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(math.ceil(decision.reset_after_ms / 1000)),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(max(1, math.ceil(decision.retry_after_ms / 1000)))
    return headers
