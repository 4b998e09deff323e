import pytest
from pydantic import ValidationError

from lms_assistant.config import RateLimitPolicy
from lms_assistant.rate_limit import RateLimiter, rate_limit_headers
from lms_assistant.schemas.chat import Identity, Role


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


POLICIES = {
    "user": RateLimitPolicy(capacity=3, refill_per_second=1.0),
    "superadmin": RateLimitPolicy(capacity=10, refill_per_second=1.0),
    "anonymous": RateLimitPolicy(capacity=1, refill_per_second=1.0),
}


def _identity(client_id="c1", role=Role.USER, authenticated=True):
    return Identity(client_id=client_id, role=role, user_id="u1" if authenticated else None, authenticated=authenticated)


def _limiter(clock, idle_ttl=600.0):
    return RateLimiter(POLICIES, idle_ttl_seconds=idle_ttl, clock=clock)


def test_admits_until_capacity_then_denies_with_retry_after():
    clock = _Clock()
    limiter = _limiter(clock)
    identity = _identity()

    remaining = [limiter.admit(identity).remaining for _ in range(3)]
    denied = limiter.admit(identity)

    assert remaining == [2, 1, 0]
    assert denied.allowed is False
    assert denied.retry_after_ms == 1000

    clock.now = 0.5
    assert limiter.admit(identity).retry_after_ms == 500

    clock.now = 1.0
    assert limiter.admit(identity).allowed is True


def test_admitted_count_never_exceeds_capacity_plus_refill():
    clock = _Clock()
    limiter = _limiter(clock)
    identity = _identity()

    admitted = 0
    for step in range(100):
        clock.now = step * 0.1
        if limiter.admit(identity).allowed:
            admitted += 1

    elapsed = clock.now
    assert admitted <= 3 + int(elapsed * 1.0)
    assert admitted >= 3


def test_buckets_are_independent_per_client_and_tier():
    clock = _Clock()
    limiter = _limiter(clock)

    for _ in range(3):
        limiter.admit(_identity("c1"))
    assert limiter.admit(_identity("c1")).allowed is False
    assert limiter.admit(_identity("c2")).allowed is True
    assert limiter.admit(_identity("c1", role=Role.SUPERADMIN)).capacity == 10


def test_unauthenticated_callers_use_anonymous_tier():
    clock = _Clock()
    limiter = _limiter(clock)
    anonymous = _identity(authenticated=False)

    assert limiter.admit(anonymous).capacity == 1
    assert limiter.admit(anonymous).allowed is False


def test_tier_without_policy_falls_back_to_anonymous():
    limiter = _limiter(_Clock())
    assert limiter.policy_for("power_user") == POLICIES["anonymous"]


def test_anonymous_policy_is_required():
    with pytest.raises(ValueError):
        RateLimiter({"user": RateLimitPolicy(capacity=1, refill_per_second=1.0)})


def test_sweep_evicts_idle_buckets():
    clock = _Clock()
    limiter = _limiter(clock, idle_ttl=10)
    limiter.admit(_identity("c1"))
    limiter.admit(_identity("c2"))

    clock.now = 5
    limiter.admit(_identity("c2"))
    clock.now = 12

    assert limiter.sweep() == 1
    assert limiter.stats() == {"buckets": 1, "by_tier": {"user": 1}}


def test_sweep_skips_bucket_whose_lock_is_held():
    clock = _Clock()
    limiter = _limiter(clock, idle_ttl=10)
    identity = _identity()
    limiter.admit(identity)
    bucket = limiter._buckets[("c1", "user")]

    clock.now = 100
    bucket.lock.acquire()
    try:
        assert limiter.sweep() == 0
    finally:
        bucket.lock.release()
    assert limiter.sweep() == 1
    assert bucket.evicted is True


def test_request_after_eviction_gets_fresh_bucket():
    clock = _Clock()
    limiter = _limiter(clock, idle_ttl=10)
    identity = _identity()
    for _ in range(3):
        limiter.admit(identity)
    stale = limiter._buckets[("c1", "user")]

    clock.now = 0.2
    limiter.sweep()
    assert limiter.reset(identity) is True
    assert stale.evicted is True

    decision = limiter.admit(identity)
    assert decision.allowed is True
    assert decision.remaining == 2
    assert limiter._buckets[("c1", "user")] is not stale


def test_usage_reports_remaining_tokens():
    clock = _Clock()
    limiter = _limiter(clock)
    identity = _identity()

    assert limiter.usage(identity) == {"tier": "user", "remaining": 3, "capacity": 3}
    limiter.admit(identity)
    assert limiter.usage(identity)["remaining"] == 2


def test_headers_for_admitted_and_denied_requests():
    clock = _Clock()
    limiter = _limiter(clock)
    identity = _identity()

    decisions = [limiter.admit(identity) for _ in range(4)]
    admitted = rate_limit_headers(decisions[2])
    denied = rate_limit_headers(decisions[3])

    assert admitted == {"X-RateLimit-Limit": "3", "X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "3"}
    assert denied["Retry-After"] == "1"
    assert denied["X-RateLimit-Remaining"] == "0"


@pytest.mark.parametrize("fields", [{"capacity": 0, "refill_per_second": 1.0}, {"capacity": 5, "refill_per_second": 0}])
def test_policy_rejects_non_positive_values(fields):
    with pytest.raises(ValidationError):
        RateLimitPolicy(**fields)
