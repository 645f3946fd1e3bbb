from __future__ import annotations

from api.app.rate_limit import TokenBucketLimiter


def test_allows_up_to_capacity_then_reports_retry_after() -> None:
    limiter = TokenBucketLimiter(capacity=2, refill_per_second=1.0)

    assert limiter.allow(key="d", now=100.0) == (True, 0)
    assert limiter.allow(key="d", now=100.0) == (True, 0)
    allowed, retry_after = limiter.allow(key="d", now=100.0)
    assert allowed is False
    assert retry_after >= 1


def test_refills_over_time_and_keys_are_independent() -> None:
    limiter = TokenBucketLimiter(capacity=1, refill_per_second=1.0)

    assert limiter.allow(key="a", now=0.0)[0] is True
    assert limiter.allow(key="a", now=0.5)[0] is False
    assert limiter.allow(key="b", now=0.5)[0] is True
    assert limiter.allow(key="a", now=1.5)[0] is True


def test_per_minute_factory() -> None:
    limiter = TokenBucketLimiter.per_minute(600)
    assert limiter.capacity == 600
    assert limiter.refill_per_second == 10.0


def test_disabled_or_misconfigured_limiter_fails_open() -> None:
    disabled = TokenBucketLimiter.per_minute(1, enabled=False)
    zero = TokenBucketLimiter.per_minute(0)
    for _ in range(5):
        assert disabled.allow(key="d") == (True, 0)
        assert zero.allow(key="d") == (True, 0)
