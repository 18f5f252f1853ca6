import pytest

from igc.utils.rate_limit import (
    RateLimitExceeded,
    TokenBucket,
)


@pytest.fixture
def clock(mocker):
    now = [1000.0]
    mocker.patch("igc.utils.rate_limit.time.monotonic", side_effect=lambda: now[0])

    def sleep(seconds: float) -> None:
        now[0] += seconds

    sleep_mock = mocker.patch("igc.utils.rate_limit.time.sleep", side_effect=sleep)
    return sleep_mock


def test_token_bucket_allows_burst(clock) -> None:
    bucket = TokenBucket(capacity=3, refill_rate=1.0)
    for _ in range(3):
        bucket.acquire()
    clock.assert_not_called()


def test_token_bucket_waits_for_refill(clock) -> None:
    bucket = TokenBucket(capacity=1, refill_rate=2.0)
    bucket.acquire()
    bucket.acquire()
    clock.assert_called_once_with(0.5)


def test_token_bucket_timeout(clock) -> None:
    bucket = TokenBucket(capacity=1, refill_rate=0.1)
    bucket.acquire()
    with pytest.raises(RateLimitExceeded):
        bucket.acquire(timeout=2)


def test_token_bucket_more_than_capacity() -> None:
    bucket = TokenBucket(capacity=2)
    with pytest.raises(RateLimitExceeded):
        bucket.acquire(tokens=3)


def test_token_bucket_as_hook(clock, mocker) -> None:
    bucket = TokenBucket(capacity=2)
    acquire = mocker.spy(bucket, "acquire")
    bucket("any", "args")
    acquire.assert_called_once_with()
