"""Token bucket rate limiting for calls against the Git host."""

import logging
import time
from threading import Lock
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 5
DEFAULT_REFILL_RATE = 1.0


class RateLimitExceeded(Exception):
    pass


class TokenBucket:
    """
    In-process token bucket.

    Allows bursts up to `capacity` calls and a sustained throughput of
    `refill_rate` calls per second. A single bucket is shared by the git
    client and the pull request API of one invocation.

    Attributes:
        capacity: Maximum number of tokens in the bucket
        refill_rate: Number of tokens added per second
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        refill_rate: float = DEFAULT_REFILL_RATE,
    ) -> None:
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._tokens = float(capacity)
        self._last_refill_time = time.monotonic()
        self._sync_lock = Lock()

    def acquire(self, tokens: int = 1, timeout: float = 60) -> None:
        """
        Acquire tokens from the bucket, blocking until they are available.

        Raises:
            RateLimitExceeded: If tokens are not available within timeout
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"requested {tokens} tokens, bucket capacity is {self.capacity}"
            )

        with self._sync_lock:
            start_time = time.monotonic()
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    logger.debug(
                        "Acquired %d token(s) (%.2f tokens remaining)",
                        tokens,
                        self._tokens,
                    )
                    return

                elapsed = time.monotonic() - start_time
                if elapsed >= timeout:
                    raise RateLimitExceeded(
                        f"Rate limit exceeded: requested {tokens} tokens, "
                        f"only {self._tokens:.2f} available after {elapsed:.1f}s"
                    )

                wait_time = min(
                    (tokens - self._tokens) / self.refill_rate,
                    timeout - elapsed,
                    1.0,
                )
                logger.debug("Waiting %.2fs for tokens to refill", wait_time)
                time.sleep(wait_time)

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill_time
        self._tokens = min(self._tokens + elapsed * self.refill_rate, self.capacity)
        self._last_refill_time = now

    def __call__(self, *args: Any) -> None:
        # usable directly as a before-call hook
        self.acquire()
