"""Retry policy and request pacing for the enrichment endpoint."""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how patiently a throttled request is retried.

    ``max_attempts`` counts the first request, so the default of 3 means one
    request plus two retries.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    retry_on_status: Tuple[int, ...] = (429,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before retrying after the given (1-based) failed attempt.

        Args:
            attempt: Number of the attempt that just failed
            retry_after: Server-requested delay, if any

        Returns:
            Seconds to wait, capped at ``max_delay``
        """
        delay = self.base_delay * (self.multiplier ** max(0, attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)


class RateLimiter:
    """
    Enforces a minimum interval between consecutive requests.

    Safe to share between threads: callers queue up on the lock so the
    interval holds across every worker using the same limiter.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_request: Optional[float] = None
        self._lock = threading.Lock()
        self.wait_count = 0

    def wait(self) -> float:
        """
        Block until the next request may be sent.

        Returns:
            Seconds spent waiting
        """
        with self._lock:
            waited = 0.0
            if self._last_request is not None:
                elapsed = self._clock() - self._last_request
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    logger.debug(f"Rate limiter sleeping {waited:.2f}s")
                    self._sleep(waited)
                    self.wait_count += 1
            self._last_request = self._clock()
            return waited
