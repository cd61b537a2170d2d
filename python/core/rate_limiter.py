import threading
import time
from collections import deque
from typing import Callable, Deque

from colored_logger import get_colored_logger

logger = get_colored_logger(__name__)


class RateLimiter:
    """Sliding-window limiter for outbound Bot API calls; safe across threads."""

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_requests = max_requests if isinstance(max_requests, int) and max_requests > 0 else 60
        self.window_seconds = window_seconds if isinstance(window_seconds, (int, float)) else 60
        self.requests: Deque[float] = deque()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self.requests and now - self.requests[0] >= self.window_seconds:
            self.requests.popleft()

    def is_allowed(self) -> bool:
        """Take a slot if one is free."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self.requests) < self.max_requests:
                self.requests.append(now)
                return True
            return False

    def wait_time(self) -> float:
        with self._lock:
            if len(self.requests) < self.max_requests:
                return 0.0
            return max(0.0, self.window_seconds - (self._clock() - self.requests[0]))

    def wait_if_needed(self) -> None:
        while not self.is_allowed():
            wait = self.wait_time()
            logger.debug("Rate limit reached. Waiting %.2f seconds...", wait)
            self._sleep(wait if wait > 0 else 0.01)
