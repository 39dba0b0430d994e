import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict

from signal_governor.observability import get_logger

logger = get_logger(__name__)


class SlidingWindowRateLimiter:
    """Allow at most `max_requests` per `window_seconds` for each key (e.g. one Discord channel)."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self._max = max_requests
        self._window = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._sent: Dict[str, Deque[float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def acquire(self, key: str) -> float:
        """Wait for a free slot; returns the seconds spent waiting."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        waited = 0.0
        async with lock:
            sent = self._sent.setdefault(key, deque())
            while True:
                now = self._clock()
                while sent and sent[0] <= now - self._window:
                    sent.popleft()
                if len(sent) < self._max:
                    break
                delay = self._window - (now - sent[0])
                logger.debug(
                    "rate_limit.wait",
                    extra={"event": "rate_limit.wait", "rate_limit_key": key, "delay_seconds": round(delay, 3)},
                )
                await self._sleep(delay)
                waited += delay
            sent.append(self._clock())
        return waited
