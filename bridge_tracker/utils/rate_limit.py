import asyncio
import time
import logging

log = logging.getLogger(__name__)


class TokenBucket:
    """Async token bucket shared by every caller of one external API.

    ``rate`` tokens are refilled per second up to ``capacity``. A penalty
    (e.g. after an HTTP 429) blocks all acquirers until it expires.
    """

    def __init__(self, rate: float, capacity: int = 1, clock=time.monotonic, sleep=asyncio.sleep):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self.blocked_until = 0.0
        self._lock = asyncio.Lock()

    @classmethod
    def per_interval(cls, seconds: float, **kwargs) -> "TokenBucket":
        """One request every ``seconds``; a zero interval disables throttling."""
        if seconds <= 0:
            return cls(rate=1e9, capacity=1_000_000, **kwargs)
        return cls(rate=1.0 / seconds, **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        self._updated = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)

    def penalize(self, seconds: float) -> None:
        until = self._clock() + seconds
        if until > self.blocked_until:
            log.warning(f"Rate limiter backing off for {seconds:.1f}s")
            self.blocked_until = until

    @property
    def is_blocked(self) -> bool:
        return self._clock() < self.blocked_until

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                if now < self.blocked_until:
                    await self._sleep(self.blocked_until - now)
                    continue
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await self._sleep((1 - self._tokens) / self.rate)
