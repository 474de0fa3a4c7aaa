import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class TokenBucket:
    tokens: float
    last_refill: float


class RateLimiter:
    """Per-channel token bucket: `burst` capacity, `per_minute` refill."""

    def __init__(
        self,
        burst: int = 20,
        per_minute: float = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.burst = burst
        self.per_minute = per_minute
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}

    def _bucket(self, channel: str) -> TokenBucket:
        bucket = self._buckets.get(channel)
        if bucket is None:
            bucket = TokenBucket(tokens=float(self.burst), last_refill=self._clock())
            self._buckets[channel] = bucket
        return bucket

    def try_consume(self, channel: str) -> bool:
        bucket = self._bucket(channel)
        now = self._clock()
        elapsed = max(0.0, now - bucket.last_refill)
        if self.per_minute > 0:
            bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * self.per_minute / 60.0)
        bucket.last_refill = now

        if bucket.tokens < 1:
            return False
        bucket.tokens -= 1
        return True

    def tokens(self, channel: str) -> float:
        return self._bucket(channel).tokens

    def snapshot(self) -> dict[str, float]:
        """Tokens left per channel, as of the last consume on that channel."""
        return {channel: round(self.tokens(channel), 2) for channel in self._buckets}
