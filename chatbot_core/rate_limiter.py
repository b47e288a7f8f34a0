"""
Rate Limiter Module

Per-bot token buckets guarding generative-model calls.

A bucket holds at most `capacity` tokens and refills continuously at
`capacity / interval_seconds` tokens per second. Removing tokens never
blocks: if the bucket cannot cover the request, RateLimitExceeded is raised
and nothing is deducted.

Buckets live in an explicit RateLimiterRegistry that callers inject; they
are in-process only and never reclaimed.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from config.settings import get_settings
from chatbot_core.errors import RateLimitExceeded, ValidationError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TokenBucket:
    """
    Token bucket with continuous refill.

    Example:
        bucket = TokenBucket(capacity=10000, refill_rate=10000 / 60)
        remaining = bucket.remove_tokens(1200)
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        clock: Clock = time.monotonic,
        owner: str = "",
    ):
        """
        Args:
            capacity: Maximum tokens (bucket starts full)
            refill_rate: Tokens added per second
            clock: Monotonic time source in seconds
            owner: Bot id, used in errors and logs
        """
        if capacity <= 0 or refill_rate <= 0:
            raise ValidationError("capacity and refill_rate must be positive")

        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self.owner = owner
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    @property
    def available(self) -> float:
        """Tokens available right now."""
        with self._lock:
            self._refill()
            return self._tokens

    def remove_tokens(self, count: float) -> float:
        """
        Take tokens from the bucket.

        Args:
            count: Tokens to remove (must be positive)

        Returns:
            Tokens remaining after removal

        Raises:
            ValidationError: count <= 0
            RateLimitExceeded: Not enough tokens; nothing is removed
        """
        if count <= 0:
            raise ValidationError(f"Token count must be positive, got {count}")

        with self._lock:
            self._refill()
            if count > self._tokens:
                if count > self.capacity:
                    retry_after = None
                else:
                    retry_after = (count - self._tokens) / self.refill_rate
                raise RateLimitExceeded(
                    bot_id=self.owner,
                    requested=count,
                    available=self._tokens,
                    retry_after=retry_after,
                )
            self._tokens -= count
            return self._tokens


class RateLimiterRegistry:
    """
    One TokenBucket per bot id, created on first use.

    Example:
        limiters = RateLimiterRegistry()
        limiters.remove_tokens("bot_1", 1200)
    """

    def __init__(
        self,
        tokens_per_interval: Optional[int] = None,
        interval_seconds: Optional[float] = None,
        clock: Clock = time.monotonic,
    ):
        config = get_settings().rate_limit
        self.tokens_per_interval = tokens_per_interval or config.tokens_per_interval
        self.interval_seconds = interval_seconds or config.interval_seconds
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def get_bucket(self, bot_id: str) -> TokenBucket:
        """Return the bot's bucket, creating it full if needed."""
        with self._lock:
            bucket = self._buckets.get(bot_id)
            if bucket is None:
                bucket = TokenBucket(
                    capacity=self.tokens_per_interval,
                    refill_rate=self.tokens_per_interval / self.interval_seconds,
                    clock=self._clock,
                    owner=bot_id,
                )
                self._buckets[bot_id] = bucket
                logger.debug(f"Created rate limiter for bot {bot_id}")
            return bucket

    def remove_tokens(self, bot_id: str, count: float) -> float:
        """Remove tokens from the bot's bucket; see TokenBucket.remove_tokens."""
        try:
            return self.get_bucket(bot_id).remove_tokens(count)
        except RateLimitExceeded as e:
            logger.warning(f"Rate limit hit for bot {bot_id}: {e}")
            raise

    def __len__(self) -> int:
        return len(self._buckets)
