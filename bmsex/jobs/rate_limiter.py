"""
Rate Limiter

Per-vendor token buckets for outbound quote requests.

A caller asks for a token with a deadline. If the bucket cannot refill
before that deadline the request is refused instead of queued, so a
throttled vendor is reported as unavailable for that line rather than
holding the line past its time budget.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Rate limit configuration"""
    requests_per_minute: int = 60

    # Burst handling
    burst_size: int = 10


@dataclass
class UsageStats:
    """Per-key counters"""
    granted: int = 0
    refused: int = 0


class _Bucket:
    def __init__(self, config: RateLimitConfig):
        self.config = config
        self.tokens = float(config.burst_size)
        self.last_update = time.monotonic()

    def refill(self) -> None:
        """Refill token bucket based on elapsed time"""
        now = time.monotonic()
        elapsed = now - self.last_update
        self.last_update = now
        refill_rate = self.config.requests_per_minute / 60  # tokens per second
        self.tokens = min(self.config.burst_size, self.tokens + elapsed * refill_rate)

    def wait_time(self) -> float:
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / (self.config.requests_per_minute / 60)


class RateLimiter:
    """
    Token-bucket rate limiter keyed by vendor id.

    Usage:
        limiter = RateLimiter()
        limiter.configure('acme', RateLimitConfig(requests_per_minute=30))

        if await limiter.acquire('acme', timeout=1.5):
            ...
    """

    def __init__(self, default_config: Optional[RateLimitConfig] = None):
        self.default_config = default_config
        self._configs: Dict[str, RateLimitConfig] = {}
        self._buckets: Dict[str, _Bucket] = {}
        self._usage: Dict[str, UsageStats] = defaultdict(UsageStats)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def configure(self, key: str, config: Optional[RateLimitConfig]) -> None:
        """Set or clear the limit for one key"""
        if config is None:
            self._configs.pop(key, None)
        else:
            self._configs[key] = config
        self._buckets.pop(key, None)

    async def acquire(self, key: str, timeout: Optional[float] = None) -> bool:
        """
        Take one token for ``key``.

        Args:
            key: Vendor id
            timeout: Longest time to wait for a token; None waits as long as needed

        Returns:
            True when a token was granted, False when it could not be granted in time
        """
        config = self._configs.get(key, self.default_config)
        if config is None:
            self._usage[key].granted += 1
            return True

        async with self._locks[key]:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket(config)

            bucket.refill()
            wait = bucket.wait_time()
            if wait > 0:
                if timeout is not None and wait > timeout:
                    self._usage[key].refused += 1
                    logger.debug(f"Rate limited {key}: next token in {wait:.2f}s, budget {timeout:.2f}s")
                    return False
                await asyncio.sleep(wait)
                bucket.refill()

            bucket.tokens -= 1
            self._usage[key].granted += 1
            return True

    def get_usage(self, key: Optional[str] = None) -> Dict[str, Any]:
        """Get current usage statistics"""
        keys = [key] if key else sorted(self._usage)
        return {
            k: {
                'granted': self._usage[k].granted,
                'refused': self._usage[k].refused,
                'requests_per_minute': (
                    self._configs.get(k, self.default_config).requests_per_minute
                    if self._configs.get(k, self.default_config) else None
                ),
            }
            for k in keys
        }
