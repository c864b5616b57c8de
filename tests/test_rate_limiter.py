"""
Tests for the per-vendor rate limiter
"""

import pytest

from bmsex.jobs.rate_limiter import RateLimitConfig, RateLimiter


class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_unconfigured_keys_are_unlimited(self):
        limiter = RateLimiter()

        for _ in range(20):
            assert await limiter.acquire('acme', timeout=0)

        assert limiter.get_usage('acme') == {
            'acme': {'granted': 20, 'refused': 0, 'requests_per_minute': None},
        }

    @pytest.mark.asyncio
    async def test_burst_then_refusal(self):
        limiter = RateLimiter()
        limiter.configure('acme', RateLimitConfig(requests_per_minute=1, burst_size=2))

        assert await limiter.acquire('acme', timeout=0.1)
        assert await limiter.acquire('acme', timeout=0.1)
        # Next token is about a minute away
        assert not await limiter.acquire('acme', timeout=0.1)

        usage = limiter.get_usage('acme')['acme']
        assert usage == {'granted': 2, 'refused': 1, 'requests_per_minute': 1}

    @pytest.mark.asyncio
    async def test_waits_when_token_arrives_in_time(self):
        limiter = RateLimiter()
        limiter.configure('fast', RateLimitConfig(requests_per_minute=600, burst_size=1))

        assert await limiter.acquire('fast', timeout=1)
        assert await limiter.acquire('fast', timeout=1)

        assert limiter.get_usage('fast')['fast']['granted'] == 2

    @pytest.mark.asyncio
    async def test_default_config_applies_to_every_key(self):
        limiter = RateLimiter(RateLimitConfig(requests_per_minute=1, burst_size=1))

        assert await limiter.acquire('a', timeout=0)
        assert await limiter.acquire('b', timeout=0)
        assert not await limiter.acquire('a', timeout=0)

        assert sorted(limiter.get_usage()) == ['a', 'b']

    @pytest.mark.asyncio
    async def test_clearing_a_limit(self):
        limiter = RateLimiter()
        limiter.configure('acme', RateLimitConfig(requests_per_minute=1, burst_size=1))
        assert await limiter.acquire('acme', timeout=0)
        assert not await limiter.acquire('acme', timeout=0)

        limiter.configure('acme', None)

        assert await limiter.acquire('acme', timeout=0)
