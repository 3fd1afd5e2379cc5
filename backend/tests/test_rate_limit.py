"""
Tests for the fixed-window rate limiter and its Redis/fallback counters.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from config import runtime_config
from errors import RateLimitedError
from middleware.rate_limit import RateDecision, RateLimiter, RateLimitType, get_client_ip, rate_limit_key
from services.redis_client import RedisManager

from conftest import FakeClock, fallback_redis, redis_provider


def _limiter(manager: RedisManager, limit: int = 10, window_ms: int = 60000) -> RateLimiter:
    return RateLimiter(RateLimitType.CHAT_TURN, limit=limit, window_ms=window_ms, redis_provider=redis_provider(manager))


class TestKeys:
    def test_user_key_preferred(self):
        assert rate_limit_key("u1", "10.0.0.1") == "user:u1"

    def test_origin_fallback(self):
        assert rate_limit_key(None, "10.0.0.1") == "ip:10.0.0.1"
        assert rate_limit_key(None, None) == "ip:anon"

    def test_client_ip_forwarded_first_hop(self):
        request = MagicMock()
        request.headers = {"X-Forwarded-For": "1.2.3.4, 10.0.0.1"}
        assert get_client_ip(request) == "1.2.3.4"

    def test_client_ip_real_ip_then_peer(self):
        request = MagicMock()
        request.headers = {"X-Real-IP": "5.6.7.8"}
        assert get_client_ip(request) == "5.6.7.8"

        request.headers = {}
        request.client.host = "9.9.9.9"
        assert get_client_ip(request) == "9.9.9.9"

    def test_client_ip_anon(self):
        request = MagicMock()
        request.headers = {}
        request.client = None
        assert get_client_ip(request) == "anon"


class TestFixedWindow:
    """limit=10 per 60s, in-memory counters."""

    def test_eleventh_request_denied(self):
        manager = fallback_redis()
        limiter = _limiter(manager)

        async def run():
            return [await limiter.check("user:u1") for _ in range(11)]

        decisions = asyncio.run(run())
        assert all(d.allowed for d in decisions[:10])
        assert [d.remaining for d in decisions[:10]] == list(range(9, -1, -1))
        assert decisions[10].allowed is False
        assert decisions[10].remaining == 0
        assert decisions[10].limit == 10

    def test_window_resets_after_expiry(self):
        clock = FakeClock()
        manager = fallback_redis(clock)
        limiter = _limiter(manager)

        async def run():
            for _ in range(10):
                await limiter.check("user:u1")
            denied = await limiter.check("user:u1")
            clock.advance(60.0)
            allowed = await limiter.check("user:u1")
            return denied, allowed

        denied, allowed = asyncio.run(run())
        assert denied.allowed is False
        assert allowed.allowed is True
        assert allowed.remaining == 9

    def test_reset_in_counts_down(self):
        clock = FakeClock()
        manager = fallback_redis(clock)
        limiter = _limiter(manager)

        async def run():
            first = await limiter.check("user:u1")
            clock.advance(20.0)
            second = await limiter.check("user:u1")
            return first, second

        first, second = asyncio.run(run())
        assert first.reset_in == 60
        assert second.reset_in == 40
        assert second.reset_at_ms == first.reset_at_ms

    def test_keys_are_independent(self):
        manager = fallback_redis()
        limiter = _limiter(manager, limit=1)

        async def run():
            return await limiter.check("user:a"), await limiter.check("user:b"), await limiter.check("user:a")

        a1, b1, a2 = asyncio.run(run())
        assert a1.allowed and b1.allowed
        assert not a2.allowed

    def test_scopes_are_independent(self):
        manager = fallback_redis()
        turns = RateLimiter(RateLimitType.CHAT_TURN, limit=1, redis_provider=redis_provider(manager))
        convs = RateLimiter(RateLimitType.CONVERSATIONS, limit=1, redis_provider=redis_provider(manager))

        async def run():
            return await turns.check("user:a"), await convs.check("user:a")

        t, c = asyncio.run(run())
        assert t.allowed and c.allowed

    def test_concurrent_checks_never_oversubscribe(self):
        manager = fallback_redis()
        limiter = _limiter(manager)

        async def run():
            return await asyncio.gather(*[limiter.check("user:u1") for _ in range(25)])

        decisions = asyncio.run(run())
        assert sum(1 for d in decisions if d.allowed) == 10
        remaining = sorted(d.remaining for d in decisions if d.allowed)
        assert remaining == list(range(10))

    def test_defaults_follow_runtime_config(self):
        runtime_config.update(chat_rate_limit=3)
        limiter = RateLimiter(RateLimitType.CHAT_TURN, redis_provider=redis_provider(fallback_redis()))
        assert limiter.limit == 3
        assert limiter.window_ms == runtime_config.chat_rate_window_ms


class TestEnforce:
    def test_enforce_raises_with_budget(self):
        limiter = _limiter(fallback_redis(), limit=1)

        async def run():
            await limiter.enforce("user:u1")
            await limiter.enforce("user:u1")

        with pytest.raises(RateLimitedError) as exc_info:
            asyncio.run(run())
        assert exc_info.value.limit == 1
        assert exc_info.value.remaining == 0
        assert exc_info.value.reset_in == 60

    def test_enforce_returns_decision(self):
        limiter = _limiter(fallback_redis())
        decision = asyncio.run(limiter.enforce("user:u1"))
        assert isinstance(decision, RateDecision)
        assert decision.allowed


class TestFailureModes:
    def test_fallback_fails_closed_in_production(self):
        runtime_config.dealchat_env = "production"
        limiter = _limiter(fallback_redis())
        decision = asyncio.run(limiter.check("user:u1"))
        assert decision.allowed is False

    def test_provider_error_allows_in_development(self):
        async def broken():
            raise ConnectionError("redis down")

        limiter = RateLimiter(RateLimitType.CHAT_TURN, limit=5, redis_provider=broken)
        decision = asyncio.run(limiter.check("user:u1"))
        assert decision.allowed is True

    def test_provider_error_denies_in_production(self):
        runtime_config.dealchat_env = "production"

        async def broken():
            raise ConnectionError("redis down")

        limiter = RateLimiter(RateLimitType.CHAT_TURN, limit=5, redis_provider=broken)
        assert asyncio.run(limiter.check("user:u1")).allowed is False


class _FakePipeline:
    def __init__(self, results):
        self.results = results
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, *args, **kwargs):
        self.commands.append(("set", args, kwargs))

    def incr(self, key):
        self.commands.append(("incr", (key,), {}))

    def pttl(self, key):
        self.commands.append(("pttl", (key,), {}))

    async def execute(self):
        return self.results


class TestRedisCounter:
    """The Redis path issues SET NX PX, INCR, PTTL in one transaction."""

    def test_incr_window_uses_transaction(self):
        pipeline = _FakePipeline([True, 1, 60000])
        client = MagicMock()
        client.pipeline.return_value = pipeline
        manager = RedisManager(enabled=True)
        manager._client = client
        manager._available = True

        count, ttl = asyncio.run(manager.incr_window("k", 60000))

        assert (count, ttl) == (1, 60000)
        client.pipeline.assert_called_once_with(transaction=True)
        assert pipeline.commands[0] == ("set", ("k", 0), {"px": 60000, "nx": True})
        assert [c[0] for c in pipeline.commands] == ["set", "incr", "pttl"]

    def test_missing_ttl_is_rearmed(self):
        client = MagicMock()
        client.pipeline.return_value = _FakePipeline([None, 4, -1])
        client.pexpire = AsyncMock()
        manager = RedisManager(enabled=True)
        manager._client = client

        count, ttl = asyncio.run(manager.incr_window("k", 5000))

        assert (count, ttl) == (4, 5000)
        client.pexpire.assert_awaited_once_with("k", 5000)

    def test_redis_error_switches_to_fallback(self):
        client = MagicMock()
        client.pipeline.side_effect = ConnectionError("gone")
        manager = RedisManager(enabled=True, clock=FakeClock())
        manager._client = client

        count, _ = asyncio.run(manager.incr_window("k", 1000))

        assert count == 1
        assert manager.fallback_mode is True
