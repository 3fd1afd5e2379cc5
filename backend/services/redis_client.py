"""
Redis-backed fixed-window counters for rate limiting.

RedisManager increments a counter and arms its expiry in one MULTI
transaction. When Redis is disabled, unreachable at startup, or fails
mid-request, it switches to an in-process counter table guarded by an
asyncio.Lock, which is exact for a single worker.

Usage:
    redis = await get_redis()
    count, ttl_ms = await redis.incr_window("dealchat:rl:turn:user:u1", 60000)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis_async

logger = logging.getLogger(__name__)

# Expired fallback entries are swept once the table grows past this
FALLBACK_SWEEP_AT = 10000


@dataclass
class RedisManager:
    """Redis connection with an in-memory fallback for counters."""

    url: str = "redis://localhost:6379/0"
    enabled: bool = True

    # Wall clock in seconds; tests substitute a controllable one
    clock: Callable[[], float] = field(default=time.time, repr=False)

    _client: Any = field(default=None, repr=False)
    _available: bool = field(default=False, repr=False)
    _fallback_mode: bool = field(default=False, repr=False)
    _initialized: bool = field(default=False, repr=False)
    _counters: Dict[str, Tuple[int, float]] = field(default_factory=dict, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _counter_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def available(self) -> bool:
        return self._available and not self._fallback_mode

    @property
    def fallback_mode(self) -> bool:
        return self._fallback_mode

    async def connect(self) -> bool:
        """Connect and PING. Returns False when running on the fallback table."""
        async with self._lock:
            if self._initialized:
                return self.available
            self._initialized = True

            if not self.enabled:
                logger.info("[Redis] Disabled by config, counting in memory")
                self._fallback_mode = True
                return False

            try:
                self._client = redis_async.from_url(
                    self.url,
                    decode_responses=True,
                    socket_connect_timeout=5.0,
                    socket_timeout=5.0,
                )
                await self._client.ping()
            except Exception as e:
                logger.warning(f"[Redis] Connection to {self.url} failed: {e}, counting in memory")
                self._fallback_mode = True
                return False

            self._available = True
            logger.info(f"[Redis] Connected: {self.url}")
            return True

    async def disconnect(self) -> None:
        async with self._lock:
            if self._client is not None:
                try:
                    await self._client.aclose()
                except Exception as e:
                    logger.warning(f"[Redis] Error closing client: {e}")
                self._client = None
                self._available = False

    async def health_check(self) -> Dict[str, Any]:
        if self._fallback_mode:
            return {"status": "fallback", "mode": "in-memory", "counters": len(self._counters)}
        if self._client is None:
            return {"status": "disconnected", "mode": "none"}

        try:
            start = time.perf_counter()
            await self._client.ping()
        except Exception as e:
            self._enter_fallback(e)
            return {"status": "error", "mode": "fallback", "error": str(e)}
        return {"status": "connected", "mode": "redis", "latency_ms": round((time.perf_counter() - start) * 1000, 2)}

    async def incr_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        """
        Count one hit against `key` and return (count, ttl_ms).

        The window opens on the first hit. SET NX PX, INCR and PTTL run in
        one transaction, so concurrent callers always see distinct counts.
        """
        if self._fallback_mode:
            return await self._fallback_incr(key, window_ms)

        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(key, 0, px=window_ms, nx=True)
                pipe.incr(key)
                pipe.pttl(key)
                _, count, ttl_ms = await pipe.execute()
            if ttl_ms is None or ttl_ms < 0:
                # Counter exists without an expiry; re-arm it
                await self._client.pexpire(key, window_ms)
                ttl_ms = window_ms
            return int(count), int(ttl_ms)
        except Exception as e:
            self._enter_fallback(e)
            return await self._fallback_incr(key, window_ms)

    async def _fallback_incr(self, key: str, window_ms: int) -> Tuple[int, int]:
        async with self._counter_lock:
            now = self.clock()
            count, expires_at = self._counters.get(key, (0, 0.0))
            if now >= expires_at:
                count, expires_at = 0, now + window_ms / 1000.0
                if len(self._counters) >= FALLBACK_SWEEP_AT:
                    self._counters = {k: v for k, v in self._counters.items() if now < v[1]}
            count += 1
            self._counters[key] = (count, expires_at)
            return count, max(0, int(round((expires_at - now) * 1000)))

    def _enter_fallback(self, error: Exception) -> None:
        if not self._fallback_mode:
            logger.warning(f"[Redis] {error}; switching to in-memory counters")
            self._fallback_mode = True
            self._available = False


_redis_manager: Optional[RedisManager] = None
_init_lock = asyncio.Lock()


async def get_redis() -> RedisManager:
    """The process-wide RedisManager, connected on first use."""
    global _redis_manager

    if _redis_manager is None:
        async with _init_lock:
            if _redis_manager is None:
                from config import runtime_config

                manager = RedisManager(url=runtime_config.redis_url, enabled=runtime_config.redis_enabled)
                await manager.connect()
                _redis_manager = manager

    return _redis_manager


async def close_redis() -> None:
    global _redis_manager
    if _redis_manager is not None:
        await _redis_manager.disconnect()
        _redis_manager = None
