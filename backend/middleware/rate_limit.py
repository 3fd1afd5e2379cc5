"""
Rate Limiting - Redis-backed fixed-window request throttling.

Provides rate limiting for:
- Chat turns and tool confirmations (per user, else per origin)
- Conversation management endpoints (per user, else per origin)

Uses one atomic Redis MULTI (SET NX PX, INCR, PTTL) per check, so concurrent
requests can never both observe the last free slot. Falls back to an
in-process counter table when Redis is unavailable, except in production
where the limiter fails closed.

Usage:
    limiter = RateLimiter(RateLimitType.CHAT_TURN)
    decision = await limiter.enforce(rate_limit_key(user_id, client_ip))
"""

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from fastapi import Request

from errors import RateLimitedError
from services.redis_client import RedisManager, get_redis

logger = logging.getLogger(__name__)


class RateLimitType(Enum):
    """Rate limit scopes with their Redis key prefixes."""
    CHAT_TURN = "dealchat:rl:turn"
    CONVERSATIONS = "dealchat:rl:conv"


@dataclass(frozen=True)
class RateDecision:
    """Outcome of one rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    reset_in_ms: int

    @property
    def reset_in(self) -> int:
        """Whole seconds until the window resets (rounded up)."""
        return int(math.ceil(self.reset_in_ms / 1000.0))


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check X-Forwarded-For header (set by nginx/load balancer)
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # Take first IP in chain (original client)
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "anon"


def rate_limit_key(user_id: Optional[str], origin: Optional[str]) -> str:
    """Key by identity when known, else by network origin."""
    if user_id:
        return f"user:{user_id}"
    return f"ip:{origin or 'anon'}"


class RateLimiter:
    """
    Fixed-window limiter for one scope.

    Limit and window default to the live runtime config so that
    `runtime_config.update(chat_rate_limit=...)` takes effect immediately.
    """

    def __init__(
        self,
        limit_type: RateLimitType,
        limit: Optional[int] = None,
        window_ms: Optional[int] = None,
        redis_provider: Callable[[], Awaitable[RedisManager]] = get_redis,
    ):
        self.limit_type = limit_type
        self._limit = limit
        self._window_ms = window_ms
        self._redis_provider = redis_provider

    @property
    def limit(self) -> int:
        from config import runtime_config
        return self._limit if self._limit is not None else runtime_config.chat_rate_limit

    @property
    def window_ms(self) -> int:
        from config import runtime_config
        return self._window_ms if self._window_ms is not None else runtime_config.chat_rate_window_ms

    async def check(self, identifier: str) -> RateDecision:
        """
        Count one request against the identifier's window.

        Returns:
            RateDecision with allowed, remaining and reset timing
        """
        from config import runtime_config

        limit = self.limit
        window_ms = self.window_ms
        fail_closed = runtime_config.is_production
        key = f"{self.limit_type.value}:{identifier}"

        try:
            redis = await self._redis_provider()

            if redis.fallback_mode and fail_closed:
                logger.warning("Rate limiting fail-closed (Redis unavailable in production)")
                return self._decision(False, limit, 0, window_ms, redis.clock())

            count, ttl_ms = await redis.incr_window(key, window_ms)
            allowed = count <= limit

            if not allowed:
                logger.warning(
                    f"Rate limit exceeded: {self.limit_type.name} for {identifier} "
                    f"({count}/{limit} in {window_ms}ms)"
                )

            return self._decision(allowed, limit, max(0, limit - count), ttl_ms, redis.clock())

        except Exception as e:
            if fail_closed:
                logger.error(f"Rate limit check failed (fail-closed): {e}")
                return self._decision(False, limit, 0, window_ms)
            logger.warning(f"Rate limit check failed: {e}, allowing request")
            return self._decision(True, limit, limit, 0)

    async def enforce(self, identifier: str) -> RateDecision:
        """Like check(), but raise RateLimitedError when denied."""
        decision = await self.check(identifier)
        if not decision.allowed:
            raise RateLimitedError(
                "Rate limit exceeded",
                limit=decision.limit,
                remaining=decision.remaining,
                reset_in=decision.reset_in,
            )
        return decision

    @staticmethod
    def _decision(allowed: bool, limit: int, remaining: int, ttl_ms: int, now: Optional[float] = None) -> RateDecision:
        now_ms = int((now if now is not None else time.time()) * 1000)
        return RateDecision(
            allowed=allowed,
            limit=limit,
            remaining=remaining,
            reset_at_ms=now_ms + ttl_ms,
            reset_in_ms=ttl_ms,
        )
