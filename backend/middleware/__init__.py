"""
dealchat Middleware - Request processing helpers.

- rate_limit: fixed-window rate limiting keyed by identity or origin
"""

from .rate_limit import RateDecision, RateLimiter, RateLimitType, get_client_ip, rate_limit_key

__all__ = ["RateDecision", "RateLimiter", "RateLimitType", "get_client_ip", "rate_limit_key"]
