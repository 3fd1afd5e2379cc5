"""
dealchat Services - Shared infrastructure services.

- redis_client: Redis connection manager with health checks and fallback
- database: asyncpg pool manager with schema bootstrap and fallback
- conversation_store / deal_store: persistence behind abstract stores
- llm_client / model_gateway: the language model and reply classification
- auth: bearer identity
"""

from .redis_client import RedisManager, get_redis

__all__ = ["RedisManager", "get_redis"]
