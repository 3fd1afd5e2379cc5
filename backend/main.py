"""
dealchat - conversational assistant over a private deal database
FastAPI backend: streaming chat turns, human-confirmed tool calls, saved conversations
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config import runtime_config
from errors import register_error_handlers
from logging_config import setup_logging
from middleware.rate_limit import RateLimiter, RateLimitType
from routers import chat
from routers.chat_orchestration import ConversationOrchestrator
from services.conversation_store import InMemoryConversationStore, PostgresConversationStore
from services.database import close_database, get_database
from services.deal_store import InMemoryDealStore, PostgresDealStore
from services.llm_client import LLMClient
from services.model_gateway import ModelGateway
from services.redis_client import close_redis, get_redis
from tools.executor import ToolExecutor
from tools.registry import register_all_tools

setup_logging()
logger = logging.getLogger(__name__)


@dataclass
class StartupHealth:
    """Tracks component health through startup."""
    phase: str = "initializing"
    redis: str = "pending"
    postgres: str = "pending"
    llm: str = "pending"
    startup_complete: bool = False


_startup_health = StartupHealth()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown events"""
    _startup_health.phase = "infrastructure"

    register_all_tools()

    redis = await get_redis()
    _startup_health.redis = "fallback" if redis.fallback_mode else "healthy"
    if redis.fallback_mode and runtime_config.is_production:
        logger.error("Redis unavailable in production: chat requests will be refused until it recovers")

    db = await get_database()
    if db.available:
        _startup_health.postgres = "healthy"
        conversation_store = PostgresConversationStore(db)
        deal_store = PostgresDealStore(db)
    else:
        _startup_health.postgres = "fallback"
        logger.warning("PostgreSQL unavailable, conversations and deals are held in memory")
        conversation_store = InMemoryConversationStore()
        deal_store = InMemoryDealStore()

    llm_client = LLMClient(
        runtime_config.llm_base_url,
        api_key=runtime_config.llm_api_key,
        timeout=runtime_config.llm_timeout_s,
    )
    _startup_health.llm = "healthy" if await llm_client.is_healthy() else "unreachable"
    if _startup_health.llm != "healthy":
        logger.warning(f"Model endpoint {runtime_config.llm_base_url} not reachable yet")

    orchestrator = ConversationOrchestrator(
        store=conversation_store,
        gateway=ModelGateway(llm_client),
        executor=ToolExecutor(deal_store=deal_store),
    )
    app.state.orchestrator = orchestrator
    app.state.conversation_limiter = RateLimiter(RateLimitType.CONVERSATIONS)
    app.state.llm_client = llm_client

    _startup_health.startup_complete = True
    _startup_health.phase = "ready" if _startup_health.llm == "healthy" else "degraded"
    logger.info(f"dealchat ready ({runtime_config.dealchat_env}, model={runtime_config.model_chat})")

    yield

    # Shutdown
    await orchestrator.drain()

    try:
        await close_redis()
        logger.info("Redis connection closed")
    except Exception as e:
        logger.debug(f"Redis close error: {e}")

    try:
        await close_database()
        logger.info("PostgreSQL pool closed")
    except Exception as e:
        logger.debug(f"PostgreSQL close error: {e}")

    logger.info("dealchat signing off")


app = FastAPI(
    title="dealchat",
    description="Chat with your deal database",
    version="1.0.0",
    lifespan=lifespan,
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


MAX_BODY_SIZE_API = 1 * 1024 * 1024  # 1MB


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests with bodies exceeding the size limit."""

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_BODY_SIZE_API:
            return JSONResponse(
                status_code=413,
                content={
                    "success": False,
                    "error": {
                        "code": "INVALID_INPUT",
                        "message": f"Request body too large (limit {MAX_BODY_SIZE_API} bytes)",
                        "recoverable": True,
                    },
                },
            )
        return await call_next(request)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestSizeLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=runtime_config.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-Conversation-Id",
        "X-Conversation-New",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
)

register_error_handlers(app)

app.include_router(chat.router, tags=["chat"])


@app.get("/health")
async def health():
    """Health check - pings critical dependencies."""
    checks = {}

    try:
        redis = await get_redis()
        redis_health = await redis.health_check()
        # In production the in-memory counters refuse every request
        usable = ("connected",) if runtime_config.is_production else ("connected", "fallback")
        checks["redis"] = "ok" if redis_health.get("status") in usable else "down"
    except Exception:
        checks["redis"] = "down"

    try:
        db = await get_database()
        db_health = await db.health_check()
        checks["postgres"] = "ok" if db_health.get("status") in ("connected", "fallback") else "down"
    except Exception:
        checks["postgres"] = "down"

    llm_client = getattr(app.state, "llm_client", None)
    if llm_client is None:
        checks["llm"] = "down"
    else:
        checks["llm"] = "ok" if await llm_client.is_healthy() else "down"

    all_ok = all(v == "ok" for v in checks.values())
    return {
        "status": "healthy" if all_ok else "degraded",
        "service": "dealchat",
        "checks": checks,
        "startup_phase": _startup_health.phase,
        "startup_complete": _startup_health.startup_complete,
    }



if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
