"""
Runtime Configuration for dealchat.

Provides a singleton RuntimeConfig class that holds every tunable of the chat
service. Values default from environment variables and can be adjusted at
runtime without a restart.

Usage:
    from config import runtime_config
    limit = runtime_config.chat_rate_limit
    runtime_config.update(chat_rate_limit=20, temperature=0.2)
"""

import os
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Any, List
from threading import Lock
from urllib.parse import quote_plus

logger = logging.getLogger(__name__)


def _env_bool(key: str, default: str) -> bool:
    return os.environ.get(key, default).lower() == "true"


def _build_database_url_default() -> str:
    """
    Build a PostgreSQL URL from env vars when DATABASE_URL is not explicitly set.

    Password is URL-encoded to avoid auth breakage with special characters.
    """
    explicit = os.environ.get("DATABASE_URL", "").strip()
    if explicit:
        return explicit

    user = os.environ.get("POSTGRES_USER", "dealchat").strip() or "dealchat"
    password = os.environ.get("POSTGRES_PASSWORD", "dealchat-local-dev")
    host = os.environ.get("POSTGRES_HOST", "localhost").strip() or "localhost"
    port = os.environ.get("POSTGRES_PORT", "5432").strip() or "5432"
    db = os.environ.get("POSTGRES_DB", "dealchat").strip() or "dealchat"

    safe_password = quote_plus(password)
    return f"postgresql://{user}:{safe_password}@{host}:{port}/{db}"


@dataclass
class RuntimeConfig:
    """
    Singleton configuration for runtime-adjustable parameters.

    All values have defaults from environment variables, but can be
    changed at runtime via the update() method.
    """

    # Environment mode: development, staging, production
    dealchat_env: str = field(default_factory=lambda: os.environ.get("DEALCHAT_ENV", "development"))

    # Model endpoint (any OpenAI-compatible server)
    llm_base_url: str = field(
        default_factory=lambda: os.environ.get("LLM_BASE_URL", "http://localhost:8081/v1").rstrip("/")
    )
    llm_api_key: str = field(default_factory=lambda: os.environ.get("LLM_API_KEY", "not-needed"))
    model_chat: str = field(default_factory=lambda: os.environ.get("LLM_CHAT_MODEL", "default"))
    temperature: float = field(default_factory=lambda: float(os.environ.get("LLM_TEMPERATURE", "0.3")))
    max_output_tokens: int = field(default_factory=lambda: int(os.environ.get("LLM_MAX_OUTPUT_TOKENS", "2048")))
    llm_timeout_s: float = field(default_factory=lambda: float(os.environ.get("LLM_TIMEOUT_S", "120")))

    # Redis (rate-limit counters)
    redis_url: str = field(default_factory=lambda: os.environ.get("REDIS_URL", "redis://localhost:6379"))
    redis_enabled: bool = field(default_factory=lambda: _env_bool("REDIS_ENABLED", "true"))

    # PostgreSQL (conversations, deals)
    database_url: str = field(default_factory=_build_database_url_default)
    database_enabled: bool = field(default_factory=lambda: _env_bool("DATABASE_ENABLED", "true"))
    database_pool_size: int = field(default_factory=lambda: int(os.environ.get("DATABASE_POOL_SIZE", "10")))

    # Bearer token verification
    jwt_secret: str = field(default_factory=lambda: os.environ.get("JWT_SECRET", "dealchat-dev-secret"))

    # Rate limiting: requests per window, per identity (or per origin)
    chat_rate_limit: int = field(default_factory=lambda: int(os.environ.get("CHAT_RATE_LIMIT", "10")))
    chat_rate_window_ms: int = field(default_factory=lambda: int(os.environ.get("CHAT_RATE_WINDOW_MS", "60000")))

    # Conversation rules
    max_message_length: int = field(default_factory=lambda: int(os.environ.get("MAX_MESSAGE_LENGTH", "4000")))
    title_length: int = field(default_factory=lambda: int(os.environ.get("TITLE_LENGTH", "30")))
    placeholder_title: str = field(default_factory=lambda: os.environ.get("PLACEHOLDER_TITLE", "New Chat"))

    # Tools
    tool_result_max: int = field(default_factory=lambda: int(os.environ.get("TOOL_RESULT_MAX", "50")))
    require_proposal_token: bool = field(default_factory=lambda: _env_bool("REQUIRE_PROPOSAL_TOKEN", "false"))
    proposal_token_ttl_s: int = field(default_factory=lambda: int(os.environ.get("PROPOSAL_TOKEN_TTL_S", "900")))

    # HTTP
    cors_origins: str = field(default_factory=lambda: os.environ.get("CORS_ORIGINS", "http://localhost:3000"))

    # Internal state
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)
    _update_count: int = field(default=0, repr=False)

    _VALIDATION_RANGES: Dict[str, tuple] = field(default_factory=lambda: {
        "temperature": (0.0, 2.0),
        "max_output_tokens": (64, 32768),
        "llm_timeout_s": (1.0, 600.0),
        "database_pool_size": (1, 200),
        "chat_rate_limit": (1, 10000),
        "chat_rate_window_ms": (1000, 3_600_000),
        "max_message_length": (1, 100_000),
        "title_length": (1, 255),
        "tool_result_max": (1, 500),
        "proposal_token_ttl_s": (10, 86400),
    }, repr=False, compare=False)

    @property
    def is_production(self) -> bool:
        return self.dealchat_env.lower() == "production"

    def get_cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def get_llm_params(self) -> Dict[str, Any]:
        """Get LLM parameters for OpenAI API calls."""
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
        }

    def update(self, **kwargs) -> Dict[str, Any]:
        """
        Update configuration values at runtime.

        Args:
            **kwargs: Key-value pairs to update (e.g., chat_rate_limit=20)

        Returns:
            Dict with 'updated' (changed keys) and 'ignored' (unknown or rejected keys)
        """
        updated = []
        ignored = []

        with self._lock:
            for key, value in kwargs.items():
                if key.startswith("_") or not hasattr(self, key):
                    ignored.append(key)
                    logger.warning(f"Config ignored unknown key: {key}")
                    continue

                if key == "llm_base_url" and isinstance(value, str):
                    cleaned = value.strip()
                    if not cleaned.startswith(("http://", "https://")):
                        ignored.append(key)
                        logger.warning(f"Config rejected invalid URL: {key}={value!r}")
                        continue
                    value = cleaned.rstrip("/")

                # Model names: alphanumeric, slashes, colons, dots, dashes only
                if key == "model_chat" and isinstance(value, str):
                    if not re.match(r"^[a-zA-Z0-9._:/-]+$", value) or len(value) > 100:
                        ignored.append(key)
                        logger.warning(f"Config rejected invalid model name: {key}={value!r}")
                        continue

                if key in self._VALIDATION_RANGES:
                    lo, hi = self._VALIDATION_RANGES[key]
                    if not (lo <= value <= hi):
                        ignored.append(key)
                        logger.warning(f"Config rejected {key}={value} (must be {lo}-{hi})")
                        continue

                old_value = getattr(self, key)
                setattr(self, key, value)
                updated.append(key)
                if key in {"jwt_secret", "llm_api_key"}:
                    logger.info(f"Config updated: {key}")
                else:
                    logger.info(f"Config updated: {key} = {value} (was {old_value})")

            self._update_count += 1

        return {"updated": updated, "ignored": ignored, "update_count": self._update_count}

    def to_dict(self) -> Dict[str, Any]:
        """Export current config as dict (excludes internal fields and secrets)."""
        from dataclasses import fields as dataclass_fields

        result = {}
        for field_info in dataclass_fields(self):
            if field_info.name.startswith("_") or field_info.name in {"jwt_secret", "llm_api_key"}:
                continue
            result[field_info.name] = getattr(self, field_info.name)
        return result

    def reset_to_defaults(self) -> Dict[str, Any]:
        """Reset all values to environment defaults."""
        defaults = RuntimeConfig()
        changes = {}

        with self._lock:
            for field_name in defaults.__dataclass_fields__:
                if field_name.startswith("_"):
                    continue
                old_value = getattr(self, field_name)
                new_value = getattr(defaults, field_name)
                if old_value != new_value:
                    setattr(self, field_name, new_value)
                    changes[field_name] = {"old": old_value, "new": new_value}

            self._update_count += 1

        return {"reset": True, "changes": changes, "update_count": self._update_count}


# Singleton instance
runtime_config = RuntimeConfig()


def get_config() -> RuntimeConfig:
    """Get the singleton config instance."""
    return runtime_config
