"""
Bearer identity for dealchat.

Verifies HS256 JWTs issued by the surrounding application and exposes the
caller's identity to FastAPI routes. Issuing tokens (login, sessions) lives
outside this service; create_token() exists for tooling and tests.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from errors import UnauthorizedError

logger = logging.getLogger(__name__)

# JWT config
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 8

# Optional Bearer token extractor (doesn't auto-raise on missing)
_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    """The verified caller."""

    user_id: str
    email: str = ""


def create_token(user_id: str, email: str = "", expires_in_s: Optional[float] = None) -> str:
    """Create a signed bearer token for a user."""
    from config import runtime_config

    now = time.time()
    payload = {
        "sub": str(user_id),
        "email": email,
        "iat": int(now),
        "exp": int(now + (expires_in_s if expires_in_s is not None else JWT_EXPIRY_HOURS * 3600)),
    }
    return jwt.encode(payload, runtime_config.jwt_secret, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Identity]:
    """
    Verify a JWT token. Returns the Identity or None.

    Payload contains: sub (user_id), email.
    """
    from config import runtime_config

    try:
        payload = jwt.decode(token, runtime_config.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.info("[Auth] Expired bearer token")
        return None
    except jwt.InvalidTokenError:
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None
    return Identity(user_id=str(user_id), email=payload.get("email", ""))


# =============================================================================
# FastAPI Dependencies
# =============================================================================


async def optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Optional[Identity]:
    """Identity of the caller, or None when absent or invalid."""
    if credentials and credentials.credentials:
        return verify_token(credentials.credentials)
    return None


async def verify_user(identity: Optional[Identity] = Depends(optional_identity)) -> Identity:
    """
    Auth dependency for any signed-in user.

    Raises:
        UnauthorizedError if no valid bearer token is present
    """
    if identity is None:
        raise UnauthorizedError("Authentication required")
    return identity
