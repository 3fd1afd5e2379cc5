"""
Proposal tokens - bind a confirmation to the proposal the server surfaced.

Each ToolProposal sent to a client carries a short-lived HS256 token naming
the user, the tool and a digest of the exact input. When
runtime_config.require_proposal_token is on, a confirmation is only honored
if it presents a valid token matching what it echoes back.
"""

import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional

import jwt

from services.model_gateway import ToolProposal

logger = logging.getLogger(__name__)

PROPOSAL_AUDIENCE = "dealchat:tool-proposal"
JWT_ALGORITHM = "HS256"


def input_digest(tool_input: Dict[str, Any]) -> str:
    canonical = json.dumps(tool_input, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ProposalSigner:
    def __init__(self, secret: Optional[str] = None, ttl_s: Optional[int] = None):
        self._secret = secret
        self._ttl_s = ttl_s

    @property
    def secret(self) -> str:
        from config import runtime_config
        return self._secret or runtime_config.jwt_secret

    @property
    def ttl_s(self) -> int:
        from config import runtime_config
        return self._ttl_s if self._ttl_s is not None else runtime_config.proposal_token_ttl_s

    def sign(self, user_id: str, proposal: ToolProposal) -> str:
        now = int(time.time())
        payload = {
            "sub": user_id,
            "aud": PROPOSAL_AUDIENCE,
            "tool": proposal.tool_name,
            "input_sha256": input_digest(proposal.input),
            "iat": now,
            "exp": now + self.ttl_s,
        }
        return jwt.encode(payload, self.secret, algorithm=JWT_ALGORITHM)

    def verify(self, token: Optional[str], user_id: str, tool_name: str, tool_input: Dict[str, Any]) -> bool:
        """True when token was issued to user_id for exactly this tool and input."""
        if not token:
            return False
        try:
            payload = jwt.decode(token, self.secret, algorithms=[JWT_ALGORITHM], audience=PROPOSAL_AUDIENCE)
        except jwt.InvalidTokenError as e:
            logger.info(f"[Proposal] Rejected token: {e}")
            return False
        return (
            payload.get("sub") == user_id
            and payload.get("tool") == tool_name
            and payload.get("input_sha256") == input_digest(tool_input)
        )
