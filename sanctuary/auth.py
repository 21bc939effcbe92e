"""
Sanctuary - Challenge-Response Authentication

Each nonce moves ISSUED -> CONSUMED or ISSUED -> EXPIRED and never back.
The success decision and the consumption happen inside one record-store
write transaction, so two concurrent verifications of the same nonce
cannot both succeed.
"""

import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Any, Optional

from .errors import (
    AgentMismatch,
    BadSignature,
    ChallengeAlreadyUsed,
    ChallengeExpired,
    ChallengeNotFound,
    NotFoundError,
    ValidationError,
)
from .keys import is_valid_agent_id, verify_signature

logger = logging.getLogger("sanctuary.auth")
security_logger = logging.getLogger("sanctuary.security")

DEFAULT_CHALLENGE_TTL = 300

AGENT_ID_HEADER = "X-Agent-Id"
NONCE_HEADER = "X-Auth-Nonce"
SIGNATURE_HEADER = "X-Auth-Signature"


@dataclass
class Challenge:
    nonce: str
    agent_id: str
    expires_at: int
    used: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nonce": self.nonce,
            "agent_id": self.agent_id,
            "expires_at": self.expires_at,
        }


@dataclass
class AuthResult:
    agent_id: str
    nonce: str
    verified_at: int


class ChallengeIssuer:
    """Issues and consumes single-use nonces bound to one agent."""

    def __init__(self, store, ttl_seconds: int = DEFAULT_CHALLENGE_TTL,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def issue(self, agent_id: str) -> Challenge:
        """Create a fresh nonce for a registered agent."""
        if not is_valid_agent_id(agent_id):
            raise ValidationError("Invalid agent id")
        if not self.store.get_agent(agent_id):
            raise NotFoundError(f"Agent {agent_id} is not registered")

        challenge = Challenge(
            nonce=secrets.token_hex(32),
            agent_id=agent_id,
            expires_at=int(self.clock()) + self.ttl_seconds,
        )
        self.store.create_challenge(challenge.nonce, agent_id, challenge.expires_at)
        logger.debug("Issued challenge for %s", agent_id)
        return challenge

    def verify(self, agent_id: str, nonce: str, signature: str) -> AuthResult:
        """
        Verify a signature over the nonce and consume it.

        Raises ChallengeNotFound, ChallengeExpired, ChallengeAlreadyUsed,
        AgentMismatch, or BadSignature.
        """
        now = int(self.clock())

        def decide(record: Dict[str, Any]) -> None:
            if record["agent_id"] != agent_id:
                raise AgentMismatch("Challenge was not issued for this agent")
            if record["used"]:
                raise ChallengeAlreadyUsed("Challenge has already been used")
            if now > record["expires_at"]:
                raise ChallengeExpired("Challenge has expired")
            if not verify_signature(agent_id, nonce.encode('utf-8'), signature):
                raise BadSignature("Invalid signature")

        try:
            if not isinstance(nonce, str) or not nonce:
                raise ChallengeNotFound("Challenge not found")
            found = self.store.consume_challenge(nonce, decide)
            if not found:
                raise ChallengeNotFound("Challenge not found")
        except (ChallengeNotFound, ChallengeExpired, ChallengeAlreadyUsed,
                AgentMismatch, BadSignature) as e:
            security_logger.warning("Auth rejected for %s: %s", agent_id, e.code)
            raise

        return AuthResult(agent_id=agent_id, nonce=nonce, verified_at=now)

    def purge_expired(self) -> int:
        return self.store.cleanup_expired_challenges(int(self.clock()))


def registration_message(agent_id: str, recovery_pubkey: str, manifest_hash: str,
                         manifest_version: int, deadline: int, owner_id: Optional[str] = None) -> bytes:
    """Canonical bytes an agent signs to register itself."""
    return json.dumps({
        "action": "register",
        "agent_id": agent_id,
        "deadline": deadline,
        "manifest_hash": manifest_hash,
        "manifest_version": manifest_version,
        "owner_id": owner_id,
        "recovery_pubkey": recovery_pubkey,
    }, sort_keys=True, separators=(',', ':')).encode('utf-8')


def auth_headers(agent_id: str, nonce: str, signature: str) -> Dict[str, str]:
    """Headers carrying one consumed challenge on an authenticated call."""
    return {
        AGENT_ID_HEADER: agent_id,
        NONCE_HEADER: nonce,
        SIGNATURE_HEADER: signature,
    }
