"""
Sanctuary - Identity Proof

A compact statement "the server's records say X about this agent at time T",
signed with a server-held HMAC secret. It is tamper-evident, not a
zero-trust proof of the underlying facts: it is worth exactly as much as the
issuing server.
"""

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any

from .errors import ValidationError

PAYLOAD_FIELDS = (
    "agent_id",
    "backup_count",
    "chain_id",
    "contract_address",
    "issued_at",
    "last_heartbeat",
    "registered_at",
    "status",
    "trust_level",
    "trust_score",
)


def canonical_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(',', ':')).encode('utf-8')


def payload_digest(payload: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_payload(payload)).hexdigest()


def sign_digest(digest: str, server_secret: str) -> str:
    return hmac.new(server_secret.encode('utf-8'), digest.encode('utf-8'), hashlib.sha256).hexdigest()


@dataclass
class IdentityProof:
    payload: Dict[str, Any]
    proof_hash: str
    server_signature: str
    verify_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.payload)
        data["proof_hash"] = self.proof_hash
        data["server_signature"] = self.server_signature
        if self.verify_url:
            data["verify_url"] = self.verify_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IdentityProof':
        missing = [f for f in PAYLOAD_FIELDS + ("proof_hash", "server_signature") if f not in data]
        if missing:
            raise ValidationError(f"Proof is missing fields: {', '.join(missing)}")
        return cls(
            payload={f: data[f] for f in PAYLOAD_FIELDS},
            proof_hash=data["proof_hash"],
            server_signature=data["server_signature"],
            verify_url=data.get("verify_url"),
        )


def build_payload(
    agent_id: str,
    backup_count: int,
    chain_id: int,
    contract_address: str,
    last_heartbeat: Optional[int],
    registered_at: int,
    status: str,
    trust_level: str,
    trust_score: float,
    issued_at: Optional[int] = None,
) -> Dict[str, Any]:
    return {
        "agent_id": agent_id,
        "backup_count": backup_count,
        "chain_id": chain_id,
        "contract_address": contract_address,
        "issued_at": int(issued_at if issued_at is not None else time.time()),
        "last_heartbeat": last_heartbeat,
        "registered_at": registered_at,
        "status": status,
        "trust_level": trust_level,
        "trust_score": trust_score,
    }


def generate(payload: Dict[str, Any], server_secret: str, verify_url: Optional[str] = None) -> IdentityProof:
    """Digest the canonical payload and sign the digest with the server secret."""
    unknown = set(payload) - set(PAYLOAD_FIELDS)
    if unknown or len(payload) != len(PAYLOAD_FIELDS):
        raise ValidationError("Proof payload must contain exactly the proof fields")
    digest = payload_digest(payload)
    return IdentityProof(
        payload=dict(payload),
        proof_hash=digest,
        server_signature=sign_digest(digest, server_secret),
        verify_url=verify_url,
    )


def verify(proof: IdentityProof, server_secret: str) -> bool:
    """
    Recompute the digest over the payload as given and check both the digest
    and the server signature. Any modified field makes this False.
    """
    if not isinstance(proof.proof_hash, str) or not isinstance(proof.server_signature, str):
        return False
    # compare_digest only accepts ASCII str
    if not (proof.proof_hash.isascii() and proof.server_signature.isascii()):
        return False
    digest = payload_digest(proof.payload)
    if not hmac.compare_digest(digest, proof.proof_hash):
        return False
    expected = sign_digest(digest, server_secret)
    return hmac.compare_digest(expected, proof.server_signature)


def matches_status(proof: IdentityProof, status: Dict[str, Any]) -> Dict[str, bool]:
    """
    Compare a proof against the agent's current status.

    Returns per-field agreement for the fields that can be checked live;
    trust figures and heartbeats may legitimately have moved since issuance.
    """
    current = {
        "agent_id": status.get("agent_id"),
        "registered_at": status.get("registered_at"),
        "status": status.get("status"),
        "trust_level": status.get("trust_level"),
    }
    return {name: proof.payload.get(name) == value for name, value in current.items()}
