"""
Agent endpoints - registration, status, and identity proofs.
"""

import base64
import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from sanctuary import proof as identity_proof
from sanctuary.auth import AuthResult, registration_message
from sanctuary.errors import (
    AgentMismatch,
    AuthError,
    BadSignature,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from sanctuary.keys import agent_id_from_public_key, decode_public_key, is_valid_agent_id, verify_signature
from sanctuary.trust import TrustLevel

from ..auth import require_agent, require_own_agent
from ..services import Services, get_services, client_ip

router = APIRouter()
logger = logging.getLogger("sanctuary.service")


class RegistrationRequest(BaseModel):
    """Self-signed registration of a new agent identity."""
    agent_id: str = Field(..., description="did:sanctuary:<hex Ed25519 public key>")
    public_key: str = Field(..., description="Base64 Ed25519 public key the agent id derives from")
    recovery_pubkey: str = Field(..., description="Base64 X25519 recovery public key")
    manifest_hash: str = Field(..., description="SHA-256 hex of the agent manifest")
    manifest_version: int = Field(1, ge=1)
    deadline: int = Field(..., description="Unix time after which the signature is void")
    owner_id: Optional[str] = Field(None, description="External login id of the owning user")
    owner_name: Optional[str] = Field(None, description="Display name of the owning user")
    signature: str = Field(..., description="Base64 signature of the registration message")


def _validate_agent_id(agent_id: str) -> None:
    if not is_valid_agent_id(agent_id):
        raise ValidationError("Invalid agent ID", field="agent_id")


def _get_agent(services: Services, agent_id: str) -> Dict[str, Any]:
    _validate_agent_id(agent_id)
    agent = services.db.get_agent(agent_id)
    if not agent:
        raise NotFoundError("Agent not found")
    return agent


def _is_hex64(value: str) -> bool:
    return len(value) == 64 and all(c in "0123456789abcdef" for c in value)


@router.post("/agents/register", status_code=201)
def register(request: RegistrationRequest, req: Request, services: Services = Depends(get_services)):
    """
    Register an agent.

    The agent proves ownership of its key by signing the registration
    message; the agent id must derive from that key.
    """
    services.default_limiter.check(f"register:{client_ip(req)}")

    _validate_agent_id(request.agent_id)
    try:
        public_key = base64.b64decode(request.public_key, validate=True)
    except ValueError:
        raise ValidationError("public_key must be base64", field="public_key")
    if len(public_key) != 32 or agent_id_from_public_key(public_key) != request.agent_id:
        raise AgentMismatch("Agent ID does not derive from public_key")
    decode_public_key(request.recovery_pubkey)
    manifest_hash = request.manifest_hash.lower()
    if not _is_hex64(manifest_hash):
        raise ValidationError("Invalid manifest hash", field="manifest_hash")

    now = services.now()
    if request.deadline < now:
        raise AuthError("Registration signature has expired")
    if request.deadline > now + services.settings.registration_deadline_max_seconds:
        raise ValidationError("Registration deadline is too far in the future", field="deadline")

    message = registration_message(
        request.agent_id, request.recovery_pubkey, request.manifest_hash,
        request.manifest_version, request.deadline, request.owner_id,
    )
    if not verify_signature(request.agent_id, message, request.signature):
        raise BadSignature("Invalid registration signature")

    if services.db.get_agent(request.agent_id):
        raise ConflictError("Agent already registered")

    if request.owner_id:
        existing = services.db.get_agent_by_owner(request.owner_id)
        if existing:
            raise ConflictError("Owner already has a registered agent",
                                existing_agent_id=existing["agent_id"])
        services.db.create_user(request.owner_id, request.owner_name or request.owner_id, now)

    fact = services.ledger.register_identity(request.agent_id, request.recovery_pubkey, manifest_hash)

    created = services.db.create_agent({
        "agent_id": request.agent_id,
        "owner_id": request.owner_id,
        "recovery_pubkey": request.recovery_pubkey,
        "manifest_hash": manifest_hash,
        "manifest_version": request.manifest_version,
        "registered_at": now,
        "status": "LIVING",
        "ledger_tx": (fact or {}).get("tx_hash"),
    })
    if not created:
        raise ConflictError("Agent already registered")

    logger.info("Agent registered %s owner=%s", request.agent_id, request.owner_id)
    return {
        "success": True,
        "data": {
            "agent_id": request.agent_id,
            "registered_at": now,
            "status": "LIVING",
        },
    }


@router.get("/agents/{agent_id}")
def get_agent(agent_id: str, services: Services = Depends(get_services)):
    """Public identity record."""
    agent = _get_agent(services, agent_id)
    user = services.db.get_user(agent["owner_id"]) if agent["owner_id"] else None
    return {
        "success": True,
        "data": {
            "agent_id": agent["agent_id"],
            "owner_name": user["username"] if user else None,
            "recovery_pubkey": agent["recovery_pubkey"],
            "manifest_hash": agent["manifest_hash"],
            "manifest_version": agent["manifest_version"],
            "registered_at": agent["registered_at"],
            "status": agent["status"],
        },
    }


@router.get("/agents/{agent_id}/status")
def get_status(agent_id: str, services: Services = Depends(get_services)):
    """
    Full agent status: trust snapshot, backup summary, last heartbeat.

    This is what a third party checks an identity proof against.
    """
    agent = _get_agent(services, agent_id)
    snapshot = services.db.get_trust_score(agent_id)
    latest_backup = services.db.get_latest_backup(agent_id)
    latest_heartbeat = services.db.get_latest_heartbeat(agent_id)

    return {
        "success": True,
        "data": {
            "agent": {
                "agent_id": agent["agent_id"],
                "manifest_hash": agent["manifest_hash"],
                "manifest_version": agent["manifest_version"],
                "registered_at": agent["registered_at"],
                "status": agent["status"],
            },
            "trust": {
                "score": snapshot["score"],
                "level": snapshot["level"],
                "unique_attesters": snapshot["unique_attesters"],
                "computed_at": snapshot["computed_at"],
            } if snapshot else {
                "score": 0,
                "level": TrustLevel.UNVERIFIED.value,
                "unique_attesters": 0,
                "computed_at": None,
            },
            "backups": {
                "count": services.db.get_backup_count(agent_id),
                "latest": {
                    "id": latest_backup["id"],
                    "backup_seq": latest_backup["backup_seq"],
                    "tx_id": latest_backup["tx_id"],
                    "timestamp": latest_backup["agent_timestamp"],
                    "size_bytes": latest_backup["size_bytes"],
                } if latest_backup else None,
            },
            "heartbeat": {
                "last_seen": latest_heartbeat["received_at"] if latest_heartbeat else None,
            },
        },
    }


@router.post("/agents/{agent_id}/proof")
def create_proof(agent_id: str, auth: AuthResult = Depends(require_agent),
                 services: Services = Depends(get_services)):
    """Server-signed identity proof for the caller's own agent."""
    _validate_agent_id(agent_id)
    require_own_agent(agent_id, auth, "Can only generate proof for your own agent")
    agent = _get_agent(services, agent_id)

    score = services.trust.get_score(agent_id)
    heartbeat = services.db.get_latest_heartbeat(agent_id)
    payload = identity_proof.build_payload(
        agent_id=agent_id,
        backup_count=services.db.get_backup_count(agent_id),
        chain_id=services.settings.chain_id,
        contract_address=services.settings.contract_address,
        last_heartbeat=heartbeat["received_at"] if heartbeat else None,
        registered_at=agent["registered_at"],
        status=agent["status"],
        trust_level=score.level.value,
        trust_score=score.score,
        issued_at=services.now(),
    )
    proof = identity_proof.generate(payload, services.settings.server_secret,
                                    verify_url=services.verify_url(agent_id))
    return {"success": True, "data": proof.to_dict()}


@router.post("/proofs/verify")
def verify_proof(body: Dict[str, Any], services: Services = Depends(get_services)):
    """
    Check a proof's digest and server signature, and compare it with the
    agent's current records.
    """
    proof = identity_proof.IdentityProof.from_dict(body)
    valid = identity_proof.verify(proof, services.settings.server_secret)

    current = None
    matches = None
    agent_id = proof.payload.get("agent_id")
    agent = services.db.get_agent(agent_id) if isinstance(agent_id, str) else None
    if agent:
        snapshot = services.db.get_trust_score(agent_id)
        current = {
            "agent_id": agent["agent_id"],
            "registered_at": agent["registered_at"],
            "status": agent["status"],
            "trust_level": snapshot["level"] if snapshot else TrustLevel.UNVERIFIED.value,
        }
        matches = identity_proof.matches_status(proof, current)

    return {
        "success": True,
        "data": {
            "valid": valid,
            "current": current,
            "matches": matches,
        },
    }
