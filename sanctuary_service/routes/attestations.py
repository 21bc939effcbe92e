"""
Attestation endpoints - vouch for another agent, read attestations and notes.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from sanctuary.auth import AuthResult
from sanctuary.backup_chain import ACTIVE_STATUSES
from sanctuary.errors import AgentInactive, NotFoundError, ValidationError
from sanctuary.keys import is_valid_agent_id

from ..auth import require_agent
from ..services import Services, get_services

router = APIRouter()
logger = logging.getLogger("sanctuary.service")


class AttestationRequest(BaseModel):
    """Request to attest about another agent."""
    about: str = Field(..., description="Agent being vouched for")
    note: str = Field(..., description="Free-text statement; stored by content hash")


@router.post("/attestations", status_code=201)
def create_attestation(request: AttestationRequest, auth: AuthResult = Depends(require_agent),
                       services: Services = Depends(get_services)):
    """
    Record an attestation from the authenticated agent.

    The same (from, about) pair may attest once per cooldown period.
    """
    attester = services.db.get_agent(auth.agent_id)
    if attester and attester["status"] not in ACTIVE_STATUSES:
        raise AgentInactive(f"Agent status is {attester['status']}, cannot attest")
    if not is_valid_agent_id(request.about):
        raise ValidationError("Invalid agent ID", field="about")

    attestation = services.trust.record_attestation(auth.agent_id, request.about, request.note)
    score = services.trust.recompute(request.about)

    return {
        "success": True,
        "data": {
            "attestation": attestation.to_dict(),
            "about_trust": score.to_dict(),
        },
    }


@router.get("/attestations/{agent_id}")
def list_attestations(agent_id: str, services: Services = Depends(get_services)):
    """Ledger attestations about and by an agent, with cached notes."""
    if not is_valid_agent_id(agent_id):
        raise ValidationError("Invalid agent ID", field="agent_id")
    if not services.db.get_agent(agent_id):
        raise NotFoundError("Agent not found")

    def with_note(attestation):
        data = attestation.to_dict()
        note = services.db.get_attestation_note(attestation.note_hash)
        data["note"] = note["content"] if note else None
        return data

    received = services.ledger.read_attestations_about(agent_id)
    given = services.ledger.read_attestations_by(agent_id)
    return {
        "success": True,
        "data": {
            "agent_id": agent_id,
            "received": [with_note(a) for a in received],
            "given": [with_note(a) for a in given],
        },
    }


@router.get("/notes/{note_hash}")
def get_note(note_hash: str, services: Services = Depends(get_services)):
    note = services.db.get_attestation_note(note_hash.lower())
    if not note:
        raise NotFoundError("Note not found")
    return {"success": True, "data": note}
