"""
Challenge-Response endpoints.
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from ..services import Services, get_services, client_ip

router = APIRouter()


class ChallengeRequest(BaseModel):
    """Request for an authentication challenge."""
    agent_id: str = Field(..., description="Agent to create the challenge for")


class VerifyRequest(BaseModel):
    """A signed challenge."""
    agent_id: str = Field(..., description="Agent that signed the challenge")
    nonce: str = Field(..., description="The challenge nonce that was signed")
    signature: str = Field(..., description="Base64 Ed25519 signature of the nonce (UTF-8 encoded)")


@router.post("/auth/challenge")
def create_challenge(request: ChallengeRequest, req: Request, services: Services = Depends(get_services)):
    """
    Issue a single-use nonce for a registered agent.

    Sign the nonce string and present it within the expiry window, either
    to /auth/verify or as the X-Auth-* headers of an authenticated call.
    """
    services.challenge_limiter.check(f"challenge:{request.agent_id}")
    services.challenge_limiter.check(f"challenge-ip:{client_ip(req)}")

    challenge = services.issuer.issue(request.agent_id)
    return {"success": True, "data": challenge.to_dict()}


@router.post("/auth/verify")
def verify_challenge(request: VerifyRequest, services: Services = Depends(get_services)):
    """Verify a signed challenge. Consumes the nonce."""
    result = services.issuer.verify(request.agent_id, request.nonce, request.signature)
    return {
        "success": True,
        "data": {
            "verified": True,
            "agent_id": result.agent_id,
            "verified_at": result.verified_at,
        },
    }
