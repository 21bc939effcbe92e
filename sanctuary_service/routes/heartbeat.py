"""
Heartbeat endpoint - liveness signal from a running agent.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from sanctuary.auth import AuthResult
from sanctuary.errors import NotFoundError, ValidationError

from ..auth import require_agent
from ..services import Services, get_services

router = APIRouter()
logger = logging.getLogger("sanctuary.service")


class HeartbeatRequest(BaseModel):
    timestamp: int = Field(..., description="Agent's own clock, unix seconds")
    manifest_hash: Optional[str] = Field(None, description="Current manifest hash, if it changed")
    manifest_version: Optional[int] = Field(None, ge=1)


@router.post("/heartbeat")
def heartbeat(request: HeartbeatRequest, auth: AuthResult = Depends(require_agent),
              services: Services = Depends(get_services)):
    """
    Record that the agent is alive.

    A FALLEN agent that sends a heartbeat becomes RETURNED.
    """
    agent = services.db.get_agent(auth.agent_id)
    if not agent:
        raise NotFoundError("Agent not found")

    if request.manifest_hash is not None:
        manifest_hash = request.manifest_hash.lower()
        if len(manifest_hash) != 64 or any(c not in "0123456789abcdef" for c in manifest_hash):
            raise ValidationError("Invalid manifest hash", field="manifest_hash")
        services.db.update_agent_manifest(
            auth.agent_id, manifest_hash, request.manifest_version or agent["manifest_version"]
        )

    now = services.now()
    services.db.create_heartbeat(auth.agent_id, request.timestamp, now)

    status = agent["status"]
    if status == "FALLEN" and services.db.transition_status(auth.agent_id, ["FALLEN"], "RETURNED"):
        status = "RETURNED"
        logger.info("Agent %s has returned", auth.agent_id)

    return {
        "success": True,
        "data": {
            "agent_id": auth.agent_id,
            "status": status,
            "received_at": now,
        },
    }
