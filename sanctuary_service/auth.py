"""
Agent authentication dependency.

Authenticated calls carry X-Agent-Id, X-Auth-Nonce and X-Auth-Signature.
Each call consumes the challenge it presents.
"""

from typing import Optional

from fastapi import Depends, Header

from sanctuary.auth import AuthResult
from sanctuary.errors import AgentMismatch, AuthError

from .services import Services, get_services


def require_agent(
    services: Services = Depends(get_services),
    x_agent_id: Optional[str] = Header(None),
    x_auth_nonce: Optional[str] = Header(None),
    x_auth_signature: Optional[str] = Header(None),
) -> AuthResult:
    if not (x_agent_id and x_auth_nonce and x_auth_signature):
        raise AuthError("Authentication required: X-Agent-Id, X-Auth-Nonce and X-Auth-Signature")
    return services.issuer.verify(x_agent_id, x_auth_nonce, x_auth_signature)


def require_own_agent(agent_id: str, auth: AuthResult, message: str) -> None:
    """The path agent must be the authenticated caller."""
    if agent_id != auth.agent_id:
        raise AgentMismatch(message)
