"""
Backup endpoints - upload, listing, and archive download.

Uploads are a raw encrypted body plus the signed BackupHeader as base64
JSON in X-Backup-Header.
"""

import base64
import json
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from sanctuary.auth import AuthResult
from sanctuary.errors import NotFoundError, PayloadTooLarge, ValidationError
from sanctuary.keys import is_valid_agent_id

from ..auth import require_agent, require_own_agent
from ..services import Services, get_services

router = APIRouter()

BACKUP_HEADER = "X-Backup-Header"


def decode_backup_header(value: Optional[str]) -> Any:
    if not value:
        raise ValidationError(f"Missing {BACKUP_HEADER}")
    try:
        return json.loads(base64.b64decode(value, validate=True).decode('utf-8'))
    except (ValueError, UnicodeDecodeError):
        raise ValidationError(f"Invalid {BACKUP_HEADER} (must be base64 JSON)")


def encode_backup_header(header: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(header, sort_keys=True).encode('utf-8')).decode('ascii')


def _record(backup: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": backup["id"],
        "backup_seq": backup["backup_seq"],
        "tx_id": backup["tx_id"],
        "timestamp": backup["agent_timestamp"],
        "received_at": backup["received_at"],
        "size_bytes": backup["size_bytes"],
        "manifest_hash": backup["manifest_hash"],
        "header_hash": backup["header_hash"],
        "prev_backup_hash": backup["prev_backup_hash"],
    }


def _check_agent_id(agent_id: str) -> None:
    if not is_valid_agent_id(agent_id):
        raise ValidationError("Invalid agent ID", field="agent_id")


@router.post("/backups/upload", status_code=201)
async def upload_backup(
    req: Request,
    x_backup_header: Optional[str] = Header(None),
    auth: AuthResult = Depends(require_agent),
    services: Services = Depends(get_services),
):
    """
    Accept one encrypted backup for the authenticated agent.

    At most one backup per agent per backup interval; the header must
    extend the agent's chain by exactly one.
    """
    header_data = decode_backup_header(x_backup_header)

    declared = req.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > services.settings.backup_size_limit:
        raise PayloadTooLarge(f"Backup exceeds size limit ({services.settings.backup_size_limit} bytes)")
    payload = await req.body()

    record = await run_in_threadpool(services.acceptor.accept, auth.agent_id, header_data, payload)
    return {"success": True, "data": _record(record)}


@router.get("/backups/{agent_id}")
def list_backups(agent_id: str, limit: int = 30, auth: AuthResult = Depends(require_agent),
                 services: Services = Depends(get_services)):
    """Backups for the caller's own agent, newest first."""
    _check_agent_id(agent_id)
    require_own_agent(agent_id, auth, "Cannot list backups for another agent")
    limit = max(1, min(limit, 365))
    backups = services.db.get_backups_by_agent(agent_id, limit)
    return {
        "success": True,
        "data": {
            "agent_id": agent_id,
            "count": services.db.get_backup_count(agent_id),
            "backups": [_record(b) for b in backups],
        },
    }


@router.get("/backups/{agent_id}/latest")
def latest_backup(agent_id: str, auth: AuthResult = Depends(require_agent),
                  services: Services = Depends(get_services)):
    _check_agent_id(agent_id)
    require_own_agent(agent_id, auth, "Cannot view backups for another agent")
    backup = services.db.get_latest_backup(agent_id)
    if not backup:
        raise NotFoundError("No backups found for agent")
    return {"success": True, "data": _record(backup)}


@router.get("/backups/{agent_id}/archive/{backup_seq}")
def get_archive(agent_id: str, backup_seq: int, services: Services = Depends(get_services)):
    """
    Stored archive (signed header + ciphertext) for one backup.

    Unauthenticated: the archive is ciphertext plus a header anyone may
    verify, exactly as it sits in the public blob store.
    """
    _check_agent_id(agent_id)
    backup = services.db.get_backup_by_seq(agent_id, backup_seq)
    if not backup:
        raise NotFoundError(f"No backup {backup_seq} for agent")
    archive = services.blobs.fetch(backup["tx_id"])
    return Response(
        content=archive,
        media_type="application/octet-stream",
        headers={"X-Backup-Tx-Id": backup["tx_id"]},
    )
