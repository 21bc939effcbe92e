"""
Service wiring.

Every collaborator a route needs is built once in create_app() and held
on app.state.services; routes reach it through get_services().
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from sanctuary.auth import ChallengeIssuer
from sanctuary.backup_chain import BackupAcceptor
from sanctuary.config import Settings
from sanctuary.ledger import Ledger, HttpLedger, MemoryLedger
from sanctuary.storage import BlobStore, DirectoryBlobStore, HttpBlobStore, MemoryBlobStore
from sanctuary.trust import TrustGraph

from .database import SanctuaryDb
from .rate_limit import RateLimiter

logger = logging.getLogger("sanctuary.service")


@dataclass
class Services:
    settings: Settings
    db: SanctuaryDb
    ledger: Ledger
    blobs: BlobStore
    clock: Callable[[], float]
    issuer: ChallengeIssuer
    acceptor: BackupAcceptor
    trust: TrustGraph
    challenge_limiter: RateLimiter
    default_limiter: RateLimiter

    def now(self) -> int:
        return int(self.clock())

    def verify_url(self, agent_id: str) -> str:
        base = self.settings.public_url.rstrip("/") or f"http://localhost:{self.settings.port}"
        return f"{base}/agents/{agent_id}/status"


def default_ledger(settings: Settings, clock: Callable[[], float]) -> Ledger:
    if settings.ledger_url:
        return HttpLedger(settings.ledger_url, timeout=settings.ledger_timeout)
    logger.warning("No ledger configured, using in-memory ledger")
    return MemoryLedger(cooldown_seconds=settings.attestation_cooldown_days * 86400, clock=clock)


def default_blob_store(settings: Settings) -> BlobStore:
    if settings.blob_url:
        return HttpBlobStore(settings.blob_url, timeout=settings.blob_timeout)
    if settings.blob_dir:
        return DirectoryBlobStore(settings.blob_dir)
    logger.warning("No blob store configured, using in-memory blob store")
    return MemoryBlobStore()


def build_services(
    settings: Settings,
    db: Optional[SanctuaryDb] = None,
    ledger: Optional[Ledger] = None,
    blobs: Optional[BlobStore] = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    db = db or SanctuaryDb(settings.database_path)
    db.init()
    ledger = ledger or default_ledger(settings, clock)
    blobs = blobs or default_blob_store(settings)

    return Services(
        settings=settings,
        db=db,
        ledger=ledger,
        blobs=blobs,
        clock=clock,
        issuer=ChallengeIssuer(db, ttl_seconds=settings.challenge_ttl_seconds, clock=clock),
        acceptor=BackupAcceptor(
            db, blobs,
            size_limit=settings.backup_size_limit,
            interval_seconds=settings.backup_interval_seconds,
            clock=clock,
        ),
        trust=TrustGraph(
            db, ledger,
            cooldown_days=settings.attestation_cooldown_days,
            cache_ttl_seconds=settings.trust_cache_ttl_seconds,
            clock=clock,
        ),
        challenge_limiter=RateLimiter(
            db, max_requests=settings.challenge_rate_limit, window_seconds=60,
            enabled=settings.rate_limiting_enabled, clock=clock,
        ),
        default_limiter=RateLimiter(
            db, max_requests=settings.default_rate_limit, window_seconds=60,
            enabled=settings.rate_limiting_enabled, clock=clock,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"
