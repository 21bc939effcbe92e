"""
Sanctuary Service - Main FastAPI Application

Identity registration, challenge-response auth, encrypted backups,
attestations and identity proofs for autonomous agents.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional, Callable, Dict, Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sanctuary import __version__
from sanctuary.config import Settings
from sanctuary.errors import SanctuaryError, RateLimitError, DependencyError
from sanctuary.ledger import Ledger
from sanctuary.storage import BlobStore

from .database import SanctuaryDb
from .rate_limit import cleanup_rate_limits
from .routes import agents, attestations, auth, backups, heartbeat
from .services import Services, build_services, get_services, client_ip

logger = logging.getLogger("sanctuary.service")
cleanup_logger = logging.getLogger("sanctuary.cleanup")

UNLIMITED_PATHS = ("/", "/health", "/docs", "/openapi.json", "/redoc")


def run_all_cleanup(services: Services) -> Dict[str, Any]:
    """
    One maintenance pass: purge challenges and rate-limit windows, mark
    silent agents FALLEN, refresh trust snapshots.
    """
    now = services.now()
    stats: Dict[str, Any] = {
        "challenges_purged": services.issuer.purge_expired(),
        "rate_limits_purged": cleanup_rate_limits(services.db, now),
    }

    threshold = services.settings.fallen_threshold_days * 86400
    fallen = 0
    for agent in services.db.get_agents_without_recent_heartbeat(threshold, now):
        if services.db.transition_status(agent["agent_id"], ["LIVING", "RETURNED"], "FALLEN"):
            cleanup_logger.warning("Agent %s marked FALLEN (no heartbeat for %s days)",
                                   agent["agent_id"], services.settings.fallen_threshold_days)
            fallen += 1
    stats["agents_fallen"] = fallen

    try:
        stats["trust_recomputed"] = services.trust.recompute_all()
    except DependencyError as e:
        cleanup_logger.error("Trust recompute skipped: %s", e.message)
        stats["trust_recomputed"] = 0
        stats["trust_error"] = e.message
    return stats


async def _periodic_cleanup(app: FastAPI):
    """Background task that runs maintenance every cleanup interval."""
    services: Services = app.state.services
    interval = services.settings.cleanup_interval_seconds

    while True:
        await asyncio.sleep(interval)
        try:
            stats = await asyncio.to_thread(run_all_cleanup, services)
        except Exception as e:
            cleanup_logger.error("Cleanup error: %s", e)
            continue
        app.state.last_cleanup_stats = {**stats, "last_run": services.now()}
        total = sum(v for v in stats.values() if isinstance(v, int) and v > 0)
        if total > 0:
            cleanup_logger.info("Cleanup completed: %s", stats)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown lifecycle."""
    services: Services = app.state.services
    problems = services.settings.validate_for_production()
    for problem in problems:
        logger.error("Configuration: %s", problem)
    if problems:
        raise RuntimeError("Refusing to start with an invalid production configuration")

    app.state.start_time = services.now()
    app.state.last_cleanup_stats = {}
    cleanup_task = None
    if services.settings.cleanup_interval_seconds > 0:
        cleanup_task = asyncio.create_task(_periodic_cleanup(app))
    yield
    if cleanup_task is not None:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass


def create_app(
    settings: Settings,
    db: Optional[SanctuaryDb] = None,
    ledger: Optional[Ledger] = None,
    blobs: Optional[BlobStore] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Build the service with explicitly supplied configuration and collaborators."""
    app = FastAPI(
        title="Sanctuary - Agent Identity Service",
        description="Durable, verifiable identity, encrypted backups and trust for autonomous agents",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = build_services(settings, db=db, ledger=ledger, blobs=blobs, clock=clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.public_url] if settings.public_url else [],
        allow_origin_regex=None if settings.is_production else r"http://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Agent-Id", "X-Auth-Nonce", "X-Auth-Signature", "X-Backup-Header"],
    )

    @app.exception_handler(SanctuaryError)
    async def sanctuary_error_handler(request: Request, exc: SanctuaryError):
        headers = {}
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = str(max(1, exc.retry_after))
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid field: {location} ({first.get('msg', 'invalid')})" if location else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": message, "code": "validation_error"},
        )

    @app.middleware("http")
    async def add_rate_limit_headers(request: Request, call_next):
        """Count every non-health request against the per-IP default limit."""
        path = request.url.path
        if path in UNLIMITED_PATHS:
            return await call_next(request)
        limiter = app.state.services.default_limiter
        key = client_ip(request)
        allowed, retry_after = await asyncio.to_thread(limiter.is_allowed, key)
        if not allowed:
            error = RateLimitError(f"Rate limit exceeded. Try again in {retry_after} seconds.",
                                   retry_after=retry_after)
            return JSONResponse(status_code=429, content=error.to_dict(),
                                headers={"Retry-After": str(retry_after), **limiter.headers(key)})
        response = await call_next(request)
        if "X-RateLimit-Limit" not in response.headers:
            response.headers.update(limiter.headers(key))
        return response

    app.include_router(agents.router, tags=["Agents"])
    app.include_router(auth.router, tags=["Challenge-Response"])
    app.include_router(backups.router, tags=["Backups"])
    app.include_router(attestations.router, tags=["Trust"])
    app.include_router(heartbeat.router, tags=["Heartbeat"])

    @app.get("/")
    async def root():
        """Service info."""
        return {
            "service": "Sanctuary - Agent Identity Service",
            "version": app.version,
            "status": "operational",
            "endpoints": {
                "register": "POST /agents/register - Register a self-signed agent identity",
                "agent": "GET /agents/{agent_id} - Public identity record",
                "status": "GET /agents/{agent_id}/status - Trust, backups and heartbeat",
                "proof": "POST /agents/{agent_id}/proof - Server-signed identity proof",
                "verify_proof": "POST /proofs/verify - Check an identity proof",
                "challenge": "POST /auth/challenge - Get an authentication challenge",
                "verify": "POST /auth/verify - Verify a signed challenge",
                "upload": "POST /backups/upload - Upload an encrypted backup",
                "backups": "GET /backups/{agent_id} - List your backups",
                "archive": "GET /backups/{agent_id}/archive/{seq} - Download a stored archive",
                "attest": "POST /attestations - Vouch for another agent",
                "attestations": "GET /attestations/{agent_id} - Attestations about and by an agent",
                "heartbeat": "POST /heartbeat - Liveness signal",
            },
            "docs": "/docs",
        }

    @app.get("/health")
    def health(request: Request):
        """Detailed health check with service status."""
        services: Services = get_services(request)
        try:
            db_stats = services.db.get_stats()
            db_ok = True
            db_error = None
        except Exception as e:
            db_ok = False
            db_error = str(e)
            db_stats = {}

        start_time = getattr(request.app.state, "start_time", None)
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": services.now(),
            "version": request.app.version,
            "checks": {
                "database": {"ok": db_ok, "error": db_error},
            },
            "metrics": {
                "agents": db_stats.get("agents", 0),
                "by_status": db_stats.get("by_status", {}),
                "backups": db_stats.get("backups", 0),
                "uptime_seconds": services.now() - start_time if start_time else 0,
            },
            "cleanup": getattr(request.app.state, "last_cleanup_stats", {}),
        }

    return app


def run() -> None:
    """Console entry point: settings from the environment, served by uvicorn."""
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
