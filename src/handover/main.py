"""FastAPI application entry point for the repository handover service.

This module exposes the transfer lifecycle operations over HTTP for the
marketplace web app, the cron endpoint that drives the automatic sweep,
and the health, readiness and metrics endpoints.

The caller's user id arrives in the X-User-Id header, set by the
authenticating gateway in front of this service.
"""

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from .config import HandoverSettings, get_settings
from .events.emitter import EventEmitter, EventSinkType, create_event_emitter
from .events.metrics import generate_metrics_output
from .github.client import GitHubAPIError, GitHubClient
from .notifications import PostgresNotificationSink
from .sweep import AutoTransferSweep
from .transfers.engine import (
    TransferError,
    TransferLifecycleEngine,
    TransferNotFoundError,
    TransferPermissionError,
    TransferValidationError,
)
from .transfers.repository import (
    PostgresDatabase,
    PostgresSaleStore,
    PostgresTransferStore,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: Optional[HandoverSettings] = None
database: Optional[PostgresDatabase] = None
github_client: Optional[GitHubClient] = None
engine: Optional[TransferLifecycleEngine] = None
sweep_task: Optional["asyncio.Task[None]"] = None
sweep_stop: Optional[asyncio.Event] = None


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: HandoverSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Handover configuration:")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Token Encryption Key: {_redact_secret(settings.token_encryption_key)}")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Timeout Seconds: {settings.github_timeout_seconds}")
    logger.info(f"  Max Transfer Retries: {settings.max_transfer_retries}")
    logger.info(f"  Fallback Release Days: {settings.fallback_release_days}")
    logger.info(f"  Claim Timeout Seconds: {settings.claim_timeout_seconds}")
    logger.info(f"  Timeline Stages: {', '.join(settings.timeline_stages)}")
    logger.info(f"  Sweep Enabled: {settings.sweep_enabled}")
    logger.info(f"  Sweep Interval Seconds: {settings.sweep_interval_seconds}")
    logger.info(f"  Cron Secret: {_redact_secret(settings.cron_secret)}")
    logger.info(f"  App Base URL: {settings.app_base_url}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


def build_engine(
    cfg: HandoverSettings,
    db: PostgresDatabase,
    gh_client: GitHubClient,
    event_emitter: Optional[EventEmitter] = None,
) -> TransferLifecycleEngine:
    """Wire the Postgres stores and GitHub client into a lifecycle engine.

    Args:
        cfg: Validated handover settings.
        db: Connected database pool.
        gh_client: GitHub API client.
        event_emitter: Optional emitter; defaults to logging plus metrics.

    Returns:
        Fully wired TransferLifecycleEngine.
    """
    if event_emitter is None:
        event_emitter = create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.METRICS]
        )

    return TransferLifecycleEngine(
        sale_store=PostgresSaleStore(db),
        transfer_store=PostgresTransferStore(db),
        github_client=gh_client,
        notification_sink=PostgresNotificationSink(db),
        token_encryption_key=cfg.token_encryption_key,
        event_emitter=event_emitter,
        max_retries=cfg.max_transfer_retries,
        fallback_release_days=cfg.fallback_release_days,
        claim_timeout_seconds=cfg.claim_timeout_seconds,
        timeline_stages=cfg.timeline_stages,
        app_base_url=cfg.app_base_url,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Database pool and GitHub client setup
    - The optional in-process auto transfer sweep
    - Draining notifications and closing connections on shutdown
    """
    global settings, database, github_client, engine, sweep_task, sweep_stop

    logger.info("Handover service starting up...")

    settings = get_settings()
    _log_configuration(settings)

    database = PostgresDatabase(settings.database_url)
    await database.connect()

    github_client = GitHubClient(
        base_url=settings.github_base_url,
        max_retries=settings.github_max_retries,
        timeout=settings.github_timeout_seconds,
    )
    engine = build_engine(settings, database, github_client)

    if settings.sweep_enabled:
        sweep_stop = asyncio.Event()
        sweep = AutoTransferSweep(engine, interval_seconds=settings.sweep_interval_seconds)
        sweep_task = asyncio.create_task(sweep.run_forever(sweep_stop))

    logger.info("Handover service started successfully")

    yield

    logger.info("Handover service shutting down...")

    if sweep_task is not None and sweep_stop is not None:
        sweep_stop.set()
        await sweep_task

    if engine is not None:
        await engine.wait_for_notifications()
        await engine.event_emitter.close()

    if github_client is not None:
        await github_client.close()

    if database is not None:
        await database.disconnect()

    logger.info("Handover service shutdown complete")


app = FastAPI(
    title="Repository Handover Service",
    description="Collaborator access, ownership transfer and escrow release for marketplace sales",
    version="1.0.0",
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def get_engine() -> TransferLifecycleEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Handover service not initialized")
    return engine


def get_app_settings() -> HandoverSettings:
    if settings is None:
        raise HTTPException(status_code=503, detail="Handover service not initialized")
    return settings


def require_internal_secret(
    authorization: Optional[str] = Header(None),
    cfg: HandoverSettings = Depends(get_app_settings),
) -> None:
    """Check the Bearer token used by the scheduler and admin tooling."""
    if not cfg.cron_secret:
        raise HTTPException(status_code=503, detail="Cron secret not configured")
    expected = f"Bearer {cfg.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


class BuyerGithubRequest(BaseModel):
    username: str


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------


@app.exception_handler(TransferError)
async def transfer_error_handler(request: Request, exc: TransferError):
    if isinstance(exc, TransferNotFoundError):
        status_code = 404
    elif isinstance(exc, TransferPermissionError):
        status_code = 403
    elif isinstance(exc, TransferValidationError):
        status_code = 400
    else:
        status_code = 500
    return JSONResponse(status_code=status_code, content={"error": exc.message})


@app.exception_handler(GitHubAPIError)
async def github_error_handler(request: Request, exc: GitHubAPIError):
    logger.warning(
        "GitHub request failed",
        extra={"path": request.url.path, "error_kind": exc.kind.value},
    )
    return JSONResponse(
        status_code=502,
        content={"error": exc.message, "kind": exc.kind.value},
    )


# -----------------------------------------------------------------------------
# Probes
# -----------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Liveness probe endpoint.

    Returns:
        dict: Status indicating the application is healthy.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Checks database connectivity.

    Returns:
        JSONResponse: 200 when ready, 503 when the database is unreachable.
    """
    database_status = "unhealthy"
    if database is not None and await database.health_check():
        database_status = "healthy"

    status = "ready" if database_status == "healthy" else "not_ready"
    return JSONResponse(
        status_code=200 if status == "ready" else 503,
        content={"status": status, "dependencies": {"database": database_status}},
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


# -----------------------------------------------------------------------------
# Transfer lifecycle
# -----------------------------------------------------------------------------


@app.post("/transactions/{sale_id}/repository-transfer", status_code=201)
async def initiate_repository_transfer(
    sale_id: str,
    x_user_id: str = Header(...),
    lifecycle: TransferLifecycleEngine = Depends(get_engine),
):
    """Seller starts the handover; invites the buyer if their username is known."""
    transfer = await lifecycle.initiate_transfer(x_user_id, sale_id)
    return {"transfer": transfer}


@app.put("/transactions/{sale_id}/buyer-github")
async def set_buyer_github(
    sale_id: str,
    body: BuyerGithubRequest,
    x_user_id: str = Header(...),
    lifecycle: TransferLifecycleEngine = Depends(get_engine),
):
    """Buyer supplies their GitHub username; grants collaborator access."""
    transfer = await lifecycle.set_buyer_username(x_user_id, sale_id, body.username)
    return {"transfer": transfer}


@app.post("/transactions/{sale_id}/confirm-transfer")
async def confirm_transfer(
    sale_id: str,
    x_user_id: str = Header(...),
    lifecycle: TransferLifecycleEngine = Depends(get_engine),
):
    transfer = await lifecycle.confirm_transfer(x_user_id, sale_id)
    return {"transfer": transfer}


@app.post("/transactions/{sale_id}/transfer-ownership")
async def transfer_ownership(
    sale_id: str,
    x_user_id: str = Header(...),
    lifecycle: TransferLifecycleEngine = Depends(get_engine),
):
    """Seller transfers repository ownership now, or early.

    A skip is reported with 409 and its reason; a failed GitHub attempt
    with 502. Both leave escrow held.
    """
    outcome = await lifecycle.transfer_ownership(sale_id, caller_id=x_user_id)
    if outcome.skipped:
        return JSONResponse(
            status_code=409,
            content={"error": outcome.reason.value if outcome.reason else "Skipped"},
        )
    if not outcome.success:
        return JSONResponse(status_code=502, content={"error": outcome.error})
    return {"success": True, "escrowReleased": outcome.escrow_released}


@app.get("/transactions/{sale_id}/timeline")
async def get_timeline(
    sale_id: str,
    x_user_id: str = Header(...),
    lifecycle: TransferLifecycleEngine = Depends(get_engine),
):
    stages = await lifecycle.get_timeline(sale_id, x_user_id)
    return {"stages": stages}


@app.post("/transactions/{sale_id}/invitation-status")
async def check_invitation_status(
    sale_id: str,
    x_user_id: str = Header(...),
    lifecycle: TransferLifecycleEngine = Depends(get_engine),
):
    """Advance the record to accepted once GitHub shows the buyer's access."""
    transfer = await lifecycle.check_invitation_acceptance(x_user_id, sale_id)
    return {"transfer": transfer}


# -----------------------------------------------------------------------------
# Internal endpoints
# -----------------------------------------------------------------------------


@app.post(
    "/transactions/{sale_id}/revoke-access",
    dependencies=[Depends(require_internal_secret)],
)
async def revoke_access(
    sale_id: str,
    lifecycle: TransferLifecycleEngine = Depends(get_engine),
):
    """Remove the buyer's collaborator access after a refund."""
    transfer = await lifecycle.revoke_buyer_access(sale_id)
    return {"transfer": transfer}


@app.post("/cron/process-transfers", dependencies=[Depends(require_internal_secret)])
async def process_transfers(lifecycle: TransferLifecycleEngine = Depends(get_engine)):
    """Scheduler entry point for the automatic transfer sweep."""
    result = await lifecycle.process_auto_transfers()
    return result.model_dump()


if __name__ == "__main__":
    import uvicorn

    # For local development, load settings to get host/port
    dev_settings = get_settings()
    uvicorn.run(
        "src.handover.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
