"""
Admin API routes - operator tools and sweep triggers.

Admin routes require an admin bearer token. Job routes additionally accept
the shared cron secret so an external scheduler can trigger sweeps.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    JobCaller,
    UserIdentity,
    get_farm_client,
    get_payment_provider,
    require_admin,
    require_cron_or_admin,
)
from app.db.models import Token, utc_now
from app.db.session import get_read_db, get_write_db
from app.exceptions import FarmServiceError, ResourceNotFoundError, WriteVerificationError
from app.models.api import (
    AnomalyItem,
    AnomalyReportResponse,
    CreateTokenRequest,
    FarmStatusResponse,
    PaymentReconcileResponse,
    StaleSweepResponse,
    TokenResponse,
)
from app.services.access_tokens import AccessTokenService
from app.services.farm_client import FarmClient
from app.services.lifecycle import GenerationLifecycle
from app.services.payment_provider import PaymentProvider
from app.services.reconciliation import ReconciliationService

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/admin", tags=["admin"])
jobs_router = APIRouter(prefix="/v1/jobs", tags=["jobs"])


def _token_response(token: Token) -> TokenResponse:
    return TokenResponse(
        id=token.id,
        token=token.token,
        client_name=token.client_name,
        credits_per_use=token.credits_per_use,
        total_limit=token.total_limit,
        daily_limit=token.daily_limit,
        expires_at=token.expires_at,
        is_active=token.is_active,
        cooldown_minutes=token.cooldown_minutes,
        created_at=token.created_at,
    )


# ============================================================================
# Operator view
# ============================================================================


@router.get("/anomalies", response_model=AnomalyReportResponse)
async def list_anomalies(
    db: AsyncSession = Depends(get_read_db),
    admin: UserIdentity = Depends(require_admin),
    farm: FarmClient = Depends(get_farm_client),
) -> AnomalyReportResponse:
    """
    Read-only ledger integrity report.

    Findings are never corrected automatically.
    """
    anomalies = await ReconciliationService(db, farm).find_anomalies()
    logger.info("admin_anomalies_viewed", admin_id=str(admin.user_id), count=len(anomalies))
    return AnomalyReportResponse(
        generated_at=utc_now(),
        anomalies=[
            AnomalyItem(
                kind=a.kind,
                generation_id=a.generation_id,
                wallet_id=a.wallet_id,
                farm_id=a.farm_id,
                expected=a.expected,
                actual=a.actual,
                detail=a.detail,
            )
            for a in anomalies
        ],
    )


@router.post("/generations/{farm_id}/sync", response_model=FarmStatusResponse)
async def sync_generation(
    farm_id: str,
    db: AsyncSession = Depends(get_write_db),
    admin: UserIdentity = Depends(require_admin),
    farm: FarmClient = Depends(get_farm_client),
) -> FarmStatusResponse:
    """Force a poll of one generation and apply the status-sync rules."""
    try:
        view = await GenerationLifecycle(db, farm).admin_sync(farm_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except FarmServiceError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Farm service unavailable: {exc.message}",
        ) from exc

    return FarmStatusResponse(
        farm_id=view.farm_id,
        status=view.status,
        credits=view.credits,
        credits_earned=view.credits_earned,
        queue_position=view.queue_position,
        new_farm_id=view.new_farm_id,
        master_email=view.master_email,
        workspace_name=view.workspace_name,
        settled=view.settled,
    )


# ============================================================================
# Access tokens
# ============================================================================


@router.get("/tokens", response_model=list[TokenResponse])
async def list_tokens(
    db: AsyncSession = Depends(get_read_db),
    admin: UserIdentity = Depends(require_admin),
) -> list[TokenResponse]:
    tokens = await AccessTokenService(db).list_tokens()
    return [_token_response(t) for t in tokens]


@router.post("/tokens", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def create_token(
    body: CreateTokenRequest,
    db: AsyncSession = Depends(get_write_db),
    admin: UserIdentity = Depends(require_admin),
) -> TokenResponse:
    """Issue a new access token policy."""
    try:
        token = await AccessTokenService(db).create_token(
            client_name=body.client_name,
            credits_per_use=body.credits_per_use,
            total_limit=body.total_limit,
            daily_limit=body.daily_limit,
            expires_at=body.expires_at,
            cooldown_minutes=body.cooldown_minutes,
            warning_message=body.warning_message,
            created_by=admin.user_id,
        )
    except (WriteVerificationError, SQLAlchemyError) as exc:
        logger.error("admin_token_create_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc
    return _token_response(token)


@router.post("/tokens/{token_id}/toggle", response_model=TokenResponse)
async def toggle_token(
    token_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    admin: UserIdentity = Depends(require_admin),
) -> TokenResponse:
    """Flip a token's active flag."""
    try:
        token = await AccessTokenService(db).toggle(token_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    logger.info("admin_token_toggled", admin_id=str(admin.user_id), token_id=str(token_id))
    return _token_response(token)


# ============================================================================
# Sweep triggers
# ============================================================================


@jobs_router.post("/stale-sweep", response_model=StaleSweepResponse)
async def run_stale_sweep(
    db: AsyncSession = Depends(get_write_db),
    caller: JobCaller = Depends(require_cron_or_admin),
    farm: FarmClient = Depends(get_farm_client),
) -> StaleSweepResponse:
    """Settle generations no live path settled."""
    result = await ReconciliationService(db, farm).sweep_stale_generations()
    logger.info("stale_sweep_triggered", auth_type=caller.auth_type)
    return StaleSweepResponse(
        forced_cancelled=result.forced_cancelled,
        settled_terminal=result.settled_terminal,
        settled_completed=result.settled_completed,
        failed_dispatch=result.failed_dispatch,
        failures=result.failures,
        dequeued=result.dequeued,
    )


@jobs_router.post("/payment-reconcile", response_model=PaymentReconcileResponse)
async def run_payment_reconcile(
    db: AsyncSession = Depends(get_write_db),
    caller: JobCaller = Depends(require_cron_or_admin),
    farm: FarmClient = Depends(get_farm_client),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> PaymentReconcileResponse:
    """Re-check pending orders with the provider."""
    result = await ReconciliationService(db, farm, provider).reconcile_payments()
    logger.info("payment_reconcile_triggered", auth_type=caller.auth_type)
    return PaymentReconcileResponse(
        checked=result.checked,
        confirmed=result.confirmed,
        still_pending=result.still_pending,
        failures=result.failures,
    )
