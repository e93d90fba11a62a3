"""
API Routes - FastAPI endpoints for generations, tokens, wallets and payments.

NO DICTIONARIES - All requests/responses use Pydantic models.

Business refusals (insufficient balance, exhausted caps, ...) come back as
200 with success=false; exceptions map to 4xx, 502 (upstream) or 503
(database).
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    UserIdentity,
    get_current_user,
    get_farm_client,
    get_optional_user,
    get_payment_provider,
)
from app.db.models import ClientToken, Generation, Order, Token
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    DatabaseError,
    DataIntegrityError,
    FarmServiceError,
    InvalidStatusError,
    PaymentProviderError,
    ResourceNotFoundError,
    WebhookVerificationError,
    WriteVerificationError,
)
from app.models.api import (
    ActionResponse,
    CapacityInfo,
    ClaimDepositResponse,
    ClientGenerateRequest,
    ClientTokenCreateRequest,
    ClientTokenCreateResponse,
    ClientTokenDeactivateResponse,
    ClientTokenResponse,
    ClientTokenValidateResponse,
    DepositRequest,
    FarmStatusResponse,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    OrderRequest,
    OrderResponse,
    OrderStatus,
    OrderType,
    PixChargeResponse,
    StatusUpdateRequest,
    StockResponse,
    TokenGenerateRequest,
    TokenInfo,
    TokenValidateResponse,
    WalletResponse,
    WalletTransactionItem,
    WalletTransactionType,
    WebhookResponse,
)
from app.models.domain import ActionOutcome, GenerateOutcome, GenerationView
from app.services.access_tokens import AccessTokenService
from app.services.admission import AdmissionController
from app.services.client_tokens import ClientTokenService
from app.services.farm_client import FarmClient
from app.services.ledger import LedgerService
from app.services.lifecycle import GenerationLifecycle
from app.services.orders import OrderCreation, OrderService
from app.services.payment_provider import PaymentProvider, PixCustomer
from app.services.pricing import credits_from_balance
from app.services.wallet_generation import OnDemandService

logger = get_logger(__name__)

router = APIRouter()

PAID_EVENT = "transaction.paid"


# =============================================================================
# Response helpers
# =============================================================================


def _generate_response(outcome: GenerateOutcome) -> GenerateResponse:
    if not outcome.success or outcome.admission is None:
        return GenerateResponse(
            success=False,
            error=outcome.error,
            balance=outcome.balance,
            required=outcome.required,
            remaining=outcome.remaining,
            existing_farm_id=outcome.existing_farm_id,
        )
    admission = outcome.admission
    return GenerateResponse(
        success=True,
        farm_id=admission.farm_id,
        generation_id=admission.generation_id,
        credits=outcome.credits,
        queued=admission.queued,
        queue_position=admission.queue_position,
        master_email=admission.master_email,
        message=admission.message,
        balance=outcome.balance,
        remaining=outcome.remaining,
    )


def _action_response(outcome: ActionOutcome) -> ActionResponse:
    return ActionResponse(
        success=outcome.success,
        error=outcome.error,
        refund_amount=outcome.refund_amount if outcome.settlement else None,
        refunded_credits=outcome.refunded_credits if outcome.settlement else None,
    )


def _status_response(view: GenerationView) -> FarmStatusResponse:
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


def _client_token_response(token: ClientToken) -> ClientTokenResponse:
    return ClientTokenResponse(
        id=token.id,
        token=token.token,
        total_credits=token.total_credits,
        credits_used=token.credits_used,
        remaining=token.remaining,
        is_active=token.is_active,
        created_at=token.created_at,
    )


def _token_info(token: Token) -> TokenInfo:
    return TokenInfo(
        id=token.id,
        client_name=token.client_name,
        credits_per_use=token.credits_per_use,
        total_limit=token.total_limit,
        daily_limit=token.daily_limit,
        expires_at=token.expires_at,
        is_active=token.is_active,
        cooldown_minutes=token.cooldown_minutes,
    )


def _order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        order_id=order.id,
        order_type=OrderType(order.order_type),
        status=OrderStatus(order.status),
        amount=order.amount,
        transaction_id=order.transaction_id,
        paid_at=order.paid_at,
        token_id=order.token_id,
    )


def _pix_response(creation: OrderCreation) -> PixChargeResponse:
    order, charge = creation.order, creation.charge
    if order is None or charge is None:
        raise DataIntegrityError("Order created without a PIX charge")
    return PixChargeResponse(
        order_id=order.id,
        order_type=OrderType(order.order_type),
        transaction_id=charge.transaction_id,
        pix_code=charge.pix_code,
        expires_at=charge.expires_at,
        amount=order.amount,
        discount_amount=order.discount_amount or Decimal("0"),
    )


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _upstream_error(exc: FarmServiceError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Farm service unavailable: {exc.message}",
    )


def _database_error(exc: Exception) -> HTTPException:
    logger.error("request_database_error", error=str(exc))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Database unavailable",
    )


async def _owned_generation(
    lifecycle: GenerationLifecycle, farm_id: str, user: UserIdentity
) -> Generation:
    """The caller's wallet generation; admins may act on any generation."""
    try:
        generation = await lifecycle.get_generation(farm_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if not user.is_admin and generation.user_id != user.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Generation not found")
    return generation


# =============================================================================
# Wallet-funded generation
# =============================================================================


@router.post("/v1/generate", response_model=GenerateResponse)
async def generate(
    body: GenerateRequest,
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
    farm: FarmClient = Depends(get_farm_client),
) -> GenerateResponse:
    """
    Pay for and start a generation from the caller's wallet.

    On farm failure the wallet is refunded before the 502 is returned.
    """
    try:
        outcome = await OnDemandService(db, farm).generate(
            user.user_id, body.credits, client_ip=_client_ip(request)
        )
    except FarmServiceError as exc:
        raise _upstream_error(exc) from exc
    except (DatabaseError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _generate_response(outcome)


@router.post("/v1/generate/{farm_id}/cancel", response_model=ActionResponse)
async def cancel_generation(
    farm_id: str,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
    farm: FarmClient = Depends(get_farm_client),
) -> ActionResponse:
    """Cancel upstream, then settle as cancelled keeping observed credits."""
    lifecycle = GenerationLifecycle(db, farm)
    generation = await _owned_generation(lifecycle, farm_id, user)
    try:
        outcome = await lifecycle.cancel(generation)
    except FarmServiceError as exc:
        raise _upstream_error(exc) from exc
    except (DataIntegrityError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _action_response(outcome)


@router.post("/v1/generate/{farm_id}/refund-expired", response_model=ActionResponse)
async def refund_expired(
    farm_id: str,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
    farm: FarmClient = Depends(get_farm_client),
) -> ActionResponse:
    """Refund a session that timed out before anything was delivered."""
    lifecycle = GenerationLifecycle(db, farm)
    generation = await _owned_generation(lifecycle, farm_id, user)
    try:
        outcome = await lifecycle.refund_expired(generation)
    except (DataIntegrityError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _action_response(outcome)


@router.post("/v1/generate/{farm_id}/status", response_model=ActionResponse)
async def push_generation_status(
    farm_id: str,
    body: StatusUpdateRequest,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
    farm: FarmClient = Depends(get_farm_client),
) -> ActionResponse:
    """Owner/admin status push; terminal statuses settle."""
    lifecycle = GenerationLifecycle(db, farm)
    generation = await _owned_generation(lifecycle, farm_id, user)
    try:
        outcome = await lifecycle.push_status(
            generation,
            body.status,
            credits_earned=body.credits_earned,
            master_email=body.master_email,
            workspace_name=body.workspace_name,
            error_message=body.error_message,
        )
    except InvalidStatusError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except (DataIntegrityError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _action_response(outcome)


# =============================================================================
# Farm proxy
# =============================================================================


@router.get("/v1/farm/status/{farm_id}", response_model=FarmStatusResponse)
async def farm_status(
    farm_id: str,
    db: AsyncSession = Depends(get_write_db),
    farm: FarmClient = Depends(get_farm_client),
) -> FarmStatusResponse:
    """
    Polling proxy.

    Writes the observed status back to the generation and settles it when
    the farm reports a terminal status. Placeholder ids answer locally.
    """
    try:
        view = await GenerationLifecycle(db, farm).poll_status(farm_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except FarmServiceError as exc:
        raise _upstream_error(exc) from exc
    except SQLAlchemyError as exc:
        raise _database_error(exc) from exc
    return _status_response(view)


@router.get("/v1/farm/stock", response_model=StockResponse)
async def farm_stock(
    db: AsyncSession = Depends(get_read_db),
    farm: FarmClient = Depends(get_farm_client),
) -> StockResponse:
    """Upstream stock plus local capacity accounting."""
    snapshot = await AdmissionController(db, farm).capacity()
    capacity = CapacityInfo(
        max_concurrent=snapshot.ceiling,
        active=snapshot.active,
        running=snapshot.running,
        waiting=snapshot.waiting,
        creating=snapshot.creating,
        queued=snapshot.queued,
        available=snapshot.available,
    )
    try:
        stock = await farm.stock()
    except FarmServiceError as exc:
        logger.warning("farm_stock_unavailable", error=exc.message)
        return StockResponse(capacity=capacity)
    return StockResponse(upstream_total=stock.total, upstream_active=stock.active, capacity=capacity)


# =============================================================================
# Admin-issued access tokens
# =============================================================================


@router.get("/v1/tokens/{token}", response_model=TokenValidateResponse)
async def validate_token(
    token: str,
    db: AsyncSession = Depends(get_read_db),
) -> TokenValidateResponse:
    """Check a token and report its remaining caps."""
    validation = await AccessTokenService(db).validate(token)
    return TokenValidateResponse(
        valid=validation.valid,
        error=validation.error,
        token=_token_info(validation.token) if validation.token else None,
        remaining_total=validation.usage.remaining_total if validation.usage else None,
        remaining_daily=validation.usage.remaining_daily if validation.usage else None,
        daily_limit_reached=validation.daily_limit_reached,
        warning_message=validation.token.warning_message if validation.token else None,
    )


@router.post("/v1/tokens/{token}/generate", response_model=GenerateResponse)
async def token_generate(
    token: str,
    body: TokenGenerateRequest,
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    farm: FarmClient = Depends(get_farm_client),
) -> GenerateResponse:
    """Reserve against the token's caps and dispatch or queue."""
    try:
        outcome = await AccessTokenService(db, farm).generate(
            token, body.credits, client_ip=_client_ip(request)
        )
    except FarmServiceError as exc:
        raise _upstream_error(exc) from exc
    except (WriteVerificationError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _generate_response(outcome)


# =============================================================================
# Reseller client tokens
# =============================================================================


@router.post("/v1/client-tokens", response_model=ClientTokenCreateResponse)
async def mint_client_token(
    body: ClientTokenCreateRequest,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
    farm: FarmClient = Depends(get_farm_client),
) -> ClientTokenCreateResponse:
    """Buy a prepaid client token with wallet balance."""
    try:
        result = await ClientTokenService(db, farm).mint(user.user_id, body.credits)
    except (DatabaseError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc

    if not result.success or result.client_token is None:
        return ClientTokenCreateResponse(
            success=False, error=result.error, balance=result.balance, required=result.cost
        )
    return ClientTokenCreateResponse(
        success=True,
        client_token=_client_token_response(result.client_token),
        cost=result.cost,
        balance=result.balance,
    )


@router.get("/v1/client-tokens", response_model=list[ClientTokenResponse])
async def list_client_tokens(
    db: AsyncSession = Depends(get_read_db),
    user: UserIdentity = Depends(get_current_user),
    farm: FarmClient = Depends(get_farm_client),
) -> list[ClientTokenResponse]:
    tokens = await ClientTokenService(db, farm).list_for_owner(user.user_id)
    return [_client_token_response(t) for t in tokens]


@router.post(
    "/v1/client-tokens/{client_token_id}/deactivate",
    response_model=ClientTokenDeactivateResponse,
)
async def deactivate_client_token(
    client_token_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
    farm: FarmClient = Depends(get_farm_client),
) -> ClientTokenDeactivateResponse:
    """Retire a client token and refund its unused value to the wallet."""
    try:
        result = await ClientTokenService(db, farm).deactivate(user.user_id, client_token_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (DataIntegrityError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc

    message = None
    if result.blocking_farm_ids:
        message = "Generation in progress: " + ", ".join(result.blocking_farm_ids)
    return ClientTokenDeactivateResponse(
        success=result.success,
        error=result.error,
        message=message,
        settled_generations=result.settled_generations,
        refund_amount=result.refund_amount,
        refunded_credits=result.refunded_credits,
    )


@router.get("/v1/client-tokens/{token}", response_model=ClientTokenValidateResponse)
async def validate_client_token(
    token: str,
    db: AsyncSession = Depends(get_read_db),
    farm: FarmClient = Depends(get_farm_client),
) -> ClientTokenValidateResponse:
    validation = await ClientTokenService(db, farm).validate(token)
    return ClientTokenValidateResponse(
        valid=validation.valid,
        error=validation.error,
        remaining=validation.token.remaining if validation.token else 0,
        total_credits=validation.token.total_credits if validation.token else 0,
        has_active_generation=validation.has_active_generation,
        active_farm_id=validation.active_farm_id,
    )


@router.post("/v1/client-tokens/{token}/generate", response_model=GenerateResponse)
async def client_token_generate(
    token: str,
    body: ClientGenerateRequest,
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    farm: FarmClient = Depends(get_farm_client),
) -> GenerateResponse:
    """Spend client-token credits; one active generation per token."""
    try:
        outcome = await ClientTokenService(db, farm).generate(
            token, body.credits, client_ip=_client_ip(request)
        )
    except FarmServiceError as exc:
        raise _upstream_error(exc) from exc
    except (DatabaseError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _generate_response(outcome)


@router.get(
    "/v1/client-tokens/{token}/generations/{generation_id}",
    response_model=FarmStatusResponse,
)
async def client_token_check_queue(
    token: str,
    generation_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    farm: FarmClient = Depends(get_farm_client),
) -> FarmStatusResponse:
    try:
        view = await ClientTokenService(db, farm).check_queue(token, generation_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _status_response(view)


@router.post(
    "/v1/client-tokens/{token}/generations/{farm_id}/status",
    response_model=ActionResponse,
)
async def client_token_update_status(
    token: str,
    farm_id: str,
    body: StatusUpdateRequest,
    db: AsyncSession = Depends(get_write_db),
    farm: FarmClient = Depends(get_farm_client),
) -> ActionResponse:
    try:
        outcome = await ClientTokenService(db, farm).update_status(
            token,
            farm_id,
            body.status,
            credits_earned=body.credits_earned,
            master_email=body.master_email,
            workspace_name=body.workspace_name,
            error_message=body.error_message,
        )
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidStatusError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except (DataIntegrityError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _action_response(outcome)


@router.post(
    "/v1/client-tokens/{token}/generations/{farm_id}/refund-expired",
    response_model=ActionResponse,
)
async def client_token_refund_expired(
    token: str,
    farm_id: str,
    db: AsyncSession = Depends(get_write_db),
    farm: FarmClient = Depends(get_farm_client),
) -> ActionResponse:
    try:
        outcome = await ClientTokenService(db, farm).refund_expired(token, farm_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (DataIntegrityError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _action_response(outcome)


# =============================================================================
# Wallet and PIX payments
# =============================================================================


@router.get("/v1/wallet", response_model=WalletResponse)
async def get_wallet(
    db: AsyncSession = Depends(get_read_db),
    user: UserIdentity = Depends(get_current_user),
) -> WalletResponse:
    """Balance, estimated credits and recent transactions."""
    ledger = LedgerService(db)
    wallet = await ledger.get_wallet(user.user_id)
    balance = wallet.balance if wallet else Decimal("0.00")
    transactions = await ledger.list_transactions(user.user_id) if wallet else []
    return WalletResponse(
        user_id=user.user_id,
        balance=balance,
        estimated_credits=credits_from_balance(balance),
        transactions=[
            WalletTransactionItem(
                id=tx.id,
                type=WalletTransactionType(tx.type),
                amount=tx.amount,
                credits=tx.credits,
                description=tx.description,
                reference_id=tx.reference_id,
                created_at=tx.created_at,
            )
            for tx in transactions
        ],
    )


@router.post(
    "/v1/wallet/deposits",
    response_model=PixChargeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_deposit(
    body: DepositRequest,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity | None = Depends(get_optional_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> PixChargeResponse:
    """Create a PIX deposit charge; anonymous deposits are claimed later."""
    try:
        customer = PixCustomer(
            name=body.customer_name, email=body.customer_email, document=body.customer_document
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc

    try:
        creation = await OrderService(db, provider).create_deposit(
            body.amount,
            customer,
            user_id=user.user_id if user else None,
            coupon_code=body.coupon_code,
        )
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Payment provider error: {exc.message}"
        ) from exc
    except (DataIntegrityError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc

    if not creation.success:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=creation.message or "Invalid coupon",
        )
    return _pix_response(creation)


@router.post("/v1/wallet/deposits/{order_id}/claim", response_model=ClaimDepositResponse)
async def claim_deposit(
    order_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> ClaimDepositResponse:
    """Attach a paid anonymous deposit to the caller's wallet."""
    try:
        claim = await OrderService(db, provider).claim_deposit(order_id, user.user_id)
    except SQLAlchemyError as exc:
        raise _database_error(exc) from exc
    return ClaimDepositResponse(
        success=claim.success,
        error=claim.error,
        amount=claim.amount,
        new_balance=claim.credit.new_balance if claim.credit else None,
        already_credited=claim.credit.already_credited if claim.credit else False,
    )


@router.post("/v1/orders", response_model=PixChargeResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    body: OrderRequest,
    db: AsyncSession = Depends(get_write_db),
    user: UserIdentity | None = Depends(get_optional_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> PixChargeResponse:
    """Create a token purchase or token upgrade charge."""
    try:
        customer = PixCustomer(
            name=body.customer_name, email=body.customer_email, document=body.customer_document
        )
        creation = await OrderService(db, provider).create_order(
            body.order_type,
            customer,
            user_id=user.user_id if user else None,
            product_id=body.product_id,
            token_id=body.token_id,
            upgrade_increment=body.upgrade_increment,
        )
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Payment provider error: {exc.message}"
        ) from exc
    except (DataIntegrityError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _pix_response(creation)


@router.get("/v1/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> OrderResponse:
    """Order status; a pending order is checked with the provider on the spot."""
    try:
        order = await OrderService(db, provider).refresh_status(order_id)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Payment provider error: {exc.message}"
        ) from exc
    except (DataIntegrityError, SQLAlchemyError) as exc:
        raise _database_error(exc) from exc
    return _order_response(order)


@router.post("/v1/webhooks/pix", response_model=WebhookResponse)
async def pix_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> WebhookResponse:
    """
    Handle PIX gateway webhooks.

    Only transaction.paid is acted on, and only after the provider's status
    API confirms it. Unknown or already-paid orders are acknowledged.
    """
    payload = await request.body()
    signature = request.headers.get("x-webhook-signature")

    try:
        event = provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        logger.error("pix_webhook_verification_failed", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc

    logger.info(
        "pix_webhook_received",
        event_type=event.event_type,
        transaction_id=event.transaction_id,
    )
    if event.event_type != PAID_EVENT or not event.transaction_id:
        return WebhookResponse(message="ignored")

    try:
        confirmation = await OrderService(db, provider).confirm_by_transaction(
            event.transaction_id, source="webhook"
        )
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Payment provider error: {exc.message}"
        ) from exc
    except (DataIntegrityError, SQLAlchemyError) as exc:
        logger.error("pix_webhook_processing_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook processing failed",
        ) from exc

    if confirmation is None:
        return WebhookResponse(message="no-op")
    return WebhookResponse(
        message="confirmed" if confirmation.claimed else "already processed",
        order_type=confirmation.order_type,
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
