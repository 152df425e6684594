from typing import Optional
from uuid import UUID
from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from referrals.models import (
    IssueReferralCodeRequest,
    ReferralAttempt,
    ReferralCode,
    ReferralCodeValidation,
    ReferralDecision,
    ReferralSettings,
    ReferralSettingsInput,
    ReferralSignupRequest,
    ReferralStats,
    ReferralTransaction,
)

from .errors import (
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
    PermissionDeniedError,
    SettingsValidationError,
    StorageConflictError,
    ValidationError,
)
from .logging_config import setup_logging
from .models import (
    Actor,
    ActorStats,
    AttributionToken,
    BulkProductRewardRequest,
    CommissionBasis,
    CommissionRecord,
    CommissionResponse,
    CommissionStatus,
    ConfirmCommissionRequest,
    CreatePayoutRequest,
    MutationResult,
    OrderAttributionResult,
    OrderCompletedEvent,
    PayoutRequest,
    PayoutResponse,
    ProcessPayoutRequest,
    ProductAffiliateStats,
    ProductRewardRequest,
    ProductRewardSettings,
    RegisterActorRequest,
    ReverseCommissionRequest,
    SessionResolution,
    TrackClickRequest,
    TransactionHistoryResponse,
    WalletAdjustmentRequest,
    WalletView,
)
from .service import LedgerService
from .storage import InMemoryStorage

setup_logging()

app = FastAPI(
    title="Reward Ledger API",
    description="Affiliate attribution, multi-bucket wallets, commissions, payouts and referral policy",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService(storage=InMemoryStorage(seed=True))

_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientFundsError, status.HTTP_409_CONFLICT),
    (IdempotencyConflictError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (StorageConflictError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _http_error(e: LedgerServiceError) -> HTTPException:
    if isinstance(e, SettingsValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={"errors": e.errors})
    if isinstance(e, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail={"field": e.field, "message": e.message}
        )
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(e, error_type):
            return HTTPException(status_code=code, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "reward-ledger"}


@app.post("/actors", response_model=Actor, status_code=status.HTTP_201_CREATED, tags=["Attribution"])
def register_actor(request: RegisterActorRequest) -> Actor:
    try:
        return ledger_service.actors.register(request.name, request.code)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/actors/{actor_id}/stats", response_model=ActorStats, tags=["Attribution"])
def get_actor_stats(actor_id: UUID) -> ActorStats:
    try:
        return ledger_service.actors.stats(actor_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/clicks", response_model=AttributionToken, status_code=status.HTTP_201_CREATED, tags=["Attribution"])
def track_click(request: TrackClickRequest) -> AttributionToken:
    token = ledger_service.tracker.track(request.code, request.product_id, request)
    if token is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown referral code {request.code}")
    return token


@app.get("/attribution/{session_id}", response_model=SessionResolution, tags=["Attribution"])
def resolve_session(session_id: str) -> SessionResolution:
    return ledger_service.tracker.resolve(session_id)


@app.get("/products/rewards", response_model=list[ProductRewardSettings], tags=["Attribution"])
def list_product_rewards(enabled_only: bool = False):
    return ledger_service.catalog.list_rewards(enabled_only)


@app.put("/products/{product_id}/reward", response_model=ProductRewardSettings, tags=["Attribution"])
def set_product_reward(product_id: str, request: ProductRewardRequest) -> ProductRewardSettings:
    basis = CommissionBasis(type=request.commission_type, value=request.commission_value, cap=request.cap)
    try:
        return ledger_service.set_product_reward(
            product_id, basis, is_enabled=request.is_enabled, product_price=request.product_price
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@app.put("/products/rewards/bulk", response_model=list[ProductRewardSettings], tags=["Attribution"])
def bulk_set_product_rewards(request: BulkProductRewardRequest):
    basis = CommissionBasis(type=request.commission_type, value=request.commission_value, cap=request.cap)
    try:
        return ledger_service.bulk_set_product_rewards(request.product_ids, basis, is_enabled=request.is_enabled)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/products/stats", response_model=list[ProductAffiliateStats], tags=["Attribution"])
def product_stats(product_id: Optional[str] = None):
    return ledger_service.catalog.product_stats(product_id)


@app.post("/orders/completed", response_model=OrderAttributionResult, tags=["Orders"])
def order_completed(event: OrderCompletedEvent) -> OrderAttributionResult:
    return ledger_service.handle_order_completed(event)


@app.get("/commissions", response_model=list[CommissionRecord], tags=["Commissions"])
def list_commissions(actor_id: Optional[UUID] = None, status: Optional[CommissionStatus] = None):
    return ledger_service.commissions.list_commissions(actor_id, status)


@app.get("/commissions/{commission_id}", response_model=CommissionRecord, tags=["Commissions"])
def get_commission(commission_id: UUID) -> CommissionRecord:
    try:
        return ledger_service.commissions.get_commission(commission_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/commissions/{commission_id}/confirm", response_model=CommissionResponse, tags=["Commissions"])
def confirm_commission(commission_id: UUID, request: ConfirmCommissionRequest) -> CommissionResponse:
    try:
        return ledger_service.confirm_commission(commission_id, request.performed_by)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/commissions/{commission_id}/reverse", response_model=CommissionResponse, tags=["Commissions"])
def reverse_commission(commission_id: UUID, request: ReverseCommissionRequest) -> CommissionResponse:
    try:
        return ledger_service.reverse_commission(commission_id, request.reason, request.performed_by)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/commissions/{commission_id}/cancel", response_model=CommissionResponse, tags=["Commissions"])
def cancel_commission(commission_id: UUID, request: ReverseCommissionRequest) -> CommissionResponse:
    try:
        return ledger_service.cancel_commission(commission_id, request.reason, request.performed_by)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/payouts", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def request_payout(request: CreatePayoutRequest) -> PayoutResponse:
    try:
        return ledger_service.request_payout(request.actor_id, request.amount, request.method, request.payment_details)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/payouts/{payout_id}", response_model=PayoutRequest, tags=["Payouts"])
def get_payout(payout_id: UUID) -> PayoutRequest:
    try:
        return ledger_service.payouts.get_payout(payout_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/payouts/{payout_id}/process", response_model=PayoutResponse, tags=["Payouts"])
def process_payout(payout_id: UUID, request: ProcessPayoutRequest) -> PayoutResponse:
    try:
        return ledger_service.process_payout(
            payout_id, request.status, request.performed_by, request.settlement_reference, request.notes
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/users/{user_id}/wallet/adjust", response_model=MutationResult, tags=["Wallets"])
def adjust_wallet(user_id: UUID, request: WalletAdjustmentRequest) -> MutationResult:
    try:
        return ledger_service.adjust_wallet(user_id, request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/wallet", response_model=WalletView, tags=["Wallets"])
def get_wallet(user_id: UUID) -> WalletView:
    return ledger_service.get_wallet(user_id)


@app.get("/users/{user_id}/transactions", response_model=TransactionHistoryResponse, tags=["Wallets"])
def get_transactions(
    user_id: UUID, limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0)
) -> TransactionHistoryResponse:
    return ledger_service.get_transactions(user_id, limit, offset)


@app.get("/referral-settings", response_model=ReferralSettings, tags=["Referrals"])
def get_referral_settings() -> ReferralSettings:
    return ledger_service.get_referral_settings()


@app.put("/referral-settings", response_model=ReferralSettings, tags=["Referrals"])
def update_referral_settings(request: ReferralSettingsInput) -> ReferralSettings:
    try:
        return ledger_service.update_referral_settings(request)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/referral-codes", response_model=ReferralCode, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def issue_referral_code(request: IssueReferralCodeRequest) -> ReferralCode:
    try:
        return ledger_service.referrals.codes.issue_code(request.user_id, request.code)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/referral-codes/{code}/validate", response_model=ReferralCodeValidation, tags=["Referrals"])
def validate_referral_code(code: str, user_id: Optional[UUID] = None) -> ReferralCodeValidation:
    return ledger_service.referrals.codes.validate_code(code, user_id)


@app.post("/referrals/signup", response_model=ReferralTransaction, status_code=status.HTTP_201_CREATED,
          tags=["Referrals"])
def referral_signup(request: ReferralSignupRequest) -> ReferralTransaction:
    try:
        transaction, _ = ledger_service.register_referral_signup(request.referral_code, request.referee_id)
    except LedgerServiceError as e:
        raise _http_error(e)
    return transaction


@app.post("/referrals", response_model=ReferralTransaction, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def process_referral(attempt: ReferralAttempt) -> ReferralTransaction:
    try:
        transaction, _ = ledger_service.process_referral(attempt)
    except LedgerServiceError as e:
        raise _http_error(e)
    return transaction


@app.post("/referrals/evaluate", response_model=ReferralDecision, tags=["Referrals"])
def evaluate_referral(attempt: ReferralAttempt) -> ReferralDecision:
    """Dry run: report the flags a referral would raise without recording it."""
    return ledger_service.referrals.evaluate(attempt)


@app.get("/referrals/stats", response_model=ReferralStats, tags=["Referrals"])
def referral_stats() -> ReferralStats:
    return ledger_service.referrals.stats()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
