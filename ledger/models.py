from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class BucketKind(str, Enum):
    COIN = "coin"
    MONEY = "money"


class Bucket(str, Enum):
    LOYALTY_COINS = "loyalty_coins"
    AFFILIATE_EARNINGS = "affiliate_earnings"
    REFUND_CREDITS = "refund_credits"
    PROMOTIONAL_CREDITS = "promotional_credits"
    REFERRAL_REWARDS = "referral_rewards"

    @property
    def kind(self) -> BucketKind:
        return BUCKET_KINDS[self]

    @property
    def is_coin(self) -> bool:
        return self.kind == BucketKind.COIN


# Every Bucket member must appear here; checked at import time below.
BUCKET_KINDS: dict[Bucket, BucketKind] = {
    Bucket.LOYALTY_COINS: BucketKind.COIN,
    Bucket.AFFILIATE_EARNINGS: BucketKind.MONEY,
    Bucket.REFUND_CREDITS: BucketKind.MONEY,
    Bucket.PROMOTIONAL_CREDITS: BucketKind.MONEY,
    Bucket.REFERRAL_REWARDS: BucketKind.COIN,
}

BUCKET_DESCRIPTIONS: dict[Bucket, str] = {
    Bucket.LOYALTY_COINS: "Earned from purchases and activities",
    Bucket.AFFILIATE_EARNINGS: "Commission from affiliate marketing",
    Bucket.REFUND_CREDITS: "Credits from order refunds",
    Bucket.PROMOTIONAL_CREDITS: "Special promotional credits",
    Bucket.REFERRAL_REWARDS: "Coins earned by referring friends",
}

_unmapped = set(Bucket) - set(BUCKET_KINDS)
if _unmapped:
    raise RuntimeError(f"Buckets without a kind: {sorted(b.value for b in _unmapped)}")


class Direction(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class CommissionType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REVERSED = "reversed"


class EarningType(str, Enum):
    EARNED = "earned"
    REVERSED = "reversed"
    PAID = "paid"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutMethod(str, Enum):
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    MANUAL = "manual"


class DeviceClass(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class ResolutionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ABSENT = "absent"


class CommissionBasis(BaseModel):
    type: CommissionType
    value: Decimal
    cap: Optional[Decimal] = None

    @classmethod
    def fixed(cls, value) -> "CommissionBasis":
        return cls(type=CommissionType.FIXED, value=Decimal(str(value)))

    @classmethod
    def percentage(cls, rate, cap=None) -> "CommissionBasis":
        return cls(
            type=CommissionType.PERCENTAGE,
            value=Decimal(str(rate)),
            cap=Decimal(str(cap)) if cap is not None else None,
        )


class UserWallet(BaseModel):
    user_id: UUID
    loyalty_coins: int = 0
    affiliate_earnings: Decimal = Decimal("0.00")
    refund_credits: Decimal = Decimal("0.00")
    promotional_credits: Decimal = Decimal("0.00")
    referral_rewards: int = 0
    total_redeemable_amount: Decimal = Decimal("0.00")
    version: int = 0
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def balance(self, bucket: Bucket) -> Decimal:
        return Decimal(getattr(self, bucket.value))


class WalletTransaction(BaseModel):
    id: UUID
    user_id: UUID
    bucket: Bucket
    direction: Direction
    amount: Decimal
    old_balance: Decimal
    new_balance: Decimal
    reason: str
    admin_id: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MutationResult(BaseModel):
    old_balance: Decimal
    new_balance: Decimal
    wallet: UserWallet
    transaction: WalletTransaction


class WalletBreakdownItem(BaseModel):
    bucket: Bucket
    amount: Decimal
    value: Decimal
    description: str


class WalletView(BaseModel):
    wallet: UserWallet
    breakdown: list[WalletBreakdownItem]
    currency: str


class TransactionHistoryResponse(BaseModel):
    user_id: UUID
    transactions: list[WalletTransaction]
    total_count: int
    wallet: UserWallet


class Actor(BaseModel):
    id: UUID
    name: str
    code: str
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProductRewardSettings(BaseModel):
    product_id: str
    is_enabled: bool = True
    basis: CommissionBasis
    product_price: Optional[Decimal] = None
    updated_at: datetime


class ClickRecord(BaseModel):
    id: UUID
    actor_id: UUID
    product_id: str
    session_id: str
    referrer_url: Optional[str] = None
    device_class: DeviceClass = DeviceClass.DESKTOP
    browser: str = "Unknown"
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    clicked_at: datetime
    converted_to_order: bool = False
    order_id: Optional[str] = None


class ClickContext(BaseModel):
    referrer_url: Optional[str] = None
    user_agent: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


class AttributionToken(BaseModel):
    session_id: str
    code: str
    actor_id: UUID
    product_id: str
    created_at: datetime
    expires_at: datetime


class SessionResolution(BaseModel):
    status: ResolutionStatus
    token: Optional[AttributionToken] = None

    @property
    def is_active(self) -> bool:
        return self.status == ResolutionStatus.ACTIVE


class CommissionRecord(BaseModel):
    id: UUID
    idempotency_key: str
    actor_id: UUID
    order_id: str
    product_id: str
    basis: CommissionBasis
    unit_price: Decimal
    quantity: int
    amount: Decimal
    currency: str = "INR"
    status: CommissionStatus
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    version: int = 1

    model_config = ConfigDict(from_attributes=True)

    def can_confirm(self) -> bool:
        return self.status == CommissionStatus.PENDING

    def can_reverse(self) -> bool:
        return self.status in (CommissionStatus.PENDING, CommissionStatus.CONFIRMED)

    def can_cancel(self) -> bool:
        return self.status == CommissionStatus.PENDING


class EarningEntry(BaseModel):
    id: UUID
    actor_id: UUID
    transaction_type: EarningType
    amount: Decimal
    description: str
    commission_id: Optional[UUID] = None
    payout_id: Optional[UUID] = None
    order_id: Optional[str] = None
    created_at: datetime


class PayoutRequest(BaseModel):
    id: UUID
    actor_id: UUID
    amount: Decimal
    bucket: Bucket = Bucket.AFFILIATE_EARNINGS
    method: PayoutMethod
    payment_details: dict = Field(default_factory=dict)
    status: PayoutStatus = PayoutStatus.PENDING
    settlement_reference: Optional[str] = None
    notes: Optional[str] = None
    processed_by: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None
    version: int = 1

    model_config = ConfigDict(from_attributes=True)


class ReconciliationCase(BaseModel):
    id: UUID
    user_id: UUID
    bucket: Bucket
    commission_id: UUID
    amount_owed: Decimal
    available: Decimal
    reason: str
    created_at: datetime
    resolved: bool = False
    attempts: int = 1
    updated_at: Optional[datetime] = None


class ActorStats(BaseModel):
    actor_id: UUID
    total_clicks: int
    converted_clicks: int
    total_orders: int
    pending_commission: Decimal
    confirmed_commission: Decimal
    paid_commission: Decimal


class ProductAffiliateStats(BaseModel):
    product_id: str
    product_price: Optional[Decimal] = None
    total_orders: int = 0
    confirmed_orders: int = 0
    total_commission: Decimal = Decimal("0.00")
    confirmed_commission: Decimal = Decimal("0.00")


class OrderLine(BaseModel):
    product_id: str
    unit_price: Decimal
    quantity: int = 1


class OrderCompletedEvent(BaseModel):
    order_id: str
    actor_code: Optional[str] = None
    session_id: Optional[str] = None
    buyer_id: Optional[UUID] = None
    lines: list[OrderLine]

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "order_id": "ORD-1001",
            "session_id": "sess_5f0c2b1e9a7d4c3b",
            "lines": [{"product_id": "prod-42", "unit_price": "1000.00", "quantity": 1}],
        }
    })


class OrderAttributionResult(BaseModel):
    order_id: str
    attributed: bool
    resolution: ResolutionStatus
    actor_id: Optional[UUID] = None
    commissions: list[CommissionRecord] = Field(default_factory=list)
    message: str


# Request / response models for the admin API

class RegisterActorRequest(BaseModel):
    name: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)


class TrackClickRequest(ClickContext):
    code: str
    product_id: str


class ProductRewardRequest(BaseModel):
    is_enabled: bool = True
    commission_type: CommissionType
    commission_value: Decimal
    cap: Optional[Decimal] = None
    product_price: Optional[Decimal] = None


class BulkProductRewardRequest(BaseModel):
    product_ids: list[str] = Field(..., min_length=1)
    is_enabled: bool = True
    commission_type: CommissionType
    commission_value: Decimal
    cap: Optional[Decimal] = None


class ConfirmCommissionRequest(BaseModel):
    performed_by: Optional[str] = None


class ReverseCommissionRequest(BaseModel):
    reason: str = Field(..., description="Reason for reversal")
    performed_by: Optional[str] = None


class CommissionResponse(BaseModel):
    commission: CommissionRecord
    wallet_transaction: Optional[WalletTransaction] = None
    message: str


class CreatePayoutRequest(BaseModel):
    actor_id: UUID
    amount: Decimal
    method: PayoutMethod = PayoutMethod.UPI
    payment_details: dict = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "actor_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": 250.00,
            "method": "upi",
            "payment_details": {"upi_id": "affiliate@upi"},
        }
    })


class ProcessPayoutRequest(BaseModel):
    status: PayoutStatus
    performed_by: str = Field(..., min_length=1)
    settlement_reference: Optional[str] = None
    notes: Optional[str] = None


class PayoutResponse(BaseModel):
    payout: PayoutRequest
    wallet_transaction: Optional[WalletTransaction] = None
    message: str


class WalletAdjustmentRequest(BaseModel):
    bucket: Bucket
    direction: Direction
    amount: Decimal
    reason: str = Field(..., min_length=1)
    admin_id: str = Field(..., min_length=1)
