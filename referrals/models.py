from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FLAGGED = "flagged"


class ReferralFlag(str, Enum):
    REFERRALS_DISABLED = "referrals_disabled"
    SELF_REFERRAL = "self_referral"
    BELOW_MINIMUM_ORDER_VALUE = "below_minimum_order_value"
    NOT_FIRST_ORDER = "not_first_order"
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    MONTHLY_LIMIT_REACHED = "monthly_limit_reached"
    USER_LIMIT_REACHED = "user_limit_reached"
    REFEREE_ALREADY_REFERRED = "referee_already_referred"


class ReferralSettingsInput(BaseModel):
    is_enabled: bool = False
    referrer_reward_coins: int = 0
    referee_welcome_coins: int = 0
    minimum_order_value: Decimal = Decimal("0")
    max_referrals_per_user: int = 0
    daily_referral_limit: int = 0
    monthly_referral_limit: int = 0
    require_first_order: bool = True
    allow_self_referral: bool = False

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "is_enabled": True,
            "referrer_reward_coins": 100,
            "referee_welcome_coins": 50,
            "minimum_order_value": 500.00,
            "max_referrals_per_user": 0,
            "daily_referral_limit": 3,
            "monthly_referral_limit": 20,
            "require_first_order": True,
            "allow_self_referral": False,
        }
    })


class ReferralSettings(ReferralSettingsInput):
    id: UUID
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferralAttempt(BaseModel):
    referrer_id: UUID
    referee_id: UUID
    referral_code: str
    order_id: Optional[str] = None
    order_value: Optional[Decimal] = None
    is_first_order: bool = True


class ReferralUsage(BaseModel):
    today: int = 0
    this_month: int = 0
    total: int = 0
    referee_already_referred: bool = False


class ReferralDecision(BaseModel):
    allowed: bool
    flags: list[ReferralFlag] = Field(default_factory=list)
    messages: list[str] = Field(default_factory=list)


class ReferralTransaction(BaseModel):
    id: UUID
    referrer_id: UUID
    referee_id: UUID
    referral_code: str
    order_id: Optional[str] = None
    order_value: Optional[Decimal] = None
    status: ReferralStatus
    referrer_coins: int = 0
    referee_coins: int = 0
    fraud_flags: list[ReferralFlag] = Field(default_factory=list)
    created_at: datetime
    completed_at: Optional[datetime] = None


class ReferralStats(BaseModel):
    total_referrals: int
    successful_referrals: int
    flagged_referrals: int
    pending_referrals: int = 0
    total_coins_issued: int
    conversion_rate: float


class ReferralCode(BaseModel):
    code: str
    user_id: UUID
    is_active: bool = True
    created_at: datetime


class ReferralCodeValidation(BaseModel):
    valid: bool
    referrer_id: Optional[UUID] = None
    error: Optional[str] = None


class IssueReferralCodeRequest(BaseModel):
    user_id: UUID
    code: Optional[str] = None


class ReferralSignupRequest(BaseModel):
    referral_code: str = Field(..., min_length=1)
    referee_id: UUID
