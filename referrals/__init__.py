"""
Referral Policy Package

Provides referral settings validation, condition-based policy evaluation,
referral codes and referral processing (in one step, or at signup then on
the first order) with fraud flags kept for admin review.
"""

from .models import (
    ReferralAttempt,
    ReferralDecision,
    ReferralFlag,
    ReferralSettings,
    ReferralSettingsInput,
    ReferralStatus,
)
from .codes import ReferralCodeRegistry
from .policy_engine import ReferralPolicyEngine
from .settings import ReferralSettingsStore, validate_settings

__all__ = [
    "ReferralAttempt",
    "ReferralDecision",
    "ReferralFlag",
    "ReferralSettings",
    "ReferralSettingsInput",
    "ReferralStatus",
    "ReferralCodeRegistry",
    "ReferralPolicyEngine",
    "ReferralSettingsStore",
    "validate_settings",
]
