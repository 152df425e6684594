"""
Reward Attribution and Wallet Ledger

This package provides:
- Multi-bucket user wallets with atomic credit/debit
- An append-only wallet transaction log
- Click attribution with single-use, time-bounded sessions
- Commission calculation and lifecycle: pending → confirmed / cancelled / reversed
- Payout workflow: pending → processing → completed / failed
- Idempotent commission creation per order and product

The wired-up facade lives in ``ledger.service.LedgerService``.
"""

from .models import (
    Bucket,
    Direction,
    CommissionBasis,
    CommissionStatus,
    PayoutStatus,
    UserWallet,
    WalletTransaction,
    CommissionRecord,
    PayoutRequest,
)
from .errors import (
    LedgerServiceError,
    ValidationError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    StorageConflictError,
    NotFoundError,
)
from .commissions import compute
from .storage import InMemoryStorage
from .wallet import WalletLedger

__all__ = [
    "Bucket",
    "Direction",
    "CommissionBasis",
    "CommissionStatus",
    "PayoutStatus",
    "UserWallet",
    "WalletTransaction",
    "CommissionRecord",
    "PayoutRequest",
    "LedgerServiceError",
    "ValidationError",
    "InsufficientFundsError",
    "InvalidStateTransitionError",
    "StorageConflictError",
    "NotFoundError",
    "compute",
    "InMemoryStorage",
    "WalletLedger",
]
