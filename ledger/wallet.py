import logging
from decimal import Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID, uuid4

from .config import settings
from .errors import InsufficientFundsError, StorageConflictError, ValidationError
from .models import (
    Bucket,
    BucketKind,
    BUCKET_DESCRIPTIONS,
    Direction,
    MutationResult,
    TransactionHistoryResponse,
    UserWallet,
    WalletBreakdownItem,
    WalletTransaction,
    WalletView,
)
from .storage import InMemoryStorage, UnitOfWork
from .utils import round_money, to_decimal, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WalletLedger:
    """Multi-bucket wallet with atomic credit/debit and an append-only transaction log.

    Each mutation reads the wallet row without holding the store lock, then
    writes the new bucket value, the recomputed total and the transaction row
    in one unit of work guarded by the row version. A concurrent writer bumps
    the version, the stale write raises ``StorageConflictError`` and the whole
    read-compute-write cycle is retried.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        coin_rate: Optional[Decimal] = None,
        max_retries: Optional[int] = None,
        clock: Callable = utcnow,
    ):
        self.storage = storage
        self.coin_rate = Decimal(str(coin_rate)) if coin_rate is not None else settings.COIN_TO_CURRENCY_RATE
        self.max_retries = max_retries or settings.MAX_MUTATION_RETRIES
        self.clock = clock

    def mutate(
        self,
        user_id: UUID,
        bucket: Bucket,
        direction: Direction,
        amount,
        reason: str,
        admin_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> MutationResult:
        bucket = Bucket(bucket)
        direction = Direction(direction)
        amount = self.validate_amount(bucket, amount)
        if not reason or not reason.strip():
            raise ValidationError("reason", "a reason is required for every wallet mutation")

        def operation() -> MutationResult:
            snapshot = self.storage.get("wallets", user_id)
            with self.storage.unit_of_work() as uow:
                return self.apply_mutation(
                    uow, snapshot, user_id, bucket, direction, amount, reason,
                    admin_id=admin_id, reference_id=reference_id, reference_type=reference_type,
                )

        result = self.run_with_retry(operation, f"{direction.value} {amount} {bucket.value} for user {user_id}")
        logger.info(
            f"Wallet {direction.value} of {amount} on {bucket.value} for user {user_id}: "
            f"{result.old_balance} -> {result.new_balance} ({reason})"
        )
        return result

    def run_with_retry(self, operation: Callable[[], T], description: str) -> T:
        for attempt in range(1, self.max_retries + 1):
            try:
                return operation()
            except StorageConflictError:
                if attempt == self.max_retries:
                    logger.error(f"Giving up on {description} after {attempt} conflicting attempts")
                    raise
                logger.warning(f"Storage conflict on {description}, retrying (attempt {attempt}/{self.max_retries})")
        raise StorageConflictError(f"No attempt made for {description}")

    def apply_mutation(
        self,
        uow: UnitOfWork,
        snapshot: Optional[dict],
        user_id: UUID,
        bucket: Bucket,
        direction: Direction,
        amount: Decimal,
        reason: str,
        admin_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> MutationResult:
        """Stage a bucket mutation inside ``uow``, based on the ``snapshot`` read earlier.

        Raises InsufficientFundsError before staging anything when a debit
        exceeds the current balance.
        """
        now = self.clock()
        row = snapshot or self._empty_wallet_row(user_id, now)
        expected_version = row.get("version", 0) if snapshot else 0

        current = Decimal(row[bucket.value])
        if direction == Direction.DEBIT and amount > current:
            raise InsufficientFundsError(user_id, bucket.value, current, amount)
        new_balance = current + amount if direction == Direction.CREDIT else current - amount

        updated = dict(row)
        updated[bucket.value] = int(new_balance) if bucket.is_coin else round_money(new_balance)
        updated["total_redeemable_amount"] = self.recompute_total(updated)
        updated["last_updated"] = now
        updated = uow.update("wallets", user_id, updated, expected_version)

        txn_id = uuid4()
        txn = {
            "id": txn_id,
            "user_id": user_id,
            "bucket": bucket,
            "direction": direction,
            "amount": amount,
            "old_balance": current,
            "new_balance": Decimal(updated[bucket.value]),
            "reason": reason,
            "admin_id": admin_id,
            "reference_id": reference_id,
            "reference_type": reference_type,
            "created_at": now,
        }
        uow.insert("wallet_transactions", txn_id, txn)

        return MutationResult(
            old_balance=current,
            new_balance=Decimal(updated[bucket.value]),
            wallet=UserWallet(**updated),
            transaction=WalletTransaction(**txn),
        )

    def zero_wallet(self, user_id: UUID, reason: str, admin_id: str) -> list[WalletTransaction]:
        """Debit every non-empty bucket to zero; wallets are never deleted."""
        if not reason or not reason.strip():
            raise ValidationError("reason", "a reason is required to zero a wallet")

        def operation() -> list[WalletTransaction]:
            snapshot = self.storage.get("wallets", user_id)
            if snapshot is None:
                return []
            transactions = []
            with self.storage.unit_of_work() as uow:
                row = snapshot
                for bucket in Bucket:
                    balance = Decimal(row[bucket.value])
                    if balance <= 0:
                        continue
                    result = self.apply_mutation(
                        uow, row, user_id, bucket, Direction.DEBIT, balance, reason,
                        admin_id=admin_id, reference_type="wallet_reset",
                    )
                    row = result.wallet.model_dump()
                    transactions.append(result.transaction)
            return transactions

        transactions = self.run_with_retry(operation, f"zeroing wallet of user {user_id}")
        logger.info(f"Zeroed {len(transactions)} buckets for user {user_id} by {admin_id}: {reason}")
        return transactions

    def validate_amount(self, bucket: Bucket, amount) -> Decimal:
        amount = to_decimal(amount, "amount")
        if amount <= 0:
            raise ValidationError("amount", "must be greater than zero")
        if bucket.kind == BucketKind.COIN:
            if amount != amount.to_integral_value():
                raise ValidationError("amount", f"{bucket.value} only accepts whole coins")
            return Decimal(int(amount))
        if amount != round_money(amount):
            raise ValidationError("amount", "must not have more than two decimal places")
        return amount

    def recompute_total(self, row: dict) -> Decimal:
        total = Decimal("0")
        for bucket in Bucket:
            value = Decimal(row.get(bucket.value) or 0)
            total += value * self.coin_rate if bucket.is_coin else value
        return round_money(total)

    def get_wallet(self, user_id: UUID) -> UserWallet:
        row = self.storage.get("wallets", user_id)
        if row is None:
            return UserWallet(user_id=user_id)
        return UserWallet(**row)

    def get_wallet_view(self, user_id: UUID) -> WalletView:
        wallet = self.get_wallet(user_id)
        breakdown = []
        for bucket in Bucket:
            amount = wallet.balance(bucket)
            breakdown.append(WalletBreakdownItem(
                bucket=bucket,
                amount=amount,
                value=round_money(amount * self.coin_rate) if bucket.is_coin else amount,
                description=BUCKET_DESCRIPTIONS[bucket],
            ))
        return WalletView(wallet=wallet, breakdown=breakdown, currency=settings.CURRENCY)

    def get_transactions(self, user_id: UUID, limit: int = 50, offset: int = 0) -> TransactionHistoryResponse:
        rows = self.storage.select("wallet_transactions", lambda t: t["user_id"] == user_id)
        rows.reverse()
        rows.sort(key=lambda t: t["created_at"], reverse=True)
        transactions = [WalletTransaction(**t) for t in rows]

        return TransactionHistoryResponse(
            user_id=user_id,
            transactions=transactions[offset:offset + limit],
            total_count=len(transactions),
            wallet=self.get_wallet(user_id),
        )

    def _empty_wallet_row(self, user_id: UUID, now) -> dict:
        return UserWallet(user_id=user_id, created_at=now, last_updated=now).model_dump()
