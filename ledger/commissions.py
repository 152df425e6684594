import logging
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .errors import (
    CommissionNotFoundError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    ValidationError,
)
from .models import (
    Bucket,
    CommissionBasis,
    CommissionRecord,
    CommissionResponse,
    CommissionStatus,
    CommissionType,
    Direction,
    EarningEntry,
    EarningType,
    OrderLine,
    ReconciliationCase,
)
from .notifications import NotificationHook, NotificationKind
from .storage import InMemoryStorage, UnitOfWork
from .utils import round_money, to_decimal, utcnow
from .wallet import WalletLedger

logger = logging.getLogger(__name__)

COMMISSION_BUCKET = Bucket.AFFILIATE_EARNINGS


def compute(basis: CommissionBasis, unit_price, quantity) -> Decimal:
    """Reward amount for one order line.

    Fixed bases pay ``value`` per unit. Percentage bases pay ``value`` percent
    of the line total, limited by ``cap`` when one is set. Rounding to the
    cent happens once, on the final amount.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity", "must be a whole number")
    if quantity < 0:
        raise ValidationError("quantity", "must not be negative")
    unit_price = to_decimal(unit_price, "unit_price")
    if unit_price < 0:
        raise ValidationError("unit_price", "must not be negative")
    value = to_decimal(basis.value, "basis.value")
    if value < 0:
        raise ValidationError("basis.value", "must not be negative")

    if basis.type == CommissionType.FIXED:
        amount = value * quantity
    else:
        amount = unit_price * quantity * value / Decimal(100)
        if basis.cap is not None:
            cap = to_decimal(basis.cap, "basis.cap")
            if cap < 0:
                raise ValidationError("basis.cap", "must not be negative")
            amount = min(amount, cap)
    return round_money(amount)


def validate_basis(basis: CommissionBasis, product_price: Optional[Decimal] = None) -> None:
    """Admin-side checks for a product's reward configuration."""
    value = to_decimal(basis.value, "commission_value")
    if value <= 0:
        raise ValidationError("commission_value", "Commission value must be greater than 0")
    if basis.cap is not None and to_decimal(basis.cap, "cap") <= 0:
        raise ValidationError("cap", "Commission cap must be greater than 0")

    price = to_decimal(product_price, "product_price") if product_price is not None else None
    if basis.type == CommissionType.PERCENTAGE:
        if value > 100:
            raise ValidationError("commission_value", "Percentage commission cannot exceed 100%")
        if price is not None and price * value / 100 >= price > 0:
            raise ValidationError("commission_value", "Commission cannot be equal to or greater than product price")
    elif price is not None and value >= price:
        raise ValidationError("commission_value", "Fixed commission cannot be equal to or greater than product price")


class CommissionService:
    """Commission lifecycle: pending -> confirmed, or pending/confirmed -> reversed, or pending -> cancelled."""

    def __init__(
        self,
        storage: InMemoryStorage,
        wallet: WalletLedger,
        notifications: Optional[NotificationHook] = None,
        clock: Callable = utcnow,
        currency: str = "INR",
    ):
        self.storage = storage
        self.wallet = wallet
        self.notifications = notifications or NotificationHook()
        self.clock = clock
        self.currency = currency

    def stage_commission(
        self,
        uow: UnitOfWork,
        wallet_snapshot: Optional[dict],
        actor_id: UUID,
        order_id: str,
        line: OrderLine,
        basis: CommissionBasis,
        idempotency_key: str,
    ):
        """Stage a pending commission, its optimistic wallet credit and the earned trail entry.

        Returns ``(record, mutation)`` or ``None`` when the line earns nothing.
        """
        amount = compute(basis, line.unit_price, line.quantity)
        if amount <= 0:
            return None

        now = self.clock()
        commission_id = uuid4()
        record = {
            "id": commission_id,
            "idempotency_key": idempotency_key,
            "actor_id": actor_id,
            "order_id": order_id,
            "product_id": line.product_id,
            "basis": basis.model_dump(),
            "unit_price": line.unit_price,
            "quantity": line.quantity,
            "amount": amount,
            "currency": self.currency,
            "status": CommissionStatus.PENDING,
            "created_at": now,
            "confirmed_at": None,
        }
        record = uow.update("commissions", commission_id, record, expected_version=0)
        uow.insert("idempotency_index", idempotency_key, commission_id)

        mutation = self.wallet.apply_mutation(
            uow, wallet_snapshot, actor_id, COMMISSION_BUCKET, Direction.CREDIT, amount,
            f"Commission for order {order_id}",
            reference_id=str(commission_id), reference_type="commission",
        )
        self.append_earning(
            uow, actor_id, EarningType.EARNED, amount, f"Commission for order {order_id}",
            commission_id=commission_id, order_id=order_id,
        )
        return CommissionRecord(**record), mutation

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[CommissionRecord]:
        commission_id = self.storage.get("idempotency_index", idempotency_key)
        if commission_id is None:
            return None
        return self.get_commission(commission_id)

    def get_commission(self, commission_id: UUID) -> CommissionRecord:
        row = self.storage.get("commissions", commission_id)
        if not row:
            raise CommissionNotFoundError(f"Commission {commission_id} not found")
        return CommissionRecord(**row)

    def list_commissions(
        self, actor_id: Optional[UUID] = None, status: Optional[CommissionStatus] = None
    ) -> list[CommissionRecord]:
        rows = self.storage.select(
            "commissions",
            lambda c: (actor_id is None or c["actor_id"] == actor_id)
            and (status is None or c["status"] == status),
        )
        records = [CommissionRecord(**r) for r in rows]
        records.sort(key=lambda c: c.created_at, reverse=True)
        return records

    def confirm(self, commission_id: UUID, performed_by: Optional[str] = None) -> CommissionResponse:
        """Mark a pending commission as eligible for payout. The wallet was credited at creation."""

        def operation() -> CommissionRecord:
            record = self.get_commission(commission_id)
            if not record.can_confirm():
                raise InvalidStateTransitionError(f"Cannot confirm commission in {record.status.value} state")
            row = record.model_dump()
            row["status"] = CommissionStatus.CONFIRMED
            row["confirmed_at"] = self.clock()
            with self.storage.unit_of_work() as uow:
                row = uow.update("commissions", commission_id, row, expected_version=record.version)
            return CommissionRecord(**row)

        confirmed = self.wallet.run_with_retry(operation, f"confirming commission {commission_id}")
        logger.info(f"Commission {commission_id} confirmed by {performed_by or 'system'}")

        self.notifications.fire(
            NotificationKind.COMMISSION_CONFIRMED, confirmed.actor_id, confirmed.amount,
            f"Your commission of {confirmed.currency} {confirmed.amount} for order {confirmed.order_id} is confirmed",
        )
        return CommissionResponse(commission=confirmed, message="Commission confirmed successfully")

    def reverse(self, commission_id: UUID, reason: str, performed_by: Optional[str] = None) -> CommissionResponse:
        return self._compensate(commission_id, CommissionStatus.REVERSED, reason, performed_by)

    def cancel(self, commission_id: UUID, reason: str, performed_by: Optional[str] = None) -> CommissionResponse:
        return self._compensate(commission_id, CommissionStatus.CANCELLED, reason, performed_by)

    def _compensate(
        self, commission_id: UUID, target: CommissionStatus, reason: str, performed_by: Optional[str]
    ) -> CommissionResponse:
        """Move a commission to a terminal non-paying state and debit what was credited.

        A debit that would take the bucket below zero blocks the transition;
        the commission keeps its state and a reconciliation case is opened.
        """
        if not reason or not reason.strip():
            raise ValidationError("reason", "a reason is required")
        allowed = CommissionRecord.can_reverse if target == CommissionStatus.REVERSED else CommissionRecord.can_cancel
        verb = "reverse" if target == CommissionStatus.REVERSED else "cancel"

        def operation():
            record = self.get_commission(commission_id)
            if not allowed(record):
                raise InvalidStateTransitionError(f"Cannot {verb} commission in {record.status.value} state")
            wallet_snapshot = self.storage.get("wallets", record.actor_id)
            row = record.model_dump()
            row["status"] = target
            try:
                with self.storage.unit_of_work() as uow:
                    row = uow.update("commissions", commission_id, row, expected_version=record.version)
                    mutation = self.wallet.apply_mutation(
                        uow, wallet_snapshot, record.actor_id, COMMISSION_BUCKET, Direction.DEBIT,
                        record.amount, f"Commission {target.value}: {reason}",
                        admin_id=performed_by, reference_id=str(commission_id),
                        reference_type=f"commission_{target.value}",
                    )
                    self.append_earning(
                        uow, record.actor_id, EarningType.REVERSED, record.amount,
                        f"Commission {target.value}: {reason}",
                        commission_id=commission_id, order_id=record.order_id,
                    )
            except InsufficientFundsError as e:
                self._open_reconciliation(record, e, reason)
                raise
            return CommissionRecord(**row), mutation

        record, mutation = self.wallet.run_with_retry(operation, f"{verb} of commission {commission_id}")
        logger.info(f"Commission {commission_id} {target.value} by {performed_by or 'system'}: {reason}")
        return CommissionResponse(
            commission=record,
            wallet_transaction=mutation.transaction,
            message=f"Commission {target.value} successfully",
        )

    def _open_reconciliation(self, record: CommissionRecord, error: InsufficientFundsError, reason: str) -> None:
        """Record what a blocked compensation still owes; one open case per commission."""
        with self.storage.unit_of_work() as uow:
            open_cases = uow.select(
                "reconciliation_cases",
                lambda r: r["commission_id"] == record.id and not r["resolved"],
            )
            if open_cases:
                case = ReconciliationCase(**open_cases[0])
                case.attempts += 1
                case.available = error.available
                case.reason = reason
                case.updated_at = self.clock()
            else:
                case = ReconciliationCase(
                    id=uuid4(),
                    user_id=record.actor_id,
                    bucket=COMMISSION_BUCKET,
                    commission_id=record.id,
                    amount_owed=record.amount,
                    available=error.available,
                    reason=reason,
                    created_at=self.clock(),
                )
            uow.put("reconciliation_cases", case.id, case.model_dump())
        logger.warning(
            f"Commission {record.id} compensation blocked: actor {record.actor_id} holds "
            f"{error.available}, owes {record.amount}. Reconciliation case {case.id} "
            f"(attempt {case.attempts})"
        )

    def list_reconciliation_cases(self, include_resolved: bool = False) -> list[ReconciliationCase]:
        rows = self.storage.select("reconciliation_cases", lambda r: include_resolved or not r["resolved"])
        return [ReconciliationCase(**r) for r in rows]

    def list_earnings(self, actor_id: UUID) -> list[EarningEntry]:
        rows = self.storage.select("earnings", lambda e: e["actor_id"] == actor_id)
        return [EarningEntry(**r) for r in rows]

    def append_earning(
        self,
        uow: UnitOfWork,
        actor_id: UUID,
        transaction_type: EarningType,
        amount: Decimal,
        description: str,
        commission_id: Optional[UUID] = None,
        payout_id: Optional[UUID] = None,
        order_id: Optional[str] = None,
    ) -> EarningEntry:
        entry = EarningEntry(
            id=uuid4(),
            actor_id=actor_id,
            transaction_type=transaction_type,
            amount=amount,
            description=description,
            commission_id=commission_id,
            payout_id=payout_id,
            order_id=order_id,
            created_at=self.clock(),
        )
        uow.insert("earnings", entry.id, entry.model_dump())
        return entry
