import logging
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .commissions import CommissionService
from .errors import (
    ActorNotFoundError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    PayoutNotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .models import (
    Bucket,
    Direction,
    EarningType,
    PayoutMethod,
    PayoutRequest,
    PayoutResponse,
    PayoutStatus,
)
from .notifications import NotificationHook, NotificationKind
from .storage import InMemoryStorage
from .utils import utcnow
from .wallet import WalletLedger

logger = logging.getLogger(__name__)

# pending -> processing -> completed | failed; a pending request may also be rejected outright.
PAYOUT_TRANSITIONS: dict[PayoutStatus, frozenset] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.PROCESSING, PayoutStatus.FAILED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.COMPLETED, PayoutStatus.FAILED}),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.FAILED: frozenset(),
}


class PayoutService:
    def __init__(
        self,
        storage: InMemoryStorage,
        wallet: WalletLedger,
        commissions: CommissionService,
        notifications: Optional[NotificationHook] = None,
        bucket: Bucket = Bucket.AFFILIATE_EARNINGS,
        min_amount: Decimal = Decimal("0"),
        clock: Callable = utcnow,
    ):
        self.storage = storage
        self.wallet = wallet
        self.commissions = commissions
        self.notifications = notifications or NotificationHook()
        self.bucket = Bucket(bucket)
        self.min_amount = Decimal(str(min_amount))
        self.clock = clock

    def request_payout(
        self,
        actor_id: UUID,
        amount,
        method: PayoutMethod = PayoutMethod.UPI,
        payment_details: Optional[dict] = None,
    ) -> PayoutResponse:
        """Open a withdrawal request. Funds stay in the wallet until the payout completes."""
        amount = self.wallet.validate_amount(self.bucket, amount)
        if amount < self.min_amount:
            raise ValidationError("amount", f"Minimum payout amount is {self.min_amount}")
        if self.storage.get("actors", actor_id) is None:
            raise ActorNotFoundError(f"Actor {actor_id} not found")

        balance = self.wallet.get_wallet(actor_id).balance(self.bucket)
        if amount > balance:
            raise InsufficientFundsError(actor_id, self.bucket.value, balance, amount)

        payout = PayoutRequest(
            id=uuid4(),
            actor_id=actor_id,
            amount=amount,
            bucket=self.bucket,
            method=PayoutMethod(method),
            payment_details=payment_details or {},
            requested_at=self.clock(),
        )
        with self.storage.unit_of_work() as uow:
            row = uow.update("payouts", payout.id, payout.model_dump(), expected_version=0)
        logger.info(f"Payout {payout.id} of {amount} requested by actor {actor_id} via {payout.method.value}")
        return PayoutResponse(payout=PayoutRequest(**row), message="Payout requested successfully")

    def process_payout(
        self,
        payout_id: UUID,
        status: PayoutStatus,
        performed_by: str,
        settlement_reference: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PayoutResponse:
        """Admin transition of a payout. Completion debits the wallet exactly once."""
        target = PayoutStatus(status)
        if not performed_by or not performed_by.strip():
            raise PermissionDeniedError("Only an administrator can process payouts")

        def operation():
            payout = self.get_payout(payout_id)
            if performed_by == str(payout.actor_id):
                raise PermissionDeniedError("Actors cannot process their own payout requests")
            if target not in PAYOUT_TRANSITIONS[payout.status]:
                raise InvalidStateTransitionError(
                    f"Cannot move payout from {payout.status.value} to {target.value}"
                )

            row = payout.model_dump()
            row.update(
                status=target,
                processed_by=performed_by,
                processed_at=self.clock(),
                settlement_reference=settlement_reference or payout.settlement_reference,
                notes=notes or payout.notes,
            )
            mutation = None
            wallet_snapshot = self.storage.get("wallets", payout.actor_id)
            with self.storage.unit_of_work() as uow:
                row = uow.update("payouts", payout_id, row, expected_version=payout.version)
                if target == PayoutStatus.COMPLETED:
                    description = f"Payout processed - {settlement_reference or payout_id}"
                    mutation = self.wallet.apply_mutation(
                        uow, wallet_snapshot, payout.actor_id, payout.bucket, Direction.DEBIT,
                        payout.amount, description, admin_id=performed_by,
                        reference_id=str(payout_id), reference_type="payout",
                    )
                    self.commissions.append_earning(
                        uow, payout.actor_id, EarningType.PAID, payout.amount, description,
                        payout_id=payout_id,
                    )
            return PayoutRequest(**row), mutation

        payout, mutation = self.wallet.run_with_retry(operation, f"processing payout {payout_id}")
        logger.info(f"Payout {payout_id} moved to {target.value} by {performed_by}")

        if target == PayoutStatus.COMPLETED:
            self.notifications.fire(
                NotificationKind.PAYOUT_COMPLETED, payout.actor_id, payout.amount,
                f"Your payout of {payout.amount} has been sent (ref {payout.settlement_reference or payout.id})",
            )
        return PayoutResponse(
            payout=payout,
            wallet_transaction=mutation.transaction if mutation else None,
            message=f"Payout {target.value}",
        )

    def get_payout(self, payout_id: UUID) -> PayoutRequest:
        row = self.storage.get("payouts", payout_id)
        if not row:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return PayoutRequest(**row)

    def list_payouts(
        self, actor_id: Optional[UUID] = None, status: Optional[PayoutStatus] = None
    ) -> list[PayoutRequest]:
        rows = self.storage.select(
            "payouts",
            lambda p: (actor_id is None or p["actor_id"] == actor_id)
            and (status is None or p["status"] == status),
        )
        payouts = [PayoutRequest(**r) for r in rows]
        payouts.sort(key=lambda p: p.requested_at, reverse=True)
        return payouts
