import logging
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from ledger.errors import ValidationError
from ledger.models import Bucket, Direction
from ledger.storage import UnitOfWork
from ledger.utils import utcnow
from ledger.wallet import WalletLedger

from .codes import ReferralCodeRegistry
from .models import (
    ReferralAttempt,
    ReferralDecision,
    ReferralSettings,
    ReferralStats,
    ReferralStatus,
    ReferralTransaction,
    ReferralUsage,
)
from .policy_engine import ReferralPolicyEngine
from .settings import ReferralSettingsStore

logger = logging.getLogger(__name__)

REFERRER_BUCKET = Bucket.REFERRAL_REWARDS
REFEREE_BUCKET = Bucket.LOYALTY_COINS


class ReferralService:
    """Records referrals and pays both sides once the policy allows it.

    A referral is either processed in one go (``process_referral``) or in two
    stages: ``register_signup`` when the referee joins with a code, then
    ``complete_for_order`` when their first order completes.
    """

    def __init__(
        self,
        wallet: WalletLedger,
        settings_store: ReferralSettingsStore,
        engine: Optional[ReferralPolicyEngine] = None,
        clock: Callable = utcnow,
        codes: Optional[ReferralCodeRegistry] = None,
    ):
        self.wallet = wallet
        self.storage = wallet.storage
        self.settings_store = settings_store
        self.engine = engine or ReferralPolicyEngine()
        self.clock = clock
        self.codes = codes or ReferralCodeRegistry(self.storage, clock=clock)

    def usage_for(self, referrer_id: UUID, referee_id: UUID, uow: Optional[UnitOfWork] = None,
                  exclude: Optional[UUID] = None) -> ReferralUsage:
        """Completed referrals of the referrer today, this month and overall (UTC).

        A referee counts as referred once they have a completed or pending
        referral other than ``exclude``.
        """
        source = uow or self.storage
        now = self.clock()
        rows = source.select("referral_transactions", lambda t: t["id"] != exclude)
        completed = [t for t in rows if t["status"] == ReferralStatus.COMPLETED]
        mine = [t for t in completed if t["referrer_id"] == referrer_id]
        return ReferralUsage(
            today=sum(1 for t in mine if t["created_at"].date() == now.date()),
            this_month=sum(
                1 for t in mine
                if (t["created_at"].year, t["created_at"].month) == (now.year, now.month)
            ),
            total=len(mine),
            referee_already_referred=any(
                t["referee_id"] == referee_id and t["status"] in (ReferralStatus.COMPLETED, ReferralStatus.PENDING)
                for t in rows
            ),
        )

    def evaluate(self, attempt: ReferralAttempt) -> ReferralDecision:
        settings = self.settings_store.get_active()
        return self.engine.evaluate(attempt, settings, self.usage_for(attempt.referrer_id, attempt.referee_id))

    def process_referral(self, attempt: ReferralAttempt) -> tuple[ReferralTransaction, ReferralDecision]:
        """Evaluate and record a referral; blocked referrals are kept with their flags for review."""
        if attempt.order_value is None:
            raise ValidationError("order_value", "is required to complete a referral")
        settings = self.settings_store.get_active()

        def operation():
            with self.storage.unit_of_work() as uow:
                usage = self.usage_for(attempt.referrer_id, attempt.referee_id, uow)
                decision = self.engine.evaluate(attempt, settings, usage)
                status = ReferralStatus.COMPLETED if decision.allowed else ReferralStatus.FLAGGED
                txn = self._new_transaction(attempt, settings, decision, status)
                uow.insert("referral_transactions", txn.id, txn.model_dump())
                self._pay(uow, txn)
            return txn, decision

        txn, decision = self.wallet.run_with_retry(operation, f"referral {attempt.referrer_id} -> {attempt.referee_id}")
        self._log_outcome(txn, decision)
        return txn, decision

    def register_signup(self, referral_code: str, referee_id: UUID) -> tuple[ReferralTransaction, ReferralDecision]:
        """First stage: the referee joined with ``referral_code``.

        With ``require_first_order`` the referral stays pending until the
        referee's first order; otherwise both sides are paid right away.
        """
        validation = self.codes.validate_code(referral_code)
        if not validation.valid:
            raise ValidationError("referral_code", validation.error)
        attempt = ReferralAttempt(
            referrer_id=validation.referrer_id,
            referee_id=referee_id,
            referral_code=referral_code.strip().upper(),
        )
        settings = self.settings_store.get_active()

        def operation():
            with self.storage.unit_of_work() as uow:
                usage = self.usage_for(attempt.referrer_id, referee_id, uow)
                decision = self.engine.evaluate(attempt, settings, usage)
                if not decision.allowed:
                    status = ReferralStatus.FLAGGED
                elif settings.require_first_order:
                    status = ReferralStatus.PENDING
                else:
                    status = ReferralStatus.COMPLETED
                txn = self._new_transaction(attempt, settings, decision, status)
                uow.insert("referral_transactions", txn.id, txn.model_dump())
                self._pay(uow, txn)
            return txn, decision

        txn, decision = self.wallet.run_with_retry(operation, f"referral signup of {referee_id}")
        self._log_outcome(txn, decision)
        return txn, decision

    def complete_for_order(self, referee_id: UUID, order_id: str,
                           order_value: Decimal) -> Optional[tuple[ReferralTransaction, ReferralDecision]]:
        """Second stage: settle the referee's pending referral against a completed order.

        Returns None when the referee has nothing pending. An order the policy
        rejects (below the minimum value, over a limit) flags the referral.
        """
        settings = self.settings_store.get_active()

        def operation():
            with self.storage.unit_of_work() as uow:
                pending = uow.select(
                    "referral_transactions",
                    lambda t: t["referee_id"] == referee_id and t["status"] == ReferralStatus.PENDING,
                )
                if not pending:
                    return None
                row = pending[0]
                attempt = ReferralAttempt(
                    referrer_id=row["referrer_id"],
                    referee_id=referee_id,
                    referral_code=row["referral_code"],
                    order_id=order_id,
                    order_value=order_value,
                )
                usage = self.usage_for(attempt.referrer_id, referee_id, uow, exclude=row["id"])
                decision = self.engine.evaluate(attempt, settings, usage)
                completed = self._new_transaction(
                    attempt, settings, decision,
                    ReferralStatus.COMPLETED if decision.allowed else ReferralStatus.FLAGGED,
                )
                txn = completed.model_copy(update={"id": row["id"], "created_at": row["created_at"]})
                uow.put("referral_transactions", txn.id, txn.model_dump())
                self._pay(uow, txn)
            return txn, decision

        outcome = self.wallet.run_with_retry(operation, f"referral completion for order {order_id}")
        if outcome is not None:
            self._log_outcome(*outcome)
        return outcome

    def _new_transaction(self, attempt: ReferralAttempt, settings: ReferralSettings,
                         decision: ReferralDecision, status: ReferralStatus) -> ReferralTransaction:
        now = self.clock()
        paid = status == ReferralStatus.COMPLETED
        return ReferralTransaction(
            id=uuid4(),
            referrer_id=attempt.referrer_id,
            referee_id=attempt.referee_id,
            referral_code=attempt.referral_code,
            order_id=attempt.order_id,
            order_value=attempt.order_value,
            status=status,
            referrer_coins=settings.referrer_reward_coins if paid else 0,
            referee_coins=settings.referee_welcome_coins if paid else 0,
            fraud_flags=decision.flags,
            created_at=now,
            completed_at=now if paid else None,
        )

    def _pay(self, uow: UnitOfWork, txn: ReferralTransaction) -> None:
        if txn.status != ReferralStatus.COMPLETED:
            return
        self._credit(uow, txn.referrer_id, REFERRER_BUCKET, txn.referrer_coins,
                     f"Referral reward for inviting {txn.referee_id}", txn.id)
        self._credit(uow, txn.referee_id, REFEREE_BUCKET, txn.referee_coins,
                     f"Welcome bonus for joining with code {txn.referral_code}", txn.id)

    def _log_outcome(self, txn: ReferralTransaction, decision: ReferralDecision) -> None:
        if txn.status == ReferralStatus.COMPLETED:
            logger.info(
                f"Referral {txn.id} completed: referrer {txn.referrer_id} +{txn.referrer_coins}, "
                f"referee {txn.referee_id} +{txn.referee_coins}"
            )
        elif txn.status == ReferralStatus.PENDING:
            logger.info(f"Referral {txn.id} pending until referee {txn.referee_id} completes an order")
        else:
            logger.warning(f"Referral {txn.id} flagged for review: {[f.value for f in decision.flags]}")

    def _credit(self, uow: UnitOfWork, user_id: UUID, bucket: Bucket, coins: int, reason: str, txn_id: UUID):
        if coins <= 0:
            return None
        # Read through the unit of work so a self-referral credits on top of the staged row.
        snapshot = uow.get("wallets", user_id)
        return self.wallet.apply_mutation(
            uow, snapshot, user_id, bucket, Direction.CREDIT, self.wallet.validate_amount(bucket, coins),
            reason, reference_id=str(txn_id), reference_type="referral",
        )

    def list_transactions(self, status: Optional[ReferralStatus] = None, limit: int = 50) -> list[ReferralTransaction]:
        rows = self.storage.select("referral_transactions", lambda t: status is None or t["status"] == status)
        rows.sort(key=lambda t: t["created_at"], reverse=True)
        return [ReferralTransaction(**t) for t in rows[:limit]]

    def stats(self) -> ReferralStats:
        rows = self.storage.select("referral_transactions")
        completed = [t for t in rows if t["status"] == ReferralStatus.COMPLETED]
        total = len(rows)
        return ReferralStats(
            total_referrals=total,
            successful_referrals=len(completed),
            flagged_referrals=sum(1 for t in rows if t["fraud_flags"]),
            pending_referrals=sum(1 for t in rows if t["status"] == ReferralStatus.PENDING),
            total_coins_issued=sum(t["referrer_coins"] + t["referee_coins"] for t in completed),
            conversion_rate=(len(completed) / total * 100) if total else 0.0,
        )
