import logging
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from referrals.models import ReferralAttempt, ReferralSettings, ReferralSettingsInput
from referrals.service import ReferralService
from referrals.settings import ReferralSettingsStore

from .attribution import ActorRegistry, ClickTracker
from .commissions import CommissionService
from .config import Settings, settings as default_settings
from .errors import LedgerServiceError
from .models import (
    CommissionBasis,
    CommissionResponse,
    MutationResult,
    OrderAttributionResult,
    OrderCompletedEvent,
    PayoutResponse,
    PayoutStatus,
    TransactionHistoryResponse,
    WalletAdjustmentRequest,
    WalletView,
)
from .notifications import NotificationHook, Notifier
from .orders import OrderAttributionService, ProductRewardCatalog
from .payouts import PayoutService
from .storage import InMemoryStorage
from .utils import utcnow
from .wallet import WalletLedger

logger = logging.getLogger(__name__)


class LedgerService:
    """Entry point for the order, admin, wallet and referral APIs.

    Wires every component onto one store; each attribute can also be used
    directly.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
        clock: Callable = utcnow,
    ):
        config = config or default_settings
        self.config = config
        self.storage = storage or InMemoryStorage()
        self.notifications = NotificationHook(notifier)

        self.wallet = WalletLedger(
            self.storage,
            coin_rate=config.COIN_TO_CURRENCY_RATE,
            max_retries=config.MAX_MUTATION_RETRIES,
            clock=clock,
        )
        self.actors = ActorRegistry(self.storage, clock=clock)
        self.tracker = ClickTracker(
            self.storage, self.actors, window_days=config.ATTRIBUTION_WINDOW_DAYS, clock=clock
        )
        self.catalog = ProductRewardCatalog(self.storage, clock=clock)
        self.commissions = CommissionService(
            self.storage, self.wallet, self.notifications, clock=clock, currency=config.CURRENCY
        )
        self.payouts = PayoutService(
            self.storage, self.wallet, self.commissions, self.notifications,
            bucket=config.PAYOUT_BUCKET, min_amount=config.MIN_PAYOUT_AMOUNT, clock=clock,
        )
        self.orders = OrderAttributionService(
            self.storage, self.actors, self.tracker, self.catalog, self.commissions
        )
        self.referral_settings = ReferralSettingsStore(self.storage, clock=clock)
        self.referrals = ReferralService(self.wallet, self.referral_settings, clock=clock)

    # Order completion event

    def handle_order_completed(self, event: OrderCompletedEvent) -> OrderAttributionResult:
        result = self.orders.process_order(event)
        if event.buyer_id is not None:
            self._complete_referral(event)
        return result

    def _complete_referral(self, event: OrderCompletedEvent) -> None:
        # Referral problems never fail the order.
        order_value = sum((line.unit_price * line.quantity for line in event.lines), Decimal("0"))
        try:
            self.referrals.complete_for_order(event.buyer_id, event.order_id, order_value)
        except LedgerServiceError:
            logger.exception(f"Referral completion failed for order {event.order_id}")

    # Admin actions

    def set_product_reward(self, product_id: str, basis: CommissionBasis, is_enabled: bool = True,
                           product_price=None):
        return self.catalog.set_reward(product_id, basis, is_enabled=is_enabled, product_price=product_price)

    def bulk_set_product_rewards(self, product_ids: list[str], basis: CommissionBasis, is_enabled: bool = True):
        return self.catalog.bulk_set(product_ids, basis, is_enabled=is_enabled)

    def confirm_commission(self, commission_id: UUID, performed_by: Optional[str] = None) -> CommissionResponse:
        return self.commissions.confirm(commission_id, performed_by)

    def reverse_commission(self, commission_id: UUID, reason: str, performed_by: Optional[str] = None) -> CommissionResponse:
        return self.commissions.reverse(commission_id, reason, performed_by)

    def cancel_commission(self, commission_id: UUID, reason: str, performed_by: Optional[str] = None) -> CommissionResponse:
        return self.commissions.cancel(commission_id, reason, performed_by)

    def request_payout(self, actor_id: UUID, amount, method, payment_details: Optional[dict] = None) -> PayoutResponse:
        return self.payouts.request_payout(actor_id, amount, method, payment_details)

    def process_payout(self, payout_id: UUID, status: PayoutStatus, performed_by: str,
                       settlement_reference: Optional[str] = None, notes: Optional[str] = None) -> PayoutResponse:
        return self.payouts.process_payout(payout_id, status, performed_by, settlement_reference, notes)

    def adjust_wallet(self, user_id: UUID, request: WalletAdjustmentRequest) -> MutationResult:
        logger.info(
            f"Admin {request.admin_id} adjusting {request.bucket.value} of user {user_id}: "
            f"{request.direction.value} {request.amount}"
        )
        return self.wallet.mutate(
            user_id, request.bucket, request.direction, request.amount, request.reason,
            admin_id=request.admin_id, reference_type="admin_adjustment",
        )

    # Wallet reads

    def get_wallet(self, user_id: UUID) -> WalletView:
        return self.wallet.get_wallet_view(user_id)

    def get_transactions(self, user_id: UUID, limit: int = 50, offset: int = 0) -> TransactionHistoryResponse:
        return self.wallet.get_transactions(user_id, limit, offset)

    # Referral settings and processing

    def get_referral_settings(self) -> ReferralSettings:
        return self.referral_settings.get_active()

    def update_referral_settings(self, update: ReferralSettingsInput) -> ReferralSettings:
        return self.referral_settings.save(update)

    def process_referral(self, attempt: ReferralAttempt):
        return self.referrals.process_referral(attempt)

    def register_referral_signup(self, referral_code: str, referee_id: UUID):
        return self.referrals.register_signup(referral_code, referee_id)
