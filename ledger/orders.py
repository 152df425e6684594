import logging
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from .attribution import ActorRegistry, ClickTracker
from .commissions import CommissionService, validate_basis
from .errors import LedgerServiceError, ValidationError
from .models import (
    CommissionBasis,
    CommissionRecord,
    CommissionStatus,
    OrderAttributionResult,
    OrderCompletedEvent,
    OrderLine,
    ProductAffiliateStats,
    ProductRewardSettings,
    ResolutionStatus,
)
from .notifications import NotificationKind
from .storage import InMemoryStorage
from .utils import round_money, utcnow

logger = logging.getLogger(__name__)


def line_key(order_id: str, product_id: str) -> str:
    """Idempotency key of the single commission an order can earn per product."""
    return f"{order_id}:{product_id}"


def merge_lines(lines: list[OrderLine]) -> list[OrderLine]:
    """One line per product, in order of first appearance.

    Quantities are summed. When repeated lines disagree on price, the merged
    unit price is the quantity-weighted average, rounded to the cent.
    """
    grouped: dict[str, list[OrderLine]] = {}
    for line in lines:
        grouped.setdefault(line.product_id, []).append(line)

    merged = []
    for product_id, group in grouped.items():
        if len(group) == 1:
            merged.append(group[0])
            continue
        quantity = sum(line.quantity for line in group)
        prices = {line.unit_price for line in group}
        if len(prices) == 1:
            unit_price = prices.pop()
        elif quantity:
            unit_price = round_money(sum(line.unit_price * line.quantity for line in group) / quantity)
        else:
            unit_price = max(prices)
        merged.append(OrderLine(product_id=product_id, unit_price=unit_price, quantity=quantity))
    return merged


class ProductRewardCatalog:
    def __init__(self, storage: InMemoryStorage, clock: Callable = utcnow):
        self.storage = storage
        self.clock = clock

    def set_reward(self, product_id: str, basis: CommissionBasis, is_enabled: bool = True,
                   product_price=None) -> ProductRewardSettings:
        validate_basis(basis, product_price)
        reward = ProductRewardSettings(
            product_id=product_id,
            is_enabled=is_enabled,
            basis=basis,
            product_price=product_price,
            updated_at=self.clock(),
        )
        with self.storage.unit_of_work() as uow:
            uow.put("product_rewards", product_id, reward.model_dump())
        logger.info(f"Reward settings for product {product_id}: {basis.type.value} {basis.value} (enabled={is_enabled})")
        return reward

    def bulk_set(self, product_ids: list[str], basis: CommissionBasis,
                 is_enabled: bool = True) -> list[ProductRewardSettings]:
        """Apply one basis to many products at once; all of them are saved or none.

        A product's known price is kept and checked against the new basis.
        """
        product_ids = list(dict.fromkeys(p.strip() for p in product_ids if p and p.strip()))
        if not product_ids:
            raise ValidationError("product_ids", "at least one product is required")

        now = self.clock()
        with self.storage.unit_of_work() as uow:
            rewards = []
            for product_id in product_ids:
                current = uow.get("product_rewards", product_id)
                price = current["product_price"] if current else None
                try:
                    validate_basis(basis, price)
                except ValidationError as e:
                    raise ValidationError(e.field, f"{product_id}: {e.message}")
                rewards.append(ProductRewardSettings(
                    product_id=product_id, is_enabled=is_enabled, basis=basis,
                    product_price=price, updated_at=now,
                ))
            for reward in rewards:
                uow.put("product_rewards", reward.product_id, reward.model_dump())
        logger.info(
            f"Reward settings for {len(rewards)} products: {basis.type.value} {basis.value} (enabled={is_enabled})"
        )
        return rewards

    def get_reward(self, product_id: str) -> Optional[ProductRewardSettings]:
        row = self.storage.get("product_rewards", product_id)
        return ProductRewardSettings(**row) if row else None

    def enabled_basis(self, product_id: str) -> Optional[CommissionBasis]:
        reward = self.get_reward(product_id)
        if reward is None or not reward.is_enabled:
            return None
        return reward.basis

    def list_rewards(self, enabled_only: bool = False) -> list[ProductRewardSettings]:
        rows = self.storage.select("product_rewards", lambda r: r["is_enabled"] or not enabled_only)
        return [ProductRewardSettings(**r) for r in rows]

    def product_stats(self, product_id: Optional[str] = None) -> list[ProductAffiliateStats]:
        """Affiliate orders and commission per product, all statuses and confirmed only."""
        commissions = self.storage.select(
            "commissions", lambda c: product_id is None or c["product_id"] == product_id
        )
        stats: dict[str, ProductAffiliateStats] = {}
        for c in commissions:
            entry = stats.get(c["product_id"])
            if entry is None:
                reward = self.get_reward(c["product_id"])
                entry = stats[c["product_id"]] = ProductAffiliateStats(
                    product_id=c["product_id"],
                    product_price=reward.product_price if reward else None,
                )
            entry.total_orders += 1
            entry.total_commission += c["amount"]
            if c["status"] == CommissionStatus.CONFIRMED:
                entry.confirmed_orders += 1
                entry.confirmed_commission += c["amount"]
        return sorted(stats.values(), key=lambda s: s.product_id)


class OrderAttributionService:
    """Turns a completed order into pending commissions for the actor who referred it.

    Attribution problems never fail the order: every outcome is reported in
    the returned result.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        registry: ActorRegistry,
        tracker: ClickTracker,
        catalog: ProductRewardCatalog,
        commissions: CommissionService,
    ):
        self.storage = storage
        self.registry = registry
        self.tracker = tracker
        self.catalog = catalog
        self.commissions = commissions

    def process_order(self, event: OrderCompletedEvent) -> OrderAttributionResult:
        lines = merge_lines(event.lines)
        existing = self._existing_commissions(event.order_id, lines)
        if existing:
            return OrderAttributionResult(
                order_id=event.order_id,
                attributed=True,
                resolution=ResolutionStatus.ACTIVE,
                actor_id=existing[0].actor_id,
                commissions=existing,
                message="Order already processed (idempotent return)",
            )

        # A session, when supplied, decides attribution on its own.
        if event.session_id:
            resolution = self.tracker.resolve(event.session_id)
            if not resolution.is_active:
                return self._unattributed(event, resolution.status, f"Attribution session {resolution.status.value}")
            actor_id = resolution.token.actor_id
        else:
            actor = self.registry.find_active_by_code(event.actor_code)
            if actor is None:
                return self._unattributed(event, ResolutionStatus.ABSENT, "No attribution for this order")
            actor_id = actor.id

        if event.buyer_id is not None and event.buyer_id == actor_id:
            logger.warning(f"Order {event.order_id}: actor {actor_id} referred their own purchase, skipping")
            return self._unattributed(event, ResolutionStatus.ACTIVE, "Self-attributed order earns no commission")

        try:
            created = self.commissions.wallet.run_with_retry(
                lambda: self._attribute(event, lines, actor_id),
                f"attributing order {event.order_id}",
            )
        except LedgerServiceError:
            logger.exception(f"Attribution failed for order {event.order_id}, continuing without commission")
            return self._unattributed(event, ResolutionStatus.ACTIVE, "Attribution failed")

        if created is None:
            return self._unattributed(event, ResolutionStatus.ABSENT, "Attribution session already used")

        logger.info(f"Order {event.order_id} attributed to actor {actor_id}: {len(created)} commission(s)")
        if created:
            total = sum((c.amount for c in created), Decimal("0"))
            self.commissions.notifications.fire(
                NotificationKind.AFFILIATE_NEW_ORDER, actor_id, total,
                f"New order {event.order_id} earned you a pending commission of {created[0].currency} {total}",
            )
        return OrderAttributionResult(
            order_id=event.order_id,
            attributed=True,
            resolution=ResolutionStatus.ACTIVE,
            actor_id=actor_id,
            commissions=created,
            message=f"{len(created)} commission(s) created",
        )

    def _attribute(self, event: OrderCompletedEvent, lines: list[OrderLine],
                   actor_id: UUID) -> Optional[list[CommissionRecord]]:
        wallet_snapshot = self.storage.get("wallets", actor_id)
        created = []
        with self.storage.unit_of_work() as uow:
            if event.session_id and not self.tracker.consume(uow, event.session_id, event.order_id):
                return None
            for line in lines:
                basis = self.catalog.enabled_basis(line.product_id)
                if basis is None:
                    continue
                key = line_key(event.order_id, line.product_id)
                if uow.get("idempotency_index", key) is not None:
                    continue
                staged = self.commissions.stage_commission(
                    uow, wallet_snapshot, actor_id, event.order_id, line, basis, key
                )
                if staged is None:
                    continue
                record, mutation = staged
                wallet_snapshot = mutation.wallet.model_dump()
                created.append(record)
        return created

    def _existing_commissions(self, order_id: str, lines: list[OrderLine]) -> list[CommissionRecord]:
        found = []
        for line in lines:
            record = self.commissions.find_by_idempotency_key(line_key(order_id, line.product_id))
            if record is not None:
                found.append(record)
        return found

    def _unattributed(self, event: OrderCompletedEvent, resolution: ResolutionStatus, message: str) -> OrderAttributionResult:
        logger.info(f"Order {event.order_id} not attributed: {message}")
        return OrderAttributionResult(
            order_id=event.order_id,
            attributed=False,
            resolution=resolution,
            message=message,
        )
