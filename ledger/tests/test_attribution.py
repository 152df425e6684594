"""
Unit Tests for Click Attribution and Order Completion

Tests cover:
1. Click tracking and device detection
2. Session resolution and the attribution window
3. Order attribution, including single-use sessions
4. Idempotent order replays
5. Actor statistics
6. Reordered and repeated order lines
7. New-order notifications
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ledger.attribution import detect_browser, detect_device
from ledger.errors import ValidationError
from ledger.models import (
    ClickContext,
    CommissionBasis,
    DeviceClass,
    OrderCompletedEvent,
    OrderLine,
    ResolutionStatus,
)
from ledger.notifications import NotificationKind, Notifier
from ledger.service import LedgerService
from ledger.storage import InMemoryStorage


IPHONE_AGENT = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148 Safari/604.1"
IPAD_AGENT = "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148 Safari/604.1"
EDGE_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36 Edg/120.0"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def new_service(clock=None) -> LedgerService:
    service = LedgerService(storage=InMemoryStorage(), clock=clock or FakeClock())
    service.actors.register("Meera", "MEERA")
    service.set_product_reward("prod-1", CommissionBasis.percentage(10, cap=50))
    service.set_product_reward("prod-2", CommissionBasis.fixed(25))
    return service


def order(order_id="ORD-1", session_id=None, actor_code=None, buyer_id=None):
    return OrderCompletedEvent(
        order_id=order_id,
        session_id=session_id,
        actor_code=actor_code,
        buyer_id=buyer_id,
        lines=[
            OrderLine(product_id="prod-1", unit_price=Decimal("1000.00")),
            OrderLine(product_id="prod-2", unit_price=Decimal("10.00"), quantity=3),
        ],
    )


class TestDeviceDetection:
    """Tests for user agent classification."""

    def test_mobile(self):
        assert detect_device(IPHONE_AGENT) == DeviceClass.MOBILE

    def test_tablet(self):
        assert detect_device(IPAD_AGENT) == DeviceClass.TABLET

    def test_desktop_default(self):
        assert detect_device(EDGE_AGENT) == DeviceClass.DESKTOP
        assert detect_device(None) == DeviceClass.DESKTOP

    def test_browser(self):
        assert detect_browser(EDGE_AGENT) == "Edge"
        assert detect_browser(IPHONE_AGENT) == "Safari"
        assert detect_browser(None) == "Unknown"


class TestClickTracking:
    """Tests for clicks and attribution sessions."""

    def test_track_returns_token(self):
        """A known code yields a session that expires after the window."""
        clock = FakeClock()
        service = new_service(clock)

        token = service.tracker.track("MEERA", "prod-1", ClickContext(user_agent=IPHONE_AGENT, utm_source="ig"))

        assert token.session_id.startswith("sess_")
        assert token.expires_at == clock.now + timedelta(days=30)
        clicks = service.storage.select("clicks")
        assert len(clicks) == 1
        assert clicks[0]["device_class"] == DeviceClass.MOBILE
        assert clicks[0]["utm_source"] == "ig"

    def test_unknown_code_ignored(self):
        service = new_service()

        assert service.tracker.track("NOPE", "prod-1") is None
        assert service.storage.count("clicks") == 0

    def test_inactive_actor_ignored(self):
        service = new_service()
        actor = service.actors.find_active_by_code("MEERA")
        service.actors.set_active(actor.id, False)

        assert service.tracker.track("MEERA", "prod-1") is None

    def test_duplicate_code_rejected(self):
        service = new_service()

        with pytest.raises(ValidationError):
            service.actors.register("Someone else", "MEERA")

    def test_resolution_states(self):
        """Sessions resolve as active, then expired once the window passes, then absent once purged."""
        clock = FakeClock()
        service = new_service(clock)
        token = service.tracker.track("MEERA", "prod-1")

        assert service.tracker.resolve(token.session_id).status == ResolutionStatus.ACTIVE
        assert service.tracker.resolve("sess_unknown").status == ResolutionStatus.ABSENT
        assert service.tracker.resolve(None).status == ResolutionStatus.ABSENT

        clock.advance(days=30, seconds=1)
        assert service.tracker.resolve(token.session_id).status == ResolutionStatus.EXPIRED
        assert service.tracker.resolve(token.session_id).status == ResolutionStatus.EXPIRED

        service.tracker.purge_expired()
        assert service.tracker.resolve(token.session_id).status == ResolutionStatus.ABSENT

    def test_resolve_has_no_side_effects(self):
        """Looking up an expired session leaves it stored."""
        clock = FakeClock()
        service = new_service(clock)
        token = service.tracker.track("MEERA", "prod-1")
        clock.advance(days=31)

        service.tracker.resolve(token.session_id)

        assert service.storage.get("attribution_sessions", token.session_id) is not None

    def test_expired_session_cannot_be_consumed(self):
        clock = FakeClock()
        service = new_service(clock)
        token = service.tracker.track("MEERA", "prod-1")
        clock.advance(days=31)

        with service.storage.unit_of_work() as uow:
            consumed = service.tracker.consume(uow, token.session_id, "ORD-1")

        assert consumed is False
        assert service.storage.select("clicks")[0]["converted_to_order"] is False

    def test_purge_expired(self):
        clock = FakeClock()
        service = new_service(clock)
        service.tracker.track("MEERA", "prod-1")
        clock.advance(days=10)
        fresh = service.tracker.track("MEERA", "prod-2")
        clock.advance(days=25)

        assert service.tracker.purge_expired() == 1
        assert service.tracker.resolve(fresh.session_id).is_active


class TestOrderAttribution:
    """Tests for turning completed orders into commissions."""

    def test_session_order_creates_commissions(self):
        """Each rewarded line gets its own pending commission."""
        service = new_service()
        token = service.tracker.track("MEERA", "prod-1")

        result = service.handle_order_completed(order(session_id=token.session_id))

        assert result.attributed is True
        assert result.actor_id == token.actor_id
        assert sorted(c.amount for c in result.commissions) == [Decimal("50.00"), Decimal("75.00")]
        assert service.get_wallet(token.actor_id).wallet.affiliate_earnings == Decimal("125.00")

    def test_expired_session_earns_nothing(self):
        """An order 31 days after the click is not attributed."""
        clock = FakeClock()
        service = new_service(clock)
        token = service.tracker.track("MEERA", "prod-1")
        clock.advance(days=31)

        result = service.handle_order_completed(order(session_id=token.session_id))

        assert result.attributed is False
        assert result.resolution == ResolutionStatus.EXPIRED
        assert service.storage.count("commissions") == 0
        assert service.get_wallet(token.actor_id).wallet.affiliate_earnings == Decimal("0.00")

    def test_session_decides_over_code(self):
        """A supplied session that is not active is not rescued by an actor code."""
        service = new_service()

        result = service.handle_order_completed(order(session_id="sess_missing", actor_code="MEERA"))

        assert result.attributed is False
        assert result.resolution == ResolutionStatus.ABSENT

    def test_code_fallback_without_session(self):
        service = new_service()

        result = service.handle_order_completed(order(actor_code="MEERA"))

        assert result.attributed is True
        assert len(result.commissions) == 2

    def test_no_attribution(self):
        service = new_service()

        result = service.handle_order_completed(order())

        assert result.attributed is False
        assert result.commissions == []

    def test_session_is_single_use(self):
        """A second order on the same session earns nothing."""
        service = new_service()
        token = service.tracker.track("MEERA", "prod-1")
        service.handle_order_completed(order("ORD-1", session_id=token.session_id))

        second = service.handle_order_completed(order("ORD-2", session_id=token.session_id))

        assert second.attributed is False
        assert service.storage.count("commissions") == 2

    def test_concurrent_orders_on_one_session(self):
        """Two orders racing for one session: exactly one is attributed."""
        service = new_service()
        token = service.tracker.track("MEERA", "prod-1")

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(
                service.handle_order_completed,
                [order("ORD-A", session_id=token.session_id), order("ORD-B", session_id=token.session_id)],
            ))

        assert sum(1 for r in results if r.attributed) == 1
        assert service.storage.count("commissions") == 2
        assert service.get_wallet(token.actor_id).wallet.affiliate_earnings == Decimal("125.00")

    def test_replay_is_idempotent(self):
        """Delivering the same order twice returns the original commissions."""
        service = new_service()
        token = service.tracker.track("MEERA", "prod-1")
        first = service.handle_order_completed(order(session_id=token.session_id))

        second = service.handle_order_completed(order(session_id=token.session_id))

        assert second.attributed is True
        assert {c.id for c in second.commissions} == {c.id for c in first.commissions}
        assert service.get_transactions(token.actor_id).total_count == 2

    def test_self_attribution_earns_nothing(self):
        service = new_service()
        token = service.tracker.track("MEERA", "prod-1")

        result = service.handle_order_completed(order(session_id=token.session_id, buyer_id=token.actor_id))

        assert result.attributed is False
        assert service.storage.count("commissions") == 0

    def test_unrewarded_product_skipped(self):
        service = new_service()
        event = OrderCompletedEvent(
            order_id="ORD-5",
            actor_code="MEERA",
            lines=[OrderLine(product_id="prod-unknown", unit_price=Decimal("99.00"))],
        )

        result = service.handle_order_completed(event)

        assert result.commissions == []

    def test_actor_stats(self):
        """Stats count clicks, conversions, orders and commission totals."""
        service = new_service()
        token = service.tracker.track("MEERA", "prod-1")
        service.tracker.track("MEERA", "prod-2")
        result = service.handle_order_completed(order(session_id=token.session_id))
        service.confirm_commission(result.commissions[0].id)

        stats = service.actors.stats(token.actor_id)

        assert stats.total_clicks == 2
        assert stats.converted_clicks == 1
        assert stats.total_orders == 1
        assert stats.pending_commission + stats.confirmed_commission == Decimal("125.00")
        assert stats.paid_commission == Decimal("0")


class TestOrderLines:
    """Tests for orders whose lines arrive reordered or repeated."""

    def test_replay_with_reordered_lines(self):
        """A redelivered order with its lines shuffled earns nothing new."""
        service = new_service()
        service.set_product_reward("prod-1", CommissionBasis.fixed(25))
        service.set_product_reward("prod-2", CommissionBasis.fixed(10))
        lines = [
            OrderLine(product_id="prod-1", unit_price=Decimal("100.00")),
            OrderLine(product_id="prod-2", unit_price=Decimal("50.00")),
        ]
        first = service.handle_order_completed(OrderCompletedEvent(order_id="ORD-9", actor_code="MEERA", lines=lines))

        replay = service.handle_order_completed(
            OrderCompletedEvent(order_id="ORD-9", actor_code="MEERA", lines=list(reversed(lines)))
        )

        assert {c.id for c in replay.commissions} == {c.id for c in first.commissions}
        assert service.storage.count("commissions") == 2
        assert service.get_wallet(first.actor_id).wallet.affiliate_earnings == Decimal("35.00")

    def test_repeated_product_lines_merged(self):
        """Lines for the same product become one commission over the summed quantity."""
        service = new_service()
        event = OrderCompletedEvent(
            order_id="ORD-7",
            actor_code="MEERA",
            lines=[
                OrderLine(product_id="prod-2", unit_price=Decimal("10.00"), quantity=2),
                OrderLine(product_id="prod-2", unit_price=Decimal("10.00"), quantity=1),
            ],
        )

        result = service.handle_order_completed(event)

        assert len(result.commissions) == 1
        assert result.commissions[0].quantity == 3
        assert result.commissions[0].amount == Decimal("75.00")

    def test_merged_price_is_weighted_average(self):
        service = new_service()
        event = OrderCompletedEvent(
            order_id="ORD-8",
            actor_code="MEERA",
            lines=[
                OrderLine(product_id="prod-1", unit_price=Decimal("100.00"), quantity=1),
                OrderLine(product_id="prod-1", unit_price=Decimal("200.00"), quantity=3),
            ],
        )

        result = service.handle_order_completed(event)

        assert result.commissions[0].unit_price == Decimal("175.00")
        assert result.commissions[0].amount == Decimal("50.00")


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)


class TestOrderNotifications:
    """Tests for the new-order notification sent to the attributed actor."""

    def test_new_order_notifies_actor(self):
        notifier = RecordingNotifier()
        service = LedgerService(storage=InMemoryStorage(), notifier=notifier, clock=FakeClock())
        actor = service.actors.register("Meera", "MEERA")
        service.set_product_reward("prod-2", CommissionBasis.fixed(25))

        service.handle_order_completed(order(actor_code="MEERA"))

        assert len(notifier.events) == 1
        event = notifier.events[0]
        assert event.kind == NotificationKind.AFFILIATE_NEW_ORDER
        assert event.actor_id == actor.id
        assert event.amount == Decimal("75.00")
        assert "ORD-1" in event.reason

    def test_replay_and_unrewarded_orders_are_silent(self):
        notifier = RecordingNotifier()
        service = LedgerService(storage=InMemoryStorage(), notifier=notifier, clock=FakeClock())
        service.actors.register("Meera", "MEERA")
        service.set_product_reward("prod-2", CommissionBasis.fixed(25))
        service.handle_order_completed(order(actor_code="MEERA"))

        service.handle_order_completed(order(actor_code="MEERA"))
        service.handle_order_completed(OrderCompletedEvent(
            order_id="ORD-3",
            actor_code="MEERA",
            lines=[OrderLine(product_id="prod-unknown", unit_price=Decimal("5.00"))],
        ))

        assert len(notifier.events) == 1
