import logging
import re
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .errors import ActorNotFoundError, ValidationError
from .models import (
    Actor,
    ActorStats,
    AttributionToken,
    ClickContext,
    ClickRecord,
    CommissionStatus,
    DeviceClass,
    EarningType,
    ResolutionStatus,
    SessionResolution,
)
from .storage import InMemoryStorage, UnitOfWork
from .utils import utcnow

logger = logging.getLogger(__name__)

MOBILE_AGENT = re.compile(r"Mobile|Android|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE)
TABLET_AGENT = re.compile(r"iPad|Tablet", re.IGNORECASE)

# Checked in order; Edge and Opera agents also mention Chrome and Safari.
BROWSERS = (
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Opera", "Opera"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)


def detect_device(user_agent: Optional[str]) -> DeviceClass:
    if not user_agent or not MOBILE_AGENT.search(user_agent):
        return DeviceClass.DESKTOP
    if TABLET_AGENT.search(user_agent):
        return DeviceClass.TABLET
    return DeviceClass.MOBILE


def detect_browser(user_agent: Optional[str]) -> str:
    for marker, name in BROWSERS:
        if user_agent and marker in user_agent:
            return name
    return "Unknown"


class ActorRegistry:
    """Affiliates and referrers that can earn commission."""

    def __init__(self, storage: InMemoryStorage, clock: Callable = utcnow):
        self.storage = storage
        self.clock = clock

    def register(self, name: str, code: str, actor_id: Optional[UUID] = None) -> Actor:
        code = code.strip()
        if not code:
            raise ValidationError("code", "must not be empty")
        actor = Actor(id=actor_id or uuid4(), name=name, code=code, created_at=self.clock())
        with self.storage.unit_of_work() as uow:
            if uow.get("actor_codes", code) is not None:
                raise ValidationError("code", f"Code {code} is already in use")
            if uow.get("actors", actor.id) is not None:
                raise ValidationError("actor_id", f"Actor {actor.id} already exists")
            uow.insert("actors", actor.id, actor.model_dump())
            uow.insert("actor_codes", code, actor.id)
        logger.info(f"Registered actor {actor.id} with code {code}")
        return actor

    def set_active(self, actor_id: UUID, is_active: bool) -> Actor:
        with self.storage.unit_of_work() as uow:
            row = uow.get("actors", actor_id)
            if row is None:
                raise ActorNotFoundError(f"Actor {actor_id} not found")
            row["is_active"] = is_active
            uow.put("actors", actor_id, row)
        logger.info(f"Actor {actor_id} {'activated' if is_active else 'deactivated'}")
        return Actor(**row)

    def get(self, actor_id: UUID) -> Actor:
        row = self.storage.get("actors", actor_id)
        if row is None:
            raise ActorNotFoundError(f"Actor {actor_id} not found")
        return Actor(**row)

    def find_active_by_code(self, code: Optional[str]) -> Optional[Actor]:
        if not code:
            return None
        actor_id = self.storage.get("actor_codes", code.strip())
        if actor_id is None:
            return None
        row = self.storage.get("actors", actor_id)
        if row is None or not row["is_active"]:
            return None
        return Actor(**row)

    def stats(self, actor_id: UUID) -> ActorStats:
        self.get(actor_id)
        clicks = self.storage.select("clicks", lambda c: c["actor_id"] == actor_id)
        commissions = self.storage.select("commissions", lambda c: c["actor_id"] == actor_id)
        paid = self.storage.select(
            "earnings", lambda e: e["actor_id"] == actor_id and e["transaction_type"] == EarningType.PAID
        )

        def total(status):
            return sum((c["amount"] for c in commissions if c["status"] == status), Decimal("0"))

        return ActorStats(
            actor_id=actor_id,
            total_clicks=len(clicks),
            converted_clicks=sum(1 for c in clicks if c["converted_to_order"]),
            total_orders=len({c["order_id"] for c in commissions}),
            pending_commission=total(CommissionStatus.PENDING),
            confirmed_commission=total(CommissionStatus.CONFIRMED),
            paid_commission=sum((e["amount"] for e in paid), Decimal("0")),
        )


class ClickTracker:
    """Records referral clicks and hands out single-use attribution sessions.

    Sessions live server-side keyed by session id, expire after the
    attribution window and are discarded once consumed by an order.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        registry: ActorRegistry,
        window_days: int = 30,
        clock: Callable = utcnow,
    ):
        self.storage = storage
        self.registry = registry
        self.window = timedelta(days=window_days)
        self.clock = clock

    def track(self, code: str, product_id: str, context: Optional[ClickContext] = None) -> Optional[AttributionToken]:
        actor = self.registry.find_active_by_code(code)
        if actor is None:
            logger.info(f"Ignoring click with unknown or inactive code {code!r}")
            return None

        context = context or ClickContext()
        now = self.clock()
        session_id = f"sess_{uuid4().hex}"
        token = AttributionToken(
            session_id=session_id,
            code=actor.code,
            actor_id=actor.id,
            product_id=product_id,
            created_at=now,
            expires_at=now + self.window,
        )
        click = ClickRecord(
            id=uuid4(),
            actor_id=actor.id,
            product_id=product_id,
            session_id=session_id,
            referrer_url=context.referrer_url,
            device_class=detect_device(context.user_agent),
            browser=detect_browser(context.user_agent),
            utm_source=context.utm_source,
            utm_medium=context.utm_medium,
            utm_campaign=context.utm_campaign,
            clicked_at=now,
        )
        with self.storage.unit_of_work() as uow:
            uow.insert("clicks", click.id, click.model_dump())
            uow.insert("attribution_sessions", session_id, token.model_dump())
        logger.debug(f"Tracked click {click.id} for actor {actor.id} on product {product_id}")
        return token

    def resolve(self, session_id: Optional[str]) -> SessionResolution:
        """Read-only lookup; expired sessions stay stored until ``purge_expired``."""
        if not session_id:
            return SessionResolution(status=ResolutionStatus.ABSENT)
        row = self.storage.get("attribution_sessions", session_id)
        if row is None:
            return SessionResolution(status=ResolutionStatus.ABSENT)
        token = AttributionToken(**row)
        if self.clock() > token.expires_at:
            return SessionResolution(status=ResolutionStatus.EXPIRED)
        return SessionResolution(status=ResolutionStatus.ACTIVE, token=token)

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [
            s["session_id"] for s in self.storage.select("attribution_sessions") if now > s["expires_at"]
        ]
        if expired:
            with self.storage.unit_of_work() as uow:
                for session_id in expired:
                    uow.delete("attribution_sessions", session_id)
            logger.info(f"Purged {len(expired)} expired attribution sessions")
        return len(expired)

    def consume(self, uow: UnitOfWork, session_id: str, order_id: str) -> bool:
        """Discard the session and mark its clicks converted.

        False if the session expired or another order got there first.
        """
        row = uow.get("attribution_sessions", session_id)
        if row is None or self.clock() > row["expires_at"]:
            return False
        uow.delete("attribution_sessions", session_id)
        for click in uow.select("clicks", lambda c: c["session_id"] == session_id):
            click["converted_to_order"] = True
            click["order_id"] = order_id
            uow.put("clicks", click["id"], click)
        return True
