import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID
from pydantic import BaseModel

from .utils import utcnow

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    AFFILIATE_NEW_ORDER = "affiliate_new_order"
    COMMISSION_CONFIRMED = "commission_confirmed"
    PAYOUT_COMPLETED = "payout_completed"


class NotificationEvent(BaseModel):
    kind: NotificationKind
    actor_id: UUID
    amount: Decimal
    reason: str
    created_at: datetime


class Notifier(ABC):
    """Delivery channel for ledger notifications (SMS, email, chat...)."""

    @abstractmethod
    def send(self, event: NotificationEvent) -> None:
        pass


class LoggingNotifier(Notifier):
    def send(self, event: NotificationEvent) -> None:
        logger.info(f"[{event.kind.value}] actor={event.actor_id} amount={event.amount}: {event.reason}")


class NotificationHook:
    """Fires notifications after a ledger change has been committed.

    Delivery failures are logged and reported through the return value only;
    the ledger change that triggered them stays applied.
    """

    def __init__(self, notifier: Notifier = None):
        self.notifier = notifier or LoggingNotifier()

    def fire(self, kind: NotificationKind, actor_id: UUID, amount: Decimal, reason: str) -> bool:
        event = NotificationEvent(kind=kind, actor_id=actor_id, amount=amount, reason=reason, created_at=utcnow())
        try:
            self.notifier.send(event)
        except Exception:
            logger.exception(f"Failed to deliver {kind.value} notification for actor {actor_id}")
            return False
        return True
