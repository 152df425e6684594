import logging
from typing import Callable, Union
from uuid import uuid4

from ledger.errors import SettingsValidationError
from ledger.storage import InMemoryStorage
from ledger.utils import utcnow

from .models import ReferralSettings, ReferralSettingsInput

logger = logging.getLogger(__name__)

NUMERIC_FIELDS = (
    "referrer_reward_coins",
    "referee_welcome_coins",
    "minimum_order_value",
    "max_referrals_per_user",
    "daily_referral_limit",
    "monthly_referral_limit",
)


def validate_settings(settings: Union[ReferralSettingsInput, ReferralSettings]) -> list[str]:
    """Return every problem with ``settings``; an empty list means they are valid."""
    errors = []
    for field in NUMERIC_FIELDS:
        if getattr(settings, field) < 0:
            errors.append(f"{field} cannot be negative")
    # A limit of 0 means unlimited
    if settings.monthly_referral_limit > 0 and settings.daily_referral_limit > settings.monthly_referral_limit:
        errors.append(
            f"Daily limit cannot exceed monthly limit "
            f"(daily_referral_limit={settings.daily_referral_limit}, "
            f"monthly_referral_limit={settings.monthly_referral_limit})"
        )
    return errors


class ReferralSettingsStore:
    """The single active referral configuration.

    Only one row is expected. If several exist the most recently created one
    wins and a warning is logged until ``consolidate()`` removes the others.
    """

    def __init__(self, storage: InMemoryStorage, clock: Callable = utcnow):
        self.storage = storage
        self.clock = clock

    def _rows_latest_first(self, rows: list[dict]) -> list[dict]:
        return sorted(rows, key=lambda r: r["created_at"], reverse=True)

    def get_active(self) -> ReferralSettings:
        rows = self._rows_latest_first(self.storage.select("referral_settings"))
        if not rows:
            now = self.clock()
            return ReferralSettings(id=uuid4(), created_at=now, updated_at=now)
        if len(rows) > 1:
            logger.warning(
                f"Found {len(rows)} referral settings rows; using the latest ({rows[0]['id']}). "
                f"Run consolidate() to remove the rest"
            )
        return ReferralSettings(**rows[0])

    def save(self, update: ReferralSettingsInput) -> ReferralSettings:
        errors = validate_settings(update)
        if errors:
            logger.warning(f"Rejected referral settings update: {errors}")
            raise SettingsValidationError(errors)

        now = self.clock()
        with self.storage.unit_of_work() as uow:
            rows = self._rows_latest_first(uow.select("referral_settings"))
            if rows:
                current = rows[0]
                saved = ReferralSettings(
                    **update.model_dump(), id=current["id"], created_at=current["created_at"], updated_at=now
                )
            else:
                saved = ReferralSettings(**update.model_dump(), id=uuid4(), created_at=now, updated_at=now)
            uow.put("referral_settings", saved.id, saved.model_dump())
        logger.info(f"Referral settings {saved.id} saved")
        return saved

    def consolidate(self) -> int:
        """Delete every settings row except the latest. Returns how many were removed."""
        with self.storage.unit_of_work() as uow:
            rows = self._rows_latest_first(uow.select("referral_settings"))
            stale = rows[1:]
            for row in stale:
                uow.delete("referral_settings", row["id"])
        if stale:
            logger.warning(f"Removed {len(stale)} duplicate referral settings rows")
        return len(stale)
