import logging
from typing import Callable, Optional
from uuid import UUID, uuid4

from ledger.errors import NotFoundError, ValidationError
from ledger.storage import InMemoryStorage
from ledger.utils import utcnow

from .models import ReferralCode, ReferralCodeValidation

logger = logging.getLogger(__name__)

INVALID_CODE = "Invalid referral code"
OWN_CODE = "Cannot use your own referral code"


def normalize_code(code: str) -> str:
    return code.strip().upper()


class ReferralCodeRegistry:
    """Shareable codes that identify a referrer at signup. One code per user."""

    def __init__(self, storage: InMemoryStorage, clock: Callable = utcnow):
        self.storage = storage
        self.clock = clock

    def issue_code(self, user_id: UUID, code: Optional[str] = None) -> ReferralCode:
        """Return the user's code, creating it (random unless ``code`` is given) on first use."""
        with self.storage.unit_of_work() as uow:
            existing = uow.select("referral_codes", lambda r: r["user_id"] == user_id)
            if existing:
                current = ReferralCode(**existing[0])
                if code is not None and normalize_code(code) != current.code:
                    raise ValidationError("code", f"User {user_id} already has referral code {current.code}")
                return current

            if code is not None:
                code = normalize_code(code)
                if not code:
                    raise ValidationError("code", "must not be empty")
                if uow.get("referral_codes", code) is not None:
                    raise ValidationError("code", f"Code {code} is already in use")
            else:
                code = f"REF{uuid4().hex[:8].upper()}"
                while uow.get("referral_codes", code) is not None:
                    code = f"REF{uuid4().hex[:8].upper()}"

            referral_code = ReferralCode(code=code, user_id=user_id, created_at=self.clock())
            uow.insert("referral_codes", code, referral_code.model_dump())
        logger.info(f"Issued referral code {code} to user {user_id}")
        return referral_code

    def set_active(self, code: str, is_active: bool) -> ReferralCode:
        code = normalize_code(code)
        with self.storage.unit_of_work() as uow:
            row = uow.get("referral_codes", code)
            if row is None:
                raise NotFoundError(f"Referral code {code} not found")
            row["is_active"] = is_active
            uow.put("referral_codes", code, row)
        logger.info(f"Referral code {code} {'activated' if is_active else 'deactivated'}")
        return ReferralCode(**row)

    def validate_code(self, code: Optional[str], user_id: Optional[UUID] = None) -> ReferralCodeValidation:
        """Check a code a user is about to sign up with.

        Unknown and inactive codes are invalid alike. ``user_id``, when given,
        rejects the user's own code.
        """
        row = self.storage.get("referral_codes", normalize_code(code)) if code else None
        if row is None or not row["is_active"]:
            return ReferralCodeValidation(valid=False, error=INVALID_CODE)
        if user_id is not None and row["user_id"] == user_id:
            return ReferralCodeValidation(valid=False, referrer_id=row["user_id"], error=OWN_CODE)
        return ReferralCodeValidation(valid=True, referrer_id=row["user_id"])
