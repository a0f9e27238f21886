"""Gift card balances move only through a compare-and-set on the row; callers own the transaction."""

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy.orm import Session

from settlement.config import GIFT_CARD_MAX_RETRIES
from settlement.errors import (
    ConcurrencyConflict,
    DuplicateCode,
    GiftCardBlocked,
    GiftCardExpired,
    InvalidAmount,
    InvalidGiftCard,
    NotFound,
    WrongBusiness,
)
from settlement.models import GiftCard, GiftCardStatus, as_naive_utc, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RedeemResult:
    charged_cents: int
    remaining_cents: int


def ensure_usable(card: GiftCard, now: datetime | None = None) -> None:
    if card.status != GiftCardStatus.ACTIVE:
        raise GiftCardBlocked(f"Gift card {card.code} is {card.status.value}")
    now = now or utcnow()
    if card.expires_at is not None and card.expires_at <= now:
        raise GiftCardExpired(f"Gift card {card.code} expired at {card.expires_at.isoformat()}")


class GiftCardLedger:

    def __init__(self, max_retries: int = GIFT_CARD_MAX_RETRIES):
        self.max_retries = max_retries

    def get(self, db: Session, gift_card_id: int) -> GiftCard | None:
        return db.get(GiftCard, gift_card_id)

    def get_by_code(self, db: Session, code: str, business_id: int) -> GiftCard | None:
        return db.query(GiftCard).filter_by(business_id=business_id, code=code.strip()).first()

    def list_for_business(
        self,
        db: Session,
        business_id: int,
        status: GiftCardStatus | None = None,
        code: str | None = None,
    ) -> list[GiftCard]:
        query = db.query(GiftCard).filter(GiftCard.business_id == business_id)
        if status is not None:
            query = query.filter(GiftCard.status == status)
        if code and code.strip():
            query = query.filter(GiftCard.code.contains(code.strip()))
        return query.order_by(GiftCard.issued_at.desc(), GiftCard.id.desc()).all()

    def validate(self, db: Session, code: str, business_id: int) -> GiftCard:
        """Return the caller's usable card for ``code`` or raise the specific reason."""
        card = self.get_by_code(db, code, business_id)
        if card is None:
            foreign = db.query(GiftCard.id).filter(GiftCard.code == code.strip()).first()
            if foreign is not None:
                raise WrongBusiness(f"Gift card {code} belongs to another business")
            raise InvalidGiftCard(f"No gift card with code {code}")
        ensure_usable(card)
        return card

    def create(
        self,
        db: Session,
        business_id: int,
        code: str,
        balance_cents: int,
        expires_at: datetime | None = None,
    ) -> GiftCard:
        if balance_cents < 0:
            raise InvalidAmount("Gift card balance cannot be negative")
        code = code.strip()
        if not code:
            raise InvalidGiftCard("Gift card code is required")
        if self.get_by_code(db, code, business_id) is not None:
            raise DuplicateCode(f"Gift card code {code} already exists")

        card = GiftCard(
            business_id=business_id,
            code=code,
            balance_cents=balance_cents,
            status=GiftCardStatus.ACTIVE,
            expires_at=as_naive_utc(expires_at),
            issued_at=utcnow(),
        )
        db.add(card)
        db.flush()
        logger.info("gift_card.created", gift_card_id=card.id, business_id=business_id)
        return card

    def deactivate(self, db: Session, gift_card_id: int) -> bool:
        card = self.get(db, gift_card_id)
        if card is None:
            return False
        if card.status != GiftCardStatus.INACTIVE:
            card.status = GiftCardStatus.INACTIVE
            db.flush()
            logger.info("gift_card.deactivated", gift_card_id=gift_card_id)
        return True

    def redeem(
        self,
        db: Session,
        gift_card_id: int,
        requested_cents: int,
        business_id: int | None = None,
    ) -> RedeemResult:
        """Deduct ``min(balance, requested)`` and report what was actually charged.

        Callers must settle the rest elsewhere based on ``charged_cents``,
        never on ``requested_cents``.
        """
        if requested_cents <= 0:
            raise InvalidAmount("Redeem amount must be positive")

        for attempt in range(self.max_retries):
            card = self._load(db, gift_card_id)
            if card is None:
                raise NotFound(f"Gift card {gift_card_id} not found")
            ensure_usable(card)
            if business_id is not None and card.business_id != business_id:
                raise WrongBusiness(f"Gift card {gift_card_id} belongs to another business")

            balance = card.balance_cents
            charged = min(balance, requested_cents)
            if charged == 0:
                return RedeemResult(charged_cents=0, remaining_cents=balance)

            if self._compare_and_set(db, card, balance, balance - charged):
                logger.info(
                    "gift_card.redeemed",
                    gift_card_id=gift_card_id,
                    requested_cents=requested_cents,
                    charged_cents=charged,
                    remaining_cents=balance - charged,
                )
                return RedeemResult(charged_cents=charged, remaining_cents=balance - charged)

            logger.warning("gift_card.redeem_conflict", gift_card_id=gift_card_id, attempt=attempt + 1)

        raise ConcurrencyConflict(f"Gift card {gift_card_id} is busy, retry the redemption")

    def top_up(self, db: Session, gift_card_id: int, amount_cents: int) -> bool:
        if amount_cents <= 0:
            raise InvalidAmount("Top-up amount must be positive")

        for attempt in range(self.max_retries):
            card = self._load(db, gift_card_id)
            if card is None:
                return False
            ensure_usable(card)

            balance = card.balance_cents
            if self._compare_and_set(db, card, balance, balance + amount_cents):
                logger.info("gift_card.topped_up", gift_card_id=gift_card_id, amount_cents=amount_cents)
                return True

            logger.warning("gift_card.top_up_conflict", gift_card_id=gift_card_id, attempt=attempt + 1)

        raise ConcurrencyConflict(f"Gift card {gift_card_id} is busy, retry the top-up")

    def restore(self, db: Session, gift_card_id: int, amount_cents: int) -> None:
        """Give back a refunded redemption. Card status and expiry do not matter here."""
        if amount_cents <= 0:
            return

        for attempt in range(self.max_retries):
            card = self._load(db, gift_card_id)
            if card is None:
                raise NotFound(f"Gift card {gift_card_id} not found")

            balance = card.balance_cents
            if self._compare_and_set(db, card, balance, balance + amount_cents):
                logger.info("gift_card.restored", gift_card_id=gift_card_id, amount_cents=amount_cents)
                return

            logger.warning("gift_card.restore_conflict", gift_card_id=gift_card_id, attempt=attempt + 1)

        raise ConcurrencyConflict(f"Gift card {gift_card_id} is busy, retry the refund")

    def _load(self, db: Session, gift_card_id: int) -> GiftCard | None:
        return (
            db.query(GiftCard)
            .populate_existing()
            .filter(GiftCard.id == gift_card_id)
            .first()
        )

    def _compare_and_set(self, db: Session, card: GiftCard, expected: int, new_balance: int) -> bool:
        updated = (
            db.query(GiftCard)
            .filter(GiftCard.id == card.id, GiftCard.balance_cents == expected)
            .update({GiftCard.balance_cents: new_balance}, synchronize_session=False)
        )
        db.expire(card)
        return updated == 1
