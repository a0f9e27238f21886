from dataclasses import dataclass
from uuid import uuid4

import structlog
from sqlalchemy.orm import Session

from settlement.errors import (
    GiftCardBlocked,
    GiftCardExpired,
    InsufficientBalance,
    InvalidAmount,
    InvalidState,
    NotFound,
    WrongBusiness,
)
from settlement.ledger import GiftCardLedger
from settlement.models import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    can_transition,
    utcnow,
)
from settlement.stripe_service import PaymentGateway

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    payment_id: str
    status: PaymentStatus
    paid_by_gift_card: int
    remaining_for_stripe: int
    external_redirect_url: str | None = None
    external_session_id: str | None = None


def _method_for(planned_gift_card_cents: int, remainder: int) -> PaymentMethod:
    if planned_gift_card_cents == 0:
        return PaymentMethod.STRIPE
    if remainder == 0:
        return PaymentMethod.GIFT_CARD
    return PaymentMethod.MIXED


class PaymentEngine:

    def __init__(self, gateway: PaymentGateway, ledger: GiftCardLedger | None = None):
        self.gateway = gateway
        self.ledger = ledger or GiftCardLedger()

    def create_payment(
        self,
        db: Session,
        *,
        order_id: int,
        business_id: int,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        gift_card_code: str | None = None,
        gift_card_amount_cents: int | None = None,
        employee_id: int | None = None,
    ) -> PaymentResult:
        log = logger.bind(order_id=order_id, business_id=business_id)

        if amount_cents <= 0:
            raise InvalidAmount("Payment amount must be positive")
        if gift_card_amount_cents is not None and gift_card_amount_cents <= 0:
            raise InvalidAmount("Gift card amount must be positive")

        card = None
        planned = 0
        if gift_card_code and gift_card_code.strip():
            card = self.ledger.validate(db, gift_card_code, business_id)
            wanted = amount_cents if gift_card_amount_cents is None else gift_card_amount_cents
            planned = min(wanted, amount_cents, card.balance_cents)

        remainder = amount_cents - planned

        payment = Payment(
            id=uuid4().hex,
            business_id=business_id,
            order_id=order_id,
            employee_id=employee_id,
            amount_cents=amount_cents,
            currency=currency.lower(),
            method=_method_for(planned, remainder),
            status=PaymentStatus.PENDING,
            gift_card_id=card.id if card is not None and planned > 0 else None,
            gift_card_planned_cents=planned,
            gift_card_charged_cents=0,
            created_at=utcnow(),
        )
        log = log.bind(payment_id=payment.id)

        try:
            db.add(payment)

            if remainder == 0:
                redeemed = self.ledger.redeem(db, payment.gift_card_id, planned, business_id)
                if redeemed.charged_cents < planned:
                    raise InsufficientBalance(
                        f"Gift card covers {redeemed.charged_cents} of {planned} cents"
                    )
                payment.gift_card_charged_cents = redeemed.charged_cents
                payment.status = PaymentStatus.SUCCESS
                payment.completed_at = utcnow()
                db.commit()
                log.info("payment.settled_by_gift_card", charged_cents=redeemed.charged_cents)
                return PaymentResult(
                    payment_id=payment.id,
                    status=PaymentStatus.SUCCESS,
                    paid_by_gift_card=redeemed.charged_cents,
                    remaining_for_stripe=0,
                )

            session = self.gateway.create_checkout_session(
                remainder,
                payment.currency,
                success_url,
                cancel_url,
                payment.id,
            )
            payment.external_session_id = session.session_id
            db.commit()
        except Exception:
            db.rollback()
            log.warning("payment.create_aborted", exc_info=True)
            raise

        log.info(
            "payment.pending_external",
            session_id=session.session_id,
            planned_gift_card_cents=planned,
            remaining_for_stripe=remainder,
        )
        return PaymentResult(
            payment_id=payment.id,
            status=PaymentStatus.PENDING,
            paid_by_gift_card=planned,
            remaining_for_stripe=remainder,
            external_redirect_url=session.redirect_url,
            external_session_id=session.session_id,
        )

    def confirm_external_success(self, db: Session, session_id: str) -> None:
        log = logger.bind(session_id=session_id)
        payment = self._find_by_session(db, session_id)
        if payment is None:
            log.info("payment.confirm_ignored", reason="unknown_session")
            return
        if payment.status != PaymentStatus.PENDING:
            log.info("payment.confirm_ignored", reason="already_final", status=payment.status.value)
            return

        log = log.bind(payment_id=payment.id)
        payment_id = payment.id
        gift_card_id = payment.gift_card_id
        planned = payment.gift_card_planned_cents
        business_id = payment.business_id

        try:
            if not self._claim(db, payment_id, PaymentStatus.PENDING, PaymentStatus.SUCCESS, completed_at=utcnow()):
                db.rollback()
                log.info("payment.confirm_ignored", reason="lost_race")
                return

            charged = 0
            if gift_card_id is not None and planned > 0:
                redeemed = self.ledger.redeem(db, gift_card_id, planned, business_id)
                charged = redeemed.charged_cents
                if charged < planned:
                    raise InsufficientBalance(f"Gift card covers {charged} of {planned} cents")

            db.query(Payment).filter(Payment.id == payment_id).update(
                {Payment.gift_card_charged_cents: charged}, synchronize_session=False
            )
            db.commit()
        except (InsufficientBalance, GiftCardBlocked, GiftCardExpired) as exc:
            db.rollback()
            log.warning("payment.gift_card_shortfall", reason=exc.reason.value)
            self._fail_and_refund_external(db, payment_id, session_id)
            return
        except Exception:
            db.rollback()
            raise

        log.info("payment.settled", gift_card_charged_cents=charged)

    def cancel_external(self, db: Session, session_id: str) -> None:
        self._close_pending(db, session_id, PaymentStatus.CANCELLED)

    def fail_external(self, db: Session, session_id: str) -> None:
        self._close_pending(db, session_id, PaymentStatus.FAILED)

    def refund_full(self, db: Session, payment_id: str, business_id: int) -> Payment:
        payment = self.get_payment(db, payment_id, business_id)
        if not can_transition(payment.status, PaymentStatus.REFUNDED):
            raise InvalidState(f"Cannot refund a {payment.status.value} payment")

        log = logger.bind(payment_id=payment_id, business_id=business_id)
        external_cents = payment.amount_cents - payment.gift_card_charged_cents

        try:
            if not self._claim(db, payment_id, PaymentStatus.SUCCESS, PaymentStatus.REFUNDED, refunded_at=utcnow()):
                raise InvalidState("Payment changed state while refunding")

            if payment.gift_card_id is not None and payment.gift_card_charged_cents > 0:
                self.ledger.restore(db, payment.gift_card_id, payment.gift_card_charged_cents)

            if payment.external_session_id and external_cents > 0:
                self.gateway.refund(
                    payment.external_session_id,
                    external_cents,
                    idempotency_key=f"refund-{payment_id}",
                )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(payment)
        log.info(
            "payment.refunded",
            gift_card_restored_cents=payment.gift_card_charged_cents,
            external_refunded_cents=external_cents if payment.external_session_id else 0,
        )
        return payment

    def get_payment(self, db: Session, payment_id: str, business_id: int) -> Payment:
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        if payment.business_id != business_id:
            raise WrongBusiness(f"Payment {payment_id} belongs to another business")
        return payment

    def find_by_session(self, db: Session, session_id: str) -> Payment | None:
        return self._find_by_session(db, session_id)

    def list_for_order(self, db: Session, business_id: int, order_id: int) -> list[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.business_id == business_id, Payment.order_id == order_id)
            .order_by(Payment.created_at.desc())
            .all()
        )

    def list_for_business(
        self,
        db: Session,
        business_id: int,
        status: PaymentStatus | None = None,
    ) -> list[Payment]:
        query = db.query(Payment).filter(Payment.business_id == business_id)
        if status is not None:
            query = query.filter(Payment.status == status)
        return query.order_by(Payment.created_at.desc()).all()

    def _find_by_session(self, db: Session, session_id: str) -> Payment | None:
        if not session_id:
            return None
        return db.query(Payment).filter(Payment.external_session_id == session_id).first()

    def _claim(self, db: Session, payment_id: str, current: PaymentStatus, target: PaymentStatus, **fields) -> bool:
        if not can_transition(current, target):
            raise InvalidState(f"No transition from {current.value} to {target.value}")
        values = {Payment.status: target}
        values.update({getattr(Payment, name): value for name, value in fields.items()})
        updated = (
            db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status == current)
            .update(values, synchronize_session=False)
        )
        return updated == 1

    def _close_pending(self, db: Session, session_id: str, target: PaymentStatus) -> None:
        log = logger.bind(session_id=session_id, target=target.value)
        payment = self._find_by_session(db, session_id)
        if payment is None:
            log.info("payment.close_ignored", reason="unknown_session")
            return

        try:
            claimed = self._claim(db, payment.id, PaymentStatus.PENDING, target)
            db.commit()
        except Exception:
            db.rollback()
            raise

        if claimed:
            log.info("payment.closed", payment_id=payment.id)
        else:
            log.info("payment.close_ignored", payment_id=payment.id, reason="already_final")

    def _fail_and_refund_external(self, db: Session, payment_id: str, session_id: str) -> None:
        log = logger.bind(payment_id=payment_id, session_id=session_id)
        payment = db.get(Payment, payment_id)
        try:
            if not self._claim(db, payment_id, PaymentStatus.PENDING, PaymentStatus.FAILED, completed_at=utcnow()):
                db.rollback()
                log.info("payment.fail_ignored", reason="lost_race")
                return
            self.gateway.refund(
                session_id,
                payment.amount_cents - payment.gift_card_planned_cents,
                idempotency_key=f"refund-{payment_id}",
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        log.warning("payment.failed_external_refunded")
