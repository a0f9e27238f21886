from dataclasses import asdict
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement.auth import TenantContext, verify_token
from settlement.config import PUBLIC_BASE_URL
from settlement.database import get_db
from settlement.engine import PaymentEngine
from settlement.errors import InvalidState, NotFound, WrongBusiness
from settlement.ledger import GiftCardLedger
from settlement.models import GiftCardStatus, Order, OrderLine, OrderStatus, PaymentStatus, utcnow
from settlement.schemas import (
    GiftCardCreateRequest,
    GiftCardResponse,
    GiftCardTopUpRequest,
    OrderCreateRequest,
    OrderDetailResponse,
    OrderLineCreateRequest,
    OrderLineResponse,
    OrderTotalsResponse,
    PaymentCreatedResponse,
    PaymentRequest,
    PaymentResponse,
)
from settlement.snapshots import apply_order_discount, cancel_order, capture_line, close_order, order_total
from settlement.stripe_service import StripeGateway

router = APIRouter()
logger = structlog.get_logger(__name__)

_ledger = GiftCardLedger()
_payment_engine = PaymentEngine(StripeGateway(), _ledger)


def get_ledger() -> GiftCardLedger:
    return _ledger


def get_payment_engine() -> PaymentEngine:
    return _payment_engine


def require_manager(ctx: TenantContext = Depends(verify_token)) -> TenantContext:
    if not ctx.is_owner_or_manager:
        raise HTTPException(status_code=403, detail="Only owners and managers can do this")
    return ctx


def _load_order(db: Session, order_id: int, business_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    if order.business_id != business_id:
        raise WrongBusiness(f"Order {order_id} belongs to another business")
    return order


def _order_lines(db: Session, order: Order) -> list[OrderLine]:
    return (
        db.query(OrderLine)
        .filter(OrderLine.order_id == order.id, OrderLine.business_id == order.business_id)
        .order_by(OrderLine.id)
        .all()
    )


def _order_detail(db: Session, order: Order) -> OrderDetailResponse:
    lines = _order_lines(db, order)
    return OrderDetailResponse(
        id=order.id,
        business_id=order.business_id,
        employee_id=order.employee_id,
        status=order.status.value,
        table_or_area=order.table_or_area,
        discount_snapshot=order.discount_snapshot,
        created_at=order.created_at,
        closed_at=order.closed_at,
        lines=[OrderLineResponse.model_validate(line) for line in lines],
        totals=OrderTotalsResponse.from_totals(order_total(order, lines)),
    )


@router.post("/payments", response_model=PaymentCreatedResponse)
def create_payment_api(
    request: PaymentRequest,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
    payments: PaymentEngine = Depends(get_payment_engine),
):
    order = _load_order(db, request.order_id, ctx.business_id)
    if order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        raise InvalidState(f"Order {order.id} is {order.status.value}")

    totals = order_total(order, _order_lines(db, order))
    logger.info(
        "payment.requested",
        business_id=ctx.business_id,
        order_id=order.id,
        amount_cents=totals.total_cents,
        gift_card=bool(request.gift_card_code),
    )

    result = payments.create_payment(
        db,
        order_id=order.id,
        business_id=ctx.business_id,
        amount_cents=totals.total_cents,
        currency=request.currency,
        gift_card_code=request.gift_card_code,
        gift_card_amount_cents=request.gift_card_amount_cents,
        employee_id=ctx.employee_id,
        success_url=f"{PUBLIC_BASE_URL}/payments/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{PUBLIC_BASE_URL}/payments/cancel?session_id={{CHECKOUT_SESSION_ID}}",
    )
    return PaymentCreatedResponse(**asdict(result))


@router.get("/payments/success")
def payment_success_page(
    session_id: str,
    db: Session = Depends(get_db),
    payments: PaymentEngine = Depends(get_payment_engine),
):
    # Settlement happens on the webhook; this only reports where the payment stands
    payment = payments.find_by_session(db, session_id)
    if payment is None:
        raise NotFound(f"No payment for session {session_id}")
    return {"payment_id": payment.id, "status": payment.status.value}


@router.get("/payments/cancel")
def payment_cancel_page(
    session_id: str,
    db: Session = Depends(get_db),
    payments: PaymentEngine = Depends(get_payment_engine),
):
    payments.cancel_external(db, session_id)
    payment = payments.find_by_session(db, session_id)
    if payment is None:
        raise NotFound(f"No payment for session {session_id}")
    return {"payment_id": payment.id, "status": payment.status.value}


@router.get("/payments", response_model=list[PaymentResponse])
def list_payments(
    order_id: Optional[int] = None,
    status: Optional[PaymentStatus] = None,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
    payments: PaymentEngine = Depends(get_payment_engine),
):
    if order_id is not None:
        rows = payments.list_for_order(db, ctx.business_id, order_id)
        if status is not None:
            rows = [p for p in rows if p.status == status]
        return rows
    return payments.list_for_business(db, ctx.business_id, status)


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: str,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
    payments: PaymentEngine = Depends(get_payment_engine),
):
    return payments.get_payment(db, payment_id, ctx.business_id)


@router.post("/payments/{payment_id}/refund", response_model=PaymentResponse)
def refund(
    payment_id: str,
    ctx: TenantContext = Depends(require_manager),
    db: Session = Depends(get_db),
    payments: PaymentEngine = Depends(get_payment_engine),
):
    logger.info("payment.refund_requested", payment_id=payment_id, employee_id=ctx.employee_id)
    return payments.refund_full(db, payment_id, ctx.business_id)


@router.post("/gift-cards", response_model=GiftCardResponse, status_code=201)
def create_gift_card(
    request: GiftCardCreateRequest,
    ctx: TenantContext = Depends(require_manager),
    db: Session = Depends(get_db),
    ledger: GiftCardLedger = Depends(get_ledger),
):
    card = ledger.create(db, ctx.business_id, request.code, request.balance_cents, request.expires_at)
    db.commit()
    db.refresh(card)
    return card


@router.get("/gift-cards", response_model=list[GiftCardResponse])
def list_gift_cards(
    status: Optional[GiftCardStatus] = None,
    code: Optional[str] = None,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
    ledger: GiftCardLedger = Depends(get_ledger),
):
    return ledger.list_for_business(db, ctx.business_id, status, code)


@router.get("/gift-cards/code/{code}", response_model=GiftCardResponse)
def get_gift_card_by_code(
    code: str,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
    ledger: GiftCardLedger = Depends(get_ledger),
):
    card = ledger.get_by_code(db, code, ctx.business_id)
    if card is None:
        raise NotFound(f"Gift card {code} not found")
    return card


def _own_gift_card(db: Session, ledger: GiftCardLedger, gift_card_id: int, business_id: int):
    card = ledger.get(db, gift_card_id)
    if card is None or card.business_id != business_id:
        raise NotFound(f"Gift card {gift_card_id} not found")
    return card


@router.post("/gift-cards/{gift_card_id}/top-up", response_model=GiftCardResponse)
def top_up_gift_card(
    gift_card_id: int,
    request: GiftCardTopUpRequest,
    ctx: TenantContext = Depends(require_manager),
    db: Session = Depends(get_db),
    ledger: GiftCardLedger = Depends(get_ledger),
):
    card = _own_gift_card(db, ledger, gift_card_id, ctx.business_id)
    if not ledger.top_up(db, gift_card_id, request.amount_cents):
        raise NotFound(f"Gift card {gift_card_id} not found")
    db.commit()
    db.refresh(card)
    return card


@router.post("/gift-cards/{gift_card_id}/deactivate", response_model=GiftCardResponse)
def deactivate_gift_card(
    gift_card_id: int,
    ctx: TenantContext = Depends(require_manager),
    db: Session = Depends(get_db),
    ledger: GiftCardLedger = Depends(get_ledger),
):
    card = _own_gift_card(db, ledger, gift_card_id, ctx.business_id)
    ledger.deactivate(db, gift_card_id)
    db.commit()
    db.refresh(card)
    return card


@router.post("/orders", response_model=OrderDetailResponse, status_code=201)
def create_order(
    request: OrderCreateRequest,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = Order(
        business_id=ctx.business_id,
        employee_id=ctx.employee_id,
        status=OrderStatus.OPEN,
        table_or_area=request.table_or_area,
        tip_cents=request.tip_cents,
        price_includes_tax=request.price_includes_tax,
        created_at=utcnow(),
    )
    if request.discount is not None:
        apply_order_discount(order, request.discount)
    db.add(order)
    db.commit()
    db.refresh(order)
    return _order_detail(db, order)


@router.post("/orders/{order_id}/lines", response_model=OrderLineResponse, status_code=201)
def add_order_line(
    order_id: int,
    request: OrderLineCreateRequest,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id, ctx.business_id)
    line = capture_line(order, request.item, request.qty, ctx.employee_id, request.discount)
    db.add(line)
    db.commit()
    db.refresh(line)
    return line


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
def get_order(
    order_id: int,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
):
    return _order_detail(db, _load_order(db, order_id, ctx.business_id))


@router.post("/orders/{order_id}/close", response_model=OrderDetailResponse)
def close_order_api(
    order_id: int,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id, ctx.business_id)
    close_order(order)
    db.commit()
    logger.info("order.closed", order_id=order_id, employee_id=ctx.employee_id)
    return _order_detail(db, order)


@router.post("/orders/{order_id}/cancel", response_model=OrderDetailResponse)
def cancel_order_api(
    order_id: int,
    ctx: TenantContext = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = _load_order(db, order_id, ctx.business_id)
    cancel_order(order)
    db.commit()
    logger.info("order.cancelled", order_id=order_id, employee_id=ctx.employee_id)
    return _order_detail(db, order)
