import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from settlement.database import Base


def utcnow() -> datetime:
    # Stored naive; every timestamp in the service is UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.SUCCESS, PaymentStatus.CANCELLED, PaymentStatus.FAILED},
    PaymentStatus.SUCCESS: {PaymentStatus.REFUNDED},
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[current]


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"
    GIFT_CARD = "gift_card"
    MIXED = "gift_card+stripe"


class GiftCardStatus(str, enum.Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    INACTIVE = "inactive"


class OrderStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class GiftCard(Base):
    __tablename__ = "gift_cards"
    __table_args__ = (UniqueConstraint("business_id", "code", name="uq_gift_cards_business_code"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(Integer, nullable=False, index=True)
    code = Column(String(50), nullable=False, index=True)
    balance_cents = Column(Integer, nullable=False, default=0)    # only moved by the ledger
    status = Column(
        Enum(GiftCardStatus, native_enum=False, values_callable=_values, validate_strings=True),
        nullable=False,
        default=GiftCardStatus.ACTIVE,
    )
    expires_at = Column(DateTime, nullable=True)
    issued_at = Column(DateTime, nullable=False)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(32), primary_key=True)
    business_id = Column(Integer, nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    employee_id = Column(Integer, nullable=True)

    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    method = Column(
        Enum(PaymentMethod, native_enum=False, values_callable=_values, validate_strings=True),
        nullable=False,
    )
    status = Column(
        Enum(PaymentStatus, native_enum=False, values_callable=_values, validate_strings=True),
        nullable=False,
        index=True,
    )

    gift_card_id = Column(Integer, ForeignKey("gift_cards.id"), nullable=True)
    gift_card_planned_cents = Column(Integer, nullable=False, default=0)
    gift_card_charged_cents = Column(Integer, nullable=False, default=0)  # set on settlement

    external_session_id = Column(String(255), unique=True, nullable=True, index=True)

    created_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(Integer, nullable=False, index=True)
    employee_id = Column(Integer, nullable=False)
    status = Column(
        Enum(OrderStatus, native_enum=False, values_callable=_values, validate_strings=True),
        nullable=False,
        default=OrderStatus.OPEN,
    )
    table_or_area = Column(String(100), nullable=True)
    tip_cents = Column(Integer, nullable=False, default=0)
    price_includes_tax = Column(Boolean, nullable=False, default=True)
    discount_id = Column(Integer, nullable=True)
    discount_snapshot = Column(Text, nullable=True)    # JSON, frozen at capture time
    created_at = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, nullable=True)


class OrderLine(Base):
    __tablename__ = "order_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    business_id = Column(Integer, nullable=False, index=True)
    catalog_item_id = Column(Integer, nullable=False)
    discount_id = Column(Integer, nullable=True)
    qty = Column(Numeric(12, 3), nullable=False)

    item_name_snapshot = Column(String(200), nullable=False)
    unit_price_snapshot = Column(Numeric(12, 2), nullable=False)   # major units
    unit_discount_snapshot = Column(Text, nullable=True)            # JSON
    tax_class_snapshot = Column(String(50), nullable=False, default="")
    tax_rate_snapshot_pct = Column(Numeric(5, 2), nullable=False, default=0)

    performed_at = Column(DateTime, nullable=False)
    performed_by_employee_id = Column(Integer, nullable=True)
