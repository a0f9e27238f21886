"""Order financial snapshots.

Prices, tax rates and discounts are copied onto order lines when the line is
captured. Totals are always computed from those frozen copies, so editing a
catalog item or a discount later never changes a receipt that was already
rung up. Amounts are held in major units as ``Decimal`` and rounded half-up
to whole cents.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from settlement.errors import InvalidAmount, InvalidDiscount, InvalidState
from settlement.models import Order, OrderLine, OrderStatus, as_naive_utc, utcnow

SNAPSHOT_VERSION = 1
HUNDRED = Decimal(100)


class CatalogItemRef(BaseModel):
    """Catalog data for one item as resolved by the catalog collaborator."""

    catalog_item_id: int
    name: str
    unit_price: Decimal = Field(..., description="Price in major units, e.g. 12.50")
    tax_class: str = ""
    tax_rate_pct: Decimal = Decimal(0)


class DiscountTerms(BaseModel):
    """A discount as currently defined, before it is frozen onto an order."""

    discount_id: int
    code: str
    type: Literal["percent", "amount"]
    scope: Literal["order", "line"]
    value: Decimal
    status: str = "active"
    starts_at: datetime
    ends_at: datetime
    eligible_item_ids: list[int] = Field(default_factory=list)

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _to_naive_utc(cls, value: datetime) -> datetime:
        return as_naive_utc(value)


class DiscountSnapshot(BaseModel):
    version: int = SNAPSHOT_VERSION
    discount_id: int
    code: str
    type: Literal["percent", "amount"]
    scope: Literal["order", "line"]
    value: Decimal
    catalog_item_id: Optional[int] = None
    valid_from: datetime
    valid_to: datetime
    captured_at: datetime

    @classmethod
    def parse(cls, text: str | None) -> Optional["DiscountSnapshot"]:
        if not text:
            return None
        return cls.model_validate_json(text)


@dataclass(frozen=True)
class LineTotals:
    line_id: int | None
    gross_cents: int
    discount_cents: int
    net_cents: int
    tax_cents: int
    total_cents: int


@dataclass(frozen=True)
class OrderTotals:
    lines: list[LineTotals]
    subtotal_cents: int
    order_discount_cents: int
    tip_cents: int
    total_cents: int


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * HUNDRED).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _round_cents(cents: Decimal) -> int:
    return int(cents.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def make_discount_snapshot(
    discount: DiscountTerms,
    catalog_item_id: int | None = None,
    captured_at: datetime | None = None,
) -> str:
    now = as_naive_utc(captured_at) or utcnow()

    if discount.status.lower() != "active":
        raise InvalidDiscount(f"Discount {discount.code} is not active")
    if not (discount.starts_at <= now <= discount.ends_at):
        raise InvalidDiscount(f"Discount {discount.code} is outside its validity window")
    if discount.value <= 0:
        raise InvalidDiscount(f"Discount {discount.code} has no value")
    if discount.type == "percent" and discount.value > HUNDRED:
        raise InvalidDiscount(f"Discount {discount.code} exceeds 100%")
    if discount.scope == "line":
        if catalog_item_id is None:
            raise InvalidDiscount("Line discounts need a catalog item")
        if discount.eligible_item_ids and catalog_item_id not in discount.eligible_item_ids:
            raise InvalidDiscount(f"Discount {discount.code} does not apply to item {catalog_item_id}")

    snapshot = DiscountSnapshot(
        discount_id=discount.discount_id,
        code=discount.code,
        type=discount.type,
        scope=discount.scope,
        value=discount.value,
        catalog_item_id=catalog_item_id if discount.scope == "line" else None,
        valid_from=discount.starts_at,
        valid_to=discount.ends_at,
        captured_at=now,
    )
    return snapshot.model_dump_json()


def capture_line(
    order: Order,
    item: CatalogItemRef,
    qty: Decimal,
    employee_id: int | None,
    discount: DiscountTerms | None = None,
    now: datetime | None = None,
) -> OrderLine:
    """Freeze the item's current price, tax and discount onto a new order line."""
    if order.status != OrderStatus.OPEN:
        raise InvalidState(f"Order {order.id} is {order.status.value}")
    if qty <= 0:
        raise InvalidAmount("Quantity must be positive")
    if item.unit_price <= 0:
        raise InvalidAmount(f"Item {item.catalog_item_id} has no price")

    now = now or utcnow()
    unit_discount_snapshot = None
    if discount is not None:
        if discount.scope != "line":
            raise InvalidDiscount(f"Discount {discount.code} is not a line discount")
        unit_discount_snapshot = make_discount_snapshot(discount, item.catalog_item_id, now)

    return OrderLine(
        order_id=order.id,
        business_id=order.business_id,
        catalog_item_id=item.catalog_item_id,
        discount_id=discount.discount_id if discount is not None else None,
        qty=qty,
        item_name_snapshot=item.name,
        unit_price_snapshot=item.unit_price,
        unit_discount_snapshot=unit_discount_snapshot,
        tax_class_snapshot=item.tax_class,
        tax_rate_snapshot_pct=item.tax_rate_pct,
        performed_at=now,
        performed_by_employee_id=employee_id,
    )


def apply_order_discount(order: Order, discount: DiscountTerms, now: datetime | None = None) -> None:
    if order.status != OrderStatus.OPEN:
        raise InvalidState(f"Order {order.id} is {order.status.value}")
    if discount.scope != "order":
        raise InvalidDiscount(f"Discount {discount.code} is not an order discount")
    order.discount_snapshot = make_discount_snapshot(discount, captured_at=now)
    order.discount_id = discount.discount_id


def close_order(order: Order, now: datetime | None = None) -> None:
    if order.status != OrderStatus.OPEN:
        raise InvalidState(f"Order {order.id} is {order.status.value}")
    order.status = OrderStatus.CLOSED
    order.closed_at = now or utcnow()


def cancel_order(order: Order, now: datetime | None = None) -> None:
    if order.status != OrderStatus.OPEN:
        raise InvalidState(f"Order {order.id} is {order.status.value}")
    order.status = OrderStatus.CANCELLED
    order.closed_at = now or utcnow()


def line_totals(line: OrderLine, price_includes_tax: bool) -> LineTotals:
    if line.unit_price_snapshot is None or line.unit_price_snapshot <= 0:
        raise InvalidAmount(f"Order line {line.id} is missing its price snapshot")

    unit_price = Decimal(line.unit_price_snapshot)
    qty = Decimal(line.qty)
    gross = to_cents(unit_price * qty)

    discount = 0
    snapshot = DiscountSnapshot.parse(line.unit_discount_snapshot)
    if snapshot is not None:
        if snapshot.type == "percent":
            discount = _round_cents(Decimal(gross) * snapshot.value / HUNDRED)
        else:
            discount = to_cents(snapshot.value * qty)
        discount = min(discount, gross)

    net = gross - discount
    tax = 0
    if not price_includes_tax:
        tax = _round_cents(Decimal(net) * Decimal(line.tax_rate_snapshot_pct or 0) / HUNDRED)

    return LineTotals(
        line_id=line.id,
        gross_cents=gross,
        discount_cents=discount,
        net_cents=net,
        tax_cents=tax,
        total_cents=net + tax,
    )


def order_total(order: Order, lines: list[OrderLine]) -> OrderTotals:
    """Settleable total: taxed lines, minus the order discount, plus the tip."""
    per_line = [line_totals(line, order.price_includes_tax) for line in lines]
    subtotal = sum(t.total_cents for t in per_line)

    order_discount = 0
    snapshot = DiscountSnapshot.parse(order.discount_snapshot)
    if snapshot is not None:
        if snapshot.type == "percent":
            order_discount = _round_cents(Decimal(subtotal) * snapshot.value / HUNDRED)
        else:
            order_discount = to_cents(snapshot.value)
        order_discount = min(order_discount, subtotal)

    tip = order.tip_cents or 0
    return OrderTotals(
        lines=per_line,
        subtotal_cents=subtotal,
        order_discount_cents=order_discount,
        tip_cents=tip,
        total_cents=subtotal - order_discount + tip,
    )
