from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from settlement.errors import InvalidAmount, InvalidDiscount, InvalidState
from settlement.models import Order, OrderLine, OrderStatus
from settlement.snapshots import (
    CatalogItemRef,
    DiscountSnapshot,
    DiscountTerms,
    apply_order_discount,
    cancel_order,
    capture_line,
    close_order,
    line_totals,
    order_total,
    to_cents,
)

NOW = datetime(2026, 3, 1, 12, 0)


def open_order(price_includes_tax=True, tip_cents=0):
    return Order(
        id=1,
        business_id=1,
        employee_id=7,
        status=OrderStatus.OPEN,
        tip_cents=tip_cents,
        price_includes_tax=price_includes_tax,
        created_at=NOW,
    )


def item(price="12.50", rate="21", catalog_item_id=10):
    return CatalogItemRef(
        catalog_item_id=catalog_item_id,
        name="Colour treatment",
        unit_price=Decimal(price),
        tax_class="standard",
        tax_rate_pct=Decimal(rate),
    )


def discount(type_="percent", scope="line", value="10", **overrides):
    fields = dict(
        discount_id=5,
        code="SPRING",
        type=type_,
        scope=scope,
        value=Decimal(value),
        starts_at=NOW - timedelta(days=1),
        ends_at=NOW + timedelta(days=1),
    )
    fields.update(overrides)
    return DiscountTerms(**fields)


def test_to_cents_rounds_half_up():
    assert to_cents(Decimal("0.625")) == 63
    assert to_cents(Decimal("0.624")) == 62
    assert to_cents(Decimal("19.995")) == 2000


def test_capture_line_freezes_catalog_data():
    order = open_order()

    line = capture_line(order, item(), Decimal("2"), employee_id=7, now=NOW)

    assert line.order_id == order.id
    assert line.business_id == 1
    assert line.item_name_snapshot == "Colour treatment"
    assert line.unit_price_snapshot == Decimal("12.50")
    assert line.tax_rate_snapshot_pct == Decimal("21")
    assert line.tax_class_snapshot == "standard"
    assert line.performed_at == NOW
    assert line.performed_by_employee_id == 7
    assert line.unit_discount_snapshot is None


def test_line_totals_with_tax_included():
    line = capture_line(open_order(), item("12.50"), Decimal("2"), 7, now=NOW)

    totals = line_totals(line, price_includes_tax=True)

    assert totals.gross_cents == 2500
    assert totals.tax_cents == 0
    assert totals.total_cents == 2500


def test_line_totals_adds_tax_when_prices_exclude_it():
    line = capture_line(open_order(False), item("10.00", "21"), Decimal("1"), 7, now=NOW)

    totals = line_totals(line, price_includes_tax=False)

    assert totals.net_cents == 1000
    assert totals.tax_cents == 210
    assert totals.total_cents == 1210


def test_line_percent_discount():
    line = capture_line(open_order(), item("12.50"), Decimal("2"), 7, discount(value="10"), now=NOW)

    totals = line_totals(line, price_includes_tax=True)

    assert totals.discount_cents == 250
    assert totals.net_cents == 2250


def test_line_amount_discount_is_per_unit():
    line = capture_line(
        open_order(), item("12.50"), Decimal("2"), 7, discount("amount", value="3.00"), now=NOW
    )

    assert line_totals(line, price_includes_tax=True).discount_cents == 600


def test_line_amount_discount_is_capped_at_gross():
    line = capture_line(
        open_order(), item("5.00"), Decimal("1"), 7, discount("amount", value="20.00"), now=NOW
    )

    totals = line_totals(line, price_includes_tax=True)

    assert totals.discount_cents == 500
    assert totals.total_cents == 0


def test_fractional_quantity_rounds_half_up():
    line = capture_line(open_order(), item("1.25"), Decimal("0.5"), 7, now=NOW)

    assert line_totals(line, price_includes_tax=True).gross_cents == 63


def test_order_total_applies_order_discount_then_tip():
    order = open_order(tip_cents=300)
    apply_order_discount(order, discount(scope="order", value="10"), now=NOW)
    lines = [
        capture_line(order, item("12.50"), Decimal("2"), 7, now=NOW),
        capture_line(order, item("5.00", catalog_item_id=11), Decimal("1"), 7, now=NOW),
    ]

    totals = order_total(order, lines)

    assert totals.subtotal_cents == 3000
    assert totals.order_discount_cents == 300
    assert totals.tip_cents == 300
    assert totals.total_cents == 3000
    assert order.discount_id == 5


def test_order_amount_discount_is_capped_at_subtotal():
    order = open_order()
    apply_order_discount(order, discount("amount", scope="order", value="50.00"), now=NOW)
    lines = [capture_line(order, item("12.50"), Decimal("1"), 7, now=NOW)]

    totals = order_total(order, lines)

    assert totals.order_discount_cents == 1250
    assert totals.total_cents == 0


def test_totals_ignore_later_catalog_and_discount_edits():
    order = open_order()
    live_item = item("12.50")
    live_discount = discount(value="10")
    line = capture_line(order, live_item, Decimal("2"), 7, live_discount, now=NOW)
    before = line_totals(line, price_includes_tax=True)

    live_item.unit_price = Decimal("99.00")
    live_item.tax_rate_pct = Decimal("0")
    live_discount.value = Decimal("90")
    live_discount.status = "inactive"

    assert line_totals(line, price_includes_tax=True) == before
    assert DiscountSnapshot.parse(line.unit_discount_snapshot).value == Decimal("10")


def test_snapshot_records_window_and_capture_time():
    line = capture_line(open_order(), item(), Decimal("1"), 7, discount(), now=NOW)

    snapshot = DiscountSnapshot.parse(line.unit_discount_snapshot)

    assert snapshot.version == 1
    assert snapshot.code == "SPRING"
    assert snapshot.catalog_item_id == 10
    assert snapshot.valid_from == NOW - timedelta(days=1)
    assert snapshot.captured_at == NOW


@pytest.mark.parametrize(
    "terms",
    [
        discount(status="inactive"),
        discount(starts_at=NOW + timedelta(hours=1)),
        discount(ends_at=NOW - timedelta(hours=1)),
        discount(value="0"),
        discount(value="120"),
        discount(eligible_item_ids=[99]),
        discount(scope="order"),
    ],
    ids=["inactive", "not_started", "ended", "zero", "over_100_percent", "ineligible_item", "order_scope"],
)
def test_line_discount_rejections(terms):
    with pytest.raises(InvalidDiscount) as exc:
        capture_line(open_order(), item(), Decimal("1"), 7, terms, now=NOW)

    assert exc.value.reason.value == "invalid_discount"


def test_line_scoped_discount_cannot_apply_to_order():
    with pytest.raises(InvalidDiscount):
        apply_order_discount(open_order(), discount(scope="line"), now=NOW)


def test_closed_order_rejects_new_lines():
    order = open_order()
    order.status = OrderStatus.CLOSED

    with pytest.raises(InvalidState):
        capture_line(order, item(), Decimal("1"), 7, now=NOW)


@pytest.mark.parametrize("qty, price", [("0", "10.00"), ("-1", "10.00"), ("1", "0")])
def test_capture_line_requires_positive_qty_and_price(qty, price):
    with pytest.raises(InvalidAmount):
        capture_line(open_order(), item(price), Decimal(qty), 7, now=NOW)


def test_line_without_price_snapshot_cannot_be_totalled():
    line = OrderLine(
        order_id=1,
        business_id=1,
        catalog_item_id=10,
        qty=Decimal("1"),
        item_name_snapshot="Legacy item",
        unit_price_snapshot=None,
    )

    with pytest.raises(InvalidAmount):
        line_totals(line, price_includes_tax=True)


def test_discount_window_with_offset_is_normalised_to_utc():
    terms = discount(
        starts_at=datetime(2026, 3, 1, 13, 30, tzinfo=timezone(timedelta(hours=2))),
        ends_at=datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc),
    )

    assert terms.starts_at == datetime(2026, 3, 1, 11, 30)
    assert terms.ends_at.tzinfo is None
    line = capture_line(open_order(), item(), Decimal("1"), 7, terms, now=NOW)
    assert DiscountSnapshot.parse(line.unit_discount_snapshot).valid_from == datetime(2026, 3, 1, 11, 30)


def test_close_order_stamps_closed_at():
    order = open_order()

    close_order(order, now=NOW)

    assert order.status == OrderStatus.CLOSED
    assert order.closed_at == NOW


def test_cancel_order_stamps_closed_at():
    order = open_order()

    cancel_order(order, now=NOW)

    assert order.status == OrderStatus.CANCELLED
    assert order.closed_at == NOW


@pytest.mark.parametrize("status", [OrderStatus.CLOSED, OrderStatus.CANCELLED, OrderStatus.REFUNDED])
def test_only_open_orders_can_be_closed_or_cancelled(status):
    order = open_order()
    order.status = status

    with pytest.raises(InvalidState):
        close_order(order, now=NOW)
    with pytest.raises(InvalidState):
        cancel_order(order, now=NOW)
