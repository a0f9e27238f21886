from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from settlement.models import GiftCardStatus, PaymentMethod, PaymentStatus, as_naive_utc
from settlement.snapshots import CatalogItemRef, DiscountTerms, OrderTotals


class PaymentRequest(BaseModel):
    order_id: int = Field(..., ge=1)
    currency: str = Field("eur", min_length=3, max_length=3)
    gift_card_code: Optional[str] = None
    gift_card_amount_cents: Optional[int] = Field(None, description="Omit to use the card for as much as possible")


class PaymentCreatedResponse(BaseModel):
    payment_id: str
    status: PaymentStatus
    paid_by_gift_card: int
    remaining_for_stripe: int
    external_redirect_url: Optional[str] = None
    external_session_id: Optional[str] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    business_id: int
    order_id: int
    employee_id: Optional[int] = None
    amount_cents: int
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    gift_card_id: Optional[int] = None
    gift_card_planned_cents: int
    gift_card_charged_cents: int
    external_session_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class GiftCardCreateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    balance_cents: int = Field(0, ge=0)
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def _to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)


class GiftCardTopUpRequest(BaseModel):
    amount_cents: int


class GiftCardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    balance_cents: int
    status: GiftCardStatus
    expires_at: Optional[datetime] = None
    issued_at: datetime


class OrderCreateRequest(BaseModel):
    table_or_area: Optional[str] = None
    tip_cents: int = Field(0, ge=0)
    price_includes_tax: bool = True
    discount: Optional[DiscountTerms] = None


class OrderLineCreateRequest(BaseModel):
    item: CatalogItemRef
    qty: Decimal = Field(..., gt=0)
    discount: Optional[DiscountTerms] = None


class OrderLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    catalog_item_id: int
    qty: Decimal
    item_name_snapshot: str
    unit_price_snapshot: Decimal
    unit_discount_snapshot: Optional[str] = None
    tax_class_snapshot: str
    tax_rate_snapshot_pct: Decimal
    performed_at: datetime
    performed_by_employee_id: Optional[int] = None


class OrderTotalsResponse(BaseModel):
    subtotal_cents: int
    order_discount_cents: int
    tip_cents: int
    total_cents: int

    @classmethod
    def from_totals(cls, totals: OrderTotals) -> "OrderTotalsResponse":
        return cls(
            subtotal_cents=totals.subtotal_cents,
            order_discount_cents=totals.order_discount_cents,
            tip_cents=totals.tip_cents,
            total_cents=totals.total_cents,
        )


class OrderDetailResponse(BaseModel):
    id: int
    business_id: int
    employee_id: int
    status: str
    table_or_area: Optional[str] = None
    discount_snapshot: Optional[str] = None
    created_at: datetime
    closed_at: Optional[datetime] = None
    lines: list[OrderLineResponse]
    totals: OrderTotalsResponse
