"""Reason-coded errors surfaced to callers.

Business-rule rejections subclass ``SettlementError`` and carry a stable
``ReasonCode``. Processor and network failures are ``GatewayError`` and stay
distinguishable from business rejections all the way to the HTTP boundary.
"""

from enum import Enum


class ReasonCode(str, Enum):
    INVALID_GIFT_CARD = "invalid_gift_card"
    WRONG_BUSINESS = "wrong_business"
    BLOCKED = "blocked"
    EXPIRED = "expired"
    INVALID_AMOUNT = "invalid_amount"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_DISCOUNT = "invalid_discount"
    DUPLICATE_CODE = "duplicate_code"
    CONCURRENCY_CONFLICT = "concurrency_conflict"


class SettlementError(Exception):
    reason: ReasonCode
    status_code = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.reason.value)
        self.message = message or self.reason.value


class InvalidGiftCard(SettlementError):
    reason = ReasonCode.INVALID_GIFT_CARD


class WrongBusiness(SettlementError):
    reason = ReasonCode.WRONG_BUSINESS
    status_code = 403


class GiftCardBlocked(SettlementError):
    reason = ReasonCode.BLOCKED
    status_code = 422


class GiftCardExpired(SettlementError):
    reason = ReasonCode.EXPIRED
    status_code = 422


class InvalidAmount(SettlementError):
    reason = ReasonCode.INVALID_AMOUNT


class NotFound(SettlementError):
    reason = ReasonCode.NOT_FOUND
    status_code = 404


class InvalidState(SettlementError):
    reason = ReasonCode.INVALID_STATE
    status_code = 409


class InsufficientBalance(SettlementError):
    reason = ReasonCode.INSUFFICIENT_BALANCE
    status_code = 422


class InvalidDiscount(SettlementError):
    reason = ReasonCode.INVALID_DISCOUNT
    status_code = 422


class DuplicateCode(SettlementError):
    reason = ReasonCode.DUPLICATE_CODE
    status_code = 409


class ConcurrencyConflict(SettlementError):
    """Retries against a contended row ran out; safe for the caller to retry."""

    reason = ReasonCode.CONCURRENCY_CONFLICT
    status_code = 409


class GatewayError(Exception):
    """The external payment processor failed or returned something unusable."""
