from abc import ABC, abstractmethod
from dataclasses import dataclass

import stripe
import structlog

from settlement.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from settlement.errors import GatewayError, InvalidAmount

stripe.api_key = STRIPE_SECRET_KEY

logger = structlog.get_logger(__name__)

# Stripe event types the webhook receiver acts on
SESSION_COMPLETED = "checkout.session.completed"
SESSION_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
SESSION_ASYNC_FAILED = "checkout.session.async_payment_failed"
SESSION_EXPIRED = "checkout.session.expired"

SETTLED_PAYMENT_STATUSES = ("paid", "no_payment_required")


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    redirect_url: str


class PaymentGateway(ABC):

    @abstractmethod
    def create_checkout_session(
        self,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        payment_id: str,
    ) -> CheckoutSession:
        ...

    @abstractmethod
    def refund(self, session_id: str, amount_cents: int, idempotency_key: str) -> None:
        ...


class StripeGateway(PaymentGateway):

    def create_checkout_session(
        self,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        payment_id: str,
    ) -> CheckoutSession:
        if amount_cents <= 0:
            raise InvalidAmount("Checkout amount must be positive")

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                line_items=[
                    {
                        "quantity": 1,
                        "price_data": {
                            "unit_amount": amount_cents,
                            "currency": currency.lower(),
                            "product_data": {"name": "Cart payment"},
                        },
                    }
                ],
                client_reference_id=payment_id,
                metadata={"payment_id": payment_id},
                idempotency_key=f"checkout-{payment_id}",
            )
        except stripe.StripeError as exc:
            logger.error("stripe.session_create_failed", payment_id=payment_id, error=str(exc))
            raise GatewayError(f"Stripe checkout session failed: {exc}") from exc

        logger.info("stripe.session_created", payment_id=payment_id, session_id=session.id)
        return CheckoutSession(session_id=session.id, redirect_url=session.url)

    def refund(self, session_id: str, amount_cents: int, idempotency_key: str) -> None:
        if amount_cents <= 0:
            return

        try:
            session = stripe.checkout.Session.retrieve(session_id)
            payment_intent = session.payment_intent
            if not payment_intent:
                raise GatewayError(f"Session {session_id} has no payment intent to refund")
            if not isinstance(payment_intent, str):
                payment_intent = payment_intent.id

            stripe.Refund.create(
                payment_intent=payment_intent,
                amount=amount_cents,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.error("stripe.refund_failed", session_id=session_id, error=str(exc))
            raise GatewayError(f"Stripe refund failed: {exc}") from exc

        logger.info("stripe.refunded", session_id=session_id, amount_cents=amount_cents)


def construct_event(payload: bytes, signature: str | None):
    """Verify and parse a webhook delivery. Raises ValueError or stripe.SignatureVerificationError."""
    return stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
