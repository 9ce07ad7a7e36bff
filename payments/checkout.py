import logging
import os

import stripe

from payments.gateway import GATEWAY_TIMEOUT, GatewayResponse

logger = logging.getLogger(__name__)

stripe.api_key = os.getenv("STRIPE_API_KEY")

RETURN_URL = os.getenv("STRIPE_RETURN_URL", "https://example.com/payments/success")
CURRENCY = os.getenv("CURRENCY", "krw")


def _failure(e: "stripe.StripeError") -> GatewayResponse:
    if isinstance(e, stripe.APIConnectionError):
        # the request may have reached Stripe
        return GatewayResponse(False, code=GATEWAY_TIMEOUT, message=str(e))
    code = getattr(e, "code", None) or type(e).__name__
    return GatewayResponse(False, code=code, message=getattr(e, "user_message", None) or str(e))


class StripeGateway:
    """
    Stripe adapter for the payment saga.
    An authorization is a PaymentIntent with manual capture: the card is held at begin_hold
    and charged only when the booking settles. Voids cancel the intent; refunds go through Refund.
    """

    def __init__(self, currency: str = CURRENCY, return_url: str = RETURN_URL):
        self.currency = currency
        self.return_url = return_url

    def authorize(self, order_id: str, amount: int, customer_key: str) -> GatewayResponse:
        # embed the order id in metadata so the webhook can look it up
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=self.currency,
                capture_method="manual",
                metadata={"order_id": order_id, "customer_key": customer_key},
                idempotency_key=f"authorize-{order_id}",
            )
        except stripe.StripeError as e:
            logger.warning("Stripe authorization for order %s failed: %s", order_id, e)
            return _failure(e)
        redirect_url = f"{self.return_url}?orderId={order_id}&paymentKey={intent.id}&amount={amount}"
        return GatewayResponse(True, payment_key=intent.id, redirect_url=redirect_url, raw=dict(intent))

    def capture(self, order_id: str, payment_key: str, amount: int) -> GatewayResponse:
        try:
            intent = stripe.PaymentIntent.capture(
                payment_key, amount_to_capture=amount, idempotency_key=f"capture-{order_id}"
            )
        except stripe.StripeError as e:
            logger.warning("Stripe capture for order %s failed: %s", order_id, e)
            return _failure(e)
        if intent.status != "succeeded":
            return GatewayResponse(False, payment_key=payment_key, code=intent.status,
                                   message="Payment was not captured", raw=dict(intent))
        return GatewayResponse(True, payment_key=payment_key, raw=dict(intent))

    def void(self, order_id: str, payment_key) -> GatewayResponse:
        if not payment_key:
            return GatewayResponse(True)
        try:
            intent = stripe.PaymentIntent.cancel(payment_key)
        except stripe.StripeError as e:
            logger.warning("Stripe void for order %s failed: %s", order_id, e)
            return _failure(e)
        return GatewayResponse(True, payment_key=payment_key, raw=dict(intent))

    def refund(self, payment_key: str, amount: int, reason: str) -> GatewayResponse:
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_key,
                amount=amount,
                reason="requested_by_customer",
                metadata={"reason": reason},
            )
        except stripe.StripeError as e:
            logger.warning("Stripe refund for %s failed: %s", payment_key, e)
            return _failure(e)
        return GatewayResponse(True, payment_key=payment_key, raw=dict(refund))
