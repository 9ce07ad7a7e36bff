import threading
import time
import uuid

from payments.gateway import GatewayResponse


class MockPaymentGateway:
    """
    Mock payment gateway: deterministic responses for demo / testing.

    - `fail_authorize` makes every authorization fail
    - `capture_failures` fails that many captures before succeeding
    - `latency` simulates a slow network round trip on every call
    Every call is recorded in `calls` as (method, args).
    """

    def __init__(self, latency: float = 0.0, fail_authorize: bool = False, capture_failures: int = 0,
                 refund_fails: bool = False, redirect_base: str = "https://pay.example.com/checkout"):
        self.latency = latency
        self.fail_authorize = fail_authorize
        self.capture_failures = capture_failures
        self.refund_fails = refund_fails
        self.redirect_base = redirect_base
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, method: str, *args):
        with self._lock:
            self.calls.append((method, args))
        if self.latency:
            time.sleep(self.latency)

    def calls_to(self, method: str):
        with self._lock:
            return [args for name, args in self.calls if name == method]

    def authorize(self, order_id, amount, customer_key):
        self._record("authorize", order_id, amount, customer_key)
        if self.fail_authorize:
            return GatewayResponse(False, code="REJECT_CARD_COMPANY", message="Card was declined")
        return GatewayResponse(
            True,
            redirect_url=f"{self.redirect_base}?orderId={order_id}&amount={amount}",
            raw={"orderId": order_id, "amount": amount, "customerKey": customer_key},
        )

    def capture(self, order_id, payment_key, amount):
        self._record("capture", order_id, payment_key, amount)
        with self._lock:
            if self.capture_failures > 0:
                self.capture_failures -= 1
                return GatewayResponse(False, code="PROVIDER_ERROR", message="Temporary capture failure")
        return GatewayResponse(
            True, payment_key=payment_key, raw={"orderId": order_id, "totalAmount": amount, "status": "DONE"}
        )

    def void(self, order_id, payment_key):
        self._record("void", order_id, payment_key)
        return GatewayResponse(True, payment_key=payment_key, raw={"orderId": order_id, "status": "CANCELED"})

    def refund(self, payment_key, amount, reason):
        self._record("refund", payment_key, amount, reason)
        if self.refund_fails:
            return GatewayResponse(False, code="REFUND_REJECTED", message="Refund rejected")
        return GatewayResponse(
            True,
            payment_key=payment_key,
            raw={"transactionKey": f"txn-{uuid.uuid4().hex[:12]}", "cancelAmount": amount, "reason": reason},
        )
