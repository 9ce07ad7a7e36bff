import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"


class GatewayResponse:
    def __init__(self, success: bool, payment_key: str = None, redirect_url: str = None,
                 code: str = None, message: str = None, raw: dict = None):
        self.success = success
        self.payment_key = payment_key
        self.redirect_url = redirect_url
        self.code = code
        self.message = message
        self.raw = raw or {}

    @property
    def outcome_unknown(self) -> bool:
        # the request may still have been processed on the provider side
        return not self.success and self.code == GATEWAY_TIMEOUT


class PaymentGateway(Protocol):
    """
    What the saga needs from a payment provider.
    Adapters report provider errors through GatewayResponse(success=False, code, message)
    instead of raising.
    """

    def authorize(self, order_id: str, amount: int, customer_key: str) -> GatewayResponse:
        ...

    def capture(self, order_id: str, payment_key: str, amount: int) -> GatewayResponse:
        ...

    def void(self, order_id: str, payment_key: Optional[str]) -> GatewayResponse:
        ...

    def refund(self, payment_key: str, amount: int, reason: str) -> GatewayResponse:
        ...


_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="gateway")


def call_gateway(fn, *args, timeout: float) -> GatewayResponse:
    """Run one gateway call with a bounded wait. Never call this while holding a unit lock."""
    future = _executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeout:
        logger.warning("Gateway call %s timed out after %ss", getattr(fn, "__name__", fn), timeout)
        return GatewayResponse(False, code=GATEWAY_TIMEOUT, message="Payment gateway did not respond in time")
    except Exception as e:
        logger.exception("Gateway call %s raised", getattr(fn, "__name__", fn))
        return GatewayResponse(False, code="GATEWAY_ERROR", message=str(e))
