import json
import logging
import os
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from booking_api.deps import get_caller, get_services
from booking_schemas import (
    Caller,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    HoldTicket,
    InitiatePaymentRequest,
    PaymentOrder,
    PendingConfirmation,
)
from errors import NotFoundError, ValidationError
from services import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])

stripe.api_key = os.getenv("STRIPE_API_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

FAILURE_EVENTS = ("payment_intent.payment_failed", "payment_intent.canceled")


@router.post("/payments", response_model=HoldTicket, status_code=201)
def initiate_payment(
    body: InitiatePaymentRequest,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.payments.begin_hold(
        body.unit_id,
        body.time_from,
        body.desired_hours,
        body.identity_id,
        caller,
        existing_hold_id=body.temporary_reservation_id,
    )


@router.get("/payments/success", response_model=PendingConfirmation)
def payment_success(
    payment_type: Optional[str] = Query(None, alias="paymentType"),
    order_id: Optional[str] = Query(None, alias="orderId"),
    payment_key: Optional[str] = Query(None, alias="paymentKey"),
    amount: Optional[int] = Query(None),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    """Gateway return URL after a successful authorization."""
    if not payment_type or not order_id or not payment_key or amount is None:
        raise ValidationError("paymentType, orderId, paymentKey and amount are required", code="missing_field")
    return services.payments.on_gateway_success(order_id, payment_key, amount, caller)


@router.get("/payments/fail", response_model=PaymentOrder)
def payment_fail(
    order_id: Optional[str] = Query(None, alias="orderId"),
    code: Optional[str] = Query(None),
    message: Optional[str] = Query(None),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    """Gateway return URL after a failed or abandoned authorization."""
    if not order_id or not code or not message:
        raise ValidationError("orderId, code and message are required", code="missing_field")
    return services.payments.on_gateway_failure(order_id, code, message, caller)


@router.post("/payments/confirm", response_model=ConfirmPaymentResponse)
def confirm_payment(
    body: ConfirmPaymentRequest,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    booking = services.payments.confirm_settlement(body.order_id, body.payment_key, body.amount, caller)
    return ConfirmPaymentResponse(booking=booking)


@router.get("/payments/{order_id}", response_model=PaymentOrder)
def get_payment(
    order_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.payments.get_order(order_id, caller)


@router.delete("/payments/{order_id}", response_model=PaymentOrder)
def cancel_payment(
    order_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.payments.cancel_settlement(order_id, caller)


@router.post("/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    services: Services = Depends(get_services),
):
    payload = await request.body()
    sig_header = stripe_signature or request.headers.get("stripe-signature")
    if not STRIPE_WEBHOOK_SECRET:
        # If not set, parse without verification (only for local dev; NOT for prod)
        event = stripe.Event.construct_from(json.loads(payload), stripe.api_key)
    else:
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, STRIPE_WEBHOOK_SECRET)
        except stripe.SignatureVerificationError:
            raise HTTPException(status_code=400, detail="Invalid Stripe signature")

    if event["type"] not in FAILURE_EVENTS:
        return JSONResponse(content={"received": True})

    intent = event["data"]["object"]
    order_id = (intent.get("metadata") or {}).get("order_id")
    if not order_id:
        return JSONResponse(content={"received": True, "result": "no order id in metadata"})

    error = intent.get("last_payment_error") or {}
    code = error.get("code") or intent.get("cancellation_reason") or event["type"]
    message = error.get("message") or "Payment was not completed"
    try:
        order = await run_in_threadpool(services.payments.on_gateway_failure, order_id, code, message)
    except NotFoundError:
        logger.warning("Stripe event %s for unknown order %s", event["type"], order_id)
        return JSONResponse(content={"received": True, "result": "unknown order"})
    return JSONResponse(content={"received": True, "result": order.state})
