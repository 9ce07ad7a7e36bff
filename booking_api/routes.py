"""
Booking routes.

    GET    /bookings/calendar          occupied slots within the booking horizon
    POST   /bookings/check             validate a slot and quote its price
    POST   /bookings                   cash booking (PENDING until staff confirm)
    GET    /booking/{id}               booking detail with payment records
    PUT    /booking/{id}               amend (extend / move) or hand over to a group
    DELETE /booking/{id}               cancel, with refund account when a refund is due
    POST   /admin/booking/{id}/confirm staff confirms a cash deposit
    POST   /admin/booking/{id}/refund  staff marks requested refunds as paid out
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from booking_api.deps import get_caller, get_services
from booking_schemas import (
    AmendBookingRequest,
    AmendBookingResponse,
    Booking,
    BookingDetail,
    Calendar,
    Caller,
    CancelBookingResponse,
    CheckRequest,
    CheckResponse,
    SubmitBookingRequest,
    SubmitBookingResponse,
)
from errors import ValidationError
from services import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])


@router.get("/bookings/calendar", response_model=Calendar)
def get_calendar(
    unit_id: str = Query(...),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.availability.calendar(unit_id, caller)


@router.post("/bookings/check", response_model=CheckResponse)
def check_booking(
    body: CheckRequest,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    total = services.availability.check(
        body.unit_id,
        body.time_from,
        body.desired_hours,
        additional_hours=body.additional_hours,
        exclude_booking_id=body.exclude_booking_id,
    )
    return CheckResponse(total_price=total)


@router.post("/bookings", response_model=SubmitBookingResponse, status_code=status.HTTP_201_CREATED)
def submit_booking(
    body: SubmitBookingRequest,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    booking, cash = services.lifecycle.create(
        body.unit_id,
        caller,
        body.identity_id,
        body.time_from,
        body.desired_hours,
        payment_method="cash",
        depositor_name=body.depositor_name,
    )
    return SubmitBookingResponse(booking=booking, cash_payment_status=cash)


@router.get("/booking/{booking_id}", response_model=BookingDetail)
def get_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.lifecycle.get(booking_id, caller)


@router.put("/booking/{booking_id}", response_model=AmendBookingResponse)
def amend_booking(
    booking_id: str,
    body: AmendBookingRequest,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    if body.new_identity_id is not None:
        if body.additional_hours or body.new_time_from is not None:
            raise ValidationError("Identity change cannot be combined with a time change")
        booking = services.lifecycle.transfer_identity(booking_id, body.new_identity_id, caller)
        return AmendBookingResponse(booking=booking)

    result = services.lifecycle.amend(
        booking_id, caller, additional_hours=body.additional_hours or 0, new_start=body.new_time_from
    )
    if not result.requires_payment:
        return AmendBookingResponse(booking=result.booking)

    ticket = services.payments.begin_amendment_hold(result.amendment_id, caller)
    return AmendBookingResponse(foreign_payment_id=ticket.order_id, incremental_price=result.incremental_price)


@router.delete("/booking/{booking_id}", response_model=CancelBookingResponse)
def cancel_booking(
    booking_id: str,
    refund_account: Optional[str] = Query(None),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    cash = services.lifecycle.cancel(booking_id, caller, refund_account=refund_account)
    return CancelBookingResponse(cash_payment_status=cash)


@router.post("/admin/booking/{booking_id}/confirm", response_model=Booking)
def confirm_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.lifecycle.confirm_cash(booking_id, caller)


@router.post("/admin/booking/{booking_id}/refund", response_model=BookingDetail)
def refund_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return services.lifecycle.refund(booking_id, caller)
