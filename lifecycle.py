"""
Booking lifecycle: PENDING -> CONFIRMED -> BUFFERED -> IN_PROGRESS -> COMPLETE,
with CANCELED reachable from PENDING or CONFIRMED and OVERDUE from PENDING.

Only created/confirmed/canceled timestamps are persisted; BUFFERED, IN_PROGRESS,
COMPLETE and OVERDUE are derived from them and the current time on every read.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from booking_schemas import (
    AmendResult,
    Booking,
    BookingDetail,
    Caller,
    CashPaymentStatus,
    Group,
    PaymentMethod,
)
from clock import TimeWindow, as_utc, require_whole_hours
from errors import ConflictError, ForbiddenError, NotFoundError, PreconditionError, ValidationError
from payments.gateway import call_gateway
from persistence import crud
from persistence.models import (
    BookingAmendmentModel,
    BookingModel,
    CashPaymentModel,
    OnlinePaymentModel,
)

logger = logging.getLogger(__name__)


def derive_status(start: datetime, end: datetime, confirmed_at: Optional[datetime],
                  canceled_at: Optional[datetime], now: datetime, settings) -> str:
    start, end, now = as_utc(start), as_utc(end), as_utc(now)
    if canceled_at is not None and as_utc(canceled_at) <= now:
        return "CANCELED"
    if confirmed_at is None or as_utc(confirmed_at) > now:
        return "OVERDUE" if now > start else "PENDING"
    if start <= now < end + timedelta(minutes=settings.buffer_after_minutes):
        return "IN_PROGRESS"
    if start - timedelta(minutes=settings.buffer_before_minutes) <= now < start:
        return "BUFFERED"
    if now >= end:
        return "COMPLETE"
    return "CONFIRMED"


class BookingLifecycle:
    def __init__(self, session_factory, clock, settings, availability, pricing, identities, locks,
                 gateway=None):
        self.session_factory = session_factory
        self.clock = clock
        self.settings = settings
        self.availability = availability
        self.pricing = pricing
        self.identities = identities
        self.locks = locks
        self.gateway = gateway

    # helpers

    def status_of(self, model: BookingModel, now: Optional[datetime] = None) -> str:
        return derive_status(model.time_from, model.time_to, model.confirmed_at, model.canceled_at,
                             now or self.clock.now(), self.settings)

    def view(self, model: BookingModel, now: Optional[datetime] = None) -> Booking:
        return crud.booking_to_pydantic(model, self.status_of(model, now))

    def load_booking(self, db, booking_id: str) -> BookingModel:
        model = crud.get_booking(db, booking_id)
        if model is None:
            raise NotFoundError("Booking not found", code="booking_not_found")
        return model

    def _unit_of(self, booking_id: str) -> str:
        db = self.session_factory()
        try:
            return self.load_booking(db, booking_id).unit_id
        finally:
            db.close()

    def _require_staff(self, actor: Caller):
        if not actor.is_staff:
            raise ForbiddenError("Staff only", code="forbidden")

    def _require_holder_or_staff(self, model: BookingModel, actor: Caller):
        if not actor.is_staff and model.holder_id != actor.user_id:
            # same answer as a missing booking so ids of other customers are not confirmed
            raise NotFoundError("Booking not found", code="booking_not_found")

    # creation

    def create(self, unit_id: str, caller: Caller, customer_id: str, start: datetime, hours,
               payment_method: PaymentMethod = "cash", depositor_name: Optional[str] = None
               ) -> Tuple[Booking, Optional[CashPaymentStatus]]:
        """Manual (cash) flow: validate, then write a PENDING booking with its cash payment status."""
        if payment_method != "cash":
            raise ValidationError("Online payments start with a payment hold", code="unsupported_payment_method")
        if not depositor_name or not depositor_name.strip():
            raise ValidationError("Depositor name is required", code="missing_field")
        if start.tzinfo is None:
            raise ValidationError("Timestamps must carry an explicit UTC offset")
        require_whole_hours(hours)

        with self.locks.for_unit(unit_id):
            db = self.session_factory()
            try:
                window = self.availability.validate_slot(unit_id, start, hours, db=db)
                unit = self.availability.get_unit(db, unit_id)
                holder = self.identities.holder(db, caller)
                customer = self.identities.resolve_customer(db, caller, customer_id)
                now = self.clock.now()

                model = BookingModel(
                    id=str(uuid.uuid4()),
                    unit_id=unit_id,
                    holder_id=holder.id,
                    customer_id=customer.id,
                    time_from=window.start,
                    time_to=window.end,
                    created_at=now,
                )
                db.add(model)
                db.add(CashPaymentModel(
                    booking_id=model.id,
                    depositor_name=depositor_name.strip(),
                    price=self.pricing.price(unit, window.hours),
                    created_at=now,
                ))
                db.commit()
                db.refresh(model)
                booking = self.view(model, now)
                cash = crud.cash_to_pydantic(crud.get_cash_payment(db, model.id))
            finally:
                db.close()

        logger.info("Booking %s created on %s for %s hours (cash, pending)", booking.id, unit_id, booking.hours)
        self.availability.notify(unit_id)
        return booking, cash

    def finalize_online(self, db, order, hold, payment_key: str, now: datetime) -> BookingModel:
        """
        Convert a settled hold into a CONFIRMED booking. Runs inside the orchestrator's
        unit lock and session; the caller commits.
        """
        model = BookingModel(
            id=str(uuid.uuid4()),
            unit_id=hold.unit_id,
            holder_id=hold.holder_id,
            customer_id=hold.customer_id,
            time_from=hold.time_from,
            time_to=hold.time_to,
            created_at=now,
            confirmed_at=now,
        )
        db.add(model)
        db.add(OnlinePaymentModel(
            order_id=order.id,
            booking_id=model.id,
            price=order.price,
            payment_key=payment_key,
            confirmed_at=now,
        ))
        db.delete(hold)
        return model

    def apply_amendment(self, db, amendment: BookingAmendmentModel, now: datetime,
                        order=None, payment_key: Optional[str] = None) -> BookingModel:
        """Move/extend a booking to the amendment's desired range. The caller commits."""
        booking = self.load_booking(db, amendment.booking_id)
        booking.time_from = amendment.desired_time_from
        booking.time_to = amendment.desired_time_to
        amendment.confirmed_at = now
        if order is not None:
            db.add(OnlinePaymentModel(
                order_id=order.id,
                booking_id=booking.id,
                amendment_id=amendment.id,
                price=order.price,
                payment_key=payment_key,
                confirmed_at=now,
            ))
        return booking

    def record_orphan_payment(self, db, order, payment_key: str, now: datetime):
        """An amendment captured after its booking was canceled: record it with a full refund request."""
        db.add(OnlinePaymentModel(
            order_id=order.id,
            booking_id=order.booking_id,
            amendment_id=order.amendment_id,
            price=order.price,
            payment_key=payment_key,
            confirmed_at=now,
            refund_requested=True,
            refund_price=order.price,
        ))
        amendment = crud.get_amendment(db, order.amendment_id) if order.amendment_id else None
        if amendment is not None and amendment.canceled_at is None:
            amendment.canceled_at = now
        logger.warning("Order %s captured for canceled booking %s; refund requested", order.id, order.booking_id)

    def release_open_amendments(self, db, booking_id: str, now: datetime) -> List[Tuple[str, Optional[str]]]:
        """
        Roll back amendment sagas of a booking that never settled. Returns (order_id, payment_key)
        pairs whose authorizations the caller voids once outside the lock.
        """
        released = []
        for order in crud.open_amendment_orders(db, booking_id):
            if order.hold_id:
                hold = crud.get_hold(db, order.hold_id)
                if hold is not None:
                    db.delete(hold)
            if order.amendment_id:
                amendment = crud.get_amendment(db, order.amendment_id)
                if amendment is not None and amendment.canceled_at is None:
                    amendment.canceled_at = now
            order.state = "ROLLED_BACK"
            order.updated_at = now
            released.append((order.id, order.payment_key))
        return released

    # staff actions

    def confirm_cash(self, booking_id: str, actor: Caller) -> Booking:
        self._require_staff(actor)
        with self.locks.for_unit(self._unit_of(booking_id)):
            db = self.session_factory()
            try:
                model = self.load_booking(db, booking_id)
                now = self.clock.now()
                status = self.status_of(model, now)
                if status != "PENDING":
                    raise PreconditionError(f"Only pending bookings can be confirmed (status: {status})")
                model.confirmed_at = now
                cash = crud.get_cash_payment(db, booking_id)
                if cash is not None:
                    cash.confirmed_at = now
                db.commit()
                booking = self.view(model, now)
            finally:
                db.close()
        logger.info("Booking %s confirmed by staff %s", booking_id, actor.user_id)
        self.availability.notify(booking.unit_id)
        return booking

    def refund(self, booking_id: str, actor: Caller) -> BookingDetail:
        """Mark a requested refund as paid out. Online refunds go through the gateway first."""
        self._require_staff(actor)
        db = self.session_factory()
        try:
            self.load_booking(db, booking_id)
            cash = crud.get_cash_payment(db, booking_id)
            pending_online = [
                p for p in crud.online_payments_for_booking(db, booking_id)
                if p.refund_requested and p.refunded_at is None
            ]
            cash_pending = cash is not None and cash.refund_requested and cash.refunded_at is None
            if not cash_pending and not pending_online:
                raise PreconditionError("No refund request pending", code="no_refund_pending")

            now = self.clock.now()
            if cash_pending:
                cash.refunded_at = now
                logger.info("Cash refund of %s for booking %s processed", cash.refund_price, booking_id)
            db.commit()
            online = [(p.order_id, p.payment_key, p.refund_price or 0) for p in pending_online]
        finally:
            db.close()

        failures = self._refund_online(online)
        if failures and not cash_pending and len(failures) == len(online):
            raise PreconditionError(
                f"Gateway refund failed for {len(failures)} payment(s); retry later", code="refund_failed"
            )
        detail = self.get(booking_id, actor)
        # partly processed: report what is still owed instead of failing the whole request
        detail.failed_refunds = failures
        return detail

    def _refund_online(self, payments) -> list:
        """payments: (order_id, payment_key, amount). Returns the order ids that could not be refunded."""
        failures = []
        for order_id, payment_key, amount in payments:
            if amount <= 0 or not payment_key:
                continue
            if self.gateway is None:
                failures.append(order_id)
                continue
            resp = call_gateway(self.gateway.refund, payment_key, amount, "Cancellation request by user",
                                timeout=self.settings.gateway_timeout_seconds)
            if not resp.success:
                logger.error("Refund of order %s failed: %s (%s)", order_id, resp.message, resp.code)
                failures.append(order_id)
                continue
            db = self.session_factory()
            try:
                payment = db.get(OnlinePaymentModel, order_id)
                payment.refunded_at = self.clock.now()
                db.commit()
            finally:
                db.close()
            logger.info("Payment %s refunded. Refunded amount: %s", payment_key, amount)
        return failures

    # customer actions

    def cancel(self, booking_id: str, actor: Caller, refund_account: Optional[str] = None
               ) -> Optional[CashPaymentStatus]:
        to_void = []
        with self.locks.for_unit(self._unit_of(booking_id)):
            db = self.session_factory()
            try:
                model = self.load_booking(db, booking_id)
                self._require_holder_or_staff(model, actor)
                now = self.clock.now()
                status = self.status_of(model, now)
                if status not in ("PENDING", "CONFIRMED"):
                    raise PreconditionError(f"Booking cannot be canceled (status: {status})")

                cash = crud.get_cash_payment(db, booking_id)
                if cash is not None and status == "CONFIRMED" and cash.confirmed_at is not None:
                    refund_price = self.pricing.refund_price(cash.price, model.time_from, now)
                    # a refund account is needed precisely when the cancellation is not same-day
                    if refund_price > 0 and not (refund_account and refund_account.strip()):
                        raise ValidationError("Refund account is required", code="refund_account_required")
                    cash.refund_price = refund_price
                    cash.refund_requested = refund_price > 0
                    cash.refund_account = refund_account.strip() if refund_account else None

                online = []
                for payment in crud.online_payments_for_booking(db, booking_id):
                    refund_price = self.pricing.refund_price(payment.price, model.time_from, now)
                    payment.refund_price = refund_price
                    payment.refund_requested = refund_price > 0
                    if refund_price > 0:
                        online.append((payment.order_id, payment.payment_key, refund_price))

                to_void = self.release_open_amendments(db, booking_id, now)
                model.canceled_at = now
                db.commit()
                cash_view = crud.cash_to_pydantic(cash) if cash is not None else None
                unit_id = model.unit_id
            finally:
                db.close()

        logger.info("Booking %s canceled by %s", booking_id, actor.user_id)
        self.availability.notify(unit_id)
        self._void_all(to_void)
        self._refund_online(online)
        return cash_view

    def _void_all(self, orders):
        for order_id, payment_key in orders:
            if self.gateway is None or not payment_key:
                continue
            resp = call_gateway(self.gateway.void, order_id, payment_key,
                                timeout=self.settings.gateway_timeout_seconds)
            if not resp.success:
                logger.warning("Could not void authorization of order %s: %s", order_id, resp.message)

    def amend(self, booking_id: str, caller: Caller, additional_hours=0,
              new_start: Optional[datetime] = None) -> AmendResult:
        """
        Move and/or extend a booking. Free amendments apply immediately; paid ones are recorded
        as a pending BookingAmendment that the payment saga applies on settlement.
        """
        require_whole_hours(additional_hours, "additional_hours", minimum=0)
        if new_start is not None and new_start.tzinfo is None:
            raise ValidationError("Timestamps must carry an explicit UTC offset")
        if additional_hours == 0 and new_start is None:
            raise ValidationError("Nothing to amend", code="missing_field")

        with self.locks.for_unit(self._unit_of(booking_id)):
            db = self.session_factory()
            try:
                model = self.load_booking(db, booking_id)
                if model.holder_id != caller.user_id:
                    raise NotFoundError("Booking not found", code="booking_not_found")
                now = self.clock.now()
                status = self.status_of(model, now)
                if status not in ("PENDING", "CONFIRMED"):
                    raise PreconditionError(f"Booking cannot be amended (status: {status})")
                if now >= as_utc(model.time_from):
                    raise PreconditionError("Ongoing booking cannot be modified", code="booking_in_progress")

                current = TimeWindow(as_utc(model.time_from), as_utc(model.time_to))
                desired_start = self.clock.truncate_hour(as_utc(new_start)) if new_start else current.start
                total_hours = current.hours + additional_hours
                try:
                    desired = self.availability.validate_slot(
                        model.unit_id, desired_start, total_hours, exclude_booking_id=model.id, db=db
                    )
                except ConflictError as e:
                    if desired_start == current.start and additional_hours > 0:
                        offered = self.availability.extendable_hours(db, model)
                        raise ConflictError(f"{e.message}; at most {offered} more hour(s) available",
                                            code=e.code) from e
                    raise

                unit = self.availability.get_unit(db, model.unit_id)
                incremental = self.pricing.additive_price(unit, additional_hours)
                amendment = BookingAmendmentModel(
                    id=str(uuid.uuid4()),
                    booking_id=model.id,
                    original_time_from=current.start,
                    original_time_to=current.end,
                    desired_time_from=desired.start,
                    desired_time_to=desired.end,
                    created_at=now,
                )
                db.add(amendment)
                to_void = []
                if incremental == 0:
                    to_void = self.release_open_amendments(db, model.id, now)
                    self.apply_amendment(db, amendment, now)
                db.commit()
                db.refresh(model)
                result = AmendResult(
                    booking=self.view(model, now),
                    incremental_price=incremental,
                    amendment_id=amendment.id,
                )
            finally:
                db.close()

        if incremental == 0:
            logger.info("Booking %s moved to %s (%s hours)", booking_id, desired.start, desired.hours)
            self.availability.notify(result.booking.unit_id)
            self._void_all(to_void)
        else:
            logger.info("Booking %s amendment %s awaits payment of %s", booking_id, result.amendment_id, incremental)
        return result

    def transfer_identity(self, booking_id: str, new_group_id: str, actor: Caller) -> Booking:
        """Hand a booking over to a group. One-way: a group booking never goes back to an individual."""
        db = self.session_factory()
        try:
            model = self.load_booking(db, booking_id)
            if model.holder_id != actor.user_id:
                raise ForbiddenError("Only the holder can transfer a booking", code="forbidden")
            now = self.clock.now()
            status = self.status_of(model, now)
            if status in ("OVERDUE", "COMPLETE", "CANCELED"):
                raise PreconditionError(f"Booking cannot be transferred (status: {status})")

            current = self.identities.resolve(db, model.customer_id)
            if isinstance(current, Group):
                raise PreconditionError("Booking already belongs to a group", code="booking_not_assignable_to_group")

            target = self.identities.resolve(db, new_group_id)
            if not isinstance(target, Group):
                raise ValidationError("Target identity is not a group", code="not_a_group")
            if not self.identities.is_member(db, target.id, actor.user_id):
                raise ForbiddenError("User is not a member of the group", code="user_not_member_of")

            model.customer_id = target.id
            db.commit()
            db.refresh(model)
            booking = self.view(model, now)
        finally:
            db.close()
        logger.info("Booking %s transferred to group %s", booking_id, new_group_id)
        return booking

    # reads

    def get(self, booking_id: str, caller: Caller) -> BookingDetail:
        db = self.session_factory()
        try:
            model = self.load_booking(db, booking_id)
            customer = crud.identity_to_pydantic(model.customer)
            members = self.identities.members(customer)
            if not caller.is_staff and model.holder_id != caller.user_id and caller.user_id not in members:
                raise NotFoundError("Booking not found", code="booking_not_found")

            now = self.clock.now()
            booking = self.view(model, now)
            cash = crud.get_cash_payment(db, booking_id)
            online = [crud.online_to_pydantic(p) for p in crud.online_payments_for_booking(db, booking_id)]
            amendable = (
                booking.status in ("PENDING", "CONFIRMED")
                and self.pricing.is_refundable(booking.start, now)
            )
            extendable = self.availability.extendable_hours(db, model) if booking.status in ("PENDING", "CONFIRMED") else 0
            return BookingDetail(
                booking=booking,
                cash_payment_status=crud.cash_to_pydantic(cash) if cash is not None else None,
                online_payments=online,
                amendments=[crud.amendment_to_pydantic(a) for a in crud.amendments_for_booking(db, booking_id)],
                amendable=amendable,
                extendable_hours=extendable,
            )
        finally:
            db.close()
