import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from booking_schemas import Booking, Caller, HoldTicket, PaymentOrder, PendingConfirmation
from clock import TimeWindow, as_utc, require_whole_hours
from errors import (
    AmountMismatchError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentFailure,
    PreconditionError,
    ValidationError,
)
from payments.gateway import GATEWAY_TIMEOUT, call_gateway
from persistence import crud
from persistence.models import PaymentOrderModel, TemporaryHoldModel

logger = logging.getLogger(__name__)

OPEN_STATES = ("HOLDING", "AWAITING_GATEWAY")


class PaymentOrchestrator:
    """
    Hold -> gateway -> settle saga for online payments, keyed by order id:
    HOLDING -> AWAITING_GATEWAY -> SETTLING -> COMMITTED | ROLLED_BACK.

    - begin_hold() places a TemporaryHold and asks the gateway for an authorization redirect
    - confirm_settlement() captures the authorized amount and converts the hold into a booking
    - compensation deletes the hold and voids the authorization

    Only the validate-and-write steps run under the unit lock; gateway round trips happen
    between two locked sections with a bounded timeout.
    """

    def __init__(self, session_factory, clock, settings, availability, pricing, identities, lifecycle,
                 locks, gateway):
        self.session_factory = session_factory
        self.clock = clock
        self.settings = settings
        self.availability = availability
        self.pricing = pricing
        self.identities = identities
        self.lifecycle = lifecycle
        self.locks = locks
        self.gateway = gateway

    # helpers

    def _session(self):
        return self.session_factory()

    def _gateway(self, fn, *args):
        return call_gateway(fn, *args, timeout=self.settings.gateway_timeout_seconds)

    def _load_order(self, db, order_id: str) -> PaymentOrderModel:
        order = crud.get_order(db, order_id)
        if order is None:
            raise NotFoundError("Payment order not found", code="foreign_payment_not_found")
        return order

    def _unit_of_order(self, order_id: str) -> str:
        db = self._session()
        try:
            return self._load_order(db, order_id).unit_id
        finally:
            db.close()

    def _rollback(self, db, order: PaymentOrderModel, now: datetime, code: Optional[str] = None,
                  message: Optional[str] = None) -> Tuple[str, Optional[str]]:
        """Compensate inside the lock: drop the hold, cancel a pending amendment. Void happens later."""
        if order.hold_id:
            hold = crud.get_hold(db, order.hold_id)
            if hold is not None:
                db.delete(hold)
        if order.amendment_id:
            amendment = crud.get_amendment(db, order.amendment_id)
            if amendment is not None and amendment.confirmed_at is None and amendment.canceled_at is None:
                amendment.canceled_at = now
        order.state = "ROLLED_BACK"
        order.updated_at = now
        if code:
            order.failure_code = code
            order.failure_message = message
        return order.id, order.payment_key

    def _rollback_order_only(self, order: PaymentOrderModel, now: datetime, code: str
                             ) -> Tuple[str, Optional[str]]:
        # the hold survives and is handed to a fresh order
        order.state = "ROLLED_BACK"
        order.updated_at = now
        order.failure_code = code
        order.hold_id = None
        return order.id, order.payment_key

    def _void(self, released: List[Tuple[str, Optional[str]]]):
        for order_id, payment_key in released:
            resp = self._gateway(self.gateway.void, order_id, payment_key)
            if not resp.success:
                logger.warning("Could not void authorization of order %s: %s (%s)", order_id, resp.message, resp.code)

    def _new_hold(self, unit_id: str, holder_id: str, customer_id: str, window: TimeWindow, now: datetime,
                  booking_id: Optional[str] = None) -> TemporaryHoldModel:
        return TemporaryHoldModel(
            id=str(uuid.uuid4()),
            unit_id=unit_id,
            holder_id=holder_id,
            customer_id=customer_id,
            booking_id=booking_id,
            time_from=window.start,
            time_to=window.end,
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.hold_ttl_minutes),
        )

    def _new_order(self, hold: TemporaryHoldModel, price: int, now: datetime, product: str = "booking",
                   booking_id: Optional[str] = None, amendment_id: Optional[str] = None) -> PaymentOrderModel:
        return PaymentOrderModel(
            id=str(uuid.uuid4()),
            state="HOLDING",
            product=product,
            unit_id=hold.unit_id,
            holder_id=hold.holder_id,
            customer_id=hold.customer_id,
            hold_id=hold.id,
            time_from=hold.time_from,
            time_to=hold.time_to,
            price=price,
            booking_id=booking_id,
            amendment_id=amendment_id,
            created_at=now,
            updated_at=now,
        )

    # saga steps

    def begin_hold(self, unit_id: str, start: datetime, hours, identity_id: str, caller: Caller,
                   existing_hold_id: Optional[str] = None) -> HoldTicket:
        """
        Reserve [start, start+hours) while the customer pays.
        Passing the caller's own `existing_hold_id` replaces that hold instead of adding a second one.
        """
        require_whole_hours(hours)
        if start.tzinfo is None:
            raise ValidationError("Timestamps must carry an explicit UTC offset")

        released = []
        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                now = self.clock.now()
                unit = self.availability.get_unit(db, unit_id)
                holder = self.identities.holder(db, caller)
                customer = self.identities.resolve_customer(db, caller, identity_id)

                existing = crud.get_hold(db, existing_hold_id) if existing_hold_id else None
                if existing is not None:
                    if existing.holder_id != caller.user_id or existing.booking_id is not None:
                        raise ConflictError("Specified time range is already occupied")
                    current = crud.order_for_hold(db, existing.id)
                    if current is not None and current.state == "SETTLING":
                        raise PreconditionError("Settlement already in progress", code="settlement_in_progress")
                    if existing.unit_id != unit_id or as_utc(existing.expires_at) <= now:
                        old_order = crud.order_for_hold(db, existing.id)
                        if old_order is not None and old_order.state in OPEN_STATES:
                            released.append(self._rollback(db, old_order, now, "hold_replaced"))
                        else:
                            db.delete(existing)
                        existing = None

                window = self.availability.validate_slot(
                    unit_id, start, hours, exclude_hold_id=existing.id if existing is not None else None, db=db
                )
                price = self.pricing.price(unit, window.hours)

                order = None
                if existing is not None and TimeWindow(as_utc(existing.time_from), as_utc(existing.time_to)) == window \
                        and existing.customer_id == customer.id:
                    hold = existing
                    hold.expires_at = now + timedelta(minutes=self.settings.hold_ttl_minutes)
                    order = crud.order_for_hold(db, hold.id)
                    if order is not None and order.state in OPEN_STATES and order.price != price:
                        released.append(self._rollback_order_only(order, now, "price_changed"))
                        order = None
                    elif order is None or order.state not in OPEN_STATES:
                        order = None
                    logger.info("Reusing hold %s on %s", hold.id, unit_id)
                else:
                    if existing is not None:
                        old_order = crud.order_for_hold(db, existing.id)
                        if old_order is not None and old_order.state in OPEN_STATES:
                            released.append(self._rollback(db, old_order, now, "hold_replaced"))
                        else:
                            db.delete(existing)
                    hold = self._new_hold(unit_id, holder.id, customer.id, window, now)
                    db.add(hold)

                if order is None:
                    order = self._new_order(hold, price, now)
                    db.add(order)
                db.commit()
                order_id, hold_id, expires_at = order.id, hold.id, as_utc(hold.expires_at)
            finally:
                db.close()

        logger.info("Hold %s placed on %s for order %s (%s hours, %s)", hold_id, unit_id, order_id, window.hours, price)
        self.availability.notify(unit_id)
        self._void(released)
        return self._authorize(order_id, hold_id, unit_id, price, expires_at, caller)

    def begin_amendment_hold(self, amendment_id: str, caller: Caller) -> HoldTicket:
        """Hold the amended range of an existing booking until the extension is paid for."""
        db = self._session()
        try:
            amendment = crud.get_amendment(db, amendment_id)
            if amendment is None:
                raise NotFoundError("Booking amendment not found", code="booking_amendment_not_found")
            unit_id = self.lifecycle.load_booking(db, amendment.booking_id).unit_id
        finally:
            db.close()

        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                now = self.clock.now()
                amendment = crud.get_amendment(db, amendment_id)
                booking = self.lifecycle.load_booking(db, amendment.booking_id)
                if booking.holder_id != caller.user_id:
                    raise NotFoundError("Booking not found", code="booking_not_found")
                if amendment.confirmed_at is not None or amendment.canceled_at is not None:
                    raise PreconditionError("Amendment is no longer pending")
                status = self.lifecycle.status_of(booking, now)
                if status not in ("PENDING", "CONFIRMED") or now >= as_utc(booking.time_from):
                    raise PreconditionError(f"Booking cannot be amended (status: {status})")

                released = self.lifecycle.release_open_amendments(db, booking.id, now)
                desired = TimeWindow(as_utc(amendment.desired_time_from), as_utc(amendment.desired_time_to))
                window = self.availability.validate_slot(
                    unit_id, desired.start, desired.hours, exclude_booking_id=booking.id, db=db
                )
                original = TimeWindow(as_utc(amendment.original_time_from), as_utc(amendment.original_time_to))
                unit = self.availability.get_unit(db, unit_id)
                price = self.pricing.additive_price(unit, window.hours - original.hours)
                if price <= 0:
                    raise PreconditionError("Amendment does not require a payment")

                hold = self._new_hold(unit_id, booking.holder_id, booking.customer_id, window, now,
                                      booking_id=booking.id)
                db.add(hold)
                order = self._new_order(hold, price, now, product="amendment", booking_id=booking.id,
                                        amendment_id=amendment.id)
                db.add(order)
                db.commit()
                order_id, hold_id, expires_at = order.id, hold.id, as_utc(hold.expires_at)
            finally:
                db.close()

        logger.info("Amendment hold %s placed for booking %s (order %s)", hold_id, amendment.booking_id, order_id)
        self.availability.notify(unit_id)
        self._void(released)
        return self._authorize(order_id, hold_id, unit_id, price, expires_at, caller)

    def _authorize(self, order_id: str, hold_id: str, unit_id: str, price: int, expires_at: datetime,
                   caller: Caller) -> HoldTicket:
        resp = self._gateway(self.gateway.authorize, order_id, price, caller.user_id)

        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                order = self._load_order(db, order_id)
                now = self.clock.now()
                if resp.success:
                    if order.state == "HOLDING":
                        order.state = "AWAITING_GATEWAY"
                    if resp.payment_key:
                        order.payment_key = resp.payment_key
                    order.updated_at = now
                    released = []
                elif order.state in OPEN_STATES:
                    released = [self._rollback(db, order, now, resp.code, resp.message)]
                else:
                    released = []
                db.commit()
            finally:
                db.close()

        if not resp.success:
            logger.warning("Authorization for order %s failed: %s (%s)", order_id, resp.message, resp.code)
            self.availability.notify(unit_id)
            self._void(released)
            raise PaymentFailure(resp.message or "Authorization failed", gateway_code=resp.code)

        return HoldTicket(
            order_id=order_id, hold_id=hold_id, price=price, expires_at=expires_at, redirect_url=resp.redirect_url
        )

    def on_gateway_success(self, order_id: str, payment_key: str, amount, caller: Caller) -> PendingConfirmation:
        """
        The gateway redirected back after authorizing. Nothing is captured here: the held slot
        and quoted amount are surfaced for an explicit confirmation.
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("amount must be an integer")
        unit_id = self._unit_of_order(order_id)
        released = []
        failure = None
        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                order = self._load_order(db, order_id)
                if order.holder_id != caller.user_id:
                    raise ForbiddenError("Payment order belongs to another user")
                now = self.clock.now()
                hold = crud.get_hold(db, order.hold_id) if order.hold_id else None

                if order.state == "ROLLED_BACK":
                    raise PaymentFailure("Temporary reservation has expired", code="hold_expired")
                if order.state in OPEN_STATES:
                    if amount != order.price:
                        released.append(self._rollback(db, order, now, "amount_mismatch", "Amount mismatch"))
                        failure = AmountMismatchError("Authorized amount differs from the quoted price")
                    elif hold is None or as_utc(hold.expires_at) <= now:
                        released.append(self._rollback(db, order, now, "hold_expired", "Hold expired"))
                        failure = PaymentFailure("Temporary reservation has expired", code="hold_expired")
                    else:
                        order.payment_key = payment_key
                        order.state = "AWAITING_GATEWAY"
                        order.updated_at = now
                db.commit()
                expires_at = as_utc(hold.expires_at) if hold is not None else now
                summary = crud.order_to_pydantic(order)
            finally:
                db.close()

        if released:
            self.availability.notify(unit_id)
            self._void(released)
        if failure is not None:
            raise failure
        return PendingConfirmation(
            order_id=summary.order_id,
            unit_id=summary.unit_id,
            start=summary.start,
            hours=summary.hours,
            price=summary.price,
            expires_at=expires_at,
        )

    def on_gateway_failure(self, order_id: str, code: Optional[str], message: Optional[str],
                           caller: Optional[Caller] = None) -> PaymentOrder:
        """
        The gateway reported a failed or abandoned authorization: release the hold.
        `caller` is None only for provider-signed notifications.
        """
        unit_id = self._unit_of_order(order_id)
        released = []
        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                order = self._load_order(db, order_id)
                if caller is not None and order.holder_id != caller.user_id:
                    raise ForbiddenError("Payment order belongs to another user")
                if order.state in OPEN_STATES:
                    released.append(self._rollback(db, order, self.clock.now(), code or "gateway_failure", message))
                db.commit()
                summary = crud.order_to_pydantic(order)
            finally:
                db.close()
        if released:
            logger.info("Order %s rolled back after gateway failure: %s (%s)", order_id, message, code)
            self.availability.notify(unit_id)
        return summary

    def confirm_settlement(self, order_id: str, payment_key: str, amount, caller: Caller) -> Booking:
        """
        Capture and commit. Safe to repeat: once COMMITTED the same booking is returned.
        A failed capture keeps the hold for one more attempt, then the saga rolls back.
        A capture without a known outcome keeps the order SETTLING; repeating the call re-sends it.
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("amount must be an integer")
        unit_id = self._unit_of_order(order_id)

        released = []
        failure = None
        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                order = self._load_order(db, order_id)
                if order.holder_id != caller.user_id:
                    raise ForbiddenError("Payment order belongs to another user")
                now = self.clock.now()

                if order.state == "COMMITTED":
                    if order.payment_key != payment_key:
                        raise PreconditionError("Booking already confirmed", code="booking_already_confirmed")
                    if amount != order.price:
                        raise AmountMismatchError("Authorized amount differs from the quoted price")
                    return self.lifecycle.view(self.lifecycle.load_booking(db, order.booking_id), now)
                if order.state == "ROLLED_BACK":
                    raise PaymentFailure("Temporary reservation has expired", code="hold_expired")
                if order.state == "SETTLING":
                    if order.failure_code != GATEWAY_TIMEOUT:
                        raise PreconditionError("Settlement already in progress", code="settlement_in_progress")
                    # the earlier capture may have gone through: never roll back from here
                    if order.payment_key != payment_key:
                        raise PreconditionError("Payment key does not match the pending settlement",
                                                code="payment_key_mismatch")
                    if amount != order.price:
                        raise AmountMismatchError("Authorized amount differs from the quoted price")
                    self._resume_settling(order, now)
                else:
                    hold = crud.get_hold(db, order.hold_id) if order.hold_id else None
                    if amount != order.price:
                        released.append(self._rollback(db, order, now, "amount_mismatch", "Amount mismatch"))
                        failure = AmountMismatchError("Authorized amount differs from the quoted price")
                    elif hold is None or as_utc(hold.expires_at) <= now:
                        released.append(self._rollback(db, order, now, "hold_expired", "Hold expired"))
                        failure = PaymentFailure("Temporary reservation has expired", code="hold_expired")
                    else:
                        order.state = "SETTLING"
                        order.payment_key = payment_key
                        order.attempts = (order.attempts or 0) + 1
                        order.failure_code = None
                        order.failure_message = None
                        order.updated_at = now
                db.commit()
            finally:
                db.close()

        if failure is not None:
            self.availability.notify(unit_id)
            self._void(released)
            raise failure

        return self._settle(order_id, unit_id, payment_key, amount)

    def _resume_settling(self, order: PaymentOrderModel, now: datetime):
        # clearing the marker tells concurrent callers a capture is in flight again
        order.failure_code = None
        order.failure_message = None
        order.updated_at = now

    def _settlement_stalled(self, order: PaymentOrderModel, now: datetime) -> bool:
        if order.failure_code == GATEWAY_TIMEOUT:
            return True
        return as_utc(order.updated_at) + timedelta(seconds=self.settings.settlement_stale_seconds) <= now

    def _settle(self, order_id: str, unit_id: str, payment_key: str, amount: int) -> Booking:
        """Send the capture of a SETTLING order and apply its outcome under the unit lock."""
        resp = self._gateway(self.gateway.capture, order_id, payment_key, amount)

        released = []
        refund = None
        failure = None
        booking_model = None
        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                order = self._load_order(db, order_id)
                now = self.clock.now()
                if order.state == "COMMITTED":
                    # settled by a concurrent reconciliation
                    return self.lifecycle.view(self.lifecycle.load_booking(db, order.booking_id), now)
                if resp.success:
                    try:
                        booking_model = self._commit(db, order, payment_key, now)
                    except ConflictError:
                        self._rollback(db, order, now, "slot_taken", "Slot was taken before the payment settled")
                        refund = (payment_key, amount)
                        failure = PaymentFailure(
                            "Slot was taken before the payment settled; the payment is refunded", code="slot_taken"
                        )
                elif resp.outcome_unknown:
                    order.failure_code = resp.code
                    order.failure_message = resp.message
                    order.updated_at = now
                    failure = PaymentFailure(
                        "Payment result is not known yet; confirm again to settle",
                        code="settlement_pending",
                        gateway_code=resp.code,
                        retryable=True,
                    )
                else:
                    order.failure_code = resp.code
                    order.failure_message = resp.message
                    order.updated_at = now
                    retryable = order.attempts <= self.settings.capture_retries
                    if retryable:
                        order.state = "AWAITING_GATEWAY"
                    else:
                        released.append(self._rollback(db, order, now, resp.code, resp.message))
                    failure = PaymentFailure(
                        resp.message or "Payment capture failed",
                        gateway_code=resp.code,
                        retryable=retryable,
                    )
                db.commit()
                booking = self.lifecycle.view(booking_model, now) if booking_model is not None else None
            finally:
                db.close()

        self.availability.notify(unit_id)
        if refund is not None:
            logger.error("Order %s captured after its slot was taken; refunding %s", order_id, amount)
            refunded = self._gateway(self.gateway.refund, refund[0], refund[1], "Slot no longer available")
            if not refunded.success:
                logger.error("Refund of order %s failed: %s (%s)", order_id, refunded.message, refunded.code)
        if failure is not None:
            logger.warning("Capture for order %s did not settle: %s (%s)", order_id, resp.message, resp.code)
            self._void(released)
            raise failure
        logger.info("Payment %s processed successfully. total amount: %s", order_id, amount)
        return booking

    def _commit(self, db, order: PaymentOrderModel, payment_key: str, now: datetime):
        hold = crud.get_hold(db, order.hold_id) if order.hold_id else None
        if order.product == "amendment":
            amendment = crud.get_amendment(db, order.amendment_id)
            booking = self.lifecycle.load_booking(db, order.booking_id)
            if booking.canceled_at is None:
                self._require_free(db, order, exclude_booking_id=booking.id)
            self._mark_committed(order, now)
            if hold is not None:
                db.delete(hold)
            if booking.canceled_at is not None:
                # captured after the booking was canceled: keep the money on record for a staff refund
                self.lifecycle.record_orphan_payment(db, order, payment_key, now)
                return booking
            return self.lifecycle.apply_amendment(db, amendment, now, order=order, payment_key=payment_key)

        if hold is None:
            raise ConflictError("Temporary reservation is gone")
        self._require_free(db, order)
        self._mark_committed(order, now)
        booking = self.lifecycle.finalize_online(db, order, hold, payment_key, now)
        order.booking_id = booking.id
        return booking

    def _require_free(self, db, order: PaymentOrderModel, exclude_booking_id: Optional[str] = None):
        window = TimeWindow(as_utc(order.time_from), as_utc(order.time_to))
        if not self.availability.is_free(db, order.unit_id, window, exclude_booking_id=exclude_booking_id,
                                         exclude_hold_id=order.hold_id):
            raise ConflictError("Specified time range is already occupied")

    def _mark_committed(self, order: PaymentOrderModel, now: datetime):
        order.state = "COMMITTED"
        order.updated_at = now
        order.failure_code = None
        order.failure_message = None

    def reconcile_settlement(self, order_id: str) -> bool:
        """
        Re-send the capture of a settlement left without an outcome (timed out, or stalled after a crash).
        Returns True once the order has left SETTLING.
        """
        unit_id = self._unit_of_order(order_id)
        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                order = self._load_order(db, order_id)
                if order.state != "SETTLING" or not self._settlement_stalled(order, self.clock.now()):
                    return False
                payment_key, amount = order.payment_key, order.price
                self._resume_settling(order, self.clock.now())
                db.commit()
            finally:
                db.close()

        logger.warning("Reconciling stalled settlement of order %s", order_id)
        try:
            self._settle(order_id, unit_id, payment_key, amount)
        except PaymentFailure as e:
            logger.warning("Reconciliation of order %s did not settle: %s", order_id, e.message)

        db = self._session()
        try:
            return self._load_order(db, order_id).state != "SETTLING"
        finally:
            db.close()

    def cancel_settlement(self, order_id: str, caller: Caller) -> PaymentOrder:
        """User aborted after authorizing but before confirming."""
        unit_id = self._unit_of_order(order_id)
        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                order = self._load_order(db, order_id)
                if order.holder_id != caller.user_id and not caller.is_staff:
                    raise ForbiddenError("Payment order belongs to another user")
                if order.state not in OPEN_STATES:
                    raise PreconditionError(f"Payment cannot be canceled (state: {order.state})")
                released = [self._rollback(db, order, self.clock.now(), "user_canceled", "Canceled by user")]
                db.commit()
                summary = crud.order_to_pydantic(order)
            finally:
                db.close()
        logger.info("Order %s canceled by user", order_id)
        self.availability.notify(unit_id)
        self._void(released)
        return summary

    def get_order(self, order_id: str, caller: Caller) -> PaymentOrder:
        db = self._session()
        try:
            order = self._load_order(db, order_id)
            if order.holder_id != caller.user_id and not caller.is_staff:
                raise NotFoundError("Payment order not found", code="foreign_payment_not_found")
            return crud.order_to_pydantic(order)
        finally:
            db.close()

    # reclamation

    def expire_hold(self, hold_id: str) -> bool:
        """Delete a hold whose expiry passed without settlement. Never raises to the caller."""
        db = self._session()
        try:
            hold = crud.get_hold(db, hold_id)
            unit_id = hold.unit_id if hold is not None else None
        finally:
            db.close()
        if unit_id is None:
            return False

        released = []
        with self.locks.for_unit(unit_id):
            db = self._session()
            try:
                hold = crud.get_hold(db, hold_id)
                now = self.clock.now()
                if hold is None or as_utc(hold.expires_at) > now:
                    return False
                order = crud.order_for_hold(db, hold_id)
                if order is not None and order.state == "SETTLING":
                    # capture in flight; settlement decides the outcome unless it stalled
                    if not self._settlement_stalled(order, now):
                        return False
                    stalled = order.id
                else:
                    stalled = None
                    if order is not None and order.state in OPEN_STATES:
                        released.append(self._rollback(db, order, now, "hold_expired", "Hold expired"))
                    else:
                        db.delete(hold)
                    db.commit()
            finally:
                db.close()

        if stalled is not None:
            return self.reconcile_settlement(stalled)
        logger.info("Expired hold %s on %s", hold_id, unit_id)
        self.availability.notify(unit_id)
        self._void([r for r in released if r[1]])
        return True

    def expire_due_holds(self) -> int:
        db = self._session()
        try:
            hold_ids = [h.id for h in crud.due_holds(db, self.clock.now())]
        finally:
            db.close()
        return sum(1 for hold_id in hold_ids if self.expire_hold(hold_id))
