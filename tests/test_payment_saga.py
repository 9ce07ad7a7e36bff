import pytest

from config import BookingSettings
from errors import AmountMismatchError, ConflictError, ForbiddenError, PaymentFailure, PreconditionError
from persistence import crud
from persistence.models import BookingModel, PaymentOrderModel
from services import build_services
from conftest import NOW, at


def settle(services, caller, ticket, payment_key="pay_1"):
    services.payments.on_gateway_success(ticket.order_id, payment_key, ticket.price, caller)
    return services.payments.confirm_settlement(ticket.order_id, payment_key, ticket.price, caller)


def test_begin_hold_places_hold_and_requests_authorization(services, gateway, alice):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    assert ticket.price == 60000
    assert ticket.expires_at == at(1, 8, 10)
    assert ticket.order_id in ticket.redirect_url
    assert gateway.calls_to("authorize") == [(ticket.order_id, 60000, "alice")]

    order = services.payments.get_order(ticket.order_id, alice)
    assert order.state == "AWAITING_GATEWAY"
    assert order.hold_id == ticket.hold_id


def test_hold_blocks_other_callers(services, alice, bob):
    services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    with pytest.raises(ConflictError):
        services.payments.begin_hold("room-1", at(2, 12), 1, "bob", bob)
    with pytest.raises(ConflictError):
        services.lifecycle.create("room-1", bob, "bob", at(2, 9), 2, depositor_name="Bob")
    [slot] = services.availability.get_occupied_slots("room-1", at(2, 0), at(3, 0), bob)
    assert slot.confirmed is False


def test_settlement_commits_a_confirmed_booking(services, gateway, alice):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    pending = services.payments.on_gateway_success(ticket.order_id, "pay_1", 60000, alice)
    assert pending.hours == 3
    assert pending.start == at(2, 10)

    booking = services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, alice)
    assert booking.status == "CONFIRMED"
    assert booking.hours == 3
    assert gateway.calls_to("capture") == [(ticket.order_id, "pay_1", 60000)]

    order = services.payments.get_order(ticket.order_id, alice)
    assert order.state == "COMMITTED"
    assert order.booking_id == booking.id

    detail = services.lifecycle.get(booking.id, alice)
    assert [p.order_id for p in detail.online_payments] == [ticket.order_id]
    # the hold was converted, not left behind next to the booking
    assert len(services.availability.get_occupied_slots("room-1", at(2, 0), at(3, 0), alice)) == 1


def test_confirm_settlement_is_idempotent(services, gateway, alice):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    first = settle(services, alice, ticket)
    second = services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, alice)
    assert second.id == first.id
    assert len(gateway.calls_to("capture")) == 1


def test_amount_mismatch_is_fatal(services, gateway, alice, bob):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    with pytest.raises(AmountMismatchError):
        services.payments.confirm_settlement(ticket.order_id, "pay_1", 59999, alice)

    assert services.payments.get_order(ticket.order_id, alice).state == "ROLLED_BACK"
    assert gateway.calls_to("capture") == []
    assert len(gateway.calls_to("void")) == 1
    services.lifecycle.create("room-1", bob, "bob", at(2, 10), 3, depositor_name="Bob")

    with pytest.raises(PaymentFailure) as exc:
        services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, alice)
    assert exc.value.code == "hold_expired"


def test_amount_mismatch_on_gateway_return(services, alice):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    with pytest.raises(AmountMismatchError):
        services.payments.on_gateway_success(ticket.order_id, "pay_1", 60001, alice)
    assert services.payments.get_order(ticket.order_id, alice).state == "ROLLED_BACK"


def test_capture_failure_is_retryable_once(services, gateway, alice):
    gateway.capture_failures = 1
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    with pytest.raises(PaymentFailure) as exc:
        settle(services, alice, ticket)
    assert exc.value.retryable is True
    assert services.payments.get_order(ticket.order_id, alice).state == "AWAITING_GATEWAY"

    booking = services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, alice)
    assert booking.status == "CONFIRMED"


def test_second_capture_failure_rolls_back(services, gateway, alice, bob):
    gateway.capture_failures = 2
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    with pytest.raises(PaymentFailure):
        settle(services, alice, ticket)
    with pytest.raises(PaymentFailure) as exc:
        services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, alice)
    assert exc.value.retryable is False

    order = services.payments.get_order(ticket.order_id, alice)
    assert order.state == "ROLLED_BACK"
    assert order.failure_code == "PROVIDER_ERROR"
    services.lifecycle.create("room-1", bob, "bob", at(2, 10), 3, depositor_name="Bob")


def test_expired_hold_is_reclaimed(services, clock, alice, bob):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)

    clock.advance(minutes=5)
    assert services.payments.expire_due_holds() == 0

    clock.advance(minutes=6)
    assert services.reaper.run_once() == 1
    assert services.availability.get_occupied_slots("room-1", at(2, 0), at(3, 0), bob) == []
    booking, _ = services.lifecycle.create("room-1", bob, "bob", at(2, 10), 3, depositor_name="Bob")
    assert booking.status == "PENDING"

    with pytest.raises(PaymentFailure) as exc:
        services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, alice)
    assert exc.value.code == "hold_expired"


def test_expired_hold_is_not_counted_as_occupied_before_reaping(services, clock, alice, bob):
    services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    clock.advance(minutes=11)
    services.availability.validate_slot("room-1", at(2, 10), 3)


def mark_settling(session_factory, order_id, updated_at, payment_key="pay_1"):
    db = session_factory()
    order = db.get(PaymentOrderModel, order_id)
    order.state = "SETTLING"
    order.payment_key = payment_key
    order.attempts = 1
    order.updated_at = updated_at
    db.commit()
    db.close()


def test_settling_hold_is_left_to_the_settlement(services, session_factory, clock, alice, bob):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    clock.advance(minutes=11)
    mark_settling(session_factory, ticket.order_id, clock.now())

    assert services.payments.expire_hold(ticket.hold_id) is False
    db = session_factory()
    assert crud.get_hold(db, ticket.hold_id) is not None
    db.close()
    # past its expiry, but the capture in flight still owns the slot
    with pytest.raises(ConflictError):
        services.lifecycle.create("room-1", bob, "bob", at(2, 11), 1, depositor_name="Bob")
    with pytest.raises(PreconditionError):
        services.payments.begin_hold("room-1", at(3, 10), 1, "alice", alice, existing_hold_id=ticket.hold_id)


def test_stalled_settlement_is_reconciled_by_the_reaper(services, session_factory, gateway, clock, alice):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    mark_settling(session_factory, ticket.order_id, clock.now())
    clock.advance(minutes=11)

    assert services.reaper.run_once() == 1
    assert gateway.calls_to("capture") == [(ticket.order_id, "pay_1", 60000)]
    assert gateway.calls_to("void") == []
    order = services.payments.get_order(ticket.order_id, alice)
    assert order.state == "COMMITTED"
    assert services.lifecycle.get(order.booking_id, alice).booking.status == "CONFIRMED"


def test_capture_timeout_keeps_the_order_settling(session_factory, seeded, gateway, clock, alice, bob):
    services = build_services(session_factory, gateway=gateway, clock=clock, settings=BookingSettings(
        business_timezone="UTC", gateway_timeout_seconds=0.05, capture_retries=1,
    ))
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    services.payments.on_gateway_success(ticket.order_id, "pay_1", 60000, alice)
    gateway.latency = 0.3

    for _ in range(2):
        with pytest.raises(PaymentFailure) as exc:
            services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, alice)
        assert exc.value.code == "settlement_pending"
        assert exc.value.retryable is True
        assert services.payments.get_order(ticket.order_id, alice).state == "SETTLING"

    assert len(gateway.calls_to("capture")) == 2
    assert gateway.calls_to("void") == []
    with pytest.raises(ConflictError):
        services.lifecycle.create("room-1", bob, "bob", at(2, 10), 1, depositor_name="Bob")

    gateway.latency = 0.0
    booking = services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, alice)
    assert booking.status == "CONFIRMED"
    assert services.payments.get_order(ticket.order_id, alice).state == "COMMITTED"


def test_capture_landing_on_a_taken_slot_is_refunded(services, session_factory, gateway, alice):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    services.payments.on_gateway_success(ticket.order_id, "pay_1", 60000, alice)
    # written behind the engine's back, so only the last overlap check can see it
    db = session_factory()
    db.add(BookingModel(id="other", unit_id="room-1", holder_id="bob", customer_id="bob",
                        time_from=at(2, 11), time_to=at(2, 12), created_at=NOW, confirmed_at=NOW))
    db.commit()
    db.close()

    with pytest.raises(PaymentFailure) as exc:
        services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, alice)
    assert exc.value.code == "slot_taken"
    assert services.payments.get_order(ticket.order_id, alice).state == "ROLLED_BACK"
    assert gateway.calls_to("refund") == [("pay_1", 60000, "Slot no longer available")]
    assert gateway.calls_to("void") == []


def test_only_the_holder_reports_gateway_results(services, alice, bob):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    with pytest.raises(ForbiddenError):
        services.payments.on_gateway_success(ticket.order_id, "pay_1", 1, bob)
    with pytest.raises(ForbiddenError):
        services.payments.on_gateway_failure(ticket.order_id, "PAY_PROCESS_CANCELED", "canceled", bob)
    assert services.payments.get_order(ticket.order_id, alice).state == "AWAITING_GATEWAY"


def test_rehold_same_interval_reuses_the_hold(services, alice):
    first = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    again = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice, existing_hold_id=first.hold_id)
    assert again.hold_id == first.hold_id
    assert again.order_id == first.order_id


def test_rehold_different_interval_replaces_the_hold(services, alice, bob):
    first = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    moved = services.payments.begin_hold("room-1", at(2, 11), 3, "alice", alice, existing_hold_id=first.hold_id)
    assert moved.hold_id != first.hold_id
    assert services.payments.get_order(first.order_id, alice).state == "ROLLED_BACK"
    services.lifecycle.create("room-1", bob, "bob", at(2, 9), 2, depositor_name="Bob")


def test_cannot_take_over_another_users_hold(services, alice, bob):
    first = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    with pytest.raises(ConflictError):
        services.payments.begin_hold("room-1", at(3, 10), 1, "bob", bob, existing_hold_id=first.hold_id)


def test_authorization_failure_releases_the_slot(services, gateway, alice, bob):
    gateway.fail_authorize = True
    with pytest.raises(PaymentFailure) as exc:
        services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    assert exc.value.gateway_code == "REJECT_CARD_COMPANY"
    assert services.availability.get_occupied_slots("room-1", at(2, 0), at(3, 0), bob) == []


def test_gateway_failure_rolls_back(services, alice):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    order = services.payments.on_gateway_failure(ticket.order_id, "PAY_PROCESS_CANCELED", "User canceled")
    assert order.state == "ROLLED_BACK"
    assert order.failure_code == "PAY_PROCESS_CANCELED"
    services.availability.validate_slot("room-1", at(2, 10), 3)


def test_user_cancels_settlement(services, alice, bob):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    with pytest.raises(ForbiddenError):
        services.payments.cancel_settlement(ticket.order_id, bob)
    assert services.payments.cancel_settlement(ticket.order_id, alice).state == "ROLLED_BACK"
    with pytest.raises(PreconditionError):
        services.payments.cancel_settlement(ticket.order_id, alice)


def test_only_the_holder_confirms(services, alice, bob):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    with pytest.raises(ForbiddenError):
        services.payments.confirm_settlement(ticket.order_id, "pay_1", 60000, bob)


def test_paid_extension_follows_the_saga(services, confirmed_booking, alice, bob):
    booking = confirmed_booking(at(2, 10), 2)
    result = services.lifecycle.amend(booking.id, alice, additional_hours=1)
    ticket = services.payments.begin_amendment_hold(result.amendment_id, alice)
    assert ticket.price == 20000

    with pytest.raises(ConflictError):
        services.lifecycle.create("room-1", bob, "bob", at(2, 12), 1, depositor_name="Bob")

    extended = settle(services, alice, ticket)
    assert extended.id == booking.id
    assert extended.hours == 3
    detail = services.lifecycle.get(booking.id, alice)
    assert detail.online_payments[0].amendment_id == result.amendment_id
    [amendment] = detail.amendments
    assert amendment.desired_hours == 3
    assert amendment.confirmed_at is not None


def test_newer_amendment_rolls_back_the_pending_one(services, confirmed_booking, alice):
    booking = confirmed_booking(at(2, 10), 2)
    first = services.lifecycle.amend(booking.id, alice, additional_hours=1)
    first_ticket = services.payments.begin_amendment_hold(first.amendment_id, alice)

    second = services.lifecycle.amend(booking.id, alice, additional_hours=2)
    second_ticket = services.payments.begin_amendment_hold(second.amendment_id, alice)
    assert second_ticket.price == 40000
    assert services.payments.get_order(first_ticket.order_id, alice).state == "ROLLED_BACK"


def test_online_cancellation_refunds_through_gateway(services, gateway, alice):
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    booking = settle(services, alice, ticket)

    assert services.lifecycle.cancel(booking.id, alice) is None
    [(payment_key, amount, _)] = gateway.calls_to("refund")
    assert (payment_key, amount) == ("pay_1", 60000)
    [payment] = services.lifecycle.get(booking.id, alice).online_payments
    assert payment.refund.refunded is True


def test_failed_gateway_refund_stays_requested(services, gateway, alice, staff):
    gateway.refund_fails = True
    ticket = services.payments.begin_hold("room-1", at(2, 10), 3, "alice", alice)
    booking = settle(services, alice, ticket)
    services.lifecycle.cancel(booking.id, alice)

    [payment] = services.lifecycle.get(booking.id, alice).online_payments
    assert payment.refund.requested is True
    assert payment.refund.refunded is False

    gateway.refund_fails = False
    detail = services.lifecycle.refund(booking.id, staff)
    assert detail.online_payments[0].refund.refunded is True


def test_same_day_online_cancellation_is_not_refunded(services, gateway, alice):
    ticket = services.payments.begin_hold("room-1", at(1, 14), 2, "alice", alice)
    booking = settle(services, alice, ticket)
    services.lifecycle.cancel(booking.id, alice)
    assert gateway.calls_to("refund") == []
