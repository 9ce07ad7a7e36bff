import time
from concurrent.futures import ThreadPoolExecutor, as_completed

import pytest

from booking_schemas import Caller
from errors import ConflictError, PaymentFailure
from persistence import crud
from conftest import NOW, at

ATTEMPTS = 8


@pytest.fixture
def crowd(session_factory, seeded):
    db = session_factory()
    try:
        for i in range(ATTEMPTS):
            crud.create_individual(db, f"user{i}", f"User {i}", created_at=NOW)
    finally:
        db.close()
    return [Caller(user_id=f"user{i}") for i in range(ATTEMPTS)]


def race(fn, callers):
    results = []
    with ThreadPoolExecutor(max_workers=len(callers)) as executor:
        futures = [executor.submit(fn, caller, i) for i, caller in enumerate(callers)]
        for future in as_completed(futures):
            try:
                results.append(("ok", future.result()))
            except ConflictError as e:
                results.append(("conflict", e))
    return results


def test_concurrent_holds_for_overlapping_hours_admit_one(services, gateway, crowd):
    gateway.latency = 0.01

    def hold(caller, i):
        # every request overlaps 11:00-12:00
        return services.payments.begin_hold("room-1", at(2, 10 + i % 2), 2, caller.user_id, caller)

    results = race(hold, crowd)
    assert len([r for r in results if r[0] == "ok"]) == 1
    assert len([r for r in results if r[0] == "conflict"]) == ATTEMPTS - 1


def test_concurrent_cash_and_online_requests_admit_one(services, gateway, crowd):
    gateway.latency = 0.01

    def book(caller, i):
        if i % 2:
            return services.payments.begin_hold("room-1", at(3, 10), 1, caller.user_id, caller)
        return services.lifecycle.create("room-1", caller, caller.user_id, at(3, 10), 1, depositor_name="X")

    results = race(book, crowd)
    assert len([r for r in results if r[0] == "ok"]) == 1
    assert len(services.availability.get_occupied_slots("room-1", at(3, 0), at(4, 0), crowd[0])) == 1


def test_expiry_and_settlement_do_not_both_win(services, gateway, clock, crowd):
    caller = crowd[0]
    ticket = services.payments.begin_hold("room-1", at(2, 10), 2, caller.user_id, caller)
    services.payments.on_gateway_success(ticket.order_id, "pay_1", ticket.price, caller)
    gateway.latency = 0.05
    clock.advance(minutes=9, seconds=59)

    def settle():
        try:
            return services.payments.confirm_settlement(ticket.order_id, "pay_1", ticket.price, caller)
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=2) as executor:
        settled = executor.submit(settle)
        clock.advance(seconds=2)
        expired = executor.submit(services.payments.expire_hold, ticket.hold_id)
        outcome, reclaimed = settled.result(), expired.result()

    order = services.payments.get_order(ticket.order_id, caller)
    if order.state == "COMMITTED":
        assert reclaimed is False
        assert outcome.status == "CONFIRMED"
    else:
        assert order.state == "ROLLED_BACK"
        assert isinstance(outcome, PaymentFailure)


def test_slot_stays_taken_while_a_capture_outlives_the_hold(services, gateway, clock, crowd):
    caller, rival = crowd[0], crowd[1]
    ticket = services.payments.begin_hold("room-1", at(2, 10), 2, caller.user_id, caller)
    services.payments.on_gateway_success(ticket.order_id, "pay_1", ticket.price, caller)
    clock.advance(minutes=9, seconds=59)
    gateway.latency = 0.5

    with ThreadPoolExecutor(max_workers=1) as executor:
        settled = executor.submit(
            services.payments.confirm_settlement, ticket.order_id, "pay_1", ticket.price, caller
        )
        while not gateway.calls_to("capture"):
            time.sleep(0.005)
        clock.advance(seconds=2)
        with pytest.raises(ConflictError):
            services.lifecycle.create("room-1", rival, rival.user_id, at(2, 10), 2, depositor_name="Rival")
        with pytest.raises(ConflictError):
            services.payments.begin_hold("room-1", at(2, 11), 1, rival.user_id, rival)
        assert services.payments.expire_hold(ticket.hold_id) is False
        booking = settled.result()

    assert booking.status == "CONFIRMED"
    assert len(services.availability.get_occupied_slots("room-1", at(2, 0), at(3, 0), rival)) == 1
