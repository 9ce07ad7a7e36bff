"""
Run this script to see a full mocked booking flow:
 - seed a unit and two users in a throwaway SQLite file
 - begin_hold() -> the slot is held while the (mock) gateway authorizes
 - a second user tries the same slot and is rejected
 - confirm_settlement() -> capture, the hold becomes a CONFIRMED booking
 - a second hold is abandoned and reclaimed by the reaper
 - print final results
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

from booking_schemas import Caller
from booking_tools import MockPaymentGateway
from clock import FixedClock
from config import BookingSettings
from errors import ConflictError
from persistence import crud
from persistence.db import init_db, make_engine, make_session_factory
from services import build_services


def main():
    path = os.path.join(tempfile.mkdtemp(), "demo.db")
    engine = make_engine(f"sqlite:///{path}")
    init_db(bind=engine)
    session_factory = make_session_factory(engine)

    settings = BookingSettings(business_timezone="Asia/Seoul")
    clock = FixedClock(datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc), settings.business_timezone)
    gateway = MockPaymentGateway()
    services = build_services(session_factory, gateway=gateway, clock=clock, settings=settings)

    db = session_factory()
    crud.create_unit(db, "room-1", max_booking_hours=4, price_per_hour=20000)
    crud.create_individual(db, "alice", "Alice")
    crud.create_individual(db, "bob", "Bob")
    db.close()

    alice = Caller(user_id="alice")
    bob = Caller(user_id="bob")
    services.availability.subscribe(lambda unit_id: print(f"  (calendar of {unit_id} changed)"))
    start = datetime(2024, 5, 2, 1, 0, tzinfo=timezone.utc)

    print("=== Hold phase ===")
    ticket = services.payments.begin_hold("room-1", start, 3, "alice", alice)
    print(f"- order={ticket.order_id}, price={ticket.price}, expires_at={ticket.expires_at}")
    print(f"- redirect: {ticket.redirect_url}")

    try:
        services.payments.begin_hold("room-1", start + timedelta(hours=1), 1, "bob", bob)
    except ConflictError as e:
        print(f"- bob rejected: {e.message}")

    print("\n=== Confirm phase ===")
    pending = services.payments.on_gateway_success(ticket.order_id, "pay_demo_001", ticket.price, alice)
    print(f"- gateway returned for {pending.hours} hours at {pending.start}")
    booking = services.payments.confirm_settlement(ticket.order_id, "pay_demo_001", ticket.price, alice)
    print(f"- booking {booking.id}: status={booking.status}, {booking.start} -> {booking.end}")

    print("\n=== Abandoned hold ===")
    later = start + timedelta(hours=5)
    abandoned = services.payments.begin_hold("room-1", later, 2, "bob", bob)
    print(f"- bob holds {later} (order {abandoned.order_id})")
    clock.advance(minutes=settings.hold_ttl_minutes + 1)
    print(f"- reaper reclaimed {services.reaper.run_once()} hold(s)")

    print("\n=== Final calendar (as seen by bob) ===")
    calendar = services.availability.calendar("room-1", bob)
    for slot in calendar.slots:
        print(f"- {slot.masked_name}: {slot.date} for {slot.duration}h, confirmed={slot.confirmed}")
    print("Gateway calls:", [name for name, _ in gateway.calls])


if __name__ == "__main__":
    main()
