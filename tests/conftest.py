from datetime import datetime, timezone

import pytest

from booking_schemas import Caller
from booking_tools import MockPaymentGateway
from clock import FixedClock
from config import BookingSettings
from persistence import crud
from persistence.db import init_db, make_engine, make_session_factory
from services import build_services

# Wednesday 08:00 UTC; tests run with the business day in UTC unless stated otherwise
NOW = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

PRICE_PER_HOUR = 20000


def at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def session_factory(tmp_path):
    # one file per test so worker threads each get their own connection
    engine = make_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    init_db(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(NOW, "UTC")


@pytest.fixture
def settings():
    return BookingSettings(business_timezone="UTC", gateway_timeout_seconds=5, capture_retries=1)


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def seeded(session_factory):
    db = session_factory()
    try:
        crud.create_unit(db, "room-1", max_booking_hours=4, price_per_hour=PRICE_PER_HOUR, lookahead_days=14)
        crud.create_unit(db, "room-closed", max_booking_hours=4, price_per_hour=PRICE_PER_HOUR, enabled=False)
        crud.create_individual(db, "alice", "Alice", created_at=NOW)
        crud.create_individual(db, "bob", "Bob", created_at=NOW)
        crud.create_individual(db, "carol", "Carol", created_at=NOW)
        crud.create_group(db, "band", "Band", owner_id="alice", member_ids=["alice", "bob"], created_at=NOW)
        crud.create_group(db, "bobs", "Bob's club", owner_id="bob", member_ids=["bob"], created_at=NOW)
    finally:
        db.close()


@pytest.fixture
def services(session_factory, gateway, clock, settings, seeded):
    return build_services(session_factory, gateway=gateway, clock=clock, settings=settings)


@pytest.fixture
def alice():
    return Caller(user_id="alice")


@pytest.fixture
def bob():
    return Caller(user_id="bob")


@pytest.fixture
def carol():
    return Caller(user_id="carol")


@pytest.fixture
def staff():
    return Caller(user_id="staff", is_staff=True)


@pytest.fixture
def confirmed_booking(services, alice, staff):
    """Alice's cash booking tomorrow 10:00-12:00, confirmed by staff."""
    def make(start=None, hours=2, customer_id="alice"):
        booking, _ = services.lifecycle.create(
            "room-1", alice, customer_id, start or at(2, 10), hours, depositor_name="Alice"
        )
        return services.lifecycle.confirm_cash(booking.id, staff)
    return make
