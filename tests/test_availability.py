import pytest

from errors import ConflictError, ValidationError
from persistence import crud
from conftest import at


def test_confirmed_booking_blocks_overlapping_hours(services, confirmed_booking):
    confirmed_booking(at(2, 10), 2)

    with pytest.raises(ConflictError) as exc:
        services.availability.validate_slot("room-1", at(2, 11), 1)
    assert exc.value.code == "time_range_occupied"

    window = services.availability.validate_slot("room-1", at(2, 12), 2)
    assert (window.start, window.end) == (at(2, 12), at(2, 14))


def test_pending_booking_also_occupies(services, alice):
    services.lifecycle.create("room-1", alice, "alice", at(2, 10), 2, depositor_name="Alice")
    with pytest.raises(ConflictError):
        services.availability.validate_slot("room-1", at(2, 9), 2)


def test_canceled_booking_frees_its_slot(services, alice):
    booking, _ = services.lifecycle.create("room-1", alice, "alice", at(2, 10), 2, depositor_name="Alice")
    services.lifecycle.cancel(booking.id, alice)
    services.availability.validate_slot("room-1", at(2, 10), 2)


def test_validation_is_repeatable_without_writes(services, confirmed_booking):
    confirmed_booking(at(2, 10), 2)
    first = services.availability.validate_slot("room-1", at(2, 14), 3)
    second = services.availability.validate_slot("room-1", at(2, 14), 3)
    assert first == second


def test_start_is_truncated_to_the_hour(services):
    window = services.availability.validate_slot("room-1", at(2, 10, 30), 1)
    assert window.start == at(2, 10)


@pytest.mark.parametrize(
    "start,hours",
    [
        (at(1, 7), 1),    # the previous hour
        (at(2, 10), 5),   # more than the unit maximum
        (at(14, 22), 3),  # runs past the horizon
    ],
)
def test_out_of_range_requests_are_rejected(services, start, hours):
    with pytest.raises(ConflictError) as exc:
        services.availability.validate_slot("room-1", start, hours)
    assert exc.value.code == "invalid_time_range"


def test_current_hour_and_last_horizon_hour_are_bookable(services):
    services.availability.validate_slot("room-1", at(1, 8, 45), 1)
    services.availability.validate_slot("room-1", at(14, 20), 4)


def test_malformed_input_is_a_validation_error(services):
    with pytest.raises(ValidationError):
        services.availability.validate_slot("room-1", at(2, 10), 1.5)
    with pytest.raises(ValidationError):
        services.availability.validate_slot("room-1", at(2, 10).replace(tzinfo=None), 1)
    with pytest.raises(ValidationError) as exc:
        services.availability.validate_slot("room-9", at(2, 10), 1)
    assert exc.value.code == "unit_not_found"
    with pytest.raises(ValidationError):
        services.availability.validate_slot("room-closed", at(2, 10), 1)


def test_occupied_slots_mask_other_customers(services, confirmed_booking, alice, bob, staff):
    confirmed_booking(at(2, 10), 2)

    [slot] = services.availability.get_occupied_slots("room-1", at(2, 0), at(3, 0), bob)
    assert slot.masked_name == "A····"
    assert slot.date == at(2, 10)
    assert slot.duration == 2
    assert slot.confirmed is True

    assert services.availability.get_occupied_slots("room-1", at(2, 0), at(3, 0), alice)[0].masked_name == "Alice"
    assert services.availability.get_occupied_slots("room-1", at(2, 0), at(3, 0), staff)[0].masked_name == "Alice"
    assert services.availability.get_occupied_slots("room-1", at(3, 0), at(4, 0), bob) == []


def test_calendar_covers_the_booking_horizon(services, confirmed_booking, bob):
    confirmed_booking(at(2, 10), 2)
    calendar = services.availability.calendar("room-1", bob)
    assert calendar.start == at(1, 0)
    assert calendar.end == at(15, 0)
    assert calendar.max_booking_hours == 4
    assert len(calendar.slots) == 1


def test_check_quotes_full_or_additive_price(services, confirmed_booking):
    booking = confirmed_booking(at(2, 10), 2)
    assert services.availability.check("room-1", at(2, 14), 3) == 60000
    # re-checking a booking's own range with an extension only prices the extra hour
    assert services.availability.check(
        "room-1", at(2, 10), 3, additional_hours=1, exclude_booking_id=booking.id
    ) == 20000
    with pytest.raises(ConflictError):
        services.availability.check("room-1", at(2, 10), 3)


def test_extension_stops_at_the_next_occupied_slot(services, db, alice, bob):
    mine, _ = services.lifecycle.create("room-1", alice, "alice", at(2, 10), 1, depositor_name="Alice")
    services.lifecycle.create("room-1", bob, "bob", at(2, 13), 1, depositor_name="Bob")

    model = crud.get_booking(db, mine.id)
    assert services.availability.extendable_hours(db, model) == 2
    assert services.availability.offer_extension(db, model, 5) == 2
    assert services.availability.offer_extension(db, model, 1) == 1


def test_extension_is_capped_by_unit_maximum(services, db, alice):
    mine, _ = services.lifecycle.create("room-1", alice, "alice", at(2, 10), 3, depositor_name="Alice")
    assert services.availability.extendable_hours(db, crud.get_booking(db, mine.id)) == 1


def test_subscribers_are_notified_of_writes(services, alice):
    seen = []
    unsubscribe = services.availability.subscribe(seen.append)

    booking, _ = services.lifecycle.create("room-1", alice, "alice", at(2, 10), 1, depositor_name="Alice")
    assert seen == ["room-1"]

    unsubscribe()
    services.lifecycle.cancel(booking.id, alice)
    assert seen == ["room-1"]


def test_failing_subscriber_does_not_break_writes(services, alice):
    def broken(unit_id):
        raise RuntimeError("boom")

    services.availability.subscribe(broken)
    booking, _ = services.lifecycle.create("room-1", alice, "alice", at(2, 10), 1, depositor_name="Alice")
    assert booking.status == "PENDING"
