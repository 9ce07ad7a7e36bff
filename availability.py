import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, List, Optional

from booking_schemas import LIVE_STATUSES, Calendar, Caller, OccupiedSlot, Unit
from clock import TimeWindow, as_utc, require_whole_hours
from errors import ConflictError, ValidationError
from lifecycle import derive_status
from persistence import crud

logger = logging.getLogger(__name__)


class _Occupant:
    __slots__ = ("window", "name", "holder_id", "confirmed")

    def __init__(self, window: TimeWindow, name: str, holder_id: str, confirmed: bool):
        self.window = window
        self.name = name
        self.holder_id = holder_id
        self.confirmed = confirmed


class SlotAvailabilityEngine:
    """
    Computes a unit's occupied slots and validates proposed (start, hours) pairs.

    A slot is occupied by every live booking (PENDING, CONFIRMED, BUFFERED, IN_PROGRESS)
    and every unexpired temporary hold. Validation is a pure read; callers that go on to
    write must hold the unit lock from `locks.UnitLocks` around validate-and-write.
    """

    def __init__(self, session_factory, clock, settings, pricing, identities):
        self.session_factory = session_factory
        self.clock = clock
        self.settings = settings
        self.pricing = pricing
        self.identities = identities
        self._subscribers: List[Callable[[str], None]] = []

    @contextmanager
    def _session(self, db=None):
        if db is not None:
            yield db
            return
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # push invalidation

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register `callback(unit_id)`; it fires after every committed write on that unit."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def notify(self, unit_id: str):
        for callback in list(self._subscribers):
            try:
                callback(unit_id)
            except Exception:
                logger.exception("Availability subscriber failed for unit %s", unit_id)

    # reads

    def get_unit(self, db, unit_id: str) -> Unit:
        model = crud.get_unit(db, unit_id)
        if model is None or not model.enabled:
            raise ValidationError("Unit not found", code="unit_not_found")
        return crud.unit_to_pydantic(model)

    def _occupants(self, db, unit_id: str, window: TimeWindow, now: datetime,
                   exclude_booking_id: Optional[str] = None,
                   exclude_hold_id: Optional[str] = None) -> List[_Occupant]:
        occupants = []
        for model in crud.uncanceled_bookings_on_unit(db, unit_id, window.start, window.end):
            if model.id == exclude_booking_id:
                continue
            start, end = as_utc(model.time_from), as_utc(model.time_to)
            status = derive_status(start, end, model.confirmed_at, model.canceled_at, now, self.settings)
            if status not in LIVE_STATUSES:
                continue
            occupants.append(_Occupant(
                TimeWindow(start, end), model.customer.name, model.holder_id, model.confirmed_at is not None
            ))
        for hold in crud.active_holds_on_unit(db, unit_id, window.start, window.end, now):
            if hold.id == exclude_hold_id:
                continue
            # an amendment hold never conflicts with the booking it extends
            if exclude_booking_id is not None and hold.booking_id == exclude_booking_id:
                continue
            occupants.append(_Occupant(
                TimeWindow(as_utc(hold.time_from), as_utc(hold.time_to)),
                hold.customer.name, hold.holder_id, False,
            ))
        occupants.sort(key=lambda o: o.window.start)
        return occupants

    def get_occupied_slots(self, unit_id: str, window_start: datetime, window_end: datetime,
                           caller: Caller, db=None) -> List[OccupiedSlot]:
        window = TimeWindow(as_utc(window_start), as_utc(window_end))
        with self._session(db) as db:
            now = self.clock.now()
            return [
                OccupiedSlot(
                    masked_name=self.identities.display_name(o.name, caller, o.holder_id),
                    date=o.window.start,
                    duration=o.window.hours,
                    confirmed=o.confirmed,
                )
                for o in self._occupants(db, unit_id, window, now)
            ]

    def calendar(self, unit_id: str, caller: Caller) -> Calendar:
        with self._session() as db:
            unit = self.get_unit(db, unit_id)
            horizon = self.clock.horizon(unit.lookahead_days)
            slots = self.get_occupied_slots(unit_id, horizon.start, horizon.end, caller, db=db)
        return Calendar(
            start=horizon.start, end=horizon.end, max_booking_hours=unit.max_booking_hours, slots=slots
        )

    def validate_slot(self, unit_id: str, start: datetime, hours, exclude_booking_id: Optional[str] = None,
                      exclude_hold_id: Optional[str] = None, db=None) -> TimeWindow:
        """
        Returns the validated hour-aligned window or raises.
        ValidationError for malformed input, ConflictError when the interval is not bookable.
        """
        require_whole_hours(hours)
        if start.tzinfo is None:
            raise ValidationError("Timestamps must carry an explicit UTC offset")
        with self._session(db) as db:
            unit = self.get_unit(db, unit_id)
            now = self.clock.now()
            window = TimeWindow.of_hours(self.clock.truncate_hour(as_utc(start)), hours)

            if hours > unit.max_booking_hours:
                raise ConflictError(
                    f"At most {unit.max_booking_hours} hours can be booked at once", code="invalid_time_range"
                )
            if window.start < self.clock.truncate_hour(now):
                raise ConflictError("Cannot book a slot in the past", code="invalid_time_range")
            horizon = self.clock.horizon(unit.lookahead_days)
            if window.end > horizon.end:
                raise ConflictError("Requested slot is beyond the booking horizon", code="invalid_time_range")

            for occupant in self._occupants(db, unit_id, window, now, exclude_booking_id, exclude_hold_id):
                if occupant.window.overlaps(window):
                    raise ConflictError("Specified time range is already occupied")
        return window

    def is_free(self, db, unit_id: str, window: TimeWindow, exclude_booking_id: Optional[str] = None,
                exclude_hold_id: Optional[str] = None) -> bool:
        """Overlap check only: no horizon or past-slot rules. Used right before a settled hold is converted."""
        occupants = self._occupants(db, unit_id, window, self.clock.now(), exclude_booking_id, exclude_hold_id)
        return not any(o.window.overlaps(window) for o in occupants)

    def check(self, unit_id: str, start: datetime, hours, additional_hours=None,
              exclude_booking_id: Optional[str] = None) -> int:
        """Validate and quote. With `additional_hours` the quote is the extension's price only."""
        if additional_hours is not None:
            require_whole_hours(additional_hours, "additional_hours", minimum=0)
        with self._session() as db:
            unit = self.get_unit(db, unit_id)
            window = self.validate_slot(unit_id, start, hours, exclude_booking_id=exclude_booking_id, db=db)
        if additional_hours is not None:
            return self.pricing.additive_price(unit, additional_hours)
        return self.pricing.price(unit, window.hours)

    # contiguous extension

    def extendable_hours(self, db, booking_model) -> int:
        """
        How many hours can be appended to a booking's end without a gap:
        capped by the unit maximum and cut at the first occupied slot after the end.
        """
        unit = self.get_unit(db, booking_model.unit_id)
        start, end = as_utc(booking_model.time_from), as_utc(booking_model.time_to)
        extendable = unit.max_booking_hours - TimeWindow(start, end).hours
        if extendable <= 0:
            return 0
        horizon_end = self.clock.horizon(unit.lookahead_days).end
        ahead = TimeWindow.of_hours(end, extendable)
        occupants = self._occupants(db, booking_model.unit_id, ahead, self.clock.now(),
                                    exclude_booking_id=booking_model.id)
        free = 0
        for slot in ahead.hourly_slots():
            if slot.end > horizon_end or any(o.window.overlaps(slot) for o in occupants):
                break
            free += 1
        return free

    def offer_extension(self, db, booking_model, requested_hours: int) -> int:
        return min(requested_hours, self.extendable_hours(db, booking_model))
