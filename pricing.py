from datetime import datetime

from booking_schemas import Unit
from clock import Clock


class PricingCalculator:
    """
    Hourly pricing for a unit.
    The refund policy lives here too because it is a function of the price and the calendar day.
    """

    def __init__(self, clock: Clock):
        self.clock = clock

    def price(self, unit: Unit, hours: int) -> int:
        return unit.price_per_hour * hours

    def additive_price(self, unit: Unit, additional_hours: int) -> int:
        """Incremental price for extending an existing booking by `additional_hours`."""
        if additional_hours <= 0:
            return 0
        return unit.price_per_hour * additional_hours

    def is_refundable(self, start: datetime, now: datetime) -> bool:
        # refundable up to the day before, not once the booking day has arrived
        return self.clock.local_date(start) > self.clock.local_date(now)

    def refund_price(self, price: int, start: datetime, now: datetime) -> int:
        return price if self.is_refundable(start, now) else 0
