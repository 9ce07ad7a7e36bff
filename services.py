from dataclasses import dataclass
from typing import Optional

from availability import SlotAvailabilityEngine
from clock import Clock
from config import BookingSettings
from identity import IdentityResolver
from lifecycle import BookingLifecycle
from locks import UnitLocks
from persistence.db import SessionLocal
from pricing import PricingCalculator
from reaper import HoldReaper
from txn_manager import PaymentOrchestrator


@dataclass
class Services:
    settings: BookingSettings
    clock: Clock
    availability: SlotAvailabilityEngine
    lifecycle: BookingLifecycle
    payments: PaymentOrchestrator
    identities: IdentityResolver
    reaper: HoldReaper


def build_services(session_factory=SessionLocal, gateway=None, clock: Optional[Clock] = None,
                   settings: Optional[BookingSettings] = None) -> Services:
    """Wire the engine. Without an explicit gateway the Stripe adapter is used."""
    settings = settings or BookingSettings()
    clock = clock or Clock(settings.business_timezone)
    if gateway is None:
        from payments.checkout import StripeGateway
        gateway = StripeGateway(currency=settings.currency)

    locks = UnitLocks()
    identities = IdentityResolver()
    pricing = PricingCalculator(clock)
    availability = SlotAvailabilityEngine(session_factory, clock, settings, pricing, identities)
    lifecycle = BookingLifecycle(session_factory, clock, settings, availability, pricing, identities, locks,
                                 gateway=gateway)
    payments = PaymentOrchestrator(session_factory, clock, settings, availability, pricing, identities,
                                   lifecycle, locks, gateway)
    reaper = HoldReaper(payments, settings.reaper_interval_seconds)
    return Services(settings, clock, availability, lifecycle, payments, identities, reaper)
