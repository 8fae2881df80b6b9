"""
Integration Tests Package for the Park Angel Pricing and Revenue Engine

These tests wire the real services together through the ServiceFactory and
drive them end to end:

1. Charging: hierarchy resolution, VIP, discounts, VAT, ledger and split
2. Configuration: forward-only pricing publication and admin views
3. Remittance: claims, transfers, retries, escalation and reconciliation
4. Scheduling: due periods fanned out to the worker pool
5. Persistence: the SQLAlchemy ledger on an in-memory SQLite database

Only the bank is simulated; brokers run in their in-memory form.
"""

import sys
import unittest
from datetime import datetime, date, timedelta
from pathlib import Path

# Add the project root to Python path for imports
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from parkangel.config import EngineSettings
from parkangel.domain.models import (
    BookingEvent, VehicleType, ParkingType, PricingConfig, HolidayRate, DiscountKind
)
from parkangel.infrastructure.factories import HierarchyBuilder, ServiceFactory
from parkangel.infrastructure.messaging import RecordingEventHandler
from parkangel.infrastructure.registries import SimulatedBankGateway


class IntegrationTestConfig:
    """Fixed data shared by the integration tests"""

    HIERARCHY_EFFECTIVE_FROM = datetime(2024, 1, 1)
    NOW = datetime(2024, 6, 1, 10, 0)

    # A Monday, so no weekend rules apply
    SESSION_DAY = date(2024, 6, 10)
    HOLIDAY = date(2024, 6, 12)

    FACILITY_OPERATOR = "op-sm"
    STREET_OPERATOR = "op-qc"
    HOST = "host-ana"

    FACILITY_SPOT = "sm-a01"
    STREET_SPOT = "qc-01"
    HOSTED_SPOT = "hh-01"


class FixedClock:
    """Clock that only moves when a test advances it"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def build_demo_hierarchy():
    """
    Three locations:

    - sm-north: facility, PHP 50/h set at the section, a holiday rate at the zone
    - qc-street: street parking with no overrides (system default)
    - host-home: hosted driveway priced at PHP 33.33/h on the spot itself
    """
    config = IntegrationTestConfig
    return (
        HierarchyBuilder(effective_from=config.HIERARCHY_EFFECTIVE_FROM)
        .location("sm-north", ParkingType.FACILITY, operator_id=config.FACILITY_OPERATOR, name="SM North")
        .section("sm-l1", pricing=PricingConfig(base_rate=5000), name="Level 1")
        .zone("sm-l1-a", pricing=PricingConfig(holiday_rates=(
            HolidayRate("Independence Day", config.HOLIDAY, rate=20000),
        )))
        .spot(config.FACILITY_SPOT)
        .spot("sm-a02")
        .location("qc-street", ParkingType.STREET, operator_id=config.STREET_OPERATOR)
        .section("qc-s1")
        .zone("qc-z1")
        .spot(config.STREET_SPOT)
        .location("host-home", ParkingType.HOSTED, host_id=config.HOST)
        .section("hh-s")
        .zone("hh-z")
        .spot(config.HOSTED_SPOT, pricing=PricingConfig(base_rate=3333))
        .build()
    )


def booking(
    booking_id: str,
    spot_id: str = IntegrationTestConfig.FACILITY_SPOT,
    start: datetime = None,
    hours: float = 2,
    user_id: str = "user-1",
    vehicle_type: VehicleType = VehicleType.CAR,
    claimed_discount: DiscountKind = None
) -> BookingEvent:
    start = start or datetime.combine(IntegrationTestConfig.SESSION_DAY, datetime.min.time()).replace(hour=9)
    return BookingEvent(
        booking_id=booking_id,
        spot_id=spot_id,
        user_id=user_id,
        vehicle_type=vehicle_type,
        start=start,
        end=start + timedelta(hours=hours),
        claimed_discount=claimed_discount
    )


class EngineTestCase(unittest.TestCase):
    """
    Base test case with a fully wired in-memory engine

    Subclasses can override settings_overrides() or create_gateway().
    Every published event is captured in self.audit.
    """

    def settings_overrides(self):
        return {}

    def create_gateway(self):
        return SimulatedBankGateway()

    def setUp(self):
        self.clock = FixedClock(IntegrationTestConfig.NOW)
        self.settings = EngineSettings(**self.settings_overrides())
        self.gateway = self.create_gateway()
        self.platform = ServiceFactory(self.settings, clock=self.clock).create_in_memory(
            self.gateway, hierarchy=build_demo_hierarchy()
        )
        self.addCleanup(self.platform.close)

        self.audit = RecordingEventHandler()
        self.platform.message_bus.event_bus.subscribe_all(self.audit)

        self.charging = self.platform.charging
        self.configuration = self.platform.configuration
        self.remittances = self.platform.remittances

    def charge(self, booking_id: str, **kwargs):
        return self.charging.compute_charge(booking(booking_id, **kwargs))


__all__ = [
    'IntegrationTestConfig',
    'FixedClock',
    'build_demo_hierarchy',
    'booking',
    'EngineTestCase',
]
