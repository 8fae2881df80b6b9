#!/usr/bin/env python3
"""
Pricing Unit Tests

Tests for field-by-field hierarchy resolution and for the rate
calculator's interval splitting and rounding.
"""

import unittest
import sys
from pathlib import Path
from datetime import datetime, date, time, timedelta
from decimal import Decimal

sys.path.append(str(Path(__file__).parent.parent.parent))

from parkangel.domain.models import (
    HierarchyNode, HierarchyLevel, ParkingType, PricingConfig, HolidayRate,
    TimeBasedRate, VehicleTypeRate, OccupancyCurve, VehicleType, ChargeLineKind, DayKind,
    ConfigurationError
)
from parkangel.domain.pricing import PricingResolver, RateCalculator


SYSTEM_DEFAULT = PricingConfig(base_rate=5000, vat_rate=Decimal('0.12'))
INDEPENDENCE_DAY = date(2024, 6, 12)


def build_chain(spot_pricing=None, zone_pricing=None, section_pricing=None, location_pricing=None):
    """Spot -> Zone -> Section -> Location, nearest first"""
    location = HierarchyNode(
        "loc-1", HierarchyLevel.LOCATION, "SM North", pricing=location_pricing,
        operator_id="op-1", parking_type=ParkingType.FACILITY
    )
    section = HierarchyNode("sec-1", HierarchyLevel.SECTION, "Level 1", parent_id="loc-1", pricing=section_pricing)
    zone = HierarchyNode("zone-1", HierarchyLevel.ZONE, "Zone A", parent_id="sec-1", pricing=zone_pricing)
    spot = HierarchyNode("spot-1", HierarchyLevel.SPOT, "A-01", parent_id="zone-1", pricing=spot_pricing)
    return [spot, zone, section, location]


class TestPricingResolver(unittest.TestCase):
    """Unit tests for PricingResolver"""

    def setUp(self):
        self.resolver = PricingResolver(SYSTEM_DEFAULT)
        self.at = datetime(2024, 6, 12, 10)

    def test_nearest_level_wins_per_field(self):
        chain = build_chain(
            zone_pricing=PricingConfig(holiday_rates=(HolidayRate("Independence Day", INDEPENDENCE_DAY, rate=20000),)),
            section_pricing=PricingConfig(base_rate=5000),
            location_pricing=PricingConfig(base_rate=3000, vat_rate=Decimal('0.10'))
        )
        resolved = self.resolver.resolve(chain, self.at)

        self.assertEqual(resolved.pricing.base_rate, 5000)
        self.assertEqual(resolved.pricing.vat_rate, Decimal('0.10'))
        self.assertEqual(len(resolved.pricing.holiday_rates), 1)
        self.assertEqual(resolved.source_of('base_rate').level, HierarchyLevel.SECTION)
        self.assertEqual(resolved.source_of('holiday_rates').node_id, "zone-1")
        self.assertEqual(resolved.source_of('vat_rate').level, HierarchyLevel.LOCATION)
        self.assertTrue(resolved.source_of('time_based_rates').is_default)

    def test_falls_back_to_system_default(self):
        resolved = self.resolver.resolve(build_chain(), self.at)
        self.assertEqual(resolved.pricing.base_rate, 5000)
        self.assertEqual(resolved.pricing.vat_rate, Decimal('0.12'))
        self.assertEqual(resolved.pricing.time_based_rates, ())
        self.assertEqual(resolved.pricing.occupancy_curve, OccupancyCurve.flat())
        self.assertTrue(resolved.source_of('base_rate').is_default)

    def test_explicit_empty_override_clears_inherited_rules(self):
        chain = build_chain(
            spot_pricing=PricingConfig(holiday_rates=()),
            zone_pricing=PricingConfig(holiday_rates=(HolidayRate("Holiday", INDEPENDENCE_DAY, rate=20000),))
        )
        resolved = self.resolver.resolve(chain, self.at)
        self.assertEqual(resolved.pricing.holiday_rates, ())
        self.assertEqual(resolved.source_of('holiday_rates').level, HierarchyLevel.SPOT)

    def test_missing_required_field_raises(self):
        resolver = PricingResolver(PricingConfig(vat_rate=Decimal('0.12')))
        with self.assertRaises(ConfigurationError) as ctx:
            resolver.resolve(build_chain(), self.at)
        self.assertEqual(ctx.exception.field_path, "pricing.base_rate")

    def test_broken_chain_rejected(self):
        spot, zone, section, location = build_chain()
        with self.assertRaises(ConfigurationError):
            self.resolver.resolve([spot, section, location], self.at)
        with self.assertRaises(ConfigurationError):
            self.resolver.resolve([spot, zone, section], self.at)
        with self.assertRaises(ConfigurationError):
            self.resolver.resolve([zone, section, location], self.at)

    def test_describe_sources(self):
        chain = build_chain(
            spot_pricing=PricingConfig(vat_rate=Decimal('0')),
            section_pricing=PricingConfig(base_rate=4000)
        )
        sources = self.resolver.describe_sources(chain)
        self.assertEqual(sources['vat_rate'], "own")
        self.assertEqual(sources['base_rate'], "inherited:section")
        self.assertEqual(sources['holiday_rates'], "default")

    def test_snapshot_dict_carries_provenance(self):
        data = self.resolver.resolve(build_chain(section_pricing=PricingConfig(base_rate=4000)), self.at).to_dict()
        self.assertEqual(data['base_rate'], 4000)
        self.assertEqual(data['provenance']['base_rate']['level'], "section")
        self.assertEqual(data['provenance']['vat_rate']['level'], "default")


class TestRateCalculator(unittest.TestCase):
    """Unit tests for RateCalculator"""

    def setUp(self):
        self.resolver = PricingResolver(SYSTEM_DEFAULT)
        self.calculator = RateCalculator()

    def _pricing(self, **section_fields):
        chain = build_chain(section_pricing=PricingConfig(**section_fields) if section_fields else None)
        return self.resolver.resolve(chain, datetime(2024, 6, 10)).pricing

    def test_holiday_rate_from_zone_beats_section_base(self):
        chain = build_chain(
            zone_pricing=PricingConfig(holiday_rates=(HolidayRate("Independence Day", INDEPENDENCE_DAY, rate=20000),)),
            section_pricing=PricingConfig(base_rate=5000)
        )
        pricing = self.resolver.resolve(chain, datetime(2024, 6, 12, 10)).pricing
        lines = self.calculator.calculate(
            pricing, datetime(2024, 6, 12, 10), datetime(2024, 6, 12, 11), VehicleType.CAR
        )
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0].hourly_rate, 20000)
        self.assertEqual(lines[0].amount, 20000)
        self.assertEqual(lines[0].rule_name, "Independence Day")

    def test_flat_rate(self):
        lines = self.calculator.calculate(
            self._pricing(), datetime(2024, 6, 10, 9), datetime(2024, 6, 10, 11), VehicleType.CAR
        )
        self.assertEqual([line.amount for line in lines], [10000])
        self.assertEqual(lines[0].kind, ChargeLineKind.RATE)

    def test_partial_hour_rounds_half_up(self):
        lines = self.calculator.calculate(
            self._pricing(), datetime(2024, 6, 10, 9), datetime(2024, 6, 10, 9, 20), VehicleType.CAR
        )
        self.assertEqual(lines[0].amount, 1667)

    def test_time_rule_boundary_splits_session(self):
        pricing = self._pricing(time_based_rates=(
            TimeBasedRate("evening peak", multiplier=Decimal('1.5'), start_time=time(17), end_time=time(20)),
        ))
        lines = self.calculator.calculate(
            pricing, datetime(2024, 6, 10, 16), datetime(2024, 6, 10, 18), VehicleType.CAR
        )
        self.assertEqual([(line.amount, line.rule_name) for line in lines], [(5000, None), (7500, "evening peak")])

    def test_narrower_hour_range_wins(self):
        pricing = self._pricing(time_based_rates=(
            TimeBasedRate("weekday", multiplier=Decimal('1.2'), day_kind=DayKind.WEEKDAY),
            TimeBasedRate("lunch", rate=8000, start_time=time(12), end_time=time(13)),
        ))
        lines = self.calculator.calculate(
            pricing, datetime(2024, 6, 10, 12), datetime(2024, 6, 10, 13), VehicleType.CAR
        )
        self.assertEqual(lines[0].rule_name, "lunch")
        self.assertEqual(lines[0].amount, 8000)

    def test_midnight_split_merges_equal_rates(self):
        lines = self.calculator.calculate(
            self._pricing(), datetime(2024, 6, 10, 23), datetime(2024, 6, 11, 1), VehicleType.CAR
        )
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0].amount, 10000)

    def test_session_crossing_into_holiday(self):
        pricing = self._pricing(holiday_rates=(HolidayRate("Independence Day", INDEPENDENCE_DAY, rate=20000),))
        lines = self.calculator.calculate(
            pricing, datetime(2024, 6, 11, 23), datetime(2024, 6, 12, 1), VehicleType.CAR
        )
        self.assertEqual([line.amount for line in lines], [5000, 20000])
        self.assertEqual(lines[1].start, datetime(2024, 6, 12))

    def test_vehicle_type_multiplier(self):
        pricing = self._pricing(vehicle_type_rates=(VehicleTypeRate(VehicleType.SUV, multiplier=Decimal('1.2')),))
        lines = self.calculator.calculate(
            pricing, datetime(2024, 6, 10, 9), datetime(2024, 6, 10, 10), VehicleType.SUV
        )
        self.assertEqual(lines[0].amount, 6000)
        car = self.calculator.calculate(pricing, datetime(2024, 6, 10, 9), datetime(2024, 6, 10, 10), VehicleType.CAR)
        self.assertEqual(car[0].amount, 5000)

    def test_occupancy_multiplier(self):
        pricing = self._pricing(occupancy_curve=OccupancyCurve.demand_based())
        lines = self.calculator.calculate(
            pricing, datetime(2024, 6, 10, 9), datetime(2024, 6, 10, 10), VehicleType.CAR, Decimal('0.95')
        )
        self.assertEqual(lines[0].amount, 7500)
        self.assertEqual(lines[0].occupancy_multiplier, Decimal('1.5'))

    def test_invalid_interval_and_occupancy(self):
        pricing = self._pricing()
        start = datetime(2024, 6, 10, 9)
        with self.assertRaises(ValueError):
            self.calculator.calculate(pricing, start, start, VehicleType.CAR)
        with self.assertRaises(ValueError):
            self.calculator.calculate(pricing, start, start + timedelta(hours=1), VehicleType.CAR, Decimal('1.2'))

    def test_lines_are_contiguous(self):
        pricing = self._pricing(time_based_rates=(
            TimeBasedRate("night", multiplier=Decimal('0.5'), start_time=time(22), end_time=time(6)),
        ))
        start, end = datetime(2024, 6, 10, 20), datetime(2024, 6, 11, 8)
        lines = self.calculator.calculate(pricing, start, end, VehicleType.CAR)
        self.assertEqual(lines[0].start, start)
        self.assertEqual(lines[-1].end, end)
        for previous, current in zip(lines, lines[1:]):
            self.assertEqual(previous.end, current.start)
        # 2h + 2h full rate, 8h half rate
        self.assertEqual(sum(line.amount for line in lines), 4 * 5000 + 8 * 2500)


if __name__ == '__main__':
    unittest.main()
