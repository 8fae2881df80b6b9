#!/usr/bin/env python3
"""
Strategy Unit Tests

Tests for the VIP override, the discount engine, VAT and revenue
distribution, including the worked examples from the pricing rules.
"""

import unittest
import sys
from pathlib import Path
from datetime import datetime, timedelta
from decimal import Decimal

sys.path.append(str(Path(__file__).parent.parent.parent))

from parkangel.domain.models import (
    VIPAssignment, VIPType, DiscountRule, DiscountKind, EligibilityRecord,
    SeniorCitizenEligibility, PWDEligibility, CustomEligibility, ConditionOperator,
    ChargeRecord, ChargeLine, ChargeLineKind, ChargeEventType, ParkingType,
    RevenueShareConfig, RevenueAllocation, RecipientRole, PricingConfig, VehicleType,
    HierarchyNode, HierarchyLevel, EligibilityError, DistributionError,
    HOSTED_CONFIG_OWNER, PLATFORM_CONFIG_OWNER
)
from parkangel.domain.pricing import RateCalculator, PricingResolver
from parkangel.domain.strategies import (
    VIPOverride, DiscountEngine, VATCalculator, RevenueDistributor,
    default_revenue_share_config
)


START = datetime(2024, 6, 10, 9)


def make_record(distributable, parking_type=ParkingType.FACILITY, vat_amount=0, record_id="chg-1"):
    line = ChargeLine(START, START + timedelta(hours=1), ChargeLineKind.RATE, distributable, distributable)
    return ChargeRecord(
        record_id=record_id,
        booking_id="bk-1",
        event_type=ChargeEventType.SESSION_END,
        spot_id="spot-1",
        user_id="user-1",
        operator_id="op-1" if parking_type is not ParkingType.HOSTED else None,
        parking_type=parking_type,
        lines=(line,),
        subtotal=distributable,
        discounted_amount=distributable,
        vat_rate=Decimal('0.12') if vat_amount else Decimal('0'),
        vat_amount=vat_amount,
        total_amount=distributable + vat_amount,
        created_at=START
    )


class TestVIPOverride(unittest.TestCase):
    """Unit tests for VIP tier selection and time limits"""

    def setUp(self):
        self.override = VIPOverride()
        self.end = START + timedelta(hours=3)

    def test_vvip_session_is_fully_free(self):
        vvip = VIPAssignment("vip-1", "user-1", VIPType.VVIP)
        result = self.override.evaluate([vvip], "spot-1", START, self.end)
        self.assertTrue(result.is_fully_free)
        self.assertIsNone(result.billable_interval)

    def test_flex_vvip_bills_overage(self):
        flex = VIPAssignment("vip-1", "user-1", VIPType.FLEX_VVIP, time_limit_hours=2)
        result = self.override.evaluate([flex], "spot-1", START, self.end)

        self.assertFalse(result.is_fully_free)
        billable_start, billable_end = result.billable_interval
        self.assertEqual(billable_start, START + timedelta(hours=2))

        pricing = PricingResolver(PricingConfig(base_rate=5000, vat_rate=Decimal('0.12')))
        chain = [
            HierarchyNode("spot-1", HierarchyLevel.SPOT, "A-01", parent_id="zone-1"),
            HierarchyNode("zone-1", HierarchyLevel.ZONE, "A", parent_id="sec-1"),
            HierarchyNode("sec-1", HierarchyLevel.SECTION, "L1", parent_id="loc-1"),
            HierarchyNode("loc-1", HierarchyLevel.LOCATION, "Mall", operator_id="op-1",
                          parking_type=ParkingType.FACILITY),
        ]
        effective = pricing.resolve(chain, START).pricing
        lines = RateCalculator().calculate(effective, billable_start, billable_end, VehicleType.CAR)
        self.assertEqual(sum(line.amount for line in lines), 5000)

    def test_spot_vip_outside_assigned_spot_does_not_apply(self):
        vip = VIPAssignment("vip-1", "user-1", VIPType.VIP, assigned_spots={"spot-9"})
        self.assertIsNone(self.override.evaluate([vip], "spot-1", START, self.end))

    def test_most_permissive_tier_wins(self):
        flex = VIPAssignment("vip-1", "user-1", VIPType.FLEX_VIP, assigned_spots={"spot-1"}, time_limit_hours=1)
        vip = VIPAssignment("vip-2", "user-1", VIPType.VIP, assigned_spots={"spot-1"})
        result = self.override.evaluate([flex, vip], "spot-1", START, self.end)
        self.assertEqual(result.assignment.assignment_id, "vip-2")
        self.assertTrue(result.is_fully_free)

    def test_expired_assignment_raises(self):
        expired = VIPAssignment(
            "vip-1", "user-1", VIPType.VVIP,
            valid_from=START - timedelta(days=30), valid_until=START - timedelta(days=1)
        )
        with self.assertRaises(EligibilityError) as ctx:
            self.override.evaluate([expired], "spot-1", START, self.end)
        self.assertEqual(ctx.exception.claim, "vip")

    def test_no_assignments(self):
        self.assertIsNone(self.override.evaluate([], "spot-1", START, self.end))


class TestDiscountEngine(unittest.TestCase):
    """Unit tests for discount selection and claim verification"""

    def setUp(self):
        self.engine = DiscountEngine()
        self.senior = DiscountRule("senior", "Senior Citizen", Decimal('20'), SeniorCitizenEligibility(), is_vat_exempt=True)
        self.pwd = DiscountRule("pwd", "PWD", Decimal('20'), PWDEligibility(), is_vat_exempt=True)
        self.loyalty = DiscountRule(
            "loyalty", "Loyalty", Decimal('10'),
            CustomEligibility("tier", ConditionOperator.EQUALS, "gold"), operator_id="op-1"
        )
        self.senior_record = EligibilityRecord(
            "user-1", DiscountKind.SENIOR_CITIZEN, verified=True, attributes={"age": 65}
        )

    def test_senior_discount_is_vat_exempt(self):
        result = self.engine.apply(10000, [self.senior], [self.senior_record], "op-1", START, user_id="user-1")
        self.assertEqual(result.discounted_amount, 8000)
        self.assertEqual(result.applied.amount_saved, 2000)
        self.assertTrue(result.is_vat_exempt)

        vat = VATCalculator().calculate(result.discounted_amount, Decimal('0.12'), result.is_vat_exempt)
        self.assertEqual(vat.vat_amount, 0)
        self.assertEqual(vat.total_amount, 8000)

    def test_highest_percentage_wins(self):
        big = DiscountRule(
            "vip-promo", "Promo", Decimal('30'),
            CustomEligibility("tier", ConditionOperator.EQUALS, "gold")
        )
        gold = EligibilityRecord("user-1", DiscountKind.CUSTOM, verified=True, attributes={"tier": "gold"})
        result = self.engine.apply(
            10000, [self.senior, big], [self.senior_record, gold], "op-1", START, user_id="user-1"
        )
        self.assertEqual(result.applied.rule_id, "vip-promo")
        self.assertEqual(result.discounted_amount, 7000)
        self.assertFalse(result.is_vat_exempt)

    def test_unverified_claim_is_rejected_not_raised(self):
        unverified = EligibilityRecord("user-1", DiscountKind.SENIOR_CITIZEN, verified=False, attributes={"age": 70})
        result = self.engine.apply(
            10000, [self.senior], [unverified], "op-1", START,
            claimed=DiscountKind.SENIOR_CITIZEN, user_id="user-1"
        )
        self.assertIsNone(result.applied)
        self.assertEqual(result.discounted_amount, 10000)
        self.assertEqual(len(result.rejected_claims), 1)
        self.assertEqual(result.rejected_claims[0].claim, "senior_citizen")

    def test_claim_without_any_record(self):
        result = self.engine.apply(10000, [self.pwd], [], "op-1", START, claimed=DiscountKind.PWD, user_id="user-1")
        self.assertIsNone(result.applied)
        self.assertEqual([e.claim for e in result.rejected_claims], ["pwd"])

    def test_expired_record_rejected(self):
        expired = EligibilityRecord(
            "user-1", DiscountKind.PWD, verified=True, attributes={"pwd_id": "PWD-1"},
            expires_at=START - timedelta(days=1)
        )
        result = self.engine.apply(10000, [self.pwd], [expired], "op-1", START, user_id="user-1")
        self.assertIsNone(result.applied)
        self.assertEqual(len(result.rejected_claims), 1)

    def test_operator_scoped_rule(self):
        gold = EligibilityRecord("user-1", DiscountKind.CUSTOM, verified=True, attributes={"tier": "gold"})
        other = self.engine.apply(10000, [self.loyalty], [gold], "op-2", START)
        self.assertIsNone(other.applied)
        own = self.engine.apply(10000, [self.loyalty], [gold], "op-1", START)
        self.assertEqual(own.discounted_amount, 9000)

    def test_underage_senior_is_not_eligible(self):
        young = EligibilityRecord("user-1", DiscountKind.SENIOR_CITIZEN, verified=True, attributes={"age": 45})
        result = self.engine.apply(10000, [self.senior], [young], "op-1", START)
        self.assertIsNone(result.applied)
        self.assertEqual(result.rejected_claims, ())


class TestVATCalculator(unittest.TestCase):

    def test_vat_rounds_half_up(self):
        vat = VATCalculator().calculate(1234, Decimal('0.12'))
        # 148.08
        self.assertEqual(vat.vat_amount, 148)
        self.assertEqual(vat.total_amount, 1382)
        self.assertEqual(VATCalculator().calculate(1000, Decimal('0.0125')).vat_amount, 13)

    def test_zero_rate(self):
        vat = VATCalculator().calculate(5000, Decimal('0'))
        self.assertEqual((vat.vat_amount, vat.total_amount), (0, 5000))


class TestRevenueDistributor(unittest.TestCase):
    """Unit tests for exact revenue splits"""

    def setUp(self):
        self.distributor = RevenueDistributor()
        self.recipients = {
            RecipientRole.OPERATOR: "op-1",
            RecipientRole.HOST: "host-1",
            RecipientRole.PARK_ANGEL: "park-angel",
        }

    def test_operator_split_70_30(self):
        record = make_record(10000, vat_amount=1200)
        config = default_revenue_share_config(ParkingType.FACILITY)
        shares = self.distributor.distribute(record, config, self.recipients)
        self.assertEqual([(s.recipient_id, s.amount) for s in shares], [("op-1", 7000), ("park-angel", 3000)])

    def test_hosted_split_60_40_with_remainder(self):
        record = make_record(3333, parking_type=ParkingType.HOSTED)
        config = default_revenue_share_config(ParkingType.HOSTED)
        shares = self.distributor.distribute(record, config, self.recipients)
        self.assertEqual([(s.role, s.amount) for s in shares], [(RecipientRole.HOST, 2000), (RecipientRole.PARK_ANGEL, 1333)])
        self.assertTrue(all(s.charge_record_id == "chg-1" for s in shares))

    def test_fractional_percentages_add_up(self):
        config = RevenueShareConfig("op-1", ParkingType.STREET, (
            RevenueAllocation(RecipientRole.OPERATOR, Decimal('33.33')),
            RevenueAllocation(RecipientRole.PARK_ANGEL, Decimal('66.67')),
        ))
        for amount in (1, 7, 99, 100, 10001):
            parts = self.distributor.split(amount, config)
            self.assertEqual(sum(part for _, part in parts), amount)

    def test_negative_amount_for_corrections(self):
        parts = self.distributor.split(-3333, default_revenue_share_config(ParkingType.HOSTED))
        self.assertEqual(parts, [(RecipientRole.HOST, -2000), (RecipientRole.PARK_ANGEL, -1333)])

    def test_missing_recipient_raises(self):
        record = make_record(10000)
        with self.assertRaises(DistributionError) as ctx:
            self.distributor.distribute(
                record, default_revenue_share_config(ParkingType.FACILITY), {RecipientRole.PARK_ANGEL: "pa"}
            )
        self.assertEqual(ctx.exception.charge_record_id, "chg-1")

    def test_parking_type_mismatch_raises(self):
        record = make_record(10000, parking_type=ParkingType.STREET)
        with self.assertRaises(DistributionError):
            self.distributor.distribute(record, default_revenue_share_config(ParkingType.FACILITY), self.recipients)

    def test_select_config_precedence(self):
        operator_config = RevenueShareConfig("op-1", ParkingType.STREET, (
            RevenueAllocation(RecipientRole.OPERATOR, Decimal('80')),
            RevenueAllocation(RecipientRole.PARK_ANGEL, Decimal('20')),
        ))
        platform_config = RevenueShareConfig(PLATFORM_CONFIG_OWNER, ParkingType.STREET, (
            RevenueAllocation(RecipientRole.OPERATOR, Decimal('75')),
            RevenueAllocation(RecipientRole.PARK_ANGEL, Decimal('25')),
        ))
        configs = {
            ("op-1", ParkingType.STREET): operator_config,
            (PLATFORM_CONFIG_OWNER, ParkingType.STREET): platform_config,
        }
        self.assertIs(RevenueDistributor.select_config(ParkingType.STREET, "op-1", configs), operator_config)
        self.assertIs(RevenueDistributor.select_config(ParkingType.STREET, "op-2", configs), platform_config)
        fallback = RevenueDistributor.select_config(ParkingType.FACILITY, "op-1", configs)
        self.assertEqual(fallback.percentage_for(RecipientRole.OPERATOR), Decimal('70'))
        hosted = RevenueDistributor.select_config(ParkingType.HOSTED, "op-1", configs)
        self.assertEqual(hosted.owner_id, HOSTED_CONFIG_OWNER)


if __name__ == '__main__':
    unittest.main()
