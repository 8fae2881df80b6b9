#!/usr/bin/env python3
"""
SQLAlchemy Ledger Integration Tests

Runs the charging and remittance services against the SQLAlchemy unit of
work on an in-memory SQLite database, so unique constraints and
compare-and-set claims are enforced by the database itself.
"""

import unittest
import sys
from pathlib import Path
from dataclasses import replace
from datetime import datetime, timedelta

sys.path.append(str(Path(__file__).parent.parent.parent))

from parkangel.domain.models import (
    DiscountKind, EligibilityRecord, ChargeEventType, RemittanceStatus,
    DuplicateChargeError, RemittanceStateError
)
from parkangel.domain.aggregates import Remittance
from parkangel.application.charging_service import ChargingService
from parkangel.application.remittance_service import RemittanceAggregator
from parkangel.infrastructure.factories import DiscountRuleFactory
from parkangel.infrastructure.registries import InMemoryDiscountRegistry, SimulatedBankGateway
from parkangel.infrastructure.repositories import RepositoryFactory, InMemoryRevenueShareConfigRepository

from tests.integration import IntegrationTestConfig, FixedClock, build_demo_hierarchy, booking


DAY_ONE = datetime(2024, 6, 1)
DAY_TWO = DAY_ONE + timedelta(days=1)


class SQLAlchemyTestCase(unittest.TestCase):
    """Fresh in-memory database per test"""

    def setUp(self):
        self.clock = FixedClock(IntegrationTestConfig.NOW)
        self.uow_factory = RepositoryFactory.create_sqlalchemy_uow_factory("sqlite://")
        self.discounts = InMemoryDiscountRegistry()
        self.charging = ChargingService(
            hierarchy=build_demo_hierarchy(),
            uow_factory=self.uow_factory,
            share_configs=InMemoryRevenueShareConfigRepository(),
            discount_registry=self.discounts,
            clock=self.clock
        )


class TestChargeLedger(SQLAlchemyTestCase):

    def test_charge_round_trip(self):
        self.discounts.save_rule(DiscountRuleFactory.senior_citizen())
        self.discounts.add_record(EligibilityRecord(
            "user-1", DiscountKind.SENIOR_CITIZEN, verified=True, attributes={"age": 70}
        ))
        record = self.charging.compute_charge(booking("bk-1"))

        with self.uow_factory() as uow:
            stored = uow.charges.get(record.record_id)

        self.assertEqual(stored, record)
        self.assertEqual(stored.discount.amount_saved, 2000)
        self.assertEqual(stored.pricing_snapshot["provenance"]["base_rate"]["level"], "section")

    def test_charging_is_idempotent(self):
        first = self.charging.compute_charge(booking("bk-1"))
        second = self.charging.compute_charge(booking("bk-1"))

        self.assertEqual(first.record_id, second.record_id)
        with self.uow_factory() as uow:
            self.assertEqual(uow.charges.count(), 1)

    def test_unique_booking_event(self):
        record = self.charging.compute_charge(booking("bk-1"))

        with self.assertRaises(DuplicateChargeError):
            with self.uow_factory() as uow:
                uow.charges.add(replace(record, record_id="another-id"))

        with self.uow_factory() as uow:
            self.assertEqual(uow.charges.count(), 1)

    def test_correction_persisted(self):
        record = self.charging.compute_charge(booking("bk-1"))
        self.clock.advance(minutes=5)
        correction = self.charging.issue_correction(record.record_id, "wrong spot")

        records = self.charging.get_charges_for_booking("bk-1")
        self.assertEqual([r.event_type for r in records], [ChargeEventType.SESSION_END, ChargeEventType.CORRECTION])
        self.assertEqual(records[1].compensates, record.record_id)
        self.assertEqual(records[1].total_amount, -11200)
        shares = self.charging.get_charge_breakdown(correction.record_id).shares
        self.assertEqual(sum(s.amount for s in shares), -10000)

    def test_corrections_per_charge(self):
        session = self.charging.compute_charge(booking("bk-1"))
        extension = self.charging.compute_charge(replace(
            booking("bk-1", start=booking("bk-1").end, hours=1), event_type=ChargeEventType.EXTENSION
        ))
        self.clock.advance(minutes=5)
        first = self.charging.issue_correction(session.record_id, "wrong spot")
        second = self.charging.issue_correction(extension.record_id, "wrong spot")

        with self.uow_factory() as uow:
            self.assertEqual(uow.charges.count(), 4)
            self.assertEqual(uow.charges.find_correction(session.record_id).record_id, first.record_id)
            self.assertEqual(uow.charges.find_correction(extension.record_id).record_id, second.record_id)
            self.assertIsNone(uow.charges.find_correction(first.record_id))
        self.assertEqual(
            self.charging.issue_correction(session.record_id, "wrong spot").record_id, first.record_id
        )


class TestShareClaims(SQLAlchemyTestCase):

    def setUp(self):
        super().setUp()
        record = self.charging.compute_charge(booking("bk-1"))
        with self.uow_factory() as uow:
            self.share_ids = [s.share_id for s in uow.shares.find_by_charge(record.record_id)]

    def test_claim_is_compare_and_set(self):
        with self.uow_factory() as uow:
            claimed = uow.shares.claim(self.share_ids, "rem-a")
        with self.uow_factory() as uow:
            stolen = uow.shares.claim(self.share_ids, "rem-b")
            held = uow.shares.find_by_remittance("rem-a")

        self.assertEqual(len(claimed), 2)
        self.assertTrue(all(s.claimed_by == "rem-a" for s in claimed))
        self.assertEqual(stolen, [])
        self.assertEqual(len(held), 2)

    def test_release_returns_shares(self):
        with self.uow_factory() as uow:
            uow.shares.claim(self.share_ids, "rem-a")
        with self.uow_factory() as uow:
            self.assertEqual(uow.shares.release("rem-a"), 2)
        with self.uow_factory() as uow:
            self.assertEqual(len(uow.shares.claim(self.share_ids, "rem-b")), 2)


class TestRemittanceLedger(SQLAlchemyTestCase):

    def setUp(self):
        super().setUp()
        self.gateway = SimulatedBankGateway()
        self.remittances = RemittanceAggregator(self.uow_factory, self.gateway, clock=self.clock)
        self.addCleanup(self.remittances.shutdown)
        self.charging.compute_charge(booking("bk-1"))
        self.charging.compute_charge(booking("bk-2"))

    def test_remittance_persisted(self):
        remittance = self.remittances.run_remittance("op-sm", DAY_ONE, DAY_TWO)
        stored = self.remittances.get_remittance(remittance.id)

        self.assertEqual(stored.status, RemittanceStatus.COMPLETED)
        self.assertEqual(stored.payable, 14000)
        self.assertEqual(sorted(stored.share_ids), sorted(remittance.share_ids))
        self.assertEqual(stored.transfer_id, remittance.transfer_id)
        self.assertEqual(stored.attempts, 1)
        self.assertEqual(self.gateway.total_to("op-sm"), 14000)

        with self.uow_factory() as uow:
            self.assertEqual([r.id for r in uow.remittances.find_by_status(RemittanceStatus.COMPLETED)], [remittance.id])
            self.assertEqual(len(uow.shares.find_by_remittance(remittance.id)), 2)

    def test_rerun_and_overlap(self):
        first = self.remittances.run_remittance("op-sm", DAY_ONE, DAY_TWO)
        again = self.remittances.run_remittance("op-sm", DAY_ONE, DAY_TWO)
        wider = self.remittances.run_remittance("op-sm", DAY_ONE - timedelta(days=7), DAY_TWO)

        self.assertEqual(again.id, first.id)
        self.assertEqual(wider.payable, 0)
        self.assertEqual(wider.previously_reserved, 14000)
        self.assertEqual(len(self.gateway.transfers), 1)

    def test_unique_recipient_period(self):
        with self.uow_factory() as uow:
            uow.remittances.add(Remittance("op-sm", DAY_ONE, DAY_TWO, created_at=DAY_ONE))

        with self.assertRaises(RemittanceStateError):
            with self.uow_factory() as uow:
                uow.remittances.add(Remittance("op-sm", DAY_ONE, DAY_TWO, created_at=DAY_ONE))

    def test_earnings(self):
        self.remittances.run_remittance("op-sm", DAY_ONE, DAY_TWO)
        summary = self.remittances.recipient_earnings("op-sm", DAY_ONE, DAY_TWO)

        self.assertEqual(summary.total_amount, 14000)
        self.assertEqual(summary.remitted_amount, 14000)
        self.assertEqual(summary.share_count, 2)


if __name__ == '__main__':
    unittest.main()
