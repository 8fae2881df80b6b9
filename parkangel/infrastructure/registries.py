# File: parkangel/infrastructure/registries.py
"""
In-memory collaborators for the charging and remittance services

The services only depend on narrow lookup protocols; these implementations
back them for tests, demos and single-process deployments.

1. InMemoryVIPRegistry - VIP assignments per user
2. InMemoryDiscountRegistry - Discount rules and users' eligibility records
3. FixedOccupancyProvider - Occupancy ratio per spot
4. SimulatedBankGateway - Records transfers instead of moving money
"""

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set
from uuid import uuid4
import logging
import threading

from ..domain.models import (
    VIPAssignment, DiscountRule, EligibilityRecord, RemittanceTransferError,
    ConfigurationError, TransferState, TransferStatus
)


class InMemoryVIPRegistry:
    """Hands out active VIP assignments; the validity window is checked by the VIP override"""

    def __init__(self):
        self._assignments: Dict[str, VIPAssignment] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def assign(self, assignment: VIPAssignment) -> VIPAssignment:
        with self._lock:
            self._assignments[assignment.assignment_id] = assignment
        self.logger.info(f"Assigned {assignment.vip_type.value} to user {assignment.user_id}")
        return assignment

    def revoke(self, assignment_id: str) -> None:
        with self._lock:
            if self._assignments.pop(assignment_id, None) is None:
                raise KeyError(f"VIP assignment {assignment_id} not found")
        self.logger.info(f"Revoked VIP assignment {assignment_id}")

    def get_active_assignments(self, user_id: str, at: datetime) -> List[VIPAssignment]:
        return [a for a in list(self._assignments.values()) if a.user_id == user_id and a.is_active]


class InMemoryDiscountRegistry:
    """Discount rules by id and eligibility records by user"""

    def __init__(self):
        self._rules: Dict[str, DiscountRule] = {}
        self._records: Dict[str, List[EligibilityRecord]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def save_rule(self, rule: DiscountRule) -> DiscountRule:
        with self._lock:
            self._rules[rule.rule_id] = rule
        self.logger.info(f"Saved discount rule {rule.rule_id} ({rule.name}, {rule.percentage}%)")
        return rule

    def get_rule(self, rule_id: str) -> Optional[DiscountRule]:
        return self._rules.get(rule_id)

    def deactivate_rule(self, rule_id: str) -> DiscountRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise ConfigurationError(f"discount rule {rule_id} not found", f"discount.{rule_id}")
            rule = replace(rule, is_active=False)
            self._rules[rule_id] = rule
        self.logger.info(f"Deactivated discount rule {rule_id}")
        return rule

    def add_record(self, record: EligibilityRecord) -> EligibilityRecord:
        with self._lock:
            self._records.setdefault(record.user_id, []).append(record)
        return record

    def get_eligible_rules(self, user_id: str, operator_id: Optional[str]) -> List[DiscountRule]:
        """Active rules offered at this operator, platform-wide ones included"""
        return [
            rule for rule in list(self._rules.values())
            if rule.is_active and rule.applies_to_operator(operator_id)
        ]

    def get_eligibility_records(self, user_id: str) -> List[EligibilityRecord]:
        return list(self._records.get(user_id, []))


class FixedOccupancyProvider:
    """Returns a configured occupancy ratio per spot, or the default"""

    def __init__(self, default: Decimal = Decimal('0')):
        self.default = default
        self._by_spot: Dict[str, Decimal] = {}

    def set_occupancy(self, spot_id: str, occupancy: Decimal) -> None:
        if not Decimal('0') <= occupancy <= Decimal('1'):
            raise ValueError(f"Occupancy must be within [0, 1]: {occupancy}")
        self._by_spot[spot_id] = occupancy

    def get_occupancy(self, spot_id: str, at: datetime) -> Decimal:
        return self._by_spot.get(spot_id, self.default)


class SimulatedBankGateway:
    """
    Bank gateway stand-in that records transfers

    Recipients in fail_recipients are rejected. A reference already
    transferred returns the earlier transfer id, as a real bank does with
    idempotency keys.
    """

    def __init__(self, fail_recipients: Optional[Set[str]] = None):
        self.fail_recipients: Set[str] = set(fail_recipients or ())
        self.transfers: Dict[str, Dict[str, object]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def transfer(self, recipient_id: str, amount: int, reference: str) -> str:
        with self._lock:
            existing = self.transfers.get(reference)
            if existing is not None:
                return existing['transfer_id']
            if recipient_id in self.fail_recipients:
                raise RemittanceTransferError(f"bank rejected transfer to {recipient_id}", recipient_id)
            transfer_id = f"TRF-{uuid4().hex[:12].upper()}"
            self.transfers[reference] = {
                'transfer_id': transfer_id,
                'recipient_id': recipient_id,
                'amount': amount,
            }
        self.logger.info(f"Transferred {amount} to {recipient_id} ({transfer_id})")
        return transfer_id

    def lookup_transfer(self, reference: str) -> Optional[TransferStatus]:
        existing = self.transfers.get(reference)
        if existing is None:
            return None
        return TransferStatus(reference=reference, state=TransferState.COMPLETED, transfer_id=existing['transfer_id'])

    def total_to(self, recipient_id: str) -> int:
        return sum(t['amount'] for t in self.transfers.values() if t['recipient_id'] == recipient_id)
