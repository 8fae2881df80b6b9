# File: parkangel/domain/strategies.py
"""
Strategy Pattern Implementation for Charging and Revenue Rules

This module encapsulates the interchangeable rules applied to a priced
session, in pipeline order:

1. VIP Access Strategies - Free access per VIP tier, with time limits for
   the flex tiers
2. Discount Engine - Picks the single best verified discount
3. VAT Calculator - Applies VAT unless the discount exempts it
4. Revenue Distributor - Splits the post-VAT amount among recipients so
   the shares add up exactly

Each strategy is stateless and independently testable.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List, Dict, Tuple, Sequence, Mapping
from datetime import datetime
from decimal import Decimal
import logging
import uuid

from .models import (
    VIPAssignment, VIPType, DiscountRule, DiscountKind, EligibilityRecord,
    AppliedDiscount, ChargeRecord, RevenueShare, RevenueShareConfig,
    RevenueAllocation, RecipientRole, ParkingType,
    EligibilityError, DistributionError,
    HOSTED_CONFIG_OWNER, PLATFORM_CONFIG_OWNER,
    round_half_up, percentage_of, to_fraction
)


# ============================================================================
# VIP ACCESS STRATEGIES
# ============================================================================

@dataclass(frozen=True)
class VIPOverrideResult:
    """Free portion of a session granted by a VIP assignment"""
    assignment: VIPAssignment
    free_start: datetime
    free_end: datetime
    session_end: datetime

    @property
    def is_fully_free(self) -> bool:
        return self.free_end >= self.session_end

    @property
    def billable_interval(self) -> Optional[Tuple[datetime, datetime]]:
        """Overage billed at normal rates, if any"""
        if self.is_fully_free:
            return None
        return (self.free_end, self.session_end)


class VIPAccessStrategy(ABC):
    """
    Abstract base class for VIP access rules
    Decides whether an assignment applies and how much of a session is free
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def applies(self, assignment: VIPAssignment, spot_id: str, at: datetime) -> bool:
        return assignment.is_valid_at(at) and assignment.covers_spot(spot_id)

    @abstractmethod
    def free_until(self, assignment: VIPAssignment, start: datetime, end: datetime) -> datetime:
        """End of the free portion of [start, end)"""
        pass


class UnlimitedAccessStrategy(VIPAccessStrategy):
    """VVIP anywhere, VIP on assigned spots: the whole session is free"""

    def free_until(self, assignment: VIPAssignment, start: datetime, end: datetime) -> datetime:
        return end


class TimeLimitedAccessStrategy(VIPAccessStrategy):
    """Flex tiers: free up to the time limit, the overage is billed"""

    def free_until(self, assignment: VIPAssignment, start: datetime, end: datetime) -> datetime:
        return min(end, start + assignment.time_limit)


class VIPOverride:
    """
    Picks the most permissive applicable assignment:
    VVIP > FlexVVIP > VIP > FlexVIP
    """

    def __init__(self, strategies: Optional[Mapping[VIPType, VIPAccessStrategy]] = None):
        unlimited = UnlimitedAccessStrategy()
        limited = TimeLimitedAccessStrategy()
        self._strategies: Dict[VIPType, VIPAccessStrategy] = dict(strategies or {
            VIPType.VVIP: unlimited,
            VIPType.FLEX_VVIP: limited,
            VIPType.VIP: unlimited,
            VIPType.FLEX_VIP: limited,
        })
        self._logger = logging.getLogger(self.__class__.__name__)

    def evaluate(
        self,
        assignments: Sequence[VIPAssignment],
        spot_id: str,
        start: datetime,
        end: datetime
    ) -> Optional[VIPOverrideResult]:
        """
        Returns None when no assignment applies to this spot and time.
        Raises EligibilityError when the user holds assignments but every
        one of them is inactive or outside its validity window.
        """
        if not assignments:
            return None

        applicable = [
            a for a in assignments
            if self._strategies[a.vip_type].applies(a, spot_id, start)
        ]
        if not applicable:
            if not any(a.is_valid_at(start) for a in assignments):
                raise EligibilityError(
                    f"VIP assignments for user {assignments[0].user_id} are inactive or expired",
                    user_id=assignments[0].user_id,
                    claim="vip"
                )
            self._logger.debug(f"No VIP assignment covers spot {spot_id}")
            return None

        best = sorted(applicable, key=lambda a: (-a.vip_type.rank, a.assignment_id))[0]
        free_end = self._strategies[best.vip_type].free_until(best, start, end)
        self._logger.info(
            f"VIP {best.vip_type.value} ({best.assignment_id}) covers {start} - {free_end} on spot {spot_id}"
        )
        return VIPOverrideResult(assignment=best, free_start=start, free_end=free_end, session_end=end)


# ============================================================================
# DISCOUNT ENGINE
# ============================================================================

@dataclass(frozen=True)
class DiscountResult:
    original_amount: int
    discounted_amount: int
    applied: Optional[AppliedDiscount] = None
    rejected_claims: Tuple[EligibilityError, ...] = ()

    @property
    def is_vat_exempt(self) -> bool:
        return self.applied is not None and self.applied.is_vat_exempt


class DiscountEngine:
    """
    Applies at most one discount: the eligible rule with the highest
    percentage. Ties prefer the VAT-exempt rule, then the lower rule id.

    Unverified or expired claims never fail a booking; they are logged and
    returned as rejected claims, and the charge falls back to the
    undiscounted amount for them.
    """

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    def apply(
        self,
        amount: int,
        rules: Sequence[DiscountRule],
        records: Sequence[EligibilityRecord],
        operator_id: Optional[str],
        at: datetime,
        claimed: Optional[DiscountKind] = None,
        user_id: Optional[str] = None
    ) -> DiscountResult:
        candidates = [r for r in rules if r.is_active and r.applies_to_operator(operator_id)]
        eligible: List[DiscountRule] = []
        rejected: List[EligibilityError] = []

        for rule in candidates:
            try:
                if self._verify(rule, records, at, user_id):
                    eligible.append(rule)
            except EligibilityError as e:
                rejected.append(e)

        if claimed is not None and not any(r.discount_kind is claimed for r in eligible):
            if not any(e.claim == claimed.value for e in rejected):
                rejected.append(EligibilityError(
                    f"User {user_id} claimed {claimed.value} without a verified record",
                    user_id=user_id,
                    claim=claimed.value
                ))

        for error in rejected:
            self._logger.warning(f"Discount claim rejected, charging undiscounted: {error}")

        if not eligible or amount <= 0:
            return DiscountResult(amount, amount, None, tuple(rejected))

        best = sorted(eligible, key=lambda r: (-r.percentage, not r.is_vat_exempt, r.rule_id))[0]
        saved = percentage_of(amount, best.percentage)
        applied = AppliedDiscount(
            rule_id=best.rule_id,
            name=best.name,
            percentage=best.percentage,
            amount_saved=saved,
            is_vat_exempt=best.is_vat_exempt
        )
        self._logger.info(f"Applied discount {best.name} ({best.percentage}%): -{saved}")
        return DiscountResult(amount, amount - saved, applied, tuple(rejected))

    @staticmethod
    def _verify(
        rule: DiscountRule,
        records: Sequence[EligibilityRecord],
        at: datetime,
        user_id: Optional[str]
    ) -> bool:
        """True when a current verified record satisfies the rule, False when nothing claims it"""
        matching = [record for record in records if rule.is_satisfied_by(record)]
        if not matching:
            return False
        if any(record.is_valid_at(at) for record in matching):
            return True
        raise EligibilityError(
            f"User {user_id} has no verified, unexpired {rule.discount_kind.value} record for {rule.name}",
            user_id=user_id,
            claim=rule.discount_kind.value
        )


# ============================================================================
# VAT CALCULATOR
# ============================================================================

@dataclass(frozen=True)
class VATResult:
    taxable_amount: int
    vat_rate: Decimal
    vat_amount: int
    total_amount: int
    exempt: bool


class VATCalculator:
    """VAT on the discounted amount, rounded half-up; zero when exempt"""

    def calculate(self, amount: int, vat_rate: Decimal, exempt: bool = False) -> VATResult:
        if exempt:
            vat_amount = 0
        else:
            vat_amount = round_half_up(to_fraction(amount) * to_fraction(vat_rate))
        return VATResult(
            taxable_amount=amount,
            vat_rate=vat_rate,
            vat_amount=vat_amount,
            total_amount=amount + vat_amount,
            exempt=exempt
        )


# ============================================================================
# REVENUE DISTRIBUTOR
# ============================================================================

def default_revenue_share_config(parking_type: ParkingType) -> RevenueShareConfig:
    """Platform defaults: hosted 60 host / 40 Park Angel, otherwise 70 operator / 30 Park Angel"""
    if parking_type is ParkingType.HOSTED:
        return RevenueShareConfig(
            owner_id=HOSTED_CONFIG_OWNER,
            parking_type=parking_type,
            allocations=(
                RevenueAllocation(RecipientRole.HOST, Decimal('60')),
                RevenueAllocation(RecipientRole.PARK_ANGEL, Decimal('40')),
            )
        )
    return RevenueShareConfig(
        owner_id=PLATFORM_CONFIG_OWNER,
        parking_type=parking_type,
        allocations=(
            RevenueAllocation(RecipientRole.OPERATOR, Decimal('70')),
            RevenueAllocation(RecipientRole.PARK_ANGEL, Decimal('30')),
        )
    )


class RevenueDistributor:
    """
    Splits a charge's post-VAT amount among recipients

    Every share but the last is rounded half-up; the last listed recipient
    takes the remainder, so shares always add up to the exact amount.
    """

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    @staticmethod
    def select_config(
        parking_type: ParkingType,
        operator_id: Optional[str],
        configs: Mapping[Tuple[str, ParkingType], RevenueShareConfig]
    ) -> RevenueShareConfig:
        """
        Hosted parking always uses the hosted split. Street and facility
        parking use the operator's split, then the platform's, then the
        built-in default.
        """
        if parking_type is ParkingType.HOSTED:
            owners = [HOSTED_CONFIG_OWNER]
        else:
            owners = [operator_id, PLATFORM_CONFIG_OWNER]
        for owner in owners:
            config = configs.get((owner, parking_type)) if owner else None
            if config is not None:
                return config
        return default_revenue_share_config(parking_type)

    def split(self, amount: int, config: RevenueShareConfig) -> List[Tuple[RecipientRole, int]]:
        allocations = config.allocations
        parts = [(a.role, percentage_of(amount, a.percentage)) for a in allocations[:-1]]
        remainder = amount - sum(part for _, part in parts)
        if (amount >= 0 and remainder < 0) or (amount < 0 and remainder > 0):
            raise DistributionError(
                f"Remainder {remainder} of {amount} cannot be assigned to {allocations[-1].role.value}"
            )
        parts.append((allocations[-1].role, remainder))
        return parts

    def distribute(
        self,
        record: ChargeRecord,
        config: RevenueShareConfig,
        recipients: Mapping[RecipientRole, Optional[str]],
        created_at: Optional[datetime] = None
    ) -> List[RevenueShare]:
        """One RevenueShare per allocation; raises DistributionError if the split is not exact"""
        if config.parking_type is not record.parking_type:
            raise DistributionError(
                f"Config for {config.parking_type.value} applied to {record.parking_type.value} charge",
                charge_record_id=record.record_id
            )
        amount = record.distributable_amount
        try:
            parts = self.split(amount, config)
        except DistributionError as e:
            e.charge_record_id = record.record_id
            raise

        created_at = created_at or record.created_at
        shares = []
        for role, part in parts:
            recipient_id = recipients.get(role)
            if not recipient_id:
                raise DistributionError(
                    f"No {role.value} recipient for charge {record.record_id}",
                    charge_record_id=record.record_id
                )
            shares.append(RevenueShare(
                share_id=str(uuid.uuid4()),
                charge_record_id=record.record_id,
                recipient_id=recipient_id,
                role=role,
                amount=part,
                created_at=created_at
            ))

        if sum(s.amount for s in shares) != amount:
            raise DistributionError(
                f"Shares of charge {record.record_id} do not add up to {amount}",
                charge_record_id=record.record_id
            )
        self._logger.debug(
            f"Distributed {amount} of charge {record.record_id}: "
            + ", ".join(f"{s.role.value}={s.amount}" for s in shares)
        )
        return shares
