# File: parkangel/application/charging_service.py
"""
Charging Application Service

This module implements the use case that turns a billable booking event
into an immutable charge and splits its revenue.

Pipeline for one event:
1. Resolve effective pricing for the spot from the hierarchy snapshot
2. Apply the best VIP free-access override, if any
3. Price the billable interval (time rules, holidays, occupancy)
4. Apply the single best verified discount
5. Apply VAT unless the discount exempts it
6. Record the charge, then distribute the post-VAT amount

Key Principles:
- Dependency Injection for every collaborator
- Idempotent per (booking_id, event_type)
- Eligibility problems never fail a booking; distribution problems never
  lose the charge
"""

from typing import Dict, List, Optional, Any, Callable, Protocol, Union, runtime_checkable
from datetime import datetime
from decimal import Decimal
import logging
import uuid

from ..config import EngineSettings
from ..domain.models import (
    BookingEvent, ChargeRecord, ChargeLine, ChargeLineKind, ChargeEventType,
    HierarchyNode, VIPAssignment, DiscountRule, EligibilityRecord,
    PricingConfig, RecipientRole, DomainEvent,
    PricingEngineError, EligibilityError, DistributionError, DuplicateChargeError,
    ChargeRecordedEvent, RevenueDistributedEvent, DistributionFailedEvent,
    EligibilityRejectedEvent
)
from ..domain.pricing import PricingResolver, RateCalculator
from ..domain.strategies import (
    VIPOverride, VIPOverrideResult, DiscountEngine, VATCalculator, RevenueDistributor
)
from ..infrastructure.repositories import UnitOfWork, InMemoryRevenueShareConfigRepository
from .dtos import ChargeBreakdownDTO, BookingEventDTO


BookingInput = Union[BookingEvent, BookingEventDTO, Dict[str, Any]]


# ============================================================================
# COLLABORATOR PROTOCOLS
# ============================================================================

@runtime_checkable
class HierarchyConfigStore(Protocol):
    """Read access to versioned hierarchy snapshots"""

    def get_node(self, node_id: str, as_of: Optional[datetime] = None) -> HierarchyNode:
        ...

    def get_chain(self, node_id: str, as_of: Optional[datetime] = None) -> List[HierarchyNode]:
        ...


@runtime_checkable
class VIPRegistry(Protocol):
    def get_active_assignments(self, user_id: str, at: datetime) -> List[VIPAssignment]:
        ...


@runtime_checkable
class DiscountRegistry(Protocol):
    def get_eligible_rules(self, user_id: str, operator_id: Optional[str]) -> List[DiscountRule]:
        ...

    def get_eligibility_records(self, user_id: str) -> List[EligibilityRecord]:
        ...


@runtime_checkable
class OccupancyProvider(Protocol):
    def get_occupancy(self, spot_id: str, at: datetime) -> Decimal:
        """Fraction of the location occupied, within [0, 1]"""
        ...


@runtime_checkable
class EventPublisher(Protocol):
    def publish_event(self, event: DomainEvent) -> Any:
        ...


# ============================================================================
# SERVICE EXCEPTIONS
# ============================================================================

class ChargingServiceError(PricingEngineError):
    """Base exception for charging service errors"""
    pass


class ChargeNotFoundError(ChargingServiceError):
    """Raised when a charge id is unknown"""

    def __init__(self, charge_id: str):
        self.charge_id = charge_id
        super().__init__(f"Charge {charge_id} not found")


# ============================================================================
# CHARGING SERVICE
# ============================================================================

class ChargingService:
    """
    Main application service for charging

    Use cases:
    1. compute_charge - price, record and distribute a billable event
    2. quote - price an event without recording it
    3. issue_correction - reverse a charge with a compensating record
    4. get_charge_breakdown - itemized view of a recorded charge
    """

    def __init__(
        self,
        hierarchy: HierarchyConfigStore,
        uow_factory: Callable[[], UnitOfWork],
        share_configs: InMemoryRevenueShareConfigRepository,
        system_default: Optional[PricingConfig] = None,
        vip_registry: Optional[VIPRegistry] = None,
        discount_registry: Optional[DiscountRegistry] = None,
        occupancy_provider: Optional[OccupancyProvider] = None,
        event_publisher: Optional[EventPublisher] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.settings = settings or EngineSettings()
        self._hierarchy = hierarchy
        self._uow_factory = uow_factory
        self._share_configs = share_configs
        self._vip_registry = vip_registry
        self._discount_registry = discount_registry
        self._occupancy = occupancy_provider
        self._events = event_publisher
        self._clock = clock

        self._resolver = PricingResolver(system_default or PricingConfig(
            base_rate=self.settings.DEFAULT_BASE_RATE,
            vat_rate=self.settings.DEFAULT_VAT_RATE
        ))
        self._calculator = RateCalculator()
        self._vip_override = VIPOverride()
        self._discount_engine = DiscountEngine()
        self._vat_calculator = VATCalculator()
        self._distributor = RevenueDistributor()

        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def resolver(self) -> PricingResolver:
        return self._resolver

    # ------------------------------------------------------------------
    # Use cases
    # ------------------------------------------------------------------

    def compute_charge(self, event: BookingInput) -> ChargeRecord:
        """
        Price, record and distribute one billable event

        Accepts the domain event, a BookingEventDTO or its raw payload; raw
        payloads are validated first. Charging the same (booking_id,
        event_type) again returns the record already on the ledger.
        """
        event = self._as_event(event)
        self.logger.info(f"Computing charge for booking {event.booking_id} ({event.event_type.value})")

        existing = self._find_charge(event.booking_id, event.event_type)
        if existing is not None:
            self.logger.info(f"Booking {event.booking_id} already charged as {existing.record_id}")
            return existing

        record, location = self._price(event)
        try:
            with self._uow_factory() as uow:
                uow.charges.add(record)
        except DuplicateChargeError:
            existing = self._find_charge(event.booking_id, event.event_type)
            if existing is None:
                raise
            self.logger.info(f"Concurrent charge for booking {event.booking_id} won; returning it")
            return existing

        self._publish(ChargeRecordedEvent(record))
        self._distribute(record, location)
        self.logger.info(
            f"Charged booking {event.booking_id}: subtotal {record.subtotal}, "
            f"VAT {record.vat_amount}, total {record.total_amount}"
        )
        return record

    def quote(self, event: BookingInput) -> ChargeRecord:
        """Price an event exactly as compute_charge would, without recording anything"""
        event = self._as_event(event)
        record, _ = self._price(event, publish_rejections=False)
        return record

    def issue_correction(self, charge_id: str, reason: str) -> ChargeRecord:
        """
        Reverse a charge with a compensating record of negated amounts

        The original's revenue shares are reversed one for one, so every
        recipient nets to zero whatever split is configured today. A charge
        is corrected at most once; asking again returns that correction.
        """
        if not reason:
            raise ValueError("A correction needs a reason")

        with self._uow_factory() as uow:
            original = uow.charges.get(charge_id)
        if original is None:
            raise ChargeNotFoundError(charge_id)

        correction = original.compensating(reason, created_at=self._clock())
        try:
            with self._uow_factory() as uow:
                uow.charges.add(correction)
        except DuplicateChargeError:
            with self._uow_factory() as uow:
                existing = uow.charges.find_correction(charge_id)
            if existing is None:
                raise
            self.logger.info(f"Charge {charge_id} already corrected by {existing.record_id}")
            return existing

        self.logger.info(f"Issued correction {correction.record_id} for charge {charge_id}: {reason}")
        self._publish(ChargeRecordedEvent(correction))
        self._reverse_shares(original, correction)
        return correction

    def get_charge_breakdown(self, charge_id: str) -> ChargeBreakdownDTO:
        with self._uow_factory() as uow:
            record = uow.charges.get(charge_id)
            if record is None:
                raise ChargeNotFoundError(charge_id)
            shares = uow.shares.find_by_charge(charge_id)
        return ChargeBreakdownDTO.from_record(record, shares, currency=self.settings.CURRENCY)

    def get_charges_for_booking(self, booking_id: str) -> List[ChargeRecord]:
        with self._uow_factory() as uow:
            return uow.charges.find_by_booking(booking_id)

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    @staticmethod
    def _as_event(event: BookingInput) -> BookingEvent:
        if isinstance(event, BookingEvent):
            return event
        if not isinstance(event, BookingEventDTO):
            event = BookingEventDTO.from_dict(event)
        return event.to_domain()

    def _find_charge(self, booking_id: str, event_type: ChargeEventType) -> Optional[ChargeRecord]:
        with self._uow_factory() as uow:
            records = uow.charges.find_by_booking(booking_id, event_type)
        return records[0] if records else None

    def _price(self, event: BookingEvent, publish_rejections: bool = True):
        chain = self._hierarchy.get_chain(event.spot_id, event.start)
        location = chain[-1]
        resolved = self._resolver.resolve(chain, event.start)
        pricing = resolved.pricing

        lines: List[ChargeLine] = []
        billable = (event.start, event.end)
        vip = self._evaluate_vip(event, publish_rejections)
        if vip is not None:
            lines.append(ChargeLine(
                start=vip.free_start,
                end=vip.free_end,
                kind=ChargeLineKind.VIP_FREE,
                hourly_rate=0,
                amount=0,
                rule_name=vip.assignment.vip_type.value
            ))
            billable = vip.billable_interval

        if billable is not None:
            occupancy = self._occupancy.get_occupancy(event.spot_id, event.start) if self._occupancy \
                else Decimal('0')
            lines.extend(self._calculator.calculate(
                pricing, billable[0], billable[1], event.vehicle_type, occupancy
            ))
        subtotal = sum(line.amount for line in lines)

        rules: List[DiscountRule] = []
        records: List[EligibilityRecord] = []
        if self._discount_registry is not None:
            rules = self._discount_registry.get_eligible_rules(event.user_id, location.operator_id)
            records = self._discount_registry.get_eligibility_records(event.user_id)
        discount = self._discount_engine.apply(
            subtotal, rules, records, location.operator_id, event.start,
            claimed=event.claimed_discount, user_id=event.user_id
        )
        if publish_rejections:
            for error in discount.rejected_claims:
                self._audit_rejection(event, error)

        vat = self._vat_calculator.calculate(discount.discounted_amount, pricing.vat_rate, discount.is_vat_exempt)

        record = ChargeRecord(
            record_id=str(uuid.uuid4()),
            booking_id=event.booking_id,
            event_type=event.event_type,
            spot_id=event.spot_id,
            user_id=event.user_id,
            operator_id=location.operator_id,
            parking_type=location.parking_type,
            lines=tuple(lines),
            subtotal=subtotal,
            discounted_amount=discount.discounted_amount,
            vat_rate=pricing.vat_rate,
            vat_amount=vat.vat_amount,
            total_amount=vat.total_amount,
            discount=discount.applied,
            vip_assignment_id=vip.assignment.assignment_id if vip else None,
            pricing_snapshot=resolved.to_dict(),
            created_at=self._clock()
        )
        return record, location

    def _evaluate_vip(self, event: BookingEvent, publish_rejections: bool) -> Optional[VIPOverrideResult]:
        if self._vip_registry is None:
            return None
        assignments = self._vip_registry.get_active_assignments(event.user_id, event.start)
        try:
            return self._vip_override.evaluate(assignments, event.spot_id, event.start, event.end)
        except EligibilityError as e:
            self.logger.warning(f"VIP claim rejected for booking {event.booking_id}, charging full rate: {e}")
            if publish_rejections:
                self._audit_rejection(event, e)
            return None

    def _audit_rejection(self, event: BookingEvent, error: EligibilityError) -> None:
        self._publish(EligibilityRejectedEvent(
            user_id=event.user_id,
            claim=error.claim or "unknown",
            reason=str(error),
            booking_id=event.booking_id
        ))

    def _recipients(self, location: HierarchyNode) -> Dict[RecipientRole, Optional[str]]:
        return {
            RecipientRole.PARK_ANGEL: self.settings.PARK_ANGEL_RECIPIENT_ID,
            RecipientRole.OPERATOR: location.operator_id,
            RecipientRole.HOST: location.host_id,
        }

    def _distribute(self, record: ChargeRecord, location: HierarchyNode) -> list:
        """Split and store the revenue; a failure leaves the charge in place for manual review"""
        config = self._distributor.select_config(
            record.parking_type, record.operator_id, self._share_configs.as_mapping()
        )
        try:
            shares = self._distributor.distribute(record, config, self._recipients(location))
        except DistributionError as e:
            self.logger.error(f"Revenue distribution failed for charge {record.record_id}: {e}")
            self._publish(DistributionFailedEvent(record.record_id, str(e)))
            return []

        with self._uow_factory() as uow:
            uow.shares.add_all(shares)
        self._publish(RevenueDistributedEvent(record.record_id, shares))
        return shares

    def _reverse_shares(self, original: ChargeRecord, correction: ChargeRecord) -> list:
        with self._uow_factory() as uow:
            original_shares = uow.shares.find_by_charge(original.record_id)
        if not original_shares:
            # original distribution failed; split the correction as the original would have been
            as_of = original.lines[0].start if original.lines else None
            location = self._hierarchy.get_chain(original.spot_id, as_of)[-1]
            return self._distribute(correction, location)

        shares = [share.reversed_for(correction.record_id, correction.created_at) for share in original_shares]
        with self._uow_factory() as uow:
            uow.shares.add_all(shares)
        self._publish(RevenueDistributedEvent(correction.record_id, shares))
        return shares

    def _publish(self, event: DomainEvent) -> None:
        if self._events is not None:
            self._events.publish_event(event)
