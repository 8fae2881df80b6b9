# File: parkangel/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Pricing and Revenue Engine

Pydantic models at the edge of the application layer:
1. Input DTOs - Booking events and admin configuration payloads
2. Output DTOs - Charge breakdowns, revenue shares, remittances, earnings

Money and rates never arrive as floats; inputs are refused at validation
time. Each DTO converts to or from its domain object and holds no rules.
"""

from typing import Dict, List, Optional, Any
from datetime import datetime, date, time
from decimal import Decimal
import json

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from ..domain.models import (
    BookingEvent, ChargeRecord, ChargeEventType, DiscountKind, VehicleType,
    ParkingType, RecipientRole, DayKind, ConditionOperator, RevenueShare,
    EarningsSummary, PricingConfig, VehicleTypeRate, TimeBasedRate, HolidayRate,
    OccupancyCurve, OccupancyStep, RevenueShareConfig, RevenueAllocation,
    DiscountRule, SeniorCitizenEligibility, PWDEligibility, CustomEligibility,
    format_minor_units
)
from ..domain.aggregates import Remittance


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Shared pydantic configuration and plain dict/JSON conversion"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        use_enum_values=True
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        return self.model_dump(exclude_none=exclude_none, **kwargs)

    def to_json(self, **kwargs) -> str:
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'BaseDTO':
        return cls.model_validate(payload)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        return cls.model_validate(json.loads(json_str))


def _reject_float(value: Any) -> Any:
    if isinstance(value, float):
        raise ValueError("floating point values are not accepted; use an integer or decimal string")
    return value


# ============================================================================
# BOOKING INPUT
# ============================================================================

class BookingEventDTO(BaseDTO):
    """A billable booking event as received from the booking system"""
    booking_id: str = Field(min_length=1, description="Booking ID")
    spot_id: str = Field(min_length=1, description="Spot the session used")
    user_id: str = Field(min_length=1, description="User charged")
    vehicle_type: VehicleType = Field(description="Vehicle type")
    start: datetime = Field(description="Session start")
    end: datetime = Field(description="Session end")
    event_type: ChargeEventType = Field(default=ChargeEventType.SESSION_END, description="Billable event")
    claimed_discount: Optional[DiscountKind] = Field(default=None, description="Discount the user claims")

    @field_validator('event_type')
    @classmethod
    def validate_event_type(cls, v):
        if ChargeEventType(v) is ChargeEventType.CORRECTION:
            raise ValueError("Corrections are issued against existing charges")
        return v

    @model_validator(mode='after')
    def validate_interval(self):
        if self.end <= self.start:
            raise ValueError("Session end must be after start")
        return self

    def to_domain(self) -> BookingEvent:
        return BookingEvent(
            booking_id=self.booking_id,
            spot_id=self.spot_id,
            user_id=self.user_id,
            vehicle_type=VehicleType(self.vehicle_type),
            start=self.start,
            end=self.end,
            event_type=ChargeEventType(self.event_type),
            claimed_discount=DiscountKind(self.claimed_discount) if self.claimed_discount else None
        )


# ============================================================================
# CHARGE OUTPUT
# ============================================================================

class ChargeLineDTO(BaseDTO):
    start: datetime
    end: datetime
    kind: str
    hourly_rate: int
    rule_name: Optional[str] = None
    occupancy_multiplier: str
    amount: int
    formatted_amount: str


class AppliedDiscountDTO(BaseDTO):
    rule_id: str
    name: str
    percentage: str
    amount_saved: int
    is_vat_exempt: bool


class RevenueShareDTO(BaseDTO):
    """DTO for one recipient's share of a charge"""
    share_id: str
    charge_record_id: str
    recipient_id: str
    role: RecipientRole
    amount: int
    created_at: datetime
    claimed_by: Optional[str] = None

    @classmethod
    def from_domain(cls, share: RevenueShare) -> 'RevenueShareDTO':
        return cls(
            share_id=share.share_id,
            charge_record_id=share.charge_record_id,
            recipient_id=share.recipient_id,
            role=share.role,
            amount=share.amount,
            created_at=share.created_at,
            claimed_by=share.claimed_by
        )


class ChargeBreakdownDTO(BaseDTO):
    """
    Itemized view of one charge: lines, discount, VAT, distributable amount,
    where each pricing field came from, and how the money was split
    """
    record_id: str
    booking_id: str
    event_type: str
    spot_id: str
    user_id: str
    currency: str
    lines: List[ChargeLineDTO]
    subtotal: int
    discount: Optional[AppliedDiscountDTO] = None
    discounted_amount: int
    vat_rate: str
    vat_amount: int
    total_amount: int
    distributable_amount: int
    formatted_total: str
    vip_assignment_id: Optional[str] = None
    compensates: Optional[str] = None
    reason: Optional[str] = None
    provenance: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    shares: List[RevenueShareDTO] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_record(
        cls,
        record: ChargeRecord,
        shares: List[RevenueShare],
        currency: str = "PHP"
    ) -> 'ChargeBreakdownDTO':
        return cls(
            record_id=record.record_id,
            booking_id=record.booking_id,
            event_type=record.event_type.value,
            spot_id=record.spot_id,
            user_id=record.user_id,
            currency=currency,
            lines=[
                ChargeLineDTO(
                    start=line.start,
                    end=line.end,
                    kind=line.kind.value,
                    hourly_rate=line.hourly_rate,
                    rule_name=line.rule_name,
                    occupancy_multiplier=str(line.occupancy_multiplier),
                    amount=line.amount,
                    formatted_amount=format_minor_units(line.amount, currency)
                )
                for line in record.lines
            ],
            subtotal=record.subtotal,
            discount=AppliedDiscountDTO(**record.discount.to_dict()) if record.discount else None,
            discounted_amount=record.discounted_amount,
            vat_rate=str(record.vat_rate),
            vat_amount=record.vat_amount,
            total_amount=record.total_amount,
            distributable_amount=record.distributable_amount,
            formatted_total=format_minor_units(record.total_amount, currency),
            vip_assignment_id=record.vip_assignment_id,
            compensates=record.compensates,
            reason=record.reason,
            provenance=dict(record.pricing_snapshot.get('provenance', {})),
            shares=[RevenueShareDTO.from_domain(s) for s in shares],
            created_at=record.created_at
        )


# ============================================================================
# REMITTANCE OUTPUT
# ============================================================================

class RemittanceDTO(BaseDTO):
    id: str
    recipient_id: str
    period_start: datetime
    period_end: datetime
    status: str
    total_share: int
    previously_reserved: int
    payable: int
    share_ids: List[str]
    transfer_id: Optional[str] = None
    attempts: int
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, remittance: Remittance) -> 'RemittanceDTO':
        return cls(
            id=remittance.id,
            recipient_id=remittance.recipient_id,
            period_start=remittance.period_start,
            period_end=remittance.period_end,
            status=remittance.status.value,
            total_share=remittance.total_share,
            previously_reserved=remittance.previously_reserved,
            payable=remittance.payable,
            share_ids=list(remittance.share_ids),
            transfer_id=remittance.transfer_id,
            attempts=remittance.attempts,
            last_error=remittance.last_error,
            created_at=remittance.created_at,
            updated_at=remittance.updated_at
        )


class EarningsSummaryDTO(BaseDTO):
    recipient_id: str
    period_start: datetime
    period_end: datetime
    total_amount: int
    remitted_amount: int
    outstanding_amount: int
    share_count: int
    formatted_total: str

    @classmethod
    def from_domain(cls, summary: EarningsSummary, currency: str = "PHP") -> 'EarningsSummaryDTO':
        return cls(
            recipient_id=summary.recipient_id,
            period_start=summary.period_start,
            period_end=summary.period_end,
            total_amount=summary.total_amount,
            remitted_amount=summary.remitted_amount,
            outstanding_amount=summary.outstanding_amount,
            share_count=summary.share_count,
            formatted_total=format_minor_units(summary.total_amount, currency)
        )


# ============================================================================
# ADMIN CONFIGURATION INPUT
# ============================================================================

class RateAdjustmentDTO(BaseDTO):
    """Either an absolute hourly rate or a multiplier"""
    rate: Optional[int] = Field(default=None, ge=0, description="Hourly rate in minor units")
    multiplier: Optional[Decimal] = Field(default=None, ge=0, description="Multiplier of the base rate")

    @field_validator('rate', 'multiplier', mode='before')
    @classmethod
    def validate_exact(cls, v):
        return _reject_float(v)

    @model_validator(mode='after')
    def validate_one_of(self):
        if (self.rate is None) == (self.multiplier is None):
            raise ValueError("Exactly one of rate or multiplier must be set")
        return self


class VehicleTypeRateDTO(RateAdjustmentDTO):
    vehicle_type: VehicleType

    def to_domain(self) -> VehicleTypeRate:
        return VehicleTypeRate(VehicleType(self.vehicle_type), rate=self.rate, multiplier=self.multiplier)


class TimeBasedRateDTO(RateAdjustmentDTO):
    name: str = Field(min_length=1)
    day_kind: DayKind = DayKind.ANY
    days: List[int] = Field(default_factory=list, description="Weekday numbers, Monday=0")
    start_time: Optional[time] = None
    end_time: Optional[time] = None

    def to_domain(self) -> TimeBasedRate:
        return TimeBasedRate(
            name=self.name,
            multiplier=self.multiplier,
            rate=self.rate,
            day_kind=DayKind(self.day_kind),
            days=frozenset(self.days),
            start_time=self.start_time,
            end_time=self.end_time
        )


class HolidayRateDTO(RateAdjustmentDTO):
    name: str = Field(min_length=1)
    holiday_date: date
    recurring: bool = False

    def to_domain(self) -> HolidayRate:
        return HolidayRate(
            name=self.name,
            holiday_date=self.holiday_date,
            recurring=self.recurring,
            multiplier=self.multiplier,
            rate=self.rate
        )


class OccupancyStepDTO(BaseDTO):
    threshold: Decimal = Field(ge=0, le=1)
    multiplier: Decimal = Field(ge=0)

    @field_validator('threshold', 'multiplier', mode='before')
    @classmethod
    def validate_exact(cls, v):
        return _reject_float(v)


class PricingConfigDTO(BaseDTO):
    """
    Pricing overrides for one hierarchy node. Omitted fields inherit; an
    empty list is an explicit override.
    """
    base_rate: Optional[int] = Field(default=None, ge=0, description="Hourly rate in minor units")
    vehicle_type_rates: Optional[List[VehicleTypeRateDTO]] = None
    time_based_rates: Optional[List[TimeBasedRateDTO]] = None
    holiday_rates: Optional[List[HolidayRateDTO]] = None
    occupancy_curve: Optional[List[OccupancyStepDTO]] = None
    vat_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)

    @field_validator('base_rate', 'vat_rate', mode='before')
    @classmethod
    def validate_exact(cls, v):
        return _reject_float(v)

    def to_domain(self) -> PricingConfig:
        return PricingConfig(
            base_rate=self.base_rate,
            vehicle_type_rates=_to_domain_list(self.vehicle_type_rates),
            time_based_rates=_to_domain_list(self.time_based_rates),
            holiday_rates=_to_domain_list(self.holiday_rates),
            occupancy_curve=OccupancyCurve(tuple(
                OccupancyStep(step.threshold, step.multiplier) for step in self.occupancy_curve
            )) if self.occupancy_curve is not None else None,
            vat_rate=self.vat_rate
        )


def _to_domain_list(items):
    if items is None:
        return None
    return tuple(item.to_domain() for item in items)


class RevenueAllocationDTO(BaseDTO):
    role: RecipientRole
    percentage: Decimal = Field(ge=0, le=100)

    @field_validator('percentage', mode='before')
    @classmethod
    def validate_exact(cls, v):
        return _reject_float(v)


class RevenueShareConfigDTO(BaseDTO):
    """Revenue split for one owner and parking type; order decides who absorbs rounding"""
    owner_id: str = Field(min_length=1)
    parking_type: ParkingType
    allocations: List[RevenueAllocationDTO] = Field(min_length=1)

    def to_domain(self) -> RevenueShareConfig:
        return RevenueShareConfig(
            owner_id=self.owner_id,
            parking_type=ParkingType(self.parking_type),
            allocations=tuple(
                RevenueAllocation(RecipientRole(a.role), a.percentage) for a in self.allocations
            )
        )


class DiscountRuleDTO(BaseDTO):
    """
    Admin payload for a discount rule. eligibility_kind picks the predicate:
    senior_citizen uses min_age, custom uses field_name/operator/value.
    """
    rule_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    percentage: Decimal = Field(gt=0, le=100)
    eligibility_kind: DiscountKind
    is_vat_exempt: bool = False
    operator_id: Optional[str] = None
    is_active: bool = True
    min_age: int = Field(default=60, gt=0)
    field_name: Optional[str] = None
    operator: Optional[ConditionOperator] = None
    value: Any = None

    @field_validator('percentage', mode='before')
    @classmethod
    def validate_exact(cls, v):
        return _reject_float(v)

    @model_validator(mode='after')
    def validate_custom(self):
        if DiscountKind(self.eligibility_kind) is DiscountKind.CUSTOM:
            if not self.field_name or self.operator is None:
                raise ValueError("Custom discounts need field_name and operator")
        return self

    def to_domain(self) -> DiscountRule:
        kind = DiscountKind(self.eligibility_kind)
        if kind is DiscountKind.SENIOR_CITIZEN:
            eligibility = SeniorCitizenEligibility(min_age=self.min_age)
        elif kind is DiscountKind.PWD:
            eligibility = PWDEligibility()
        else:
            eligibility = CustomEligibility(
                field_name=self.field_name,
                operator=ConditionOperator(self.operator),
                value=self.value
            )
        return DiscountRule(
            rule_id=self.rule_id,
            name=self.name,
            percentage=self.percentage,
            eligibility=eligibility,
            is_vat_exempt=self.is_vat_exempt,
            operator_id=self.operator_id,
            is_active=self.is_active
        )
