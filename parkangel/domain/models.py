# File: parkangel/domain/models.py
"""
Domain Models for the Park Angel Pricing and Revenue Engine
Following Domain-Driven Design (DDD) principles with rich domain models

This module contains:
1. Domain Errors: The engine's exception hierarchy
2. Money Arithmetic: Exact integer minor-unit helpers (no floating point)
3. Enums: Type enumerations for domain concepts
4. Value Objects: Immutable pricing rules, hierarchy snapshots, ledger rows
5. Domain Events: Events representing business occurrences

All amounts are integers in minor currency units (centavos). Multipliers,
percentages and VAT rates are Decimals. Every intermediate product is an
exact Fraction and is rounded half-up exactly once.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Optional, List, Dict, Any, Tuple, FrozenSet, Union
from datetime import datetime, date, time, timedelta
from decimal import Decimal, InvalidOperation
from fractions import Fraction
from enum import Enum
import calendar
import math
import uuid


# ============================================================================
# DOMAIN ERRORS
# ============================================================================

class PricingEngineError(Exception):
    """Base exception for the pricing and revenue engine"""
    pass


class ConfigurationError(PricingEngineError):
    """Raised when pricing or revenue configuration is missing or malformed"""

    def __init__(self, message: str, field_path: Optional[str] = None):
        self.field_path = field_path
        if field_path:
            message = f"{field_path}: {message}"
        super().__init__(message)


class EligibilityError(PricingEngineError):
    """Raised when a discount or VIP claim has no verified record behind it"""

    def __init__(self, message: str, user_id: Optional[str] = None, claim: Optional[str] = None):
        self.user_id = user_id
        self.claim = claim
        super().__init__(message)


class DistributionError(PricingEngineError):
    """Raised when a charge's distributable amount cannot be split exactly"""

    def __init__(self, message: str, charge_record_id: Optional[str] = None):
        self.charge_record_id = charge_record_id
        super().__init__(message)


class RemittanceTransferError(PricingEngineError):
    """Raised by bank transfer gateways when a payout fails"""

    def __init__(self, message: str, recipient_id: Optional[str] = None):
        self.recipient_id = recipient_id
        super().__init__(message)


class RemittanceStateError(PricingEngineError):
    """Raised on an invalid remittance status transition"""
    pass


class DuplicateChargeError(PricingEngineError):
    """Raised when a billable event has already been charged"""

    def __init__(self, booking_id: str, event_type: 'ChargeEventType'):
        self.booking_id = booking_id
        self.event_type = event_type
        super().__init__(f"Charge already recorded for booking {booking_id} ({event_type.value})")


# ============================================================================
# MONEY ARITHMETIC
# ============================================================================

Numeric = Union[int, Decimal, Fraction]


def to_fraction(value: Numeric) -> Fraction:
    """Convert an exact numeric value to a Fraction, rejecting floats"""
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Monetary arithmetic does not accept {type(value).__name__}: {value!r}")
    if isinstance(value, Fraction):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"Non-finite decimal: {value}")
        return Fraction(value)
    if isinstance(value, int):
        return Fraction(value)
    raise TypeError(f"Unsupported numeric type: {type(value).__name__}")


def round_half_up(value: Numeric) -> int:
    """
    Round to the nearest integer, ties away from zero

    round_half_up(Fraction(5, 2)) == 3, round_half_up(Fraction(-5, 2)) == -3
    """
    exact = to_fraction(value)
    half = Fraction(1, 2)
    if exact >= 0:
        return math.floor(exact + half)
    return -math.floor(-exact + half)


def percentage_of(amount: int, percentage: Numeric) -> int:
    """Rounded share of an integer amount; percentage is 0-100"""
    return round_half_up(to_fraction(amount) * to_fraction(percentage) / 100)


def format_minor_units(amount: int, currency: str = "PHP") -> str:
    """Format minor units for display, e.g. 123456 -> 'PHP 1,234.56'"""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), 100)
    return f"{sign}{currency} {major:,}.{minor:02d}"


def _require_amount(value: Any, path: str, allow_negative: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"must be an integer amount in minor units, got {value!r}", path)
    if value < 0 and not allow_negative:
        raise ConfigurationError(f"cannot be negative: {value}", path)


def _require_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise ConfigurationError(f"must be an exact decimal, got {value!r}", path)
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        try:
            value = Decimal(value)
        except InvalidOperation:
            raise ConfigurationError(f"not a decimal number: {value!r}", path)
    if not isinstance(value, Decimal) or not value.is_finite():
        raise ConfigurationError(f"must be a finite Decimal, got {value!r}", path)
    return value


# ============================================================================
# ENUMS FOR DOMAIN TYPES
# ============================================================================

class HierarchyLevel(Enum):
    """Levels of the location tree, ordered from the root down"""
    LOCATION = "location"
    SECTION = "section"
    ZONE = "zone"
    SPOT = "spot"

    @property
    def depth(self) -> int:
        return _LEVEL_DEPTH[self]

    def __str__(self) -> str:
        return self.value.title()


_LEVEL_DEPTH = {
    HierarchyLevel.LOCATION: 0,
    HierarchyLevel.SECTION: 1,
    HierarchyLevel.ZONE: 2,
    HierarchyLevel.SPOT: 3,
}


class ParkingType(Enum):
    """Kind of parking a Location offers; decides the revenue split"""
    STREET = "street"
    FACILITY = "facility"
    HOSTED = "hosted"


class VehicleType(Enum):
    """Vehicle types with their own configurable rates"""
    CAR = "car"
    MOTORCYCLE = "motorcycle"
    SUV = "suv"
    TRUCK = "truck"
    VAN = "van"
    BUS = "bus"

    def __str__(self) -> str:
        return "SUV" if self is VehicleType.SUV else self.value.title()


class DayKind(Enum):
    """Day filter for time-based rates"""
    ANY = "any"
    WEEKDAY = "weekday"
    WEEKEND = "weekend"

    def matches(self, day: date) -> bool:
        if self is DayKind.WEEKDAY:
            return day.weekday() < 5
        if self is DayKind.WEEKEND:
            return day.weekday() >= 5
        return True


class DiscountKind(Enum):
    """Kinds of verified eligibility a user can hold"""
    SENIOR_CITIZEN = "senior_citizen"
    PWD = "pwd"
    CUSTOM = "custom"


class ConditionOperator(Enum):
    """Comparison operators for custom discount conditions"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"

    @property
    def is_ordering(self) -> bool:
        return self in (
            ConditionOperator.GREATER_THAN,
            ConditionOperator.GREATER_THAN_OR_EQUAL,
            ConditionOperator.LESS_THAN,
            ConditionOperator.LESS_THAN_OR_EQUAL,
        )

    def evaluate(self, actual: Any, expected: Any) -> bool:
        """Evaluate 'actual <operator> expected'; missing values never match"""
        if actual is None:
            return False
        if self is ConditionOperator.EQUALS:
            return actual == expected
        if self is ConditionOperator.NOT_EQUALS:
            return actual != expected
        if self is ConditionOperator.CONTAINS:
            return str(expected).lower() in str(actual).lower()
        if self is ConditionOperator.NOT_CONTAINS:
            return str(expected).lower() not in str(actual).lower()
        try:
            if self is ConditionOperator.GREATER_THAN:
                return actual > expected
            if self is ConditionOperator.GREATER_THAN_OR_EQUAL:
                return actual >= expected
            if self is ConditionOperator.LESS_THAN:
                return actual < expected
            return actual <= expected
        except TypeError:
            return False


class VIPType(Enum):
    """
    VIP access tiers
    Rank orders them from most to least permissive
    """
    VVIP = "vvip"
    FLEX_VVIP = "flex_vvip"
    VIP = "vip"
    FLEX_VIP = "flex_vip"

    @property
    def rank(self) -> int:
        return _VIP_RANK[self]

    @property
    def is_flex(self) -> bool:
        return self in (VIPType.FLEX_VVIP, VIPType.FLEX_VIP)

    @property
    def is_spot_scoped(self) -> bool:
        return self in (VIPType.VIP, VIPType.FLEX_VIP)


_VIP_RANK = {
    VIPType.VVIP: 4,
    VIPType.FLEX_VVIP: 3,
    VIPType.VIP: 2,
    VIPType.FLEX_VIP: 1,
}


class RecipientRole(Enum):
    """Parties that receive a share of parking revenue"""
    PARK_ANGEL = "park_angel"
    OPERATOR = "operator"
    HOST = "host"


class ChargeEventType(Enum):
    """Billable events; one charge per booking and event type"""
    SESSION_END = "session_end"
    EXTENSION = "extension"
    CORRECTION = "correction"


class ChargeLineKind(Enum):
    RATE = "rate"
    VIP_FREE = "vip_free"


class RemittanceStatus(Enum):
    """Remittance lifecycle states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"

    def can_transition_to(self, target: 'RemittanceStatus') -> bool:
        return target in _REMITTANCE_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _REMITTANCE_TRANSITIONS[self]


_REMITTANCE_TRANSITIONS = {
    RemittanceStatus.PENDING: frozenset({RemittanceStatus.PROCESSING}),
    RemittanceStatus.PROCESSING: frozenset({RemittanceStatus.COMPLETED, RemittanceStatus.FAILED}),
    RemittanceStatus.FAILED: frozenset({RemittanceStatus.PENDING, RemittanceStatus.ESCALATED}),
    RemittanceStatus.COMPLETED: frozenset(),
    RemittanceStatus.ESCALATED: frozenset(),
}


class RemittanceFrequency(Enum):
    """How often a recipient is paid out"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


# ============================================================================
# PRICING VALUE OBJECTS
# ============================================================================

def _validate_adjustment(rate: Optional[int], multiplier: Optional[Decimal], path: str) -> Optional[Decimal]:
    """A rate adjustment is either an absolute hourly rate or a multiplier, never both"""
    if (rate is None) == (multiplier is None):
        raise ConfigurationError("exactly one of rate or multiplier must be set", path)
    if rate is not None:
        _require_amount(rate, f"{path}.rate")
        return None
    multiplier = _require_decimal(multiplier, f"{path}.multiplier")
    if multiplier < 0:
        raise ConfigurationError(f"multiplier cannot be negative: {multiplier}", f"{path}.multiplier")
    return multiplier


def _apply_adjustment(hourly: Fraction, rate: Optional[int], multiplier: Optional[Decimal]) -> Fraction:
    if rate is not None:
        return Fraction(rate)
    return hourly * to_fraction(multiplier)


@dataclass(frozen=True)
class VehicleTypeRate:
    """
    Value Object: Per-vehicle-type rate
    Either replaces the base hourly rate or scales it
    """
    vehicle_type: VehicleType
    rate: Optional[int] = None
    multiplier: Optional[Decimal] = None

    def __post_init__(self):
        if not isinstance(self.vehicle_type, VehicleType):
            raise ConfigurationError(f"unknown vehicle type {self.vehicle_type!r}", "vehicle_type_rates")
        multiplier = _validate_adjustment(
            self.rate, self.multiplier, f"vehicle_type_rates.{self.vehicle_type.value}"
        )
        object.__setattr__(self, 'multiplier', multiplier)

    def apply(self, hourly: Fraction) -> Fraction:
        return _apply_adjustment(hourly, self.rate, self.multiplier)


@dataclass(frozen=True)
class TimeBasedRate:
    """
    Value Object: Rate adjustment for a day filter and/or an hour range

    The hour range is half-open [start_time, end_time) and may wrap past
    midnight (22:00-06:00). An explicit set of weekdays (Monday=0) takes
    precedence over day_kind.
    """
    name: str
    multiplier: Optional[Decimal] = None
    rate: Optional[int] = None
    day_kind: DayKind = DayKind.ANY
    days: FrozenSet[int] = frozenset()
    start_time: Optional[time] = None
    end_time: Optional[time] = None

    def __post_init__(self):
        path = f"time_based_rates.{self.name or '?'}"
        if not self.name:
            raise ConfigurationError("name is required", path)
        multiplier = _validate_adjustment(self.rate, self.multiplier, path)
        object.__setattr__(self, 'multiplier', multiplier)
        object.__setattr__(self, 'days', frozenset(self.days))

        if not isinstance(self.day_kind, DayKind):
            raise ConfigurationError(f"unknown day kind {self.day_kind!r}", f"{path}.day_kind")
        if any(not isinstance(d, int) or not 0 <= d <= 6 for d in self.days):
            raise ConfigurationError(f"days must be weekday numbers 0-6: {sorted(self.days)}", f"{path}.days")
        if (self.start_time is None) != (self.end_time is None):
            raise ConfigurationError("start_time and end_time must be set together", path)
        if self.start_time is not None and self.start_time == self.end_time:
            raise ConfigurationError("hour range cannot be empty", f"{path}.end_time")

    @property
    def has_hour_range(self) -> bool:
        return self.start_time is not None

    @property
    def has_day_filter(self) -> bool:
        return bool(self.days) or self.day_kind is not DayKind.ANY

    def range_minutes(self) -> int:
        """Length of the hour range in minutes (1440 when unbounded)"""
        if not self.has_hour_range:
            return 24 * 60
        start = self.start_time.hour * 60 + self.start_time.minute
        end = self.end_time.hour * 60 + self.end_time.minute
        return (end - start) % (24 * 60)

    @property
    def specificity(self) -> Tuple[int, int]:
        """Hour-range rules beat day-filter rules beat default rules; narrower ranges win ties"""
        if self.has_hour_range:
            tier = 2
        elif self.has_day_filter:
            tier = 1
        else:
            tier = 0
        return (tier, -self.range_minutes())

    def matches(self, moment: datetime) -> bool:
        day = moment.date()
        if self.days:
            if day.weekday() not in self.days:
                return False
        elif not self.day_kind.matches(day):
            return False

        if not self.has_hour_range:
            return True
        t = moment.time()
        if self.start_time < self.end_time:
            return self.start_time <= t < self.end_time
        return t >= self.start_time or t < self.end_time

    def boundaries(self) -> List[time]:
        if not self.has_hour_range:
            return []
        return [self.start_time, self.end_time]

    def apply(self, hourly: Fraction) -> Fraction:
        return _apply_adjustment(hourly, self.rate, self.multiplier)


@dataclass(frozen=True)
class HolidayRate:
    """Value Object: Holiday rate; recurring holidays match month and day every year"""
    name: str
    holiday_date: date
    recurring: bool = False
    multiplier: Optional[Decimal] = None
    rate: Optional[int] = None

    def __post_init__(self):
        path = f"holiday_rates.{self.name or '?'}"
        if not self.name:
            raise ConfigurationError("name is required", path)
        if not isinstance(self.holiday_date, date) or isinstance(self.holiday_date, datetime):
            raise ConfigurationError(f"holiday_date must be a date, got {self.holiday_date!r}", path)
        multiplier = _validate_adjustment(self.rate, self.multiplier, path)
        object.__setattr__(self, 'multiplier', multiplier)

    def matches(self, day: date) -> bool:
        if self.recurring:
            return (day.month, day.day) == (self.holiday_date.month, self.holiday_date.day)
        return day == self.holiday_date

    def apply(self, hourly: Fraction) -> Fraction:
        return _apply_adjustment(hourly, self.rate, self.multiplier)


@dataclass(frozen=True)
class OccupancyStep:
    """One step of the occupancy curve: applies from threshold (inclusive) upwards"""
    threshold: Decimal
    multiplier: Decimal

    def __post_init__(self):
        threshold = _require_decimal(self.threshold, "occupancy_curve.threshold")
        multiplier = _require_decimal(self.multiplier, "occupancy_curve.multiplier")
        if not Decimal('0') <= threshold <= Decimal('1'):
            raise ConfigurationError(f"threshold must be within [0, 1]: {threshold}", "occupancy_curve.threshold")
        if multiplier < 0:
            raise ConfigurationError(f"multiplier cannot be negative: {multiplier}", "occupancy_curve.multiplier")
        object.__setattr__(self, 'threshold', threshold)
        object.__setattr__(self, 'multiplier', multiplier)


@dataclass(frozen=True)
class OccupancyCurve:
    """
    Value Object: Stepwise occupancy multiplier
    The multiplier is that of the highest threshold not above the observed
    occupancy; below the first threshold it is 1.
    """
    steps: Tuple[OccupancyStep, ...] = ()

    def __post_init__(self):
        steps = tuple(self.steps)
        thresholds = [s.threshold for s in steps]
        if thresholds != sorted(set(thresholds)):
            raise ConfigurationError("thresholds must be strictly ascending", "occupancy_curve.steps")
        object.__setattr__(self, 'steps', steps)

    def multiplier_for(self, occupancy: Decimal) -> Decimal:
        multiplier = Decimal('1')
        for step in self.steps:
            if occupancy >= step.threshold:
                multiplier = step.multiplier
            else:
                break
        return multiplier

    @classmethod
    def flat(cls) -> 'OccupancyCurve':
        return cls(())

    @classmethod
    def demand_based(cls) -> 'OccupancyCurve':
        """Standard demand curve: cheaper when empty, up to 1.5x when nearly full"""
        return cls((
            OccupancyStep(Decimal('0'), Decimal('0.9')),
            OccupancyStep(Decimal('0.26'), Decimal('1.0')),
            OccupancyStep(Decimal('0.5'), Decimal('1.1')),
            OccupancyStep(Decimal('0.75'), Decimal('1.25')),
            OccupancyStep(Decimal('0.9'), Decimal('1.5')),
        ))


PRICING_FIELDS: Tuple[str, ...] = (
    'base_rate',
    'vehicle_type_rates',
    'time_based_rates',
    'holiday_rates',
    'occupancy_curve',
    'vat_rate',
)

REQUIRED_PRICING_FIELDS: Tuple[str, ...] = ('base_rate', 'vat_rate')


@dataclass(frozen=True)
class PricingConfig:
    """
    Value Object: Pricing overrides at one hierarchy level

    Every field is independently optional. None means "not set here, inherit";
    an empty tuple is an explicit override that clears the rules below it.
    """
    base_rate: Optional[int] = None
    vehicle_type_rates: Optional[Tuple[VehicleTypeRate, ...]] = None
    time_based_rates: Optional[Tuple[TimeBasedRate, ...]] = None
    holiday_rates: Optional[Tuple[HolidayRate, ...]] = None
    occupancy_curve: Optional[OccupancyCurve] = None
    vat_rate: Optional[Decimal] = None

    def __post_init__(self):
        if self.base_rate is not None:
            _require_amount(self.base_rate, "pricing.base_rate")

        if self.vat_rate is not None:
            vat_rate = _require_decimal(self.vat_rate, "pricing.vat_rate")
            if not Decimal('0') <= vat_rate <= Decimal('1'):
                raise ConfigurationError(f"must be within [0, 1]: {vat_rate}", "pricing.vat_rate")
            object.__setattr__(self, 'vat_rate', vat_rate)

        for name, item_type in (
            ('vehicle_type_rates', VehicleTypeRate),
            ('time_based_rates', TimeBasedRate),
            ('holiday_rates', HolidayRate),
        ):
            value = getattr(self, name)
            if value is None:
                continue
            value = tuple(value)
            for item in value:
                if not isinstance(item, item_type):
                    raise ConfigurationError(f"expected {item_type.__name__}, got {item!r}", f"pricing.{name}")
            object.__setattr__(self, name, value)

        if self.vehicle_type_rates:
            types = [r.vehicle_type for r in self.vehicle_type_rates]
            if len(types) != len(set(types)):
                raise ConfigurationError("duplicate vehicle type", "pricing.vehicle_type_rates")

        if self.occupancy_curve is not None and not isinstance(self.occupancy_curve, OccupancyCurve):
            raise ConfigurationError(f"expected OccupancyCurve, got {self.occupancy_curve!r}", "pricing.occupancy_curve")

    def explicit_fields(self) -> List[str]:
        """Fields this level sets explicitly"""
        return [name for name in PRICING_FIELDS if getattr(self, name) is not None]

    def is_empty(self) -> bool:
        return not self.explicit_fields()


@dataclass(frozen=True)
class EffectivePricing:
    """Value Object: Fully populated pricing after hierarchy resolution"""
    base_rate: int
    vehicle_type_rates: Tuple[VehicleTypeRate, ...]
    time_based_rates: Tuple[TimeBasedRate, ...]
    holiday_rates: Tuple[HolidayRate, ...]
    occupancy_curve: OccupancyCurve
    vat_rate: Decimal

    def vehicle_rate_for(self, vehicle_type: VehicleType) -> Optional[VehicleTypeRate]:
        for rate in self.vehicle_type_rates:
            if rate.vehicle_type == vehicle_type:
                return rate
        return None

    def holiday_for(self, day: date) -> Optional[HolidayRate]:
        for holiday in self.holiday_rates:
            if holiday.matches(day):
                return holiday
        return None


@dataclass(frozen=True)
class ProvenanceEntry:
    """Where a resolved field came from; level None means the system default"""
    field_name: str
    level: Optional[HierarchyLevel]
    node_id: Optional[str]
    version: Optional[int]

    @property
    def is_default(self) -> bool:
        return self.level is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field_name,
            "level": self.level.value if self.level else "default",
            "node_id": self.node_id,
            "version": self.version,
        }


@dataclass(frozen=True)
class ResolvedPricing:
    """Effective pricing for one spot with per-field provenance"""
    spot_id: str
    pricing: EffectivePricing
    provenance: Dict[str, ProvenanceEntry]
    as_of: datetime

    def source_of(self, field_name: str) -> ProvenanceEntry:
        return self.provenance[field_name]

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot stored with each charge"""
        pricing = self.pricing
        return {
            "spot_id": self.spot_id,
            "as_of": self.as_of.isoformat(),
            "base_rate": pricing.base_rate,
            "vat_rate": str(pricing.vat_rate),
            "vehicle_type_rates": [
                {
                    "vehicle_type": r.vehicle_type.value,
                    "rate": r.rate,
                    "multiplier": str(r.multiplier) if r.multiplier is not None else None,
                }
                for r in pricing.vehicle_type_rates
            ],
            "time_based_rates": [r.name for r in pricing.time_based_rates],
            "holiday_rates": [h.name for h in pricing.holiday_rates],
            "occupancy_curve": [
                [str(s.threshold), str(s.multiplier)] for s in pricing.occupancy_curve.steps
            ],
            "provenance": {name: entry.to_dict() for name, entry in self.provenance.items()},
        }


# ============================================================================
# HIERARCHY
# ============================================================================

@dataclass(frozen=True)
class HierarchyNode:
    """
    Value Object: Immutable snapshot of one Location/Section/Zone/Spot

    Edits never mutate a node; they produce a new version with a later
    effective_from. The Location carries the owner and parking type for
    the whole subtree.
    """
    node_id: str
    level: HierarchyLevel
    name: str
    parent_id: Optional[str] = None
    pricing: Optional[PricingConfig] = None
    version: int = 1
    effective_from: datetime = datetime.min
    operator_id: Optional[str] = None
    host_id: Optional[str] = None
    parking_type: Optional[ParkingType] = None

    def __post_init__(self):
        path = f"hierarchy.{self.node_id}"
        if not self.node_id:
            raise ConfigurationError("node_id is required", "hierarchy")
        if not isinstance(self.level, HierarchyLevel):
            raise ConfigurationError(f"unknown level {self.level!r}", f"{path}.level")
        if self.version < 1:
            raise ConfigurationError("version must start at 1", f"{path}.version")
        if self.pricing is not None and not isinstance(self.pricing, PricingConfig):
            raise ConfigurationError("pricing must be a PricingConfig", f"{path}.pricing")

        if self.level is HierarchyLevel.LOCATION:
            if self.parent_id is not None:
                raise ConfigurationError("a location has no parent", f"{path}.parent_id")
            if not isinstance(self.parking_type, ParkingType):
                raise ConfigurationError("a location needs a parking type", f"{path}.parking_type")
            if self.parking_type is ParkingType.HOSTED and not self.host_id:
                raise ConfigurationError("hosted parking needs a host", f"{path}.host_id")
            if self.parking_type is not ParkingType.HOSTED and not self.operator_id:
                raise ConfigurationError("operator-managed parking needs an operator", f"{path}.operator_id")
        elif not self.parent_id:
            raise ConfigurationError(f"a {self.level.value} needs a parent", f"{path}.parent_id")

    def with_pricing(self, pricing: Optional[PricingConfig], effective_from: datetime) -> 'HierarchyNode':
        """Next version of this node carrying new pricing overrides"""
        if effective_from < self.effective_from:
            raise ConfigurationError(
                f"edits are forward-only; {effective_from} precedes version {self.version}",
                f"hierarchy.{self.node_id}.effective_from"
            )
        return replace(self, pricing=pricing, version=self.version + 1, effective_from=effective_from)

    def __str__(self) -> str:
        return f"{self.level} {self.name} ({self.node_id} v{self.version})"


# ============================================================================
# DISCOUNTS AND ELIGIBILITY
# ============================================================================

@dataclass(frozen=True)
class EligibilityRecord:
    """Value Object: A user's eligibility claim, verified or not"""
    user_id: str
    discount_kind: DiscountKind
    verified: bool = False
    attributes: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    record_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_valid_at(self, at: datetime) -> bool:
        if not self.verified:
            return False
        return self.expires_at is None or at < self.expires_at


@dataclass(frozen=True)
class SeniorCitizenEligibility:
    """Satisfied by a senior citizen record whose age meets the minimum"""
    min_age: int = 60
    discount_kind = DiscountKind.SENIOR_CITIZEN

    def __post_init__(self):
        if isinstance(self.min_age, bool) or not isinstance(self.min_age, int) or self.min_age <= 0:
            raise ConfigurationError(f"min_age must be a positive integer: {self.min_age!r}", "discount.eligibility.min_age")

    def is_satisfied_by(self, record: EligibilityRecord) -> bool:
        if record.discount_kind is not self.discount_kind:
            return False
        age = record.attributes.get('age')
        return isinstance(age, int) and age >= self.min_age


@dataclass(frozen=True)
class PWDEligibility:
    """Satisfied by a PWD record carrying an ID number"""
    discount_kind = DiscountKind.PWD

    def is_satisfied_by(self, record: EligibilityRecord) -> bool:
        return record.discount_kind is self.discount_kind and bool(record.attributes.get('pwd_id'))


@dataclass(frozen=True)
class CustomEligibility:
    """Satisfied when a record attribute compares against a value"""
    field_name: str
    operator: ConditionOperator
    value: Any
    discount_kind: DiscountKind = DiscountKind.CUSTOM

    def __post_init__(self):
        path = "discount.eligibility"
        if not self.field_name:
            raise ConfigurationError("field_name is required", f"{path}.field_name")
        if not isinstance(self.operator, ConditionOperator):
            raise ConfigurationError(f"unknown operator {self.operator!r}", f"{path}.operator")
        if self.operator.is_ordering and (
            isinstance(self.value, bool) or not isinstance(self.value, (int, Decimal, date, datetime))
        ):
            raise ConfigurationError(
                f"{self.operator.value} needs a comparable value, got {self.value!r}", f"{path}.value"
            )

    def is_satisfied_by(self, record: EligibilityRecord) -> bool:
        if record.discount_kind is not self.discount_kind:
            return False
        return self.operator.evaluate(record.attributes.get(self.field_name), self.value)


EligibilityPredicate = Union[SeniorCitizenEligibility, PWDEligibility, CustomEligibility]
_PREDICATE_TYPES = (SeniorCitizenEligibility, PWDEligibility, CustomEligibility)


@dataclass(frozen=True)
class DiscountRule:
    """
    Value Object: A discount an operator (or the platform) offers

    operator_id None means the rule applies platform-wide.
    """
    rule_id: str
    name: str
    percentage: Decimal
    eligibility: EligibilityPredicate
    is_vat_exempt: bool = False
    operator_id: Optional[str] = None
    is_active: bool = True

    def __post_init__(self):
        path = f"discount.{self.rule_id}"
        percentage = _require_decimal(self.percentage, f"{path}.percentage")
        if not Decimal('0') < percentage <= Decimal('100'):
            raise ConfigurationError(f"must be within (0, 100]: {percentage}", f"{path}.percentage")
        object.__setattr__(self, 'percentage', percentage)
        if not isinstance(self.eligibility, _PREDICATE_TYPES):
            raise ConfigurationError(f"unknown eligibility predicate {self.eligibility!r}", f"{path}.eligibility")

    @property
    def discount_kind(self) -> DiscountKind:
        return self.eligibility.discount_kind

    def applies_to_operator(self, operator_id: Optional[str]) -> bool:
        return self.operator_id is None or self.operator_id == operator_id

    def is_satisfied_by(self, record: EligibilityRecord) -> bool:
        return self.eligibility.is_satisfied_by(record)


@dataclass(frozen=True)
class AppliedDiscount:
    """The single discount applied to a charge"""
    rule_id: str
    name: str
    percentage: Decimal
    amount_saved: int
    is_vat_exempt: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "percentage": str(self.percentage),
            "amount_saved": self.amount_saved,
            "is_vat_exempt": self.is_vat_exempt,
        }


# ============================================================================
# VIP
# ============================================================================

@dataclass(frozen=True)
class VIPAssignment:
    """Value Object: A VIP grant for one user"""
    assignment_id: str
    user_id: str
    vip_type: VIPType
    assigned_spots: FrozenSet[str] = frozenset()
    time_limit_hours: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    operator_id: Optional[str] = None

    def __post_init__(self):
        path = f"vip.{self.assignment_id}"
        if not isinstance(self.vip_type, VIPType):
            raise ConfigurationError(f"unknown VIP type {self.vip_type!r}", f"{path}.vip_type")
        object.__setattr__(self, 'assigned_spots', frozenset(self.assigned_spots))
        if self.vip_type.is_flex:
            if isinstance(self.time_limit_hours, bool) or not isinstance(self.time_limit_hours, int) \
                    or self.time_limit_hours <= 0:
                raise ConfigurationError("flex VIP types need a positive time limit", f"{path}.time_limit_hours")
        elif self.time_limit_hours is not None:
            raise ConfigurationError("only flex VIP types carry a time limit", f"{path}.time_limit_hours")
        if self.vip_type.is_spot_scoped and not self.assigned_spots:
            raise ConfigurationError("spot VIP types need assigned spots", f"{path}.assigned_spots")
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ConfigurationError("validity window is empty", f"{path}.valid_until")

    def is_valid_at(self, at: datetime) -> bool:
        if not self.is_active:
            return False
        if self.valid_from is not None and at < self.valid_from:
            return False
        return self.valid_until is None or at < self.valid_until

    def covers_spot(self, spot_id: str) -> bool:
        return not self.vip_type.is_spot_scoped or spot_id in self.assigned_spots

    @property
    def time_limit(self) -> Optional[timedelta]:
        if self.time_limit_hours is None:
            return None
        return timedelta(hours=self.time_limit_hours)


# ============================================================================
# BOOKINGS AND CHARGES
# ============================================================================

@dataclass(frozen=True)
class BookingEvent:
    """A billable booking event handed over by the booking system"""
    booking_id: str
    spot_id: str
    user_id: str
    vehicle_type: VehicleType
    start: datetime
    end: datetime
    event_type: ChargeEventType = ChargeEventType.SESSION_END
    claimed_discount: Optional[DiscountKind] = None

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Session end {self.end} must be after start {self.start}")
        if self.event_type is ChargeEventType.CORRECTION:
            raise ValueError("Corrections are issued against existing charges, not booked")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class ChargeLine:
    """One itemized sub-interval of a charge"""
    start: datetime
    end: datetime
    kind: ChargeLineKind
    hourly_rate: int
    amount: int
    rule_name: Optional[str] = None
    occupancy_multiplier: Decimal = Decimal('1')

    @property
    def duration_seconds(self) -> int:
        return int((self.end - self.start).total_seconds())

    def negated(self) -> 'ChargeLine':
        return replace(self, amount=-self.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "kind": self.kind.value,
            "hourly_rate": self.hourly_rate,
            "rule_name": self.rule_name,
            "occupancy_multiplier": str(self.occupancy_multiplier),
            "amount": self.amount,
        }


@dataclass(frozen=True)
class ChargeRecord:
    """
    Immutable ledger row: the price of one billable event

    total_amount == discounted_amount + vat_amount always holds; the
    distributable amount is what remains after VAT.
    """
    record_id: str
    booking_id: str
    event_type: ChargeEventType
    spot_id: str
    user_id: str
    operator_id: Optional[str]
    parking_type: ParkingType
    lines: Tuple[ChargeLine, ...]
    subtotal: int
    discounted_amount: int
    vat_rate: Decimal
    vat_amount: int
    total_amount: int
    discount: Optional[AppliedDiscount] = None
    vip_assignment_id: Optional[str] = None
    pricing_snapshot: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    compensates: Optional[str] = None
    reason: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'lines', tuple(self.lines))
        if sum(line.amount for line in self.lines) != self.subtotal:
            raise ValueError(f"Charge {self.record_id}: lines do not add up to subtotal {self.subtotal}")
        if self.total_amount != self.discounted_amount + self.vat_amount:
            raise ValueError(f"Charge {self.record_id}: total must equal discounted amount plus VAT")
        if self.compensates is None and self.total_amount < 0:
            raise ValueError(f"Charge {self.record_id}: only compensating records can be negative")

    @property
    def distributable_amount(self) -> int:
        return self.total_amount - self.vat_amount

    @property
    def ledger_key(self) -> str:
        """
        Unique per ledger: one record per billable (booking_id, event_type),
        one correction per compensated record
        """
        if self.compensates is not None:
            return f"correction:{self.compensates}"
        return f"{self.booking_id}:{self.event_type.value}"

    @property
    def is_vat_exempt(self) -> bool:
        return self.discount is not None and self.discount.is_vat_exempt

    def compensating(self, reason: str, created_at: Optional[datetime] = None) -> 'ChargeRecord':
        """A record that reverses this one in the ledger"""
        if self.compensates is not None:
            raise ValueError(f"Charge {self.record_id} is itself a correction")
        return replace(
            self,
            record_id=str(uuid.uuid4()),
            event_type=ChargeEventType.CORRECTION,
            lines=tuple(line.negated() for line in self.lines),
            subtotal=-self.subtotal,
            discounted_amount=-self.discounted_amount,
            vat_amount=-self.vat_amount,
            total_amount=-self.total_amount,
            created_at=created_at or datetime.utcnow(),
            compensates=self.record_id,
            reason=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "booking_id": self.booking_id,
            "event_type": self.event_type.value,
            "spot_id": self.spot_id,
            "user_id": self.user_id,
            "operator_id": self.operator_id,
            "parking_type": self.parking_type.value,
            "lines": [line.to_dict() for line in self.lines],
            "subtotal": self.subtotal,
            "discount": self.discount.to_dict() if self.discount else None,
            "discounted_amount": self.discounted_amount,
            "vat_rate": str(self.vat_rate),
            "vat_amount": self.vat_amount,
            "total_amount": self.total_amount,
            "vip_assignment_id": self.vip_assignment_id,
            "created_at": self.created_at.isoformat(),
            "compensates": self.compensates,
            "reason": self.reason,
        }


# ============================================================================
# REVENUE
# ============================================================================

HOSTED_CONFIG_OWNER = "hosted-default"
PLATFORM_CONFIG_OWNER = "platform-default"


@dataclass(frozen=True)
class RevenueAllocation:
    role: RecipientRole
    percentage: Decimal

    def __post_init__(self):
        if not isinstance(self.role, RecipientRole):
            raise ConfigurationError(f"unknown recipient role {self.role!r}", "revenue_share.role")
        percentage = _require_decimal(self.percentage, f"revenue_share.{self.role.value}")
        if percentage < 0:
            raise ConfigurationError(f"percentage cannot be negative: {percentage}", "revenue_share.percentage")
        object.__setattr__(self, 'percentage', percentage)


@dataclass(frozen=True)
class RevenueShareConfig:
    """
    Value Object: How one owner's revenue is split for one parking type

    Allocation order matters: the last listed recipient absorbs the
    rounding remainder.
    """
    owner_id: str
    parking_type: ParkingType
    allocations: Tuple[RevenueAllocation, ...]

    def __post_init__(self):
        path = f"revenue_share.{self.owner_id}.{getattr(self.parking_type, 'value', self.parking_type)}"
        if not isinstance(self.parking_type, ParkingType):
            raise ConfigurationError(f"unknown parking type {self.parking_type!r}", path)
        allocations = tuple(self.allocations)
        if not allocations:
            raise ConfigurationError("at least one allocation is required", f"{path}.allocations")
        roles = [a.role for a in allocations]
        if len(roles) != len(set(roles)):
            raise ConfigurationError("each role may appear once", f"{path}.allocations")
        total = sum((a.percentage for a in allocations), Decimal('0'))
        if total != Decimal('100'):
            raise ConfigurationError(f"percentages must sum to exactly 100, got {total}", f"{path}.allocations")
        if self.parking_type is ParkingType.HOSTED and RecipientRole.OPERATOR in roles:
            raise ConfigurationError("hosted parking splits between host and platform", f"{path}.allocations")
        if self.parking_type is not ParkingType.HOSTED and RecipientRole.HOST in roles:
            raise ConfigurationError("only hosted parking has a host share", f"{path}.allocations")
        object.__setattr__(self, 'allocations', allocations)

    def percentage_for(self, role: RecipientRole) -> Decimal:
        for allocation in self.allocations:
            if allocation.role is role:
                return allocation.percentage
        return Decimal('0')


@dataclass(frozen=True)
class RevenueShare:
    """
    Ledger row: one recipient's share of one charge
    claimed_by is set once, by the remittance that pays it out.
    """
    share_id: str
    charge_record_id: str
    recipient_id: str
    role: RecipientRole
    amount: int
    created_at: datetime
    claimed_by: Optional[str] = None

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None

    def reversed_for(self, charge_record_id: str, created_at: datetime) -> 'RevenueShare':
        """Unclaimed share taking the same amount back from the same recipient"""
        return RevenueShare(
            share_id=str(uuid.uuid4()),
            charge_record_id=charge_record_id,
            recipient_id=self.recipient_id,
            role=self.role,
            amount=-self.amount,
            created_at=created_at
        )


class TransferState(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class TransferStatus:
    """What the bank knows about a transfer reference"""
    reference: str
    state: TransferState
    transfer_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class EarningsSummary:
    """Totals for one recipient over a period"""
    recipient_id: str
    period_start: datetime
    period_end: datetime
    total_amount: int
    remitted_amount: int
    share_count: int

    @property
    def outstanding_amount(self) -> int:
        return self.total_amount - self.remitted_amount


@dataclass
class RemittanceSchedule:
    """Entity: How often a recipient is paid and when the next run is due"""
    recipient_id: str
    frequency: RemittanceFrequency
    next_run_date: date
    last_run_date: Optional[date] = None
    is_active: bool = True
    schedule_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_due(self, today: date) -> bool:
        return self.is_active and today >= self.next_run_date

    def current_period(self) -> Tuple[datetime, datetime]:
        """Period closed by the next run: [previous run, next run)"""
        start = self.last_run_date or previous_run_date(self.frequency, self.next_run_date)
        return (
            datetime.combine(start, time.min),
            datetime.combine(self.next_run_date, time.min),
        )

    def advance(self) -> None:
        self.last_run_date = self.next_run_date
        self.next_run_date = calculate_next_run_date(self.frequency, self.next_run_date)


# ============================================================================
# DOMAIN EVENTS (for event-driven architecture)
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    Events represent something that happened in the domain
    """
    event_name = "domain.event"
    aggregate_type = "unknown"

    def __init__(self, aggregate_id: str):
        self.event_id = str(uuid.uuid4())
        self.aggregate_id = aggregate_id
        self.timestamp = datetime.utcnow()

    @abstractmethod
    def payload(self) -> Dict[str, Any]:
        """Event-specific data"""
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_name,
            "event_id": self.event_id,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "timestamp": self.timestamp.isoformat(),
            "data": self.payload(),
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.aggregate_id}) at {self.timestamp}"


class ChargeRecordedEvent(DomainEvent):
    """Raised when a charge is written to the ledger"""
    event_name = "charge.recorded"
    aggregate_type = "ChargeRecord"

    def __init__(self, record: ChargeRecord):
        super().__init__(record.record_id)
        self.record = record

    def payload(self) -> Dict[str, Any]:
        return {
            "booking_id": self.record.booking_id,
            "event_type": self.record.event_type.value,
            "total_amount": self.record.total_amount,
            "vat_amount": self.record.vat_amount,
            "compensates": self.record.compensates,
        }


class RevenueDistributedEvent(DomainEvent):
    event_name = "revenue.distributed"
    aggregate_type = "ChargeRecord"

    def __init__(self, charge_record_id: str, shares: List[RevenueShare]):
        super().__init__(charge_record_id)
        self.shares = list(shares)

    def payload(self) -> Dict[str, Any]:
        return {
            "shares": [
                {"recipient_id": s.recipient_id, "role": s.role.value, "amount": s.amount}
                for s in self.shares
            ]
        }


class DistributionFailedEvent(DomainEvent):
    """Raised when a charge's revenue could not be split; needs manual review"""
    event_name = "revenue.distribution_failed"
    aggregate_type = "ChargeRecord"

    def __init__(self, charge_record_id: str, reason: str):
        super().__init__(charge_record_id)
        self.reason = reason

    def payload(self) -> Dict[str, Any]:
        return {"reason": self.reason}


class EligibilityRejectedEvent(DomainEvent):
    """Audit trail for discount or VIP claims that could not be verified"""
    event_name = "eligibility.rejected"
    aggregate_type = "User"

    def __init__(self, user_id: str, claim: str, reason: str, booking_id: Optional[str] = None):
        super().__init__(user_id)
        self.claim = claim
        self.reason = reason
        self.booking_id = booking_id

    def payload(self) -> Dict[str, Any]:
        return {"claim": self.claim, "reason": self.reason, "booking_id": self.booking_id}


class RemittanceStatusChangedEvent(DomainEvent):
    event_name = "remittance.status_changed"
    aggregate_type = "Remittance"

    def __init__(
        self,
        remittance_id: str,
        recipient_id: str,
        old_status: Optional[RemittanceStatus],
        new_status: RemittanceStatus,
        payable: int
    ):
        super().__init__(remittance_id)
        self.recipient_id = recipient_id
        self.old_status = old_status
        self.new_status = new_status
        self.payable = payable

    def payload(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value,
            "payable": self.payable,
        }


class PricingPublishedEvent(DomainEvent):
    """Raised when a new pricing version is published for a node"""
    event_name = "pricing.published"
    aggregate_type = "HierarchyNode"

    def __init__(self, node: HierarchyNode):
        super().__init__(node.node_id)
        self.node = node

    def payload(self) -> Dict[str, Any]:
        return {
            "version": self.node.version,
            "effective_from": self.node.effective_from.isoformat(),
            "fields": self.node.pricing.explicit_fields() if self.node.pricing else [],
        }


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def calculate_next_run_date(frequency: RemittanceFrequency, from_date: date) -> date:
    """Next payout date after from_date for the given frequency"""
    if frequency is RemittanceFrequency.DAILY:
        return from_date + timedelta(days=1)
    if frequency is RemittanceFrequency.WEEKLY:
        return from_date + timedelta(weeks=1)
    if frequency is RemittanceFrequency.BIWEEKLY:
        return from_date + timedelta(weeks=2)
    return _add_months(from_date, 1)


def previous_run_date(frequency: RemittanceFrequency, run_date: date) -> date:
    """Inverse of calculate_next_run_date, used for a schedule's first period"""
    if frequency is RemittanceFrequency.DAILY:
        return run_date - timedelta(days=1)
    if frequency is RemittanceFrequency.WEEKLY:
        return run_date - timedelta(weeks=1)
    if frequency is RemittanceFrequency.BIWEEKLY:
        return run_date - timedelta(weeks=2)
    return _add_months(run_date, -1)
