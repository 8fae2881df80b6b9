# File: parkangel/domain/pricing.py
"""
Pricing Resolution and Rate Calculation

1. PricingResolver - Resolves each pricing field independently up the
   Spot -> Zone -> Section -> Location chain, falling back to the system
   default, and records where every value came from.
2. RateCalculator - Prices a session by splitting it at day and time-rule
   boundaries and pricing each sub-interval on its own.

Both are pure functions of their inputs: they read immutable snapshots
and never touch storage, so the same inputs always give the same price.
"""

from typing import Optional, List, Dict, Tuple, Sequence
from datetime import datetime, date, time, timedelta
from decimal import Decimal
from fractions import Fraction
import logging

from .models import (
    HierarchyNode, HierarchyLevel, PricingConfig, EffectivePricing,
    ResolvedPricing, ProvenanceEntry, OccupancyCurve, ChargeLine,
    ChargeLineKind, VehicleType, ConfigurationError,
    PRICING_FIELDS, REQUIRED_PRICING_FIELDS,
    round_half_up, to_fraction
)


SECONDS_PER_HOUR = 3600


# ============================================================================
# PRICING RESOLVER
# ============================================================================

class PricingResolver:
    """
    Field-by-field hierarchy resolution

    For every pricing field the nearest level that explicitly sets it wins.
    A Spot can inherit its base rate from the Section and its holiday rates
    from the Zone at the same time.
    """

    def __init__(self, system_default: PricingConfig):
        if not isinstance(system_default, PricingConfig):
            raise ConfigurationError("system default must be a PricingConfig", "pricing")
        self._system_default = system_default
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def system_default(self) -> PricingConfig:
        return self._system_default

    @staticmethod
    def validate_chain(chain: Sequence[HierarchyNode]) -> None:
        """Chain must run from a node up to its Location, one level at a time"""
        if not chain:
            raise ConfigurationError("empty hierarchy chain", "hierarchy")
        for child, parent in zip(chain, chain[1:]):
            if child.parent_id != parent.node_id:
                raise ConfigurationError(
                    f"parent is {child.parent_id}, chain continues with {parent.node_id}",
                    f"hierarchy.{child.node_id}.parent_id"
                )
            if parent.level.depth != child.level.depth - 1:
                raise ConfigurationError(
                    f"{child.level} cannot sit directly under {parent.level}",
                    f"hierarchy.{child.node_id}.level"
                )
        if chain[-1].level is not HierarchyLevel.LOCATION:
            raise ConfigurationError("chain does not reach a location", f"hierarchy.{chain[-1].node_id}")

    def resolve(self, chain: Sequence[HierarchyNode], as_of: datetime) -> ResolvedPricing:
        """
        Resolve the effective pricing for the Spot at chain[0]

        Raises ConfigurationError when a required field is set nowhere,
        including the system default.
        """
        self.validate_chain(chain)
        spot = chain[0]
        if spot.level is not HierarchyLevel.SPOT:
            raise ConfigurationError(f"pricing resolves at a spot, got {spot.level}", f"hierarchy.{spot.node_id}")

        values = {}
        provenance: Dict[str, ProvenanceEntry] = {}
        for name in PRICING_FIELDS:
            value, entry = self._resolve_field(name, chain)
            values[name] = value
            provenance[name] = entry

        self._logger.debug(
            f"Resolved pricing for spot {spot.node_id}: "
            + ", ".join(f"{n}<-{provenance[n].level.value if provenance[n].level else 'default'}" for n in PRICING_FIELDS)
        )
        return ResolvedPricing(
            spot_id=spot.node_id,
            pricing=EffectivePricing(**values),
            provenance=provenance,
            as_of=as_of
        )

    def describe_sources(self, chain: Sequence[HierarchyNode]) -> Dict[str, str]:
        """
        Admin view of where each field of chain[0] comes from:
        'own', 'inherited:<level>' or 'default'
        """
        self.validate_chain(chain)
        node = chain[0]
        sources = {}
        for name in PRICING_FIELDS:
            _, entry = self._resolve_field(name, chain, allow_missing=True)
            if entry.is_default:
                sources[name] = "default"
            elif entry.node_id == node.node_id:
                sources[name] = "own"
            else:
                sources[name] = f"inherited:{entry.level.value}"
        return sources

    def effective_values(self, chain: Sequence[HierarchyNode]) -> Dict[str, object]:
        """Values chain[0] would see at any level; unset required fields are None"""
        self.validate_chain(chain)
        return {name: self._resolve_field(name, chain, allow_missing=True)[0] for name in PRICING_FIELDS}

    def _resolve_field(self, name: str, chain: Sequence[HierarchyNode], allow_missing: bool = False):
        for node in chain:
            if node.pricing is None:
                continue
            value = getattr(node.pricing, name)
            if value is not None:
                return value, ProvenanceEntry(name, node.level, node.node_id, node.version)

        value = getattr(self._system_default, name)
        if value is None:
            if name in REQUIRED_PRICING_FIELDS:
                if allow_missing:
                    return None, ProvenanceEntry(name, None, None, None)
                raise ConfigurationError(
                    f"not set at any level of spot {chain[0].node_id} nor in the system default",
                    f"pricing.{name}"
                )
            value = OccupancyCurve.flat() if name == 'occupancy_curve' else ()
        return value, ProvenanceEntry(name, None, None, None)


# ============================================================================
# RATE CALCULATOR
# ============================================================================

class RateCalculator:
    """
    Prices a session against resolved pricing

    Per sub-interval: base rate -> vehicle type rate -> most specific
    time-based rate (a holiday rate replaces it) -> occupancy multiplier ->
    duration. Each sub-interval is rounded half-up once.
    """

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    def calculate(
        self,
        pricing: EffectivePricing,
        start: datetime,
        end: datetime,
        vehicle_type: VehicleType,
        occupancy: Decimal = Decimal('0')
    ) -> List[ChargeLine]:
        """Itemized lines for [start, end); their amounts sum to the pre-discount price"""
        if end <= start:
            raise ValueError(f"Interval end {end} must be after start {start}")
        occupancy_fraction = to_fraction(occupancy)
        if not 0 <= occupancy_fraction <= 1:
            raise ValueError(f"Occupancy must be within [0, 1]: {occupancy}")

        occupancy_multiplier = pricing.occupancy_curve.multiplier_for(Decimal(occupancy))
        base = Fraction(pricing.base_rate)
        vehicle_rate = pricing.vehicle_rate_for(vehicle_type)
        if vehicle_rate is not None:
            base = vehicle_rate.apply(base)

        merged: List[Tuple[datetime, datetime, Fraction, Optional[str]]] = []
        for seg_start, seg_end in self.split(pricing, start, end):
            hourly, rule_name = self._hourly_rate(pricing, base, seg_start)
            if merged and merged[-1][1] == seg_start and merged[-1][2:] == (hourly, rule_name):
                merged[-1] = (merged[-1][0], seg_end, hourly, rule_name)
            else:
                merged.append((seg_start, seg_end, hourly, rule_name))

        lines = []
        for seg_start, seg_end, hourly, rule_name in merged:
            seconds = int((seg_end - seg_start).total_seconds())
            amount = round_half_up(
                hourly * to_fraction(occupancy_multiplier) * Fraction(seconds, SECONDS_PER_HOUR)
            )
            lines.append(ChargeLine(
                start=seg_start,
                end=seg_end,
                kind=ChargeLineKind.RATE,
                hourly_rate=round_half_up(hourly),
                amount=amount,
                rule_name=rule_name,
                occupancy_multiplier=occupancy_multiplier
            ))

        self._logger.debug(
            f"Priced {start} - {end} ({vehicle_type.value}) in {len(lines)} line(s): "
            f"{sum(line.amount for line in lines)}"
        )
        return lines

    @staticmethod
    def split(pricing: EffectivePricing, start: datetime, end: datetime) -> List[Tuple[datetime, datetime]]:
        """Cut [start, end) at every midnight and every time-rule boundary inside it"""
        rule_times = set()
        for rule in pricing.time_based_rates:
            rule_times.update(rule.boundaries())
        rule_times.add(time.min)

        cuts = set()
        day: date = start.date()
        while day <= end.date():
            for t in rule_times:
                moment = datetime.combine(day, t)
                if start < moment < end:
                    cuts.add(moment)
            day += timedelta(days=1)

        points = [start] + sorted(cuts) + [end]
        return list(zip(points, points[1:]))

    @staticmethod
    def _hourly_rate(pricing: EffectivePricing, base: Fraction, moment: datetime) -> Tuple[Fraction, Optional[str]]:
        holiday = pricing.holiday_for(moment.date())
        if holiday is not None:
            return holiday.apply(base), holiday.name

        matching = [
            (index, rule) for index, rule in enumerate(pricing.time_based_rates)
            if rule.matches(moment)
        ]
        if not matching:
            return base, None
        _, rule = max(matching, key=lambda pair: (pair[1].specificity, -pair[0]))
        return rule.apply(base), rule.name
