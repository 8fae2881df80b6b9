# File: parkangel/application/configuration_service.py
"""
Configuration Application Service

Admin-facing writes to everything the charging pipeline reads:

1. Hierarchy nodes and forward-only pricing publication
2. Revenue share splits per owner and parking type
3. Discount rules

Every write is validated before it becomes visible. A pricing edit that
would leave any spot below the node without a base rate or VAT rate is
refused instead of being zero-filled.
"""

from typing import Dict, List, Optional, Any, Callable, Union
from datetime import datetime
import logging

from ..config import EngineSettings
from ..domain.models import (
    HierarchyNode, HierarchyLevel, PricingConfig, RevenueShareConfig, DiscountRule,
    ConfigurationError
)
from ..domain.pricing import PricingResolver
from ..infrastructure.repositories import InMemoryHierarchyConfigStore, InMemoryRevenueShareConfigRepository
from ..infrastructure.registries import InMemoryDiscountRegistry
from .charging_service import EventPublisher
from .dtos import PricingConfigDTO, RevenueShareConfigDTO, DiscountRuleDTO


class ConfigurationService:
    """Validated, audited writes to pricing, revenue splits and discounts"""

    def __init__(
        self,
        hierarchy: InMemoryHierarchyConfigStore,
        share_configs: InMemoryRevenueShareConfigRepository,
        discount_registry: Optional[InMemoryDiscountRegistry] = None,
        resolver: Optional[PricingResolver] = None,
        event_publisher: Optional[EventPublisher] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.settings = settings or EngineSettings()
        self._hierarchy = hierarchy
        self._share_configs = share_configs
        self._discounts = discount_registry
        self._resolver = resolver or PricingResolver(PricingConfig(
            base_rate=self.settings.DEFAULT_BASE_RATE,
            vat_rate=self.settings.DEFAULT_VAT_RATE
        ))
        self._events = event_publisher
        self._clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Hierarchy and pricing
    # ------------------------------------------------------------------

    def add_node(self, node: HierarchyNode) -> HierarchyNode:
        self._hierarchy.add_node(node)
        self.logger.info(f"Added {node}")
        return node

    def publish_pricing(
        self,
        node_id: str,
        pricing: Union[PricingConfig, PricingConfigDTO, None],
        effective_from: Optional[datetime] = None
    ) -> HierarchyNode:
        """
        Publish new pricing overrides for a node as a new snapshot version

        effective_from defaults to now and may not lie in the past, so
        charges already computed can never be repriced. None clears all
        overrides at the node.
        """
        if isinstance(pricing, PricingConfigDTO):
            pricing = pricing.to_domain()
        now = self._clock()
        effective_from = effective_from or now
        if effective_from < now:
            raise ConfigurationError(
                f"edits are forward-only; {effective_from} is before {now}",
                f"hierarchy.{node_id}.effective_from"
            )

        self._check_resolvable(node_id, pricing, effective_from)
        snapshot, events = self._hierarchy.publish_pricing(node_id, pricing, effective_from)
        for event in events:
            if self._events is not None:
                self._events.publish_event(event)
        return snapshot

    def effective_pricing(self, node_id: str, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        """Admin view of a node: every field's value and whether it is own, inherited or default"""
        chain = self._hierarchy.get_chain(node_id, as_of)
        node = chain[0]
        return {
            "node_id": node.node_id,
            "level": node.level.value,
            "version": node.version,
            "effective_from": node.effective_from.isoformat(),
            "values": self._resolver.effective_values(chain),
            "sources": self._resolver.describe_sources(chain),
        }

    def pricing_history(self, node_id: str) -> List[HierarchyNode]:
        return self._hierarchy.versions_of(node_id)

    def _check_resolvable(self, node_id: str, pricing: Optional[PricingConfig], effective_from: datetime) -> None:
        candidate = self._hierarchy.get_node(node_id).with_pricing(pricing, effective_from)
        for spot_id in self._spots_under(node_id):
            chain = [candidate if n.node_id == node_id else n for n in self._hierarchy.get_chain(spot_id)]
            self._resolver.resolve(chain, effective_from)

    def _spots_under(self, node_id: str) -> List[str]:
        spots, pending = [], [node_id]
        while pending:
            current = pending.pop()
            if self._hierarchy.get_node(current).level is HierarchyLevel.SPOT:
                spots.append(current)
            pending.extend(self._hierarchy.children_of(current))
        return spots

    # ------------------------------------------------------------------
    # Revenue splits
    # ------------------------------------------------------------------

    def set_revenue_share_config(
        self,
        config: Union[RevenueShareConfig, RevenueShareConfigDTO]
    ) -> RevenueShareConfig:
        if isinstance(config, RevenueShareConfigDTO):
            config = config.to_domain()
        return self._share_configs.save(config)

    # ------------------------------------------------------------------
    # Discount rules
    # ------------------------------------------------------------------

    def save_discount_rule(self, rule: Union[DiscountRule, DiscountRuleDTO]) -> DiscountRule:
        if isinstance(rule, DiscountRuleDTO):
            rule = rule.to_domain()
        return self._require_discounts().save_rule(rule)

    def deactivate_discount_rule(self, rule_id: str) -> DiscountRule:
        return self._require_discounts().deactivate_rule(rule_id)

    def _require_discounts(self) -> InMemoryDiscountRegistry:
        if self._discounts is None:
            raise ConfigurationError("no discount registry configured", "discount")
        return self._discounts
