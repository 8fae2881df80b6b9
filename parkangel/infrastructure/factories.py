# File: parkangel/infrastructure/factories.py
"""
Factory Pattern Implementation for the Pricing Engine

1. HierarchyBuilder - Builder for Location/Section/Zone/Spot trees
2. DiscountRuleFactory - Preset statutory and custom discount rules
3. ServiceFactory - Wires repositories, registries, messaging and the
   application services into one EnginePlatform

Key Benefits:
- Centralized object creation logic
- One place where in-memory and database-backed setups diverge
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, Callable
import logging

from ..config import EngineSettings
from ..domain.models import (
    HierarchyNode, HierarchyLevel, ParkingType, PricingConfig,
    DiscountRule, SeniorCitizenEligibility, PWDEligibility, CustomEligibility,
    ConditionOperator
)
from ..domain.aggregates import PricingHierarchy
from .repositories import (
    InMemoryHierarchyConfigStore, InMemoryRevenueShareConfigRepository,
    InMemoryLedger, RepositoryFactory, UnitOfWork
)
from .registries import InMemoryVIPRegistry, InMemoryDiscountRegistry, FixedOccupancyProvider
from .locks import RecipientLockProvider, InMemoryRecipientLocks, RedisRecipientLocks
from .messaging import MessageBus, MessageBrokerFactory


# ============================================================================
# HIERARCHY BUILDER
# ============================================================================

class HierarchyBuilder:
    """Builder pattern for constructing a pricing hierarchy"""

    def __init__(self, effective_from: datetime = datetime.min):
        self.effective_from = effective_from
        self.reset()

    def reset(self) -> 'HierarchyBuilder':
        self.nodes = []
        self._current: Dict[HierarchyLevel, str] = {}
        return self

    def location(
        self,
        node_id: str,
        parking_type: ParkingType,
        operator_id: Optional[str] = None,
        host_id: Optional[str] = None,
        pricing: Optional[PricingConfig] = None,
        name: Optional[str] = None
    ) -> 'HierarchyBuilder':
        self._add(HierarchyNode(
            node_id=node_id,
            level=HierarchyLevel.LOCATION,
            name=name or node_id,
            pricing=pricing,
            effective_from=self.effective_from,
            operator_id=operator_id,
            host_id=host_id,
            parking_type=parking_type
        ))
        return self

    def section(self, node_id: str, pricing: Optional[PricingConfig] = None, name: Optional[str] = None) -> 'HierarchyBuilder':
        return self._child(HierarchyLevel.SECTION, node_id, pricing, name)

    def zone(self, node_id: str, pricing: Optional[PricingConfig] = None, name: Optional[str] = None) -> 'HierarchyBuilder':
        return self._child(HierarchyLevel.ZONE, node_id, pricing, name)

    def spot(self, node_id: str, pricing: Optional[PricingConfig] = None, name: Optional[str] = None) -> 'HierarchyBuilder':
        return self._child(HierarchyLevel.SPOT, node_id, pricing, name)

    def _child(
        self,
        level: HierarchyLevel,
        node_id: str,
        pricing: Optional[PricingConfig],
        name: Optional[str]
    ) -> 'HierarchyBuilder':
        parent_level = next(lvl for lvl in HierarchyLevel if lvl.depth == level.depth - 1)
        parent_id = self._current.get(parent_level)
        if parent_id is None:
            raise ValueError(f"Add a {parent_level.value} before adding a {level.value}")
        self._add(HierarchyNode(
            node_id=node_id,
            level=level,
            name=name or node_id,
            parent_id=parent_id,
            pricing=pricing,
            effective_from=self.effective_from
        ))
        return self

    def _add(self, node: HierarchyNode) -> None:
        self.nodes.append(node)
        self._current[node.level] = node.node_id
        for level in HierarchyLevel:
            if level.depth > node.level.depth:
                self._current.pop(level, None)

    def build(self, store: Optional[InMemoryHierarchyConfigStore] = None) -> InMemoryHierarchyConfigStore:
        """Add the collected nodes to a (new) config store"""
        if not self.nodes:
            raise ValueError("Hierarchy has no nodes")
        store = store or InMemoryHierarchyConfigStore(PricingHierarchy())
        for node in self.nodes:
            store.add_node(node)
        return store


# ============================================================================
# DISCOUNT RULE FACTORY
# ============================================================================

class DiscountRuleFactory:
    """Factory for the statutory discounts and operator-defined ones"""

    STATUTORY_PERCENTAGE = Decimal('20')

    @staticmethod
    def senior_citizen(
        operator_id: Optional[str] = None,
        rule_id: str = "senior-citizen",
        percentage: Decimal = STATUTORY_PERCENTAGE,
        min_age: int = 60
    ) -> DiscountRule:
        return DiscountRule(
            rule_id=rule_id,
            name="Senior Citizen",
            percentage=percentage,
            eligibility=SeniorCitizenEligibility(min_age=min_age),
            is_vat_exempt=True,
            operator_id=operator_id
        )

    @staticmethod
    def pwd(
        operator_id: Optional[str] = None,
        rule_id: str = "pwd",
        percentage: Decimal = STATUTORY_PERCENTAGE
    ) -> DiscountRule:
        return DiscountRule(
            rule_id=rule_id,
            name="Person with Disability",
            percentage=percentage,
            eligibility=PWDEligibility(),
            is_vat_exempt=True,
            operator_id=operator_id
        )

    @staticmethod
    def custom(
        rule_id: str,
        name: str,
        percentage: Decimal,
        field_name: str,
        operator: ConditionOperator,
        value: Any,
        operator_id: Optional[str] = None,
        is_vat_exempt: bool = False
    ) -> DiscountRule:
        return DiscountRule(
            rule_id=rule_id,
            name=name,
            percentage=percentage,
            eligibility=CustomEligibility(field_name=field_name, operator=operator, value=value),
            is_vat_exempt=is_vat_exempt,
            operator_id=operator_id
        )


# ============================================================================
# SERVICE FACTORY
# ============================================================================

@dataclass
class EnginePlatform:
    """Everything a running engine needs, wired together"""
    settings: EngineSettings
    hierarchy: InMemoryHierarchyConfigStore
    share_configs: InMemoryRevenueShareConfigRepository
    vip_registry: InMemoryVIPRegistry
    discount_registry: InMemoryDiscountRegistry
    occupancy: FixedOccupancyProvider
    uow_factory: Callable[[], UnitOfWork]
    locks: RecipientLockProvider
    message_bus: MessageBus
    charging: Any
    configuration: Any
    remittances: Any
    scheduler: Any

    def close(self) -> None:
        self.remittances.shutdown()
        self.message_bus.close()


class ServiceFactory:
    """Factory for creating application services"""

    def __init__(self, settings: Optional[EngineSettings] = None, clock: Callable[[], datetime] = datetime.utcnow):
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)

    def create_in_memory(
        self,
        gateway: Any,
        hierarchy: Optional[InMemoryHierarchyConfigStore] = None,
        ledger: Optional[InMemoryLedger] = None
    ) -> EnginePlatform:
        """Single-process engine: in-memory ledger, locks and message queue"""
        return self._assemble(
            gateway=gateway,
            hierarchy=hierarchy or InMemoryHierarchyConfigStore(),
            uow_factory=RepositoryFactory.create_in_memory_uow_factory(ledger),
            locks=InMemoryRecipientLocks(),
            message_bus=MessageBrokerFactory.create_message_bus("memory")
        )

    def create_from_settings(
        self,
        gateway: Any,
        broker_type: str = "kafka",
        hierarchy: Optional[InMemoryHierarchyConfigStore] = None
    ) -> EnginePlatform:
        """Database ledger, Redis locks, the configured broker and the Mongo audit trail"""
        broker_kwargs: Dict[str, Any] = {}
        if broker_type == "redis":
            broker_kwargs["redis_url"] = self.settings.REDIS_URL
        elif broker_type == "kafka":
            broker_kwargs["bootstrap_servers"] = self.settings.KAFKA_BOOTSTRAP_SERVERS
        return self._assemble(
            gateway=gateway,
            hierarchy=hierarchy or InMemoryHierarchyConfigStore(),
            uow_factory=RepositoryFactory.create_sqlalchemy_uow_factory(self.settings.DATABASE_URL),
            locks=RedisRecipientLocks(self.settings.REDIS_URL),
            message_bus=MessageBrokerFactory.create_message_bus(
                broker_type, mongo_url=self.settings.MONGO_URL, **broker_kwargs
            )
        )

    def _assemble(
        self,
        gateway: Any,
        hierarchy: InMemoryHierarchyConfigStore,
        uow_factory: Callable[[], UnitOfWork],
        locks: RecipientLockProvider,
        message_bus: MessageBus
    ) -> EnginePlatform:
        from ..application.charging_service import ChargingService
        from ..application.configuration_service import ConfigurationService
        from ..application.remittance_service import RemittanceAggregator, RemittanceScheduler

        share_configs = InMemoryRevenueShareConfigRepository()
        vip_registry = InMemoryVIPRegistry()
        discount_registry = InMemoryDiscountRegistry()
        occupancy = FixedOccupancyProvider()

        charging = ChargingService(
            hierarchy=hierarchy,
            uow_factory=uow_factory,
            share_configs=share_configs,
            vip_registry=vip_registry,
            discount_registry=discount_registry,
            occupancy_provider=occupancy,
            event_publisher=message_bus,
            settings=self.settings,
            clock=self.clock
        )
        configuration = ConfigurationService(
            hierarchy=hierarchy,
            share_configs=share_configs,
            discount_registry=discount_registry,
            resolver=charging.resolver,
            event_publisher=message_bus,
            settings=self.settings,
            clock=self.clock
        )
        remittances = RemittanceAggregator(
            uow_factory=uow_factory,
            gateway=gateway,
            locks=locks,
            event_publisher=message_bus,
            settings=self.settings,
            clock=self.clock
        )
        # partition count follows the worker pool size
        message_bus.message_queue.create_topic(
            self.settings.REMITTANCE_TOPIC, partitions=self.settings.REMITTANCE_WORKERS
        )
        scheduler = RemittanceScheduler(message_bus.message_queue, self.settings.REMITTANCE_TOPIC, clock=self.clock)

        self.logger.info(f"Assembled engine platform with {self.settings!r}")
        return EnginePlatform(
            settings=self.settings,
            hierarchy=hierarchy,
            share_configs=share_configs,
            vip_registry=vip_registry,
            discount_registry=discount_registry,
            occupancy=occupancy,
            uow_factory=uow_factory,
            locks=locks,
            message_bus=message_bus,
            charging=charging,
            configuration=configuration,
            remittances=remittances,
            scheduler=scheduler
        )
