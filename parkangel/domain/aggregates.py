# File: parkangel/domain/aggregates.py
"""
Aggregate Roots for the Park Angel Pricing and Revenue Engine

1. PricingHierarchy - Arena of immutable, versioned hierarchy snapshots
2. Remittance - The only ledger entity with a mutable status

Both collect the domain events raised by their own methods; the services
drain and publish them once the unit of work has committed.
"""

from typing import List, Optional, Dict, Any, Tuple, Sequence
from datetime import datetime
import bisect
import uuid
import logging

from .models import (
    HierarchyNode, HierarchyLevel, PricingConfig, RevenueShare,
    RemittanceStatus, ConfigurationError, RemittanceStateError,
    DomainEvent, PricingPublishedEvent, RemittanceStatusChangedEvent
)


# ============================================================================
# BASE AGGREGATE ROOT
# ============================================================================

class Entity:
    """Identity-based equality: same type and same id"""

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        return self._id

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Entity) and type(self) is type(other) and self.id == other.id

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.id))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"


class AggregateRoot(Entity):
    """Entity that versions itself and buffers the events it raises"""

    def __init__(self, id: Optional[str] = None, version: int = 1):
        super().__init__(id)
        self._version: int = version
        self._pending_events: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def version(self) -> int:
        return self._version

    def _increment_version(self) -> None:
        self._version += 1

    def _add_domain_event(self, event: DomainEvent) -> None:
        self._pending_events.append(event)
        self._logger.debug(f"{self.id} raised {event.event_name}")

    def clear_events(self) -> List[DomainEvent]:
        """Hand over the buffered events, oldest first, and forget them"""
        drained, self._pending_events = self._pending_events, []
        return drained


# ============================================================================
# PRICING HIERARCHY AGGREGATE
# ============================================================================

class PricingHierarchy(AggregateRoot):
    """
    Aggregate Root: Versioned snapshots of the Location/Section/Zone/Spot tree

    Nodes are never edited in place. Publishing pricing appends a new
    snapshot version; lookups pick the latest version effective at a given
    time, so a charge resolved against time T is unaffected by later edits.
    """

    def __init__(self, id: Optional[str] = None):
        super().__init__(id)
        self._versions: Dict[str, List[HierarchyNode]] = {}
        self._children: Dict[str, List[str]] = {}

    def add_node(self, node: HierarchyNode) -> HierarchyNode:
        """Register a new node (first version)"""
        if node.node_id in self._versions:
            raise ConfigurationError("node already exists", f"hierarchy.{node.node_id}")
        if node.version != 1:
            raise ConfigurationError("new nodes start at version 1", f"hierarchy.{node.node_id}.version")
        if node.parent_id is not None:
            parent = self.latest(node.parent_id)
            if parent.level.depth != node.level.depth - 1:
                raise ConfigurationError(
                    f"{node.level} cannot sit directly under {parent.level}",
                    f"hierarchy.{node.node_id}.parent_id"
                )
            self._children.setdefault(parent.node_id, []).append(node.node_id)

        self._versions[node.node_id] = [node]
        self._increment_version()
        self._logger.debug(f"Added {node}")
        return node

    def publish_pricing(
        self,
        node_id: str,
        pricing: Optional[PricingConfig],
        effective_from: datetime
    ) -> HierarchyNode:
        """Append a new version of a node with the given pricing overrides"""
        current = self.latest(node_id)
        snapshot = current.with_pricing(pricing, effective_from)
        self._versions[node_id].append(snapshot)
        self._increment_version()
        self._add_domain_event(PricingPublishedEvent(snapshot))
        self._logger.info(f"Published pricing v{snapshot.version} for {node_id} effective {effective_from}")
        return snapshot

    def latest(self, node_id: str) -> HierarchyNode:
        versions = self._versions.get(node_id)
        if not versions:
            raise ConfigurationError("unknown hierarchy node", f"hierarchy.{node_id}")
        return versions[-1]

    def get_node(self, node_id: str, as_of: Optional[datetime] = None) -> HierarchyNode:
        """Latest snapshot whose effective_from is not after as_of"""
        if as_of is None:
            return self.latest(node_id)
        versions = self._versions.get(node_id)
        if not versions:
            raise ConfigurationError("unknown hierarchy node", f"hierarchy.{node_id}")
        index = bisect.bisect_right([v.effective_from for v in versions], as_of)
        if index == 0:
            raise ConfigurationError(f"no version effective at {as_of}", f"hierarchy.{node_id}")
        return versions[index - 1]

    def get_version(self, node_id: str, version: int) -> HierarchyNode:
        for snapshot in self._versions.get(node_id, []):
            if snapshot.version == version:
                return snapshot
        raise ConfigurationError(f"no version {version}", f"hierarchy.{node_id}")

    def get_chain(self, node_id: str, as_of: Optional[datetime] = None) -> List[HierarchyNode]:
        """The node and its ancestors up to the Location, as of a point in time"""
        chain = [self.get_node(node_id, as_of)]
        while chain[-1].parent_id is not None:
            if len(chain) > len(HierarchyLevel):
                raise ConfigurationError("cycle in hierarchy", f"hierarchy.{node_id}")
            chain.append(self.get_node(chain[-1].parent_id, as_of))
        return chain

    def location_of(self, node_id: str, as_of: Optional[datetime] = None) -> HierarchyNode:
        return self.get_chain(node_id, as_of)[-1]

    def children_of(self, node_id: str) -> List[str]:
        return list(self._children.get(node_id, []))

    def versions_of(self, node_id: str) -> List[HierarchyNode]:
        return list(self._versions.get(node_id, []))

    def node_ids(self) -> List[str]:
        return list(self._versions.keys())

    def __len__(self) -> int:
        return len(self._versions)


# ============================================================================
# REMITTANCE AGGREGATE
# ============================================================================

class Remittance(AggregateRoot):
    """
    Aggregate Root: A payout of one recipient's shares for one period

    Keyed by (recipient_id, period_start, period_end). Status moves
    pending -> processing -> completed | failed, and failed -> pending
    (retry) or failed -> escalated. Every transition raises a domain event.
    """

    def __init__(
        self,
        recipient_id: str,
        period_start: datetime,
        period_end: datetime,
        id: Optional[str] = None,
        status: RemittanceStatus = RemittanceStatus.PENDING,
        total_share: int = 0,
        previously_reserved: int = 0,
        payable: int = 0,
        share_ids: Sequence[str] = (),
        transfer_id: Optional[str] = None,
        attempts: int = 0,
        last_error: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        version: int = 1
    ):
        super().__init__(id, version)
        if period_end <= period_start:
            raise ValueError(f"Remittance period end {period_end} must be after start {period_start}")
        self.recipient_id = recipient_id
        self.period_start = period_start
        self.period_end = period_end
        self.status = status
        self.total_share = total_share
        self.previously_reserved = previously_reserved
        self.payable = payable
        self.share_ids: List[str] = list(share_ids)
        self.transfer_id = transfer_id
        self.attempts = attempts
        self.last_error = last_error
        self.created_at = created_at or datetime.utcnow()
        self.updated_at = updated_at or self.created_at

    @property
    def key(self) -> Tuple[str, datetime, datetime]:
        return (self.recipient_id, self.period_start, self.period_end)

    def record_claims(self, claimed: Sequence[RevenueShare], total_share: int, previously_reserved: int) -> None:
        """
        Attach shares this remittance won by compare-and-set; payable is the
        sum of everything it holds
        """
        if self.status is not RemittanceStatus.PENDING:
            raise RemittanceStateError(f"Remittance {self.id} can only claim shares while pending")
        for share in claimed:
            if share.recipient_id != self.recipient_id:
                raise RemittanceStateError(f"Share {share.share_id} belongs to {share.recipient_id}")
            if share.share_id not in self.share_ids:
                self.share_ids.append(share.share_id)
        self.total_share = total_share
        self.previously_reserved = previously_reserved
        self.payable += sum(share.amount for share in claimed)
        self._increment_version()

    def release_claims(self) -> List[str]:
        """Drop all held shares; only a failed or escalated remittance can do this"""
        if self.status not in (RemittanceStatus.FAILED, RemittanceStatus.ESCALATED):
            raise RemittanceStateError(f"Remittance {self.id} is {self.status.value}; shares are not releasable")
        released = self.share_ids
        self.share_ids = []
        self.payable = 0
        self._increment_version()
        return released

    def start_processing(self, at: Optional[datetime] = None) -> None:
        self._transition(RemittanceStatus.PROCESSING, at)
        self.attempts += 1

    def complete(self, transfer_id: Optional[str], at: Optional[datetime] = None) -> None:
        self.transfer_id = transfer_id
        self.last_error = None
        self._transition(RemittanceStatus.COMPLETED, at)

    def fail(self, error: str, at: Optional[datetime] = None) -> None:
        self.last_error = error
        self._transition(RemittanceStatus.FAILED, at)

    def retry(self, at: Optional[datetime] = None) -> None:
        self._transition(RemittanceStatus.PENDING, at)

    def escalate(self, reason: str, at: Optional[datetime] = None) -> None:
        self.last_error = reason
        self._transition(RemittanceStatus.ESCALATED, at)

    def _transition(self, target: RemittanceStatus, at: Optional[datetime]) -> None:
        if not self.status.can_transition_to(target):
            raise RemittanceStateError(
                f"Remittance {self.id} cannot move from {self.status.value} to {target.value}"
            )
        old_status = self.status
        self.status = target
        self.updated_at = at or datetime.utcnow()
        self._increment_version()
        self._add_domain_event(RemittanceStatusChangedEvent(
            remittance_id=self.id,
            recipient_id=self.recipient_id,
            old_status=old_status,
            new_status=target,
            payable=self.payable
        ))
        self._logger.info(f"Remittance {self.id} for {self.recipient_id}: {old_status.value} -> {target.value}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "status": self.status.value,
            "total_share": self.total_share,
            "previously_reserved": self.previously_reserved,
            "payable": self.payable,
            "share_ids": list(self.share_ids),
            "transfer_id": self.transfer_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    def __str__(self) -> str:
        return (
            f"Remittance {self.id} to {self.recipient_id} "
            f"[{self.period_start:%Y-%m-%d} - {self.period_end:%Y-%m-%d}]: "
            f"{self.payable} ({self.status.value})"
        )
