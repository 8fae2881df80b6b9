# File: parkangel/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Revenue Ledger

Repositories give the application layer a collection-like interface to the
ledger while hiding the storage behind it.

Repository Types:
1. Ledger Repositories - ChargeRecord, RevenueShare, Remittance
2. Configuration Stores - Hierarchy snapshots, revenue share splits
3. Unit of Work - Groups ledger writes into one transaction

Storage Implementations:
- In-memory - For tests and single-process use
- SQLAlchemy - For relational databases (unique constraints and
  compare-and-set claims are enforced by the database)
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Optional, List, Dict, Any, Tuple, Sequence, Callable
from datetime import datetime
from decimal import Decimal
from uuid import uuid4
import logging
import threading

from sqlalchemy import (
    create_engine, Column, Integer, BigInteger, String, DateTime, Text,
    JSON, UniqueConstraint, Index, update
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.pool import StaticPool

from ..domain.models import (
    ChargeRecord, ChargeLine, ChargeLineKind, ChargeEventType, AppliedDiscount,
    RevenueShare, RevenueShareConfig, RecipientRole, ParkingType,
    HierarchyNode, PricingConfig, RemittanceStatus,
    DuplicateChargeError, RemittanceStateError, DomainEvent
)
from ..domain.aggregates import PricingHierarchy, Remittance


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class ChargeRecordRepository(ABC):
    """Append-only store of charges, unique per ChargeRecord.ledger_key"""

    @abstractmethod
    def add(self, record: ChargeRecord) -> ChargeRecord:
        """Store a charge; raises DuplicateChargeError if its ledger key is taken"""
        pass

    @abstractmethod
    def find_correction(self, record_id: str) -> Optional[ChargeRecord]:
        """The record compensating record_id, if one was issued"""
        pass

    @abstractmethod
    def get(self, record_id: str) -> Optional[ChargeRecord]:
        pass

    @abstractmethod
    def find_by_booking(self, booking_id: str, event_type: Optional[ChargeEventType] = None) -> List[ChargeRecord]:
        pass

    @abstractmethod
    def count(self) -> int:
        pass


class RevenueShareRepository(ABC):
    """Append-only store of shares; claimed_by is the only column ever updated"""

    @abstractmethod
    def add_all(self, shares: Sequence[RevenueShare]) -> List[RevenueShare]:
        pass

    @abstractmethod
    def get(self, share_id: str) -> Optional[RevenueShare]:
        pass

    @abstractmethod
    def find_by_charge(self, charge_record_id: str) -> List[RevenueShare]:
        pass

    @abstractmethod
    def find_for_recipient(self, recipient_id: str, start: datetime, end: datetime) -> List[RevenueShare]:
        """Shares created in [start, end)"""
        pass

    @abstractmethod
    def find_by_remittance(self, remittance_id: str) -> List[RevenueShare]:
        pass

    @abstractmethod
    def claim(self, share_ids: Sequence[str], remittance_id: str) -> List[RevenueShare]:
        """
        Compare-and-set: set claimed_by on every listed share that is still
        unclaimed; returns the shares this call actually claimed
        """
        pass

    @abstractmethod
    def release(self, remittance_id: str) -> int:
        """Clear claimed_by on every share held by a remittance"""
        pass


class RemittanceRepository(ABC):
    """Remittances, unique per (recipient_id, period_start, period_end)"""

    @abstractmethod
    def add(self, remittance: Remittance) -> Remittance:
        pass

    @abstractmethod
    def get(self, remittance_id: str) -> Optional[Remittance]:
        pass

    @abstractmethod
    def update(self, remittance: Remittance) -> Remittance:
        pass

    @abstractmethod
    def find_by_key(self, recipient_id: str, period_start: datetime, period_end: datetime) -> Optional[Remittance]:
        pass

    @abstractmethod
    def find_by_status(self, status: RemittanceStatus) -> List[Remittance]:
        pass

    @abstractmethod
    def find_for_recipient(self, recipient_id: str) -> List[Remittance]:
        pass


class UnitOfWork(ABC):
    """Unit of Work pattern interface"""

    @abstractmethod
    def __enter__(self) -> 'UnitOfWork':
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

    @abstractmethod
    def commit(self):
        pass

    @abstractmethod
    def rollback(self):
        pass

    @property
    @abstractmethod
    def charges(self) -> ChargeRecordRepository:
        pass

    @property
    @abstractmethod
    def shares(self) -> RevenueShareRepository:
        pass

    @property
    @abstractmethod
    def remittances(self) -> RemittanceRepository:
        pass


# ============================================================================
# CONFIGURATION STORES
# ============================================================================

class InMemoryHierarchyConfigStore:
    """
    Thread-safe holder of the PricingHierarchy snapshot arena

    Readers get immutable snapshots, so only writes take the lock.
    """

    def __init__(self, hierarchy: Optional[PricingHierarchy] = None):
        self._hierarchy = hierarchy or PricingHierarchy()
        self._lock = threading.RLock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def add_node(self, node: HierarchyNode) -> HierarchyNode:
        with self._lock:
            return self._hierarchy.add_node(node)

    def publish_pricing(
        self,
        node_id: str,
        pricing: Optional[PricingConfig],
        effective_from: datetime
    ) -> Tuple[HierarchyNode, List[DomainEvent]]:
        with self._lock:
            snapshot = self._hierarchy.publish_pricing(node_id, pricing, effective_from)
            return snapshot, self._hierarchy.clear_events()

    def get_node(self, node_id: str, as_of: Optional[datetime] = None) -> HierarchyNode:
        return self._hierarchy.get_node(node_id, as_of)

    def get_chain(self, node_id: str, as_of: Optional[datetime] = None) -> List[HierarchyNode]:
        return self._hierarchy.get_chain(node_id, as_of)

    def location_of(self, node_id: str, as_of: Optional[datetime] = None) -> HierarchyNode:
        return self._hierarchy.location_of(node_id, as_of)

    def versions_of(self, node_id: str) -> List[HierarchyNode]:
        return self._hierarchy.versions_of(node_id)

    def children_of(self, node_id: str) -> List[str]:
        return self._hierarchy.children_of(node_id)


class InMemoryRevenueShareConfigRepository:
    """Revenue splits keyed by (owner_id, parking_type)"""

    def __init__(self):
        self._configs: Dict[Tuple[str, ParkingType], RevenueShareConfig] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def save(self, config: RevenueShareConfig) -> RevenueShareConfig:
        with self._lock:
            self._configs[(config.owner_id, config.parking_type)] = config
        self._logger.info(f"Saved revenue split for {config.owner_id} ({config.parking_type.value})")
        return config

    def get(self, owner_id: str, parking_type: ParkingType) -> Optional[RevenueShareConfig]:
        return self._configs.get((owner_id, parking_type))

    def as_mapping(self) -> Dict[Tuple[str, ParkingType], RevenueShareConfig]:
        with self._lock:
            return dict(self._configs)


# ============================================================================
# IN-MEMORY REPOSITORIES (For Testing)
# ============================================================================

class InMemoryChargeRecordRepository(ChargeRecordRepository):

    def __init__(self):
        self._storage: Dict[str, ChargeRecord] = {}
        self._by_key: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, record: ChargeRecord) -> ChargeRecord:
        key = record.ledger_key
        with self._lock:
            if key in self._by_key:
                raise DuplicateChargeError(record.booking_id, record.event_type)
            self._storage[record.record_id] = record
            self._by_key[key] = record.record_id
        self._logger.debug(f"Added charge {record.record_id}")
        return record

    def get(self, record_id: str) -> Optional[ChargeRecord]:
        return self._storage.get(record_id)

    def find_correction(self, record_id: str) -> Optional[ChargeRecord]:
        return next((r for r in self._storage.values() if r.compensates == record_id), None)

    def find_by_booking(self, booking_id: str, event_type: Optional[ChargeEventType] = None) -> List[ChargeRecord]:
        return [
            r for r in self._storage.values()
            if r.booking_id == booking_id and (event_type is None or r.event_type is event_type)
        ]

    def count(self) -> int:
        return len(self._storage)


class InMemoryRevenueShareRepository(RevenueShareRepository):

    def __init__(self):
        self._storage: Dict[str, RevenueShare] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def add_all(self, shares: Sequence[RevenueShare]) -> List[RevenueShare]:
        with self._lock:
            for share in shares:
                if share.share_id in self._storage:
                    raise ValueError(f"Share {share.share_id} already recorded")
            for share in shares:
                self._storage[share.share_id] = share
        return list(shares)

    def get(self, share_id: str) -> Optional[RevenueShare]:
        return self._storage.get(share_id)

    def find_by_charge(self, charge_record_id: str) -> List[RevenueShare]:
        return [s for s in self._storage.values() if s.charge_record_id == charge_record_id]

    def find_for_recipient(self, recipient_id: str, start: datetime, end: datetime) -> List[RevenueShare]:
        return sorted(
            (s for s in self._storage.values()
             if s.recipient_id == recipient_id and start <= s.created_at < end),
            key=lambda s: (s.created_at, s.share_id)
        )

    def find_by_remittance(self, remittance_id: str) -> List[RevenueShare]:
        return [s for s in self._storage.values() if s.claimed_by == remittance_id]

    def claim(self, share_ids: Sequence[str], remittance_id: str) -> List[RevenueShare]:
        claimed = []
        with self._lock:
            for share_id in share_ids:
                share = self._storage.get(share_id)
                if share is None or share.claimed_by is not None:
                    continue
                share = replace(share, claimed_by=remittance_id)
                self._storage[share_id] = share
                claimed.append(share)
        self._logger.debug(f"Remittance {remittance_id} claimed {len(claimed)}/{len(share_ids)} shares")
        return claimed

    def release(self, remittance_id: str) -> int:
        released = 0
        with self._lock:
            for share_id, share in list(self._storage.items()):
                if share.claimed_by == remittance_id:
                    self._storage[share_id] = replace(share, claimed_by=None)
                    released += 1
        return released


class InMemoryRemittanceRepository(RemittanceRepository):
    """
    Stores snapshots of remittance state so callers never share a live
    aggregate across threads
    """

    def __init__(self):
        self._storage: Dict[str, Dict[str, Any]] = {}
        self._by_key: Dict[Tuple[str, datetime, datetime], str] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, remittance: Remittance) -> Remittance:
        with self._lock:
            if remittance.key in self._by_key:
                raise RemittanceStateError(
                    f"Remittance already exists for {remittance.recipient_id} "
                    f"{remittance.period_start} - {remittance.period_end}"
                )
            self._storage[remittance.id] = Mapper.remittance_state(remittance)
            self._by_key[remittance.key] = remittance.id
        self._logger.debug(f"Added remittance {remittance.id}")
        return remittance

    def get(self, remittance_id: str) -> Optional[Remittance]:
        state = self._storage.get(remittance_id)
        return Mapper.remittance_from_state(state) if state else None

    def update(self, remittance: Remittance) -> Remittance:
        with self._lock:
            if remittance.id not in self._storage:
                raise KeyError(f"Remittance {remittance.id} not found")
            self._storage[remittance.id] = Mapper.remittance_state(remittance)
        return remittance

    def find_by_key(self, recipient_id: str, period_start: datetime, period_end: datetime) -> Optional[Remittance]:
        remittance_id = self._by_key.get((recipient_id, period_start, period_end))
        return self.get(remittance_id) if remittance_id else None

    def find_by_status(self, status: RemittanceStatus) -> List[Remittance]:
        return [
            Mapper.remittance_from_state(state) for state in list(self._storage.values())
            if state['status'] is status
        ]

    def find_for_recipient(self, recipient_id: str) -> List[Remittance]:
        return [
            Mapper.remittance_from_state(state) for state in list(self._storage.values())
            if state['recipient_id'] == recipient_id
        ]


class InMemoryLedger:
    """Shared storage behind every InMemoryUnitOfWork"""

    def __init__(self):
        self.charges = InMemoryChargeRecordRepository()
        self.shares = InMemoryRevenueShareRepository()
        self.remittances = InMemoryRemittanceRepository()


class InMemoryUnitOfWork(UnitOfWork):
    """Unit of Work over in-memory repositories; each write applies immediately"""

    def __init__(self, ledger: InMemoryLedger):
        self._ledger = ledger
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> 'InMemoryUnitOfWork':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._logger.debug(f"Exception in unit of work: {exc_val}")

    def commit(self):
        pass

    def rollback(self):
        pass

    @property
    def charges(self) -> ChargeRecordRepository:
        return self._ledger.charges

    @property
    def shares(self) -> RevenueShareRepository:
        return self._ledger.shares

    @property
    def remittances(self) -> RemittanceRepository:
        return self._ledger.remittances


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class ChargeRecordModel(Base):
    """SQLAlchemy model for ChargeRecord"""
    __tablename__ = 'charge_records'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    booking_id = Column(String(64), nullable=False)
    event_type = Column(String(20), nullable=False)
    spot_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    operator_id = Column(String(64))
    parking_type = Column(String(20), nullable=False)
    lines = Column(JSON, nullable=False, default=list)
    subtotal = Column(BigInteger, nullable=False)
    discount = Column(JSON)
    discounted_amount = Column(BigInteger, nullable=False)
    vat_rate = Column(String(16), nullable=False)
    vat_amount = Column(BigInteger, nullable=False)
    total_amount = Column(BigInteger, nullable=False)
    vip_assignment_id = Column(String(64))
    pricing_snapshot = Column(JSON, nullable=False, default=dict)
    compensates = Column(String(36), index=True)
    ledger_key = Column(String(160), nullable=False)
    reason = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('ledger_key', name='uq_charge_ledger_key'),
        Index('ix_charge_booking_event', 'booking_id', 'event_type'),
    )


class RevenueShareModel(Base):
    """SQLAlchemy model for RevenueShare"""
    __tablename__ = 'revenue_shares'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    charge_record_id = Column(String(36), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=False)
    role = Column(String(20), nullable=False)
    amount = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    claimed_by = Column(String(36), index=True)

    __table_args__ = (
        Index('ix_revenue_shares_recipient_created', 'recipient_id', 'created_at'),
    )


class RemittanceModel(Base):
    """SQLAlchemy model for Remittance"""
    __tablename__ = 'remittances'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    recipient_id = Column(String(64), nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    total_share = Column(BigInteger, nullable=False, default=0)
    previously_reserved = Column(BigInteger, nullable=False, default=0)
    payable = Column(BigInteger, nullable=False, default=0)
    share_ids = Column(JSON, nullable=False, default=list)
    transfer_id = Column(String(64))
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('recipient_id', 'period_start', 'period_end', name='uq_remittance_recipient_period'),
    )


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Converts between domain objects and their stored form"""

    @staticmethod
    def charge_to_orm(record: ChargeRecord) -> ChargeRecordModel:
        return ChargeRecordModel(
            id=record.record_id,
            booking_id=record.booking_id,
            event_type=record.event_type.value,
            spot_id=record.spot_id,
            user_id=record.user_id,
            operator_id=record.operator_id,
            parking_type=record.parking_type.value,
            lines=[line.to_dict() for line in record.lines],
            subtotal=record.subtotal,
            discount=record.discount.to_dict() if record.discount else None,
            discounted_amount=record.discounted_amount,
            vat_rate=str(record.vat_rate),
            vat_amount=record.vat_amount,
            total_amount=record.total_amount,
            vip_assignment_id=record.vip_assignment_id,
            pricing_snapshot=record.pricing_snapshot,
            compensates=record.compensates,
            ledger_key=record.ledger_key,
            reason=record.reason,
            created_at=record.created_at
        )

    @staticmethod
    def charge_to_domain(model: ChargeRecordModel) -> ChargeRecord:
        lines = tuple(
            ChargeLine(
                start=datetime.fromisoformat(line['start']),
                end=datetime.fromisoformat(line['end']),
                kind=ChargeLineKind(line['kind']),
                hourly_rate=line['hourly_rate'],
                amount=line['amount'],
                rule_name=line.get('rule_name'),
                occupancy_multiplier=Decimal(line['occupancy_multiplier'])
            )
            for line in model.lines
        )
        discount = None
        if model.discount:
            discount = AppliedDiscount(
                rule_id=model.discount['rule_id'],
                name=model.discount['name'],
                percentage=Decimal(model.discount['percentage']),
                amount_saved=model.discount['amount_saved'],
                is_vat_exempt=model.discount['is_vat_exempt']
            )
        return ChargeRecord(
            record_id=model.id,
            booking_id=model.booking_id,
            event_type=ChargeEventType(model.event_type),
            spot_id=model.spot_id,
            user_id=model.user_id,
            operator_id=model.operator_id,
            parking_type=ParkingType(model.parking_type),
            lines=lines,
            subtotal=model.subtotal,
            discounted_amount=model.discounted_amount,
            vat_rate=Decimal(model.vat_rate),
            vat_amount=model.vat_amount,
            total_amount=model.total_amount,
            discount=discount,
            vip_assignment_id=model.vip_assignment_id,
            pricing_snapshot=model.pricing_snapshot or {},
            created_at=model.created_at,
            compensates=model.compensates,
            reason=model.reason
        )

    @staticmethod
    def share_to_orm(share: RevenueShare) -> RevenueShareModel:
        return RevenueShareModel(
            id=share.share_id,
            charge_record_id=share.charge_record_id,
            recipient_id=share.recipient_id,
            role=share.role.value,
            amount=share.amount,
            created_at=share.created_at,
            claimed_by=share.claimed_by
        )

    @staticmethod
    def share_to_domain(model: RevenueShareModel) -> RevenueShare:
        return RevenueShare(
            share_id=model.id,
            charge_record_id=model.charge_record_id,
            recipient_id=model.recipient_id,
            role=RecipientRole(model.role),
            amount=model.amount,
            created_at=model.created_at,
            claimed_by=model.claimed_by
        )

    @staticmethod
    def remittance_state(remittance: Remittance) -> Dict[str, Any]:
        return {
            'id': remittance.id,
            'recipient_id': remittance.recipient_id,
            'period_start': remittance.period_start,
            'period_end': remittance.period_end,
            'status': remittance.status,
            'total_share': remittance.total_share,
            'previously_reserved': remittance.previously_reserved,
            'payable': remittance.payable,
            'share_ids': list(remittance.share_ids),
            'transfer_id': remittance.transfer_id,
            'attempts': remittance.attempts,
            'last_error': remittance.last_error,
            'created_at': remittance.created_at,
            'updated_at': remittance.updated_at,
            'version': remittance.version,
        }

    @staticmethod
    def remittance_from_state(state: Dict[str, Any]) -> Remittance:
        return Remittance(**state)

    @staticmethod
    def remittance_to_orm(remittance: Remittance, model: Optional[RemittanceModel] = None) -> RemittanceModel:
        model = model or RemittanceModel(id=remittance.id)
        state = Mapper.remittance_state(remittance)
        for key, value in state.items():
            if key == 'id':
                continue
            setattr(model, key, value.value if key == 'status' else value)
        return model

    @staticmethod
    def remittance_to_domain(model: RemittanceModel) -> Remittance:
        return Remittance(
            id=model.id,
            recipient_id=model.recipient_id,
            period_start=model.period_start,
            period_end=model.period_end,
            status=RemittanceStatus(model.status),
            total_share=model.total_share,
            previously_reserved=model.previously_reserved,
            payable=model.payable,
            share_ids=list(model.share_ids or []),
            transfer_id=model.transfer_id,
            attempts=model.attempts,
            last_error=model.last_error,
            created_at=model.created_at,
            updated_at=model.updated_at,
            version=model.version
        )


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyChargeRecordRepository(ChargeRecordRepository):

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, record: ChargeRecord) -> ChargeRecord:
        try:
            with self.session.begin_nested():
                self.session.add(Mapper.charge_to_orm(record))
            self._logger.debug(f"Added charge: {record.record_id}")
            return record
        except IntegrityError as e:
            self._logger.warning(f"Duplicate charge for booking {record.booking_id}: {e.orig}")
            raise DuplicateChargeError(record.booking_id, record.event_type) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Database error adding charge: {e}")
            raise

    def get(self, record_id: str) -> Optional[ChargeRecord]:
        try:
            model = self.session.get(ChargeRecordModel, record_id)
            return Mapper.charge_to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting charge {record_id}: {e}")
            raise

    def find_correction(self, record_id: str) -> Optional[ChargeRecord]:
        model = self.session.query(ChargeRecordModel).filter(ChargeRecordModel.compensates == record_id).first()
        return Mapper.charge_to_domain(model) if model else None

    def find_by_booking(self, booking_id: str, event_type: Optional[ChargeEventType] = None) -> List[ChargeRecord]:
        query = self.session.query(ChargeRecordModel).filter(ChargeRecordModel.booking_id == booking_id)
        if event_type is not None:
            query = query.filter(ChargeRecordModel.event_type == event_type.value)
        return [Mapper.charge_to_domain(m) for m in query.order_by(ChargeRecordModel.created_at).all()]

    def count(self) -> int:
        return self.session.query(ChargeRecordModel).count()


class SQLAlchemyRevenueShareRepository(RevenueShareRepository):

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    def add_all(self, shares: Sequence[RevenueShare]) -> List[RevenueShare]:
        try:
            self.session.add_all([Mapper.share_to_orm(s) for s in shares])
            self.session.flush()
            return list(shares)
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error adding shares: {e}")
            raise

    def get(self, share_id: str) -> Optional[RevenueShare]:
        model = self.session.get(RevenueShareModel, share_id)
        return Mapper.share_to_domain(model) if model else None

    def find_by_charge(self, charge_record_id: str) -> List[RevenueShare]:
        models = self.session.query(RevenueShareModel).filter(
            RevenueShareModel.charge_record_id == charge_record_id
        ).all()
        return [Mapper.share_to_domain(m) for m in models]

    def find_for_recipient(self, recipient_id: str, start: datetime, end: datetime) -> List[RevenueShare]:
        models = self.session.query(RevenueShareModel).filter(
            RevenueShareModel.recipient_id == recipient_id,
            RevenueShareModel.created_at >= start,
            RevenueShareModel.created_at < end
        ).order_by(RevenueShareModel.created_at, RevenueShareModel.id).all()
        return [Mapper.share_to_domain(m) for m in models]

    def find_by_remittance(self, remittance_id: str) -> List[RevenueShare]:
        models = self.session.query(RevenueShareModel).filter(
            RevenueShareModel.claimed_by == remittance_id
        ).all()
        return [Mapper.share_to_domain(m) for m in models]

    def claim(self, share_ids: Sequence[str], remittance_id: str) -> List[RevenueShare]:
        if not share_ids:
            return []
        try:
            self.session.execute(
                update(RevenueShareModel)
                .where(RevenueShareModel.id.in_(list(share_ids)))
                .where(RevenueShareModel.claimed_by.is_(None))
                .values(claimed_by=remittance_id)
                .execution_options(synchronize_session=False)
            )
            models = self.session.query(RevenueShareModel).populate_existing().filter(
                RevenueShareModel.id.in_(list(share_ids)),
                RevenueShareModel.claimed_by == remittance_id
            ).all()
            self._logger.debug(f"Remittance {remittance_id} claimed {len(models)}/{len(share_ids)} shares")
            return [Mapper.share_to_domain(m) for m in models]
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error claiming shares: {e}")
            raise

    def release(self, remittance_id: str) -> int:
        try:
            result = self.session.execute(
                update(RevenueShareModel)
                .where(RevenueShareModel.claimed_by == remittance_id)
                .values(claimed_by=None)
                .execution_options(synchronize_session=False)
            )
            self.session.expire_all()
            return result.rowcount
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error releasing shares: {e}")
            raise


class SQLAlchemyRemittanceRepository(RemittanceRepository):

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, remittance: Remittance) -> Remittance:
        try:
            with self.session.begin_nested():
                self.session.add(Mapper.remittance_to_orm(remittance))
            return remittance
        except IntegrityError as e:
            self._logger.warning(f"Remittance already exists for {remittance.key}: {e.orig}")
            raise RemittanceStateError(f"Remittance already exists for {remittance.recipient_id}") from e

    def get(self, remittance_id: str) -> Optional[Remittance]:
        model = self.session.get(RemittanceModel, remittance_id)
        return Mapper.remittance_to_domain(model) if model else None

    def update(self, remittance: Remittance) -> Remittance:
        try:
            model = self.session.get(RemittanceModel, remittance.id)
            if model is None:
                raise KeyError(f"Remittance {remittance.id} not found")
            Mapper.remittance_to_orm(remittance, model)
            self.session.flush()
            return remittance
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error updating remittance: {e}")
            raise

    def find_by_key(self, recipient_id: str, period_start: datetime, period_end: datetime) -> Optional[Remittance]:
        model = self.session.query(RemittanceModel).filter(
            RemittanceModel.recipient_id == recipient_id,
            RemittanceModel.period_start == period_start,
            RemittanceModel.period_end == period_end
        ).one_or_none()
        return Mapper.remittance_to_domain(model) if model else None

    def find_by_status(self, status: RemittanceStatus) -> List[Remittance]:
        models = self.session.query(RemittanceModel).filter(RemittanceModel.status == status.value).all()
        return [Mapper.remittance_to_domain(m) for m in models]

    def find_for_recipient(self, recipient_id: str) -> List[Remittance]:
        models = self.session.query(RemittanceModel).filter(
            RemittanceModel.recipient_id == recipient_id
        ).order_by(RemittanceModel.period_start).all()
        return [Mapper.remittance_to_domain(m) for m in models]


# ============================================================================
# UNIT OF WORK IMPLEMENTATION
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """SQLAlchemy implementation of Unit of Work; one session per `with` block"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self.session: Optional[Session] = None
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> 'SQLAlchemyUnitOfWork':
        self.session = self.session_factory()
        self._charges = SQLAlchemyChargeRecordRepository(self.session)
        self._shares = SQLAlchemyRevenueShareRepository(self.session)
        self._remittances = SQLAlchemyRemittanceRepository(self.session)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.error(f"Exception in unit of work: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self.session.close()

    def commit(self):
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self):
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    @property
    def charges(self) -> SQLAlchemyChargeRecordRepository:
        return self._charges

    @property
    def shares(self) -> SQLAlchemyRevenueShareRepository:
        return self._shares

    @property
    def remittances(self) -> SQLAlchemyRemittanceRepository:
        return self._remittances


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for creating units of work"""

    @staticmethod
    def create_in_memory_uow_factory(ledger: Optional[InMemoryLedger] = None) -> Callable[[], UnitOfWork]:
        ledger = ledger or InMemoryLedger()
        return lambda: InMemoryUnitOfWork(ledger)

    @staticmethod
    def create_sqlalchemy_uow_factory(database_url: str) -> Callable[[], UnitOfWork]:
        """Create tables if needed and return a factory of SQLAlchemy units of work"""
        engine_kwargs: Dict[str, Any] = {"echo": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs.update(connect_args={"check_same_thread": False}, poolclass=StaticPool)
        engine = create_engine(database_url, **engine_kwargs)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        Base.metadata.create_all(bind=engine)

        return lambda: SQLAlchemyUnitOfWork(SessionLocal)

