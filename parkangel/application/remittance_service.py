# File: parkangel/application/remittance_service.py
"""
Remittance Application Service

Pays recipients their accumulated revenue shares.

1. RemittanceAggregator - One remittance per (recipient, period). Claims
   shares by compare-and-set, hands the payable to the bank gateway and
   drives the remittance state machine (retry, escalate, release,
   reconcile).
2. RemittanceScheduler - Turns payout schedules into remittance jobs on a
   message queue.
3. RemittanceWorkerPool - Consumes jobs, routing every recipient to the
   same worker so one recipient's runs never overlap.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, date
from typing import Dict, List, Optional, Any, Callable, Protocol, runtime_checkable
import logging
import queue
import threading
import zlib

from ..config import EngineSettings
from ..domain.models import (
    RemittanceStatus, RemittanceFrequency, RemittanceSchedule, EarningsSummary,
    TransferState, TransferStatus,
    PricingEngineError, RemittanceTransferError, RemittanceStateError,
    calculate_next_run_date
)
from ..domain.aggregates import Remittance
from ..infrastructure.locks import RecipientLockProvider, InMemoryRecipientLocks
from ..infrastructure.messaging import MessageQueue, Message, RemittanceJob
from ..infrastructure.repositories import UnitOfWork
from .charging_service import EventPublisher
from .dtos import RemittanceDTO, EarningsSummaryDTO


# ============================================================================
# BANK TRANSFER GATEWAY
# ============================================================================

@runtime_checkable
class BankTransferGateway(Protocol):
    def transfer(self, recipient_id: str, amount: int, reference: str) -> str:
        """
        Send amount (minor units) and return the bank's transfer id. The
        reference is an idempotency key; raise RemittanceTransferError on failure.
        """
        ...

    def lookup_transfer(self, reference: str) -> Optional[TransferStatus]:
        """Status of an earlier transfer, None if the bank never saw it"""
        ...


class RemittanceNotFoundError(PricingEngineError):

    def __init__(self, remittance_id: str):
        self.remittance_id = remittance_id
        super().__init__(f"Remittance {remittance_id} not found")


# ============================================================================
# REMITTANCE AGGREGATOR
# ============================================================================

class RemittanceAggregator:
    """
    Runs payouts per recipient and period

    Every operation for one recipient runs under that recipient's lock.
    Shares are claimed by compare-and-set, so a share is paid by at most
    one remittance even across overlapping periods.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        gateway: BankTransferGateway,
        locks: Optional[RecipientLockProvider] = None,
        event_publisher: Optional[EventPublisher] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.settings = settings or EngineSettings()
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._locks = locks or InMemoryRecipientLocks()
        self._events = event_publisher
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.REMITTANCE_WORKERS,
            thread_name_prefix="bank-transfer"
        )
        self.logger = logging.getLogger(self.__class__.__name__)

    def run_remittance(self, recipient_id: str, period_start: datetime, period_end: datetime) -> Remittance:
        """
        Create (or pick up) the remittance for a recipient and period and pay it

        An existing processing, completed or escalated remittance is returned
        as is. One still pending was cut off before dispatch: it claims what
        it can and is dispatched now. A failed one is retried while the
        retry budget lasts, and escalated after that.
        """
        with self._locks.hold(recipient_id):
            remittance, fresh = self._prepare(recipient_id, period_start, period_end)
            if fresh:
                remittance = self._dispatch(remittance)
            return remittance

    def retry(self, remittance_id: str) -> Remittance:
        """Retry a failed remittance now, or escalate it if the budget is spent"""
        remittance = self.get_remittance(remittance_id)
        with self._locks.hold(remittance.recipient_id):
            remittance = self.get_remittance(remittance_id)
            if remittance.status is not RemittanceStatus.FAILED:
                raise RemittanceStateError(
                    f"Remittance {remittance_id} is {remittance.status.value}; only failed remittances retry"
                )
            if self._retry_or_escalate(remittance):
                remittance = self._dispatch(remittance)
            return remittance

    def escalate(self, remittance_id: str, reason: str = "escalated for manual review") -> Remittance:
        remittance = self.get_remittance(remittance_id)
        with self._locks.hold(remittance.recipient_id):
            with self._uow_factory() as uow:
                remittance = self._load(uow, remittance_id)
                remittance.escalate(reason, self._clock())
                uow.remittances.update(remittance)
            self._flush_events(remittance)
            return remittance

    def release_shares(self, remittance_id: str) -> int:
        """Return a failed or escalated remittance's shares to the pool; payable drops to zero"""
        remittance = self.get_remittance(remittance_id)
        with self._locks.hold(remittance.recipient_id):
            with self._uow_factory() as uow:
                remittance = self._load(uow, remittance_id)
                remittance.release_claims()
                released = uow.shares.release(remittance.id)
                uow.remittances.update(remittance)
            self.logger.info(f"Released {released} share(s) held by remittance {remittance_id}")
            return released

    def reconcile(self) -> List[Remittance]:
        """
        Settle remittances left processing by a transfer timeout, using the
        bank's status for the remittance reference. Never transfers again.
        """
        with self._uow_factory() as uow:
            processing = uow.remittances.find_by_status(RemittanceStatus.PROCESSING)

        settled = []
        for stale in processing:
            with self._locks.hold(stale.recipient_id):
                status = self._gateway.lookup_transfer(stale.id)
                if status is None or status.state is TransferState.PENDING:
                    self.logger.info(f"Transfer for remittance {stale.id} not settled yet")
                    continue
                with self._uow_factory() as uow:
                    remittance = self._load(uow, stale.id)
                    if remittance.status is not RemittanceStatus.PROCESSING:
                        continue
                    if status.state is TransferState.COMPLETED:
                        remittance.complete(status.transfer_id, self._clock())
                    else:
                        remittance.fail(status.error or "transfer rejected by bank", self._clock())
                    uow.remittances.update(remittance)
                self._flush_events(remittance)
                settled.append(remittance)
        if settled:
            self.logger.info(f"Reconciled {len(settled)} remittance(s)")
        return settled

    def get_remittance(self, remittance_id: str) -> Remittance:
        with self._uow_factory() as uow:
            return self._load(uow, remittance_id)

    def find_remittance(self, recipient_id: str, period_start: datetime, period_end: datetime) -> Optional[Remittance]:
        with self._uow_factory() as uow:
            return uow.remittances.find_by_key(recipient_id, period_start, period_end)

    def remittance_report(self, remittance_id: str) -> RemittanceDTO:
        return RemittanceDTO.from_domain(self.get_remittance(remittance_id))

    def earnings_report(self, recipient_id: str, period_start: datetime, period_end: datetime) -> EarningsSummaryDTO:
        summary = self.recipient_earnings(recipient_id, period_start, period_end)
        return EarningsSummaryDTO.from_domain(summary, currency=self.settings.CURRENCY)

    def recipient_earnings(self, recipient_id: str, period_start: datetime, period_end: datetime) -> EarningsSummary:
        """Shares earned in [start, end) and how much of it has been paid out"""
        with self._uow_factory() as uow:
            shares = uow.shares.find_for_recipient(recipient_id, period_start, period_end)
            completed = {
                r.id for r in uow.remittances.find_for_recipient(recipient_id)
                if r.status is RemittanceStatus.COMPLETED
            }
        return EarningsSummary(
            recipient_id=recipient_id,
            period_start=period_start,
            period_end=period_end,
            total_amount=sum(s.amount for s in shares),
            remitted_amount=sum(s.amount for s in shares if s.claimed_by in completed),
            share_count=len(shares)
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Internals (callers hold the recipient lock)
    # ------------------------------------------------------------------

    def _prepare(self, recipient_id: str, period_start: datetime, period_end: datetime):
        """Returns the remittance and whether it is ready to dispatch"""
        with self._uow_factory() as uow:
            existing = uow.remittances.find_by_key(recipient_id, period_start, period_end)
        if existing is not None:
            if existing.status is RemittanceStatus.FAILED:
                return existing, self._retry_or_escalate(existing)
            if existing.status is RemittanceStatus.PENDING:
                self.logger.warning(f"Remittance {existing.id} was left pending; claiming and dispatching it")
                with self._uow_factory() as uow:
                    self._claim(uow, existing)
                    uow.remittances.update(existing)
                self._flush_events(existing)
                return existing, True
            self.logger.info(f"Remittance {existing.id} already {existing.status.value}; returning it")
            return existing, False

        remittance = Remittance(recipient_id, period_start, period_end, created_at=self._clock())
        with self._uow_factory() as uow:
            uow.remittances.add(remittance)
            self._claim(uow, remittance)
            uow.remittances.update(remittance)
        self._flush_events(remittance)
        self.logger.info(f"Created {remittance}")
        return remittance, True

    def _retry_or_escalate(self, remittance: Remittance) -> bool:
        retries_used = max(remittance.attempts - 1, 0)
        with self._uow_factory() as uow:
            if retries_used >= self.settings.REMITTANCE_RETRY_BUDGET:
                remittance.escalate(
                    f"retry budget of {self.settings.REMITTANCE_RETRY_BUDGET} spent; last error: {remittance.last_error}",
                    self._clock()
                )
                uow.remittances.update(remittance)
                ready = False
            else:
                remittance.retry(self._clock())
                self._claim(uow, remittance)
                uow.remittances.update(remittance)
                ready = True
        self._flush_events(remittance)
        return ready

    def _claim(self, uow: UnitOfWork, remittance: Remittance) -> None:
        shares = uow.shares.find_for_recipient(remittance.recipient_id, remittance.period_start, remittance.period_end)
        claimed = uow.shares.claim([s.share_id for s in shares if s.claimed_by is None], remittance.id)
        previously_reserved = sum(
            s.amount for s in shares if s.claimed_by is not None and s.claimed_by != remittance.id
        )
        remittance.record_claims(claimed, sum(s.amount for s in shares), previously_reserved)

    def _dispatch(self, remittance: Remittance) -> Remittance:
        with self._uow_factory() as uow:
            remittance.start_processing(self._clock())
            uow.remittances.update(remittance)
        self._flush_events(remittance)

        if remittance.payable == 0:
            remittance.complete(None, self._clock())
        elif remittance.payable < 0:
            remittance.fail(f"payable {remittance.payable} is negative; nothing to transfer", self._clock())
        else:
            future = self._executor.submit(
                self._gateway.transfer, remittance.recipient_id, remittance.payable, remittance.id
            )
            try:
                transfer_id = future.result(timeout=self.settings.TRANSFER_TIMEOUT_SECONDS)
            except FutureTimeoutError:
                self.logger.warning(
                    f"Transfer for remittance {remittance.id} timed out after "
                    f"{self.settings.TRANSFER_TIMEOUT_SECONDS}s; left processing for reconciliation"
                )
                return remittance
            except RemittanceTransferError as e:
                self.logger.error(f"Transfer for remittance {remittance.id} failed: {e}")
                remittance.fail(str(e), self._clock())
            else:
                remittance.complete(transfer_id, self._clock())

        with self._uow_factory() as uow:
            uow.remittances.update(remittance)
        self._flush_events(remittance)
        return remittance

    def _load(self, uow: UnitOfWork, remittance_id: str) -> Remittance:
        remittance = uow.remittances.get(remittance_id)
        if remittance is None:
            raise RemittanceNotFoundError(remittance_id)
        return remittance

    def _flush_events(self, remittance: Remittance) -> None:
        for event in remittance.clear_events():
            if self._events is not None:
                self._events.publish_event(event)


# ============================================================================
# SCHEDULER
# ============================================================================

class RemittanceScheduler:
    """Publishes a remittance job for every schedule that is due"""

    def __init__(
        self,
        message_queue: MessageQueue,
        topic: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self._queue = message_queue
        self._topic = topic or EngineSettings.REMITTANCE_TOPIC
        self._clock = clock
        self._schedules: Dict[str, RemittanceSchedule] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def add_schedule(
        self,
        recipient_id: str,
        frequency: RemittanceFrequency,
        first_run_date: Optional[date] = None
    ) -> RemittanceSchedule:
        today = self._clock().date()
        schedule = RemittanceSchedule(
            recipient_id=recipient_id,
            frequency=frequency,
            next_run_date=first_run_date or calculate_next_run_date(frequency, today)
        )
        with self._lock:
            self._schedules[recipient_id] = schedule
        self.logger.info(f"Scheduled {frequency.value} remittances for {recipient_id} from {schedule.next_run_date}")
        return schedule

    def get_schedule(self, recipient_id: str) -> Optional[RemittanceSchedule]:
        return self._schedules.get(recipient_id)

    def deactivate(self, recipient_id: str) -> None:
        with self._lock:
            schedule = self._schedules.get(recipient_id)
            if schedule is not None:
                schedule.is_active = False

    def run_due(self, today: Optional[date] = None) -> List[RemittanceJob]:
        """Publish one job per due period; a schedule behind by several periods catches up"""
        today = today or self._clock().date()
        jobs = []
        with self._lock:
            for schedule in self._schedules.values():
                while schedule.is_due(today):
                    period_start, period_end = schedule.current_period()
                    jobs.append(RemittanceJob(
                        source="scheduler",
                        recipient_id=schedule.recipient_id,
                        period_start=period_start,
                        period_end=period_end
                    ))
                    schedule.advance()

        for job in jobs:
            if not self._queue.publish(self._topic, job):
                self.logger.error(f"Could not enqueue remittance job for {job.recipient_id}")
        if jobs:
            self.logger.info(f"Enqueued {len(jobs)} remittance job(s)")
        return jobs


# ============================================================================
# WORKER POOL
# ============================================================================

class RemittanceWorkerPool:
    """
    Runs remittance jobs on a fixed set of worker threads

    A recipient always hashes to the same worker, so its jobs run one at a
    time and in arrival order without a global lock.
    """

    def __init__(self, aggregator: RemittanceAggregator, workers: Optional[int] = None):
        self._aggregator = aggregator
        self.worker_count = workers or aggregator.settings.REMITTANCE_WORKERS
        if self.worker_count < 1:
            raise ValueError("A worker pool needs at least one worker")
        self._queues: List["queue.Queue[Optional[RemittanceJob]]"] = [
            queue.Queue() for _ in range(self.worker_count)
        ]
        self._threads: List[threading.Thread] = []
        self._subscription: Optional[str] = None
        self._source: Optional[MessageQueue] = None
        self.results: List[Remittance] = []
        self.errors: List[Any] = []
        self._results_lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def partition_for(self, recipient_id: str) -> int:
        return zlib.crc32(recipient_id.encode("utf-8")) % self.worker_count

    def start(self) -> None:
        if self._threads:
            return
        for index in range(self.worker_count):
            thread = threading.Thread(
                target=self._work, args=(index,), name=f"remittance-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        self.logger.info(f"Started {self.worker_count} remittance worker(s)")

    def attach(self, message_queue: MessageQueue, topic: Optional[str] = None) -> str:
        """Consume remittance jobs from a message queue topic"""
        self._source = message_queue
        self._subscription = message_queue.subscribe(topic or EngineSettings.REMITTANCE_TOPIC, self._on_message)
        return self._subscription

    def submit(self, job: RemittanceJob) -> None:
        self._queues[self.partition_for(job.recipient_id)].put(job)

    def join(self) -> None:
        """Block until every submitted job has been processed"""
        for q in self._queues:
            q.join()

    def stop(self) -> None:
        if self._source is not None and self._subscription is not None:
            self._source.unsubscribe(self._subscription)
            self._subscription = None
        for q in self._queues:
            q.put(None)
        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []
        self.logger.info("Remittance workers stopped")

    def _on_message(self, message: Message) -> None:
        if not isinstance(message, RemittanceJob):
            self.logger.warning(f"Ignoring non-remittance message {message.message_id}")
            return
        self.submit(message)

    def _work(self, index: int) -> None:
        q = self._queues[index]
        while True:
            job = q.get()
            try:
                if job is None:
                    return
                remittance = self._aggregator.run_remittance(job.recipient_id, job.period_start, job.period_end)
                with self._results_lock:
                    self.results.append(remittance)
            except PricingEngineError as e:
                self.logger.error(f"Remittance job for {job.recipient_id} failed: {e}")
                with self._results_lock:
                    self.errors.append((job, e))
            except Exception as e:
                self.logger.exception(f"Unexpected error in remittance worker {index}: {e}")
                with self._results_lock:
                    self.errors.append((job, e))
            finally:
                q.task_done()
