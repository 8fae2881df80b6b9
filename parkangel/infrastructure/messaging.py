# File: parkangel/infrastructure/messaging.py
"""
Event and Job Transport for the Pricing and Revenue Engine

Everything the engine announces or hands off travels through here:

1. EventBus - synchronous fan-out of domain events inside one process
2. MessageQueue - broker adapters carrying remittance jobs between workers
3. EventStore - Mongo collection keeping the audit trail (rejected claims,
   failed distributions, remittance transitions)
4. MessageBus - front door used by the services; stores, fans out and
   queues each event, with an outbox that retries broker hand-off

Broker traffic is keyed by recipient so one recipient's jobs always land on
the same partition and are consumed in order.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any, Callable, Tuple
from datetime import datetime
import logging
import json
from dataclasses import dataclass, asdict, field
from enum import Enum
from uuid import UUID, uuid4
import time
import threading

import redis
from kafka import KafkaProducer, KafkaConsumer
from kafka.admin import KafkaAdminClient, NewTopic
from kafka.errors import KafkaError
import pymongo
from pymongo.errors import PyMongoError

from ..domain.models import DomainEvent


# ============================================================================
# ENVELOPES
# ============================================================================

class MessageType(str, Enum):
    DOMAIN_EVENT = "domain_event"
    COMMAND = "command"


class EventType(str, Enum):
    """Wire names of the domain events; equal to DomainEvent.event_name"""
    CHARGE_RECORDED = "charge.recorded"
    REVENUE_DISTRIBUTED = "revenue.distributed"
    DISTRIBUTION_FAILED = "revenue.distribution_failed"
    ELIGIBILITY_REJECTED = "eligibility.rejected"
    REMITTANCE_STATUS_CHANGED = "remittance.status_changed"
    PRICING_PUBLISHED = "pricing.published"


EVENTS_TOPIC = "events"


@dataclass
class Message:
    """Common envelope for anything put on a broker"""
    message_id: UUID = field(default_factory=uuid4)
    message_type: MessageType = MessageType.DOMAIN_EVENT
    timestamp: datetime = field(default_factory=datetime.utcnow)
    correlation_id: Optional[UUID] = None
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def partition_key(self) -> str:
        return str(self.message_id)

    def to_dict(self) -> Dict[str, Any]:
        body = asdict(self)
        body.update(
            message_id=str(self.message_id),
            message_type=MessageType(self.message_type).value,
            timestamp=self.timestamp.isoformat(),
            correlation_id=str(self.correlation_id) if self.correlation_id else None
        )
        return body

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> 'Message':
        fields = dict(body)
        fields['message_id'] = UUID(fields['message_id'])
        fields['message_type'] = MessageType(fields['message_type'])
        fields['timestamp'] = datetime.fromisoformat(fields['timestamp'])
        if fields.get('correlation_id'):
            fields['correlation_id'] = UUID(fields['correlation_id'])
        return cls(**fields)


@dataclass
class EventMessage(Message):
    """A domain event as it leaves the process"""
    event_type: EventType = EventType.CHARGE_RECORDED
    aggregate_id: Optional[str] = None
    aggregate_type: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    version: int = 1
    key: Optional[str] = None

    def __post_init__(self):
        self.message_type = MessageType.DOMAIN_EVENT
        self.event_type = EventType(self.event_type)

    @property
    def partition_key(self) -> str:
        return self.key or self.aggregate_id or str(self.message_id)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body['event_type'] = self.event_type.value
        return body

    @classmethod
    def from_domain_event(cls, event: DomainEvent, source: str = "parkangel") -> 'EventMessage':
        """Envelope for a domain event, keyed by recipient when the payload names one"""
        payload = event.payload()
        return cls(
            message_id=UUID(event.event_id),
            timestamp=event.timestamp,
            source=source,
            event_type=EventType(event.event_name),
            aggregate_id=event.aggregate_id,
            aggregate_type=event.aggregate_type,
            data=payload,
            key=payload.get('recipient_id') or event.aggregate_id
        )


@dataclass
class RemittanceJob(Message):
    """Run one recipient's remittance for [period_start, period_end)"""
    recipient_id: str = ""
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    def __post_init__(self):
        self.message_type = MessageType.COMMAND
        if isinstance(self.period_start, str):
            self.period_start = datetime.fromisoformat(self.period_start)
        if isinstance(self.period_end, str):
            self.period_end = datetime.fromisoformat(self.period_end)

    @property
    def partition_key(self) -> str:
        return self.recipient_id

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        for name in ('period_start', 'period_end'):
            value = getattr(self, name)
            body[name] = value.isoformat() if value else None
        return body


def message_from_dict(body: Dict[str, Any]) -> Message:
    """Pick the envelope class from a decoded broker payload"""
    if body.get('message_type') == MessageType.COMMAND.value:
        return RemittanceJob.from_dict(body)
    if 'event_type' in body:
        return EventMessage.from_dict(body)
    return Message.from_dict(body)


def _decode(raw: bytes) -> Message:
    return message_from_dict(json.loads(raw.decode('utf-8')))


# ============================================================================
# IN-PROCESS FAN-OUT
# ============================================================================

class EventHandler(ABC):

    @abstractmethod
    def handle(self, event: EventMessage) -> None:
        pass

    def can_handle(self, event: EventMessage) -> bool:
        return True


class RecordingEventHandler(EventHandler):
    """Collects events in arrival order; backs audit views and tests"""

    def __init__(self):
        self.events: List[EventMessage] = []
        self._lock = threading.Lock()

    def handle(self, event: EventMessage) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EventType) -> List[EventMessage]:
        return [e for e in self.events if e.event_type is event_type]


class EventBus:
    """
    Delivers each event to the handlers registered for its type, on the
    publishing thread. A handler that raises is logged and skipped.
    """

    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        with self._lock:
            registered = self._handlers.setdefault(event_type, [])
            if handler in registered:
                return
            registered.append(handler)
        self._logger.debug(f"{handler.__class__.__name__} listening for {event_type.value}")

    def subscribe_all(self, handler: EventHandler) -> None:
        for event_type in EventType:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        with self._lock:
            registered = self._handlers.get(event_type, [])
            if handler in registered:
                registered.remove(handler)

    def publish(self, event: EventMessage) -> None:
        with self._lock:
            targets = list(self._handlers.get(event.event_type, []))
        self._logger.debug(f"{event.event_type.value} {event.message_id} -> {len(targets)} handler(s)")

        for handler in targets:
            if not handler.can_handle(event):
                continue
            try:
                handler.handle(event)
            except Exception as e:
                self._logger.error(f"{handler.__class__.__name__} failed on {event.event_type.value}: {e}")


# ============================================================================
# BROKER ADAPTERS
# ============================================================================

class MessageQueue(ABC):
    """Topic-based transport between processes"""

    @abstractmethod
    def publish(self, topic: str, message: Message) -> bool:
        """Hand the message to the broker; False when the broker refused it"""

    @abstractmethod
    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Register a callback for the topic and return its subscription id"""

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        pass

    @abstractmethod
    def create_topic(self, topic: str, partitions: int = 1) -> bool:
        """Provision the topic; False when it already exists or cannot be made"""

    def close(self) -> None:
        pass


class RedisMessageQueue(MessageQueue):
    """Redis pub/sub channels with one listener thread per queue"""

    def __init__(self, redis_url: str = "redis://localhost:6379", **kwargs):
        self.redis_url = redis_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.redis_client = redis.Redis.from_url(redis_url, **kwargs)
        self.pubsub = self.redis_client.pubsub()

        self._channels: Dict[str, str] = {}
        self._callbacks: Dict[str, Callable[[Message], None]] = {}
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def publish(self, topic: str, message: Message) -> bool:
        try:
            receivers = self.redis_client.publish(topic, message.to_json())
        except redis.RedisError as e:
            self._logger.error(f"Redis refused {message.message_id} on {topic}: {e}")
            return False
        self._logger.debug(f"{message.message_id} on {topic} reached {receivers} subscriber(s)")
        return receivers > 0

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        subscription_id = str(uuid4())
        self._channels[subscription_id] = topic
        self._callbacks[subscription_id] = callback
        self.pubsub.subscribe(topic)
        self._start_listener()
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        topic = self._channels.pop(subscription_id, None)
        if topic is None:
            return False
        self._callbacks.pop(subscription_id, None)
        if topic not in self._channels.values():
            self.pubsub.unsubscribe(topic)
        return True

    def create_topic(self, topic: str, partitions: int = 1) -> bool:
        # channels exist as soon as someone publishes; there are no partitions
        return True

    def _start_listener(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._listen, daemon=True)
        self._thread.start()
        self._logger.info(f"Listening on {self.redis_url}")

    def _listen(self):
        while self._running:
            try:
                raw = self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except redis.RedisError as e:
                self._logger.error(f"Listener lost Redis: {e}")
                time.sleep(1)
                continue
            if raw and raw['type'] == 'message':
                self._handle_message(raw)

    def _handle_message(self, raw: Dict[str, Any]):
        topic = raw['channel'].decode('utf-8')
        try:
            message = _decode(raw['data'])
        except (ValueError, KeyError, TypeError) as e:
            self._logger.error(f"Unreadable payload on {topic} dropped: {e}")
            return

        for subscription_id, channel in list(self._channels.items()):
            if channel != topic:
                continue
            try:
                self._callbacks[subscription_id](message)
            except Exception as e:
                self._logger.error(f"Subscriber {subscription_id} failed on {message.message_id}: {e}")

    def close(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)
        self.pubsub.close()
        self.redis_client.close()


class KafkaMessageQueue(MessageQueue):
    """
    Kafka topics consumed by a shared group

    The partition key becomes the Kafka record key, so every job for a
    recipient is read by the same group member in publish order.
    """

    def __init__(self, bootstrap_servers: str = "localhost:9092", **kwargs):
        self.bootstrap_servers = bootstrap_servers
        self._logger = logging.getLogger(self.__class__.__name__)

        self.consumer_config = {
            'bootstrap_servers': bootstrap_servers,
            'group_id': kwargs.get('group_id', 'parkangel-remittance'),
            'enable_auto_commit': kwargs.get('enable_auto_commit', True),
            'auto_offset_reset': kwargs.get('auto_offset_reset', 'earliest'),
            **kwargs.get('consumer_config', {})
        }
        self.producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            key_serializer=lambda k: k.encode('utf-8') if k else None,
            value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8'),
            **kwargs.get('producer_config', {})
        )

        self._consumers: Dict[str, KafkaConsumer] = {}
        self._threads: Dict[str, threading.Thread] = {}

    def publish(self, topic: str, message: Message) -> bool:
        try:
            sent = self.producer.send(topic=topic, key=message.partition_key, value=message.to_dict())
            written = sent.get(timeout=10)
        except KafkaError as e:
            self._logger.error(f"Kafka refused {message.message_id} on {topic}: {e}")
            return False
        self._logger.debug(f"{message.message_id} written to {topic}[{written.partition}]@{written.offset}")
        return True

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        subscription_id = str(uuid4())
        consumer = KafkaConsumer(topic, **self.consumer_config)
        worker = threading.Thread(target=self._consume, args=(consumer, callback), daemon=True)
        self._consumers[subscription_id] = consumer
        self._threads[subscription_id] = worker
        worker.start()
        self._logger.info(f"Group {self.consumer_config['group_id']} consuming {topic}")
        return subscription_id

    def _consume(self, consumer: KafkaConsumer, callback: Callable[[Message], None]):
        try:
            for record in consumer:
                try:
                    callback(_decode(record.value))
                except Exception as e:
                    self._logger.error(f"Record at offset {record.offset} not processed: {e}")
        except KafkaError as e:
            self._logger.error(f"Consumer stopped: {e}")

    def unsubscribe(self, subscription_id: str) -> bool:
        consumer = self._consumers.pop(subscription_id, None)
        if consumer is None:
            return False
        consumer.close()
        worker = self._threads.pop(subscription_id, None)
        if worker:
            worker.join(timeout=5.0)
        return True

    def create_topic(self, topic: str, partitions: int = 1) -> bool:
        admin = KafkaAdminClient(bootstrap_servers=self.bootstrap_servers)
        try:
            admin.create_topics(new_topics=[NewTopic(name=topic, num_partitions=partitions, replication_factor=1)])
        except KafkaError as e:
            self._logger.warning(f"Topic {topic} not created: {e}")
            return False
        finally:
            admin.close()
        self._logger.info(f"Created topic {topic} with {partitions} partition(s)")
        return True

    def close(self):
        for subscription_id in list(self._consumers):
            self.unsubscribe(subscription_id)
        self.producer.close()


class InMemoryMessageQueue(MessageQueue):
    """Single-process queue: callbacks run inside publish, history is kept"""

    def __init__(self):
        self._subscriptions: Dict[str, Tuple[str, Callable[[Message], None]]] = {}
        self._history: Dict[str, List[Message]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, message: Message) -> bool:
        with self._lock:
            self._history.setdefault(topic, []).append(message)
            callbacks = [cb for t, cb in self._subscriptions.values() if t == topic]

        for callback in callbacks:
            try:
                callback(message)
            except Exception as e:
                self._logger.error(f"Subscriber on {topic} failed on {message.message_id}: {e}")
        return True

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        subscription_id = str(uuid4())
        with self._lock:
            self._history.setdefault(topic, [])
            self._subscriptions[subscription_id] = (topic, callback)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def create_topic(self, topic: str, partitions: int = 1) -> bool:
        with self._lock:
            if topic in self._history:
                return False
            self._history[topic] = []
            return True

    def get_messages(self, topic: str) -> List[Message]:
        with self._lock:
            return list(self._history.get(topic, []))


# ============================================================================
# AUDIT TRAIL
# ============================================================================

class EventStore:
    """
    Append-only Mongo collection of every published domain event

    Documents are keyed by message id, so a replayed event is rejected by
    Mongo instead of being stored twice.
    """

    def __init__(self, mongo_url: str = "mongodb://localhost:27017", database: str = "parkangel", **kwargs):
        self.mongo_url = mongo_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.client = pymongo.MongoClient(mongo_url, **kwargs)
        self.events_collection = self.client[database]['audit_events']
        self.events_collection.create_index([('aggregate_id', 1), ('timestamp', 1)])
        self.events_collection.create_index([('key', 1), ('timestamp', 1)])
        self.events_collection.create_index([('event_type', 1)])

    def save(self, event: EventMessage) -> bool:
        try:
            acknowledged = self.events_collection.insert_one(self._event_to_document(event)).acknowledged
        except PyMongoError as e:
            self._logger.error(f"Audit write for {event.event_type.value} {event.message_id} failed: {e}")
            return False
        return acknowledged

    def history(self, aggregate_id: str) -> List[EventMessage]:
        """Events of one charge, remittance or pricing node, oldest first"""
        cursor = self.events_collection.find({'aggregate_id': aggregate_id}).sort('timestamp', 1)
        return [self._document_to_event(doc) for doc in cursor]

    def _event_to_document(self, event: EventMessage) -> Dict[str, Any]:
        document = event.to_dict()
        document['_id'] = document['message_id']
        document['timestamp'] = event.timestamp
        return document

    def _document_to_event(self, doc: Dict[str, Any]) -> EventMessage:
        return EventMessage(
            message_id=UUID(doc['message_id']),
            event_type=EventType(doc['event_type']),
            timestamp=doc['timestamp'],
            source=doc.get('source'),
            metadata=doc.get('metadata', {}),
            aggregate_id=doc.get('aggregate_id'),
            aggregate_type=doc.get('aggregate_type'),
            data=doc.get('data', {}),
            version=doc.get('version', 1),
            key=doc.get('key')
        )

    def close(self):
        self.client.close()


# ============================================================================
# MESSAGE BUS
# ============================================================================

class MessageBus:
    """
    What the services publish through

    A domain event is written to the audit trail, fanned out on the event
    bus and then parked in the outbox for the broker. The outbox is drained
    by one thread at a time with exponential backoff; messages that never
    make it are kept in dead_letters. With background_delivery off the
    publishing thread drains the outbox itself.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        message_queue: Optional[MessageQueue] = None,
        event_store: Optional[EventStore] = None,
        background_delivery: bool = True
    ):
        self.event_bus = event_bus or EventBus()
        self.message_queue = message_queue
        self.event_store = event_store
        self.background_delivery = background_delivery
        self._logger = logging.getLogger(self.__class__.__name__)

        self._outbox: List[Tuple[str, Message]] = []
        self._outbox_lock = threading.Lock()
        self._draining = False
        self.dead_letters: List[Tuple[str, Message]] = []

        self.max_retries = 3
        self.retry_delay = 1.0

    def publish_event(self, event: DomainEvent, store: bool = True) -> EventMessage:
        message = EventMessage.from_domain_event(event)
        self._logger.info(f"{message.event_type.value} for {message.aggregate_type} {message.aggregate_id}")

        if store and self.event_store:
            self.event_store.save(message)
        self.event_bus.publish(message)
        if self.message_queue:
            self._enqueue(EVENTS_TOPIC, message)
        return message

    def send(self, topic: str, message: Message) -> None:
        """Put a command such as a RemittanceJob on the broker"""
        if self.message_queue is None:
            raise RuntimeError("No message queue attached to this bus")
        self._enqueue(topic, message)

    def subscribe_to_events(self, event_type: EventType, handler: EventHandler) -> None:
        self.event_bus.subscribe(event_type, handler)

    def subscribe_to_queue(self, topic: str, callback: Callable[[Message], None]) -> str:
        if self.message_queue is None:
            raise RuntimeError("No message queue attached to this bus")
        return self.message_queue.subscribe(topic, callback)

    def _enqueue(self, topic: str, message: Message) -> None:
        with self._outbox_lock:
            self._outbox.append((topic, message))
            if self._draining:
                return
            self._draining = True

        if self.background_delivery:
            threading.Thread(target=self._drain, daemon=True).start()
        else:
            self._drain()

    def _drain(self) -> None:
        while True:
            with self._outbox_lock:
                if not self._outbox:
                    self._draining = False
                    return
                topic, message = self._outbox.pop(0)

            if self._deliver(topic, message):
                continue
            self._logger.error(f"{message.message_id} for {topic} dead-lettered after {self.max_retries} attempts")
            with self._outbox_lock:
                self.dead_letters.append((topic, message))

    def _deliver(self, topic: str, message: Message) -> bool:
        for attempt in range(1, self.max_retries + 1):
            if self.message_queue.publish(topic, message):
                return True
            self._logger.warning(f"Broker attempt {attempt} for {message.message_id} on {topic} failed")
            if attempt < self.max_retries:
                time.sleep(self.retry_delay * (2 ** (attempt - 1)))
        return False

    def close(self):
        if self.message_queue:
            self.message_queue.close()
        if self.event_store:
            self.event_store.close()


# ============================================================================
# WIRING
# ============================================================================

class MessageBrokerFactory:
    """Builds a MessageBus around the broker named in configuration"""

    BROKERS: Dict[str, Callable[..., MessageQueue]] = {
        "redis": RedisMessageQueue,
        "kafka": KafkaMessageQueue,
        "memory": InMemoryMessageQueue,
    }

    @staticmethod
    def create_message_bus(
        broker_type: str = "memory",
        mongo_url: Optional[str] = None,
        **broker_kwargs
    ) -> MessageBus:
        """
        The in-memory broker delivers on the caller's thread and has no
        audit trail unless a mongo_url is given.
        """
        broker_class = MessageBrokerFactory.BROKERS.get(broker_type)
        if broker_class is None:
            raise ValueError(f"Unknown broker type: {broker_type}")

        return MessageBus(
            event_bus=EventBus(),
            message_queue=broker_class(**broker_kwargs),
            event_store=EventStore(mongo_url) if mongo_url else None,
            background_delivery=broker_type != "memory"
        )
