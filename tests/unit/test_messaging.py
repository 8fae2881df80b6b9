#!/usr/bin/env python3
"""
Messaging Unit Tests

Tests for message serialization, the event bus, the broker adapters
(with Redis, Kafka and MongoDB mocked) and the outbox of the message bus.
"""

import unittest
import sys
import json
from pathlib import Path
from datetime import datetime
from unittest.mock import Mock, MagicMock, patch

sys.path.append(str(Path(__file__).parent.parent.parent))

import redis
from kafka.errors import KafkaError

from parkangel.domain.models import (
    RemittanceStatus, RemittanceStatusChangedEvent, EligibilityRejectedEvent
)
from parkangel.infrastructure.messaging import (
    EventMessage, EventType, RemittanceJob, Message, MessageType, message_from_dict,
    EventBus, EventHandler, RecordingEventHandler, InMemoryMessageQueue, MessageQueue,
    RedisMessageQueue, KafkaMessageQueue, EventStore, MessageBus, MessageBrokerFactory,
    EVENTS_TOPIC
)


def remittance_event(recipient_id="op-1"):
    return RemittanceStatusChangedEvent(
        remittance_id="rem-1",
        recipient_id=recipient_id,
        old_status=RemittanceStatus.PENDING,
        new_status=RemittanceStatus.PROCESSING,
        payable=7000
    )


class TestMessages(unittest.TestCase):
    """Unit tests for message classes"""

    def test_event_message_from_domain_event(self):
        event = remittance_event()
        message = EventMessage.from_domain_event(event)

        self.assertEqual(message.event_type, EventType.REMITTANCE_STATUS_CHANGED)
        self.assertEqual(str(message.message_id), event.event_id)
        self.assertEqual(message.aggregate_id, "rem-1")
        self.assertEqual(message.partition_key, "op-1")
        self.assertEqual(message.data["new_status"], "processing")

    def test_event_message_round_trip(self):
        message = EventMessage.from_domain_event(EligibilityRejectedEvent("user-1", "pwd", "no record", "bk-1"))
        restored = message_from_dict(json.loads(message.to_json()))

        self.assertIsInstance(restored, EventMessage)
        self.assertEqual(restored.event_type, EventType.ELIGIBILITY_REJECTED)
        self.assertEqual(restored.message_id, message.message_id)
        self.assertEqual(restored.data, {"claim": "pwd", "reason": "no record", "booking_id": "bk-1"})

    def test_remittance_job_round_trip(self):
        job = RemittanceJob(recipient_id="op-1", period_start=datetime(2024, 6, 1), period_end=datetime(2024, 6, 8))
        restored = message_from_dict(json.loads(job.to_json()))

        self.assertIsInstance(restored, RemittanceJob)
        self.assertEqual(restored.message_type, MessageType.COMMAND)
        self.assertEqual(restored.period_end, datetime(2024, 6, 8))
        self.assertEqual(restored.partition_key, "op-1")

    def test_plain_message_partition_key(self):
        message = Message()
        self.assertEqual(message.partition_key, str(message.message_id))


class TestEventBus(unittest.TestCase):
    """Unit tests for EventBus"""

    def setUp(self):
        self.bus = EventBus()
        self.message = EventMessage.from_domain_event(remittance_event())

    def test_publish_to_subscribers(self):
        handler = RecordingEventHandler()
        self.bus.subscribe(EventType.REMITTANCE_STATUS_CHANGED, handler)
        self.bus.subscribe(EventType.REMITTANCE_STATUS_CHANGED, handler)
        self.bus.publish(self.message)
        self.assertEqual(handler.events, [self.message])

    def test_other_event_types_not_delivered(self):
        handler = RecordingEventHandler()
        self.bus.subscribe(EventType.CHARGE_RECORDED, handler)
        self.bus.publish(self.message)
        self.assertEqual(handler.events, [])

    def test_failing_handler_does_not_stop_others(self):
        failing = Mock(spec=EventHandler)
        failing.can_handle.return_value = True
        failing.handle.side_effect = RuntimeError("boom")
        recording = RecordingEventHandler()
        self.bus.subscribe_all(failing)
        self.bus.subscribe_all(recording)

        self.bus.publish(self.message)
        failing.handle.assert_called_once_with(self.message)
        self.assertEqual(len(recording.events), 1)

    def test_unsubscribe(self):
        handler = RecordingEventHandler()
        self.bus.subscribe(EventType.REMITTANCE_STATUS_CHANGED, handler)
        self.bus.unsubscribe(EventType.REMITTANCE_STATUS_CHANGED, handler)
        self.bus.publish(self.message)
        self.assertEqual(handler.events, [])


class TestInMemoryMessageQueue(unittest.TestCase):

    def test_publish_subscribe(self):
        queue = InMemoryMessageQueue()
        received = []
        subscription = queue.subscribe("remittance-jobs", received.append)
        job = RemittanceJob(recipient_id="op-1")

        self.assertTrue(queue.publish("remittance-jobs", job))
        self.assertEqual(received, [job])
        self.assertEqual(queue.get_messages("remittance-jobs"), [job])

        self.assertTrue(queue.unsubscribe(subscription))
        queue.publish("remittance-jobs", job)
        self.assertEqual(len(received), 1)

    def test_create_topic_once(self):
        queue = InMemoryMessageQueue()
        self.assertTrue(queue.create_topic("remittance-jobs", partitions=4))
        self.assertFalse(queue.create_topic("remittance-jobs"))
        self.assertEqual(queue.get_messages("remittance-jobs"), [])


class TestRedisMessageQueue(unittest.TestCase):
    """Redis adapter with the client mocked"""

    def setUp(self):
        patcher = patch('parkangel.infrastructure.messaging.redis.Redis.from_url')
        self.from_url = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = self.from_url.return_value
        self.queue = RedisMessageQueue("redis://cache:6379")

    def test_publish(self):
        self.client.publish.return_value = 1
        job = RemittanceJob(recipient_id="op-1")
        self.assertTrue(self.queue.publish("remittance-jobs", job))
        topic, payload = self.client.publish.call_args[0]
        self.assertEqual(topic, "remittance-jobs")
        self.assertEqual(json.loads(payload)["recipient_id"], "op-1")

    def test_publish_error(self):
        self.client.publish.side_effect = redis.RedisError("down")
        self.assertFalse(self.queue.publish("remittance-jobs", RemittanceJob(recipient_id="op-1")))

    def test_incoming_message_dispatch(self):
        received = []
        with patch.object(RedisMessageQueue, '_start_listener'):
            self.queue.subscribe("remittance-jobs", received.append)
        job = RemittanceJob(recipient_id="op-1")

        self.queue._handle_message({
            'type': 'message',
            'channel': b'remittance-jobs',
            'data': job.to_json().encode('utf-8'),
        })
        self.queue._handle_message({'type': 'message', 'channel': b'remittance-jobs', 'data': b'not json'})

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].recipient_id, "op-1")


class TestKafkaMessageQueue(unittest.TestCase):
    """Kafka adapter with the producer mocked"""

    def setUp(self):
        patcher = patch('parkangel.infrastructure.messaging.KafkaProducer')
        self.producer_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.producer = self.producer_class.return_value
        self.queue = KafkaMessageQueue("kafka:9092", group_id="workers")

    def test_messages_keyed_by_recipient(self):
        future = MagicMock()
        future.get.return_value = Mock(partition=2, offset=17)
        self.producer.send.return_value = future

        self.assertTrue(self.queue.publish("remittance-jobs", RemittanceJob(recipient_id="host-7")))
        kwargs = self.producer.send.call_args[1]
        self.assertEqual(kwargs["key"], "host-7")
        self.assertEqual(kwargs["value"]["recipient_id"], "host-7")
        self.assertEqual(self.queue.consumer_config["group_id"], "workers")

    def test_publish_error(self):
        self.producer.send.side_effect = KafkaError("no brokers")
        self.assertFalse(self.queue.publish("remittance-jobs", RemittanceJob(recipient_id="op-1")))


class TestEventStore(unittest.TestCase):
    """Mongo-backed audit trail with the client mocked"""

    @patch('parkangel.infrastructure.messaging.pymongo.MongoClient')
    def test_save(self, mongo_client):
        collection = MagicMock()
        mongo_client.return_value.__getitem__.return_value.__getitem__.return_value = collection
        collection.insert_one.return_value = Mock(acknowledged=True)

        store = EventStore("mongodb://audit:27017")
        message = EventMessage.from_domain_event(EligibilityRejectedEvent("user-1", "senior_citizen", "expired"))
        self.assertTrue(store.save(message))

        document = collection.insert_one.call_args[0][0]
        self.assertEqual(document["_id"], str(message.message_id))
        self.assertEqual(document["event_type"], "eligibility.rejected")
        self.assertEqual(document["data"]["claim"], "senior_citizen")
        self.assertEqual(collection.create_index.call_count, 3)

    @patch('parkangel.infrastructure.messaging.pymongo.MongoClient')
    def test_document_round_trip(self, mongo_client):
        store = EventStore()
        message = EventMessage.from_domain_event(remittance_event())
        restored = store._document_to_event(store._event_to_document(message))
        self.assertEqual(restored.message_id, message.message_id)
        self.assertEqual(restored.key, "op-1")

    @patch('parkangel.infrastructure.messaging.pymongo.MongoClient')
    def test_history_sorted_by_time(self, mongo_client):
        collection = MagicMock()
        mongo_client.return_value.__getitem__.return_value.__getitem__.return_value = collection
        store = EventStore()
        message = EventMessage.from_domain_event(remittance_event())
        collection.find.return_value.sort.return_value = [store._event_to_document(message)]

        history = store.history("rem-1")

        collection.find.assert_called_once_with({'aggregate_id': 'rem-1'})
        collection.find.return_value.sort.assert_called_once_with('timestamp', 1)
        self.assertEqual([e.message_id for e in history], [message.message_id])


class TestMessageBus(unittest.TestCase):
    """Unit tests for MessageBus routing and outbox"""

    def test_publish_event_reaches_all_channels(self):
        queue = InMemoryMessageQueue()
        store = Mock(spec=EventStore)
        bus = MessageBus(message_queue=queue, event_store=store, background_delivery=False)
        handler = RecordingEventHandler()
        bus.subscribe_to_events(EventType.REMITTANCE_STATUS_CHANGED, handler)

        message = bus.publish_event(remittance_event())

        store.save.assert_called_once_with(message)
        self.assertEqual(handler.events, [message])
        self.assertEqual(queue.get_messages(EVENTS_TOPIC), [message])

    def test_failed_delivery_goes_to_dead_letters(self):
        queue = Mock(spec=MessageQueue)
        queue.publish.return_value = False
        bus = MessageBus(message_queue=queue, background_delivery=False)
        bus.retry_delay = 0

        job = RemittanceJob(recipient_id="op-1")
        bus.send("remittance-jobs", job)

        self.assertEqual(queue.publish.call_count, bus.max_retries)
        self.assertEqual(bus.dead_letters, [("remittance-jobs", job)])

    def test_retry_succeeds(self):
        queue = Mock(spec=MessageQueue)
        queue.publish.side_effect = [False, True]
        bus = MessageBus(message_queue=queue, background_delivery=False)
        bus.retry_delay = 0

        bus.send("remittance-jobs", RemittanceJob(recipient_id="op-1"))
        self.assertEqual(queue.publish.call_count, 2)
        self.assertEqual(bus.dead_letters, [])

    def test_send_without_queue(self):
        with self.assertRaises(RuntimeError):
            MessageBus().send("remittance-jobs", RemittanceJob(recipient_id="op-1"))

    def test_factory(self):
        bus = MessageBrokerFactory.create_message_bus("memory")
        self.assertIsInstance(bus.message_queue, InMemoryMessageQueue)
        self.assertFalse(bus.background_delivery)
        self.assertIsNone(bus.event_store)
        with self.assertRaises(ValueError):
            MessageBrokerFactory.create_message_bus("rabbitmq")


if __name__ == '__main__':
    unittest.main()
