#!/usr/bin/env python3
"""
Recipient Lock Unit Tests
"""

import unittest
import sys
import threading
import time
from pathlib import Path
from unittest.mock import Mock

sys.path.append(str(Path(__file__).parent.parent.parent))

from redis.exceptions import LockError

from parkangel.domain.models import RemittanceStateError
from parkangel.infrastructure.locks import InMemoryRecipientLocks, RedisRecipientLocks


class TestInMemoryRecipientLocks(unittest.TestCase):

    def setUp(self):
        self.locks = InMemoryRecipientLocks()

    def _run_concurrently(self, recipients):
        active = {}
        overlaps = []
        guard = threading.Lock()

        def work(recipient_id):
            with self.locks.hold(recipient_id):
                with guard:
                    active[recipient_id] = active.get(recipient_id, 0) + 1
                    if active[recipient_id] > 1:
                        overlaps.append(recipient_id)
                time.sleep(0.02)
                with guard:
                    active[recipient_id] -= 1

        threads = [threading.Thread(target=work, args=(r,)) for r in recipients]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return overlaps

    def test_same_recipient_is_serialized(self):
        self.assertEqual(self._run_concurrently(["op-1"] * 5), [])

    def test_different_recipients_do_not_block(self):
        held = threading.Event()
        release = threading.Event()

        def hold_first():
            with self.locks.hold("op-1"):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=hold_first)
        thread.start()
        held.wait(2)
        try:
            with self.locks.hold("host-1"):
                entered = True
        finally:
            release.set()
            thread.join()
        self.assertTrue(entered)

    def test_lock_released_on_error(self):
        with self.assertRaises(ValueError):
            with self.locks.hold("op-1"):
                raise ValueError("boom")
        with self.locks.hold("op-1"):
            pass


class TestRedisRecipientLocks(unittest.TestCase):
    """Distributed locks with the redis client mocked"""

    def setUp(self):
        self.client = Mock()
        self.lock = self.client.lock.return_value
        self.locks = RedisRecipientLocks(client=self.client, timeout=30, blocking_timeout=5)

    def test_hold_acquires_and_releases(self):
        self.lock.acquire.return_value = True
        with self.locks.hold("op-1"):
            self.lock.release.assert_not_called()
        self.client.lock.assert_called_once_with(
            "parkangel:remittance-lock:op-1", timeout=30, blocking_timeout=5
        )
        self.lock.release.assert_called_once()

    def test_acquire_timeout(self):
        self.lock.acquire.return_value = False
        with self.assertRaises(RemittanceStateError):
            with self.locks.hold("op-1"):
                self.fail("lock body must not run")

    def test_expired_lock_release_is_logged(self):
        self.lock.acquire.return_value = True
        self.lock.release.side_effect = LockError("expired")
        with self.assertLogs('RedisRecipientLocks', level='WARNING'):
            with self.locks.hold("op-1"):
                pass


if __name__ == '__main__':
    unittest.main()
