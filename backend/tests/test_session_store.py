import json
import time
import unittest
from unittest import mock

import redis

from panelhub.services.session_store import MemorySessionStore, RedisSessionStore


class RedisSessionStoreTests(unittest.TestCase):
    def setUp(self):
        self.client = mock.MagicMock()
        self.store = RedisSessionStore(client=self.client, prefix="test:session")

    def test_save_sets_ttl_from_expiry(self):
        self.store.save_session_meta("p1", {"credential": "tok", "issued_at": time.time(),
                                            "expires_at": time.time() + 120})
        key, value = self.client.set.call_args.args
        self.assertEqual(key, "test:session:p1")
        self.assertEqual(json.loads(value)["credential"], "tok")
        self.assertTrue(100 <= self.client.set.call_args.kwargs["ex"] <= 121)

    def test_save_without_expiry_has_no_ttl(self):
        self.store.save_session_meta("p1", {"credential": "k", "expires_at": None})
        self.assertIsNone(self.client.set.call_args.kwargs["ex"])

    def test_load(self):
        self.client.get.return_value = json.dumps({"credential": "tok"})
        self.assertEqual(self.store.load_session_meta("p1"), {"credential": "tok"})
        self.client.get.assert_called_once_with("test:session:p1")

    def test_load_miss_and_corrupt(self):
        self.client.get.return_value = None
        self.assertIsNone(self.store.load_session_meta("p1"))
        self.client.get.return_value = "{not json"
        self.assertIsNone(self.store.load_session_meta("p1"))
        self.client.get.return_value = "[1, 2]"
        self.assertIsNone(self.store.load_session_meta("p1"))

    def test_redis_down_is_a_miss(self):
        self.client.get.side_effect = redis.ConnectionError("Connection refused")
        self.client.set.side_effect = redis.ConnectionError("Connection refused")
        with self.assertLogs("panelhub.services.session_store", level="WARNING"):
            self.assertIsNone(self.store.load_session_meta("p1"))
        self.store.save_session_meta("p1", {"credential": "tok"})


class MemorySessionStoreTests(unittest.TestCase):
    def test_returns_copies(self):
        store = MemorySessionStore()
        store.save_session_meta("p1", {"credential": "a"})
        meta = store.load_session_meta("p1")
        meta["credential"] = "b"
        self.assertEqual(store.load_session_meta("p1"), {"credential": "a"})
        self.assertIsNone(store.load_session_meta("p2"))
