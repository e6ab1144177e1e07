import unittest
from unittest import mock

import requests
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chiccanto.core.database import Base
from chiccanto.models.kv_entry import KVEntry
from chiccanto.services.kv_store import (
    CloudflareKVStore,
    KVStoreError,
    MemoryKVStore,
    SQLKVStore,
    build_kv_store,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class StoreContract:
    """Behaviour shared by every store; mixed into concrete test cases."""

    def make_store(self, clock):
        raise NotImplementedError

    def count_entries(self):
        raise NotImplementedError

    def setUp(self):
        self.clock = FakeClock()
        self.store = self.make_store(self.clock)

    def test_get_missing_returns_none(self):
        self.assertIsNone(self.store.get("nope"))

    def test_put_then_get(self):
        self.store.put("k", "v1")
        self.assertEqual(self.store.get("k"), "v1")
        self.store.put("k", "v2")
        self.assertEqual(self.store.get("k"), "v2")

    def test_delete(self):
        self.store.put("k", "v")
        self.store.delete("k")
        self.assertIsNone(self.store.get("k"))
        self.store.delete("k")

    def test_ttl_expiry(self):
        self.store.put("k", "v", ttl_s=10)
        self.clock.now += 9
        self.assertEqual(self.store.get("k"), "v")
        self.clock.now += 2
        self.assertIsNone(self.store.get("k"))

    def test_compare_and_set_if_absent(self):
        self.assertTrue(self.store.compare_and_set("k", None, "first"))
        self.assertFalse(self.store.compare_and_set("k", None, "second"))
        self.assertEqual(self.store.get("k"), "first")

    def test_compare_and_set_on_expected_value(self):
        self.store.put("k", "a")
        self.assertFalse(self.store.compare_and_set("k", "b", "c"))
        self.assertEqual(self.store.get("k"), "a")
        self.assertTrue(self.store.compare_and_set("k", "a", "c"))
        self.assertEqual(self.store.get("k"), "c")

    def test_compare_and_set_treats_expired_as_absent(self):
        self.store.put("k", "old", ttl_s=5)
        self.clock.now += 10
        self.assertFalse(self.store.compare_and_set("k", "old", "new"))
        self.assertTrue(self.store.compare_and_set("k", None, "new"))
        self.assertEqual(self.store.get("k"), "new")

    def test_purge_expired_drops_only_expired(self):
        self.store.put("keep", "v")
        self.store.put("short", "v", ttl_s=5)
        self.store.put("long", "v", ttl_s=500)
        self.clock.now += 10
        self.assertEqual(self.store.purge_expired(), 1)
        self.assertEqual(self.count_entries(), 2)
        self.assertEqual(self.store.get("keep"), "v")
        self.assertEqual(self.store.get("long"), "v")
        self.assertEqual(self.store.purge_expired(), 0)

    def test_ttl_writes_clear_old_rate_windows(self):
        for window in range(50):
            for ip in range(20):
                self.store.compare_and_set(f"rl:redeem:10.0.0.{ip}:{window}", None, "1", ttl_s=660)
            self.clock.now += 600
        self.assertLessEqual(self.count_entries(), 40)
        self.clock.now += 1000
        self.store.purge_expired()
        self.assertEqual(self.count_entries(), 0)

    def test_json_helpers(self):
        self.store.put_json("obj", {"a": [1, 2], "b": "ü"})
        self.assertEqual(self.store.get_json("obj"), {"a": [1, 2], "b": "ü"})
        self.store.put("broken", "{not json")
        self.assertIsNone(self.store.get_json("broken"))


class TestMemoryKVStore(StoreContract, unittest.TestCase):
    def make_store(self, clock):
        return MemoryKVStore(clock=clock)

    def count_entries(self):
        return len(self.store._items)

    def test_keys_by_prefix(self):
        self.store.put("ac:ONE", "1")
        self.store.put("ac:TWO", "2", ttl_s=1)
        self.store.put("order:1", "x")
        self.assertEqual(sorted(self.store.keys("ac:")), ["ac:ONE", "ac:TWO"])
        self.clock.now += 5
        self.assertEqual(self.store.keys("ac:"), ["ac:ONE"])


class TestSQLKVStore(StoreContract, unittest.TestCase):
    def make_store(self, clock):
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(bind=engine)
        self.addCleanup(engine.dispose)
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        return SQLKVStore(self.session_factory, clock=clock)

    def count_entries(self):
        db = self.session_factory()
        try:
            return db.query(KVEntry).count()
        finally:
            db.close()


def _response(status: int, text: str = "") -> mock.Mock:
    resp = mock.Mock()
    resp.status_code = status
    resp.text = text
    return resp


class TestCloudflareKVStore(unittest.TestCase):
    def setUp(self):
        self.store = CloudflareKVStore(account_id="acct", namespace_id="ns", api_token="tok")
        self.base = "https://api.cloudflare.com/client/v4/accounts/acct/storage/kv/namespaces/ns/values/"

    def test_get_quotes_key_and_sends_token(self):
        with mock.patch("chiccanto.services.kv_store.requests.get", return_value=_response(200, "v")) as get:
            self.assertEqual(self.store.get("ac:CC-S/1"), "v")
        url = get.call_args.args[0]
        self.assertEqual(url, self.base + "ac%3ACC-S%2F1")
        self.assertEqual(get.call_args.kwargs["headers"], {"authorization": "Bearer tok"})

    def test_get_missing(self):
        with mock.patch("chiccanto.services.kv_store.requests.get", return_value=_response(404)):
            self.assertIsNone(self.store.get("k"))

    def test_get_error_raises(self):
        with mock.patch("chiccanto.services.kv_store.requests.get", return_value=_response(500)):
            with self.assertRaises(KVStoreError):
                self.store.get("k")
        with mock.patch("chiccanto.services.kv_store.requests.get", side_effect=requests.ConnectionError()):
            with self.assertRaises(KVStoreError):
                self.store.get("k")

    def test_put_clamps_ttl(self):
        with mock.patch("chiccanto.services.kv_store.requests.put", return_value=_response(200)) as put:
            self.store.put("rl:x:1", "3", ttl_s=10)
        self.assertEqual(put.call_args.kwargs["params"], {"expiration_ttl": 60})
        self.assertEqual(put.call_args.kwargs["data"], b"3")

    def test_put_without_ttl(self):
        with mock.patch("chiccanto.services.kv_store.requests.put", return_value=_response(200)) as put:
            self.store.put("k", "v")
        self.assertEqual(put.call_args.kwargs["params"], {})

    def test_delete_ignores_missing(self):
        with mock.patch("chiccanto.services.kv_store.requests.delete", return_value=_response(404)):
            self.store.delete("k")

    def test_compare_and_set_reads_then_writes(self):
        with mock.patch("chiccanto.services.kv_store.requests.get", return_value=_response(200, "a")), mock.patch(
            "chiccanto.services.kv_store.requests.put", return_value=_response(200)
        ) as put:
            self.assertFalse(self.store.compare_and_set("k", "b", "c"))
            put.assert_not_called()
            self.assertTrue(self.store.compare_and_set("k", "a", "c"))
            put.assert_called_once()


class TestBuildKVStore(unittest.TestCase):
    def test_memory_backend(self):
        self.assertIsInstance(build_kv_store("memory"), MemoryKVStore)

    def test_cloudflare_requires_credentials(self):
        from chiccanto.core.errors import MisconfiguredError
        from chiccanto.core.settings import settings

        with mock.patch.multiple(settings, cf_account_id=None, cf_kv_namespace_id="ns", cf_api_token="t"):
            with self.assertRaises(MisconfiguredError):
                build_kv_store("cloudflare")

    def test_unknown_backend(self):
        from chiccanto.core.errors import MisconfiguredError

        with self.assertRaises(MisconfiguredError):
            build_kv_store("redis")


if __name__ == "__main__":
    unittest.main()
