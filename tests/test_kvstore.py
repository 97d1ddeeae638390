"""Tests for the key-value stores and keyed locks."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from paperpay.kvstore import InMemoryKeyValueStore, KeyedLocks, SQLiteKeyValueStore


@pytest.fixture(params=["memory", "sqlite"])
def kv(request, tmp_path, clock):
    if request.param == "memory":
        return InMemoryKeyValueStore(clock=clock)
    return SQLiteKeyValueStore(tmp_path / "data" / "kv.sqlite3", clock=clock)


class TestKeyValueStore:
    def test_set_get_delete(self, kv):
        kv.set("a", {"n": 1})
        assert kv.get("a") == {"n": 1}
        assert kv.delete("a") is True
        assert kv.get("a") is None
        assert kv.delete("a") is False

    def test_ttl_expiry(self, kv, clock):
        kv.set("session", {"id": "s"}, ttl_seconds=10)
        clock.advance(9)
        assert kv.get("session") == {"id": "s"}
        clock.advance(2)
        assert kv.get("session") is None

    def test_set_without_ttl_keeps_existing_expiry(self, kv, clock):
        kv.set("k", {"v": 1}, ttl_seconds=10)
        kv.set("k", {"v": 2})
        clock.advance(11)
        assert kv.get("k") is None

    def test_pop_returns_value_once(self, kv):
        kv.set("k", {"v": 1})
        assert kv.pop("k") == {"v": 1}
        assert kv.pop("k") is None

    def test_update_aborts_on_exception(self, kv):
        kv.set("k", {"v": 1})

        def boom(current):
            raise ValueError("no")

        with pytest.raises(ValueError):
            kv.update("k", boom)
        assert kv.get("k") == {"v": 1}

    def test_update_none_leaves_key_untouched(self, kv):
        assert kv.update("missing", lambda current: None) is None
        assert kv.get("missing") is None

    def test_transaction_rolls_back(self, kv):
        kv.set("a", {"v": 1})
        with pytest.raises(RuntimeError):
            with kv.transaction() as txn:
                txn.set("a", {"v": 2})
                txn.set("b", {"v": 3})
                raise RuntimeError("abort")
        assert kv.get("a") == {"v": 1}
        assert kv.get("b") is None

    def test_scan_prefix_is_literal_and_sorted(self, kv):
        kv.set("a_b:2", {"n": 2})
        kv.set("a_b:1", {"n": 1})
        kv.set("axb:1", {"n": 3})
        assert [k for k, _ in kv.scan("a_b:")] == ["a_b:1", "a_b:2"]

    def test_concurrent_pop_has_single_winner(self, kv):
        kv.set("once", {"v": 1})
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: kv.pop("once"), range(8)))
        assert sum(1 for r in results if r is not None) == 1


def test_sqlite_store_persists_across_instances(tmp_path):
    path = tmp_path / "kv.sqlite3"
    SQLiteKeyValueStore(path).set("k", {"v": 1})
    assert SQLiteKeyValueStore(path).get("k") == {"v": 1}


def test_sqlite_purge_expired(tmp_path, clock):
    kv = SQLiteKeyValueStore(tmp_path / "kv.sqlite3", clock=clock)
    kv.set("short", {"v": 1}, ttl_seconds=1)
    kv.set("long", {"v": 2})
    clock.advance(5)
    assert kv.purge_expired() == 1


class TestKeyedLocks:
    def test_same_key_is_serialised(self):
        locks = KeyedLocks()
        active = []
        overlap = threading.Event()

        def work(_):
            with locks.hold("grant-1"):
                active.append(1)
                if len(active) > 1:
                    overlap.set()
                time.sleep(0.01)
                active.pop()

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(work, range(8)))
        assert not overlap.is_set()

    def test_locks_are_released(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            pass
        assert locks._locks == {}
