"""
Tests for the ephemeral TTL store.

Covers:
- TTL expiry on the in-memory backend
- Single-use delete and insert-if-absent semantics
- Counter windows
- Named locks and eviction of expired memory entries
- Redis errors surfacing as StorageFailure
"""
import pytest
from unittest.mock import MagicMock

import redis

from orthrus.errors import StorageFailure
from orthrus.store.ephemeral import EphemeralStore, KEY_PREFIX, SWEEP_INTERVAL


class TestMemoryBackend:
    """Key/value behaviour without Redis."""

    def test_backend_reports_memory(self, store):
        assert store.backend == "memory"
        assert store.ping() is True

    def test_value_round_trip(self, store):
        store.set("2fa:pending:abc", {"user_id": "u1", "method": "email"}, ttl=60)
        assert store.get("2fa:pending:abc") == {"user_id": "u1", "method": "email"}

    def test_value_expires_after_ttl(self, store, clock):
        store.set("k", "v", ttl=10)
        clock.advance(9)
        assert store.get("k") == "v"
        clock.advance(1)
        assert store.get("k") is None

    def test_value_without_ttl_never_expires(self, store, clock):
        store.set("k", "v")
        clock.advance(10 ** 7)
        assert store.get("k") == "v"

    def test_delete_reports_only_first_removal(self, store):
        store.set("k", "v", ttl=10)
        assert store.delete("k") is True
        assert store.delete("k") is False

    def test_delete_of_expired_entry_is_false(self, store, clock):
        store.set("k", "v", ttl=5)
        clock.advance(6)
        assert store.delete("k") is False

    def test_insert_if_absent(self, store, clock):
        assert store.insert_if_absent("cooldown", 1, ttl=60) is True
        assert store.insert_if_absent("cooldown", 2, ttl=60) is False
        assert store.get("cooldown") == 1

        clock.advance(60)
        assert store.insert_if_absent("cooldown", 3, ttl=60) is True

    def test_incr_restarts_window(self, store, clock):
        assert store.incr("attempts", 100) == 1
        clock.advance(90)
        assert store.incr("attempts", 100) == 2
        clock.advance(90)
        # Still alive: the second increment restarted the window
        assert store.get("attempts") == 2
        clock.advance(11)
        assert store.get("attempts") is None
        assert store.incr("attempts", 100) == 1


class TestMemoryEviction:
    """Expired entries do not accumulate in the memory backend."""

    def test_writes_sweep_expired_entries(self, store, clock):
        store.set("2fa:pending:abandoned", {"user_id": "u1"}, ttl=300)
        store.insert_if_absent("2fa:email_rate:u1", 1, ttl=60)
        clock.advance(SWEEP_INTERVAL + 300)

        store.set("2fa:pending:fresh", {"user_id": "u2"}, ttl=300)

        assert list(store._memory_store) == [f"{KEY_PREFIX}2fa:pending:fresh"]

    def test_no_sweep_within_interval(self, store, clock):
        store.set("short", "v", ttl=1)
        clock.advance(2)
        store.set("other", "v")
        assert f"{KEY_PREFIX}short" in store._memory_store

    def test_lock_entries_are_dropped_after_release(self, store):
        for user_id in ("u1", "u2", "u3"):
            with store.lock(f"2fa_{user_id}") as acquired:
                assert acquired
        assert store._memory_locks == {}

    def test_failed_acquire_keeps_holder_entry(self, store):
        held = store.acquire("2fa_u1", timeout=0.01)
        assert store.acquire("2fa_u1", timeout=0.01) is None

        assert "2fa_u1" in store._memory_locks
        store.release(held)
        assert store._memory_locks == {}


class TestMemoryLocks:
    """Named lock semantics on the in-memory backend."""

    def test_lock_is_exclusive(self, store):
        first = store.acquire("2fa_u1", timeout=0.01)
        assert first is not None
        assert store.acquire("2fa_u1", timeout=0.01) is None

        store.release(first)
        second = store.acquire("2fa_u1", timeout=0.01)
        assert second is not None
        store.release(second)

    def test_different_names_do_not_block(self, store):
        a = store.acquire("2fa_u1", timeout=0.01)
        b = store.acquire("2fa_u2", timeout=0.01)
        assert a is not None and b is not None
        store.release(a)
        store.release(b)

    def test_lock_released_on_exception(self, store):
        with pytest.raises(RuntimeError):
            with store.lock("2fa_u1") as acquired:
                assert acquired
                raise RuntimeError("boom")

        with store.lock("2fa_u1", timeout=0.01) as acquired:
            assert acquired

    def test_release_none_is_noop(self, store):
        store.release(None)


class TestRedisBackend:
    """Redis-backed behaviour with a mocked client."""

    def test_keys_are_prefixed(self):
        client = MagicMock()
        client.get.return_value = '"v"'
        store = EphemeralStore(client)

        assert store.backend == "redis"
        assert store.get("2fa:lockout:u1") == "v"
        client.get.assert_called_once_with(f"{KEY_PREFIX}2fa:lockout:u1")

    def test_insert_if_absent_uses_nx(self):
        client = MagicMock()
        client.set.return_value = None
        store = EphemeralStore(client)

        assert store.insert_if_absent("cooldown", 1, ttl=60) is False
        client.set.assert_called_once_with(f"{KEY_PREFIX}cooldown", "1", ex=60, nx=True)

    def test_delete_returns_removed_count(self):
        client = MagicMock()
        client.delete.side_effect = [1, 0]
        store = EphemeralStore(client)

        assert store.delete("k") is True
        assert store.delete("k") is False

    @pytest.mark.parametrize("operation", [
        lambda s: s.get("k"),
        lambda s: s.set("k", "v", ttl=5),
        lambda s: s.delete("k"),
        lambda s: s.insert_if_absent("k", 1, ttl=5),
        lambda s: s.ping(),
    ])
    def test_redis_errors_raise_storage_failure(self, operation):
        client = MagicMock()
        error = redis.ConnectionError("connection refused")
        client.get.side_effect = error
        client.set.side_effect = error
        client.delete.side_effect = error
        client.ping.side_effect = error
        store = EphemeralStore(client)

        with pytest.raises(StorageFailure):
            operation(store)

    def test_incr_error_raises_storage_failure(self):
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = redis.TimeoutError("timeout")
        store = EphemeralStore(client)

        with pytest.raises(StorageFailure):
            store.incr("attempts", 60)

    def test_lock_not_acquired_yields_false(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = False
        store = EphemeralStore(client)

        with store.lock("2fa_u1") as acquired:
            assert acquired is False
