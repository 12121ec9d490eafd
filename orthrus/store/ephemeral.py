"""
Ephemeral key/value storage with per-key TTL.

Holds everything that lives for minutes rather than days: pending
challenges, hashed e-mail codes, cooldown keys, lockout counters and
pending authenticator secrets.

Backed by Redis when a client is configured. Without a client it keeps
the data in process memory, which is only suitable for a single worker
(development and tests). When Redis *is* configured its errors are
surfaced as StorageFailure and never papered over with the memory
backend, so two workers can never disagree about a lockout.
"""
import json
import time
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

import redis
from redis.exceptions import LockError

from ..errors import StorageFailure

logger = logging.getLogger(__name__)

KEY_PREFIX = "orthrus:"

# How long a named lock may be held before Redis expires it
DEFAULT_LOCK_TTL = 10

# Minimum seconds between sweeps of expired in-memory entries
SWEEP_INTERVAL = 60


class _MemoryLock:
    """Handle for a lock held in the in-memory backend."""

    def __init__(self, name: str, lock: threading.Lock, on_release: Callable[[str], None]):
        self.name = name
        self._lock = lock
        self._on_release = on_release

    def release(self) -> None:
        self._lock.release()
        self._on_release(self.name)


class EphemeralStore:
    """
    Redis-backed TTL store with an in-memory backend for single-process use.

    Values are JSON-serialized so that dicts (pending challenges) and
    plain strings (hashes) round-trip the same way on both backends.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        prefix: str = KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.clock = clock
        # In-memory backend: key -> (json value, expires_at or None)
        self._memory_store: Dict[str, Tuple[str, Optional[float]]] = {}
        self._memory_guard = threading.Lock()
        # name -> [lock, holders and waiters]; dropped when nobody uses it
        self._memory_locks: Dict[str, list] = {}
        self._last_sweep = self.clock()

    @property
    def backend(self) -> str:
        return "redis" if self.redis is not None else "memory"

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    # ==========================================
    # In-memory helpers
    # ==========================================

    def _memory_read(self, full_key: str) -> Optional[str]:
        """Read a live entry, evicting it if its TTL elapsed. Caller holds the guard."""
        entry = self._memory_store.get(full_key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self._memory_store[full_key]
            return None
        return value

    def _memory_sweep(self) -> None:
        """Evict expired entries, at most once per SWEEP_INTERVAL. Caller holds the guard."""
        now = self.clock()
        if now - self._last_sweep < SWEEP_INTERVAL:
            return
        self._last_sweep = now
        expired = [
            key for key, (_, expires_at) in self._memory_store.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._memory_store[key]

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self.clock() + ttl if ttl else None

    # ==========================================
    # Key/value operations
    # ==========================================

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """
        Store a value, replacing any existing one.

        Args:
            key: Key without the store prefix.
            value: JSON-serializable value.
            ttl: Time to live in seconds (None = no expiry).
        """
        full_key = self._key(key)
        payload = json.dumps(value)

        if self.redis is None:
            with self._memory_guard:
                self._memory_sweep()
                self._memory_store[full_key] = (payload, self._expiry(ttl))
            return

        try:
            self.redis.set(full_key, payload, ex=ttl)
        except redis.RedisError as e:
            logger.error(f"Redis error storing {key}: {e}")
            raise StorageFailure() from e

    def get(self, key: str) -> Optional[Any]:
        """Get a value, or None if absent or expired."""
        full_key = self._key(key)

        if self.redis is None:
            with self._memory_guard:
                payload = self._memory_read(full_key)
        else:
            try:
                payload = self.redis.get(full_key)
            except redis.RedisError as e:
                logger.error(f"Redis error reading {key}: {e}")
                raise StorageFailure() from e

        if payload is None:
            return None
        return json.loads(payload)

    def delete(self, key: str) -> bool:
        """
        Delete a key.

        Returns:
            True if this call removed a live entry. Single-use consumers rely
            on this: when two requests race, only one sees True.
        """
        full_key = self._key(key)

        if self.redis is None:
            with self._memory_guard:
                existed = self._memory_read(full_key) is not None
                self._memory_store.pop(full_key, None)
            return existed

        try:
            return bool(self.redis.delete(full_key))
        except redis.RedisError as e:
            logger.error(f"Redis error deleting {key}: {e}")
            raise StorageFailure() from e

    def insert_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Atomically store a value only if the key does not exist.

        Returns:
            True if the value was stored, False if the key already existed.
        """
        full_key = self._key(key)
        payload = json.dumps(value)

        if self.redis is None:
            with self._memory_guard:
                self._memory_sweep()
                if self._memory_read(full_key) is not None:
                    return False
                self._memory_store[full_key] = (payload, self._expiry(ttl))
                return True

        try:
            return bool(self.redis.set(full_key, payload, ex=ttl, nx=True))
        except redis.RedisError as e:
            logger.error(f"Redis error in insert_if_absent for {key}: {e}")
            raise StorageFailure() from e

    def incr(self, key: str, ttl: int) -> int:
        """
        Atomically increment a counter and (re)start its TTL window.

        Returns:
            New counter value.
        """
        full_key = self._key(key)

        if self.redis is None:
            with self._memory_guard:
                current = self._memory_read(full_key)
                count = (json.loads(current) if current is not None else 0) + 1
                self._memory_store[full_key] = (json.dumps(count), self._expiry(ttl))
            return count

        try:
            pipe = self.redis.pipeline()
            pipe.incr(full_key)
            pipe.expire(full_key, ttl)
            results = pipe.execute()
            return int(results[0])
        except redis.RedisError as e:
            logger.error(f"Redis error incrementing {key}: {e}")
            raise StorageFailure() from e

    # ==========================================
    # Named locks
    # ==========================================

    def acquire(self, name: str, timeout: float = 1.0, lock_ttl: int = DEFAULT_LOCK_TTL):
        """
        Acquire a named lock, waiting up to `timeout` seconds.

        Returns:
            A lock handle to pass to release(), or None if the lock could
            not be acquired in time.
        """
        if self.redis is None:
            with self._memory_guard:
                entry = self._memory_locks.setdefault(name, [threading.Lock(), 0])
                entry[1] += 1
            lock = entry[0]
            if lock.acquire(timeout=timeout):
                return _MemoryLock(name, lock, self._forget_memory_lock)
            self._forget_memory_lock(name)
            return None

        try:
            lock = self.redis.lock(
                self._key(f"lock:{name}"),
                timeout=lock_ttl,
                blocking_timeout=timeout,
            )
            if lock.acquire():
                return lock
            return None
        except redis.RedisError as e:
            logger.error(f"Redis error acquiring lock {name}: {e}")
            raise StorageFailure() from e

    def _forget_memory_lock(self, name: str) -> None:
        with self._memory_guard:
            entry = self._memory_locks.get(name)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._memory_locks[name]

    def release(self, handle) -> None:
        """Release a lock handle returned by acquire()."""
        if handle is None:
            return
        try:
            handle.release()
        except LockError as e:
            # The lock TTL elapsed before release; nothing left to free
            logger.warning(f"Lock already released or expired: {e}")
        except redis.RedisError as e:
            logger.error(f"Redis error releasing lock: {e}")
            raise StorageFailure() from e

    @contextmanager
    def lock(self, name: str, timeout: float = 1.0, lock_ttl: int = DEFAULT_LOCK_TTL) -> Iterator[bool]:
        """
        Hold a named lock for the duration of a with-block.

        Yields:
            True if the lock was acquired. The lock is released on every
            exit path, including exceptions.
        """
        handle = self.acquire(name, timeout=timeout, lock_ttl=lock_ttl)
        try:
            yield handle is not None
        finally:
            self.release(handle)

    def ping(self) -> bool:
        """Check backend availability."""
        if self.redis is None:
            return True
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            raise StorageFailure() from e
