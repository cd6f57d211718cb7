"""
Per-game and per-tournament mutual exclusion.

Lock keys:
- league:game:{game_id}              # capacity check + insert on register
- league:tournament:{tournament_id}  # standings rebuild + penalty writes

LocalLockManager serialises threads inside one process. RedisLockManager is
for deployments running several worker processes against one database.
Callers must not nest acquisitions of the same key.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

import redis

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)


def game_key(game_id: str) -> str:
    return f"league:game:{game_id}"


def tournament_key(tournament_id: str) -> str:
    return f"league:tournament:{tournament_id}"


class LocalLockManager:
    def __init__(self, acquire_timeout: float = 10.0):
        self.acquire_timeout = acquire_timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _get_lock(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._get_lock(key)
        if not lock.acquire(timeout=self.acquire_timeout):
            raise LockTimeoutError(f"Timed out waiting for lock {key}")
        try:
            yield
        finally:
            lock.release()

    def game(self, game_id: str):
        return self.hold(game_key(game_id))

    def tournament(self, tournament_id: str):
        return self.hold(tournament_key(tournament_id))


class RedisLockManager(LocalLockManager):
    """Same interface, backed by redis-py's Lock (SET NX PX + owner token)."""

    def __init__(self, redis_client: redis.Redis, acquire_timeout: float = 10.0,
                 lock_ttl: float = 30.0):
        super().__init__(acquire_timeout=acquire_timeout)
        self.redis = redis_client
        self.lock_ttl = lock_ttl

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.redis.lock(key, timeout=self.lock_ttl, blocking_timeout=self.acquire_timeout)
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise LockTimeoutError(f"Could not reach lock backend for {key}: {e}") from e
        if not acquired:
            raise LockTimeoutError(f"Timed out waiting for lock {key}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning(f"Lock {key} expired before release")


def create_lock_manager(config: dict):
    """Build the lock manager selected by LOCK_BACKEND."""
    timeout = config.get('LOCK_TIMEOUT_SECONDS', 10)
    if config.get('LOCK_BACKEND', 'local') == 'redis':
        client = redis.from_url(
            config['REDIS_URL'],
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        logger.info(f"Using Redis locks at {config['REDIS_URL']}")
        return RedisLockManager(client, acquire_timeout=timeout)
    return LocalLockManager(acquire_timeout=timeout)
