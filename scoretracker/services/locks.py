"""
Per-(user, chart) exclusive scopes.

Every read-modify-write of a personal best runs inside one of these. Within a
process the scope is an asyncio.Lock keyed by user and chart; when Redis is
configured a Redis lock with the same key is taken as well so several worker
processes share the scope.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

from redis.exceptions import LockError

from scoretracker.constants import LockConstants
from scoretracker.utils.score_exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


def lock_key(user_id: int, chart_id: str) -> str:
    return f"{user_id}:{chart_id}"


class KeyedLockManager:
    """Registry of per-key asyncio locks, optionally backed by Redis."""

    def __init__(self, timeout: float = 30.0, redis_client=None):
        self.timeout = timeout
        self.redis_client = redis_client
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Number of tasks holding or waiting on each key; entries are dropped at zero
        self._users: Dict[str, int] = defaultdict(int)

    def is_locked(self, user_id: int, chart_id: str) -> bool:
        key = lock_key(user_id, chart_id)
        return key in self._locks and self._locks[key].locked()

    @property
    def active_keys(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, user_id: int, chart_id: str) -> AsyncGenerator[None, None]:
        """
        Hold the exclusive scope for (user_id, chart_id).

        Raises:
            LockTimeoutError: the scope could not be acquired within the timeout
        """
        key = lock_key(user_id, chart_id)
        lock = self._locks[key]
        self._users[key] += 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out waiting for local lock {key}")
                raise LockTimeoutError(key, self.timeout) from None

            try:
                redis_lock = await self._acquire_redis(key)
                try:
                    yield
                finally:
                    await self._release_redis(key, redis_lock)
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    async def _acquire_redis(self, key: str):
        if self.redis_client is None:
            return None

        redis_lock = self.redis_client.lock(
            f"{LockConstants.REDIS_LOCK_PREFIX}:{key}",
            timeout=LockConstants.REDIS_LOCK_TTL,
            sleep=LockConstants.REDIS_LOCK_SLEEP,
            blocking_timeout=self.timeout,
        )
        acquired = await redis_lock.acquire()
        if not acquired:
            logger.warning(f"Timed out waiting for Redis lock {key}")
            raise LockTimeoutError(key, self.timeout)
        return redis_lock

    async def _release_redis(self, key: str, redis_lock: Optional[object]):
        if redis_lock is None:
            return
        try:
            await redis_lock.release()
        except LockError as e:
            # Lock expired under us; the TTL is the upper bound on a pass
            logger.error(f"Redis lock {key} was lost before release: {e}")
