"""
Per-agent mutual exclusion for balance mutations.

Capital, fuel and creator earnings of one agent are touched by the monitor,
the settlement sweep, investments and claims. Every such mutation runs
inside ``AgentLockManager.hold(agent_id)`` and commits before releasing.

Within a process an asyncio.Lock per agent is enough; when a RedisService
is injected the same section is also guarded by a Redis lock so API and
worker processes exclude each other.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.exceptions import LockError

from .redis_service import RedisService

logger = logging.getLogger(__name__)


class AgentLockTimeout(Exception):
    def __init__(self, agent_id: uuid.UUID):
        self.agent_id = agent_id
        super().__init__(f"Timed out waiting for lock on agent {agent_id}")


class AgentLockManager:
    def __init__(
        self,
        redis: Optional[RedisService] = None,
        lock_timeout: float = 30.0,
        wait_timeout: float = 10.0,
    ):
        self._redis = redis
        self._lock_timeout = lock_timeout
        self._wait_timeout = wait_timeout
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        # Holders plus waiters per agent; the lock is dropped when this reaches 0
        self._users: dict[uuid.UUID, int] = {}

    @property
    def tracked(self) -> int:
        return len(self._locks)

    def _checkout(self, agent_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = self._locks[agent_id] = asyncio.Lock()
        self._users[agent_id] = self._users.get(agent_id, 0) + 1
        return lock

    def _checkin(self, agent_id: uuid.UUID) -> None:
        remaining = self._users[agent_id] - 1
        if remaining:
            self._users[agent_id] = remaining
        else:
            del self._users[agent_id]
            del self._locks[agent_id]

    @asynccontextmanager
    async def hold(self, agent_id: uuid.UUID) -> AsyncIterator[None]:
        local = self._checkout(agent_id)
        try:
            try:
                await asyncio.wait_for(local.acquire(), timeout=self._wait_timeout)
            except asyncio.TimeoutError as e:
                raise AgentLockTimeout(agent_id) from e

            try:
                if self._redis is None:
                    yield
                    return

                lock = self._redis.lock(
                    f"agent:{agent_id}",
                    timeout=self._lock_timeout,
                    blocking_timeout=self._wait_timeout,
                )
                if not await lock.acquire():
                    raise AgentLockTimeout(agent_id)
                try:
                    yield
                finally:
                    try:
                        await lock.release()
                    except LockError:
                        # Expired while held; the DB row lock still protected the write
                        logger.warning(f"Redis lock for agent {agent_id} expired before release")
            finally:
                local.release()
        finally:
            self._checkin(agent_id)
