"""Advisory locks keeping a single writer per audit."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Protocol, Set

import redis.asyncio as redis
from redis.exceptions import LockError

from services.audit_errors import AuditLockedError

logger = logging.getLogger(__name__)


class AuditLocks(Protocol):
    def hold(self, audit_id: str) -> AsyncContextManager[None]: ...


class LocalAuditLocks:
    """In-process, non-blocking locks. Enough for a single API or worker process."""

    def __init__(self):
        self._held: Set[str] = set()

    def is_held(self, audit_id: str) -> bool:
        return audit_id in self._held

    @asynccontextmanager
    async def hold(self, audit_id: str) -> AsyncIterator[None]:
        # No await between the check and the add
        if audit_id in self._held:
            raise AuditLockedError(audit_id)
        self._held.add(audit_id)
        try:
            yield
        finally:
            self._held.discard(audit_id)


class RedisAuditLocks:
    """Cross-process locks on Redis, used when audits run on RQ workers."""

    def __init__(self, redis_url: str, timeout_seconds: int = 3900):
        self.client = redis.from_url(redis_url)
        self.timeout_seconds = timeout_seconds

    @asynccontextmanager
    async def hold(self, audit_id: str) -> AsyncIterator[None]:
        lock = self.client.lock(f"audit-lock:{audit_id}", timeout=self.timeout_seconds)
        acquired = await lock.acquire(blocking=False)
        if not acquired:
            raise AuditLockedError(audit_id)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as exc:
                logger.warning(f"Lock for audit {audit_id} expired before release: {exc}")
