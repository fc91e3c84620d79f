"""Durable audit job queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import async_session_maker
from models.audit import Audit
from services.audit_store import SqlAuditStore

logger = logging.getLogger(__name__)

AUDIT_QUEUE_NAME = "audit_jobs"
JOB_MODES = ("run", "resume", "restart")
INTERRUPTED_MESSAGE = "Audit execution was interrupted. Resume the audit to continue."


def get_redis_connection() -> Redis:
    return Redis.from_url(settings.REDIS_URL)


def get_audit_queue() -> Queue:
    return Queue(
        name=AUDIT_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=settings.AUDIT_JOB_TIMEOUT_SECONDS,
    )


def enqueue_audit_job(audit_id: str, mode: str = "run") -> Job:
    """
    Enqueue an audit run, resume or restart.

    Jobs are not retried by RQ: a failed stage is a checkpoint the caller
    resumes explicitly.
    """
    if mode not in JOB_MODES:
        raise ValueError(f"Unknown audit job mode: {mode}")
    stamp = int(datetime.now(timezone.utc).timestamp())
    return get_audit_queue().enqueue(
        "services.audit_queue.process_audit_job",
        audit_id,
        mode,
        job_id=f"audit:{audit_id}:{mode}:{stamp}",
        job_timeout=settings.AUDIT_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )


def process_audit_job(audit_id: str, mode: str = "run") -> None:
    """RQ entrypoint. Workers serialise runs of one audit through a Redis lock."""
    from services.audit import process_channel_audit
    from services.audit_locks import RedisAuditLocks

    locks = RedisAuditLocks(settings.REDIS_URL, timeout_seconds=settings.AUDIT_LOCK_TIMEOUT_SECONDS)
    asyncio.run(process_channel_audit(audit_id, mode=mode, locks=locks))


async def recover_stalled_audits(
    max_age_minutes: int = 120,
    session_maker: Optional[async_sessionmaker] = None,
) -> int:
    """
    Fail audits left running by a process that died.

    The section that was running is closed as failed so the audit resumes
    from it. Returns the number of audits recovered.
    """
    session_maker = session_maker or async_session_maker
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with session_maker() as db:
        result = await db.execute(
            select(Audit.id).where(
                Audit.status == "running",
                func.coalesce(Audit.updated_at, Audit.created_at) < cutoff,
            )
        )
        stalled = result.scalars().all()

    store = SqlAuditStore(session_maker)
    for audit_id in stalled:
        record = await store.get(audit_id)
        running = next((s.stage for s in record.sections if s.status == "running"), None)
        if running is not None:
            await store.update_section(audit_id, running, "failed", error_message="interrupted")
        await store.update(audit_id, status="failed", error_message=INTERRUPTED_MESSAGE, failed_stage=running)
        logger.warning(f"Recovered stalled audit {audit_id} (interrupted at {running or 'start'})")
    return len(stalled)
