from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from models.audit import Audit
from services.audit import create_audit_record
from services.audit_queue import (
    INTERRUPTED_MESSAGE,
    enqueue_audit_job,
    recover_stalled_audits,
)


async def _running_audit(store, stage=None):
    record = await create_audit_record(store, "@subject")
    await store.update(record.id, status="running")
    if stage is not None:
        await store.update_section(record.id, stage, "running")
    return record.id


@pytest.mark.asyncio
async def test_recover_stalled_audits_closes_running_section(store, session_maker):
    stalled_id = await _running_audit(store, stage="ingestion")
    fresh_id = await _running_audit(store)

    async with session_maker() as db:
        audit = await db.get(Audit, stalled_id)
        audit.updated_at = datetime.now(timezone.utc) - timedelta(hours=5)
        await db.commit()

    recovered = await recover_stalled_audits(120, session_maker=session_maker)

    assert recovered == 1
    stalled = await store.get(stalled_id)
    assert stalled.status == "failed"
    assert stalled.failed_stage == "ingestion"
    assert stalled.error_message == INTERRUPTED_MESSAGE
    assert stalled.section("ingestion").status == "failed"
    assert stalled.section("ingestion").error_message == "interrupted"

    fresh = await store.get(fresh_id)
    assert fresh.status == "running"


def test_enqueue_audit_job_targets_worker_entrypoint():
    queue = MagicMock()
    with patch("services.audit_queue.get_audit_queue", return_value=queue):
        enqueue_audit_job("abc", "resume")

    args, kwargs = queue.enqueue.call_args
    assert args == ("services.audit_queue.process_audit_job", "abc", "resume")
    assert kwargs["job_id"].startswith("audit:abc:resume:")


def test_enqueue_rejects_unknown_mode():
    with patch("services.audit_queue.get_audit_queue") as mock_queue:
        with pytest.raises(ValueError):
            enqueue_audit_job("abc", "teardown")
    mock_queue.assert_not_called()
