"""
Audit router for creating, resuming and inspecting channel audits.
"""

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from config import settings
from database import async_session_maker
from services.audit import PROCESS_LOCKS, create_audit_record, process_channel_audit, resume_point
from services.audit_config import AuditRunConfig
from services.audit_errors import (
    AuditError,
    AuditNotFoundError,
    ChannelResolutionError,
    ResumeNotPossibleError,
)
from services.audit_queue import enqueue_audit_job
from services.audit_store import AuditRecord, AuditStore, SqlAuditStore

router = APIRouter()
logger = logging.getLogger(__name__)


class AuditConfigOverrides(BaseModel):
    benchmark_window_days: Optional[int] = Field(default=None, ge=1)
    peer_limit: Optional[int] = Field(default=None, ge=1, le=200)
    max_videos: Optional[int] = Field(default=None, ge=1)
    category: Optional[str] = None
    force_refresh: Optional[bool] = None


class CreateAuditRequest(BaseModel):
    channel_input: str = Field(min_length=1)
    audit_type: Literal["prospect", "baseline"] = "prospect"
    created_by: Optional[str] = None
    config: Optional[AuditConfigOverrides] = None


class SectionResponse(BaseModel):
    stage: str
    position: int
    status: str
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class AuditResponse(BaseModel):
    audit_id: str
    channel_input: str
    channel_id: Optional[str] = None
    audit_type: str
    status: str
    progress: Optional[Dict[str, Any]] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    total_tokens: int = 0
    total_cost: float = 0.0
    youtube_api_calls: int = 0
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    outputs: Optional[Dict[str, Any]] = None


def get_audit_store() -> AuditStore:
    return SqlAuditStore(async_session_maker)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _audit_response(record: AuditRecord, include_outputs: bool = False) -> AuditResponse:
    return AuditResponse(
        audit_id=record.id,
        channel_input=record.channel_input,
        channel_id=record.channel_id,
        audit_type=record.audit_type,
        status=record.status,
        progress=record.progress,
        failed_stage=record.failed_stage,
        error=record.error_message,
        total_tokens=record.total_tokens,
        total_cost=record.total_cost,
        youtube_api_calls=record.youtube_api_calls,
        created_at=_iso(record.created_at),
        completed_at=_iso(record.completed_at),
        outputs=record.outputs if include_outputs else None,
    )


def _dispatch(background_tasks: BackgroundTasks, audit_id: str, mode: str) -> None:
    if settings.AUDIT_QUEUE_ENABLED:
        job = enqueue_audit_job(audit_id, mode)
        logger.info(f"Queued audit {audit_id} ({mode}) as job {job.id}")
    else:
        background_tasks.add_task(process_channel_audit, audit_id, mode)


async def _load(store: AuditStore, audit_id: str) -> AuditRecord:
    try:
        return await store.get(audit_id)
    except AuditNotFoundError:
        raise HTTPException(status_code=404, detail="Audit not found")


def _ensure_idle(record: AuditRecord) -> None:
    if record.status == "running" or PROCESS_LOCKS.is_held(record.id):
        raise HTTPException(status_code=409, detail="Audit is already running")


@router.post("/", response_model=AuditResponse, status_code=202)
async def create_audit(
    request: CreateAuditRequest,
    background_tasks: BackgroundTasks,
    store: AuditStore = Depends(get_audit_store),
):
    """Create a channel audit and start it in the background."""
    overrides = request.config.model_dump(exclude_none=True) if request.config else {}
    try:
        config = AuditRunConfig(**overrides)
        record = await create_audit_record(
            store,
            request.channel_input,
            audit_type=request.audit_type,
            config=config,
            created_by=request.created_by,
        )
    except (ChannelResolutionError, ValidationError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    except AuditError as e:
        logger.error(f"Could not create audit for '{request.channel_input}': {e}")
        raise HTTPException(status_code=503, detail="Audit storage unavailable")

    _dispatch(background_tasks, record.id, "run")
    return _audit_response(record)


@router.post("/{audit_id}/resume", response_model=AuditResponse, status_code=202)
async def resume_audit(
    audit_id: str,
    background_tasks: BackgroundTasks,
    store: AuditStore = Depends(get_audit_store),
):
    """Resume a failed or interrupted audit from its first incomplete stage."""
    record = await _load(store, audit_id)
    if record.status == "completed":
        return _audit_response(record, include_outputs=True)
    _ensure_idle(record)
    try:
        resume_point(record)
    except ResumeNotPossibleError as e:
        raise HTTPException(status_code=409, detail=str(e))

    _dispatch(background_tasks, audit_id, "resume")
    return _audit_response(record)


@router.post("/{audit_id}/restart", response_model=AuditResponse, status_code=202)
async def restart_audit(
    audit_id: str,
    background_tasks: BackgroundTasks,
    store: AuditStore = Depends(get_audit_store),
):
    """Discard every checkpoint and run the audit again from ingestion."""
    record = await _load(store, audit_id)
    _ensure_idle(record)

    _dispatch(background_tasks, audit_id, "restart")
    return _audit_response(record)


@router.get("/", response_model=List[AuditResponse])
async def list_audits(
    created_by: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    store: AuditStore = Depends(get_audit_store),
):
    """List recent audits, newest first."""
    records = await store.list_audits(created_by=created_by, status=status, limit=limit)
    return [_audit_response(record) for record in records]


@router.get("/{audit_id}", response_model=AuditResponse)
async def get_audit(audit_id: str, store: AuditStore = Depends(get_audit_store)):
    """Audit status, progress, cost ledger and completed stage outputs."""
    record = await _load(store, audit_id)
    return _audit_response(record, include_outputs=True)


@router.get("/{audit_id}/sections", response_model=List[SectionResponse])
async def get_audit_sections(audit_id: str, store: AuditStore = Depends(get_audit_store)):
    record = await _load(store, audit_id)
    return [
        SectionResponse(
            stage=section.stage,
            position=section.position,
            status=section.status,
            error=section.error_message,
            result=section.result,
            started_at=_iso(section.started_at),
            completed_at=_iso(section.completed_at),
        )
        for section in record.sections
    ]
