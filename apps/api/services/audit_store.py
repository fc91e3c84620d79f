"""
Audit persistence.

AuditStore is the narrow interface the orchestrator writes through;
SqlAuditStore implements it on the async SQLAlchemy session factory.
Section status changes are validated here so no caller can reopen a
completed checkpoint.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from analysis.models import CostDelta, SeriesInfo
from models.audit import Audit
from models.audit_section import AuditSection
from models.detected_series import DetectedSeries
from models.video import Video
from services.audit_errors import AuditNotFoundError, AuditPersistenceError, InvalidSectionTransition

logger = logging.getLogger(__name__)

STAGES = (
    "ingestion",
    "series_detection",
    "competitor_matching",
    "benchmarking",
    "opportunity_analysis",
    "recommendations",
    "executive_summary",
)

SECTION_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"completed", "failed"}),
    "failed": frozenset({"running"}),
    "completed": frozenset(),
}

AUDIT_FIELDS = frozenset({
    "status",
    "channel_id",
    "progress",
    "channel_snapshot",
    "error_message",
    "failed_stage",
    "completed_at",
})

_COLUMN_FOR_FIELD = {
    "progress": "progress_json",
    "channel_snapshot": "channel_snapshot_json",
}


class SectionRecord(BaseModel):
    stage: str
    position: int
    status: str = "pending"
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: AuditSection) -> "SectionRecord":
        return cls(
            stage=row.stage,
            position=row.position,
            status=row.status,
            result=row.result_json,
            error_message=row.error_message,
            started_at=row.started_at,
            completed_at=row.completed_at,
        )


class AuditRecord(BaseModel):
    """Detached snapshot of an audit and its sections."""

    id: str
    channel_input: str
    channel_id: Optional[str] = None
    audit_type: str
    status: str
    config: Dict[str, Any] = Field(default_factory=dict)
    progress: Optional[Dict[str, Any]] = None
    channel_snapshot: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    total_tokens: int = 0
    total_cost: float = 0.0
    youtube_api_calls: int = 0
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sections: List[SectionRecord] = Field(default_factory=list)

    @property
    def outputs(self) -> Dict[str, Optional[Dict[str, Any]]]:
        """Stage name -> payload, in pipeline order; None until the stage completed."""
        by_stage = {s.stage: s for s in self.sections}
        outputs: Dict[str, Optional[Dict[str, Any]]] = {}
        for stage in STAGES:
            section = by_stage.get(stage)
            outputs[stage] = section.result if section and section.status == "completed" else None
        return outputs

    def section(self, stage: str) -> Optional[SectionRecord]:
        for section in self.sections:
            if section.stage == stage:
                return section
        return None

    @classmethod
    def from_row(cls, row: Audit, sections: Sequence[AuditSection] = ()) -> "AuditRecord":
        return cls(
            id=row.id,
            channel_input=row.channel_input,
            channel_id=row.channel_id,
            audit_type=row.audit_type,
            status=row.status,
            config=row.config_json or {},
            progress=row.progress_json,
            channel_snapshot=row.channel_snapshot_json,
            error_message=row.error_message,
            failed_stage=row.failed_stage,
            total_tokens=row.total_tokens or 0,
            total_cost=row.total_cost or 0.0,
            youtube_api_calls=row.youtube_api_calls or 0,
            created_by=row.created_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
            sections=[SectionRecord.from_row(s) for s in sorted(sections, key=lambda s: s.position)],
        )


class AuditStore(Protocol):
    async def create(
        self,
        channel_input: str,
        audit_type: str,
        config: Dict[str, Any],
        created_by: Optional[str] = None,
    ) -> str: ...

    async def get(self, audit_id: str) -> AuditRecord: ...

    async def update(self, audit_id: str, **fields: Any) -> None: ...

    async def init_sections(self, audit_id: str) -> None: ...

    async def reset_sections(self, audit_id: str) -> None: ...

    async def get_sections(self, audit_id: str) -> List[SectionRecord]: ...

    async def update_section(
        self,
        audit_id: str,
        stage: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> SectionRecord: ...

    async def add_cost(self, audit_id: str, delta: CostDelta) -> None: ...

    async def list_audits(
        self,
        created_by: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
    ) -> List[AuditRecord]: ...

    async def record_series(self, audit_id: str, channel_id: str, series: Sequence[SeriesInfo]) -> None: ...


class SqlAuditStore:
    """AuditStore backed by the audits / audit_sections tables."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def _load_audit(self, db: AsyncSession, audit_id: str, with_sections: bool = False) -> Audit:
        query = select(Audit).where(Audit.id == audit_id)
        if with_sections:
            query = query.options(selectinload(Audit.sections))
        result = await db.execute(query)
        audit = result.scalar_one_or_none()
        if audit is None:
            raise AuditNotFoundError(audit_id)
        return audit

    async def create(
        self,
        channel_input: str,
        audit_type: str,
        config: Dict[str, Any],
        created_by: Optional[str] = None,
    ) -> str:
        try:
            async with self.session_maker() as db:
                audit = Audit(
                    channel_input=channel_input,
                    audit_type=audit_type,
                    status="pending",
                    config_json=config,
                    progress_json={"stage": "pending", "pct": 0, "message": "Queued"},
                    created_by=created_by,
                )
                db.add(audit)
                await db.commit()
                return audit.id
        except SQLAlchemyError as exc:
            raise AuditPersistenceError(f"Could not create audit: {exc}") from exc

    async def get(self, audit_id: str) -> AuditRecord:
        async with self.session_maker() as db:
            audit = await self._load_audit(db, audit_id, with_sections=True)
            return AuditRecord.from_row(audit, audit.sections)

    async def update(self, audit_id: str, **fields: Any) -> None:
        unknown = set(fields) - AUDIT_FIELDS
        if unknown:
            raise ValueError(f"Unknown audit fields: {sorted(unknown)}")
        try:
            async with self.session_maker() as db:
                audit = await self._load_audit(db, audit_id)
                for name, value in fields.items():
                    setattr(audit, _COLUMN_FOR_FIELD.get(name, name), value)
                audit.updated_at = datetime.now(timezone.utc)
                await db.commit()
        except SQLAlchemyError as exc:
            raise AuditPersistenceError(f"Could not update audit {audit_id}: {exc}") from exc

    async def init_sections(self, audit_id: str) -> None:
        try:
            async with self.session_maker() as db:
                audit = await self._load_audit(db, audit_id, with_sections=True)
                existing = {s.stage for s in audit.sections}
                for position, stage in enumerate(STAGES):
                    if stage not in existing:
                        db.add(AuditSection(audit_id=audit_id, stage=stage, position=position, status="pending"))
                await db.commit()
        except SQLAlchemyError as exc:
            raise AuditPersistenceError(f"Could not create sections for {audit_id}: {exc}") from exc

    async def reset_sections(self, audit_id: str) -> None:
        """Return every section to pending. Only a full restart may do this."""
        try:
            async with self.session_maker() as db:
                await self._load_audit(db, audit_id)
                await db.execute(
                    update(AuditSection)
                    .where(AuditSection.audit_id == audit_id)
                    .values(
                        status="pending",
                        result_json=None,
                        error_message=None,
                        started_at=None,
                        completed_at=None,
                    )
                )
                await db.commit()
        except SQLAlchemyError as exc:
            raise AuditPersistenceError(f"Could not reset sections for {audit_id}: {exc}") from exc

    async def get_sections(self, audit_id: str) -> List[SectionRecord]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(AuditSection)
                .where(AuditSection.audit_id == audit_id)
                .order_by(AuditSection.position)
            )
            return [SectionRecord.from_row(row) for row in result.scalars().all()]

    async def update_section(
        self,
        audit_id: str,
        stage: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> SectionRecord:
        try:
            async with self.session_maker() as db:
                query = await db.execute(
                    select(AuditSection).where(
                        AuditSection.audit_id == audit_id,
                        AuditSection.stage == stage,
                    )
                )
                section = query.scalar_one_or_none()
                if section is None:
                    raise AuditNotFoundError(audit_id)

                if status not in SECTION_TRANSITIONS.get(section.status, frozenset()):
                    raise InvalidSectionTransition(stage, section.status, status)

                now = datetime.now(timezone.utc)
                section.status = status
                if status == "running":
                    section.started_at = now
                    section.completed_at = None
                    section.error_message = None
                elif status == "completed":
                    section.result_json = result
                    section.error_message = None
                    section.completed_at = now
                elif status == "failed":
                    section.error_message = error_message
                    section.completed_at = now
                await db.commit()
                return SectionRecord.from_row(section)
        except SQLAlchemyError as exc:
            raise AuditPersistenceError(f"Could not update section {stage} of {audit_id}: {exc}") from exc

    async def add_cost(self, audit_id: str, delta: CostDelta) -> None:
        if delta.is_empty():
            return
        try:
            async with self.session_maker() as db:
                await db.execute(
                    update(Audit)
                    .where(Audit.id == audit_id)
                    .values(
                        total_tokens=Audit.total_tokens + delta.tokens,
                        total_cost=Audit.total_cost + delta.cost,
                        youtube_api_calls=Audit.youtube_api_calls + delta.api_calls,
                    )
                )
                await db.commit()
        except SQLAlchemyError as exc:
            raise AuditPersistenceError(f"Could not record cost for {audit_id}: {exc}") from exc

    async def list_audits(
        self,
        created_by: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
    ) -> List[AuditRecord]:
        async with self.session_maker() as db:
            query = select(Audit).options(selectinload(Audit.sections))
            if created_by is not None:
                query = query.where(Audit.created_by == created_by)
            if status is not None:
                query = query.where(Audit.status == status)
            query = query.order_by(Audit.created_at.desc()).limit(limit)
            result = await db.execute(query)
            return [AuditRecord.from_row(a, a.sections) for a in result.scalars().all()]

    async def record_series(self, audit_id: str, channel_id: str, series: Sequence[SeriesInfo]) -> None:
        """Replace this audit's detected series and tag the member videos."""
        try:
            async with self.session_maker() as db:
                await db.execute(delete(DetectedSeries).where(DetectedSeries.audit_id == audit_id))
                for info in series:
                    row = DetectedSeries(
                        channel_id=channel_id,
                        audit_id=audit_id,
                        name=info.name,
                        detection_method=info.detection_method,
                        pattern=info.pattern,
                        video_count=info.video_count,
                        total_views=info.total_views,
                        avg_views=info.avg_views,
                        avg_engagement_rate=info.avg_engagement_rate,
                        first_published=info.first_published,
                        last_published=info.last_published,
                        cadence_days=info.cadence_days,
                        performance_trend=info.performance_trend,
                    )
                    db.add(row)
                    await db.flush()
                    if info.video_ids:
                        await db.execute(
                            update(Video)
                            .where(Video.id.in_(info.video_ids))
                            .values(detected_series_id=row.id)
                        )
                await db.commit()
        except SQLAlchemyError as exc:
            raise AuditPersistenceError(f"Could not record series for {audit_id}: {exc}") from exc
