"""
Channel audit orchestrator.

Runs the seven audit stages in order, checkpointing each one as an
audit_sections row so a failed or interrupted audit can be resumed from the
first incomplete stage. Tracks progress and the token/cost/API-call ledger.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from analysis.benchmark import BenchmarkEngine
from analysis.models import AuditType, CostDelta, StageResult
from config import require_openai_api_key, require_youtube_api_key, settings
from database import async_session_maker
from ingestion.youtube import create_youtube_client_with_api_key
from services.analysis_provider import AnalysisProvider, CostMeter, OpenAIAnalysisProvider
from services.audit_config import AuditRunConfig
from services.audit_errors import (
    AuditCancelledError,
    AuditError,
    AuditLockedError,
    AuditNotFoundError,
    AuditPersistenceError,
    ChannelResolutionError,
    ResumeNotPossibleError,
    StageTimeoutError,
    call_with_timeout,
)
from services.audit_locks import AuditLocks, LocalAuditLocks
from services.audit_stages import PIPELINE, RunContext, StageSpec, StageTools
from services.audit_store import AuditRecord, AuditStore, SqlAuditStore
from services.channel_source import ChannelDataSource, YouTubeChannelDataSource

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, str], None]

CANCELLED_REASON = "cancelled"

# Shared by every orchestrator built in this process
PROCESS_LOCKS = LocalAuditLocks()


def section_status(record: AuditRecord, stage: str) -> str:
    section = record.section(stage)
    return section.status if section else "pending"


def resume_point(record: AuditRecord) -> Optional[int]:
    """
    Index of the first stage that is not completed, or None when all are.

    Raises ResumeNotPossibleError when ingestion itself is incomplete.
    """
    first_open = next(
        (i for i, spec in enumerate(PIPELINE) if section_status(record, spec.name) != "completed"),
        None,
    )
    if first_open == 0:
        raise ResumeNotPossibleError(
            f"Audit {record.id} cannot resume: ingestion did not complete, restart the audit instead"
        )
    return first_open


async def create_audit_record(
    store: AuditStore,
    channel_input: str,
    audit_type: str = AuditType.PROSPECT.value,
    config: Optional[AuditRunConfig] = None,
    created_by: Optional[str] = None,
) -> AuditRecord:
    """Create an audit with every section pending, without running it."""
    channel_input = (channel_input or "").strip()
    if not channel_input:
        raise ChannelResolutionError("Channel input is empty")
    audit_type = AuditType(audit_type).value
    config = config or AuditRunConfig()

    audit_id = await store.create(channel_input, audit_type, config.to_stored(), created_by)
    await store.init_sections(audit_id)
    logger.info(f"Created {audit_type} audit {audit_id} for '{channel_input}'")
    return await store.get(audit_id)


class ProgressTracker:
    """Monotonic progress for one run; the latest event is persisted on flush."""

    def __init__(self, audit_id: str, store: AuditStore, callback: Optional[ProgressCallback] = None):
        self.audit_id = audit_id
        self.store = store
        self.callback = callback
        self.pct = 0
        self.latest: Optional[Dict[str, Any]] = None
        self._dirty = False

    def emit(self, stage: str, pct: float, message: str) -> None:
        pct = max(self.pct, min(100, int(round(pct))))
        self.pct = pct
        self.latest = {"stage": stage, "pct": pct, "message": message}
        self._dirty = True
        if self.callback is not None:
            self.callback(stage, pct, message)

    def scoped(self, spec: StageSpec) -> Callable[[float, str], None]:
        """Reporter mapping a 0-1 fraction into the stage's percentage range."""
        span = spec.end_pct - spec.start_pct

        def report(fraction: float, message: str) -> None:
            fraction = max(0.0, min(1.0, fraction))
            self.emit(spec.name, spec.start_pct + fraction * span, message)

        return report

    async def flush(self) -> None:
        if self._dirty and self.latest is not None:
            await self.store.update(self.audit_id, progress=dict(self.latest))
            self._dirty = False


class AuditOrchestrator:
    """Sequences audit stages over an AuditStore, ChannelDataSource and AnalysisProvider."""

    def __init__(
        self,
        store: AuditStore,
        source: ChannelDataSource,
        provider: AnalysisProvider,
        locks: Optional[AuditLocks] = None,
        progress_callback: Optional[ProgressCallback] = None,
        store_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.source = source
        self.provider = provider
        self.locks = locks or LocalAuditLocks()
        self.progress_callback = progress_callback
        self.store_timeout = store_timeout if store_timeout is not None else settings.AUDIT_EXTERNAL_TIMEOUT_SECONDS
        self.clock = clock

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def create_audit(
        self,
        channel_input: str,
        audit_type: str = AuditType.PROSPECT.value,
        config: Optional[AuditRunConfig] = None,
        created_by: Optional[str] = None,
    ) -> AuditRecord:
        return await self._persist(
            create_audit_record(self.store, channel_input, audit_type, config, created_by),
            "create audit",
        )

    async def run_audit(
        self,
        channel_input: str,
        audit_type: str = AuditType.PROSPECT.value,
        config: Optional[AuditRunConfig] = None,
        created_by: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AuditRecord:
        """Create and run a fresh audit. Returns the completed or failed audit."""
        record = await self.create_audit(channel_input, audit_type, config, created_by)
        return await self.execute_audit(record.id, cancel_event=cancel_event)

    async def execute_audit(self, audit_id: str, cancel_event: Optional[asyncio.Event] = None) -> AuditRecord:
        """Run a created audit from the first stage."""
        async with self.locks.hold(audit_id):
            return await self._execute_fresh(audit_id, cancel_event)

    async def restart_audit(self, audit_id: str, cancel_event: Optional[asyncio.Event] = None) -> AuditRecord:
        """Discard every checkpoint and rerun from ingestion. The cost ledger keeps accumulating."""
        async with self.locks.hold(audit_id):
            await self.store.get(audit_id)
            await self._persist(self.store.reset_sections(audit_id), "reset sections")
            await self._persist(
                self.store.update(
                    audit_id,
                    status="pending",
                    error_message=None,
                    failed_stage=None,
                    completed_at=None,
                    channel_snapshot=None,
                ),
                "reset audit",
            )
            logger.info(f"Restarting audit {audit_id}")
            return await self._execute_fresh(audit_id, cancel_event)

    async def resume_audit(self, audit_id: str, cancel_event: Optional[asyncio.Event] = None) -> AuditRecord:
        """
        Continue an audit from its first incomplete stage.

        A completed audit is returned unchanged. Ingestion output is the raw data
        every other stage depends on and is never re-fetched on resume, so an
        audit whose ingestion did not complete must be restarted instead.
        """
        record = await self.store.get(audit_id)
        if record.status == "completed":
            return record

        async with self.locks.hold(audit_id):
            record = await self.store.get(audit_id)
            if record.status == "completed":
                return record

            first_open = resume_point(record)

            outputs = self._hydrate(record)
            ingestion = outputs["ingestion"]
            config = AuditRunConfig.from_stored(record.config)
            ctx = RunContext(
                audit_id=audit_id,
                channel=ingestion.channel,
                audit_type=AuditType(record.audit_type),
                config=config,
                now=self.clock(),
            )
            tracker = ProgressTracker(audit_id, self.store, self.progress_callback)

            await self._persist(
                self.store.update(audit_id, status="running", error_message=None, failed_stage=None),
                "mark running",
            )
            if first_open is None:
                logger.info(f"Audit {audit_id}: all sections complete, finalizing")
                return await self._finalize(audit_id, tracker)

            resumed = PIPELINE[first_open].name
            if section_status(record, resumed) == "running":
                # Left running by a run that died; close it before re-entering
                await self._persist(
                    self.store.update_section(audit_id, resumed, "failed", error_message="interrupted"),
                    f"fail {resumed}",
                )

            logger.info(f"Resuming audit {audit_id} at {PIPELINE[first_open].name}")
            return await self._run_stages(record, ctx, first_open, outputs, tracker, cancel_event)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _persist(self, awaitable: Awaitable[Any], what: str) -> Any:
        try:
            return await call_with_timeout(awaitable, self.store_timeout, what)
        except StageTimeoutError as exc:
            raise AuditPersistenceError(str(exc)) from exc

    @staticmethod
    def _load_result(spec: StageSpec, payload: Optional[Dict[str, Any]]) -> StageResult:
        model = spec.result_model
        if not isinstance(payload, dict):
            raise ResumeNotPossibleError(f"Checkpoint for {spec.name} has no payload")
        version = payload.get("schema_version")
        if version != model.SCHEMA_VERSION:
            raise ResumeNotPossibleError(
                f"Checkpoint for {spec.name} has schema version {version}, expected {model.SCHEMA_VERSION}"
            )
        input_version = payload.get("input_version")
        if input_version != spec.input_type.VERSION:
            raise ResumeNotPossibleError(
                f"Checkpoint for {spec.name} was built from input version {input_version}, "
                f"expected {spec.input_type.VERSION}"
            )
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise ResumeNotPossibleError(f"Checkpoint for {spec.name} is unreadable: {exc}") from exc

    def _hydrate(self, record: AuditRecord) -> Dict[str, StageResult]:
        outputs: Dict[str, StageResult] = {}
        for spec in PIPELINE:
            section = record.section(spec.name)
            if section is not None and section.status == "completed":
                outputs[spec.name] = self._load_result(spec, section.result)
        return outputs

    async def _execute_fresh(self, audit_id: str, cancel_event: Optional[asyncio.Event]) -> AuditRecord:
        record = await self.store.get(audit_id)
        if record.status != "pending":
            raise AuditError(f"Audit {audit_id} has already run; resume or restart it instead")
        config = AuditRunConfig.from_stored(record.config)
        tracker = ProgressTracker(audit_id, self.store, self.progress_callback)

        await self._persist(self.store.update(audit_id, status="running"), "mark running")
        tracker.emit("ingestion", 0, "Resolving channel...")
        await tracker.flush()

        api_before = self.source.api_calls
        try:
            channel = await call_with_timeout(
                self.source.resolve_channel(record.channel_input, config.force_refresh),
                config.external_timeout_seconds,
                "resolve_channel",
            )
        except ChannelResolutionError as exc:
            logger.warning(f"Audit {audit_id}: {exc}")
            await self._charge(audit_id, CostDelta(api_calls=self.source.api_calls - api_before))
            await self._persist(
                self.store.update(audit_id, status="failed", error_message=str(exc), failed_stage=None),
                "mark failed",
            )
            raise
        except AuditError as exc:
            logger.error(f"Audit {audit_id}: channel lookup failed: {exc}")
            await self._charge(audit_id, CostDelta(api_calls=self.source.api_calls - api_before))
            await self._persist(
                self.store.update(audit_id, status="failed", error_message=str(exc), failed_stage="ingestion"),
                "mark failed",
            )
            return await self.store.get(audit_id)

        await self._charge(audit_id, CostDelta(api_calls=self.source.api_calls - api_before))
        await self._persist(self.store.update(audit_id, channel_id=channel.id), "set channel")

        ctx = RunContext(
            audit_id=audit_id,
            channel=channel,
            audit_type=AuditType(record.audit_type),
            config=config,
            now=self.clock(),
        )
        record = await self.store.get(audit_id)
        return await self._run_stages(record, ctx, 0, {}, tracker, cancel_event)

    async def _charge(self, audit_id: str, delta: CostDelta) -> None:
        if not delta.is_empty():
            await self._persist(self.store.add_cost(audit_id, delta), "add cost")

    async def _guard(
        self,
        stage: Awaitable[StageResult],
        cancel_event: Optional[asyncio.Event],
        timeout: float,
        name: str,
    ) -> StageResult:
        """Await a stage, racing it against cancellation and the stage time limit."""
        task = asyncio.ensure_future(stage)
        waiters = {task}
        cancel_wait = None
        if cancel_event is not None:
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_wait)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_wait is not None and cancel_wait in done:
            raise AuditCancelledError(CANCELLED_REASON)
        raise StageTimeoutError(f"Stage {name} timed out after {timeout:g}s")

    async def _fail(self, audit_id: str, stage: str, message: str) -> AuditRecord:
        await self._persist(
            self.store.update_section(audit_id, stage, "failed", error_message=message),
            f"fail {stage}",
        )
        await self._persist(
            self.store.update(audit_id, status="failed", error_message=message, failed_stage=stage),
            "mark failed",
        )
        return await self.store.get(audit_id)

    async def _run_stages(
        self,
        record: AuditRecord,
        ctx: RunContext,
        start_index: int,
        outputs: Dict[str, StageResult],
        tracker: ProgressTracker,
        cancel_event: Optional[asyncio.Event],
    ) -> AuditRecord:
        audit_id = record.id
        engine = BenchmarkEngine(
            self.source,
            peer_fetch_workers=ctx.config.peer_fetch_workers,
            videos_per_peer=ctx.config.peer_videos_per_channel,
            call_timeout=ctx.config.external_timeout_seconds,
        )

        for spec in PIPELINE[start_index:]:
            if spec.name in outputs:
                continue

            await self._persist(self.store.update_section(audit_id, spec.name, "running"), f"start {spec.name}")
            tracker.emit(spec.name, spec.start_pct, f"{spec.label}...")
            await tracker.flush()

            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Audit {audit_id} cancelled before {spec.name}")
                return await self._fail(audit_id, spec.name, CANCELLED_REASON)

            meter = CostMeter(self.provider, timeout=ctx.config.external_timeout_seconds)
            tools = StageTools(source=self.source, engine=engine, meter=meter, report=tracker.scoped(spec))
            api_before = self.source.api_calls
            logger.info(f"Audit {audit_id}: starting {spec.name}")
            try:
                missing = spec.missing_inputs(outputs)
                if missing:
                    raise AuditError(f"Stage {spec.name} is missing upstream output: {', '.join(missing)}")
                stage_input = spec.build_input(outputs, ctx)
                result = await self._guard(
                    spec.run(stage_input, ctx, tools),
                    cancel_event,
                    ctx.config.stage_timeout_seconds,
                    spec.name,
                )
            except AuditCancelledError:
                logger.info(f"Audit {audit_id} cancelled during {spec.name}")
                await self._charge(audit_id, meter.delta() + CostDelta(api_calls=self.source.api_calls - api_before))
                return await self._fail(audit_id, spec.name, CANCELLED_REASON)
            except Exception as exc:
                logger.error(f"Audit {audit_id} failed at {spec.name}: {exc}")
                await self._charge(audit_id, meter.delta() + CostDelta(api_calls=self.source.api_calls - api_before))
                return await self._fail(audit_id, spec.name, str(exc) or exc.__class__.__name__)

            await self._charge(audit_id, meter.delta() + CostDelta(api_calls=self.source.api_calls - api_before))
            payload = result.model_dump(mode="json")
            payload["input_version"] = spec.input_type.VERSION
            # Side records first; a completed section is never rewritten
            if spec.name == "ingestion":
                await self._persist(
                    self.store.update(audit_id, channel_snapshot=payload["snapshot"]),
                    "store snapshot",
                )
            elif spec.name == "series_detection":
                await self._persist(
                    self.store.record_series(audit_id, ctx.channel.id, result.series),
                    "record series",
                )
            await self._persist(
                self.store.update_section(audit_id, spec.name, "completed", result=payload),
                f"complete {spec.name}",
            )
            outputs[spec.name] = result

            tracker.emit(spec.name, spec.end_pct, f"{spec.label} complete")
            await tracker.flush()
            logger.info(f"Audit {audit_id}: finished {spec.name}")

        return await self._finalize(audit_id, tracker)

    async def _finalize(self, audit_id: str, tracker: ProgressTracker) -> AuditRecord:
        tracker.emit("complete", 100, "Audit complete")
        await tracker.flush()
        await self._persist(
            self.store.update(
                audit_id,
                status="completed",
                error_message=None,
                failed_stage=None,
                completed_at=datetime.now(timezone.utc),
            ),
            "mark completed",
        )
        logger.info(f"Audit {audit_id} completed")
        return await self.store.get(audit_id)


def build_orchestrator(locks: Optional[AuditLocks] = None) -> AuditOrchestrator:
    """Orchestrator wired to YouTube, OpenAI and the application database."""
    client = create_youtube_client_with_api_key(require_youtube_api_key())
    source = YouTubeChannelDataSource(
        client,
        async_session_maker,
        timeout=settings.AUDIT_EXTERNAL_TIMEOUT_SECONDS,
        cache_hours=settings.AUDIT_CHANNEL_CACHE_HOURS,
    )
    provider = OpenAIAnalysisProvider(
        api_key=require_openai_api_key(),
        model=settings.OPENAI_MODEL,
        input_cost_per_mtok=settings.OPENAI_INPUT_COST_PER_MTOK,
        output_cost_per_mtok=settings.OPENAI_OUTPUT_COST_PER_MTOK,
    )
    return AuditOrchestrator(SqlAuditStore(async_session_maker), source, provider, locks=locks or PROCESS_LOCKS)


async def process_channel_audit(audit_id: str, mode: str = "run", locks: Optional[AuditLocks] = None) -> None:
    """
    Background entry point for API background tasks and queue workers.

    mode is one of run, resume or restart. Failures are recorded on the audit
    itself; this only logs them.
    """
    try:
        orchestrator = build_orchestrator(locks=locks)
        if mode == "resume":
            record = await orchestrator.resume_audit(audit_id)
        elif mode == "restart":
            record = await orchestrator.restart_audit(audit_id)
        else:
            record = await orchestrator.execute_audit(audit_id)
        logger.info(f"Audit {audit_id} finished with status {record.status}")
    except AuditLockedError as e:
        logger.warning(f"Audit {audit_id} ({mode}) skipped: {e}")
    except AuditNotFoundError as e:
        logger.error(f"Audit {audit_id} ({mode}) aborted: {e}")
    except (AuditError, ValueError) as e:
        logger.error(f"Audit {audit_id} ({mode}) did not run to completion: {e}")
        store = SqlAuditStore(async_session_maker)
        record = await store.get(audit_id)
        if record.status in ("pending", "running"):
            await store.update(audit_id, status="failed", error_message=str(e))
