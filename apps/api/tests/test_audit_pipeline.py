import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from models.audit_section import AuditSection
from services import audit_prompts
from services.audit import AuditOrchestrator
from services.audit_config import AuditRunConfig
from services.audit_errors import (
    AuditLockedError,
    AuditPersistenceError,
    ChannelResolutionError,
    ProviderError,
    ResumeNotPossibleError,
)
from services.audit_locks import LocalAuditLocks
from services.audit_stages import PIPELINE
from services.audit_store import STAGES
from conftest import (
    MISC_TITLES,
    NOW,
    FakeAnalysisProvider,
    FakeChannelDataSource,
    make_video,
    respond_by_prompt,
)


def _orchestrator(store, source, provider, **kwargs):
    return AuditOrchestrator(store, source, provider, clock=lambda: NOW, **kwargs)


def _statuses(record):
    return {s.stage: s.status for s in record.sections}


@pytest.mark.asyncio
async def test_full_run_completes_with_monotonic_progress(store, source, provider):
    events = []
    orchestrator = _orchestrator(
        store, source, provider, progress_callback=lambda stage, pct, msg: events.append((stage, pct, msg))
    )

    record = await orchestrator.run_audit("@subject", "baseline", created_by="tester")

    assert record.status == "completed"
    assert record.channel_id == "UC_subject"
    assert record.completed_at is not None
    assert set(_statuses(record).values()) == {"completed"}

    pcts = [pct for _, pct, _ in events]
    assert pcts == sorted(pcts)
    assert events[-1][:2] == ("complete", 100)
    assert record.progress["pct"] == 100

    outputs = record.outputs
    assert outputs["ingestion"]["snapshot"]["size_tier"] == "growing"
    assert record.channel_snapshot["channel_id"] == "UC_subject"

    series = outputs["series_detection"]
    assert series["semantic_pass"] == "structured"
    assert [s["name"] for s in series["series"]] == ["Deep Dive", "Random Topics"]
    assert series["series"][0]["performance_trend"] == "growing"
    assert series["series"][1]["detection_method"] == "semantic"

    assert [p["id"] for p in outputs["competitor_matching"]["peers"]] == ["UC_peer_a", "UC_peer_b", "UC_peer_c"]
    assert outputs["benchmarking"]["benchmarks"]["has_benchmarks"] is True
    assert outputs["benchmarking"]["comparison"]["overall_score"] is not None
    assert outputs["opportunity_analysis"]["source"] == "provider"
    assert outputs["recommendations"]["start"][0]["action"] == "Start a weekly live Q&A"
    assert outputs["executive_summary"]["audit_type"] == "baseline"
    assert outputs["executive_summary"]["summary"].startswith("## Summary")

    # series, opportunities, recommendations, summary
    assert len(provider.calls) == 4
    assert record.total_tokens == 600
    assert record.total_cost == pytest.approx(0.004)
    # resolve (1) + subject videos (2) + three peers (2 each)
    assert record.youtube_api_calls == 9


@pytest.mark.asyncio
async def test_stage_failure_is_contained_and_resume_skips_completed_work(store, source):
    provider = FakeAnalysisProvider(fail_on=audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT)
    orchestrator = _orchestrator(store, source, provider)

    failed = await orchestrator.run_audit("@subject")

    assert failed.status == "failed"
    assert failed.failed_stage == "opportunity_analysis"
    assert "provider exploded" in failed.error_message
    statuses = _statuses(failed)
    assert [statuses[s] for s in STAGES] == [
        "completed", "completed", "completed", "completed", "failed", "pending", "pending",
    ]
    assert failed.total_tokens == 150

    earlier = {stage: failed.outputs[stage] for stage in STAGES[:4]}
    fetches_before = list(source.fetch_calls)

    provider.fail_on = None
    resumed = await orchestrator.resume_audit(failed.id)

    assert resumed.status == "completed"
    assert resumed.failed_stage is None
    assert source.fetch_calls == fetches_before
    assert {stage: resumed.outputs[stage] for stage in STAGES[:4]} == earlier
    series_calls = [c for c in provider.calls if c["system_prompt"] == audit_prompts.SERIES_SYSTEM_PROMPT]
    assert len(series_calls) == 1
    assert resumed.total_tokens == 150 * 4


@pytest.mark.asyncio
async def test_resume_from_benchmarking_after_peer_fetch_failure(store, source, provider):
    source.failing_channels = {"UC_peer_b"}
    orchestrator = _orchestrator(store, source, provider)

    failed = await orchestrator.run_audit("@subject")
    assert failed.failed_stage == "benchmarking"
    assert "quota exceeded" in failed.section("benchmarking").error_message
    series_before = failed.outputs["series_detection"]

    source.failing_channels = set()
    resumed = await orchestrator.resume_audit(failed.id)

    assert resumed.status == "completed"
    assert resumed.outputs["series_detection"] == series_before
    assert source.fetch_calls.count("UC_subject") == 1


@pytest.mark.asyncio
async def test_resume_of_completed_audit_is_a_no_op(store, source, provider):
    orchestrator = _orchestrator(store, source, provider)
    done = await orchestrator.run_audit("@subject")
    calls = len(provider.calls)

    again = await orchestrator.resume_audit(done.id)

    assert again.status == "completed"
    assert again.total_tokens == done.total_tokens
    assert again.outputs == done.outputs
    assert len(provider.calls) == calls


@pytest.mark.asyncio
async def test_stage_timeout_fails_ingestion_and_blocks_resume(store, provider):
    source = FakeChannelDataSource(fetch_delay=1.0)
    orchestrator = _orchestrator(store, source, provider)
    config = AuditRunConfig(stage_timeout_seconds=0.05)

    failed = await orchestrator.run_audit("@subject", config=config)

    assert failed.status == "failed"
    assert failed.failed_stage == "ingestion"
    assert "timed out" in failed.error_message

    with pytest.raises(ResumeNotPossibleError):
        await orchestrator.resume_audit(failed.id)

    restarted = await orchestrator.restart_audit(failed.id)
    assert restarted.status == "failed"
    assert restarted.youtube_api_calls == 2 * 3


@pytest.mark.asyncio
async def test_cancellation_during_a_stage(store, source):
    provider = FakeAnalysisProvider(delay=0.5)
    cancel = asyncio.Event()

    def on_progress(stage, pct, message):
        if stage == "series_detection" and not cancel.is_set():
            asyncio.get_running_loop().call_later(0.05, cancel.set)

    orchestrator = _orchestrator(store, source, provider, progress_callback=on_progress)

    record = await orchestrator.run_audit("@subject", cancel_event=cancel)

    assert record.status == "failed"
    assert record.failed_stage == "series_detection"
    assert record.error_message == "cancelled"
    assert record.section("ingestion").status == "completed"
    assert record.total_tokens == 0


@pytest.mark.asyncio
async def test_cancellation_before_start(store, source, provider):
    orchestrator = _orchestrator(store, source, provider)
    cancel = asyncio.Event()
    cancel.set()

    record = await orchestrator.run_audit("@subject", cancel_event=cancel)

    assert record.failed_stage == "ingestion"
    assert record.section("ingestion").status == "failed"
    assert source.fetch_calls == []


@pytest.mark.asyncio
async def test_cost_of_returned_calls_is_charged_when_stage_fails(store, source):
    def responder(system_prompt, prompt):
        if system_prompt == audit_prompts.RECOMMENDATIONS_SYSTEM_PROMPT:
            return "I could not come up with anything."
        return respond_by_prompt(system_prompt, prompt)

    provider = FakeAnalysisProvider(
        responder=responder,
        fail_on=audit_prompts.RECOMMENDATIONS_SYSTEM_PROMPT,
        fail_after=1,
    )
    orchestrator = _orchestrator(store, source, provider)

    record = await orchestrator.run_audit("@subject")

    assert record.failed_stage == "recommendations"
    # series + opportunities + the first recommendations attempt
    assert record.total_tokens == 450
    assert record.total_cost == pytest.approx(0.003)


@pytest.mark.asyncio
async def test_unparseable_recommendations_fall_back_to_heuristics(store, source):
    def responder(system_prompt, prompt):
        if system_prompt == audit_prompts.RECOMMENDATIONS_SYSTEM_PROMPT:
            return "{\"stop\": ["
        return respond_by_prompt(system_prompt, prompt)

    orchestrator = _orchestrator(store, source, FakeAnalysisProvider(responder=responder))
    record = await orchestrator.run_audit("@subject")

    recommendations = record.outputs["recommendations"]
    assert record.status == "completed"
    assert recommendations["source"] == "heuristic"
    assert recommendations["incomplete"] is True
    assert recommendations["stop"] and recommendations["start"] and recommendations["optimize"]
    assert record.total_tokens == 150 * 5


@pytest.mark.asyncio
async def test_concurrent_resume_is_rejected(store, source):
    locks = LocalAuditLocks()
    provider = FakeAnalysisProvider(fail_on=audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT)
    orchestrator = _orchestrator(store, source, provider, locks=locks)
    failed = await orchestrator.run_audit("@subject")

    async with locks.hold(failed.id):
        with pytest.raises(AuditLockedError):
            await orchestrator.resume_audit(failed.id)


@pytest.mark.asyncio
async def test_interrupted_running_section_is_rerun(store, source):
    provider = FakeAnalysisProvider(fail_on=audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT)
    orchestrator = _orchestrator(store, source, provider)
    failed = await orchestrator.run_audit("@subject")

    # Simulate a worker dying mid-stage
    await store.update_section(failed.id, "opportunity_analysis", "running")
    await store.update(failed.id, status="running")

    provider.fail_on = None
    resumed = await orchestrator.resume_audit(failed.id)

    assert resumed.status == "completed"
    assert resumed.section("opportunity_analysis").status == "completed"


@pytest.mark.asyncio
async def test_resume_rejects_checkpoint_with_unknown_schema_version(store, source, session_maker):
    provider = FakeAnalysisProvider(fail_on=audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT)
    orchestrator = _orchestrator(store, source, provider)
    failed = await orchestrator.run_audit("@subject")

    async with session_maker() as db:
        section = (
            await db.execute(
                select(AuditSection).where(
                    AuditSection.audit_id == failed.id,
                    AuditSection.stage == "series_detection",
                )
            )
        ).scalar_one()
        section.result_json = {**section.result_json, "schema_version": 99}
        await db.commit()

    with pytest.raises(ResumeNotPossibleError):
        await orchestrator.resume_audit(failed.id)


@pytest.mark.asyncio
async def test_resume_rejects_checkpoint_built_from_older_input(store, source, session_maker):
    provider = FakeAnalysisProvider(fail_on=audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT)
    orchestrator = _orchestrator(store, source, provider)
    failed = await orchestrator.run_audit("@subject")

    series = failed.section("series_detection")
    assert series.result["input_version"] == 1

    async with session_maker() as db:
        section = (
            await db.execute(
                select(AuditSection).where(
                    AuditSection.audit_id == failed.id,
                    AuditSection.stage == "series_detection",
                )
            )
        ).scalar_one()
        section.result_json = {key: value for key, value in section.result_json.items() if key != "input_version"}
        await db.commit()

    with pytest.raises(ResumeNotPossibleError, match="input version"):
        await orchestrator.resume_audit(failed.id)


@pytest.mark.asyncio
async def test_unresolvable_channel_raises_and_marks_audit(store, provider):
    source = FakeChannelDataSource()
    orchestrator = _orchestrator(store, source, provider)

    with pytest.raises(ChannelResolutionError):
        await orchestrator.run_audit("missing-channel", created_by="tester")

    [record] = await store.list_audits(created_by="tester")
    assert record.status == "failed"
    assert record.failed_stage is None
    assert set(_statuses(record).values()) == {"pending"}
    assert record.youtube_api_calls == 1


@pytest.mark.asyncio
async def test_transient_lookup_failure_fails_audit_without_raising(store, provider):
    source = FakeChannelDataSource()
    source.fail_resolve = ProviderError("quota exceeded")
    orchestrator = _orchestrator(store, source, provider)

    record = await orchestrator.run_audit("@subject")

    assert record.status == "failed"
    assert record.failed_stage == "ingestion"
    with pytest.raises(ResumeNotPossibleError):
        await orchestrator.resume_audit(record.id)


@pytest.mark.asyncio
async def test_create_audit_validates_input(store, source, provider):
    orchestrator = _orchestrator(store, source, provider)
    with pytest.raises(ChannelResolutionError):
        await orchestrator.create_audit("   ")
    with pytest.raises(ValueError):
        await orchestrator.create_audit("@subject", audit_type="teardown")


def _responding(system_prompt_to_text):
    def responder(system_prompt, prompt):
        if system_prompt in system_prompt_to_text:
            return system_prompt_to_text[system_prompt]
        return respond_by_prompt(system_prompt, prompt)

    return responder


@pytest.mark.asyncio
async def test_opportunity_items_with_null_fields_keep_defaults(store, source):
    payload = (
        '{"content_gaps": ['
        '{"gap": "Beginner tutorials", "evidence": null, "potential_impact": "high",'
        ' "suggested_action": "Film a beginner series"},'
        '{"gap": ["not", "text"]}'
        '], "growth_levers": null, "market_potential": null}'
    )
    provider = FakeAnalysisProvider(responder=_responding({audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT: payload}))

    record = await _orchestrator(store, source, provider).run_audit("@subject")

    assert record.status == "completed"
    opportunities = record.outputs["opportunity_analysis"]
    assert opportunities["source"] == "provider"
    assert opportunities["content_gaps"] == [
        {
            "gap": "Beginner tutorials",
            "evidence": "",
            "potential_impact": "high",
            "suggested_action": "Film a beginner series",
        }
    ]


@pytest.mark.asyncio
async def test_recommendation_items_with_null_fields_keep_defaults(store, source):
    payload = '{"stop": [], "start": [{"action": "Go live weekly", "rationale": null, "impact": "high"}], "optimize": null}'
    provider = FakeAnalysisProvider(responder=_responding({audit_prompts.RECOMMENDATIONS_SYSTEM_PROMPT: payload}))

    record = await _orchestrator(store, source, provider).run_audit("@subject")

    assert record.status == "completed"
    recommendations = record.outputs["recommendations"]
    assert recommendations["source"] == "provider"
    assert recommendations["start"][0]["action"] == "Go live weekly"
    assert recommendations["start"][0]["rationale"] == ""


@pytest.mark.asyncio
async def test_all_malformed_opportunities_fall_back_to_heuristics(store, source):
    payload = '{"content_gaps": [{"gap": 5}], "growth_levers": [{"lever": {"name": "x"}}]}'
    provider = FakeAnalysisProvider(responder=_responding({audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT: payload}))

    record = await _orchestrator(store, source, provider).run_audit("@subject")

    assert record.status == "completed"
    assert record.outputs["opportunity_analysis"]["source"] == "heuristic"


@pytest.mark.asyncio
async def test_run_without_peers_completes_with_no_benchmarks(store, provider):
    source = FakeChannelDataSource(peers=[])

    record = await _orchestrator(store, source, provider).run_audit("@subject")

    assert record.status == "completed"
    assert record.outputs["competitor_matching"]["peers"] == []
    benchmarking = record.outputs["benchmarking"]
    assert benchmarking["peer_count"] == 0
    assert benchmarking["benchmarks"]["has_benchmarks"] is False
    assert benchmarking["comparison"]["metrics"] == []
    assert benchmarking["comparison"]["overall_score"] is None
    # resolve (1) + subject videos (2), no peer fetches
    assert record.youtube_api_calls == 3


@pytest.mark.asyncio
async def test_no_benchmarks_uses_absolute_opportunity_heuristics(store):
    quiet_videos = [
        make_video(f"s-{i}", title=title, days_ago=10 + i, views=10_000, likes=10, comments=0)
        for i, title in enumerate(MISC_TITLES[:3])
    ]
    source = FakeChannelDataSource(videos=quiet_videos, peers=[])
    provider = FakeAnalysisProvider(responder=_responding({audit_prompts.OPPORTUNITIES_SYSTEM_PROMPT: ""}))

    record = await _orchestrator(store, source, provider).run_audit("@subject")

    assert record.status == "completed"
    opportunities = record.outputs["opportunity_analysis"]
    assert opportunities["source"] == "heuristic"
    levers = [lever["lever"] for lever in opportunities["growth_levers"]]
    assert "Upload consistency" in levers
    assert "Audience engagement" in levers
    assert [gap["gap"] for gap in opportunities["content_gaps"]] == ["No Shorts published"]


def test_stage_specs_report_missing_upstream_outputs():
    by_name = {spec.name: spec for spec in PIPELINE}

    assert by_name["ingestion"].missing_inputs({}) == []
    assert by_name["benchmarking"].missing_inputs({"ingestion": object()}) == ["competitor_matching"]
    for position, spec in enumerate(PIPELINE):
        earlier = {s.name for s in PIPELINE[:position]}
        assert set(spec.requires) <= earlier


@pytest.mark.asyncio
async def test_series_checkpoint_not_completed_when_series_write_fails(store, source, provider):
    orchestrator = _orchestrator(store, source, provider)

    with patch.object(store, "record_series", new=AsyncMock(side_effect=AuditPersistenceError("disk full"))):
        with pytest.raises(AuditPersistenceError):
            await orchestrator.run_audit("@subject", created_by="tester")

    [record] = await store.list_audits(created_by="tester")
    assert record.section("ingestion").status == "completed"
    assert record.section("series_detection").status == "running"

    resumed = await orchestrator.resume_audit(record.id)

    assert resumed.status == "completed"
    assert resumed.section("series_detection").status == "completed"
    series_calls = [c for c in provider.calls if c["system_prompt"] == audit_prompts.SERIES_SYSTEM_PROMPT]
    assert len(series_calls) == 2
