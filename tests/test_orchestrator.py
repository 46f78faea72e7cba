from __future__ import annotations

import asyncio
from typing import Any

import pytest

from agents.cover_letter_agent import CoverLetterAgent
from agents.fit_analyzer import FitAnalyzer
from agents.job_search import JobSearchAgent, JobSearchClient
from agents.profile_extractor import ProfileExtractor
from agents.resume_extractor import ResumeExtractor
from conftest import ScriptedLLM, jsearch_item, jsearch_transport, no_sleep
from core.errors import PipelinePhase
from core.models import ResumeDocument
from core.pipeline_orchestrator import PipelineOrchestrator, PipelineServices
from core.settings import PipelineSettings
from core.stream import PipelineStream

THREE_JOBS = [
    jsearch_item("j1", "Alpha Engineer", "Acme"),
    jsearch_item("j2", "Beta Engineer", "Globex"),
    jsearch_item("j3", "Gamma Engineer", "Initech"),
]
SCORES = {"Alpha Engineer": 90, "Beta Engineer": 65, "Gamma Engineer": 40}


def _config(**search: Any) -> dict[str, Any]:
    search_config = {"targetRoles": ["ML Engineer"], **search}
    return {"searchConfig": search_config}


def _services(llm: ScriptedLLM, by_query: dict[str, Any]) -> PipelineServices:
    client = JobSearchClient("test-key", transport=jsearch_transport(by_query))
    return PipelineServices(
        extractor=ResumeExtractor(),
        profiles=ProfileExtractor(llm=llm, model="test-model"),
        search=JobSearchAgent(client=client, sleep=no_sleep, rand=lambda: 0.5),
        analyzer=FitAnalyzer(llm=llm, model="test-model"),
        letters=CoverLetterAgent(llm=llm, model="test-model"),
    )


async def _run(
    llm: ScriptedLLM,
    by_query: dict[str, Any],
    document: ResumeDocument | None,
    config: Any,
    *,
    settings: PipelineSettings | None = None,
    stream: PipelineStream | None = None,
):
    settings = settings or PipelineSettings(heartbeat_seconds=0)
    services = _services(llm, by_query)
    stream = stream or PipelineStream("run-1", heartbeat_seconds=0)
    orchestrator = PipelineOrchestrator(
        services, settings, stream, sleep=no_sleep, rand=lambda: 0.5
    )
    events: list[tuple[str, Any]] = []

    async def consume() -> None:
        async for item in stream.events():
            events.append(item)

    consumer = asyncio.create_task(consume())
    run = await orchestrator.execute(document, config)
    await asyncio.wait_for(consumer, timeout=5)
    await services.aclose()
    return run, events


def _names(events: list[tuple[str, Any]]) -> list[str]:
    return [name for name, _ in events]


@pytest.mark.asyncio
async def test_full_run_emits_profile_jobs_analyses_and_letters(resume_document) -> None:
    llm = ScriptedLLM(scores=SCORES)
    run, events = await _run(llm, {"ML Engineer": THREE_JOBS}, resume_document, _config())

    assert run.phase is PipelinePhase.COMPLETED
    names = _names(events)
    assert names.count("profile") == 1
    assert names.count("job") == 3
    assert names.count("analysis") == 3
    assert names.count("coverLetter") == 2
    assert names[-1] == "complete"
    assert names.count("complete") == 1 and "error" not in names

    summary = events[-1][1]
    assert summary["totalJobs"] == 3
    assert summary["analyzedJobs"] == 3
    assert summary["highFitJobs"] == 1
    assert summary["mediumFitJobs"] == 1
    assert summary["coverLettersGenerated"] == 2
    assert summary["skipped"] == []

    # letters only for jobs at or above the default threshold of 60
    letter_ids = [data["jobId"] for name, data in events if name == "coverLetter"]
    assert letter_ids == ["j1", "j2"]


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_ends_at_100(resume_document) -> None:
    llm = ScriptedLLM(scores=SCORES)
    _, events = await _run(llm, {"ML Engineer": THREE_JOBS}, resume_document, _config())

    progress = [data["progress"] for name, data in events if name == "phase"]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    last_phase = [data for name, data in events if name == "phase"][-1]
    assert last_phase["phase"] == "completed"

    phases = [data["phase"] for name, data in events if name == "phase"]
    first_seen = list(dict.fromkeys(phases))
    assert first_seen == ["parsing", "searching", "analyzing", "generating", "completed"]


@pytest.mark.asyncio
async def test_analyses_arrive_in_listing_order_before_letters(resume_document) -> None:
    llm = ScriptedLLM(scores=SCORES)
    _, events = await _run(llm, {"ML Engineer": THREE_JOBS}, resume_document, _config())

    analysis_ids = [data["jobId"] for name, data in events if name == "analysis"]
    assert analysis_ids == ["j1", "j2", "j3"]

    names = _names(events)
    last_analysis = max(i for i, n in enumerate(names) if n == "analysis")
    first_letter = names.index("coverLetter")
    assert last_analysis < first_letter

    # every job event precedes its own analysis
    for job_id in ("j1", "j2", "j3"):
        job_idx = next(i for i, (n, d) in enumerate(events) if n == "job" and d["id"] == job_id)
        analysis_idx = next(
            i for i, (n, d) in enumerate(events) if n == "analysis" and d["jobId"] == job_id
        )
        assert job_idx < analysis_idx


@pytest.mark.asyncio
async def test_zero_jobs_completes_with_empty_summary(resume_document) -> None:
    llm = ScriptedLLM()
    run, events = await _run(llm, {"ML Engineer": []}, resume_document, _config())

    assert run.phase is PipelinePhase.COMPLETED
    names = _names(events)
    assert "analysis" not in names and "coverLetter" not in names
    assert names[-1] == "complete"
    summary = events[-1][1]
    assert summary["totalJobs"] == 0
    assert summary["analyzedJobs"] == 0
    assert all(kind != "fit" for kind, _ in llm.calls)


@pytest.mark.asyncio
async def test_duplicate_listings_across_roles_are_collapsed(resume_document) -> None:
    llm = ScriptedLLM(scores=SCORES)
    by_query = {
        "ML Engineer": [jsearch_item("j1", "Alpha Engineer", "Acme")],
        "Data Scientist": [
            jsearch_item("j1-dup", "alpha engineer", "ACME"),
            jsearch_item("j2", "Beta Engineer", "Globex"),
        ],
    }
    config = {"searchConfig": {"targetRoles": ["ML Engineer", "Data Scientist"]}}
    run, events = await _run(llm, by_query, resume_document, config)

    job_ids = [data["id"] for name, data in events if name == "job"]
    assert job_ids == ["j1", "j2"]
    assert run.summary is not None and run.summary.total_jobs == 2


@pytest.mark.asyncio
async def test_malformed_profile_output_is_a_recoverable_parse_error(resume_document) -> None:
    llm = ScriptedLLM(profile="I could not read that resume, sorry.")
    run, events = await _run(llm, {"ML Engineer": THREE_JOBS}, resume_document, _config())

    assert run.phase is PipelinePhase.ERROR
    names = _names(events)
    assert names[-1] == "error"
    assert "complete" not in names and "job" not in names
    error = events[-1][1]
    assert error["code"] == "PARSE_FAILED"
    assert error["phase"] == "parsing"
    assert error["recoverable"] is True
    # standard policy: 4 attempts
    assert [kind for kind, _ in llm.calls].count("profile") == 4


@pytest.mark.asyncio
async def test_empty_target_roles_fails_validation(resume_document) -> None:
    llm = ScriptedLLM()
    run, events = await _run(
        llm, {}, resume_document, {"searchConfig": {"targetRoles": []}}
    )

    assert run.phase is PipelinePhase.ERROR
    assert _names(events) == ["error"]
    error = events[0][1]
    assert error["code"] == "VALIDATION_FAILED"
    assert error["phase"] == "idle"
    assert error["recoverable"] is False
    assert llm.calls == []


@pytest.mark.asyncio
async def test_missing_document_and_oversized_upload_fail_validation(resume_document) -> None:
    llm = ScriptedLLM()
    _, events = await _run(llm, {}, None, _config())
    assert events[-1][1]["code"] == "VALIDATION_FAILED"

    settings = PipelineSettings(heartbeat_seconds=0, max_upload_bytes=10)
    _, events = await _run(llm, {}, resume_document, _config(), settings=settings)
    assert events[-1][0] == "error"
    assert "limit" in events[-1][1]["message"]


@pytest.mark.asyncio
async def test_invalid_config_json_fails_validation(resume_document) -> None:
    _, events = await _run(ScriptedLLM(), {}, resume_document, "{not json")
    assert _names(events) == ["error"]
    assert events[0][1]["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_one_bad_analysis_is_skipped_not_fatal(resume_document) -> None:
    llm = ScriptedLLM(
        scores={"Alpha Engineer": 90, "Gamma Engineer": 40},
        bad_fit_titles=("Beta Engineer",),
    )
    run, events = await _run(llm, {"ML Engineer": THREE_JOBS}, resume_document, _config())

    assert run.phase is PipelinePhase.COMPLETED
    analysis_ids = [data["jobId"] for name, data in events if name == "analysis"]
    assert analysis_ids == ["j1", "j3"]
    summary = events[-1][1]
    assert summary["analyzedJobs"] == 2
    assert len(summary["skipped"]) == 1
    skipped = summary["skipped"][0]
    assert (skipped["stage"], skipped["key"], skipped["code"]) == ("analyzing", "j2", "MALFORMED_OUTPUT")
    # fast policy: 3 attempts for the bad job
    assert [title for kind, title in llm.calls if kind == "fit"].count("Beta Engineer") == 3


@pytest.mark.asyncio
async def test_failed_role_is_skipped_and_others_continue(resume_document) -> None:
    llm = ScriptedLLM(scores=SCORES)
    by_query = {"ML Engineer": 500, "Data Scientist": THREE_JOBS[:1]}
    config = {"searchConfig": {"targetRoles": ["ML Engineer", "Data Scientist"]}}
    run, events = await _run(llm, by_query, resume_document, config)

    assert run.phase is PipelinePhase.COMPLETED
    summary = events[-1][1]
    assert summary["totalJobs"] == 1
    assert summary["skipped"][0]["stage"] == "searching"
    assert summary["skipped"][0]["key"] == "ML Engineer"
    assert summary["skipped"][0]["code"] == "UPSTREAM_ERROR"


@pytest.mark.asyncio
async def test_cover_letters_can_be_disabled(resume_document) -> None:
    llm = ScriptedLLM(scores=SCORES)
    config = {**_config(), "options": {"generateCoverLetters": False}}
    run, events = await _run(llm, {"ML Engineer": THREE_JOBS}, resume_document, config)

    assert run.phase is PipelinePhase.COMPLETED
    names = _names(events)
    assert "coverLetter" not in names
    assert "generating" not in [data["phase"] for name, data in events if name == "phase"]
    assert events[-1][1]["coverLettersGenerated"] == 0


@pytest.mark.asyncio
async def test_min_fit_score_option_overrides_default(resume_document) -> None:
    llm = ScriptedLLM(scores=SCORES)
    config = {**_config(minFitScore=50), "options": {"minFitScore": 85}}
    _, events = await _run(llm, {"ML Engineer": THREE_JOBS}, resume_document, config)

    letter_ids = [data["jobId"] for name, data in events if name == "coverLetter"]
    assert letter_ids == ["j1"]


@pytest.mark.asyncio
async def test_template_is_passed_to_letters(resume_document) -> None:
    llm = ScriptedLLM(scores=SCORES)
    config = {**_config(), "template": "Dear {{COMPANY_NAME}}, about {{ROLE_TITLE}}..."}
    _, events = await _run(llm, {"ML Engineer": THREE_JOBS}, resume_document, config)

    letters = [data for name, data in events if name == "coverLetter"]
    assert letters and all(letter["metadata"]["templateUsed"] for letter in letters)


@pytest.mark.asyncio
async def test_cancel_during_analysis_stops_without_terminal_event(resume_document) -> None:
    stream = PipelineStream("run-cancel", heartbeat_seconds=0)
    llm = ScriptedLLM(scores=SCORES, on_fit=lambda _title: stream.abort("client cancelled"))
    run, events = await _run(
        llm, {"ML Engineer": THREE_JOBS}, resume_document, _config(), stream=stream
    )

    assert run.phase is PipelinePhase.CANCELLED
    names = _names(events)
    assert "complete" not in names and "error" not in names
    assert "analysis" not in names and "coverLetter" not in names
    assert all(kind != "letter" for kind, _ in llm.calls)
    assert stream.closed


@pytest.mark.asyncio
async def test_profile_event_carries_extraction_metadata(resume_document) -> None:
    llm = ScriptedLLM(scores=SCORES)
    run, events = await _run(llm, {"ML Engineer": []}, resume_document, _config())

    profile = next(data for name, data in events if name == "profile")
    assert profile["seniorityLevel"] == "senior"
    assert profile["metadata"]["sourceType"] == "markdown"
    assert 0.0 <= profile["metadata"]["confidence"] <= 1.0
    assert run.profile is not None and run.profile.metadata.source_type == "markdown"


class DelayedLLM(ScriptedLLM):
    """ScriptedLLM that waits before answering; delays keyed by prompt kind or job title."""

    def __init__(self, delays: dict[str, float], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.delays = delays

    async def chat(self, messages, model, temperature=0.0, **kwargs):
        system = messages[0]["content"]
        user = messages[-1]["content"]
        if "resume parser" in system:
            await asyncio.sleep(self.delays.get("profile", 0))
        else:
            title = next((t for t in self.delays if t in user), None)
            if title is not None:
                await asyncio.sleep(self.delays[title])
        return await super().chat(messages, model, temperature, **kwargs)


@pytest.mark.asyncio
async def test_skipped_jobs_follow_listing_order_not_completion_order(resume_document) -> None:
    llm = DelayedLLM(
        {"Alpha Engineer": 0.05, "Beta Engineer": 0.005},
        scores={"Gamma Engineer": 70},
        bad_fit_titles=("Alpha Engineer", "Beta Engineer"),
    )
    run, events = await _run(llm, {"ML Engineer": THREE_JOBS}, resume_document, _config())

    assert run.phase is PipelinePhase.COMPLETED
    summary = events[-1][1]
    assert [item["key"] for item in summary["skipped"]] == ["j1", "j2"]
    assert {item["code"] for item in summary["skipped"]} == {"MALFORMED_OUTPUT"}
    assert summary["analyzedJobs"] == 1


@pytest.mark.asyncio
async def test_unclassified_failure_becomes_single_unknown_error(resume_document, monkeypatch) -> None:
    async def broken_search(self, *args, **kwargs):
        raise RuntimeError("search backend exploded")

    monkeypatch.setattr(JobSearchAgent, "search", broken_search)
    llm = ScriptedLLM(scores=SCORES)
    stream = PipelineStream("run-unknown", heartbeat_seconds=0)
    run, events = await _run(
        llm, {"ML Engineer": THREE_JOBS}, resume_document, _config(), stream=stream
    )

    assert run.phase is PipelinePhase.ERROR
    names = _names(events)
    assert names[-2:] == ["phase", "error"]
    assert names.count("error") == 1 and "complete" not in names
    payload = events[-1][1]
    assert payload["code"] == "UNKNOWN"
    assert payload["phase"] == "searching"
    assert payload["recoverable"] is False
    assert stream.closed


@pytest.mark.asyncio
async def test_heartbeats_flow_while_parsing_is_slow(resume_document) -> None:
    llm = DelayedLLM({"profile": 0.1}, scores=SCORES)
    stream = PipelineStream("run-heartbeat", heartbeat_seconds=0.01)
    settings = PipelineSettings(heartbeat_seconds=0.01)
    run, events = await _run(
        llm, {"ML Engineer": THREE_JOBS}, resume_document, _config(), settings=settings, stream=stream
    )

    assert run.phase is PipelinePhase.COMPLETED
    names = _names(events)
    assert "heartbeat" in names
    assert names.index("heartbeat") < names.index("profile")
    assert names[-1] == "complete"

    # Nothing is delivered once the terminal event has gone out.
    await asyncio.sleep(0.05)
    assert stream.closed
    assert stream.send("heartbeat", {"timestamp": "late"}) is False
    assert _names(events)[-1] == "complete"
