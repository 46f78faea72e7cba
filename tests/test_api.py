from __future__ import annotations

import json

from fastapi.testclient import TestClient
import pytest

from agents.cover_letter_agent import CoverLetterAgent
from agents.fit_analyzer import FitAnalyzer
from agents.job_search import JobSearchAgent, JobSearchClient, transform_job
from agents.profile_extractor import ProfileExtractor
from agents.resume_extractor import ResumeExtractor
from api.app import app
from api.pipeline import PipelineRuntime, build_runtime
from conftest import PROFILE_JSON, RESUME_TEXT, ScriptedLLM, jsearch_item, jsearch_transport, no_sleep
from core.obs import NullLogger
from core.pipeline_orchestrator import PipelineServices
from core.settings import PipelineSettings
from core.sse import iter_messages


def _runtime(by_query: dict, scores: dict[str, int] | None = None) -> PipelineRuntime:
    llm = ScriptedLLM(scores=scores or {})
    client = JobSearchClient("test-key", transport=jsearch_transport(by_query))
    services = PipelineServices(
        extractor=ResumeExtractor(),
        profiles=ProfileExtractor(llm=llm, model="test-model"),
        search=JobSearchAgent(client=client, sleep=no_sleep),
        analyzer=FitAnalyzer(llm=llm, model="test-model"),
        letters=CoverLetterAgent(llm=llm, model="test-model"),
    )
    return PipelineRuntime(settings=PipelineSettings(heartbeat_seconds=0), services=services)


@pytest.fixture
def client_for():
    def _make(runtime: PipelineRuntime) -> TestClient:
        app.state.logger = NullLogger()
        app.state.runtime = runtime
        return TestClient(app)

    yield _make
    app.state.runtime = None


def _post(client: TestClient, config: dict | str | None, resume: bytes | None = RESUME_TEXT.encode()):
    files = {"resume": ("resume.md", resume, "text/markdown")} if resume is not None else None
    data = {"config": config if isinstance(config, str) else json.dumps(config)} if config is not None else {}
    return client.post("/pipeline", files=files, data=data)


def test_healthz(client_for) -> None:
    with client_for(_runtime({})) as client:
        resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert "x-request-id" in resp.headers


def test_request_id_is_echoed(client_for) -> None:
    with client_for(_runtime({})) as client:
        resp = client.get("/", headers={"x-request-id": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"
    assert resp.json()["request_id"] == "req-123"


def test_pipeline_streams_events_until_complete(client_for) -> None:
    runtime = _runtime(
        {"ML Engineer": [jsearch_item("j1", "Alpha Engineer", "Acme")]},
        scores={"Alpha Engineer": 88},
    )
    with client_for(runtime) as client:
        resp = _post(client, {"searchConfig": {"targetRoles": ["ML Engineer"]}})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["x-run-id"]
    messages = list(iter_messages([resp.content]))
    names = [m.event for m in messages]
    assert names[0] == "phase"
    assert names[-1] == "complete"
    assert names.count("job") == 1
    assert names.count("analysis") == 1
    assert names.count("coverLetter") == 1
    assert messages[-1].data["highFitJobs"] == 1


def test_validation_errors_are_reported_in_band(client_for) -> None:
    with client_for(_runtime({})) as client:
        resp = _post(client, {"searchConfig": {"targetRoles": []}})
    assert resp.status_code == 200
    messages = list(iter_messages([resp.content]))
    assert [m.event for m in messages] == ["error"]
    assert messages[0].data["code"] == "VALIDATION_FAILED"
    assert messages[0].data["phase"] == "idle"


def test_missing_resume_is_a_validation_error(client_for) -> None:
    with client_for(_runtime({})) as client:
        resp = _post(client, {"searchConfig": {"targetRoles": ["x"]}}, resume=None)
    messages = list(iter_messages([resp.content]))
    assert messages[-1].event == "error"
    assert messages[-1].data["code"] == "VALIDATION_FAILED"


def test_cancel_unknown_run_is_404(client_for) -> None:
    with client_for(_runtime({})) as client:
        resp = client.post("/pipeline/does-not-exist/cancel")
    assert resp.status_code == 404


def test_jsearch_health_endpoint(client_for) -> None:
    with client_for(_runtime({"test": []})) as client:
        resp = client.get("/healthz/jsearch")
    assert resp.status_code == 200
    assert resp.json()["available"] is True


@pytest.mark.asyncio
async def test_runtime_cancel_aborts_the_registered_stream() -> None:
    runtime = _runtime({})
    stream = runtime.start(None, None, run_id="abc")
    assert runtime.cancel("abc") is True
    assert stream.cancelled
    assert runtime.cancel("nope") is False
    await runtime.aclose()
    assert runtime.streams == {}


@pytest.mark.asyncio
async def test_runtime_builds_without_llm_keys() -> None:
    runtime = build_runtime(PipelineSettings(), obs=NullLogger())
    assert runtime.streams == {}
    await runtime.aclose()


def test_parse_resume_step_returns_profile(client_for) -> None:
    with client_for(_runtime({})) as client:
        resp = client.post(
            "/api/parse-resume", files={"file": ("resume.md", RESUME_TEXT.encode(), "text/markdown")}
        )
    assert resp.status_code == 200
    profile = resp.json()["profile"]
    assert profile["seniorityLevel"] == "senior"
    assert profile["metadata"]["sourceType"] == "markdown"


def test_parse_resume_step_reports_typed_failure(client_for) -> None:
    with client_for(_runtime({})) as client:
        resp = client.post(
            "/api/parse-resume", files={"file": ("cv.txt", b"too short", "text/plain")}
        )
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "EMPTY_CONTENT"
    assert body["recoverable"] is False
    assert "50 characters" in body["error"]


def test_search_step_returns_jobs_and_metadata(client_for) -> None:
    runtime = _runtime({"ML Engineer": [jsearch_item("j1", "Alpha Engineer", "Acme")]})
    with client_for(runtime) as client:
        resp = client.post("/api/search-jobs", json={"config": {"targetRoles": ["ML Engineer"]}})
    assert resp.status_code == 200
    body = resp.json()
    assert [job["id"] for job in body["jobs"]] == ["j1"]
    assert body["metadata"]["totalFound"] == 1
    assert body["skipped"] == []


def test_search_step_rejects_empty_roles(client_for) -> None:
    with client_for(_runtime({})) as client:
        resp = client.post("/api/search-jobs", json={"config": {"targetRoles": []}})
    assert resp.status_code == 422


def test_analyze_and_letter_steps(client_for) -> None:
    job = transform_job(jsearch_item("j1", "Alpha Engineer", "Acme")).to_wire()
    runtime = _runtime({}, scores={"Alpha Engineer": 84})
    with client_for(runtime) as client:
        analysis = client.post("/api/analyze-fit", json={"profile": PROFILE_JSON, "job": job})
        assert analysis.status_code == 200
        body = analysis.json()["analysis"]
        assert body["jobId"] == "j1" and body["overallScore"] == 84

        letter = client.post(
            "/api/generate-cover-letter",
            json={"profile": PROFILE_JSON, "job": job, "analysis": body, "template": "Dear {{COMPANY_NAME}}"},
        )
    assert letter.status_code == 200
    draft = letter.json()["coverLetter"]
    assert draft["jobId"] == "j1"
    assert draft["metadata"]["templateUsed"] is True
