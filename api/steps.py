"""Single-step endpoints that run one pipeline stage outside a streamed run.

  POST /api/parse-resume            multipart `file` -> {"profile": ...}
  POST /api/search-jobs             {"config": SearchConfig} -> {"jobs", "metadata", "skipped"}
  POST /api/analyze-fit             {"profile", "job"} -> {"analysis": ...}
  POST /api/generate-cover-letter   {"profile", "job", "analysis"?, "template"?} -> {"coverLetter": ...}

Failures answer `{"error", "code", "recoverable"}`; recoverable failures use a
5xx status so callers know a retry may succeed.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import JSONResponse

from agents.profile_extractor import with_metadata
from api.pipeline import PipelineRuntime, get_runtime, read_upload
from core.errors import ErrorKind, ParseError, PipelinePhase, wrap_error
from core.models import (
    CandidateProfile,
    CandidateProfileWithMetadata,
    CoverLetterDraft,
    FitAnalysis,
    JobOpportunity,
    SearchConfig,
    SearchMetadata,
    SkippedItem,
    WireModel,
)
from core.retry import RetryExecutor, RetryPresets, logging_observer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

T = TypeVar("T")


class SearchJobsRequest(WireModel):
    config: SearchConfig


class SearchJobsResponse(WireModel):
    jobs: list[JobOpportunity]
    metadata: SearchMetadata
    skipped: list[SkippedItem] = []


class AnalyzeFitRequest(WireModel):
    profile: CandidateProfile
    job: JobOpportunity


class CoverLetterRequest(WireModel):
    profile: CandidateProfile
    job: JobOpportunity
    analysis: Optional[FitAnalysis] = None
    template: Optional[str] = None


def _failure(exc: Exception, phase: PipelinePhase, kind: ErrorKind, *, retry_status: int = 500) -> JSONResponse:
    err = wrap_error(exc, phase, kind)
    logger.warning(
        "steps.failure phase=%s code=%s recoverable=%s error=%s",
        phase.value,
        err.code,
        err.recoverable,
        err.message,
    )
    return JSONResponse(
        {"error": err.message, "code": err.code, "recoverable": err.recoverable},
        status_code=retry_status if err.recoverable else 400,
    )


async def _with_retry(operation: str, call: Callable[[], Awaitable[T]]) -> T:
    executor = RetryExecutor(RetryPresets.STANDARD, observer=logging_observer(logger, operation))
    return await executor.run(call)


@router.post("/parse-resume")
async def parse_resume(
    file: UploadFile | None = File(None),
    runtime: PipelineRuntime = Depends(get_runtime),
) -> Any:
    max_bytes = runtime.settings.max_upload_bytes
    try:
        document = await read_upload(file, max_bytes)
        if document is None:
            raise ParseError("No file provided", ErrorKind.PARSE_FAILED)
        if document.size > max_bytes:
            raise ParseError(
                f"File too large (max {max_bytes // (1024 * 1024)}MB)", ErrorKind.PARSE_FAILED
            )
        extracted = await runtime.services.extractor.extract_text(document)
        profile = await _with_retry(
            "steps.profile.extract", lambda: runtime.services.profiles.extract(extracted.text)
        )
    except Exception as exc:  # noqa: BLE001 - reported as a typed JSON failure
        return _failure(exc, PipelinePhase.PARSING, ErrorKind.PARSE_FAILED)
    result: CandidateProfileWithMetadata = with_metadata(
        profile, source_type=extracted.source_type, warnings=extracted.warnings
    )
    logger.info(
        "steps.parsed source_type=%s confidence=%s", extracted.source_type, result.metadata.confidence
    )
    return {"profile": result.to_wire()}


@router.post("/search-jobs")
async def search_jobs(
    payload: SearchJobsRequest,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> Any:
    try:
        outcome = await runtime.services.search.search(payload.config)
    except Exception as exc:  # noqa: BLE001 - reported as a typed JSON failure
        return _failure(exc, PipelinePhase.SEARCHING, ErrorKind.SEARCH_FAILED, retry_status=503)
    logger.info("steps.searched jobs=%s skipped=%s", len(outcome.jobs), len(outcome.skipped))
    return SearchJobsResponse(
        jobs=outcome.jobs, metadata=outcome.metadata, skipped=outcome.skipped
    ).to_wire()


@router.post("/analyze-fit")
async def analyze_fit(
    payload: AnalyzeFitRequest,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> Any:
    try:
        analysis = await _with_retry(
            "steps.fit.score", lambda: runtime.services.analyzer.score(payload.profile, payload.job)
        )
    except Exception as exc:  # noqa: BLE001 - reported as a typed JSON failure
        return _failure(exc, PipelinePhase.ANALYZING, ErrorKind.ANALYSIS_FAILED)
    return {"analysis": analysis.to_wire()}


@router.post("/generate-cover-letter")
async def generate_cover_letter(
    payload: CoverLetterRequest,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> Any:
    try:
        letter: CoverLetterDraft = await _with_retry(
            "steps.cover_letter.draft",
            lambda: runtime.services.letters.draft(
                payload.profile, payload.job, payload.analysis, payload.template
            ),
        )
    except Exception as exc:  # noqa: BLE001 - reported as a typed JSON failure
        return _failure(exc, PipelinePhase.GENERATING, ErrorKind.GENERATION_FAILED)
    return {"coverLetter": letter.to_wire()}
