"""Streaming pipeline orchestrator.

One orchestrator drives one run, emitting typed events on its PipelineStream:

    idle -> parsing -> searching -> analyzing -> generating -> completed
                 \\-> (cancelled | error) from any non-terminal phase

Stage work per run:

  parsing     resume text -> LLM profile (retry: standard)               0-15%
  searching   one JSearch query per role (retry: rate_limited)           15-35%
  analyzing   batches of `batch_size` jobs, gathered concurrently        35-75%
  generating  cover letters for jobs scoring >= threshold                75-90%
  completed   phase{completed,100} then `complete` with the summary      100%

Per-item failures (one role, one job) are logged, recorded in
`summary.skipped` and do not stop the run. Stage-fatal failures produce a
single `error` event. The stream is closed on every exit path.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, TypeVar

import httpx
from pydantic import ValidationError

from agents.cover_letter_agent import CoverLetterAgent
from agents.fit_analyzer import FitAnalyzer
from agents.job_search import JobSearchAgent, JobSearchClient
from agents.profile_extractor import ProfileExtractor, with_metadata
from agents.resume_extractor import ResumeExtractor
from core.errors import (
    PARSE_KINDS,
    ErrorKind,
    ParseError,
    PipelineCancelled,
    PipelineError,
    PipelinePhase,
    ValidationFailed,
    wrap_error,
)
from core.llm_client import AsyncLLMClient
from core.llm_factory import get_async_llm_client
from core.models import (
    CandidateProfileWithMetadata,
    CoverLetterDraft,
    FitAnalysis,
    JobOpportunity,
    PipelineConfig,
    PipelineSummary,
    ResumeDocument,
    SkippedItem,
)
from core.obs import Logger, NullLogger, bind_log_context, with_span
from core.progress import ProgressTracker, fraction_percent
from core.retry import RetryExecutor, RetryPolicy, RetryPresets, logging_observer
from core.settings import PipelineSettings
from core.state_machine import PhaseMachine
from core.stream import PipelineStream

logger = logging.getLogger(__name__)

T = TypeVar("T")

HIGH_FIT_SCORE = 80
MEDIUM_FIT_SCORE = 60


@dataclass(frozen=True, slots=True)
class PipelineServices:
    """Stateless collaborators shared by every run."""

    extractor: ResumeExtractor
    profiles: ProfileExtractor
    search: JobSearchAgent
    analyzer: FitAnalyzer
    letters: CoverLetterAgent

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        *,
        llm: AsyncLLMClient | None = None,
        search_transport: httpx.AsyncBaseTransport | None = None,
        obs: Logger | None = None,
    ) -> PipelineServices:
        llm = llm or get_async_llm_client(settings, logger=obs)
        model = settings.llm_model
        return cls(
            extractor=ResumeExtractor(),
            profiles=ProfileExtractor(llm=llm, model=model),
            search=JobSearchAgent(
                client=JobSearchClient.from_settings(settings, transport=search_transport),
                ignored_sites=settings.ignored_job_sites,
            ),
            analyzer=FitAnalyzer(llm=llm, model=model),
            letters=CoverLetterAgent(llm=llm, model=model),
        )

    async def aclose(self) -> None:
        await self.search.client.aclose()


@dataclass(slots=True)
class PipelineRequest:
    document: ResumeDocument
    config: PipelineConfig


@dataclass(slots=True)
class PipelineRun:
    """State of one run; owned by a single orchestrator."""

    run_id: str
    machine: PhaseMachine = field(default_factory=PhaseMachine)
    progress: ProgressTracker = field(default_factory=ProgressTracker)
    profile: Optional[CandidateProfileWithMetadata] = None
    jobs: list[JobOpportunity] = field(default_factory=list)
    analyses: dict[str, FitAnalysis] = field(default_factory=dict)
    cover_letters: dict[str, CoverLetterDraft] = field(default_factory=dict)
    skipped: list[SkippedItem] = field(default_factory=list)
    error: Optional[PipelineError] = None
    summary: Optional[PipelineSummary] = None

    @property
    def phase(self) -> PipelinePhase:
        return self.machine.phase


def validate_request(
    document: ResumeDocument | None,
    config: PipelineConfig | Mapping[str, Any] | str | None,
    *,
    max_upload_bytes: int,
) -> PipelineRequest:
    """Check the upload and parse the config, raising ValidationFailed."""
    if document is None or config is None:
        raise ValidationFailed("Missing resume file or search config")
    if not document.data:
        raise ValidationFailed("Resume file is empty")
    if document.size > max_upload_bytes:
        raise ValidationFailed(
            f"Resume file exceeds {max_upload_bytes // (1024 * 1024)}MB limit",
            context={"size": document.size},
        )
    if isinstance(config, PipelineConfig):
        return PipelineRequest(document=document, config=config)
    try:
        data = json.loads(config) if isinstance(config, str) else dict(config)
    except (json.JSONDecodeError, TypeError, ValueError) as exc:
        raise ValidationFailed("Search config is not valid JSON") from exc
    try:
        parsed = PipelineConfig.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {"loc": (), "msg": str(exc)}
        where = ".".join(str(p) for p in first["loc"])
        raise ValidationFailed(
            f"Invalid search config: {where}: {first['msg']}" if where else f"Invalid search config: {first['msg']}",
            context={"error_count": exc.error_count()},
        ) from exc
    return PipelineRequest(document=document, config=parsed)


def _stage_fields(self: PipelineOrchestrator, *args: Any, **kwargs: Any) -> dict[str, Any]:
    return {"run_id": self.run.run_id}


class PipelineOrchestrator:
    """Drives one pipeline run and reports through `stream`."""

    def __init__(
        self,
        services: PipelineServices,
        settings: PipelineSettings,
        stream: PipelineStream,
        *,
        run_id: str | None = None,
        obs: Logger | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.services = services
        self.settings = settings
        self.stream = stream
        self.run = PipelineRun(run_id=run_id or stream.run_id or uuid.uuid4().hex)
        self._obs: Logger = obs or NullLogger()
        self._sleep = sleep
        self._rand = rand
        self._clock = clock
        self._started = clock()

    # ---- plumbing ----

    @property
    def cancel_event(self) -> asyncio.Event:
        return self.stream.cancel_event

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise PipelineCancelled("run cancelled", phase=self.run.phase)

    def _executor(self, policy: RetryPolicy, operation: str, **fields: Any) -> RetryExecutor:
        return RetryExecutor(
            policy,
            observer=logging_observer(logger, operation, run_id=self.run.run_id, **fields),
            sleep=self._sleep,
            rand=self._rand,
            cancel_event=self.cancel_event,
        )

    def _progress(self, phase: PipelinePhase, sub_progress: float, message: str | None = None) -> None:
        value = self.run.progress.advance(phase, sub_progress)
        self.stream.send_phase(phase.value, value, message)

    def _enter(self, phase: PipelinePhase, message: str) -> None:
        self._check_cancelled()
        self.run.machine.advance(phase)
        logger.info("pipeline.phase run_id=%s phase=%s", self.run.run_id, phase.value)
        self._progress(phase, 0, message)

    def _skip(self, stage: PipelinePhase, key: str, err: PipelineError) -> None:
        self.run.skipped.append(
            SkippedItem(stage=stage.value, key=key, code=err.code, message=err.message)
        )

    def _threshold(self, config: PipelineConfig) -> int:
        for candidate in (config.options.min_fit_score, config.search_config.min_fit_score):
            if candidate is not None:
                return candidate
        return self.settings.min_fit_score

    # ---- entry point ----

    async def execute(
        self,
        document: ResumeDocument | None,
        config: PipelineConfig | Mapping[str, Any] | str | None,
    ) -> PipelineRun:
        """Run the whole pipeline; never raises for pipeline failures."""
        self.stream.start_heartbeat()
        with bind_log_context(run_id=self.run.run_id):
            logger.info("pipeline.start run_id=%s", self.run.run_id)
            try:
                request = validate_request(
                    document, config, max_upload_bytes=self.settings.max_upload_bytes
                )
                await self._run_stages(request)
            except PipelineCancelled:
                self._mark_cancelled()
            except asyncio.CancelledError:
                self._mark_cancelled()
                raise
            except Exception as exc:  # noqa: BLE001 - last-resort handler
                self._fail(exc)
            finally:
                self.stream.close()
            logger.info(
                "pipeline.end run_id=%s phase=%s duration_ms=%s",
                self.run.run_id,
                self.run.phase.value,
                self._elapsed_ms(),
            )
        return self.run

    def _elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    def _mark_cancelled(self) -> None:
        self.run.machine.cancel()
        logger.warning(
            "pipeline.cancelled run_id=%s reason=%s", self.run.run_id, self.stream.abort_reason
        )

    def _fail(self, exc: BaseException) -> None:
        active = self.run.phase
        err = wrap_error(exc, active)
        if err.phase is PipelinePhase.ERROR:
            err.phase = active
        if self.cancel_event.is_set():
            # Nobody is listening any more; a late failure is not reported.
            self._mark_cancelled()
            return
        self.run.error = err
        self.run.machine.fail()
        if err.kind is ErrorKind.UNKNOWN:
            logger.exception("pipeline.error run_id=%s phase=%s", self.run.run_id, active.value)
        else:
            logger.error(
                "pipeline.error run_id=%s phase=%s code=%s recoverable=%s error=%s",
                self.run.run_id,
                err.phase.value,
                err.code,
                err.recoverable,
                err.message,
            )
        self.stream.send_error(err)

    async def _run_stages(self, request: PipelineRequest) -> None:
        profile = await self._parse(request.document)
        jobs = await self._search(request.config)
        if not jobs:
            self._complete()
            return
        threshold = self._threshold(request.config)
        qualifying = await self._analyze(profile, jobs, threshold)
        if qualifying and request.config.options.generate_cover_letters:
            await self._generate(profile, qualifying, request.config.template)
        self._complete()

    # ---- stages ----

    @staticmethod
    def _parse_failure(exc: Exception) -> ParseError:
        if isinstance(exc, ParseError) and exc.kind in PARSE_KINDS:
            return exc
        if isinstance(exc, PipelineError):
            return ParseError(
                exc.message,
                ErrorKind.PARSE_FAILED,
                recoverable=exc.recoverable,
                context={**exc.context, "cause": exc.code},
            )
        return ParseError(str(exc) or type(exc).__name__, ErrorKind.PARSE_FAILED, recoverable=False)

    @with_span("pipeline.stage.parsing", logger_attr="_obs", fields_fn=_stage_fields)
    async def _parse(self, document: ResumeDocument) -> CandidateProfileWithMetadata:
        self._enter(PipelinePhase.PARSING, "Extracting resume content...")
        try:
            extracted = await self.services.extractor.extract_text(document)
            self._check_cancelled()
            self._progress(PipelinePhase.PARSING, 50, "Analyzing resume with AI...")
            profile = await self._executor(RetryPresets.STANDARD, "profile.extract").run(
                lambda: self.services.profiles.extract(extracted.text)
            )
        except PipelineCancelled:
            raise
        except Exception as exc:  # noqa: BLE001 - every parsing failure is reported as a parse kind
            raise self._parse_failure(exc) from exc
        self._check_cancelled()
        with_meta = with_metadata(
            profile, source_type=extracted.source_type, warnings=extracted.warnings
        )
        self.run.profile = with_meta
        self.stream.send_profile(with_meta)
        self._progress(PipelinePhase.PARSING, 100, "Resume parsed successfully")
        return with_meta

    @with_span("pipeline.stage.searching", logger_attr="_obs", fields_fn=_stage_fields)
    async def _search(self, config: PipelineConfig) -> list[JobOpportunity]:
        self._enter(PipelinePhase.SEARCHING, "Searching for matching jobs...")
        outcome = await self.services.search.search(config.search_config, self.cancel_event)
        self._check_cancelled()
        self.run.skipped.extend(outcome.skipped)
        self.run.jobs = list(outcome.jobs)
        total = len(self.run.jobs)
        logger.info(
            "pipeline.search_done run_id=%s jobs=%s deduplicated=%s filtered=%s skipped_roles=%s",
            self.run.run_id,
            total,
            outcome.metadata.deduplicated,
            outcome.metadata.filtered,
            len(outcome.skipped),
        )
        for found, job in enumerate(self.run.jobs, start=1):
            self.stream.send_job(job)
            self._progress(
                PipelinePhase.SEARCHING,
                fraction_percent(found, total),
                f"Found {found} of {total} jobs",
            )
        return self.run.jobs

    async def _batched(
        self,
        items: list[JobOpportunity],
        worker: Callable[[JobOpportunity], Awaitable[T | PipelineError | None]],
    ) -> AsyncIterator[tuple[int, list[tuple[JobOpportunity, T | PipelineError | None]]]]:
        """Yield (done_count, [(job, result), ...]) per batch, in listing order.

        A result is the worker's value, the `PipelineError` that made it skip
        the job, or None when the worker was cancelled.
        """
        size = self.settings.batch_size
        for start in range(0, len(items), size):
            self._check_cancelled()
            batch = items[start : start + size]
            results = await asyncio.gather(*(worker(job) for job in batch))
            # Results that land after a cancel are dropped.
            self._check_cancelled()
            yield start + len(batch), list(zip(batch, results))

    async def _analyze_one(
        self, profile: CandidateProfileWithMetadata, job: JobOpportunity
    ) -> FitAnalysis | PipelineError | None:
        try:
            return await self._executor(RetryPresets.FAST, "fit.score", job_id=job.id).run(
                lambda: self.services.analyzer.score(profile, job)
            )
        except PipelineCancelled:
            return None
        except Exception as exc:  # noqa: BLE001 - one job must not sink the batch
            err = wrap_error(exc, PipelinePhase.ANALYZING, ErrorKind.ANALYSIS_FAILED)
            logger.warning(
                "pipeline.analysis_skipped run_id=%s job_id=%s code=%s error=%s",
                self.run.run_id,
                job.id,
                err.code,
                err.message,
            )
            return err

    @with_span("pipeline.stage.analyzing", logger_attr="_obs", fields_fn=_stage_fields)
    async def _analyze(
        self,
        profile: CandidateProfileWithMetadata,
        jobs: list[JobOpportunity],
        threshold: int,
    ) -> list[JobOpportunity]:
        self._enter(PipelinePhase.ANALYZING, "Analyzing job fit...")
        qualifying: list[JobOpportunity] = []
        total = len(jobs)
        async for done, pairs in self._batched(jobs, lambda job: self._analyze_one(profile, job)):
            for job, analysis in pairs:
                if isinstance(analysis, PipelineError):
                    self._skip(PipelinePhase.ANALYZING, job.id, analysis)
                    continue
                if analysis is None:
                    continue
                self.run.analyses[job.id] = analysis
                self.stream.send_analysis(analysis)
                if analysis.overall_score >= threshold:
                    qualifying.append(job)
            self._progress(
                PipelinePhase.ANALYZING, fraction_percent(done, total), f"Analyzed {done} of {total} jobs"
            )
        logger.info(
            "pipeline.analysis_done run_id=%s analyzed=%s qualifying=%s threshold=%s",
            self.run.run_id,
            len(self.run.analyses),
            len(qualifying),
            threshold,
        )
        return qualifying

    async def _draft_one(
        self,
        profile: CandidateProfileWithMetadata,
        job: JobOpportunity,
        template: Optional[str],
    ) -> CoverLetterDraft | PipelineError | None:
        analysis = self.run.analyses.get(job.id)
        try:
            return await self._executor(RetryPresets.FAST, "cover_letter.draft", job_id=job.id).run(
                lambda: self.services.letters.draft(profile, job, analysis, template)
            )
        except PipelineCancelled:
            return None
        except Exception as exc:  # noqa: BLE001 - one letter must not sink the batch
            err = wrap_error(exc, PipelinePhase.GENERATING, ErrorKind.GENERATION_FAILED)
            logger.warning(
                "pipeline.cover_letter_skipped run_id=%s job_id=%s code=%s error=%s",
                self.run.run_id,
                job.id,
                err.code,
                err.message,
            )
            return err

    @with_span("pipeline.stage.generating", logger_attr="_obs", fields_fn=_stage_fields)
    async def _generate(
        self,
        profile: CandidateProfileWithMetadata,
        jobs: list[JobOpportunity],
        template: Optional[str],
    ) -> None:
        self._enter(PipelinePhase.GENERATING, "Generating cover letters...")
        total = len(jobs)
        async for done, pairs in self._batched(
            jobs, lambda job: self._draft_one(profile, job, template)
        ):
            for job, letter in pairs:
                if isinstance(letter, PipelineError):
                    self._skip(PipelinePhase.GENERATING, job.id, letter)
                    continue
                if letter is None:
                    continue
                self.run.cover_letters[job.id] = letter
                self.stream.send_cover_letter(letter)
            self._progress(
                PipelinePhase.GENERATING,
                fraction_percent(done, total),
                f"Generated {done} of {total} cover letters",
            )

    def build_summary(self) -> PipelineSummary:
        scores = [a.overall_score for a in self.run.analyses.values()]
        return PipelineSummary(
            total_jobs=len(self.run.jobs),
            analyzed_jobs=len(scores),
            high_fit_jobs=sum(1 for s in scores if s >= HIGH_FIT_SCORE),
            medium_fit_jobs=sum(1 for s in scores if MEDIUM_FIT_SCORE <= s < HIGH_FIT_SCORE),
            cover_letters_generated=len(self.run.cover_letters),
            duration_ms=self._elapsed_ms(),
            skipped=list(self.run.skipped),
        )

    def _complete(self) -> None:
        self._check_cancelled()
        self.run.machine.advance(PipelinePhase.COMPLETED)
        summary = self.build_summary()
        self.run.summary = summary
        self._progress(PipelinePhase.COMPLETED, 100, "Pipeline complete")
        self.stream.send_complete(summary)
        logger.info(
            "pipeline.completed run_id=%s total=%s analyzed=%s letters=%s skipped=%s",
            self.run.run_id,
            summary.total_jobs,
            summary.analyzed_jobs,
            summary.cover_letters_generated,
            len(summary.skipped),
        )
