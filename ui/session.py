"""Client-side state for one streamed pipeline run.

`SearchSession.apply` folds decoded SSE messages into a single view of the run:
status, progress, profile, jobs in arrival order, and analyses/cover letters
keyed by job id. Payloads are validated with the same wire models the server
serializes, so a schema drift shows up here instead of in the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from pydantic import ValidationError

from core.models import (
    CandidateProfileWithMetadata,
    CoverLetterDraft,
    ErrorPayload,
    FitAnalysis,
    JobOpportunity,
    PhaseUpdate,
    PipelineSummary,
)
from core.sse import CRITICAL_EVENTS, EVENT_TYPES, SSEMessage

logger = logging.getLogger(__name__)

FINISHED_STATUSES = frozenset({"completed", "error", "cancelled"})


@dataclass(slots=True)
class SearchSession:
    status: str = "idle"
    progress: int = 0
    message: Optional[str] = None
    profile: Optional[CandidateProfileWithMetadata] = None
    jobs: list[JobOpportunity] = field(default_factory=list)
    analyses: dict[str, FitAnalysis] = field(default_factory=dict)
    cover_letters: dict[str, CoverLetterDraft] = field(default_factory=dict)
    summary: Optional[PipelineSummary] = None
    error: Optional[ErrorPayload] = None
    last_heartbeat: Optional[str] = None
    run_id: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def apply(self, message: SSEMessage) -> "SearchSession":
        handler = getattr(self, f"_on_{message.event}", None) if message.event in EVENT_TYPES else None
        if handler is None:
            logger.debug("session.ignore event=%s", message.event)
            return self
        try:
            handler(message.data)
        except ValidationError as exc:
            if message.event in CRITICAL_EVENTS:
                raise
            logger.warning(
                "session.ignore event=%s reason=invalid_payload errors=%s", message.event, exc.error_count()
            )
        return self

    def mark_cancelled(self) -> None:
        if not self.finished:
            self.status = "cancelled"

    # ---- handlers ----

    def _on_phase(self, data: dict) -> None:
        update = PhaseUpdate.model_validate(data)
        self.status = update.phase
        # Progress only moves forward on the client too.
        self.progress = max(self.progress, update.progress)
        self.message = update.message

    def _on_profile(self, data: dict) -> None:
        self.profile = CandidateProfileWithMetadata.model_validate(data)

    def _on_job(self, data: dict) -> None:
        job = JobOpportunity.model_validate(data)
        if all(existing.id != job.id for existing in self.jobs):
            self.jobs.append(job)

    def _on_analysis(self, data: dict) -> None:
        analysis = FitAnalysis.model_validate(data)
        self.analyses[analysis.job_id] = analysis

    def _on_coverLetter(self, data: dict) -> None:
        letter = CoverLetterDraft.model_validate(data)
        self.cover_letters[letter.job_id] = letter

    def _on_complete(self, data: dict) -> None:
        self.summary = PipelineSummary.model_validate(data)
        self.status = "completed"
        self.progress = 100

    def _on_error(self, data: dict) -> None:
        self.error = ErrorPayload.model_validate(data)
        self.status = "error"

    def _on_heartbeat(self, data: dict) -> None:
        self.last_heartbeat = data.get("timestamp") if isinstance(data, dict) else None

    # ---- views ----

    def ranked_jobs(self, min_score: int = 0) -> list[tuple[JobOpportunity, Optional[FitAnalysis]]]:
        """Jobs with their analysis, best fit first; unanalyzed jobs last."""
        rows = [(job, self.analyses.get(job.id)) for job in self.jobs]
        rows = [row for row in rows if row[1] is None or row[1].overall_score >= min_score]
        return sorted(rows, key=lambda row: -(row[1].overall_score) if row[1] else 1)
