from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WireModel(BaseModel):
    """Base for models that travel over the stream (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class FrozenWireModel(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


SeniorityLevel = Literal["junior", "mid", "senior", "staff", "principal"]
WorkPreference = Literal["remote", "hybrid", "onsite"]
RemoteStatus = Literal["remote", "hybrid", "onsite", "unknown"]
JobSource = Literal[
    "indeed", "linkedin", "ziprecruiter", "glassdoor", "monster", "wellfound", "company_site"
]


def _round_score(value: Any) -> Any:
    # Models sometimes emit 87.5 or "87"; scores are whole numbers on the wire.
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return int(round(value))
    if isinstance(value, str) and value.strip().replace(".", "", 1).isdigit():
        return int(round(float(value)))
    return value


# ==== Candidate profile ====

class JobEntry(FrozenWireModel):
    title: str
    company: str
    duration: str = ""
    highlights: tuple[str, ...] = ()


class Education(FrozenWireModel):
    degree: str
    institution: str
    year: Optional[int] = None


class CandidateProfile(FrozenWireModel):
    """Structured profile extracted from the resume text."""

    skills: tuple[str, ...] = Field(..., description="Technical and professional skills.")
    experience_years: float = Field(..., ge=0)
    tech_stack: tuple[str, ...] = ()
    job_history: tuple[JobEntry, ...] = ()
    education: tuple[Education, ...] = ()
    seniority_level: SeniorityLevel
    career_trajectory: str = ""


class ExtractionMetadata(FrozenWireModel):
    extracted_at: str = Field(default_factory=utc_now_iso)
    confidence: float = Field(..., ge=0.0, le=1.0)
    warnings: tuple[str, ...] = ()
    source_type: str


class CandidateProfileWithMetadata(CandidateProfile):
    metadata: ExtractionMetadata


# ==== Search configuration / request ====

class SalaryRange(WireModel):
    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)
    currency: Optional[str] = None


class SearchConfig(WireModel):
    target_roles: list[str] = Field(..., min_length=1)
    locations: list[str] = Field(default_factory=list)
    work_preferences: list[WorkPreference] = Field(default_factory=list)
    salary_range: Optional[SalaryRange] = None
    exclude_companies: list[str] = Field(default_factory=list)
    radius: Optional[int] = Field(None, ge=0)
    min_fit_score: Optional[int] = Field(None, ge=0, le=100)

    @field_validator("target_roles")
    @classmethod
    def _strip_roles(cls, roles: list[str]) -> list[str]:
        cleaned = [r.strip() for r in roles if r and r.strip()]
        if not cleaned:
            raise ValueError("At least one target role is required")
        return cleaned


class PipelineOptions(WireModel):
    min_fit_score: Optional[int] = Field(None, ge=0, le=100)
    generate_cover_letters: bool = True


class PipelineConfig(WireModel):
    """JSON body of the `config` form field."""

    search_config: SearchConfig
    template: Optional[str] = None
    options: PipelineOptions = Field(default_factory=PipelineOptions)


class ResumeDocument(BaseModel):
    """An uploaded resume file, held in memory."""

    filename: str = ""
    content_type: str = "application/octet-stream"
    data: bytes = b""

    @property
    def size(self) -> int:
        return len(self.data)


# ==== Job listings ====

class JobOpportunity(FrozenWireModel):
    id: str
    title: str
    company: str
    location: str = "Location not specified"
    remote_status: RemoteStatus = "unknown"
    description: str = ""
    requirements: tuple[str, ...] = ()
    tech_stack: tuple[str, ...] = ()
    application_url: str = ""
    source: JobSource = "indeed"
    posted_date: Optional[str] = None
    salary_range: Optional[str] = None
    scraped_at: str = Field(default_factory=utc_now_iso)
    source_url: str = ""

    def dedup_key(self) -> tuple[str, str]:
        return (self.company.lower().strip(), self.title.lower().strip())


class SearchMetadata(WireModel):
    searched_at: str = Field(default_factory=utc_now_iso)
    sources: list[JobSource] = Field(default_factory=list)
    total_found: int = 0
    deduplicated: int = 0
    filtered: int = 0


# ==== Fit analysis ====

class MatchDetail(FrozenWireModel):
    score: int = Field(..., ge=0, le=100)
    matched: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()
    rationale: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _coerce_score(cls, value: Any) -> Any:
        return _round_score(value)


class FitAnalysisContract(FrozenWireModel):
    """Shape the model must return for a fit analysis."""

    overall_score: int = Field(..., ge=0, le=100)
    skills_match: MatchDetail
    experience_match: MatchDetail
    tech_stack_match: MatchDetail
    seniority_fit: MatchDetail
    summary: str
    concerns: tuple[str, ...] = ()
    strengths: tuple[str, ...] = ()

    @field_validator("overall_score", mode="before")
    @classmethod
    def _coerce_overall(cls, value: Any) -> Any:
        return _round_score(value)


class FitAnalysis(FitAnalysisContract):
    job_id: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    analyzed_at: str = Field(default_factory=utc_now_iso)


# ==== Cover letters ====

class CoverLetterContract(FrozenWireModel):
    content: str = Field(..., min_length=1)
    highlighted_experiences: tuple[str, ...] = ()
    customizations: tuple[str, ...] = ()


class GenerationMetadata(FrozenWireModel):
    generated_at: str = Field(default_factory=utc_now_iso)
    template_used: bool = False


class CoverLetterDraft(CoverLetterContract):
    job_id: str
    metadata: GenerationMetadata = Field(default_factory=GenerationMetadata)


# ==== Stream payloads ====

class PhaseUpdate(WireModel):
    phase: str
    progress: int = Field(..., ge=0, le=100)
    message: Optional[str] = None


class SkippedItem(WireModel):
    """An item dropped by graceful degradation (a search role or a job)."""

    stage: str
    key: str
    code: str
    message: str


class PipelineSummary(WireModel):
    total_jobs: int = 0
    analyzed_jobs: int = 0
    high_fit_jobs: int = 0
    medium_fit_jobs: int = 0
    cover_letters_generated: int = 0
    duration_ms: int = 0
    skipped: list[SkippedItem] = Field(default_factory=list)


class ErrorPayload(WireModel):
    message: str
    code: str
    phase: str
    recoverable: bool


class Heartbeat(WireModel):
    timestamp: str = Field(default_factory=utc_now_iso)
