"""Job listings from the JSearch API (RapidAPI) plus per-role aggregation.

`JobSearchClient` makes one provider call per query and raises typed
`SearchError`s. `JobSearchAgent` runs every target role through it under a
rate-limit retry policy, skipping roles that still fail, then filters and
de-duplicates the combined listings.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

import httpx

from core.errors import ErrorKind, PipelineCancelled, PipelinePhase, SearchError, wrap_error
from core.models import (
    JobOpportunity,
    SearchConfig,
    SearchMetadata,
    SkippedItem,
    utc_now_iso,
)
from core.retry import RetryExecutor, RetryPolicy, RetryPresets, logging_observer
from core.settings import DEFAULT_JSEARCH_BASE_URL, PipelineSettings

logger = logging.getLogger(__name__)

RAPIDAPI_HOST = "jsearch.p.rapidapi.com"
DEFAULT_RADIUS = 10
EMPLOYMENT_TYPES = "FULLTIME,CONTRACTOR"
JOB_REQUIREMENTS = "under_3_years_experience,more_than_3_years_experience,no_experience"

_SOURCE_MARKERS: tuple[tuple[str, str], ...] = (
    ("indeed", "indeed.com"),
    ("linkedin", "linkedin.com"),
    ("ziprecruiter", "ziprecruiter.com"),
    ("glassdoor", "glassdoor.com"),
    ("monster", "monster.com"),
    ("wellfound", "wellfound.com"),
)


# ---------- listing normalization ----------


def detect_source(url: str | None, publisher: str | None) -> str:
    url_l = (url or "").lower()
    pub_l = (publisher or "").lower()
    for source, domain in _SOURCE_MARKERS:
        if domain in url_l or source in pub_l:
            return source
    return "indeed"


def _format_amount(n: float) -> str:
    if n >= 1000:
        return f"{round(n / 1000)}k"
    return f"{n:,.0f}"


def format_salary(
    min_salary: float | None,
    max_salary: float | None,
    currency: str | None,
    period: str | None,
) -> str | None:
    """`USD 120k - 150k yearly`, `USD 90k+`, `Up to EUR 60k monthly`, or None."""
    if not min_salary and not max_salary:
        return None
    curr = currency or "USD"
    per = f" {period.lower()}" if period else ""
    if min_salary and max_salary:
        return f"{curr} {_format_amount(min_salary)} - {_format_amount(max_salary)}{per}"
    if min_salary:
        return f"{curr} {_format_amount(min_salary)}+{per}"
    return f"Up to {curr} {_format_amount(max_salary)}{per}"


def listing_id(raw: dict[str, Any]) -> str:
    """Provider job id, or a stable id derived from company and title when absent."""
    job_id = str(raw.get("job_id") or "").strip()
    if job_id:
        return job_id
    key = "|".join(
        str(raw.get(name) or "").lower().strip() for name in ("employer_name", "job_title")
    )
    return "jsearch-" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


def transform_job(raw: dict[str, Any], *, scraped_at: str | None = None) -> JobOpportunity:
    """Map one JSearch `data[]` entry onto a JobOpportunity."""
    location = ", ".join(
        str(part) for part in (raw.get("job_city"), raw.get("job_state"), raw.get("job_country")) if part
    )
    highlights = raw.get("job_highlights") or {}
    requirements = highlights.get("Qualifications") or highlights.get("Responsibilities") or []
    apply_link = raw.get("job_apply_link") or ""
    return JobOpportunity(
        id=listing_id(raw),
        title=raw.get("job_title") or "",
        company=raw.get("employer_name") or "",
        location=location or "Location not specified",
        remote_status="remote" if raw.get("job_is_remote") else "onsite",
        description=raw.get("job_description") or "",
        requirements=tuple(str(r) for r in requirements),
        tech_stack=tuple(str(s) for s in (raw.get("job_required_skills") or [])),
        application_url=apply_link,
        source=detect_source(apply_link, raw.get("job_publisher")),
        posted_date=raw.get("job_posted_at_datetime_utc"),
        salary_range=format_salary(
            raw.get("job_min_salary"),
            raw.get("job_max_salary"),
            raw.get("job_salary_currency"),
            raw.get("job_salary_period"),
        ),
        scraped_at=scraped_at or utc_now_iso(),
        source_url=apply_link,
    )


def build_search_params(
    query: str,
    location_hint: str | None = None,
    work_preferences: Iterable[str] = (),
    radius: int | None = None,
) -> dict[str, str]:
    prefs = set(work_preferences)
    params = {
        "query": f"{query} in {location_hint}" if location_hint else query,
        "num_pages": "1",
        "date_posted": "month",
        "employment_types": EMPLOYMENT_TYPES,
        "job_requirements": JOB_REQUIREMENTS,
    }
    wants_local = bool(prefs & {"onsite", "hybrid"})
    if "remote" in prefs and not wants_local:
        params["remote_jobs_only"] = "true"
    elif wants_local:
        params["radius"] = str(radius if radius is not None else DEFAULT_RADIUS)
    return params


# ---------- provider client ----------


class JobSearchClient:
    """Thin async client for the JSearch `/search` endpoint."""

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = DEFAULT_JSEARCH_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(
        cls, settings: PipelineSettings, transport: httpx.AsyncBaseTransport | None = None
    ) -> JobSearchClient:
        return cls(
            settings.rapidapi_key,
            base_url=settings.jsearch_base_url,
            timeout=settings.jsearch_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> JobSearchClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"X-RapidAPI-Key": self._api_key or "", "X-RapidAPI-Host": RAPIDAPI_HOST}

    @staticmethod
    def _status_error(status: int, reason: str) -> SearchError:
        ctx = {"status": status}
        if status == 429:
            return SearchError(
                "JSearch API rate limit exceeded", ErrorKind.RATE_LIMITED, recoverable=True, context=ctx
            )
        if status in (401, 403):
            return SearchError(
                "JSearch API authentication failed - check RAPIDAPI_KEY",
                ErrorKind.AUTH_FAILED,
                recoverable=False,
                context=ctx,
            )
        return SearchError(
            f"JSearch API error: {status} {reason}".rstrip(),
            ErrorKind.UPSTREAM_ERROR,
            recoverable=status >= 500,
            context=ctx,
        )

    async def search_jobs(
        self,
        query: str,
        location_hint: str | None = None,
        work_preferences: Sequence[str] = (),
        radius: int | None = None,
    ) -> list[JobOpportunity]:
        if not self._api_key:
            raise SearchError(
                "RAPIDAPI_KEY is not configured", ErrorKind.AUTH_FAILED, recoverable=False
            )
        params = build_search_params(query, location_hint, work_preferences, radius)
        try:
            response = await self._client.get(
                f"{self._base_url}/search", params=params, headers=self._headers()
            )
        except httpx.TimeoutException as exc:
            raise SearchError("JSearch request timed out", ErrorKind.TIMEOUT) from exc
        except httpx.TransportError as exc:
            raise SearchError(f"JSearch fetch failed: {exc}", ErrorKind.UPSTREAM_ERROR) from exc

        if response.status_code >= 400:
            raise self._status_error(response.status_code, response.reason_phrase)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SearchError(
                "JSearch returned a non-JSON body", ErrorKind.UPSTREAM_ERROR, recoverable=True
            ) from exc
        items = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            return []
        scraped_at = utc_now_iso()
        return [transform_job(item, scraped_at=scraped_at) for item in items if isinstance(item, dict)]

    async def check_health(self) -> dict[str, Any]:
        """Cheap availability probe for the health endpoint; never raises."""
        if not self._api_key:
            return {"available": False, "message": "RAPIDAPI_KEY not configured"}
        try:
            response = await self._client.get(
                f"{self._base_url}/search",
                params={"query": "test", "num_pages": "1"},
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            return {"available": False, "message": str(exc) or type(exc).__name__}
        if response.is_success:
            return {"available": True, "message": "JSearch API operational"}
        if response.status_code == 429:
            return {"available": False, "message": "Rate limit exceeded"}
        return {"available": False, "message": f"HTTP {response.status_code}"}


# ---------- aggregation across roles ----------


def filter_jobs(
    jobs: Iterable[JobOpportunity],
    *,
    ignored_sites: Iterable[str] = (),
    exclude_companies: Iterable[str] = (),
) -> list[JobOpportunity]:
    sites = [s.strip().lower() for s in ignored_sites if s and s.strip()]
    companies = {c.strip().lower() for c in exclude_companies if c and c.strip()}
    kept = []
    for job in jobs:
        url = (job.application_url or "").lower()
        if sites and any(site in url for site in sites):
            continue
        if job.company.strip().lower() in companies:
            continue
        kept.append(job)
    return kept


def deduplicate_jobs(jobs: Iterable[JobOpportunity]) -> list[JobOpportunity]:
    """Keep the first listing per (company, title), case-insensitively."""
    seen: set[tuple[str, str]] = set()
    unique = []
    for job in jobs:
        key = job.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(job)
    return unique


@dataclass(slots=True)
class SearchOutcome:
    jobs: list[JobOpportunity]
    metadata: SearchMetadata
    skipped: list[SkippedItem] = field(default_factory=list)


@dataclass(slots=True)
class JobSearchAgent:
    """Searches every target role and merges the results."""

    client: JobSearchClient
    ignored_sites: tuple[str, ...] = ()
    policy: RetryPolicy = RetryPresets.RATE_LIMITED
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    rand: Callable[[], float] = random.random

    async def _search_role(
        self, role: str, config: SearchConfig, cancel_event: Optional[asyncio.Event]
    ) -> list[JobOpportunity]:
        executor = RetryExecutor(
            self.policy,
            observer=logging_observer(logger, "jsearch.search", role=role),
            sleep=self.sleep,
            rand=self.rand,
            cancel_event=cancel_event,
        )
        location = config.locations[0] if config.locations else None
        return await executor.run(
            lambda: self.client.search_jobs(role, location, config.work_preferences, config.radius)
        )

    async def search(
        self, config: SearchConfig, cancel_event: Optional[asyncio.Event] = None
    ) -> SearchOutcome:
        searched_at = utc_now_iso()
        collected: list[JobOpportunity] = []
        skipped: list[SkippedItem] = []

        for role in config.target_roles:
            if cancel_event is not None and cancel_event.is_set():
                raise PipelineCancelled("search cancelled", phase=PipelinePhase.SEARCHING)
            try:
                jobs = await self._search_role(role, config, cancel_event)
            except PipelineCancelled:
                raise
            except Exception as exc:  # noqa: BLE001 - one bad role must not sink the others
                err = wrap_error(exc, PipelinePhase.SEARCHING, ErrorKind.SEARCH_FAILED)
                logger.warning(
                    "jsearch.role_skipped role=%s code=%s recoverable=%s error=%s",
                    role,
                    err.code,
                    err.recoverable,
                    err.message,
                )
                skipped.append(SkippedItem(stage="searching", key=role, code=err.code, message=err.message))
                continue
            logger.info("jsearch.role_done role=%s found=%s", role, len(jobs))
            collected.extend(jobs)

        kept = filter_jobs(
            collected,
            ignored_sites=self.ignored_sites,
            exclude_companies=config.exclude_companies,
        )
        filtered_out = len(collected) - len(kept)
        if filtered_out:
            logger.info("jsearch.filtered count=%s", filtered_out)
        unique = deduplicate_jobs(kept)
        sources: list[str] = []
        for job in unique:
            if job.source not in sources:
                sources.append(job.source)
        metadata = SearchMetadata(
            searched_at=searched_at,
            sources=sources,
            total_found=len(kept),
            deduplicated=len(kept) - len(unique),
            filtered=filtered_out,
        )
        return SearchOutcome(jobs=unique, metadata=metadata, skipped=skipped)
