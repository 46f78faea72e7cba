from __future__ import annotations

import json
from pathlib import Path
import sys
from typing import Any, Callable

import httpx
import pytest

# Ensure project root is on sys.path for tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.models import ResumeDocument  # noqa: E402

RESUME_TEXT = """# Jane Doe
Senior Machine Learning Engineer, Austin TX

## Experience
- Senior ML Engineer, Acme Corp (2019-2024): built ranking models in Python and PyTorch.
- Data Scientist, Beta Labs (2016-2019): forecasting with pandas and scikit-learn.

## Education
- MSc Computer Science, University of Texas, 2016
"""

PROFILE_JSON: dict[str, Any] = {
    "skills": ["Python", "Machine Learning", "Communication"],
    "experienceYears": 8,
    "techStack": ["PyTorch", "pandas", "scikit-learn"],
    "jobHistory": [
        {
            "title": "Senior ML Engineer",
            "company": "Acme Corp",
            "duration": "2019-2024",
            "highlights": ["Built ranking models"],
        }
    ],
    "education": [{"degree": "MSc Computer Science", "institution": "University of Texas", "year": 2016}],
    "seniorityLevel": "senior",
    "careerTrajectory": "Data scientist turned ML engineer focused on ranking.",
}

LETTER_JSON: dict[str, Any] = {
    "content": "Dear hiring team,\n\nI am excited to apply...\n\nSincerely,\nJane",
    "highlightedExperiences": ["Ranking models at Acme Corp"],
    "customizations": ["Mentioned the team's search product"],
}


def fit_json(score: int) -> dict[str, Any]:
    detail = {"score": score, "matched": ["Python"], "missing": [], "rationale": "Solid overlap."}
    return {
        "overallScore": score,
        "skillsMatch": detail,
        "experienceMatch": detail,
        "techStackMatch": detail,
        "seniorityFit": detail,
        "summary": "Your background lines up with most of the role.",
        "concerns": [],
        "strengths": ["Production ML experience"],
    }


class ScriptedLLM:
    """Fake async LLM that answers by prompt type.

    Fit scores are looked up by job title (the title must appear in the prompt).
    Titles listed in `bad_fit_titles` always get unparseable output.
    """

    def __init__(
        self,
        *,
        profile: Any = None,
        scores: dict[str, int] | None = None,
        bad_fit_titles: tuple[str, ...] = (),
        letter: Any = None,
        on_fit: Callable[[str], None] | None = None,
    ) -> None:
        self.profile = PROFILE_JSON if profile is None else profile
        self.scores = scores or {}
        self.bad_fit_titles = bad_fit_titles
        self.letter = LETTER_JSON if letter is None else letter
        self.on_fit = on_fit
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def _render(value: Any) -> str:
        return value if isinstance(value, str) else json.dumps(value)

    async def chat(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.0,
        **kwargs: object,
    ) -> str:
        system = messages[0]["content"]
        user = messages[-1]["content"]
        if "resume parser" in system:
            self.calls.append(("profile", ""))
            return self._render(self.profile)
        if "technical recruiter" in system:
            title = next((t for t in (*self.scores, *self.bad_fit_titles) if t in user), "")
            self.calls.append(("fit", title))
            if self.on_fit is not None:
                self.on_fit(title)
            if title in self.bad_fit_titles:
                return "Sorry, I cannot score this one."
            return json.dumps(fit_json(self.scores.get(title, 50)))
        if "cover letter" in system:
            title = next((t for t in self.scores if f"- Role: {t}" in user), "")
            self.calls.append(("letter", title))
            return self._render(self.letter)
        raise AssertionError(f"unexpected prompt: {system[:60]!r}")


def jsearch_item(
    job_id: str,
    title: str,
    company: str,
    *,
    apply_link: str = "https://www.linkedin.com/jobs/view/1",
    remote: bool = False,
) -> dict[str, Any]:
    return {
        "job_id": job_id,
        "job_title": title,
        "employer_name": company,
        "job_city": "Austin",
        "job_state": "TX",
        "job_country": "US",
        "job_is_remote": remote,
        "job_description": f"{title} working on search and ranking with Python.",
        "job_highlights": {"Qualifications": ["5+ years Python", "ML in production"]},
        "job_apply_link": apply_link,
        "job_publisher": "LinkedIn",
        "job_posted_at_datetime_utc": "2024-05-01T00:00:00.000Z",
        "job_min_salary": 120000,
        "job_max_salary": 150000,
        "job_salary_currency": "USD",
        "job_salary_period": "YEAR",
    }


def jsearch_transport(
    by_query: dict[str, Any],
    *,
    seen: list[httpx.Request] | None = None,
) -> httpx.MockTransport:
    """MockTransport answering /search by the role prefix of the `query` param.

    A value may be a list of items (200) or an int status code.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        query = request.url.params.get("query", "")
        role = query.split(" in ")[0]
        answer = by_query.get(role, [])
        if isinstance(answer, int):
            return httpx.Response(answer, json={"message": "nope"})
        return httpx.Response(200, json={"status": "OK", "data": answer})

    return httpx.MockTransport(handler)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    from core import config as cfg

    # Prevent tests from accidentally reading your real .env file.
    monkeypatch.setenv("DOTENV_PATH", "tests/.env.DO_NOT_USE")
    monkeypatch.delenv("AWS_SECRETSMANAGER_CONFIG_ID", raising=False)
    cfg.clear_config_cache()
    yield
    cfg.clear_config_cache()


@pytest.fixture
def resume_document() -> ResumeDocument:
    return ResumeDocument(
        filename="resume.md", content_type="text/markdown", data=RESUME_TEXT.encode("utf-8")
    )
