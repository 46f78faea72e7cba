"""Agent that turns resume text into a CandidateProfile."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from agents.common_prompts import JSON_ONLY_RULES, build_messages, parse_contract
from core.errors import PipelinePhase
from core.llm_client import AsyncLLMClient
from core.models import CandidateProfile, CandidateProfileWithMetadata, ExtractionMetadata

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = f"""
You are a resume parser. Extract structured candidate information from resume text.
Infer seniority from years of experience and role titles. Extract specific
technologies, not just categories. Include both technical and soft skills.
Do not invent employers, dates or degrees that are not in the text.

{JSON_ONLY_RULES}
"""

USER_TEMPLATE = """
Parse this resume and return a JSON object with:
- skills: array of technical and professional skills
- experienceYears: total years of professional experience (number)
- techStack: array of technologies, tools, and frameworks
- jobHistory: array of {{title, company, duration, highlights[]}}
- education: array of {{degree, institution, year}}
- seniorityLevel: one of "junior" | "mid" | "senior" | "staff" | "principal"
- careerTrajectory: brief 1-2 sentence summary of career progression

Resume text:
{resume_text}
"""


def profile_confidence(profile: CandidateProfile, warnings: Iterable[str] = ()) -> float:
    """1.0 minus deductions for empty sections and extraction warnings, clamped to [0, 1]."""
    score = 1.0
    if not profile.skills:
        score -= 0.2
    if not profile.tech_stack:
        score -= 0.15
    if not profile.job_history:
        score -= 0.25
    if not profile.education:
        score -= 0.1
    if not profile.career_trajectory:
        score -= 0.1
    if profile.experience_years == 0:
        score -= 0.1
    score -= len(list(warnings)) * 0.05
    return round(max(0.0, min(1.0, score)), 2)


@dataclass(slots=True)
class ProfileExtractor:
    llm: AsyncLLMClient
    model: str

    def build_messages(self, resume_text: str) -> list[dict[str, str]]:
        return build_messages(SYSTEM_PROMPT, USER_TEMPLATE.format(resume_text=resume_text.strip()))

    def parse_result(self, raw: str) -> CandidateProfile:
        return parse_contract(raw, CandidateProfile, phase=PipelinePhase.PARSING, label="profile")

    async def extract(self, resume_text: str) -> CandidateProfile:
        raw = await self.llm.chat(
            messages=self.build_messages(resume_text), model=self.model, temperature=0.1
        )
        profile = self.parse_result(raw)
        logger.info(
            "profile.extracted seniority=%s skills=%s jobs=%s",
            profile.seniority_level,
            len(profile.skills),
            len(profile.job_history),
        )
        return profile


def with_metadata(
    profile: CandidateProfile, *, source_type: str, warnings: Iterable[str] = ()
) -> CandidateProfileWithMetadata:
    warnings = tuple(warnings)
    return CandidateProfileWithMetadata(
        **profile.model_dump(),
        metadata=ExtractionMetadata(
            confidence=profile_confidence(profile, warnings),
            warnings=warnings,
            source_type=source_type,
        ),
    )
