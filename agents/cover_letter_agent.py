"""Agent for drafting a cover letter for one qualifying job."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from agents.common_prompts import JSON_ONLY_RULES, build_messages, parse_contract
from core.errors import PipelinePhase
from core.llm_client import AsyncLLMClient
from core.models import (
    CandidateProfile,
    CoverLetterContract,
    CoverLetterDraft,
    FitAnalysis,
    GenerationMetadata,
    JobOpportunity,
)

logger = logging.getLogger(__name__)

TEMPLATE_PLACEHOLDERS = ("{{COMPANY_NAME}}", "{{ROLE_TITLE}}", "{{CANDIDATE_NAME}}")

SYSTEM_PROMPT = f"""
You are a senior career copywriter writing concise, targeted cover letters for
technical roles. Write a compelling letter that:
1. Opens with enthusiasm for the specific role and company
2. Highlights 2-3 relevant experiences with concrete achievements
3. Connects the candidate's skills to the job requirements
4. Closes with a clear call to action

Keep it to 250-350 words, use specific examples instead of generic claims, and
avoid cliches like "I'm a perfect fit". Do NOT invent companies, roles, dates
or tools that are not in the profile.

{JSON_ONLY_RULES}
"""

USER_TEMPLATE = """
Candidate Profile:
- Experience: {experience_years} years
- Seniority: {seniority}
- Key Skills: {skills}
- Tech Stack: {tech_stack}
- Career Focus: {trajectory}

Recent Experience:
{recent_roles}

Target Position:
- Role: {title}
- Company: {company}
- Location: {location}

Job description (truncated):
{description}
{strengths_section}{template_section}
Return JSON with this structure:
{{
  "content": "Full cover letter text (3-4 paragraphs, professional tone)",
  "highlightedExperiences": ["experience mentioned"],
  "customizations": ["customization made for this job"]
}}
"""


@dataclass(slots=True)
class CoverLetterAgent:
    """Generate a CoverLetterDraft from profile, job and its fit analysis."""

    llm: AsyncLLMClient
    model: str

    def build_messages(
        self,
        profile: CandidateProfile,
        job: JobOpportunity,
        analysis: Optional[FitAnalysis] = None,
        template: Optional[str] = None,
    ) -> list[dict[str, str]]:
        recent = "\n".join(
            f"- {entry.title} at {entry.company} ({entry.duration})" for entry in profile.job_history[:2]
        ) or "- (none listed)"
        strengths = ""
        if analysis is not None and analysis.strengths:
            strengths = "\nKey strengths to highlight:\n" + "\n".join(f"- {s}" for s in analysis.strengths)
        template_section = ""
        if template:
            template_section = (
                "\nUse this template as a guide, filling in the placeholders:\n"
                f"{template}\n"
                f"Replace placeholders like {', '.join(TEMPLATE_PLACEHOLDERS)} with appropriate content.\n"
            )
        content = USER_TEMPLATE.format(
            experience_years=profile.experience_years,
            seniority=profile.seniority_level,
            skills=", ".join(profile.skills[:10]),
            tech_stack=", ".join(profile.tech_stack[:8]),
            trajectory=profile.career_trajectory,
            recent_roles=recent,
            title=job.title,
            company=job.company,
            location=job.location,
            description=job.description[:1000],
            strengths_section=strengths,
            template_section=template_section,
        )
        return build_messages(SYSTEM_PROMPT, content)

    def parse_result(self, raw: str, job: JobOpportunity, *, template_used: bool) -> CoverLetterDraft:
        contract = parse_contract(
            raw, CoverLetterContract, phase=PipelinePhase.GENERATING, label="cover letter"
        )
        return CoverLetterDraft(
            **contract.model_dump(),
            job_id=job.id,
            metadata=GenerationMetadata(template_used=template_used),
        )

    async def draft(
        self,
        profile: CandidateProfile,
        job: JobOpportunity,
        analysis: Optional[FitAnalysis] = None,
        template: Optional[str] = None,
    ) -> CoverLetterDraft:
        msgs = self.build_messages(profile, job, analysis, template)
        raw = await self.llm.chat(messages=msgs, model=self.model, temperature=0.4)
        letter = self.parse_result(raw, job, template_used=bool(template))
        logger.info("cover_letter.drafted job_id=%s chars=%s", job.id, len(letter.content))
        return letter
