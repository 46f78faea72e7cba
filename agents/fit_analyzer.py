"""Agent that scores how well a candidate profile fits one job listing."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agents.common_prompts import JSON_ONLY_RULES, build_messages, parse_contract
from core.errors import PipelinePhase
from core.llm_client import AsyncLLMClient
from core.models import CandidateProfile, FitAnalysis, FitAnalysisContract, JobOpportunity

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = f"""
You are a technical recruiter assessing candidate/job fit. Score each category
from 0 to 100 and justify every score. Write the summary and rationales in the
second person ("you/your"), addressing the job seeker directly.

Scoring guidelines:
- 90-100: Exceptional fit, exceeds requirements
- 80-89: Strong fit, meets all key requirements
- 70-79: Good fit, meets most requirements
- 60-69: Moderate fit, some gaps but transferable skills
- Below 60: Weak fit, significant gaps

{JSON_ONLY_RULES}
"""

USER_TEMPLATE = """
Candidate Profile:
{profile_json}

Job Opportunity:
{job_json}

Return JSON with this structure:
{{
  "overallScore": <weighted average 0-100>,
  "skillsMatch": {{"score": <0-100>, "matched": [], "missing": [], "rationale": ""}},
  "experienceMatch": {{"score": <0-100>, "matched": [], "missing": [], "rationale": ""}},
  "techStackMatch": {{"score": <0-100>, "matched": [], "missing": [], "rationale": ""}},
  "seniorityFit": {{"score": <0-100>, "matched": [], "missing": [], "rationale": ""}},
  "summary": "2-3 sentence overall assessment",
  "concerns": ["potential issue"],
  "strengths": ["advantage"]
}}
"""


def analysis_confidence(analysis: FitAnalysisContract) -> float:
    score = 1.0
    for detail in (
        analysis.skills_match,
        analysis.experience_match,
        analysis.tech_stack_match,
        analysis.seniority_fit,
    ):
        if not detail.rationale:
            score -= 0.1
    if not analysis.summary:
        score -= 0.15
    if not analysis.strengths:
        score -= 0.1
    return round(max(0.0, min(1.0, score)), 2)


@dataclass(slots=True)
class FitAnalyzer:
    llm: AsyncLLMClient
    model: str

    def build_messages(self, profile: CandidateProfile, job: JobOpportunity) -> list[dict[str, str]]:
        # Metadata and raw timestamps add tokens without helping the score.
        profile_json = CandidateProfile.model_validate(profile.model_dump()).model_dump_json(
            by_alias=True, indent=2
        )
        job_json = job.model_dump_json(
            by_alias=True, indent=2, exclude={"scraped_at", "source_url"}
        )
        return build_messages(
            SYSTEM_PROMPT, USER_TEMPLATE.format(profile_json=profile_json, job_json=job_json)
        )

    def parse_result(self, raw: str, job: JobOpportunity) -> FitAnalysis:
        contract = parse_contract(
            raw, FitAnalysisContract, phase=PipelinePhase.ANALYZING, label="fit analysis"
        )
        return FitAnalysis(
            **contract.model_dump(),
            job_id=job.id,
            confidence=analysis_confidence(contract),
        )

    async def score(self, profile: CandidateProfile, job: JobOpportunity) -> FitAnalysis:
        raw = await self.llm.chat(
            messages=self.build_messages(profile, job), model=self.model, temperature=0.2
        )
        analysis = self.parse_result(raw, job)
        logger.info("fit.scored job_id=%s score=%s", job.id, analysis.overall_score)
        return analysis
