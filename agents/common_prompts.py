"""Shared prompt builders and output-contract parsing for the LLM agents."""

from __future__ import annotations

from typing import TypeVar

from pydantic import BaseModel, ValidationError

from core.errors import MalformedOutputError, PipelinePhase
from core.json_utils import parse_json_object

ContractT = TypeVar("ContractT", bound=BaseModel)

JSON_ONLY_RULES = (
    "Return ONLY valid JSON, no markdown fences or explanations. "
    "Use camelCase keys exactly as shown."
)


def build_messages(system_prompt: str, user_content: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_content},
    ]


def parse_contract(
    raw: str | None,
    contract: type[ContractT],
    *,
    phase: PipelinePhase,
    label: str,
) -> ContractT:
    """Parse model text as JSON and validate it strictly against `contract`.

    Any failure is a MalformedOutputError, which the retry policies treat as transient.
    """
    text = str(raw or "")
    try:
        data = parse_json_object(text, ValueError)
    except ValueError as exc:
        raise MalformedOutputError(
            f"{label}: {exc}", phase=phase, context={"preview": text[:200]}
        ) from exc
    try:
        return contract.model_validate(data)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()[:5]
        ]
        raise MalformedOutputError(
            f"{label} failed validation ({exc.error_count()} error(s))",
            phase=phase,
            context={"errors": problems},
        ) from exc
