from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def strip_code_fences(raw: str) -> str:
    """Return the body of the first ``` fenced block, or `raw` stripped if there is none."""
    match = _FENCE_RE.search(raw)
    return (match.group(1) if match else raw).strip()


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_object(raw: str, error_cls: type[Exception]) -> dict[str, Any]:
    """Extract JSON object from a raw model string, raising error_cls on failure.

    Tries the (fence-stripped) string first, then the first balanced {...} block.
    On failure, raises error_cls with the original exception chained.
    """

    if not raw or not raw.strip():
        raise error_cls("Empty model output")
    text = strip_code_fences(raw)
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
        raise error_cls("Expected JSON object in model output")
    except json.JSONDecodeError as exc:
        block = _first_balanced_object(text)
        if block is None:
            raise error_cls("No JSON detected in model output") from exc
        try:
            data = json.loads(block)
        except json.JSONDecodeError as exc2:
            raise error_cls("Malformed JSON in model output") from exc2
        if isinstance(data, dict):
            return data
        raise error_cls("Expected JSON object in model output")
