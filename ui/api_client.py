from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

import requests

from core.sse import SSEDecoder, SSEMessage


class ApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def build_pipeline_config(
    search_config: dict[str, Any],
    *,
    template: str | None = None,
    min_fit_score: int | None = None,
    generate_cover_letters: bool = True,
) -> dict[str, Any]:
    """Assemble the `config` form field for POST /pipeline (camelCase keys)."""
    options: dict[str, Any] = {"generateCoverLetters": generate_cover_letters}
    if min_fit_score is not None:
        options["minFitScore"] = min_fit_score
    return {"searchConfig": search_config, "template": template, "options": options}


@dataclass(frozen=True, slots=True)
class PipelineApiClient:
    base_url: str
    timeout_short: float = 10.0
    # (connect, read) for the stream; heartbeats arrive well inside the read timeout.
    timeout_stream: tuple[float, float] = (10.0, 60.0)
    chunk_size: int = 1024

    def _url(self, path: str) -> str:
        base = self.base_url.rstrip("/")
        cleaned = path if path.startswith("/") else f"/{path}"
        return f"{base}{cleaned}"

    def get_json(self, path: str, *, timeout: float | None = None) -> Any:
        url = self._url(path)
        try:
            resp = requests.get(url, timeout=timeout or self.timeout_short)
        except requests.RequestException as exc:
            raise ApiError(f"Request failed: {exc}") from exc
        if resp.status_code != 200:
            raise ApiError(
                f"API returned {resp.status_code}: {resp.text}", status_code=resp.status_code
            )
        return resp.json()

    def post_json(
        self, path: str, *, payload: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        url = self._url(path)
        try:
            resp = requests.post(url, json=payload, timeout=timeout or self.timeout_short)
        except requests.RequestException as exc:
            raise ApiError(f"Request failed: {exc}") from exc
        if resp.status_code != 200:
            raise ApiError(
                f"API returned {resp.status_code}: {resp.text}", status_code=resp.status_code
            )
        return resp.json()

    def health(self) -> dict[str, Any]:
        return self.get_json("/healthz")

    def jsearch_health(self) -> dict[str, Any]:
        return self.get_json("/healthz/jsearch")

    def cancel(self, run_id: str) -> dict[str, Any]:
        return self.post_json(f"/pipeline/{run_id}/cancel")

    def stream_pipeline(
        self,
        resume: Path | str | bytes,
        config: dict[str, Any],
        *,
        filename: str | None = None,
        content_type: str | None = None,
        on_run_id: Callable[[str], None] | None = None,
    ) -> Iterator[SSEMessage]:
        """POST a resume and yield decoded SSE messages until the server closes.

        `resume` is a file path or raw bytes. The run id from the `x-run-id`
        header is handed to `on_run_id` before the first message, so callers
        can cancel from another thread.
        """
        if isinstance(resume, (bytes, bytearray)):
            data = bytes(resume)
            name = filename or "resume.pdf"
        else:
            path = Path(resume)
            data = path.read_bytes()
            name = filename or path.name
        mime = content_type or _guess_content_type(name)

        try:
            resp = requests.post(
                self._url("/pipeline"),
                files={"resume": (name, data, mime)},
                data={"config": json.dumps(config)},
                stream=True,
                timeout=self.timeout_stream,
                headers={"Accept": "text/event-stream"},
            )
        except requests.RequestException as exc:
            raise ApiError(f"Request failed: {exc}") from exc

        with resp:
            if resp.status_code != 200:
                raise ApiError(
                    f"API returned {resp.status_code}: {resp.text}", status_code=resp.status_code
                )
            run_id = resp.headers.get("x-run-id")
            if run_id and on_run_id is not None:
                on_run_id(run_id)

            decoder = SSEDecoder()
            try:
                for chunk in resp.iter_content(chunk_size=self.chunk_size):
                    if chunk:
                        yield from decoder.feed(chunk)
            except requests.RequestException as exc:
                raise ApiError(f"Stream interrupted: {exc}") from exc
            yield from decoder.flush()


def _guess_content_type(name: str) -> str:
    lowered = name.lower()
    if lowered.endswith(".pdf"):
        return "application/pdf"
    if lowered.endswith((".md", ".markdown")):
        return "text/markdown"
    if lowered.endswith(".txt"):
        return "text/plain"
    return "application/octet-stream"
