"""FastAPI router that streams pipeline runs over Server-Sent Events.

Endpoints:
  POST /pipeline                  multipart: `resume` file + `config` JSON string
                                  -> text/event-stream, `x-run-id` header
  POST /pipeline/{run_id}/cancel  abort an active run
  GET  /healthz/jsearch           job search provider availability

Config JSON:
  {
    "searchConfig": {"targetRoles": ["ML Engineer"], "locations": [...], ...},
    "template": "optional cover letter template with {{COMPANY_NAME}} ...",
    "options": {"minFitScore": 60, "generateCoverLetters": true}
  }

Every stream ends with exactly one `complete` or `error` event unless the run
is cancelled, in which case the stream simply closes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Optional
import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from core.models import ResumeDocument
from core.obs import Logger, NullLogger
from core.pipeline_orchestrator import PipelineOrchestrator, PipelineServices
from core.settings import PipelineSettings
from core.stream import PipelineStream

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


@dataclass(slots=True)
class PipelineRuntime:
    """Shared, read-only collaborators plus the table of active runs."""

    settings: PipelineSettings
    services: PipelineServices
    obs: Logger = field(default_factory=NullLogger)
    streams: dict[str, PipelineStream] = field(default_factory=dict)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    def start(
        self,
        document: Optional[ResumeDocument],
        config: Optional[str],
        *,
        run_id: str | None = None,
    ) -> PipelineStream:
        """Launch a run in the background and return its stream."""
        run_id = run_id or uuid.uuid4().hex
        stream = PipelineStream(run_id, heartbeat_seconds=self.settings.heartbeat_seconds)
        orchestrator = PipelineOrchestrator(
            self.services, self.settings, stream, run_id=run_id, obs=self.obs
        )
        self.streams[run_id] = stream
        task = asyncio.create_task(orchestrator.execute(document, config), name=f"pipeline-{run_id}")
        self.tasks.add(task)

        def _release(done: asyncio.Task[Any]) -> None:
            self.tasks.discard(done)
            self.streams.pop(run_id, None)

        task.add_done_callback(_release)
        return stream

    def cancel(self, run_id: str, reason: str = "cancelled by client") -> bool:
        stream = self.streams.get(run_id)
        if stream is None:
            return False
        stream.abort(reason)
        return True

    async def aclose(self) -> None:
        for stream in list(self.streams.values()):
            stream.abort("service shutting down")
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        await self.services.aclose()


def build_runtime(settings: PipelineSettings, obs: Logger | None = None) -> PipelineRuntime:
    obs = obs or NullLogger()
    return PipelineRuntime(
        settings=settings,
        services=PipelineServices.from_settings(settings, obs=obs),
        obs=obs,
    )


def get_runtime(request: Request) -> PipelineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Pipeline runtime not initialised")
    return runtime


async def read_upload(resume: UploadFile | None, max_bytes: int) -> Optional[ResumeDocument]:
    if resume is None:
        return None
    # One byte past the limit is enough to reject an oversized file.
    data = await resume.read(max_bytes + 1)
    return ResumeDocument(
        filename=resume.filename or "",
        content_type=resume.content_type or "application/octet-stream",
        data=data,
    )


@router.post("/pipeline")
async def start_pipeline(
    resume: UploadFile | None = File(None),
    config: str | None = Form(None),
    runtime: PipelineRuntime = Depends(get_runtime),
) -> StreamingResponse:
    """Start a run and stream its events.

    Validation problems are reported in-band as an `error` event with code
    VALIDATION_FAILED so clients only ever handle one failure channel.
    """
    document = await read_upload(resume, runtime.settings.max_upload_bytes)
    stream = runtime.start(document, config)
    logger.info(
        "pipeline_api.start run_id=%s filename=%s bytes=%s",
        stream.run_id,
        document.filename if document else None,
        document.size if document else 0,
    )
    return StreamingResponse(
        stream.frames(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "x-run-id": stream.run_id},
    )


@router.post("/pipeline/{run_id}/cancel")
async def cancel_pipeline(run_id: str, runtime: PipelineRuntime = Depends(get_runtime)) -> dict:
    if not runtime.cancel(run_id):
        raise HTTPException(status_code=404, detail="Unknown or finished run_id")
    logger.info("pipeline_api.cancel run_id=%s", run_id)
    return {"run_id": run_id, "cancelled": True}


@router.get("/healthz/jsearch")
async def jsearch_health(runtime: PipelineRuntime = Depends(get_runtime)) -> dict:
    return await runtime.services.search.client.check_health()
