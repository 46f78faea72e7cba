# api/app.py
from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from api.pipeline import build_runtime
from api.pipeline import router as pipeline_router
from api.steps import router as steps_router
from core.obs import JsonRepoLogger, bind_log_context
from core.settings import get_app_settings, get_pipeline_settings

SETTINGS = get_app_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # ----- startup -----
    logger = getattr(app.state, "logger", None) or JsonRepoLogger(
        service=SETTINGS.service_name, env=SETTINGS.app_env
    )
    app.state.logger = logger

    # A runtime placed on app.state beforehand (tests, embedding) is used as is.
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = build_runtime(get_pipeline_settings(), obs=logger)

    logger.info("service.start", env=SETTINGS.app_env, service=SETTINGS.service_name)
    try:
        yield
    finally:
        # ----- shutdown -----
        if owns_runtime:
            await app.state.runtime.aclose()
            app.state.runtime = None
        logger.info("service.stop", env=SETTINGS.app_env, service=SETTINGS.service_name)


app = FastAPI(
    title="Scouter Pipeline API",
    version=SETTINGS.app_version,
    description="Resume -> job search -> fit analysis -> cover letters, streamed over SSE",
    lifespan=lifespan,
)


# ----- Middleware -----


@app.middleware("http")
async def add_request_id(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """
    Attach a request ID to every request/response and log basic access info.
    """
    req_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.req_id = req_id

    with bind_log_context(req_id=req_id):
        app.state.logger.info(
            "http.request",
            method=request.method,
            path=request.url.path,
            client=str(request.client.host if request.client else None),
        )

        response: Response = await call_next(request)
        response.headers["x-request-id"] = req_id

        app.state.logger.info(
            "http.response",
            status_code=response.status_code,
            path=request.url.path,
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_allowlist(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-run-id", "x-request-id"],
)


# ----- Simple health & root -----


@app.get("/", tags=["meta"])
async def root(request: Request) -> dict[str, str | None]:
    return {
        "service": SETTINGS.service_name,
        "env": SETTINGS.app_env,
        "version": app.version,
        "request_id": getattr(request.state, "req_id", None),
    }


@app.get("/healthz", tags=["meta"])
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


# ----- Routers -----

app.include_router(pipeline_router, tags=["pipeline"])
app.include_router(steps_router, tags=["steps"])
