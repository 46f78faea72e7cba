"""Centralized application settings for configuration-driven components."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Any

from core.config import get_config_adapter
from core.config_adapter import ConfigAdapter

DEFAULT_JSEARCH_BASE_URL = "https://jsearch.p.rapidapi.com"
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


def _parse_csv(value: str | None, *, fallback: Iterable[str]) -> list[str]:
    if not value:
        return list(fallback)
    return [item.strip() for item in value.split(",") if item.strip()]


def _as_float(value: str | None, default: float) -> float:
    try:
        return float(value) if value else default
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    try:
        return int(value) if value else default
    except ValueError:
        return default


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class AppSettings:
    app_env: str = "dev"
    service_name: str = "scouter-api"
    app_version: str = "0.1.0"
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    def cors_allowlist(self) -> list[str]:
        if self.app_env == "dev" and not self.cors_origins:
            return ["*"]
        return self.cors_origins


@lru_cache
def get_app_settings() -> AppSettings:
    cfg = get_config_adapter()
    return AppSettings(
        app_env=cfg.get("APP_ENV", "dev") or "dev",
        service_name=cfg.get("SERVICE_NAME", "scouter-api") or "scouter-api",
        app_version=cfg.get("APP_VERSION", "0.1.0") or "0.1.0",
        cors_origins=_parse_csv(cfg.get("CORS_ORIGINS"), fallback=("http://localhost:3000",)),
    )


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Everything a pipeline run needs from configuration, captured once.

    Credentials live here rather than in process globals so each orchestrator
    receives them explicitly at construction.
    """

    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 60.0
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    google_api_key: str | None = None
    rapidapi_key: str | None = None
    jsearch_base_url: str = DEFAULT_JSEARCH_BASE_URL
    jsearch_timeout_seconds: float = 30.0
    ignored_job_sites: tuple[str, ...] = ()
    heartbeat_seconds: float = 5.0
    batch_size: int = 3
    min_fit_score: int = 60
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    log_llm_content: bool = False

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if not 0 <= self.min_fit_score <= 100:
            raise ValueError("min_fit_score must be within 0..100")

    def api_key_for(self, provider: str) -> str | None:
        return {
            "openai": self.openai_api_key,
            "claude": self.anthropic_api_key,
            "anthropic": self.anthropic_api_key,
            "gemini": self.google_api_key,
            "google": self.google_api_key,
        }.get(provider.lower())

    def with_overrides(self, **changes: Any) -> PipelineSettings:
        return replace(self, **changes)


def load_pipeline_settings(cfg: ConfigAdapter) -> PipelineSettings:
    return PipelineSettings(
        llm_provider=(cfg.get("LLM_PROVIDER", "openai") or "openai").lower(),
        llm_model=cfg.get("LLM_MODEL", "gpt-4o-mini") or "gpt-4o-mini",
        llm_timeout_seconds=_as_float(cfg.get("LLM_TIMEOUT_SECONDS"), 60.0),
        openai_api_key=cfg.get("OPENAI_API_KEY"),
        anthropic_api_key=cfg.get("ANTHROPIC_API_KEY"),
        google_api_key=cfg.get("GOOGLE_API_KEY"),
        rapidapi_key=cfg.get("RAPIDAPI_KEY"),
        jsearch_base_url=(cfg.get("JSEARCH_BASE_URL") or DEFAULT_JSEARCH_BASE_URL).rstrip("/"),
        jsearch_timeout_seconds=_as_float(cfg.get("JSEARCH_TIMEOUT_SECONDS"), 30.0),
        ignored_job_sites=tuple(
            site.lower() for site in _parse_csv(cfg.get("IGNORED_JOB_SITES"), fallback=())
        ),
        heartbeat_seconds=_as_float(cfg.get("PIPELINE_HEARTBEAT_SECONDS"), 5.0),
        batch_size=max(1, _as_int(cfg.get("PIPELINE_BATCH_SIZE"), 3)),
        min_fit_score=min(100, max(0, _as_int(cfg.get("PIPELINE_MIN_FIT_SCORE"), 60))),
        max_upload_bytes=_as_int(cfg.get("MAX_UPLOAD_BYTES"), DEFAULT_MAX_UPLOAD_BYTES),
        log_llm_content=_as_bool(cfg.get("LLM_LOG_CONTENT")),
    )


@lru_cache
def get_pipeline_settings() -> PipelineSettings:
    return load_pipeline_settings(get_config_adapter())
