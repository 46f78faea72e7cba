""" Configuration lookup for the service (env -> .env -> optional AWS Secrets Manager). """

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path

from core.config_adapter import (
    ConfigAdapter,
    ConfigSource,
    DotEnvConfigSource,
    EnvConfigSource,
    SecretsManagerConfigSource,
)


@lru_cache
def _config_adapter() -> ConfigAdapter:
    sources: list[ConfigSource] = [EnvConfigSource()]
    dotenv_path = Path(os.getenv("DOTENV_PATH", ".env"))
    sources.append(DotEnvConfigSource(path=dotenv_path))
    secret_id = os.getenv("AWS_SECRETSMANAGER_CONFIG_ID")
    if secret_id:
        sources.append(
            SecretsManagerConfigSource(
                secret_id=secret_id,
                region_name=os.getenv("AWS_REGION"),
                profile_name=os.getenv("AWS_PROFILE"),
            )
        )
    return ConfigAdapter(tuple(sources))


def get_config_adapter() -> ConfigAdapter:
    return _config_adapter()


def get_config_value(key: str, default: str | None = None) -> str | None:
    return _config_adapter().get(key, default)


def clear_config_cache() -> None:
    """Forget cached sources so changed env vars are picked up (tests)."""
    _config_adapter.cache_clear()
