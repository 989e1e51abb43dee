from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "CL4PDF_DB_PATH": "database.path",
    "CL4PDF_STORAGE_BACKEND": "storage.backend",
    "CL4PDF_OUTPUT_DIR": "storage.output_dir",
    "CL4PDF_PUBLIC_BASE_URL": "storage.public_base_url",
    "S3_BUCKET_NAME": "storage.s3_bucket",
    "S3_PREFIX": "storage.s3_prefix",
    "CL4PDF_GUEST_DAILY_LIMIT": "limits.guest_daily_limit",
    "CL4PDF_FREE_USAGE_LIMIT": "limits.free_usage_limit",
    "MAX_FILE_SIZE": "limits.max_file_size",
    "MAX_FILES_PER_JOB": "limits.max_files_per_job",
    "RATE_LIMIT_ENABLED": "rate_limit.enabled",
    "RATE_LIMIT_WINDOW_SECONDS": "rate_limit.window_seconds",
    "RATE_LIMIT_MAX_REQUESTS": "rate_limit.max_requests",
    "CL4PDF_BACKGROUND_WORKERS": "background.max_workers",
    "CL4PDF_LOG_LEVEL": "logging.level",
    "CORS_ORIGINS": "app.cors_origins",
    "CL4PDF_TRUSTED_PROXY_HOPS": "app.trusted_proxy_hops",
}

_TRUTHY = {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _coerce(current: Any, raw: str) -> Any:
    """Convert an environment string to the type of the default it replaces."""
    if isinstance(current, bool):
        return raw.strip().lower() in _TRUTHY
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if OmegaConf.is_list(current) or isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def _apply_environment(config: DictConfig, environ: Mapping[str, str]) -> None:
    for env_name, key in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        current = OmegaConf.select(config, key)
        OmegaConf.update(config, key, _coerce(current, raw), merge=False)


def load_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DictConfig:
    """
    Build the runtime configuration.

    Defaults come from the packaged config.yaml, environment variables
    (after loading any .env file) are applied next, and explicit overrides
    are merged last. The result is in struct mode, so unknown keys raise.

    Args:
        overrides: Nested mapping merged over defaults and environment
        environ: Environment to read instead of os.environ

    Returns:
        The merged DictConfig
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    config = OmegaConf.create(base_container)
    OmegaConf.set_struct(config, True)

    _apply_environment(config, environ)

    if overrides:
        config = DictConfig(OmegaConf.merge(config, OmegaConf.create(overrides)))
    return config
