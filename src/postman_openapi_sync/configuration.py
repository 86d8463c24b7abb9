from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "SYNC_"
CONFIG_PATH_ENV = "SYNC_CONFIG_PATH"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

DEFAULTS: Dict[str, Any] = {
    "log_level": "INFO",
    "paths": {
        "data_dir": ".",
        "source": "postman_collection.json",
        "derived": "openapi.json",
        "backup_dir": "backups",
        "lock_dir": "locks",
    },
    "lock": {
        "max_retries": 5,
        "retry_timeout": 0.5,
        "backoff": 0.1,
    },
    "watcher": {
        "enabled": True,
        "quiet_period": 2.0,
        "stability_window": 2.0,
        "poll_interval": 0.1,
    },
    "upload": {
        "max_bytes": 50 * 1024 * 1024,
        "allowed_extensions": [".json"],
    },
    "transform": {
        "default_tag": "General",
        "output_format": "json",
    },
    "s3": {
        "bucket": "",
        "prefix": "backups/",
    },
    "executor": {
        "max_workers": 2,
    },
}


class PathSettings(BaseModel):
    data_dir: Path
    source: Path
    derived: Path
    backup_dir: Path
    lock_dir: Path


class LockSettings(BaseModel):
    max_retries: int = Field(ge=0)
    retry_timeout: float = Field(ge=0)
    backoff: float = Field(ge=0)


class WatcherSettings(BaseModel):
    enabled: bool
    quiet_period: float = Field(ge=0)
    stability_window: float = Field(ge=0)
    poll_interval: float = Field(gt=0)


class UploadSettings(BaseModel):
    max_bytes: int = Field(gt=0)
    allowed_extensions: List[str]


class TransformSettings(BaseModel):
    default_tag: str
    output_format: str

    @field_validator("output_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in {"json", "yaml"}:
            raise ValueError("output_format must be 'json' or 'yaml'")
        return value


class S3Settings(BaseModel):
    bucket: str
    prefix: str


class ExecutorSettings(BaseModel):
    max_workers: int = Field(ge=1)


class SyncConfig(BaseModel):
    """Resolved runtime configuration handed to every component at construction."""

    log_level: str
    paths: PathSettings
    lock: LockSettings
    watcher: WatcherSettings
    upload: UploadSettings
    transform: TransformSettings
    s3: S3Settings
    executor: ExecutorSettings


def _env_dotlist(environ: Mapping[str, str]) -> List[str]:
    """Translate ``SYNC_WATCHER__QUIET_PERIOD=3`` into ``watcher.quiet_period=3``."""
    dotlist = []
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX) or name == CONFIG_PATH_ENV:
            continue
        key = name[len(ENV_PREFIX):].lower().replace("__", ".")
        if key:
            dotlist.append(f"{key}={value}")
    return dotlist


def _resolve_paths(paths: Dict[str, Any]) -> Dict[str, Any]:
    data_dir = Path(paths["data_dir"]).expanduser().resolve()
    resolved = {"data_dir": data_dir}
    for key in ("source", "derived", "backup_dir", "lock_dir"):
        candidate = Path(paths[key]).expanduser()
        resolved[key] = candidate if candidate.is_absolute() else data_dir / candidate
    return resolved


def build_config(
    overrides: Optional[Dict[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[Path] = None,
) -> DictConfig:
    """
    Merge defaults, an optional YAML file, ``SYNC_*`` variables and overrides.

    Later layers win. Unknown keys are rejected because the defaults are
    marked as a struct.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    base = OmegaConf.create(DEFAULTS)
    OmegaConf.set_struct(base, True)
    layers = [base]

    yaml_path = config_path or (Path(environ[CONFIG_PATH_ENV]) if environ.get(CONFIG_PATH_ENV) else None)
    if yaml_path is not None:
        if not yaml_path.exists():
            raise FileNotFoundError(f"Config file not found at {yaml_path}")
        layers.append(OmegaConf.load(yaml_path))

    layers.append(OmegaConf.from_dotlist(_env_dotlist(environ)))
    layers.append(OmegaConf.create(overrides or {}))
    return DictConfig(OmegaConf.merge(*layers))


def load_config(
    overrides: Optional[Dict[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[Path] = None,
) -> SyncConfig:
    merged = build_config(overrides, environ=environ, config_path=config_path)
    container: Dict[str, Any] = OmegaConf.to_container(merged, resolve=True)  # type: ignore[assignment]
    container["paths"] = _resolve_paths(container["paths"])
    return SyncConfig.model_validate(container)


def configure_logging(level: str) -> None:
    """Install a stdout handler on the package logger."""
    logger = logging.getLogger("postman_openapi_sync")
    logger.setLevel(level.upper())
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
