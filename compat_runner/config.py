"""Runner config loader – YAML file validated by pydantic. Fail-closed.

Secrets for the result store may be supplied through the environment instead of
the file (``COMPAT_RUNNER_STORE_ENDPOINT``, ``COMPAT_RUNNER_STORE_USERNAME``,
``COMPAT_RUNNER_STORE_PASSWORD``).
"""

from __future__ import annotations

import hashlib
import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

_CONFIG_PATH = os.environ.get("COMPAT_RUNNER_CONFIG", "config/compat_runner.yaml")

_ENV_OVERRIDES = {
    "COMPAT_RUNNER_STORE_ENDPOINT": "endpoint",
    "COMPAT_RUNNER_STORE_USERNAME": "username",
    "COMPAT_RUNNER_STORE_PASSWORD": "password",
}

_cache: Optional[tuple[str, "RunnerConfig"]] = None


class StoreConfig(BaseModel):
    endpoint: str = "https://localhost:9200"
    username: str = ""
    password: str = Field(default="", repr=False)
    verify_certs: bool = True
    results_index: str = "test-results"
    summaries_index: str = "test-summaries"
    replicas: int = Field(default=2, ge=0)
    shards: int = Field(default=5, ge=1)
    rollover_min_size: str = "30gb"
    rollover_min_age: str = "30d"


class CodeBuildConfig(BaseModel):
    project: str = "compatibility-test-worker"
    log_group: str = "compatibility-test-worker"
    parallel_count: int = Field(default=50, ge=1)
    poll_interval_sec: float = Field(default=60, ge=0)
    capacity_backoff_sec: float = Field(default=30, ge=0)
    max_capacity_retries: Optional[int] = Field(default=None, ge=1)
    max_status_failures: int = Field(default=3, ge=1)


class ServicesConfig(BaseModel):
    username: str = "admin"
    password: str = Field(default="admin", repr=False)
    opensearch_timeout_sec: float = Field(default=180, gt=0)
    dashboards_timeout_sec: float = Field(default=600, gt=0)
    health_cadence_sec: float = Field(default=5, gt=0)
    shutdown_grace_sec: float = Field(default=0, ge=0)
    restart_settle_sec: float = Field(default=15, ge=0)


class CypressConfig(BaseModel):
    reporter: str = "mochawesome"
    env: dict[str, str] = Field(default_factory=lambda: {"WAIT_FOR_LOADER_BUFFER_MS": "500"})


class RunnerConfig(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    codebuild: CodeBuildConfig = Field(default_factory=CodeBuildConfig)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    cypress: CypressConfig = Field(default_factory=CypressConfig)


def load_config(path: str | None = None) -> RunnerConfig:
    """Load and cache the runner config.

    A missing file at the default location yields the built-in defaults; a
    missing file at an explicit path is an error.
    """
    global _cache
    explicit = path is not None
    path = path or _CONFIG_PATH
    if not os.path.isfile(path):
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return _apply_env(RunnerConfig())

    raw = _read(path)
    digest = hashlib.sha256(raw).hexdigest()
    if _cache and _cache[0] == digest:
        return _cache[1]

    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    try:
        config = RunnerConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e

    config = _apply_env(config)
    _cache = (digest, config)
    return config


def _apply_env(config: RunnerConfig) -> RunnerConfig:
    updates = {
        field_name: os.environ[env_name]
        for env_name, field_name in _ENV_OVERRIDES.items()
        if os.environ.get(env_name)
    }
    if not updates:
        return config
    store = config.store.model_copy(update=updates)
    return config.model_copy(update={"store": store})


def _read(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()
