"""Configuration loading and management for jobrunner."""

from __future__ import annotations

import os
import re
from pathlib import Path
from threading import RLock
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from jobrunner.errors import ConfigError
from jobrunner.models import (
    AppDefinition,
    DaemonConfig,
    GlobalSettings,
    JobDefinition,
    JobsConfig,
)

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".jobrunner"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "jobs.yaml"
DEFAULT_LOGS_DIR = DEFAULT_CONFIG_DIR / "logs"

CONFIG_ENV_VAR = "JOBRUNNER_CONFIG"


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        return os.environ.get(match.group(1), "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)
    return os.path.expandvars(value)


def expand_path(path: str | None) -> str | None:
    """Expand a path with ~ and environment variables."""
    if not path:
        return path
    return expand_env_vars(os.path.expanduser(path))


def default_config_path() -> Path:
    """Config file location: $JOBRUNNER_CONFIG or ~/.jobrunner/jobs.yaml."""
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_FILE


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")
    return data


def _expand_paths(data: dict) -> dict:
    """Expand ~ and env vars in the path-valued settings."""
    global_data = data.get("global")
    if isinstance(global_data, dict):
        for key in ("runtime_home", "java_home", "executable", "config_dir", "logs_dir"):
            if isinstance(global_data.get(key), str):
                global_data[key] = expand_path(global_data[key])

    apps = data.get("apps")
    if isinstance(apps, dict):
        for app in apps.values():
            if isinstance(app, dict):
                for key in ("base_path", "webapp_path"):
                    if isinstance(app.get(key), str):
                        app[key] = expand_path(app[key])
    return data


def default_jobs_config() -> JobsConfig:
    """Configuration used when no file exists yet."""
    return JobsConfig(global_=GlobalSettings(logs_dir=str(DEFAULT_LOGS_DIR)))


def parse_config(data: dict, source: str = "<memory>") -> JobsConfig:
    """Validate raw config data."""
    try:
        return JobsConfig.model_validate(_expand_paths(data))
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {source}: {e}") from e


class ConfigStore:
    """Owns the job, app and global definitions and persists mutations.

    Reads return the current immutable snapshot; every mutation builds a new
    snapshot, validates it, writes the file and then swaps it in.
    """

    def __init__(self, path: Path | None = None, config: JobsConfig | None = None):
        """Initialize the store.

        Args:
            path: YAML file backing the store (default: $JOBRUNNER_CONFIG or
                ~/.jobrunner/jobs.yaml)
            config: Pre-built configuration; skips loading from disk
        """
        self.path = path or default_config_path()
        self._lock = RLock()
        self._config = config if config is not None else self._read()

    # Loading and saving

    def _read(self) -> JobsConfig:
        if not self.path.exists():
            logger.info(f"Config file not found at {self.path}, using defaults")
            return default_jobs_config()

        config = parse_config(load_yaml_file(self.path), str(self.path))
        logger.info(f"Loaded {len(config.jobs)} jobs and {len(config.apps)} apps from {self.path}")
        return config

    def reload(self) -> JobsConfig:
        """Re-read the config file, replacing the in-memory snapshot."""
        config = self._read()
        with self._lock:
            self._config = config
        return config

    def save(self) -> None:
        """Write the current snapshot to disk."""
        with self._lock:
            self._write(self._config)

    def _write(self, config: JobsConfig) -> None:
        data = config.to_yaml_dict()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            f.write("# jobrunner configuration\n")
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        logger.debug(f"Saved config to {self.path}")

    def _replace(self, data: dict[str, Any]) -> JobsConfig:
        """Validate and persist a mutated copy, then swap it in.

        A failed write leaves the in-memory snapshot untouched.
        """
        config = parse_config(data, str(self.path))
        with self._lock:
            self._write(config)
            self._config = config
        return config

    # Lookups

    @property
    def config(self) -> JobsConfig:
        return self._config

    @property
    def global_settings(self) -> GlobalSettings:
        return self._config.global_

    @property
    def daemon(self) -> DaemonConfig:
        return self._config.daemon

    def get_job(self, job_id: str) -> JobDefinition | None:
        return self._config.get_job(job_id)

    def list_jobs(self) -> list[JobDefinition]:
        return list(self._config.jobs)

    def get_app(self, app_id: str) -> AppDefinition | None:
        return self._config.get_app(app_id)

    def list_apps(self) -> list[AppDefinition]:
        return list(self._config.apps.values())

    def resolve_apps(self, job: JobDefinition) -> list[AppDefinition]:
        """Resolve a job's app references in declared order.

        Unknown app ids are skipped with a warning.
        """
        apps = []
        for app_id in job.apps:
            app = self._config.get_app(app_id)
            if app is None:
                logger.warning(f"Job '{job.id}' references unknown app '{app_id}', skipping")
                continue
            apps.append(app)
        return apps

    # Job mutations

    def create_job(self, job_data: dict[str, Any]) -> JobDefinition:
        """Add a new job."""
        with self._lock:
            job = JobDefinition.model_validate(job_data)
            if self._config.get_job(job.id):
                raise ConfigError(f"Job already exists: {job.id}")
            self._check_app_refs(job)

            data = self._config.to_yaml_dict()
            data["jobs"].append(job.model_dump(mode="json", exclude_none=True))
            self._replace(data)
        logger.info(f"Created job '{job.id}'")
        return job

    def update_job(self, job_id: str, updates: dict[str, Any]) -> JobDefinition:
        """Update fields of an existing job. The id cannot change."""
        with self._lock:
            existing = self._config.get_job(job_id)
            if not existing:
                raise ConfigError(f"Job not found: {job_id}")

            merged = existing.model_dump(mode="json")
            merged.update({k: v for k, v in updates.items() if k != "id"})
            job = JobDefinition.model_validate(merged)
            self._check_app_refs(job)

            data = self._config.to_yaml_dict()
            data["jobs"] = [
                job.model_dump(mode="json", exclude_none=True) if j["id"] == job_id else j
                for j in data["jobs"]
            ]
            self._replace(data)
        logger.info(f"Updated job '{job_id}'")
        return job

    def delete_job(self, job_id: str) -> bool:
        """Remove a job. Returns False if it does not exist."""
        with self._lock:
            if not self._config.get_job(job_id):
                logger.warning(f"Job not found: {job_id}")
                return False

            data = self._config.to_yaml_dict()
            data["jobs"] = [j for j in data["jobs"] if j["id"] != job_id]
            self._replace(data)
        logger.info(f"Deleted job '{job_id}'")
        return True

    def _check_app_refs(self, job: JobDefinition) -> None:
        for app_id in job.apps:
            if app_id not in self._config.apps:
                raise ConfigError(f"Job '{job.id}' references unknown app '{app_id}'")

    # App mutations

    def create_app(self, app_data: dict[str, Any]) -> AppDefinition:
        """Add a new app."""
        with self._lock:
            app = AppDefinition.model_validate(app_data)
            if app.id in self._config.apps:
                raise ConfigError(f"App already exists: {app.id}")

            data = self._config.to_yaml_dict()
            data["apps"][app.id] = app.model_dump(mode="json", exclude={"id"})
            self._replace(data)
        logger.info(f"Created app '{app.id}'")
        return app

    def update_app(self, app_id: str, updates: dict[str, Any]) -> AppDefinition:
        with self._lock:
            existing = self._config.get_app(app_id)
            if not existing:
                raise ConfigError(f"App not found: {app_id}")

            merged = existing.model_dump(mode="json")
            merged.update({k: v for k, v in updates.items() if k != "id"})
            app = AppDefinition.model_validate(merged)

            data = self._config.to_yaml_dict()
            data["apps"][app_id] = app.model_dump(mode="json", exclude={"id"})
            self._replace(data)
        logger.info(f"Updated app '{app_id}'")
        return app

    def delete_app(self, app_id: str) -> bool:
        """Remove an app. Refuses while any job still references it."""
        with self._lock:
            if app_id not in self._config.apps:
                logger.warning(f"App not found: {app_id}")
                return False

            users = [job.id for job in self._config.jobs if app_id in job.apps]
            if users:
                raise ConfigError(f"App '{app_id}' is used by jobs: {', '.join(users)}")

            data = self._config.to_yaml_dict()
            del data["apps"][app_id]
            self._replace(data)
        logger.info(f"Deleted app '{app_id}'")
        return True

    # Global settings

    def update_global(self, updates: dict[str, Any]) -> GlobalSettings:
        with self._lock:
            data = self._config.to_yaml_dict()
            data["global"].update(updates)
            config = self._replace(data)
        logger.info("Updated global settings")
        return config.global_


def create_default_config(path: Path | None = None) -> Path:
    """Create a default configuration file if it doesn't exist."""
    path = path or default_config_path()
    if path.exists():
        return path

    store = ConfigStore(path=path, config=default_jobs_config())
    store.save()
    store.global_settings.get_logs_dir().mkdir(parents=True, exist_ok=True)
    logger.info(f"Created default config at {path}")
    return path
