"""Pydantic models for jobrunner configuration and runtime state."""

from __future__ import annotations

import os
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class JobType(str, Enum):
    """Type of job execution."""

    CONTINUOUS = "continuous"  # Long-running service, started by start-all
    ON_DEMAND = "on-demand"  # One-shot invocation

    @classmethod
    def from_string(cls, text: str | None) -> "JobType":
        """Parse a type name, falling back to on-demand for unknown values."""
        if text:
            for member in cls:
                if member.value == text.strip().lower():
                    return member
        return cls.ON_DEMAND


class JobStatus(str, Enum):
    """Current status of a job."""

    STOPPED = "stopped"
    RUNNING = "running"
    ERROR = "error"


class GlobalSettings(BaseModel):
    """Settings shared by every job."""

    runtime_home: str = Field(default_factory=lambda: os.environ.get("JAVA_HOME", ""))
    executable: str | None = None  # Overrides <runtime_home>/bin/java
    launch_options: str = "-Xms256m -Xmx512m"
    config_dir: str = "/opt/config"
    logs_dir: str = str(Path.home() / ".jobrunner" / "logs")
    runtime_home_var: str = "JAVA_HOME"
    classpath_flag: str = "-classpath"

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        """Accept the java_home / java_opts spelling of older config files."""
        if isinstance(data, dict):
            data = dict(data)
            if "java_home" in data:
                data.setdefault("runtime_home", data.pop("java_home"))
            if "java_opts" in data:
                data.setdefault("launch_options", data.pop("java_opts"))
        return data

    def get_executable(self) -> str:
        """Get the launcher executable path."""
        if self.executable:
            return self.executable
        cmd = os.path.join(self.runtime_home, "bin", "java")
        if sys.platform == "win32":
            cmd += ".exe"
        return cmd

    def get_logs_dir(self) -> Path:
        """Get the log directory as a path."""
        return Path(self.logs_dir).expanduser()


class AppDefinition(BaseModel):
    """A deployable unit that contributes classpath entries to jobs."""

    id: str
    name: str = ""
    base_path: str = ""

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        if isinstance(data, dict) and "webapp_path" in data:
            data = dict(data)
            data.setdefault("base_path", data.pop("webapp_path"))
        return data

    @property
    def classes_path(self) -> str:
        """Get the WEB-INF/classes path."""
        return os.path.join(self.base_path, "WEB-INF", "classes")

    @property
    def lib_path(self) -> str:
        """Get the WEB-INF/lib path."""
        return os.path.join(self.base_path, "WEB-INF", "lib")

    def has_lib_dir(self) -> bool:
        return os.path.isdir(self.lib_path)

    def is_valid(self) -> bool:
        """Check that the base and classes directories exist."""
        return os.path.isdir(self.base_path) and os.path.isdir(self.classes_path)


class JobDefinition(BaseModel):
    """Configuration for a single job."""

    # Required
    id: str
    name: str
    entry_point: str

    # Optional with defaults
    apps: list[str] = Field(default_factory=list)
    type: JobType = JobType.ON_DEMAND
    enabled: bool = True
    params: list[str] = Field(default_factory=list)
    launch_options: str | None = None  # Appended after the global options
    description: str = ""
    args_required: bool = False  # Caller should prompt for runtime args

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        """Accept main_class / app / java_opts from older config files."""
        if isinstance(data, dict):
            data = dict(data)
            if "main_class" in data:
                data.setdefault("entry_point", data.pop("main_class"))
            if "app" in data:
                data.setdefault("apps", data.pop("app"))
            if "java_opts" in data:
                data.setdefault("launch_options", data.pop("java_opts"))
            if not data.get("name") and data.get("id"):
                data["name"] = data["id"]
        return data

    @field_validator("apps", mode="before")
    @classmethod
    def single_app_as_list(cls, v: Any) -> Any:
        """A single app id is shorthand for a one-element list."""
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("type", mode="before")
    @classmethod
    def lenient_type(cls, v: Any) -> Any:
        if isinstance(v, JobType):
            return v
        return JobType.from_string(v if isinstance(v, str) else None)

    @field_validator("params", mode="before")
    @classmethod
    def params_as_strings(cls, v: Any) -> Any:
        if v is None:
            return []
        return [str(p) for p in v]


class RuntimeState(BaseModel):
    """Runtime state of a job (never persisted)."""

    job_id: str
    status: JobStatus = JobStatus.STOPPED
    pid: int | None = None
    started_at: datetime | None = None
    last_exit_code: int | None = None
    last_error: str | None = None


class DaemonConfig(BaseModel):
    """HTTP daemon configuration."""

    host: str = "127.0.0.1"
    port: int = 9877


class JobsConfig(BaseModel):
    """Complete configuration: global settings, apps and jobs."""

    global_: GlobalSettings = Field(default_factory=GlobalSettings, alias="global")
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    apps: dict[str, AppDefinition] = Field(default_factory=dict)
    jobs: list[JobDefinition] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @field_validator("apps", mode="before")
    @classmethod
    def apps_keyed_by_id(cls, v: Any) -> Any:
        """Fill each app's id from its mapping key."""
        if isinstance(v, dict):
            result = {}
            for app_id, app in v.items():
                if isinstance(app, dict):
                    app = {**app, "id": app.get("id", app_id)}
                    app.setdefault("name", app_id)
                result[app_id] = app
            return result
        return v

    @field_validator("jobs", mode="before")
    @classmethod
    def jobs_as_list(cls, v: Any) -> Any:
        """Accept jobs as a list or as a mapping keyed by id."""
        if v is None:
            return []
        if isinstance(v, dict):
            jobs = []
            for job_id, job in v.items():
                if not isinstance(job, dict):
                    raise ValueError(f"Job '{job_id}' must be a mapping, got {type(job).__name__}")
                jobs.append({**job, "id": job.get("id", job_id)})
            return jobs
        return v

    @model_validator(mode="after")
    def unique_job_ids(self) -> "JobsConfig":
        seen: set[str] = set()
        for job in self.jobs:
            if job.id in seen:
                raise ValueError(f"Duplicate job id '{job.id}'")
            seen.add(job.id)
        return self

    def get_job(self, job_id: str) -> JobDefinition | None:
        """Get a job by ID."""
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    def get_app(self, app_id: str) -> AppDefinition | None:
        """Get an app by ID."""
        return self.apps.get(app_id)

    def get_jobs_by_type(self, job_type: JobType) -> list[JobDefinition]:
        """Get all jobs of a specific type."""
        return [job for job in self.jobs if job.type == job_type]

    def to_yaml_dict(self) -> dict[str, Any]:
        """Dump in the on-disk layout (apps keyed by id, jobs as a list)."""
        return {
            "global": self.global_.model_dump(mode="json", exclude_none=True),
            "daemon": self.daemon.model_dump(mode="json"),
            "apps": {
                app_id: app.model_dump(mode="json", exclude={"id"})
                for app_id, app in self.apps.items()
            },
            "jobs": [
                job.model_dump(mode="json", exclude_none=True)
                for job in self.jobs
            ],
        }
