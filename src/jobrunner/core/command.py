"""Launch command construction for jobs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Sequence

from jobrunner.models import AppDefinition, GlobalSettings, JobDefinition


@dataclass
class LaunchCommand:
    """Ordered argv plus the environment to launch it with."""

    args: list[str]
    env: dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return " ".join(self.args)


def split_options(options: str | None) -> list[str]:
    """Whitespace-split an option string, dropping empty tokens."""
    if not options:
        return []
    return options.split()


def build_classpath(apps: Sequence[AppDefinition], config_dir: str | None) -> str:
    """Build the classpath for a job's apps.

    Each app contributes its classes directory and, when the lib directory
    exists, a ``<lib>/*`` wildcard. The config directory is appended once,
    after every app entry.
    """
    entries: list[str] = []
    for app in apps:
        entries.append(app.classes_path)
        if app.has_lib_dir():
            entries.append(app.lib_path + "/*")

    if config_dir:
        entries.append(config_dir)

    return os.pathsep.join(entries)


def build_command(
    job: JobDefinition,
    apps: Sequence[AppDefinition],
    settings: GlobalSettings,
    runtime_args: Sequence[str] | None = None,
    base_env: dict[str, str] | None = None,
) -> LaunchCommand:
    """Build the command line and environment for a job.

    Order: executable, global options, per-job options, classpath, entry
    point, configured params, runtime args.

    Args:
        job: Job definition
        apps: The job's apps, already resolved, in declared order
        settings: Global settings
        runtime_args: Extra arguments supplied at start time (appended last)
        base_env: Environment to extend (default: a copy of os.environ)

    Returns:
        LaunchCommand with argv and environment
    """
    args = [settings.get_executable()]
    args.extend(split_options(settings.launch_options))
    args.extend(split_options(job.launch_options))

    classpath = build_classpath(apps, settings.config_dir)
    if classpath:
        args.extend([settings.classpath_flag, classpath])

    args.append(job.entry_point)
    args.extend(job.params)
    if runtime_args:
        args.extend(runtime_args)

    env = dict(os.environ if base_env is None else base_env)
    if settings.runtime_home:
        env[settings.runtime_home_var] = settings.runtime_home

    return LaunchCommand(args=args, env=env)
