"""Shared fixtures for jobrunner tests."""

import shutil
import sys
import tempfile
import time
from pathlib import Path

import pytest

from jobrunner.config import ConfigStore
from jobrunner.core.supervisor import Supervisor
from jobrunner.models import JobsConfig

MOCK_JOBS_DIR = Path(__file__).parent / "mock_jobs"


def mock_job(name: str) -> str:
    """Path of a mock job script."""
    return str(MOCK_JOBS_DIR / name)


def make_config(logs_dir: Path, jobs: list, apps: dict | None = None, **global_settings) -> JobsConfig:
    """Config whose jobs run the mock scripts with the current interpreter."""
    settings = {
        "runtime_home": "",
        "executable": sys.executable,
        "launch_options": "-u",
        "config_dir": "",
        "logs_dir": str(logs_dir),
    }
    settings.update(global_settings)
    return JobsConfig.model_validate({"global": settings, "apps": apps or {}, "jobs": jobs})


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


DEFAULT_JOBS = [
    {"id": "echo", "entry_point": mock_job("echo_job.py"), "params": ["hello", "world"]},
    {"id": "continuous", "entry_point": mock_job("continuous_job.py"), "type": "continuous"},
    {"id": "failing", "entry_point": mock_job("failing_job.py")},
    {"id": "stubborn", "entry_point": mock_job("stubborn_job.py"), "type": "continuous"},
    {"id": "disabled", "entry_point": mock_job("echo_job.py"), "enabled": False},
]


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    path = Path(tempfile.mkdtemp(prefix="jobrunner_test_"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store(temp_dir):
    """Config store with the mock jobs, not yet written to disk."""
    config = make_config(temp_dir / "logs", DEFAULT_JOBS)
    return ConfigStore(path=temp_dir / "jobs.yaml", config=config)


@pytest.fixture
def supervisor(store):
    """Supervisor with short timeouts and no exit hook."""
    sup = Supervisor(
        store,
        stop_timeout=1.0,
        kill_timeout=2.0,
        restart_delay=0.1,
        install_exit_hook=False,
    )
    yield sup
    sup.shutdown(drain_timeout=2.0)
