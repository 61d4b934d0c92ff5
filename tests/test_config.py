"""Tests for configuration models and the config store."""

from unittest.mock import patch

import pytest
import yaml

from jobrunner.config import ConfigStore, create_default_config, default_config_path, expand_env_vars, parse_config
from jobrunner.errors import ConfigError
from jobrunner.models import JobsConfig, JobType

SAMPLE = """
global:
  java_home: /opt/jdk
  java_opts: -Xmx1g
  config_dir: /etc/myapp
  logs_dir: {logs_dir}

apps:
  core:
    name: Core
    webapp_path: /srv/core

jobs:
  - id: importer
    main_class: com.example.Import
    app: core
    type: continuous
    params: [--batch, 50]
  - id: cleanup
    entry_point: com.example.Cleanup
    type: weekly
"""


@pytest.fixture
def config_file(temp_dir):
    path = temp_dir / "jobs.yaml"
    path.write_text(SAMPLE.format(logs_dir=temp_dir / "logs"))
    return path


class TestParsing:
    """Loading YAML into the config model."""

    def test_legacy_keys(self, config_file):
        store = ConfigStore(path=config_file)

        assert store.global_settings.runtime_home == "/opt/jdk"
        assert store.global_settings.launch_options == "-Xmx1g"

        core = store.get_app("core")
        assert core.base_path == "/srv/core"
        assert core.name == "Core"

        job = store.get_job("importer")
        assert job.entry_point == "com.example.Import"
        assert job.apps == ["core"]
        assert job.name == "importer"
        assert job.params == ["--batch", "50"]

    def test_unknown_type_is_on_demand(self, config_file):
        store = ConfigStore(path=config_file)
        assert store.get_job("importer").type == JobType.CONTINUOUS
        assert store.get_job("cleanup").type == JobType.ON_DEMAND

    def test_jobs_keyed_by_id(self):
        config = parse_config({"jobs": {"a": {"entry_point": "A"}, "b": {"entry_point": "B"}}})
        assert [j.id for j in config.jobs] == ["a", "b"]

    def test_duplicate_job_ids(self):
        with pytest.raises(ConfigError):
            parse_config({"jobs": [{"id": "a", "entry_point": "A"}, {"id": "a", "entry_point": "B"}]})

    def test_missing_entry_point(self):
        with pytest.raises(ConfigError):
            parse_config({"jobs": [{"id": "a"}]})

    def test_not_a_mapping(self, temp_dir):
        path = temp_dir / "jobs.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError):
            ConfigStore(path=path)

    def test_malformed_yaml(self, temp_dir):
        path = temp_dir / "jobs.yaml"
        path.write_text("jobs: [unclosed\n")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            ConfigStore(path=path)

    def test_job_entry_not_a_mapping(self):
        """Jobs keyed by id must map to job definitions."""
        with pytest.raises(ConfigError, match="must be a mapping"):
            parse_config({"jobs": {"a": "not-a-job"}})

    def test_missing_file_uses_defaults(self, temp_dir):
        store = ConfigStore(path=temp_dir / "missing.yaml")

        assert store.list_jobs() == []
        assert store.daemon.port == 9877

    def test_env_vars_in_paths(self, monkeypatch):
        monkeypatch.setenv("APPS_ROOT", "/srv")
        config = parse_config({"apps": {"core": {"base_path": "${env:APPS_ROOT}/core"}}})
        assert config.get_app("core").base_path == "/srv/core"

    def test_expand_env_vars(self, monkeypatch):
        monkeypatch.setenv("HOME_DIR", "/home/me")
        assert expand_env_vars("$HOME_DIR/x") == "/home/me/x"
        assert expand_env_vars("${env:HOME_DIR}/y") == "/home/me/y"

    def test_config_path_from_environment(self, monkeypatch, temp_dir):
        monkeypatch.setenv("JOBRUNNER_CONFIG", str(temp_dir / "custom.yaml"))
        assert default_config_path() == temp_dir / "custom.yaml"

    def test_executable_default(self):
        config = JobsConfig.model_validate({"global": {"runtime_home": "/opt/jdk"}})
        assert config.global_.get_executable() == "/opt/jdk/bin/java"


class TestJobMutations:
    def test_create_job_persists(self, config_file):
        store = ConfigStore(path=config_file)

        job = store.create_job({"id": "report", "entry_point": "com.example.Report", "apps": ["core"]})

        assert job.name == "report"
        reloaded = ConfigStore(path=config_file)
        assert reloaded.get_job("report").entry_point == "com.example.Report"
        assert reloaded.get_job("importer") is not None

    def test_create_duplicate(self, config_file):
        store = ConfigStore(path=config_file)
        with pytest.raises(ConfigError):
            store.create_job({"id": "importer", "entry_point": "X"})

    def test_create_with_unknown_app(self, config_file):
        store = ConfigStore(path=config_file)
        with pytest.raises(ConfigError):
            store.create_job({"id": "x", "entry_point": "X", "apps": ["nope"]})
        assert store.get_job("x") is None

    def test_update_job_keeps_id(self, config_file):
        store = ConfigStore(path=config_file)

        job = store.update_job("importer", {"id": "renamed", "enabled": False, "params": ["--fast"]})

        assert job.id == "importer"
        assert not job.enabled
        assert ConfigStore(path=config_file).get_job("importer").params == ["--fast"]

    def test_update_missing_job(self, config_file):
        store = ConfigStore(path=config_file)
        with pytest.raises(ConfigError):
            store.update_job("nope", {"enabled": False})

    def test_delete_job(self, config_file):
        store = ConfigStore(path=config_file)

        assert store.delete_job("cleanup")
        assert not store.delete_job("cleanup")
        assert ConfigStore(path=config_file).get_job("cleanup") is None


class TestAppMutations:
    def test_create_and_delete_app(self, config_file):
        store = ConfigStore(path=config_file)

        store.create_app({"id": "reports", "base_path": "/srv/reports"})
        assert ConfigStore(path=config_file).get_app("reports").base_path == "/srv/reports"

        assert store.delete_app("reports")
        assert ConfigStore(path=config_file).get_app("reports") is None

    def test_delete_app_in_use(self, config_file):
        store = ConfigStore(path=config_file)
        with pytest.raises(ConfigError, match="importer"):
            store.delete_app("core")
        assert store.get_app("core") is not None

    def test_update_app(self, config_file):
        store = ConfigStore(path=config_file)
        app = store.update_app("core", {"base_path": "/srv/core-v2"})
        assert app.base_path == "/srv/core-v2"

    def test_resolve_apps_skips_unknown(self):
        config = parse_config({
            "apps": {"core": {"base_path": "/srv/core"}},
            "jobs": [{"id": "a", "entry_point": "A", "apps": ["missing", "core"]}],
        })
        store = ConfigStore(config=config)

        assert [app.id for app in store.resolve_apps(store.get_job("a"))] == ["core"]


class TestFiles:
    def test_saved_file_layout(self, config_file):
        store = ConfigStore(path=config_file)
        store.update_global({"launch_options": "-Xmx2g"})

        data = yaml.safe_load(config_file.read_text())

        assert data["global"]["launch_options"] == "-Xmx2g"
        assert data["global"]["runtime_home"] == "/opt/jdk"
        assert data["apps"]["core"]["base_path"] == "/srv/core"
        assert [j["id"] for j in data["jobs"]] == ["importer", "cleanup"]

    def test_reload(self, config_file):
        store = ConfigStore(path=config_file)
        config_file.write_text("jobs:\n  - id: only\n    entry_point: Only\n")

        store.reload()

        assert [j.id for j in store.list_jobs()] == ["only"]

    def test_reload_invalid_keeps_current(self, config_file):
        store = ConfigStore(path=config_file)
        config_file.write_text("jobs:\n  - id: broken\n")

        with pytest.raises(ConfigError):
            store.reload()
        assert store.get_job("importer") is not None

    def test_reload_malformed_yaml_keeps_current(self, config_file):
        store = ConfigStore(path=config_file)
        config_file.write_text("jobs: [unclosed\n")

        with pytest.raises(ConfigError):
            store.reload()
        assert store.get_job("importer") is not None

    def test_failed_write_keeps_snapshot(self, config_file, temp_dir):
        """A mutation that cannot be written leaves the snapshot untouched."""
        store = ConfigStore(path=config_file)
        blocker = temp_dir / "blocker"
        blocker.write_text("")
        store.path = blocker / "jobs.yaml"

        with pytest.raises(OSError):
            store.create_job({"id": "report", "entry_point": "com.example.Report"})

        assert store.get_job("report") is None
        assert [j.id for j in store.list_jobs()] == ["importer", "cleanup"]

    def test_failed_dump_keeps_snapshot(self, config_file):
        store = ConfigStore(path=config_file)

        with patch("jobrunner.config.yaml.safe_dump", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.update_global({"launch_options": "-Xmx2g"})

        assert store.global_settings.launch_options == "-Xmx1g"

    def test_create_default_config(self, temp_dir):
        path = temp_dir / "new" / "jobs.yaml"

        assert create_default_config(path) == path
        assert path.exists()
        assert ConfigStore(path=path).list_jobs() == []
