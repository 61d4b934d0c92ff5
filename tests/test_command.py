"""Tests for launch command construction."""

import os

import pytest

from jobrunner.core.command import build_classpath, build_command, split_options
from jobrunner.models import AppDefinition, GlobalSettings, JobDefinition


@pytest.fixture
def apps(temp_dir):
    """Two apps; only the first has a lib directory."""
    core = temp_dir / "core"
    (core / "WEB-INF" / "classes").mkdir(parents=True)
    (core / "WEB-INF" / "lib").mkdir(parents=True)

    reports = temp_dir / "reports"
    (reports / "WEB-INF" / "classes").mkdir(parents=True)

    return [
        AppDefinition(id="core", base_path=str(core)),
        AppDefinition(id="reports", base_path=str(reports)),
    ]


@pytest.fixture
def settings():
    return GlobalSettings(
        runtime_home="/opt/jdk",
        launch_options="-Xms256m -Xmx512m",
        config_dir="/opt/config",
    )


class TestClasspath:
    def test_order_and_config_dir_last(self, apps, temp_dir):
        classpath = build_classpath(apps, "/opt/config")

        assert classpath.split(os.pathsep) == [
            str(temp_dir / "core" / "WEB-INF" / "classes"),
            str(temp_dir / "core" / "WEB-INF" / "lib") + "/*",
            str(temp_dir / "reports" / "WEB-INF" / "classes"),
            "/opt/config",
        ]

    def test_config_dir_appears_once(self, apps):
        classpath = build_classpath(apps, "/opt/config")
        assert classpath.split(os.pathsep).count("/opt/config") == 1

    def test_no_apps(self):
        assert build_classpath([], "/opt/config") == "/opt/config"
        assert build_classpath([], "") == ""


class TestBuildCommand:
    def test_argument_order(self, apps, settings):
        job = JobDefinition(
            id="import",
            name="Import",
            entry_point="com.example.Import",
            apps=["core", "reports"],
            params=["--mode", "full"],
            launch_options="-Dimport.batch=50",
        )

        command = build_command(job, apps, settings, runtime_args=["2024-01-01"], base_env={})

        classpath = build_classpath(apps, "/opt/config")
        assert command.args == [
            os.path.join("/opt/jdk", "bin", "java"),
            "-Xms256m",
            "-Xmx512m",
            "-Dimport.batch=50",
            "-classpath",
            classpath,
            "com.example.Import",
            "--mode",
            "full",
            "2024-01-01",
        ]

    def test_runtime_home_in_environment(self, settings):
        job = JobDefinition(id="j", name="j", entry_point="Main")

        command = build_command(job, [], settings, base_env={"PATH": "/usr/bin"})

        assert command.env == {"PATH": "/usr/bin", "JAVA_HOME": "/opt/jdk"}

    def test_custom_home_variable(self):
        settings = GlobalSettings(runtime_home="/opt/rt", runtime_home_var="RUNTIME_HOME", config_dir="")
        job = JobDefinition(id="j", name="j", entry_point="Main")

        command = build_command(job, [], settings, base_env={})

        assert command.env == {"RUNTIME_HOME": "/opt/rt"}

    def test_empty_classpath_omits_flag(self):
        settings = GlobalSettings(runtime_home="", executable="/usr/bin/python3", launch_options="", config_dir="")
        job = JobDefinition(id="j", name="j", entry_point="script.py", params=["a"])

        command = build_command(job, [], settings, base_env={})

        assert command.args == ["/usr/bin/python3", "script.py", "a"]
        assert command.env == {}

    def test_base_env_is_not_modified(self, settings):
        base = {"PATH": "/usr/bin"}
        job = JobDefinition(id="j", name="j", entry_point="Main")

        build_command(job, [], settings, base_env=base)

        assert base == {"PATH": "/usr/bin"}

    def test_str(self, settings):
        job = JobDefinition(id="j", name="j", entry_point="Main")
        command = build_command(job, [], settings, base_env={})
        assert str(command).endswith(" -classpath /opt/config Main")


@pytest.mark.parametrize(
    "options,expected",
    [
        (None, []),
        ("", []),
        ("  -Xmx1g   -Dfoo=bar ", ["-Xmx1g", "-Dfoo=bar"]),
    ],
)
def test_split_options(options, expected):
    assert split_options(options) == expected
