"""jobrunner core components."""

from jobrunner.core.command import LaunchCommand, build_command
from jobrunner.core.log_capture import LogBuffer, LogCapture
from jobrunner.core.shutdown import ShutdownCoordinator
from jobrunner.core.supervisor import JobResult, ProcessHandle, Supervisor

__all__ = [
    "JobResult",
    "LaunchCommand",
    "LogBuffer",
    "LogCapture",
    "ProcessHandle",
    "ShutdownCoordinator",
    "Supervisor",
    "build_command",
]
