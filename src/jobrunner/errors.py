"""Exception hierarchy for jobrunner.

The supervisor raises these internally and converts them to ``JobResult``
values at its public boundary; callers of ``Supervisor`` never see them.
"""


class JobRunnerError(Exception):
    """Base for all jobrunner errors."""


class ConfigError(JobRunnerError):
    """Configuration error."""


class JobNotFoundError(JobRunnerError):
    """No job with the given ID exists."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(JobRunnerError):
    """Operation not allowed in the job's current state."""


class SpawnError(JobRunnerError):
    """The job's process could not be launched."""


class TerminationError(JobRunnerError):
    """A process survived a forced kill."""


class LogIOError(JobRunnerError):
    """Reading or writing a job log file failed."""
