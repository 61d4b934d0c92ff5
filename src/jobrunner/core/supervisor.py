"""Process supervisor for jobrunner."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Callable, Sequence

import psutil
from loguru import logger

from jobrunner.config import ConfigStore
from jobrunner.core.command import build_command
from jobrunner.core.log_capture import (
    DEFAULT_BUFFER_MAX_CHARS,
    DEFAULT_BUFFER_TRIM_CHARS,
    LogBuffer,
    LogCapture,
    get_log_path,
    read_log_file,
)
from jobrunner.core.shutdown import ShutdownCoordinator
from jobrunner.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    LogIOError,
    SpawnError,
    TerminationError,
)
from jobrunner.models import JobDefinition, JobStatus, JobType, RuntimeState

# (args, env, cwd) -> process with stdout piped and stderr merged into it
Launcher = Callable[[list[str], dict[str, str], Path], "subprocess.Popen[bytes]"]

DEFAULT_STOP_TIMEOUT = 5.0
DEFAULT_KILL_TIMEOUT = 2.0
DEFAULT_DRAIN_TIMEOUT = 10.0


def popen_launcher(args: list[str], env: dict[str, str], cwd: Path) -> subprocess.Popen[bytes]:
    """Spawn a job process with stderr merged into a stdout pipe."""
    return subprocess.Popen(
        args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=True,  # Create new process group
    )


def leads_process_group(pid: int) -> bool:
    """Whether pid leads a process group of its own, other than ours."""
    try:
        return os.getpgid(pid) == pid and pid != os.getpgrp()
    except OSError:
        return False


@dataclass
class JobResult:
    """Outcome of a start/stop style operation."""

    success: bool
    message: str
    pid: int | None = None

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "pid": self.pid}


class ProcessHandle:
    """Handle to a running process."""

    def __init__(
        self,
        job_id: str,
        process: subprocess.Popen[bytes],
        started_at: datetime | None = None,
        process_group: bool = False,
    ):
        self.job_id = job_id
        self.process = process
        self.started_at = started_at or datetime.now()
        # True when the process leads its own group (pgid == pid)
        self.process_group = process_group
        self.capture: LogCapture | None = None

    @property
    def pid(self) -> int:
        """Get the process ID."""
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        """Get the return code if process has exited."""
        return self.process.poll()

    def is_running(self) -> bool:
        """Check if the process is still running."""
        return self.process.poll() is None

    def signal_group(self, sig: int) -> bool:
        """Send a signal to every process in the job's group.

        Descendants share the group, and with it the stdout pipe, so they
        must go down with the job for the log capture to see EOF. Returns
        False when the process has no group of its own.
        """
        if not self.process_group:
            return False
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        return True

    def terminate(self) -> None:
        """Send SIGTERM to the process group."""
        if not self.is_running():
            return
        if self.signal_group(signal.SIGTERM):
            return
        try:
            self.process.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        """Send SIGKILL to the process and its descendants."""
        running = self.is_running()
        children = []
        if running:
            # Collected first: descendants outside the group are orphaned once the leader dies
            try:
                children = psutil.Process(self.pid).children(recursive=True)
            except psutil.Error:
                pass

        # The group can outlive its leader
        self.signal_group(signal.SIGKILL)
        if not running:
            return

        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    def wait(self, timeout: float | None = None) -> int:
        """Wait for process to finish."""
        return self.process.wait(timeout=timeout)


class Supervisor:
    """Owns the job_id -> process registry and every job's runtime state.

    Start and stop are serialised by one coarse lock, so the "is it
    registered" check, the spawn and the registry insert form a single step.
    Status queries use a separate short-held lock and never wait behind a
    stop in progress.
    """

    def __init__(
        self,
        store: ConfigStore,
        clock: Callable[[], datetime] = datetime.now,
        launcher: Launcher = popen_launcher,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        restart_delay: float = 1.0,
        buffer_max_chars: int = DEFAULT_BUFFER_MAX_CHARS,
        buffer_trim_chars: int = DEFAULT_BUFFER_TRIM_CHARS,
        max_workers: int = 4,
        install_exit_hook: bool = True,
    ):
        """Initialize the supervisor.

        Args:
            store: Source of job, app and global definitions
            clock: Timestamp source for start times and log lines
            launcher: Spawns processes (see ``popen_launcher``)
            stop_timeout: Grace period after SIGTERM (seconds)
            kill_timeout: Wait after SIGKILL (seconds)
            restart_delay: Pause between stop and start on restart (seconds)
            buffer_max_chars: In-memory log cap per job
            buffer_trim_chars: Minimum amount dropped when the cap is hit
            max_workers: Size of the background worker pool
            install_exit_hook: Register the host-exit kill hook
        """
        self.store = store
        self.stop_timeout = stop_timeout
        self.kill_timeout = kill_timeout
        self.restart_delay = restart_delay
        self._clock = clock
        self._launcher = launcher
        self._buffer_max_chars = buffer_max_chars
        self._buffer_trim_chars = buffer_trim_chars

        self._processes: dict[str, ProcessHandle] = {}
        self._buffers: dict[str, LogBuffer] = {}
        self._states: dict[str, RuntimeState] = {}
        self._lock = RLock()  # Serialises start/stop
        self._registry_lock = Lock()  # Guards the dicts above

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="jobrunner-worker")
        self._pending: set[Future] = set()
        self._closed = False

        self._exit_hook = ShutdownCoordinator(self.get_handles)
        if install_exit_hook:
            self._exit_hook.install()

    # Registry

    def get_handles(self) -> dict[str, ProcessHandle]:
        """Snapshot of registered process handles."""
        with self._registry_lock:
            return dict(self._processes)

    def is_job_running(self, job_id: str) -> bool:
        """Check if a job has a live registered process."""
        with self._registry_lock:
            handle = self._processes.get(job_id)
        return handle is not None and handle.is_running()

    def _deregister(self, job_id: str, handle: ProcessHandle) -> bool:
        """Remove the handle if it is still the registered one."""
        with self._registry_lock:
            if self._processes.get(job_id) is handle:
                del self._processes[job_id]
                return True
        return False

    def get_state(self, job_id: str) -> RuntimeState:
        """Get a copy of a job's runtime state (STOPPED if never run)."""
        with self._registry_lock:
            state = self._states.get(job_id)
            return state.model_copy() if state else RuntimeState(job_id=job_id)

    def _set_state(self, job_id: str, **fields: Any) -> None:
        with self._registry_lock:
            self._states[job_id] = RuntimeState(job_id=job_id, **fields)

    def get_log_path(self, job_id: str) -> Path:
        return get_log_path(self.store.global_settings.get_logs_dir(), job_id)

    # Start / stop

    def start(self, job_id: str, runtime_args: Sequence[str] | None = None) -> JobResult:
        """Start a job.

        Args:
            job_id: The job ID to start
            runtime_args: Optional arguments appended after the configured params

        Returns:
            JobResult with the new PID on success
        """
        with self._lock:
            try:
                job = self._startable_job(job_id)
                handle = self._spawn_process(job, runtime_args)
            except (JobNotFoundError, InvalidJobStateError) as e:
                logger.warning(str(e))
                return JobResult(False, str(e))
            except SpawnError as e:
                logger.error(f"Failed to start job '{job_id}': {e}")
                self._set_state(job_id, status=JobStatus.ERROR, last_error=str(e))
                return JobResult(False, f"Error starting job: {e}")

            with self._registry_lock:
                self._processes[job_id] = handle
            self._start_capture(handle)
            self._set_state(
                job_id,
                status=JobStatus.RUNNING,
                pid=handle.pid,
                started_at=handle.started_at,
            )

        logger.info(f"Started job '{job_id}' (PID: {handle.pid})")
        return JobResult(True, "Job started successfully", handle.pid)

    def _startable_job(self, job_id: str) -> JobDefinition:
        """Look up a job that may be started now. Caller holds the coarse lock."""
        if self._closed:
            raise InvalidJobStateError("Supervisor is shut down")

        job = self.store.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)
        if not job.enabled:
            raise InvalidJobStateError(f"Job is disabled: {job_id}")

        with self._registry_lock:
            if job_id in self._processes:
                raise InvalidJobStateError(f"Job is already running: {job_id}")
        return job

    def _spawn_process(self, job: JobDefinition, runtime_args: Sequence[str] | None) -> ProcessHandle:
        """Build the command and launch it from the log directory."""
        settings = self.store.global_settings
        command = build_command(job, self.store.resolve_apps(job), settings, runtime_args)

        logs_dir = settings.get_logs_dir()
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SpawnError(f"Cannot create log directory {logs_dir}: {e}") from e

        logger.debug(f"Starting job '{job.id}' with command: {command}")
        try:
            process = self._launcher(command.args, command.env, logs_dir)
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise SpawnError(str(e)) from e

        return ProcessHandle(
            job.id,
            process,
            started_at=self._clock(),
            process_group=leads_process_group(process.pid),
        )

    def _start_capture(self, handle: ProcessHandle) -> None:
        buffer = LogBuffer(self._buffer_max_chars, self._buffer_trim_chars)
        with self._registry_lock:
            self._buffers[handle.job_id] = buffer

        stream = handle.process.stdout
        if stream is None:
            logger.warning(f"Job '{handle.job_id}' has no output pipe, logs won't be captured")
            return

        handle.capture = LogCapture(
            job_id=handle.job_id,
            stream=stream,
            log_path=self.get_log_path(handle.job_id),
            buffer=buffer,
            clock=self._clock,
        )
        handle.capture.start()

    def stop(self, job_id: str) -> JobResult:
        """Stop a job: SIGTERM, grace period, then SIGKILL.

        Stopping a job that isn't running resets its state to STOPPED but
        reports failure.
        """
        with self._lock:
            with self._registry_lock:
                handle = self._processes.get(job_id)

            if handle is None:
                try:
                    self._reset_stopped(job_id)
                except (JobNotFoundError, InvalidJobStateError) as e:
                    logger.warning(str(e))
                    return JobResult(False, str(e))

            exit_code = None
            try:
                exit_code = self._terminate(handle)
            except TerminationError as e:
                logger.error(str(e))
            except OSError as e:
                logger.error(f"Error stopping job '{job_id}': {e}")
            finally:
                self._deregister(job_id, handle)
                if handle.capture:
                    handle.capture.cancel()
                    if not handle.capture.join(timeout=1.0):
                        logger.warning(f"Output of job '{job_id}' is still open after stop")
                self._set_state(job_id, status=JobStatus.STOPPED, last_exit_code=exit_code)

        logger.info(f"Job stopped: '{job_id}'")
        return JobResult(True, "Job stopped successfully")

    def _reset_stopped(self, job_id: str) -> None:
        """Settle the state of a job with no registered process, then refuse the stop."""
        if self.store.get_job(job_id) is None:
            raise JobNotFoundError(job_id)
        last = self.get_state(job_id)
        self._set_state(job_id, status=JobStatus.STOPPED, last_exit_code=last.last_exit_code)
        raise InvalidJobStateError(f"Job is not running: {job_id}")

    def _terminate(self, handle: ProcessHandle) -> int:
        """Terminate gracefully, force-killing after the grace period."""
        logger.info(f"Stopping job '{handle.job_id}' (grace period: {self.stop_timeout}s)")
        handle.terminate()
        try:
            exit_code = handle.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Job '{handle.job_id}' did not stop gracefully, killing")
        else:
            # Descendants that ignored SIGTERM would keep the output pipe open
            handle.signal_group(signal.SIGKILL)
            return exit_code

        handle.kill()
        try:
            return handle.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            raise TerminationError(
                f"Job '{handle.job_id}' (PID {handle.pid}) survived a forced kill"
            ) from None

    def restart(self, job_id: str, runtime_args: Sequence[str] | None = None) -> JobResult:
        """Stop the job if running, pause briefly, then start it again."""
        if self.stop(job_id):
            time.sleep(self.restart_delay)
        result = self.start(job_id, runtime_args)
        return JobResult(result.success, f"Restart: {result.message}", result.pid)

    # Status

    def status(self, job_id: str) -> JobStatus:
        """Get a job's status, reaping its process if it has exited.

        A dead process is classified STOPPED (exit 0) or ERROR and removed
        from the registry; the next query reports STOPPED. Never raises.
        """
        try:
            with self._registry_lock:
                handle = self._processes.get(job_id)
            if handle is None:
                return JobStatus.STOPPED
            if handle.is_running():
                return JobStatus.RUNNING
            return self._finalize_job(job_id, handle)
        except Exception as e:
            logger.warning(f"Status check failed for job '{job_id}': {e}")
            return JobStatus.STOPPED

    def _finalize_job(self, job_id: str, handle: ProcessHandle) -> JobStatus:
        """Record the exit of a process nobody stopped."""
        exit_code = handle.returncode
        status = JobStatus.STOPPED if exit_code == 0 else JobStatus.ERROR

        if self._deregister(job_id, handle):
            self._set_state(
                job_id,
                status=JobStatus.STOPPED,
                last_exit_code=exit_code,
                last_error=None if exit_code == 0 else f"Exited with code {exit_code}",
            )
            if status == JobStatus.ERROR:
                logger.warning(f"Job '{job_id}' failed (exit code: {exit_code})")
            else:
                logger.info(f"Job '{job_id}' completed")
        return status

    def refresh_all_statuses(self) -> dict[str, JobStatus]:
        """Query the status of every configured or registered job."""
        job_ids = [job.id for job in self.store.list_jobs()]
        job_ids.extend(job_id for job_id in self.get_handles() if job_id not in job_ids)
        return {job_id: self.status(job_id) for job_id in job_ids}

    def wait(self, job_id: str, timeout: float | None = None) -> int | None:
        """Wait for a job to exit and return its exit code.

        Returns:
            Exit code, or None if the job isn't registered or the wait timed out
        """
        with self._registry_lock:
            handle = self._processes.get(job_id)
        if handle is None:
            return None

        try:
            exit_code = handle.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

        if handle.capture:
            handle.capture.join(timeout=2.0)
        self._finalize_job(job_id, handle)
        return exit_code

    # Logs

    def log_lines(self, job_id: str, last_n: int | None = None) -> list[str]:
        """Get the last N log lines, from memory if buffered, else from the file."""
        with self._registry_lock:
            buffer = self._buffers.get(job_id)
        if buffer is not None:
            return buffer.lines(last_n)

        try:
            return read_log_file(self.get_log_path(job_id), last_n)
        except LogIOError as e:
            logger.warning(str(e))
            return []

    def logs(self, job_id: str, last_n: int | None = None) -> str:
        """Get the last N log lines as text (all lines if N is unset or <= 0)."""
        return "".join(f"{line}\n" for line in self.log_lines(job_id, last_n))

    def clear_logs(self, job_id: str) -> JobResult:
        """Empty the in-memory log buffer. The log file is kept."""
        with self._registry_lock:
            buffer = self._buffers.get(job_id)
        if buffer is not None:
            buffer.clear()
        return JobResult(True, f"Logs cleared for job: {job_id}")

    # Bulk operations

    def start_all(self) -> dict[str, Any]:
        """Start every enabled continuous job."""
        started: list[str] = []
        failed: list[str] = []
        for job in self.store.list_jobs():
            if not job.enabled or job.type != JobType.CONTINUOUS:
                continue
            result = self.start(job.id)
            if result.success:
                started.append(job.id)
            else:
                failed.append(f"{job.id}: {result.message}")

        return {"success": not failed, "started": started, "failed": failed}

    def stop_all(self) -> dict[str, JobResult]:
        """Stop every registered job."""
        job_ids = list(self.get_handles())
        if job_ids:
            logger.info(f"Stopping {len(job_ids)} running jobs...")
        return {job_id: self.stop(job_id) for job_id in job_ids}

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Run a supervisor call on the background worker pool."""
        future = self._executor.submit(fn, *args, **kwargs)
        with self._registry_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_future)
        return future

    def _discard_future(self, future: Future) -> None:
        with self._registry_lock:
            self._pending.discard(future)

    def shutdown(self, drain_timeout: float = DEFAULT_DRAIN_TIMEOUT) -> None:
        """Stop all jobs and release the worker pool.

        Background work gets ``drain_timeout`` seconds to finish before the
        remaining queued tasks are cancelled.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        logger.info("Shutting down supervisor")
        self.stop_all()

        with self._registry_lock:
            pending = list(self._pending)
        if pending:
            _, not_done = wait_futures(pending, timeout=drain_timeout)
            if not_done:
                logger.warning(f"Cancelling {len(not_done)} background tasks still pending")

        self._executor.shutdown(wait=False, cancel_futures=True)

        if self.get_handles():
            self.stop_all()
        self._exit_hook.uninstall()
        logger.info("Supervisor stopped")

    @property
    def is_closed(self) -> bool:
        return self._closed

    # Query surface

    def job_info(self, job_id: str) -> dict | None:
        """Get a job's definition merged with its runtime state."""
        job = self.store.get_job(job_id)
        if not job:
            return None

        status = self.status(job_id)
        state = self.get_state(job_id)
        running = status == JobStatus.RUNNING

        uptime_seconds = None
        if running and state.started_at:
            uptime_seconds = (self._clock() - state.started_at).total_seconds()

        cpu_percent = None
        memory_mb = None
        if running and state.pid:
            try:
                proc = psutil.Process(state.pid)
                cpu_percent = proc.cpu_percent()
                memory_mb = proc.memory_info().rss / (1024 * 1024)
            except psutil.Error:
                pass

        return {
            "id": job.id,
            "name": job.name,
            "apps": list(job.apps),
            "entry_point": job.entry_point,
            "type": job.type.value,
            "enabled": job.enabled,
            "params": list(job.params),
            "launch_options": job.launch_options,
            "description": job.description,
            "args_required": job.args_required,
            "status": status.value,
            "pid": state.pid if running else None,
            "started_at": state.started_at.isoformat() if running and state.started_at else None,
            "uptime_seconds": uptime_seconds,
            "last_exit_code": state.last_exit_code,
            "last_error": state.last_error,
            "cpu_percent": cpu_percent,
            "memory_mb": memory_mb,
        }

    def list_jobs(self) -> list[dict]:
        """List all jobs with their current status."""
        result = []
        for job in self.store.list_jobs():
            info = self.job_info(job.id)
            if info:
                result.append(info)
        return result

    def summary(self) -> dict[str, Any]:
        """Counts of jobs per status."""
        statuses = self.refresh_all_statuses()
        counts = {status: 0 for status in JobStatus}
        for status in statuses.values():
            counts[status] += 1

        return {
            "total_jobs": len(self.store.list_jobs()),
            "running": counts[JobStatus.RUNNING],
            "stopped": counts[JobStatus.STOPPED],
            "error": counts[JobStatus.ERROR],
            "total_apps": len(self.store.list_apps()),
            "config_file": str(self.store.path),
        }
