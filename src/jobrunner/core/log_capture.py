"""Per-job output capture: durable log file plus bounded in-memory buffer."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import IO, Callable

from loguru import logger

from jobrunner.errors import LogIOError

DEFAULT_BUFFER_MAX_CHARS = 500_000
DEFAULT_BUFFER_TRIM_CHARS = 100_000

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_line(line: str, timestamp: datetime) -> str:
    """Prefix a captured line with its second-precision timestamp."""
    return f"{timestamp.strftime(TIMESTAMP_FORMAT)} {line}"


def get_log_path(logs_dir: Path, job_id: str) -> Path:
    """Get the log file path for a job."""
    return logs_dir / f"{job_id}.log"


def tail(lines: list[str], last_n: int | None) -> list[str]:
    """Return the last N lines, or all of them when N is unset or <= 0."""
    if not last_n or last_n <= 0:
        return lines
    return lines[-last_n:]


def read_log_file(path: Path, last_n: int | None = None) -> list[str]:
    """Read the trailing lines of a job log file.

    Args:
        path: Log file path
        last_n: Number of trailing lines (all lines if unset or <= 0)

    Returns:
        Lines without their newline; empty if the file doesn't exist

    Raises:
        LogIOError: If the file exists but can't be read
    """
    if not path.exists():
        return []

    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            if last_n and last_n > 0:
                lines = deque(f, maxlen=last_n)
            else:
                lines = f.readlines()
    except OSError as e:
        raise LogIOError(f"Error reading log file {path}: {e}") from e

    return [line.rstrip("\n") for line in lines]


class LogBuffer:
    """Bounded in-memory log for one job.

    Holds formatted lines. When the total size passes ``max_chars`` the
    oldest lines are dropped in a single pass, at least ``trim_chars`` worth
    and until the total is back under the cap.
    """

    def __init__(
        self,
        max_chars: int = DEFAULT_BUFFER_MAX_CHARS,
        trim_chars: int = DEFAULT_BUFFER_TRIM_CHARS,
    ):
        if trim_chars <= 0 or trim_chars > max_chars:
            raise ValueError("trim_chars must be in (0, max_chars]")
        self.max_chars = max_chars
        self.trim_chars = trim_chars
        self._lines: deque[str] = deque()
        self._size = 0
        self._lock = Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
            self._size += len(line) + 1  # Newline
            if self._size > self.max_chars:
                self._trim()

    def _trim(self) -> None:
        removed = 0
        while self._lines and (removed < self.trim_chars or self._size > self.max_chars):
            old = self._lines.popleft()
            self._size -= len(old) + 1
            removed += len(old) + 1

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()
            self._size = 0

    def lines(self, last_n: int | None = None) -> list[str]:
        """Get the last N lines (all lines if unset or <= 0)."""
        with self._lock:
            if last_n and last_n > 0:
                start = max(0, len(self._lines) - last_n)
                return [self._lines[i] for i in range(start, len(self._lines))]
            return list(self._lines)

    @property
    def size(self) -> int:
        """Total buffered characters, newlines included."""
        return self._size

    def __len__(self) -> int:
        return len(self._lines)


class LogCapture:
    """Streams one process's merged output to its log file and buffer.

    Runs on a dedicated daemon thread for the lifetime of the process. The
    thread ends at end of stream, or after ``cancel()`` once the next line
    (or EOF) arrives.
    """

    def __init__(
        self,
        job_id: str,
        stream: IO,
        log_path: Path,
        buffer: LogBuffer,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the capture.

        Args:
            job_id: Job the output belongs to
            stream: Process stdout (stderr merged into it), bytes or text
            log_path: Append-only log file
            buffer: In-memory buffer to fill
            clock: Timestamp source
        """
        self.job_id = job_id
        self.log_path = log_path
        self.buffer = buffer
        self.lines_captured = 0
        self._stream = stream
        self._clock = clock
        self._cancelled = threading.Event()
        self._thread: threading.Thread | None = None
        self._file: IO[str] | None = None

    def start(self) -> None:
        """Start the capture thread."""
        self._thread = threading.Thread(
            target=self._run,
            name=f"log-capture-{self.job_id}",
            daemon=True,
        )
        self._thread.start()

    def cancel(self) -> None:
        """Signal the capture thread to stop."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the capture thread. Returns True if it has finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _open_file(self) -> IO[str] | None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            return open(self.log_path, "a", encoding="utf-8")
        except OSError as e:
            logger.warning(f"Cannot open log file for job '{self.job_id}', logging to memory only: {e}")
            return None

    def _run(self) -> None:
        self._file = self._open_file()
        try:
            while True:
                raw = self._stream.readline()
                if not raw or self._cancelled.is_set():
                    break
                self._handle_line(raw)
        except (OSError, ValueError) as e:
            # Stream closed under us; only worth reporting if nobody asked us to stop
            if not self._cancelled.is_set():
                logger.warning(f"Error reading output of job '{self.job_id}': {e}")
        finally:
            self._close()
            logger.debug(f"Log capture for job '{self.job_id}' finished ({self.lines_captured} lines)")

    def _handle_line(self, raw: bytes | str) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        line = format_line(raw.rstrip("\r\n"), self._clock())

        if self._file is not None:
            try:
                self._file.write(line + "\n")
                self._file.flush()
            except OSError as e:
                logger.warning(f"Error writing log file for job '{self.job_id}', logging to memory only: {e}")
                self._close_file()

        self.buffer.append(line)
        self.lines_captured += 1

    def _close_file(self) -> None:
        if self._file is None:
            return
        try:
            self._file.close()
        except OSError as e:
            logger.debug(f"Error closing log file for job '{self.job_id}': {e}")
        self._file = None

    def _close(self) -> None:
        self._close_file()
        try:
            self._stream.close()
        except (OSError, ValueError):
            pass
