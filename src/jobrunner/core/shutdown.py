"""Host-exit safety net for supervised processes."""

from __future__ import annotations

import atexit
from threading import Lock
from typing import TYPE_CHECKING, Callable

from loguru import logger

if TYPE_CHECKING:
    from jobrunner.core.supervisor import ProcessHandle


class ShutdownCoordinator:
    """Force-kills every registered process when the interpreter exits.

    This is the last line of defense when ``Supervisor.shutdown()`` was never
    called. The hook is registered at most once per coordinator.
    """

    def __init__(self, get_handles: Callable[[], dict[str, "ProcessHandle"]]):
        """Initialize the coordinator.

        Args:
            get_handles: Returns a snapshot of job_id -> process handle
        """
        self._get_handles = get_handles
        self._lock = Lock()
        self._installed = False

    def install(self) -> bool:
        """Register the exit hook. Returns False if it was already registered."""
        with self._lock:
            if self._installed:
                return False
            atexit.register(self.trigger)
            self._installed = True
        logger.debug("Exit hook installed")
        return True

    def uninstall(self) -> bool:
        """Drop the exit hook so the coordinator can be garbage collected."""
        with self._lock:
            if not self._installed:
                return False
            atexit.unregister(self.trigger)
            self._installed = False
        logger.debug("Exit hook removed")
        return True

    @property
    def installed(self) -> bool:
        return self._installed

    def trigger(self) -> int:
        """Kill every still-running registered process.

        Per-job failures are logged and skipped.

        Returns:
            Number of processes killed
        """
        handles = self._get_handles()
        if not handles:
            return 0

        logger.info(f"Host exit detected, killing {len(handles)} job processes...")
        killed = 0
        for job_id, handle in handles.items():
            try:
                if handle.is_running():
                    logger.info(f"Killing job process: {job_id} (PID: {handle.pid})")
                    handle.kill()
                    killed += 1
            except Exception as e:
                logger.warning(f"Error killing job '{job_id}': {e}")
        return killed
