"""HTTP client for communicating with the jobrunner daemon API."""

from __future__ import annotations

import httpx

from jobrunner.config import ConfigStore


class APIClient:
    """Client for the jobrunner daemon API."""

    def __init__(self, base_url: str | None = None, timeout: float = 30.0):
        """Initialize the API client.

        Args:
            base_url: Base URL for the API (default: from config)
            timeout: Request timeout in seconds
        """
        if base_url is None:
            daemon = ConfigStore().daemon
            base_url = f"http://{daemon.host}:{daemon.port}"

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout)
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "APIClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @staticmethod
    def _action_result(response: httpx.Response) -> dict:
        # Refused actions come back as 400 with the usual body
        if response.status_code == 400:
            return response.json()
        response.raise_for_status()
        return response.json()

    def is_daemon_running(self) -> bool:
        """Check if the daemon is running and responding."""
        try:
            response = self._get_client().get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    def health(self) -> dict:
        """Get daemon health status."""
        response = self._get_client().get("/health")
        response.raise_for_status()
        return response.json()

    def status(self) -> dict:
        """Get job counts per status."""
        response = self._get_client().get("/api/v1/status")
        response.raise_for_status()
        return response.json()

    def list_jobs(self, status: str | None = None) -> list[dict]:
        """List all jobs, optionally filtered by status."""
        params = {"status": status} if status else {}
        response = self._get_client().get("/api/v1/jobs", params=params)
        response.raise_for_status()
        return response.json()["jobs"]

    def get_job(self, job_id: str) -> dict:
        """Get job status."""
        response = self._get_client().get(f"/api/v1/jobs/{job_id}")
        response.raise_for_status()
        return response.json()

    def start_job(self, job_id: str, args: list[str] | None = None) -> dict:
        """Start a job."""
        body = {"args": args} if args else None
        response = self._get_client().post(f"/api/v1/jobs/{job_id}/start", json=body)
        return self._action_result(response)

    def stop_job(self, job_id: str) -> dict:
        """Stop a job."""
        response = self._get_client().post(f"/api/v1/jobs/{job_id}/stop")
        return self._action_result(response)

    def restart_job(self, job_id: str) -> dict:
        """Restart a job."""
        response = self._get_client().post(f"/api/v1/jobs/{job_id}/restart")
        return self._action_result(response)

    def get_logs(self, job_id: str, lines: int = 100) -> dict:
        """Get job logs."""
        response = self._get_client().get(f"/api/v1/jobs/{job_id}/logs", params={"lines": lines})
        response.raise_for_status()
        return response.json()

    def clear_logs(self, job_id: str) -> dict:
        """Clear a job's in-memory logs."""
        response = self._get_client().post(f"/api/v1/jobs/{job_id}/logs/clear")
        return self._action_result(response)

    def start_all(self) -> dict:
        """Start every enabled continuous job."""
        response = self._get_client().post("/api/v1/jobs/start-all")
        response.raise_for_status()
        return response.json()

    def stop_all(self) -> dict:
        """Stop every running job."""
        response = self._get_client().post("/api/v1/jobs/stop-all")
        response.raise_for_status()
        return response.json()

    def reload_config(self) -> dict:
        """Reload jobs configuration."""
        response = self._get_client().post("/api/v1/config/reload")
        response.raise_for_status()
        return response.json()
