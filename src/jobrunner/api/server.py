"""FastAPI server for the jobrunner API."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from jobrunner.errors import ConfigError

if TYPE_CHECKING:
    from jobrunner.core.supervisor import Supervisor


def get_supervisor(request: Request) -> "Supervisor":
    """Get the supervisor the app was created with."""
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(status_code=503, detail="Supervisor not initialized")
    return supervisor


# Request / Response Models
class HealthResponse(BaseModel):
    status: str
    version: str
    jobs_running: int = 0
    jobs_total: int = 0


class StatusResponse(BaseModel):
    total_jobs: int
    running: int
    stopped: int
    error: int
    total_apps: int
    config_file: str


class JobSummary(BaseModel):
    id: str
    name: str
    apps: list[str] = []
    entry_point: str
    type: str
    enabled: bool
    status: str
    pid: int | None = None
    started_at: str | None = None
    uptime_seconds: float | None = None
    description: str = ""
    args_required: bool = False
    launch_options: str | None = None


class JobDetail(JobSummary):
    params: list[str] = []
    last_exit_code: int | None = None
    last_error: str | None = None
    cpu_percent: float | None = None
    memory_mb: float | None = None


class JobListResponse(BaseModel):
    jobs: list[JobSummary]
    total: int


class ActionResponse(BaseModel):
    success: bool
    message: str
    job_id: str | None = None
    pid: int | None = None


class StartRequest(BaseModel):
    args: list[str] | None = None


class LogsResponse(BaseModel):
    job_id: str
    logs: str
    lines: int


class BulkStartResponse(BaseModel):
    success: bool
    started: list[str]
    failed: list[str]


async def _in_worker(supervisor: "Supervisor", fn: Any, *args: Any) -> Any:
    """Run a blocking supervisor call on its worker pool."""
    return await asyncio.wrap_future(supervisor.submit(fn, *args))


def _action(result: Any, job_id: str | None = None) -> JSONResponse:
    """Render a JobResult: 200 on success, 400 otherwise."""
    body = ActionResponse(success=result.success, message=result.message, job_id=job_id, pid=result.pid)
    return JSONResponse(status_code=200 if result.success else 400, content=body.model_dump())


def _require_job(supervisor: "Supervisor", job_id: str) -> None:
    if supervisor.store.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")


# Create FastAPI app
def create_app(supervisor: "Supervisor") -> FastAPI:
    """Create the FastAPI application around a supervisor."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("API server stopping, shutting down supervisor")
        await asyncio.to_thread(supervisor.shutdown)

    app = FastAPI(
        title="jobrunner API",
        description="Start, stop and inspect supervised jobs",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.supervisor = supervisor

    # Health endpoint
    @app.get("/health", response_model=HealthResponse)
    async def health(supervisor=Depends(get_supervisor)):
        """Get daemon health status."""
        from jobrunner import __version__

        statuses = supervisor.refresh_all_statuses()
        return HealthResponse(
            status="healthy",
            version=__version__,
            jobs_running=sum(1 for s in statuses.values() if s.value == "running"),
            jobs_total=len(supervisor.store.list_jobs()),
        )

    @app.get("/api/v1/status", response_model=StatusResponse)
    async def status(supervisor=Depends(get_supervisor)):
        """Get job counts per status."""
        return StatusResponse(**supervisor.summary())

    # Jobs endpoints
    @app.get("/api/v1/jobs", response_model=JobListResponse)
    async def list_jobs(
        status: str | None = Query(None, description="Filter by status"),
        supervisor=Depends(get_supervisor),
    ):
        """List all jobs with their current status."""
        jobs = supervisor.list_jobs()
        if status:
            jobs = [j for j in jobs if j["status"] == status]
        return JobListResponse(jobs=[JobSummary(**j) for j in jobs], total=len(jobs))

    @app.post("/api/v1/jobs/start-all", response_model=BulkStartResponse)
    async def start_all(supervisor=Depends(get_supervisor)):
        """Start every enabled continuous job."""
        return BulkStartResponse(**await _in_worker(supervisor, supervisor.start_all))

    @app.post("/api/v1/jobs/stop-all", response_model=ActionResponse)
    async def stop_all(supervisor=Depends(get_supervisor)):
        """Stop every running job."""
        stopped = await _in_worker(supervisor, supervisor.stop_all)
        return ActionResponse(success=True, message=f"All jobs stopped ({len(stopped)})")

    @app.get("/api/v1/jobs/{job_id}", response_model=JobDetail)
    async def get_job(job_id: str, supervisor=Depends(get_supervisor)):
        """Get detailed status of a job."""
        info = supervisor.job_info(job_id)
        if info is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        return JobDetail(**info)

    @app.post("/api/v1/jobs/{job_id}/start", response_model=ActionResponse)
    async def start_job(
        job_id: str,
        body: StartRequest | None = None,
        supervisor=Depends(get_supervisor),
    ):
        """Start a job, optionally with runtime arguments."""
        _require_job(supervisor, job_id)
        args = body.args if body and body.args else None
        result = await _in_worker(supervisor, supervisor.start, job_id, args)
        return _action(result, job_id)

    @app.post("/api/v1/jobs/{job_id}/stop", response_model=ActionResponse)
    async def stop_job(job_id: str, supervisor=Depends(get_supervisor)):
        """Stop a running job."""
        _require_job(supervisor, job_id)
        result = await _in_worker(supervisor, supervisor.stop, job_id)
        return _action(result, job_id)

    @app.post("/api/v1/jobs/{job_id}/restart", response_model=ActionResponse)
    async def restart_job(job_id: str, supervisor=Depends(get_supervisor)):
        """Restart a job."""
        _require_job(supervisor, job_id)
        result = await _in_worker(supervisor, supervisor.restart, job_id)
        return _action(result, job_id)

    @app.get("/api/v1/jobs/{job_id}/logs", response_model=LogsResponse)
    async def get_logs(
        job_id: str,
        lines: int = Query(100, description="Number of lines, <= 0 for all"),
        supervisor=Depends(get_supervisor),
    ):
        """Get the last lines of a job's log."""
        return LogsResponse(job_id=job_id, logs=supervisor.logs(job_id, lines), lines=lines)

    @app.post("/api/v1/jobs/{job_id}/logs/clear", response_model=ActionResponse)
    async def clear_logs(job_id: str, supervisor=Depends(get_supervisor)):
        """Clear a job's in-memory log buffer."""
        return _action(supervisor.clear_logs(job_id), job_id)

    # Job definitions
    @app.post("/api/v1/jobs")
    async def create_job(job: dict, supervisor=Depends(get_supervisor)):
        """Add a job to the configuration."""
        try:
            created = supervisor.store.create_job(job)
        except (ConfigError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True, "message": f"Job created: {created.id}", "job": created.model_dump(mode="json")}

    @app.put("/api/v1/jobs/{job_id}")
    async def update_job(job_id: str, updates: dict, supervisor=Depends(get_supervisor)):
        """Update a job definition. Takes effect on the next start."""
        _require_job(supervisor, job_id)
        try:
            updated = supervisor.store.update_job(job_id, updates)
        except (ConfigError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True, "message": f"Job updated: {job_id}", "job": updated.model_dump(mode="json")}

    @app.delete("/api/v1/jobs/{job_id}")
    async def delete_job(job_id: str, supervisor=Depends(get_supervisor)):
        """Delete a job, stopping it first if it is running."""
        _require_job(supervisor, job_id)
        if supervisor.is_job_running(job_id):
            await _in_worker(supervisor, supervisor.stop, job_id)
        supervisor.store.delete_job(job_id)
        return {"success": True, "message": f"Job deleted: {job_id}"}

    # Apps
    @app.get("/api/v1/apps")
    async def list_apps(supervisor=Depends(get_supervisor)):
        """List configured apps."""
        return [
            {**app.model_dump(mode="json"), "valid": app.is_valid()}
            for app in supervisor.store.list_apps()
        ]

    @app.post("/api/v1/apps")
    async def create_app_def(app_data: dict, supervisor=Depends(get_supervisor)):
        """Add an app to the configuration."""
        try:
            created = supervisor.store.create_app(app_data)
        except (ConfigError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True, "message": f"App created: {created.id}"}

    @app.put("/api/v1/apps/{app_id}")
    async def update_app_def(app_id: str, updates: dict, supervisor=Depends(get_supervisor)):
        try:
            supervisor.store.update_app(app_id, updates)
        except ConfigError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True, "message": f"App updated: {app_id}"}

    @app.delete("/api/v1/apps/{app_id}")
    async def delete_app_def(app_id: str, supervisor=Depends(get_supervisor)):
        try:
            deleted = supervisor.store.delete_app(app_id)
        except ConfigError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if not deleted:
            raise HTTPException(status_code=404, detail=f"App not found: {app_id}")
        return {"success": True, "message": f"App deleted: {app_id}"}

    # Config
    @app.get("/api/v1/config")
    async def get_config(supervisor=Depends(get_supervisor)):
        """Get the full configuration."""
        return supervisor.store.config.to_yaml_dict()

    @app.put("/api/v1/config/global")
    async def update_global(updates: dict, supervisor=Depends(get_supervisor)):
        """Update global settings."""
        try:
            settings = supervisor.store.update_global(updates)
        except (ConfigError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return settings.model_dump(mode="json")

    @app.post("/api/v1/config/reload", response_model=ActionResponse)
    async def reload_config(supervisor=Depends(get_supervisor)):
        """Re-read the configuration file."""
        try:
            supervisor.store.reload()
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return ActionResponse(success=True, message="Configuration reloaded")

    return app


async def run_server(supervisor: "Supervisor", host: str = "127.0.0.1", port: int = 9877) -> None:
    """Run the API server until it is asked to exit."""
    import uvicorn

    app = create_app(supervisor)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",  # Reduce uvicorn noise
    )
    server = uvicorn.Server(config)
    await server.serve()
