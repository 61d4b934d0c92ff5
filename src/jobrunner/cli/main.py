"""jobrunner CLI application."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import httpx
import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from jobrunner import __version__
from jobrunner.cli.client import APIClient
from jobrunner.config import ConfigStore, create_default_config, default_config_path
from jobrunner.core.log_capture import get_log_path, read_log_file
from jobrunner.errors import ConfigError, LogIOError

# Initialize
app = typer.Typer(
    name="jobrunner",
    help="jobrunner - supervise long-running and on-demand jobs",
    no_args_is_help=True,
)
console = Console()

LOG_FORMAT = "<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"

    # Console logging
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level,
        colorize=True,
    )

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} - {message}",
            level=level,
            rotation="10 MB",
            retention="7 days",
        )


def load_store(config: Path | None) -> ConfigStore:
    """Load the config file, exiting with a message if it is invalid."""
    try:
        return ConfigStore(path=config)
    except (ConfigError, OSError) as e:
        console.print(f"[red]✗ Configuration error: {e}[/red]")
        raise typer.Exit(1)


def get_client() -> APIClient:
    """Get a client for a running daemon, or exit."""
    client = APIClient()
    if not client.is_daemon_running():
        client.close()
        console.print("[red]Daemon not running. Start with: jobrunner serve[/red]")
        raise typer.Exit(1)
    return client


def format_status(status: str, enabled: bool = True) -> str:
    if not enabled:
        return "[dim]disabled[/dim]"
    if status == "running":
        return f"[green]{status}[/green]"
    if status == "error":
        return f"[red]{status}[/red]"
    return f"[dim]{status}[/dim]"


def print_result(result: dict) -> None:
    """Print an action result and exit non-zero if it failed."""
    if result.get("success"):
        console.print(f"[green]✓ {result['message']}[/green]")
        if result.get("pid"):
            console.print(f"[dim]PID: {result['pid']}[/dim]")
    else:
        console.print(f"[red]✗ {result.get('message', 'Request failed')}[/red]")
        raise typer.Exit(1)


# ============================================================================
# Daemon Commands
# ============================================================================


@app.command("serve")
def serve(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: from config)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default: from config)"),
    autostart: bool = typer.Option(False, "--autostart", help="Start all continuous jobs on startup"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run the supervisor and its HTTP API in the foreground."""
    from jobrunner.api.server import run_server
    from jobrunner.core.supervisor import Supervisor

    setup_logging(verbose)
    store = load_store(config)
    logs_dir = store.global_settings.get_logs_dir()
    setup_logging(verbose, log_file=logs_dir / "jobrunner.log")

    supervisor = Supervisor(store)

    if autostart:
        result = supervisor.start_all()
        for job_id in result["started"]:
            logger.info(f"Autostarted job '{job_id}'")
        for failure in result["failed"]:
            logger.warning(f"Autostart failed: {failure}")

    host = host or store.daemon.host
    port = port or store.daemon.port
    console.print(f"[blue]jobrunner v{__version__} listening on http://{host}:{port}[/blue]")

    try:
        asyncio.run(run_server(supervisor, host, port))
    except KeyboardInterrupt:
        pass
    finally:
        supervisor.shutdown()


@app.command("run")
def run_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    args: Optional[List[str]] = typer.Argument(None, help="Runtime arguments"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    lines: int = typer.Option(0, "--lines", "-n", help="Output lines to show (0 for all)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run a job in the foreground and exit with its exit code."""
    from jobrunner.core.supervisor import Supervisor

    setup_logging(verbose)
    store = load_store(config)
    supervisor = Supervisor(store)

    result = supervisor.start(job_id, args or None)
    if not result:
        supervisor.shutdown()
        console.print(f"[red]✗ {result.message}[/red]")
        raise typer.Exit(1)

    console.print(f"[dim]Started job '{job_id}' (PID: {result.pid}), waiting...[/dim]")
    try:
        exit_code = supervisor.wait(job_id)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, stopping job...[/yellow]")
        supervisor.stop(job_id)
        exit_code = 130

    output = supervisor.logs(job_id, lines)
    supervisor.shutdown()

    if output:
        console.print(output, end="", markup=False, highlight=False, soft_wrap=True)

    if exit_code == 0:
        console.print("[green]✓ Job completed successfully[/green]")
        return
    console.print(f"[red]✗ Job failed (exit code: {exit_code})[/red]")
    raise typer.Exit(exit_code if exit_code is not None else 1)


# ============================================================================
# Job Commands
# ============================================================================


@app.command("list")
def list_jobs(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
) -> None:
    """List all jobs with their status."""
    jobs_data = None
    with APIClient() as client:
        if client.is_daemon_running():
            jobs_data = client.list_jobs(status=status)

    table = Table(title="Jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Type")
    table.add_column("Apps")
    table.add_column("Status")
    table.add_column("PID", justify="right")

    if jobs_data is None:
        # No daemon: show definitions only
        store = load_store(None)
        if not store.list_jobs():
            console.print("[yellow]No jobs configured[/yellow]")
            console.print(f"Add jobs to: {store.path}")
            return
        for job in store.list_jobs():
            table.add_row(job.id, job.type.value, ", ".join(job.apps) or "-", format_status("-", job.enabled), "-")
        console.print(table)
        console.print("[dim]Daemon not running, live status unavailable[/dim]")
        return

    if not jobs_data:
        console.print("[yellow]No jobs match the filter[/yellow]")
        return

    for job in jobs_data:
        table.add_row(
            job["id"],
            job["type"],
            ", ".join(job.get("apps", [])) or "-",
            format_status(job["status"], job["enabled"]),
            str(job["pid"]) if job.get("pid") else "-",
        )
    console.print(table)


@app.command("status")
def job_status(
    job_id: Optional[str] = typer.Argument(None, help="Job ID (omit for a summary)"),
) -> None:
    """Show detailed status of a job, or a summary of all jobs."""
    with get_client() as client:
        if job_id is None:
            summary = client.status()
            console.print(
                f"Jobs: {summary['total_jobs']}  "
                f"[green]running: {summary['running']}[/green]  "
                f"stopped: {summary['stopped']}  "
                f"[red]error: {summary['error']}[/red]"
            )
            console.print(f"[dim]Apps: {summary['total_apps']}  Config: {summary['config_file']}[/dim]")
            return

        try:
            job = client.get_job(job_id)
        except httpx.HTTPStatusError:
            console.print(f"[red]Job '{job_id}' not found[/red]")
            raise typer.Exit(1)

    table = Table(title=job_id, show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Name", job["name"])
    table.add_row("Description", job["description"] or "-")
    table.add_row("Type", job["type"])
    table.add_row("Apps", ", ".join(job["apps"]) or "-")
    table.add_row("Entry Point", job["entry_point"])
    table.add_row("Enabled", "✓" if job["enabled"] else "✗")
    table.add_row("Status", format_status(job["status"]))

    if job.get("pid"):
        table.add_row("PID", str(job["pid"]))
    if job.get("started_at"):
        table.add_row("Started", job["started_at"][:19].replace("T", " "))
    if job.get("uptime_seconds") is not None:
        table.add_row("Uptime", f"{job['uptime_seconds']:.0f}s")
    if job.get("memory_mb") is not None:
        table.add_row("Memory", f"{job['memory_mb']:.1f} MB")
    if job.get("last_exit_code") is not None:
        table.add_row("Last Exit Code", str(job["last_exit_code"]))
    if job.get("last_error"):
        table.add_row("Last Error", f"[red]{job['last_error']}[/red]")

    console.print(table)


@app.command("start")
def start_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    args: Optional[List[str]] = typer.Argument(None, help="Runtime arguments"),
) -> None:
    """Start a job on the daemon."""
    with get_client() as client:
        result = client.start_job(job_id, args or None)
    print_result(result)


@app.command("stop")
def stop_job(
    job_id: str = typer.Argument(..., help="Job ID"),
) -> None:
    """Stop a running job."""
    with get_client() as client:
        result = client.stop_job(job_id)
    print_result(result)


@app.command("restart")
def restart_job(
    job_id: str = typer.Argument(..., help="Job ID"),
) -> None:
    """Restart a job."""
    with get_client() as client:
        result = client.restart_job(job_id)
    print_result(result)


@app.command("logs")
def job_logs(
    job_id: str = typer.Argument(..., help="Job ID"),
    lines: int = typer.Option(100, "--lines", "-n", help="Number of lines to show (0 for all)"),
) -> None:
    """Show job logs."""
    text = None
    with APIClient() as client:
        if client.is_daemon_running():
            text = client.get_logs(job_id, lines)["logs"]

    if text is None:
        # No daemon: read the log file directly
        store = load_store(None)
        log_file = get_log_path(store.global_settings.get_logs_dir(), job_id)
        try:
            text = "".join(f"{line}\n" for line in read_log_file(log_file, lines))
        except LogIOError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)

    if not text:
        console.print(f"[yellow]No logs for job '{job_id}'[/yellow]")
        return
    console.print(text, end="", markup=False, highlight=False, soft_wrap=True)


@app.command("clear-logs")
def clear_logs(
    job_id: str = typer.Argument(..., help="Job ID"),
) -> None:
    """Clear a job's in-memory logs. The log file is kept."""
    with get_client() as client:
        result = client.clear_logs(job_id)
    print_result(result)


@app.command("start-all")
def start_all() -> None:
    """Start every enabled continuous job."""
    with get_client() as client:
        result = client.start_all()

    for job_id in result["started"]:
        console.print(f"[green]✓ Started {job_id}[/green]")
    for failure in result["failed"]:
        console.print(f"[red]✗ {failure}[/red]")
    if not result["started"] and not result["failed"]:
        console.print("[yellow]No continuous jobs to start[/yellow]")
    if result["failed"]:
        raise typer.Exit(1)


@app.command("stop-all")
def stop_all() -> None:
    """Stop every running job."""
    with get_client() as client:
        result = client.stop_all()
    print_result(result)


# ============================================================================
# Config Commands
# ============================================================================


@app.command("config")
def show_config(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    validate: bool = typer.Option(False, "--validate", help="Validate configuration"),
) -> None:
    """Show or validate configuration."""
    store = load_store(config)

    if validate:
        console.print("[green]✓ Configuration is valid[/green]")
        console.print(f"  {len(store.list_jobs())} jobs, {len(store.list_apps())} apps configured")
        for app_def in store.list_apps():
            if not app_def.is_valid():
                console.print(f"[yellow]  App '{app_def.id}' has no classes directory at {app_def.classes_path}[/yellow]")
        return

    settings = store.global_settings
    console.print(f"[dim]Config file:[/dim] {store.path}")
    console.print(f"[dim]Executable:[/dim] {settings.get_executable()}")
    console.print(f"[dim]Launch options:[/dim] {settings.launch_options}")
    console.print(f"[dim]Config dir:[/dim] {settings.config_dir}")
    console.print(f"[dim]Logs dir:[/dim] {settings.get_logs_dir()}")

    if store.list_apps():
        console.print("\n[dim]Apps:[/dim]")
        for app_def in store.list_apps():
            console.print(f"  - {app_def.id}: {app_def.base_path}")

    if store.list_jobs():
        console.print("\n[dim]Jobs:[/dim]")
        for job in store.list_jobs():
            console.print(f"  - {job.id} ({job.type.value})")


@app.command("init")
def init_config(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Initialize jobrunner configuration."""
    path = config or default_config_path()
    if path.exists():
        console.print(f"[yellow]Configuration already exists at {path}[/yellow]")
        return
    create_default_config(path)
    console.print(f"[green]✓ Created configuration at {path}[/green]")
    console.print("\nAdd apps and jobs to it, then run: jobrunner serve")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"jobrunner v{__version__}")


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
