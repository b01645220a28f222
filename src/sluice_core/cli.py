# src/sluice_core/cli.py
import typer
from pathlib import Path
from typing import List, Optional
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .errors import DuplicateJobError, SyncError
from .logging_utils import configure_logging
from .models import JobFilter, JobStatus
from .service import build_service

console = Console()
app = typer.Typer(help="Sluice Core CLI")

ConfigOption = typer.Option(None, "--config", "-c", help="Path to sluice.yml (env vars override it)")

STATUS_STYLES = {
    "pending": "yellow",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "magenta",
    "skipped": "dim",
}


def version_callback(value: bool):
    if value:
        from sluice_core import __version__
        console.print(f"Sluice Core version: {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    )
):
    """Sluice Core - relational to ClickHouse sync worker."""
    pass


def _parse_range(value: str) -> dict:
    start, sep, end = value.partition("-")
    if not sep or not start.strip().isdigit() or not end.strip().isdigit():
        console.print(f"[red]✗ Invalid range '{value}', expected START-END[/red]")
        raise typer.Exit(code=2)
    return {"start": int(start), "end": int(end)}


def _service(config_file: Optional[Path]):
    try:
        return build_service(config_file=str(config_file) if config_file else None)
    except (SyncError, ValueError, OSError) as e:
        console.print(f"[red]✗ Failed to load settings: {e}[/red]")
        raise typer.Exit(code=1)


# ======================================================================================
# COMMAND: sluice worker
# ======================================================================================
@app.command()
def worker(
    config_file: Optional[Path] = ConfigOption,
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
    cancel_on_exit: bool = typer.Option(False, "--cancel-on-exit", help="Cancel running jobs on Ctrl+C"),
):
    """Run the sync worker until interrupted."""
    configure_logging(log_level)
    service = _service(config_file)
    console.print(Panel(
        f"Worker [bold]{service.supervisor.worker_id}[/bold] starting",
        title="Sluice Worker",
        border_style="cyan",
    ))
    try:
        service.supervisor.run_forever(cancel_on_exit=cancel_on_exit)
    finally:
        service.close()


# ======================================================================================
# COMMAND: sluice trigger
# ======================================================================================
@app.command()
def trigger(
    dataset_id: Optional[int] = typer.Argument(None, help="Dataset to sync"),
    trigger_type: str = typer.Option("manual_sync", "--type", "-t",
                                     help="manual_sync, full_refresh, partial_refresh, initial_sync, "
                                          "new_records_sync or missing_sync"),
    all_datasets: bool = typer.Option(False, "--all", help="Queue every dataset"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Row cap for this job"),
    after_id: Optional[int] = typer.Option(None, "--after-id", help="new_records_sync: load ids above this one"),
    id_ranges: Optional[List[str]] = typer.Option(None, "--range", help="missing_sync: START-END, repeatable"),
    config_file: Optional[Path] = ConfigOption,
):
    """Queue a sync job."""
    service = _service(config_file)
    try:
        if all_datasets:
            result = service.trigger_all()
            console.print(f"[green][OK] {len(result['queued'])} job(s) queued[/green]")
            for skipped in result["skipped"]:
                console.print(f"[yellow]  - dataset {skipped['dataset_id']}: {skipped['reason']}[/yellow]")
            raise typer.Exit(code=0)

        if dataset_id is None:
            console.print("[red]✗ Give a dataset id or --all[/red]")
            raise typer.Exit(code=2)

        ranges = [_parse_range(r) for r in id_ranges] if id_ranges else None
        job = service.trigger(dataset_id, trigger_type, row_limit=limit, after_id=after_id, ranges=ranges)
        console.print(f"[green][OK] Job {job.id} queued ({job.action.value}) for dataset {dataset_id}[/green]")
    except DuplicateJobError as e:
        console.print(f"[yellow][WARN] {e}[/yellow]")
        raise typer.Exit(code=1)
    except SyncError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)
    finally:
        service.close()


# ======================================================================================
# COMMAND: sluice cancel
# ======================================================================================
@app.command()
def cancel(
    job_id: int = typer.Argument(..., help="Job to cancel"),
    config_file: Optional[Path] = ConfigOption,
):
    """Cancel a pending job, or ask a running job to stop at its next batch."""
    service = _service(config_file)
    try:
        job = service.cancel(job_id)
    except SyncError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)
    finally:
        service.close()

    if job.status == JobStatus.CANCELLED:
        console.print(f"[green][OK] Job {job_id} cancelled[/green]")
    else:
        console.print(f"[yellow]Cancellation requested; job {job_id} stops at its next batch[/yellow]")


# ======================================================================================
# COMMAND: sluice status
# ======================================================================================
@app.command()
def status(config_file: Optional[Path] = ConfigOption):
    """Show worker status and health warnings."""
    service = _service(config_file)
    try:
        info = service.worker_status()
        report = service.health()
    finally:
        service.close()

    worker_info = info["worker_info"]
    style = "green" if info["status"] == "running" else "yellow"
    lines = [
        f"Status: [{style}]{info['status']}[/{style}]",
        f"Worker: {info.get('worker_id') or '-'}",
        f"PID: {worker_info['pid'] or '-'}",
        f"Uptime: {worker_info['uptime'] if worker_info['uptime'] is not None else '-'}s",
        f"Last heartbeat: {info['last_heartbeat'] or '-'}",
        f"Active jobs: {', '.join(str(j) for j in info['active_jobs']) or 'none'}",
    ]
    console.print(Panel("\n".join(lines), title="Worker", border_style=style))

    for stuck in report.stuck_jobs:
        console.print(
            f"[yellow][WARN] Job {stuck.job.id} (dataset {stuck.job.dataset_id}) looks stuck: "
            f"no progress for {stuck.idle_seconds:.0f}s[/yellow]"
        )
    for crash in report.crash_signatures:
        console.print(f"[red][WARN] {crash.reason}[/red]")
        for job in crash.jobs:
            console.print(f"  job {job.id} dataset {job.dataset_id} ({job.status.value}) -> sluice cancel {job.id}")
        for lock in crash.locks:
            console.print(f"  lock dataset {lock.dataset_id} held by {lock.holder} -> sluice locks --clear {lock.dataset_id}")
    if report.healthy:
        console.print("[green][OK] No stuck jobs or crash signatures[/green]")


# ======================================================================================
# COMMAND: sluice locks
# ======================================================================================
@app.command()
def locks(
    clear: Optional[int] = typer.Option(None, "--clear", help="Clear the lock of one dataset"),
    clear_all: bool = typer.Option(False, "--clear-all", help="Clear every dataset lock"),
    config_file: Optional[Path] = ConfigOption,
):
    """List dataset locks, or clear them."""
    service = _service(config_file)
    try:
        if clear_all:
            count = service.delete_all_locks()
            console.print(f"[green][OK] Cleared {count} lock(s)[/green]")
            return
        if clear is not None:
            if service.delete_lock(clear):
                console.print(f"[green][OK] Lock for dataset {clear} cleared[/green]")
            else:
                console.print(f"[yellow][WARN] No lock for dataset {clear}[/yellow]")
            return

        held = service.list_locks()
    finally:
        service.close()

    if not held:
        console.print("[dim]No locks held.[/dim]")
        return

    table = Table(title="Dataset Locks", show_header=True, header_style="bold cyan")
    table.add_column("Dataset", style="cyan")
    table.add_column("Holder", style="magenta")
    table.add_column("Acquired", style="dim")
    table.add_column("TTL left (s)", style="yellow")
    for lock in held:
        table.add_row(
            str(lock.dataset_id),
            lock.holder,
            lock.acquired_at.isoformat(),
            str(lock.remaining_ttl) if lock.remaining_ttl is not None else "-",
        )
    console.print(table)


# ======================================================================================
# COMMAND: sluice jobs
# ======================================================================================
@app.command()
def jobs(
    dataset_id: Optional[int] = typer.Option(None, "--dataset", "-d"),
    statuses: Optional[List[JobStatus]] = typer.Option(None, "--status", "-s"),
    limit: int = typer.Option(20, "--limit", "-n"),
    config_file: Optional[Path] = ConfigOption,
):
    """Show recent jobs."""
    service = _service(config_file)
    try:
        found = service.list_jobs(JobFilter(dataset_id=dataset_id, statuses=statuses or None, limit=limit))
    finally:
        service.close()

    if not found:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Sync Jobs", show_header=True, header_style="bold cyan")
    table.add_column("Job", style="cyan")
    table.add_column("Dataset", style="cyan")
    table.add_column("Action", style="magenta")
    table.add_column("Status")
    table.add_column("Rows", style="white")
    table.add_column("Started", style="dim")
    table.add_column("Error", style="red")
    for job in found:
        color = STATUS_STYLES.get(job.status.value, "white")
        table.add_row(
            str(job.id),
            str(job.dataset_id),
            job.action.value,
            f"[{color}]{job.status.value}[/{color}]",
            f"{job.rows_processed:,}",
            job.started_at.isoformat() if job.started_at else "-",
            (job.error_message or "")[:60],
        )
    console.print(table)


# ======================================================================================
# COMMAND: sluice schedule
# ======================================================================================
@app.command()
def schedule(
    dataset_id: Optional[int] = typer.Argument(None, help="Dataset to schedule"),
    interval: Optional[str] = typer.Argument(None, help="manual, 5m, 15m, 30m, 1h, 6h, 12h, daily, daily@H or cron"),
    enable: Optional[int] = typer.Option(None, "--enable", help="Activate a schedule by id"),
    disable: Optional[int] = typer.Option(None, "--disable", help="Pause a schedule by id"),
    config_file: Optional[Path] = ConfigOption,
):
    """List schedules, set a dataset's interval, or toggle a schedule."""
    service = _service(config_file)
    try:
        if enable is not None or disable is not None:
            schedule_id = enable if enable is not None else disable
            updated = service.toggle_schedule(schedule_id, enable is not None)
            state = "active" if updated.is_active else "paused"
            console.print(f"[green][OK] Schedule {schedule_id} {state}[/green]")
            return
        if dataset_id is not None:
            if interval is None:
                console.print("[red]✗ Give an interval[/red]")
                raise typer.Exit(code=2)
            updated = service.update_schedule(dataset_id, interval)
            console.print(
                f"[green][OK] Dataset {dataset_id} schedule: {updated.interval_code} "
                f"({updated.cron_expression or 'manual'})[/green]"
            )
            return

        schedules = service.list_schedules()
    except SyncError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)
    finally:
        service.close()

    if not schedules:
        console.print("[dim]No schedules.[/dim]")
        return

    table = Table(title="Schedules", show_header=True, header_style="bold cyan")
    table.add_column("Id", style="cyan")
    table.add_column("Dataset", style="cyan")
    table.add_column("Interval", style="magenta")
    table.add_column("Cron", style="white")
    table.add_column("Active")
    table.add_column("Next run", style="dim")
    for s in schedules:
        table.add_row(
            str(s.id),
            str(s.dataset_id),
            s.interval_code,
            s.cron_expression or "-",
            "[green]yes[/green]" if s.is_active else "[yellow]no[/yellow]",
            s.next_run_at.isoformat() if s.next_run_at else "-",
        )
    console.print(table)


# ======================================================================================
# COMMAND: sluice init-db
# ======================================================================================
@app.command("init-db")
def init_db(config_file: Optional[Path] = ConfigOption):
    """Create the etl_jobs and etl_schedules tables in the metadata database."""
    service = _service(config_file)
    try:
        if not hasattr(service.store, "init_schema"):
            console.print("[yellow][WARN] No database_url configured; nothing to create[/yellow]")
            raise typer.Exit(code=1)
        service.store.init_schema()
        console.print("[green][OK] Metadata tables ready[/green]")
    except SyncError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)
    finally:
        service.close()


# ======================================================================================
# ENTRYPOINT
# ======================================================================================
if __name__ == "__main__":
    app()
