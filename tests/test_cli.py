# tests/test_cli.py
import pytest

from sluice_core import __version__
from sluice_core.cli import app
from sluice_core.connectors.memory import MemorySource


@pytest.fixture
def service(make_service, add_dataset, make_rows, monkeypatch):
    add_dataset()
    service = make_service(MemorySource(rows=make_rows(5)))
    monkeypatch.setattr("sluice_core.cli.build_service", lambda config_file=None: service)
    return service


def test_version(cli_runner):
    result = cli_runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_trigger_and_duplicate(cli_runner, service):
    first = cli_runner.invoke(app, ["trigger", "10"])
    second = cli_runner.invoke(app, ["trigger", "10", "--type", "full"])

    assert first.exit_code == 0
    assert "Job 1 queued (manual_sync)" in first.stdout
    assert second.exit_code == 1
    assert "already has an active job" in second.stdout


def test_trigger_requires_dataset_or_all(cli_runner, service):
    result = cli_runner.invoke(app, ["trigger"])
    assert result.exit_code == 2


def test_trigger_all(cli_runner, service):
    result = cli_runner.invoke(app, ["trigger", "--all"])
    assert result.exit_code == 0
    assert "1 job(s) queued" in result.stdout


def test_trigger_invalid_configuration(cli_runner, service, add_dataset):
    add_dataset(id=11, target_table="b", sync_strategy="id")
    result = cli_runner.invoke(app, ["trigger", "11"])
    assert result.exit_code == 1
    assert "reference_column" in result.stdout


def test_trigger_missing_sync_ranges(cli_runner, service):
    result = cli_runner.invoke(app, ["trigger", "10", "-t", "missing_sync", "--range", "10-20", "--range", "40-40"])

    assert result.exit_code == 0
    assert "queued (missing_sync)" in result.stdout
    job = service.get_job(1)
    assert job.ranges == [{"start": 10, "end": 20}, {"start": 40, "end": 40}]


def test_trigger_new_records_after_id(cli_runner, service):
    result = cli_runner.invoke(app, ["trigger", "10", "-t", "new", "--after-id", "500", "--limit", "100"])

    assert result.exit_code == 0
    job = service.get_job(1)
    assert (job.action.value, job.after_id, job.row_limit) == ("new_records_sync", 500, 100)


def test_trigger_invalid_range(cli_runner, service):
    result = cli_runner.invoke(app, ["trigger", "10", "-t", "missing", "--range", "ten-20"])

    assert result.exit_code == 2
    assert "Invalid range" in result.stdout
    assert service.list_jobs() == []


def test_cancel_pending_job(cli_runner, service):
    job = service.trigger(10)

    result = cli_runner.invoke(app, ["cancel", str(job.id)])

    assert result.exit_code == 0
    assert f"Job {job.id} cancelled" in result.stdout


def test_cancel_unknown_job(cli_runner, service):
    result = cli_runner.invoke(app, ["cancel", "404"])
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_jobs_table(cli_runner, service):
    service.trigger(10)
    service.supervisor.poll_once()

    result = cli_runner.invoke(app, ["jobs", "--dataset", "10", "--status", "completed"])

    assert result.exit_code == 0
    assert "Sync Jobs" in result.stdout
    assert "completed" in result.stdout


def test_jobs_empty(cli_runner, service):
    result = cli_runner.invoke(app, ["jobs", "--status", "failed"])
    assert "No jobs found" in result.stdout


def test_locks_list_and_clear_all(cli_runner, service):
    service.locks.acquire(10, "worker-x")

    listed = cli_runner.invoke(app, ["locks"])
    cleared = cli_runner.invoke(app, ["locks", "--clear-all"])

    assert "worker-x" in listed.stdout
    assert "Cleared 1 lock(s)" in cleared.stdout
    assert service.list_locks() == []


def test_locks_clear_missing(cli_runner, service):
    result = cli_runner.invoke(app, ["locks", "--clear", "10"])
    assert "No lock for dataset 10" in result.stdout


def test_status_when_stopped(cli_runner, service):
    result = cli_runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "stopped" in result.stdout
    assert "No stuck jobs or crash signatures" in result.stdout


def test_status_reports_dangling_lock(cli_runner, service):
    service.locks.acquire(10, "ghost")

    result = cli_runner.invoke(app, ["status"])

    assert "lock(s) held with no running job" in result.stdout
    assert "sluice locks --clear 10" in result.stdout


def test_schedule_set_and_list(cli_runner, service):
    set_result = cli_runner.invoke(app, ["schedule", "10", "1h"])
    listed = cli_runner.invoke(app, ["schedule"])

    assert set_result.exit_code == 0
    assert "0 * * * *" in set_result.stdout
    assert "Schedules" in listed.stdout


def test_schedule_invalid_interval(cli_runner, service):
    result = cli_runner.invoke(app, ["schedule", "10", "sometimes"])
    assert result.exit_code == 1
    assert "Unknown schedule interval" in result.stdout


def test_schedule_disable(cli_runner, service):
    schedule = service.update_schedule(10, "1h")
    result = cli_runner.invoke(app, ["schedule", "--disable", str(schedule.id)])
    assert f"Schedule {schedule.id} paused" in result.stdout


def test_init_db_without_database(cli_runner, service):
    result = cli_runner.invoke(app, ["init-db"])
    assert result.exit_code == 1
    assert "No database_url configured" in result.stdout
