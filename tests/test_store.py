# tests/test_store.py
from datetime import datetime, timezone
from unittest.mock import patch

import psycopg2
import pytest

from sluice_core.config import ColumnMapping
from sluice_core.errors import ConnectionError, NotFoundError
from sluice_core.models import JobAction, JobFilter, JobStatus
from sluice_core.store import MemoryStore, PostgresStore, create_store


def test_memory_store_returns_copies(store, add_dataset):
    add_dataset()
    fetched = store.get_dataset(10)
    fetched.status_message = "changed locally"
    assert store.get_dataset(10).status_message is None


def test_missing_records_raise_not_found(store):
    with pytest.raises(NotFoundError):
        store.get_dataset(1)
    with pytest.raises(NotFoundError):
        store.get_job(1)
    with pytest.raises(NotFoundError):
        store.get_connection(99)


def test_claim_oldest_pending_once(store, add_dataset):
    add_dataset(id=10)
    add_dataset(id=11, target_table="b")
    first, created = store.enqueue_if_absent(10, JobAction.MANUAL_SYNC)
    second, _ = store.enqueue_if_absent(11, "scheduled_sync")

    assert created
    assert store.claim_next_pending("w1").id == first.id
    assert store.claim_next_pending("w2").id == second.id
    assert store.claim_next_pending("w3") is None
    assert store.get_job(first.id).worker_id == "w1"


def test_enqueue_keeps_id_parameters(store, add_dataset):
    add_dataset()
    job, _ = store.enqueue_if_absent(10, JobAction.NEW_RECORDS_SYNC, row_limit=20, after_id=7)

    stored = store.get_job(job.id)
    assert (stored.action, stored.row_limit, stored.after_id, stored.ranges) == (JobAction.NEW_RECORDS_SYNC, 20, 7, None)


def test_transition_is_guarded(store, add_dataset):
    add_dataset()
    job, _ = store.enqueue_if_absent(10, JobAction.MANUAL_SYNC)

    assert store.transition_job(job.id, [JobStatus.RUNNING], JobStatus.COMPLETED) is None
    moved = store.transition_job(job.id, [JobStatus.PENDING], JobStatus.RUNNING, worker_id="w")
    assert moved.status == JobStatus.RUNNING


def test_progress_only_moves_forward_while_running(store, add_dataset):
    add_dataset()
    job, _ = store.enqueue_if_absent(10, JobAction.MANUAL_SYNC)
    store.update_progress(job.id, 10)
    assert store.get_job(job.id).rows_processed == 0

    store.transition_job(job.id, [JobStatus.PENDING], JobStatus.RUNNING)
    store.update_progress(job.id, 10)
    store.update_progress(job.id, 5)
    assert store.get_job(job.id).rows_processed == 10
    assert store.get_job(job.id).last_progress_at is not None


def test_list_jobs_newest_first(store, add_dataset):
    add_dataset()
    ids = []
    for _ in range(3):
        job, _ = store.enqueue_if_absent(10, JobAction.MANUAL_SYNC)
        store.transition_job(job.id, [JobStatus.PENDING], JobStatus.SKIPPED)
        ids.append(job.id)

    assert [j.id for j in store.list_jobs()] == list(reversed(ids))
    assert [j.id for j in store.list_jobs(JobFilter(limit=2))] == [ids[2], ids[1]]
    assert store.active_jobs(10) == []


def test_column_mapping_set_once(store, add_dataset):
    add_dataset()
    first = ColumnMapping(columns=[{"source": "a", "target": "a", "type": "Int64"}])
    second = ColumnMapping(columns=[{"source": "b", "target": "b", "type": "String"}])

    assert store.set_column_mapping_if_absent(10, first)
    assert not store.set_column_mapping_if_absent(10, second)
    assert store.get_dataset(10).column_mapping == first


def test_create_store():
    assert isinstance(create_store(None), MemoryStore)
    assert isinstance(create_store("postgresql://etl@db/platform"), PostgresStore)


@pytest.fixture
def pg_cursor():
    with patch("sluice_core.store.psycopg2.connect") as connect:
        conn = connect.return_value
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.conn = conn
        yield cursor


def test_postgres_store_unreachable():
    with patch("sluice_core.store.psycopg2.connect",
               side_effect=psycopg2.OperationalError("connection refused password=hunter2")):
        store = PostgresStore("postgresql://etl:hunter2@db/platform")
        with pytest.raises(ConnectionError) as exc:
            store.get_job(1)

    assert "hunter2" not in str(exc.value)
    assert "SLUICE_DATABASE_URL" in str(exc.value)


def test_postgres_store_claim_uses_skip_locked(pg_cursor):
    pg_cursor.fetchone.return_value = {
        "id": 7, "dataset_id": 10, "action": "manual_sync", "status": "pending",
        "created_at": datetime(2024, 3, 15, tzinfo=timezone.utc), "rows_processed": 0, "worker_id": "w1",
    }

    job = PostgresStore("postgresql://db/platform").claim_next_pending("w1")

    query, params = pg_cursor.execute.call_args.args
    assert "FOR UPDATE SKIP LOCKED" in query
    assert params == ("w1",)
    assert job.id == 7
    assert job.action == JobAction.MANUAL_SYNC
    pg_cursor.conn.commit.assert_called_once()
    pg_cursor.conn.close.assert_called_once()


def test_postgres_store_reads_legacy_action(pg_cursor):
    pg_cursor.fetchone.return_value = {"id": 1, "dataset_id": 2, "action": "incremental_sync", "status": "completed"}
    assert PostgresStore("postgresql://db/platform").get_job(1).action == JobAction.SCHEDULED_SYNC


def test_postgres_store_enqueue_existing_job(pg_cursor):
    pending = {"id": 3, "dataset_id": 10, "action": "manual_sync", "status": "pending"}
    pg_cursor.fetchone.return_value = None
    pg_cursor.fetchall.return_value = [pending]

    job, created = PostgresStore("postgresql://db/platform").enqueue_if_absent(10, JobAction.MANUAL_SYNC)

    assert not created
    assert job.id == 3


def test_postgres_store_enqueue_persists_id_ranges(pg_cursor):
    pg_cursor.fetchone.return_value = {
        "id": 4, "dataset_id": 10, "action": "missing_sync", "status": "pending",
        "ranges": [{"start": 1, "end": 50}],
    }

    job, created = PostgresStore("postgresql://db/platform").enqueue_if_absent(
        10, JobAction.MISSING_SYNC, ranges=[{"start": 1, "end": 50}]
    )

    params = pg_cursor.execute.call_args.args[1]
    assert params[4].adapted == [{"start": 1, "end": 50}]
    assert created
    assert job.ranges == [{"start": 1, "end": 50}]


def test_postgres_store_rolls_back_on_error(pg_cursor):
    pg_cursor.execute.side_effect = psycopg2.ProgrammingError("relation does not exist")

    with pytest.raises(psycopg2.ProgrammingError):
        PostgresStore("postgresql://db/platform").get_job(1)

    pg_cursor.conn.rollback.assert_called_once()
    pg_cursor.conn.commit.assert_not_called()


def test_postgres_store_missing_dataset(pg_cursor):
    pg_cursor.fetchone.return_value = None
    with pytest.raises(NotFoundError):
        PostgresStore("postgresql://db/platform").get_dataset(5)
