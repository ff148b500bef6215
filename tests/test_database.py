"""
Tests for database.py - SQLite-backed channel and job ledger.
"""

import pytest

from bulkwriter import database
from bulkwriter.config import CONFIG_JOB_ID, WriteOnceConfiguration, publish_job, read_job_id
from bulkwriter.coordinator import LifecycleCoordinator
from bulkwriter.database import (
    ConfigEntry,
    JobLedger,
    SqlConfiguration,
    get_session,
    init_database,
)
from bulkwriter.errors import ProtocolError, RemoteServiceError
from bulkwriter.models import JobHandle, TaskOutcome
from bulkwriter.writer import TaskWriter


class TestDatabaseInit:
    """Test database initialization."""

    def test_init_creates_database_file(self, tmp_path):
        db_path = tmp_path / "test.db"
        assert not db_path.exists()

        init_database(db_path)

        assert db_path.exists()

    def test_init_creates_parent_directories(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "test.db"
        init_database(db_path)
        assert db_path.exists()

    def test_init_creates_tables(self, tmp_path):
        db_path = tmp_path / "test.db"
        engine = init_database(db_path)

        session = get_session(engine)
        assert session.query(ConfigEntry).count() == 0
        session.close()
        engine.dispose()

    def test_store_creates_one_engine(self, tmp_path, monkeypatch):
        created = []
        real_create_engine = database.create_engine

        def counting_create_engine(*args, **kwargs):
            engine = real_create_engine(*args, **kwargs)
            created.append(engine)
            return engine

        monkeypatch.setattr(database, "create_engine", counting_create_engine)
        ledger = JobLedger(tmp_path / "state.db")
        for i in range(3):
            ledger.record_task("r1", TaskOutcome(f"t{i}", records_written=i))
        ledger.list_tasks("r1")
        ledger.get("r1")

        assert len(created) == 1
        ledger.dispose()


class TestSqlConfiguration:
    """Test the cross-process configuration channel."""

    def test_read_absent(self, tmp_path):
        conf = SqlConfiguration(tmp_path / "state.db", "r1")
        assert conf.read(CONFIG_JOB_ID) is None

    def test_visible_to_separate_instance(self, tmp_path):
        """A task opening its own channel sees what setup published."""
        db = tmp_path / "state.db"
        SqlConfiguration(db, "r1").publish(CONFIG_JOB_ID, "J1")
        assert read_job_id(SqlConfiguration(db, "r1")) == "J1"

    def test_runs_are_isolated(self, tmp_path):
        db = tmp_path / "state.db"
        SqlConfiguration(db, "r1").publish(CONFIG_JOB_ID, "J1")
        assert SqlConfiguration(db, "r2").read(CONFIG_JOB_ID) is None

    def test_write_once_over_sql(self, tmp_path):
        db = tmp_path / "state.db"
        WriteOnceConfiguration(SqlConfiguration(db, "r1")).publish(CONFIG_JOB_ID, "J1")
        with pytest.raises(ProtocolError):
            WriteOnceConfiguration(SqlConfiguration(db, "r1")).publish(CONFIG_JOB_ID, "J2")

    def test_task_writer_over_sql_channel(self, tmp_path, insert_params, fake_client):
        db = tmp_path / "state.db"
        publish_job(SqlConfiguration(db, "r1"), JobHandle("J1", insert_params))

        with TaskWriter(SqlConfiguration(db, "r1"), fake_client, "t1") as writer:
            writer.write("a\n")

        assert fake_client.batches == [("J1", ["a\n"])]


class TestJobLedger:
    """Test the job ledger."""

    @pytest.fixture
    def ledger(self, tmp_path):
        return JobLedger(tmp_path / "state.db")

    def test_record_and_get(self, ledger, upsert_params):
        ledger.record("r1", JobHandle("J1", upsert_params))

        row = ledger.get("r1")
        assert row.job_id == "J1"
        assert row.collection == "Contact"
        assert row.operation == "upsert"
        assert row.external_id_field == "External_Id__c"
        assert row.state == "Created"
        assert not row.finalized

    def test_get_missing(self, ledger):
        assert ledger.get("nope") is None

    def test_list_open(self, ledger, insert_params):
        closed = JobHandle("J1", insert_params)
        ledger.record("r1", closed)
        closed.mark_closed()
        ledger.record("r1", closed, finalized=True)
        ledger.record("r2", JobHandle("J2", insert_params), error="tasks failed: t1")

        open_jobs = ledger.list_open()
        assert [r.run_id for r in open_jobs] == ["r2"]
        assert open_jobs[0].error == "tasks failed: t1"

    def test_task_outcomes(self, ledger):
        ledger.record_task("r1", TaskOutcome("t2", records_written=5, batch_ids=["B1", "B2"]))
        ledger.record_task(
            "r1", TaskOutcome("t1", failed=True, error=RemoteServiceError("batch rejected"))
        )

        tasks = ledger.list_tasks("r1")
        assert [t.task_id for t in tasks] == ["t1", "t2"]
        assert tasks[0].failed
        assert "batch rejected" in str(tasks[0].error)
        assert tasks[1].batch_ids == ["B1", "B2"]
        assert tasks[1].records_written == 5

    def test_retried_task_overwrites(self, ledger):
        ledger.record_task("r1", TaskOutcome("t1", failed=True, error=RuntimeError("x")))
        ledger.record_task("r1", TaskOutcome("t1", records_written=3))

        tasks = ledger.list_tasks("r1")
        assert len(tasks) == 1
        assert not tasks[0].failed
        assert tasks[0].error is None

    def test_coordinator_records_lifecycle(self, ledger, fake_client, channel, insert_params):
        coordinator = LifecycleCoordinator(fake_client, channel, run_id="r1", ledger=ledger)
        handle = coordinator.setup(insert_params)
        assert ledger.get("r1").state == "Created"
        assert ledger.get("r1").verdict == "JobOpen"

        coordinator.fail(handle, "cancelled")
        row = ledger.get("r1")
        assert row.error == "cancelled"
        assert row.verdict == "Aborted(job-left-open)"
        assert [r.run_id for r in ledger.list_open()] == ["r1"]

        coordinator.abort(handle)
        row = ledger.get("r1")
        assert row.state == "Aborted"
        assert row.finalized
        assert ledger.list_open() == []
