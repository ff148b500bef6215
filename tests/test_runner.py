"""
End-to-end runs through the local driver.
"""

import pytest

from bulkwriter.config import MemoryConfiguration
from bulkwriter.coordinator import CoordinatorState, LifecycleCoordinator
from bulkwriter.database import JobLedger
from bulkwriter.errors import RemoteServiceError, ValidationError
from bulkwriter.models import JobParameters, JobState, Operation
from bulkwriter.runner import run_bulk_write
from bulkwriter.writer import TaskWriter


class SharedService:
    """One fake service seen through a coordinator client and per-task clients."""

    def __init__(self, make_client, job_id="J1"):
        self.remote = make_client(job_ids=[job_id])
        self.task_clients = []

    def task_client(self):
        # Tasks share the service state (batches, call log) but get their own connection.
        client = _TaskView(self.remote)
        self.task_clients.append(client)
        return client


class _TaskView:
    def __init__(self, remote):
        self._remote = remote
        self.closed = False

    def submit_batch(self, job_id, records):
        return self._remote.submit_batch(job_id, records)

    def close(self):
        self.closed = True


def _factory(channel, service, capacity=5):
    return lambda task_id: TaskWriter(channel, service.task_client(), task_id, max_records=capacity)


def _records(prefix, n):
    return [f"{prefix},{i}\n" for i in range(n)]


class TestScenarios:
    """Walk through the reference scenarios."""

    def test_two_tasks_insert_then_commit(self, make_client):
        service = SharedService(make_client, job_id="J1")
        channel = MemoryConfiguration()
        coordinator = LifecycleCoordinator(service.remote, channel)

        report = run_bulk_write(
            coordinator,
            JobParameters("Account", Operation.INSERT),
            [_records("a", 3), _records("b", 3)],
            _factory(channel, service, capacity=5),
            max_workers=2,
        )

        assert report.committed
        assert report.handle.job_id == "J1"
        assert report.handle.state == JobState.CLOSED
        assert sorted(service.remote.call_names()) == sorted(
            ["create_job", "submit_batch", "submit_batch", "close_job"]
        )
        assert service.remote.call_names()[0] == "create_job"
        assert service.remote.call_names()[-1] == "close_job"
        assert sorted(len(batch) for _, batch in service.remote.batches) == [3, 3]
        assert all(c.closed for c in service.task_clients)
        assert report.records_written == 6

    def test_upsert_without_external_id_fails_before_any_call(self, make_client):
        service = SharedService(make_client)
        channel = MemoryConfiguration()
        coordinator = LifecycleCoordinator(service.remote, channel)

        with pytest.raises(ValidationError):
            run_bulk_write(
                coordinator,
                JobParameters("Contact", Operation.UPSERT, external_id_field=""),
                [_records("a", 3)],
                _factory(channel, service),
            )

        assert service.remote.calls == []
        assert service.task_clients == []

    def test_task_failure_blocks_commit(self, make_client):
        service = SharedService(make_client, job_id="J2")
        service.remote.fail_submit_after = 0
        channel = MemoryConfiguration()
        coordinator = LifecycleCoordinator(service.remote, channel)

        report = run_bulk_write(
            coordinator,
            JobParameters("Account", Operation.INSERT),
            [_records("a", 3)],
            _factory(channel, service),
        )

        assert not report.committed
        assert report.failed_tasks == ["task-0000"]
        assert isinstance(report.error, RemoteServiceError)
        assert "close_job" not in service.remote.call_names()
        assert "abort_job" not in service.remote.call_names()
        assert report.handle.state == JobState.CREATED
        assert service.remote.jobs["J2"] == "Open"
        assert coordinator.state == CoordinatorState.ABORTED_JOB_LEFT_OPEN


class TestRunBulkWrite:
    def test_many_partitions(self, make_client):
        service = SharedService(make_client)
        channel = MemoryConfiguration()
        coordinator = LifecycleCoordinator(service.remote, channel)
        partitions = [_records(f"p{i}", 12) for i in range(6)]

        report = run_bulk_write(
            coordinator,
            JobParameters("Account", Operation.INSERT),
            partitions,
            _factory(channel, service, capacity=5),
            max_workers=3,
        )

        assert report.committed
        submitted = sorted(r for _, batch in service.remote.batches for r in batch)
        assert submitted == sorted(r for p in partitions for r in p)
        assert len(service.remote.batches) == 6 * 3

    def test_no_partitions_leaves_job_open(self, make_client):
        service = SharedService(make_client)
        channel = MemoryConfiguration()
        coordinator = LifecycleCoordinator(service.remote, channel)

        report = run_bulk_write(
            coordinator,
            JobParameters("Account", Operation.INSERT),
            [],
            _factory(channel, service),
        )

        assert not report.committed
        assert "close_job" not in service.remote.call_names()

    def test_close_failure_reported(self, make_client):
        service = SharedService(make_client)
        service.remote.fail_close = True
        channel = MemoryConfiguration()
        coordinator = LifecycleCoordinator(service.remote, channel)

        report = run_bulk_write(
            coordinator,
            JobParameters("Account", Operation.INSERT),
            [_records("a", 2)],
            _factory(channel, service),
        )

        assert not report.committed
        assert isinstance(report.error, RemoteServiceError)
        assert service.remote.jobs["J1"] == "Open"

    def test_outcomes_recorded_in_ledger(self, make_client, tmp_path):
        service = SharedService(make_client)
        channel = MemoryConfiguration()
        ledger = JobLedger(tmp_path / "state.db")
        coordinator = LifecycleCoordinator(service.remote, channel, run_id="r1", ledger=ledger)

        run_bulk_write(
            coordinator,
            JobParameters("Account", Operation.INSERT),
            [_records("a", 2), _records("b", 4)],
            _factory(channel, service),
            ledger=ledger,
        )

        tasks = ledger.list_tasks("r1")
        assert [t.task_id for t in tasks] == ["task-0000", "task-0001"]
        assert [t.records_written for t in tasks] == [2, 4]
        record = ledger.get("r1")
        assert record.state == "Closed"
        assert record.finalized
