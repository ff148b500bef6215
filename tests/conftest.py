"""
Pytest configuration and shared fixtures.
"""

import pytest
from typing import List, Optional, Tuple

from bulkwriter.config import MemoryConfiguration
from bulkwriter.errors import RemoteServiceError
from bulkwriter.logger import get_logger, reset_logger
from bulkwriter.models import JobParameters, Operation


class FakeRemoteJobClient:
    """
    In-memory stand-in for the bulk service.

    Records every call as a (name, args) tuple in ``calls``. Set a
    ``fail_*`` attribute to make that call raise RemoteServiceError.
    """

    def __init__(self, job_ids: Optional[List[str]] = None):
        self.calls: List[Tuple[str, tuple]] = []
        self.batches: List[Tuple[str, List[str]]] = []
        self._job_ids = list(job_ids or ["J1"])
        self.jobs = {}
        self.closed_connections = 0
        self.fail_create = False
        self.fail_close = False
        self.fail_abort = False
        self.fail_submit_after: Optional[int] = None

    def create_job(self, parameters: JobParameters) -> str:
        self.calls.append(("create_job", (parameters,)))
        if self.fail_create:
            raise RemoteServiceError("create rejected", status=400)
        job_id = self._job_ids.pop(0)
        self.jobs[job_id] = "Open"
        return job_id

    def submit_batch(self, job_id: str, records: List[str]) -> str:
        self.calls.append(("submit_batch", (job_id, list(records))))
        if self.fail_submit_after is not None and len(self.batches) >= self.fail_submit_after:
            raise RemoteServiceError("batch rejected", status=500)
        self.batches.append((job_id, list(records)))
        return f"B{len(self.batches)}"

    def close_job(self, job_id: str) -> None:
        self.calls.append(("close_job", (job_id,)))
        if self.fail_close:
            raise RemoteServiceError("close failed", status=503)
        self.jobs[job_id] = "Closed"

    def abort_job(self, job_id: str) -> None:
        self.calls.append(("abort_job", (job_id,)))
        if self.fail_abort:
            raise RemoteServiceError("abort failed", status=503)
        self.jobs[job_id] = "Aborted"

    def close(self) -> None:
        self.closed_connections += 1

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]


@pytest.fixture(autouse=True)
def quiet_logger():
    """Use a fresh global logger with no console or file output."""
    reset_logger()
    logger = get_logger(enable_file=False, enable_console=False)
    yield logger
    reset_logger()


@pytest.fixture
def fake_client() -> FakeRemoteJobClient:
    return FakeRemoteJobClient()


@pytest.fixture
def channel() -> MemoryConfiguration:
    return MemoryConfiguration()


@pytest.fixture
def insert_params() -> JobParameters:
    return JobParameters(target_collection="Account", operation=Operation.INSERT)


@pytest.fixture
def upsert_params() -> JobParameters:
    return JobParameters(
        target_collection="Contact",
        operation=Operation.UPSERT,
        external_id_field="External_Id__c",
    )


@pytest.fixture
def make_client():
    """Factory for extra fake clients (one per task, say)."""
    return FakeRemoteJobClient
