"""
Per-task batching writer.

A TaskWriter is bound to the job id setup published. It buffers encoded
records and submits them as batches under that id; it never creates or
closes the job itself.
"""

from typing import Any, Callable, Iterable, List, Optional

from .client import RemoteJobClient
from .config import ConfigurationChannel, read_job_id
from .encoding import record_size
from .errors import RemoteServiceError
from .logger import StructuredLogger, get_logger
from .models import Batch, TaskOutcome
from .settings import DEFAULT_MAX_BYTES, DEFAULT_MAX_RECORDS


def _identity(record: Any) -> str:
    return record


class TaskWriter:
    """
    Buffers records for one task and flushes them as batches.

    A flush happens when the buffer holds ``max_records`` records, or before
    a record that would push the buffer past ``max_bytes``. A single record
    always lands in exactly one batch.

    Raises:
        ConfigurationMissingError: on construction, if no job id was published
    """

    def __init__(
        self,
        channel: ConfigurationChannel,
        client: RemoteJobClient,
        task_id: str,
        max_records: int = DEFAULT_MAX_RECORDS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        encoder: Optional[Callable[[Any], str]] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        if max_records <= 0 or max_bytes <= 0:
            raise ValueError("max_records and max_bytes must be positive")
        self.job_id = read_job_id(channel)
        self.task_id = task_id
        self.max_records = max_records
        self.max_bytes = max_bytes
        self._client = client
        self._encode = encoder or _identity
        self._logger = logger or get_logger()
        self._buffer: List[str] = []
        self._buffer_bytes = 0
        self._failed = False
        self._closed = False
        self.records_written = 0
        self.batches: List[Batch] = []

    def write(self, record: Any) -> None:
        if self._closed:
            raise RuntimeError(f"Task {self.task_id} writer is closed")
        line = self._encode(record)
        size = record_size(line)
        if self._buffer and self._buffer_bytes + size > self.max_bytes:
            self.flush()
        self._buffer.append(line)
        self._buffer_bytes += size
        if len(self._buffer) >= self.max_records:
            self.flush()

    def flush(self) -> None:
        """Submit the buffered records as one batch. Empty buffers are skipped."""
        if not self._buffer:
            return
        batch = Batch(job_id=self.job_id, records=self._buffer)
        self._buffer = []
        self._buffer_bytes = 0
        try:
            batch.batch_id = self._client.submit_batch(self.job_id, batch.records)
        except RemoteServiceError:
            self._failed = True
            self._logger.record_error("RemoteServiceError")
            self._logger.error(
                "Batch submission failed",
                task_id=self.task_id,
                job_id=self.job_id,
                records=len(batch),
            )
            raise
        self.batches.append(batch)
        self.records_written += len(batch)
        self._logger.record_batch(self.task_id, len(batch))
        self._logger.debug(
            "Batch submitted",
            task_id=self.task_id,
            job_id=self.job_id,
            batch_id=batch.batch_id,
            records=len(batch),
        )

    def close(self) -> None:
        """Flush what is left and release the client connection."""
        if self._closed:
            return
        self._closed = True
        try:
            if not self._failed:
                self.flush()
        finally:
            self._buffer = []
            self._buffer_bytes = 0
            self._client.close()

    def outcome(self, error: Optional[BaseException] = None) -> TaskOutcome:
        return TaskOutcome(
            task_id=self.task_id,
            records_written=self.records_written,
            failed=self._failed or error is not None,
            error=error,
            batch_ids=[b.batch_id for b in self.batches if b.batch_id],
        )

    def __enter__(self) -> "TaskWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            self._failed = True
        self.close()


def run_task(
    task_id: str,
    records: Iterable[Any],
    writer_factory: Callable[[str], TaskWriter],
) -> TaskOutcome:
    """
    Write one partition and report how it went.

    Any exception, including a missing job id, becomes a failed TaskOutcome;
    the caller decides what a failure means for the job.
    """
    logger = get_logger()
    writer: Optional[TaskWriter] = None
    try:
        writer = writer_factory(task_id)
        with writer:
            for record in records:
                writer.write(record)
    except Exception as e:
        logger.record_error(type(e).__name__)
        logger.error("Task failed", task_id=task_id, error=str(e))
        if writer is None:
            return TaskOutcome(task_id=task_id, failed=True, error=e)
        return writer.outcome(error=e)
    logger.info("Task finished", task_id=task_id, records=writer.records_written)
    return writer.outcome()
