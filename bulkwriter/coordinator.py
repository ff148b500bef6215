"""
Lifecycle coordinator for one bulk write operation.

The coordinator owns the single remote job: it creates it during setup,
publishes its id for the task writers, and closes it after every task has
reported success. Setup and commit must each run exactly once per write
operation; whatever schedules the tasks guarantees that.

There are no per-task hooks. Task writers need no setup, commit or abort
step of their own, so ``needs_task_commit`` is False and nothing is called
per task.

A failed write phase or a failed close leaves the remote job open. Nothing
here aborts it automatically; ``abort()`` exists for an operator to call.
"""

from enum import Enum
from typing import Optional, Sequence

from .client import RemoteJobClient
from .config import (
    CONFIG_JOB_ID,
    ConfigurationChannel,
    publish_job,
    read_job_id,
    read_parameters,
)
from .database import JobLedger
from .errors import ProtocolError, RemoteServiceError, ValidationError
from .logger import StructuredLogger, get_logger
from .models import JobHandle, JobParameters, JobState, TaskOutcome, validate_parameters


class CoordinatorState(str, Enum):
    NOT_STARTED = "NotStarted"
    JOB_OPEN = "JobOpen"
    JOB_CLOSED = "JobClosed"
    ABORTED_NEVER_CREATED = "Aborted(never-created)"
    ABORTED_JOB_LEFT_OPEN = "Aborted(job-left-open)"


TERMINAL_STATES = frozenset({
    CoordinatorState.JOB_CLOSED,
    CoordinatorState.ABORTED_NEVER_CREATED,
    CoordinatorState.ABORTED_JOB_LEFT_OPEN,
})


class LifecycleCoordinator:
    """
    Setup/commit state machine for one remote bulk job.

    Args:
        client: Remote job client used for create, close and abort
        channel: Where the job id and parameters are published
        run_id: Name of this write operation in logs and the ledger
        ledger: Optional job ledger to record state changes in
        logger: Optional logger (defaults to the global one)
    """

    needs_task_commit = False

    def __init__(
        self,
        client: RemoteJobClient,
        channel: ConfigurationChannel,
        run_id: str = "default",
        ledger: Optional[JobLedger] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self._client = client
        self._channel = channel
        self.run_id = run_id
        self._ledger = ledger
        self._logger = logger or get_logger()
        self.state = CoordinatorState.NOT_STARTED
        self.handle: Optional[JobHandle] = None

    def _require(self, expected: CoordinatorState, action: str) -> None:
        if self.state != expected:
            raise ProtocolError(
                f"Cannot {action} in state {self.state.value} (run {self.run_id})"
            )

    def _record(self, error: Optional[str] = None, finalized: bool = False) -> None:
        if self._ledger is not None and self.handle is not None:
            self._ledger.record(
                self.run_id,
                self.handle,
                error=error,
                finalized=finalized,
                verdict=self.state.value,
            )

    def setup(self, parameters: JobParameters) -> JobHandle:
        """
        Create the remote job and publish its id.

        Raises:
            ValidationError: parameters are invalid; no remote call was made
            ProtocolError: a job id is already published for this run; no
                remote call was made
            RemoteServiceError: the service rejected job creation
        """
        self._require(CoordinatorState.NOT_STARTED, "set up")

        errors = validate_parameters(parameters)
        if errors:
            self.state = CoordinatorState.ABORTED_NEVER_CREATED
            self._logger.record_error("ValidationError")
            self._logger.error("Invalid job parameters", run_id=self.run_id, errors=errors)
            raise ValidationError(errors)

        existing = self._channel.read(CONFIG_JOB_ID)
        if existing is not None:
            self._logger.record_error("ProtocolError")
            self._logger.error(
                "Run already has a published job", run_id=self.run_id, job_id=existing
            )
            raise ProtocolError(
                f"Run {self.run_id} already published job '{existing}'; use a new run id"
            )

        try:
            job_id = self._client.create_job(parameters)
        except RemoteServiceError:
            self.state = CoordinatorState.ABORTED_NEVER_CREATED
            self._logger.record_error("RemoteServiceError")
            self._logger.error(
                "Job creation failed",
                run_id=self.run_id,
                collection=parameters.target_collection,
                operation=parameters.operation.value,
            )
            raise

        self.handle = JobHandle(job_id=job_id, parameters=parameters)
        self._logger.record_job_created()
        try:
            publish_job(self._channel, self.handle)
        except Exception as e:
            self.state = CoordinatorState.ABORTED_JOB_LEFT_OPEN
            self._record(error=f"publishing job id failed: {e}")
            self._logger.record_job_failed()
            self._logger.record_error(type(e).__name__)
            self._logger.critical(
                f"Created bulk job '{job_id}' but could not publish its id; "
                "job is open and must be aborted manually",
                run_id=self.run_id,
                job_id=job_id,
                error=str(e),
            )
            raise

        self.state = CoordinatorState.JOB_OPEN
        self._record()
        self._logger.info(
            f"Started bulk job with jobId='{job_id}'",
            run_id=self.run_id,
            collection=parameters.target_collection,
            operation=parameters.operation.value,
        )
        return self.handle

    def attach(self) -> JobHandle:
        """
        Pick up a job that setup created in another process.

        Rebuilds the handle from the published configuration so commit or
        fail can run here. When a ledger is given, the handle state and the
        coordinator verdict recorded there are restored, so a job that was
        already closed, or refused at an earlier commit, cannot be closed
        again.

        Raises:
            ConfigurationMissingError: nothing was published for this run
        """
        self._require(CoordinatorState.NOT_STARTED, "attach")
        parameters = read_parameters(self._channel)
        job_id = read_job_id(self._channel)
        self.handle = JobHandle(job_id=job_id, parameters=parameters)
        self.state = CoordinatorState.JOB_OPEN

        rec = self._ledger.get(self.run_id) if self._ledger is not None else None
        if rec is not None and rec.job_id == job_id:
            self.handle.state = JobState(rec.state)
            if rec.verdict:
                self.state = CoordinatorState(rec.verdict)

        self._logger.debug(
            "Attached to bulk job",
            run_id=self.run_id,
            job_id=job_id,
            state=self.state.value,
        )
        return self.handle

    def commit(self, handle: JobHandle, outcomes: Sequence[TaskOutcome]) -> None:
        """
        Close the job once every task has succeeded.

        Raises:
            ProtocolError: not in JobOpen, no outcomes, or a task failed
            RemoteServiceError: the close call failed; the job stays open
        """
        self._require(CoordinatorState.JOB_OPEN, "commit")
        if handle is not self.handle:
            raise ProtocolError(f"Job {handle.job_id} is not owned by run {self.run_id}")

        failed = [o.task_id for o in outcomes if o.failed]
        if failed or not outcomes:
            reason = (
                f"tasks failed: {', '.join(failed)}" if failed else "no task outcomes reported"
            )
            self.fail(handle, reason)
            raise ProtocolError(f"Refusing to commit job {handle.job_id}: {reason}")

        job_id = read_job_id(self._channel)
        if job_id != handle.job_id:
            raise ProtocolError(
                f"Published job id '{job_id}' does not match handle '{handle.job_id}'"
            )

        try:
            self._client.close_job(job_id)
        except RemoteServiceError as e:
            self.state = CoordinatorState.ABORTED_JOB_LEFT_OPEN
            self._record(error=str(e))
            self._logger.record_job_failed()
            self._logger.record_error("RemoteServiceError")
            self._logger.critical(
                f"Closing bulk job '{job_id}' failed; job is still open and must be aborted manually",
                run_id=self.run_id,
                job_id=job_id,
                error=str(e),
            )
            raise

        handle.mark_closed()
        self.state = CoordinatorState.JOB_CLOSED
        self._record(finalized=True)
        self._logger.record_job_closed()
        self._logger.info(
            f"Closed bulk job '{job_id}'",
            run_id=self.run_id,
            tasks=len(outcomes),
            records=sum(o.records_written for o in outcomes),
        )

    def fail(self, handle: JobHandle, reason: str) -> None:
        """
        Record that the write phase failed or was cancelled.

        No remote call is made. The job stays open on the service and the
        handle stays Created until someone aborts it.
        """
        self._require(CoordinatorState.JOB_OPEN, "fail")
        self.state = CoordinatorState.ABORTED_JOB_LEFT_OPEN
        self._record(error=reason)
        self._logger.record_job_failed()
        self._logger.error(
            f"Write phase failed; bulk job '{handle.job_id}' left open",
            run_id=self.run_id,
            job_id=handle.job_id,
            reason=reason,
        )

    def abort(self, handle: JobHandle) -> None:
        """
        Abort the remote job. For operator cleanup only.

        Raises:
            ProtocolError: the job was already closed
            RemoteServiceError: the abort call failed
        """
        if handle.state == JobState.CLOSED:
            raise ProtocolError(f"Job {handle.job_id} is closed; nothing to abort")
        self._client.abort_job(handle.job_id)
        if handle.state == JobState.CREATED:
            handle.mark_aborted()
        if self.state == CoordinatorState.JOB_OPEN:
            self.state = CoordinatorState.ABORTED_JOB_LEFT_OPEN
        if self.handle is None:
            self.handle = handle
        self._record(error="aborted by operator", finalized=True)
        self._logger.warning(f"Aborted bulk job '{handle.job_id}'", run_id=self.run_id)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES
