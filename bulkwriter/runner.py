"""
Local driver for a complete bulk write.

Runs setup, fans the partitions out over a thread pool, then commits only
if every task succeeded. This is the in-process stand-in for a distributed
execution framework: it provides the phase ordering the coordinator relies
on (setup before any task, commit after every task closed).
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Sequence

from .coordinator import LifecycleCoordinator
from .database import JobLedger
from .errors import BulkWriterError
from .logger import get_logger
from .models import JobHandle, JobParameters, TaskOutcome
from .writer import TaskWriter, run_task


@dataclass
class RunReport:
    handle: JobHandle
    outcomes: List[TaskOutcome] = field(default_factory=list)
    committed: bool = False
    error: Optional[BaseException] = None

    @property
    def records_written(self) -> int:
        return sum(o.records_written for o in self.outcomes)

    @property
    def failed_tasks(self) -> List[str]:
        return [o.task_id for o in self.outcomes if o.failed]


def run_bulk_write(
    coordinator: LifecycleCoordinator,
    parameters: JobParameters,
    partitions: Sequence[Iterable[Any]],
    writer_factory: Callable[[str], TaskWriter],
    max_workers: int = 4,
    ledger: Optional[JobLedger] = None,
) -> RunReport:
    """
    Write every partition under one bulk job.

    Setup errors propagate unchanged, since no job exists yet. Task failures
    and a failed close are reported on the returned RunReport with
    ``committed`` False; the job is then left open.

    Args:
        coordinator: Fresh coordinator for this write
        parameters: Job parameters passed to setup
        partitions: One iterable of records per task
        writer_factory: Builds a TaskWriter for a task id
        max_workers: Thread pool size
        ledger: Optional ledger to store task outcomes in
    """
    logger = get_logger()
    handle = coordinator.setup(parameters)
    report = RunReport(handle=handle)

    task_ids = [f"task-{i:04d}" for i in range(len(partitions))]
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = [
            pool.submit(run_task, task_id, records, writer_factory)
            for task_id, records in zip(task_ids, partitions)
        ]
        report.outcomes = [f.result() for f in futures]

    if ledger is not None:
        for outcome in report.outcomes:
            ledger.record_task(coordinator.run_id, outcome)

    if report.failed_tasks:
        reason = f"tasks failed: {', '.join(report.failed_tasks)}"
        coordinator.fail(handle, reason)
        report.error = next(o.error for o in report.outcomes if o.failed)
        return report

    if not report.outcomes:
        coordinator.fail(handle, "no partitions to write")
        return report

    try:
        coordinator.commit(handle, report.outcomes)
    except BulkWriterError as e:
        report.error = e
        return report

    report.committed = True
    logger.info(
        "Bulk write finished",
        run_id=coordinator.run_id,
        job_id=handle.job_id,
        tasks=len(report.outcomes),
        records=report.records_written,
    )
    return report
