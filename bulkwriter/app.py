import argparse
import csv
import dataclasses
import uuid
from pathlib import Path
from typing import Any, Dict, Iterator, List

from .env import load_env

from . import __version__
from .client import BulkApiClient
from .config import CONFIG_JOB_ID, WriteOnceConfiguration
from .coordinator import LifecycleCoordinator
from .database import JobLedger, SqlConfiguration
from .encoding import CsvRecordEncoder
from .errors import BulkWriterError, ProtocolError
from .logger import get_logger
from .models import JobParameters, Operation
from .runner import run_bulk_write
from .settings import Settings
from .writer import TaskWriter, run_task


def read_csv_records(path: Path) -> Iterator[Dict[str, Any]]:
    with path.open("r", encoding="utf-8", newline="") as f:
        for row in csv.DictReader(f):
            yield row


def read_csv_fields(path: Path) -> List[str]:
    with path.open("r", encoding="utf-8", newline="") as f:
        header = next(csv.reader(f), None)
    if not header:
        raise SystemExit(f"Input file has no header row: {path}")
    return header


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if getattr(args, "db", None):
        settings = dataclasses.replace(settings, db_path=Path(args.db))
    return settings


def _client(settings: Settings, csv_header: str = "") -> BulkApiClient:
    settings.require_api()
    return BulkApiClient(
        settings.api_url,
        settings.api_token,
        version=settings.api_version,
        timeout=settings.request_timeout,
        csv_header=csv_header,
    )


def _channel(settings: Settings, run_id: str) -> WriteOnceConfiguration:
    return WriteOnceConfiguration(SqlConfiguration(settings.db_path, run_id))


def _parameters(args: argparse.Namespace) -> JobParameters:
    return JobParameters(
        target_collection=args.collection,
        operation=Operation.parse(args.operation),
        external_id_field=args.external_id_field,
    )


def _writer_factory(settings: Settings, channel, fields: List[str]):
    encoder = CsvRecordEncoder(fields)

    def factory(task_id: str) -> TaskWriter:
        return TaskWriter(
            channel,
            _client(settings, csv_header=encoder.header()),
            task_id,
            max_records=settings.max_records,
            max_bytes=settings.max_bytes,
            encoder=encoder.encode,
        )

    return factory


def cmd_setup(args: argparse.Namespace, settings: Settings) -> None:
    ledger = JobLedger(settings.db_path)
    with _client(settings) as client:
        coordinator = LifecycleCoordinator(
            client, _channel(settings, args.run_id), run_id=args.run_id, ledger=ledger
        )
        handle = coordinator.setup(_parameters(args))
    print(f"Run: {args.run_id}")
    print(f"Job: {handle.job_id}")


def cmd_write(args: argparse.Namespace, settings: Settings) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    channel = _channel(settings, args.run_id)
    factory = _writer_factory(settings, channel, read_csv_fields(input_path))
    outcome = run_task(args.task_id, read_csv_records(input_path), factory)
    JobLedger(settings.db_path).record_task(args.run_id, outcome)
    print(f"Task: {outcome.task_id}")
    print(f"Records: {outcome.records_written}")
    print(f"Batches: {len(outcome.batch_ids)}")
    if outcome.failed:
        raise SystemExit(f"Task failed: {outcome.error}")


def cmd_commit(args: argparse.Namespace, settings: Settings) -> None:
    ledger = JobLedger(settings.db_path)
    rec = ledger.get(args.run_id)
    if rec is not None and rec.finalized:
        raise ProtocolError(f"Job {rec.job_id} is already {rec.state}; nothing to commit")
    outcomes = ledger.list_tasks(args.run_id)
    with _client(settings) as client:
        coordinator = LifecycleCoordinator(
            client, _channel(settings, args.run_id), run_id=args.run_id, ledger=ledger
        )
        handle = coordinator.attach()
        if coordinator.finished:
            raise ProtocolError(
                f"Run {args.run_id} ended as {coordinator.state.value}; "
                f"job {handle.job_id} will not be committed (abort it instead)"
            )
        if args.expect_tasks is not None and len(outcomes) != args.expect_tasks:
            coordinator.fail(
                handle, f"expected {args.expect_tasks} task outcomes, found {len(outcomes)}"
            )
            raise SystemExit(
                f"Not committing job {handle.job_id}: "
                f"{len(outcomes)} of {args.expect_tasks} tasks reported"
            )
        coordinator.commit(handle, outcomes)
    print(f"Closed job {handle.job_id} ({sum(o.records_written for o in outcomes)} records)")


def cmd_abort(args: argparse.Namespace, settings: Settings) -> None:
    ledger = JobLedger(settings.db_path)
    rec = ledger.get(args.run_id)
    if rec is not None and rec.finalized:
        raise SystemExit(f"Job {rec.job_id} is already {rec.state}; nothing to abort")
    with _client(settings) as client:
        coordinator = LifecycleCoordinator(
            client, _channel(settings, args.run_id), run_id=args.run_id, ledger=ledger
        )
        handle = coordinator.attach()
        coordinator.abort(handle)
    print(f"Aborted job {handle.job_id}")


def cmd_status(args: argparse.Namespace, settings: Settings) -> None:
    ledger = JobLedger(settings.db_path)
    if not args.run_id:
        records = ledger.list_open()
        if not records:
            print("No open jobs.")
            return
        print(f"Found {len(records)} open jobs:\n")
        for rec in records:
            print(f"Run: {rec.run_id}")
            print(f"  Job: {rec.job_id}")
            print(f"  Collection: {rec.collection} ({rec.operation})")
            print(f"  State: {rec.state}")
            if rec.error:
                print(f"  Error: {rec.error}")
            print()
        return

    rec = ledger.get(args.run_id)
    if rec is None:
        job_id = SqlConfiguration(settings.db_path, args.run_id).read(CONFIG_JOB_ID)
        print(f"Run {args.run_id} not found in ledger (published job id: {job_id})")
        return
    print(f"Run: {rec.run_id}")
    print(f"  Job: {rec.job_id}")
    print(f"  Collection: {rec.collection} ({rec.operation})")
    print(f"  State: {rec.state}{'' if rec.finalized else ' (open on service)'}")
    if rec.verdict:
        print(f"  Coordinator: {rec.verdict}")
    if rec.error:
        print(f"  Error: {rec.error}")
    for outcome in ledger.list_tasks(args.run_id):
        status = "failed" if outcome.failed else "ok"
        print(f"  [{status}] {outcome.task_id}: {outcome.records_written} records")


def cmd_run(args: argparse.Namespace, settings: Settings) -> None:
    inputs = [Path(p) for p in args.input]
    for p in inputs:
        if not p.exists():
            raise SystemExit(f"Input file not found: {p}")
    fields = read_csv_fields(inputs[0])
    for p in inputs[1:]:
        if read_csv_fields(p) != fields:
            raise SystemExit(f"Header of {p} does not match {inputs[0]}")

    run_id = args.run_id or uuid.uuid4().hex[:12]
    ledger = JobLedger(settings.db_path)
    channel = _channel(settings, run_id)
    with _client(settings) as client:
        coordinator = LifecycleCoordinator(client, channel, run_id=run_id, ledger=ledger)
        report = run_bulk_write(
            coordinator,
            _parameters(args),
            [read_csv_records(p) for p in inputs],
            _writer_factory(settings, channel, fields),
            max_workers=args.workers,
            ledger=ledger,
        )
    get_logger().log_metrics_summary()
    print(f"Run: {run_id}")
    print(f"Job: {report.handle.job_id}")
    print(f"Records: {report.records_written}")
    if not report.committed:
        raise SystemExit(f"Job {report.handle.job_id} left open: {report.error}")
    print("Committed.")


def _add_job_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--collection", required=True, help="Target collection (object) name")
    p.add_argument(
        "--operation",
        required=True,
        choices=[op.value for op in Operation],
        help="Write operation",
    )
    p.add_argument("--external-id-field", help="Match key field (required for upsert)")


def main():
    load_env()
    parser = argparse.ArgumentParser(prog="bulkwriter", description="Coordinated bulk job writes")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help="Path to SQLite state database (or set BULK_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command")

    stp = subparsers.add_parser("setup", help="Create the bulk job for a run and publish its id")
    stp.add_argument("--run-id", required=True, help="Name of the write operation")
    _add_job_arguments(stp)
    stp.set_defaults(func=cmd_setup)

    wrt = subparsers.add_parser("write", help="Write one CSV partition as a task of a run")
    wrt.add_argument("--run-id", required=True, help="Run created by 'setup'")
    wrt.add_argument("--task-id", required=True, help="Task identifier, unique per partition")
    wrt.add_argument("--input", required=True, help="CSV file with a header row")
    wrt.set_defaults(func=cmd_write)

    cmt = subparsers.add_parser("commit", help="Close the run's job once every task succeeded")
    cmt.add_argument("--run-id", required=True, help="Run created by 'setup'")
    cmt.add_argument("--expect-tasks", type=int, help="Refuse to commit unless this many tasks reported")
    cmt.set_defaults(func=cmd_commit)

    abt = subparsers.add_parser("abort", help="Abort a run's job on the service (manual cleanup)")
    abt.add_argument("--run-id", required=True, help="Run whose job should be aborted")
    abt.set_defaults(func=cmd_abort)

    sts = subparsers.add_parser("status", help="Show a run, or list jobs left open")
    sts.add_argument("--run-id", help="Run to show (default: list open jobs)")
    sts.set_defaults(func=cmd_status)

    run = subparsers.add_parser("run", help="Setup, write CSV partitions in parallel, and commit")
    run.add_argument("--run-id", help="Name of the write operation (default: random)")
    _add_job_arguments(run)
    run.add_argument("--input", required=True, action="append", help="CSV partition (repeatable)")
    run.add_argument("--workers", type=int, default=4, help="Parallel tasks (default 4)")
    run.set_defaults(func=cmd_run)

    args = parser.parse_args()

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        try:
            settings = _settings(args)
            get_logger(level=settings.log_level)
            args.func(args, settings)
        except BulkWriterError as e:
            raise SystemExit(f"{type(e).__name__}: {e}")
        return

    parser.print_help()


if __name__ == "__main__":
    main()
