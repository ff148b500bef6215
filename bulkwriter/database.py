"""
Database schema and connection management.

Uses SQLite with SQLAlchemy for a configuration channel that tasks in other
processes can read, and for a ledger of the bulk jobs each run created and
the outcomes its tasks reported. The ledger is how an operator finds jobs
that were left open and need a manual abort.
"""

from datetime import datetime
from pathlib import Path
from typing import List, Optional
from sqlalchemy import create_engine, Boolean, Column, Integer, String, DateTime, Text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .models import JobHandle, TaskOutcome
from .errors import BulkWriterError

Base = declarative_base()


class ConfigEntry(Base):
    """One published configuration value for a run."""

    __tablename__ = "config_entries"

    run_id = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    published_at = Column(DateTime, nullable=False, default=datetime.now)


class JobRecord(Base):
    """Ledger row for the bulk job a run created."""

    __tablename__ = "job_records"

    run_id = Column(String, primary_key=True)
    job_id = Column(String, nullable=False)
    collection = Column(String, nullable=False)
    operation = Column(String, nullable=False)
    external_id_field = Column(String, nullable=True)
    state = Column(String, nullable=False)  # Created, Closed, Aborted
    finalized = Column(Boolean, nullable=False, default=False)  # closed or aborted remotely
    verdict = Column(String, nullable=True)  # coordinator state, e.g. JobOpen, JobClosed
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class TaskRecord(Base):
    """Outcome a task reported for a run."""

    __tablename__ = "task_records"

    run_id = Column(String, primary_key=True)
    task_id = Column(String, primary_key=True)
    records_written = Column(Integer, nullable=False, default=0)
    failed = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    batch_ids = Column(Text, nullable=True)  # comma separated
    finished_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


def init_database(db_path: Path) -> Engine:
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Engine bound to the database
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    return engine


def get_session(engine: Engine):
    """
    Get database session.

    Args:
        engine: Engine returned by init_database

    Returns:
        SQLAlchemy session
    """
    Session = sessionmaker(bind=engine)
    return Session()


class _SqlStore:
    """Holds one engine for the lifetime of a store."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.engine = init_database(db_path)

    def _session(self):
        return get_session(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


class SqlConfiguration(_SqlStore):
    """Configuration channel stored in SQLite, scoped to one run id."""

    def __init__(self, db_path: Path, run_id: str):
        super().__init__(db_path)
        self.run_id = run_id

    def publish(self, key: str, value: str) -> None:
        session = self._session()
        try:
            session.merge(ConfigEntry(run_id=self.run_id, key=key, value=value))
            session.commit()
        finally:
            session.close()

    def read(self, key: str) -> Optional[str]:
        session = self._session()
        try:
            entry = session.get(ConfigEntry, (self.run_id, key))
            return entry.value if entry is not None else None
        finally:
            session.close()


class JobLedger(_SqlStore):
    """Records job handles, the coordinator's verdict and task outcomes per run."""

    def record(
        self,
        run_id: str,
        handle: JobHandle,
        error: Optional[str] = None,
        finalized: bool = False,
        verdict: Optional[str] = None,
    ) -> None:
        params = handle.parameters
        session = self._session()
        try:
            row = session.get(JobRecord, run_id)
            if row is None:
                row = JobRecord(
                    run_id=run_id,
                    job_id=handle.job_id,
                    collection=params.target_collection,
                    operation=params.operation.value,
                    external_id_field=params.external_id_field,
                    state=handle.state.value,
                    error=error,
                    finalized=finalized,
                    verdict=verdict,
                )
                session.add(row)
            else:
                row.state = handle.state.value
                row.error = error
                row.finalized = row.finalized or finalized
                if verdict is not None:
                    row.verdict = verdict
            session.commit()
        finally:
            session.close()

    def get(self, run_id: str) -> Optional[JobRecord]:
        session = self._session()
        try:
            row = session.get(JobRecord, run_id)
            if row is not None:
                session.expunge(row)
            return row
        finally:
            session.close()

    def list_open(self) -> List[JobRecord]:
        """Jobs never closed or aborted on the remote side."""
        session = self._session()
        try:
            rows = (
                session.query(JobRecord)
                .filter(JobRecord.finalized.is_(False))
                .order_by(JobRecord.created_at)
                .all()
            )
            for row in rows:
                session.expunge(row)
            return rows
        finally:
            session.close()

    def record_task(self, run_id: str, outcome: TaskOutcome) -> None:
        """Store a task outcome; a retried task overwrites its earlier attempt."""
        session = self._session()
        try:
            session.merge(TaskRecord(
                run_id=run_id,
                task_id=outcome.task_id,
                records_written=outcome.records_written,
                failed=outcome.failed,
                error=str(outcome.error) if outcome.error is not None else None,
                batch_ids=",".join(outcome.batch_ids),
            ))
            session.commit()
        finally:
            session.close()

    def list_tasks(self, run_id: str) -> List[TaskOutcome]:
        session = self._session()
        try:
            rows = (
                session.query(TaskRecord)
                .filter(TaskRecord.run_id == run_id)
                .order_by(TaskRecord.task_id)
                .all()
            )
            return [
                TaskOutcome(
                    task_id=row.task_id,
                    records_written=row.records_written,
                    failed=row.failed,
                    error=BulkWriterError(row.error) if row.error else None,
                    batch_ids=[b for b in (row.batch_ids or "").split(",") if b],
                )
                for row in rows
            ]
        finally:
            session.close()
