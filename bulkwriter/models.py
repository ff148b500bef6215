"""
Data model shared by the coordinator and the task writers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from .errors import ProtocolError, ValidationError


class Operation(str, Enum):
    """Write operation kinds accepted by the bulk service."""

    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"
    HARD_DELETE = "hardDelete"

    @classmethod
    def parse(cls, value: Any) -> "Operation":
        """Resolve an operation from its wire name, ignoring case."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for op in cls:
            if op.value.lower() == text or op.name.lower() == text:
                return op
        raise ValidationError([f"Unknown operation: {value!r}"])


class JobState(str, Enum):
    CREATED = "Created"
    CLOSED = "Closed"
    ABORTED = "Aborted"


@dataclass(frozen=True)
class JobParameters:
    target_collection: str
    operation: Operation
    external_id_field: Optional[str] = None


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def validate_parameters(params: JobParameters) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    """
    errors: List[str] = []

    if not _is_non_empty_str(params.target_collection):
        errors.append("Field 'target_collection' must be a non-empty string")

    if not isinstance(params.operation, Operation):
        errors.append(f"Field 'operation' must be an Operation, got {params.operation!r}")

    if params.operation == Operation.UPSERT and not _is_non_empty_str(params.external_id_field):
        errors.append("Operation 'upsert' requires a non-empty 'external_id_field'")

    if params.external_id_field is not None and not isinstance(params.external_id_field, str):
        errors.append("Field 'external_id_field' must be a string if provided")

    return errors


@dataclass
class JobHandle:
    """
    One remote bulk job. State only moves forward: Created to Closed or
    Created to Aborted.
    """

    job_id: str
    parameters: JobParameters
    state: JobState = JobState.CREATED

    def _transition(self, target: JobState) -> None:
        if self.state != JobState.CREATED:
            raise ProtocolError(
                f"Job {self.job_id} is {self.state.value}; cannot move to {target.value}"
            )
        self.state = target

    def mark_closed(self) -> None:
        self._transition(JobState.CLOSED)

    def mark_aborted(self) -> None:
        self._transition(JobState.ABORTED)


@dataclass
class Batch:
    """Encoded records submitted together under one job id."""

    job_id: str
    records: List[str] = field(default_factory=list)
    batch_id: Optional[str] = None

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class TaskOutcome:
    task_id: str
    records_written: int = 0
    failed: bool = False
    error: Optional[BaseException] = None
    batch_ids: List[str] = field(default_factory=list)
