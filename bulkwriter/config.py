"""
Shared configuration channel.

The coordinator publishes the job id and its parameters once during setup;
every task writer reads them back. Setup is sequenced before task dispatch by
whatever runs the tasks, so the channel itself does no locking.
"""

from typing import Dict, Optional, Protocol

from .errors import ConfigurationMissingError, ProtocolError
from .models import JobHandle, JobParameters, Operation

CONFIG_COLLECTION = "bulkwriter.collection"
CONFIG_OPERATION = "bulkwriter.operation"
CONFIG_EXTERNAL_ID_FIELD = "bulkwriter.external_id_field"
CONFIG_JOB_ID = "bulkwriter.job_id"


class ConfigurationChannel(Protocol):
    def publish(self, key: str, value: str) -> None:
        ...

    def read(self, key: str) -> Optional[str]:
        ...


class MemoryConfiguration:
    """In-process channel backed by a dict."""

    def __init__(self, values: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(values or {})

    def publish(self, key: str, value: str) -> None:
        self._values[key] = value

    def read(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._values)


class WriteOnceConfiguration:
    """
    Wraps a channel so each key can be published only once.

    Publishing the same value again is a no-op; publishing a different value
    raises ProtocolError. Reads before the first publish return None.
    """

    def __init__(self, inner: ConfigurationChannel) -> None:
        self._inner = inner

    def publish(self, key: str, value: str) -> None:
        current = self._inner.read(key)
        if current is None:
            self._inner.publish(key, value)
            return
        if current != value:
            raise ProtocolError(
                f"Configuration key '{key}' already published as '{current}'"
            )

    def read(self, key: str) -> Optional[str]:
        return self._inner.read(key)


def publish_job(channel: ConfigurationChannel, handle: JobHandle) -> None:
    """Publish a created job's id and parameters. The job id goes last."""
    params = handle.parameters
    channel.publish(CONFIG_COLLECTION, params.target_collection)
    channel.publish(CONFIG_OPERATION, params.operation.value)
    if params.external_id_field:
        channel.publish(CONFIG_EXTERNAL_ID_FIELD, params.external_id_field)
    channel.publish(CONFIG_JOB_ID, handle.job_id)


def read_job_id(channel: ConfigurationChannel) -> str:
    job_id = channel.read(CONFIG_JOB_ID)
    if not job_id:
        raise ConfigurationMissingError(CONFIG_JOB_ID)
    return job_id


def read_parameters(channel: ConfigurationChannel) -> JobParameters:
    collection = channel.read(CONFIG_COLLECTION)
    if not collection:
        raise ConfigurationMissingError(CONFIG_COLLECTION)
    operation = channel.read(CONFIG_OPERATION)
    if not operation:
        raise ConfigurationMissingError(CONFIG_OPERATION)
    return JobParameters(
        target_collection=collection,
        operation=Operation.parse(operation),
        external_id_field=channel.read(CONFIG_EXTERNAL_ID_FIELD) or None,
    )
