"""
Remote job client for the bulk service REST API.

Every failure leaves this module as a RemoteServiceError carrying the
underlying exception. Transient transport failures and retryable HTTP
statuses are retried here, before that translation happens. Job creation
is sent exactly once, since a resent create can open a second job. Batch
submission is resent only when the service cannot have acted on the first
attempt (see ``retry.is_transient_error``).
"""

from typing import Any, Callable, Dict, List, Optional, Protocol

import requests

from .encoding import encode_batch
from .errors import RemoteServiceError
from .logger import StructuredLogger, get_logger
from .models import JobParameters
from .retry import (
    RetryError,
    exponential_backoff,
    is_transient_error,
    should_retry_http_status,
)


class RemoteJobClient(Protocol):
    def create_job(self, parameters: JobParameters) -> str:
        ...

    def submit_batch(self, job_id: str, records: List[str]) -> str:
        ...

    def close_job(self, job_id: str) -> None:
        ...

    def abort_job(self, job_id: str) -> None:
        ...

    def close(self) -> None:
        ...


class _RetryableStatus(Exception):
    """Internal marker for a response whose status is worth retrying."""

    def __init__(self, response: requests.Response):
        super().__init__(f"HTTP {response.status_code} from {response.url}")
        self.response = response


class BulkApiClient:
    """
    Client for the asynchronous bulk job API.

    Args:
        base_url: Service root, e.g. https://example.my.service.com
        token: Bearer token for the Authorization header
        version: API version path segment
        timeout: Per-request timeout in seconds
        csv_header: Header line prefixed to every batch body
        session: Optional pre-built requests.Session
        max_retries: Retries for transient failures (0 = no retries)
        retry_delay: Initial backoff delay in seconds
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        version: str = "v1",
        timeout: float = 30.0,
        csv_header: str = "",
        session: Optional[requests.Session] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        logger: Optional[StructuredLogger] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.version = version
        self.timeout = timeout
        self.csv_header = csv_header
        self._logger = logger or get_logger()
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {token}"})
        self._send_idempotent = self._retrying(max_retries, retry_delay, idempotent=True)
        self._send_unprocessed = self._retrying(max_retries, retry_delay, idempotent=False)

    def _retrying(self, max_retries: int, retry_delay: float, idempotent: bool):
        return exponential_backoff(
            max_retries=max_retries,
            base_delay=retry_delay,
            exceptions=(requests.exceptions.RequestException, _RetryableStatus),
            retry_if=lambda e: is_transient_error(e, idempotent),
            on_retry=self._on_retry,
        )(self._send_once)

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url, "services", "async", self.version, *parts])

    def _on_retry(self, attempt: int, exc: Exception, delay: float) -> None:
        self._logger.warning(
            "Retrying bulk API request", attempt=attempt, delay=delay, error=str(exc)
        )

    def _send_once(self, method: str, url: str, **kwargs) -> requests.Response:
        resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        if should_retry_http_status(resp.status_code):
            raise _RetryableStatus(resp)
        return resp

    def _request(
        self, action: str, method: str, url: str, send: Optional[Callable] = None, **kwargs
    ) -> Dict[str, Any]:
        send = send or self._send_idempotent
        try:
            resp = send(method, url, **kwargs)
            resp.raise_for_status()
        except RetryError as e:
            cause = e.__cause__
            status = cause.response.status_code if isinstance(cause, _RetryableStatus) else None
            self._logger.error(f"Bulk API {action} failed after retries", url=url, status=status)
            raise RemoteServiceError(f"{action} failed: {e}", cause=cause, status=status) from e
        except _RetryableStatus as e:
            status = e.response.status_code
            self._logger.error(f"Bulk API {action} failed", url=url, status=status)
            raise RemoteServiceError(f"{action} failed: {e}", cause=e, status=status) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            self._logger.error(f"Bulk API {action} rejected", url=url, status=status)
            raise RemoteServiceError(f"{action} rejected ({status}): {url}", cause=e, status=status) from e
        except requests.exceptions.RequestException as e:
            self._logger.error(f"Bulk API {action} request error", url=url, error=str(e))
            raise RemoteServiceError(f"{action} request error: {e}", cause=e) from e

        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as e:
            raise RemoteServiceError(f"{action} returned a non-JSON body", cause=e) from e
        if not isinstance(body, dict):
            raise RemoteServiceError(
                f"{action} returned a JSON {type(body).__name__}, expected an object"
            )
        return body

    def create_job(self, parameters: JobParameters) -> str:
        payload: Dict[str, Any] = {
            "object": parameters.target_collection,
            "operation": parameters.operation.value,
            "contentType": "CSV",
        }
        if parameters.external_id_field:
            payload["externalIdFieldName"] = parameters.external_id_field
        body = self._request(
            "create job", "POST", self._url("job"), send=self._send_once, json=payload
        )
        job_id = body.get("id")
        if not job_id:
            raise RemoteServiceError("create job response carried no job id")
        return job_id

    def submit_batch(self, job_id: str, records: List[str]) -> str:
        data = encode_batch(self.csv_header, records).encode("utf-8")
        body = self._request(
            "submit batch",
            "POST",
            self._url("job", job_id, "batch"),
            send=self._send_unprocessed,
            data=data,
            headers={"Content-Type": "text/csv; charset=UTF-8"},
        )
        batch_id = body.get("id")
        if not batch_id:
            raise RemoteServiceError(f"submit batch response for job {job_id} carried no batch id")
        return batch_id

    def close_job(self, job_id: str) -> None:
        self._request("close job", "POST", self._url("job", job_id), json={"state": "Closed"})

    def abort_job(self, job_id: str) -> None:
        self._request("abort job", "POST", self._url("job", job_id), json={"state": "Aborted"})

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "BulkApiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
