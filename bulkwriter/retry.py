"""
Retry logic with exponential backoff for remote bulk API calls.

Used by the remote job client only. The lifecycle coordinator and task
writers never retry: a failed create, submit or close is surfaced as-is.

Whether a failure may be retried depends on the call. Closing or aborting a
job sets a target state, so resending it is harmless. Creating a job or
submitting a batch is not: if the first attempt reached the service, a
resend opens a second job or writes the records twice. Those calls are only
resent when the service cannot have acted on the first attempt.
"""

import time
import functools
from typing import Callable, Type, Tuple, Optional

import requests


# Refused before any work was done, so safe to resend for any call.
UNPROCESSED_STATUSES = frozenset({429, 503})

RETRYABLE_STATUSES = frozenset({
    408,  # Request Timeout
    429,  # Too Many Requests
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
})


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    retry_if: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable] = None,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch
        retry_if: Optional predicate; a caught exception it rejects is
            re-raised immediately
        on_retry: Optional callback function(attempt, exception, delay)

    Example:
        @exponential_backoff(max_retries=3, base_delay=1.0)
        def close_job(url):
            return session.post(url, json={"state": "Closed"})
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = base_delay
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    last_exception = e

                    if attempt < max_retries:
                        current_delay = min(delay, max_delay)

                        if on_retry:
                            on_retry(attempt + 1, e, current_delay)

                        time.sleep(current_delay)
                        delay *= exponential_base
                    else:
                        raise RetryError(
                            f"Failed after {max_retries + 1} attempts: {str(e)}"
                        ) from e

            raise RetryError(
                f"Unexpected retry exhaustion: {str(last_exception)}"
            ) from last_exception

        return wrapper
    return decorator


def should_retry_http_status(status_code: int, idempotent: bool = True) -> bool:
    """
    Check if HTTP status code indicates a retryable error.

    Args:
        status_code: HTTP status code
        idempotent: Whether resending the request is harmless

    Returns:
        True if should retry
    """
    if not idempotent:
        return status_code in UNPROCESSED_STATUSES
    return status_code in RETRYABLE_STATUSES


def is_transient_error(exception: Exception, idempotent: bool = True) -> bool:
    """
    Determine if a failed request is worth sending again.

    A connect timeout means the request never left this process, so it is
    retried for every call. Read timeouts and dropped connections may hit
    after the service accepted the request; only idempotent calls resend
    on those.

    Args:
        exception: Exception raised while sending the request
        idempotent: Whether resending the request is harmless
    """
    if isinstance(exception, requests.exceptions.ConnectTimeout):
        return True

    response = getattr(exception, "response", None)
    if response is not None:
        return should_retry_http_status(response.status_code, idempotent)

    if not idempotent:
        return False
    return isinstance(
        exception, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)
    )
