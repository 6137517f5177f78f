"""
Retry helpers for transient LDAP and GitHub failures.

``retry_call`` re-invokes a callable on selected exceptions with an
exponential delay. When the raised exception carries a ``retry_after``
attribute (GitHub rate limits do), that wait is used instead of the computed
delay, capped at ``max_delay``.
"""

import time
import logging
from typing import Callable, Any, Dict, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def _wait_for(exception: Exception, computed: float, max_delay: Optional[float]) -> float:
    wait = computed
    retry_after = getattr(exception, 'retry_after', None)
    if retry_after is not None and retry_after >= 0:
        wait = float(retry_after)
    if max_delay is not None:
        wait = min(wait, max_delay)
    return max(wait, 0.0)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (RetryableError,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    max_delay: Optional[float] = 60.0,
    retry_if: Optional[Callable[[Exception], bool]] = None
) -> Any:
    """
    Call a function, retrying on the given exception types.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Total attempts including the first call
        delay: Initial delay between attempts in seconds
        backoff: Delay multiplier applied after each failed attempt
        exceptions: Exception types that trigger another attempt
        on_retry: Optional callback invoked with (attempt, exception)
        max_delay: Upper bound for any single wait, None for no bound
        retry_if: Optional predicate; a matching exception it rejects is re-raised at once

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If every attempt fails
    """
    if kwargs is None:
        kwargs = {}
    max_attempts = max(1, max_attempts)

    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            if retry_if is not None and not retry_if(e):
                raise
            last_exception = e

            if attempt == max_attempts - 1:
                break

            wait = _wait_for(e, current_delay, max_delay)
            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}; "
                         f"retrying in {wait:.1f} seconds")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(wait)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def retry_settings(error_handling: Dict) -> Dict[str, Any]:
    """
    Translate the ``error_handling`` config section into ``retry_call`` keyword arguments.

    ``max_retries`` counts retries, so one is added for the initial attempt.
    """
    error_handling = error_handling or {}
    return {
        'max_attempts': int(error_handling.get('max_retries', 3)) + 1,
        'delay': float(error_handling.get('retry_wait_seconds', 5)),
        'backoff': float(error_handling.get('retry_backoff', 2.0)),
        'max_delay': float(error_handling.get('max_retry_wait_seconds', 60)),
    }


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception indicates a transient failure.

    Args:
        exception: Exception to check

    Returns:
        True if retrying may succeed
    """
    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError)):
        return True
    if isinstance(exception.__cause__, (ConnectionError, TimeoutError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if isinstance(status_code, int) and (status_code == 429 or 500 <= status_code < 600):
        return True

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'temporary failure',
        'rate limit',
        'secondary rate limit',
    ]
    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Build an ``on_retry`` callback that logs a warning naming the operation."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
