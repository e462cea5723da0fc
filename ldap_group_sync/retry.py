"""
Retry utilities for transient directory and group store failures.

Directory servers and the GLPI API occasionally drop connections or answer
with 5xx errors; these helpers retry such calls a configured number of times.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional, Dict

from ldap3.core.exceptions import LDAPSocketOpenError, LDAPSocketReceiveError, LDAPSessionTerminatedByServerError

logger = logging.getLogger(__name__)

TRANSIENT_LDAP_ERRORS = (
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSessionTerminatedByServerError,
)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first one
        delay: Initial delay between retries in seconds
        backoff: Delay multiplier applied after each retry
        exceptions: Exception types to catch and retry on
        on_retry: Optional callback called with (attempt, exception) before each retry

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all attempts fail with a retried exception
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
            last_exception = e

            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def retry_settings(error_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Translate the ``error_handling`` config section into retry_call arguments.

    ``max_retries`` counts retries, so one is added for the initial attempt.
    """
    return {
        'max_attempts': error_config.get('max_retries', 3) + 1,
        'delay': error_config.get('retry_wait_seconds', 5),
        'backoff': error_config.get('retry_backoff', 1.0),
    }


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception indicates a transient failure.

    Args:
        exception: Exception to check

    Returns:
        True for network errors, dropped directory sessions, explicitly
        retryable errors and HTTP 429/5xx responses
    """
    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError) + TRANSIENT_LDAP_ERRORS):
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
        'server unavailable',
        'service unavailable',
        'too many requests',
    ]
    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
