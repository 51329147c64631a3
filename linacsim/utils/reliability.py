"""
Reliability helpers for the LINAC study emulator.

Retry with exponential backoff for the one network call the displays make:
fetching the scenario record.
"""

import logging
from functools import wraps
from typing import Callable

import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

# tenacity's before_sleep hook wants a stdlib logger
_std_logger = logging.getLogger(__name__)


def with_retry(
    max_attempts: int = 3,
    backoff_max: float = 10.0,
    retry_exceptions: tuple = (Exception,),
):
    """Decorator to add retry logic with exponential backoff."""

    def decorator(func: Callable) -> Callable:
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=0.5, max=backoff_max),
            retry=retry_if_exception_type(retry_exceptions),
            before_sleep=before_sleep_log(_std_logger, logging.WARNING),
            reraise=True,
        )
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except retry_exceptions as e:
                logger.warning(
                    "Retrying operation",
                    function=func.__name__,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

        return wrapper

    return decorator
