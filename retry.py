# retry.py
"""
Retry with backoff, for idempotent store writes only.

Never wrap a ledger broadcast with this: re-sending a transfer can spend
twice. Re-writing the same final job state cannot.
"""
import logging
import time
from functools import wraps
from typing import Callable, Tuple, Type

logger = logging.getLogger(__name__)


class WriteNotApplied(Exception):
    """A store write ran but matched no row."""
    pass


def retry_with_backoff(
    max_attempts: int = 3,
    backoff_sec: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Call the wrapped function up to max_attempts times, sleeping
    backoff_sec * attempt between tries. The last exception is re-raised.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt >= max_attempts:
                        raise
                    wait_time = backoff_sec * attempt
                    logger.warning("%s attempt %d/%d failed: %s (retrying in %.1fs)",
                                   func.__name__, attempt, max_attempts, e, wait_time)
                    sleep(wait_time)
            raise RuntimeError("unreachable")

        return wrapper
    return decorator
