"""Bounded retry with exponential backoff for transient I/O.

Used inside a single worker run: a failing call is retried a fixed number of
times with growing delays, then the last error is re-raised to the caller.
"""

from typing import Callable, Tuple, Type, TypeVar

import backoff

from export_engine.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior with exponential backoff.

    The delay before retry ``n`` (0-indexed) is
    ``min(initial_delay * backoff_factor ** n, max_delay)``.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        backoff_factor: float = 2.0,
        max_delay: float = 30.0,
        retriable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1.0")
        if max_delay < initial_delay:
            raise ValueError("max_delay must be >= initial_delay")

        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.retriable_exceptions = retriable_exceptions


def call_with_retry(func: Callable[[], T], config: RetryConfig, operation: str = "operation") -> T:
    """
    Call ``func`` until it succeeds or ``config.max_attempts`` is reached.

    Only exceptions listed in ``config.retriable_exceptions`` are retried;
    anything else propagates immediately.
    """

    def log_retry(details):
        logger.warning(
            "Transient failure, retrying",
            operation=operation,
            attempt=details["tries"],
            max_attempts=config.max_attempts,
            delay_seconds=details["wait"],
            error=str(details["exception"]),
        )

    def log_giveup(details):
        logger.error(
            "Retries exhausted",
            operation=operation,
            max_attempts=config.max_attempts,
            error=str(details["exception"]),
        )

    retrying = backoff.on_exception(
        backoff.expo,
        config.retriable_exceptions,
        max_tries=config.max_attempts,
        jitter=None,
        on_backoff=log_retry,
        on_giveup=log_giveup,
        base=config.backoff_factor,
        factor=config.initial_delay,
        max_value=config.max_delay,
    )(func)
    return retrying()
