"""Timing helpers that report durations to the performance log.

Example:
    >>> from cndd_framework.timing import log_execution_time, Timer
    >>> with Timer(logger, "Group fitting"):
    ...     fits = fit_all_groups(groups, config)
"""
import time
import functools
import logging
from typing import Callable, Optional

from cndd_framework.logging_config import log_performance


def log_execution_time(logger: Optional[logging.Logger] = None):
    """Decorator logging how long the wrapped function ran.

    Failures are logged at ERROR with the traceback and re-raised.

    Args:
        logger: Logger instance (defaults to a logger named after the module)

    Returns:
        Decorated function
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            nonlocal logger
            if logger is None:
                logger = logging.getLogger(func.__module__)

            start_time = time.perf_counter()
            logger.debug(f"Starting: {func.__name__}")

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.perf_counter() - start_time
                logger.error(
                    f"{func.__name__} failed after {duration:.2f}s: {e}",
                    exc_info=True
                )
                raise

            duration = time.perf_counter() - start_time
            log_performance(
                logger,
                f"Completed: {func.__name__}",
                duration_sec=round(duration, 2)
            )
            return result

        return wrapper
    return decorator


class Timer:
    """Context manager timing a block of code.

    Args:
        logger: Logger instance
        description: Description of the operation being timed
        **context: Extra key=value pairs added to the performance record

    Example:
        >>> with Timer(logger, "Full model", group="Hybanthus") as t:
        ...     fit = fit_group_model(rows, "Hybanthus", config)
        >>> t.duration
        0.84
    """

    def __init__(self, logger: logging.Logger, description: str, **context):
        self.logger = logger
        self.description = description
        self.context = context
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"Starting: {self.description}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time

        if exc_type is None:
            log_performance(
                self.logger,
                f"Completed: {self.description}",
                duration_sec=round(self.duration, 2),
                **self.context
            )
        else:
            self.logger.error(
                f"{self.description} failed after {self.duration:.2f}s: {exc_val}",
                exc_info=True
            )

        # Don't suppress exception
        return False
