"""Centralized logging configuration for cndd_framework.

This module provides:
- Console plus file logging under data/outputs/{run_type}/logs
- A dedicated performance log fed by log_performance()
- A warnings log, and categorized capture of library warnings
- Progress tracking across groups

Example:
    >>> from cndd_framework.logging_config import setup_logging, log_performance
    >>> logger = setup_logging(run_type="sample")
    >>> log_performance(logger, "Group fitted", group="Acalypha", duration_sec=1.2)
"""
import logging
import sys
import warnings
from pathlib import Path
from datetime import datetime
from typing import Optional, Literal, Union
from contextlib import contextmanager


RunType = Literal["sample", "production", "experiment"]

LOGGER_NAME = "cndd_framework"


class PerformanceFilter(logging.Filter):
    """Pass only records tagged with an 'is_performance' attribute."""

    def filter(self, record):
        return hasattr(record, 'is_performance') and record.is_performance


class WarningErrorFilter(logging.Filter):
    """Pass only WARNING records and above."""

    def filter(self, record):
        return record.levelno >= logging.WARNING


def setup_logging(
    run_type: RunType = "sample",
    log_level: int = logging.INFO,
    console_output: bool = True,
    log_dir: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """Set up logging for an analysis run.

    Creates, in data/outputs/{run_type}/logs/ unless log_dir is given:
    - main_{timestamp}.log: all messages
    - performance_{timestamp}.log: timing and fit statistics only
    - warnings_{timestamp}.log: warnings and errors, including rejected groups

    Args:
        run_type: Type of run; determines the default log directory
        log_level: Minimum level for console output
        console_output: Whether to echo messages to stdout
        log_dir: Explicit directory for log files

    Returns:
        The package logger ("cndd_framework")
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_dir = Path(log_dir) if log_dir is not None else Path(f"data/outputs/{run_type}/logs")
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    performance_formatter = logging.Formatter(
        fmt='%(asctime)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    simple_formatter = logging.Formatter(fmt='%(levelname)-8s | %(message)s')

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(simple_formatter)
        logger.addHandler(console_handler)

    main_handler = logging.FileHandler(
        log_dir / f"main_{timestamp}.log", mode='w', encoding='utf-8'
    )
    main_handler.setLevel(logging.DEBUG)
    main_handler.setFormatter(detailed_formatter)
    logger.addHandler(main_handler)

    perf_handler = logging.FileHandler(
        log_dir / f"performance_{timestamp}.log", mode='w', encoding='utf-8'
    )
    perf_handler.setLevel(logging.INFO)
    perf_handler.setFormatter(performance_formatter)
    perf_handler.addFilter(PerformanceFilter())
    logger.addHandler(perf_handler)

    warning_handler = logging.FileHandler(
        log_dir / f"warnings_{timestamp}.log", mode='w', encoding='utf-8'
    )
    warning_handler.setLevel(logging.WARNING)
    warning_handler.setFormatter(detailed_formatter)
    warning_handler.addFilter(WarningErrorFilter())
    logger.addHandler(warning_handler)

    logger.info(f"Logging initialized for {run_type} run")
    logger.info(f"Log directory: {log_dir.absolute()}")

    return logger


def log_performance(logger: logging.Logger, message: str, **kwargs):
    """Log a performance-related message with key=value context.

    The record reaches both the main log and the performance log.

    Args:
        logger: Logger instance
        message: Message description
        **kwargs: Context such as group, duration_sec, deviance, edf

    Example:
        >>> log_performance(logger, "Group fitted", group="Psychotria", edf=7.3)
        # Output: "Group fitted | group=Psychotria | edf=7.3"
    """
    extra = {'is_performance': True}

    if kwargs:
        metrics_str = " | ".join(f"{k}={v}" for k, v in kwargs.items())
        full_message = f"{message} | {metrics_str}"
    else:
        full_message = message

    logger.info(full_message, extra=extra)


class WarningLogger:
    """Captures warnings and categorizes them for analysis.

    Categories:
    - convergence: IRLS or smoothing-parameter search issues
    - numerical: Overflow, underflow, invalid values
    - separation: Saturated fitted probabilities
    - data: Data quality issues
    - other: Uncategorized warnings
    """

    WARNING_CATEGORIES = {
        'convergence': ['ConvergenceWarning', 'did not converge', 'maximum iterations', 'maxiter'],
        'numerical': ['overflow', 'underflow', 'invalid value', 'divide by zero', 'singular'],
        'separation': ['separation', 'saturated'],
        'data': ['missing values', 'insufficient', 'non-finite'],
    }

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.warning_counts = {cat: 0 for cat in self.WARNING_CATEGORIES}
        self.warning_counts['other'] = 0

    def categorize_warning(self, message: str) -> str:
        """Categorize a warning message based on keywords.

        Args:
            message: Warning message text

        Returns:
            Category name (convergence, numerical, separation, data, other)
        """
        message_lower = message.lower()
        for category, keywords in self.WARNING_CATEGORIES.items():
            if any(kw.lower() in message_lower for kw in keywords):
                return category
        return 'other'

    def log_warning(self, message: str, category: Optional[str] = None):
        if category is None:
            category = self.categorize_warning(message)

        self.warning_counts[category] += 1
        self.logger.warning(f"[{category.upper()}] {message}")

    def summary(self) -> dict:
        """Return {category: count} for categories that saw warnings."""
        return {k: v for k, v in self.warning_counts.items() if v > 0}


@contextmanager
def capture_warnings(logger: logging.Logger):
    """Redirect Python warnings raised inside the block to the logger.

    Args:
        logger: Logger instance

    Yields:
        WarningLogger instance for accessing warning counts

    Example:
        >>> with capture_warnings(logger) as warning_logger:
        ...     fit_group_model(rows, "Piper", config)
        >>> warning_logger.summary()
        {'numerical': 1}
    """
    warning_logger = WarningLogger(logger)

    def warning_handler(message, category, filename, lineno, file=None, line=None):
        warning_logger.log_warning(f"{message}")

    old_showwarning = warnings.showwarning
    warnings.showwarning = warning_handler

    try:
        yield warning_logger
    finally:
        warnings.showwarning = old_showwarning

        summary = warning_logger.summary()
        if summary:
            summary_str = ", ".join(f"{k}={v}" for k, v in summary.items())
            logger.info(f"Warning summary: {summary_str}")


class ProgressLogger:
    """Logs progress updates over a known number of steps.

    Example:
        >>> progress = ProgressLogger(logger, total=12, desc="Group fitting")
        >>> progress.update(1, metrics={'group': 'Faramea', 'state': 'accepted'})
        # Output: "Group fitting: 1/12 (8.3%) | group=Faramea, state=accepted"
    """

    def __init__(
        self,
        logger: logging.Logger,
        total: int,
        desc: str,
        log_interval: int = 1
    ):
        self.logger = logger
        self.total = total
        self.desc = desc
        self.log_interval = log_interval
        self.current = 0

    def update(self, n: int = 1, metrics: Optional[dict] = None):
        """Advance progress by n steps and log when due.

        Args:
            n: Number of steps to advance
            metrics: Optional dict of values to include in the message
        """
        self.current += n

        if self.current % self.log_interval == 0 or self.current == self.total:
            pct = (self.current / self.total) * 100 if self.total else 100.0
            msg = f"{self.desc}: {self.current}/{self.total} ({pct:.1f}%)"

            if metrics:
                metrics_str = ", ".join(f"{k}={v:.4f}" if isinstance(v, float) else f"{k}={v}"
                                        for k, v in metrics.items())
                msg += f" | {metrics_str}"

            self.logger.info(msg)
