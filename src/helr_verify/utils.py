"""
Utility functions and decorators for the HELR-Verify system.

This module provides the timing decorator used around compilation and
authentication steps, identifier generation for verification requests and
structlog setup for the command-line entry point.
"""

import functools
import logging
import time
import uuid
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def timer(func: F) -> F:
    """
    Decorator to measure and log function execution time.

    Parameters
    ----------
    func : Callable
        Function to be timed.

    Returns
    -------
    Callable
        Wrapped function with timing capability.

    Examples
    --------
    >>> @timer
    ... def compile_template():
    ...     return "done"
    >>> result = compile_template()  # Logs execution time
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(
                "Function execution failed",
                function_name=func.__qualname__,
                module=func.__module__,
                execution_time_ms=(time.perf_counter() - start_time) * 1000,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        logger.debug(
            "Function execution completed",
            function_name=func.__qualname__,
            module=func.__module__,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
        )
        return result

    return wrapper


def configure_logging(level: str = "INFO") -> None:
    """
    Configure structlog output for command-line use.

    Library code only obtains loggers; applications decide where the events
    go. Events below ``level`` are dropped before rendering.

    Parameters
    ----------
    level : str, default="INFO"
        Standard logging level name.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=False,
    )


def generate_verification_id(prefix: str = "verify") -> str:
    """
    Generate a unique verification identifier.

    Examples
    --------
    >>> generate_verification_id("bench")  # e.g. "bench_20240101_123456_abc12345"
    """
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    unique_suffix = str(uuid.uuid4())[:8]
    return f"{prefix}_{timestamp}_{unique_suffix}"
