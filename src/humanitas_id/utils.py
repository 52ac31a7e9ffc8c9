"""
Utility functions and decorators for the HUMANITAS ID system.

This module provides the logging setup, security-event logging, timing and
retry decorators, token generation and clock helpers used across the
identity-binding pipeline.
"""

import functools
import logging
import secrets
import sys
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

import structlog

from .constants import SESSION_TOKEN_BYTES

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])

# Clock signature: returns epoch seconds
Clock = Callable[[], float]


def configure_logging(level: Optional[str] = None, structured: Optional[bool] = None) -> None:
    """
    Configure structlog for the process.

    Parameters
    ----------
    level : str, optional
        Log level name. Defaults to ``config.LOG_LEVEL``.
    structured : bool, optional
        Render JSON lines when True, the console format otherwise. Defaults
        to ``config.STRUCTURED_LOGGING``.
    """
    from . import config

    level_name = (level or config.LOG_LEVEL).upper()
    use_json = config.STRUCTURED_LOGGING if structured is None else structured

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def log_security_event(event: str, identity_ref: Optional[str], **fields: Any) -> None:
    """
    Log a security-relevant event.

    Only identity, timestamp and small scalar fields are recorded; callers
    must never pass payloads, feature values, salts or signatures.

    Parameters
    ----------
    event : str
        Event name, e.g. ``"invalid_signature"``.
    identity_ref : str, optional
        Identity involved.
    **fields
        Extra scalar context (purpose, modality, error code).
    """
    logger.warning(
        event,
        security_event=True,
        identity_ref=identity_ref,
        occurred_at=utc_now().isoformat(),
        **fields,
    )


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
    ... def slow_function():
    ...     time.sleep(1)
    ...     return "done"
    >>> result = slow_function()  # Logs execution time
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.debug(
                "Function execution failed",
                function_name=func.__qualname__,
                module=func.__module__,
                execution_time_ms=(time.perf_counter() - start_time) * 1000,
                error_type=type(e).__name__,
                success=False,
            )
            raise

        logger.debug(
            "Function execution completed",
            function_name=func.__qualname__,
            module=func.__module__,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
            success=True,
        )
        return result

    return wrapper  # type: ignore[return-value]


def retry(
    max_attempts: int = 3,
    delay: float = 0.05,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
) -> Callable[[F], F]:
    """
    Decorator to retry function execution on failure.

    Parameters
    ----------
    max_attempts : int, default=3
        Maximum number of attempts.
    delay : float, default=0.05
        Initial delay between retries in seconds.
    backoff : float, default=2.0
        Backoff multiplier for delay.
    exceptions : tuple, default=(Exception,)
        Tuple of exception types to catch and retry.
    should_retry : Callable, optional
        Extra predicate on the caught exception; a False result re-raises
        immediately.

    Returns
    -------
    Callable
        Decorator function.

    Examples
    --------
    >>> @retry(max_attempts=3, delay=0.5)
    ... def unreliable_function():
    ...     # Function that might fail temporarily
    ...     pass
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)

                except exceptions as e:
                    if should_retry is not None and not should_retry(e):
                        raise

                    if attempt == max_attempts:
                        logger.error(
                            f"Function {func.__name__} failed after all retries",
                            total_attempts=max_attempts,
                            error_type=type(e).__name__,
                        )
                        raise

                    logger.warning(
                        f"Function {func.__name__} failed, retrying",
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay_seconds=current_delay,
                        error_type=type(e).__name__,
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff

        return wrapper  # type: ignore[return-value]

    return decorator


def generate_session_token(num_bytes: int = SESSION_TOKEN_BYTES) -> str:
    """
    Generate an unguessable, URL-safe session token.

    Parameters
    ----------
    num_bytes : int, default=SESSION_TOKEN_BYTES
        Random bytes of entropy; at least 16 (128 bits).

    Returns
    -------
    str
        Token string.
    """
    if num_bytes < 16:
        raise ValueError("Session tokens need at least 16 bytes of entropy")
    return secrets.token_urlsafe(num_bytes)


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Perform safe division with default value for zero denominator.

    Examples
    --------
    >>> safe_divide(10, 2)
    5.0
    >>> safe_divide(10, 0)
    0.0
    """
    if denominator == 0:
        return default
    return numerator / denominator


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def system_clock() -> float:
    """Wall-clock epoch seconds."""
    return time.time()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
