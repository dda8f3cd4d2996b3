"""Performance Logging.

Timing decorator for coroutine entry points such as ``handle_event``.
"""

import functools
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from src.logging_config.config import DEFAULT_LOGGING_CONFIG

T = TypeVar("T")


def log_performance(
    threshold_ms: Optional[float] = None,
    logger_name: Optional[str] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator that logs coroutine execution time.

    Every call is logged at DEBUG, calls above ``threshold_ms`` at WARNING
    and failures at ERROR, each with a ``duration_ms`` field.

    Example:
        @log_performance(threshold_ms=500)
        async def handle_event(self, event):
            ...
    """
    if threshold_ms is None:
        threshold_ms = DEFAULT_LOGGING_CONFIG.slow_threshold_ms

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        _logger = logging.getLogger(logger_name or func.__module__)
        func_name = func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.perf_counter()
            failed = False
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                failed = True
                duration_ms = (time.perf_counter() - start) * 1000
                _logger.error(
                    f"{func_name} failed after {duration_ms:.1f}ms: {type(exc).__name__}",
                    extra={"duration_ms": round(duration_ms, 2)},
                )
                raise
            finally:
                if not failed:
                    duration_ms = (time.perf_counter() - start) * 1000
                    extra = {"duration_ms": round(duration_ms, 2)}
                    if duration_ms >= threshold_ms:
                        _logger.warning(f"Slow operation: {func_name} took {duration_ms:.1f}ms", extra=extra)
                    else:
                        _logger.debug(f"{func_name} completed in {duration_ms:.1f}ms", extra=extra)

        return wrapper

    return decorator
