"""Lightweight logging helpers shared across integrations."""

from __future__ import annotations

import functools
import inspect
import json
import logging
import os
import sys
import time
from typing import Any, Callable, Dict, Optional, TypeVar

__all__ = [
    "Metrics",
    "StructuredLogger",
    "get_logger",
    "setup_integrations_logger",
    "log_execution_time",
    "log_data_operation",
]

Metrics = Dict[str, Any]

_LOGGER_CONFIGURED = False


class StructuredLogger(logging.Logger):
    """Logger that supports optional ``metrics`` keyword argument."""

    def _attach_metrics(self, message: str, metrics: Optional[Metrics]) -> str:
        if not metrics:
            return message
        try:
            serialized = json.dumps(metrics, ensure_ascii=False, default=str)
        except TypeError:
            serialized = str(metrics)
        return f"{message} | metrics={serialized}"

    def debug(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        super().debug(self._attach_metrics(msg, metrics), *args, **kwargs)

    def info(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        super().info(self._attach_metrics(msg, metrics), *args, **kwargs)

    def warning(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        super().warning(self._attach_metrics(msg, metrics), *args, **kwargs)

    def error(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        super().error(self._attach_metrics(msg, metrics), *args, **kwargs)

    def exception(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        kwargs.setdefault("exc_info", True)
        super().error(self._attach_metrics(msg, metrics), *args, **kwargs)

    def critical(self, msg: str, *args: Any, metrics: Optional[Metrics] = None, **kwargs: Any) -> None:  # type: ignore[override]
        super().critical(self._attach_metrics(msg, metrics), *args, **kwargs)


def _configure_root_logger() -> None:
    """Initialise root logger to emit ISO timestamps to stdout."""
    global _LOGGER_CONFIGURED  # pylint: disable=global-statement

    if _LOGGER_CONFIGURED:
        return

    logging.setLoggerClass(StructuredLogger)

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)sZ %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    formatter.converter = time.gmtime  # type: ignore[attr-defined]
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    level_name = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)  # type: ignore[attr-defined]
    root.setLevel(level_name if isinstance(level_name, int) else logging.INFO)

    _LOGGER_CONFIGURED = True


def get_logger(name: str) -> StructuredLogger:
    """Return a configured structured logger."""
    _configure_root_logger()
    logger = logging.getLogger(name)
    if not isinstance(logger, StructuredLogger):
        # Created before the logger class was swapped (e.g. by a third-party import).
        logging.Logger.manager.loggerDict.pop(name, None)
        logger = logging.getLogger(name)
    return logger  # type: ignore[return-value]


def setup_integrations_logger(name: str) -> StructuredLogger:
    """Helper used across integrations for consistent logging."""
    return get_logger(name)


F = TypeVar("F", bound=Callable[..., Any])


def log_execution_time(logger: StructuredLogger) -> Callable[[F], F]:
    """Decorator that measures execution time and logs it on completion.

    Works for plain functions and coroutine functions alike.
    """

    def _finish(func: Callable[..., Any], start: float) -> None:
        logger.info(
            "Execution finished",
            metrics={
                "function": func.__name__,
                "duration_seconds": round(time.monotonic() - start, 4),
            },
        )

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any):
                start = time.monotonic()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _finish(func, start)

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            start = time.monotonic()
            try:
                return func(*args, **kwargs)
            finally:
                _finish(func, start)

        return wrapper  # type: ignore[return-value]

    return decorator


def _row_count(result: Any) -> Optional[int]:
    if isinstance(result, int) and not isinstance(result, bool):
        return result
    if isinstance(result, (list, tuple, set)):
        return len(result)
    if isinstance(result, dict) and "rows" in result:
        try:
            return len(result["rows"])  # type: ignore[arg-type]
        except TypeError:
            return result.get("rows")
    return None


def log_data_operation(
    logger: StructuredLogger,
    operation: str,
    source: str,
    target: str,
) -> Callable[[F], F]:
    """Decorator that logs start/end metadata for data movement steps."""

    def decorator(func: F) -> F:
        base = {
            "operation": operation,
            "source": source,
            "target": target,
            "function": func.__name__,
        }

        def _started() -> float:
            logger.info("Starting data operation", metrics=base)
            return time.monotonic()

        def _finished(start: float, result: Any) -> None:
            logger.info(
                "Finished data operation",
                metrics={
                    **base,
                    "duration_seconds": round(time.monotonic() - start, 4),
                    "rows": _row_count(result),
                },
            )

        def _failed(start: float) -> None:
            logger.error(
                "Data operation failed",
                metrics={**base, "duration_seconds": round(time.monotonic() - start, 4)},
                exc_info=True,
            )

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any):
                start = _started()
                try:
                    result = await func(*args, **kwargs)
                except Exception:  # pylint: disable=broad-except
                    _failed(start)
                    raise
                _finished(start, result)
                return result

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            start = _started()
            try:
                result = func(*args, **kwargs)
            except Exception:  # pylint: disable=broad-except
                _failed(start)
                raise
            _finished(start, result)
            return result

        return wrapper  # type: ignore[return-value]

    return decorator
