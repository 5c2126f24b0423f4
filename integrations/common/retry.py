"""Shared retry helper with pluggable backoff for async and sync callables."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from integrations.common.logging import StructuredLogger, get_logger

__all__ = [
    "Backoff",
    "RetryPolicy",
    "exponential_backoff",
    "linear_backoff",
    "retry_async",
    "retry_sync",
]

T = TypeVar("T")

Backoff = Callable[[int], float]

_logger = get_logger("integrations.retry")


def exponential_backoff(base: float = 1.0, cap: Optional[float] = None) -> Backoff:
    """Return ``base * 2 ** (attempt - 1)`` seconds, optionally capped."""

    def _delay(attempt: int) -> float:
        wait = base * (2 ** (attempt - 1))
        return min(wait, cap) if cap is not None else wait

    return _delay


def linear_backoff(step: float = 2.0) -> Backoff:
    """Return ``step * attempt`` seconds."""

    def _delay(attempt: int) -> float:
        return step * attempt

    return _delay


def _always(_: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait between attempts."""

    max_attempts: int = 3
    backoff: Backoff = field(default_factory=exponential_backoff)
    should_retry: Callable[[BaseException], bool] = _always

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


def _log_retry(
    logger: StructuredLogger,
    label: str,
    attempt: int,
    policy: RetryPolicy,
    wait: float,
    error: BaseException,
) -> None:
    logger.warning(
        "Transient failure, backing off",
        metrics={
            "operation": label,
            "attempt": attempt,
            "max_attempts": policy.max_attempts,
            "sleep_seconds": wait,
            "error": f"{error.__class__.__name__}: {error}",
        },
    )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "",
    logger: Optional[StructuredLogger] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``func()`` until it succeeds or the policy gives up.

    Errors the policy does not consider retryable propagate immediately.
    After the last attempt the final error is re-raised unchanged.
    """
    log = logger or _logger
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:  # pylint: disable=broad-except
            if attempt >= policy.max_attempts or not policy.should_retry(exc):
                raise
            wait = policy.backoff(attempt)
            _log_retry(log, label, attempt, policy, wait, exc)
            await sleep(wait)
            attempt += 1


def retry_sync(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str = "",
    logger: Optional[StructuredLogger] = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Blocking counterpart of :func:`retry_async` used for datastore calls."""
    log = logger or _logger
    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:  # pylint: disable=broad-except
            if attempt >= policy.max_attempts or not policy.should_retry(exc):
                raise
            wait = policy.backoff(attempt)
            _log_retry(log, label, attempt, policy, wait, exc)
            sleep(wait)
            attempt += 1
