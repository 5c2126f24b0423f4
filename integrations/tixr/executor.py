"""Bounded-concurrency task runner used for per-serial, per-event and per-user lookups."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from integrations.common.logging import StructuredLogger, setup_integrations_logger

TaskFactory = Callable[[], Awaitable[Any]]
Task = Tuple[Any, TaskFactory]


@dataclass
class TaskOutcome:
    key: Any
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ProgressTracker:
    """Read-only observer reporting completion percentage and ETA.

    Logs at most once per ``log_every`` percent so large runs stay readable.
    """

    def __init__(
        self,
        total: int,
        *,
        label: str = "tasks",
        logger: Optional[StructuredLogger] = None,
        log_every: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total = max(total, 0)
        self.label = label
        self.logger = logger or setup_integrations_logger("tixr")
        self.log_every = max(log_every, 1)
        self._clock = clock
        self._started = clock()
        self.completed = 0
        self.failed = 0
        self._last_bucket = -1

    @property
    def percent(self) -> float:
        if not self.total:
            return 100.0
        return round(100.0 * self.completed / self.total, 1)

    @property
    def eta_seconds(self) -> Optional[float]:
        if self.completed >= self.total:
            return 0.0
        if not self.completed:
            return None
        elapsed = self._clock() - self._started
        rate = self.completed / elapsed if elapsed > 0 else 0.0
        if rate <= 0:
            return None
        return round((self.total - self.completed) / rate, 1)

    def advance(self, *, failed: bool = False) -> None:
        self.completed += 1
        if failed:
            self.failed += 1
        bucket = int(self.percent // self.log_every)
        if bucket != self._last_bucket or self.completed == self.total:
            self._last_bucket = bucket
            self.logger.info(
                "Progress",
                metrics={
                    "label": self.label,
                    "completed": self.completed,
                    "total": self.total,
                    "failed": self.failed,
                    "percent": self.percent,
                    "eta_seconds": self.eta_seconds,
                },
            )


class BoundedExecutor:
    """Runs async task factories with at most ``limit`` in flight.

    Workers pull from a FIFO queue. Outcomes come back in submission order,
    one per task, so callers can map each result back to its key.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit

    async def run(
        self,
        tasks: Iterable[Task],
        *,
        fail_fast: bool = False,
        progress: Optional[ProgressTracker] = None,
    ) -> List[TaskOutcome]:
        items = list(tasks)
        outcomes: List[Optional[TaskOutcome]] = [None] * len(items)
        if not items:
            return []

        queue: "asyncio.Queue[Tuple[int, Any, TaskFactory]]" = asyncio.Queue()
        for index, (key, factory) in enumerate(items):
            queue.put_nowait((index, key, factory))

        first_error: List[BaseException] = []

        async def _worker() -> None:
            while True:
                try:
                    index, key, factory = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    value = await factory()
                except Exception as exc:  # pylint: disable=broad-except
                    outcomes[index] = TaskOutcome(key, error=exc)
                    if progress is not None:
                        progress.advance(failed=True)
                    if fail_fast:
                        first_error.append(exc)
                        raise
                else:
                    outcomes[index] = TaskOutcome(key, value=value)
                    if progress is not None:
                        progress.advance()

        workers = [
            asyncio.ensure_future(_worker()) for _ in range(min(self.limit, len(items)))
        ]
        if fail_fast:
            done, pending = await asyncio.wait(workers, return_when=asyncio.FIRST_EXCEPTION)
            if first_error:
                for task in done:
                    task.exception()
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                raise first_error[0]
            # Surface unexpected worker crashes (e.g. cancellation) as-is.
            for task in done:
                task.result()
        else:
            await asyncio.gather(*workers)

        return [outcome for outcome in outcomes if outcome is not None]
