from __future__ import annotations

import asyncio
import functools
from unittest.mock import MagicMock

import pytest

from integrations.tixr.executor import BoundedExecutor, ProgressTracker


@pytest.mark.asyncio
async def test_never_more_than_limit_tasks_in_flight():
    in_flight = 0
    peak = 0

    async def job(value: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return value * 2

    outcomes = await BoundedExecutor(5).run([(i, functools.partial(job, i)) for i in range(20)])

    assert peak == 5
    assert [o.key for o in outcomes] == list(range(20))
    assert [o.value for o in outcomes] == [i * 2 for i in range(20)]


@pytest.mark.asyncio
async def test_results_follow_submission_order_not_completion_order():
    async def job(delay: float, value: str) -> str:
        await asyncio.sleep(delay)
        return value

    tasks = [("slow", functools.partial(job, 0.03, "a")), ("fast", functools.partial(job, 0.0, "b"))]
    outcomes = await BoundedExecutor(2).run(tasks)

    assert [(o.key, o.value) for o in outcomes] == [("slow", "a"), ("fast", "b")]


@pytest.mark.asyncio
async def test_failed_task_does_not_cancel_siblings():
    async def job(value: int) -> int:
        if value == 3:
            raise ValueError("bad serial")
        return value

    outcomes = await BoundedExecutor(2).run([(i, functools.partial(job, i)) for i in range(6)])

    assert len(outcomes) == 6
    failed = [o for o in outcomes if not o.ok]
    assert [o.key for o in failed] == [3]
    assert isinstance(failed[0].error, ValueError)
    assert [o.value for o in outcomes if o.ok] == [0, 1, 2, 4, 5]


@pytest.mark.asyncio
async def test_fail_fast_reraises_first_error_and_stops_pending_work():
    started = []

    async def job(value: int) -> int:
        started.append(value)
        if value == 0:
            raise RuntimeError("first")
        await asyncio.sleep(0.05)
        return value

    with pytest.raises(RuntimeError, match="first"):
        await BoundedExecutor(2).run([(i, functools.partial(job, i)) for i in range(10)], fail_fast=True)

    assert len(started) < 10


@pytest.mark.asyncio
async def test_empty_task_list():
    assert await BoundedExecutor(3).run([]) == []


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        BoundedExecutor(0)


@pytest.mark.asyncio
async def test_progress_tracker_observes_without_changing_results():
    logger = MagicMock()
    ticks = iter(float(i) for i in range(100))
    progress = ProgressTracker(4, label="serials", logger=logger, log_every=50, clock=lambda: next(ticks))

    async def job(value: int) -> int:
        if value == 1:
            raise KeyError(value)
        return value

    outcomes = await BoundedExecutor(2).run([(i, functools.partial(job, i)) for i in range(4)], progress=progress)

    assert len(outcomes) == 4
    assert progress.completed == 4
    assert progress.failed == 1
    assert progress.percent == 100.0
    assert progress.eta_seconds == 0.0
    last = logger.info.call_args.kwargs["metrics"]
    assert last["completed"] == 4 and last["label"] == "serials"


def test_progress_eta_is_unknown_before_first_completion():
    progress = ProgressTracker(10, logger=MagicMock(), clock=lambda: 0.0)
    assert progress.eta_seconds is None
    assert progress.percent == 0.0
