"""Tests for the asyncio work queue."""

import asyncio
from typing import Any

import pytest

from skills_mcp.engine import JobType, WorkQueue


def make_queue(
    skill_workers: int = 1, unit_workers: int = 2
) -> tuple[WorkQueue, list[tuple[JobType, dict[str, Any]]]]:
    queue = WorkQueue(skill_workers=skill_workers, unit_workers=unit_workers)
    seen: list[tuple[JobType, dict[str, Any]]] = []

    async def skill_handler(payload: dict[str, Any]) -> None:
        seen.append((JobType.EXECUTE_SKILL, payload))

    async def unit_handler(payload: dict[str, Any]) -> None:
        if payload.get("explode"):
            raise RuntimeError("handler failure")
        seen.append((JobType.EXECUTE_UNIT, payload))

    queue.register_handler(JobType.EXECUTE_SKILL, skill_handler)
    queue.register_handler(JobType.EXECUTE_UNIT, unit_handler)
    return queue, seen


@pytest.mark.parametrize("skill_workers,unit_workers", [(0, 2), (2, 0)])
def test_each_pool_needs_a_worker(skill_workers, unit_workers):
    with pytest.raises(ValueError, match="at least 1 worker"):
        WorkQueue(skill_workers=skill_workers, unit_workers=unit_workers)


@pytest.mark.asyncio
async def test_start_requires_all_handlers():
    queue = WorkQueue()
    queue.register_handler(JobType.EXECUTE_SKILL, lambda payload: asyncio.sleep(0))

    with pytest.raises(RuntimeError, match="execute-unit"):
        await queue.start()


@pytest.mark.asyncio
async def test_enqueue_before_start_fails():
    queue, _ = make_queue()
    with pytest.raises(RuntimeError, match="not started"):
        await queue.enqueue(JobType.EXECUTE_SKILL, {})


@pytest.mark.asyncio
async def test_jobs_are_routed_by_type():
    queue, seen = make_queue()
    await queue.start()

    job_id = await queue.enqueue(JobType.EXECUTE_SKILL, {"n": 1})
    await queue.enqueue(JobType.EXECUTE_UNIT, {"n": 2})
    await queue.stop(wait_for_completion=True)

    assert job_id.startswith("job_")
    assert sorted(seen, key=lambda item: item[1]["n"]) == [
        (JobType.EXECUTE_SKILL, {"n": 1}),
        (JobType.EXECUTE_UNIT, {"n": 2}),
    ]


@pytest.mark.asyncio
async def test_busy_skill_workers_do_not_block_unit_jobs():
    """Every skill worker waits on unit jobs; the unit pool must still drain them."""
    queue = WorkQueue(skill_workers=2, unit_workers=1)
    units_done: dict[int, asyncio.Event] = {n: asyncio.Event() for n in range(2)}
    finished: list[int] = []

    async def skill_handler(payload: dict[str, Any]) -> None:
        n = payload["n"]
        await queue.enqueue(JobType.EXECUTE_UNIT, {"n": n})
        await units_done[n].wait()
        finished.append(n)

    async def unit_handler(payload: dict[str, Any]) -> None:
        units_done[payload["n"]].set()

    queue.register_handler(JobType.EXECUTE_SKILL, skill_handler)
    queue.register_handler(JobType.EXECUTE_UNIT, unit_handler)
    await queue.start()

    await queue.enqueue(JobType.EXECUTE_SKILL, {"n": 0})
    await queue.enqueue(JobType.EXECUTE_SKILL, {"n": 1})
    await asyncio.wait_for(queue.stop(wait_for_completion=True), timeout=2)

    assert sorted(finished) == [0, 1]


@pytest.mark.asyncio
async def test_handler_errors_do_not_kill_workers():
    queue, seen = make_queue(unit_workers=2)
    await queue.start()

    await queue.enqueue(JobType.EXECUTE_UNIT, {"explode": True})
    await queue.enqueue(JobType.EXECUTE_UNIT, {"explode": True})
    await queue.enqueue(JobType.EXECUTE_UNIT, {"n": 3})

    stats_before_stop = None
    for _ in range(50):
        stats_before_stop = queue.get_stats()
        if stats_before_stop["processed_jobs"] + stats_before_stop["failed_jobs"] == 3:
            break
        await asyncio.sleep(0.01)

    assert stats_before_stop["failed_jobs"] == 2
    assert stats_before_stop["processed_jobs"] == 1
    assert stats_before_stop["active_workers"] == 3
    assert stats_before_stop["pools"]["execute-unit"]["active_workers"] == 2
    assert seen == [(JobType.EXECUTE_UNIT, {"n": 3})]

    await queue.stop()


@pytest.mark.asyncio
async def test_stats_report_each_pool():
    queue, _ = make_queue(skill_workers=3, unit_workers=5)
    await queue.start()

    stats = queue.get_stats()

    assert stats["pools"] == {
        "execute-skill": {"workers": 3, "active_workers": 3, "queue_size": 0},
        "execute-unit": {"workers": 5, "active_workers": 5, "queue_size": 0},
    }
    assert stats["active_workers"] == 8

    await queue.stop()
    assert queue.get_stats()["active_workers"] == 0


@pytest.mark.asyncio
async def test_delayed_job_runs_after_delay():
    queue, seen = make_queue()
    await queue.start()
    loop = asyncio.get_running_loop()

    started = loop.time()
    await queue.enqueue(JobType.EXECUTE_UNIT, {"n": 1}, delay_ms=100)

    assert seen == []
    assert queue.get_stats()["delayed_size"] == 1

    await queue.stop(wait_for_completion=True)

    assert seen == [(JobType.EXECUTE_UNIT, {"n": 1})]
    assert loop.time() - started >= 0.09
    assert queue.get_stats()["delayed_jobs"] == 1


@pytest.mark.asyncio
async def test_stop_without_waiting_drops_delayed_jobs():
    queue, seen = make_queue()
    await queue.start()

    await queue.enqueue(JobType.EXECUTE_UNIT, {"n": 1}, delay_ms=5000)
    await queue.stop(wait_for_completion=False)

    assert seen == []
    assert queue.get_stats()["delayed_size"] == 0
    with pytest.raises(RuntimeError, match="not started"):
        await queue.enqueue(JobType.EXECUTE_UNIT, {"n": 2})
