from __future__ import annotations

import asyncio
from typing import Any

import pytest

from linkshelf.jobs.connectivity import StaticNetworkGate
from linkshelf.jobs.scheduler import (
    EnrichmentScheduler,
    JobState,
    NonRetryableJobError,
    compute_retry_delay_seconds,
)


def _scheduler(handler, **kwargs: Any) -> EnrichmentScheduler:
    kwargs.setdefault("retry_base_seconds", 0.01)
    kwargs.setdefault("retry_max_seconds", 0.05)
    return EnrichmentScheduler(handler, **kwargs)


@pytest.mark.parametrize(
    ("attempt", "expected"),
    [(1, 10.0), (2, 20.0), (3, 40.0), (12, 3600.0)],
)
def test_compute_retry_delay_seconds_doubles_until_cap(attempt: int, expected: float) -> None:
    assert compute_retry_delay_seconds(attempt, base_seconds=10.0, max_seconds=3600.0) == expected


def test_job_succeeds_and_keeps_handler_result() -> None:
    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            return {"handled": True, "link_id": link_id}

        scheduler = _scheduler(handler)
        scheduler.start()
        scheduler.enqueue(7)
        assert await scheduler.drain(timeout=1.0)

        job = scheduler.get_job(7)
        assert job is not None
        assert job.state == JobState.SUCCEEDED
        assert job.attempt == 1
        assert job.result == {"handled": True, "link_id": 7}
        assert job.finished_at is not None
        await scheduler.stop()

    asyncio.run(run())


def test_failed_attempts_back_off_exponentially() -> None:
    attempts: list[int] = []

    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            attempts.append(link_id)
            if len(attempts) < 3:
                raise ConnectionError("network down")
            return {"handled": True}

        scheduler = _scheduler(handler, retry_base_seconds=0.01, retry_max_seconds=1.0)
        scheduler.start()
        scheduler.enqueue(1)
        assert await scheduler.drain(timeout=2.0)

        job = scheduler.get_job(1)
        assert job is not None
        assert job.state == JobState.SUCCEEDED
        assert job.attempt == 3
        assert job.retry_delays == [0.01, 0.02]
        assert job.last_error == "ConnectionError: network down"
        await scheduler.stop()

    asyncio.run(run())


def test_job_is_retrying_between_attempts() -> None:
    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            raise TimeoutError("slow")

        scheduler = _scheduler(handler, retry_base_seconds=30.0, retry_max_seconds=60.0)
        scheduler.start()
        job = scheduler.enqueue(1)
        assert await scheduler.drain(timeout=0.2) is False

        assert job.state == JobState.RETRYING
        assert job.retry_delays == [30.0]
        assert scheduler.pending_count == 1
        await scheduler.stop()

    asyncio.run(run())


def test_retries_stop_at_max_attempts() -> None:
    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            raise ConnectionError("unreachable")

        scheduler = _scheduler(handler, retry_base_seconds=0.001, max_attempts=3)
        scheduler.start()
        scheduler.enqueue(2)
        assert await scheduler.drain(timeout=2.0)

        job = scheduler.get_job(2)
        assert job is not None
        assert job.state == JobState.FAILED
        assert job.attempt == 3
        assert len(job.retry_delays) == 2
        await scheduler.stop()

    asyncio.run(run())


def test_non_retryable_error_fails_immediately() -> None:
    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            raise NonRetryableJobError("link is gone")

        scheduler = _scheduler(handler)
        scheduler.start()
        scheduler.enqueue(3)
        assert await scheduler.drain(timeout=1.0)

        job = scheduler.get_job(3)
        assert job is not None
        assert job.state == JobState.FAILED
        assert job.attempt == 1
        assert job.last_error == "link is gone"
        await scheduler.stop()

    asyncio.run(run())


def test_requeue_while_queued_replaces_job() -> None:
    calls: list[int] = []

    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            calls.append(link_id)
            return {"handled": True}

        gate = StaticNetworkGate(online=False)
        scheduler = _scheduler(handler, gate=gate)
        scheduler.start()
        first = scheduler.enqueue(5, reason="ingest")
        await asyncio.sleep(0.01)
        latest = scheduler.enqueue(5, reason="refresh")
        assert scheduler.pending_count == 1
        assert first.state == JobState.QUEUED
        assert calls == []

        gate.set_online()
        assert await scheduler.drain(timeout=1.0)

        assert calls == [5]
        assert scheduler.get_job(5) is latest
        assert latest.reason == "refresh"
        assert latest.state == JobState.SUCCEEDED
        assert first.attempt == 0
        await scheduler.stop()

    asyncio.run(run())


def test_requeue_while_retrying_replaces_pending_retry() -> None:
    calls: list[int] = []

    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            calls.append(link_id)
            if len(calls) == 1:
                raise ConnectionError("flaky")
            return {"handled": True}

        scheduler = _scheduler(handler, retry_base_seconds=30.0, retry_max_seconds=60.0)
        scheduler.start()
        first = scheduler.enqueue(4)
        await scheduler.drain(timeout=0.1)
        assert first.state == JobState.RETRYING

        latest = scheduler.enqueue(4, reason="refresh")
        assert await scheduler.drain(timeout=1.0)

        assert calls == [4, 4]
        assert latest.state == JobState.SUCCEEDED
        assert latest.attempt == 1
        await scheduler.stop()

    asyncio.run(run())


def test_running_job_is_not_preempted_by_requeue() -> None:
    calls: list[int] = []

    async def run() -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(link_id: int) -> dict[str, Any]:
            calls.append(link_id)
            started.set()
            await release.wait()
            return {"handled": True}

        scheduler = _scheduler(handler)
        scheduler.start()
        running = scheduler.enqueue(9, reason="ingest")
        await asyncio.wait_for(started.wait(), timeout=1.0)

        latest = scheduler.enqueue(9, reason="refresh")
        assert scheduler.get_job(9) is running
        assert running.state == JobState.RUNNING
        assert scheduler.running_count == 1

        release.set()
        assert await scheduler.drain(timeout=1.0)

        assert calls == [9, 9]
        assert running.state == JobState.SUCCEEDED
        assert latest.state == JobState.SUCCEEDED
        assert scheduler.get_job(9) is latest
        await scheduler.stop()

    asyncio.run(run())


def test_cancel_removes_queued_job() -> None:
    calls: list[int] = []

    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            calls.append(link_id)
            return {"handled": True}

        gate = StaticNetworkGate(online=False)
        scheduler = _scheduler(handler, gate=gate)
        scheduler.start()
        job = scheduler.enqueue(6)

        assert scheduler.cancel(6) is True
        assert job.state == JobState.CANCELLED
        gate.set_online()
        assert await scheduler.drain(timeout=1.0)
        await asyncio.sleep(0.01)

        assert calls == []
        assert scheduler.cancel(6) is False
        await scheduler.stop()

    asyncio.run(run())


def test_cancel_interrupts_running_job() -> None:
    async def run() -> None:
        started = asyncio.Event()

        async def handler(link_id: int) -> dict[str, Any]:
            started.set()
            await asyncio.Event().wait()
            return {"handled": True}

        scheduler = _scheduler(handler)
        scheduler.start()
        job = scheduler.enqueue(8)
        await asyncio.wait_for(started.wait(), timeout=1.0)

        assert scheduler.cancel(8) is True
        assert await scheduler.drain(timeout=1.0)

        assert job.state == JobState.CANCELLED
        assert job.attempt == 1
        await scheduler.stop()

    asyncio.run(run())


def test_jobs_for_different_links_run_concurrently() -> None:
    async def run() -> None:
        both_running = asyncio.Event()
        active: set[int] = set()

        async def handler(link_id: int) -> dict[str, Any]:
            active.add(link_id)
            if len(active) == 2:
                both_running.set()
            await asyncio.wait_for(both_running.wait(), timeout=1.0)
            return {"handled": True}

        scheduler = _scheduler(handler, concurrency=2)
        scheduler.start()
        scheduler.enqueue(1)
        scheduler.enqueue(2)
        assert await scheduler.drain(timeout=2.0)

        assert scheduler.get_job(1).state == JobState.SUCCEEDED
        assert scheduler.get_job(2).state == JobState.SUCCEEDED
        await scheduler.stop()

    asyncio.run(run())


def test_stop_cancels_pending_jobs_and_unblocks_drain() -> None:
    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            return {"handled": True}

        scheduler = _scheduler(handler, gate=StaticNetworkGate(online=False))
        scheduler.start()
        queued = scheduler.enqueue(1)
        await asyncio.sleep(0.01)

        await scheduler.stop()

        assert await asyncio.wait_for(scheduler.drain(), timeout=1.0) is True
        assert queued.state == JobState.CANCELLED
        assert queued.last_error == "scheduler stopped"
        assert scheduler.pending_count == 0
        assert scheduler.get_job(1) is queued

    asyncio.run(run())


def test_stop_cancels_scheduled_retry() -> None:
    async def run() -> None:
        async def handler(link_id: int) -> dict[str, Any]:
            raise ConnectionError("down")

        scheduler = _scheduler(handler, retry_base_seconds=30.0, retry_max_seconds=60.0)
        scheduler.start()
        job = scheduler.enqueue(2)
        await scheduler.drain(timeout=0.1)
        assert job.state == JobState.RETRYING

        await scheduler.stop()

        assert job.state == JobState.CANCELLED
        assert await asyncio.wait_for(scheduler.drain(), timeout=1.0) is True

    asyncio.run(run())
