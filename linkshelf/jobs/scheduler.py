"""In-process job queue for link enrichment.

Jobs are keyed by link id and at most one job per link is pending at a time:
enqueuing a link that already has a queued or retrying job replaces that job,
while a job that is already running is allowed to finish and the new intent
starts right after it. Workers hold a job until the network gate reports
connectivity. Failures are retried with exponential backoff up to
``max_attempts``; timers (not workers) carry the backoff wait.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any

from opentelemetry import trace

from linkshelf.jobs.connectivity import NetworkGate, StaticNetworkGate

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JobHandler = Callable[[int], Awaitable[dict[str, Any]]]


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED}


class NonRetryableJobError(Exception):
    """Raised by a handler when retrying the job cannot succeed."""


@dataclass(slots=True, eq=False)
class EnrichmentJob:
    link_id: int
    reason: str = "ingest"
    requires_network: bool = True
    state: JobState = JobState.QUEUED
    attempt: int = 0
    not_before: float | None = None
    retry_delays: list[float] = field(default_factory=list)
    last_error: str | None = None
    result: dict[str, Any] | None = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "link_id": self.link_id,
            "reason": self.reason,
            "requires_network": self.requires_network,
            "state": self.state.value,
            "attempt": self.attempt,
            "retry_delays": list(self.retry_delays),
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at,
            "finished_at": self.finished_at,
        }


def compute_retry_delay_seconds(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    if base_seconds <= 0:
        return 0.0
    multiplier = max(0, attempt - 1)
    return min(base_seconds * (2**multiplier), max_seconds)


class EnrichmentScheduler:
    def __init__(
        self,
        handler: JobHandler,
        *,
        gate: NetworkGate | None = None,
        concurrency: int = 4,
        retry_base_seconds: float = 10.0,
        retry_max_seconds: float = 3600.0,
        max_attempts: int = 6,
        history_limit: int = 1000,
    ) -> None:
        self._handler = handler
        self._gate: NetworkGate = gate or StaticNetworkGate(online=True)
        self.concurrency = max(1, concurrency)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self.retry_max_seconds = max(self.retry_base_seconds, retry_max_seconds)
        self.max_attempts = max(1, max_attempts)
        self.history_limit = max(1, history_limit)

        self._ready: asyncio.Queue[EnrichmentJob] = asyncio.Queue()
        self._pending: dict[int, EnrichmentJob] = {}
        self._running: dict[int, tuple[EnrichmentJob, asyncio.Task[dict[str, Any]]]] = {}
        self._finished: OrderedDict[int, EnrichmentJob] = OrderedDict()
        self._timers: dict[int, asyncio.TimerHandle] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def gate(self) -> NetworkGate:
        return self._gate

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def running_count(self) -> int:
        return len(self._running)

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"linkshelf-enrichment-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("enrichment scheduler started workers=%s", self.concurrency)

    async def stop(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("enrichment scheduler stopped")

        pending, self._pending = self._pending, {}
        for job in pending.values():
            self._finish(job, JobState.CANCELLED, error="scheduler stopped")
        if pending:
            logger.info("dropped pending enrichment jobs on stop: %s", len(pending))
        self._update_idle()

    def enqueue(self, link_id: int, *, reason: str = "ingest", requires_network: bool = True) -> EnrichmentJob:
        job = EnrichmentJob(link_id=link_id, reason=reason, requires_network=requires_network)
        previous = self._pending.pop(link_id, None)
        if previous is not None:
            self._cancel_timer(link_id)
            logger.debug("replacing %s enrichment job link_id=%s", previous.state.value, link_id)

        self._pending[link_id] = job
        self._idle.clear()
        if link_id in self._running:
            logger.debug("enrichment running for link_id=%s; new job waits for it", link_id)
        else:
            self._make_ready(job)
        return job

    def cancel(self, link_id: int) -> bool:
        cancelled = False
        job = self._pending.pop(link_id, None)
        if job is not None:
            self._cancel_timer(link_id)
            job.state = JobState.CANCELLED
            self._remember(job)
            cancelled = True

        running = self._running.get(link_id)
        if running is not None:
            running[1].cancel()
            cancelled = True

        if cancelled:
            logger.info("cancelled enrichment link_id=%s", link_id)
        self._update_idle()
        return cancelled

    def get_job(self, link_id: int) -> EnrichmentJob | None:
        running = self._running.get(link_id)
        if running is not None:
            return running[0]
        return self._pending.get(link_id) or self._finished.get(link_id)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until no job is pending or running; False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _worker_loop(self, index: int) -> None:
        while True:
            job = await self._ready.get()
            try:
                if not self._is_current(job):
                    continue
                if job.requires_network and not self._gate.is_online():
                    logger.debug("worker=%s waiting for network link_id=%s", index, job.link_id)
                    await self._gate.wait_online()
                    if not self._is_current(job):
                        continue
                await self._run(job)
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - worker robustness
                logger.exception("enrichment worker=%s failed handling link_id=%s", index, job.link_id)
            finally:
                self._ready.task_done()
                self._update_idle()

    async def _run(self, job: EnrichmentJob) -> None:
        link_id = job.link_id
        self._pending.pop(link_id, None)
        job.state = JobState.RUNNING
        job.attempt += 1
        job.not_before = None
        task = asyncio.create_task(self._invoke(job))
        self._running[link_id] = (job, task)

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            self._running.pop(link_id, None)
            self._finish(job, JobState.CANCELLED, error="scheduler stopped")
            raise

        self._running.pop(link_id, None)
        self._settle(job, task)

    async def _invoke(self, job: EnrichmentJob) -> dict[str, Any]:
        with tracer.start_as_current_span("enrichment.run_job") as span:
            span.set_attribute("link.id", job.link_id)
            span.set_attribute("job.reason", job.reason)
            span.set_attribute("job.attempt", job.attempt)
            return await self._handler(job.link_id)

    def _settle(self, job: EnrichmentJob, task: asyncio.Task[dict[str, Any]]) -> None:
        link_id = job.link_id
        retry_delay: float | None = None

        if task.cancelled():
            self._finish(job, JobState.CANCELLED, error="cancelled")
        else:
            exc = task.exception()
            if exc is None:
                job.result = task.result()
                self._finish(job, JobState.SUCCEEDED)
                logger.info("enrichment succeeded link_id=%s attempt=%s", link_id, job.attempt)
            elif isinstance(exc, NonRetryableJobError):
                self._finish(job, JobState.FAILED, error=str(exc))
                logger.info("enrichment abandoned link_id=%s: %s", link_id, exc)
            elif job.attempt >= self.max_attempts:
                self._finish(job, JobState.FAILED, error=_describe(exc))
                logger.warning(
                    "enrichment failed link_id=%s after %s attempts: %s",
                    link_id,
                    job.attempt,
                    _describe(exc),
                )
            else:
                retry_delay = compute_retry_delay_seconds(
                    job.attempt,
                    base_seconds=self.retry_base_seconds,
                    max_seconds=self.retry_max_seconds,
                )
                job.state = JobState.RETRYING
                job.last_error = _describe(exc)
                job.retry_delays.append(retry_delay)
                logger.warning(
                    "enrichment attempt failed link_id=%s attempt=%s/%s retry in %.1fs: %s",
                    link_id,
                    job.attempt,
                    self.max_attempts,
                    retry_delay,
                    job.last_error,
                )

        newer = self._pending.get(link_id)
        if newer is not None:
            if job.state == JobState.RETRYING:
                self._finish(job, JobState.CANCELLED, error="superseded by a newer request")
            self._make_ready(newer)
        elif retry_delay is not None:
            self._pending[link_id] = job
            self._schedule(job, retry_delay)

    def _schedule(self, job: EnrichmentJob, delay: float) -> None:
        loop = asyncio.get_running_loop()
        job.not_before = loop.time() + delay
        self._timers[job.link_id] = loop.call_later(delay, self._make_ready, job)

    def _make_ready(self, job: EnrichmentJob) -> None:
        if self._pending.get(job.link_id) is not job:
            return
        self._timers.pop(job.link_id, None)
        job.state = JobState.QUEUED
        self._ready.put_nowait(job)

    def _is_current(self, job: EnrichmentJob) -> bool:
        return self._pending.get(job.link_id) is job and job.link_id not in self._running

    def _cancel_timer(self, link_id: int) -> None:
        handle = self._timers.pop(link_id, None)
        if handle is not None:
            handle.cancel()

    def _finish(self, job: EnrichmentJob, state: JobState, *, error: str | None = None) -> None:
        job.state = state
        job.finished_at = datetime.now(timezone.utc)
        if error is not None:
            job.last_error = error
        self._remember(job)

    def _remember(self, job: EnrichmentJob) -> None:
        self._finished[job.link_id] = job
        self._finished.move_to_end(job.link_id)
        while len(self._finished) > self.history_limit:
            self._finished.popitem(last=False)

    def _update_idle(self) -> None:
        if self._pending or self._running:
            self._idle.clear()
        else:
            self._idle.set()


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__
