"""Standalone enrichment worker.

Runs the scheduler without the HTTP surface and periodically sweeps the store
for links that were saved but never enriched, e.g. after a crash or when the
API process was started with ``enrich_missing_on_startup`` disabled.
"""

from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from linkshelf.core.config import get_settings
from linkshelf.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from linkshelf.services.runtime import build_runtime

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings, service_suffix="worker")
    runtime = build_runtime(settings)
    await runtime.start(recover=False)

    interval = settings.worker_sweep_interval_seconds
    backoff = interval

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.sweep") as span:
                    enqueued = await runtime.service.recover_unenriched(settings.recovery_batch_size)
                    span.set_attribute("links.enqueued", enqueued)
                    span.set_attribute("enrichment.pending", runtime.scheduler.pending_count)
                backoff = interval
                await asyncio.sleep(interval)
            except Exception as exc:  # pragma: no cover - worker robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.enrichment_retry_max_seconds)
                logger.exception("worker sweep failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await runtime.stop()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
