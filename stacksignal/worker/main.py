from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from stacksignal.core.config import Settings, get_settings
from stacksignal.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from stacksignal.jobs.executor import execute_job
from stacksignal.services.container import ServiceContainer, build_services

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def poll_once(services: ServiceContainer, settings: Settings, *, run_batch: bool = False) -> int:
    handled = 0
    with tracer.start_as_current_span("worker.poll_cycle"):
        if run_batch:
            summary = await services.processor.process_batch(settings.worker_batch_limit)
            if summary.busy:
                logger.info("scheduled batch skipped: processor busy")
            elif summary.jobs_processed:
                logger.info("scheduled batch: %s", summary.message)

        for _ in range(max(1, settings.worker_queue_batch_size)):
            job = await services.queue.claim_next_job()
            if job is None:
                break
            handled += 1
            with tracer.start_as_current_span("worker.queue_job") as job_span:
                job_span.set_attribute("job.id", job.id)
                job_span.set_attribute("job.type", job.type)
                try:
                    result = await execute_job(job, services)
                except Exception as exc:
                    await services.queue.fail_job(job.id, str(exc))
                    logger.exception("queue job failed for id=%s type=%s", job.id, job.type)
                    continue

                await services.queue.complete_job(job.id, result)
    return handled


async def run_worker(
    services: ServiceContainer,
    settings: Settings,
    *,
    stop_event: asyncio.Event | None = None,
) -> None:
    stop = stop_event or asyncio.Event()
    backoff = settings.worker_poll_interval_seconds
    batch_interval = settings.worker_batch_interval_seconds
    last_batch_at = time.monotonic()
    logger.info(
        "worker started poll_interval=%.1fs batch_interval=%.1fs",
        settings.worker_poll_interval_seconds,
        batch_interval,
    )

    while not stop.is_set():
        try:
            now = time.monotonic()
            run_batch = batch_interval > 0 and now - last_batch_at >= batch_interval
            if run_batch:
                last_batch_at = now
            handled = await poll_once(services, settings, run_batch=run_batch)
            backoff = settings.worker_poll_interval_seconds
            if not handled:
                await _wait(stop, settings.worker_poll_interval_seconds)
        except Exception as exc:  # pragma: no cover - worker robustness
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), settings.worker_max_backoff_seconds)
            logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
            await _wait(stop, sleep_for)
            backoff = sleep_for

    logger.info("worker stopped")


async def _wait(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return


async def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_telemetry(settings)
    services = build_services(settings)
    try:
        await run_worker(services, settings)
    finally:
        await services.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(main())
