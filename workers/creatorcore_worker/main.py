from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any

from opentelemetry import trace

from creatorcore_worker.core.config import Settings, get_settings
from creatorcore_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from creatorcore_worker.jobs.schedule import (
    FULL_SYNC,
    GENRE_CLASSIFICATION,
    PENDING_HYDRATION,
    ScheduledTask,
    backoff_delay,
    build_schedule,
    due_tasks,
    next_wakeup,
)
from creatorcore_worker.services.sync_client import SyncTriggerClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_task(client: SyncTriggerClient, task: ScheduledTask) -> dict[str, Any]:
    with tracer.start_as_current_span("worker.run_task") as span:
        span.set_attribute("creatorcore.task", task.name)
        if task.name == FULL_SYNC:
            result = await client.run_full_sync()
        elif task.name == PENDING_HYDRATION:
            result = await client.run_pending_hydration()
        elif task.name == GENRE_CLASSIFICATION:
            result = await client.run_genre_classification()
        else:
            raise ValueError(f"unknown scheduled task: {task.name}")
    logger.info("scheduled task finished task=%s", task.name)
    return result


async def run_cycle(
    client: SyncTriggerClient,
    schedule: list[ScheduledTask],
    last_runs: dict[str, float],
    now: float,
) -> list[str]:
    """Run every due task once and return the names that succeeded.

    A failed task is logged and waits for its next scheduled slot; it never
    blocks the other tasks due in the same cycle.
    """
    ran: list[str] = []
    for task in due_tasks(schedule, last_runs, now):
        last_runs[task.name] = now
        try:
            await run_task(client, task)
        except Exception:
            logger.exception("scheduled task failed task=%s", task.name)
            continue
        ran.append(task.name)
    return ran


def build_client(settings: Settings) -> SyncTriggerClient:
    if not settings.cron_secret:
        raise RuntimeError("CREATORCORE_WORKER_CRON_SECRET is required")
    return SyncTriggerClient(
        base_url=settings.api_base_url,
        cron_secret=settings.cron_secret,
        timeout=settings.request_timeout_seconds,
    )


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = build_client(settings)
    schedule = build_schedule(settings)

    backoff = settings.poll_interval_seconds
    last_runs: dict[str, float] = {}

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    ran = await run_cycle(client, schedule, last_runs, time.monotonic())
                    if ran:
                        logger.info("cycle ran tasks: %s", ", ".join(ran))
                backoff = settings.poll_interval_seconds
                wait = next_wakeup(
                    schedule,
                    last_runs,
                    time.monotonic(),
                    ceiling=settings.poll_interval_seconds,
                )
                await asyncio.sleep(wait)
            except Exception as exc:  # pragma: no cover - loop robustness
                sleep_for = backoff_delay(
                    backoff,
                    base=settings.poll_interval_seconds,
                    ceiling=settings.max_backoff_seconds,
                    jitter=random.uniform(0.0, 0.5),
                )
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
