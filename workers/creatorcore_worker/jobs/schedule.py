from __future__ import annotations

from dataclasses import dataclass

from creatorcore_worker.core.config import Settings

FULL_SYNC = "full_sync"
PENDING_HYDRATION = "pending_hydration"
GENRE_CLASSIFICATION = "genre_classification"


@dataclass(frozen=True, slots=True)
class ScheduledTask:
    name: str
    interval_seconds: float


def build_schedule(settings: Settings) -> list[ScheduledTask]:
    """Tasks in the order they run when several fall due in the same cycle."""
    schedule = [
        ScheduledTask(FULL_SYNC, settings.full_sync_interval_seconds),
        ScheduledTask(PENDING_HYDRATION, settings.pending_hydration_interval_seconds),
        ScheduledTask(GENRE_CLASSIFICATION, settings.genre_interval_seconds),
    ]
    return [task for task in schedule if task.interval_seconds > 0]


def is_due(task: ScheduledTask, last_run_at: float | None, now: float) -> bool:
    if last_run_at is None:
        return True
    return now - last_run_at >= task.interval_seconds


def due_tasks(schedule: list[ScheduledTask], last_runs: dict[str, float], now: float) -> list[ScheduledTask]:
    return [task for task in schedule if is_due(task, last_runs.get(task.name), now)]


def next_wakeup(schedule: list[ScheduledTask], last_runs: dict[str, float], now: float, *, ceiling: float) -> float:
    """Seconds until the earliest task falls due, capped at ``ceiling``."""
    waits = [ceiling]
    for task in schedule:
        last_run_at = last_runs.get(task.name)
        if last_run_at is None:
            return 0.0
        waits.append(task.interval_seconds - (now - last_run_at))
    return max(0.0, min(waits))


def backoff_delay(previous: float, *, base: float, ceiling: float, jitter: float) -> float:
    """Exponential backoff: ``previous * (2 + jitter)``, never below ``base`` or above ``ceiling``."""
    return min(max(previous, base) * (2.0 + jitter), ceiling)
