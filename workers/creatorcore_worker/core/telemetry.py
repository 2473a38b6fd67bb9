from __future__ import annotations

from creatorcore.core.telemetry import TelemetryRuntime, configure_logging, start_tracing, stop_tracing
from creatorcore_worker.core.config import Settings


def configure_worker_logging() -> None:
    configure_logging()


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    return start_tracing(settings)


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    stop_tracing(runtime)
