from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Protocol

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from creatorcore.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()

logger = logging.getLogger(__name__)


class OTelSettings(Protocol):
    """Settings fields shared by the API and worker processes."""

    environment: str
    otel_enabled: bool
    otel_service_name: str
    otel_exporter_otlp_endpoint: str | None
    otel_exporter_otlp_headers: str | None
    otel_trace_sample_ratio: float
    otel_log_correlation: bool


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_logging(level: int = logging.INFO) -> None:
    install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def start_tracing(settings: OTelSettings) -> TelemetryRuntime:
    """Install a global tracer provider and instrument outgoing httpx calls."""
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)
    if settings.otel_log_correlation:
        install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def stop_tracing(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    configure_logging()
    runtime = start_tracing(settings)
    if runtime.provider is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider)
    return runtime


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.enabled:
        FastAPIInstrumentor.uninstrument_app(app)
    stop_tracing(runtime)


def build_exporter(settings: OTelSettings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans stay local for service=%s", settings.otel_service_name)
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` or a key are dropped."""
    if not raw:
        return {}
    headers: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        key = key.strip()
        if separator and key:
            headers[key] = value.strip()
    return headers


def install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
