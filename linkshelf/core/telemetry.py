"""Logging and tracing setup shared by the API process and the sweep worker."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from linkshelf.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
EMPTY_TRACE_ID = "0" * 32
EMPTY_SPAN_ID = "0" * 16

_default_record_factory = logging.getLogRecordFactory()
_correlation_enabled = False
_httpx_instrumentor = HTTPXClientInstrumentor()
# set_tracer_provider only takes effect once per process; later lifespans reuse it
_installed_provider: TracerProvider | None = None


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    service_name: str | None = None


def configure_logging(level: str | int = logging.INFO) -> None:
    enable_log_correlation()
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, *, service_suffix: str | None = None) -> TelemetryRuntime:
    global _installed_provider

    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)
    if settings.otel_log_correlation:
        enable_log_correlation()

    service_name = settings.otel_service_name if not service_suffix else f"{settings.otel_service_name}-{service_suffix}"
    if _installed_provider is None:
        _installed_provider = _build_provider(settings, service_name)
        trace.set_tracer_provider(_installed_provider)
    else:
        logger.debug("reusing tracer provider for service=%s", service_name)

    if not _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.instrument()
    return TelemetryRuntime(enabled=True, provider=_installed_provider, service_name=service_name)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        # flush only: the global provider cannot be replaced once shut down
        runtime.provider.force_flush()


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` as used by OTEL_EXPORTER_OTLP_HEADERS."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def enable_log_correlation() -> None:
    global _correlation_enabled
    if _correlation_enabled:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _default_record_factory(*args, **kwargs)
        record.trace_id, record.span_id = _current_span_ids()
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_enabled = True


def _current_span_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return EMPTY_TRACE_ID, EMPTY_SPAN_ID
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def _build_provider(settings: Settings, service_name: str) -> TracerProvider:
    resource = Resource.create(
        {
            SERVICE_NAME: service_name,
            SERVICE_VERSION: settings.app_version,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _build_exporter(settings, service_name=service_name)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def _build_exporter(settings: Settings, *, service_name: str) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("no OTLP endpoint configured; spans for service=%s stay in-process", service_name)
        return None

    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)
