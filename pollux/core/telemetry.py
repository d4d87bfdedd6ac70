"""Logging and tracing for the pollux process.

Every log line carries the ids of the span it was written under, so a sync
cycle (``sync.cycle`` > ``sync.fetch`` > platform HTTP calls) or an API request
can be followed across log output and traces. Spans leave the process only
when an OTLP endpoint is configured.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, SpanKind, Status, StatusCode

from pollux.core.config import Settings

CORRELATED_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
PLAIN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_STANDARD_ENDPOINT_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class TraceContextFilter(logging.Filter):
    """Stamps records with the active trace and span ids, or ``-`` outside any span."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = "-"
            record.span_id = "-"
        return True


@dataclass(slots=True)
class TelemetryRuntime:
    provider: TracerProvider | None = None
    instrumentors: list[HTTPXClientInstrumentor] = field(default_factory=list)

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging(level: int = logging.INFO, *, correlate: bool = True) -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(CORRELATED_LOG_FORMAT if correlate else PLAIN_LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(level)
    if not correlate:
        return
    for handler in root.handlers:
        if not any(isinstance(existing, TraceContextFilter) for existing in handler.filters):
            handler.addFilter(TraceContextFilter())


def build_tracer_provider(settings: Settings) -> TracerProvider:
    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            SERVICE_VERSION: settings.app_version,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "pollux.platforms": tuple(settings.configured_platforms()),
            "pollux.resync_interval_seconds": settings.resync_interval_seconds,
        }
    )
    # Force-sync requests and scheduler ticks are roots; child spans follow their parent's decision.
    provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)))
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        logger.info("tracing disabled")
        return TelemetryRuntime()

    provider = build_tracer_provider(settings)
    trace.set_tracer_provider(provider)
    instrumentor = HTTPXClientInstrumentor()
    instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(provider=provider, instrumentors=[instrumentor])


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    for instrumentor in runtime.instrumentors:
        instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.shutdown()


@contextmanager
def server_span(method: str, path: str) -> Iterator[Span]:
    with tracer.start_as_current_span(f"{method} {path}", kind=SpanKind.SERVER) as span:
        span.set_attribute("http.request.method", method)
        span.set_attribute("url.path", path)
        yield span


def record_response_status(span: Span, status_code: int) -> None:
    span.set_attribute("http.response.status_code", status_code)
    if status_code >= 500:
        span.set_status(Status(StatusCode.ERROR))


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    if settings.otel_exporter_otlp_endpoint:
        headers = parse_headers(settings.otel_exporter_otlp_headers)
        return OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, headers=headers or None)
    if any(os.getenv(name) for name in _STANDARD_ENDPOINT_VARS):
        # The exporter reads the OTEL_EXPORTER_OTLP_* variables on its own.
        return OTLPSpanExporter()
    logger.info("no OTLP endpoint configured; spans for service=%s stay in-process", settings.otel_service_name)
    return None


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key=value`` OTLP header strings, dropping malformed items."""
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}
