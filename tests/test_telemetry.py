import logging

from fastapi.testclient import TestClient
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from pollux.core import telemetry
from pollux.core.config import Settings
from pollux.main import app


def _record() -> logging.LogRecord:
    return logging.LogRecord("pollux.test", logging.INFO, __file__, 1, "hello", None, None)


def test_log_records_carry_active_span_ids() -> None:
    tracer = TracerProvider().get_tracer("test")
    log_filter = telemetry.TraceContextFilter()

    with tracer.start_as_current_span("sync.cycle") as span:
        inside = _record()
        log_filter.filter(inside)
    outside = _record()
    log_filter.filter(outside)

    context = span.get_span_context()
    assert inside.trace_id == format(context.trace_id, "032x")
    assert inside.span_id == format(context.span_id, "016x")
    assert (outside.trace_id, outside.span_id) == ("-", "-")


def test_tracer_provider_describes_the_deployment(monkeypatch) -> None:
    for name in ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(environment="prod", gitlab_api_token="gl", gitlab_user_id="4242", resync_interval_seconds=300.0)

    provider = telemetry.build_tracer_provider(settings)
    try:
        attributes = provider.resource.attributes
        assert attributes["service.name"] == "pollux"
        assert attributes["deployment.environment"] == "prod"
        assert tuple(attributes["pollux.platforms"]) == ("gitlab",)
        assert attributes["pollux.resync_interval_seconds"] == 300.0
    finally:
        provider.shutdown()


def test_disabled_tracing_installs_nothing() -> None:
    runtime = telemetry.setup_telemetry(Settings(otel_enabled=False))

    assert not runtime.enabled
    assert runtime.instrumentors == []
    telemetry.shutdown_telemetry(runtime)


def test_requests_are_traced_as_server_spans(monkeypatch) -> None:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(telemetry, "tracer", provider.get_tracer("test"))

    response = TestClient(app).get("/health")

    assert response.status_code == 200
    [span] = exporter.get_finished_spans()
    assert span.name == "GET /health"
    assert span.attributes["http.response.status_code"] == 200


def test_parse_otlp_headers() -> None:
    assert telemetry.parse_headers("authorization=Bearer abc, x-team = sync,broken") == {
        "authorization": "Bearer abc",
        "x-team": "sync",
    }
    assert telemetry.parse_headers(None) == {}
