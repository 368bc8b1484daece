"""OpenTelemetry + Prometheus fallback wiring for the ingestion engine.

Every helper here is safe to call when telemetry is off: instruments that were
never created are skipped, so the ingestion code records unconditionally.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI

from ccmonitor import config

logger = logging.getLogger("ccmonitor.observability")


@dataclass
class _Metric:
    name: str
    kind: str  # "counter" | "histogram"
    unit: str
    description: str
    label_names: tuple[str, ...]
    otel: Any | None = None
    prom: Any | None = None

    def record(self, value: float, labels: dict[str, str]) -> None:
        if self.otel is not None:
            if self.kind == "histogram":
                self.otel.record(value, labels)
            else:
                self.otel.add(value, labels)
        if self.prom is not None:
            bound = self.prom.labels(**labels)
            if self.kind == "histogram":
                bound.observe(value)
            else:
                bound.inc(value)


_METRICS: dict[str, _Metric] = {
    metric.name: metric
    for metric in (
        _Metric(
            "ccmonitor_ingestion_events_total", "counter", "1",
            "Count of transcript and push ingestion operations",
            ("entity", "result", "source"),
        ),
        _Metric(
            "ccmonitor_ingestion_latency_ms", "histogram", "ms",
            "Latency for file passes and push records",
            ("entity", "result", "source"),
        ),
        _Metric(
            "ccmonitor_parser_failures_total", "counter", "1",
            "Count of skipped malformed records",
            ("parser", "source"),
        ),
        _Metric(
            "ccmonitor_tool_calls_total", "counter", "1",
            "Tool invocations observed while ingesting transcripts",
            ("tool", "status", "source"),
        ),
        _Metric(
            "ccmonitor_tokens_total", "counter", "1",
            "Token totals by model and direction",
            ("model", "direction", "source"),
        ),
        _Metric(
            "ccmonitor_cost_usd_total", "counter", "usd",
            "Cost totals by model",
            ("model", "source"),
        ),
    )
}

_initialized = False
_enabled = False
_tracer: Any | None = None
_providers: list[Any] = []
_fastapi_instrumentor: Any | None = None


def _signal_endpoint(base_endpoint: str, signal_path: str) -> str | None:
    """Append the OTLP signal path (``/v1/traces``) unless the base already has it."""
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint:
        return None
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        endpoint = endpoint[: -len("/v1")]
    return f"{endpoint}{signal_path}"


def _labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def _record(name: str, value: float, labels: dict[str, str]) -> None:
    _METRICS[name].record(value, labels)


def is_enabled() -> bool:
    return _enabled


def _start_prometheus() -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server
    except ImportError as exc:
        logger.warning(f"Prometheus fallback unavailable: {exc}")
        return

    try:
        start_http_server(config.PROM_PORT)
    except OSError as exc:
        logger.warning(f"Prometheus fallback not started: {exc}")
        return

    for metric in _METRICS.values():
        factory = Histogram if metric.kind == "histogram" else Counter
        metric.prom = factory(metric.name, metric.description, list(metric.label_names))
    logger.info(f"Prometheus fallback metrics server listening on port {config.PROM_PORT}")


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _fastapi_instrumentor

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CCMONITOR_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning(f"OpenTelemetry dependencies unavailable: {exc}")
        return

    service_name = config.OTEL_SERVICE_NAME or "ccmonitor"
    resource = Resource.create({"service.name": service_name, "service.namespace": "ccmonitor"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "/v1/traces")))
    )
    trace.set_tracer_provider(trace_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "/v1/metrics"))
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)

    meter = metrics.get_meter("ccmonitor.engine")
    for metric in _METRICS.values():
        create = meter.create_histogram if metric.kind == "histogram" else meter.create_counter
        metric.otel = create(metric.name, unit=metric.unit, description=metric.description)

    _providers[:] = [meter_provider, trace_provider]
    _tracer = trace.get_tracer("ccmonitor.engine")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)
    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info(f"OpenTelemetry initialized (service={service_name} endpoint={config.OTEL_ENDPOINT})")


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    if app and _fastapi_instrumentor:
        try:
            _fastapi_instrumentor.uninstrument_app(app)
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"FastAPI uninstrument failed: {exc}")
    for provider in _providers:
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"{type(provider).__name__} shutdown failed: {exc}")
    _providers.clear()
    for metric in _METRICS.values():
        metric.otel = None
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def record_ingestion(entity: str, result: str, duration_ms: float, *, source: str) -> None:
    labels = _labels(entity=entity, result=result, source=source)
    _record("ccmonitor_ingestion_events_total", 1, labels)
    _record("ccmonitor_ingestion_latency_ms", max(0.0, float(duration_ms)), labels)


def record_parser_failure(parser: str, *, source: str) -> None:
    _record("ccmonitor_parser_failures_total", 1, _labels(parser=parser, source=source))


def record_tool_result(tool: str, status: str, *, source: str, count: int = 1) -> None:
    if count > 0:
        _record("ccmonitor_tool_calls_total", int(count), _labels(tool=tool, status=status, source=source))


def record_token_cost(
    *,
    model: str,
    token_input: int,
    token_output: int,
    cost_usd: float,
    source: str,
) -> None:
    base = _labels(model=model, source=source)
    for direction, tokens in (("input", token_input), ("output", token_output)):
        if tokens > 0:
            _record("ccmonitor_tokens_total", int(tokens), {**base, "direction": direction})
    if cost_usd > 0:
        _record("ccmonitor_cost_usd_total", float(cost_usd), base)
