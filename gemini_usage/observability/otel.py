"""Optional tracing and metrics for the usage engine.

OpenTelemetry is used when ``GEMINI_USAGE_OTEL_ENABLED`` is set and its packages
are installed; Prometheus counters are exposed as well when ``PROM_PORT`` is
positive. Every recorder is a no-op until ``initialize`` succeeds.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI

from gemini_usage import config

logger = logging.getLogger("gemini_usage.observability")

_RECONCILIATIONS = ("gemini_usage_reconciliations_total", "Reconciliation passes by kind")
_RECONCILE_LATENCY = ("gemini_usage_reconciliation_latency_ms", "Latency of reconciliation passes")
_PARSER_FAILURES = ("gemini_usage_parser_failures_total", "Session files skipped as unreadable or malformed")
_ACTIVITY_TOKENS = ("gemini_usage_activity_tokens_total", "Tokens observed by the live activity watcher")


@dataclass
class _Instruments:
    reconciliations: Any = None
    reconcile_latency: Any = None
    parser_failures: Any = None
    activity_tokens: Any = None


_initialized = False
_tracer: Any | None = None
_providers: list[Any] = []
_instrumentor: Any | None = None
_otel = _Instruments()
_prom = _Instruments()


def _signal_endpoint(base: str, signal: str) -> str | None:
    base = (base or "").strip().rstrip("/")
    if not base:
        return None
    if base.endswith(f"/v1/{signal}"):
        return base
    if base.endswith("/v1"):
        return f"{base}/{signal}"
    return f"{base}/v1/{signal}"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _tracer, _instrumentor, _otel

    if _initialized:
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (GEMINI_USAGE_OTEL_ENABLED=false)")
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
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    resource = Resource.create({"service.name": config.OTEL_SERVICE_NAME or "gemini-usage-engine"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "traces")))
    )
    trace.set_tracer_provider(trace_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "metrics"))
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("gemini_usage.engine")

    _otel = _Instruments(
        reconciliations=meter.create_counter(_RECONCILIATIONS[0], unit="1", description=_RECONCILIATIONS[1]),
        reconcile_latency=meter.create_histogram(_RECONCILE_LATENCY[0], unit="ms", description=_RECONCILE_LATENCY[1]),
        parser_failures=meter.create_counter(_PARSER_FAILURES[0], unit="1", description=_PARSER_FAILURES[1]),
        activity_tokens=meter.create_counter(_ACTIVITY_TOKENS[0], unit="1", description=_ACTIVITY_TOKENS[1]),
    )
    _tracer = trace.get_tracer("gemini_usage.engine")
    _providers.extend([meter_provider, trace_provider])

    if app is not None:
        _instrumentor = FastAPIInstrumentor()
        _instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus(config.PROM_PORT)

    logger.info("OpenTelemetry initialized (endpoint=%s)", config.OTEL_ENDPOINT)


def _start_prometheus(port: int) -> None:
    global _prom
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(port)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus metrics not started: %s", exc)
        return

    _prom = _Instruments(
        reconciliations=Counter(*_RECONCILIATIONS, ["kind"]),
        reconcile_latency=Histogram(*_RECONCILE_LATENCY, ["kind"]),
        parser_failures=Counter(*_PARSER_FAILURES, ["parser"]),
        activity_tokens=Counter(*_ACTIVITY_TOKENS, ["direction"]),
    )
    logger.info("Prometheus metrics listening on port %s", port)


def shutdown(app: FastAPI | None = None) -> None:
    global _tracer, _instrumentor, _otel

    if app is not None and _instrumentor is not None:
        try:
            _instrumentor.uninstrument_app(app)
        except Exception as exc:  # noqa: BLE001
            logger.debug("FastAPI uninstrument failed: %s", exc)
    while _providers:
        provider = _providers.pop()
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _tracer = None
    _instrumentor = None
    _otel = _Instruments()


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def record_reconciliation(kind: str, duration_ms: float) -> None:
    kind = kind or "unknown"
    latency = max(0.0, float(duration_ms))
    if _otel.reconciliations is not None:
        _otel.reconciliations.add(1, {"kind": kind})
        _otel.reconcile_latency.record(latency, {"kind": kind})
    if _prom.reconciliations is not None:
        _prom.reconciliations.labels(kind=kind).inc()
        _prom.reconcile_latency.labels(kind=kind).observe(latency)


def record_parser_failure(parser: str) -> None:
    parser = parser or "unknown"
    if _otel.parser_failures is not None:
        _otel.parser_failures.add(1, {"parser": parser})
    if _prom.parser_failures is not None:
        _prom.parser_failures.labels(parser=parser).inc()


def record_activity_tokens(*, token_input: int, token_output: int) -> None:
    for direction, amount in (("input", token_input), ("output", token_output)):
        if amount <= 0:
            continue
        if _otel.activity_tokens is not None:
            _otel.activity_tokens.add(amount, {"direction": direction})
        if _prom.activity_tokens is not None:
            _prom.activity_tokens.labels(direction=direction).inc(amount)
