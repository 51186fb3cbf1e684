from __future__ import annotations

from typing import Optional, Tuple

from opentelemetry import trace, metrics
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader

from internet_map.config import OTelConfig

Providers = Tuple[TracerProvider, MeterProvider]


def init_otel(
    cfg: OTelConfig,
    span_exporter: Optional[SpanExporter] = None,
    metric_reader: Optional[MetricReader] = None,
) -> Providers:
    """Install global tracer and meter providers for the sweep.

    Spans and counters go to the OTLP gRPC collector at ``cfg.endpoint``
    unless an exporter or reader is passed in.
    """
    resource = Resource(attributes={SERVICE_NAME: cfg.service_name})

    if span_exporter is None:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        span_exporter = OTLPSpanExporter(endpoint=cfg.endpoint, insecure=True)
    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    trace.set_tracer_provider(tracer_provider)

    if metric_reader is None:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=cfg.endpoint, insecure=True))
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)

    return tracer_provider, meter_provider


def shutdown_otel(providers: Optional[Providers]) -> None:
    """Flush pending spans and metrics before the process exits."""
    if not providers:
        return
    tracer_provider, meter_provider = providers
    tracer_provider.shutdown()
    meter_provider.shutdown()
