"""OpenTelemetry tracing for calsync.

Tracing is a no-op unless ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, in which
case spans are exported over OTLP/gRPC in batches.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calsync"
_provider: TracerProvider | None = None


def init_telemetry(service_name: str = "calsync") -> trace.Tracer:
    """Install the OTLP-exporting tracer provider once per process, if configured."""
    global _provider

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, tracing disabled")
    elif _provider is None:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        _provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(_provider)
        logger.info("Exporting traces to %s", endpoint)

    return trace.get_tracer(service_name)


@contextmanager
def sync_span(operation: str, *, calendar_id: int | None = None) -> Iterator[trace.Span]:
    """Run the block inside a ``calsync.<operation>`` span.

    An exception leaving the block is recorded on the span, which is marked
    ERROR, and then propagates unchanged.
    """
    tracer = trace.get_tracer(_TRACER_NAME)
    attributes = {"calsync.calendar_id": calendar_id} if calendar_id is not None else None
    with tracer.start_as_current_span(
        f"calsync.{operation}",
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except BaseException as exc:
            span.record_exception(exc)
            span.set_status(trace.StatusCode.ERROR, str(exc))
            raise
