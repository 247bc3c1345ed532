"""OpenTelemetry tracing for engine entry points.

Tracing is opt-in: ``setup_telemetry()`` only installs a tracer provider when
an OTLP endpoint is configured (argument or OTEL_EXPORTER_OTLP_ENDPOINT).
Without one every span below is a no-op, so the engine never depends on the
``telemetry`` extra being installed.
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from .logging_config import get_deliberation_id
from .version import __version__

logger = logging.getLogger(__name__)

_tracer = None
_telemetry_enabled = False


def is_telemetry_enabled() -> bool:
    """Check if spans are being exported."""
    return _telemetry_enabled


def setup_telemetry(endpoint: str | None = None, service_name: str | None = None) -> bool:
    """Install an OTLP (gRPC) tracer provider for the engine.

    Call once at host startup. A host that already configured OpenTelemetry
    can skip this; engine spans then go to its provider only if it calls
    this with the same endpoint.

    Args:
        endpoint: Collector endpoint, defaults to OTEL_EXPORTER_OTLP_ENDPOINT
        service_name: Resource service name, defaults to OTEL_SERVICE_NAME or "tierflow"

    Returns:
        True if spans will be exported
    """
    global _tracer, _telemetry_enabled

    endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    service_name = service_name or os.getenv("OTEL_SERVICE_NAME", "tierflow")
    if not endpoint:
        logger.info("Tracing disabled: no OTLP endpoint configured")
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as e:
        logger.warning("Tracing disabled, install tierflow[telemetry]: %s", e)
        return False

    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.version": __version__})
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer("tierflow")
    _telemetry_enabled = True
    logger.info("Tracing engine spans to %s as %s", endpoint, service_name)
    return True


class _NoOpSpan:
    """Stands in for a span when tracing is off."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_attributes(self, attributes: dict[str, Any]) -> None:
        pass

    def __enter__(self) -> "_NoOpSpan":
        return self

    def __exit__(self, *args: Any) -> None:
        pass


class _NoOpTracer:
    def start_as_current_span(self, name: str, **kwargs: Any) -> _NoOpSpan:
        return _NoOpSpan()


def get_tracer() -> Any:
    """The engine tracer, or a no-op tracer while tracing is off."""
    return _tracer if _tracer is not None else _NoOpTracer()


def instrument_httpx() -> bool:
    """Trace outgoing webhook deliveries; True if instrumentation was installed."""
    if not _telemetry_enabled:
        logger.debug("Skipping httpx instrumentation: tracing disabled")
        return False
    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    except ImportError:
        logger.warning("opentelemetry-instrumentation-httpx not installed, webhooks untraced")
        return False
    HTTPXClientInstrumentor().instrument()
    return True


@contextmanager
def trace_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    """
    Open span ``name`` tagged with the deliberation bound to this context.

    Yields:
        The live span, or a no-op span while tracing is off
    """
    if not _telemetry_enabled:
        yield _NoOpSpan()
        return

    with get_tracer().start_as_current_span(name) as span:
        deliberation_id = get_deliberation_id()
        if deliberation_id is not None:
            span.set_attribute("deliberation.id", deliberation_id)
        if attributes:
            span.set_attributes(attributes)
        yield span
