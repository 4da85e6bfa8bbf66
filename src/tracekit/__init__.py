"""tracekit - trace-context propagation and batched telemetry export.

Quick start:
    >>> from tracekit import Context, TelemetryConfig, configure_telemetry
    >>> telemetry = configure_telemetry(TelemetryConfig(service_name="hello-app"))
    >>> tracer = telemetry.get_tracer("io.example.hello")
    >>> with tracer.span(Context(), "parentSpan") as (ctx, span):
    ...     carrier = {}
    ...     telemetry.propagator.inject(ctx, carrier)
    >>> telemetry.shutdown()
"""

from tracekit.config import Telemetry, TelemetryConfig, configure_telemetry
from tracekit.context import (
    Context,
    get_current_span,
    get_span_context,
    set_span_in_context,
)
from tracekit.errors import ConfigurationError, ResourceError, TelemetryError
from tracekit.export import ExportResult
from tracekit.resource import Resource, create_resource
from tracekit.version import __version__

__all__ = [
    "__version__",
    # Setup
    "TelemetryConfig",
    "Telemetry",
    "configure_telemetry",
    # Context
    "Context",
    "get_current_span",
    "get_span_context",
    "set_span_in_context",
    # Resource
    "Resource",
    "create_resource",
    # Results and errors
    "ExportResult",
    "TelemetryError",
    "ConfigurationError",
    "ResourceError",
]
