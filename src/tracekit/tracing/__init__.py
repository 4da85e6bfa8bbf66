"""Distributed tracing.

Architecture:
    TracerProvider -> Tracer -> Span
         |
    SpanProcessor -> SpanExporter
         |
    TextMapPropagator (W3C/Baggage/B3/Jaeger/X-Ray)

Usage:
    >>> from tracekit.context import Context
    >>> from tracekit.tracing import (
    ...     TracerProvider,
    ...     BatchSpanProcessor,
    ...     OTLPSpanExporter,
    ...     default_propagator,
    ... )
    >>>
    >>> provider = TracerProvider(
    ...     processors=[BatchSpanProcessor(OTLPSpanExporter("localhost:4318", insecure=True))],
    ... )
    >>> tracer = provider.get_tracer("my.component")
    >>> with tracer.span(Context(), "handle-request") as (ctx, span):
    ...     headers = {}
    ...     default_propagator().inject(ctx, headers)
"""

from tracekit.tracing.baggage import (
    Baggage,
    clear_baggage,
    get_baggage,
    get_baggage_item,
    remove_baggage,
    set_baggage,
    set_baggage_items,
)
from tracekit.tracing.exporter import (
    ConsoleSpanExporter,
    InMemorySpanExporter,
    OTLPSpanExporter,
    SpanExporter,
)
from tracekit.tracing.ids import (
    INVALID_SPAN_ID,
    INVALID_TRACE_ID,
    IdGenerator,
    RandomIdGenerator,
    XRayIdGenerator,
)
from tracekit.tracing.processor import (
    BatchConfig,
    BatchSpanProcessor,
    MultiSpanProcessor,
    SimpleSpanProcessor,
    SpanProcessor,
)
from tracekit.tracing.propagator import (
    B3Propagator,
    BaggagePropagator,
    CarrierGetter,
    CarrierSetter,
    CompositePropagator,
    DictCarrierGetter,
    DictCarrierSetter,
    JaegerPropagator,
    TextMapPropagator,
    TraceContextPropagator,
    XRayPropagator,
    create_propagator,
    default_propagator,
)
from tracekit.tracing.provider import Tracer, TracerProvider
from tracekit.tracing.sampler import (
    AlwaysOffSampler,
    AlwaysOnSampler,
    Sampler,
    SamplingDecision,
    SamplingResult,
)
from tracekit.tracing.span import (
    INVALID_SPAN_CONTEXT,
    Event,
    InstrumentationScope,
    Link,
    NonRecordingSpan,
    ReadableSpan,
    RecordedError,
    Span,
    SpanBase,
    SpanContext,
    SpanKind,
    SpanLimits,
    StatusCode,
    TraceState,
)

__all__ = [
    # Provider
    "TracerProvider",
    "Tracer",
    # Span
    "Span",
    "SpanBase",
    "NonRecordingSpan",
    "ReadableSpan",
    "SpanContext",
    "INVALID_SPAN_CONTEXT",
    "SpanKind",
    "StatusCode",
    "SpanLimits",
    "TraceState",
    "Event",
    "Link",
    "RecordedError",
    "InstrumentationScope",
    # IDs
    "IdGenerator",
    "RandomIdGenerator",
    "XRayIdGenerator",
    "INVALID_TRACE_ID",
    "INVALID_SPAN_ID",
    # Sampler
    "Sampler",
    "SamplingDecision",
    "SamplingResult",
    "AlwaysOnSampler",
    "AlwaysOffSampler",
    # Processor
    "SpanProcessor",
    "SimpleSpanProcessor",
    "BatchSpanProcessor",
    "BatchConfig",
    "MultiSpanProcessor",
    # Exporter
    "SpanExporter",
    "ConsoleSpanExporter",
    "InMemorySpanExporter",
    "OTLPSpanExporter",
    # Propagator
    "TextMapPropagator",
    "CarrierGetter",
    "CarrierSetter",
    "DictCarrierGetter",
    "DictCarrierSetter",
    "TraceContextPropagator",
    "BaggagePropagator",
    "B3Propagator",
    "JaegerPropagator",
    "XRayPropagator",
    "CompositePropagator",
    "create_propagator",
    "default_propagator",
    # Baggage
    "Baggage",
    "get_baggage",
    "get_baggage_item",
    "set_baggage",
    "set_baggage_items",
    "remove_baggage",
    "clear_baggage",
]
