"""Tracer provider and tracer implementations.

The TracerProvider is the entry point for creating tracers.
Tracers are used to create spans for tracing operations.

Architecture:
    TracerProvider
        -> Tracer (scoped by instrumentation name/version)
            -> Span (represents a single operation)

There is no implicit "current span". ``Tracer.start`` takes the parent
Context explicitly and returns a new Context holding the started span.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Sequence

from tracekit.context import Context, get_span_context, set_span_in_context
from tracekit.resource import Resource, get_aggregated_resources
from tracekit.tracing.ids import IdGenerator, RandomIdGenerator
from tracekit.tracing.processor import MultiSpanProcessor, SpanProcessor
from tracekit.tracing.sampler import AlwaysOnSampler, Sampler, SamplingDecision
from tracekit.tracing.span import (
    TRACE_FLAG_SAMPLED,
    InstrumentationScope,
    Link,
    NonRecordingSpan,
    Span,
    SpanBase,
    SpanContext,
    SpanKind,
    SpanLimits,
    TraceState,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Tracer
# =============================================================================


class Tracer:
    """Creates spans for tracing operations.

    Tracers are obtained from TracerProvider and are scoped by
    instrumentation library name and version.

    Example:
        >>> tracer = provider.get_tracer("my.component", "1.0.0")
        >>> with tracer.span(Context(), "operation") as (ctx, span):
        ...     span.set_attribute("key", "value")
        ...     do_work(ctx)
    """

    def __init__(
        self,
        provider: "TracerProvider",
        name: str,
        version: str = "",
    ) -> None:
        self._provider = provider
        self._scope = InstrumentationScope(name=name, version=version)

    @property
    def name(self) -> str:
        return self._scope.name

    @property
    def version(self) -> str:
        return self._scope.version

    @property
    def scope(self) -> InstrumentationScope:
        return self._scope

    def start(
        self,
        context: Context | None,
        name: str,
        *,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] | None = None,
        links: Sequence[Link] | None = None,
        start_time: float | None = None,
    ) -> tuple[Context, SpanBase]:
        """Start a new span under ``context``.

        If ``context`` carries a valid span context the new span is its
        child and inherits its trace ID; otherwise a new trace begins.
        Never raises.

        Args:
            context: Parent context (None or empty for a root span).
            name: Span name.
            kind: Span kind.
            attributes: Initial attributes.
            links: Links to other spans.
            start_time: Start time in epoch seconds (defaults to now).

        Returns:
            (new Context holding the span, the span)
        """
        base = context if context is not None else Context()
        span = self._provider._start_span(
            base,
            name,
            scope=self._scope,
            kind=kind,
            attributes=attributes,
            links=links,
            start_time=start_time,
        )
        return set_span_in_context(span, base), span

    @contextmanager
    def span(
        self,
        context: Context | None,
        name: str,
        *,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] | None = None,
        links: Sequence[Link] | None = None,
        start_time: float | None = None,
    ) -> Iterator[tuple[Context, SpanBase]]:
        """Start a span and end it when the block exits.

        An exception escaping the block is recorded on the span (status
        ERROR) and re-raised; otherwise an unset status becomes OK.

        Yields:
            (new Context holding the span, the span)
        """
        ctx, span = self.start(
            context,
            name,
            kind=kind,
            attributes=attributes,
            links=links,
            start_time=start_time,
        )
        with span:
            yield ctx, span


# =============================================================================
# TracerProvider
# =============================================================================


class TracerProvider:
    """Provides Tracers for creating spans.

    TracerProvider owns the resource, sampler, ID generator and span
    processors shared by all of its tracers.

    Example:
        >>> provider = TracerProvider(resource=resource)
        >>> provider.add_span_processor(
        ...     BatchSpanProcessor(OTLPSpanExporter("localhost:4318", insecure=True))
        ... )
        >>> tracer = provider.get_tracer("my.service")
        >>> ctx, span = tracer.start(Context(), "operation")
        >>> span.end()
    """

    def __init__(
        self,
        *,
        resource: Resource | None = None,
        sampler: Sampler | None = None,
        id_generator: IdGenerator | None = None,
        span_limits: SpanLimits | None = None,
        processors: Sequence[SpanProcessor] | None = None,
    ) -> None:
        """Initialize tracer provider.

        Args:
            resource: Resource describing this service (default: detected).
            sampler: Sampler for sampling decisions (default: always on).
            id_generator: Trace/span ID strategy (default: random).
            span_limits: Limits for spans.
            processors: Initial span processors.
        """
        self._resource = resource if resource is not None else get_aggregated_resources()
        self._sampler = sampler or AlwaysOnSampler()
        self._id_generator = id_generator or RandomIdGenerator()
        self._span_limits = span_limits or SpanLimits()
        self._processor = MultiSpanProcessor(processors)
        self._tracers: dict[tuple[str, str], Tracer] = {}
        self._shutdown = False
        self._lock = threading.Lock()

    @property
    def resource(self) -> Resource:
        return self._resource

    @property
    def sampler(self) -> Sampler:
        return self._sampler

    @property
    def id_generator(self) -> IdGenerator:
        return self._id_generator

    @property
    def processors(self) -> tuple[SpanProcessor, ...]:
        return self._processor.processors

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def get_tracer(self, name: str, version: str = "") -> Tracer:
        """Get or create a tracer for an instrumentation scope."""
        key = (name, version)
        with self._lock:
            if key not in self._tracers:
                self._tracers[key] = Tracer(provider=self, name=name, version=version)
            return self._tracers[key]

    def add_span_processor(self, processor: SpanProcessor) -> None:
        """Add a span processor. Spans started afterwards reach it."""
        self._processor.add_processor(processor)

    def _new_span_id(self, parent: SpanContext | None) -> str:
        span_id = self._id_generator.generate_span_id()
        while parent is not None and span_id == parent.span_id:
            span_id = self._id_generator.generate_span_id()
        return span_id

    def _start_span(
        self,
        context: Context,
        name: str,
        *,
        scope: InstrumentationScope,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] | None = None,
        links: Sequence[Link] | None = None,
        start_time: float | None = None,
    ) -> SpanBase:
        """Create a span (or NonRecordingSpan if not sampled)."""
        parent = get_span_context(context)

        if parent is not None:
            trace_id = parent.trace_id
            trace_state = parent.trace_state
        else:
            trace_id = self._id_generator.generate_trace_id()
            trace_state = TraceState()
        span_id = self._new_span_id(parent)

        if self._shutdown:
            logger.debug("TracerProvider is shut down; span %r will not be recorded", name)
            return NonRecordingSpan(
                SpanContext(trace_id=trace_id, span_id=span_id, trace_flags=0, trace_state=trace_state)
            )

        try:
            sampling_result = self._sampler.should_sample(
                parent_context=parent,
                trace_id=trace_id,
                name=name,
                kind=kind,
                attributes=attributes,
                links=links,
            )
        except Exception:
            logger.exception("Sampler %s failed; span %r not recorded", self._sampler.description(), name)
            return NonRecordingSpan(
                SpanContext(trace_id=trace_id, span_id=span_id, trace_flags=0, trace_state=trace_state)
            )

        if sampling_result.trace_state is not None:
            trace_state = sampling_result.trace_state

        span_context = SpanContext(
            trace_id=trace_id,
            span_id=span_id,
            trace_flags=TRACE_FLAG_SAMPLED if sampling_result.is_sampled else 0,
            trace_state=trace_state,
        )

        if sampling_result.decision == SamplingDecision.DROP:
            return NonRecordingSpan(span_context)

        merged_attrs = dict(sampling_result.attributes)
        if attributes:
            merged_attrs.update(attributes)

        span = Span(
            name=name,
            context=span_context,
            parent=parent,
            kind=kind,
            links=links,
            attributes=merged_attrs,
            start_time=start_time,
            limits=self._span_limits,
            resource=self._resource,
            scope=scope,
            on_end=self._processor.on_end,
        )
        self._processor.on_start(span, context)
        return span

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        """Force flush all processors.

        Returns:
            True if all processors flushed successfully.
        """
        return self._processor.force_flush(timeout_millis)

    def shutdown(self, timeout_millis: int = 30000) -> bool:
        """Shutdown the provider and all processors.

        Spans started afterwards are non-recording. Calling this again
        has no effect.

        Returns:
            True if shutdown completed successfully.
        """
        with self._lock:
            if self._shutdown:
                return True
            self._shutdown = True
        return self._processor.shutdown(timeout_millis)
