"""Tests for TracerProvider and Tracer."""

import threading

import pytest

from tracekit.context import Context, get_current_span, get_span_context
from tracekit.tracing import (
    AlwaysOffSampler,
    InMemorySpanExporter,
    NonRecordingSpan,
    Sampler,
    SimpleSpanProcessor,
    Span,
    SpanKind,
    StatusCode,
    TraceContextPropagator,
    TracerProvider,
    XRayIdGenerator,
)
from tracekit.tracing.ids import IdGenerator


class TestTracer:
    """Tests for Tracer.start and Tracer.span."""

    def test_root_span(self, tracer, exporter):
        ctx, span = tracer.start(Context(), "parentSpan", kind=SpanKind.SERVER)

        assert isinstance(span, Span)
        assert span.parent is None
        assert get_current_span(ctx) is span

        span.end()
        finished = exporter.get_finished_spans()
        assert [s.name for s in finished] == ["parentSpan"]
        assert finished[0].scope.name == "tests"
        assert finished[0].resource.get("service.name") == "test-service"

    def test_none_context_starts_root(self, tracer):
        _, span = tracer.start(None, "root")
        assert span.context.is_valid

    def test_child_inherits_trace_id(self, tracer):
        ctx, parent = tracer.start(Context(), "parent")
        _, child = tracer.start(ctx, "child")

        assert child.context.trace_id == parent.context.trace_id
        assert child.context.span_id != parent.context.span_id
        assert child.parent == parent.context

    def test_input_context_unchanged(self, tracer):
        base = Context()
        tracer.start(base, "op")
        assert get_current_span(base) is None

    def test_child_of_remote_parent(self, tracer, exporter):
        carrier = {"traceparent": "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"}
        remote = TraceContextPropagator().extract(Context(), carrier)

        _, child = tracer.start(remote, "childSpan")
        child.end()

        span = exporter.get_finished_spans()[0]
        assert span.context.trace_id == "0af7651916cd43dd8448eb211c80319c"
        assert span.parent_span_id == "b7ad6b7169203331"
        assert not span.context.is_remote

    def test_span_context_manager(self, tracer, exporter):
        with tracer.span(Context(), "block", attributes={"a": 1}) as (ctx, span):
            assert get_span_context(ctx) == span.context

        finished = exporter.get_finished_spans()[0]
        assert finished.status_code == StatusCode.OK
        assert finished.attributes["a"] == 1

    def test_span_context_manager_records_exception(self, tracer, exporter):
        with pytest.raises(KeyError):
            with tracer.span(Context(), "block"):
                raise KeyError("missing")

        finished = exporter.get_finished_spans()[0]
        assert finished.status_code == StatusCode.ERROR
        assert finished.errors[0].type == "KeyError"

    def test_get_tracer_is_cached(self, provider):
        assert provider.get_tracer("a", "1") is provider.get_tracer("a", "1")
        assert provider.get_tracer("a", "1") is not provider.get_tracer("a", "2")


class TestTracerProvider:
    """Tests for TracerProvider."""

    def test_always_off_sampler(self, resource):
        exporter = InMemorySpanExporter()
        provider = TracerProvider(
            resource=resource,
            sampler=AlwaysOffSampler(),
            processors=[SimpleSpanProcessor(exporter)],
        )
        ctx, span = provider.get_tracer("t").start(Context(), "dropped")
        span.end()

        assert isinstance(span, NonRecordingSpan)
        assert span.context.is_valid
        assert not span.context.is_sampled
        assert get_span_context(ctx) == span.context
        assert exporter.get_finished_spans() == []

    def test_failing_sampler_degrades_to_non_recording(self, resource):
        class BrokenSampler(Sampler):
            def should_sample(self, *args, **kwargs):
                raise RuntimeError("sampler down")

            def description(self):
                return "BrokenSampler"

        provider = TracerProvider(resource=resource, sampler=BrokenSampler())
        _, span = provider.get_tracer("t").start(Context(), "op")
        assert isinstance(span, NonRecordingSpan)

    def test_start_after_shutdown(self, provider, tracer, exporter):
        assert provider.shutdown()
        assert provider.is_shutdown

        _, span = tracer.start(Context(), "late")
        span.end()

        assert isinstance(span, NonRecordingSpan)
        assert exporter.get_finished_spans() == []

    def test_shutdown_is_idempotent(self, provider):
        assert provider.shutdown()
        assert provider.shutdown()

    def test_custom_id_generator(self, resource):
        provider = TracerProvider(resource=resource, id_generator=XRayIdGenerator())
        _, span = provider.get_tracer("t").start(Context(), "op")
        assert isinstance(provider.id_generator, XRayIdGenerator)
        assert span.context.is_valid

    def test_span_id_differs_from_parent(self, resource):
        class StuckGenerator(IdGenerator):
            def __init__(self):
                self.span_ids = iter(["00f067aa0ba902b7", "00f067aa0ba902b7", "b7ad6b7169203331"])

            def generate_trace_id(self):
                return "0af7651916cd43dd8448eb211c80319c"

            def generate_span_id(self):
                return next(self.span_ids)

        provider = TracerProvider(resource=resource, id_generator=StuckGenerator())
        tracer = provider.get_tracer("t")
        ctx, parent = tracer.start(Context(), "parent")
        _, child = tracer.start(ctx, "child")

        assert parent.context.span_id == "00f067aa0ba902b7"
        assert child.context.span_id == "b7ad6b7169203331"

    def test_add_span_processor(self, resource):
        provider = TracerProvider(resource=resource)
        exporter = InMemorySpanExporter()
        provider.add_span_processor(SimpleSpanProcessor(exporter))

        _, span = provider.get_tracer("t").start(Context(), "op")
        span.end()

        assert len(provider.processors) == 1
        assert len(exporter.get_finished_spans()) == 1

    def test_concurrent_spans(self, tracer, exporter):
        """Spans started and ended from many threads are all exported."""
        def worker():
            for _ in range(50):
                ctx, parent = tracer.start(Context(), "parent")
                _, child = tracer.start(ctx, "child")
                child.add_event("e")
                child.end()
                parent.end()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        spans = exporter.get_finished_spans()
        assert len(spans) == 800
        assert len({s.context.span_id for s in spans}) == 800
