"""Tests for spans, span contexts and trace state."""

import logging

import pytest

from tracekit.tracing import (
    INVALID_SPAN_CONTEXT,
    NonRecordingSpan,
    ReadableSpan,
    Span,
    SpanContext,
    SpanKind,
    SpanLimits,
    StatusCode,
    TraceState,
)

TRACE_ID = "0af7651916cd43dd8448eb211c80319c"
SPAN_ID = "b7ad6b7169203331"


def make_span(**kwargs) -> tuple[Span, list[ReadableSpan]]:
    ended: list[ReadableSpan] = []
    span = Span(
        kwargs.pop("name", "operation"),
        SpanContext(trace_id=TRACE_ID, span_id=SPAN_ID),
        on_end=ended.append,
        **kwargs,
    )
    return span, ended


# =============================================================================
# TraceState
# =============================================================================


class TestTraceState:
    """Tests for TraceState."""

    def test_parse_and_format(self):
        state = TraceState.from_header("congo=t61rcWkgMzE,rojo=00f067aa0ba902b7")
        assert list(state) == ["congo", "rojo"]
        assert state["rojo"] == "00f067aa0ba902b7"
        assert state.to_header() == "congo=t61rcWkgMzE,rojo=00f067aa0ba902b7"

    def test_multiple_header_values(self):
        state = TraceState.from_header(["a=1", "b=2"])
        assert state.entries() == (("a", "1"), ("b", "2"))

    def test_invalid_members_skipped(self):
        state = TraceState.from_header("good=1,BAD=2,novalue,also-good=3")
        assert list(state) == ["good", "also-good"]

    def test_max_entries(self):
        header = ",".join(f"k{i}=v" for i in range(40))
        assert len(TraceState.from_header(header)) == TraceState.MAX_ENTRIES

    def test_add_prepends(self):
        state = TraceState([("a", "1")]).add("b", "2")
        assert state.entries() == (("b", "2"), ("a", "1"))

    def test_add_existing_key_is_noop(self):
        state = TraceState([("a", "1")])
        assert state.add("a", "9") is state

    def test_update_moves_to_front(self):
        state = TraceState([("a", "1"), ("b", "2")]).update("b", "3")
        assert state.entries() == (("b", "3"), ("a", "1"))

    def test_delete(self):
        state = TraceState([("a", "1"), ("b", "2")]).delete("a")
        assert state.entries() == (("b", "2"),)

    def test_immutable_operations(self):
        original = TraceState([("a", "1")])
        original.update("a", "2")
        original.delete("a")
        assert original.entries() == (("a", "1"),)

    def test_empty_header(self):
        assert len(TraceState.from_header(None)) == 0
        assert len(TraceState.from_header("")) == 0


# =============================================================================
# SpanContext
# =============================================================================


class TestSpanContext:
    """Tests for SpanContext."""

    def test_valid(self):
        ctx = SpanContext(trace_id=TRACE_ID, span_id=SPAN_ID)
        assert ctx.is_valid
        assert ctx.is_sampled
        assert not ctx.is_remote

    def test_unsampled(self):
        ctx = SpanContext(trace_id=TRACE_ID, span_id=SPAN_ID, trace_flags=0)
        assert not ctx.is_sampled

    def test_invalid_constant(self):
        assert not INVALID_SPAN_CONTEXT.is_valid

    def test_frozen(self):
        ctx = SpanContext(trace_id=TRACE_ID, span_id=SPAN_ID)
        with pytest.raises(AttributeError):
            ctx.trace_id = "1" * 32  # type: ignore[misc]


# =============================================================================
# Span
# =============================================================================


class TestSpan:
    """Tests for the recording Span."""

    def test_end_hands_snapshot_to_processor(self):
        span, ended = make_span(kind=SpanKind.SERVER)
        span.set_attribute("http.route", "/hello")
        span.add_event("test-dummy-event", {"n": 1})
        span.end()

        assert len(ended) == 1
        snapshot = ended[0]
        assert snapshot.name == "operation"
        assert snapshot.kind == SpanKind.SERVER
        assert snapshot.attributes["http.route"] == "/hello"
        assert [e.name for e in snapshot.events] == ["test-dummy-event"]
        assert snapshot.end_time >= snapshot.start_time

    def test_end_twice_hands_over_once(self):
        span, ended = make_span()
        span.end()
        span.end()
        assert len(ended) == 1

    def test_snapshot_is_frozen(self):
        span, ended = make_span(attributes={"a": 1})
        span.end()
        with pytest.raises(TypeError):
            ended[0].attributes["a"] = 2  # type: ignore[index]

    def test_mutation_after_end_is_ignored_and_logged(self, caplog):
        span, ended = make_span()
        span.end()

        with caplog.at_level(logging.WARNING, logger="tracekit.tracing.span"):
            span.add_event("late")
            span.record_exception(ValueError("late"))
            span.set_attribute("late", True)

        assert span.events == []
        assert span.errors == []
        assert "late" not in span.attributes
        assert len([r for r in caplog.records if "ended span" in r.getMessage()]) == 3

    def test_record_exception_sets_error(self):
        span, ended = make_span()
        span.record_exception(RuntimeError("errors"))
        span.end()

        snapshot = ended[0]
        assert snapshot.status_code == StatusCode.ERROR
        assert snapshot.status_message == "errors"
        assert snapshot.errors[0].type == "RuntimeError"
        assert snapshot.errors[0].message == "errors"

    def test_error_status_is_sticky(self):
        span, _ = make_span()
        span.set_status(StatusCode.ERROR, "boom")
        span.set_status(StatusCode.OK)
        assert span.status == (StatusCode.ERROR, "boom")

    def test_ok_status_drops_message(self):
        span, _ = make_span()
        span.set_status(StatusCode.OK, "ignored")
        assert span.status == (StatusCode.OK, "")

    def test_update_name(self):
        span, ended = make_span()
        span.update_name("renamed")
        span.end()
        assert ended[0].name == "renamed"

    def test_context_manager_success(self):
        span, ended = make_span()
        with span:
            pass
        assert ended[0].status_code == StatusCode.OK

    def test_context_manager_exception(self):
        span, ended = make_span()
        with pytest.raises(ValueError):
            with span:
                raise ValueError("boom")

        snapshot = ended[0]
        assert snapshot.status_code == StatusCode.ERROR
        assert snapshot.errors[0].escaped

    def test_limits(self):
        span, ended = make_span(
            limits=SpanLimits(max_attributes=2, max_events=1, max_attribute_length=5)
        )
        span.set_attributes({"a": 1, "b": 2, "c": 3})
        span.set_attribute("a", "long-string-value")
        span.add_event("one")
        span.add_event("two")
        span.end()

        snapshot = ended[0]
        assert dict(snapshot.attributes) == {"a": "long-", "b": 2}
        assert len(snapshot.events) == 1

    def test_processor_failure_is_contained(self):
        def broken(_):
            raise RuntimeError("processor down")

        span = Span("op", SpanContext(trace_id=TRACE_ID, span_id=SPAN_ID), on_end=broken)
        span.end()
        assert not span.is_recording()

    def test_to_dict(self):
        parent = SpanContext(trace_id=TRACE_ID, span_id="00f067aa0ba902b7")
        span, ended = make_span(parent=parent)
        span.end()

        data = ended[0].to_dict()
        assert data["trace_id"] == TRACE_ID
        assert data["parent_span_id"] == "00f067aa0ba902b7"
        assert data["status"]["code"] == "UNSET"


class TestNonRecordingSpan:
    """Tests for NonRecordingSpan."""

    def test_operations_are_noops(self):
        ctx = SpanContext(trace_id=TRACE_ID, span_id=SPAN_ID, trace_flags=0)
        span = NonRecordingSpan(ctx)

        span.set_attribute("a", 1).add_event("e").record_exception(ValueError())
        span.set_status(StatusCode.ERROR)
        span.end()

        assert span.context is ctx
        assert not span.is_recording()

    def test_default_context_is_invalid(self):
        assert not NonRecordingSpan().context.is_valid
