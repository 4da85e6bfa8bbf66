"""Span exporters for sending trace data to backends.

Exporters are responsible for serializing and transmitting span batches.
They report the outcome as an ExportResult instead of raising; the batch
processor decides whether to retry.

Supported Backends:
    - Console: Print to stdout (debugging)
    - InMemory: Store in memory (testing)
    - OTLP: OpenTelemetry Protocol over HTTP/JSON (Collector, Jaeger, Tempo)
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from abc import ABC, abstractmethod
from typing import Any, Mapping, Sequence, TextIO, TYPE_CHECKING

from rich.console import Console
from rich.markup import escape

from tracekit.export import ExportResult, otlp_attributes, post_json, resolve_endpoint
from tracekit.tracing.span import SpanKind, StatusCode

if TYPE_CHECKING:
    from tracekit.resource import Resource
    from tracekit.tracing.span import InstrumentationScope, ReadableSpan

logger = logging.getLogger(__name__)


# =============================================================================
# Exporter Interface
# =============================================================================


class SpanExporter(ABC):
    """Abstract base class for span exporters."""

    @abstractmethod
    def export(self, spans: Sequence["ReadableSpan"]) -> ExportResult:
        """Export a batch of spans.

        Args:
            spans: Ended spans, in the order they were queued.

        Returns:
            ExportResult indicating success or failure.
        """
        pass

    @abstractmethod
    def shutdown(self, timeout_millis: int = 30000) -> None:
        """Release any resources held by the exporter."""
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True


# =============================================================================
# Console Exporter
# =============================================================================


class ConsoleSpanExporter(SpanExporter):
    """Exporter that prints spans to console.

    Useful for development and debugging. Outputs spans in a
    human-readable format or as JSON lines.

    Example:
        >>> exporter = ConsoleSpanExporter(json_output=True)
        >>> processor = SimpleSpanProcessor(exporter)
    """

    def __init__(
        self,
        *,
        output: TextIO | None = None,
        json_output: bool = False,
    ) -> None:
        self._output = output or sys.stdout
        self._json_output = json_output
        self._console = Console(file=self._output, highlight=False, soft_wrap=True)
        self._lock = threading.Lock()

    def export(self, spans: Sequence["ReadableSpan"]) -> ExportResult:
        with self._lock:
            try:
                for span in spans:
                    if self._json_output:
                        self._print_json(span)
                    else:
                        self._print_pretty(span)
            except (OSError, ValueError):
                logger.exception("Could not write spans to console")
                return ExportResult.FAILURE
        return ExportResult.SUCCESS

    def _print_json(self, span: "ReadableSpan") -> None:
        data = span.to_dict()
        if span.resource is not None:
            data["resource"] = dict(span.resource.attributes)
        self._output.write(json.dumps(data, default=str) + "\n")
        self._output.flush()

    def _print_pretty(self, span: "ReadableSpan") -> None:
        header = f"[bold]{escape('[SPAN]')}[/bold] {escape(span.name)}"
        if span.parent:
            header += f" (parent: {span.parent.span_id[:8]})"

        status_style = {
            StatusCode.OK: "green",
            StatusCode.ERROR: "red",
        }.get(span.status_code, "white")

        console = self._console
        console.print(header, markup=True)
        console.print("-" * 60)
        console.print(f"  trace_id: {span.context.trace_id}", markup=False)
        console.print(f"  span_id:  {span.context.span_id}", markup=False)
        console.print(f"  duration: {span.duration_ms:.2f}ms", markup=False)
        console.print(f"  status:   [{status_style}]{span.status_code.name}[/{status_style}]")
        console.print(f"  kind:     {span.kind.name}", markup=False)

        if span.attributes:
            console.print("  attributes:")
            for key, value in span.attributes.items():
                console.print(f"    {key}: {value}", markup=False)

        if span.events:
            console.print("  events:")
            for event in span.events:
                console.print(f"    - {event.name}", markup=False)

        if span.errors:
            console.print("  errors:")
            for error in span.errors:
                console.print(f"    - {error.type}: {error.message}", markup=False)

        console.print()

    def shutdown(self, timeout_millis: int = 30000) -> None:
        try:
            self._output.flush()
        except (OSError, ValueError):
            logger.debug("Could not flush console output", exc_info=True)


# =============================================================================
# In-Memory Exporter
# =============================================================================


class InMemorySpanExporter(SpanExporter):
    """Exporter that stores spans in memory.

    Useful for testing. Allows inspection of exported spans and of the
    individual batches they arrived in.

    Example:
        >>> exporter = InMemorySpanExporter()
        >>> processor = SimpleSpanProcessor(exporter)
        >>> # ... run traced code ...
        >>> spans = exporter.get_finished_spans()
        >>> assert len(spans) == 1
    """

    def __init__(self) -> None:
        self._batches: list[tuple["ReadableSpan", ...]] = []
        self._lock = threading.Lock()
        self._shutdown = False

    def export(self, spans: Sequence["ReadableSpan"]) -> ExportResult:
        if self._shutdown:
            return ExportResult.FAILURE
        with self._lock:
            self._batches.append(tuple(spans))
        return ExportResult.SUCCESS

    def get_finished_spans(self) -> list["ReadableSpan"]:
        """Get all exported spans, flattened in export order."""
        with self._lock:
            return [span for batch in self._batches for span in batch]

    def get_batches(self) -> list[tuple["ReadableSpan", ...]]:
        """Get exported spans grouped by the batch they arrived in."""
        with self._lock:
            return list(self._batches)

    def clear(self) -> None:
        with self._lock:
            self._batches.clear()

    def shutdown(self, timeout_millis: int = 30000) -> None:
        self._shutdown = True


# =============================================================================
# OTLP Exporter
# =============================================================================


_OTLP_KIND = {
    SpanKind.INTERNAL: 1,
    SpanKind.SERVER: 2,
    SpanKind.CLIENT: 3,
    SpanKind.PRODUCER: 4,
    SpanKind.CONSUMER: 5,
}

_OTLP_STATUS = {
    StatusCode.UNSET: 0,
    StatusCode.OK: 1,
    StatusCode.ERROR: 2,
}


def _nanos(seconds: float) -> str:
    return str(int(seconds * 1_000_000_000))


class OTLPSpanExporter(SpanExporter):
    """OpenTelemetry Protocol (OTLP) span exporter over HTTP/JSON.

    Spans are grouped by resource and instrumentation scope into one
    ``ExportTraceServiceRequest`` per batch. Recorded errors are sent as
    ``exception`` span events.

    Example:
        >>> exporter = OTLPSpanExporter("collector:4318", insecure=True)
        >>> # POSTs to http://collector:4318/v1/traces
    """

    PATH = "/v1/traces"

    def __init__(
        self,
        endpoint: str = "localhost:4318",
        *,
        insecure: bool = False,
        headers: Mapping[str, str] | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize OTLP exporter.

        Raises:
            ConfigurationError: If the endpoint cannot be parsed.
        """
        self._url = resolve_endpoint(endpoint, self.PATH, insecure=insecure)
        self._headers = dict(headers or {})
        self._timeout = timeout_seconds
        self._shutdown = False

    @property
    def url(self) -> str:
        return self._url

    def export(self, spans: Sequence["ReadableSpan"]) -> ExportResult:
        if self._shutdown:
            return ExportResult.FAILURE
        if not spans:
            return ExportResult.SUCCESS
        return post_json(
            self._url,
            self.encode(spans),
            headers=self._headers,
            timeout=self._timeout,
        )

    def encode(self, spans: Sequence["ReadableSpan"]) -> dict[str, Any]:
        """Build the OTLP/JSON request body for a batch."""
        grouped: dict[Any, dict[Any, list[dict[str, Any]]]] = {}
        resources: dict[Any, "Resource | None"] = {}
        scopes: dict[Any, "InstrumentationScope | None"] = {}

        for span in spans:
            resource_key = span.resource
            scope_key = (span.scope.name, span.scope.version) if span.scope else None
            resources[resource_key] = span.resource
            scopes[scope_key] = span.scope
            grouped.setdefault(resource_key, {}).setdefault(scope_key, []).append(
                self._convert_span(span)
            )

        resource_spans = []
        for resource_key, by_scope in grouped.items():
            resource = resources[resource_key]
            resource_spans.append({
                "resource": {
                    "attributes": otlp_attributes(resource.attributes) if resource else [],
                },
                "scopeSpans": [
                    {
                        "scope": {
                            "name": scopes[scope_key].name if scopes[scope_key] else "",
                            "version": scopes[scope_key].version if scopes[scope_key] else "",
                        },
                        "spans": converted,
                    }
                    for scope_key, converted in by_scope.items()
                ],
                "schemaUrl": resource.schema_url if resource else "",
            })

        return {"resourceSpans": resource_spans}

    def _convert_span(self, span: "ReadableSpan") -> dict[str, Any]:
        events = [
            {
                "name": e.name,
                "timeUnixNano": _nanos(e.timestamp),
                "attributes": otlp_attributes(e.attributes),
            }
            for e in span.events
        ]
        events.extend(
            {
                "name": "exception",
                "timeUnixNano": _nanos(err.timestamp),
                "attributes": otlp_attributes(err.to_event_attributes()),
            }
            for err in span.errors
        )
        events.sort(key=lambda e: int(e["timeUnixNano"]))

        return {
            "traceId": span.context.trace_id,
            "spanId": span.context.span_id,
            "traceState": span.context.trace_state.to_header(),
            "parentSpanId": span.parent_span_id or "",
            "flags": span.context.trace_flags,
            "name": span.name,
            "kind": _OTLP_KIND[span.kind],
            "startTimeUnixNano": _nanos(span.start_time),
            "endTimeUnixNano": _nanos(span.end_time),
            "attributes": otlp_attributes(span.attributes),
            "events": events,
            "links": [
                {
                    "traceId": link.context.trace_id,
                    "spanId": link.context.span_id,
                    "traceState": link.context.trace_state.to_header(),
                    "attributes": otlp_attributes(link.attributes),
                }
                for link in span.links
            ],
            "status": {
                "code": _OTLP_STATUS[span.status_code],
                "message": span.status_message,
            },
        }

    def shutdown(self, timeout_millis: int = 30000) -> None:
        self._shutdown = True
