"""Metric exporters.

Exporters receive one batch of readings per collection cycle, together
with the process Resource, and report an ExportResult.

Supported Backends:
    - Console: rich table on stdout (debugging)
    - InMemory: Store batches in memory (testing)
    - OTLP: OpenTelemetry Protocol over HTTP/JSON
"""

from __future__ import annotations

import logging
import sys
import threading
from abc import ABC, abstractmethod
from typing import Any, Mapping, Sequence, TextIO

from rich.console import Console
from rich.table import Table

from tracekit.export import ExportResult, otlp_attributes, post_json, resolve_endpoint
from tracekit.metrics.instruments import (
    AggregationTemporality,
    HistogramDataPoint,
    InstrumentKind,
    MetricReading,
    NumberDataPoint,
)
from tracekit.resource import Resource
from tracekit.version import __version__

logger = logging.getLogger(__name__)


# =============================================================================
# Exporter Interface
# =============================================================================


class MetricExporter(ABC):
    """Abstract base class for metric exporters."""

    @abstractmethod
    def export(self, readings: Sequence[MetricReading], resource: Resource) -> ExportResult:
        """Export one collection cycle.

        Args:
            readings: Readings collected from the registry.
            resource: Resource identifying this process.
        """
        pass

    @abstractmethod
    def shutdown(self, timeout_millis: int = 30000) -> None:
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True


# =============================================================================
# In-Memory Exporter
# =============================================================================


class InMemoryMetricExporter(MetricExporter):
    """Exporter that keeps every exported batch in memory.

    Example:
        >>> exporter = InMemoryMetricExporter()
        >>> controller = PushController(registry, exporter)
        >>> controller.collect_and_push()
        >>> exporter.get_batches()[-1]
    """

    def __init__(self) -> None:
        self._batches: list[tuple[MetricReading, ...]] = []
        self._resources: list[Resource] = []
        self._lock = threading.Lock()
        self._shutdown = False

    def export(self, readings: Sequence[MetricReading], resource: Resource) -> ExportResult:
        if self._shutdown:
            return ExportResult.FAILURE
        with self._lock:
            self._batches.append(tuple(readings))
            self._resources.append(resource)
        return ExportResult.SUCCESS

    def get_batches(self) -> list[tuple[MetricReading, ...]]:
        with self._lock:
            return list(self._batches)

    def get_resources(self) -> list[Resource]:
        with self._lock:
            return list(self._resources)

    def find(self, name: str) -> list[MetricReading]:
        """Get every exported reading for instrument ``name``, oldest first."""
        with self._lock:
            return [r for batch in self._batches for r in batch if r.name == name]

    def clear(self) -> None:
        with self._lock:
            self._batches.clear()
            self._resources.clear()

    def shutdown(self, timeout_millis: int = 30000) -> None:
        self._shutdown = True


# =============================================================================
# Console Exporter
# =============================================================================


class ConsoleMetricExporter(MetricExporter):
    """Exporter that renders each batch as a rich table."""

    def __init__(self, *, output: TextIO | None = None) -> None:
        self._console = Console(file=output or sys.stdout, highlight=False)
        self._lock = threading.Lock()

    def export(self, readings: Sequence[MetricReading], resource: Resource) -> ExportResult:
        if not readings:
            return ExportResult.SUCCESS

        table = Table(
            title=f"Metrics ({resource.get('service.name', 'unknown_service')})",
            show_header=True,
            header_style="bold",
        )
        table.add_column("Instrument", style="cyan")
        table.add_column("Kind", style="white")
        table.add_column("Attributes")
        table.add_column("Value", justify="right")

        for reading in readings:
            for point in reading.data_points:
                attributes = ", ".join(f"{k}={v}" for k, v in point.attributes.items())
                table.add_row(
                    reading.name,
                    reading.kind.value,
                    attributes or "-",
                    _format_point(point),
                )

        with self._lock:
            try:
                self._console.print(table)
            except (OSError, ValueError):
                logger.exception("Could not write metrics to console")
                return ExportResult.FAILURE
        return ExportResult.SUCCESS

    def shutdown(self, timeout_millis: int = 30000) -> None:
        pass


def _format_point(point: NumberDataPoint | HistogramDataPoint) -> str:
    if isinstance(point, HistogramDataPoint):
        return (
            f"count={point.count} sum={point.sum:g} "
            f"min={point.min:g} max={point.max:g}"
        )
    return f"{point.value:g}"


# =============================================================================
# OTLP Exporter
# =============================================================================


_OTLP_TEMPORALITY = {
    AggregationTemporality.DELTA: 1,
    AggregationTemporality.CUMULATIVE: 2,
}


def _nanos(seconds: float) -> str:
    return str(int(seconds * 1_000_000_000))


def _number_point(point: NumberDataPoint) -> dict[str, Any]:
    data: dict[str, Any] = {
        "attributes": otlp_attributes(point.attributes),
        "startTimeUnixNano": _nanos(point.start_time),
        "timeUnixNano": _nanos(point.time),
    }
    if isinstance(point.value, int) and not isinstance(point.value, bool):
        data["asInt"] = str(point.value)
    else:
        data["asDouble"] = float(point.value)
    return data


def _histogram_point(point: HistogramDataPoint) -> dict[str, Any]:
    return {
        "attributes": otlp_attributes(point.attributes),
        "startTimeUnixNano": _nanos(point.start_time),
        "timeUnixNano": _nanos(point.time),
        "count": str(point.count),
        "sum": point.sum,
        "min": point.min,
        "max": point.max,
        "bucketCounts": [str(c) for c in point.bucket_counts],
        "explicitBounds": list(point.explicit_bounds),
    }


class OTLPMetricExporter(MetricExporter):
    """OpenTelemetry Protocol (OTLP) metric exporter over HTTP/JSON.

    Example:
        >>> exporter = OTLPMetricExporter("collector:4318", insecure=True)
        >>> # POSTs to http://collector:4318/v1/metrics
    """

    PATH = "/v1/metrics"
    SCOPE_NAME = "tracekit"

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

    def export(self, readings: Sequence[MetricReading], resource: Resource) -> ExportResult:
        if self._shutdown:
            return ExportResult.FAILURE
        if not readings:
            return ExportResult.SUCCESS
        return post_json(
            self._url,
            self.encode(readings, resource),
            headers=self._headers,
            timeout=self._timeout,
        )

    def encode(self, readings: Sequence[MetricReading], resource: Resource) -> dict[str, Any]:
        """Build the OTLP/JSON request body for a batch."""
        return {
            "resourceMetrics": [{
                "resource": {"attributes": otlp_attributes(resource.attributes)},
                "scopeMetrics": [{
                    "scope": {"name": self.SCOPE_NAME, "version": __version__},
                    "metrics": [self._convert_reading(r) for r in readings],
                }],
                "schemaUrl": resource.schema_url,
            }],
        }

    def _convert_reading(self, reading: MetricReading) -> dict[str, Any]:
        metric: dict[str, Any] = {
            "name": reading.name,
            "description": reading.description,
            "unit": reading.unit,
        }
        temporality = _OTLP_TEMPORALITY[reading.temporality]

        if reading.kind == InstrumentKind.HISTOGRAM:
            metric["histogram"] = {
                "dataPoints": [_histogram_point(p) for p in reading.data_points],
                "aggregationTemporality": temporality,
            }
        elif reading.kind == InstrumentKind.OBSERVABLE_GAUGE:
            metric["gauge"] = {
                "dataPoints": [_number_point(p) for p in reading.data_points],
            }
        else:
            metric["sum"] = {
                "dataPoints": [_number_point(p) for p in reading.data_points],
                "aggregationTemporality": temporality,
                "isMonotonic": reading.is_monotonic,
            }
        return metric

    def shutdown(self, timeout_millis: int = 30000) -> None:
        self._shutdown = True
