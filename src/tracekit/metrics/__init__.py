"""Metric instruments, registry, exporters and the push controller.

Usage:
    >>> from tracekit.metrics import (
    ...     MetricRegistry,
    ...     PushController,
    ...     OTLPMetricExporter,
    ... )
    >>>
    >>> registry = MetricRegistry()
    >>> requests = registry.counter("http.server.requests", unit="{request}")
    >>> controller = PushController(
    ...     registry,
    ...     lambda: OTLPMetricExporter("localhost:4318", insecure=True),
    ...     resource=resource,
    ... )
    >>> controller.start()
    >>> requests.add(1, {"http.route": "/hello"})
"""

from tracekit.metrics.controller import PushController
from tracekit.metrics.exporter import (
    ConsoleMetricExporter,
    InMemoryMetricExporter,
    MetricExporter,
    OTLPMetricExporter,
)
from tracekit.metrics.instruments import (
    AggregationTemporality,
    Counter,
    Histogram,
    HistogramDataPoint,
    Instrument,
    InstrumentKind,
    MetricReading,
    NumberDataPoint,
    Observation,
    ObservableGauge,
    UpDownCounter,
)
from tracekit.metrics.registry import MetricRegistry

__all__ = [
    # Instruments
    "Instrument",
    "InstrumentKind",
    "Counter",
    "UpDownCounter",
    "Histogram",
    "ObservableGauge",
    "Observation",
    # Readings
    "AggregationTemporality",
    "MetricReading",
    "NumberDataPoint",
    "HistogramDataPoint",
    # Registry
    "MetricRegistry",
    # Exporters
    "MetricExporter",
    "InMemoryMetricExporter",
    "ConsoleMetricExporter",
    "OTLPMetricExporter",
    # Controller
    "PushController",
]
