"""Instrument registry.

One MetricRegistry is created at startup and handed explicitly to every
component that records metrics. Instruments are created once per name;
asking again returns the existing instrument.
"""

from __future__ import annotations

import re
import threading
from typing import Sequence, TypeVar

from tracekit.metrics.instruments import (
    AggregationTemporality,
    Counter,
    GaugeCallback,
    Histogram,
    Instrument,
    MetricReading,
    ObservableGauge,
    UpDownCounter,
)

I = TypeVar("I", bound=Instrument)

_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_.\-/]{0,254}$")


class MetricRegistry:
    """Central registry for all instruments.

    Ensures unique instrument names and serializes collection so that the
    aggregation windows of an instrument never overlap.

    Example:
        >>> registry = MetricRegistry()
        >>> requests = registry.counter("http.server.requests", unit="{request}")
        >>> latency = registry.histogram("http.server.duration", unit="ms")
        >>> readings = registry.collect(AggregationTemporality.DELTA)
    """

    def __init__(self) -> None:
        self._instruments: dict[str, Instrument] = {}
        self._lock = threading.Lock()
        self._collect_lock = threading.Lock()

    def _register(self, instrument: I) -> I:
        """Register an instrument, or return the one already registered.

        Raises:
            ValueError: If the name is invalid or already registered with a
                different instrument kind.
        """
        if not _NAME_RE.match(instrument.name):
            raise ValueError(f"Invalid instrument name: {instrument.name!r}")

        with self._lock:
            existing = self._instruments.get(instrument.name)
            if existing is not None:
                if existing.kind != instrument.kind:
                    raise ValueError(
                        f"Instrument '{instrument.name}' already registered "
                        f"as {existing.kind.value}"
                    )
                return existing  # type: ignore[return-value]
            self._instruments[instrument.name] = instrument
            return instrument

    def counter(self, name: str, description: str = "", unit: str = "") -> Counter:
        """Create or get a counter."""
        return self._register(Counter(name, description, unit))

    def up_down_counter(
        self, name: str, description: str = "", unit: str = ""
    ) -> UpDownCounter:
        """Create or get an up-down counter."""
        return self._register(UpDownCounter(name, description, unit))

    def histogram(
        self,
        name: str,
        description: str = "",
        unit: str = "",
        *,
        boundaries: Sequence[float] | None = None,
    ) -> Histogram:
        """Create or get a histogram.

        Boundaries only apply when the histogram is first created.
        """
        return self._register(Histogram(name, description, unit, boundaries=boundaries))

    def observable_gauge(
        self,
        name: str,
        description: str = "",
        unit: str = "",
        *,
        callbacks: Sequence[GaugeCallback] | None = None,
    ) -> ObservableGauge:
        """Create or get an observable gauge.

        Callbacks given for an existing gauge are added to it.
        """
        gauge = self._register(ObservableGauge(name, description, unit))
        for callback in callbacks or ():
            gauge.add_callback(callback)
        return gauge

    def get(self, name: str) -> Instrument | None:
        with self._lock:
            return self._instruments.get(name)

    def instruments(self) -> list[Instrument]:
        with self._lock:
            return list(self._instruments.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._instruments)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._instruments

    def collect(
        self,
        temporality: AggregationTemporality = AggregationTemporality.CUMULATIVE,
    ) -> list[MetricReading]:
        """Collect a reading from every instrument that has data.

        Concurrent calls are serialized. Recording into instruments is not
        blocked for longer than each instrument's snapshot takes.
        """
        with self._collect_lock:
            readings = []
            for instrument in self.instruments():
                reading = instrument.collect(temporality)
                if reading is not None:
                    readings.append(reading)
            return readings
