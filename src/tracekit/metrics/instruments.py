"""Metric instruments and their aggregated readings.

Instrument Types:
    - Counter: Monotonically increasing sum (e.g., request count)
    - UpDownCounter: Sum that may go down (e.g., in-flight requests)
    - Histogram: Distribution of values with explicit bucket bounds
    - ObservableGauge: Point-in-time values reported by callbacks

Design Principles:
    1. Attribute-based: each distinct attribute set is aggregated separately
    2. Writers never wait on export: recording only takes the instrument's
       own lock, for as long as it takes to update an accumulator
    3. Collection decides temporality: DELTA swaps the accumulators out,
       CUMULATIVE leaves them running
"""

from __future__ import annotations

import bisect
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

logger = logging.getLogger(__name__)


def _is_measurement(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


# =============================================================================
# Types
# =============================================================================


class InstrumentKind(Enum):
    """Types of instruments."""

    COUNTER = "counter"
    UP_DOWN_COUNTER = "up_down_counter"
    HISTOGRAM = "histogram"
    OBSERVABLE_GAUGE = "observable_gauge"


class AggregationTemporality(Enum):
    """Whether exported values restart at each collection or keep running."""

    DELTA = "delta"
    CUMULATIVE = "cumulative"


AttributesKey = tuple[tuple[str, Any], ...]


def _attributes_key(attributes: Mapping[str, Any] | None) -> AttributesKey:
    if not attributes:
        return ()
    return tuple(sorted(attributes.items()))


@dataclass(frozen=True)
class Observation:
    """A value reported by an observable instrument callback."""

    value: float
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NumberDataPoint:
    """Aggregated sum or gauge value for one attribute set."""

    attributes: Mapping[str, Any]
    value: float
    start_time: float
    time: float


@dataclass(frozen=True)
class HistogramDataPoint:
    """Aggregated distribution for one attribute set.

    ``bucket_counts[i]`` counts values in ``(explicit_bounds[i-1],
    explicit_bounds[i]]``; the last bucket counts values above every bound.
    """

    attributes: Mapping[str, Any]
    count: int
    sum: float
    min: float
    max: float
    bucket_counts: tuple[int, ...]
    explicit_bounds: tuple[float, ...]
    start_time: float
    time: float


@dataclass(frozen=True)
class MetricReading:
    """All data points collected from one instrument in one cycle."""

    name: str
    description: str
    unit: str
    kind: InstrumentKind
    temporality: AggregationTemporality
    data_points: tuple[NumberDataPoint | HistogramDataPoint, ...]

    @property
    def is_monotonic(self) -> bool:
        return self.kind == InstrumentKind.COUNTER

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
            "kind": self.kind.value,
            "temporality": self.temporality.value,
            "data_points": [
                {k: (dict(v) if k == "attributes" else v) for k, v in vars(p).items()}
                for p in self.data_points
            ],
        }


# =============================================================================
# Instrument Base Class
# =============================================================================


class Instrument(ABC):
    """Abstract base class for instruments."""

    def __init__(self, name: str, description: str = "", unit: str = "") -> None:
        self._name = name
        self._description = description
        self._unit = unit
        self._lock = threading.Lock()
        self._start_time = time.time()
        self._last_collect = self._start_time

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def unit(self) -> str:
        return self._unit

    @property
    @abstractmethod
    def kind(self) -> InstrumentKind:
        pass

    @abstractmethod
    def collect(self, temporality: AggregationTemporality) -> MetricReading | None:
        """Aggregate what was recorded.

        Returns:
            A reading, or None when nothing was recorded.
        """
        pass

    def _window_start(self, temporality: AggregationTemporality) -> float:
        if temporality == AggregationTemporality.DELTA:
            return self._last_collect
        return self._start_time

    def _reading(
        self,
        temporality: AggregationTemporality,
        points: Sequence[NumberDataPoint | HistogramDataPoint],
    ) -> MetricReading | None:
        if not points:
            return None
        return MetricReading(
            name=self._name,
            description=self._description,
            unit=self._unit,
            kind=self.kind,
            temporality=temporality,
            data_points=tuple(points),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._name!r})"


# =============================================================================
# Sums
# =============================================================================


class _Sum(Instrument):
    def __init__(self, name: str, description: str = "", unit: str = "") -> None:
        super().__init__(name, description, unit)
        self._values: dict[AttributesKey, float] = {}

    def _add(self, value: float, attributes: Mapping[str, Any] | None) -> None:
        key = _attributes_key(attributes)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value

    def get(self, attributes: Mapping[str, Any] | None = None) -> float:
        """Get the value accumulated since the last reset."""
        with self._lock:
            return self._values.get(_attributes_key(attributes), 0)

    def collect(self, temporality: AggregationTemporality) -> MetricReading | None:
        now = time.time()
        with self._lock:
            start = self._window_start(temporality)
            if temporality == AggregationTemporality.DELTA:
                values, self._values = self._values, {}
            else:
                values = dict(self._values)
            self._last_collect = now

        points = [
            NumberDataPoint(attributes=dict(key), value=value, start_time=start, time=now)
            for key, value in values.items()
        ]
        return self._reading(temporality, points)


class Counter(_Sum):
    """Monotonically increasing counter.

    Use for: request counts, errors, completed tasks.

    Example:
        >>> requests = registry.counter("http.server.requests", unit="{request}")
        >>> requests.add(1, {"http.route": "/hello"})
    """

    @property
    def kind(self) -> InstrumentKind:
        return InstrumentKind.COUNTER

    def add(self, value: float = 1, attributes: Mapping[str, Any] | None = None) -> None:
        """Add a non-negative amount. Negative, NaN or non-numeric values are discarded."""
        if not _is_measurement(value) or value < 0:
            logger.warning("Discarding invalid increment %r for counter %r", value, self._name)
            return
        self._add(value, attributes)


class UpDownCounter(_Sum):
    """Sum that can increase and decrease.

    Use for: queue depth, active connections.
    """

    @property
    def kind(self) -> InstrumentKind:
        return InstrumentKind.UP_DOWN_COUNTER

    def add(self, value: float, attributes: Mapping[str, Any] | None = None) -> None:
        """Add a (possibly negative) amount. NaN or non-numeric values are discarded."""
        if not _is_measurement(value):
            logger.warning("Discarding invalid amount %r for up-down counter %r", value, self._name)
            return
        self._add(value, attributes)


# =============================================================================
# Histogram
# =============================================================================


class _HistogramState:
    __slots__ = ("bucket_counts", "count", "sum", "min", "max")

    def __init__(self, buckets: int) -> None:
        self.bucket_counts = [0] * buckets
        self.count = 0
        self.sum = 0.0
        self.min = math.inf
        self.max = -math.inf


class Histogram(Instrument):
    """Distribution of values with explicit bucket bounds.

    Use for: request latency, response sizes.

    Example:
        >>> latency = registry.histogram("http.server.duration", unit="ms")
        >>> latency.record(42.0, {"http.route": "/hello"})
        >>> with latency.time({"http.route": "/hello"}):
        ...     process_request()
    """

    DEFAULT_BOUNDARIES = (
        0.0, 5.0, 10.0, 25.0, 50.0, 75.0, 100.0, 250.0,
        500.0, 750.0, 1000.0, 2500.0, 5000.0, 7500.0, 10000.0,
    )

    def __init__(
        self,
        name: str,
        description: str = "",
        unit: str = "",
        *,
        boundaries: Sequence[float] | None = None,
    ) -> None:
        super().__init__(name, description, unit)
        bounds = tuple(float(b) for b in (boundaries if boundaries is not None else self.DEFAULT_BOUNDARIES))
        if list(bounds) != sorted(set(bounds)) or any(math.isinf(b) or math.isnan(b) for b in bounds):
            raise ValueError(f"Histogram boundaries must be finite and strictly increasing: {bounds}")
        self._bounds = bounds
        self._states: dict[AttributesKey, _HistogramState] = {}

    @property
    def kind(self) -> InstrumentKind:
        return InstrumentKind.HISTOGRAM

    @property
    def boundaries(self) -> tuple[float, ...]:
        return self._bounds

    def record(self, value: float, attributes: Mapping[str, Any] | None = None) -> None:
        """Record a measurement. NaN or non-numeric values are discarded."""
        if not _is_measurement(value):
            logger.warning("Discarding invalid measurement %r for histogram %r", value, self._name)
            return

        index = bisect.bisect_left(self._bounds, value)
        key = _attributes_key(attributes)
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = _HistogramState(len(self._bounds) + 1)
            state.bucket_counts[index] += 1
            state.count += 1
            state.sum += value
            state.min = min(state.min, value)
            state.max = max(state.max, value)

    @contextmanager
    def time(self, attributes: Mapping[str, Any] | None = None) -> Iterator[None]:
        """Context manager recording the block's duration in milliseconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record((time.perf_counter() - start) * 1000, attributes)

    def collect(self, temporality: AggregationTemporality) -> MetricReading | None:
        now = time.time()
        with self._lock:
            start = self._window_start(temporality)
            if temporality == AggregationTemporality.DELTA:
                states, self._states = self._states, {}
                snapshot = [
                    (key, tuple(s.bucket_counts), s.count, s.sum, s.min, s.max)
                    for key, s in states.items()
                ]
            else:
                snapshot = [
                    (key, tuple(s.bucket_counts), s.count, s.sum, s.min, s.max)
                    for key, s in self._states.items()
                ]
            self._last_collect = now

        points = [
            HistogramDataPoint(
                attributes=dict(key),
                count=count,
                sum=total,
                min=minimum,
                max=maximum,
                bucket_counts=counts,
                explicit_bounds=self._bounds,
                start_time=start,
                time=now,
            )
            for key, counts, count, total, minimum, maximum in snapshot
        ]
        return self._reading(temporality, points)


# =============================================================================
# Observable Gauge
# =============================================================================


GaugeCallback = Callable[[], Iterable[Observation]]


class ObservableGauge(Instrument):
    """Point-in-time values reported by callbacks at collection time.

    Use for: values owned by another component, such as connection pool
    statistics.

    Example:
        >>> registry.observable_gauge(
        ...     "db.client.connections.usage",
        ...     callbacks=[lambda: [Observation(pool.in_use, {"state": "used"})]],
        ... )
    """

    def __init__(
        self,
        name: str,
        description: str = "",
        unit: str = "",
        *,
        callbacks: Sequence[GaugeCallback] | None = None,
    ) -> None:
        super().__init__(name, description, unit)
        self._callbacks: list[GaugeCallback] = list(callbacks or [])

    @property
    def kind(self) -> InstrumentKind:
        return InstrumentKind.OBSERVABLE_GAUGE

    def add_callback(self, callback: GaugeCallback) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def collect(self, temporality: AggregationTemporality) -> MetricReading | None:
        """Invoke every callback. A callback that raises is logged and skipped."""
        now = time.time()
        with self._lock:
            callbacks = list(self._callbacks)

        values: dict[AttributesKey, float] = {}
        for callback in callbacks:
            try:
                observations = list(callback())
            except Exception:
                logger.exception("Callback for gauge %r failed", self._name)
                continue
            for observation in observations:
                values[_attributes_key(observation.attributes)] = observation.value

        points = [
            NumberDataPoint(attributes=dict(key), value=value, start_time=now, time=now)
            for key, value in values.items()
        ]
        return self._reading(temporality, points)
