"""Tests for metric instruments and the registry."""

import logging
import threading

import pytest

from tracekit.metrics import (
    AggregationTemporality,
    Counter,
    Histogram,
    HistogramDataPoint,
    InstrumentKind,
    MetricRegistry,
    Observation,
    UpDownCounter,
)

DELTA = AggregationTemporality.DELTA
CUMULATIVE = AggregationTemporality.CUMULATIVE


def point_values(reading):
    return {tuple(sorted(p.attributes.items())): p.value for p in reading.data_points}


# =============================================================================
# Counter
# =============================================================================


class TestCounter:
    """Tests for Counter."""

    def test_add(self):
        counter = Counter("requests")
        for _ in range(100):
            counter.add(1)
        assert counter.get() == 100

    def test_attributes_aggregate_separately(self):
        counter = Counter("requests")
        counter.add(1, {"route": "/hello"})
        counter.add(2, {"route": "/hello"})
        counter.add(5, {"route": "/bye"})

        reading = counter.collect(CUMULATIVE)
        assert point_values(reading) == {
            (("route", "/hello"),): 3,
            (("route", "/bye"),): 5,
        }

    def test_attribute_order_does_not_matter(self):
        counter = Counter("requests")
        counter.add(1, {"a": 1, "b": 2})
        counter.add(1, {"b": 2, "a": 1})
        assert counter.get({"a": 1, "b": 2}) == 2

    @pytest.mark.parametrize("value", [-1, float("nan"), None, "1", True])
    def test_invalid_increment_discarded(self, value, caplog):
        counter = Counter("requests")
        with caplog.at_level(logging.WARNING, logger="tracekit.metrics.instruments"):
            counter.add(value)

        assert counter.get() == 0
        assert counter.collect(CUMULATIVE) is None
        assert any("Discarding" in r.getMessage() for r in caplog.records)

    def test_delta_resets(self):
        counter = Counter("requests")
        counter.add(3)
        assert point_values(counter.collect(DELTA)) == {(): 3}
        assert counter.collect(DELTA) is None

        counter.add(2)
        assert point_values(counter.collect(DELTA)) == {(): 2}

    def test_cumulative_keeps_running(self):
        counter = Counter("requests")
        counter.add(3)
        first = counter.collect(CUMULATIVE)
        counter.add(2)
        second = counter.collect(CUMULATIVE)

        assert point_values(first) == {(): 3}
        assert point_values(second) == {(): 5}
        assert second.data_points[0].start_time == first.data_points[0].start_time

    def test_delta_windows_are_contiguous(self):
        counter = Counter("requests")
        counter.add(1)
        first = counter.collect(DELTA)
        counter.add(1)
        second = counter.collect(DELTA)
        assert second.data_points[0].start_time == first.data_points[0].time

    def test_reading_metadata(self):
        counter = Counter("requests", "Handled requests", "{request}")
        counter.add(1)
        reading = counter.collect(DELTA)

        assert reading.name == "requests"
        assert reading.description == "Handled requests"
        assert reading.unit == "{request}"
        assert reading.kind == InstrumentKind.COUNTER
        assert reading.temporality == DELTA
        assert reading.is_monotonic

    def test_concurrent_adds(self):
        counter = Counter("requests")

        def worker():
            for _ in range(1000):
                counter.add(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter.get() == 8000


class TestUpDownCounter:
    """Tests for UpDownCounter."""

    def test_add_negative(self):
        gauge = UpDownCounter("in_flight")
        gauge.add(5)
        gauge.add(-3)
        assert gauge.get() == 2

        reading = gauge.collect(CUMULATIVE)
        assert reading.kind == InstrumentKind.UP_DOWN_COUNTER
        assert not reading.is_monotonic

    def test_nan_discarded(self):
        gauge = UpDownCounter("in_flight")
        gauge.add(float("nan"))
        assert gauge.get() == 0

    @pytest.mark.parametrize("value", [None, "-1", [1]])
    def test_non_numeric_discarded(self, value):
        gauge = UpDownCounter("in_flight")
        gauge.add(value)
        assert gauge.collect(CUMULATIVE) is None


# =============================================================================
# Histogram
# =============================================================================


class TestHistogram:
    """Tests for Histogram."""

    def test_bucket_bounds_are_upper_inclusive(self):
        histogram = Histogram("latency", boundaries=[10, 20])
        for value in (5, 10, 15, 20, 25):
            histogram.record(value)

        point = histogram.collect(CUMULATIVE).data_points[0]
        assert isinstance(point, HistogramDataPoint)
        assert point.bucket_counts == (2, 2, 1)
        assert point.explicit_bounds == (10.0, 20.0)
        assert point.count == 5
        assert point.sum == 75
        assert point.min == 5
        assert point.max == 25

    def test_default_boundaries(self):
        histogram = Histogram("latency")
        assert histogram.boundaries == Histogram.DEFAULT_BOUNDARIES
        histogram.record(0)
        histogram.record(20000)

        point = histogram.collect(DELTA).data_points[0]
        assert point.bucket_counts[0] == 1
        assert point.bucket_counts[-1] == 1
        assert len(point.bucket_counts) == len(Histogram.DEFAULT_BOUNDARIES) + 1

    @pytest.mark.parametrize("boundaries", [[10, 5], [1, 1], [1, float("inf")]])
    def test_invalid_boundaries(self, boundaries):
        with pytest.raises(ValueError):
            Histogram("latency", boundaries=boundaries)

    @pytest.mark.parametrize("value", [None, float("nan"), "12.5"])
    def test_invalid_measurement_discarded(self, value, caplog):
        histogram = Histogram("latency")
        with caplog.at_level(logging.WARNING, logger="tracekit.metrics.instruments"):
            histogram.record(value)

        assert histogram.collect(CUMULATIVE) is None
        assert any("Discarding" in r.getMessage() for r in caplog.records)

    def test_delta_resets(self):
        histogram = Histogram("latency")
        histogram.record(1)
        assert histogram.collect(DELTA).data_points[0].count == 1
        assert histogram.collect(DELTA) is None

    def test_cumulative_snapshot_is_detached(self):
        histogram = Histogram("latency")
        histogram.record(1)
        first = histogram.collect(CUMULATIVE).data_points[0]
        histogram.record(2)

        assert first.count == 1
        assert histogram.collect(CUMULATIVE).data_points[0].count == 2

    def test_time_records_milliseconds(self):
        histogram = Histogram("latency", unit="ms")
        with histogram.time({"op": "sleep"}):
            pass

        point = histogram.collect(CUMULATIVE).data_points[0]
        assert point.count == 1
        assert dict(point.attributes) == {"op": "sleep"}
        assert 0 <= point.sum < 1000

    def test_time_records_on_exception(self):
        histogram = Histogram("latency")
        with pytest.raises(RuntimeError):
            with histogram.time():
                raise RuntimeError("boom")
        assert histogram.collect(CUMULATIVE).data_points[0].count == 1


# =============================================================================
# ObservableGauge
# =============================================================================


class TestObservableGauge:
    """Tests for ObservableGauge."""

    def test_callback_values(self):
        registry = MetricRegistry()
        registry.observable_gauge(
            "pool.usage",
            callbacks=[lambda: [Observation(3, {"state": "used"}), Observation(7, {"state": "idle"})]],
        )

        reading = registry.collect()[0]
        assert reading.kind == InstrumentKind.OBSERVABLE_GAUGE
        assert point_values(reading) == {
            (("state", "used"),): 3,
            (("state", "idle"),): 7,
        }

    def test_failing_callback_is_skipped(self, caplog):
        def broken():
            raise RuntimeError("pool gone")

        registry = MetricRegistry()
        gauge = registry.observable_gauge("pool.usage", callbacks=[broken])
        gauge.add_callback(lambda: [Observation(1)])

        with caplog.at_level(logging.ERROR, logger="tracekit.metrics.instruments"):
            readings = registry.collect()

        assert point_values(readings[0]) == {(): 1}
        assert any("pool.usage" in r.getMessage() for r in caplog.records)

    def test_no_observations(self):
        registry = MetricRegistry()
        registry.observable_gauge("pool.usage", callbacks=[lambda: []])
        assert registry.collect() == []


# =============================================================================
# MetricRegistry
# =============================================================================


class TestMetricRegistry:
    """Tests for MetricRegistry."""

    def test_create_once(self):
        registry = MetricRegistry()
        first = registry.counter("requests")
        assert registry.counter("requests") is first
        assert len(registry) == 1
        assert "requests" in registry
        assert registry.get("requests") is first
        assert registry.get("missing") is None

    def test_kind_conflict(self):
        registry = MetricRegistry()
        registry.counter("requests")
        with pytest.raises(ValueError, match="already registered"):
            registry.histogram("requests")

    @pytest.mark.parametrize("name", ["", "1abc", "has space", "a" * 256])
    def test_invalid_name(self, name):
        with pytest.raises(ValueError, match="Invalid instrument name"):
            MetricRegistry().counter(name)

    @pytest.mark.parametrize("name", ["a", "http.server.duration", "queue/depth", "a-b_c"])
    def test_valid_name(self, name):
        assert MetricRegistry().counter(name).name == name

    def test_collect_skips_empty_instruments(self):
        registry = MetricRegistry()
        registry.counter("used").add(1)
        registry.counter("unused")
        registry.histogram("latency")

        readings = registry.collect(DELTA)
        assert [r.name for r in readings] == ["used"]

    def test_collect_default_is_cumulative(self):
        registry = MetricRegistry()
        registry.counter("requests").add(1)
        assert registry.collect()[0].temporality == CUMULATIVE

    def test_concurrent_delta_collect_loses_nothing(self):
        registry = MetricRegistry()
        counter = registry.counter("requests")
        total = []
        stop = threading.Event()

        def collector():
            while not stop.is_set():
                for reading in registry.collect(DELTA):
                    total.extend(p.value for p in reading.data_points)

        collectors = [threading.Thread(target=collector) for _ in range(2)]
        for t in collectors:
            t.start()
        for _ in range(5000):
            counter.add(1)
        stop.set()
        for t in collectors:
            t.join()

        for reading in registry.collect(DELTA):
            total.extend(p.value for p in reading.data_points)
        assert sum(total) == 5000

    def test_reading_to_dict(self):
        registry = MetricRegistry()
        registry.counter("requests", unit="{request}").add(2, {"route": "/"})

        data = registry.collect()[0].to_dict()
        assert data["name"] == "requests"
        assert data["kind"] == "counter"
        assert data["temporality"] == "cumulative"
        assert data["data_points"][0]["attributes"] == {"route": "/"}
        assert data["data_points"][0]["value"] == 2
