"""Tests for the metric PushController."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from tracekit.errors import ConfigurationError
from tracekit.export import ExportResult
from tracekit.metrics import (
    AggregationTemporality,
    InMemoryMetricExporter,
    MetricExporter,
    MetricRegistry,
    PushController,
)
from tracekit.resource import Resource


@pytest.fixture
def registry():
    return MetricRegistry()


@pytest.fixture
def metric_exporter():
    return InMemoryMetricExporter()


class TestPushController:
    """Tests for PushController."""

    def test_collect_and_push(self, registry, metric_exporter):
        resource = Resource.create({"service.name": "hello-app"})
        controller = PushController(registry, metric_exporter, resource=resource)
        registry.counter("requests").add(100)

        assert controller.collect_and_push() == ExportResult.SUCCESS

        (reading,) = metric_exporter.find("requests")
        assert reading.data_points[0].value == 100
        assert metric_exporter.get_resources() == [resource]
        assert controller.pushes == 1

    def test_nothing_recorded_pushes_nothing(self, registry, metric_exporter):
        controller = PushController(registry, metric_exporter)
        registry.counter("requests")

        assert controller.collect_and_push() == ExportResult.SUCCESS
        assert metric_exporter.get_batches() == []
        assert controller.pushes == 0

    def test_without_exporter_fails(self, registry):
        controller = PushController(registry, lambda: InMemoryMetricExporter())
        registry.counter("requests").add(1)
        assert controller.collect_and_push() == ExportResult.FAILURE

    def test_delta_temporality(self, registry, metric_exporter):
        controller = PushController(
            registry, metric_exporter, temporality=AggregationTemporality.DELTA
        )
        counter = registry.counter("requests")

        counter.add(3)
        controller.collect_and_push()
        counter.add(2)
        controller.collect_and_push()

        assert [r.data_points[0].value for r in metric_exporter.find("requests")] == [3, 2]

    def test_delta_hundred_increments_between_ticks(self, registry, metric_exporter):
        controller = PushController(
            registry, metric_exporter, temporality=AggregationTemporality.DELTA
        )
        counter = registry.counter("requests")

        for _ in range(100):
            counter.add(1)
        controller.collect_and_push()
        controller.collect_and_push()

        assert [r.data_points[0].value for r in metric_exporter.find("requests")] == [100]

    def test_cumulative_hundred_increments_between_ticks(self, registry, metric_exporter):
        controller = PushController(registry, metric_exporter)
        counter = registry.counter("requests")

        for _ in range(100):
            counter.add(1)
        controller.collect_and_push()
        for _ in range(100):
            counter.add(1)
        controller.collect_and_push()

        assert [r.data_points[0].value for r in metric_exporter.find("requests")] == [100, 200]

    def test_cumulative_temporality(self, registry, metric_exporter):
        controller = PushController(registry, metric_exporter)
        counter = registry.counter("requests")

        counter.add(3)
        controller.collect_and_push()
        counter.add(2)
        controller.collect_and_push()

        assert controller.temporality == AggregationTemporality.CUMULATIVE
        assert [r.data_points[0].value for r in metric_exporter.find("requests")] == [3, 5]

    def test_exporter_failure_is_contained(self, registry):
        exporter = MagicMock(spec=MetricExporter)
        exporter.export.side_effect = ConnectionError("collector gone")
        controller = PushController(registry, exporter)
        registry.counter("requests").add(1)

        assert controller.collect_and_push() == ExportResult.FAILURE
        assert controller.failed_pushes == 1

    def test_periodic_push(self, registry, metric_exporter):
        controller = PushController(registry, metric_exporter, collect_period_millis=50)
        registry.counter("requests").add(1)
        controller.start()
        try:
            deadline = time.monotonic() + 5
            while len(metric_exporter.get_batches()) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert controller.is_running
            assert len(metric_exporter.get_batches()) >= 2
        finally:
            controller.shutdown(timeout_millis=2000)
        assert not controller.is_running

    def test_start_calls_factory(self, registry, metric_exporter):
        controller = PushController(registry, lambda: metric_exporter)
        assert controller.exporter is None

        controller.start()
        try:
            assert controller.exporter is metric_exporter
        finally:
            controller.shutdown(timeout_millis=1000)

    def test_failing_factory_is_configuration_error(self, registry):
        def factory():
            raise OSError("no route to collector")

        controller = PushController(registry, factory)
        with pytest.raises(ConfigurationError, match="no route to collector"):
            controller.start()
        assert not controller.is_running

    def test_start_after_shutdown(self, registry, metric_exporter):
        controller = PushController(registry, metric_exporter)
        controller.shutdown(timeout_millis=1000)
        with pytest.raises(ConfigurationError):
            controller.start()

    def test_start_twice_keeps_one_worker(self, registry, metric_exporter):
        controller = PushController(registry, metric_exporter, collect_period_millis=60000)
        controller.start()
        worker = controller._worker
        controller.start()
        try:
            assert controller._worker is worker
        finally:
            controller.shutdown(timeout_millis=1000)

    def test_invalid_period(self, registry, metric_exporter):
        with pytest.raises(ConfigurationError):
            PushController(registry, metric_exporter, collect_period_millis=0)

    def test_shutdown_pushes_final_collection(self, registry, metric_exporter):
        controller = PushController(registry, metric_exporter, collect_period_millis=60000)
        controller.start()
        registry.counter("requests").add(7)

        assert controller.shutdown(timeout_millis=2000)
        assert metric_exporter.find("requests")[-1].data_points[0].value == 7

        # exporter was shut down too
        assert metric_exporter.export([], Resource.empty()) == ExportResult.FAILURE

    def test_shutdown_is_idempotent(self, registry, metric_exporter):
        controller = PushController(registry, metric_exporter)
        registry.counter("requests").add(1)

        assert controller.shutdown(timeout_millis=1000)
        assert controller.shutdown(timeout_millis=1000)
        assert len(metric_exporter.get_batches()) == 1

    def test_shutdown_waits_for_in_flight_push(self, registry):
        entered = threading.Event()
        release = threading.Event()

        class SlowExporter(InMemoryMetricExporter):
            def export(self, readings, resource):
                entered.set()
                release.wait(5)
                return super().export(readings, resource)

        exporter = SlowExporter()
        controller = PushController(registry, exporter)
        registry.counter("requests").add(1)

        pusher = threading.Thread(target=controller.collect_and_push)
        pusher.start()
        assert entered.wait(2)

        started = time.monotonic()
        completed = controller.shutdown(timeout_millis=200)
        elapsed = time.monotonic() - started

        release.set()
        pusher.join()
        assert not completed
        assert elapsed < 1.0

    def test_shutdown_abandons_slow_final_push(self, registry):
        class StalledExporter(InMemoryMetricExporter):
            def export(self, readings, resource):
                time.sleep(2)
                return super().export(readings, resource)

        controller = PushController(registry, StalledExporter(), collect_period_millis=60000)
        controller.start()
        registry.counter("requests").add(1)

        started = time.monotonic()
        completed = controller.shutdown(timeout_millis=200)
        elapsed = time.monotonic() - started

        assert not completed
        assert elapsed < 1.0
        assert not controller.is_running

    def test_export_timeout_bounds_final_push(self, registry):
        class StalledExporter(InMemoryMetricExporter):
            def export(self, readings, resource):
                time.sleep(2)
                return super().export(readings, resource)

        controller = PushController(
            registry, StalledExporter(), collect_period_millis=60000, export_timeout_millis=100
        )
        registry.counter("requests").add(1)

        started = time.monotonic()
        assert not controller.shutdown(timeout_millis=10000)
        assert time.monotonic() - started < 1.0
