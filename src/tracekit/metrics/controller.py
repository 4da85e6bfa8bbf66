"""Periodic metric collection and push.

The PushController owns one background thread that, every collection
period, collects the registry with the configured temporality and pushes
the readings (plus the process Resource) to a MetricExporter. It runs
independently of the span pipeline's schedule.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Union

from tracekit.errors import ConfigurationError
from tracekit.export import ExportResult
from tracekit.metrics.exporter import MetricExporter
from tracekit.metrics.instruments import AggregationTemporality
from tracekit.metrics.registry import MetricRegistry
from tracekit.resource import Resource

logger = logging.getLogger(__name__)

ExporterFactory = Callable[[], MetricExporter]


class PushController:
    """Collects a MetricRegistry on a fixed period and pushes the result.

    The exporter may be given directly or as a factory; a factory is called
    by ``start()`` and a failure there is a startup error.

    Example:
        >>> controller = PushController(
        ...     registry,
        ...     lambda: OTLPMetricExporter("collector:4318", insecure=True),
        ...     resource=resource,
        ...     collect_period_millis=5000,
        ... )
        >>> controller.start()
        >>> ...
        >>> controller.shutdown(timeout_millis=2000)
    """

    def __init__(
        self,
        registry: MetricRegistry,
        exporter: Union[MetricExporter, ExporterFactory],
        resource: Resource | None = None,
        *,
        collect_period_millis: int = 5000,
        temporality: AggregationTemporality = AggregationTemporality.CUMULATIVE,
        export_timeout_millis: int = 30000,
    ) -> None:
        if collect_period_millis <= 0:
            raise ConfigurationError("collect_period_millis must be positive")

        self._registry = registry
        if isinstance(exporter, MetricExporter):
            self._exporter: MetricExporter | None = exporter
            self._factory: ExporterFactory | None = None
        else:
            self._exporter = None
            self._factory = exporter
        self._resource = resource or Resource.empty()
        self._period = collect_period_millis / 1000
        self._temporality = temporality
        self._export_timeout_millis = export_timeout_millis

        self._stop_event = threading.Event()
        self._push_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._worker: threading.Thread | None = None
        self._shutdown = False

        self._pushes = 0
        self._failed_pushes = 0

    @property
    def registry(self) -> MetricRegistry:
        return self._registry

    @property
    def exporter(self) -> MetricExporter | None:
        return self._exporter

    @property
    def temporality(self) -> AggregationTemporality:
        return self._temporality

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def pushes(self) -> int:
        return self._pushes

    @property
    def failed_pushes(self) -> int:
        return self._failed_pushes

    def start(self) -> None:
        """Create the exporter (if a factory was given) and start the loop.

        Raises:
            ConfigurationError: If the exporter factory fails or the
                controller was already shut down.
        """
        with self._state_lock:
            if self._shutdown:
                raise ConfigurationError("PushController was already shut down")
            if self._worker is not None:
                return

            if self._exporter is None and self._factory is not None:
                try:
                    self._exporter = self._factory()
                except Exception as e:
                    raise ConfigurationError(f"Could not create metric exporter: {e}") from e

            self._worker = threading.Thread(
                target=self._run,
                daemon=True,
                name="PushController-Worker",
            )
            self._worker.start()

    def _run(self) -> None:
        while not self._stop_event.wait(self._period):
            self.collect_and_push()

    def collect_and_push(self, timeout: float | None = None) -> ExportResult:
        """Run one collection cycle and push it. Never raises.

        Args:
            timeout: Seconds to wait for an in-flight cycle to finish.

        Returns:
            The exporter's result (SUCCESS when there was nothing to push).
        """
        exporter = self._exporter
        if exporter is None:
            return ExportResult.FAILURE

        if not self._push_lock.acquire(timeout=-1 if timeout is None else max(timeout, 0)):
            logger.warning("Metric collection still in progress; skipping push")
            return ExportResult.FAILURE
        try:
            readings = self._registry.collect(self._temporality)
            if not readings:
                return ExportResult.SUCCESS
            try:
                result = exporter.export(readings, self._resource)
            except Exception:
                logger.exception("Metric exporter %s raised during export", type(exporter).__name__)
                result = ExportResult.FAILURE
        finally:
            self._push_lock.release()

        self._pushes += 1
        if result != ExportResult.SUCCESS:
            self._failed_pushes += 1
            logger.warning(
                "Metric push of %d reading(s) failed: %s", len(readings), result.name
            )
        return result

    def shutdown(self, timeout_millis: int = 30000) -> bool:
        """Stop the loop, push one final collection and shut the exporter down.

        The final push runs on a helper thread bounded by ``timeout_millis``
        and by ``export_timeout_millis``; a push still running at that point
        is abandoned. Calling this again has no effect.

        Returns:
            True if the final push succeeded within the deadline.
        """
        deadline = time.monotonic() + timeout_millis / 1000
        with self._state_lock:
            if self._shutdown:
                return True
            self._shutdown = True
            worker = self._worker

        self._stop_event.set()
        if worker is not None:
            worker.join(timeout=max(deadline - time.monotonic(), 0))

        exporter = self._exporter
        if exporter is None:
            return True

        push_deadline = min(deadline, time.monotonic() + self._export_timeout_millis / 1000)
        outcome: list[ExportResult] = []
        pusher = threading.Thread(
            target=lambda: outcome.append(
                self.collect_and_push(timeout=push_deadline - time.monotonic())
            ),
            daemon=True,
            name="PushController-FinalPush",
        )
        pusher.start()
        pusher.join(timeout=max(push_deadline - time.monotonic(), 0))
        if pusher.is_alive():
            logger.warning(
                "Final metric push did not finish within %d ms; abandoning it", timeout_millis
            )
            return False

        remaining = max(int((deadline - time.monotonic()) * 1000), 0)
        try:
            exporter.shutdown(remaining)
        except Exception:
            logger.exception("Metric exporter %s failed to shut down", type(exporter).__name__)
            return False
        return bool(outcome) and outcome[0] == ExportResult.SUCCESS and time.monotonic() <= deadline
