"""Span processors for trace data handling.

Span processors receive spans as they start and end, and forward the ended
snapshots to exporters.

Processor Types:
    - SimpleSpanProcessor: Synchronous export on span end
    - BatchSpanProcessor: Bounded queue drained by a background worker
    - MultiSpanProcessor: Fan-out to multiple processors

BatchSpanProcessor policy:
    - A full queue drops the incoming span and counts it. ``on_end`` never
      blocks on the exporter.
    - The worker exports as soon as ``max_export_batch_size`` spans are
      queued, or ``scheduled_delay_millis`` after the later of the last
      flush and the moment the oldest queued span arrived.
    - An export answering RETRY is retried at most ``max_export_retries``
      times with exponential backoff; FAILURE drops the batch at once.
    - Shutdown flushes what is queued until its deadline, then abandons the
      rest.
"""

from __future__ import annotations

import collections
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from tracekit.export import ExportResult
from tracekit.retry import ExponentialBackoff

if TYPE_CHECKING:
    from tracekit.context import Context
    from tracekit.metrics.registry import MetricRegistry
    from tracekit.tracing.exporter import SpanExporter
    from tracekit.tracing.span import ReadableSpan, Span

logger = logging.getLogger(__name__)

DROPPED_SPANS_METRIC = "tracekit.span_processor.dropped_spans"
FAILED_BATCHES_METRIC = "tracekit.span_processor.failed_batches"


# =============================================================================
# Processor Interface
# =============================================================================


class SpanProcessor(ABC):
    """Abstract base class for span processors.

    Span processors receive notifications when spans start and end,
    and are responsible for forwarding spans to exporters.
    """

    @abstractmethod
    def on_start(self, span: "Span", parent_context: "Context | None" = None) -> None:
        """Called when a span starts.

        Args:
            span: The starting span.
            parent_context: Context the span was started under.
        """
        pass

    @abstractmethod
    def on_end(self, span: "ReadableSpan") -> None:
        """Called when a span ends. Must not block on export.

        Args:
            span: Frozen snapshot of the ended span.
        """
        pass

    @abstractmethod
    def shutdown(self, timeout_millis: int = 30000) -> bool:
        """Shutdown the processor.

        Returns:
            True if shutdown completed within timeout.
        """
        pass

    @abstractmethod
    def force_flush(self, timeout_millis: int = 30000) -> bool:
        """Force flush all pending spans.

        Returns:
            True if flush completed within timeout.
        """
        pass


def _call_export(exporter: "SpanExporter", batch: Sequence["ReadableSpan"]) -> ExportResult:
    try:
        return exporter.export(batch)
    except Exception:
        logger.exception("Span exporter %s raised during export", type(exporter).__name__)
        return ExportResult.FAILURE


def _shutdown_exporter(exporter: "SpanExporter", timeout_millis: int) -> bool:
    try:
        exporter.shutdown(timeout_millis)
        return True
    except Exception:
        logger.exception("Span exporter %s failed to shut down", type(exporter).__name__)
        return False


# =============================================================================
# Simple Span Processor
# =============================================================================


class SimpleSpanProcessor(SpanProcessor):
    """Synchronous span processor.

    Exports spans immediately when they end, on the caller's thread. This
    adds export latency to every span, so it suits development, tests and
    in-memory exporters rather than network collectors.

    Example:
        >>> exporter = ConsoleSpanExporter()
        >>> processor = SimpleSpanProcessor(exporter)
        >>> provider = TracerProvider(processors=[processor])
    """

    def __init__(self, exporter: "SpanExporter") -> None:
        self._exporter = exporter
        self._shutdown = False
        self._lock = threading.Lock()

    def on_start(self, span: "Span", parent_context: "Context | None" = None) -> None:
        pass

    def on_end(self, span: "ReadableSpan") -> None:
        """Export span immediately on end."""
        if not span.context.is_sampled:
            return

        with self._lock:
            if self._shutdown:
                return
            result = _call_export(self._exporter, [span])
        if result != ExportResult.SUCCESS:
            logger.warning("Dropping span %r: export returned %s", span.name, result.name)

    def shutdown(self, timeout_millis: int = 30000) -> bool:
        with self._lock:
            if self._shutdown:
                return True
            self._shutdown = True
        return _shutdown_exporter(self._exporter, timeout_millis)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True


# =============================================================================
# Batch Span Processor
# =============================================================================


@dataclass(frozen=True)
class BatchConfig:
    """Configuration for batch span processor."""

    max_queue_size: int = 2048
    max_export_batch_size: int = 512
    scheduled_delay_millis: int = 5000
    export_timeout_millis: int = 30000
    max_export_retries: int = 2
    retry_backoff_millis: int = 100

    def __post_init__(self) -> None:
        if self.max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        if self.max_export_batch_size <= 0:
            raise ValueError("max_export_batch_size must be positive")
        if self.max_export_batch_size > self.max_queue_size:
            raise ValueError("max_export_batch_size must not exceed max_queue_size")
        if self.scheduled_delay_millis <= 0:
            raise ValueError("scheduled_delay_millis must be positive")
        if self.max_export_retries < 0:
            raise ValueError("max_export_retries must not be negative")

    @classmethod
    def default(cls) -> "BatchConfig":
        """Get default configuration."""
        return cls()

    @classmethod
    def development(cls) -> "BatchConfig":
        """Get development configuration (faster flush)."""
        return cls(
            max_queue_size=256,
            max_export_batch_size=32,
            scheduled_delay_millis=1000,
        )


class BatchSpanProcessor(SpanProcessor):
    """Batching span processor.

    Collects ended spans in a bounded queue and exports them from a
    background daemon thread, either when a full batch is queued or after
    the scheduled delay.

    Example:
        >>> exporter = OTLPSpanExporter("collector:4318", insecure=True)
        >>> processor = BatchSpanProcessor(
        ...     exporter,
        ...     config=BatchConfig(
        ...         max_export_batch_size=256,
        ...         scheduled_delay_millis=2000,
        ...     ),
        ... )
        >>> provider = TracerProvider(processors=[processor])
    """

    # Log the first drop and then every DROP_LOG_INTERVAL-th
    DROP_LOG_INTERVAL = 1000

    def __init__(
        self,
        exporter: "SpanExporter",
        config: BatchConfig | None = None,
        registry: "MetricRegistry | None" = None,
    ) -> None:
        """Initialize batch processor.

        Args:
            exporter: The span exporter to use.
            config: Batch configuration.
            registry: Optional registry receiving drop/failure counters.
        """
        self._exporter = exporter
        self._config = config or BatchConfig.default()
        self._backoff = ExponentialBackoff(
            base_delay=self._config.retry_backoff_millis / 1000,
            max_delay=self._config.export_timeout_millis / 1000,
        )

        self._condition = threading.Condition(threading.Lock())
        self._queue: collections.deque["ReadableSpan"] = collections.deque()
        self._flush_waiters: list[threading.Event] = []
        self._shutdown = False
        self._shutdown_deadline: float | None = None

        now = time.monotonic()
        self._last_flush = now
        self._oldest_enqueued: float | None = None

        # Stats
        self._dropped_spans = 0
        self._exported_spans = 0
        self._failed_batches = 0
        self._abandoned_spans = 0

        self._dropped_counter = None
        self._failed_counter = None
        if registry is not None:
            self._dropped_counter = registry.counter(
                DROPPED_SPANS_METRIC,
                unit="{span}",
                description="Spans dropped because the export queue was full",
            )
            self._failed_counter = registry.counter(
                FAILED_BATCHES_METRIC,
                unit="{batch}",
                description="Span batches dropped after failed export",
            )

        self._worker = threading.Thread(
            target=self._export_loop,
            daemon=True,
            name="BatchSpanProcessor-Worker",
        )
        self._worker.start()

    @property
    def config(self) -> BatchConfig:
        return self._config

    @property
    def exporter(self) -> "SpanExporter":
        return self._exporter

    @property
    def dropped_spans(self) -> int:
        """Spans dropped because the queue was full."""
        return self._dropped_spans

    @property
    def exported_spans(self) -> int:
        """Spans the exporter accepted."""
        return self._exported_spans

    @property
    def failed_batches(self) -> int:
        """Batches dropped after FAILURE or an exhausted retry budget."""
        return self._failed_batches

    @property
    def abandoned_spans(self) -> int:
        """Spans left unexported when the shutdown deadline passed."""
        return self._abandoned_spans

    @property
    def queue_size(self) -> int:
        with self._condition:
            return len(self._queue)

    def on_start(self, span: "Span", parent_context: "Context | None" = None) -> None:
        pass

    def on_end(self, span: "ReadableSpan") -> None:
        """Queue span for batch export, dropping it if the queue is full."""
        if not span.context.is_sampled:
            return

        with self._condition:
            if self._shutdown:
                logger.debug("Span %r ended after processor shutdown", span.name)
                return
            if len(self._queue) >= self._config.max_queue_size:
                self._dropped_spans += 1
                dropped = self._dropped_spans
            else:
                dropped = 0
                if not self._queue:
                    self._oldest_enqueued = time.monotonic()
                self._queue.append(span)
                if (
                    len(self._queue) == 1
                    or len(self._queue) >= self._config.max_export_batch_size
                ):
                    self._condition.notify()

        if dropped:
            self._record_drop(dropped)

    def _record_drop(self, dropped: int) -> None:
        if dropped == 1 or dropped % self.DROP_LOG_INTERVAL == 0:
            logger.warning(
                "Span export queue full (max_queue_size=%d); %d span(s) dropped so far",
                self._config.max_queue_size,
                dropped,
            )
        if self._dropped_counter is not None:
            self._dropped_counter.add(1)

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _flush_deadline(self) -> float | None:
        """When the interval timer fires for the current queue (monotonic)."""
        if not self._queue:
            return None
        started = max(self._last_flush, self._oldest_enqueued or self._last_flush)
        return started + self._config.scheduled_delay_millis / 1000

    def _take_batch(self) -> list["ReadableSpan"]:
        size = min(len(self._queue), self._config.max_export_batch_size)
        batch = [self._queue.popleft() for _ in range(size)]
        self._last_flush = time.monotonic()
        if not self._queue:
            self._oldest_enqueued = None
        return batch

    def _take_all(self) -> list[list["ReadableSpan"]]:
        batches = []
        while self._queue:
            batches.append(self._take_batch())
        return batches

    def _export_loop(self) -> None:
        """Background export loop."""
        while True:
            waiters: list[threading.Event] = []
            with self._condition:
                while True:
                    if self._shutdown:
                        break
                    if self._flush_waiters:
                        waiters, self._flush_waiters = self._flush_waiters, []
                        batches = self._take_all()
                        break
                    if len(self._queue) >= self._config.max_export_batch_size:
                        batches = [self._take_batch()]
                        break
                    deadline = self._flush_deadline()
                    if deadline is None:
                        self._condition.wait()
                        continue
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        batches = [self._take_batch()]
                        break
                    self._condition.wait(remaining)

                if self._shutdown:
                    break

            for batch in batches:
                self._export(batch, time.monotonic() + self._config.export_timeout_millis / 1000)
            for waiter in waiters:
                waiter.set()

        self._final_flush()

    def _final_flush(self) -> None:
        with self._condition:
            batches = self._take_all()
            waiters, self._flush_waiters = self._flush_waiters, []
            deadline = self._shutdown_deadline or time.monotonic()

        for index, batch in enumerate(batches):
            if time.monotonic() >= deadline:
                abandoned = sum(len(b) for b in batches[index:])
                with self._condition:
                    self._abandoned_spans += abandoned
                logger.warning(
                    "Shutdown deadline reached; abandoning %d unexported span(s)",
                    abandoned,
                )
                break
            self._export(batch, deadline)

        for waiter in waiters:
            waiter.set()

    def _export(self, batch: list["ReadableSpan"], deadline: float) -> bool:
        """Export one batch with bounded retries. Never raises."""
        attempts = 0
        while True:
            attempts += 1
            result = _call_export(self._exporter, batch)
            if result == ExportResult.SUCCESS:
                self._exported_spans += len(batch)
                return True
            if result == ExportResult.FAILURE or attempts > self._config.max_export_retries:
                break

            delay = self._backoff.get_delay(attempts - 1)
            limit = deadline
            if self._shutdown_deadline is not None:
                limit = min(limit, self._shutdown_deadline)
            if time.monotonic() + delay >= limit:
                break
            logger.debug(
                "Retrying export of %d span(s) in %.3fs (attempt %d of %d)",
                len(batch),
                delay,
                attempts + 1,
                self._config.max_export_retries + 1,
            )
            time.sleep(delay)

        self._failed_batches += 1
        if self._failed_counter is not None:
            self._failed_counter.add(1)
        logger.warning(
            "Dropping batch of %d span(s) after %d export attempt(s): %s",
            len(batch),
            attempts,
            result.name,
        )
        return False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        """Export everything queued so far and wait for it.

        Returns:
            True if the worker finished the flush within the timeout.
        """
        done = threading.Event()
        with self._condition:
            if self._shutdown:
                return False
            self._flush_waiters.append(done)
            self._condition.notify()
        return done.wait(timeout_millis / 1000)

    def shutdown(self, timeout_millis: int = 30000) -> bool:
        """Flush queued spans and stop the worker.

        Spans still queued when the deadline passes are abandoned; the
        worker is a daemon thread and never holds up interpreter exit.

        Returns:
            True if everything was flushed and the exporter shut down.
        """
        deadline = time.monotonic() + timeout_millis / 1000
        with self._condition:
            if self._shutdown:
                return True
            self._shutdown = True
            self._shutdown_deadline = deadline
            self._condition.notify_all()

        self._worker.join(timeout=max(deadline - time.monotonic(), 0))
        completed = not self._worker.is_alive()
        if not completed:
            with self._condition:
                abandoned = len(self._queue)
                self._queue.clear()
                self._abandoned_spans += abandoned
            logger.warning(
                "BatchSpanProcessor worker did not finish within %dms; "
                "abandoning %d queued span(s)",
                timeout_millis,
                abandoned,
            )

        remaining = max(int((deadline - time.monotonic()) * 1000), 0)
        return _shutdown_exporter(self._exporter, remaining) and completed


# =============================================================================
# Multi Span Processor
# =============================================================================


class MultiSpanProcessor(SpanProcessor):
    """Processor that fans out to multiple processors.

    Useful for sending spans to multiple destinations
    (e.g., console for debugging + OTLP for production).

    Example:
        >>> console_processor = SimpleSpanProcessor(ConsoleSpanExporter())
        >>> otlp_processor = BatchSpanProcessor(OTLPSpanExporter(...))
        >>> multi = MultiSpanProcessor([console_processor, otlp_processor])
        >>> provider = TracerProvider(processors=[multi])
    """

    def __init__(self, processors: Sequence[SpanProcessor] | None = None) -> None:
        self._processors: tuple[SpanProcessor, ...] = tuple(processors or ())
        self._lock = threading.Lock()

    @property
    def processors(self) -> tuple[SpanProcessor, ...]:
        return self._processors

    def add_processor(self, processor: SpanProcessor) -> None:
        # Copy-on-write so span hooks iterate without the lock
        with self._lock:
            self._processors = (*self._processors, processor)

    def on_start(self, span: "Span", parent_context: "Context | None" = None) -> None:
        for processor in self._processors:
            try:
                processor.on_start(span, parent_context)
            except Exception:
                logger.exception("Span processor %s failed on start", type(processor).__name__)

    def on_end(self, span: "ReadableSpan") -> None:
        for processor in self._processors:
            try:
                processor.on_end(span)
            except Exception:
                logger.exception("Span processor %s failed on end", type(processor).__name__)

    def shutdown(self, timeout_millis: int = 30000) -> bool:
        """Shutdown all processors within one shared deadline."""
        return self._for_each("shutdown", timeout_millis)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        """Force flush all processors within one shared deadline."""
        return self._for_each("force_flush", timeout_millis)

    def _for_each(self, method: str, timeout_millis: int) -> bool:
        deadline = time.monotonic() + timeout_millis / 1000
        success = True
        for processor in self._processors:
            remaining = max(int((deadline - time.monotonic()) * 1000), 0)
            try:
                if not getattr(processor, method)(remaining):
                    success = False
            except Exception:
                logger.exception("Span processor %s failed on %s", type(processor).__name__, method)
                success = False
        return success
