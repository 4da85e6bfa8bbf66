"""Configuration and setup of the telemetry pipeline.

``configure_telemetry`` turns a TelemetryConfig into a running pipeline:
Resource, span exporter, BatchSpanProcessor, TracerProvider, composite
propagator, MetricRegistry and a started PushController. The returned
Telemetry handle is passed explicitly to whatever needs it; nothing is
installed globally.

Example:
    >>> config = TelemetryConfig.from_env()
    >>> telemetry = configure_telemetry(config)
    >>> tracer = telemetry.get_tracer("hello-app")
    >>> ...
    >>> telemetry.shutdown(timeout_millis=5000)
"""

from __future__ import annotations

import atexit
import dataclasses
import logging
import os
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from tracekit.errors import ConfigurationError
from tracekit.export import resolve_endpoint
from tracekit.metrics.controller import PushController
from tracekit.metrics.exporter import (
    ConsoleMetricExporter,
    InMemoryMetricExporter,
    MetricExporter,
    OTLPMetricExporter,
)
from tracekit.metrics.instruments import AggregationTemporality
from tracekit.metrics.registry import MetricRegistry
from tracekit.resource import Resource, create_resource
from tracekit.tracing.exporter import (
    ConsoleSpanExporter,
    InMemorySpanExporter,
    OTLPSpanExporter,
    SpanExporter,
)
from tracekit.tracing.ids import IdGenerator, RandomIdGenerator, XRayIdGenerator
from tracekit.tracing.processor import BatchConfig, BatchSpanProcessor, SpanProcessor
from tracekit.tracing.propagator import (
    PROPAGATOR_FACTORIES,
    CompositePropagator,
    create_propagator,
)
from tracekit.tracing.provider import Tracer, TracerProvider
from tracekit.tracing.sampler import AlwaysOffSampler, AlwaysOnSampler, Sampler

logger = logging.getLogger(__name__)


EXPORTERS = ("otlp", "console", "memory", "none")
SAMPLERS: dict[str, Callable[[], Sampler]] = {
    "always_on": AlwaysOnSampler,
    "always_off": AlwaysOffSampler,
}
ID_GENERATORS: dict[str, Callable[[], IdGenerator]] = {
    "random": RandomIdGenerator,
    "xray": XRayIdGenerator,
}
TEMPORALITIES = {t.value: t for t in AggregationTemporality}
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})

# OTel sampler names that map onto the supported policies
_SAMPLER_ALIASES = {
    "parentbased_always_on": "always_on",
    "parentbased_always_off": "always_off",
}


def _parse_pairs(value: str) -> dict[str, str]:
    """Parse ``k=v,k=v`` (values may be percent-encoded)."""
    pairs: dict[str, str] = {}
    for item in value.split(","):
        if "=" not in item:
            continue
        key, _, val = item.partition("=")
        key = key.strip()
        if key:
            pairs[key] = urllib.parse.unquote(val.strip())
    return pairs


def _parse_int(environ: Mapping[str, str], name: str) -> int | None:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _parse_bool(environ: Mapping[str, str], name: str) -> bool | None:
    raw = environ.get(name)
    if raw is None:
        return None
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


_FIELD_TYPES: dict[str, type] = {
    "str": str,
    "int": int,
    "bool": bool,
    "list[str]": list,
    "dict[str, str]": dict,
    "dict[str, Any]": dict,
}


def _check_field_type(name: str, annotation: str, value: Any) -> None:
    expected = _FIELD_TYPES[annotation]
    if (expected is int and isinstance(value, bool)) or not isinstance(value, expected):
        raise ConfigurationError(
            f"{name} must be of type {annotation}, got {type(value).__name__} {value!r}"
        )
    if annotation == "list[str]":
        items = value
    elif expected is dict:
        items = list(value) if annotation == "dict[str, Any]" else [*value, *value.values()]
    else:
        return
    for item in items:
        if not isinstance(item, str):
            raise ConfigurationError(
                f"{name} must be of type {annotation}, got element {item!r}"
            )


# =============================================================================
# Telemetry Configuration
# =============================================================================


@dataclass
class TelemetryConfig:
    """Configuration for the telemetry pipeline.

    Example:
        >>> config = TelemetryConfig(
        ...     service_name="hello-app",
        ...     service_version="v1.0.0",
        ...     endpoint="collector:4318",
        ...     insecure=True,
        ... )
        >>> telemetry = configure_telemetry(config)
    """

    # Service identification
    service_name: str = "unknown_service"
    service_version: str = ""
    environment: str = ""
    resource_attributes: dict[str, Any] = field(default_factory=dict)

    # Exporter settings
    exporter: str = "otlp"
    endpoint: str = "localhost:4318"
    insecure: bool = False
    headers: dict[str, str] = field(default_factory=dict)

    # Trace settings
    propagators: list[str] = field(
        default_factory=lambda: ["tracecontext", "baggage", "xray"]
    )
    id_generator: str = "random"
    sampler: str = "always_on"

    # Batch processor settings
    max_queue_size: int = 2048
    max_export_batch_size: int = 512
    scheduled_delay_millis: int = 5000
    export_timeout_millis: int = 30000
    max_export_retries: int = 2
    retry_backoff_millis: int = 100

    # Metric settings
    metric_collect_period_millis: int = 5000
    metric_temporality: str = "cumulative"

    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "TelemetryConfig":
        """Create configuration from environment variables.

        Environment variables:
            - OTEL_SERVICE_NAME / OTEL_SERVICE_VERSION: Service identity
            - OTEL_EXPORTER_OTLP_ENDPOINT (or EXPORTER_ENDPOINT): Collector
            - OTEL_EXPORTER_OTLP_INSECURE: Use plain HTTP
            - OTEL_EXPORTER_OTLP_HEADERS: Headers (key=value,...)
            - OTEL_TRACES_EXPORTER: otlp, console, memory or none
            - OTEL_PROPAGATORS: Propagators (comma-separated)
            - OTEL_TRACES_SAMPLER: always_on or always_off
            - OTEL_BSP_MAX_QUEUE_SIZE, OTEL_BSP_MAX_EXPORT_BATCH_SIZE,
              OTEL_BSP_SCHEDULE_DELAY, OTEL_BSP_EXPORT_TIMEOUT: Batching
            - OTEL_METRIC_EXPORT_INTERVAL: Metric collection period (ms)
            - OTEL_RESOURCE_ATTRIBUTES: Extra resource attributes
            - TRACEKIT_LOG_LEVEL: Level of the ``tracekit`` logger

        Raises:
            ConfigurationError: If a numeric or boolean variable is malformed.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        if env.get("OTEL_SERVICE_NAME"):
            values["service_name"] = env["OTEL_SERVICE_NAME"]
        if env.get("OTEL_SERVICE_VERSION"):
            values["service_version"] = env["OTEL_SERVICE_VERSION"]

        endpoint = env.get("OTEL_EXPORTER_OTLP_ENDPOINT") or env.get("EXPORTER_ENDPOINT")
        if endpoint:
            values["endpoint"] = endpoint.strip()
        insecure = _parse_bool(env, "OTEL_EXPORTER_OTLP_INSECURE")
        if insecure is not None:
            values["insecure"] = insecure
        if env.get("OTEL_EXPORTER_OTLP_HEADERS"):
            values["headers"] = _parse_pairs(env["OTEL_EXPORTER_OTLP_HEADERS"])
        if env.get("OTEL_TRACES_EXPORTER"):
            values["exporter"] = env["OTEL_TRACES_EXPORTER"].strip().lower()

        if env.get("OTEL_PROPAGATORS"):
            values["propagators"] = [
                p.strip().lower() for p in env["OTEL_PROPAGATORS"].split(",") if p.strip()
            ]
        if env.get("OTEL_TRACES_SAMPLER"):
            sampler = env["OTEL_TRACES_SAMPLER"].strip().lower()
            values["sampler"] = _SAMPLER_ALIASES.get(sampler, sampler)

        for name, key in (
            ("OTEL_BSP_MAX_QUEUE_SIZE", "max_queue_size"),
            ("OTEL_BSP_MAX_EXPORT_BATCH_SIZE", "max_export_batch_size"),
            ("OTEL_BSP_SCHEDULE_DELAY", "scheduled_delay_millis"),
            ("OTEL_BSP_EXPORT_TIMEOUT", "export_timeout_millis"),
            ("OTEL_METRIC_EXPORT_INTERVAL", "metric_collect_period_millis"),
        ):
            parsed = _parse_int(env, name)
            if parsed is not None:
                values[key] = parsed

        if env.get("OTEL_RESOURCE_ATTRIBUTES"):
            attributes = _parse_pairs(env["OTEL_RESOURCE_ATTRIBUTES"])
            if "deployment.environment" in attributes:
                values["environment"] = attributes["deployment.environment"]
            values["resource_attributes"] = attributes
        if env.get("TRACEKIT_LOG_LEVEL"):
            values["log_level"] = env["TRACEKIT_LOG_LEVEL"].strip().upper()

        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> "TelemetryConfig":
        """Load configuration from a YAML mapping of field names.

        Raises:
            ConfigurationError: If the file cannot be read or parsed, or
                contains unknown keys or values of the wrong type.
        """
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")

        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration key(s) in {path}: {', '.join(map(str, unknown))}"
            )
        for f in dataclasses.fields(cls):
            if f.name in data:
                try:
                    _check_field_type(f.name, f.type, data[f.name])
                except ConfigurationError as e:
                    raise ConfigurationError(f"Invalid value in {path}: {e}") from e
        return cls(**data)

    def with_overrides(self, **overrides: Any) -> "TelemetryConfig":
        """Return a copy with the given fields replaced. None values are ignored."""
        return dataclasses.replace(
            self, **{k: v for k, v in overrides.items() if v is not None}
        )

    def validate(self) -> None:
        """Check the configuration.

        Raises:
            ConfigurationError: On the first invalid setting found.
        """
        for f in dataclasses.fields(self):
            _check_field_type(f.name, f.type, getattr(self, f.name))

        if not self.service_name:
            raise ConfigurationError("service_name must not be empty")
        if self.exporter not in EXPORTERS:
            raise ConfigurationError(
                f"Unknown exporter '{self.exporter}'. Available: {', '.join(EXPORTERS)}"
            )
        for name in self.propagators:
            if name not in PROPAGATOR_FACTORIES and name != "none":
                raise ConfigurationError(
                    f"Unknown propagator '{name}'. "
                    f"Available: {', '.join(sorted(PROPAGATOR_FACTORIES))}"
                )
        if self.sampler not in SAMPLERS:
            raise ConfigurationError(
                f"Unknown sampler '{self.sampler}'. Available: {', '.join(SAMPLERS)}"
            )
        if self.id_generator not in ID_GENERATORS:
            raise ConfigurationError(
                f"Unknown id_generator '{self.id_generator}'. "
                f"Available: {', '.join(ID_GENERATORS)}"
            )
        if self.metric_temporality not in TEMPORALITIES:
            raise ConfigurationError(
                f"Unknown metric_temporality '{self.metric_temporality}'. "
                f"Available: {', '.join(TEMPORALITIES)}"
            )
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log_level '{self.log_level}'")

        for name in (
            "max_queue_size",
            "max_export_batch_size",
            "scheduled_delay_millis",
            "export_timeout_millis",
            "metric_collect_period_millis",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.max_export_retries < 0 or self.retry_backoff_millis < 0:
            raise ConfigurationError("max_export_retries and retry_backoff_millis must not be negative")
        if self.max_export_batch_size > self.max_queue_size:
            raise ConfigurationError(
                f"max_export_batch_size ({self.max_export_batch_size}) must not exceed "
                f"max_queue_size ({self.max_queue_size})"
            )

        if self.exporter == "otlp":
            resolve_endpoint(self.endpoint, "/v1/traces", insecure=self.insecure)

    @property
    def batch_config(self) -> BatchConfig:
        return BatchConfig(
            max_queue_size=self.max_queue_size,
            max_export_batch_size=self.max_export_batch_size,
            scheduled_delay_millis=self.scheduled_delay_millis,
            export_timeout_millis=self.export_timeout_millis,
            max_export_retries=self.max_export_retries,
            retry_backoff_millis=self.retry_backoff_millis,
        )


# =============================================================================
# Telemetry Handle
# =============================================================================


class Telemetry:
    """Handle to a configured telemetry pipeline.

    Owns the tracer provider, metric registry and push controller created
    by ``configure_telemetry``.
    """

    def __init__(
        self,
        *,
        config: TelemetryConfig,
        resource: Resource,
        tracer_provider: TracerProvider,
        propagator: CompositePropagator,
        registry: MetricRegistry,
        controller: PushController | None,
        span_processor: SpanProcessor | None,
    ) -> None:
        self.config = config
        self.resource = resource
        self.tracer_provider = tracer_provider
        self.propagator = propagator
        self.registry = registry
        self.controller = controller
        self.span_processor = span_processor
        self._shutdown = False
        self._lock = threading.Lock()

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def get_tracer(self, name: str, version: str = "") -> Tracer:
        return self.tracer_provider.get_tracer(name, version)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        """Export buffered spans and push one metric collection now."""
        deadline = time.monotonic() + timeout_millis / 1000
        flushed = self.tracer_provider.force_flush(timeout_millis)
        if self.controller is not None:
            remaining = max(deadline - time.monotonic(), 0)
            self.controller.collect_and_push(timeout=remaining)
        return flushed

    def shutdown(self, timeout_millis: int = 30000) -> bool:
        """Flush and stop both pipelines within one shared deadline.

        Calling this again has no effect.

        Returns:
            True if both pipelines shut down cleanly in time.
        """
        with self._lock:
            if self._shutdown:
                return True
            self._shutdown = True
        atexit.unregister(self._atexit_handler)

        deadline = time.monotonic() + timeout_millis / 1000
        ok = self.tracer_provider.shutdown(timeout_millis)
        if self.controller is not None:
            remaining = max(int((deadline - time.monotonic()) * 1000), 0)
            ok = self.controller.shutdown(remaining) and ok
        return ok

    def _atexit_handler(self) -> None:
        self.shutdown(timeout_millis=5000)


# =============================================================================
# Configuration Functions
# =============================================================================


def _create_span_exporter(config: TelemetryConfig) -> SpanExporter | None:
    if config.exporter == "none":
        return None
    if config.exporter == "console":
        return ConsoleSpanExporter()
    if config.exporter == "memory":
        return InMemorySpanExporter()
    return OTLPSpanExporter(
        config.endpoint,
        insecure=config.insecure,
        headers=config.headers,
        timeout_seconds=config.export_timeout_millis / 1000,
    )


def _metric_exporter_factory(config: TelemetryConfig) -> Callable[[], MetricExporter] | None:
    if config.exporter == "none":
        return None
    if config.exporter == "console":
        return ConsoleMetricExporter
    if config.exporter == "memory":
        return InMemoryMetricExporter
    return lambda: OTLPMetricExporter(
        config.endpoint,
        insecure=config.insecure,
        headers=config.headers,
        timeout_seconds=config.export_timeout_millis / 1000,
    )


def configure_telemetry(
    config: TelemetryConfig | None = None,
    *,
    register_atexit: bool = True,
) -> Telemetry:
    """Validate ``config`` and start the telemetry pipeline.

    Args:
        config: Configuration (default: from the environment).
        register_atexit: Shut the pipeline down at interpreter exit.

    Returns:
        Running Telemetry handle.

    Raises:
        ConfigurationError: If the configuration is invalid, the resource
            cannot be built, or an exporter cannot be created.
    """
    if config is None:
        config = TelemetryConfig.from_env()
    config.validate()

    logging.getLogger("tracekit").setLevel(config.log_level.upper())

    resource = create_resource(
        config.service_name,
        config.service_version,
        environment=config.environment,
        attributes=config.resource_attributes,
    )
    registry = MetricRegistry()

    processors: list[SpanProcessor] = []
    span_exporter = _create_span_exporter(config)
    span_processor: SpanProcessor | None = None
    if span_exporter is not None:
        span_processor = BatchSpanProcessor(
            span_exporter, config=config.batch_config, registry=registry
        )
        processors.append(span_processor)

    tracer_provider = TracerProvider(
        resource=resource,
        sampler=SAMPLERS[config.sampler](),
        id_generator=ID_GENERATORS[config.id_generator](),
        processors=processors,
    )
    propagator = create_propagator(config.propagators)

    controller: PushController | None = None
    factory = _metric_exporter_factory(config)
    if factory is not None:
        controller = PushController(
            registry,
            factory,
            resource,
            collect_period_millis=config.metric_collect_period_millis,
            temporality=TEMPORALITIES[config.metric_temporality],
            export_timeout_millis=config.export_timeout_millis,
        )
        try:
            controller.start()
        except ConfigurationError:
            tracer_provider.shutdown(timeout_millis=0)
            raise

    telemetry = Telemetry(
        config=config,
        resource=resource,
        tracer_provider=tracer_provider,
        propagator=propagator,
        registry=registry,
        controller=controller,
        span_processor=span_processor,
    )
    if register_atexit:
        atexit.register(telemetry._atexit_handler)

    logger.debug(
        "Telemetry configured for %s (exporter=%s, propagators=%s)",
        config.service_name,
        config.exporter,
        ",".join(config.propagators),
    )
    return telemetry
