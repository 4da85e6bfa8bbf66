"""Resource description of the telemetry-producing process.

A Resource is built once at startup and attached, read-only, to every
exported span batch and metric batch.

Resource Semantic Conventions:
    - service.name / service.version / deployment.environment
    - telemetry.sdk.name / telemetry.sdk.version / telemetry.sdk.language
    - process.pid / process.runtime.name / process.runtime.version
    - host.name / host.arch / os.type
    - cloud.provider / cloud.region
"""

from __future__ import annotations

import logging
import os
import platform
import socket
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Sequence

from tracekit.errors import ResourceError
from tracekit.version import __version__

logger = logging.getLogger(__name__)

_SCALAR_TYPES = (str, bool, int, float)


def _validate_attributes(attributes: Mapping[str, Any]) -> dict[str, Any]:
    """Check keys and values against the attribute type rules.

    Raises:
        ResourceError: On an empty/non-string key or an unsupported value.
    """
    validated: dict[str, Any] = {}
    for key, value in attributes.items():
        if not isinstance(key, str) or not key:
            raise ResourceError(f"Invalid resource attribute key: {key!r}", key=str(key))
        if isinstance(value, _SCALAR_TYPES):
            validated[key] = value
            continue
        if isinstance(value, (list, tuple)):
            types = {type(v) for v in value}
            if len(types) <= 1 and all(isinstance(v, _SCALAR_TYPES) for v in value):
                validated[key] = tuple(value)
                continue
        raise ResourceError(
            f"Invalid value for resource attribute '{key}': {value!r}", key=key
        )
    return validated


# =============================================================================
# Resource
# =============================================================================


@dataclass(frozen=True)
class Resource:
    """Immutable representation of the entity producing telemetry.

    Example:
        >>> resource = Resource.create({
        ...     "service.name": "hello-app",
        ...     "service.version": "v1.0.0",
        ... })
    """

    attributes: Mapping[str, Any] = field(default_factory=dict)
    schema_url: str = ""

    def __post_init__(self) -> None:
        validated = _validate_attributes(self.attributes)
        object.__setattr__(self, "attributes", MappingProxyType(validated))

    def __hash__(self) -> int:
        return hash((tuple(sorted(self.attributes.items())), self.schema_url))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Resource):
            return (
                dict(self.attributes) == dict(other.attributes)
                and self.schema_url == other.schema_url
            )
        return NotImplemented

    def merge(self, other: "Resource") -> "Resource":
        """Merge with another resource.

        The other resource's attributes take precedence for conflicts.
        """
        merged_attrs = {**self.attributes, **other.attributes}
        return Resource(
            attributes=merged_attrs,
            schema_url=other.schema_url or self.schema_url,
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attributes": dict(self.attributes),
            "schema_url": self.schema_url,
        }

    @classmethod
    def empty(cls) -> "Resource":
        return cls(attributes={})

    @classmethod
    def create(
        cls,
        attributes: Mapping[str, Any] | None = None,
        schema_url: str = "",
    ) -> "Resource":
        """Create a resource with given attributes.

        Raises:
            ResourceError: If any attribute is invalid.
        """
        return cls(attributes=dict(attributes or {}), schema_url=schema_url)


# =============================================================================
# Resource Detectors
# =============================================================================


class ResourceDetector(ABC):
    """Discovers resource attributes from the environment."""

    @abstractmethod
    def detect(self) -> Resource:
        pass


class SDKResourceDetector(ResourceDetector):
    """Detects ``telemetry.sdk.*`` attributes."""

    SDK_NAME = "tracekit"
    SDK_LANGUAGE = "python"

    def detect(self) -> Resource:
        return Resource(attributes={
            "telemetry.sdk.name": self.SDK_NAME,
            "telemetry.sdk.version": __version__,
            "telemetry.sdk.language": self.SDK_LANGUAGE,
        })


class ServiceResourceDetector(ResourceDetector):
    """Detects service identity from environment variables.

    Detects:
        - OTEL_SERVICE_NAME -> service.name
        - OTEL_SERVICE_VERSION -> service.version
        - OTEL_RESOURCE_ATTRIBUTES -> additional attributes (k=v,k=v)
    """

    def __init__(
        self,
        service_name: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._default_service_name = service_name or "unknown_service"
        self._environ = environ if environ is not None else os.environ

    def detect(self) -> Resource:
        attributes: dict[str, Any] = {}

        for pair in self._environ.get("OTEL_RESOURCE_ATTRIBUTES", "").split(","):
            if "=" in pair:
                key, value = pair.split("=", 1)
                if key.strip():
                    attributes[key.strip()] = value.strip()

        attributes["service.name"] = self._environ.get(
            "OTEL_SERVICE_NAME", self._default_service_name
        )
        service_version = self._environ.get("OTEL_SERVICE_VERSION")
        if service_version:
            attributes["service.version"] = service_version

        return Resource(attributes=attributes)


class ProcessResourceDetector(ResourceDetector):
    """Detects process and runtime attributes."""

    def detect(self) -> Resource:
        attributes: dict[str, Any] = {
            "process.pid": os.getpid(),
            "process.runtime.name": platform.python_implementation(),
            "process.runtime.version": platform.python_version(),
        }
        if sys.executable:
            attributes["process.executable.name"] = os.path.basename(sys.executable)
        return Resource(attributes=attributes)


class HostResourceDetector(ResourceDetector):
    """Detects host and operating system attributes."""

    def detect(self) -> Resource:
        attributes: dict[str, Any] = {
            "host.arch": platform.machine(),
            "os.type": platform.system().lower(),
        }
        try:
            attributes["host.name"] = socket.gethostname()
        except OSError:
            logger.debug("Could not determine host name", exc_info=True)
        return Resource(attributes={k: v for k, v in attributes.items() if v})


class AWSResourceDetector(ResourceDetector):
    """Detects the AWS region from the standard SDK environment variables."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def detect(self) -> Resource:
        region = self._environ.get("AWS_REGION") or self._environ.get("AWS_DEFAULT_REGION")
        if not region:
            return Resource.empty()
        return Resource(attributes={"cloud.provider": "aws", "cloud.region": region})


def default_detectors() -> list[ResourceDetector]:
    """Detectors used when none are given explicitly."""
    return [
        SDKResourceDetector(),
        ProcessResourceDetector(),
        HostResourceDetector(),
        AWSResourceDetector(),
        ServiceResourceDetector(),
    ]


# =============================================================================
# Resource Aggregation
# =============================================================================


def get_aggregated_resources(
    detectors: Sequence[ResourceDetector] | None = None,
    initial_resource: Resource | None = None,
) -> Resource:
    """Run detectors and merge their results.

    Later detectors override earlier ones for conflicting attributes.
    Detection is best-effort: a detector that raises is logged and skipped.
    """
    resource = initial_resource or Resource.empty()

    for detector in default_detectors() if detectors is None else detectors:
        try:
            resource = resource.merge(detector.detect())
        except Exception:
            logger.warning(
                "Resource detector %s failed", type(detector).__name__, exc_info=True
            )

    return resource


def create_resource(
    service_name: str,
    service_version: str = "",
    *,
    environment: str = "",
    attributes: Mapping[str, Any] | None = None,
    detectors: Sequence[ResourceDetector] | None = None,
) -> Resource:
    """Build the process Resource.

    Detected attributes form the base; explicit arguments take precedence.

    Raises:
        ResourceError: If explicit attributes are invalid or the service
            name is empty.
    """
    if not service_name:
        raise ResourceError("service.name must not be empty", key="service.name")

    override: dict[str, Any] = dict(attributes or {})
    override["service.name"] = service_name
    if service_version:
        override["service.version"] = service_version
    if environment:
        override["deployment.environment"] = environment

    base = get_aggregated_resources(detectors)
    return base.merge(Resource.create(override))
