"""Shared export primitives.

Both span and metric exporters report outcomes as an ExportResult and
collector-bound exporters share the OTLP/HTTP JSON transport defined here.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from enum import Enum, auto
from typing import Any, Mapping

from tracekit.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ExportResult(Enum):
    """Result of an export operation."""

    SUCCESS = auto()  # Export completed successfully
    FAILURE = auto()  # Export failed, do not retry
    RETRY = auto()  # Export failed transiently, may be retried


# Status codes the collector uses for transient conditions
_RETRYABLE_STATUS = frozenset({408, 429, 502, 503, 504})


def resolve_endpoint(endpoint: str, path: str, *, insecure: bool = False) -> str:
    """Build the full collector URL for an OTLP/HTTP signal.

    Accepts either a bare ``host:port`` (scheme chosen by ``insecure``) or a
    full ``http(s)://`` URL. ``path`` (e.g. ``/v1/traces``) is appended unless
    the URL already ends with it.

    Raises:
        ConfigurationError: If the endpoint cannot be parsed.
    """
    endpoint = (endpoint or "").strip()
    if not endpoint:
        raise ConfigurationError("Exporter endpoint must not be empty")

    if "://" not in endpoint:
        scheme = "http" if insecure else "https"
        endpoint = f"{scheme}://{endpoint}"

    parsed = urllib.parse.urlparse(endpoint)
    if parsed.scheme not in ("http", "https"):
        raise ConfigurationError(f"Unsupported exporter scheme in {endpoint!r}")
    try:
        port = parsed.port
    except ValueError as e:
        raise ConfigurationError(f"Invalid exporter endpoint {endpoint!r}: {e}") from e
    if not parsed.hostname:
        raise ConfigurationError(f"Exporter endpoint {endpoint!r} has no host")

    netloc = parsed.hostname if port is None else f"{parsed.hostname}:{port}"
    base_path = parsed.path.rstrip("/")
    if not base_path.endswith(path):
        base_path = base_path + path
    return urllib.parse.urlunparse((parsed.scheme, netloc, base_path, "", "", ""))


def post_json(
    url: str,
    payload: Mapping[str, Any],
    *,
    headers: Mapping[str, str] | None = None,
    timeout: float = 10.0,
) -> ExportResult:
    """POST a JSON document and classify the outcome.

    Never raises: network failures are mapped to RETRY and serialization
    failures to FAILURE.
    """
    try:
        body = json.dumps(payload, default=str).encode("utf-8")
    except (TypeError, ValueError):
        logger.exception("Could not serialize export payload")
        return ExportResult.FAILURE

    request = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json", **(headers or {})},
        method="POST",
    )

    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            status = response.status
    except urllib.error.HTTPError as e:
        status = e.code
    except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
        logger.debug("Export to %s failed: %s", url, e)
        return ExportResult.RETRY

    if 200 <= status < 300:
        return ExportResult.SUCCESS
    if status in _RETRYABLE_STATUS or status >= 500:
        logger.debug("Collector at %s returned %d, will retry", url, status)
        return ExportResult.RETRY
    logger.warning("Collector at %s rejected export with status %d", url, status)
    return ExportResult.FAILURE


def otlp_attributes(attributes: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Convert an attribute mapping to OTLP JSON ``KeyValue`` list."""
    return [{"key": k, "value": otlp_value(v)} for k, v in attributes.items()]


def otlp_value(value: Any) -> dict[str, Any]:
    """Convert one attribute value to an OTLP JSON ``AnyValue``."""
    if isinstance(value, bool):
        return {"boolValue": value}
    elif isinstance(value, int):
        return {"intValue": str(value)}
    elif isinstance(value, float):
        return {"doubleValue": value}
    elif isinstance(value, str):
        return {"stringValue": value}
    elif isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [otlp_value(v) for v in value]}}
    else:
        return {"stringValue": str(value)}
