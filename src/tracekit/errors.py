"""Exception hierarchy for tracekit.

Only setup paths raise. Producer-facing calls (starting and ending spans,
recording measurements, inject/extract) swallow telemetry failures and log
them instead, so none of these exceptions escape the request path.
"""

from __future__ import annotations


class TelemetryError(Exception):
    """Base class for all tracekit errors."""


class ConfigurationError(TelemetryError):
    """Raised when the telemetry pipeline cannot be constructed."""


class ResourceError(ConfigurationError):
    """Raised when a Resource cannot be built from the given attributes."""

    def __init__(self, message: str, key: str | None = None) -> None:
        self.key = key
        super().__init__(message)
