"""Trace and span identifier generation.

Trace IDs are 128-bit and span IDs 64-bit, both rendered as lower-case hex.
The all-zero value is reserved as "invalid" and never generated.

Generators:
    - RandomIdGenerator: cryptographically seeded random IDs (default)
    - XRayIdGenerator: trace IDs prefixed with the current Unix time in
      seconds, as required by AWS X-Ray for routing and retention
"""

from __future__ import annotations

import re
import secrets
import time
from abc import ABC, abstractmethod

INVALID_TRACE_ID = "0" * 32
INVALID_SPAN_ID = "0" * 16

_TRACE_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_SPAN_ID_RE = re.compile(r"^[0-9a-f]{16}$")


def is_valid_trace_id(trace_id: str) -> bool:
    """Check that ``trace_id`` is 32 lower-case hex chars and non-zero."""
    return bool(_TRACE_ID_RE.match(trace_id)) and trace_id != INVALID_TRACE_ID


def is_valid_span_id(span_id: str) -> bool:
    """Check that ``span_id`` is 16 lower-case hex chars and non-zero."""
    return bool(_SPAN_ID_RE.match(span_id)) and span_id != INVALID_SPAN_ID


class IdGenerator(ABC):
    """Strategy for producing trace and span identifiers.

    Implementations must be safe to call from many threads at once without
    external locking.
    """

    @abstractmethod
    def generate_trace_id(self) -> str:
        """Generate a new non-zero 128-bit trace ID."""
        pass

    @abstractmethod
    def generate_span_id(self) -> str:
        """Generate a new non-zero 64-bit span ID."""
        pass


class RandomIdGenerator(IdGenerator):
    """ID generator backed by the operating system CSPRNG."""

    def generate_trace_id(self) -> str:
        value = secrets.randbits(128)
        while value == 0:
            value = secrets.randbits(128)
        return f"{value:032x}"

    def generate_span_id(self) -> str:
        value = secrets.randbits(64)
        while value == 0:
            value = secrets.randbits(64)
        return f"{value:016x}"


class XRayIdGenerator(IdGenerator):
    """ID generator producing AWS X-Ray compatible trace IDs.

    The first 32 bits of the trace ID hold the epoch time in seconds; the
    remaining 96 bits are random. Span IDs are plain random values.

    Example:
        >>> gen = XRayIdGenerator()
        >>> trace_id = gen.generate_trace_id()
        >>> int(trace_id[:8], 16) <= int(time.time())
        True
    """

    def __init__(self) -> None:
        self._random = RandomIdGenerator()

    def generate_trace_id(self) -> str:
        epoch = int(time.time()) & 0xFFFFFFFF
        return f"{epoch:08x}{secrets.randbits(96):024x}"

    def generate_span_id(self) -> str:
        return self._random.generate_span_id()
