"""Span implementation for distributed tracing.

A Span represents a single operation within a trace. Spans form a tree via
parent links and share the TraceID of their root.

Lifecycle:
    Span (Active, mutable, owned by the starting thread)
        -> end()
    ReadableSpan (Ended, frozen snapshot handed to span processors)

Calling ``end()`` more than once has no further effect, so a span is handed
to its processor exactly once.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping, Sequence, TYPE_CHECKING

from tracekit.tracing.ids import (
    INVALID_SPAN_ID,
    INVALID_TRACE_ID,
    is_valid_span_id,
    is_valid_trace_id,
)

if TYPE_CHECKING:
    from tracekit.resource import Resource

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================


class SpanKind(Enum):
    """Type of span.

    SpanKind describes the relationship between the span and its parent/children.
    """

    INTERNAL = auto()  # Default, internal operation
    SERVER = auto()  # Server-side of a synchronous RPC
    CLIENT = auto()  # Client-side of a synchronous RPC
    PRODUCER = auto()  # Producer of an async message
    CONSUMER = auto()  # Consumer of an async message


class StatusCode(Enum):
    """Status of a span."""

    UNSET = auto()
    OK = auto()
    ERROR = auto()


TRACE_FLAG_SAMPLED = 0x01


# =============================================================================
# Trace State
# =============================================================================


_TRACESTATE_KEY_RE = re.compile(
    r"^(?:[a-z][_0-9a-z\-*/]{0,255}"
    r"|[a-z0-9][_0-9a-z\-*/]{0,240}@[a-z][_0-9a-z\-*/]{0,13})$"
)
_TRACESTATE_VALUE_RE = re.compile(r"^[\x20-\x2b\x2d-\x3c\x3e-\x7e]{0,255}[\x21-\x2b\x2d-\x3c\x3e-\x7e]$")


class TraceState(Mapping[str, str]):
    """Ordered list of vendor key-value entries (W3C ``tracestate``).

    TraceState is immutable; ``add``, ``update`` and ``delete`` return new
    instances. The most recently added or updated entry comes first.
    """

    MAX_ENTRIES = 32

    __slots__ = ("_entries",)

    def __init__(self, entries: Sequence[tuple[str, str]] | None = None) -> None:
        cleaned: list[tuple[str, str]] = []
        seen: set[str] = set()
        for key, value in entries or ():
            if key in seen or not self.is_valid_pair(key, value):
                logger.debug("Skipping invalid tracestate entry %r=%r", key, value)
                continue
            if len(cleaned) >= self.MAX_ENTRIES:
                break
            seen.add(key)
            cleaned.append((key, value))
        self._entries: tuple[tuple[str, str], ...] = tuple(cleaned)

    @staticmethod
    def is_valid_pair(key: str, value: str) -> bool:
        """Check a key/value against the W3C list-member grammar."""
        return bool(
            isinstance(key, str)
            and isinstance(value, str)
            and _TRACESTATE_KEY_RE.match(key)
            and _TRACESTATE_VALUE_RE.match(value)
        )

    def __getitem__(self, key: str) -> str:
        for k, v in self._entries:
            if k == key:
                return v
        raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        return (k for k, _ in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TraceState):
            return self._entries == other._entries
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._entries)

    def __repr__(self) -> str:
        return f"TraceState({list(self._entries)!r})"

    def entries(self) -> tuple[tuple[str, str], ...]:
        """Get entries in header order."""
        return self._entries

    def add(self, key: str, value: str) -> "TraceState":
        """Prepend a new entry. Existing keys are left untouched."""
        if key in self or not self.is_valid_pair(key, value):
            return self
        return TraceState([(key, value), *self._entries])

    def update(self, key: str, value: str) -> "TraceState":
        """Set ``key`` to ``value`` and move it to the front."""
        if not self.is_valid_pair(key, value):
            return self
        rest = [(k, v) for k, v in self._entries if k != key]
        return TraceState([(key, value), *rest])

    def delete(self, key: str) -> "TraceState":
        """Remove ``key`` if present."""
        if key not in self:
            return self
        return TraceState([(k, v) for k, v in self._entries if k != key])

    def to_header(self) -> str:
        """Format as a ``tracestate`` header value."""
        return ",".join(f"{k}={v}" for k, v in self._entries)

    @classmethod
    def from_header(cls, header: str | Sequence[str] | None) -> "TraceState":
        """Parse one or more ``tracestate`` header values.

        Malformed members are skipped rather than invalidating the whole
        header.
        """
        if not header:
            return cls()
        values = [header] if isinstance(header, str) else list(header)
        entries: list[tuple[str, str]] = []
        for value in values:
            for member in value.split(","):
                member = member.strip()
                if not member or "=" not in member:
                    continue
                key, _, val = member.partition("=")
                entries.append((key.strip(), val.strip()))
        return cls(entries)


# =============================================================================
# Span Context
# =============================================================================


@dataclass(frozen=True)
class SpanContext:
    """Immutable identity of a span, as carried across process boundaries.

    Attributes:
        trace_id: 128-bit trace ID as 32 hex chars.
        span_id: 64-bit span ID as 16 hex chars.
        trace_flags: W3C trace flags; bit 0 is "sampled".
        trace_state: Vendor entries propagated alongside the IDs.
        is_remote: True when the context was extracted from a carrier.
    """

    trace_id: str
    span_id: str
    trace_flags: int = TRACE_FLAG_SAMPLED
    trace_state: TraceState = field(default_factory=TraceState)
    is_remote: bool = False

    @property
    def is_valid(self) -> bool:
        """Check that both IDs are well-formed and non-zero."""
        return is_valid_trace_id(self.trace_id) and is_valid_span_id(self.span_id)

    @property
    def is_sampled(self) -> bool:
        """Check if the sampled flag is set."""
        return bool(self.trace_flags & TRACE_FLAG_SAMPLED)


INVALID_SPAN_CONTEXT = SpanContext(
    trace_id=INVALID_TRACE_ID,
    span_id=INVALID_SPAN_ID,
    trace_flags=0,
)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class SpanLimits:
    """Configuration limits for spans.

    Prevents unbounded memory growth from too many attributes/events.
    """

    max_attributes: int = 128
    max_events: int = 128
    max_links: int = 128
    max_errors: int = 32
    max_attribute_length: int = 4096


@dataclass(frozen=True)
class Event:
    """A time-stamped annotation recorded during a span's lifetime."""

    name: str
    timestamp: float = field(default_factory=time.time)
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "timestamp": self.timestamp,
            "attributes": dict(self.attributes),
        }


@dataclass(frozen=True)
class Link:
    """A causal link to a span that is not the parent."""

    context: SpanContext
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.context.trace_id,
            "span_id": self.context.span_id,
            "attributes": dict(self.attributes),
        }


@dataclass(frozen=True)
class RecordedError:
    """An exception recorded on a span."""

    type: str
    message: str
    stacktrace: str = ""
    timestamp: float = field(default_factory=time.time)
    escaped: bool = False
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls,
        exception: BaseException,
        *,
        escaped: bool = False,
        attributes: Mapping[str, Any] | None = None,
        timestamp: float | None = None,
    ) -> "RecordedError":
        return cls(
            type=type(exception).__name__,
            message=str(exception),
            stacktrace="".join(
                traceback.format_exception(
                    type(exception), exception, exception.__traceback__
                )
            ),
            timestamp=timestamp or time.time(),
            escaped=escaped,
            attributes=dict(attributes or {}),
        )

    def to_event_attributes(self) -> dict[str, Any]:
        """Render with OpenTelemetry ``exception.*`` semantic conventions."""
        attributes = {
            "exception.type": self.type,
            "exception.message": self.message,
            "exception.stacktrace": self.stacktrace,
            "exception.escaped": self.escaped,
        }
        attributes.update(self.attributes)
        return attributes

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "timestamp": self.timestamp,
            "escaped": self.escaped,
        }


@dataclass(frozen=True)
class InstrumentationScope:
    """Name and version of the library that created a span."""

    name: str
    version: str = ""


# =============================================================================
# Readable (ended) span
# =============================================================================


@dataclass(frozen=True, eq=False)
class ReadableSpan:
    """Immutable snapshot of an ended span.

    This is what span processors queue and exporters serialize. It never
    changes after ``Span.end()`` creates it.
    """

    name: str
    context: SpanContext
    parent: SpanContext | None
    kind: SpanKind
    start_time: float
    end_time: float
    attributes: Mapping[str, Any]
    events: tuple[Event, ...] = ()
    links: tuple[Link, ...] = ()
    errors: tuple[RecordedError, ...] = ()
    status_code: StatusCode = StatusCode.UNSET
    status_message: str = ""
    resource: "Resource | None" = None
    scope: InstrumentationScope | None = None

    @property
    def status(self) -> tuple[StatusCode, str]:
        return (self.status_code, self.status_message)

    @property
    def parent_span_id(self) -> str | None:
        return self.parent.span_id if self.parent else None

    @property
    def duration_ms(self) -> float:
        return (self.end_time - self.start_time) * 1000

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for export."""
        return {
            "trace_id": self.context.trace_id,
            "span_id": self.context.span_id,
            "parent_span_id": self.parent_span_id,
            "name": self.name,
            "kind": self.kind.name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "status": {
                "code": self.status_code.name,
                "message": self.status_message,
            },
            "attributes": dict(self.attributes),
            "events": [e.to_dict() for e in self.events],
            "links": [l.to_dict() for l in self.links],
            "errors": [e.to_dict() for e in self.errors],
        }


# =============================================================================
# Span Interface
# =============================================================================


class SpanBase(ABC):
    """Interface shared by recording and non-recording spans."""

    @property
    @abstractmethod
    def context(self) -> SpanContext:
        pass

    @abstractmethod
    def set_attribute(self, key: str, value: Any) -> "SpanBase":
        pass

    def set_attributes(self, attributes: Mapping[str, Any]) -> "SpanBase":
        for key, value in attributes.items():
            self.set_attribute(key, value)
        return self

    @abstractmethod
    def add_event(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        timestamp: float | None = None,
    ) -> "SpanBase":
        pass

    @abstractmethod
    def record_exception(
        self,
        exception: BaseException,
        attributes: Mapping[str, Any] | None = None,
        escaped: bool = False,
    ) -> "SpanBase":
        pass

    @abstractmethod
    def set_status(self, code: StatusCode, message: str = "") -> "SpanBase":
        pass

    @abstractmethod
    def update_name(self, name: str) -> "SpanBase":
        pass

    @abstractmethod
    def end(self, end_time: float | None = None) -> None:
        pass

    @abstractmethod
    def is_recording(self) -> bool:
        pass

    def __enter__(self) -> "SpanBase":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.end()


# =============================================================================
# Span Implementation
# =============================================================================


class Span(SpanBase):
    """Recording span.

    Mutations are guarded by an internal lock so a span can be annotated from
    helper threads, but logically a span belongs to the task that started it
    until ``end()`` transfers a frozen ReadableSpan to the processor.
    Mutations after ``end()`` are ignored and logged.
    """

    def __init__(
        self,
        name: str,
        context: SpanContext,
        *,
        parent: SpanContext | None = None,
        kind: SpanKind = SpanKind.INTERNAL,
        links: Sequence[Link] | None = None,
        attributes: Mapping[str, Any] | None = None,
        start_time: float | None = None,
        limits: SpanLimits | None = None,
        resource: "Resource | None" = None,
        scope: InstrumentationScope | None = None,
        on_end: Callable[[ReadableSpan], None] | None = None,
    ) -> None:
        self._name = name
        self._context = context
        self._parent = parent
        self._kind = kind
        self._limits = limits or SpanLimits()
        self._resource = resource
        self._scope = scope
        self._on_end = on_end

        self._start_time = start_time or time.time()
        self._end_time: float | None = None

        self._attributes: dict[str, Any] = {}
        self._events: list[Event] = []
        self._links: list[Link] = list(links or [])[: self._limits.max_links]
        self._errors: list[RecordedError] = []

        self._status_code = StatusCode.UNSET
        self._status_message = ""

        self._lock = threading.Lock()
        self._ended = False

        if attributes:
            self.set_attributes(attributes)

    def __repr__(self) -> str:
        return (
            f"Span(name={self._name!r}, trace_id={self._context.trace_id}, "
            f"span_id={self._context.span_id})"
        )

    @property
    def context(self) -> SpanContext:
        return self._context

    @property
    def name(self) -> str:
        return self._name

    @property
    def parent(self) -> SpanContext | None:
        return self._parent

    @property
    def kind(self) -> SpanKind:
        return self._kind

    @property
    def start_time(self) -> float:
        return self._start_time

    @property
    def end_time(self) -> float | None:
        return self._end_time

    @property
    def attributes(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._attributes)

    @property
    def events(self) -> list[Event]:
        with self._lock:
            return list(self._events)

    @property
    def errors(self) -> list[RecordedError]:
        with self._lock:
            return list(self._errors)

    @property
    def status(self) -> tuple[StatusCode, str]:
        return (self._status_code, self._status_message)

    def _ended_warning(self, operation: str) -> None:
        logger.warning(
            "Ignoring %s on ended span %r (trace_id=%s span_id=%s)",
            operation,
            self._name,
            self._context.trace_id,
            self._context.span_id,
        )

    def set_attribute(self, key: str, value: Any) -> "Span":
        with self._lock:
            if self._ended:
                self._ended_warning(f"set_attribute({key!r})")
                return self
            if key not in self._attributes and len(self._attributes) >= self._limits.max_attributes:
                return self
            if isinstance(value, str) and len(value) > self._limits.max_attribute_length:
                value = value[: self._limits.max_attribute_length]
            self._attributes[key] = value
        return self

    def add_event(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        timestamp: float | None = None,
    ) -> "Span":
        with self._lock:
            if self._ended:
                self._ended_warning(f"add_event({name!r})")
                return self
            if len(self._events) >= self._limits.max_events:
                return self
            self._events.append(
                Event(
                    name=name,
                    timestamp=timestamp or time.time(),
                    attributes=dict(attributes or {}),
                )
            )
        return self

    def record_exception(
        self,
        exception: BaseException,
        attributes: Mapping[str, Any] | None = None,
        escaped: bool = False,
    ) -> "Span":
        """Record an error on the span and mark its status as ERROR."""
        error = RecordedError.from_exception(
            exception, escaped=escaped, attributes=attributes
        )
        with self._lock:
            if self._ended:
                self._ended_warning(f"record_exception({error.type})")
                return self
            if len(self._errors) < self._limits.max_errors:
                self._errors.append(error)
            if self._status_code != StatusCode.ERROR:
                self._status_code = StatusCode.ERROR
                self._status_message = error.message
        return self

    def set_status(self, code: StatusCode, message: str = "") -> "Span":
        with self._lock:
            if self._ended:
                self._ended_warning(f"set_status({code.name})")
                return self
            # Once ERROR is set, it cannot be changed
            if self._status_code == StatusCode.ERROR:
                return self
            self._status_code = code
            self._status_message = message if code == StatusCode.ERROR else ""
        return self

    def update_name(self, name: str) -> "Span":
        with self._lock:
            if self._ended:
                self._ended_warning("update_name")
                return self
            self._name = name
        return self

    def end(self, end_time: float | None = None) -> None:
        """End the span and hand its snapshot to the processor.

        Only the first call has any effect.
        """
        with self._lock:
            if self._ended:
                logger.debug("Span %r already ended", self._name)
                return
            self._ended = True
            self._end_time = end_time or time.time()
            snapshot = self._snapshot()

        if self._on_end is not None:
            try:
                self._on_end(snapshot)
            except Exception:
                logger.exception("Span processor failed on span end")

    def _snapshot(self) -> ReadableSpan:
        return ReadableSpan(
            name=self._name,
            context=self._context,
            parent=self._parent,
            kind=self._kind,
            start_time=self._start_time,
            end_time=self._end_time or time.time(),
            attributes=MappingProxyType(dict(self._attributes)),
            events=tuple(self._events),
            links=tuple(self._links),
            errors=tuple(self._errors),
            status_code=self._status_code,
            status_message=self._status_message,
            resource=self._resource,
            scope=self._scope,
        )

    def is_recording(self) -> bool:
        return not self._ended

    def __enter__(self) -> "Span":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_val is not None:
            self.record_exception(exc_val, escaped=True)
        elif self._status_code == StatusCode.UNSET:
            self.set_status(StatusCode.OK)
        self.end()


# =============================================================================
# Non-recording Span
# =============================================================================


class NonRecordingSpan(SpanBase):
    """Span that carries a context but records nothing.

    Returned for sampled-out spans and for spans started after the provider
    shut down. It still propagates its SpanContext so downstream services
    stay in the same trace.
    """

    def __init__(self, context: SpanContext | None = None) -> None:
        self._context = context or INVALID_SPAN_CONTEXT

    def __repr__(self) -> str:
        return f"NonRecordingSpan({self._context!r})"

    @property
    def context(self) -> SpanContext:
        return self._context

    def set_attribute(self, key: str, value: Any) -> "NonRecordingSpan":
        return self

    def add_event(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        timestamp: float | None = None,
    ) -> "NonRecordingSpan":
        return self

    def record_exception(
        self,
        exception: BaseException,
        attributes: Mapping[str, Any] | None = None,
        escaped: bool = False,
    ) -> "NonRecordingSpan":
        return self

    def set_status(self, code: StatusCode, message: str = "") -> "NonRecordingSpan":
        return self

    def update_name(self, name: str) -> "NonRecordingSpan":
        return self

    def end(self, end_time: float | None = None) -> None:
        pass

    def is_recording(self) -> bool:
        return False
