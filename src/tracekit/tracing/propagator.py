"""Context propagators for distributed tracing.

Propagators handle injecting and extracting trace context from
carrier formats (HTTP headers, message metadata, etc.). A carrier is any
mapping of header name to a string or a list of strings.

Supported Formats:
    - W3C Trace Context (traceparent, tracestate)
    - W3C Baggage
    - B3 (Zipkin format, single and multi header)
    - Jaeger (uber-trace-id, uberctx-*)
    - AWS X-Ray (X-Amzn-Trace-Id)

Extraction never raises. Malformed or absent headers leave the input
context unchanged.
"""

from __future__ import annotations

import logging
import re
import urllib.parse
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, MutableMapping, Sequence

from tracekit.context import Context, get_span_context, set_span_in_context
from tracekit.errors import ConfigurationError
from tracekit.tracing.baggage import get_baggage, set_baggage_items
from tracekit.tracing.span import (
    TRACE_FLAG_SAMPLED,
    NonRecordingSpan,
    SpanContext,
    TraceState,
)

logger = logging.getLogger(__name__)

Carrier = Mapping[str, Any]


# =============================================================================
# Carrier Getter/Setter
# =============================================================================


class CarrierGetter(ABC):
    """Abstract interface for getting values from a carrier."""

    @abstractmethod
    def get(self, carrier: Any, key: str) -> str | None:
        """Get the first value stored under ``key``.

        Returns:
            Value or None if not found.
        """
        pass

    @abstractmethod
    def keys(self, carrier: Any) -> list[str]:
        pass

    def get_all(self, carrier: Any, key: str) -> list[str]:
        """Get every value stored under ``key``."""
        value = self.get(carrier, key)
        return [value] if value is not None else []


class CarrierSetter(ABC):
    """Abstract interface for setting values in a carrier."""

    @abstractmethod
    def set(self, carrier: Any, key: str, value: str) -> None:
        pass


class DictCarrierGetter(CarrierGetter):
    """Case-insensitive getter for dictionary-like carriers.

    List values are supported; ``get`` returns the first element.
    """

    def _lookup(self, carrier: Mapping[str, Any], key: str) -> Any:
        value = carrier.get(key)
        if value is not None:
            return value
        lowered = key.lower()
        for candidate, value in carrier.items():
            if isinstance(candidate, str) and candidate.lower() == lowered:
                return value
        return None

    def get(self, carrier: Mapping[str, Any], key: str) -> str | None:
        value = self._lookup(carrier, key)
        if isinstance(value, (list, tuple)):
            return str(value[0]) if value else None
        return value if value is None else str(value)

    def get_all(self, carrier: Mapping[str, Any], key: str) -> list[str]:
        value = self._lookup(carrier, key)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        return [str(value)]

    def keys(self, carrier: Mapping[str, Any]) -> list[str]:
        return list(carrier.keys())


class DictCarrierSetter(CarrierSetter):
    """Setter for dictionary-like carriers."""

    def set(self, carrier: MutableMapping[str, Any], key: str, value: str) -> None:
        carrier[key] = value


# Default getter/setter for dict carriers
default_getter = DictCarrierGetter()
default_setter = DictCarrierSetter()


# =============================================================================
# Propagator Interface
# =============================================================================


class TextMapPropagator(ABC):
    """Abstract base class for context propagators.

    Propagators inject the span context (and baggage) found in a Context
    into a carrier, and extract them from a carrier into a new Context.
    """

    @abstractmethod
    def inject(
        self,
        context: Context | None,
        carrier: MutableMapping[str, Any],
        setter: CarrierSetter | None = None,
    ) -> None:
        """Inject context into carrier.

        Args:
            context: Context holding the span (and baggage) to propagate.
            carrier: Carrier to inject into.
            setter: Carrier setter (default: dict setter).
        """
        pass

    @abstractmethod
    def extract(
        self,
        context: Context | None,
        carrier: Carrier,
        getter: CarrierGetter | None = None,
    ) -> Context:
        """Extract context from carrier.

        Args:
            context: Context to build on.
            carrier: Carrier to extract from.
            getter: Carrier getter (default: dict getter).

        Returns:
            A new Context carrying what was found, or ``context`` unchanged.
        """
        pass

    @property
    @abstractmethod
    def fields(self) -> list[str]:
        """Get header fields used by this propagator."""
        pass


def _base(context: Context | None) -> Context:
    return context if context is not None else Context()


def _with_remote(context: Context | None, span_context: SpanContext) -> Context:
    return set_span_in_context(NonRecordingSpan(span_context), _base(context))


_HEX_RE = re.compile(r"^[0-9a-f]+$")


def _is_hex(value: str, *lengths: int) -> bool:
    return len(value) in lengths and bool(_HEX_RE.match(value))


# =============================================================================
# W3C Trace Context Propagator
# =============================================================================


class TraceContextPropagator(TextMapPropagator):
    """W3C Trace Context propagator.

    Headers:
        - traceparent: version-trace_id-span_id-flags
        - tracestate: vendor-specific trace context

    Example:
        >>> propagator = TraceContextPropagator()
        >>> headers = {}
        >>> propagator.inject(ctx, headers)
        >>> # headers = {"traceparent": "00-abc...-def...-01"}
    """

    TRACEPARENT_HEADER = "traceparent"
    TRACESTATE_HEADER = "tracestate"
    VERSION = "00"

    _TRACEPARENT_RE = re.compile(
        r"^\s*(?P<version>[0-9a-f]{2})-(?P<trace_id>[0-9a-f]{32})-"
        r"(?P<span_id>[0-9a-f]{16})-(?P<flags>[0-9a-f]{2})(?P<rest>-.*)?\s*$"
    )

    @property
    def fields(self) -> list[str]:
        return [self.TRACEPARENT_HEADER, self.TRACESTATE_HEADER]

    def inject(
        self,
        context: Context | None,
        carrier: MutableMapping[str, Any],
        setter: CarrierSetter | None = None,
    ) -> None:
        """Inject W3C traceparent and tracestate headers."""
        span_context = get_span_context(context)
        if span_context is None:
            return

        setter = setter or default_setter
        traceparent = (
            f"{self.VERSION}-{span_context.trace_id}-{span_context.span_id}-"
            f"{span_context.trace_flags & 0xFF:02x}"
        )
        setter.set(carrier, self.TRACEPARENT_HEADER, traceparent)
        if span_context.trace_state:
            setter.set(carrier, self.TRACESTATE_HEADER, span_context.trace_state.to_header())

    def extract(
        self,
        context: Context | None,
        carrier: Carrier,
        getter: CarrierGetter | None = None,
    ) -> Context:
        """Extract W3C traceparent and tracestate from headers."""
        getter = getter or default_getter
        traceparent = getter.get(carrier, self.TRACEPARENT_HEADER)
        if not traceparent:
            return _base(context)

        match = self._TRACEPARENT_RE.match(traceparent)
        if match is None:
            logger.debug("Ignoring malformed traceparent %r", traceparent)
            return _base(context)

        version = match.group("version")
        # Version 00 has exactly four fields; ff is forbidden
        if version == "ff" or (version == self.VERSION and match.group("rest")):
            logger.debug("Ignoring traceparent with invalid version %r", traceparent)
            return _base(context)

        span_context = SpanContext(
            trace_id=match.group("trace_id"),
            span_id=match.group("span_id"),
            trace_flags=int(match.group("flags"), 16),
            trace_state=TraceState.from_header(
                getter.get_all(carrier, self.TRACESTATE_HEADER)
            ),
            is_remote=True,
        )
        if not span_context.is_valid:
            logger.debug("Ignoring traceparent with zero IDs %r", traceparent)
            return _base(context)
        return _with_remote(context, span_context)


# =============================================================================
# W3C Baggage Propagator
# =============================================================================


class BaggagePropagator(TextMapPropagator):
    """W3C Baggage propagator.

    Header format: key1=value1;metadata,key2=value2

    Keys and values are percent-encoded. Metadata properties are dropped on
    extract. Extracted entries are merged into any baggage the context
    already carries.
    """

    BAGGAGE_HEADER = "baggage"
    MAX_HEADER_LENGTH = 8192
    MAX_PAIRS = 180
    MAX_PAIR_LENGTH = 4096

    @property
    def fields(self) -> list[str]:
        return [self.BAGGAGE_HEADER]

    def inject(
        self,
        context: Context | None,
        carrier: MutableMapping[str, Any],
        setter: CarrierSetter | None = None,
    ) -> None:
        """Inject the context's baggage into the ``baggage`` header."""
        baggage = get_baggage(context)
        if not baggage:
            return

        setter = setter or default_setter
        parts: list[str] = []
        length = 0
        for key, value in baggage.items():
            pair = (
                f"{urllib.parse.quote(key, safe='')}="
                f"{urllib.parse.quote(value, safe='')}"
            )
            if len(parts) >= self.MAX_PAIRS:
                break
            if len(pair) > self.MAX_PAIR_LENGTH:
                continue
            if length + len(pair) + (1 if parts else 0) > self.MAX_HEADER_LENGTH:
                break
            length += len(pair) + (1 if parts else 0)
            parts.append(pair)

        if parts:
            setter.set(carrier, self.BAGGAGE_HEADER, ",".join(parts))

    def extract(
        self,
        context: Context | None,
        carrier: Carrier,
        getter: CarrierGetter | None = None,
    ) -> Context:
        """Extract baggage from the ``baggage`` header."""
        getter = getter or default_getter
        header = ",".join(getter.get_all(carrier, self.BAGGAGE_HEADER))
        if not header:
            return _base(context)
        if len(header) > self.MAX_HEADER_LENGTH:
            logger.debug("Ignoring oversized baggage header (%d bytes)", len(header))
            return _base(context)

        entries: dict[str, str] = {}
        for member in header.split(","):
            if len(entries) >= self.MAX_PAIRS:
                break
            member = member.strip()
            if not member or "=" not in member or len(member) > self.MAX_PAIR_LENGTH:
                if member:
                    logger.debug("Skipping malformed baggage member %r", member)
                continue
            key, _, value = member.partition("=")
            # Drop metadata (;property=value)
            value = value.split(";", 1)[0]
            key = urllib.parse.unquote(key.strip())
            value = urllib.parse.unquote(value.strip())
            if not key:
                continue
            entries[key] = value

        if not entries:
            return _base(context)
        return set_baggage_items(entries, _base(context))


# =============================================================================
# B3 Propagator (Zipkin)
# =============================================================================


class B3Propagator(TextMapPropagator):
    """B3 propagator for Zipkin compatibility.

    Injects either the single ``b3`` header or the ``X-B3-*`` multi-header
    set; extraction understands both regardless of the mode.

    Multi-header format:
        - X-B3-TraceId
        - X-B3-SpanId
        - X-B3-ParentSpanId
        - X-B3-Sampled
        - X-B3-Flags

    Single-header format:
        - b3: {TraceId}-{SpanId}-{Sampled}-{ParentSpanId}

    Example:
        >>> propagator = B3Propagator(single_header=True)
        >>> propagator.inject(ctx, headers)
    """

    # Multi-header keys
    TRACE_ID_HEADER = "X-B3-TraceId"
    SPAN_ID_HEADER = "X-B3-SpanId"
    PARENT_SPAN_ID_HEADER = "X-B3-ParentSpanId"
    SAMPLED_HEADER = "X-B3-Sampled"
    FLAGS_HEADER = "X-B3-Flags"

    # Single-header key
    SINGLE_HEADER = "b3"

    _SAMPLED_VALUES = frozenset({"1", "d", "true"})

    def __init__(self, single_header: bool = False) -> None:
        self._single_header = single_header

    @property
    def single_header(self) -> bool:
        return self._single_header

    @property
    def fields(self) -> list[str]:
        if self._single_header:
            return [self.SINGLE_HEADER]
        return [
            self.TRACE_ID_HEADER,
            self.SPAN_ID_HEADER,
            self.PARENT_SPAN_ID_HEADER,
            self.SAMPLED_HEADER,
            self.FLAGS_HEADER,
        ]

    def inject(
        self,
        context: Context | None,
        carrier: MutableMapping[str, Any],
        setter: CarrierSetter | None = None,
    ) -> None:
        """Inject B3 headers."""
        span_context = get_span_context(context)
        if span_context is None:
            return

        setter = setter or default_setter
        sampled = "1" if span_context.is_sampled else "0"

        if self._single_header:
            b3 = f"{span_context.trace_id}-{span_context.span_id}-{sampled}"
            setter.set(carrier, self.SINGLE_HEADER, b3)
        else:
            setter.set(carrier, self.TRACE_ID_HEADER, span_context.trace_id)
            setter.set(carrier, self.SPAN_ID_HEADER, span_context.span_id)
            setter.set(carrier, self.SAMPLED_HEADER, sampled)

    def extract(
        self,
        context: Context | None,
        carrier: Carrier,
        getter: CarrierGetter | None = None,
    ) -> Context:
        """Extract B3 context from headers."""
        getter = getter or default_getter

        b3 = getter.get(carrier, self.SINGLE_HEADER)
        if b3:
            span_context = self._parse_single_header(b3)
        else:
            span_context = self._parse_multi_header(carrier, getter)

        if span_context is None:
            return _base(context)
        return _with_remote(context, span_context)

    def _build(self, trace_id: str, span_id: str, sampled: bool) -> SpanContext | None:
        trace_id = trace_id.strip().lower()
        span_id = span_id.strip().lower()
        if not _is_hex(trace_id, 16, 32) or not _is_hex(span_id, 16):
            logger.debug("Ignoring malformed B3 ids %r/%r", trace_id, span_id)
            return None
        # B3 allows 64-bit trace ids
        if len(trace_id) == 16:
            trace_id = "0" * 16 + trace_id
        span_context = SpanContext(
            trace_id=trace_id,
            span_id=span_id,
            trace_flags=TRACE_FLAG_SAMPLED if sampled else 0,
            is_remote=True,
        )
        return span_context if span_context.is_valid else None

    def _parse_single_header(self, b3: str) -> SpanContext | None:
        parts = b3.strip().split("-")
        # A lone sampling state ("0", "1", "d") carries no ids
        if len(parts) < 2:
            return None
        sampled = len(parts) > 2 and parts[2].strip().lower() in self._SAMPLED_VALUES
        return self._build(parts[0], parts[1], sampled)

    def _parse_multi_header(
        self, carrier: Carrier, getter: CarrierGetter
    ) -> SpanContext | None:
        trace_id = getter.get(carrier, self.TRACE_ID_HEADER)
        span_id = getter.get(carrier, self.SPAN_ID_HEADER)
        if not trace_id or not span_id:
            return None
        sampled = (getter.get(carrier, self.SAMPLED_HEADER) or "").strip().lower()
        flags = (getter.get(carrier, self.FLAGS_HEADER) or "").strip()
        return self._build(
            trace_id, span_id, flags == "1" or sampled in self._SAMPLED_VALUES
        )


# =============================================================================
# Jaeger Propagator
# =============================================================================


class JaegerPropagator(TextMapPropagator):
    """Jaeger native format propagator.

    Header format:
        - uber-trace-id: {trace-id}:{span-id}:{parent-span-id}:{flags}
        - uberctx-{key}: {baggage value}

    Example:
        >>> propagator = JaegerPropagator()
        >>> propagator.inject(ctx, headers)
    """

    HEADER = "uber-trace-id"
    BAGGAGE_PREFIX = "uberctx-"

    _TRACE_ID_RE = re.compile(r"^[0-9a-f]{1,32}$")
    _SPAN_ID_RE = re.compile(r"^[0-9a-f]{1,16}$")

    @property
    def fields(self) -> list[str]:
        return [self.HEADER]

    def inject(
        self,
        context: Context | None,
        carrier: MutableMapping[str, Any],
        setter: CarrierSetter | None = None,
    ) -> None:
        """Inject the Jaeger header and ``uberctx-*`` baggage."""
        setter = setter or default_setter

        span_context = get_span_context(context)
        if span_context is not None:
            flags = TRACE_FLAG_SAMPLED if span_context.is_sampled else 0
            header = f"{span_context.trace_id}:{span_context.span_id}:0:{flags:x}"
            setter.set(carrier, self.HEADER, header)

        for key, value in get_baggage(context).items():
            setter.set(
                carrier,
                f"{self.BAGGAGE_PREFIX}{key}",
                urllib.parse.quote(value, safe=""),
            )

    def extract(
        self,
        context: Context | None,
        carrier: Carrier,
        getter: CarrierGetter | None = None,
    ) -> Context:
        """Extract Jaeger context and ``uberctx-*`` baggage."""
        getter = getter or default_getter
        result = _base(context)

        header = getter.get(carrier, self.HEADER)
        if header:
            span_context = self._parse_header(urllib.parse.unquote(header))
            if span_context is not None:
                result = _with_remote(result, span_context)

        entries: dict[str, str] = {}
        for key in getter.keys(carrier):
            if not isinstance(key, str) or not key.lower().startswith(self.BAGGAGE_PREFIX):
                continue
            name = key[len(self.BAGGAGE_PREFIX):]
            value = getter.get(carrier, key)
            if name and value is not None:
                entries[name] = urllib.parse.unquote(value)
        if entries:
            result = set_baggage_items(entries, result)
        return result

    def _parse_header(self, header: str) -> SpanContext | None:
        parts = header.strip().lower().split(":")
        if len(parts) != 4:
            logger.debug("Ignoring malformed uber-trace-id %r", header)
            return None

        trace_id, span_id, _parent_span_id, flags = parts
        if (
            not self._TRACE_ID_RE.match(trace_id)
            or not self._SPAN_ID_RE.match(span_id)
            or not _HEX_RE.match(flags)
        ):
            logger.debug("Ignoring malformed uber-trace-id %r", header)
            return None

        span_context = SpanContext(
            trace_id=trace_id.rjust(32, "0"),
            span_id=span_id.rjust(16, "0"),
            trace_flags=TRACE_FLAG_SAMPLED if int(flags, 16) & 0x01 else 0,
            is_remote=True,
        )
        return span_context if span_context.is_valid else None


# =============================================================================
# AWS X-Ray Propagator
# =============================================================================


class XRayPropagator(TextMapPropagator):
    """AWS X-Ray trace header propagator.

    Header format:
        - X-Amzn-Trace-Id: Root=1-{8 hex epoch}-{24 hex};Parent={16 hex};Sampled={0|1}

    The first 8 hex characters of the trace id become the epoch segment of
    the X-Ray root, so ids produced by XRayIdGenerator stay meaningful to
    AWS services.
    """

    HEADER = "X-Amzn-Trace-Id"
    VERSION = "1"

    _ROOT_RE = re.compile(r"^1-([0-9a-f]{8})-([0-9a-f]{24})$")

    @property
    def fields(self) -> list[str]:
        return [self.HEADER]

    def inject(
        self,
        context: Context | None,
        carrier: MutableMapping[str, Any],
        setter: CarrierSetter | None = None,
    ) -> None:
        """Inject the X-Ray trace header."""
        span_context = get_span_context(context)
        if span_context is None:
            return

        setter = setter or default_setter
        trace_id = span_context.trace_id
        header = (
            f"Root={self.VERSION}-{trace_id[:8]}-{trace_id[8:]};"
            f"Parent={span_context.span_id};"
            f"Sampled={'1' if span_context.is_sampled else '0'}"
        )
        setter.set(carrier, self.HEADER, header)

    def extract(
        self,
        context: Context | None,
        carrier: Carrier,
        getter: CarrierGetter | None = None,
    ) -> Context:
        """Extract context from the X-Ray trace header."""
        getter = getter or default_getter
        header = getter.get(carrier, self.HEADER)
        if not header:
            return _base(context)

        trace_id: str | None = None
        span_id: str | None = None
        sampled = False
        for part in header.split(";"):
            key, sep, value = part.strip().partition("=")
            if not sep:
                continue
            key = key.strip().lower()
            value = value.strip().lower()
            if key == "root":
                match = self._ROOT_RE.match(value)
                if match is not None:
                    trace_id = match.group(1) + match.group(2)
            elif key == "parent":
                if _is_hex(value, 16):
                    span_id = value
            elif key == "sampled":
                sampled = value == "1"

        if trace_id is None or span_id is None:
            logger.debug("Ignoring malformed X-Ray header %r", header)
            return _base(context)

        span_context = SpanContext(
            trace_id=trace_id,
            span_id=span_id,
            trace_flags=TRACE_FLAG_SAMPLED if sampled else 0,
            is_remote=True,
        )
        if not span_context.is_valid:
            return _base(context)
        return _with_remote(context, span_context)


# =============================================================================
# Composite Propagator
# =============================================================================


class CompositePropagator(TextMapPropagator):
    """Ordered chain of propagators acting as one.

    Inject runs every propagator in order, so later ones may overwrite
    headers written by earlier ones. Extract also runs them in order over
    the same carrier: the last propagator that finds a span context wins,
    while baggage found by any of them accumulates. A propagator that raises
    is logged and skipped.

    Example:
        >>> propagator = CompositePropagator([
        ...     TraceContextPropagator(),
        ...     BaggagePropagator(),
        ...     XRayPropagator(),
        ... ])
    """

    def __init__(self, propagators: Sequence[TextMapPropagator] | None = None) -> None:
        self._propagators: tuple[TextMapPropagator, ...] = tuple(propagators or ())

    @property
    def propagators(self) -> tuple[TextMapPropagator, ...]:
        return self._propagators

    @property
    def fields(self) -> list[str]:
        """Get all fields from all propagators, in order, without duplicates."""
        all_fields: list[str] = []
        for propagator in self._propagators:
            for name in propagator.fields:
                if name not in all_fields:
                    all_fields.append(name)
        return all_fields

    def inject(
        self,
        context: Context | None,
        carrier: MutableMapping[str, Any],
        setter: CarrierSetter | None = None,
    ) -> None:
        """Inject using all propagators."""
        for propagator in self._propagators:
            try:
                propagator.inject(context, carrier, setter)
            except Exception:
                logger.warning(
                    "Propagator %s failed to inject",
                    type(propagator).__name__,
                    exc_info=True,
                )

    def extract(
        self,
        context: Context | None,
        carrier: Carrier,
        getter: CarrierGetter | None = None,
    ) -> Context:
        """Extract using all propagators."""
        result = _base(context)
        for propagator in self._propagators:
            previous = get_span_context(result)
            try:
                extracted = propagator.extract(result, carrier, getter)
            except Exception:
                logger.warning(
                    "Propagator %s failed to extract",
                    type(propagator).__name__,
                    exc_info=True,
                )
                continue
            result = _keep_trace_state(previous, extracted)
        return result


def _keep_trace_state(previous: SpanContext | None, context: Context) -> Context:
    """Carry tracestate over when a later format re-extracts the same span.

    X-Ray, B3 and Jaeger headers have no tracestate of their own.
    """
    current = get_span_context(context)
    if (
        previous is None
        or current is None
        or current is previous
        or current.trace_state
        or not previous.trace_state
        or (current.trace_id, current.span_id) != (previous.trace_id, previous.span_id)
    ):
        return context
    return _with_remote(
        context,
        SpanContext(
            trace_id=current.trace_id,
            span_id=current.span_id,
            trace_flags=current.trace_flags,
            trace_state=previous.trace_state,
            is_remote=current.is_remote,
        ),
    )


# =============================================================================
# Factory
# =============================================================================


PROPAGATOR_FACTORIES: dict[str, Callable[[], TextMapPropagator]] = {
    "tracecontext": TraceContextPropagator,
    "baggage": BaggagePropagator,
    "b3": lambda: B3Propagator(single_header=True),
    "b3multi": lambda: B3Propagator(single_header=False),
    "jaeger": JaegerPropagator,
    "xray": XRayPropagator,
}


def create_propagator(names: Sequence[str]) -> CompositePropagator:
    """Build a composite propagator from format names.

    Raises:
        ConfigurationError: If a name is not a known format.
    """
    propagators: list[TextMapPropagator] = []
    for name in names:
        key = name.strip().lower()
        if key == "none":
            continue
        factory = PROPAGATOR_FACTORIES.get(key)
        if factory is None:
            raise ConfigurationError(
                f"Unknown propagator '{name}'. "
                f"Available: {', '.join(sorted(PROPAGATOR_FACTORIES))}"
            )
        propagators.append(factory())
    return CompositePropagator(propagators)


def default_propagator() -> CompositePropagator:
    """W3C Trace Context, W3C Baggage and X-Ray, in that order."""
    return CompositePropagator([
        TraceContextPropagator(),
        BaggagePropagator(),
        XRayPropagator(),
    ])
