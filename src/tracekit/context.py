"""Explicit propagation context.

A Context is an immutable bag of values that travels with a unit of work.
It replaces thread-local "current span" storage: every API that needs the
ambient span or baggage takes a Context argument and returns a new Context
instead of mutating hidden state.

Example:
    >>> ctx = Context()
    >>> ctx, span = tracer.start(ctx, "handle-request")
    >>> get_span_context(ctx) == span.context
    True
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Iterator, Mapping, TYPE_CHECKING

if TYPE_CHECKING:
    from tracekit.tracing.span import SpanBase, SpanContext


SPAN_KEY = "tracekit.current-span"
BAGGAGE_KEY = "tracekit.baggage"


class Context(Mapping[str, Any]):
    """Immutable mapping of context values.

    Contexts are cheap to copy and safe to share between threads; every
    modification produces a new instance.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: Mapping[str, Any] = MappingProxyType(dict(values or {}))

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Context):
            return dict(self._values) == dict(other._values)
        return NotImplemented

    def __hash__(self) -> int:
        return id(self)

    def __repr__(self) -> str:
        return f"Context({dict(self._values)!r})"

    def with_value(self, key: str, value: Any) -> "Context":
        """Return a new context with ``key`` set to ``value``."""
        values = dict(self._values)
        values[key] = value
        return Context(values)

    def without(self, key: str) -> "Context":
        """Return a new context with ``key`` removed."""
        if key not in self._values:
            return self
        return Context({k: v for k, v in self._values.items() if k != key})


# =============================================================================
# Span helpers
# =============================================================================


def set_span_in_context(span: "SpanBase", context: Context | None = None) -> Context:
    """Return a copy of ``context`` whose current span is ``span``."""
    return (context if context is not None else Context()).with_value(SPAN_KEY, span)


def get_current_span(context: Context | None) -> "SpanBase | None":
    """Get the span carried by ``context``, if any."""
    if context is None:
        return None
    return context.get(SPAN_KEY)


def get_span_context(context: Context | None) -> "SpanContext | None":
    """Get the SpanContext of the span carried by ``context``.

    Returns None when the context carries no span or an invalid one.
    """
    span = get_current_span(context)
    if span is None:
        return None
    span_context = span.context
    return span_context if span_context.is_valid else None
