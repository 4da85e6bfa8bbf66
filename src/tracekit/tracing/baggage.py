"""Baggage management for distributed tracing.

Baggage provides a mechanism to propagate user-defined key-value pairs
across service boundaries alongside the trace context. This is useful for
passing request-scoped data like user IDs, tenant IDs, or feature flags.

Baggage lives in a Context, never in thread-local state. Every helper takes
the context explicitly and returns a new one.

Important: Baggage is propagated in-band with trace context, so it
adds overhead to every request. Use it sparingly.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterator, Mapping

from tracekit.context import BAGGAGE_KEY, Context


# =============================================================================
# Baggage
# =============================================================================


class Baggage(Mapping[str, str]):
    """Immutable container for baggage key-value pairs.

    Use the factory methods to create modified versions.

    Example:
        >>> baggage = Baggage()
        >>> baggage = baggage.set("user_id", "123")
        >>> baggage = baggage.set("tenant", "acme")
        >>> baggage.get("user_id")
        '123'
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, str] | None = None) -> None:
        self._entries: Mapping[str, str] = MappingProxyType(dict(entries or {}))

    def __getitem__(self, key: str) -> str:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Baggage):
            return dict(self._entries) == dict(other._entries)
        if isinstance(other, Mapping):
            return dict(self._entries) == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(tuple(sorted(self._entries.items())))

    def __repr__(self) -> str:
        return f"Baggage({dict(self._entries)!r})"

    def set(self, key: str, value: str) -> "Baggage":
        """Create new baggage with added/updated entry.

        Args:
            key: Baggage key.
            value: Baggage value.

        Returns:
            New Baggage with the entry.
        """
        new_entries = dict(self._entries)
        new_entries[key] = value
        return Baggage(new_entries)

    def remove(self, key: str) -> "Baggage":
        """Create new baggage with entry removed."""
        if key not in self._entries:
            return self
        return Baggage({k: v for k, v in self._entries.items() if k != key})

    def merge(self, other: Mapping[str, str]) -> "Baggage":
        """Create new baggage with ``other``'s entries layered on top."""
        if not other:
            return self
        return Baggage({**self._entries, **other})

    def to_dict(self) -> dict[str, str]:
        return dict(self._entries)

    @classmethod
    def empty(cls) -> "Baggage":
        return _EMPTY_BAGGAGE


_EMPTY_BAGGAGE = Baggage()


# =============================================================================
# Context Functions
# =============================================================================


def get_baggage(context: Context | None) -> Baggage:
    """Get the baggage carried by ``context`` (empty if none)."""
    if context is None:
        return Baggage.empty()
    baggage = context.get(BAGGAGE_KEY)
    return baggage if isinstance(baggage, Baggage) else Baggage.empty()


def get_baggage_item(key: str, context: Context | None) -> str | None:
    """Get a single baggage item.

    Returns:
        Value or None.
    """
    return get_baggage(context).get(key)


def set_baggage(key: str, value: str, context: Context | None = None) -> Context:
    """Return a copy of ``context`` with ``key`` set in its baggage."""
    context = context if context is not None else Context()
    return context.with_value(BAGGAGE_KEY, get_baggage(context).set(key, value))


def set_baggage_items(
    items: Mapping[str, str], context: Context | None = None
) -> Context:
    """Return a copy of ``context`` with several baggage items merged in."""
    context = context if context is not None else Context()
    if not items:
        return context
    return context.with_value(BAGGAGE_KEY, get_baggage(context).merge(items))


def remove_baggage(key: str, context: Context | None = None) -> Context:
    """Return a copy of ``context`` without baggage item ``key``."""
    context = context if context is not None else Context()
    baggage = get_baggage(context)
    if key not in baggage:
        return context
    return context.with_value(BAGGAGE_KEY, baggage.remove(key))


def clear_baggage(context: Context | None = None) -> Context:
    """Return a copy of ``context`` with no baggage."""
    context = context if context is not None else Context()
    return context.without(BAGGAGE_KEY)
