"""Sampling decisions for new spans.

Only the always-on and always-off policies are provided; the Sampler
interface is the extension point for anything more elaborate.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Mapping, Sequence

from tracekit.tracing.span import Link, SpanContext, SpanKind, TraceState


class SamplingDecision(Enum):
    """Sampling decision for a span."""

    DROP = auto()  # Don't record or export
    RECORD_ONLY = auto()  # Record but don't export
    RECORD_AND_SAMPLE = auto()  # Record and export


@dataclass(frozen=True)
class SamplingResult:
    """Result of a sampling decision.

    Contains the decision and any additional attributes to add to the span.
    """

    decision: SamplingDecision
    attributes: Mapping[str, Any] = field(default_factory=dict)
    trace_state: TraceState | None = None

    @property
    def is_sampled(self) -> bool:
        return self.decision == SamplingDecision.RECORD_AND_SAMPLE

    @property
    def is_recording(self) -> bool:
        return self.decision in (
            SamplingDecision.RECORD_ONLY,
            SamplingDecision.RECORD_AND_SAMPLE,
        )


class Sampler(ABC):
    """Decides whether a new span is recorded and exported."""

    @abstractmethod
    def should_sample(
        self,
        parent_context: SpanContext | None,
        trace_id: str,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] | None = None,
        links: Sequence[Link] | None = None,
    ) -> SamplingResult:
        """Make a sampling decision.

        Args:
            parent_context: Parent span context (None for root spans).
            trace_id: Trace ID of the span being started.
            name: Span name.
            kind: Span kind.
            attributes: Initial span attributes.
            links: Span links.
        """
        pass

    @abstractmethod
    def description(self) -> str:
        pass


class AlwaysOnSampler(Sampler):
    """Sampler that records and exports every span."""

    def should_sample(
        self,
        parent_context: SpanContext | None,
        trace_id: str,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] | None = None,
        links: Sequence[Link] | None = None,
    ) -> SamplingResult:
        return SamplingResult(
            SamplingDecision.RECORD_AND_SAMPLE,
            trace_state=parent_context.trace_state if parent_context else None,
        )

    def description(self) -> str:
        return "AlwaysOnSampler"


class AlwaysOffSampler(Sampler):
    """Sampler that drops every span."""

    def should_sample(
        self,
        parent_context: SpanContext | None,
        trace_id: str,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] | None = None,
        links: Sequence[Link] | None = None,
    ) -> SamplingResult:
        return SamplingResult(
            SamplingDecision.DROP,
            trace_state=parent_context.trace_state if parent_context else None,
        )

    def description(self) -> str:
        return "AlwaysOffSampler"
