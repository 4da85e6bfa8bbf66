"""Shared fixtures for tracekit tests."""

from __future__ import annotations

import logging

import pytest

from tracekit.resource import Resource
from tracekit.tracing import InMemorySpanExporter, SimpleSpanProcessor, TracerProvider


@pytest.fixture(autouse=True)
def reset_tracekit_logger():
    """configure_telemetry sets the package logger level; undo it per test."""
    logger = logging.getLogger("tracekit")
    level = logger.level
    yield
    logger.setLevel(level)


@pytest.fixture
def resource() -> Resource:
    return Resource.create({"service.name": "test-service", "service.version": "1.0.0"})


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def provider(resource, exporter):
    provider = TracerProvider(
        resource=resource,
        processors=[SimpleSpanProcessor(exporter)],
    )
    yield provider
    provider.shutdown(timeout_millis=1000)


@pytest.fixture
def tracer(provider):
    return provider.get_tracer("tests", "0.0.1")
