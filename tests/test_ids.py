"""Tests for trace and span ID generation."""

import threading
import time

from tracekit.tracing.ids import (
    INVALID_SPAN_ID,
    INVALID_TRACE_ID,
    RandomIdGenerator,
    XRayIdGenerator,
    is_valid_span_id,
    is_valid_trace_id,
)


class TestValidation:
    """Tests for ID validation helpers."""

    def test_valid_ids(self):
        assert is_valid_trace_id("0af7651916cd43dd8448eb211c80319c")
        assert is_valid_span_id("b7ad6b7169203331")

    def test_zero_ids_are_invalid(self):
        assert not is_valid_trace_id(INVALID_TRACE_ID)
        assert not is_valid_span_id(INVALID_SPAN_ID)

    def test_wrong_length_or_case(self):
        assert not is_valid_trace_id("0af7651916cd43dd")
        assert not is_valid_span_id("b7ad6b71692033310")
        assert not is_valid_trace_id("0AF7651916CD43DD8448EB211C80319C")
        assert not is_valid_span_id("zzzzzzzzzzzzzzzz")


class TestRandomIdGenerator:
    """Tests for RandomIdGenerator."""

    def test_format(self):
        gen = RandomIdGenerator()
        assert is_valid_trace_id(gen.generate_trace_id())
        assert is_valid_span_id(gen.generate_span_id())

    def test_uniqueness(self):
        gen = RandomIdGenerator()
        trace_ids = {gen.generate_trace_id() for _ in range(1000)}
        span_ids = {gen.generate_span_id() for _ in range(1000)}
        assert len(trace_ids) == 1000
        assert len(span_ids) == 1000

    def test_concurrent_generation(self):
        """IDs generated from many threads are all distinct."""
        gen = RandomIdGenerator()
        results: list[str] = []
        lock = threading.Lock()

        def worker():
            ids = [gen.generate_span_id() for _ in range(200)]
            with lock:
                results.extend(ids)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1600
        assert len(set(results)) == 1600


class TestXRayIdGenerator:
    """Tests for XRayIdGenerator."""

    def test_time_prefix(self):
        before = int(time.time())
        trace_id = XRayIdGenerator().generate_trace_id()
        after = int(time.time())

        assert is_valid_trace_id(trace_id)
        assert before <= int(trace_id[:8], 16) <= after

    def test_span_ids_are_random(self):
        gen = XRayIdGenerator()
        assert is_valid_span_id(gen.generate_span_id())
        assert gen.generate_span_id() != gen.generate_span_id()
