"""
Unit tests for correlation-context logging.
"""

import io
import json
import logging
import threading

import pytest

from knowledge.core.logging import (
    CorrelationContext,
    StructuredFormatter,
    configure_logging,
    log_with_context,
)


@pytest.fixture
def package_logger():
    """The ``knowledge`` logger writing JSON lines into a buffer."""
    for handler in list(logging.getLogger("knowledge").handlers):
        logging.getLogger("knowledge").removeHandler(handler)
    stream = io.StringIO()
    logger = configure_logging(level=logging.DEBUG, structured=True, include_timestamp=False, stream=stream)
    yield logger, stream
    for handler in list(logger.handlers):
        logger.removeHandler(handler)


class TestCorrelationContext:
    """Tests for CorrelationContext."""

    def test_empty_outside_any_context(self):
        assert CorrelationContext.get_current() == {}

    def test_fields_set_and_restored(self):
        with CorrelationContext(board="bazi", run_id="r1"):
            assert CorrelationContext.get_current() == {"board": "bazi", "run_id": "r1"}

            with CorrelationContext(board="bazi", query_id="q1", strategy="flat"):
                assert CorrelationContext.get_current() == {
                    "board": "bazi", "query_id": "q1", "strategy": "flat",
                }

            assert CorrelationContext.get_current() == {"board": "bazi", "run_id": "r1"}

        assert CorrelationContext.get_current() == {}

    def test_restored_after_exception(self):
        with pytest.raises(RuntimeError):
            with CorrelationContext(board="qimen"):
                raise RuntimeError("boom")

        assert CorrelationContext.get_current() == {}

    def test_threads_do_not_share_context(self):
        """Interleaved contexts in two threads each see only their own fields."""
        a_entered = threading.Event()
        b_entered = threading.Event()
        a_exited = threading.Event()
        seen = {}

        def thread_a():
            with CorrelationContext(board="a", query_id="qa"):
                a_entered.set()
                b_entered.wait(timeout=5)
                seen["a_inside"] = CorrelationContext.get_current()
            a_exited.set()
            seen["a_after"] = CorrelationContext.get_current()

        def thread_b():
            a_entered.wait(timeout=5)
            with CorrelationContext(board="b", query_id="qb"):
                b_entered.set()
                a_exited.wait(timeout=5)
                seen["b_inside"] = CorrelationContext.get_current()
            seen["b_after"] = CorrelationContext.get_current()

        threads = [threading.Thread(target=thread_a), threading.Thread(target=thread_b)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert seen["a_inside"] == {"board": "a", "query_id": "qa"}
        assert seen["b_inside"] == {"board": "b", "query_id": "qb"}
        assert seen["a_after"] == {}
        assert seen["b_after"] == {}
        assert CorrelationContext.get_current() == {}


class TestLogWithContext:
    """Tests for log_with_context and the structured formatter."""

    def test_context_fields_in_json_line(self, package_logger):
        logger, stream = package_logger

        with CorrelationContext(board="bazi", query_id="q1"):
            log_with_context(logging.getLogger("knowledge.test"), logging.INFO, "Retrieved 2 passages", batch=3)

        entry = json.loads(stream.getvalue().strip())
        assert entry["message"] == "Retrieved 2 passages"
        assert entry["board"] == "bazi"
        assert entry["query_id"] == "q1"
        assert entry["batch"] == 3
        assert "timestamp" not in entry

    def test_formatter_keeps_cjk_readable(self):
        record = logging.LogRecord("knowledge", logging.INFO, __file__, 1, "甲木参天", None, None)

        assert "甲木参天" in StructuredFormatter().format(record)
