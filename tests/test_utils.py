"""Tests for sagarun.utils."""

import json
import logging
import re

import pytest

from sagarun.utils import (
    StructuredFormatter,
    canonical_json,
    generate_correlation_id,
    generate_ulid,
    lookup_path,
    retry_with_backoff,
    setup_logging,
)


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    def test_succeeds_after_failures(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OSError("try again")
            return "ok"

        assert retry_with_backoff(flaky, max_attempts=3, backoff_seconds=1.0, sleep=sleeps.append) == "ok"
        assert sleeps == [1.0, 2.0]

    def test_gives_up(self):
        def broken():
            raise OSError("down")

        with pytest.raises(OSError):
            retry_with_backoff(broken, max_attempts=2, sleep=lambda _: None)

    def test_other_errors_propagate_immediately(self):
        calls = []

        def wrong():
            calls.append(1)
            raise KeyError("x")

        with pytest.raises(KeyError):
            retry_with_backoff(wrong, max_attempts=5, retry_on=(OSError,), sleep=lambda _: None)
        assert len(calls) == 1


class TestIdentifiers:
    """Tests for generated identifiers."""

    def test_ulid(self):
        ulid = generate_ulid()
        assert len(ulid) == 26
        assert re.fullmatch(r"[0-9A-HJKMNP-TV-Z]{26}", ulid)

    def test_correlation_id(self):
        assert re.fullmatch(r"WF-\d{14}-[0-9a-f]{8}-\d{3}", generate_correlation_id())

    def test_canonical_json_is_key_order_independent(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})


class TestLookupPath:
    """Tests for dotted payload lookups."""

    def test_nested(self):
        assert lookup_path({"cart": {"id": "c1"}}, "cart.id") == "c1"

    def test_missing_with_default(self):
        assert lookup_path({"cart": {}}, "cart.id", None) is None

    def test_missing_without_default(self):
        with pytest.raises(KeyError):
            lookup_path({}, "cart.id")


class TestLogging:
    """Tests for logging setup."""

    def test_structured_formatter_includes_context(self):
        record = logging.LogRecord("sagarun.executor", logging.INFO, __file__, 1, "hello", None, None)
        record.node_id = "reprice"
        record.event = "node.started"
        data = json.loads(StructuredFormatter().format(record))
        assert data["message"] == "hello"
        assert data["node_id"] == "reprice"
        assert data["event"] == "node.started"

    def test_log_file(self, tmp_path):
        log_file = tmp_path / "logs" / "sagarun.log"
        logger = setup_logging(log_file=log_file, console_output=False)
        logger.info("written")
        for handler in logger.handlers:
            handler.flush()
        assert "written" in log_file.read_text()
        logger.handlers = []
