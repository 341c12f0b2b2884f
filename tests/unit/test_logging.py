"""
Unit tests for the logging setup: context enrichment and JSON output.
"""

import json
import logging
import sys

import pytest

from noverna.core.logging.logger import (
    ContextFilter,
    JSONFormatter,
    LogContext,
    clear_log_context,
    get_log_context,
    get_logging_health,
    set_log_context,
)


def make_record(**extra):
    record = logging.LogRecord(
        name="noverna.storage.user",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="User %s loaded",
        args=("neo",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def clean_context():
    clear_log_context()
    yield
    clear_log_context()


class TestContextFilter:
    def test_fills_missing_fields_from_context(self):
        record = make_record()

        with LogContext(license="abc", storage="user", operation="admission", correlation_id="c0ffee"):
            ContextFilter().filter(record)

        assert record.license == "abc"
        assert record.storage == "user"
        assert record.correlation_id == "c0ffee"
        assert record.character_id == "N/A"

    def test_extra_fields_win_over_context(self):
        record = make_record(storage="character")

        with LogContext(storage="user"):
            ContextFilter().filter(record)

        assert record.storage == "character"

    def test_component_defaults_to_logger_suffix(self):
        record = make_record()

        ContextFilter().filter(record)

        assert record.component == "storage.user"


class TestLogContext:
    def test_restores_previous_context(self):
        set_log_context(license="outer")

        with LogContext(license="inner"):
            assert get_log_context()["license"] == "inner"

        assert get_log_context()["license"] == "outer"

    async def test_async_context_manager(self):
        async with LogContext(operation="migrate") as ctx:
            assert get_log_context()["operation"] == "migrate"
            assert len(ctx.context["correlation_id"]) == 8

        assert get_log_context() == {}

    def test_set_log_context_merges(self):
        set_log_context(license="abc")
        set_log_context(character_id=5, run="nightly")

        assert get_log_context() == {"license": "abc", "character_id": "5", "run": "nightly"}


class TestJSONFormatter:
    def test_structured_output(self):
        record = make_record(storage="user", license="N/A", cache_key="storage:user:abc")

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "User neo loaded"
        assert payload["level"] == "INFO"
        assert payload["storage"] == "user"
        assert "license" not in payload
        assert payload["extra"] == {"cache_key": "storage:user:abc"}

    def test_exception_is_rendered(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        payload = json.loads(JSONFormatter().format(record))

        assert "ValueError: boom" in payload["exception"]


def test_logging_is_initialized_on_import():
    health = get_logging_health()

    assert health.initialized is True
    assert health.queue_max_size > 0
