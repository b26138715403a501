"""
Unit tests for log context propagation and JSON formatting.
"""

import json
import logging

import pytest

from sessioncache.core.logging.logger import (
    ContextFilter,
    JSONFormatter,
    LogContext,
    clear_log_context,
    get_log_context,
    get_logging_health,
    set_log_context,
)


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("sessioncache.cache.service", logging.INFO, __file__, 1, "Entity admitted", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def clean_context():
    clear_log_context()
    yield
    clear_log_context()


@pytest.mark.unit
class TestLogContext:
    def test_scoped_fields_reset_on_exit(self):
        with LogContext(entity_id=42, cache_name="Coins", operation="load"):
            context = get_log_context()
            assert context["entity_id"] == "42"
            assert context["cache_name"] == "Coins"
            assert len(context["correlation_id"]) == 8

        assert get_log_context() == {}

    async def test_nested_context_inherits_correlation_id(self):
        async with LogContext(cache_name="Coins", correlation_id="abc12345"):
            async with LogContext(entity_id=1, operation="save"):
                context = get_log_context()

        assert context["correlation_id"] == "abc12345"
        assert context["cache_name"] == "Coins"
        assert context["operation"] == "save"

    def test_set_and_clear(self):
        set_log_context(owner="place-1:job-a", component="scheduler")
        assert get_log_context()["owner"] == "place-1:job-a"

        clear_log_context()
        assert get_log_context() == {}


@pytest.mark.unit
class TestFormatting:
    def test_filter_fills_context_defaults(self):
        record = make_record()
        with LogContext(entity_id=7, cache_name="Gems"):
            ContextFilter().filter(record)

        assert record.entity_id == "7"
        assert record.cache_name == "Gems"
        assert record.operation == "N/A"
        assert record.component == "sessioncache"

    def test_explicit_extra_wins_over_context(self):
        record = make_record(cache_name="Coins")
        with LogContext(cache_name="Gems"):
            ContextFilter().filter(record)

        assert record.cache_name == "Coins"

    def test_json_output_carries_context_and_extra(self):
        record = make_record(key="Coins/Player_1", version=3)
        with LogContext(entity_id=1, cache_name="Coins"):
            ContextFilter().filter(record)

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "Entity admitted"
        assert payload["entity_id"] == "1"
        assert "operation" not in payload
        assert payload["extra"] == {"key": "Coins/Player_1", "version": 3}

    def test_health_snapshot(self):
        health = get_logging_health()
        assert health.initialized is True
        assert health.records_dropped == 0
