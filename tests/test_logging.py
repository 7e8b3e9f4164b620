"""
Tests for Logging Infrastructure
"""
import json
import logging
from io import StringIO

import pytest

from relay.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id,
    generate_correlation_id,
    JSONFormatter,
    log_async_operation,
    log_context,
)


def _capture(name: str, formatter: logging.Formatter | None = None) -> tuple[logging.Logger, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter or JSONFormatter())
    logger = get_logger(name)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, stream


def _entries(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestCorrelationId:
    """Correlation ID per request / task run"""

    @pytest.mark.unit
    def test_generated_id_is_short_token(self):
        cid = generate_correlation_id()
        assert len(cid) == 8

    @pytest.mark.unit
    def test_explicit_id_is_kept(self):
        assert set_correlation_id("req-0001") == "req-0001"
        assert get_correlation_id() == "req-0001"

    @pytest.mark.unit
    def test_none_generates_new_id(self):
        cid = set_correlation_id(None)
        assert cid
        assert get_correlation_id() == cid


class TestJSONFormatter:
    """Structured JSON lines"""

    @pytest.mark.unit
    def test_service_name_and_fields(self):
        logger, stream = _capture("test.json.service", JSONFormatter(service="relay-test"))

        logger.info("Webhook delivered")

        entry = _entries(stream)[0]
        assert entry["service"] == "relay-test"
        assert entry["level"] == "INFO"
        assert entry["message"] == "Webhook delivered"
        assert entry["logger"] == "test.json.service"
        assert entry["timestamp"].endswith("Z")

    @pytest.mark.unit
    def test_correlation_id_included(self):
        set_correlation_id("corr1234")
        logger, stream = _capture("test.json.corr")

        logger.info("Correlated")

        assert _entries(stream)[0]["correlation_id"] == "corr1234"

    @pytest.mark.unit
    def test_extra_data_nested_under_extra(self):
        logger, stream = _capture("test.json.extra")

        logger.info("Claimed", extra_data={"delivery_id": 7, "claim_token": "abc"})

        entry = _entries(stream)[0]
        assert entry["extra"] == {"delivery_id": 7, "claim_token": "abc"}

    @pytest.mark.unit
    def test_exception_included(self):
        logger, stream = _capture("test.json.exc")

        try:
            raise RuntimeError("endpoint unreachable")
        except RuntimeError:
            logger.error("Attempt failed", exc_info=True)

        entry = _entries(stream)[0]
        assert entry["level"] == "ERROR"
        assert "RuntimeError" in entry["exception"]


class TestAsyncLoggingDecorator:
    """log_async_operation timing decorator"""

    @pytest.mark.unit
    async def test_success_logs_completed_with_duration(self):
        _, stream = _capture(__name__)

        @log_async_operation("sample operation")
        async def operation():
            return 42

        assert await operation() == 42

        completed = [e for e in _entries(stream) if e["extra"].get("status") == "completed"]
        assert len(completed) == 1
        assert completed[0]["extra"]["operation"] == "sample operation"
        assert completed[0]["extra"]["duration_seconds"] >= 0

    @pytest.mark.unit
    async def test_failure_logs_and_reraises(self):
        _, stream = _capture(__name__)

        @log_async_operation("failing operation")
        async def operation():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await operation()

        failed = [e for e in _entries(stream) if e["extra"].get("status") == "failed"]
        assert failed[0]["extra"]["error"] == "boom"


class TestLogContext:
    """ids קשורים לכל שורת לוג בתוך הבלוק"""

    @pytest.mark.unit
    def test_bound_ids_appear_on_every_line(self):
        logger, stream = _capture("test.json.context")

        with log_context(delivery_id=42, endpoint_id=7):
            logger.info("Attempt started")
            logger.warning("Attempt failed", extra_data={"status_code": 503})

        first, second = _entries(stream)
        assert first["context"] == {"delivery_id": 42, "endpoint_id": 7}
        assert second["context"] == {"delivery_id": 42, "endpoint_id": 7}
        assert second["extra"] == {"status_code": 503}

    @pytest.mark.unit
    def test_nested_context_is_restored_on_exit(self):
        logger, stream = _capture("test.json.nested")

        with log_context(source="stripe"):
            with log_context(event_id="evt_1"):
                logger.info("inner")
            logger.info("outer")
        logger.info("outside")

        inner, outer, outside = _entries(stream)
        assert inner["context"] == {"source": "stripe", "event_id": "evt_1"}
        assert outer["context"] == {"source": "stripe"}
        assert "context" not in outside

    @pytest.mark.unit
    def test_function_name_points_at_caller(self):
        logger, stream = _capture("test.json.caller")

        logger.info("from the test")

        assert _entries(stream)[0]["function"] == "test_function_name_points_at_caller"
