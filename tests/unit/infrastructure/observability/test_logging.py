"""Hey future me - tests for structured logging and the operation logger."""

import json
import logging

import pytest

from subsync.infrastructure.observability import (
    configure_logging,
    get_correlation_id,
    log_operation,
    set_correlation_id,
)
from subsync.infrastructure.observability.logging import (
    CorrelationIdFilter,
    CustomJsonFormatter,
)


class TestCorrelationId:
    """Tests for correlation id handling."""

    def test_generates_id(self) -> None:
        """Test a fresh id is generated when none is given."""
        cid = set_correlation_id()
        assert cid
        assert get_correlation_id() == cid

    def test_filter_stamps_records(self) -> None:
        """Test the filter copies the id onto records."""
        set_correlation_id("pass-1")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
        assert CorrelationIdFilter().filter(record)
        assert record.correlation_id == "pass-1"


class TestJsonFormatter:
    """Tests for the JSON formatter."""

    def test_fields(self) -> None:
        """Test level, logger, correlation id and extras end up in the JSON."""
        formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
        record = logging.LogRecord(
            "subsync.test", logging.WARNING, __file__, 10, "queue.drained", None, None
        )
        record.correlation_id = "abc"
        record.completed = 3

        data = json.loads(formatter.format(record))

        assert data["message"] == "queue.drained"
        assert data["level"] == "WARNING"
        assert data["logger"] == "subsync.test"
        assert data["correlation_id"] == "abc"
        assert data["completed"] == 3


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_replaces_handlers(self) -> None:
        """Test repeated calls leave exactly one root handler."""
        configure_logging("DEBUG")
        configure_logging("INFO", json_format=True)
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, CustomJsonFormatter)
        assert root.level == logging.INFO


class TestLogOperation:
    """Tests for log_operation."""

    @pytest.mark.asyncio
    async def test_logs_start_and_completion(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test started/completed lines with result fields."""
        logger = logging.getLogger("subsync.test.op")
        with caplog.at_level(logging.INFO, logger="subsync.test.op"):
            async with log_operation(logger, "thing.run", subscription_id="s1") as result:
                result["items"] = 4

        messages = [r.getMessage() for r in caplog.records]
        assert messages == ["thing.run.started", "thing.run.completed"]
        completed = caplog.records[-1]
        assert completed.items == 4
        assert completed.subscription_id == "s1"
        assert completed.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_reraises(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test failures are logged and re-raised."""
        logger = logging.getLogger("subsync.test.op")
        with caplog.at_level(logging.INFO, logger="subsync.test.op"):
            with pytest.raises(RuntimeError):
                async with log_operation(logger, "thing.run"):
                    raise RuntimeError("boom")

        failed = caplog.records[-1]
        assert failed.getMessage() == "thing.run.failed"
        assert failed.levelno == logging.ERROR
        assert failed.error_type == "RuntimeError"
