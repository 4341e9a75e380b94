"""Tests for logging context managers."""

import asyncio
import logging

import pytest

from ride_sync.sync_logging import ContextFilter, LogContext, log_context, log_ride_context


@pytest.fixture
def logger():
    logger = logging.getLogger("test.ride_sync.context")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def captured_records(logger):
    """Capture log records passed through a ContextFilter."""
    records: list[logging.LogRecord] = []

    class RecordCapture(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    handler = RecordCapture()
    handler.addFilter(ContextFilter())
    logger.addHandler(handler)
    yield records
    logger.removeHandler(handler)


@pytest.mark.unit
class TestLogContext:
    def test_adds_extra_fields(self, logger, captured_records):
        with log_context(ride_id="ride-1", user_id="user-9"):
            logger.info("inside")

        assert captured_records[0].ride_id == "ride-1"
        assert captured_records[0].user_id == "user-9"

    def test_clears_on_exit(self, logger, captured_records):
        with log_context(ride_id="ride-1"):
            pass
        logger.info("outside")

        assert not hasattr(captured_records[0], "ride_id")

    def test_nested_contexts_merge(self, logger, captured_records):
        with log_context(ride_id="ride-1"):
            with log_context(session_token=3):
                logger.info("nested")
            logger.info("outer")

        assert captured_records[0].ride_id == "ride-1"
        assert captured_records[0].session_token == 3
        assert not hasattr(captured_records[1], "session_token")

    def test_record_extra_wins(self, logger, captured_records):
        with log_context(ride_id="ride-1"):
            logger.info("explicit", extra={"ride_id": "ride-2"})

        assert captured_records[0].ride_id == "ride-2"

    def test_set_and_clear(self):
        LogContext.clear()
        LogContext.set(user_id="user-9")

        assert LogContext.get() == {"user_id": "user-9"}

        LogContext.clear()
        assert LogContext.get() == {}

    @pytest.mark.asyncio
    async def test_isolated_between_tasks(self):
        seen: dict[str, dict] = {}

        async def run(ride_id: str) -> None:
            with log_context(ride_id=ride_id):
                await asyncio.sleep(0)
                seen[ride_id] = LogContext.get()

        await asyncio.gather(run("ride-1"), run("ride-2"))

        assert seen["ride-1"]["ride_id"] == "ride-1"
        assert seen["ride-2"]["ride_id"] == "ride-2"


@pytest.mark.unit
class TestLogRideContext:
    def test_sets_ride_and_correlation(self, logger, captured_records):
        with log_ride_context("ride-1", user_id="user-9", session_token=4):
            logger.info("opened")

        record = captured_records[0]
        assert record.ride_id == "ride-1"
        assert record.correlation_id == "ride-1"
        assert record.user_id == "user-9"
        assert record.session_token == 4

    def test_explicit_correlation_id(self, logger, captured_records):
        with log_ride_context("ride-1", correlation_id="req-77"):
            logger.info("opened")

        assert captured_records[0].correlation_id == "req-77"
