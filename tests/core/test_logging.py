"""Tests for structured logging helpers."""

from __future__ import annotations

import asyncio

import pytest
import structlog
from structlog.testing import capture_logs

from conduit.core.logging import (
    LogContext,
    _ecs_fields,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


@pytest.fixture(autouse=True)
def _clean_context():
    clear_context()
    yield
    clear_context()


class TestContextBinding:
    """Context variables bound for log lines."""

    def test_bind_and_unbind(self):
        """Bound keys appear until unbound."""
        bind_context(execution_id="exe_1", step_id="s1")
        assert structlog.contextvars.get_contextvars() == {"execution_id": "exe_1", "step_id": "s1"}
        unbind_context("step_id")
        assert structlog.contextvars.get_contextvars() == {"execution_id": "exe_1"}

    def test_log_context_sync(self):
        """LogContext binds for the duration of the block."""
        with LogContext(workflow_id="wf"):
            assert structlog.contextvars.get_contextvars()["workflow_id"] == "wf"
        assert "workflow_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_log_context_isolated_per_task(self):
        """Concurrent tasks see only their own context."""
        seen: dict[str, str] = {}

        async def run(execution_id: str) -> None:
            async with LogContext(execution_id=execution_id):
                await asyncio.sleep(0.01)
                seen[execution_id] = structlog.contextvars.get_contextvars()["execution_id"]

        await asyncio.gather(run("a"), run("b"))
        assert seen == {"a": "a", "b": "b"}


class TestGetLogger:
    """Event-style logging."""

    def test_events_captured(self):
        """Loggers emit snake_case events with key-value fields."""
        logger = get_logger("conduit.test")
        with capture_logs() as logs:
            logger.info("execution_started", execution_id="exe_1")
        assert logs[0]["event"] == "execution_started"
        assert logs[0]["execution_id"] == "exe_1"
        assert logs[0]["log_level"] == "info"


class TestConfiguration:
    """Processor chain and level handling."""

    def test_unknown_level_rejected(self):
        """A bogus level fails before structlog is reconfigured."""
        with pytest.raises(ValueError):
            configure_logging(level="LOUD")

    def test_ecs_field_names(self):
        """JSON output renames timestamp, level and logger to ECS fields."""
        event = _ecs_fields(None, "info", {"timestamp": "t", "level": "info", "logger": "x", "event": "e"})
        assert event == {"@timestamp": "t", "log.level": "info", "log.logger": "x", "event": "e"}

    def test_log_context_skips_none(self):
        """None-valued fields are not bound."""
        with LogContext(execution_id="exe_1", trigger_id=None):
            assert structlog.contextvars.get_contextvars() == {"execution_id": "exe_1"}
