"""Tests for logging processors and helpers."""

import logging

import structlog

from secret_broker.core.context import CallerIdentity, create_context, request_context
from secret_broker.core.logging import (
    LogContext,
    add_request_context,
    drop_color_message_key,
    get_logger,
    redact_secret_values,
    setup_logging,
)


class TestProcessors:
    """Tests for the custom structlog processors."""

    def test_request_context_added(self) -> None:
        ctx = create_context(caller=CallerIdentity(principal="billing"))

        with request_context(ctx):
            event = add_request_context(None, "info", {"event": "x"})

        assert event["request_id"] == str(ctx.request_id)
        assert event["caller"] == "billing"

    def test_no_context(self) -> None:
        assert add_request_context(None, "info", {"event": "x"}) == {"event": "x"}

    def test_secret_values_redacted(self) -> None:
        event = redact_secret_values(
            None, "info", {"event": "x", "password": "hunter2", "data": {"k": "v"}, "path": "a"}
        )

        assert event["password"] == "***"
        assert event["data"] == "***"
        assert event["path"] == "a"

    def test_color_message_dropped(self) -> None:
        assert drop_color_message_key(None, "info", {"color_message": "x"}) == {}


class TestHelpers:
    """Tests for setup and context helpers."""

    def test_log_context_binds_and_unbinds(self) -> None:
        with LogContext(rotation_id="r-1"):
            assert structlog.contextvars.get_contextvars()["rotation_id"] == "r-1"

        assert "rotation_id" not in structlog.contextvars.get_contextvars()

    def test_setup_logging_json(self, capsys) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(log_level="INFO", json_format=True)
            get_logger("secret_broker.test").info("hello", password="hunter2")
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)

        out = capsys.readouterr().out
        assert '"event": "hello"' in out
        assert "hunter2" not in out
