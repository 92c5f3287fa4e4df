"""
Unit tests for logging helpers.
"""

import structlog

from flowmetrics.utils.logging import ingestion_log_context, redact_api_token


class TestRedactApiToken:
    """The Pipedrive token must never reach rendered logs."""

    def test_token_masked_in_string_fields(self):
        event = {
            "event": "source_request_failed",
            "url": "https://api.pipedrive.test/v1/deals/1/flow?api_token=s3cr3t&start=0",
            "entity_id": 1,
        }

        redacted = redact_api_token(None, "error", event)

        assert "s3cr3t" not in redacted["url"]
        assert redacted["url"].endswith("api_token=***&start=0")
        assert redacted["entity_id"] == 1

    def test_events_without_token_untouched(self):
        event = {"event": "ingestion_started", "total": 3}

        assert redact_api_token(None, "info", dict(event)) == event


class TestIngestionLogContext:
    """Test run-scoped context binding."""

    def test_binds_and_restores(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="req-1")

        with ingestion_log_context("run-1", "full"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["run_id"] == "run-1"
            assert bound["sync_type"] == "full"
            assert bound["request_id"] == "req-1"

        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}
        structlog.contextvars.clear_contextvars()
