"""Tests for structured request and quarantine logging."""

import json
import logging

import pytest

from src.telemetry import log_quarantine_event, log_request, setup_logging


def _records(caplog: pytest.LogCaptureFixture) -> list:
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == "gateway"]


class TestLogRequest:
    """Tests for log_request."""

    def test_success_record(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="gateway"):
            log_request(
                agent_id="agent-1",
                provider="anthropic:messages",
                outcome="success",
                context_trusted=False,
                usage={"total_tokens": 9},
                request_id="gw-1",
            )
        record = _records(caplog)[0]
        assert record["agent_id"] == "agent-1"
        assert record["provider"] == "anthropic:messages"
        assert record["context_trusted"] is False
        assert record["usage"] == {"total_tokens": 9}
        assert "error" not in record

    def test_failure_record_omits_verdict(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="gateway"):
            log_request(agent_id="a", provider="openai:chatCompletions", outcome="routing_error", error="nope")
        record = _records(caplog)[0]
        assert record["outcome"] == "routing_error"
        assert record["error"] == "nope"
        assert "context_trusted" not in record


class TestLogQuarantineEvent:
    """Tests for log_quarantine_event."""

    def test_event_name_and_details(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="gateway"):
            log_quarantine_event(
                agent_id="a", tool_call_id="call_1", event="question", round=1, options=["yes", "no"]
            )
        record = _records(caplog)[0]
        assert record["event"] == "quarantine.question"
        assert record["tool_call_id"] == "call_1"
        assert record["options"] == ["yes", "no"]


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_unknown_level(self, tmp_path) -> None:
        with pytest.raises(ValueError, match="log level"):
            setup_logging(str(tmp_path / "gateway.log"), level="chatty")
