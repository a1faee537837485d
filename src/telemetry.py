"""Logging and telemetry for the trusted-context gateway.

Emits structured JSON log records to the console and appends them to an
append-only log file for local review.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("gateway")


def setup_logging(log_file: str, level: str = "INFO") -> None:
    """Attach the console and append-only file handlers to the gateway logger.

    Args:
        log_file: Path to the append-only log file.
        level: Logging level name, e.g. "INFO" or "DEBUG".
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError("Unknown log level: {}".format(level))
    logger.setLevel(numeric_level)

    if logger.handlers:
        return

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    log_path = Path(log_file)
    os.makedirs(log_path.parent, exist_ok=True)
    for handler in (logging.StreamHandler(), logging.FileHandler(log_path, mode="a")):
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def log_request(
    *,
    agent_id: str,
    provider: str,
    outcome: str,
    context_trusted: Optional[bool] = None,
    usage: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """Log a single proxied request.

    This writes a structured JSON line to both stdout and the log file.

    Args:
        agent_id: The calling agent's identifier.
        provider: The provider format of the request.
        outcome: Short outcome label (e.g. "success", "invalid_request").
        context_trusted: The trust verdict for the conversation, if evaluated.
        usage: Token usage dict if available.
        error: Error message if the request failed.
        request_id: Gateway-assigned request ID.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "agent_id": agent_id,
        "provider": provider,
        "outcome": outcome,
    }

    if context_trusted is not None:
        record["context_trusted"] = context_trusted

    if usage:
        record["usage"] = usage

    if error:
        record["error"] = error

    logger.info(json.dumps(record))


def log_quarantine_event(
    *, agent_id: str, tool_call_id: str, event: str, **details: Any
) -> None:
    """Log one step of a dual-LLM quarantine run as a JSON line."""
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": "quarantine.{}".format(event),
        "agent_id": agent_id,
        "tool_call_id": tool_call_id,
    }
    record.update(details)
    logger.info(json.dumps(record, default=str))
