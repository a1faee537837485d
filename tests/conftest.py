"""Shared test fixtures for the trusted-context gateway tests."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

import pytest

from src.config import GatewayConfig, load_config
from src.inference import CompletionResult
from src.stores import DualLlmConfig

MAIN_PROMPT = "MAIN: help with {{originalUserRequest}}"
QUARANTINED_PROMPT = (
    "QUARANTINED: data={{toolResultData}} question={{question}} "
    "options={{options}} max={{maxIndex}}"
)
SUMMARY_PROMPT = "SUMMARY: {{qaText}}"

_NO_ANSWER = object()


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "providers": {
            "openai": {
                "base_url": "https://api.openai.test/v1",
                "api_key_env": "TEST_OPENAI_KEY",
                "default_model": "gpt-4o",
            },
            "anthropic": {
                "base_url": "https://api.anthropic.test/v1",
                "api_key_env": "TEST_ANTHROPIC_KEY",
                "default_model": "claude-sonnet-4-5",
            },
            "gemini": {
                "base_url": "https://gemini.test/v1beta",
                "api_key_env": "TEST_GEMINI_KEY",
                "default_model": "gemini-2.5-flash",
            },
        },
        "dual_llm": {
            "main_model": {"openai": "gpt-4o"},
            "quarantined_model": {"openai": "gpt-4o-mini"},
            "timeout_seconds": 30,
        },
        "log_file": str(tmp_path / "test.log"),
        "interactions_file": str(tmp_path / "interactions.jsonl"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


class ScriptedClient:
    """Completion client that plays back scripted main-agent and quarantined replies.

    Calls are told apart by the prompt prefix of the test dual-LLM config.
    """

    def __init__(
        self,
        main_responses: List[str],
        answers: Optional[List[Any]] = None,
        summary: str = "The file lists two users.",
        repeat_last: bool = False,
    ) -> None:
        self.main_responses = list(main_responses)
        self.answers = list(answers or [])
        self.summary = summary
        self.repeat_last = repeat_last
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        temperature: float = 0.0,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> CompletionResult:
        self.calls.append(
            {
                "messages": [dict(m) for m in messages],
                "model": model,
                "temperature": temperature,
                "response_format": response_format,
            }
        )
        prompt = messages[0]["content"]
        if prompt.startswith("SUMMARY:"):
            return CompletionResult(content=self.summary)
        if prompt.startswith("QUARANTINED:"):
            answer = self.answers.pop(0) if self.answers else 0
            if answer is _NO_ANSWER:
                return CompletionResult(content="not json", structured_output=None)
            structured = {"answer": answer}
            return CompletionResult(content=json.dumps(structured), structured_output=structured)

        if self.repeat_last and len(self.main_responses) == 1:
            return CompletionResult(content=self.main_responses[0])
        response = self.main_responses.pop(0) if self.main_responses else "DONE"
        return CompletionResult(content=response)

    def count(self, prefix: str) -> int:
        """Number of calls whose first message starts with ``prefix``."""
        return sum(1 for c in self.calls if c["messages"][0]["content"].startswith(prefix))


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def dual_llm_config() -> DualLlmConfig:
    """An enabled dual-LLM config with prompts the ScriptedClient recognizes."""
    return DualLlmConfig(
        enabled=True,
        max_rounds=3,
        main_agent_prompt=MAIN_PROMPT,
        quarantined_agent_prompt=QUARANTINED_PROMPT,
        summary_prompt=SUMMARY_PROMPT,
    )


@pytest.fixture()
def scripted_client() -> Type[ScriptedClient]:
    """The ScriptedClient class, for tests to build with their own script."""
    return ScriptedClient


@pytest.fixture()
def no_answer() -> object:
    """Sentinel making ScriptedClient return unparseable structured output."""
    return _NO_ANSWER
