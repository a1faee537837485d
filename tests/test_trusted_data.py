"""Tests for trusted-context evaluation of a conversation.

Covers:
- Blocked tool results are redacted and mark the context untrusted
- Untrusted and unresolvable results are flagged
- Dual-LLM quarantine replaces non-blocked tool results with summaries
- Stored summaries are reused instead of re-running the quarantine
- Quarantine timeouts surface as 504 inference errors
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from src.inference import InferenceError
from src.models import CanonicalMessage
from src.policy import InMemoryPolicyStore, TrustedDataPolicy, TrustedDataPolicyEvaluator
from src.stores import DualLlmConfig, InMemoryDualLlmResultStore, StaticDualLlmConfigStore
from src.transformers.gemini import GeminiGenerateContentTransformer
from src.trusted_data import TrustedContextEvaluator, extract_tool_name, redaction_notice

BLOCK_PASSWD = TrustedDataPolicy.from_dict(
    {
        "tool_name": "read_file",
        "description": "Sensitive system file",
        "operator": "contains",
        "attribute_path": "path",
        "value": "/etc/passwd",
        "action": "block",
    }
)

UNTRUST_WEB = TrustedDataPolicy.from_dict(
    {
        "tool_name": "fetch_url",
        "operator": "startsWith",
        "attribute_path": "url",
        "value": "https://",
        "action": "mark_as_untrusted",
    }
)


def _tool_call(call_id: str, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments)},
    }


def _conversation(*results: Any) -> List[CanonicalMessage]:
    """A user turn, one assistant turn calling each tool, then the tool results.

    Each result is ``(call_id, tool_name, payload)``.
    """
    messages = [
        CanonicalMessage(role="system", content="You are a file assistant."),
        CanonicalMessage(role="user", content="Summarize these for me."),
        CanonicalMessage(
            role="assistant",
            tool_calls=[_tool_call(call_id, name, {}) for call_id, name, _ in results],
        ),
    ]
    for call_id, _, payload in results:
        messages.append(CanonicalMessage(role="tool", tool_call_id=call_id, content=json.dumps(payload)))
    return messages


class _Factory:
    """Client factory that records the API keys it was asked for."""

    def __init__(self, client: Any) -> None:
        self.client = client
        self.keys: List[str] = []

    def __call__(self, api_key: str) -> Any:
        self.keys.append(api_key)
        return self.client


def _evaluator(
    policies: List[TrustedDataPolicy],
    config: Optional[DualLlmConfig] = None,
    client: Any = None,
    store: Optional[InMemoryDualLlmResultStore] = None,
    timeout_seconds: Optional[float] = None,
) -> TrustedContextEvaluator:
    return TrustedContextEvaluator(
        policy_evaluator=TrustedDataPolicyEvaluator(InMemoryPolicyStore(policies)),
        config_store=StaticDualLlmConfigStore(config),
        result_store=store if store is not None else InMemoryDualLlmResultStore(),
        client_factory=client if isinstance(client, _Factory) else _Factory(client),
        main_model="gpt-4o",
        quarantined_model="gpt-4o-mini",
        timeout_seconds=timeout_seconds,
    )


class TestHelpers:
    """Tests for the module-level helpers."""

    def test_redaction_notice(self) -> None:
        assert redaction_notice("Sensitive system file") == "[Content blocked by policy: Sensitive system file]"
        assert redaction_notice(None) == "[Content blocked by policy]"

    def test_extract_tool_name(self) -> None:
        messages = _conversation(("call_1", "read_file", {}), ("call_2", "fetch_url", {}))
        assert extract_tool_name(messages, 3, "call_1") == "read_file"
        assert extract_tool_name(messages, 4, "call_2") == "fetch_url"

    def test_extract_tool_name_only_looks_backward(self) -> None:
        messages = [
            CanonicalMessage(role="tool", tool_call_id="call_1", content="x"),
            CanonicalMessage(role="assistant", tool_calls=[_tool_call("call_1", "read_file", {})]),
        ]
        assert extract_tool_name(messages, 0, "call_1") is None

    def test_extract_tool_name_nearest_assistant_wins(self) -> None:
        messages = [
            CanonicalMessage(role="assistant", tool_calls=[_tool_call("dup", "older_tool", {})]),
            CanonicalMessage(role="assistant", tool_calls=[_tool_call("dup", "newer_tool", {})]),
            CanonicalMessage(role="tool", tool_call_id="dup", content="x"),
        ]
        assert extract_tool_name(messages, 2, "dup") == "newer_tool"


class TestPolicyFiltering:
    """Policy evaluation with the quarantine disabled."""

    @pytest.mark.asyncio
    async def test_empty_conversation(self) -> None:
        result = await _evaluator([]).evaluate_if_context_is_trusted([], "agent-1", "sk")
        assert result.filtered_messages == []
        assert result.context_is_trusted

    @pytest.mark.asyncio
    async def test_no_tool_results_is_trusted(self) -> None:
        messages = [CanonicalMessage(role="user", content="hello")]
        result = await _evaluator([BLOCK_PASSWD]).evaluate_if_context_is_trusted(messages, "a", "sk")
        assert result.context_is_trusted
        assert result.filtered_messages == messages

    @pytest.mark.asyncio
    async def test_blocked_result_is_redacted(self) -> None:
        messages = _conversation(("call_1", "read_file", {"path": "/etc/passwd", "content": "root:x:0:0"}))
        result = await _evaluator([BLOCK_PASSWD]).evaluate_if_context_is_trusted(messages, "agent-1", "sk")

        assert not result.context_is_trusted
        assert len(result.filtered_messages) == len(messages)
        redacted = result.filtered_messages[3]
        assert redacted.role == "tool"
        assert redacted.tool_call_id == "call_1"
        assert redacted.content == "[Content blocked by policy: Sensitive system file]"
        assert result.filtered_messages[:3] == messages[:3]
        # The input conversation is left untouched
        assert "root:x" in messages[3].content

    @pytest.mark.asyncio
    async def test_trusted_result_passes_through(self) -> None:
        messages = _conversation(("call_1", "read_file", {"path": "/srv/readme.txt", "content": "hi"}))
        result = await _evaluator([BLOCK_PASSWD]).evaluate_if_context_is_trusted(messages, "agent-1", "sk")
        assert result.context_is_trusted
        assert result.filtered_messages == messages

    @pytest.mark.asyncio
    async def test_gemini_response_without_call_is_untrusted_but_kept(self) -> None:
        body = {
            "contents": [
                {"role": "user", "parts": [{"functionResponse": {"name": "read_file", "response": {"a": 1}}}]}
            ]
        }
        gemini = GeminiGenerateContentTransformer()
        canonical = gemini.request_to_canonical(body, model="gemini-2.5-flash")
        result = await _evaluator([]).evaluate_if_context_is_trusted(canonical.messages, "agent-1", "sk")

        assert not result.context_is_trusted
        assert result.filtered_messages == canonical.messages
        forwarded = gemini.request_from_canonical(
            canonical.model_copy(update={"messages": result.filtered_messages})
        )
        assert forwarded["contents"][0]["parts"][0]["functionResponse"]["name"] == "read_file"

    @pytest.mark.asyncio
    async def test_untrusted_result_is_flagged_but_kept(self) -> None:
        messages = _conversation(("call_1", "fetch_url", {"url": "https://example.com", "body": "<p>"}))
        result = await _evaluator([UNTRUST_WEB]).evaluate_if_context_is_trusted(messages, "agent-1", "sk")
        assert not result.context_is_trusted
        assert result.filtered_messages[3].content == messages[3].content

    @pytest.mark.asyncio
    async def test_unresolvable_tool_name_is_untrusted(self) -> None:
        messages = [
            CanonicalMessage(role="user", content="hi"),
            CanonicalMessage(role="tool", tool_call_id="orphan", content='{"path": "/etc/passwd"}'),
        ]
        result = await _evaluator([BLOCK_PASSWD]).evaluate_if_context_is_trusted(messages, "agent-1", "sk")
        assert not result.context_is_trusted
        # Blocking needs a resolved tool name, so the content stays
        assert result.filtered_messages[1].content == '{"path": "/etc/passwd"}'


class TestQuarantine:
    """Policy evaluation with the dual-LLM quarantine enabled."""

    @pytest.mark.asyncio
    async def test_tool_result_replaced_with_summary(self, scripted_client, dual_llm_config) -> None:
        client = scripted_client(["DONE"], summary="The page lists prices.")
        factory = _Factory(client)
        messages = _conversation(("call_1", "fetch_url", {"url": "https://shop.test", "body": "..."}))
        result = await _evaluator(
            [UNTRUST_WEB], config=dual_llm_config, client=factory
        ).evaluate_if_context_is_trusted(messages, "agent-1", "sk-test")

        assert not result.context_is_trusted
        assert result.filtered_messages[3].content == "The page lists prices."
        assert result.filtered_messages[3].tool_call_id == "call_1"
        assert factory.keys == ["sk-test"]

    @pytest.mark.asyncio
    async def test_trusted_results_are_quarantined_too(self, scripted_client, dual_llm_config) -> None:
        client = scripted_client(["DONE"])
        messages = _conversation(("call_1", "read_file", {"path": "/srv/a"}))
        result = await _evaluator(
            [], config=dual_llm_config, client=client
        ).evaluate_if_context_is_trusted(messages, "agent-1", "sk")
        assert result.context_is_trusted
        assert result.filtered_messages[3].content == "The file lists two users."
        assert client.count("SUMMARY:") == 1

    @pytest.mark.asyncio
    async def test_blocked_results_are_not_quarantined(self, scripted_client, dual_llm_config) -> None:
        client = scripted_client(["DONE", "DONE"])
        messages = _conversation(
            ("call_1", "read_file", {"path": "/etc/passwd"}),
            ("call_2", "read_file", {"path": "/srv/notes.txt"}),
        )
        store = InMemoryDualLlmResultStore()
        result = await _evaluator(
            [BLOCK_PASSWD], config=dual_llm_config, client=client, store=store
        ).evaluate_if_context_is_trusted(messages, "agent-1", "sk")

        assert result.filtered_messages[3].content == "[Content blocked by policy: Sensitive system file]"
        assert result.filtered_messages[4].content == "The file lists two users."
        assert client.count("SUMMARY:") == 1
        assert await store.find_by_tool_call_id("call_1") is None
        assert await store.find_by_tool_call_id("call_2") is not None

    @pytest.mark.asyncio
    async def test_stored_summary_is_reused(self, scripted_client, dual_llm_config) -> None:
        client = scripted_client(["DONE"])
        factory = _Factory(client)
        evaluator = _evaluator([], config=dual_llm_config, client=factory)
        messages = _conversation(("call_1", "read_file", {"path": "/srv/a"}))

        first = await evaluator.evaluate_if_context_is_trusted(messages, "agent-1", "sk")
        calls_after_first = len(client.calls)
        second = await evaluator.evaluate_if_context_is_trusted(messages, "agent-1", "sk")

        assert len(client.calls) == calls_after_first
        assert client.count("MAIN:") == 1
        assert factory.keys == ["sk"]
        assert second.filtered_messages == first.filtered_messages
        assert second.context_is_trusted == first.context_is_trusted

    @pytest.mark.asyncio
    async def test_resent_gemini_history_is_quarantined_once(self, scripted_client, dual_llm_config) -> None:
        body = {
            "contents": [
                {"role": "user", "parts": [{"text": "Read /srv/a"}]},
                {"role": "model", "parts": [{"functionCall": {"name": "read_file", "args": {"path": "/srv/a"}}}]},
                {"role": "user", "parts": [{"functionResponse": {"name": "read_file", "response": {"ok": True}}}]},
            ]
        }
        gemini = GeminiGenerateContentTransformer()
        client = scripted_client(["DONE"])
        store = InMemoryDualLlmResultStore()
        evaluator = _evaluator([], config=dual_llm_config, client=client, store=store)

        for _ in range(2):
            messages = gemini.request_to_canonical(body, model="gemini-2.5-flash").messages
            result = await evaluator.evaluate_if_context_is_trusted(messages, "agent-1", "sk")
            assert result.filtered_messages[2].content == "The file lists two users."

        assert client.count("MAIN:") == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, scripted_client, dual_llm_config) -> None:
        class SlowClient(scripted_client):
            async def complete(self, messages, model, temperature=0.0, response_format=None):
                await asyncio.sleep(5)
                return await super().complete(messages, model, temperature, response_format)

        store = InMemoryDualLlmResultStore()
        evaluator = _evaluator(
            [], config=dual_llm_config, client=SlowClient(["DONE"]), store=store, timeout_seconds=0.05
        )
        with pytest.raises(InferenceError) as exc_info:
            await evaluator.evaluate_if_context_is_trusted(
                _conversation(("call_1", "read_file", {"path": "/srv/a"})), "agent-1", "sk"
            )
        assert exc_info.value.status_code == 504
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_quarantine_failure_propagates(self, scripted_client, dual_llm_config) -> None:
        class FailingClient(scripted_client):
            async def complete(self, messages, model, temperature=0.0, response_format=None):
                raise InferenceError("Provider returned HTTP 401: bad key", status_code=401)

        evaluator = _evaluator([], config=dual_llm_config, client=FailingClient([]))
        with pytest.raises(InferenceError) as exc_info:
            await evaluator.evaluate_if_context_is_trusted(
                _conversation(("call_1", "read_file", {"path": "/srv/a"})), "agent-1", "sk"
            )
        assert exc_info.value.status_code == 401
