"""Trusted-context evaluation for a conversation's tool results.

Before a conversation is forwarded upstream, every tool result in it is
checked against the trusted-data policies:

1. Classification. Each tool message is traced back to the assistant tool
   call that produced it and evaluated. Results from tools that cannot be
   identified are untrusted. Blocked results are recorded with their reason.
2. Filtering. Blocked results are replaced with a redaction notice. When
   dual-LLM analysis is enabled, every other tool result is replaced with
   its quarantine summary, reusing a stored summary when the tool call has
   been analyzed before.

The verdict is advisory: callers get it alongside the filtered messages.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from src.dual_llm import DualLlmSubagent, QuarantineEvent
from src.inference import CompletionClient, InferenceError
from src.models import CanonicalMessage, parse_tool_result, tool_call_name
from src.policy import TrustedDataPolicyEvaluator
from src.stores import DualLlmConfig, DualLlmConfigStore, DualLlmResultStore


def redaction_notice(reason: Optional[str]) -> str:
    """The content that replaces a blocked tool result."""
    if reason:
        return "[Content blocked by policy: {}]".format(reason)
    return "[Content blocked by policy]"


def extract_tool_name(
    messages: List[CanonicalMessage], index: int, tool_call_id: Optional[str]
) -> Optional[str]:
    """Find the name of the tool whose call produced ``messages[index]``.

    Scans backward from the tool message for the nearest assistant message
    carrying a tool call with the same id. Returns None if there is none.
    """
    if not tool_call_id:
        return None
    for message in reversed(messages[:index]):
        if message.role != "assistant" or not message.tool_calls:
            continue
        for tool_call in message.tool_calls:
            if tool_call.id == tool_call_id:
                return tool_call_name(tool_call)
    return None


@dataclass
class TrustedContextResult:
    """Filtered conversation plus the overall trust verdict."""

    filtered_messages: List[CanonicalMessage]
    context_is_trusted: bool


class TrustedContextEvaluator:
    """Applies trusted-data policies and the dual-LLM quarantine to a conversation."""

    def __init__(
        self,
        policy_evaluator: TrustedDataPolicyEvaluator,
        config_store: DualLlmConfigStore,
        result_store: DualLlmResultStore,
        client_factory: Callable[[str], CompletionClient],
        main_model: str,
        quarantined_model: str,
        timeout_seconds: Optional[float] = None,
        on_event: Optional[Callable[[QuarantineEvent], None]] = None,
    ) -> None:
        self._policy_evaluator = policy_evaluator
        self._config_store = config_store
        self._result_store = result_store
        self._client_factory = client_factory
        self._main_model = main_model
        self._quarantined_model = quarantined_model
        self._timeout_seconds = timeout_seconds
        self._on_event = on_event

    async def evaluate_if_context_is_trusted(
        self,
        messages: List[CanonicalMessage],
        agent_id: str,
        api_key: str,
    ) -> TrustedContextResult:
        """Classify and filter the tool results in ``messages``.

        Args:
            messages: The canonical conversation. Not modified.
            agent_id: The agent whose policies apply.
            api_key: The upstream key used for quarantine model calls.

        Returns:
            The filtered messages, in the original order, and whether every
            tool result in the conversation was trusted.

        Raises:
            InferenceError: If a quarantine run fails or times out.
        """
        blocked: Dict[str, Optional[str]] = {}
        has_untrusted_data = False

        for index, message in enumerate(messages):
            if message.role != "tool":
                continue
            tool_name = extract_tool_name(messages, index, message.tool_call_id)
            evaluation = self._policy_evaluator.evaluate(
                agent_id, tool_name, parse_tool_result(message.content)
            )
            if not evaluation.is_trusted:
                has_untrusted_data = True
            if evaluation.is_blocked:
                blocked[message.tool_call_id] = evaluation.reason

        config: Optional[DualLlmConfig] = None
        client: Optional[CompletionClient] = None
        filtered: List[CanonicalMessage] = []

        for message in messages:
            if message.role != "tool":
                filtered.append(message)
                continue

            if message.tool_call_id in blocked:
                filtered.append(
                    message.model_copy(
                        update={"content": redaction_notice(blocked[message.tool_call_id])}
                    )
                )
                continue

            if config is None:
                config = await self._config_store.get_default_config()
            if not config.enabled:
                filtered.append(message)
                continue

            existing = await self._result_store.find_by_tool_call_id(message.tool_call_id)
            if existing is not None:
                filtered.append(message.model_copy(update={"content": existing.result}))
                continue

            if client is None:
                client = self._client_factory(api_key)
            subagent = DualLlmSubagent(
                messages,
                message,
                config,
                agent_id,
                client,
                self._result_store,
                self._main_model,
                self._quarantined_model,
                on_event=self._on_event,
            )
            summary = await self._run_quarantine(subagent)
            filtered.append(message.model_copy(update={"content": summary}))

        return TrustedContextResult(
            filtered_messages=filtered,
            context_is_trusted=not has_untrusted_data,
        )

    async def _run_quarantine(self, subagent: DualLlmSubagent) -> str:
        if self._timeout_seconds is None:
            return await subagent.process_with_main_agent()
        try:
            return await asyncio.wait_for(
                subagent.process_with_main_agent(), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise InferenceError(
                "Dual LLM analysis of tool call {} timed out".format(subagent.tool_call_id),
                status_code=504,
            ) from exc
