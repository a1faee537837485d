"""Dual-LLM quarantine for untrusted tool results.

Two models cooperate so that untrusted data never reaches the privileged
conversation:

- The main agent knows the user's request but never sees the tool result.
  It asks multiple choice questions about the data.
- The quarantined agent sees the tool result but may only answer with the
  index of one of the offered options.

After at most ``max_rounds`` questions the Q&A transcript (which contains
only the main agent's own questions and option texts) is summarized. The
summary replaces the tool result in the conversation and is persisted
under the tool call id so the same result is never analyzed twice.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from src.inference import CompletionClient
from src.models import CanonicalMessage, content_as_text, parse_tool_result
from src.stores import DualLlmConfig, DualLlmConfigStore, DualLlmResult, DualLlmResultStore
from src.telemetry import log_quarantine_event

_logger = logging.getLogger("gateway")

DEFAULT_USER_REQUEST = "process this data"

DONE_SIGNAL = "DONE"

ANSWER_SCHEMA: Dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "multiple_choice_response",
        "schema": {
            "type": "object",
            "properties": {
                "answer": {
                    "type": "integer",
                    "description": "The index of the selected option (0-based)",
                }
            },
            "required": ["answer"],
            "additionalProperties": False,
        },
    },
}

_QUESTION_RE = re.compile(r"QUESTION:\s*(.+?)(?=\nOPTIONS:)", re.DOTALL)
_OPTIONS_RE = re.compile(r"OPTIONS:\s*([\s\S]+)")
_OPTION_PREFIX_RE = re.compile(r"^\d+:\s*")


class TerminationReason(str, Enum):
    """Why the Q&A loop stopped."""

    DONE = "done"
    MALFORMED_QUESTION = "malformed_question"
    MAX_ROUNDS = "max_rounds"


@dataclass
class QuarantineEvent:
    """One observable step of a quarantine run."""

    kind: str
    round: int
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedQuestion:
    question: str
    options: List[str]


def parse_question(response: str) -> Optional[ParsedQuestion]:
    """Parse a ``QUESTION: ... OPTIONS: ...`` block from the main agent.

    Numeric ``N:`` prefixes are stripped from options and blank lines are
    dropped. Returns None when the block is malformed or has no options.
    """
    question_match = _QUESTION_RE.search(response)
    options_match = _OPTIONS_RE.search(response)
    if not question_match or not options_match:
        return None

    options = [
        _OPTION_PREFIX_RE.sub("", line).strip()
        for line in options_match.group(1).strip().split("\n")
    ]
    options = [option for option in options if option]
    if not options:
        return None
    return ParsedQuestion(question=question_match.group(1).strip(), options=options)


def resolve_answer_index(raw: Any, option_count: int) -> int:
    """Validate the quarantined agent's answer.

    Non-numeric, non-finite and out-of-range answers resolve to the last
    option. Fractional answers are floored.
    """
    last = option_count - 1
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return last
    if isinstance(raw, float) and not math.isfinite(raw):
        return last
    index = math.floor(raw)
    if index < 0 or index >= option_count:
        return last
    return index


class DualLlmSubagent:
    """Runs the quarantine for a single tool message."""

    def __init__(
        self,
        messages: List[CanonicalMessage],
        current_message: CanonicalMessage,
        config: DualLlmConfig,
        agent_id: str,
        client: CompletionClient,
        result_store: DualLlmResultStore,
        main_model: str,
        quarantined_model: str,
        on_event: Optional[Callable[[QuarantineEvent], None]] = None,
    ) -> None:
        if current_message.role != "tool" or not current_message.tool_call_id:
            raise ValueError("current_message must be a tool message")
        self.messages = messages
        self.current_message = current_message
        self.config = config
        self.agent_id = agent_id
        self.tool_call_id = current_message.tool_call_id
        self.events: List[QuarantineEvent] = []
        self._client = client
        self._result_store = result_store
        self._main_model = main_model
        self._quarantined_model = quarantined_model
        self._on_event = on_event

    @classmethod
    async def create(
        cls,
        messages: List[CanonicalMessage],
        current_message: CanonicalMessage,
        agent_id: str,
        client: CompletionClient,
        config_store: DualLlmConfigStore,
        result_store: DualLlmResultStore,
        main_model: str,
        quarantined_model: str,
        on_event: Optional[Callable[[QuarantineEvent], None]] = None,
    ) -> "DualLlmSubagent":
        """Create a subagent with the configuration loaded from ``config_store``."""
        config = await config_store.get_default_config()
        return cls(
            messages,
            current_message,
            config,
            agent_id,
            client,
            result_store,
            main_model,
            quarantined_model,
            on_event=on_event,
        )

    def _extract_user_request(self) -> str:
        user_messages = [m for m in self.messages if m.role == "user"]
        if not user_messages:
            return DEFAULT_USER_REQUEST
        return content_as_text(user_messages[-1].content) or DEFAULT_USER_REQUEST

    def _emit(self, kind: str, round_number: int, **data: Any) -> None:
        event = QuarantineEvent(kind=kind, round=round_number, data=data)
        self.events.append(event)
        log_quarantine_event(
            agent_id=self.agent_id,
            tool_call_id=self.tool_call_id,
            event=kind,
            round=round_number,
            **data
        )
        if self._on_event is not None:
            self._on_event(event)

    async def process_with_main_agent(self) -> str:
        """Run the Q&A loop, summarize it and persist the result.

        Returns:
            The safe summary that replaces the tool result.

        Raises:
            InferenceError: If any model call fails. Nothing is persisted.
        """
        original_user_request = self._extract_user_request()
        tool_result = parse_tool_result(self.current_message.content)

        conversation: List[Dict[str, str]] = [
            {
                "role": "user",
                "content": self.config.main_agent_prompt.replace(
                    "{{originalUserRequest}}", original_user_request
                ),
            }
        ]

        max_rounds = self.config.max_rounds
        termination = TerminationReason.MAX_ROUNDS
        rounds = 0
        for round_number in range(1, max_rounds + 1):
            rounds = round_number
            self._emit("round_started", round_number, max_rounds=max_rounds)

            main_response = await self._client.complete(
                conversation, self._main_model, temperature=0
            )
            response = main_response.content.strip()
            conversation.append({"role": "assistant", "content": response})

            if DONE_SIGNAL in response:
                termination = TerminationReason.DONE
                break

            parsed = parse_question(response)
            if parsed is None:
                termination = TerminationReason.MALFORMED_QUESTION
                break
            self._emit("question", round_number, question=parsed.question, options=parsed.options)

            answer_index = await self._answer_question(parsed, tool_result)
            selected = parsed.options[answer_index]
            self._emit("answer", round_number, index=answer_index, option=selected)

            conversation.append(
                {"role": "user", "content": "Answer: {} ({})".format(answer_index, selected)}
            )

        self._emit("terminated", rounds, reason=termination.value)

        summary = await self._generate_summary(conversation)
        self._emit("summary", rounds, length=len(summary))

        await self._result_store.create(
            DualLlmResult(
                agent_id=self.agent_id,
                tool_call_id=self.tool_call_id,
                conversations=conversation,
                result=summary,
            )
        )
        return summary

    async def _answer_question(self, parsed: ParsedQuestion, tool_result: Any) -> int:
        options_text = "\n".join(
            "{}: {}".format(index, option) for index, option in enumerate(parsed.options)
        )
        prompt = (
            self.config.quarantined_agent_prompt.replace(
                "{{toolResultData}}", json.dumps(tool_result, indent=2, ensure_ascii=False)
            )
            .replace("{{question}}", parsed.question)
            .replace("{{options}}", options_text)
            .replace("{{maxIndex}}", str(len(parsed.options) - 1))
        )

        result = await self._client.complete(
            [{"role": "user", "content": prompt}],
            self._quarantined_model,
            temperature=0,
            response_format=ANSWER_SCHEMA,
        )

        raw = (result.structured_output or {}).get("answer")
        index = resolve_answer_index(raw, len(parsed.options))
        if raw is None or index != raw:
            _logger.warning(
                "Invalid quarantined answer %r for tool call %s, using option %d",
                raw,
                self.tool_call_id,
                index,
            )
        return index

    async def _generate_summary(self, conversation: List[Dict[str, str]]) -> str:
        qa_text = "\n".join(turn["content"] for turn in conversation if turn["content"])
        prompt = self.config.summary_prompt.replace("{{qaText}}", qa_text)
        result = await self._client.complete(
            [{"role": "user", "content": prompt}], self._main_model, temperature=0
        )
        return result.content.strip()
