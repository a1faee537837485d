"""Anthropic Messages transformer.

Converts between Anthropic's ``/v1/messages`` format and the canonical
chat-completions models. Anthropic has no system or tool roles: system
prompts live in the top-level ``system`` field and tool results are
``tool_result`` blocks inside a user turn, so both are split out into
separate canonical messages on the way in and folded back on the way out.
"""

import json
from typing import Any, Dict, List, Optional

from src.models import (
    CanonicalChunk,
    CanonicalMessage,
    CanonicalRequest,
    CanonicalResponse,
    CustomToolCall,
    FilePart,
    ImagePart,
    TextPart,
)
from src.transformers.base import (
    Provider,
    ProviderTransformer,
    completion_id,
    now_timestamp,
    parse_data_url,
    to_data_url,
)

DEFAULT_MAX_TOKENS = 4096

_STOP_REASON_TO_CANONICAL = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}

_FINISH_REASON_TO_ANTHROPIC = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "refusal",
}

_SKIPPED_ASSISTANT_BLOCKS = ("thinking", "redacted_thinking")


def map_stop_reason(stop_reason: Optional[str]) -> str:
    """Anthropic ``stop_reason`` to canonical finish reason; unknown is ``stop``."""
    return _STOP_REASON_TO_CANONICAL.get(stop_reason or "", "stop")


def map_finish_reason(finish_reason: Optional[str]) -> str:
    """Canonical finish reason to Anthropic ``stop_reason``; unknown is ``end_turn``."""
    return _FINISH_REASON_TO_ANTHROPIC.get(finish_reason or "", "end_turn")


class AnthropicMessagesTransformer(ProviderTransformer):
    provider = Provider.ANTHROPIC

    # --- request: Anthropic -> canonical ---

    def request_to_canonical(
        self, request: Dict[str, Any], model: Optional[str] = None
    ) -> CanonicalRequest:
        if not isinstance(request, dict):
            raise self._fail("request must be a JSON object")
        model_name = request.get("model") or model
        if not model_name:
            raise self._fail("missing required field 'model' in request")
        raw_messages = self._require(request, "messages", "request")
        if not isinstance(raw_messages, list):
            raise self._fail("'messages' must be a list")
        max_tokens = self._require(request, "max_tokens", "request")

        messages: List[Dict[str, Any]] = []
        if request.get("system") is not None:
            messages.append(
                {"role": "system", "content": self._system_to_content(request["system"])}
            )

        for index, message in enumerate(raw_messages):
            where = "messages[{}]".format(index)
            role = self._require(message, "role", where)
            content = self._require(message, "content", where)
            if role == "user":
                messages.extend(self._user_turn_to_canonical(content, where))
            elif role == "assistant":
                messages.append(self._assistant_turn_to_canonical(content, where))
            else:
                raise self._fail("unsupported role '{}' in {}".format(role, where))

        payload: Dict[str, Any] = {
            "model": model_name,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        for key in ("temperature", "top_p", "stream"):
            if request.get(key) is not None:
                payload[key] = request[key]
        if request.get("stop_sequences"):
            payload["stop"] = list(request["stop_sequences"])
        if request.get("tools"):
            payload["tools"] = [
                self._tool_to_canonical(tool, "tools[{}]".format(i))
                for i, tool in enumerate(request["tools"])
            ]
        if request.get("tool_choice") is not None:
            tool_choice = request["tool_choice"]
            payload["tool_choice"] = self._tool_choice_to_canonical(tool_choice)
            if isinstance(tool_choice, dict) and tool_choice.get("disable_parallel_tool_use"):
                payload["parallel_tool_calls"] = False

        return self._build(CanonicalRequest, payload)

    def _system_to_content(self, system: Any) -> Any:
        if isinstance(system, str):
            return system
        if not isinstance(system, list):
            raise self._fail("'system' must be a string or a list of text blocks")
        parts = []
        for block in system:
            if not isinstance(block, dict) or block.get("type") != "text":
                raise self._fail("'system' blocks must be text blocks")
            parts.append({"type": "text", "text": block.get("text", "")})
        return parts

    def _user_turn_to_canonical(self, content: Any, where: str) -> List[Dict[str, Any]]:
        if isinstance(content, str):
            return [{"role": "user", "content": content}]
        if not isinstance(content, list):
            raise self._fail("{}.content must be a string or a list".format(where))

        messages: List[Dict[str, Any]] = []
        parts: List[Dict[str, Any]] = []
        for block in content:
            block_type = self._require(block, "type", where)
            if block_type == "tool_result":
                if parts:
                    messages.append({"role": "user", "content": _collapse_parts(parts)})
                    parts = []
                messages.append(self._tool_result_to_canonical(block, where))
            else:
                parts.append(self._user_block_to_part(block, block_type, where))
        if parts:
            messages.append({"role": "user", "content": _collapse_parts(parts)})
        return messages

    def _tool_result_to_canonical(self, block: Dict[str, Any], where: str) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "role": "tool",
            "tool_call_id": self._require(block, "tool_use_id", where),
        }
        content = block.get("content")
        if content is None:
            message["content"] = ""
        elif isinstance(content, str):
            message["content"] = content
        elif isinstance(content, list):
            parts = []
            for item in content:
                if not isinstance(item, dict) or item.get("type") != "text":
                    raise self._fail(
                        "only text content is supported in tool_result blocks ({})".format(where)
                    )
                parts.append({"type": "text", "text": item.get("text", "")})
            message["content"] = _collapse_parts(parts) if parts else ""
        else:
            raise self._fail("tool_result content must be a string or a list ({})".format(where))
        if block.get("is_error"):
            message["is_error"] = True
        return message

    def _user_block_to_part(
        self, block: Dict[str, Any], block_type: str, where: str
    ) -> Dict[str, Any]:
        if block_type == "text":
            return {"type": "text", "text": self._require(block, "text", where)}

        if block_type in ("image", "document"):
            source = self._require(block, "source", where)
            source_type = self._require(source, "type", where + ".source")
            if source_type == "base64":
                url = to_data_url(
                    self._require(source, "media_type", where + ".source"),
                    self._require(source, "data", where + ".source"),
                )
                if block_type == "image":
                    return {"type": "image_url", "image_url": {"url": url}}
                file_data: Dict[str, Any] = {"file_data": url}
                if block.get("title"):
                    file_data["filename"] = block["title"]
                return {"type": "file", "file": file_data}
            if source_type == "url" and block_type == "image":
                return {
                    "type": "image_url",
                    "image_url": {"url": self._require(source, "url", where + ".source")},
                }
            if source_type == "file":
                return {
                    "type": "file",
                    "file": {"file_id": self._require(source, "file_id", where + ".source")},
                }
            if source_type == "text" and block_type == "document":
                return {"type": "text", "text": self._require(source, "data", where + ".source")}
            raise self._fail(
                "unsupported {} source type '{}' in {}".format(block_type, source_type, where)
            )

        raise self._fail("unsupported user content block '{}' in {}".format(block_type, where))

    def _assistant_turn_to_canonical(self, content: Any, where: str) -> Dict[str, Any]:
        if isinstance(content, str):
            return {"role": "assistant", "content": content}
        if not isinstance(content, list):
            raise self._fail("{}.content must be a string or a list".format(where))

        texts: List[str] = []
        tool_calls: List[Dict[str, Any]] = []
        for block in content:
            block_type = self._require(block, "type", where)
            if block_type == "text":
                texts.append(block.get("text", ""))
            elif block_type == "tool_use":
                tool_calls.append(self._tool_use_to_tool_call(block, where))
            elif block_type in _SKIPPED_ASSISTANT_BLOCKS:
                continue
            else:
                raise self._fail(
                    "unsupported assistant content block '{}' in {}".format(block_type, where)
                )

        message: Dict[str, Any] = {
            "role": "assistant",
            "content": "".join(texts) if texts else None,
        }
        if tool_calls:
            message["tool_calls"] = tool_calls
        return message

    def _tool_use_to_tool_call(self, block: Dict[str, Any], where: str) -> Dict[str, Any]:
        return {
            "id": self._require(block, "id", where),
            "type": "function",
            "function": {
                "name": self._require(block, "name", where),
                "arguments": json.dumps(block.get("input") or {}),
            },
        }

    def _tool_to_canonical(self, tool: Dict[str, Any], where: str) -> Dict[str, Any]:
        if tool.get("type") not in (None, "custom"):
            raise self._fail("unsupported tool type '{}' in {}".format(tool.get("type"), where))
        function: Dict[str, Any] = {
            "name": self._require(tool, "name", where),
            "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
        }
        if tool.get("description"):
            function["description"] = tool["description"]
        return {"type": "function", "function": function}

    def _tool_choice_to_canonical(self, tool_choice: Any) -> Any:
        choice_type = tool_choice.get("type") if isinstance(tool_choice, dict) else None
        if choice_type == "auto":
            return "auto"
        if choice_type == "any":
            return "required"
        if choice_type == "none":
            return "none"
        if choice_type == "tool":
            return {
                "type": "function",
                "function": {"name": self._require(tool_choice, "name", "tool_choice")},
            }
        raise self._fail("unsupported tool_choice {!r}".format(tool_choice))

    # --- request: canonical -> Anthropic ---

    def request_from_canonical(self, request: CanonicalRequest) -> Dict[str, Any]:
        system_texts: List[str] = []
        messages: List[Dict[str, Any]] = []

        for index, message in enumerate(request.messages):
            where = "messages[{}]".format(index)
            if message.role in ("system", "developer"):
                system_texts.append(message.text())
                continue
            if message.role == "assistant":
                role, blocks = "assistant", self._assistant_blocks(message, where)
            elif message.role == "tool":
                role, blocks = "user", [self._tool_result_block(message)]
            elif message.role == "function":
                role = "user"
                blocks = [
                    {
                        "type": "text",
                        "text": "Result of {}: {}".format(message.name or "function", message.text()),
                    }
                ]
            else:
                role, blocks = "user", self._user_blocks(message, where)

            if not blocks:
                continue
            # Anthropic requires alternating turns
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})

        for message in messages:
            blocks = message["content"]
            if len(blocks) == 1 and blocks[0]["type"] == "text":
                message["content"] = blocks[0]["text"]

        body: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.token_limit or DEFAULT_MAX_TOKENS,
        }
        if system_texts:
            body["system"] = "\n\n".join(system_texts)
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.stop:
            body["stop_sequences"] = [request.stop] if isinstance(request.stop, str) else list(request.stop)
        if request.stream is not None:
            body["stream"] = request.stream

        tools = [self._tool_from_canonical(tool) for tool in request.tools or []]
        tool_choice = self._tool_choice_from_canonical(request.tool_choice)

        schema_format = request.response_format or {}
        if schema_format.get("type") == "json_schema":
            json_schema = schema_format.get("json_schema") or {}
            name = json_schema.get("name") or "structured_output"
            tools.append(
                {
                    "name": name,
                    "description": "Respond by calling this tool with the structured result.",
                    "input_schema": json_schema.get("schema") or {"type": "object"},
                }
            )
            tool_choice = {"type": "tool", "name": name}

        if request.parallel_tool_calls is False:
            tool_choice = dict(tool_choice or {"type": "auto"}, disable_parallel_tool_use=True)
        if tools:
            body["tools"] = tools
        if tool_choice is not None:
            body["tool_choice"] = tool_choice
        return body

    def _user_blocks(self, message: CanonicalMessage, where: str) -> List[Dict[str, Any]]:
        if message.content is None:
            return []
        if isinstance(message.content, str):
            return [{"type": "text", "text": message.content}]

        blocks = []
        for part in message.content:
            if isinstance(part, TextPart):
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                parsed = parse_data_url(part.image_url.url)
                if parsed:
                    source = {"type": "base64", "media_type": parsed[0], "data": parsed[1]}
                else:
                    source = {"type": "url", "url": part.image_url.url}
                blocks.append({"type": "image", "source": source})
            elif isinstance(part, FilePart):
                blocks.append(self._document_block(part, where))
            else:
                raise self._fail(
                    "content part '{}' is not supported by Anthropic ({})".format(part.type, where)
                )
        return blocks

    def _document_block(self, part: FilePart, where: str) -> Dict[str, Any]:
        block: Dict[str, Any] = {"type": "document"}
        if part.file.file_data:
            parsed = parse_data_url(part.file.file_data)
            if parsed is None:
                raise self._fail("file_data must be a base64 data URL ({})".format(where))
            block["source"] = {"type": "base64", "media_type": parsed[0], "data": parsed[1]}
        elif part.file.file_id:
            block["source"] = {"type": "file", "file_id": part.file.file_id}
        else:
            raise self._fail("file part needs file_data or file_id ({})".format(where))
        if part.file.filename:
            block["title"] = part.file.filename
        return block

    def _assistant_blocks(self, message: CanonicalMessage, where: str) -> List[Dict[str, Any]]:
        blocks: List[Dict[str, Any]] = []
        text = message.text() if message.content is not None else ""
        if text:
            blocks.append({"type": "text", "text": text})
        for tool_call in message.tool_calls or []:
            if isinstance(tool_call, CustomToolCall):
                raise self._fail("custom tool calls are not supported by Anthropic ({})".format(where))
            blocks.append(
                {
                    "type": "tool_use",
                    "id": tool_call.id,
                    "name": tool_call.function.name,
                    "input": self._parse_arguments(tool_call.function.arguments, where),
                }
            )
        return blocks

    def _tool_result_block(self, message: CanonicalMessage) -> Dict[str, Any]:
        block: Dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": message.tool_call_id,
            "content": message.text(),
        }
        if (message.model_extra or {}).get("is_error"):
            block["is_error"] = True
        return block

    def _tool_from_canonical(self, tool: Any) -> Dict[str, Any]:
        if tool.type != "function" or tool.function is None:
            raise self._fail("only function tools are supported by Anthropic")
        converted: Dict[str, Any] = {
            "name": tool.function.name,
            "input_schema": tool.function.parameters or {"type": "object", "properties": {}},
        }
        if tool.function.description:
            converted["description"] = tool.function.description
        return converted

    def _tool_choice_from_canonical(self, tool_choice: Any) -> Optional[Dict[str, Any]]:
        if tool_choice is None:
            return None
        if tool_choice == "auto":
            return {"type": "auto"}
        if tool_choice == "none":
            return {"type": "none"}
        if tool_choice == "required":
            return {"type": "any"}
        if isinstance(tool_choice, dict) and tool_choice.get("type") == "function":
            name = (tool_choice.get("function") or {}).get("name")
            if name:
                return {"type": "tool", "name": name}
        raise self._fail("unsupported tool_choice {!r}".format(tool_choice))

    def _parse_arguments(self, arguments: str, where: str) -> Dict[str, Any]:
        if not arguments:
            return {}
        try:
            parsed = json.loads(arguments)
        except ValueError as exc:
            raise self._fail("tool call arguments are not valid JSON ({})".format(where)) from exc
        if not isinstance(parsed, dict):
            raise self._fail("tool call arguments must be a JSON object ({})".format(where))
        return parsed

    # --- response ---

    def response_to_canonical(self, response: Dict[str, Any]) -> CanonicalResponse:
        if not isinstance(response, dict):
            raise self._fail("response must be a JSON object")
        content = self._require(response, "content", "response")
        if not isinstance(content, list):
            raise self._fail("response content must be a list")
        model = self._require(response, "model", "response")

        texts: List[str] = []
        tool_calls: List[Dict[str, Any]] = []
        for block in content:
            block_type = self._require(block, "type", "response.content")
            if block_type == "text":
                texts.append(block.get("text", ""))
            elif block_type == "tool_use":
                tool_calls.append(self._tool_use_to_tool_call(block, "response.content"))

        stop_reason = response.get("stop_reason")
        message: Dict[str, Any] = {
            "role": "assistant",
            "content": "".join(texts) if texts else None,
        }
        if tool_calls:
            message["tool_calls"] = tool_calls
        if stop_reason == "refusal" and not texts:
            message["refusal"] = "The provider refused to respond."

        payload: Dict[str, Any] = {
            "id": response.get("id") or completion_id(),
            "created": now_timestamp(),
            "model": model,
            "choices": [
                {"index": 0, "message": message, "finish_reason": map_stop_reason(stop_reason)}
            ],
        }
        usage = response.get("usage")
        if isinstance(usage, dict):
            prompt_tokens = usage.get("input_tokens") or 0
            completion_tokens = usage.get("output_tokens") or 0
            payload["usage"] = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            }
        return self._build(CanonicalResponse, payload)

    def response_from_canonical(self, response: CanonicalResponse) -> Dict[str, Any]:
        if not response.choices:
            raise self._fail("canonical response has no choices")
        choice = response.choices[0]
        message = choice.message

        blocks = self._assistant_blocks(message, "choices[0].message")
        if not blocks and message.refusal:
            blocks.append({"type": "text", "text": message.refusal})

        usage = response.usage
        return {
            "id": response.id,
            "type": "message",
            "role": "assistant",
            "model": response.model,
            "content": blocks,
            "stop_reason": map_finish_reason(choice.finish_reason),
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.prompt_tokens if usage else 0,
                "output_tokens": usage.completion_tokens if usage else 0,
            },
        }

    # --- streaming ---

    def chunk_to_canonical(self, chunk: Dict[str, Any]) -> CanonicalChunk:
        """Convert one Anthropic stream event into a canonical chunk.

        Tool-call indexes are the Anthropic content-block indexes, so they
        stay stable across the start and delta events of one block.
        """
        event_type = self._require(chunk, "type", "stream event")
        payload: Dict[str, Any] = {
            "id": completion_id(),
            "created": now_timestamp(),
            "model": "",
            "choices": [],
        }

        if event_type == "message_start":
            message = self._require(chunk, "message", "message_start")
            payload["id"] = message.get("id") or payload["id"]
            payload["model"] = message.get("model") or ""
            payload["choices"] = [{"index": 0, "delta": {"role": "assistant", "content": ""}}]
            usage = message.get("usage") or {}
            if usage:
                prompt_tokens = usage.get("input_tokens") or 0
                completion_tokens = usage.get("output_tokens") or 0
                payload["usage"] = {
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                }
        elif event_type == "content_block_start":
            block = self._require(chunk, "content_block", "content_block_start")
            index = chunk.get("index", 0)
            if block.get("type") == "tool_use":
                delta = {
                    "tool_calls": [
                        {
                            "index": index,
                            "id": block.get("id"),
                            "type": "function",
                            "function": {"name": block.get("name"), "arguments": ""},
                        }
                    ]
                }
                payload["choices"] = [{"index": 0, "delta": delta}]
            elif block.get("type") == "text" and block.get("text"):
                payload["choices"] = [{"index": 0, "delta": {"content": block["text"]}}]
        elif event_type == "content_block_delta":
            delta = self._require(chunk, "delta", "content_block_delta")
            if delta.get("type") == "text_delta":
                payload["choices"] = [{"index": 0, "delta": {"content": delta.get("text", "")}}]
            elif delta.get("type") == "input_json_delta":
                tool_delta = {
                    "tool_calls": [
                        {
                            "index": chunk.get("index", 0),
                            "function": {"arguments": delta.get("partial_json", "")},
                        }
                    ]
                }
                payload["choices"] = [{"index": 0, "delta": tool_delta}]
        elif event_type == "message_delta":
            delta = chunk.get("delta") or {}
            payload["choices"] = [
                {
                    "index": 0,
                    "delta": {},
                    "finish_reason": map_stop_reason(delta.get("stop_reason")),
                }
            ]
            usage = chunk.get("usage") or {}
            if usage:
                completion_tokens = usage.get("output_tokens") or 0
                prompt_tokens = usage.get("input_tokens") or 0
                payload["usage"] = {
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                }
        elif event_type == "error":
            error = chunk.get("error") or {}
            raise self._fail("stream error event: {}".format(error.get("message", "unknown error")))
        elif event_type not in ("ping", "message_stop", "content_block_stop"):
            raise self._fail("unsupported stream event '{}'".format(event_type))

        return self._build(CanonicalChunk, payload)


def _collapse_parts(parts: List[Dict[str, Any]]) -> Any:
    """A lone text part becomes a plain string; anything else stays a part list."""
    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    return parts
