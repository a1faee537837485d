"""Gemini generateContent transformer.

Converts between Gemini's ``Content``/``Part`` format and the canonical
chat-completions models. A single Gemini turn can mix text, function calls
and function responses, while the canonical format models tool results as
separate ``tool`` turns, so turns are decomposed on the way in and
regrouped on the way out.

Gemini function calls usually carry no id. Function responses are paired
with the oldest unanswered call of the same name, and each such call gets a
``gemini_call_`` id hashed from the conversation up to the call and from
its response. A client resending the same history gets the same ids, so
stored quarantine results keep matching. Synthesized ids are never sent
back to Gemini.
"""

import hashlib
import json
import mimetypes
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

from src.models import (
    AudioPart,
    CanonicalChunk,
    CanonicalMessage,
    CanonicalRequest,
    CanonicalResponse,
    CustomToolCall,
    FilePart,
    ImagePart,
    TextPart,
    parse_tool_result,
)
from src.transformers.base import (
    Provider,
    ProviderTransformer,
    completion_id,
    derive_tool_call_id,
    now_timestamp,
    parse_data_url,
    to_data_url,
)

SYNTHETIC_CALL_PREFIX = "gemini_call_"

_ROLE_TO_CANONICAL = {
    "user": "user",
    "model": "assistant",
    "function": "tool",
}

_FINISH_REASON_TO_CANONICAL = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "IMAGE_SAFETY": "content_filter",
}

_FINISH_REASON_TO_GEMINI = {
    "stop": "STOP",
    "length": "MAX_TOKENS",
    "content_filter": "SAFETY",
    "tool_calls": "STOP",
    "function_call": "STOP",
}

_TOOL_CHOICE_MODES = {"auto": "AUTO", "none": "NONE", "required": "ANY"}

_MODE_TO_TOOL_CHOICE = {"AUTO": "auto", "NONE": "none", "ANY": "required"}

_AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mp3": "mp3",
    "audio/mpeg": "mp3",
}

_AUDIO_MIME_TYPES = {"wav": "audio/wav", "mp3": "audio/mp3"}

# JSON-schema keywords the Gemini API rejects in function declarations
_UNSUPPORTED_SCHEMA_KEYS = ("$schema", "additionalProperties")


def map_finish_reason_to_canonical(reason: Optional[str]) -> str:
    return _FINISH_REASON_TO_CANONICAL.get(reason or "", "stop")


def map_finish_reason_to_gemini(reason: Optional[str]) -> str:
    return _FINISH_REASON_TO_GEMINI.get(reason or "", "OTHER")


def strip_unsupported_schema_keys(schema: Any) -> Any:
    """Recursively drop JSON-schema keys Gemini does not accept."""
    if isinstance(schema, dict):
        return {
            key: strip_unsupported_schema_keys(value)
            for key, value in schema.items()
            if key not in _UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [strip_unsupported_schema_keys(item) for item in schema]
    return schema


def is_synthesized_call_id(call_id: Optional[str]) -> bool:
    return bool(call_id) and call_id.startswith(SYNTHETIC_CALL_PREFIX)


class _CallIds:
    """Tool-call id allocation for one conversion.

    Calls without a native id get a placeholder while the contents are
    walked. Once every response has been paired, ``finalize`` swaps each
    placeholder for an id derived from the conversation up to the call and
    the response paired with it.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, Deque[str]] = defaultdict(deque)
        self._seeds: Dict[str, str] = {}
        self._responses: Dict[str, Any] = {}

    def _placeholder(self, seed: str) -> str:
        placeholder = "{}pending_{}".format(SYNTHETIC_CALL_PREFIX, len(self._seeds))
        self._seeds[placeholder] = seed
        return placeholder

    def for_call(self, name: str, native_id: Optional[str], seed: str) -> str:
        call_id = native_id or self._placeholder(seed)
        self._pending[name].append(call_id)
        return call_id

    def for_response(
        self, name: str, native_id: Optional[str], seed: str, response: Any
    ) -> str:
        pending = self._pending[name]
        if native_id:
            if native_id in pending:
                pending.remove(native_id)
            return native_id
        # No matching call: the orchestrator treats this id as unresolvable
        call_id = pending.popleft() if pending else self._placeholder(seed)
        if call_id in self._seeds:
            self._responses[call_id] = response
        return call_id

    def resolve(self, call_id: str) -> str:
        if call_id not in self._seeds:
            return call_id
        return derive_tool_call_id(
            SYNTHETIC_CALL_PREFIX, self._seeds[call_id], self._responses.get(call_id)
        )

    def finalize(self, messages: List[Dict[str, Any]]) -> None:
        for message in messages:
            for tool_call in message.get("tool_calls") or []:
                tool_call["id"] = self.resolve(tool_call["id"])
            if message.get("tool_call_id"):
                message["tool_call_id"] = self.resolve(message["tool_call_id"])


class GeminiGenerateContentTransformer(ProviderTransformer):
    provider = Provider.GEMINI

    # --- request: Gemini -> canonical ---

    def request_to_canonical(
        self, request: Dict[str, Any], model: Optional[str] = None
    ) -> CanonicalRequest:
        if not isinstance(request, dict):
            raise self._fail("request must be a JSON object")
        model_name = model or request.get("model")
        if not model_name:
            raise self._fail("missing model name")
        contents = self._require(request, "contents", "request")
        if not isinstance(contents, list):
            raise self._fail("'contents' must be a list")

        messages: List[Dict[str, Any]] = []
        system_instruction = request.get("systemInstruction")
        if system_instruction:
            text = self._system_instruction_text(system_instruction)
            if text:
                messages.append({"role": "system", "content": text})
        ids = _CallIds()
        history = hashlib.sha256(json.dumps(system_instruction, sort_keys=True).encode("utf-8"))
        messages.extend(self._contents_to_messages(contents, ids, history))
        ids.finalize(messages)

        payload: Dict[str, Any] = {"model": model_name, "messages": messages}

        tools = []
        for tool in request.get("tools") or []:
            for declaration in tool.get("functionDeclarations") or []:
                function: Dict[str, Any] = {
                    "name": self._require(declaration, "name", "functionDeclarations")
                }
                if declaration.get("description"):
                    function["description"] = declaration["description"]
                parameters = declaration.get("parameters") or declaration.get("parametersJsonSchema")
                if parameters is not None:
                    function["parameters"] = parameters
                tools.append({"type": "function", "function": function})
        if tools:
            payload["tools"] = tools

        calling_config = (request.get("toolConfig") or {}).get("functionCallingConfig") or {}
        if calling_config.get("mode"):
            payload["tool_choice"] = self._tool_choice_to_canonical(calling_config)

        payload.update(self._generation_config_to_canonical(request.get("generationConfig") or {}))
        return self._build(CanonicalRequest, payload)

    def _system_instruction_text(self, system_instruction: Any) -> str:
        if isinstance(system_instruction, str):
            return system_instruction
        parts = system_instruction.get("parts") if isinstance(system_instruction, dict) else None
        if not isinstance(parts, list):
            raise self._fail("systemInstruction must contain a list of parts")
        return "\n".join(part.get("text", "") for part in parts if isinstance(part, dict))

    def _contents_to_messages(
        self, contents: List[Any], ids: _CallIds, history: Any
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        for index, content in enumerate(contents):
            where = "contents[{}]".format(index)
            if not isinstance(content, dict):
                raise self._fail("{} must be an object".format(where))
            history.update(json.dumps(content, sort_keys=True).encode("utf-8"))
            digest = history.hexdigest()
            role = content.get("role") or "user"
            if role not in _ROLE_TO_CANONICAL:
                raise self._fail("unsupported role '{}' in {}".format(role, where))
            parts = self._require(content, "parts", where)
            if not isinstance(parts, list):
                raise self._fail("{}.parts must be a list".format(where))

            texts: List[str] = []
            user_parts: List[Dict[str, Any]] = []
            tool_calls: List[Dict[str, Any]] = []
            tool_messages: List[Dict[str, Any]] = []

            for part_index, part in enumerate(parts):
                if not isinstance(part, dict):
                    raise self._fail("{}.parts entries must be objects".format(where))
                seed = "{}:{}".format(digest, part_index)
                if part.get("thought"):
                    continue
                if "text" in part:
                    if role == "model":
                        texts.append(part["text"])
                    else:
                        user_parts.append({"type": "text", "text": part["text"]})
                elif "functionCall" in part:
                    if role != "model":
                        raise self._fail("functionCall parts are only valid in model turns ({})".format(where))
                    tool_calls.append(
                        self._function_call_to_tool_call(part["functionCall"], ids, seed, where)
                    )
                elif "functionResponse" in part:
                    tool_messages.append(
                        self._function_response_to_message(part["functionResponse"], ids, seed, where)
                    )
                elif "inlineData" in part and role != "model":
                    user_parts.append(self._inline_data_to_part(part["inlineData"], where))
                elif "fileData" in part and role != "model":
                    user_parts.append(self._file_data_to_part(part["fileData"], where))
                else:
                    raise self._fail("unsupported part {} in {}".format(sorted(part.keys()), where))

            if role == "model":
                if texts or tool_calls:
                    message: Dict[str, Any] = {
                        "role": "assistant",
                        "content": "".join(texts) if texts else None,
                    }
                    if tool_calls:
                        message["tool_calls"] = tool_calls
                    messages.append(message)
                messages.extend(tool_messages)
            else:
                messages.extend(tool_messages)
                if user_parts:
                    messages.append({"role": "user", "content": _collapse_parts(user_parts)})
        return messages

    def _function_call_to_tool_call(
        self, function_call: Dict[str, Any], ids: _CallIds, seed: str, where: str
    ) -> Dict[str, Any]:
        name = self._require(function_call, "name", where + ".functionCall")
        return {
            "id": ids.for_call(name, function_call.get("id"), seed),
            "type": "function",
            "function": {
                "name": name,
                "arguments": json.dumps(function_call.get("args") or {}),
            },
        }

    def _function_response_to_message(
        self, function_response: Dict[str, Any], ids: _CallIds, seed: str, where: str
    ) -> Dict[str, Any]:
        name = self._require(function_response, "name", where + ".functionResponse")
        response = function_response.get("response") or {}
        return {
            "role": "tool",
            "tool_call_id": ids.for_response(name, function_response.get("id"), seed, response),
            "name": name,
            "content": json.dumps(response),
        }

    def _inline_data_to_part(self, inline_data: Dict[str, Any], where: str) -> Dict[str, Any]:
        mime_type = self._require(inline_data, "mimeType", where + ".inlineData")
        data = self._require(inline_data, "data", where + ".inlineData")
        if mime_type.startswith("image/"):
            return {"type": "image_url", "image_url": {"url": to_data_url(mime_type, data)}}
        if mime_type in _AUDIO_FORMATS:
            return {
                "type": "input_audio",
                "input_audio": {"data": data, "format": _AUDIO_FORMATS[mime_type]},
            }
        return {"type": "file", "file": {"file_data": to_data_url(mime_type, data)}}

    def _file_data_to_part(self, file_data: Dict[str, Any], where: str) -> Dict[str, Any]:
        uri = self._require(file_data, "fileUri", where + ".fileData")
        mime_type = file_data.get("mimeType") or ""
        if mime_type.startswith("image/"):
            return {"type": "image_url", "image_url": {"url": uri}}
        return {"type": "file", "file": {"file_id": uri}}

    def _tool_choice_to_canonical(self, calling_config: Dict[str, Any]) -> Any:
        mode = calling_config["mode"]
        allowed = calling_config.get("allowedFunctionNames") or []
        if mode == "ANY" and len(allowed) == 1:
            return {"type": "function", "function": {"name": allowed[0]}}
        if mode in _MODE_TO_TOOL_CHOICE:
            return _MODE_TO_TOOL_CHOICE[mode]
        if mode == "MODE_UNSPECIFIED":
            return "auto"
        raise self._fail("unsupported functionCallingConfig mode '{}'".format(mode))

    def _generation_config_to_canonical(self, config: Dict[str, Any]) -> Dict[str, Any]:
        converted: Dict[str, Any] = {}
        if config.get("temperature") is not None:
            converted["temperature"] = config["temperature"]
        if config.get("topP") is not None:
            converted["top_p"] = config["topP"]
        if config.get("maxOutputTokens") is not None:
            converted["max_tokens"] = config["maxOutputTokens"]
        if config.get("candidateCount") is not None:
            converted["n"] = config["candidateCount"]
        if config.get("stopSequences"):
            converted["stop"] = list(config["stopSequences"])
        if config.get("responseMimeType") == "application/json":
            schema = config.get("responseSchema") or config.get("responseJsonSchema")
            if schema:
                converted["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {"name": "response", "schema": schema},
                }
            else:
                converted["response_format"] = {"type": "json_object"}
        return converted

    # --- request: canonical -> Gemini ---

    def request_from_canonical(self, request: CanonicalRequest) -> Dict[str, Any]:
        system_texts: List[str] = []
        contents: List[Dict[str, Any]] = []
        names_by_id: Dict[str, str] = {}

        for index, message in enumerate(request.messages):
            where = "messages[{}]".format(index)
            if message.role in ("system", "developer"):
                system_texts.append(message.text())
                continue

            if message.role == "assistant":
                role, parts = "model", self._model_parts(message, where, names_by_id)
            elif message.role == "tool":
                name = names_by_id.get(message.tool_call_id or "") or message.name
                if name is None:
                    raise self._fail(
                        "tool message {} references unknown tool call '{}'".format(
                            where, message.tool_call_id
                        )
                    )
                role = "user"
                parts = [self._function_response_part(name, message.tool_call_id, message)]
            elif message.role == "function":
                if not message.name:
                    raise self._fail("function messages require a name ({})".format(where))
                role, parts = "user", [self._function_response_part(message.name, None, message)]
            else:
                role, parts = "user", self._user_parts(message, where)

            if not parts:
                continue
            # All function responses for one model turn go back in a single content
            if (
                contents
                and role == "user"
                and _only_function_responses(parts)
                and contents[-1]["role"] == "user"
                and _only_function_responses(contents[-1]["parts"])
            ):
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})

        body: Dict[str, Any] = {"contents": contents}
        if system_texts:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_texts)}]}

        declarations = []
        for tool in request.tools or []:
            if tool.type != "function" or tool.function is None:
                raise self._fail("only function tools are supported by Gemini")
            declaration: Dict[str, Any] = {"name": tool.function.name}
            if tool.function.description:
                declaration["description"] = tool.function.description
            if tool.function.parameters:
                declaration["parameters"] = strip_unsupported_schema_keys(tool.function.parameters)
            declarations.append(declaration)
        if declarations:
            body["tools"] = [{"functionDeclarations": declarations}]

        calling_config = self._tool_choice_from_canonical(request.tool_choice)
        if calling_config:
            body["toolConfig"] = {"functionCallingConfig": calling_config}

        generation_config = self._generation_config_from_canonical(request)
        if generation_config:
            body["generationConfig"] = generation_config
        return body

    def _model_parts(
        self, message: CanonicalMessage, where: str, names_by_id: Dict[str, str]
    ) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = []
        text = message.text() if message.content is not None else ""
        if text:
            parts.append({"text": text})
        for tool_call in message.tool_calls or []:
            if isinstance(tool_call, CustomToolCall):
                raise self._fail("custom tool calls are not supported by Gemini ({})".format(where))
            function_call: Dict[str, Any] = {
                "name": tool_call.function.name,
                "args": self._parse_arguments(tool_call.function.arguments, where),
            }
            if not is_synthesized_call_id(tool_call.id):
                function_call["id"] = tool_call.id
            names_by_id[tool_call.id] = tool_call.function.name
            parts.append({"functionCall": function_call})
        return parts

    def _function_response_part(
        self, name: str, call_id: Optional[str], message: CanonicalMessage
    ) -> Dict[str, Any]:
        result = parse_tool_result(message.content)
        function_response: Dict[str, Any] = {
            "name": name,
            "response": result if isinstance(result, dict) else {"content": result},
        }
        if call_id and not is_synthesized_call_id(call_id):
            function_response["id"] = call_id
        return {"functionResponse": function_response}

    def _user_parts(self, message: CanonicalMessage, where: str) -> List[Dict[str, Any]]:
        if message.content is None:
            return []
        if isinstance(message.content, str):
            return [{"text": message.content}]

        parts: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                parts.append({"text": part.text})
            elif isinstance(part, ImagePart):
                parsed = parse_data_url(part.image_url.url)
                if parsed:
                    parts.append({"inlineData": {"mimeType": parsed[0], "data": parsed[1]}})
                else:
                    mime_type = mimetypes.guess_type(part.image_url.url)[0] or "image/jpeg"
                    parts.append({"fileData": {"mimeType": mime_type, "fileUri": part.image_url.url}})
            elif isinstance(part, AudioPart):
                parts.append(
                    {
                        "inlineData": {
                            "mimeType": _AUDIO_MIME_TYPES[part.input_audio.format],
                            "data": part.input_audio.data,
                        }
                    }
                )
            elif isinstance(part, FilePart):
                parts.append(self._file_part(part, where))
            else:
                raise self._fail(
                    "content part '{}' is not supported by Gemini ({})".format(part.type, where)
                )
        return parts

    def _file_part(self, part: FilePart, where: str) -> Dict[str, Any]:
        if part.file.file_data:
            parsed = parse_data_url(part.file.file_data)
            if parsed is None:
                raise self._fail("file_data must be a base64 data URL ({})".format(where))
            return {"inlineData": {"mimeType": parsed[0], "data": parsed[1]}}
        if part.file.file_id:
            mime_type = mimetypes.guess_type(part.file.filename or part.file.file_id)[0]
            return {
                "fileData": {
                    "mimeType": mime_type or "application/octet-stream",
                    "fileUri": part.file.file_id,
                }
            }
        raise self._fail("file part needs file_data or file_id ({})".format(where))

    def _tool_choice_from_canonical(self, tool_choice: Any) -> Optional[Dict[str, Any]]:
        if tool_choice is None:
            return None
        if isinstance(tool_choice, str) and tool_choice in _TOOL_CHOICE_MODES:
            return {"mode": _TOOL_CHOICE_MODES[tool_choice]}
        if isinstance(tool_choice, dict) and tool_choice.get("type") == "function":
            name = (tool_choice.get("function") or {}).get("name")
            if name:
                return {"mode": "ANY", "allowedFunctionNames": [name]}
        raise self._fail("unsupported tool_choice {!r}".format(tool_choice))

    def _generation_config_from_canonical(self, request: CanonicalRequest) -> Dict[str, Any]:
        config: Dict[str, Any] = {}
        if request.temperature is not None:
            config["temperature"] = request.temperature
        if request.top_p is not None:
            config["topP"] = request.top_p
        if request.token_limit is not None:
            config["maxOutputTokens"] = request.token_limit
        if request.n is not None:
            config["candidateCount"] = request.n
        if request.stop:
            config["stopSequences"] = [request.stop] if isinstance(request.stop, str) else list(request.stop)

        response_format = request.response_format or {}
        if response_format.get("type") == "json_schema":
            config["responseMimeType"] = "application/json"
            schema = (response_format.get("json_schema") or {}).get("schema")
            if schema:
                config["responseSchema"] = strip_unsupported_schema_keys(schema)
        elif response_format.get("type") == "json_object":
            config["responseMimeType"] = "application/json"
        return config

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
        ids = _CallIds()
        choices = [
            self._candidate_to_choice(candidate, position, ids)
            for position, candidate in enumerate(response.get("candidates") or [])
        ]
        ids.finalize([choice["message"] for choice in choices])

        if not choices:
            # Prompt blocked upstream: keep the response well-formed
            block_reason = (response.get("promptFeedback") or {}).get("blockReason")
            choices.append(
                {
                    "index": 0,
                    "message": {
                        "role": "assistant",
                        "content": None,
                        "refusal": block_reason or "OTHER",
                    },
                    "finish_reason": "content_filter" if block_reason else "stop",
                }
            )

        payload: Dict[str, Any] = {
            "id": response.get("responseId") or completion_id(),
            "created": now_timestamp(),
            "model": response.get("modelVersion") or "",
            "choices": choices,
        }
        usage = _usage_to_canonical(response.get("usageMetadata"))
        if usage:
            payload["usage"] = usage
        return self._build(CanonicalResponse, payload)

    def _candidate_to_choice(
        self, candidate: Dict[str, Any], position: int, ids: _CallIds
    ) -> Dict[str, Any]:
        texts, tool_calls = self._candidate_parts(candidate, position, ids)
        finish_reason_raw = candidate.get("finishReason")
        finish_reason = map_finish_reason_to_canonical(finish_reason_raw)
        if tool_calls and finish_reason == "stop":
            finish_reason = "tool_calls"

        message: Dict[str, Any] = {
            "role": "assistant",
            "content": "".join(texts) if texts else None,
        }
        if tool_calls:
            message["tool_calls"] = tool_calls
        if not texts and not tool_calls and finish_reason == "content_filter":
            message["refusal"] = finish_reason_raw
        return {
            "index": candidate.get("index", position),
            "message": message,
            "finish_reason": finish_reason,
        }

    def _candidate_parts(self, candidate: Any, position: int, ids: _CallIds) -> Any:
        if not isinstance(candidate, dict):
            raise self._fail("candidates entries must be objects")
        digest = hashlib.sha256(json.dumps(candidate, sort_keys=True).encode("utf-8")).hexdigest()
        content = candidate.get("content") or {}
        texts: List[str] = []
        tool_calls: List[Dict[str, Any]] = []
        for part_index, part in enumerate(content.get("parts") or []):
            if not isinstance(part, dict) or part.get("thought"):
                continue
            if "text" in part:
                texts.append(part["text"])
            elif "functionCall" in part:
                seed = "{}:{}:{}".format(digest, position, part_index)
                tool_calls.append(
                    self._function_call_to_tool_call(part["functionCall"], ids, seed, "candidate")
                )
        return texts, tool_calls

    def response_from_canonical(self, response: CanonicalResponse) -> Dict[str, Any]:
        candidates = []
        for choice in response.choices:
            parts = self._model_parts(choice.message, "choices[{}]".format(choice.index), {})
            candidate: Dict[str, Any] = {
                "index": choice.index,
                "finishReason": map_finish_reason_to_gemini(choice.finish_reason),
            }
            if parts:
                candidate["content"] = {"role": "model", "parts": parts}
            candidates.append(candidate)

        body: Dict[str, Any] = {"modelVersion": response.model, "responseId": response.id}
        first = response.choices[0].message if response.choices else None
        if first is not None and first.refusal and all("content" not in c for c in candidates):
            body["promptFeedback"] = {"blockReason": first.refusal}
        else:
            body["candidates"] = candidates

        if response.usage is not None:
            body["usageMetadata"] = {
                "promptTokenCount": response.usage.prompt_tokens,
                "candidatesTokenCount": response.usage.completion_tokens,
                "totalTokenCount": response.usage.total_tokens,
            }
        return body

    # --- streaming ---

    def chunk_to_canonical(self, chunk: Dict[str, Any]) -> CanonicalChunk:
        if not isinstance(chunk, dict):
            raise self._fail("chunk must be a JSON object")
        ids = _CallIds()
        choices = []
        for position, candidate in enumerate(chunk.get("candidates") or []):
            texts, tool_calls = self._candidate_parts(candidate, position, ids)
            delta: Dict[str, Any] = {"role": "assistant"}
            if texts:
                delta["content"] = "".join(texts)
            if tool_calls:
                delta["tool_calls"] = [
                    dict(tool_call, index=tool_index)
                    for tool_index, tool_call in enumerate(tool_calls)
                ]
            choice: Dict[str, Any] = {"index": candidate.get("index", position), "delta": delta}
            if candidate.get("finishReason"):
                finish_reason = map_finish_reason_to_canonical(candidate["finishReason"])
                if tool_calls and finish_reason == "stop":
                    finish_reason = "tool_calls"
                choice["finish_reason"] = finish_reason
            choices.append(choice)
        ids.finalize([choice["delta"] for choice in choices])

        payload: Dict[str, Any] = {
            "id": chunk.get("responseId") or completion_id(),
            "created": now_timestamp(),
            "model": chunk.get("modelVersion") or "",
            "choices": choices,
        }
        usage = _usage_to_canonical(chunk.get("usageMetadata"))
        if usage:
            payload["usage"] = usage
        return self._build(CanonicalChunk, payload)


def _usage_to_canonical(usage_metadata: Any) -> Optional[Dict[str, int]]:
    if not isinstance(usage_metadata, dict):
        return None
    prompt_tokens = usage_metadata.get("promptTokenCount") or 0
    completion_tokens = usage_metadata.get("candidatesTokenCount") or 0
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": usage_metadata.get("totalTokenCount") or prompt_tokens + completion_tokens,
    }


def _only_function_responses(parts: List[Dict[str, Any]]) -> bool:
    return bool(parts) and all("functionResponse" in part for part in parts)


def _collapse_parts(parts: List[Dict[str, Any]]) -> Any:
    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    return parts
