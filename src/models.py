"""Canonical chat-completion models for the trusted-context gateway.

Every provider format is converted to and from these models. The shape
follows the OpenAI chat-completions schema, which doubles as the internal
"common" format for policy evaluation and dual-LLM analysis.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Role = Literal["system", "developer", "user", "assistant", "tool", "function"]

FinishReason = Literal["stop", "length", "tool_calls", "content_filter", "function_call"]

FINISH_REASONS = ("stop", "length", "tool_calls", "content_filter", "function_call")


def normalize_finish_reason(value: Any) -> str:
    """Coerce any inbound finish reason into the canonical vocabulary."""
    if value in FINISH_REASONS:
        return value
    return "stop"


# --- Content parts ---


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str
    detail: Optional[Literal["auto", "low", "high"]] = None


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


class InputAudio(BaseModel):
    data: str
    format: Literal["wav", "mp3"]


class AudioPart(BaseModel):
    type: Literal["input_audio"] = "input_audio"
    input_audio: InputAudio


class FileData(BaseModel):
    file_data: Optional[str] = None
    file_id: Optional[str] = None
    filename: Optional[str] = None


class FilePart(BaseModel):
    type: Literal["file"] = "file"
    file: FileData


class RefusalPart(BaseModel):
    type: Literal["refusal"] = "refusal"
    refusal: str


ContentPart = Annotated[
    Union[TextPart, ImagePart, AudioPart, FilePart, RefusalPart],
    Field(discriminator="type"),
]

Content = Union[str, List[ContentPart]]


# --- Tool calls and tool definitions ---


class FunctionCall(BaseModel):
    name: str
    arguments: str


class FunctionToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class CustomCall(BaseModel):
    name: str
    input: str


class CustomToolCall(BaseModel):
    id: str
    type: Literal["custom"] = "custom"
    custom: CustomCall


ToolCall = Annotated[
    Union[FunctionToolCall, CustomToolCall], Field(discriminator="type")
]


def tool_call_name(tool_call: Union[FunctionToolCall, CustomToolCall]) -> str:
    """Return the tool name regardless of the call flavour."""
    if isinstance(tool_call, FunctionToolCall):
        return tool_call.function.name
    return tool_call.custom.name


class FunctionDefinition(BaseModel):
    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    strict: Optional[bool] = None


class ToolDefinition(BaseModel):
    """A tool the model may call. Only function tools are converted across providers."""

    model_config = ConfigDict(extra="allow")

    type: Literal["function", "custom"] = "function"
    function: Optional[FunctionDefinition] = None


# --- Messages ---


class CanonicalMessage(BaseModel):
    """A single role-tagged conversation turn."""

    model_config = ConfigDict(extra="allow")

    role: Role
    content: Optional[Content] = None
    name: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    refusal: Optional[str] = None

    @model_validator(mode="after")
    def _tool_messages_reference_a_call(self) -> "CanonicalMessage":
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")
        return self

    def text(self) -> str:
        """Return the message content as a single string."""
        return content_as_text(self.content)


def content_as_text(content: Optional[Content]) -> str:
    """Flatten message content into a string.

    Text-only part lists are concatenated; anything multimodal is
    serialized as JSON so no part is silently dropped.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if all(isinstance(part, TextPart) for part in content):
        return "".join(part.text for part in content)
    return json.dumps(
        [part.model_dump(exclude_none=True) for part in content],
        separators=(",", ":"),
    )


def parse_tool_result(content: Optional[Content]) -> Any:
    """Parse tool-message content as JSON, falling back to the raw text."""
    text = content_as_text(content)
    try:
        return json.loads(text)
    except ValueError:
        return text


# --- Request ---


class CanonicalRequest(BaseModel):
    """Provider-agnostic chat request envelope."""

    model_config = ConfigDict(extra="allow")

    model: str
    messages: List[CanonicalMessage]
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    parallel_tool_calls: Optional[bool] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    n: Optional[int] = None
    max_tokens: Optional[int] = None
    max_completion_tokens: Optional[int] = None
    stop: Optional[Union[str, List[str]]] = None
    stream: Optional[bool] = None
    response_format: Optional[Dict[str, Any]] = None

    @property
    def token_limit(self) -> Optional[int]:
        """The effective output token limit, whichever field carries it."""
        if self.max_completion_tokens is not None:
            return self.max_completion_tokens
        return self.max_tokens


# --- Response ---


class Usage(BaseModel):
    """Token usage information returned by the provider."""

    model_config = ConfigDict(extra="allow")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Choice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    message: CanonicalMessage
    finish_reason: FinishReason = "stop"

    @field_validator("finish_reason", mode="before")
    @classmethod
    def _close_vocabulary(cls, value: Any) -> str:
        return normalize_finish_reason(value)


class CanonicalResponse(BaseModel):
    """Provider-agnostic chat completion response envelope."""

    model_config = ConfigDict(extra="allow")

    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: List[Choice]
    usage: Optional[Usage] = None


# --- Streaming chunk ---


class ChunkFunctionCall(BaseModel):
    name: Optional[str] = None
    arguments: Optional[str] = None


class ChunkToolCall(BaseModel):
    index: int
    id: Optional[str] = None
    type: Optional[Literal["function"]] = None
    function: Optional[ChunkFunctionCall] = None


class ChunkDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Optional[Role] = None
    content: Optional[str] = None
    tool_calls: Optional[List[ChunkToolCall]] = None
    refusal: Optional[str] = None


class ChunkChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    delta: ChunkDelta
    finish_reason: Optional[FinishReason] = None

    @field_validator("finish_reason", mode="before")
    @classmethod
    def _close_vocabulary(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return normalize_finish_reason(value)


class CanonicalChunk(BaseModel):
    """A single streaming chunk in canonical form."""

    model_config = ConfigDict(extra="allow")

    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: List[ChunkChoice] = Field(default_factory=list)
    usage: Optional[Usage] = None


# --- HTTP envelopes ---


class ErrorDetail(BaseModel):
    """Structured error detail."""

    type: str
    message: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
