"""Provider transformer interface.

Transformers convert between a provider-specific wire format and the
canonical chat-completions models in ``src.models``. The canonical format
is what policy evaluation and dual-LLM analysis operate on.

Conversions are pure: no network calls, no persistence. Malformed or
unsupported payloads raise ``FormatError`` and nothing is partially
converted.
"""

import base64
import binascii
import hashlib
import json
import time
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from src.models import CanonicalChunk, CanonicalRequest, CanonicalResponse


ModelT = TypeVar("ModelT", bound=BaseModel)


class Provider(str, Enum):
    """Supported provider discriminators."""

    OPENAI = "openai:chatCompletions"
    ANTHROPIC = "anthropic:messages"
    GEMINI = "gemini:generateContent"

    @property
    def short_name(self) -> str:
        """The provider name without the endpoint suffix (e.g. ``gemini``)."""
        return self.value.split(":", 1)[0]


class FormatError(Exception):
    """Raised when a provider payload cannot be converted."""

    def __init__(self, provider: str, detail: str) -> None:
        self.provider = provider
        self.detail = detail
        super().__init__("Invalid {} payload: {}".format(provider, detail))


class ProviderTransformer(ABC):
    """Bidirectional converter between one provider format and canonical form."""

    provider: Provider

    @abstractmethod
    def request_to_canonical(
        self, request: Dict[str, Any], model: Optional[str] = None
    ) -> CanonicalRequest:
        """Convert a provider request body to a canonical request.

        ``model`` supplies the model name for providers that carry it
        outside the body (Gemini puts it in the URL).
        """

    @abstractmethod
    def request_from_canonical(self, request: CanonicalRequest) -> Dict[str, Any]:
        """Convert a canonical request to a provider request body."""

    @abstractmethod
    def response_to_canonical(self, response: Dict[str, Any]) -> CanonicalResponse:
        """Convert a provider response body to a canonical response."""

    @abstractmethod
    def response_from_canonical(self, response: CanonicalResponse) -> Dict[str, Any]:
        """Convert a canonical response to a provider response body."""

    def chunk_to_canonical(self, chunk: Dict[str, Any]) -> CanonicalChunk:
        """Convert a provider streaming chunk to a canonical chunk."""
        raise FormatError(self.provider.value, "streaming chunks are not supported")

    def _fail(self, detail: str) -> FormatError:
        return FormatError(self.provider.value, detail)

    def _build(self, model_cls: Type[ModelT], payload: Any) -> ModelT:
        """Validate `payload` into a canonical model, mapping failures to FormatError."""
        if not isinstance(payload, dict):
            raise self._fail("payload must be a JSON object")
        try:
            return model_cls.model_validate(payload)
        except ValidationError as exc:
            raise self._fail(summarize_validation_error(exc)) from exc

    def _require(self, payload: Dict[str, Any], key: str, where: str) -> Any:
        """Return ``payload[key]`` or raise FormatError naming the missing field."""
        if not isinstance(payload, dict):
            raise self._fail("{} must be an object".format(where))
        if payload.get(key) is None:
            raise self._fail("missing required field '{}' in {}".format(key, where))
        return payload[key]


def completion_id() -> str:
    """A fresh chat-completion id for responses that carry none."""
    return "chatcmpl-{}".format(uuid.uuid4().hex[:29])


def derive_tool_call_id(prefix: str, *components: Any) -> str:
    """A stable tool-call id for calls whose source format has no id.

    The same components always give the same id, so a resent conversation
    maps to the ids it had on earlier turns.
    """
    digest = hashlib.sha256(json.dumps(components, sort_keys=True).encode("utf-8"))
    return "{}{}".format(prefix, digest.hexdigest()[:24])


def now_timestamp() -> int:
    return int(time.time())


def parse_data_url(url: str) -> Optional[Tuple[str, str]]:
    """Split ``data:<mime>;base64,<data>`` into ``(mime, data)``.

    Returns None for anything that is not a base64 data URL.
    """
    if not url.startswith("data:"):
        return None
    header, sep, data = url[5:].partition(",")
    if not sep or not header.endswith(";base64"):
        return None
    mime_type = header[: -len(";base64")] or "application/octet-stream"
    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return None
    return mime_type, data


def to_data_url(mime_type: str, data: str) -> str:
    return "data:{};base64,{}".format(mime_type, data)


def summarize_validation_error(exc: ValidationError) -> str:
    """One clause per error, e.g. ``messages.0.role: Input should be ...``."""
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append("{}: {}".format(location or "(root)", error.get("msg", "invalid")))
    return "; ".join(parts)
