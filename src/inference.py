"""Model inference client used by the dual-LLM quarantine.

Sends a canonical conversation to an upstream provider through that
provider's transformer and returns the first choice's text, plus the
structured output when a JSON schema was requested.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from src.config import ProviderConfig
from src.models import CanonicalMessage, CanonicalRequest, FunctionToolCall, Usage
from src.transformers.base import FormatError, Provider
from src.transformers.registry import get_transformer
from src.upstream import InferenceError, post_upstream

__all__ = ["CompletionClient", "CompletionResult", "InferenceClient", "InferenceError"]


@dataclass
class CompletionResult:
    """Outcome of one completion call."""

    content: str
    structured_output: Optional[Dict[str, Any]] = None
    usage: Optional[Usage] = None


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        temperature: float = 0.0,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> CompletionResult:
        ...


class InferenceClient:
    """Completion client for one provider and API key."""

    def __init__(
        self,
        provider: Provider,
        upstream: ProviderConfig,
        api_key: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._provider = provider
        self._upstream = upstream
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._transformer = get_transformer(provider)

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        temperature: float = 0.0,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> CompletionResult:
        """Run one completion.

        Args:
            messages: Canonical messages as ``{"role", "content"}`` dicts.
            model: The upstream model name.
            temperature: Sampling temperature.
            response_format: Optional canonical ``response_format``.

        Returns:
            The completion text and, when requested, the structured output.

        Raises:
            InferenceError: If the upstream call fails or its response
                cannot be interpreted.
        """
        request = CanonicalRequest(
            model=model,
            messages=[CanonicalMessage.model_validate(m) for m in messages],
            temperature=temperature,
            response_format=response_format,
        )
        try:
            body = self._transformer.request_from_canonical(request)
        except FormatError as exc:
            raise InferenceError("Cannot build provider request: {}".format(exc.detail)) from exc
        raw = await post_upstream(
            self._provider,
            self._upstream,
            model,
            self._api_key,
            body,
            timeout=self._timeout,
            transport=self._transport,
        )

        try:
            response = self._transformer.response_to_canonical(raw)
        except FormatError as exc:
            raise InferenceError("Provider returned an invalid response: {}".format(exc.detail)) from exc

        if not response.choices:
            raise InferenceError("Provider returned no choices")
        message = response.choices[0].message
        structured = None
        if response_format is not None:
            structured = _structured_output(message, response_format)
        return CompletionResult(
            content=message.text(),
            structured_output=structured,
            usage=response.usage,
        )


def _structured_output(
    message: CanonicalMessage, response_format: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    """Read JSON output from the forced tool call (Anthropic) or the message text."""
    schema_name = (response_format.get("json_schema") or {}).get("name")
    for tool_call in message.tool_calls or []:
        if isinstance(tool_call, FunctionToolCall) and tool_call.function.name == schema_name:
            return _load_object(tool_call.function.arguments)
    return _load_object(message.text())


def _load_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None
