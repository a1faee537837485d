"""OpenAI chat-completions transformer.

The canonical models already follow the chat-completions schema, so this
converter validates inbound payloads and dumps outbound ones without
reshaping them.
"""

from typing import Any, Dict, Optional

from src.models import CanonicalChunk, CanonicalRequest, CanonicalResponse
from src.transformers.base import Provider, ProviderTransformer


class OpenAIChatCompletionsTransformer(ProviderTransformer):
    provider = Provider.OPENAI

    def request_to_canonical(
        self, request: Dict[str, Any], model: Optional[str] = None
    ) -> CanonicalRequest:
        if isinstance(request, dict) and model and not request.get("model"):
            request = dict(request, model=model)
        return self._build(CanonicalRequest, request)

    def request_from_canonical(self, request: CanonicalRequest) -> Dict[str, Any]:
        return request.model_dump(mode="json", exclude_none=True)

    def response_to_canonical(self, response: Dict[str, Any]) -> CanonicalResponse:
        return self._build(CanonicalResponse, response)

    def response_from_canonical(self, response: CanonicalResponse) -> Dict[str, Any]:
        return response.model_dump(mode="json", exclude_none=True)

    def chunk_to_canonical(self, chunk: Dict[str, Any]) -> CanonicalChunk:
        return self._build(CanonicalChunk, chunk)
