"""Lookup of the transformer for a provider discriminator."""

from typing import Dict, Union

from src.transformers.anthropic import AnthropicMessagesTransformer
from src.transformers.base import FormatError, Provider, ProviderTransformer
from src.transformers.gemini import GeminiGenerateContentTransformer
from src.transformers.openai import OpenAIChatCompletionsTransformer

_TRANSFORMERS: Dict[Provider, ProviderTransformer] = {
    Provider.OPENAI: OpenAIChatCompletionsTransformer(),
    Provider.ANTHROPIC: AnthropicMessagesTransformer(),
    Provider.GEMINI: GeminiGenerateContentTransformer(),
}


def get_transformer(provider: Union[Provider, str]) -> ProviderTransformer:
    """Return the transformer for ``provider``.

    Accepts the enum, the full discriminator (``gemini:generateContent``)
    or the short name (``gemini``).
    """
    if isinstance(provider, Provider):
        return _TRANSFORMERS[provider]
    for candidate in Provider:
        if provider in (candidate.value, candidate.short_name):
            return _TRANSFORMERS[candidate]
    raise FormatError(str(provider), "unknown provider")
