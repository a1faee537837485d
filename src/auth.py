"""Upstream API key resolution for the trusted-context gateway.

Clients send their provider key the same way they would send it to the
provider directly. The gateway forwards that key upstream and uses it for
quarantine calls. When the client sends none, the key configured for the
upstream (via its environment variable) is used instead.
"""

from typing import Mapping, Optional

from src.transformers.base import Provider


class AuthenticationError(Exception):
    """Raised when no upstream API key can be determined."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


_KEY_HEADERS = {
    Provider.OPENAI: "authorization",
    Provider.ANTHROPIC: "x-api-key",
    Provider.GEMINI: "x-goog-api-key",
}


def _bearer_token(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def extract_api_key(
    provider: Provider,
    headers: Mapping[str, str],
    query_key: Optional[str] = None,
) -> Optional[str]:
    """Return the API key a client sent for ``provider``, if any.

    Args:
        provider: The provider format of the inbound request.
        headers: Request headers (lower-case lookups must work).
        query_key: The ``key`` query parameter, which Gemini clients may use.

    Returns:
        The key, or None if the client did not send one.
    """
    header_value = headers.get(_KEY_HEADERS[provider])
    if provider == Provider.OPENAI:
        return _bearer_token(header_value)
    if header_value:
        return header_value.strip()
    if provider == Provider.GEMINI and query_key:
        return query_key
    # Anthropic and Gemini SDKs can also be pointed at a bearer-auth proxy
    return _bearer_token(headers.get("authorization"))


def resolve_api_key(
    provider: Provider,
    headers: Mapping[str, str],
    fallback: Optional[str] = None,
    query_key: Optional[str] = None,
) -> str:
    """Resolve the upstream API key for a request.

    Args:
        provider: The provider format of the inbound request.
        headers: Request headers.
        fallback: The key configured for the upstream, if any.
        query_key: The ``key`` query parameter, if present.

    Returns:
        The API key to use upstream.

    Raises:
        AuthenticationError: If neither the client nor the config supplies a key.
    """
    api_key = extract_api_key(provider, headers, query_key) or fallback
    if not api_key:
        raise AuthenticationError(
            "Missing API key. Provide the {} header or configure the upstream key.".format(
                _KEY_HEADERS[provider]
            )
        )
    return api_key
