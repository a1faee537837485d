"""Outbound HTTP calls to the upstream LLM providers.

Builds the provider-specific endpoint URL and auth headers, and performs
the single POST shared by the proxy routes and the quarantine inference
client. Failures are raised as ``InferenceError`` carrying the status the
gateway should answer with.
"""

from typing import Any, Dict, Optional, Tuple

import httpx

from src.config import ProviderConfig
from src.transformers.base import Provider

ANTHROPIC_VERSION = "2023-06-01"


class InferenceError(Exception):
    """Raised when an upstream model call fails."""

    def __init__(self, detail: str, status_code: int = 502) -> None:
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)


def build_upstream_request(
    provider: Provider,
    upstream: ProviderConfig,
    model: str,
    api_key: str,
) -> Tuple[str, Dict[str, str]]:
    """Return the endpoint URL and headers for one upstream call."""
    base_url = upstream.base_url.rstrip("/")
    headers = {"Content-Type": "application/json"}

    if provider == Provider.OPENAI:
        url = "{}/chat/completions".format(base_url)
        headers["Authorization"] = "Bearer {}".format(api_key)
    elif provider == Provider.ANTHROPIC:
        url = "{}/messages".format(base_url)
        headers["x-api-key"] = api_key
        headers["anthropic-version"] = ANTHROPIC_VERSION
    else:
        url = "{}/models/{}:generateContent".format(base_url, model)
        headers["x-goog-api-key"] = api_key
    return url, headers


def _upstream_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.text[:200]


async def post_upstream(
    provider: Provider,
    upstream: ProviderConfig,
    model: str,
    api_key: str,
    body: Dict[str, Any],
    timeout: float = 60.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """POST a provider-format body upstream and return the decoded JSON response.

    Args:
        provider: Which provider format ``body`` is in.
        upstream: The provider's configuration (base URL).
        model: The model name (part of the URL for Gemini).
        api_key: The key to authenticate with.
        body: The provider-format request body.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (used by tests).

    Returns:
        The provider-format response body.

    Raises:
        InferenceError: On a non-2xx status, a transport failure or a
            response that is not a JSON object.
    """
    url, headers = build_upstream_request(provider, upstream, model, api_key)

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.post(url, json=body, headers=headers)
            resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise InferenceError(
            "Provider returned HTTP {}: {}".format(
                exc.response.status_code, _upstream_message(exc.response)
            ),
            status_code=exc.response.status_code,
        ) from exc
    except httpx.TimeoutException as exc:
        raise InferenceError("Provider request timed out", status_code=504) from exc
    except httpx.RequestError as exc:
        raise InferenceError("Failed to reach provider: {}".format(exc), status_code=502) from exc

    try:
        data = resp.json()
    except ValueError as exc:
        raise InferenceError("Provider returned a non-JSON response", status_code=502) from exc
    if not isinstance(data, dict):
        raise InferenceError("Provider returned an unexpected response", status_code=502)
    return data
