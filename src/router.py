"""Routing: resolve a provider tag to its configured upstream.

The route layer knows which provider an inbound request speaks from the
URL. The router looks that provider up in the gateway configuration and
returns the upstream to forward to, along with the transformer that
speaks its format.
"""

from dataclasses import dataclass

from src.config import GatewayConfig, ProviderConfig
from src.transformers.base import Provider, ProviderTransformer
from src.transformers.registry import get_transformer


@dataclass
class RouteResult:
    """Resolved upstream for a provider."""

    provider: Provider
    upstream: ProviderConfig
    transformer: ProviderTransformer


class RoutingError(Exception):
    """Raised when a provider has no configured upstream."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__("Routing error for provider '{}': {}".format(provider, reason))


def resolve_upstream(config: GatewayConfig, provider: Provider) -> RouteResult:
    """Resolve a provider tag to its upstream configuration.

    Args:
        config: The loaded gateway configuration.
        provider: The provider the inbound request is formatted for.

    Returns:
        A RouteResult with the upstream config and transformer.

    Raises:
        RoutingError: If the provider is not configured.
    """
    upstream = config.providers.get(provider.short_name)
    if upstream is None:
        available = ", ".join(sorted(config.providers.keys())) or "(none)"
        raise RoutingError(
            provider.short_name,
            "Provider is not configured. Configured providers: {}".format(available),
        )

    return RouteResult(
        provider=provider,
        upstream=upstream,
        transformer=get_transformer(provider),
    )
