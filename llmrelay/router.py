"""Routing: resolve a client model string to a concrete provider and model.

Model strings are either configured aliases, ``provider/model`` pairs, or
bare model names listed under exactly one configured provider.
"""

from dataclasses import dataclass
from typing import Optional

from llmrelay.config import GatewayConfig, ProviderConfig
from llmrelay.errors import GatewayError
from llmrelay.providers import BUILTIN_PROVIDERS


@dataclass
class RouteResult:
    """Resolved route for a model string."""

    provider: str
    model: str
    config: Optional[ProviderConfig] = None


class RoutingError(GatewayError):
    """Raised when a model string cannot be resolved."""

    status = 400

    def __init__(self, alias: str, reason: str) -> None:
        self.alias = alias
        self.reason = reason
        super().__init__("Routing error for model '{}': {}".format(alias, reason))


def _known(config: GatewayConfig, provider: str) -> bool:
    return provider in config.providers or provider in BUILTIN_PROVIDERS


def resolve_route(config: GatewayConfig, alias: str) -> RouteResult:
    """Resolve a model string to a provider and concrete model.

    Args:
        config: The loaded relay configuration.
        alias: The client-supplied model (e.g. "default-chat" or
            "anthropic/claude-sonnet-4").

    Returns:
        A RouteResult with the provider name, model and provider config.

    Raises:
        RoutingError: If the model is empty, unknown, or maps to an unknown
            provider.
    """
    if not alias:
        raise RoutingError(alias, "Missing model")

    mapping = config.aliases.get(alias)
    if mapping is not None:
        if not _known(config, mapping.provider):
            raise RoutingError(
                alias,
                "Alias maps to provider '{}' which is not configured.".format(
                    mapping.provider
                ),
            )
        return RouteResult(
            provider=mapping.provider,
            model=mapping.model,
            config=config.providers.get(mapping.provider),
        )

    provider, sep, model = alias.partition("/")
    if sep and model and _known(config, provider):
        return RouteResult(
            provider=provider, model=model, config=config.providers.get(provider)
        )

    owners = [
        prov
        for prov in config.providers.values()
        if alias == prov.default_model or alias in prov.models
    ]
    if len(owners) == 1:
        return RouteResult(provider=owners[0].name, model=alias, config=owners[0])

    available = ", ".join(sorted(config.aliases.keys())) or "(none)"
    raise RoutingError(
        alias,
        "Unknown model. Use provider/model or one of the aliases: {}".format(
            available
        ),
    )
