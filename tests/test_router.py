"""Tests for the model router."""

import pytest

from llmrelay.config import GatewayConfig
from llmrelay.router import RoutingError, resolve_route


def test_resolve_known_alias(test_config: GatewayConfig) -> None:
    """A known alias resolves to the correct provider and model."""
    result = resolve_route(test_config, "default-chat")
    assert result.provider == "test-provider"
    assert result.model == "test-model"
    assert result.config is test_config.providers["test-provider"]


def test_resolve_provider_slash_model(test_config: GatewayConfig) -> None:
    """``provider/model`` routes to built-in providers even when unconfigured."""
    result = resolve_route(test_config, "openrouter/meta-llama/llama-3-70b")
    assert result.provider == "openrouter"
    assert result.model == "meta-llama/llama-3-70b"
    assert result.config is None


def test_resolve_bare_default_model(test_config: GatewayConfig) -> None:
    """A bare model listed under one provider routes there."""
    result = resolve_route(test_config, "claude-test")
    assert result.provider == "anthropic"
    assert result.model == "claude-test"


def test_resolve_unknown_alias(test_config: GatewayConfig) -> None:
    """An unknown model raises RoutingError with a helpful message."""
    with pytest.raises(RoutingError, match="Unknown model") as exc_info:
        resolve_route(test_config, "nonexistent-alias")
    assert exc_info.value.status == 400
    assert "default-chat" in exc_info.value.detail


def test_resolve_empty_model(test_config: GatewayConfig) -> None:
    """A missing model is a routing error."""
    with pytest.raises(RoutingError, match="Missing model"):
        resolve_route(test_config, "")


def test_alias_to_unknown_provider(test_config: GatewayConfig) -> None:
    """An alias pointing at an unknown provider is rejected."""
    test_config.aliases["broken"] = type(test_config.aliases["default-chat"])(
        alias="broken", provider="nowhere", model="m"
    )
    with pytest.raises(RoutingError, match="not configured"):
        resolve_route(test_config, "broken")
