"""Shared test fixtures for the LLM relay tests."""

import json
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional

import pytest
from tenacity import wait_none

from llmrelay import refresh as refresh_module
from llmrelay import translator as translator_module
from llmrelay.config import GatewayConfig, load_config


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "providers": {
            "test-provider": {
                "base_url": "https://api.example.com/v1",
                "api_key_env": "TEST_API_KEY",
                "default_model": "test-model",
            },
            "anthropic": {
                "api_key_env": "TEST_ANTHROPIC_KEY",
                "default_model": "claude-test",
            },
        },
        "aliases": {
            "default-chat": {
                "provider": "test-provider",
                "model": "test-model",
            },
            "claude-chat": {
                "provider": "anthropic",
                "model": "claude-test",
            },
        },
        "bypass": {
            "models": ["relay-healthcheck"],
            "texts": ["Warmup"],
            "reply": "OK",
        },
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., GatewayConfig]:
    """Return a factory that loads the test config with overrides applied."""

    def factory(overrides: Optional[Dict] = None) -> GatewayConfig:
        return load_config(_make_config(tmp_path, overrides))

    return factory


@pytest.fixture(autouse=True)
def _fresh_registry() -> Iterator[None]:
    """Give every test its own translator registry."""
    translator_module.reset_registry()
    yield
    translator_module.reset_registry()


@pytest.fixture(autouse=True)
def _no_refresh_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    """Retry credential refreshes without sleeping."""
    monkeypatch.setattr(refresh_module, "REFRESH_WAIT", wait_none())
