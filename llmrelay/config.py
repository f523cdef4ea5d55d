"""Configuration loader for the LLM relay.

Reads a JSON config file containing provider definitions, model alias mappings,
per-model format overrides and bypass rules. Secrets are resolved from
environment variables named in the config.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Union

from llmrelay.formats import WireFormat


@dataclass
class ProviderConfig:
    """Configuration for a single upstream provider."""

    name: str
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    access_token_env: Optional[str] = None
    refresh_token_env: Optional[str] = None
    project_id_env: Optional[str] = None
    default_model: str = ""
    models: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    format: Optional[WireFormat] = None

    @staticmethod
    def _env(name: Optional[str]) -> Optional[str]:
        return os.getenv(name) if name else None

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return self._env(self.api_key_env)

    @property
    def access_token(self) -> Optional[str]:
        return self._env(self.access_token_env)

    @property
    def refresh_token(self) -> Optional[str]:
        return self._env(self.refresh_token_env)

    @property
    def project_id(self) -> Optional[str]:
        return self._env(self.project_id_env)


@dataclass
class ModelAlias:
    """Maps a user-facing alias to a specific provider and model."""

    alias: str
    provider: str
    model: str


@dataclass
class BypassConfig:
    """Requests answered locally without contacting any upstream."""

    models: List[str] = field(default_factory=list)
    texts: List[str] = field(default_factory=lambda: ["Warmup"])
    reply: str = "OK"


@dataclass
class GatewayConfig:
    """Top-level relay configuration."""

    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    aliases: Dict[str, ModelAlias] = field(default_factory=dict)
    # provider -> model -> target format
    model_formats: Dict[str, Dict[str, WireFormat]] = field(default_factory=dict)
    bypass: BypassConfig = field(default_factory=BypassConfig)
    strict_content_formats: FrozenSet[WireFormat] = frozenset()
    translate_json_responses: bool = False
    request_timeout: float = 600.0
    log_file: str = "logs/gateway.log"
    log_level: str = "INFO"
    request_log_dir: Optional[str] = None


def _provider(name: str, raw: Dict[str, Any]) -> ProviderConfig:
    fmt = raw.get("format")
    return ProviderConfig(
        name=name,
        base_url=raw.get("base_url"),
        api_key_env=raw.get("api_key_env"),
        access_token_env=raw.get("access_token_env"),
        refresh_token_env=raw.get("refresh_token_env"),
        project_id_env=raw.get("project_id_env"),
        default_model=raw.get("default_model", ""),
        models=list(raw.get("models", [])),
        headers=dict(raw.get("headers", {})),
        format=WireFormat(fmt) if fmt else None,
    )


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load relay configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data, including
            unknown wire format names.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    providers: Dict[str, ProviderConfig] = {}
    for name, prov in raw.get("providers", {}).items():
        providers[name] = _provider(name, prov)

    aliases: Dict[str, ModelAlias] = {}
    for alias, mapping in raw.get("aliases", {}).items():
        aliases[alias] = ModelAlias(
            alias=alias,
            provider=mapping["provider"],
            model=mapping["model"],
        )

    model_formats: Dict[str, Dict[str, WireFormat]] = {}
    for provider, models in raw.get("model_formats", {}).items():
        model_formats[provider] = {
            model: WireFormat(fmt) for model, fmt in models.items()
        }

    bypass_raw = raw.get("bypass", {})
    bypass = BypassConfig(
        models=list(bypass_raw.get("models", [])),
        texts=list(bypass_raw.get("texts", ["Warmup"])),
        reply=bypass_raw.get("reply", "OK"),
    )

    return GatewayConfig(
        providers=providers,
        aliases=aliases,
        model_formats=model_formats,
        bypass=bypass,
        strict_content_formats=frozenset(
            WireFormat(fmt) for fmt in raw.get("strict_content_formats", [])
        ),
        translate_json_responses=raw.get("translate_json_responses", False),
        request_timeout=float(raw.get("request_timeout", 600.0)),
        log_file=raw.get("log_file", "logs/gateway.log"),
        log_level=raw.get("log_level", "INFO"),
        request_log_dir=raw.get("request_log_dir"),
    )
