"""In-process credential store and provider health tracking.

The store owns one ``Credentials`` object per provider, built from the
environment variables named in the config, and is the receiving end of the
orchestrator's callbacks.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from llmrelay.config import GatewayConfig
from llmrelay.core import ChatCallbacks
from llmrelay.models import CredentialUpdate, Credentials

logger = logging.getLogger("gateway")


@dataclass
class ProviderHealth:
    """Error state the caller tracks per provider."""

    failures: int = 0
    last_status: Optional[int] = None
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    refreshed_at: Optional[float] = None


class CredentialStore:
    """Credentials and health for every provider the relay talks to."""

    def __init__(self, config: GatewayConfig) -> None:
        self._config = config
        self._credentials: Dict[str, Credentials] = {}
        self.health: Dict[str, ProviderHealth] = {}

    def get(self, provider: str) -> Credentials:
        """Return the provider's credentials, loading them on first use."""
        if provider not in self._credentials:
            prov = self._config.providers.get(provider)
            credentials = Credentials()
            if prov is not None:
                credentials = Credentials(
                    api_key=prov.api_key,
                    access_token=prov.access_token,
                    refresh_token=prov.refresh_token,
                )
                if prov.project_id:
                    credentials.provider_specific_data["projectId"] = prov.project_id
            self._credentials[provider] = credentials
        return self._credentials[provider]

    def _health(self, provider: str) -> ProviderHealth:
        return self.health.setdefault(provider, ProviderHealth())

    def update(self, provider: str, update: CredentialUpdate) -> None:
        self.get(provider).apply(update)
        self._health(provider).refreshed_at = time.time()
        logger.info("Stored refreshed credentials for %s", provider)

    def mark_success(self, provider: str) -> None:
        health = self._health(provider)
        health.failures = 0
        health.last_status = None
        health.last_error = None
        health.last_success = time.time()

    def mark_failure(self, provider: str, status: Optional[int], error: Optional[str]) -> None:
        health = self._health(provider)
        health.failures += 1
        health.last_status = status
        health.last_error = error

    def callbacks(self, provider: str, model: str) -> ChatCallbacks:
        """Callbacks wiring one request's notifications into this store."""

        def on_disconnect(reason: str) -> None:
            logger.info("Client disconnected from %s/%s: %s", provider, model, reason)

        return ChatCallbacks(
            on_credentials_refreshed=lambda update: self.update(provider, update),
            on_request_success=lambda: self.mark_success(provider),
            on_disconnect=on_disconnect,
        )
