"""Credential refresh after an upstream 401/403.

Each OAuth-backed provider has a ``Refresher``. Refreshers return a
``CredentialUpdate`` holding only the fields they actually obtained, so
applying one never downgrades the caller's credentials.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from llmrelay.disconnect import StreamController
from llmrelay.errors import RefreshError
from llmrelay.models import CredentialUpdate, Credentials

logger = logging.getLogger("gateway")

REFRESH_ATTEMPTS = 3
REFRESH_WAIT = wait_exponential(multiplier=0.5, min=0.5, max=4)

GITHUB_CLIENT_ID = "Iv1.b507a08c87ecfe98"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
COPILOT_TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"
COPILOT_USER_AGENT = "GitHubCopilotChat/0.26.7"


def _expires_at(seconds: Any) -> Optional[str]:
    if not seconds:
        return None
    expiry = datetime.now(timezone.utc) + timedelta(seconds=int(seconds))
    return expiry.isoformat()


def _json_object(response: httpx.Response, source: str) -> Dict[str, Any]:
    """Decode a token endpoint reply, which must be a JSON object."""
    try:
        payload = response.json()
    except ValueError as exc:
        raise RefreshError("{} returned invalid JSON: {}".format(source, exc)) from exc
    if not isinstance(payload, dict):
        raise RefreshError(
            "{} returned {} instead of an object".format(source, type(payload).__name__)
        )
    return payload


class Refresher:
    """Refreshes one provider's credentials."""

    name = "generic"
    attempts = REFRESH_ATTEMPTS

    def can_refresh(self, credentials: Credentials) -> bool:
        return bool(credentials.refresh_token)

    async def refresh(
        self, client: httpx.AsyncClient, credentials: Credentials
    ) -> CredentialUpdate:
        raise NotImplementedError


class OAuthRefresher(Refresher):
    """Standard ``grant_type=refresh_token`` exchange against a token URL."""

    def __init__(
        self,
        name: str,
        token_url: str,
        client_id: str,
        client_secret: Optional[str] = None,
        use_json: bool = False,
        basic_auth: bool = False,
    ) -> None:
        self.name = name
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.use_json = use_json
        self.basic_auth = basic_auth

    async def refresh(
        self, client: httpx.AsyncClient, credentials: Credentials
    ) -> CredentialUpdate:
        """Exchange the refresh token for a new access token.

        Raises:
            RefreshError: If the token endpoint rejects the exchange.
            httpx.HTTPError: If the token endpoint cannot be reached.
        """
        if not credentials.refresh_token:
            raise RefreshError("No refresh token for {}".format(self.name))
        data: Dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": credentials.refresh_token,
            "client_id": self.client_id,
        }
        auth = None
        if self.client_secret and self.basic_auth:
            auth = httpx.BasicAuth(self.client_id, self.client_secret)
        elif self.client_secret:
            data["client_secret"] = self.client_secret

        headers = {"Accept": "application/json"}
        if self.use_json:
            response = await client.post(self.token_url, json=data, headers=headers)
        elif auth is not None:
            response = await client.post(self.token_url, data=data, headers=headers, auth=auth)
        else:
            response = await client.post(self.token_url, data=data, headers=headers)

        if response.status_code >= 400:
            raise RefreshError(
                "{} token refresh failed: [{}]".format(self.name, response.status_code),
                status=response.status_code,
            )
        return self.to_update(_json_object(response, "{} token endpoint".format(self.name)))

    @staticmethod
    def to_update(payload: Dict[str, Any]) -> CredentialUpdate:
        update = CredentialUpdate(
            access_token=payload.get("access_token"),
            refresh_token=payload.get("refresh_token"),
            api_key=payload.get("api_key") or payload.get("apiKey"),
        )
        expires_at = _expires_at(payload.get("expires_in"))
        if expires_at:
            update.provider_specific_data["expiresAt"] = expires_at
        if payload.get("resource_url"):
            update.provider_specific_data["resourceUrl"] = payload["resource_url"]
        return update


class GitHubCopilotRefresher(Refresher):
    """Two-step refresh for GitHub Copilot.

    Copilot requests use a short-lived token derived from the GitHub access
    token. The derived token is refreshed first; only when that fails is the
    GitHub token itself refreshed and the derivation retried with it.
    """

    name = "github"
    attempts = 1

    def can_refresh(self, credentials: Credentials) -> bool:
        return bool(credentials.access_token or credentials.refresh_token)

    async def refresh(
        self, client: httpx.AsyncClient, credentials: Credentials
    ) -> CredentialUpdate:
        update = CredentialUpdate()
        token = None
        if credentials.access_token:
            token = await self._copilot_token(client, credentials.access_token)
        if token is None and credentials.refresh_token:
            github = await self._github_token(client, credentials.refresh_token)
            update.access_token = github.get("access_token")
            update.refresh_token = github.get("refresh_token")
            if update.access_token:
                token = await self._copilot_token(client, update.access_token)
        if token is None and not update.is_empty():
            # GitHub refresh tokens are single-use; the rotated pair must reach the caller.
            logger.warning("Copilot token derivation failed after GitHub token refresh")
            return update
        if token is None:
            raise RefreshError("GitHub Copilot token refresh failed")
        update.provider_specific_data = {
            "copilotToken": token["token"],
            "copilotTokenExpiresAt": token.get("expires_at"),
        }
        return update

    async def _copilot_token(
        self, client: httpx.AsyncClient, access_token: str
    ) -> Optional[Dict[str, Any]]:
        headers = {
            "Authorization": "token {}".format(access_token),
            "Accept": "application/json",
            "User-Agent": COPILOT_USER_AGENT,
        }
        try:
            response = await client.get(COPILOT_TOKEN_URL, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Copilot token request failed: %s", exc)
            return None
        if response.status_code >= 400:
            logger.warning("Copilot token request rejected: [%s]", response.status_code)
            return None
        try:
            payload = _json_object(response, "Copilot token endpoint")
        except RefreshError as exc:
            logger.warning("%s", exc.detail)
            return None
        return payload if payload.get("token") else None

    async def _github_token(
        self, client: httpx.AsyncClient, refresh_token: str
    ) -> Dict[str, Any]:
        data = {
            "client_id": GITHUB_CLIENT_ID,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        response = await client.post(
            GITHUB_TOKEN_URL, data=data, headers={"Accept": "application/json"}
        )
        if response.status_code >= 400:
            raise RefreshError(
                "GitHub token refresh failed: [{}]".format(response.status_code),
                status=response.status_code,
            )
        payload = _json_object(response, "GitHub token endpoint")
        if payload.get("error"):
            raise RefreshError("GitHub token refresh failed: {}".format(payload["error"]))
        return payload


def _codex(name: str) -> OAuthRefresher:
    return OAuthRefresher(
        name, "https://auth.openai.com/oauth/token", "app_EMoamEEZ73f0CkXaXp7hrann"
    )


def build_refreshers() -> Dict[str, Refresher]:
    """Create the refresher for every OAuth-backed provider."""
    return {
        "claude": OAuthRefresher(
            "claude",
            "https://console.anthropic.com/v1/oauth/token",
            "9d1c250a-e61b-44d9-88ed-5944d1962f5e",
            use_json=True,
        ),
        "codex": _codex("codex"),
        "openai": _codex("openai"),
        "gemini-cli": OAuthRefresher(
            "gemini-cli",
            "https://oauth2.googleapis.com/token",
            os.getenv(
                "GEMINI_CLIENT_ID",
                "681255809395-oo8ft2oprdrnp9e3aqf6av3hmdib135j.apps.googleusercontent.com",
            ),
            client_secret=os.getenv("GEMINI_CLIENT_SECRET"),
        ),
        "qwen": OAuthRefresher(
            "qwen",
            "https://chat.qwen.ai/api/v1/oauth2/token",
            "f0304373b74a44d2b584a3fb70ca9e56",
        ),
        "iflow": OAuthRefresher(
            "iflow",
            "https://iflow.cn/oauth/token",
            os.getenv("IFLOW_CLIENT_ID", "10009311001"),
            client_secret=os.getenv("IFLOW_CLIENT_SECRET"),
            basic_auth=True,
        ),
        "github": GitHubCopilotRefresher(),
    }


def get_refresher(provider: str) -> Optional[Refresher]:
    return build_refreshers().get(provider)


async def refresh_with_retry(
    refresher: Refresher,
    client: httpx.AsyncClient,
    credentials: Credentials,
    controller: Optional[StreamController] = None,
) -> Optional[CredentialUpdate]:
    """Run a refresher with bounded retry.

    Args:
        refresher: The provider's refresher.
        client: HTTP client for token endpoints.
        credentials: Current credentials. Not modified.
        controller: Abort signal shared with the upstream request.

    Returns:
        The update on success, or None when the refresh failed or obtained
        nothing.

    Raises:
        ClientAbort: If the client disconnects during the refresh.
    """
    if not refresher.can_refresh(credentials):
        logger.warning("No refreshable credentials for %s", refresher.name)
        return None

    retryer = AsyncRetrying(
        stop=stop_after_attempt(refresher.attempts),
        wait=REFRESH_WAIT,
        retry=retry_if_exception_type((RefreshError, httpx.HTTPError)),
        reraise=True,
    )
    try:
        async for attempt in retryer:
            with attempt:
                call = refresher.refresh(client, credentials)
                if controller is not None:
                    update = await controller.guard(call)
                else:
                    update = await call
    except (RefreshError, httpx.HTTPError) as exc:
        logger.warning("%s credential refresh failed: %s", refresher.name, exc)
        return None

    if update.is_empty():
        return None
    logger.info("%s credentials refreshed", refresher.name)
    return update


async def refresh_credentials(
    provider: str,
    client: httpx.AsyncClient,
    credentials: Credentials,
    controller: Optional[StreamController] = None,
) -> Optional[CredentialUpdate]:
    """Refresh a provider's credentials, or return None if it has no refresher."""
    refresher = get_refresher(provider)
    if refresher is None:
        logger.info("Provider %s has no credential refresh", provider)
        return None
    return await refresh_with_retry(refresher, client, credentials, controller)
