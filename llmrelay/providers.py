"""Provider routing: target format, upstream URL and upstream headers.

Every provider presents the same three calls to the orchestrator. The
per-model format table is consulted before the provider's default format.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from llmrelay.config import GatewayConfig
from llmrelay.errors import GatewayError
from llmrelay.formats import WireFormat, stream_media_type
from llmrelay.models import Credentials

ANTHROPIC_VERSION = "2023-06-01"
CLAUDE_OAUTH_BETA = "oauth-2025-04-20"
COPILOT_HEADERS = {
    "Copilot-Integration-Id": "vscode-chat",
    "Editor-Version": "vscode/1.85.0",
    "Editor-Plugin-Version": "copilot-chat/0.26.7",
    "User-Agent": "GitHubCopilotChat/0.26.7",
}


@dataclass
class ProviderSpec:
    """How to reach one provider.

    ``path`` may contain ``{model}`` and ``{method}`` placeholders; ``auth``
    selects how credentials become headers.
    """

    name: str
    format: WireFormat
    base_url: str
    path: str = "/chat/completions"
    auth: str = "bearer"
    headers: Dict[str, str] = field(default_factory=dict)


BUILTIN_PROVIDERS: Dict[str, ProviderSpec] = {
    spec.name: spec
    for spec in (
        ProviderSpec("openai", WireFormat.OPENAI_CHAT, "https://api.openai.com/v1"),
        ProviderSpec(
            "openrouter",
            WireFormat.OPENAI_CHAT,
            "https://openrouter.ai/api/v1",
            headers={"HTTP-Referer": "https://github.com/llmrelay", "X-Title": "llmrelay"},
        ),
        ProviderSpec(
            "anthropic",
            WireFormat.ANTHROPIC_MESSAGES,
            "https://api.anthropic.com/v1",
            path="/messages",
            auth="x-api-key",
        ),
        ProviderSpec(
            "claude",
            WireFormat.ANTHROPIC_MESSAGES,
            "https://api.anthropic.com/v1",
            path="/messages?beta=true",
            auth="claude-oauth",
        ),
        ProviderSpec(
            "gemini",
            WireFormat.GEMINI_GENERATE,
            "https://generativelanguage.googleapis.com/v1beta",
            path="/models/{model}:{method}",
            auth="goog-api-key",
        ),
        ProviderSpec(
            "gemini-cli",
            WireFormat.GEMINI_CLI,
            "https://cloudcode-pa.googleapis.com/v1internal",
            path=":{method}",
        ),
        ProviderSpec(
            "codex",
            WireFormat.OPENAI_RESPONSES,
            "https://chatgpt.com/backend-api/codex",
            path="/responses",
        ),
        ProviderSpec(
            "github",
            WireFormat.OPENAI_CHAT,
            "https://api.githubcopilot.com",
            auth="copilot",
            headers=COPILOT_HEADERS,
        ),
        ProviderSpec("qwen", WireFormat.OPENAI_CHAT, "https://portal.qwen.ai/v1"),
        ProviderSpec("iflow", WireFormat.OPENAI_CHAT, "https://apis.iflow.cn/v1"),
        ProviderSpec(
            "ollama",
            WireFormat.OLLAMA_CHAT,
            "http://localhost:11434",
            path="/api/chat",
            auth="none",
        ),
    )
}

# provider -> model -> format, for models that do not speak the provider default
BUILTIN_MODEL_FORMATS: Dict[str, Dict[str, WireFormat]] = {
    "github": {
        "gpt-5-codex": WireFormat.OPENAI_RESPONSES,
        "gpt-5.1-codex": WireFormat.OPENAI_RESPONSES,
        "gpt-5.1-codex-mini": WireFormat.OPENAI_RESPONSES,
    },
}


class ProviderRegistry:
    """Built-in provider specs merged with the relay configuration."""

    def __init__(self, config: Optional[GatewayConfig] = None) -> None:
        self.config = config or GatewayConfig()
        self.model_formats: Dict[str, Dict[str, WireFormat]] = {
            name: dict(models) for name, models in BUILTIN_MODEL_FORMATS.items()
        }
        for name, models in self.config.model_formats.items():
            self.model_formats.setdefault(name, {}).update(models)

    def spec(self, provider: str) -> ProviderSpec:
        """Return the effective spec for a provider.

        Raises:
            GatewayError: If the provider is unknown and has no configured
                base URL.
        """
        configured = self.config.providers.get(provider)
        spec = BUILTIN_PROVIDERS.get(provider)
        if spec is None:
            if configured is None or not configured.base_url:
                raise GatewayError(
                    "Provider '{}' has no base_url configured".format(provider), status=400
                )
            spec = ProviderSpec(provider, WireFormat.OPENAI_CHAT, configured.base_url)
        if configured is None:
            return spec
        return replace(
            spec,
            base_url=configured.base_url or spec.base_url,
            format=configured.format or spec.format,
            headers={**spec.headers, **configured.headers},
        )

    def target_format_for(self, provider: str, model: str) -> WireFormat:
        override = self.model_formats.get(provider, {}).get(model)
        if override is not None:
            return override
        return self.spec(provider).format

    def build_upstream_url(
        self,
        provider: str,
        model: str,
        streaming: bool,
        credentials: Optional[Credentials] = None,
    ) -> str:
        spec = self.spec(provider)
        base = spec.base_url.rstrip("/")
        if provider == "qwen" and credentials is not None:
            resource = credentials.provider_specific_data.get("resourceUrl")
            if resource:
                base = "https://{}/v1".format(resource.replace("https://", "").rstrip("/"))

        path = spec.path
        target = self.target_format_for(provider, model)
        if target == WireFormat.OPENAI_RESPONSES and spec.format != target:
            path = "/responses"
        method = "streamGenerateContent?alt=sse" if streaming else "generateContent"
        return base + path.format(model=model, method=method)

    def build_upstream_headers(
        self,
        provider: str,
        credentials: Optional[Credentials],
        streaming: bool,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        """Build the upstream request headers, credentials included."""
        spec = self.spec(provider)
        credentials = credentials or Credentials()
        headers = {
            "Content-Type": "application/json",
            "Accept": stream_media_type(spec.format) if streaming else "application/json",
        }
        token = credentials.access_token or credentials.api_key

        if spec.auth == "bearer" and token:
            headers["Authorization"] = "Bearer {}".format(token)
        elif spec.auth == "x-api-key":
            headers["x-api-key"] = credentials.api_key or credentials.access_token or ""
            headers["anthropic-version"] = ANTHROPIC_VERSION
        elif spec.auth == "claude-oauth":
            headers["Authorization"] = "Bearer {}".format(token or "")
            headers["anthropic-version"] = ANTHROPIC_VERSION
            headers["anthropic-beta"] = CLAUDE_OAUTH_BETA
        elif spec.auth == "goog-api-key":
            if credentials.api_key:
                headers["x-goog-api-key"] = credentials.api_key
            elif credentials.access_token:
                headers["Authorization"] = "Bearer {}".format(credentials.access_token)
        elif spec.auth == "copilot":
            copilot = credentials.provider_specific_data.get("copilotToken") or token
            headers["Authorization"] = "Bearer {}".format(copilot or "")
            headers.update(_copilot_request_headers(body or {}))

        headers.update(spec.headers)
        return headers


def _copilot_request_headers(body: Dict[str, Any]) -> Dict[str, str]:
    messages = body.get("messages") or body.get("input") or []
    if not isinstance(messages, list):
        messages = []
    roles = {m.get("role") for m in messages if isinstance(m, dict)}
    headers = {"X-Initiator": "agent" if roles & {"assistant", "tool"} else "user"}
    for message in messages:
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list) and any(
            isinstance(p, dict) and p.get("type") in ("image_url", "input_image")
            for p in content
        ):
            headers["Copilot-Vision-Request"] = "true"
            break
    return headers
