"""Wire formats understood by the relay."""

from enum import Enum


class WireFormat(str, Enum):
    """A provider's JSON request/response schema for chat completion."""

    OPENAI_CHAT = "openai-chat"
    OPENAI_RESPONSES = "openai-responses"
    ANTHROPIC_MESSAGES = "anthropic-messages"
    GEMINI_GENERATE = "gemini-generate"
    GEMINI_CLI = "gemini-cli"
    OLLAMA_CHAT = "ollama-chat"


# Detection catch-all and translation hub.
DEFAULT_FORMAT = WireFormat.OPENAI_CHAT

# Formats whose streams are newline-delimited JSON rather than SSE.
NDJSON_FORMATS = frozenset({WireFormat.OLLAMA_CHAT})


def stream_media_type(fmt: WireFormat) -> str:
    if fmt in NDJSON_FORMATS:
        return "application/x-ndjson"
    return "text/event-stream"
