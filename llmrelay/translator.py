"""Translator registry.

Each format registers one ``Codec`` describing how it converts to and from
the OpenAI chat hub. The registry composes codecs into a translator for
every ordered ``(source, target)`` pair; same-format pairs are identity and
never re-serialize anything.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from llmrelay.errors import TranslatorMissing
from llmrelay.formats import DEFAULT_FORMAT, WireFormat
from llmrelay.models import Credentials
from llmrelay.translate_claude import CLAUDE_CODEC
from llmrelay.translate_gemini import GEMINI_CLI_CODEC, GEMINI_CODEC
from llmrelay.translate_ollama import OLLAMA_CODEC
from llmrelay.translate_openai import (
    OPENAI_CODEC,
    Codec,
    StreamDecoder,
    StreamEncoder,
    TranslationContext,
)
from llmrelay.translate_responses import RESPONSES_CODEC

logger = logging.getLogger("gateway")

BUILTIN_CODECS = (
    OPENAI_CODEC,
    RESPONSES_CODEC,
    CLAUDE_CODEC,
    GEMINI_CODEC,
    GEMINI_CLI_CODEC,
    OLLAMA_CODEC,
)


@dataclass
class StreamTranslator:
    """Per-request streaming state: upstream decoder plus client encoder."""

    decoder: StreamDecoder
    encoder: StreamEncoder
    upstream_framing: str

    def feed(self, payload: Dict[str, Any], event: Optional[str] = None) -> List[bytes]:
        frames: List[bytes] = []
        for chunk in self.decoder.decode(payload, event):
            frames.extend(self.encoder.encode(chunk))
        return frames

    def finish(self) -> List[bytes]:
        """Flush held decoder state and emit the client terminal marker."""
        frames: List[bytes] = []
        for chunk in self.decoder.flush():
            frames.extend(self.encoder.encode(chunk))
        frames.extend(self.encoder.finish())
        return frames

    def error(self, status: int, message: str) -> bytes:
        return self.encoder.error(status, message)


class TranslatorRegistry:
    """Holds the codecs and composes translators between formats."""

    def __init__(self, codecs: Iterable[Codec] = ()) -> None:
        self._codecs: Dict[WireFormat, Codec] = {}
        for codec in codecs:
            self.register_codec(codec)

    def register_codec(self, codec: Codec) -> None:
        self._codecs[codec.format] = codec

    def codec(self, fmt: WireFormat) -> Codec:
        try:
            return self._codecs[fmt]
        except KeyError:
            raise TranslatorMissing(fmt.value, DEFAULT_FORMAT.value) from None

    @property
    def formats(self) -> List[WireFormat]:
        return list(self._codecs)

    def verify(self) -> None:
        """Check that every ordered pair of formats is translatable.

        Raises:
            TranslatorMissing: If a format has no registered codec.
        """
        for source in WireFormat:
            for target in WireFormat:
                if source not in self._codecs or target not in self._codecs:
                    raise TranslatorMissing(source.value, target.value)

    @staticmethod
    def needs_translation(target: WireFormat, source: WireFormat) -> bool:
        return target != source

    def translate_request(
        self,
        source: WireFormat,
        target: WireFormat,
        model: str,
        body: Dict[str, Any],
        stream: bool,
        credentials: Optional[Credentials] = None,
        provider: Optional[str] = None,
        strict_formats: FrozenSet[WireFormat] = frozenset(),
    ) -> Dict[str, Any]:
        """Translate a request body from the client's format to the target's.

        Args:
            source: Format the client spoke.
            target: Format the upstream expects.
            model: Resolved upstream model id.
            body: Client request body. Never mutated.
            stream: Whether the upstream call streams.
            credentials: Provider credentials, for fields some formats embed.
            provider: Provider name.
            strict_formats: Target formats that reject unsupported parts.

        Returns:
            A new request body in the target format.

        Raises:
            UnsupportedContentPart: If a part cannot be represented and the
                target is strict.
        """
        if not self.needs_translation(target, source):
            return dict(body)
        ctx = TranslationContext(
            model=model,
            stream=stream,
            target=target,
            credentials=credentials,
            provider=provider,
            strict_formats=strict_formats,
        )
        hub = self.codec(source).request_to_hub(body, ctx)
        return self.codec(target).request_from_hub(hub, ctx)

    def translate_response(
        self, target: WireFormat, source: WireFormat, body: Dict[str, Any], model: str = ""
    ) -> Dict[str, Any]:
        """Translate a non-streaming upstream body back into the client's format."""
        if not self.needs_translation(target, source):
            return body
        hub = self.codec(target).response_to_hub(body, model)
        return self.codec(source).response_from_hub(hub, model)

    def stream_translator(
        self, target: WireFormat, source: WireFormat, model: str = ""
    ) -> StreamTranslator:
        upstream = self.codec(target)
        client = self.codec(source)
        return StreamTranslator(
            decoder=upstream.decoder(model),
            encoder=client.encoder(model),
            upstream_framing=upstream.framing,
        )


_registry: Optional[TranslatorRegistry] = None
_ready: Optional["asyncio.Future[TranslatorRegistry]"] = None


def _build_registry() -> TranslatorRegistry:
    registry = TranslatorRegistry(BUILTIN_CODECS)
    registry.verify()
    logger.info("Translator registry ready: %d formats", len(registry.formats))
    return registry


def get_registry() -> TranslatorRegistry:
    """Return the process-wide registry, building it on first use."""
    global _registry
    if _registry is None:
        _registry = _build_registry()
    return _registry


async def ensure_initialized() -> TranslatorRegistry:
    """Initialize the process-wide registry exactly once.

    Concurrent first callers all await the same future, so registration
    and verification run a single time.

    Raises:
        TranslatorMissing: If a built-in format has no codec.
    """
    global _ready
    if _ready is None:
        _ready = asyncio.get_running_loop().create_future()
        try:
            _ready.set_result(get_registry())
        except TranslatorMissing as exc:
            _ready.set_exception(exc)
            future, _ready = _ready, None
            return await future
    return await _ready


def reset_registry() -> None:
    """Drop the process-wide registry so the next call rebuilds it."""
    global _registry, _ready
    _registry = None
    _ready = None
