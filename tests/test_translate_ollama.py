"""Tests for the Ollama chat codec."""

import json

from llmrelay.formats import WireFormat
from llmrelay.translate_ollama import (
    OLLAMA_CODEC,
    OllamaDecoder,
    OllamaEncoder,
    request_from_hub,
    request_to_hub,
    response_from_hub,
)
from llmrelay.translate_openai import TranslationContext


def _ctx(stream: bool = True) -> TranslationContext:
    return TranslationContext(model="llama3", stream=stream, target=WireFormat.OLLAMA_CHAT)


def test_codec_uses_ndjson() -> None:
    """Ollama streams are newline-delimited JSON."""
    assert OLLAMA_CODEC.framing == "ndjson"


def test_options_and_images_to_hub() -> None:
    """Options map onto OpenAI parameters and images onto data URLs."""
    body = {
        "model": "llama3",
        "messages": [{"role": "user", "content": "what is this", "images": ["QUJD"]}],
        "options": {"num_predict": 64, "temperature": 0.1},
        "format": "json",
    }
    hub = request_to_hub(body, _ctx())
    assert hub["max_tokens"] == 64
    assert hub["temperature"] == 0.1
    assert hub["response_format"] == {"type": "json_object"}
    parts = hub["messages"][0]["content"]
    assert parts[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}}


def test_request_from_hub_options() -> None:
    """Hub parameters move under ``options``; tool arguments become objects."""
    hub = {
        "messages": [
            {"role": "user", "content": "hi"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [{"id": "c", "function": {"name": "f", "arguments": '{"x": 1}'}}],
            },
        ],
        "max_tokens": 10,
        "seed": 7,
        "response_format": {"type": "json_schema", "json_schema": {"schema": {"type": "object"}}},
    }
    result = request_from_hub(hub, _ctx(stream=False))
    assert result["stream"] is False
    assert result["options"] == {"num_predict": 10, "seed": 7}
    assert result["format"] == {"type": "object"}
    assert result["messages"][1]["tool_calls"] == [{"function": {"name": "f", "arguments": {"x": 1}}}]


def test_response_from_hub_counts() -> None:
    """Non-streaming replies carry done flags and token counts."""
    hub = {
        "model": "llama3",
        "choices": [{"message": {"role": "assistant", "content": "hey"}, "finish_reason": "length"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 4},
    }
    result = response_from_hub(hub, "llama3")
    assert result["message"] == {"role": "assistant", "content": "hey"}
    assert result["done"] is True
    assert result["done_reason"] == "length"
    assert result["prompt_eval_count"] == 3
    assert result["eval_count"] == 4


def test_decoder_done_line() -> None:
    """The done object finishes the stream with usage."""
    decoder = OllamaDecoder("llama3")
    chunks = decoder.decode({"message": {"role": "assistant", "content": "Hi"}, "done": False})
    assert chunks[0]["choices"][0]["delta"]["role"] == "assistant"
    assert chunks[1]["choices"][0]["delta"] == {"content": "Hi"}
    chunks = decoder.decode(
        {"message": {"role": "assistant", "content": ""}, "done": True, "prompt_eval_count": 2, "eval_count": 5}
    )
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert chunks[-1]["usage"]["completion_tokens"] == 5
    assert decoder.done is True
    assert decoder.flush() == []


def test_encoder_lines() -> None:
    """Hub chunks become JSON lines ending with one done object."""
    encoder = OllamaEncoder("llama3")
    lines = encoder.encode({"choices": [{"delta": {"content": "Hi"}}]})
    lines += encoder.encode(
        {"choices": [{"delta": {}, "finish_reason": "stop"}], "usage": {"prompt_tokens": 1, "completion_tokens": 1}}
    )
    lines += encoder.finish()
    assert all(line.endswith(b"\n") and line.count(b"\n") == 1 for line in lines)
    objects = [json.loads(line) for line in lines]
    assert objects[0]["message"]["content"] == "Hi"
    assert objects[0]["done"] is False
    assert objects[-1]["done"] is True
    assert objects[-1]["eval_count"] == 1
    assert sum(1 for obj in objects if obj["done"]) == 1


def test_encoder_error_line() -> None:
    """Errors are a single ``{"error": ...}`` line."""
    line = OllamaEncoder().error(502, "[502]: down")
    assert json.loads(line) == {"error": "[502]: down"}
