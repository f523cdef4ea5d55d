"""Anthropic Messages <-> OpenAI chat."""

import time
from typing import Any, Dict, List, Optional

from llmrelay.errors import build_error_body
from llmrelay.formats import WireFormat
from llmrelay.translate_openai import (
    Codec,
    StreamDecoder,
    StreamEncoder,
    TranslationContext,
    content_parts,
    data_url,
    dump_arguments,
    image_url_of,
    logger,
    make_usage,
    new_id,
    parse_arguments,
    parse_data_url,
    simplify_parts,
    text_of,
)

DEFAULT_MAX_TOKENS = 4096

FINISH_TO_HUB = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}

FINISH_FROM_HUB = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "end_turn",
}


def _system_text(system: Any) -> str:
    if isinstance(system, str):
        return system
    return "\n".join(
        block.get("text", "")
        for block in system or []
        if isinstance(block, dict) and block.get("type") == "text"
    )


def _image_source_url(source: Dict[str, Any]) -> Optional[str]:
    if source.get("type") == "base64" and source.get("data"):
        return data_url(source.get("media_type", "image/png"), source["data"])
    if source.get("type") == "url" and source.get("url"):
        return source["url"]
    return None


def _tool_result_text(content: Any, ctx: TranslationContext) -> str:
    if isinstance(content, str):
        return content
    texts = []
    for block in content or []:
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        else:
            ctx.drop("tool_result:{}".format(block.get("type")))
    return "\n".join(texts)


def _message_to_hub(message: Dict[str, Any], ctx: TranslationContext) -> List[Dict[str, Any]]:
    role = message.get("role", "user")
    content = message.get("content")
    if isinstance(content, str):
        return [{"role": role, "content": content}]

    parts: List[Dict[str, Any]] = []
    tool_calls: List[Dict[str, Any]] = []
    results: List[Dict[str, Any]] = []
    for block in content or []:
        kind = block.get("type")
        if kind == "text":
            parts.append({"type": "text", "text": block.get("text", "")})
        elif kind == "image":
            url = _image_source_url(block.get("source") or {})
            if url:
                parts.append({"type": "image_url", "image_url": {"url": url}})
            else:
                ctx.drop("image")
        elif kind == "tool_use":
            tool_calls.append(
                {
                    "id": block.get("id") or new_id("call_"),
                    "type": "function",
                    "function": {
                        "name": block.get("name", ""),
                        "arguments": dump_arguments(block.get("input")),
                    },
                }
            )
        elif kind == "tool_result":
            results.append(
                {
                    "role": "tool",
                    "tool_call_id": block.get("tool_use_id", ""),
                    "content": _tool_result_text(block.get("content"), ctx),
                }
            )
        else:
            ctx.drop(kind or "unknown")

    out = results
    if role == "assistant":
        if parts or tool_calls:
            msg: Dict[str, Any] = {"role": "assistant", "content": text_of(parts) or None}
            if tool_calls:
                msg["tool_calls"] = tool_calls
            out.append(msg)
    elif parts:
        out.append({"role": role, "content": simplify_parts(parts)})
    return out


def _tool_choice_to_hub(choice: Any) -> Any:
    if not isinstance(choice, dict):
        return None
    kind = choice.get("type")
    if kind == "any":
        return "required"
    if kind == "tool":
        return {"type": "function", "function": {"name": choice.get("name", "")}}
    if kind in ("auto", "none"):
        return kind
    return None


def request_to_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    messages: List[Dict[str, Any]] = []
    if body.get("system"):
        messages.append({"role": "system", "content": _system_text(body["system"])})
    for message in body.get("messages") or []:
        messages.extend(_message_to_hub(message, ctx))

    result: Dict[str, Any] = {"model": body.get("model", ctx.model), "messages": messages}
    if "max_tokens" in body:
        result["max_tokens"] = body["max_tokens"]
    for key in ("temperature", "top_p"):
        if key in body:
            result[key] = body[key]
    if body.get("stop_sequences"):
        result["stop"] = list(body["stop_sequences"])
    if "top_k" in body:
        logger.debug("Omitting top_k: not supported by OpenAI chat")
    if body.get("tools"):
        result["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": tool.get("name", ""),
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema")
                    or {"type": "object", "properties": {}},
                },
            }
            for tool in body["tools"]
        ]
    tool_choice = _tool_choice_to_hub(body.get("tool_choice"))
    if tool_choice is not None:
        result["tool_choice"] = tool_choice
    user_id = (body.get("metadata") or {}).get("user_id")
    if user_id:
        result["user"] = user_id
    if "stream" in body:
        result["stream"] = body["stream"]
    return result


def _parts_to_blocks(content: Any, ctx: TranslationContext) -> List[Dict[str, Any]]:
    blocks = []
    for part in content_parts(content):
        kind = part.get("type")
        if kind == "text":
            if part.get("text"):
                blocks.append({"type": "text", "text": part["text"]})
        elif kind == "image_url":
            url = image_url_of(part)
            parsed = parse_data_url(url)
            if parsed:
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": parsed[0],
                            "data": parsed[1],
                        },
                    }
                )
            elif url:
                blocks.append({"type": "image", "source": {"type": "url", "url": url}})
        else:
            ctx.drop(kind or "unknown")
    return blocks


def _append(messages: List[Dict[str, Any]], role: str, blocks: List[Dict[str, Any]]) -> None:
    # Anthropic requires alternating roles; merge runs of the same role.
    if messages and messages[-1]["role"] == role:
        messages[-1]["content"].extend(blocks)
    else:
        messages.append({"role": role, "content": blocks})


def _tool_choice_from_hub(choice: Any) -> Optional[Dict[str, Any]]:
    if choice == "required":
        return {"type": "any"}
    if choice in ("auto", "none"):
        return {"type": choice}
    if isinstance(choice, dict):
        name = (choice.get("function") or {}).get("name")
        if name:
            return {"type": "tool", "name": name}
    return None


def request_from_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    system: List[str] = []
    messages: List[Dict[str, Any]] = []
    for message in body.get("messages") or []:
        role = message.get("role")
        if role in ("system", "developer"):
            system.append(text_of(message.get("content"), "\n"))
            continue
        if role == "tool":
            _append(
                messages,
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.get("tool_call_id", ""),
                        "content": text_of(message.get("content"), "\n"),
                    }
                ],
            )
            continue
        blocks = _parts_to_blocks(message.get("content"), ctx)
        if role == "assistant":
            for call in message.get("tool_calls") or []:
                function = call.get("function") or {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.get("id") or new_id("toolu_"),
                        "name": function.get("name", ""),
                        "input": parse_arguments(function.get("arguments")),
                    }
                )
        if blocks:
            _append(messages, "assistant" if role == "assistant" else "user", blocks)

    for message in messages:
        blocks = message["content"]
        if len(blocks) == 1 and blocks[0]["type"] == "text":
            message["content"] = blocks[0]["text"]

    result: Dict[str, Any] = {
        "model": ctx.model,
        "messages": messages,
        "max_tokens": body.get("max_tokens")
        or body.get("max_completion_tokens")
        or DEFAULT_MAX_TOKENS,
    }
    if system:
        result["system"] = "\n\n".join(system)
    for key in ("temperature", "top_p"):
        if body.get(key) is not None:
            result[key] = body[key]
    stop = body.get("stop")
    if stop:
        result["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)
    tools = []
    for tool in body.get("tools") or []:
        if tool.get("type", "function") != "function":
            ctx.drop("tool:{}".format(tool.get("type")))
            continue
        function = tool.get("function") or {}
        tools.append(
            {
                "name": function.get("name", ""),
                "description": function.get("description", ""),
                "input_schema": function.get("parameters")
                or {"type": "object", "properties": {}},
            }
        )
    if tools:
        result["tools"] = tools
    tool_choice = _tool_choice_from_hub(body.get("tool_choice"))
    if tool_choice is not None and tools:
        result["tool_choice"] = tool_choice
    if body.get("user"):
        result["metadata"] = {"user_id": body["user"]}
    result["stream"] = ctx.stream
    return result


def response_to_hub(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    texts = []
    reasoning = []
    tool_calls = []
    for block in body.get("content") or []:
        kind = block.get("type")
        if kind == "text":
            texts.append(block.get("text", ""))
        elif kind == "thinking":
            reasoning.append(block.get("thinking", ""))
        elif kind == "tool_use":
            tool_calls.append(
                {
                    "id": block.get("id"),
                    "type": "function",
                    "function": {
                        "name": block.get("name", ""),
                        "arguments": dump_arguments(block.get("input")),
                    },
                }
            )
    message: Dict[str, Any] = {"role": "assistant", "content": "".join(texts) or None}
    if reasoning:
        message["reasoning_content"] = "".join(reasoning)
    if tool_calls:
        message["tool_calls"] = tool_calls
    usage = body.get("usage") or {}
    return {
        "id": body.get("id") or new_id("chatcmpl-"),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": body.get("model") or model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": FINISH_TO_HUB.get(body.get("stop_reason"), "stop"),
            }
        ],
        "usage": make_usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
    }


def response_from_hub(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    choice = (body.get("choices") or [{}])[0]
    message = choice.get("message") or {}
    content: List[Dict[str, Any]] = []
    text = text_of(message.get("content"))
    if text:
        content.append({"type": "text", "text": text})
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        content.append(
            {
                "type": "tool_use",
                "id": call.get("id") or new_id("toolu_"),
                "name": function.get("name", ""),
                "input": parse_arguments(function.get("arguments")),
            }
        )
    usage = body.get("usage") or {}
    return {
        "id": body.get("id") or new_id("msg_"),
        "type": "message",
        "role": "assistant",
        "model": body.get("model") or model,
        "content": content,
        "stop_reason": FINISH_FROM_HUB.get(choice.get("finish_reason"), "end_turn"),
        "stop_sequence": None,
        "usage": {
            "input_tokens": usage.get("prompt_tokens", 0),
            "output_tokens": usage.get("completion_tokens", 0),
        },
    }


class ClaudeDecoder(StreamDecoder):
    """Anthropic stream events -> OpenAI chunks."""

    def __init__(self, model: str = "") -> None:
        super().__init__(model)
        self.input_tokens = 0
        # content block index -> OpenAI tool_calls index
        self.tool_index: Dict[int, int] = {}

    def decode(self, payload: Dict[str, Any], event: Optional[str] = None) -> List[Dict[str, Any]]:
        kind = payload.get("type") or event
        if kind == "message_start":
            message = payload.get("message") or {}
            self.chunk_id = message.get("id") or self.chunk_id
            self.model = message.get("model") or self.model
            self.input_tokens = (message.get("usage") or {}).get("input_tokens", 0)
            return [self.chunk({"role": "assistant", "content": ""})]

        if kind == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                index = len(self.tool_index)
                self.tool_index[payload.get("index", 0)] = index
                call = {
                    "index": index,
                    "id": block.get("id"),
                    "type": "function",
                    "function": {"name": block.get("name", ""), "arguments": ""},
                }
                return [self.chunk({"tool_calls": [call]})]
            if block.get("type") == "text" and block.get("text"):
                return [self.chunk({"content": block["text"]})]
            return []

        if kind == "content_block_delta":
            delta = payload.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return [self.chunk({"content": delta.get("text", "")})]
            if delta_type == "thinking_delta":
                return [self.chunk({"reasoning_content": delta.get("thinking", "")})]
            if delta_type == "input_json_delta":
                index = self.tool_index.get(payload.get("index", 0), 0)
                call = {"index": index, "function": {"arguments": delta.get("partial_json", "")}}
                return [self.chunk({"tool_calls": [call]})]
            return []

        if kind == "message_delta":
            delta = payload.get("delta") or {}
            usage = payload.get("usage") or {}
            self.input_tokens = usage.get("input_tokens") or self.input_tokens
            reason = FINISH_TO_HUB.get(delta.get("stop_reason"), "stop")
            return [
                self.chunk(
                    finish_reason=reason,
                    usage=make_usage(self.input_tokens, usage.get("output_tokens", 0)),
                )
            ]

        if kind == "message_stop":
            self.done = True
        return []


class ClaudeEncoder(StreamEncoder):
    """OpenAI chunks -> Anthropic stream events."""

    def __init__(self, model: str = "") -> None:
        super().__init__(model)
        self.message_id = new_id("msg_")
        self.started = False
        self.block_index = -1
        self.block_type: Optional[str] = None
        self.tool_index: Optional[int] = None
        self.stop_reason: Optional[str] = None
        self.input_tokens = 0
        self.output_tokens = 0

    def _start(self) -> List[bytes]:
        self.started = True
        message = {
            "id": self.message_id,
            "type": "message",
            "role": "assistant",
            "model": self.model,
            "content": [],
            "stop_reason": None,
            "stop_sequence": None,
            "usage": {"input_tokens": self.input_tokens, "output_tokens": 0},
        }
        return [self.frame({"type": "message_start", "message": message}, "message_start")]

    def _close_block(self) -> List[bytes]:
        if self.block_type is None:
            return []
        self.block_type = None
        payload = {"type": "content_block_stop", "index": self.block_index}
        return [self.frame(payload, "content_block_stop")]

    def _open(self, block: Dict[str, Any], tool_index: Optional[int] = None) -> List[bytes]:
        frames = self._close_block()
        self.block_index += 1
        self.block_type = block["type"]
        self.tool_index = tool_index
        payload = {
            "type": "content_block_start",
            "index": self.block_index,
            "content_block": block,
        }
        frames.append(self.frame(payload, "content_block_start"))
        return frames

    def _delta(self, delta: Dict[str, Any]) -> bytes:
        payload = {"type": "content_block_delta", "index": self.block_index, "delta": delta}
        return self.frame(payload, "content_block_delta")

    def encode(self, chunk: Dict[str, Any]) -> List[bytes]:
        frames = [] if self.started else self._start()
        usage = chunk.get("usage")
        if usage:
            self.input_tokens = usage.get("prompt_tokens") or self.input_tokens
            self.output_tokens = usage.get("completion_tokens") or self.output_tokens
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("reasoning_content"):
                if self.block_type != "thinking":
                    frames += self._open({"type": "thinking", "thinking": ""})
                frames.append(
                    self._delta({"type": "thinking_delta", "thinking": delta["reasoning_content"]})
                )
            if delta.get("content"):
                if self.block_type != "text":
                    frames += self._open({"type": "text", "text": ""})
                frames.append(self._delta({"type": "text_delta", "text": delta["content"]}))
            for call in delta.get("tool_calls") or []:
                index = call.get("index", 0)
                function = call.get("function") or {}
                if self.block_type != "tool_use" or self.tool_index != index:
                    block = {
                        "type": "tool_use",
                        "id": call.get("id") or new_id("toolu_"),
                        "name": function.get("name", ""),
                        "input": {},
                    }
                    frames += self._open(block, index)
                if function.get("arguments"):
                    frames.append(
                        self._delta(
                            {"type": "input_json_delta", "partial_json": function["arguments"]}
                        )
                    )
            if choice.get("finish_reason"):
                self.stop_reason = FINISH_FROM_HUB.get(choice["finish_reason"], "end_turn")
        return frames

    def close(self) -> List[bytes]:
        frames = [] if self.started else self._start()
        frames += self._close_block()
        message_delta = {
            "type": "message_delta",
            "delta": {"stop_reason": self.stop_reason or "end_turn", "stop_sequence": None},
            "usage": {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens},
        }
        frames.append(self.frame(message_delta, "message_delta"))
        frames.append(self.frame({"type": "message_stop"}, "message_stop"))
        return frames

    def error(self, status: int, message: str) -> bytes:
        detail = build_error_body(status, message)["error"]
        payload = {
            "type": "error",
            "error": {"type": detail["type"], "message": detail["message"]},
        }
        return self.frame(payload, "error")


CLAUDE_CODEC = Codec(
    format=WireFormat.ANTHROPIC_MESSAGES,
    request_to_hub=request_to_hub,
    request_from_hub=request_from_hub,
    response_to_hub=response_to_hub,
    response_from_hub=response_from_hub,
    decoder=ClaudeDecoder,
    encoder=ClaudeEncoder,
)
