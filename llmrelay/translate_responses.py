"""OpenAI Responses API <-> OpenAI chat."""

import json
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
    dump_arguments,
    image_url_of,
    make_usage,
    new_id,
    simplify_parts,
    text_of,
)

_TEXT_PARTS = ("input_text", "output_text", "text")


def _item_parts(content: Any, ctx: TranslationContext) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    parts = []
    for part in content or []:
        kind = part.get("type")
        if kind in _TEXT_PARTS:
            parts.append({"type": "text", "text": part.get("text", "")})
        elif kind == "input_image" and part.get("image_url"):
            parts.append({"type": "image_url", "image_url": {"url": part["image_url"]}})
        else:
            ctx.drop(kind or "unknown")
    return parts


def request_to_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    messages: List[Dict[str, Any]] = []
    if body.get("instructions"):
        messages.append({"role": "system", "content": body["instructions"]})

    items = body.get("input")
    if isinstance(items, str):
        items = [{"type": "message", "role": "user", "content": items}]
    for item in items or []:
        kind = item.get("type") or ("message" if "role" in item else None)
        if kind == "message":
            role = item.get("role", "user")
            if role == "developer":
                role = "system"
            parts = _item_parts(item.get("content"), ctx)
            if role == "user":
                messages.append({"role": "user", "content": simplify_parts(parts)})
            else:
                messages.append({"role": role, "content": text_of(parts)})
        elif kind == "function_call":
            call = {
                "id": item.get("call_id") or item.get("id") or new_id("call_"),
                "type": "function",
                "function": {
                    "name": item.get("name", ""),
                    "arguments": dump_arguments(item.get("arguments")),
                },
            }
            last = messages[-1] if messages else None
            if last is not None and last["role"] == "assistant":
                last.setdefault("tool_calls", []).append(call)
            else:
                messages.append({"role": "assistant", "content": None, "tool_calls": [call]})
        elif kind == "function_call_output":
            output = item.get("output", "")
            if not isinstance(output, str):
                output = json.dumps(output, ensure_ascii=False)
            messages.append(
                {"role": "tool", "tool_call_id": item.get("call_id", ""), "content": output}
            )
        else:
            ctx.drop(kind or "unknown")

    result: Dict[str, Any] = {"model": ctx.model, "messages": messages}
    if "max_output_tokens" in body:
        result["max_tokens"] = body["max_output_tokens"]
    for key in ("temperature", "top_p"):
        if key in body:
            result[key] = body[key]
    tools = []
    for tool in body.get("tools") or []:
        if tool.get("type") != "function":
            ctx.drop("tool:{}".format(tool.get("type")))
            continue
        tools.append(
            {
                "type": "function",
                "function": {
                    "name": tool.get("name", ""),
                    "description": tool.get("description", ""),
                    "parameters": tool.get("parameters")
                    or {"type": "object", "properties": {}},
                },
            }
        )
    if tools:
        result["tools"] = tools
    choice = body.get("tool_choice")
    if isinstance(choice, str):
        result["tool_choice"] = choice
    elif isinstance(choice, dict) and choice.get("name"):
        result["tool_choice"] = {"type": "function", "function": {"name": choice["name"]}}
    if "stream" in body:
        result["stream"] = body["stream"]
    return result


def request_from_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    instructions: List[str] = []
    items: List[Dict[str, Any]] = []
    for message in body.get("messages") or []:
        role = message.get("role")
        content = message.get("content")
        if role in ("system", "developer"):
            instructions.append(text_of(content, "\n"))
        elif role == "tool":
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": message.get("tool_call_id", ""),
                    "output": text_of(content, "\n"),
                }
            )
        elif role == "assistant":
            text = text_of(content)
            if text:
                items.append(
                    {
                        "type": "message",
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": text}],
                    }
                )
            for call in message.get("tool_calls") or []:
                function = call.get("function") or {}
                items.append(
                    {
                        "type": "function_call",
                        "call_id": call.get("id") or new_id("call_"),
                        "name": function.get("name", ""),
                        "arguments": dump_arguments(function.get("arguments")),
                    }
                )
        else:
            parts = []
            for part in content_parts(content):
                kind = part.get("type")
                if kind == "text":
                    parts.append({"type": "input_text", "text": part.get("text", "")})
                elif kind == "image_url":
                    parts.append({"type": "input_image", "image_url": image_url_of(part)})
                else:
                    ctx.drop(kind or "unknown")
            if parts:
                items.append({"type": "message", "role": "user", "content": parts})

    result: Dict[str, Any] = {
        "model": ctx.model,
        "input": items,
        "stream": ctx.stream,
        "store": False,
    }
    if instructions:
        result["instructions"] = "\n\n".join(instructions)
    max_tokens = body.get("max_tokens") or body.get("max_completion_tokens")
    if max_tokens:
        result["max_output_tokens"] = max_tokens
    for key in ("temperature", "top_p"):
        if body.get(key) is not None:
            result[key] = body[key]
    tools = []
    for tool in body.get("tools") or []:
        if tool.get("type", "function") != "function":
            ctx.drop("tool:{}".format(tool.get("type")))
            continue
        function = tool.get("function") or {}
        tools.append(
            {
                "type": "function",
                "name": function.get("name", ""),
                "description": function.get("description", ""),
                "parameters": function.get("parameters") or {"type": "object", "properties": {}},
            }
        )
    if tools:
        result["tools"] = tools
        choice = body.get("tool_choice")
        if isinstance(choice, str):
            result["tool_choice"] = choice
        elif isinstance(choice, dict):
            name = (choice.get("function") or {}).get("name", "")
            result["tool_choice"] = {"type": "function", "name": name}
    return result


def response_to_hub(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    texts = []
    reasoning = []
    tool_calls = []
    for item in body.get("output") or []:
        kind = item.get("type")
        if kind == "message":
            for part in item.get("content") or []:
                if part.get("type") == "output_text":
                    texts.append(part.get("text", ""))
        elif kind == "function_call":
            tool_calls.append(
                {
                    "id": item.get("call_id") or item.get("id"),
                    "type": "function",
                    "function": {
                        "name": item.get("name", ""),
                        "arguments": dump_arguments(item.get("arguments")),
                    },
                }
            )
        elif kind == "reasoning":
            for summary in item.get("summary") or []:
                reasoning.append(summary.get("text", ""))
    message: Dict[str, Any] = {"role": "assistant", "content": "".join(texts) or None}
    if reasoning:
        message["reasoning_content"] = "".join(reasoning)
    if tool_calls:
        message["tool_calls"] = tool_calls
        finish = "tool_calls"
    elif body.get("status") == "incomplete":
        finish = "length"
    else:
        finish = "stop"
    usage = body.get("usage") or {}
    return {
        "id": body.get("id") or new_id("chatcmpl-"),
        "object": "chat.completion",
        "created": body.get("created_at") or int(time.time()),
        "model": body.get("model") or model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish}],
        "usage": make_usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
    }


def _usage(usage: Optional[Dict[str, Any]]) -> Dict[str, int]:
    usage = usage or {}
    return {
        "input_tokens": usage.get("prompt_tokens", 0),
        "output_tokens": usage.get("completion_tokens", 0),
        "total_tokens": usage.get("total_tokens", 0),
    }


def response_from_hub(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    choice = (body.get("choices") or [{}])[0]
    message = choice.get("message") or {}
    output: List[Dict[str, Any]] = []
    text = text_of(message.get("content"))
    if text:
        output.append(
            {
                "type": "message",
                "id": new_id("msg_"),
                "status": "completed",
                "role": "assistant",
                "content": [{"type": "output_text", "text": text, "annotations": []}],
            }
        )
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        output.append(
            {
                "type": "function_call",
                "id": new_id("fc_"),
                "call_id": call.get("id") or new_id("call_"),
                "name": function.get("name", ""),
                "arguments": dump_arguments(function.get("arguments")),
                "status": "completed",
            }
        )
    incomplete = choice.get("finish_reason") == "length"
    return {
        "id": new_id("resp_"),
        "object": "response",
        "created_at": body.get("created") or int(time.time()),
        "model": body.get("model") or model,
        "status": "incomplete" if incomplete else "completed",
        "output": output,
        "usage": _usage(body.get("usage")),
    }


class ResponsesDecoder(StreamDecoder):
    """Responses stream events -> OpenAI chunks."""

    def __init__(self, model: str = "") -> None:
        super().__init__(model)
        self.started = False
        # output item id -> OpenAI tool_calls index
        self.tool_items: Dict[str, int] = {}

    def decode(self, payload: Dict[str, Any], event: Optional[str] = None) -> List[Dict[str, Any]]:
        kind = payload.get("type") or event
        if kind == "response.created":
            response = payload.get("response") or {}
            self.chunk_id = response.get("id") or self.chunk_id
            self.model = response.get("model") or self.model
            self.started = True
            return [self.chunk({"role": "assistant", "content": ""})]
        if kind == "response.output_text.delta":
            return [self.chunk({"content": payload.get("delta", "")})]
        if kind in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            return [self.chunk({"reasoning_content": payload.get("delta", "")})]
        if kind == "response.output_item.added":
            item = payload.get("item") or {}
            if item.get("type") != "function_call":
                return []
            index = len(self.tool_items)
            self.tool_items[item.get("id") or item.get("call_id", "")] = index
            call = {
                "index": index,
                "id": item.get("call_id") or item.get("id"),
                "type": "function",
                "function": {"name": item.get("name", ""), "arguments": item.get("arguments", "")},
            }
            return [self.chunk({"tool_calls": [call]})]
        if kind == "response.function_call_arguments.delta":
            index = self.tool_items.get(payload.get("item_id", ""), 0)
            call = {"index": index, "function": {"arguments": payload.get("delta", "")}}
            return [self.chunk({"tool_calls": [call]})]
        if kind in ("response.completed", "response.incomplete"):
            response = payload.get("response") or {}
            usage = response.get("usage") or {}
            if self.tool_items:
                finish = "tool_calls"
            elif kind == "response.incomplete":
                finish = "length"
            else:
                finish = "stop"
            self.done = True
            return [
                self.chunk(
                    finish_reason=finish,
                    usage=make_usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
                )
            ]
        return []

    def flush(self) -> List[Dict[str, Any]]:
        if not self.started or self.done:
            return []
        self.done = True
        return [self.chunk(finish_reason="tool_calls" if self.tool_items else "stop")]


class ResponsesEncoder(StreamEncoder):
    """OpenAI chunks -> Responses stream events."""

    def __init__(self, model: str = "") -> None:
        super().__init__(model)
        self.response_id = new_id("resp_")
        self.created_at = int(time.time())
        self.sequence = 0
        self.started = False
        self.items: List[Dict[str, Any]] = []
        self.open_kind: Optional[str] = None
        self.open_tool_index: Optional[int] = None
        self.text = ""
        self.finish_reason: Optional[str] = None
        self.usage: Optional[Dict[str, Any]] = None

    def _event(self, kind: str, **fields: Any) -> bytes:
        payload = {"type": kind, "sequence_number": self.sequence}
        payload.update(fields)
        self.sequence += 1
        return self.frame(payload, kind)

    def _response(self, status: str) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "id": self.response_id,
            "object": "response",
            "created_at": self.created_at,
            "model": self.model,
            "status": status,
            "output": list(self.items),
        }
        if self.usage is not None:
            response["usage"] = _usage(self.usage)
        return response

    def _start(self) -> List[bytes]:
        self.started = True
        return [
            self._event("response.created", response=self._response("in_progress")),
            self._event("response.in_progress", response=self._response("in_progress")),
        ]

    def _close_item(self) -> List[bytes]:
        if self.open_kind is None:
            return []
        index = len(self.items) - 1
        item = self.items[index]
        frames = []
        if self.open_kind == "message":
            part = {"type": "output_text", "text": self.text, "annotations": []}
            item["content"] = [part]
            frames.append(
                self._event(
                    "response.output_text.done",
                    item_id=item["id"],
                    output_index=index,
                    content_index=0,
                    text=self.text,
                )
            )
            frames.append(
                self._event(
                    "response.content_part.done",
                    item_id=item["id"],
                    output_index=index,
                    content_index=0,
                    part=part,
                )
            )
        else:
            frames.append(
                self._event(
                    "response.function_call_arguments.done",
                    item_id=item["id"],
                    output_index=index,
                    arguments=item["arguments"],
                )
            )
        item["status"] = "completed"
        frames.append(self._event("response.output_item.done", output_index=index, item=item))
        self.open_kind = None
        self.open_tool_index = None
        return frames

    def _open_message(self) -> List[bytes]:
        frames = self._close_item()
        item = {
            "type": "message",
            "id": new_id("msg_"),
            "status": "in_progress",
            "role": "assistant",
            "content": [],
        }
        self.items.append(item)
        self.open_kind = "message"
        self.text = ""
        index = len(self.items) - 1
        frames.append(self._event("response.output_item.added", output_index=index, item=item))
        frames.append(
            self._event(
                "response.content_part.added",
                item_id=item["id"],
                output_index=index,
                content_index=0,
                part={"type": "output_text", "text": "", "annotations": []},
            )
        )
        return frames

    def _open_call(self, call: Dict[str, Any]) -> List[bytes]:
        frames = self._close_item()
        function = call.get("function") or {}
        item = {
            "type": "function_call",
            "id": new_id("fc_"),
            "call_id": call.get("id") or new_id("call_"),
            "name": function.get("name", ""),
            "arguments": "",
            "status": "in_progress",
        }
        self.items.append(item)
        self.open_kind = "function_call"
        self.open_tool_index = call.get("index", 0)
        frames.append(
            self._event("response.output_item.added", output_index=len(self.items) - 1, item=item)
        )
        return frames

    def encode(self, chunk: Dict[str, Any]) -> List[bytes]:
        frames = [] if self.started else self._start()
        if chunk.get("usage"):
            self.usage = chunk["usage"]
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                if self.open_kind != "message":
                    frames += self._open_message()
                self.text += delta["content"]
                item = self.items[-1]
                frames.append(
                    self._event(
                        "response.output_text.delta",
                        item_id=item["id"],
                        output_index=len(self.items) - 1,
                        content_index=0,
                        delta=delta["content"],
                    )
                )
            for call in delta.get("tool_calls") or []:
                if self.open_kind != "function_call" or self.open_tool_index != call.get("index", 0):
                    frames += self._open_call(call)
                arguments = (call.get("function") or {}).get("arguments")
                if arguments:
                    item = self.items[-1]
                    item["arguments"] += arguments
                    frames.append(
                        self._event(
                            "response.function_call_arguments.delta",
                            item_id=item["id"],
                            output_index=len(self.items) - 1,
                            delta=arguments,
                        )
                    )
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
        return frames

    def close(self) -> List[bytes]:
        frames = [] if self.started else self._start()
        frames += self._close_item()
        if self.finish_reason == "length":
            frames.append(
                self._event("response.incomplete", response=self._response("incomplete"))
            )
        else:
            frames.append(self._event("response.completed", response=self._response("completed")))
        return frames

    def error(self, status: int, message: str) -> bytes:
        detail = build_error_body(status, message)["error"]
        return self._event("error", code=detail["code"], message=detail["message"])


RESPONSES_CODEC = Codec(
    format=WireFormat.OPENAI_RESPONSES,
    request_to_hub=request_to_hub,
    request_from_hub=request_from_hub,
    response_to_hub=response_to_hub,
    response_from_hub=response_from_hub,
    decoder=ResponsesDecoder,
    encoder=ResponsesEncoder,
)
