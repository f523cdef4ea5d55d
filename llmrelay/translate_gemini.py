"""Gemini generateContent (and the Cloud Code wrapper) <-> OpenAI chat.

The Gemini CLI upstream speaks the same schema wrapped in an envelope:
requests as ``{"model", "project", "request": {...}}`` and stream payloads as
``{"response": {...}}``.
"""

import json
import mimetypes
import time
from typing import Any, Dict, List, Optional

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

FINISH_TO_HUB = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}

FINISH_FROM_HUB = {
    "stop": "STOP",
    "length": "MAX_TOKENS",
    "content_filter": "SAFETY",
    "tool_calls": "STOP",
}

# JSON-schema keywords the Gemini function-declaration schema rejects.
_UNSUPPORTED_SCHEMA_KEYS = ("$schema", "additionalProperties")


def clean_schema(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {
            key: clean_schema(value)
            for key, value in schema.items()
            if key not in _UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [clean_schema(item) for item in schema]
    return schema


def _tool_response_to_hub(response: Any) -> str:
    if isinstance(response, dict) and set(response) == {"result"}:
        result = response["result"]
        return result if isinstance(result, str) else json.dumps(result)
    return json.dumps(response, ensure_ascii=False)


def _tool_response_from_hub(content: str) -> Dict[str, Any]:
    try:
        value = json.loads(content)
    except ValueError:
        return {"result": content}
    return value if isinstance(value, dict) else {"result": content}


def _system_text(system: Any) -> str:
    if isinstance(system, str):
        return system
    return "\n".join(p.get("text", "") for p in system.get("parts") or [] if "text" in p)


def _unwrap_request(body: Dict[str, Any]) -> Dict[str, Any]:
    request = body.get("request")
    return request if isinstance(request, dict) else body


def _unwrap_response(body: Dict[str, Any]) -> Dict[str, Any]:
    response = body.get("response")
    return response if isinstance(response, dict) else body


def request_to_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    body = _unwrap_request(body)
    messages: List[Dict[str, Any]] = []
    system = body.get("systemInstruction") or body.get("system_instruction")
    if system:
        messages.append({"role": "system", "content": _system_text(system)})

    # Gemini function calls carry no ids; pair responses with calls by name.
    pending: Dict[str, List[str]] = {}
    for content in body.get("contents") or []:
        role = "assistant" if content.get("role") == "model" else "user"
        parts: List[Dict[str, Any]] = []
        tool_calls: List[Dict[str, Any]] = []
        for part in content.get("parts") or []:
            if part.get("thought"):
                ctx.drop("thought")
            elif "text" in part:
                parts.append({"type": "text", "text": part["text"]})
            elif "inlineData" in part or "fileData" in part:
                blob = part.get("inlineData") or part.get("fileData") or {}
                mime = blob.get("mimeType", "")
                if not mime.startswith("image/"):
                    ctx.drop("media:{}".format(mime or "unknown"))
                    continue
                url = data_url(mime, blob["data"]) if "data" in blob else blob.get("fileUri", "")
                parts.append({"type": "image_url", "image_url": {"url": url}})
            elif "functionCall" in part:
                call = part["functionCall"]
                call_id = call.get("id") or new_id("call_")
                pending.setdefault(call.get("name", ""), []).append(call_id)
                tool_calls.append(
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": call.get("name", ""),
                            "arguments": dump_arguments(call.get("args")),
                        },
                    }
                )
            elif "functionResponse" in part:
                response = part["functionResponse"]
                ids = pending.get(response.get("name", ""))
                call_id = response.get("id") or (ids.pop(0) if ids else new_id("call_"))
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call_id,
                        "content": _tool_response_to_hub(response.get("response")),
                    }
                )
            else:
                ctx.drop(next(iter(part), "unknown"))
        if role == "assistant":
            if parts or tool_calls:
                msg: Dict[str, Any] = {"role": "assistant", "content": text_of(parts) or None}
                if tool_calls:
                    msg["tool_calls"] = tool_calls
                messages.append(msg)
        elif parts:
            messages.append({"role": "user", "content": simplify_parts(parts)})

    result: Dict[str, Any] = {"model": ctx.model, "messages": messages}
    config = body.get("generationConfig") or {}
    for source_key, hub_key in (
        ("temperature", "temperature"),
        ("topP", "top_p"),
        ("maxOutputTokens", "max_tokens"),
        ("stopSequences", "stop"),
    ):
        if source_key in config:
            result[hub_key] = config[source_key]
    if config.get("responseMimeType") == "application/json":
        result["response_format"] = {"type": "json_object"}
    if "topK" in config:
        logger.debug("Omitting topK: not supported by OpenAI chat")

    tools = []
    for tool in body.get("tools") or []:
        declarations = tool.get("functionDeclarations") or tool.get("function_declarations")
        if not declarations:
            ctx.drop("tool:{}".format(next(iter(tool), "unknown")))
            continue
        for decl in declarations:
            tools.append(
                {
                    "type": "function",
                    "function": {
                        "name": decl.get("name", ""),
                        "description": decl.get("description", ""),
                        "parameters": decl.get("parameters")
                        or decl.get("parametersJsonSchema")
                        or {"type": "object", "properties": {}},
                    },
                }
            )
    if tools:
        result["tools"] = tools
    mode_config = (body.get("toolConfig") or {}).get("functionCallingConfig") or {}
    mode = mode_config.get("mode")
    allowed = mode_config.get("allowedFunctionNames") or []
    if mode == "ANY" and len(allowed) == 1:
        result["tool_choice"] = {"type": "function", "function": {"name": allowed[0]}}
    elif mode in ("AUTO", "ANY", "NONE"):
        result["tool_choice"] = {"AUTO": "auto", "ANY": "required", "NONE": "none"}[mode]
    return result


def _parts_from_hub(content: Any, ctx: TranslationContext) -> List[Dict[str, Any]]:
    parts = []
    for part in content_parts(content):
        kind = part.get("type")
        if kind == "text":
            if part.get("text"):
                parts.append({"text": part["text"]})
        elif kind == "image_url":
            url = image_url_of(part)
            parsed = parse_data_url(url)
            if parsed:
                parts.append({"inlineData": {"mimeType": parsed[0], "data": parsed[1]}})
            elif url:
                mime = mimetypes.guess_type(url)[0] or "image/jpeg"
                parts.append({"fileData": {"mimeType": mime, "fileUri": url}})
        else:
            ctx.drop(kind or "unknown")
    return parts


def _append(contents: List[Dict[str, Any]], role: str, parts: List[Dict[str, Any]]) -> None:
    if contents and contents[-1]["role"] == role:
        contents[-1]["parts"].extend(parts)
    else:
        contents.append({"role": role, "parts": parts})


def request_from_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    system: List[str] = []
    contents: List[Dict[str, Any]] = []
    names_by_id: Dict[str, str] = {}
    for message in body.get("messages") or []:
        role = message.get("role")
        if role in ("system", "developer"):
            system.append(text_of(message.get("content"), "\n"))
            continue
        if role == "tool":
            name = names_by_id.get(message.get("tool_call_id", ""), message.get("name", ""))
            response = _tool_response_from_hub(text_of(message.get("content"), "\n"))
            _append(contents, "user", [{"functionResponse": {"name": name, "response": response}}])
            continue
        parts = _parts_from_hub(message.get("content"), ctx)
        if role == "assistant":
            for call in message.get("tool_calls") or []:
                function = call.get("function") or {}
                names_by_id[call.get("id", "")] = function.get("name", "")
                parts.append(
                    {
                        "functionCall": {
                            "name": function.get("name", ""),
                            "args": parse_arguments(function.get("arguments")),
                        }
                    }
                )
        if parts:
            _append(contents, "model" if role == "assistant" else "user", parts)

    result: Dict[str, Any] = {"contents": contents}
    if system:
        result["systemInstruction"] = {"role": "user", "parts": [{"text": "\n\n".join(system)}]}

    config: Dict[str, Any] = {}
    if body.get("temperature") is not None:
        config["temperature"] = body["temperature"]
    if body.get("top_p") is not None:
        config["topP"] = body["top_p"]
    max_tokens = body.get("max_tokens") or body.get("max_completion_tokens")
    if max_tokens:
        config["maxOutputTokens"] = max_tokens
    stop = body.get("stop")
    if stop:
        config["stopSequences"] = [stop] if isinstance(stop, str) else list(stop)
    if (body.get("response_format") or {}).get("type") in ("json_object", "json_schema"):
        config["responseMimeType"] = "application/json"
    if config:
        result["generationConfig"] = config

    declarations = []
    for tool in body.get("tools") or []:
        if tool.get("type", "function") != "function":
            ctx.drop("tool:{}".format(tool.get("type")))
            continue
        function = tool.get("function") or {}
        declarations.append(
            {
                "name": function.get("name", ""),
                "description": function.get("description", ""),
                "parameters": clean_schema(
                    function.get("parameters") or {"type": "object", "properties": {}}
                ),
            }
        )
    if declarations:
        result["tools"] = [{"functionDeclarations": declarations}]
        choice = body.get("tool_choice")
        if isinstance(choice, dict):
            name = (choice.get("function") or {}).get("name", "")
            mode_config = {"mode": "ANY", "allowedFunctionNames": [name]}
            result["toolConfig"] = {"functionCallingConfig": mode_config}
        elif choice in ("auto", "required", "none"):
            mode = {"auto": "AUTO", "required": "ANY", "none": "NONE"}[choice]
            result["toolConfig"] = {"functionCallingConfig": {"mode": mode}}
    return result


def response_to_hub(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    body = _unwrap_response(body)
    candidate = (body.get("candidates") or [{}])[0]
    texts = []
    reasoning = []
    tool_calls = []
    for part in (candidate.get("content") or {}).get("parts") or []:
        if "text" in part:
            (reasoning if part.get("thought") else texts).append(part["text"])
        elif "functionCall" in part:
            call = part["functionCall"]
            tool_calls.append(
                {
                    "id": call.get("id") or new_id("call_"),
                    "type": "function",
                    "function": {
                        "name": call.get("name", ""),
                        "arguments": dump_arguments(call.get("args")),
                    },
                }
            )
    message: Dict[str, Any] = {"role": "assistant", "content": "".join(texts) or None}
    if reasoning:
        message["reasoning_content"] = "".join(reasoning)
    if tool_calls:
        message["tool_calls"] = tool_calls
        finish = "tool_calls"
    else:
        finish = FINISH_TO_HUB.get(candidate.get("finishReason"), "stop")
    usage = body.get("usageMetadata") or {}
    return {
        "id": body.get("responseId") or new_id("chatcmpl-"),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": body.get("modelVersion") or model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish}],
        "usage": make_usage(
            usage.get("promptTokenCount", 0),
            usage.get("candidatesTokenCount", 0) + usage.get("thoughtsTokenCount", 0),
        ),
    }


def _usage_metadata(usage: Dict[str, Any]) -> Dict[str, int]:
    return {
        "promptTokenCount": usage.get("prompt_tokens", 0),
        "candidatesTokenCount": usage.get("completion_tokens", 0),
        "totalTokenCount": usage.get("total_tokens", 0),
    }


def response_from_hub(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    choice = (body.get("choices") or [{}])[0]
    message = choice.get("message") or {}
    parts: List[Dict[str, Any]] = []
    if message.get("reasoning_content"):
        parts.append({"text": message["reasoning_content"], "thought": True})
    text = text_of(message.get("content"))
    if text:
        parts.append({"text": text})
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        parts.append(
            {
                "functionCall": {
                    "name": function.get("name", ""),
                    "args": parse_arguments(function.get("arguments")),
                }
            }
        )
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": parts},
                "finishReason": FINISH_FROM_HUB.get(choice.get("finish_reason"), "STOP"),
                "index": 0,
            }
        ],
        "usageMetadata": _usage_metadata(body.get("usage") or {}),
        "modelVersion": body.get("model") or model,
        "responseId": body.get("id") or new_id("resp-"),
    }


class GeminiDecoder(StreamDecoder):
    """Gemini stream payloads (plain or wrapped) -> OpenAI chunks."""

    def __init__(self, model: str = "") -> None:
        super().__init__(model)
        self.started = False
        self.tool_count = 0
        self.finish_sent = False
        self.usage: Optional[Dict[str, int]] = None

    def decode(self, payload: Dict[str, Any], event: Optional[str] = None) -> List[Dict[str, Any]]:
        payload = _unwrap_response(payload)
        chunks = []
        if not self.started:
            self.started = True
            self.model = payload.get("modelVersion") or self.model
            chunks.append(self.chunk({"role": "assistant", "content": ""}))
        metadata = payload.get("usageMetadata")
        if metadata:
            self.usage = make_usage(
                metadata.get("promptTokenCount", 0),
                metadata.get("candidatesTokenCount", 0) + metadata.get("thoughtsTokenCount", 0),
            )
        candidate = (payload.get("candidates") or [{}])[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "text" in part:
                if not part["text"]:
                    continue
                key = "reasoning_content" if part.get("thought") else "content"
                chunks.append(self.chunk({key: part["text"]}))
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_call = {
                    "index": self.tool_count,
                    "id": call.get("id") or new_id("call_"),
                    "type": "function",
                    "function": {
                        "name": call.get("name", ""),
                        "arguments": dump_arguments(call.get("args")),
                    },
                }
                self.tool_count += 1
                chunks.append(self.chunk({"tool_calls": [tool_call]}))
        reason = candidate.get("finishReason")
        if reason and not self.finish_sent:
            self.finish_sent = True
            finish = "tool_calls" if self.tool_count else FINISH_TO_HUB.get(reason, "stop")
            chunks.append(self.chunk(finish_reason=finish, usage=self.usage))
        return chunks

    def flush(self) -> List[Dict[str, Any]]:
        if not self.started or self.finish_sent:
            return []
        self.finish_sent = True
        finish = "tool_calls" if self.tool_count else "stop"
        return [self.chunk(finish_reason=finish, usage=self.usage)]


class GeminiEncoder(StreamEncoder):
    """OpenAI chunks -> Gemini stream payloads.

    Gemini emits whole function calls, so tool-call argument fragments are
    buffered and released with the closing frame.
    """

    wrap = False

    def __init__(self, model: str = "") -> None:
        super().__init__(model)
        self.response_id = new_id("resp-")
        self.calls: Dict[int, Dict[str, str]] = {}
        self.finish_reason: Optional[str] = None
        self.usage: Optional[Dict[str, Any]] = None

    def _payload(
        self,
        parts: List[Dict[str, Any]],
        finish: Optional[str] = None,
        usage: Optional[Dict[str, int]] = None,
    ) -> bytes:
        candidate: Dict[str, Any] = {"content": {"role": "model", "parts": parts}, "index": 0}
        if finish:
            candidate["finishReason"] = finish
        payload: Dict[str, Any] = {
            "candidates": [candidate],
            "modelVersion": self.model,
            "responseId": self.response_id,
        }
        if usage:
            payload["usageMetadata"] = usage
        if self.wrap:
            payload = {"response": payload}
        return self.frame(payload)

    def encode(self, chunk: Dict[str, Any]) -> List[bytes]:
        if chunk.get("usage"):
            self.usage = chunk["usage"]
        parts: List[Dict[str, Any]] = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("reasoning_content"):
                parts.append({"text": delta["reasoning_content"], "thought": True})
            if delta.get("content"):
                parts.append({"text": delta["content"]})
            for call in delta.get("tool_calls") or []:
                function = call.get("function") or {}
                held = self.calls.setdefault(call.get("index", 0), {"name": "", "arguments": ""})
                if function.get("name"):
                    held["name"] = function["name"]
                held["arguments"] += function.get("arguments") or ""
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
        return [self._payload(parts)] if parts else []

    def close(self) -> List[bytes]:
        parts = [
            {"functionCall": {"name": call["name"], "args": parse_arguments(call["arguments"])}}
            for _, call in sorted(self.calls.items())
        ]
        finish = FINISH_FROM_HUB.get(self.finish_reason or "stop", "STOP")
        usage = _usage_metadata(self.usage) if self.usage else None
        return [self._payload(parts, finish, usage)]


class GeminiCLIEncoder(GeminiEncoder):
    wrap = True


def cli_request_from_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    project = ""
    if ctx.credentials is not None:
        project = ctx.credentials.provider_specific_data.get("projectId", "")
    return {"model": ctx.model, "project": project, "request": request_from_hub(body, ctx)}


def cli_response_from_hub(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    return {"response": response_from_hub(body, model)}


GEMINI_CODEC = Codec(
    format=WireFormat.GEMINI_GENERATE,
    request_to_hub=request_to_hub,
    request_from_hub=request_from_hub,
    response_to_hub=response_to_hub,
    response_from_hub=response_from_hub,
    decoder=GeminiDecoder,
    encoder=GeminiEncoder,
)

GEMINI_CLI_CODEC = Codec(
    format=WireFormat.GEMINI_CLI,
    request_to_hub=request_to_hub,
    request_from_hub=cli_request_from_hub,
    response_to_hub=response_to_hub,
    response_from_hub=cli_response_from_hub,
    decoder=GeminiDecoder,
    encoder=GeminiCLIEncoder,
)
