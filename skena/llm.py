"""Generation providers: HTTP connections to the two supported backends.

The generation client talks to a provider through one capability:

    async def complete(self, request: ProviderRequest) -> ProviderReply: ...

Two implementations are provided, selected by ``Settings.provider``:

    StructuredProvider  Gemini API. Accepts a declared response schema and
                        returns JSON that follows it. Also serves image
                        generation and long-running video operations.
    ChatProvider        OpenRouter chat completions. Has no schema support,
                        so the schema is described in-band in the system
                        message and JSON mode is requested.

Both raise the ``skena.errors`` taxonomy for every connection and protocol
failure. Neither retries; retry and the timeout race live in
``skena.resilience``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from skena.config import ProviderKind
from skena.errors import (
    GenerationError,
    GenerationTimeout,
    MalformedResponse,
    MissingCredential,
    RateLimited,
)
from skena.normalizer import parse_json

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / reply types shared by both providers
# ---------------------------------------------------------------------------

class ToolSpec(BaseModel):
    """A function the model may ask us to call."""

    name: str
    description: str
    parameters: dict[str, Any]


class ToolCall(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ProviderRequest(BaseModel):
    stage: str                      # intent name, used for logging
    prompt: str
    system: str = ""
    output_schema: dict[str, Any] | None = None
    json_mode: bool = False
    tools: list[ToolSpec] = Field(default_factory=list)


class ProviderReply(BaseModel):
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


class VideoStatus(BaseModel):
    done: bool
    uri: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Protocol: every provider must match this signature
# ---------------------------------------------------------------------------

class Provider(Protocol):
    kind: ProviderKind

    async def complete(self, request: ProviderRequest) -> ProviderReply: ...


# ---------------------------------------------------------------------------
# Shared HTTP plumbing
# ---------------------------------------------------------------------------

def _is_quota_error(response: httpx.Response) -> bool:
    body = getattr(response, "text", "")
    if not isinstance(body, str):
        return False
    return "quota" in body.lower() or "RESOURCE_EXHAUSTED" in body


async def _request(
    method: str,
    url: str,
    *,
    headers: dict[str, str],
    timeout: float,
    body: dict | None = None,
) -> dict:
    """Send one HTTP request and return the decoded JSON body."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            if method == "GET":
                resp = await client.get(url, headers=headers)
            else:
                resp = await client.post(url, json=body, headers=headers)
            resp.raise_for_status()
    except httpx.ConnectError as e:
        raise GenerationError(f"Cannot connect to generation provider at {url}") from e
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        if status == 429 or _is_quota_error(e.response):
            raise RateLimited(f"Generation provider rate limited (HTTP {status})", status) from e
        raise GenerationError(f"Generation provider returned HTTP {status}", status) from e
    except httpx.TimeoutException as e:
        raise GenerationTimeout(f"Generation provider timed out after {timeout}s") from e
    except httpx.HTTPError as e:
        raise GenerationError(f"Generation provider connection failed: {e}") from e

    try:
        data = resp.json()
    except ValueError as e:
        raise MalformedResponse("Generation provider returned a non-JSON body") from e
    if not isinstance(data, dict):
        raise MalformedResponse("Generation provider returned an unexpected body")
    return data


def _video_uri(response: Any) -> str | None:
    """First generated sample's URI in a finished video operation, if any."""
    if not isinstance(response, dict):
        return None
    result = response.get("generateVideoResponse")
    samples = result.get("generatedSamples") if isinstance(result, dict) else None
    if not samples or not isinstance(samples, list) or not isinstance(samples[0], dict):
        return None
    video = samples[0].get("video")
    uri = video.get("uri") if isinstance(video, dict) else None
    return uri if isinstance(uri, str) else None


def describe_schema(schema: dict[str, Any]) -> Any:
    """Render a Gemini-style schema as a JSON skeleton for in-band prompting.

    {"type": "OBJECT", "properties": {"tags": {"type": "ARRAY", "items": {"type": "STRING"}}}}
    → {"tags": ["string"]}
    """
    kind = schema.get("type", "STRING")
    if kind == "OBJECT":
        return {k: describe_schema(v) for k, v in schema.get("properties", {}).items()}
    if kind == "ARRAY":
        return [describe_schema(schema.get("items", {}))]
    if "enum" in schema:
        return "|".join(schema["enum"])
    return kind.lower()


# ---------------------------------------------------------------------------
# StructuredProvider: Gemini API
# ---------------------------------------------------------------------------

class StructuredProvider:
    """Async client for the Gemini ``generateContent`` API.

    Endpoints:
      POST {base}/v1beta/models/{model}:generateContent
           Response: {"candidates": [{"content": {"parts": [...]}}]}
           Parts carry "text", "functionCall" or "inlineData".
      POST {base}/v1beta/models/{video_model}:predictLongRunning
           Response: {"name": "<operation>"}
      GET  {base}/v1beta/{operation}
           Response: {"done": bool, "response": {...}} or {"error": {...}}

    Args:
        api_key:      Gemini API key. Required for every call.
        base_url:     API root, e.g. "https://generativelanguage.googleapis.com".
        model:        Text model.
        image_model:  Image-capable model.
        video_model:  Video model used for long-running operations.
        timeout:      HTTP timeout in seconds. Defaults to 120.
    """

    kind = ProviderKind.STRUCTURED

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        model: str = "gemini-2.5-flash",
        image_model: str = "gemini-2.5-flash-image",
        video_model: str = "veo-3.0-fast-generate-001",
        timeout: float = 120.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._image_model = image_model
        self._video_model = video_model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise MissingCredential("Gemini API key is not configured")
        return {"Content-Type": "application/json", "x-goog-api-key": self._api_key}

    def _model_url(self, model: str, method: str) -> str:
        return f"{self._base_url}/v1beta/models/{model}:{method}"

    def _build_body(self, request: ProviderRequest) -> dict:
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
        }
        if request.system:
            body["systemInstruction"] = {"parts": [{"text": request.system}]}
        if request.output_schema is not None:
            body["generationConfig"] = {
                "responseMimeType": "application/json",
                "responseSchema": request.output_schema,
            }
        elif request.json_mode:
            body["generationConfig"] = {"responseMimeType": "application/json"}
        if request.tools:
            body["tools"] = [{
                "functionDeclarations": [
                    {"name": t.name, "description": t.description, "parameters": t.parameters}
                    for t in request.tools
                ],
            }]
        return body

    @staticmethod
    def _parts(data: dict) -> list[dict]:
        candidates = data.get("candidates")
        if not candidates or not isinstance(candidates, list):
            raise MalformedResponse("Unexpected response format from Gemini: no candidates")
        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise MalformedResponse("Unexpected response format from Gemini: bad candidate")
        content = candidate.get("content") or {}
        parts = content.get("parts") if isinstance(content, dict) else None
        if parts is None:
            return []
        if not isinstance(parts, list):
            raise MalformedResponse("Unexpected response format from Gemini: bad parts")
        # parts of unknown shape are skipped
        return [p for p in parts if isinstance(p, dict)]

    async def complete(self, request: ProviderRequest) -> ProviderReply:
        headers = self._headers()
        url = self._model_url(self._model, "generateContent")
        logger.debug("llm call stage=%s url=%s prompt_len=%d", request.stage, url, len(request.prompt))

        data = await _request("POST", url, headers=headers, timeout=self._timeout, body=self._build_body(request))

        texts: list[str] = []
        calls: list[ToolCall] = []
        for part in self._parts(data):
            if isinstance(part.get("text"), str):
                texts.append(part["text"])
            elif isinstance(part.get("functionCall"), dict):
                fc = part["functionCall"]
                args = fc.get("args")
                calls.append(ToolCall(
                    name=str(fc.get("name") or ""),
                    arguments=args if isinstance(args, dict) else {},
                ))
        reply = ProviderReply(text="".join(texts), tool_calls=calls)
        logger.debug("llm response stage=%s len=%d tool_calls=%d", request.stage, len(reply.text), len(calls))
        return reply

    async def generate_image(self, prompt: str) -> str:
        """Generate one image and return it as a ``data:`` URL."""
        headers = self._headers()
        url = self._model_url(self._image_model, "generateContent")
        logger.debug("image call url=%s prompt_len=%d", url, len(prompt))
        body = {"contents": [{"parts": [{"text": prompt}]}]}

        data = await _request("POST", url, headers=headers, timeout=self._timeout, body=body)
        for part in self._parts(data):
            inline = part.get("inlineData")
            if isinstance(inline, dict) and inline.get("data"):
                mime = inline.get("mimeType", "image/png")
                return f"data:{mime};base64,{inline['data']}"
        raise GenerationError("No image data in Gemini response")

    async def start_video(self, prompt: str) -> str:
        """Submit a video generation operation and return its name."""
        headers = self._headers()
        url = self._model_url(self._video_model, "predictLongRunning")
        logger.debug("video submit url=%s prompt_len=%d", url, len(prompt))

        data = await _request(
            "POST", url, headers=headers, timeout=self._timeout,
            body={"instances": [{"prompt": prompt}]},
        )
        name = data.get("name")
        if not name or not isinstance(name, str):
            raise MalformedResponse("Video operation response has no name")
        return name

    async def poll_video(self, operation: str) -> VideoStatus:
        headers = self._headers()
        url = f"{self._base_url}/v1beta/{operation}"
        data = await _request("GET", url, headers=headers, timeout=self._timeout)
        if not data.get("done"):
            return VideoStatus(done=False)
        if "error" in data:
            error = data["error"]
            if isinstance(error, dict):
                error = error.get("message", error)
            return VideoStatus(done=True, error=str(error))
        return VideoStatus(done=True, uri=_video_uri(data.get("response")))


# ---------------------------------------------------------------------------
# ChatProvider: OpenRouter chat completions
# ---------------------------------------------------------------------------

class ChatProvider:
    """Async client for an OpenAI-compatible chat completion endpoint.

    POST {base}/chat/completions
         {"model": ..., "messages": [...], "response_format"?: {"type": "json_object"}, "tools"?: [...]}
    Response: {"choices": [{"message": {"content": "...", "tool_calls"?: [...]}}]}

    Args:
        api_key:   Bearer token. Required.
        base_url:  API root, e.g. "https://openrouter.ai/api/v1".
        model:     Model identifier sent with every request.
        app_title: Sent as X-Title for OpenRouter attribution.
        timeout:   HTTP timeout in seconds. Defaults to 120.
    """

    kind = ProviderKind.PLAIN

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        model: str = "google/gemini-2.0-flash-001",
        app_title: str = "Skena",
        timeout: float = 120.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._app_title = app_title
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise MissingCredential("OpenRouter API key is not configured")
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            "X-Title": self._app_title,
        }

    def _build_body(self, request: ProviderRequest) -> dict:
        system = request.system
        if request.output_schema is not None:
            skeleton = json.dumps(describe_schema(request.output_schema), indent=2, ensure_ascii=False)
            system = f"{system}\nReturn valid JSON with this structure:\n{skeleton}".strip()

        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": request.prompt})

        body: dict[str, Any] = {"model": self._model, "messages": messages}
        if request.json_mode or request.output_schema is not None:
            body["response_format"] = {"type": "json_object"}
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in request.tools
            ]
        return body

    async def complete(self, request: ProviderRequest) -> ProviderReply:
        headers = self._headers()
        url = f"{self._base_url}/chat/completions"
        logger.debug("llm call stage=%s url=%s prompt_len=%d", request.stage, url, len(request.prompt))

        data = await _request("POST", url, headers=headers, timeout=self._timeout, body=self._build_body(request))

        choices = data.get("choices")
        if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise MalformedResponse("Unexpected response format from chat completion backend")
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise MalformedResponse("Chat completion choice has no message object")

        calls: list[ToolCall] = []
        tool_calls = message.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            raise MalformedResponse("Chat completion tool_calls is not a list")
        for tc in tool_calls:
            fn = tc.get("function") if isinstance(tc, dict) else None
            if not isinstance(fn, dict):
                raise MalformedResponse("Chat completion tool call has no function object")
            arguments = parse_json(fn.get("arguments"), {})
            calls.append(ToolCall(
                name=str(fn.get("name") or ""),
                arguments=arguments if isinstance(arguments, dict) else {},
            ))
        content = message.get("content")
        reply = ProviderReply(text=content if isinstance(content, str) else "", tool_calls=calls)
        logger.debug("llm response stage=%s len=%d tool_calls=%d", request.stage, len(reply.text), len(calls))
        return reply
