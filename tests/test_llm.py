"""Tests for skena.llm: StructuredProvider and ChatProvider over mocked httpx."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from skena.errors import (
    GenerationError,
    GenerationTimeout,
    MalformedResponse,
    MissingCredential,
    RateLimited,
)
from skena.llm import (
    ChatProvider,
    ProviderRequest,
    StructuredProvider,
    ToolSpec,
    describe_schema,
)

SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING"},
        "plotPoints": {"type": "ARRAY", "items": {"type": "STRING"}},
        "type": {"type": "STRING", "enum": ["dialogue", "action"]},
    },
}


def _mock_response(body, status: int = 200, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _gemini(*parts) -> dict:
    return {"candidates": [{"content": {"parts": list(parts)}}]}


# ---------------------------------------------------------------------------
# describe_schema
# ---------------------------------------------------------------------------

def test_describe_schema():
    assert describe_schema(SCHEMA) == {
        "title": "string",
        "plotPoints": ["string"],
        "type": "dialogue|action",
    }


# ---------------------------------------------------------------------------
# StructuredProvider
# ---------------------------------------------------------------------------

class TestStructuredProvider:
    @pytest.fixture
    def provider(self) -> StructuredProvider:
        return StructuredProvider(api_key="k", base_url="http://gemini.test/", model="m1")

    async def test_happy_path(self, provider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini({"text": '{"a":'}, {"text": "1}"})))
        with patch("httpx.AsyncClient.post", mock_post):
            reply = await provider.complete(ProviderRequest(stage="t", prompt="hi"))
        assert reply.text == '{"a":1}'
        assert reply.tool_calls == []

    async def test_url_and_key_header(self, provider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini({"text": "ok"})))
        with patch("httpx.AsyncClient.post", mock_post):
            await provider.complete(ProviderRequest(stage="t", prompt="hi"))
        assert mock_post.call_args[0][0] == "http://gemini.test/v1beta/models/m1:generateContent"
        assert mock_post.call_args.kwargs["headers"]["x-goog-api-key"] == "k"

    async def test_schema_and_system_in_body(self, provider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_gemini({"text": "{}"})))
        request = ProviderRequest(stage="t", prompt="go", system="be brief", output_schema=SCHEMA)
        with patch("httpx.AsyncClient.post", mock_post):
            await provider.complete(request)
        body = mock_post.call_args.kwargs["json"]
        assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert body["generationConfig"]["responseMimeType"] == "application/json"
        assert body["generationConfig"]["responseSchema"] == SCHEMA
        assert body["contents"][0]["parts"][0]["text"] == "go"

    async def test_function_call_parsed(self, provider) -> None:
        part = {"functionCall": {"name": "generate_image", "args": {"prompt": "a cat"}}}
        mock_post = AsyncMock(return_value=_mock_response(_gemini({"text": "Look!"}, part)))
        tools = [ToolSpec(name="generate_image", description="d", parameters={"type": "object"})]
        with patch("httpx.AsyncClient.post", mock_post):
            reply = await provider.complete(ProviderRequest(stage="chat", prompt="show me", tools=tools))
        assert reply.text == "Look!"
        assert reply.tool_calls[0].name == "generate_image"
        assert reply.tool_calls[0].arguments == {"prompt": "a cat"}
        decl = mock_post.call_args.kwargs["json"]["tools"][0]["functionDeclarations"][0]
        assert decl["name"] == "generate_image"

    async def test_missing_key_raises_before_request(self) -> None:
        provider = StructuredProvider(api_key="")
        mock_post = AsyncMock()
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(MissingCredential):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))
        mock_post.assert_not_called()

    async def test_429_is_rate_limited(self, provider) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=429))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(RateLimited) as exc:
                await provider.complete(ProviderRequest(stage="t", prompt="x"))
        assert exc.value.status == 429

    async def test_quota_body_is_rate_limited(self, provider) -> None:
        resp = _mock_response({}, status=403, text='{"error": {"status": "RESOURCE_EXHAUSTED"}}')
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(RateLimited):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))

    async def test_500_is_plain_generation_error(self, provider) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({}, status=500))):
            with pytest.raises(GenerationError) as exc:
                await provider.complete(ProviderRequest(stage="t", prompt="x"))
        assert not isinstance(exc.value, RateLimited)
        assert exc.value.status == 500

    async def test_timeout(self, provider) -> None:
        mock_post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(GenerationTimeout):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))

    async def test_connect_error(self, provider) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(GenerationError, match="Cannot connect"):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))

    @pytest.mark.parametrize("error", [
        httpx.ReadError("connection reset"),
        httpx.RemoteProtocolError("server hung up"),
        httpx.WriteError("broken pipe"),
    ])
    async def test_other_transport_errors_are_generation_errors(self, provider, error) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=error)):
            with pytest.raises(GenerationError) as exc:
                await provider.complete(ProviderRequest(stage="t", prompt="x"))
        assert exc.value.__cause__ is error

    @pytest.mark.parametrize("body", [
        {"candidates": [None]},
        {"candidates": ["text"]},
        {"candidates": [{"content": {"parts": "text"}}]},
    ])
    async def test_bad_candidate_is_malformed(self, provider, body) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(MalformedResponse):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))

    async def test_parts_of_unknown_shape_skipped(self, provider) -> None:
        body = _gemini("junk", {"text": 5}, {"functionCall": "x"}, {"text": "ok"})
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            reply = await provider.complete(ProviderRequest(stage="t", prompt="x"))
        assert reply.text == "ok"
        assert reply.tool_calls == []

    async def test_no_candidates_is_malformed(self, provider) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({"candidates": []}))):
            with pytest.raises(MalformedResponse):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))

    async def test_non_json_body_is_malformed(self, provider) -> None:
        resp = _mock_response(None)
        resp.json.side_effect = ValueError("not json")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(MalformedResponse):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))

    async def test_generate_image_returns_data_url(self, provider) -> None:
        part = {"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(_gemini(part)))):
            url = await provider.generate_image("a castle")
        assert url == "data:image/jpeg;base64,QUJD"

    async def test_generate_image_without_data_fails(self, provider) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(_gemini({"text": "no"})))):
            with pytest.raises(GenerationError, match="No image"):
                await provider.generate_image("a castle")

    async def test_generate_image_with_bad_inline_data(self, provider) -> None:
        body = _gemini({"inlineData": "QUJD"})
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(GenerationError, match="No image"):
                await provider.generate_image("a castle")

    async def test_start_and_poll_video(self, provider) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({"name": "operations/1"}))):
            op = await provider.start_video("waves")
        assert op == "operations/1"

        done = {"done": True, "response": {"generateVideoResponse": {
            "generatedSamples": [{"video": {"uri": "https://v.test/1.mp4"}}]}}}
        mock_get = AsyncMock(side_effect=[_mock_response({"done": False}), _mock_response(done)])
        with patch("httpx.AsyncClient.get", mock_get):
            first = await provider.poll_video(op)
            second = await provider.poll_video(op)
        assert first.done is False
        assert second.uri == "https://v.test/1.mp4"
        assert mock_get.call_args[0][0] == "http://gemini.test/v1beta/operations/1"

    async def test_poll_video_error(self, provider) -> None:
        body = {"done": True, "error": {"message": "blocked"}}
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=_mock_response(body))):
            status = await provider.poll_video("operations/1")
        assert status.done and status.error == "blocked"

    async def test_poll_video_error_as_string(self, provider) -> None:
        body = {"done": True, "error": "quota exceeded"}
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=_mock_response(body))):
            status = await provider.poll_video("operations/1")
        assert status.done and status.error == "quota exceeded"

    async def test_poll_video_bad_response_has_no_uri(self, provider) -> None:
        body = {"done": True, "response": {"generateVideoResponse": {"generatedSamples": ["x"]}}}
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=_mock_response(body))):
            status = await provider.poll_video("operations/1")
        assert status.done and status.uri is None


# ---------------------------------------------------------------------------
# ChatProvider
# ---------------------------------------------------------------------------

class TestChatProvider:
    @pytest.fixture
    def provider(self) -> ChatProvider:
        return ChatProvider(api_key="secret", base_url="http://router.test/api/v1/", model="m2")

    async def test_happy_path(self, provider) -> None:
        body = {"choices": [{"message": {"content": "Hello."}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            reply = await provider.complete(ProviderRequest(stage="t", prompt="hi", system="sys"))
        assert reply.text == "Hello."
        assert mock_post.call_args[0][0] == "http://router.test/api/v1/chat/completions"
        sent = mock_post.call_args.kwargs["json"]
        assert sent["model"] == "m2"
        assert sent["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]
        assert "response_format" not in sent
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"

    async def test_schema_described_in_band(self, provider) -> None:
        body = {"choices": [{"message": {"content": "{}"}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            await provider.complete(ProviderRequest(stage="t", prompt="go", output_schema=SCHEMA))
        sent = mock_post.call_args.kwargs["json"]
        system = sent["messages"][0]
        assert system["role"] == "system"
        assert "Return valid JSON with this structure" in system["content"]
        assert '"plotPoints"' in system["content"]
        assert sent["response_format"] == {"type": "json_object"}

    async def test_tool_calls_parsed(self, provider) -> None:
        body = {"choices": [{"message": {"content": None, "tool_calls": [
            {"type": "function", "function": {"name": "generate_video", "arguments": '{"prompt": "sea"}'}},
        ]}}]}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            reply = await provider.complete(ProviderRequest(stage="chat", prompt="x"))
        assert reply.text == ""
        assert reply.tool_calls[0].name == "generate_video"
        assert reply.tool_calls[0].arguments == {"prompt": "sea"}

    async def test_missing_key(self) -> None:
        with pytest.raises(MissingCredential):
            await ChatProvider(api_key="").complete(ProviderRequest(stage="t", prompt="x"))

    async def test_no_choices_is_malformed(self, provider) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({"choices": []}))):
            with pytest.raises(MalformedResponse):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))

    @pytest.mark.parametrize("body", [
        {"choices": [{"message": "hi"}]},
        {"choices": ["hi"]},
        {"choices": [{"message": {"content": "x", "tool_calls": ["oops"]}}]},
        {"choices": [{"message": {"content": "x", "tool_calls": "oops"}}]},
    ])
    async def test_bad_message_is_malformed(self, provider, body) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            with pytest.raises(MalformedResponse):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))

    async def test_read_error_is_generation_error(self, provider) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("reset"))):
            with pytest.raises(GenerationError):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))

    async def test_429(self, provider) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response({}, status=429))):
            with pytest.raises(RateLimited):
                await provider.complete(ProviderRequest(stage="t", prompt="x"))
