"""Tests for the OpenRouter analysis provider adapter."""
import json

import httpx
import pytest

from conftest import sample_json, split_fragments
from postlab.api.exceptions import ConfigurationError, ProviderError
from postlab.llm.openrouter_client import OpenRouterClient
from postlab.models.schemas import AnalysisRequest, ImageData, ModelTier, UserContext


def _client(handler) -> OpenRouterClient:
    return OpenRouterClient(
        api_key="test-key",
        base_url="https://openrouter.test/api/v1",
        transport=httpx.MockTransport(handler),
    )


def _completion(content) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _sse_body(fragments: list[str]) -> bytes:
    lines = [": OPENROUTER PROCESSING", ""]
    lines.append("data: " + json.dumps({"choices": [{"delta": {"role": "assistant"}}]}))
    lines.append("")
    for fragment in fragments:
        lines.append("data: " + json.dumps({"choices": [{"delta": {"content": fragment}}]}))
        lines.append("")
    lines.append("data: [DONE]")
    lines.append("")
    return "\n".join(lines).encode()


def test_requires_api_key():
    with pytest.raises(ConfigurationError):
        OpenRouterClient(api_key=None)


def test_model_per_tier():
    client = OpenRouterClient(api_key="k", premium_model="big", lite_model="small")
    assert client.model_for(ModelTier.PREMIUM) == "big"
    assert client.model_for(ModelTier.LITE) == "small"


def test_messages_carry_image_and_audience():
    request = AnalysisRequest(
        text="hello world",
        image=ImageData(base64="AAAA", mime_type="image/png"),
        user_context=UserContext(target_audience="designers"),
    )

    system, user = OpenRouterClient.build_messages(request)

    assert system["role"] == "system"
    assert system["content"].endswith("[Audience: designers]")
    assert user["content"][0] == {
        "type": "image_url",
        "image_url": {"url": "data:image/png;base64,AAAA"},
    }
    assert 'Tweet to analyze: "hello world"' in user["content"][1]["text"]


@pytest.mark.asyncio
async def test_generate_returns_message_text():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion(sample_json()))

    async with _client(handler) as client:
        text = await client.generate(
            AnalysisRequest(text="ship it", model_tier=ModelTier.LITE)
        )

    assert text == sample_json()
    assert seen["path"] == "/api/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["model"] == OpenRouterClient.MODEL_LITE
    assert seen["body"]["stream"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401, 429, 500, 503])
async def test_generate_http_errors_raise_provider_error(status):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": "nope"}})

    async with _client(handler) as client:
        with pytest.raises(ProviderError) as exc_info:
            await client.generate(AnalysisRequest(text="x"))

    assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_generate_empty_choices_is_provider_error():
    async with _client(lambda request: httpx.Response(200, json={"choices": []})) as client:
        with pytest.raises(ProviderError):
            await client.generate(AnalysisRequest(text="x"))


@pytest.mark.asyncio
async def test_transport_error_is_provider_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(ProviderError):
            await client.generate(AnalysisRequest(text="x"))
        with pytest.raises(ProviderError):
            async for _ in client.generate_stream(AnalysisRequest(text="x")):
                pass


@pytest.mark.asyncio
async def test_stream_yields_content_fragments():
    fragments = split_fragments(sample_json(), 25)

    def handler(request):
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(
            200, content=_sse_body(fragments), headers={"content-type": "text/event-stream"}
        )

    async with _client(handler) as client:
        received = [f async for f in client.generate_stream(AnalysisRequest(text="x"))]

    assert received == fragments
    assert "".join(received) == sample_json()


@pytest.mark.asyncio
async def test_stream_http_error():
    async with _client(lambda request: httpx.Response(502, text="bad gateway")) as client:
        with pytest.raises(ProviderError) as exc_info:
            async for _ in client.generate_stream(AnalysisRequest(text="x")):
                pass

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_stream_error_chunk_raises():
    body = "\n".join(
        [
            "data: " + json.dumps({"choices": [{"delta": {"content": "{\"tweet\""}}]}),
            "",
            "data: " + json.dumps({"error": {"code": 500, "message": "upstream died"}}),
            "",
        ]
    ).encode()

    async with _client(lambda request: httpx.Response(200, content=body)) as client:
        received = []
        with pytest.raises(ProviderError, match="upstream died"):
            async for fragment in client.generate_stream(AnalysisRequest(text="x")):
                received.append(fragment)

    assert received == ['{"tweet"']


@pytest.mark.parametrize("line", ["[]", "\"x\"", "42"])
@pytest.mark.asyncio
async def test_stream_non_object_chunk_is_provider_error(line):
    body = f"data: {line}\n\ndata: [DONE]\n\n".encode()

    async with _client(lambda request: httpx.Response(200, content=body)) as client:
        with pytest.raises(ProviderError, match="malformed stream chunk"):
            async for _ in client.generate_stream(AnalysisRequest(text="x")):
                pass


@pytest.mark.asyncio
async def test_generate_non_object_envelope_is_provider_error():
    async with _client(lambda request: httpx.Response(200, json=["not", "an", "object"])) as client:
        with pytest.raises(ProviderError, match="malformed envelope"):
            await client.generate(AnalysisRequest(text="x"))


@pytest.mark.asyncio
async def test_chat():
    def handler(request):
        body = json.loads(request.content)
        assert body["messages"][0]["content"].endswith('"gm"')
        return httpx.Response(200, json=_completion("Add a question."))

    async with _client(handler) as client:
        assert await client.chat("how to improve?", "gm") == "Add a question."
