import asyncio
import json

import httpx
import pytest

from tutorchat.config import settings
from tutorchat.services import llm_client
from tutorchat.services.llm_client import (
    AnthropicClient,
    CustomClient,
    ImageGenerationError,
    LLMError,
    OpenAIImageClient,
)
from tutorchat.services.visual_aid import VisualAidAdvisor

_RealAsyncClient = httpx.AsyncClient


def _route_to(monkeypatch, handler):
    """Send every client request the module makes to ``handler``."""
    requests = []

    def _recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    def _factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(_recording)
        return _RealAsyncClient(*args, **kwargs)

    monkeypatch.setattr(llm_client.httpx, "AsyncClient", _factory)
    return requests


def _sse_body(events):
    return "".join(f"data: {e}\n\n" for e in events).encode("utf-8")


async def _collect(stream):
    return [chunk async for chunk in stream]


def test_openai_compatible_stream_yields_deltas(monkeypatch):
    events = [
        json.dumps({"choices": [{"delta": {"role": "assistant"}}]}),
        json.dumps({"choices": [{"delta": {"content": "Hel"}}]}),
        "not json",
        json.dumps({"choices": [{"delta": {"content": "lo"}}]}),
        "[DONE]",
        json.dumps({"choices": [{"delta": {"content": "ignored"}}]}),
    ]
    requests = _route_to(monkeypatch, lambda r: httpx.Response(200, content=_sse_body(events)))
    client = CustomClient(api_key="k", model="gpt-4o-mini", base_url="https://llm.example/v1")

    messages = [
        {"role": "system", "content": "be kind"},
        {"role": "user", "content": [
            {"type": "text", "text": "what is this?"},
            {"type": "image", "url": "https://blobs.example/a.png"},
        ]},
    ]
    chunks = asyncio.run(_collect(client.stream_chat(messages, max_tokens=800)))

    assert chunks == ["Hel", "lo"]
    [request] = requests
    assert str(request.url) == "https://llm.example/v1/chat/completions"
    payload = json.loads(request.content)
    assert payload["stream"] is True
    assert payload["max_tokens"] == 800
    assert payload["messages"][1]["content"][1] == {
        "type": "image_url",
        "image_url": {"url": "https://blobs.example/a.png"},
    }


def test_http_error_becomes_llm_error(monkeypatch):
    _route_to(monkeypatch, lambda r: httpx.Response(503, content=b"overloaded"))
    client = CustomClient(api_key="k", model="m", base_url="https://llm.example/v1")

    with pytest.raises(LLMError, match="503"):
        asyncio.run(_collect(client.stream_chat([{"role": "user", "content": "hi"}])))


def test_anthropic_stream_moves_system_prompt(monkeypatch):
    events = [
        json.dumps({"type": "message_start"}),
        json.dumps({"type": "content_block_delta", "delta": {"text": "Bon"}}),
        json.dumps({"type": "content_block_delta", "delta": {"text": "jour"}}),
        json.dumps({"type": "message_stop"}),
    ]
    requests = _route_to(monkeypatch, lambda r: httpx.Response(200, content=_sse_body(events)))
    client = AnthropicClient(api_key="k", model="claude", base_url="https://anthropic.example")

    chunks = asyncio.run(
        _collect(client.stream_chat([
            {"role": "system", "content": "You are a tutor."},
            {"role": "user", "content": "salut"},
        ]))
    )

    assert chunks == ["Bon", "jour"]
    payload = json.loads(requests[0].content)
    assert payload["system"] == "You are a tutor."
    assert [m["role"] for m in payload["messages"]] == ["user"]


def test_image_client_returns_urls(monkeypatch):
    body = {"data": [{"url": "https://images.example/1.png"}, {"revised_prompt": "no image"}]}
    requests = _route_to(monkeypatch, lambda r: httpx.Response(200, json=body))
    client = OpenAIImageClient(api_key="k", model="dall-e-3", base_url="https://img.example")

    urls = asyncio.run(client.generate("a pizza cut into quarters"))

    assert urls == ["https://images.example/1.png"]
    assert str(requests[0].url) == "https://img.example/v1/images/generations"
    payload = json.loads(requests[0].content)
    assert (payload["size"], payload["quality"], payload["style"], payload["n"]) == (
        "1024x1024", "hd", "natural", 1,
    )


def test_image_client_wraps_http_errors(monkeypatch):
    _route_to(monkeypatch, lambda r: httpx.Response(500, text="boom"))
    client = OpenAIImageClient(api_key="k", model="dall-e-3", base_url="https://img.example")

    with pytest.raises(ImageGenerationError):
        asyncio.run(client.generate("anything"))


def test_configured_defaults_produce_a_valid_dalle3_request(monkeypatch):
    body = {"data": [{"url": "https://images.example/aid.png"}]}
    requests = _route_to(monkeypatch, lambda r: httpx.Response(200, json=body))
    advisor = VisualAidAdvisor(llm_client.get_image_client(), enabled=True)

    url = asyncio.run(advisor.illustrate("show me how division works", "Mathematics"))

    assert url == "https://images.example/aid.png"
    [request] = requests
    assert str(request.url) == "https://api.openai.com/v1/images/generations"
    payload = json.loads(request.content)
    assert payload["model"] == settings.image_model == "dall-e-3"
    assert payload["quality"] in ("standard", "hd")
    assert payload["style"] in ("natural", "vivid")
    assert payload["size"] == "1024x1024"


def test_gpt_image_model_gets_no_style_and_inline_images(monkeypatch):
    body = {"data": [{"b64_json": "aGVsbG8="}]}
    requests = _route_to(monkeypatch, lambda r: httpx.Response(200, json=body))
    client = OpenAIImageClient(api_key="k", model="gpt-image-1", base_url="https://img.example")

    urls = asyncio.run(client.generate("a triangle", quality="high", style="natural"))

    assert urls == ["data:image/png;base64,aGVsbG8="]
    payload = json.loads(requests[0].content)
    assert payload["quality"] == "high"
    assert "style" not in payload
