"""Multi-provider streaming chat and image generation clients."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Union
import httpx
from ..config import settings
from .error_handling import CompletionFailed, UpstreamUnavailable

logger = logging.getLogger(__name__)

# Content is plain text or a list of typed parts:
#   {"type": "text", "text": "..."} / {"type": "image", "url": "..."}
ChatMessage = Dict[str, Union[str, List[Dict[str, str]]]]


class LLMError(CompletionFailed):
    """Custom exception for LLM errors."""

    pass


class ImageGenerationError(UpstreamUnavailable):
    pass


async def _iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` line of a server-sent event stream."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload:
            yield payload


def _to_openai_content(content: Union[str, List[Dict[str, str]]]) -> Any:
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if part.get("type") == "image":
            parts.append({"type": "image_url", "image_url": {"url": part["url"]}})
        else:
            parts.append({"type": "text", "text": part.get("text", "")})
    return parts


def _to_anthropic_content(content: Union[str, List[Dict[str, str]]]) -> Any:
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if part.get("type") == "image":
            parts.append({"type": "image", "source": {"type": "url", "url": part["url"]}})
        else:
            parts.append({"type": "text", "text": part.get("text", "")})
    return parts


class ChatClient(ABC):
    """Abstract base class for streaming chat completion clients."""

    @abstractmethod
    def stream_chat(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        max_tokens: int = 800,
    ) -> AsyncIterator[str]:
        """
        Stream a chat completion.

        Args:
            messages: Ordered role-tagged messages, system message first
            model: Model identifier; defaults to the configured model
            max_tokens: Maximum tokens to generate

        Yields:
            Incremental text deltas in production order. Exhaustion means done.
        """
        pass


class OpenAIClient(ChatClient):
    """OpenAI API client."""

    endpoint = "/v1/chat/completions"

    def __init__(
        self, api_key: str, model: str, base_url: str = "https://api.openai.com",
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _build_payload(self, messages: List[ChatMessage], model: Optional[str], max_tokens: int) -> Dict:
        return {
            "model": model or self.model,
            "messages": [
                {"role": m["role"], "content": _to_openai_content(m["content"])}
                for m in messages
            ],
            "max_tokens": max_tokens,
            "stream": True,
        }

    async def stream_chat(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        max_tokens: int = 800,
    ) -> AsyncIterator[str]:
        """Stream text using the OpenAI chat completions format."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = self._build_payload(messages, model, max_tokens)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}{self.endpoint}",
                    headers=headers,
                    json=payload,
                ) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise LLMError(f"HTTP error: {response.status_code} - {body.decode('utf-8', 'replace')[:500]}")
                    async for data in _iter_sse_data(response):
                        if data == "[DONE]":
                            break
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError:
                            logger.warning(f"Skipping malformed stream line: {data[:200]}")
                            continue
                        choices = event.get("choices") or []
                        if not choices:
                            continue
                        delta = (choices[0].get("delta") or {}).get("content")
                        if delta:
                            yield delta

        except httpx.RequestError as e:
            raise LLMError(f"Request error: {e}")
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(f"Unexpected error: {e}")


class CustomClient(OpenAIClient):
    """Custom/third-party API client (OpenAI-compatible)."""

    endpoint = "/chat/completions"


class AnthropicClient(ChatClient):
    """Anthropic Claude API client."""

    def __init__(
        self, api_key: str, model: str, base_url: str = "https://api.anthropic.com",
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def stream_chat(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        max_tokens: int = 800,
    ) -> AsyncIterator[str]:
        """Stream text using the Anthropic messages API."""
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

        system_parts = [m["content"] for m in messages if m["role"] == "system" and isinstance(m["content"], str)]
        payload = {
            "model": model or self.model,
            "messages": [
                {"role": m["role"], "content": _to_anthropic_content(m["content"])}
                for m in messages
                if m["role"] != "system"
            ],
            "max_tokens": max_tokens,
            "stream": True,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/v1/messages",
                    headers=headers,
                    json=payload,
                ) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise LLMError(f"HTTP error: {response.status_code} - {body.decode('utf-8', 'replace')[:500]}")
                    async for data in _iter_sse_data(response):
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError:
                            logger.warning(f"Skipping malformed stream line: {data[:200]}")
                            continue
                        if event.get("type") == "error":
                            raise LLMError(f"Stream error: {event.get('error')}")
                        if event.get("type") == "content_block_delta":
                            text = (event.get("delta") or {}).get("text")
                            if text:
                                yield text
                        elif event.get("type") == "message_stop":
                            break

        except httpx.RequestError as e:
            raise LLMError(f"Request error: {e}")
        except LLMError:
            raise
        except Exception as e:
            raise LLMError(f"Unexpected error: {e}")


class ImageClient(ABC):
    """Abstract image generation capability."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        size: str = "1024x1024",
        quality: str = "high",
        style: str = "natural",
    ) -> List[str]:
        """Return zero or more URLs of generated images."""
        pass


class OpenAIImageClient(ImageClient):
    """
    OpenAI-compatible image generation client.

    The generic ``quality``/``style`` hints are translated to what the
    configured model accepts: dall-e-3 takes ``standard``/``hd`` and a style,
    gpt-image models take ``low``/``medium``/``high`` and no style, dall-e-2
    takes neither.
    """

    DALLE3_QUALITY = {"high": "hd", "hd": "hd", "medium": "standard", "low": "standard", "standard": "standard"}
    DALLE3_STYLES = ("natural", "vivid")
    GPT_IMAGE_QUALITY = {"hd": "high", "standard": "medium"}

    def __init__(self, api_key: str, model: str, base_url: str = "https://api.openai.com", timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        # OpenAI-compatible base URLs often already carry the version segment
        if self.base_url.endswith("/v1"):
            return f"{self.base_url}/images/generations"
        return f"{self.base_url}/v1/images/generations"

    def _build_payload(self, prompt: str, size: str, quality: str, style: str) -> Dict:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "n": 1,
            "size": size,
        }
        model = self.model.lower()
        if model.startswith("dall-e-3"):
            payload["quality"] = self.DALLE3_QUALITY.get(quality, "standard")
            payload["style"] = style if style in self.DALLE3_STYLES else "natural"
        elif model.startswith("gpt-image"):
            payload["quality"] = self.GPT_IMAGE_QUALITY.get(quality, quality)
        return payload

    async def generate(
        self,
        prompt: str,
        size: str = "1024x1024",
        quality: str = "high",
        style: str = "natural",
    ) -> List[str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = self._build_payload(prompt, size, quality, style)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.endpoint,
                    headers=headers,
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise ImageGenerationError(f"HTTP error: {e.response.status_code} - {e.response.text}")
        except httpx.RequestError as e:
            raise ImageGenerationError(f"Request error: {e}")
        except ValueError as e:
            raise ImageGenerationError(f"Invalid JSON response: {e}")

        urls = []
        for item in data.get("data", []):
            if item.get("url"):
                urls.append(item["url"])
            elif item.get("b64_json"):
                # gpt-image models only return inline base64
                urls.append(f"data:image/png;base64,{item['b64_json']}")
        return urls


def get_llm_client() -> ChatClient:
    """
    Get chat client based on configuration.

    Returns:
        Configured chat client instance
    """
    if settings.is_anthropic:
        return AnthropicClient(
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            timeout=settings.llm_timeout_seconds,
        )
    elif settings.is_openai:
        return OpenAIClient(
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            timeout=settings.llm_timeout_seconds,
        )
    else:  # custom
        return CustomClient(
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            timeout=settings.llm_timeout_seconds,
        )


def get_image_client() -> ImageClient:
    return OpenAIImageClient(
        api_key=settings.image_api_key,
        model=settings.image_model,
        base_url=settings.image_base_url,
        timeout=settings.image_timeout_seconds,
    )
