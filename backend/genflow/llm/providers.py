"""
OpenAI-compatible provider gateway used by the node executors.

Each provider exposes the ``/chat/completions`` and ``/images/generations``
endpoints; API keys come from the environment.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from genflow import config

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a provider request fails or returns an unusable payload."""


class UnknownProviderError(ProviderError):
    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Unknown provider: {provider_id}")


class ProviderConfig(BaseModel):
    id: str
    name: str
    base_url: str
    api_key_env: str
    text_model: str
    vision_model: str
    supports_vision: bool = True


PROVIDERS: dict[str, ProviderConfig] = {
    "mistral": ProviderConfig(
        id="mistral",
        name="Mistral AI",
        base_url="https://api.mistral.ai/v1",
        api_key_env="MISTRAL_API_KEY",
        text_model="magistral-medium-2509",
        vision_model="pixtral-12b-2409",
    ),
    "glm": ProviderConfig(
        id="glm",
        name="GLM (Zhipu AI)",
        base_url="https://open.bigmodel.cn/api/paas/v4",
        api_key_env="GLM_API_KEY",
        text_model="glm-4.7-flash",
        vision_model="glm-4.6v",
    ),
    "openrouter": ProviderConfig(
        id="openrouter",
        name="OpenRouter",
        base_url="https://openrouter.ai/api/v1",
        api_key_env="OPENROUTER_API_KEY",
        text_model="cognitivecomputations/dolphin-mistral-24b-venice-edition:free",
        vision_model="cognitivecomputations/dolphin-mistral-24b-venice-edition:free",
        supports_vision=False,
    ),
}


def get_provider(provider_id: str) -> ProviderConfig:
    provider = PROVIDERS.get(provider_id)
    if provider is None:
        raise UnknownProviderError(provider_id)
    return provider


def list_providers() -> list[dict[str, Any]]:
    return [
        {"id": p.id, "name": p.name, "supports_vision": p.supports_vision}
        for p in PROVIDERS.values()
    ]


def extract_text_content(content: Any) -> str:
    """
    Extract text from a chat completion message content.

    Reasoning models return an array of content blocks instead of a string.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            str(block.get("text") or "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return str(content or "")


async def _post(provider: ProviderConfig, path: str, payload: dict[str, Any]) -> dict[str, Any]:
    api_key = os.getenv(provider.api_key_env)
    if not api_key:
        raise ProviderError(f"{provider.api_key_env} is not set")

    url = f"{provider.base_url}{path}"
    headers = {"Authorization": f"Bearer {api_key}"}
    try:
        async with httpx.AsyncClient(timeout=config.PROVIDER_TIMEOUT_SECONDS) as client:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
    except httpx.HTTPStatusError as e:
        logger.warning(
            "%s request to %s failed with %d: %s",
            provider.name, path, e.response.status_code, e.response.text[:200],
        )
        raise ProviderError(f"{provider.name} returned HTTP {e.response.status_code}") from e
    except httpx.HTTPError as e:
        raise ProviderError(f"{provider.name} request failed: {e}") from e


async def chat_completion(
    provider_id: str,
    messages: list[dict[str, Any]],
    model: Optional[str] = None,
    max_tokens: Optional[int] = None,
    vision: bool = False,
) -> str:
    """Run a chat completion and return the assistant's text."""
    provider = get_provider(provider_id)
    if vision and not provider.supports_vision:
        raise ProviderError(f"{provider.name} does not support image input")

    payload: dict[str, Any] = {
        "model": model or (provider.vision_model if vision else provider.text_model),
        "messages": messages,
    }
    if max_tokens:
        payload["max_tokens"] = max_tokens

    data = await _post(provider, "/chat/completions", payload)
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise ProviderError(f"{provider.name} returned no completion") from e

    text = extract_text_content(content).strip()
    if not text:
        raise ProviderError(f"{provider.name} returned an empty completion")
    return text


async def describe_image(
    provider_id: str,
    image: str,
    instruction: str,
    model: Optional[str] = None,
    max_tokens: Optional[int] = None,
) -> str:
    """Ask a vision model about ``image`` (data URL or http URL)."""
    messages = [{
        "role": "user",
        "content": [
            {"type": "text", "text": instruction},
            {"type": "image_url", "image_url": {"url": image}},
        ],
    }]
    return await chat_completion(provider_id, messages, model=model, max_tokens=max_tokens, vision=True)


async def generate_image(
    prompt: str,
    provider_id: Optional[str] = None,
    model: Optional[str] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> str:
    """Generate an image and return it as a data URL (or hosted URL)."""
    provider = get_provider(provider_id or config.IMAGE_PROVIDER_ID)
    payload: dict[str, Any] = {
        "prompt": prompt,
        "n": 1,
        "response_format": "b64_json",
    }
    if model or config.IMAGE_MODEL:
        payload["model"] = model or config.IMAGE_MODEL
    if width and height:
        payload["size"] = f"{width}x{height}"

    data = await _post(provider, "/images/generations", payload)
    try:
        item = data["data"][0]
    except (KeyError, IndexError, TypeError) as e:
        raise ProviderError("No image was generated") from e

    if item.get("b64_json"):
        return f"data:image/png;base64,{item['b64_json']}"
    if item.get("url"):
        return item["url"]
    raise ProviderError("No image was generated")
