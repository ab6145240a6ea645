"""OpenAI-compatible transport (OpenAI, Groq, OpenRouter, local servers, etc.)."""

import asyncio
import logging
import httpx
from typing import Optional

from .provider import (
    FAMILY_OPENAI,
    ModelTransport,
    PromptBlock,
    TokenUsage,
    TransportResponse,
    raise_for_transport_status,
)

logger = logging.getLogger("chatwire.llm.openai")


def _format_content(block: PromptBlock):
    if isinstance(block.content, str):
        return block.content
    parts = []
    for part in block.content:
        if part.type == "image_url":
            parts.append({"type": "image_url", "image_url": {"url": part.image_url}})
        elif part.text:
            # signatures belong to another family; only the text travels
            parts.append({"type": "text", "text": part.text})
    return parts


def _merge_consecutive(messages: list[dict]) -> list[dict]:
    """Merge consecutive same-role plain-text system/user messages."""
    if not messages:
        return messages
    result = [messages[0]]
    for msg in messages[1:]:
        prev = result[-1]
        if (
            msg["role"] == prev["role"]
            and msg["role"] in ("user", "system")
            and isinstance(msg["content"], str)
            and isinstance(prev["content"], str)
        ):
            prev["content"] = (prev["content"] + "\n\n" + msg["content"]).strip()
        else:
            result.append(msg)
    return result


class OpenAICompatTransport(ModelTransport):
    """Chat Completions transport.

    Works with any OpenAI-compatible endpoint:
    - OpenAI:     https://api.openai.com/v1
    - Groq:       https://api.groq.com/openai/v1
    - OpenRouter: https://openrouter.ai/api/v1
    """

    def __init__(
        self,
        api_key: str,
        chat_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 120.0,
        provider_name: str = "openai_compat",
    ):
        self.api_key = api_key
        self.chat_model = chat_model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._provider_name = provider_name

    @property
    def name(self) -> str:
        return self._provider_name

    @property
    def family(self) -> str:
        return FAMILY_OPENAI

    def _get_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _format_messages(self, blocks: list[PromptBlock]) -> list[dict]:
        formatted = []
        for block in blocks:
            content = _format_content(block)
            if not content:
                continue
            formatted.append({"role": block.role, "content": content})
        return _merge_consecutive(formatted)

    async def complete(
        self,
        blocks: list[PromptBlock],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> TransportResponse:
        body: dict = {
            "model": self.chat_model,
            "messages": self._format_messages(blocks),
        }
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens and max_tokens > 0:
            body["max_tokens"] = max_tokens

        logger.debug(f"Request: model={self.chat_model}, messages={len(body['messages'])}")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(2):
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers=self._get_headers(),
                )
                if 500 <= resp.status_code < 600 and attempt < 1:
                    logger.warning(
                        f"OpenAI-compatible {resp.status_code}, retrying in 1s "
                        f"(attempt {attempt + 1}/2): {resp.text[:200]}"
                    )
                    await asyncio.sleep(1)
                    continue
                raise_for_transport_status(resp)
                break
            data = resp.json()

        message = data["choices"][0].get("message", {})
        content = message.get("content") or ""
        if isinstance(content, list):
            content = "".join(p.get("text", "") for p in content if isinstance(p, dict))

        usage = data.get("usage") or {}
        details = usage.get("completion_tokens_details") or {}
        return TransportResponse(
            text=content,
            model=data.get("model", self.chat_model),
            usage=TokenUsage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
                thinking_tokens=details.get("reasoning_tokens", 0) or 0,
            ),
            provider_family=self.family,
            raw=data,
        )
