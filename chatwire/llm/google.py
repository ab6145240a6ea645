"""Google Gemini transport via the Gemini API (API key).

Besides plain text, Gemini returns an opaque thoughtSignature with its
reply. Replaying that signature on the same text in the next request lets
the model continue its own earlier reasoning, so this transport both
extracts signatures from responses and writes them back onto text parts.
"""

import asyncio
import logging
import re
import httpx
from typing import Optional

from .provider import (
    FAMILY_GEMINI,
    ModelTransport,
    PromptBlock,
    TokenUsage,
    TransportResponse,
    raise_for_transport_status,
)

logger = logging.getLogger("chatwire.llm.google")

_GEMINI_API = "https://generativelanguage.googleapis.com/v1beta"

_DATA_URL_RE = re.compile(r"^data:([\w/+.-]+);base64,(.+)$", re.DOTALL)

# Regex to match unpaired surrogates; these make the request body invalid JSON.
_SURROGATE_RE = re.compile(
    r'[\ud800-\udbff](?![\udc00-\udfff])'  # high surrogate not followed by low
    r'|(?<![\ud800-\udbff])[\udc00-\udfff]',  # low surrogate not preceded by high
    re.UNICODE,
)

_BASE64_SIGNATURE_RE = re.compile(r'^[A-Za-z0-9+/]+=*$')


def _sanitize_surrogates(text: str) -> str:
    if not text:
        return text
    return _SURROGATE_RE.sub('', text)


def _is_valid_thought_signature(sig: Optional[str]) -> bool:
    """Validate thought signature is proper base64."""
    if not sig:
        return False
    if len(sig) % 4 != 0:
        return False
    return bool(_BASE64_SIGNATURE_RE.match(sig))


def _sanitize_turn_ordering(contents: list[dict]) -> list[dict]:
    """Ensure Gemini user/model alternation.

    Two fixes:
    1. If first content is 'model', prepend bootstrap user message
    2. Merge consecutive same-role messages (parts concatenation)
    """
    if not contents:
        return contents

    result = []
    if contents[0].get("role") == "model":
        result.append({"role": "user", "parts": [{"text": "(conversation start)"}]})

    for msg in contents:
        if result and result[-1].get("role") == msg.get("role"):
            result[-1]["parts"].extend(msg.get("parts", []))
        else:
            result.append(msg)
    return result


class GeminiTransport(ModelTransport):
    """Gemini generateContent transport, signature-aware."""

    def __init__(
        self,
        api_key: str,
        chat_model: str = "gemini-2.5-flash",
        base_url: str = _GEMINI_API,
        timeout: float = 120.0,
    ):
        if not api_key:
            raise ValueError("api_key is required for the Gemini transport")
        self.api_key = api_key
        self.chat_model = chat_model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def family(self) -> str:
        return FAMILY_GEMINI

    def _format_parts(self, block: PromptBlock) -> list[dict]:
        if isinstance(block.content, str):
            text = _sanitize_surrogates(block.content)
            return [{"text": text}] if text and text.strip() else []

        parts = []
        for part in block.content:
            if part.type == "image_url":
                m = _DATA_URL_RE.match(part.image_url or "")
                if not m:
                    logger.warning(f"Image for message {part.message_id} was not materialized, skipped")
                    continue
                parts.append({"inlineData": {"mimeType": m.group(1), "data": m.group(2)}})
                continue
            text = _sanitize_surrogates(part.text or "")
            if not text.strip():
                continue
            entry: dict = {"text": text}
            if block.role == "assistant" and _is_valid_thought_signature(part.thought_signature):
                entry["thoughtSignature"] = part.thought_signature
            parts.append(entry)
        return parts

    def _format_blocks(self, blocks: list[PromptBlock]) -> tuple[Optional[str], list[dict]]:
        """Returns (system_text, contents).

        Leading system blocks become the system instruction; a system block
        after the conversation has started is sent as user content so the
        prompt keeps its order.
        """
        system_chunks: list[str] = []
        contents: list[dict] = []

        for block in blocks:
            if block.role == "system" and not contents:
                text = _sanitize_surrogates(block.text)
                if text.strip():
                    system_chunks.append(text)
                continue
            parts = self._format_parts(block)
            if not parts:
                continue
            role = "model" if block.role == "assistant" else "user"
            contents.append({"role": role, "parts": parts})

        if not contents:
            # Gemini rejects a request without contents
            contents.append({"role": "user", "parts": [{"text": system_chunks.pop() if system_chunks else "."}]})

        system_text = "\n\n".join(system_chunks) if system_chunks else None
        return system_text, _sanitize_turn_ordering(contents)

    async def complete(
        self,
        blocks: list[PromptBlock],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> TransportResponse:
        system_text, contents = self._format_blocks(blocks)

        body: dict = {"contents": contents}
        if system_text:
            body["systemInstruction"] = {"parts": [{"text": system_text}]}

        gen_config: dict = {}
        if temperature is not None:
            gen_config["temperature"] = temperature
        if max_tokens:
            gen_config["maxOutputTokens"] = max_tokens
        if gen_config:
            body["generationConfig"] = gen_config

        url = f"{self.base_url}/models/{self.chat_model}:generateContent"
        logger.debug(f"Request: model={self.chat_model}, contents={len(contents)}")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(2):
                resp = await client.post(url, json=body, params={"key": self.api_key})
                if 500 <= resp.status_code < 600 and attempt < 1:
                    logger.warning(f"Gemini {resp.status_code}, retrying in 1s (attempt {attempt + 1}/2)")
                    await asyncio.sleep(1)
                    continue
                raise_for_transport_status(resp)
                break
            data = resp.json()

        candidates = data.get("candidates") or []
        parts = candidates[0].get("content", {}).get("parts", []) if candidates else []

        text_parts = []
        signature = None
        for part in parts:
            if part.get("thought"):
                # thinking summaries are not part of the reply
                if signature is None and part.get("thoughtSignature"):
                    signature = part["thoughtSignature"]
                continue
            if "text" in part:
                text_parts.append(part["text"])
            if signature is None and part.get("thoughtSignature"):
                signature = part["thoughtSignature"]

        usage = data.get("usageMetadata", {})
        if signature:
            logger.debug(f"Reply carries a continuation signature ({len(signature)} chars)")

        return TransportResponse(
            text="".join(text_parts),
            model=data.get("modelVersion", self.chat_model),
            usage=TokenUsage(
                input_tokens=usage.get("promptTokenCount", 0),
                output_tokens=usage.get("candidatesTokenCount", 0),
                thinking_tokens=usage.get("thoughtsTokenCount", 0),
            ),
            continuation_signature=signature,
            provider_family=self.family,
            raw=data,
        )
