"""Provider-agnostic model transport interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union


# ════════════════════════════════════════════════════════
# Transport Exception Hierarchy: classify errors by type,
# not by string matching.  SendController catches these.
# ════════════════════════════════════════════════════════

class TransportError(Exception):
    """Base class for all model transport errors."""
    pass

class TransportRateLimitError(TransportError):
    """429: rate limited after all retries exhausted."""
    pass

class TransportAuthError(TransportError):
    """401/403: authentication or authorization failure."""
    pass

class TransportBadRequestError(TransportError):
    """400: bad request (malformed prompt, oversized image, etc.)."""
    pass

class EmptyReplyError(TransportError):
    """Model returned no text."""
    pass


# Provider families that issue continuation signatures
FAMILY_GEMINI = "gemini"
FAMILY_OPENAI = "openai"


@dataclass
class ContentPart:
    """One part of a structured block: text (optionally signed) or an image."""
    type: str                               # 'text' | 'image_url'
    text: Optional[str] = None
    image_url: Optional[str] = None
    thought_signature: Optional[str] = None
    message_id: Optional[str] = None        # image parts: the message the image belongs to

    @classmethod
    def text_part(cls, text: str, thought_signature: Optional[str] = None) -> "ContentPart":
        return cls(type="text", text=text, thought_signature=thought_signature)

    @classmethod
    def image_part(cls, url: str, message_id: Optional[str] = None) -> "ContentPart":
        return cls(type="image_url", image_url=url, message_id=message_id)

    def to_dict(self) -> dict:
        if self.type == "image_url":
            return {"type": "image_url", "image_url": {"url": self.image_url}}
        data = {"type": "text", "text": self.text or ""}
        if self.thought_signature:
            data["thought_signature"] = self.thought_signature
        return data


@dataclass
class PromptBlock:
    role: str                               # 'system', 'user', 'assistant'
    content: Union[str, list[ContentPart]]

    @property
    def is_structured(self) -> bool:
        return isinstance(self.content, list)

    @property
    def text(self) -> str:
        """Plain text of the block (image parts dropped)."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text or "" for p in self.content if p.type == "text")

    def to_dict(self) -> dict:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {"role": self.role, "content": [p.to_dict() for p in self.content]}


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    thinking_tokens: int = 0


@dataclass
class TransportResponse:
    text: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    continuation_signature: Optional[str] = None
    provider_family: Optional[str] = None
    raw: Optional[dict] = None


class ModelTransport(ABC):
    """Abstract base class for model transports."""

    @abstractmethod
    async def complete(
        self,
        blocks: list[PromptBlock],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> TransportResponse:
        """Send the assembled blocks and return the reply."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Driver name."""
        ...

    @property
    def family(self) -> str:
        """Provider family. Signatures are only replayed to the family that issued them."""
        return FAMILY_OPENAI

    @property
    def multimodal(self) -> bool:
        """Whether structured blocks with image parts are accepted."""
        return True

    def accepts_signature(self, family: Optional[str]) -> bool:
        return signature_accepted(family, self.family)


def signature_accepted(signature_family: Optional[str], transport_family: Optional[str]) -> bool:
    """Continuation signatures are only replayed to the family that issued them."""
    return bool(transport_family) and signature_family == transport_family


def raise_for_transport_status(resp) -> None:
    """Map an error response to the typed hierarchy; other codes raise HTTPStatusError."""
    code = resp.status_code
    if code < 400:
        return
    detail = resp.text[:500]
    if code == 429:
        raise TransportRateLimitError(f"Rate limited (429): {detail[:200]}")
    if code in (401, 403):
        raise TransportAuthError(f"Authentication failed ({code}): {detail[:200]}")
    if code == 400:
        raise TransportBadRequestError(f"Bad request (400): {detail}")
    resp.raise_for_status()
