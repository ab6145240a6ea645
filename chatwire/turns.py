"""Turn aggregation for structured (multimodal) history output.

Consecutive contact-authored, image-free lines form one turn. A turn whose
first message carries a continuation signature becomes its own assistant
block tagged with that signature; any other turn folds back into the
running plain-text block. Image messages always get a block of their own.
"""

import logging
from typing import Optional

from .llm.provider import ContentPart, PromptBlock, signature_accepted
from .models import SENDER_CONTACT

logger = logging.getLogger("chatwire.turns")


class TurnAggregator:

    def __init__(self, header: str, transport_family: Optional[str] = None):
        self.header = header
        self.transport_family = transport_family
        self.blocks: list[PromptBlock] = []
        self._text = header
        self._turn: list[str] = []
        self._turn_signature: Optional[str] = None
        self._turn_signature_family: Optional[str] = None
        self.dropped_signatures = 0

    def signature_for(self, signature: Optional[str], family: Optional[str]) -> Optional[str]:
        if not signature:
            return None
        if signature_accepted(family, self.transport_family):
            return signature
        self.dropped_signatures += 1
        logger.debug(f"Dropping continuation signature from family {family!r} (transport: {self.transport_family!r})")
        return None

    @property
    def in_turn(self) -> bool:
        return bool(self._turn)

    def _flush_text(self):
        # the header goes out on its own when a block follows it directly
        if self._text.strip():
            self.blocks.append(PromptBlock(role="system", content=self._text))
            self._text = ""

    def flush_turn(self):
        if not self._turn:
            return
        turn_text = "\n".join(self._turn) + "\n"
        signature = self.signature_for(self._turn_signature, self._turn_signature_family)
        if signature:
            logger.debug(f"Signed turn of {len(self._turn)} line(s) emitted as its own block")
            self.blocks.append(PromptBlock(
                role="assistant",
                content=[ContentPart.text_part(turn_text.strip(), thought_signature=signature)],
            ))
        else:
            self._text += turn_text
        self._turn = []
        self._turn_signature = None
        self._turn_signature_family = None

    def add_line(
        self,
        line: str,
        sender: str,
        signature: Optional[str] = None,
        signature_family: Optional[str] = None,
    ):
        if sender == SENDER_CONTACT:
            if not self._turn:
                # a new turn starts; text so far goes out first
                self._flush_text()
                self._turn_signature = signature
                self._turn_signature_family = signature_family
            self._turn.append(line)
        else:
            self.flush_turn()
            self._text += line + "\n"

    def add_image(
        self,
        role: str,
        text: str,
        url: str,
        message_id: Optional[str] = None,
        signature: Optional[str] = None,
        signature_family: Optional[str] = None,
    ):
        self.flush_turn()
        self._flush_text()
        first = ContentPart.text_part(text)
        if role == "assistant":
            first.thought_signature = self.signature_for(signature, signature_family)
        self.blocks.append(PromptBlock(role=role, content=[first, ContentPart.image_part(url, message_id)]))

    def finish(self, footer: str) -> list[PromptBlock]:
        self.flush_turn()
        self.blocks.append(PromptBlock(role="system", content=self._text + footer))
        return self.blocks
