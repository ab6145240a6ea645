"""Tolerant parser for model replies.

Closing tags are optional: a role block ends at the next role block, and
a payload ends at its end marker, at any other section marker, or at the
end of the block. Every non-blank payload line is one bubble.
"""

import logging
import random
import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from . import markers
from .context import plan_outcome
from .errors import ReplyFormatError
from .models import (
    EMOJI,
    FILE,
    FRIEND_REQUEST,
    IMAGE,
    QUOTE,
    RECALLED,
    RECALLED_PENDING,
    REDPACKET,
    SENDER_CONTACT,
    SENDER_USER,
    TEXT,
    TRANSFER,
    VIDEO,
    ChatMessage,
    message_snapshot,
)
from .numbering import ReferenceMap
from .store import ChatStore, ContactDirectory, DeletedContacts, EmojiCatalog, PlanBook

logger = logging.getLogger("chatwire.parser")

QUOTE_PLACEHOLDER = "quote-placeholder"
PLAN_RESPONSE_PLACEHOLDER = "plan-response-placeholder"

PLAN_STORIES = {
    "顺利": ["一切都很顺利，没有发生意外", "过程很愉快，双方都很满意", "按照计划完成，气氛融洽"],
    "麻烦": ["遇到了一些小波折，但最终还是完成了", "过程中出现了小意外，增添了一些趣味", "发生了点小麻烦，不过也不是什么大事"],
    "好事": ["意外收获了惊喜！", "发生了意想不到的好事", "运气真好，遇到了特别开心的事"],
}

_ROLE_TAG_RE = re.compile(r"\[角色-.+?\]")


@dataclass
class RoleBlock:
    role_name: str
    content: str


@dataclass
class ParsedBubble:
    role_name: str
    type: str
    raw: str
    content: Optional[str] = None
    emoji_name: Optional[str] = None
    amount: Optional[float] = None
    message: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[str] = None
    original_content: Optional[str] = None
    original_type: Optional[str] = None
    can_peek: Optional[bool] = None
    ref_number: Optional[int] = None
    reply_content: Optional[str] = None
    quoted_message: Optional[dict] = None
    contact_id: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return self.type in (QUOTE_PLACEHOLDER, PLAN_RESPONSE_PLACEHOLDER)

    def demote(self, content: Optional[str] = None) -> "ParsedBubble":
        """Plain-text copy of this bubble, by default reproducing the raw line."""
        return ParsedBubble(
            role_name=self.role_name,
            type=TEXT,
            raw=self.raw,
            content=self.raw if content is None else content,
            contact_id=self.contact_id,
        )

    def to_chat_message(self, message_id: str, timestamp: int) -> ChatMessage:
        """Persistable message. A pending recall is stored as recalled."""
        if self.is_placeholder:
            raise ValueError(f"Unresolved {self.type} cannot be persisted")
        mtype = RECALLED if self.type == RECALLED_PENDING else self.type
        return ChatMessage(
            id=message_id,
            sender=SENDER_CONTACT,
            time=timestamp,
            type=mtype,
            content=self.content,
            emoji_name=self.emoji_name,
            amount=self.amount,
            message=self.message,
            description=self.description,
            image_url=self.image_url,
            filename=self.filename,
            size=self.size,
            original_content=self.original_content,
            original_type=self.original_type,
            can_peek=self.can_peek,
            reply_content=self.reply_content,
            quoted_message=self.quoted_message,
            recalled_time=timestamp if mtype == RECALLED else None,
        )


# ════════════════════════════════════════════════════════
# Segmentation
# ════════════════════════════════════════════════════════

def validate_reply(text: str):
    """Raise ReplyFormatError unless the reply has a role tag and a payload marker."""
    if not text or not _ROLE_TAG_RE.search(text):
        raise ReplyFormatError("Reply has no [角色-NAME] tag", text or "")
    if markers.PAYLOAD_BEGIN not in text:
        raise ReplyFormatError("Reply has no [消息] marker", text)


def split_role_blocks(text: str) -> list[RoleBlock]:
    blocks: list[RoleBlock] = []
    current: Optional[str] = None
    lines: list[str] = []
    for line in text.split("\n"):
        m = markers.ROLE_OPEN_RE.match(line)
        if m:
            if current is not None:
                blocks.append(RoleBlock(current, "\n".join(lines)))
            current = m.group(1).strip()
            lines = []
        elif current is not None:
            lines.append(line)
    if current is not None:
        blocks.append(RoleBlock(current, "\n".join(lines)))
    return blocks


def extract_payload(content: str) -> Optional[str]:
    """Text between [消息] and the nearest boundary; None without a begin marker."""
    start = content.find(markers.PAYLOAD_BEGIN)
    if start == -1:
        return None
    start += len(markers.PAYLOAD_BEGIN)
    ends = [i for i in (content.find(b, start) for b in markers.PAYLOAD_BOUNDARIES) if i != -1]
    return content[start:min(ends)] if ends else content[start:]


def split_bubbles(payload: str) -> list[str]:
    return [line.strip() for line in payload.split("\n") if line.strip()]


# ════════════════════════════════════════════════════════
# Classification
# ════════════════════════════════════════════════════════

def _recall(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    bubble.type = RECALLED_PENDING
    bubble.original_content = m.group(1).strip()
    bubble.original_type = TEXT
    bubble.can_peek = True
    return bubble


def _quote(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    bubble.type = QUOTE_PLACEHOLDER
    bubble.ref_number = int(m.group(1))
    bubble.reply_content = m.group(2).strip()
    return bubble


def _legacy_quote(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    logger.warning(f"Quote without a reference number, kept as text: {bubble.raw[:40]}")
    return bubble.demote()


def _plan_response(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    bubble.type = PLAN_RESPONSE_PLACEHOLDER
    bubble.ref_number = int(m.group(1))
    bubble.content = f"{markers.PLAN}{m.group(2).strip()}"
    return bubble


def _emoji(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    name = m.group(1).strip()
    emoji = emojis.find_by_name(name)
    bubble.type = EMOJI
    bubble.emoji_name = name
    if emoji:
        bubble.content = emoji.id
    else:
        logger.warning(f"Emoji {name!r} not in catalog, stored by name")
        bubble.content = name
    return bubble


def _parse_amount(rest: str) -> Optional[re.Match]:
    return markers.AMOUNT_RE.match(rest.strip())


def _redpacket(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    amount = _parse_amount(m.group(1))
    if not amount:
        logger.warning(f"Bad red envelope amount, kept as text: {bubble.raw}")
        return bubble.demote()
    bubble.type = REDPACKET
    bubble.amount = float(amount.group(1))
    return bubble


def _transfer(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    rest = m.group(1).strip()
    amount = _parse_amount(rest)
    if not amount:
        logger.warning(f"Bad transfer amount, kept as text: {bubble.raw}")
        return bubble.demote()
    bubble.type = TRANSFER
    bubble.amount = float(amount.group(1))
    bubble.message = markers.TRANSFER_SEP_RE.sub("", rest[amount.end():].strip())
    return bubble


def _image(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    description, _, url = m.group(1).partition("|")
    bubble.type = IMAGE
    bubble.description = description.strip()
    bubble.image_url = url.strip() or None
    return bubble


def _video(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    bubble.type = VIDEO
    bubble.description = m.group(1).strip()
    return bubble


def _file(m: re.Match, bubble: ParsedBubble, emojis: EmojiCatalog) -> ParsedBubble:
    bubble.type = FILE
    bubble.filename = m.group(1).strip()
    bubble.size = m.group(2).strip()
    return bubble


# First match wins. Overlapping prefixes are settled by this order alone.
BUBBLE_RULES = (
    (markers.RECALL_RE, _recall),
    (markers.QUOTE_RE, _quote),
    (markers.LEGACY_QUOTE_RE, _legacy_quote),
    (markers.PLAN_RESPONSE_RE, _plan_response),
    (markers.EMOJI_RE, _emoji),
    (markers.REDPACKET_RE, _redpacket),
    (markers.TRANSFER_RE, _transfer),
    (markers.IMAGE_RE, _image),
    (markers.VIDEO_RE, _video),
    (markers.FILE_RE, _file),
)


def classify_bubble(line: str, role_name: str = "", emojis: Optional[EmojiCatalog] = None) -> ParsedBubble:
    emojis = emojis or EmojiCatalog()
    bubble = ParsedBubble(role_name=role_name, type=TEXT, raw=line)
    for pattern, build in BUBBLE_RULES:
        m = pattern.match(line)
        if m:
            return build(m, bubble, emojis)
    bubble.content = line
    return bubble


# ════════════════════════════════════════════════════════
# Parser
# ════════════════════════════════════════════════════════

class ReplyParser:
    """Parses a reply into bubbles and resolves their references."""

    def __init__(
        self,
        chats: ChatStore,
        contacts: ContactDirectory,
        plans: Optional[PlanBook] = None,
        emojis: Optional[EmojiCatalog] = None,
        deleted: Optional[DeletedContacts] = None,
        user_name: str = "我",
        rng: Optional[random.Random] = None,
    ):
        self.chats = chats
        self.contacts = contacts
        self.plans = plans
        self.emojis = emojis or EmojiCatalog()
        self.deleted = deleted or DeletedContacts()
        self.user_name = user_name
        self.rng = rng or random.Random()

    async def parse(self, text: str, ref_map: Optional[ReferenceMap] = None) -> list[ParsedBubble]:
        ref_map = ref_map or ReferenceMap()
        bubbles: list[ParsedBubble] = []

        for block in split_role_blocks(text):
            payload = extract_payload(block.content)
            if payload is None:
                logger.warning(f"Role block {block.role_name!r} has no [消息] marker, skipped")
                continue
            lines = split_bubbles(payload)
            if not lines:
                continue

            if lines[0].startswith(markers.FRIEND_REQUEST):
                bubbles.extend(self._friend_request_block(block.role_name, lines))
                continue

            contact_id = await self.contacts.match_name(block.role_name)
            if contact_id is None:
                logger.warning(f"Skipping {len(lines)} bubble(s) from unknown role {block.role_name!r}")
                continue
            for line in lines:
                bubble = classify_bubble(line, block.role_name, self.emojis)
                bubble.contact_id = contact_id
                bubbles.append(bubble)

        resolved = []
        for bubble in bubbles:
            try:
                resolved.append(await self._resolve(bubble, ref_map))
            except Exception as e:
                logger.error(f"Resolving {bubble.type} #{bubble.ref_number} failed: {e}", exc_info=True)
                resolved.append(bubble.demote())

        logger.info(f"Parsed {len(resolved)} bubble(s) from {len(text)} chars")
        return resolved

    def _friend_request_block(self, role_name: str, lines: list[str]) -> list[ParsedBubble]:
        record = self.deleted.by_name(role_name)
        if record is None:
            logger.warning(f"Friend request from {role_name!r}, who is not a deleted contact; skipped")
            return []
        out = []
        for line in lines:
            content = line[len(markers.FRIEND_REQUEST):].strip() if line.startswith(markers.FRIEND_REQUEST) else line
            if not content:
                continue
            out.append(ParsedBubble(
                role_name=role_name,
                type=FRIEND_REQUEST,
                raw=line,
                content=content,
                contact_id=record.contact_id,
            ))
        logger.info(f"{role_name} asked to be re-added ({len(out)} message(s))")
        return out

    async def _resolve(self, bubble: ParsedBubble, ref_map: ReferenceMap) -> ParsedBubble:
        if bubble.type == QUOTE_PLACEHOLDER:
            return await self._resolve_quote(bubble, ref_map)
        if bubble.type == PLAN_RESPONSE_PLACEHOLDER:
            return await self._resolve_plan(bubble, ref_map)
        return bubble

    async def _lookup(self, bubble: ParsedBubble, ref_map: ReferenceMap) -> tuple[Optional[str], Optional[ChatMessage]]:
        entry = ref_map.entry(bubble.ref_number)
        if entry is None:
            return None, None
        contact_id = entry.contact_id or bubble.contact_id
        return contact_id, await self.chats.find(contact_id, entry.message_id)

    async def _resolve_quote(self, bubble: ParsedBubble, ref_map: ReferenceMap) -> ParsedBubble:
        contact_id, quoted = await self._lookup(bubble, ref_map)
        if quoted is None:
            logger.warning(f"Quote #{bubble.ref_number} does not resolve, kept as text")
            return bubble.demote()
        if quoted.sender == SENDER_USER:
            sender_name = self.user_name
        elif contact_id == bubble.contact_id:
            sender_name = bubble.role_name
        else:
            # quoting another contact's chat
            owner = await self.contacts.get(contact_id)
            sender_name = owner.name if owner else bubble.role_name
        bubble.type = QUOTE
        bubble.quoted_message = message_snapshot(quoted, sender_name)
        return bubble

    async def _resolve_plan(self, bubble: ParsedBubble, ref_map: ReferenceMap) -> ParsedBubble:
        contact_id, plan_msg = await self._lookup(bubble, ref_map)
        if plan_msg is None or not (plan_msg.content or "").startswith(markers.PLAN):
            logger.warning(f"Plan response #{bubble.ref_number} does not point at a plan, kept as text")
            return bubble.demote()

        accepted = "接受" in bubble.content
        rejected = "拒绝" in bubble.content
        plan = await self.plans.by_message_id(contact_id, plan_msg.id) if self.plans else None

        if plan is None:
            logger.warning(f"No plan record for message {plan_msg.id}")
        elif accepted:
            dice = self.rng.randint(1, 100)
            outcome = plan_outcome(dice)
            story = self.rng.choice(PLAN_STORIES[outcome])
            await self.plans.update(
                contact_id, plan.id,
                status="completed", dice_result=dice, outcome=outcome, story=story,
            )
            await self.chats.update(contact_id, plan_msg.id, content=f"{markers.PLAN_DONE}{plan.title}")
            logger.info(f"Plan {plan.title!r} accepted, rolled {dice} ({outcome})")
        elif rejected:
            await self.plans.update(contact_id, plan.id, status="rejected")
            logger.info(f"Plan {plan.title!r} rejected")

        return bubble.demote(bubble.content)


def new_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


async def persistable_messages(
    bubbles: list[ParsedBubble],
    id_factory: Callable[[], str] = new_message_id,
    clock: Callable[[], float] = time.time,
) -> list[tuple[str, ChatMessage]]:
    """(contact_id, message) pairs in reply order."""
    now = int(clock())
    return [(b.contact_id, b.to_chat_message(id_factory(), now)) for b in bubbles if b.contact_id]
