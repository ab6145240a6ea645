"""Per-type rendering of chat messages into prompt text."""

import logging
from datetime import tzinfo
from typing import Optional

from . import markers
from .models import (
    BUY_MEMBERSHIP,
    EMOJI,
    FILE,
    FORWARDED,
    GIFT_MEMBERSHIP,
    IMAGE,
    IMAGE_FAKE,
    IMAGE_REAL,
    POKE,
    QUOTE,
    RECALLED,
    REDPACKET,
    SENDER_USER,
    TEXT,
    TRANSFER,
    VIDEO,
    ChatMessage,
)
from .store import EmojiCatalog
from .timefmt import format_timestamp, time_label

logger = logging.getLogger("chatwire.render")


def _amount(value) -> str:
    """88.0 -> '88', 88.5 -> '88.5'."""
    if value is None:
        return "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _membership_label(msg: ChatMessage) -> str:
    kind = "VIP" if msg.membership_type == "vip" else "SVIP"
    return f"{msg.months}个月{kind}会员"


def summarize_quoted(quoted: Optional[dict]) -> str:
    """Short text for the message a quote points at."""
    if not quoted:
        return "未知消息"
    qtype = quoted.get("type")
    if qtype == TEXT:
        return quoted.get("content") or "[空文本]"
    if qtype == EMOJI:
        return f"{markers.EMOJI}{quoted.get('content') or quoted.get('emoji_name') or '未知'}"
    if qtype in (IMAGE, IMAGE_REAL, IMAGE_FAKE):
        return f"{markers.IMAGE}{quoted.get('description') or '无描述'}"
    if qtype == QUOTE:
        # quote of a quote shows only the reply, never nests
        return quoted.get("reply_content") or "[空回复]"
    return "[不支持的类型]"


def _forwarded_inner(inner: dict) -> str:
    itype = inner.get("type")
    if itype == TEXT:
        return inner.get("content") or ""
    if itype == EMOJI:
        return f"{markers.EMOJI}{inner.get('emoji_name') or ''}"
    if itype in (IMAGE, IMAGE_REAL, IMAGE_FAKE):
        return f"{markers.IMAGE}{inner.get('description') or ''}"
    if itype == QUOTE:
        return f"{markers.QUOTE}{inner.get('reply_content') or ''}"
    if itype == TRANSFER:
        return f"{markers.TRANSFER}{_amount(inner.get('amount'))}元"
    if itype == REDPACKET:
        return f"{markers.REDPACKET}{_amount(inner.get('amount'))}元"
    if itype == VIDEO:
        return f"{markers.VIDEO}{inner.get('description') or ''}"
    if itype == FILE:
        return f"{markers.FILE}{inner.get('filename') or ''}"
    if itype == RECALLED:
        return "[撤回的消息]"
    if itype == POKE:
        return markers.POKE
    return inner.get("content") or "[未知消息]"


class MessageRenderer:
    """Turns stored messages into the one-line bodies the model reads.

    One renderer serves one contact within one build; the user's display
    name and the emoji catalog are fixed for its lifetime.
    """

    def __init__(
        self,
        user_name: str,
        contact_name: str,
        emojis: Optional[EmojiCatalog] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.user_name = user_name
        self.contact_name = contact_name
        self.emojis = emojis or EmojiCatalog()
        self.tz = tz

    def sender_name(self, msg: ChatMessage) -> str:
        return self.user_name if msg.sender == SENDER_USER else self.contact_name

    def body(self, msg: ChatMessage, image_inline: bool = False) -> str:
        """Message body without number, time or sender.

        image_inline means the binary image travels in the same block, so
        only its description is written.
        """
        mtype = msg.type

        if mtype == POKE:
            return markers.POKE
        if mtype == EMOJI:
            return self._emoji(msg)
        if mtype in (IMAGE, IMAGE_REAL, IMAGE_FAKE):
            if image_inline and msg.has_real_image:
                return msg.description or ""
            return f"{markers.IMAGE}{msg.description or '无描述'}"
        if mtype == QUOTE:
            return f"{markers.QUOTE}{summarize_quoted(msg.quoted_message)}{markers.REPLY}{msg.reply_content or ''}"
        if mtype == TRANSFER:
            text = f"{markers.TRANSFER}{_amount(msg.amount)}元"
            return f"{text} {msg.message}" if msg.message else text
        if mtype == REDPACKET:
            return f"{markers.REDPACKET}{_amount(msg.amount)}元"
        if mtype == GIFT_MEMBERSHIP:
            return f"{markers.GIFT_MEMBERSHIP}{_membership_label(msg)}"
        if mtype == BUY_MEMBERSHIP:
            return f"{markers.BUY_MEMBERSHIP}{_membership_label(msg)}"
        if mtype == RECALLED:
            # the model never learns what the user took back
            if msg.sender == SENDER_USER:
                return f"【{self.user_name}撤回了一条消息】"
            return f"{markers.RECALL}{msg.original_content or '(无内容)'}"
        if mtype == FORWARDED:
            return self.forwarded(msg)
        if mtype == VIDEO:
            return f"{markers.VIDEO}{msg.description or ''}"
        if mtype == FILE:
            return f"{markers.FILE}{msg.filename or ''}|{msg.size or ''}"
        return msg.content or ""

    def _emoji(self, msg: ChatMessage) -> str:
        emoji = self.emojis.find_by_id(msg.content) if msg.content else None
        if emoji:
            return f"{markers.EMOJI}{emoji.name}"
        if msg.emoji_name:
            return f"{markers.EMOJI}{msg.emoji_name}"
        return markers.EMOJI_DELETED

    def favorite_prefix(self, msg: ChatMessage) -> str:
        if not msg.from_favorite:
            return ""
        original_time = msg.favorite_original_time or msg.time
        sender = msg.favorite_original_sender or self.sender_name(msg)
        return f"{markers.FAVORITE} [{format_timestamp(original_time, self.tz)}] {sender}: "

    def forwarded(self, msg: ChatMessage) -> str:
        inner_messages = msg.messages or []
        if not inner_messages:
            return f"{markers.FORWARDED_OPEN}\n[空聊天记录]\n[/空聊天记录]\n{markers.FORWARDED_CLOSE}"

        title = f"{self.user_name}与{msg.original_contact_name or '未知联系人'}的聊天记录"
        lines = [markers.FORWARDED_OPEN, f"[{title}]"]
        prev_time = None
        for inner in inner_messages:
            sender = inner.get("sender_name") or ""
            if sender == "{{user}}":
                sender = self.user_name
            inner_time = int(inner.get("time") or 0)
            header, clock = time_label(inner_time, prev_time, self.tz)
            if header:
                lines.append(header)
            lines.append(f"{clock}{sender}: {_forwarded_inner(inner)}")
            prev_time = inner_time
        lines.append(f"[/{title}]")
        lines.append(markers.FORWARDED_CLOSE)
        return "\n".join(lines)

    def line(
        self,
        msg: ChatMessage,
        number: Optional[int],
        prev_time: Optional[int],
        sender_name: Optional[str] = None,
        image_inline: bool = False,
    ) -> str:
        """Full prompt line(s) for one message.

        A date header goes on its own line ahead of the message whenever
        the date differs from the previous line's.
        """
        header, clock = time_label(msg.time, prev_time, self.tz)
        prefix = markers.ref_prefix(number) if number is not None else ""
        name = sender_name or self.sender_name(msg)
        text = f"{prefix}{clock}{name}: {self.favorite_prefix(msg)}{self.body(msg, image_inline)}"
        return f"{header}\n{text}" if header else text
