"""Domain records exchanged with the chat store, contact directory and queues.

Everything here is a plain dataclass. Stores hand these out and accept them
back; the assembly and parsing engines never mutate a stored record except
through the store's own update methods.
"""

from dataclasses import dataclass, field, fields, asdict
from typing import Any, Optional


# Message types understood by the serializer. Parsed replies add
# "recalled-pending" (transient), "redpacket", "video", "file" and "image".
TEXT = "text"
EMOJI = "emoji"
IMAGE = "image"
IMAGE_REAL = "image-real"
IMAGE_FAKE = "image-fake"
QUOTE = "quote"
TRANSFER = "transfer"
REDPACKET = "redpacket"
GIFT_MEMBERSHIP = "gift-membership"
BUY_MEMBERSHIP = "buy-membership"
RECALLED = "recalled"
RECALLED_PENDING = "recalled-pending"
FORWARDED = "forwarded"
POKE = "poke"
FRIEND_REQUEST = "friend_request"
PLAN = "plan"
VIDEO = "video"
FILE = "file"

SENDER_USER = "user"
SENDER_CONTACT = "contact"


@dataclass
class ChatMessage:
    id: Optional[str]           # durable id; legacy rows may have none
    sender: str                 # 'user' or 'contact'
    time: int                   # unix seconds
    type: str = TEXT
    content: Optional[str] = None
    emoji_name: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    image_round: Optional[int] = None
    amount: Optional[float] = None
    message: Optional[str] = None
    membership_type: Optional[str] = None   # 'vip' / 'svip'
    months: Optional[int] = None
    quoted_message: Optional[dict] = None
    reply_content: Optional[str] = None
    original_content: Optional[str] = None
    original_type: Optional[str] = None
    can_peek: Optional[bool] = None
    recalled_time: Optional[int] = None
    messages: Optional[list[dict]] = None   # forwarded chat log
    original_contact_name: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[str] = None
    from_favorite: bool = False
    favorite_original_time: Optional[int] = None
    favorite_original_sender: Optional[str] = None
    metadata: Optional[dict] = None
    excluded: bool = False

    @property
    def continuation_signature(self) -> Optional[str]:
        return (self.metadata or {}).get("continuation_signature")

    @property
    def signature_family(self) -> Optional[str]:
        return (self.metadata or {}).get("provider_family")

    @property
    def has_real_image(self) -> bool:
        """Whether this message carries an image that can be forwarded as binary."""
        if self.type == IMAGE_REAL:
            return bool(self.image_url)
        return self.type == IMAGE and bool(self.image_url)

    def is_plan(self) -> bool:
        return self.type == PLAN or bool(self.content and self.content.startswith("[约定计划"))

    def to_dict(self) -> dict:
        """Serialize, dropping unset optional fields."""
        data = asdict(self)
        required = ("id", "sender", "time", "type")
        return {k: v for k, v in data.items() if k in required or (v is not None and v is not False)}

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ContactPromptItem:
    """One entry of a contact's own dossier layout."""
    id: str
    label: str
    kind: str                   # auto | narrative | history-chat | worldbook | custom
    content: str = ""
    enabled: bool = True
    order: int = 0
    context_count: Optional[int] = None


@dataclass
class Contact:
    id: str
    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    prompt_items: list[ContactPromptItem] = field(default_factory=list)
    recent_count: Optional[int] = None
    history_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Contact":
        items = [ContactPromptItem(**item) for item in data.get("prompt_items", [])]
        known = {f.name for f in fields(cls)} - {"prompt_items"}
        return cls(prompt_items=items, **{k: v for k, v in data.items() if k in known})


@dataclass
class PresetItem:
    id: str
    role: str = "system"        # system | user | assistant
    enabled: bool = True
    order: int = 0
    content: str = ""
    label: str = ""


@dataclass
class DeletedContactRecord:
    """A contact the user deleted that may try to get re-added."""
    contact_id: str
    contact_name: str
    delete_time: int
    allow_reapply: bool = False
    probability: float = 0.0    # percent, 0-100


@dataclass
class Plan:
    id: str
    message_id: str
    title: str
    status: str = "pending"     # pending | accepted | rejected | completed
    dice_result: Optional[int] = None
    outcome: Optional[str] = None
    story: Optional[str] = None
    options: dict = field(default_factory=dict)
    story_generated: bool = False


@dataclass
class SignatureAction:
    action_type: str            # update | like | comment
    time: int
    signature: str = ""
    contact_name: str = ""
    comment: str = ""


@dataclass
class SignatureEntry:
    timestamp: int
    content: str


@dataclass
class UserProfile:
    name: str = "我"
    persona: str = ""
    signature_history: list[SignatureEntry] = field(default_factory=list)


@dataclass
class Emoji:
    id: str
    name: str


@dataclass
class NarrativeLine:
    speaker: str
    text: str


@dataclass
class ImageAttachment:
    url: str
    contact_id: str
    message_id: Optional[str]
    round: Optional[int] = None


def message_snapshot(msg: ChatMessage, sender_name: str) -> dict[str, Any]:
    """Frozen copy of a message for embedding inside a quote."""
    return {
        "id": msg.id,
        "sender": msg.sender,
        "sender_name": sender_name,
        "time": msg.time,
        "type": msg.type,
        "content": msg.content,
        "emoji_name": msg.emoji_name,
        "image_url": msg.image_url,
        "description": msg.description,
        "reply_content": msg.reply_content,
    }
