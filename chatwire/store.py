"""Collaborator interfaces and in-memory implementations.

The assembly engine only reads from these; the send controller and the
reply parser append and update. Real deployments back them with whatever
persistence they have; the in-memory classes back tests, snapshots and
the CLI.
"""

import copy
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

from .models import (
    ChatMessage,
    Contact,
    DeletedContactRecord,
    Emoji,
    NarrativeLine,
    Plan,
    SignatureAction,
)

logger = logging.getLogger("chatwire.store")

_WS_RE = re.compile(r"\s")


def _squash(name: str) -> str:
    return _WS_RE.sub("", name)


# ════════════════════════════════════════════════════════
# Chat store
# ════════════════════════════════════════════════════════

class ChatStore(ABC):
    """Per-contact chat log."""

    @abstractmethod
    async def load_history(self, contact_id: str) -> list[ChatMessage]:
        ...

    @abstractmethod
    async def append(self, contact_id: str, message: ChatMessage) -> None:
        ...

    @abstractmethod
    async def update(self, contact_id: str, message_id: str, **changes) -> bool:
        ...

    @abstractmethod
    async def current_round(self, contact_id: str) -> int:
        ...

    @abstractmethod
    async def advance_round(self, contact_id: str) -> int:
        ...

    async def find(self, contact_id: str, message_id: str) -> Optional[ChatMessage]:
        for msg in await self.load_history(contact_id):
            if msg.id == message_id:
                return msg
        return None

    async def clear_signatures(self, contact_id: str) -> int:
        """Drop continuation signatures from every stored message of a contact."""
        cleared = 0
        for msg in await self.load_history(contact_id):
            if msg.metadata and "continuation_signature" in msg.metadata:
                meta = {k: v for k, v in msg.metadata.items()
                        if k not in ("continuation_signature", "provider_family")}
                await self.update(contact_id, msg.id, metadata=meta or None)
                cleared += 1
        return cleared


class MemoryChatStore(ChatStore):
    def __init__(self, histories: Optional[dict[str, list[ChatMessage]]] = None):
        self._histories: dict[str, list[ChatMessage]] = histories or {}
        self._rounds: dict[str, int] = {}

    async def load_history(self, contact_id: str) -> list[ChatMessage]:
        return list(self._histories.get(contact_id, []))

    async def append(self, contact_id: str, message: ChatMessage) -> None:
        self._histories.setdefault(contact_id, []).append(message)

    async def update(self, contact_id: str, message_id: str, **changes) -> bool:
        for msg in self._histories.get(contact_id, []):
            if msg.id == message_id:
                for key, value in changes.items():
                    if not hasattr(msg, key):
                        raise AttributeError(f"ChatMessage has no field {key!r}")
                    setattr(msg, key, value)
                return True
        logger.warning(f"update: message {message_id} not found for contact {contact_id}")
        return False

    async def current_round(self, contact_id: str) -> int:
        return self._rounds.setdefault(contact_id, 1)

    async def advance_round(self, contact_id: str) -> int:
        self._rounds[contact_id] = self._rounds.get(contact_id, 1) + 1
        logger.debug(f"Round for {contact_id} is now {self._rounds[contact_id]}")
        return self._rounds[contact_id]

    def set_round(self, contact_id: str, round_no: int):
        self._rounds[contact_id] = round_no

    def histories(self) -> dict[str, list[ChatMessage]]:
        return {cid: list(msgs) for cid, msgs in self._histories.items()}

    def rounds(self) -> dict[str, int]:
        return dict(self._rounds)


# ════════════════════════════════════════════════════════
# Contact directory
# ════════════════════════════════════════════════════════

class ContactDirectory(ABC):

    @abstractmethod
    async def list_contacts(self) -> list[Contact]:
        ...

    async def get(self, contact_id: str) -> Optional[Contact]:
        for contact in await self.list_contacts():
            if contact.id == contact_id:
                return contact
        return None

    async def match_name(self, role_name: str) -> Optional[str]:
        """Route a role name from a reply to a contact id.

        Exact name first, then a whitespace-insensitive comparison.
        """
        contacts = await self.list_contacts()
        for contact in contacts:
            if contact.name == role_name:
                return contact.id
        squashed = _squash(role_name)
        for contact in contacts:
            if _squash(contact.name) == squashed:
                logger.debug(f"Fuzzy name match: {role_name!r} -> {contact.name!r}")
                return contact.id
        logger.warning(f"No contact matches role name {role_name!r}")
        return None


class MemoryContactDirectory(ContactDirectory):
    def __init__(self, contacts: Optional[list[Contact]] = None):
        self._contacts = list(contacts or [])

    async def list_contacts(self) -> list[Contact]:
        return list(self._contacts)

    def add(self, contact: Contact):
        self._contacts.append(contact)


# ════════════════════════════════════════════════════════
# Narrative context (the story the contact lives in outside the chat)
# ════════════════════════════════════════════════════════

class NarrativeSource(ABC):

    @abstractmethod
    async def recent_lines(self, contact: Contact, count: int) -> list[NarrativeLine]:
        ...


class MemoryNarrativeSource(NarrativeSource):
    def __init__(self, lines: Optional[dict[str, list[NarrativeLine]]] = None):
        self._lines = lines or {}

    async def recent_lines(self, contact: Contact, count: int) -> list[NarrativeLine]:
        if count <= 0:
            return []
        return list(self._lines.get(contact.id, []))[-count:]


# ════════════════════════════════════════════════════════
# Plans
# ════════════════════════════════════════════════════════

class PlanBook(ABC):

    @abstractmethod
    async def by_message_id(self, contact_id: str, message_id: str) -> Optional[Plan]:
        ...

    @abstractmethod
    async def update(self, contact_id: str, plan_id: str, **changes) -> None:
        ...

    @abstractmethod
    async def list_plans(self, contact_id: str) -> list[Plan]:
        ...

    async def unnarrated(self, contact_id: str) -> list[Plan]:
        """Completed plans with a dice result whose story has not been told yet."""
        return [
            p for p in await self.list_plans(contact_id)
            if p.dice_result and p.status == "completed" and not p.story_generated
        ]


class MemoryPlanBook(PlanBook):
    def __init__(self, plans: Optional[dict[str, list[Plan]]] = None):
        self._plans = plans or {}

    async def by_message_id(self, contact_id: str, message_id: str) -> Optional[Plan]:
        for plan in self._plans.get(contact_id, []):
            if plan.message_id == message_id:
                return plan
        return None

    async def update(self, contact_id: str, plan_id: str, **changes) -> None:
        for plan in self._plans.get(contact_id, []):
            if plan.id == plan_id:
                for key, value in changes.items():
                    setattr(plan, key, value)
                return
        raise KeyError(f"Plan {plan_id} not found for contact {contact_id}")

    async def list_plans(self, contact_id: str) -> list[Plan]:
        return list(self._plans.get(contact_id, []))

    def all(self) -> dict[str, list[Plan]]:
        return {cid: list(plans) for cid, plans in self._plans.items()}


# ════════════════════════════════════════════════════════
# Emoji catalog
# ════════════════════════════════════════════════════════

class EmojiCatalog:
    def __init__(self, emojis: Optional[list[Emoji]] = None):
        self._emojis = list(emojis or [])

    def find_by_name(self, name: str) -> Optional[Emoji]:
        return next((e for e in self._emojis if e.name == name), None)

    def find_by_id(self, emoji_id: str) -> Optional[Emoji]:
        return next((e for e in self._emojis if e.id == emoji_id), None)

    def names(self) -> list[str]:
        return [e.name for e in self._emojis]


# ════════════════════════════════════════════════════════
# Deleted contacts that may ask to be re-added
# ════════════════════════════════════════════════════════

class DeletedContacts:
    def __init__(self, records: Optional[list[DeletedContactRecord]] = None):
        self._records = list(records or [])

    def active(self) -> list[DeletedContactRecord]:
        """Records that allow re-application with a non-zero chance."""
        return [r for r in self._records if r.allow_reapply and r.probability > 0]

    def by_name(self, name: str) -> Optional[DeletedContactRecord]:
        squashed = _squash(name)
        for record in self._records:
            if record.contact_name == name or _squash(record.contact_name) == squashed:
                return record
        return None

    def all(self) -> list[DeletedContactRecord]:
        return list(self._records)


# ════════════════════════════════════════════════════════
# Pending operation queue
# ════════════════════════════════════════════════════════

class PendingOperationQueue:
    """Not-yet-sent user operations, grouped by destination contact.

    Passed explicitly into enqueue and assembly calls so independent
    instances never share state.
    """

    def __init__(self):
        self.messages: dict[str, list[ChatMessage]] = {}
        self.moments: list[dict] = []
        self.friend_requests: list[dict] = []
        self.signature_actions: list[SignatureAction] = []

    def add_message(self, contact_id: str, message: ChatMessage):
        self.messages.setdefault(contact_id, []).append(message)
        logger.debug(f"Queued {message.type} message for {contact_id}")

    def add_signature_action(self, action: SignatureAction):
        self.signature_actions.append(action)

    def pending_for(self, contact_id: str) -> list[ChatMessage]:
        return list(self.messages.get(contact_id, []))

    def snapshot(self) -> dict[str, list[ChatMessage]]:
        """Copy of the per-contact messages, safe to hand to a build."""
        return {cid: copy.copy(msgs) for cid, msgs in self.messages.items() if msgs}

    def contact_ids(self) -> list[str]:
        return [cid for cid, msgs in self.messages.items() if msgs]

    def clear_messages(self, contact_id: str):
        if self.messages.pop(contact_id, None) is not None:
            logger.debug(f"Cleared pending messages for {contact_id}")

    def drain_signature_actions(self) -> list[SignatureAction]:
        actions, self.signature_actions = self.signature_actions, []
        return actions

    def clear(self):
        self.messages = {}
        self.moments = []
        self.friend_requests = []
        self.signature_actions = []

    def __bool__(self) -> bool:
        return bool(self.contact_ids() or self.moments or self.friend_requests or self.signature_actions)
