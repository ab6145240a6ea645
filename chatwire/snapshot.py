"""JSON snapshots of chat state, loaded into the in-memory stores.

A snapshot is one JSON object. Every key is optional:

    {
      "user":        {"name": "...", "persona": "...", "signature_history": [{"timestamp": 0, "content": "..."}]},
      "contacts":    [{"id": "c1", "name": "...", "description": "...", "prompt_items": [...]}],
      "histories":   {"c1": [<message>, ...]},
      "rounds":      {"c1": 3},
      "pending":     {"c1": [<message>, ...]},
      "signature_actions": [{"action_type": "like", "time": 0, "contact_name": "..."}],
      "presets":     [{"id": "char-info", "order": 0, ...}],
      "emojis":      [{"id": "e1", "name": "..."}],
      "plans":       {"c1": [{"id": "p1", "message_id": "m1", "title": "..."}]},
      "deleted":     [{"contact_id": "c9", "contact_name": "...", "delete_time": 0, ...}],
      "narrative":   {"c1": [{"speaker": "...", "text": "..."}]},
      "regex_scripts": {"c1": [{"name": "...", "find_regex": "/a/g", "replace_string": "b"}]},
      "macros":      {"name": "value"}
    }
"""

import json
import logging
import random
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from .config import ChatwireSettings
from .context import ContextBuilder
from .models import (
    ChatMessage,
    Contact,
    DeletedContactRecord,
    Emoji,
    NarrativeLine,
    Plan,
    PresetItem,
    SignatureAction,
    SignatureEntry,
    UserProfile,
)
from .parser import ReplyParser
from .postprocess import RegexScript, TextPostProcessor
from .presets import default_presets
from .store import (
    DeletedContacts,
    EmojiCatalog,
    MemoryChatStore,
    MemoryContactDirectory,
    MemoryNarrativeSource,
    MemoryPlanBook,
    PendingOperationQueue,
)

logger = logging.getLogger("chatwire.snapshot")


class SnapshotError(ValueError):
    """The snapshot file is unreadable or has the wrong shape."""
    pass


@dataclass
class Snapshot:
    user: UserProfile
    chats: MemoryChatStore
    contacts: MemoryContactDirectory
    queue: PendingOperationQueue
    presets: list[PresetItem]
    emojis: EmojiCatalog
    plans: MemoryPlanBook
    deleted: DeletedContacts
    narrative: MemoryNarrativeSource
    postprocessor: TextPostProcessor
    macros: dict[str, str] = field(default_factory=dict)

    def builder(
        self,
        settings: Optional[ChatwireSettings] = None,
        rng: Optional[random.Random] = None,
        transport_family: Optional[str] = None,
    ) -> ContextBuilder:
        return ContextBuilder(
            chats=self.chats,
            contacts=self.contacts,
            presets=self.presets,
            settings=settings,
            user=self.user,
            emojis=self.emojis,
            plans=self.plans,
            deleted=self.deleted,
            narrative=self.narrative,
            postprocessor=self.postprocessor,
            rng=rng,
            transport_family=transport_family,
            macros=self.macros,
        )

    def parser(self, rng: Optional[random.Random] = None) -> ReplyParser:
        return ReplyParser(
            chats=self.chats,
            contacts=self.contacts,
            plans=self.plans,
            emojis=self.emojis,
            deleted=self.deleted,
            user_name=self.user.name,
            rng=rng,
        )


def _messages(raw: dict) -> dict[str, list[ChatMessage]]:
    return {cid: [ChatMessage.from_dict(m) for m in msgs] for cid, msgs in raw.items()}


def snapshot_from_dict(data: dict, settings: Optional[ChatwireSettings] = None) -> Snapshot:
    settings = settings or ChatwireSettings()
    try:
        user_raw = data.get("user") or {}
        user = UserProfile(
            name=user_raw.get("name") or settings.user_name,
            persona=user_raw.get("persona", ""),
            signature_history=[SignatureEntry(**e) for e in user_raw.get("signature_history", [])],
        )

        chats = MemoryChatStore(_messages(data.get("histories") or {}))
        for cid, round_no in (data.get("rounds") or {}).items():
            chats.set_round(cid, int(round_no))

        queue = PendingOperationQueue()
        for cid, msgs in _messages(data.get("pending") or {}).items():
            for msg in msgs:
                queue.add_message(cid, msg)
        for action in data.get("signature_actions") or []:
            queue.add_signature_action(SignatureAction(**action))

        presets = [PresetItem(**p) for p in data["presets"]] if data.get("presets") else default_presets()

        postprocessor = TextPostProcessor()
        for cid, scripts in (data.get("regex_scripts") or {}).items():
            postprocessor.set_scripts(cid, [RegexScript.from_dict(s) for s in scripts])

        snapshot = Snapshot(
            user=user,
            chats=chats,
            contacts=MemoryContactDirectory([Contact.from_dict(c) for c in data.get("contacts") or []]),
            queue=queue,
            presets=presets,
            emojis=EmojiCatalog([Emoji(**e) for e in data.get("emojis") or []]),
            plans=MemoryPlanBook({
                cid: [Plan(**p) for p in plans] for cid, plans in (data.get("plans") or {}).items()
            }),
            deleted=DeletedContacts([DeletedContactRecord(**r) for r in data.get("deleted") or []]),
            narrative=MemoryNarrativeSource({
                cid: [NarrativeLine(**line) for line in lines]
                for cid, lines in (data.get("narrative") or {}).items()
            }),
            postprocessor=postprocessor,
            macros=dict(data.get("macros") or {}),
        )
    except (TypeError, KeyError, AttributeError) as e:
        raise SnapshotError(f"Malformed snapshot: {e}") from e

    logger.info(
        f"Snapshot loaded: {len(data.get('contacts') or [])} contact(s), "
        f"{len(queue.contact_ids())} with pending messages"
    )
    return snapshot


def load_snapshot(path, settings: Optional[ChatwireSettings] = None) -> Snapshot:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SnapshotError(f"Cannot read snapshot {path}: {e}") from e
    if not isinstance(data, dict):
        raise SnapshotError(f"Snapshot {path} must be a JSON object")
    return snapshot_from_dict(data, settings)


def snapshot_to_dict(snapshot: Snapshot) -> dict:
    """Mutable state (chat logs, rounds, queue, plans), for writing back after a send."""
    return {
        "histories": {
            cid: [m.to_dict() for m in msgs] for cid, msgs in snapshot.chats.histories().items()
        },
        "rounds": snapshot.chats.rounds(),
        "pending": {
            cid: [m.to_dict() for m in msgs] for cid, msgs in snapshot.queue.messages.items() if msgs
        },
        "signature_actions": [asdict(a) for a in snapshot.queue.signature_actions],
        "plans": {cid: [asdict(p) for p in plans] for cid, plans in snapshot.plans.all().items()},
    }
