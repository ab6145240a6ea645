"""Context assembly: turn chat state into the ordered prompt the model reads."""

import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from . import markers
from .config import ChatwireSettings
from .images import AttachmentSet, should_forward
from .llm.provider import ContentPart, ModelTransport, PromptBlock
from .macros import MacroExpander
from .models import (
    SENDER_CONTACT,
    SENDER_USER,
    ChatMessage,
    Contact,
    ContactPromptItem,
    DeletedContactRecord,
    ImageAttachment,
    Plan,
    PresetItem,
    UserProfile,
)
from .numbering import ReferenceMap
from .postprocess import TextPostProcessor
from .render import MessageRenderer
from .store import (
    ChatStore,
    ContactDirectory,
    DeletedContacts,
    EmojiCatalog,
    NarrativeSource,
    PendingOperationQueue,
    PlanBook,
)
from .timefmt import format_clock, format_date, format_timestamp, resolve_tz
from .turns import TurnAggregator

logger = logging.getLogger("chatwire.context")

# Rough token estimation: 1 token ≈ 4 chars for English, ≈ 3 chars for CJK
CHARS_PER_TOKEN = 3.5

# Preset item ids with generated content
ITEM_CHAR_INFO = "char-info"
ITEM_CHAT_HISTORY = "chat-history"
ITEM_PENDING_OPS = "user-pending-ops"
ITEM_SIGNATURE_HISTORY = "signature-history"
ITEM_EMOJI_LIBRARY = "emoji-library"

USER_PERSONA_PLACEHOLDER = "__AUTO_USER_PERSONA__"
_AUTO_FIELDS = {
    "__AUTO_CHAR_DESC__": "description",
    "__AUTO_CHAR_PERSONALITY__": "personality",
    "__AUTO_CHAR_SCENARIO__": "scenario",
}
_LABEL_BRACKETS_RE = re.compile(r"^\[|\]$")

# Plan outcome buckets: (upper bound on d100, outcome)
PLAN_BUCKETS = ((40, "顺利"), (80, "麻烦"), (100, "好事"))

_PLAN_TASK_TAIL = (
    "必须在角色的[消息]标签之后输出这些格式,输出后再正常发送对话消息\n"
    "注意：是[消息]的标签之后，而不是发完对话消息后再输出，先在[消息]之后输出这些内容\n"
)

_REAPPLY_GUIDE = (
    "[好友申请格式说明]\n"
    "你可以在回复中使用以下格式重新申请加好友：\n\n"
    "[好友申请]附加消息内容\n\n"
    "示例：\n"
    "[角色-角色名]\n"
    "[消息]\n"
    "[好友申请]消息1\n"
    "消息2\n"
    "可以换行来表示发了几条申请消息，无需重复输出[好友申请]标签\n"
    "[/好友申请格式说明]\n\n"
    "注意：\n"
    "1. [好友申请]标签必须在[消息]标签内部，后面直接跟申请消息内容\n"
    "2. [好友申请]时无法发送特殊消息(如[戳一戳]、[表情]、[图片]等)，仅能发送普通文字消息\n"
    "3. 可以选择申请或不申请，根据角色性格和剧情决定\n"
    "4. 申请消息应该符合角色性格和当前情境\n"
)


def estimate_tokens(text: str) -> int:
    """Rough token count estimation."""
    return int(len(text) / CHARS_PER_TOKEN)


def estimate_blocks_tokens(blocks: list[PromptBlock]) -> int:
    """Estimate total tokens for a list of blocks (images not counted)."""
    total = 0
    for block in blocks:
        total += estimate_tokens(block.text)
        total += 4  # overhead per block (role, formatting)
    return total


def plan_outcome(dice: int) -> str:
    for bound, outcome in PLAN_BUCKETS:
        if dice <= bound:
            return outcome
    return PLAN_BUCKETS[-1][1]


@dataclass
class DeferredCommits:
    """Side effects a build implies, applied only after a successful send."""
    plan_marks: list[tuple[str, str]] = field(default_factory=list)   # (contact_id, plan_id)
    clear_pending: list[str] = field(default_factory=list)
    drain_signature_actions: bool = False
    advance_rounds: list[str] = field(default_factory=list)


@dataclass
class AssemblyResult:
    blocks: list[PromptBlock]
    ref_map: ReferenceMap
    images: list[ImageAttachment]
    deferred_images: list[ImageAttachment]
    trigger_set: list[str]
    reapply_fired: list[DeletedContactRecord]
    commits: DeferredCommits
    estimated_tokens: int = 0
    primary_contact_id: Optional[str] = None


@dataclass
class _BuildState:
    """Mutable accumulator threaded through every handler of one build."""
    pending: dict[str, list[ChatMessage]]
    trigger_set: list[str]
    reapply_fired: list[DeletedContactRecord]
    contacts: dict[str, Contact]
    rounds: dict[str, int]
    queue: PendingOperationQueue
    ref_map: ReferenceMap = field(default_factory=ReferenceMap)
    attachments: AttachmentSet = field(default_factory=AttachmentSet)
    deferred_images: list[ImageAttachment] = field(default_factory=list)
    commits: DeferredCommits = field(default_factory=DeferredCommits)
    # contacts whose pending group made it into the prompt
    emitted_pending: list[str] = field(default_factory=list)

    def pending_ids(self, contact_id: str) -> set[str]:
        return {m.id for m in self.pending.get(contact_id, []) if m.id}

    def checkpoint(self) -> tuple:
        return (
            len(self.ref_map),
            len(self.attachments),
            len(self.deferred_images),
            len(self.commits.plan_marks),
            self.commits.drain_signature_actions,
            len(self.emitted_pending),
        )

    def restore(self, checkpoint: tuple):
        """Undo everything a failed section recorded after checkpoint()."""
        refs, images, deferred, marks, drain, emitted = checkpoint
        self.ref_map.rollback(refs)
        self.attachments.rollback(images)
        del self.deferred_images[deferred:]
        del self.commits.plan_marks[marks:]
        self.commits.drain_signature_actions = drain
        del self.emitted_pending[emitted:]


ItemContent = Union[str, list[PromptBlock]]
Handler = Callable[[PresetItem, _BuildState], Awaitable[ItemContent]]


class ContextBuilder:
    """Assembles preset items, dossiers, history and pending operations.

    One builder can serve many builds; every build gets its own reference
    map and attachment set, so nothing leaks from one round to the next.
    """

    def __init__(
        self,
        chats: ChatStore,
        contacts: ContactDirectory,
        presets: list[PresetItem],
        settings: Optional[ChatwireSettings] = None,
        user: Optional[UserProfile] = None,
        emojis: Optional[EmojiCatalog] = None,
        plans: Optional[PlanBook] = None,
        deleted: Optional[DeletedContacts] = None,
        narrative: Optional[NarrativeSource] = None,
        postprocessor: Optional[TextPostProcessor] = None,
        rng: Optional[random.Random] = None,
        transport_family: Optional[str] = None,
        transport: Optional[ModelTransport] = None,
        macros: Optional[dict[str, str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.chats = chats
        self.contacts = contacts
        self.presets = presets
        self.settings = settings or ChatwireSettings()
        self.user = user or UserProfile(name=self.settings.user_name)
        self.emojis = emojis or EmojiCatalog()
        self.plans = plans
        self.deleted = deleted or DeletedContacts()
        self.narrative = narrative
        self.postprocessor = postprocessor or TextPostProcessor()
        self.rng = rng or random.Random()
        self.transport_family = transport_family
        self.transport = transport
        self.extra_macros = macros or {}
        self.clock = clock
        self.tz = resolve_tz(self.settings.timezone)

        self._handlers: dict[str, Handler] = {
            ITEM_CHAR_INFO: self._char_info,
            ITEM_CHAT_HISTORY: self._chat_history,
            ITEM_PENDING_OPS: self._pending_ops,
            ITEM_SIGNATURE_HISTORY: self._signature_history,
            ITEM_EMOJI_LIBRARY: self._emoji_library,
        }

    @property
    def signature_family(self) -> Optional[str]:
        """Family whose continuation signatures this build replays."""
        if self.transport is not None:
            return self.transport.family
        return self.transport_family

    @property
    def multimodal(self) -> bool:
        if self.settings.transport_mode != "multimodal":
            return False
        return self.transport is None or self.transport.multimodal

    # ═══════════════════════════════════════════════════════════════
    # Entry point
    # ═══════════════════════════════════════════════════════════════

    async def build(
        self,
        queue: PendingOperationQueue,
        primary_contact_id: Optional[str] = None,
        pending: Optional[dict[str, list[ChatMessage]]] = None,
    ) -> AssemblyResult:
        """Assemble one prompt.

        pending overrides the queue's messages (re-roll of an earlier round);
        signature actions and the like still come from the queue.
        """
        pending = pending if pending is not None else queue.snapshot()
        pending = {cid: msgs for cid, msgs in pending.items() if msgs}

        fired = self._roll_reapply()
        trigger_set = self._trigger_set(pending, fired)
        logger.info(f"Building context: {len(trigger_set)} triggered contact(s), mode={self.settings.transport_mode}")
        if self.settings.transport_mode == "multimodal" and not self.multimodal:
            logger.warning(f"Transport {self.transport.name} takes no structured blocks, building in text mode")

        contacts = {c.id: c for c in await self.contacts.list_contacts()}
        for record in fired:
            if record.contact_id not in contacts:
                # deleted contacts are gone from the directory
                contacts[record.contact_id] = Contact(id=record.contact_id, name=record.contact_name)

        rounds = {cid: await self.chats.current_round(cid) for cid in trigger_set}
        state = _BuildState(
            pending=pending,
            trigger_set=trigger_set,
            reapply_fired=fired,
            contacts=contacts,
            rounds=rounds,
            queue=queue,
        )

        blocks: list[PromptBlock] = []
        for item in sorted((i for i in self.presets if i.enabled), key=lambda i: i.order):
            content = await self._resolve_item(item, state)
            if isinstance(content, list):
                blocks.extend(content)
            elif content and content.strip():
                blocks.append(PromptBlock(role=item.role, content=content))
            else:
                logger.debug(f"Skipping empty item: {item.label or item.id}")

        if primary_contact_id is None and trigger_set:
            primary_contact_id = trigger_set[0]
        self._expand_macros(blocks, contacts.get(primary_contact_id) if primary_contact_id else None)

        state.commits.clear_pending = [cid for cid in trigger_set if cid in state.emitted_pending]
        unsent = [cid for cid in pending if cid not in state.emitted_pending]
        if unsent:
            logger.warning(f"Pending messages of {', '.join(unsent)} not in the prompt, kept queued")
        state.commits.advance_rounds = sorted({
            img.contact_id for img in state.attachments
            if img.round is not None and img.round == rounds.get(img.contact_id)
        })

        tokens = estimate_blocks_tokens(blocks)
        logger.info(
            f"Context built: {len(blocks)} block(s), {len(state.ref_map)} numbered message(s), "
            f"{len(state.attachments)} image(s), ~{tokens} tokens"
        )
        return AssemblyResult(
            blocks=blocks,
            ref_map=state.ref_map,
            images=state.attachments.items(),
            deferred_images=list(state.deferred_images),
            trigger_set=trigger_set,
            reapply_fired=fired,
            commits=state.commits,
            estimated_tokens=tokens,
            primary_contact_id=primary_contact_id,
        )

    async def _resolve_item(self, item: PresetItem, state: _BuildState) -> ItemContent:
        handler = self._handlers.get(item.id, self._literal)
        checkpoint = state.checkpoint()
        try:
            return await handler(item, state)
        except Exception as e:
            logger.error(f"Preset item {item.id} failed: {e}", exc_info=True)
            state.restore(checkpoint)
            return f"（{item.label or item.id}条目构建失败）"

    def _expand_macros(self, blocks: list[PromptBlock], primary: Optional[Contact]):
        expander = MacroExpander(
            user_name=self.user.name,
            char_name=primary.name if primary else "",
            tz=self.tz,
            clock=self.clock,
        )
        for name, value in self.extra_macros.items():
            expander.register(name, value)
        for block in blocks:
            if isinstance(block.content, str):
                block.content = expander.expand(block.content)
            else:
                for part in block.content:
                    if part.type == "text" and part.text:
                        part.text = expander.expand(part.text)

    # ═══════════════════════════════════════════════════════════════
    # Trigger set
    # ═══════════════════════════════════════════════════════════════

    def _roll_reapply(self) -> list[DeletedContactRecord]:
        """One independent trial per eligible deleted contact."""
        fired = []
        for record in self.deleted.active():
            roll = self.rng.random() * 100
            if roll <= record.probability:
                logger.info(f"Re-apply trial fired for {record.contact_name} ({roll:.2f} <= {record.probability})")
                fired.append(record)
        return sorted(fired, key=lambda r: r.delete_time)

    @staticmethod
    def _trigger_set(pending: dict[str, list[ChatMessage]], fired: list[DeletedContactRecord]) -> list[str]:
        # deleted contacts first (oldest removal first), then contacts with pending messages
        ordered = [r.contact_id for r in fired] + list(pending)
        return list(dict.fromkeys(ordered))

    def _renderer(self, contact: Contact) -> MessageRenderer:
        return MessageRenderer(self.user.name, contact.name, self.emojis, self.tz)

    def _history_window(self, contact: Contact) -> tuple[int, int]:
        recent = contact.recent_count if contact.recent_count is not None else self.settings.recent_count
        older = contact.history_count if contact.history_count is not None else self.settings.history_count
        return max(recent, 0), max(older, 0)

    async def _visible_history(self, contact: Contact, state: _BuildState) -> list[ChatMessage]:
        """Stored, non-excluded messages that are not also queued as pending."""
        queued = state.pending_ids(contact.id)
        history = await self.chats.load_history(contact.id)
        return [m for m in history if not m.excluded and not (m.id and m.id in queued)]

    # ═══════════════════════════════════════════════════════════════
    # Dossiers
    # ═══════════════════════════════════════════════════════════════

    async def _char_info(self, item: PresetItem, state: _BuildState) -> str:
        parts = []
        for contact_id in state.trigger_set:
            contact = state.contacts.get(contact_id)
            if contact is None:
                logger.warning(f"Contact {contact_id} not found, no dossier")
                continue
            checkpoint = state.checkpoint()
            try:
                dossier = await self._dossier(contact, state)
            except Exception as e:
                logger.error(f"Dossier for {contact.name} failed: {e}", exc_info=True)
                state.restore(checkpoint)
                dossier = self._wrap_dossier(contact, ["（角色档案构建失败）"])
            if dossier:
                parts.append(dossier)
        return "\n\n".join(parts)

    @staticmethod
    def _wrap_dossier(contact: Contact, sections: list[str]) -> str:
        body = "\n\n".join(sections)
        return f"{markers.DOSSIER_OPEN.format(name=contact.name)}\n{body}\n{markers.DOSSIER_CLOSE.format(name=contact.name)}"

    async def _dossier(self, contact: Contact, state: _BuildState) -> str:
        if contact.prompt_items:
            sections = []
            for prompt_item in sorted((i for i in contact.prompt_items if i.enabled), key=lambda i: i.order):
                text = await self._dossier_item(contact, prompt_item, state)
                if text and text.strip():
                    label = _LABEL_BRACKETS_RE.sub("", prompt_item.label)
                    sections.append(markers.section(label, text.rstrip("\n")))
            return self._wrap_dossier(contact, sections) if sections else ""

        narrative = await self._narrative(contact, self.settings.narrative_count)
        if not contact.description and not narrative:
            return ""
        return self._wrap_dossier(contact, [
            markers.section(markers.PERSONA, contact.description or "（无人设）"),
            markers.section(markers.NARRATIVE, narrative or "（无线下剧情）"),
        ])

    async def _dossier_item(self, contact: Contact, item: ContactPromptItem, state: _BuildState) -> str:
        if item.kind == "auto":
            attr = _AUTO_FIELDS.get(item.content)
            return getattr(contact, attr, "") if attr else ""
        if item.kind == "narrative":
            count = item.context_count if item.context_count is not None else self.settings.narrative_count
            return await self._narrative(contact, count)
        if item.kind == "history-chat":
            return await self._older_history(contact, state)
        if item.kind in ("worldbook", "custom"):
            return item.content
        logger.warning(f"Unknown dossier item kind {item.kind!r} for {contact.name}")
        return ""

    async def _narrative(self, contact: Contact, count: int) -> str:
        if self.narrative is None or count <= 0:
            return ""
        try:
            lines = await self.narrative.recent_lines(contact, count)
        except Exception as e:
            logger.error(f"Narrative context for {contact.name} failed: {e}")
            return "（获取线下剧情失败）"
        out = []
        for line in lines:
            if not line.text:
                continue
            text = await self.postprocessor.apply(contact.id, line.text)
            out.append(f"{line.speaker or contact.name}: {text}")
        return "\n".join(out)

    async def _older_history(self, contact: Contact, state: _BuildState) -> str:
        """Messages just before the recent window, numbered in build order."""
        recent, older = self._history_window(contact)
        if older <= 0:
            return ""
        history = await self._visible_history(contact, state)
        end = max(0, len(history) - recent)
        window = history[max(0, end - older):end]
        renderer = self._renderer(contact)
        lines = []
        prev_time = None
        for msg in window:
            number = state.ref_map.assign(msg.id, contact.id)
            lines.append(renderer.line(msg, number, prev_time))
            prev_time = msg.time
        return "\n".join(lines)

    # ═══════════════════════════════════════════════════════════════
    # Chat history
    # ═══════════════════════════════════════════════════════════════

    async def _chat_history(self, item: PresetItem, state: _BuildState) -> ItemContent:
        texts: list[str] = []
        blocks: list[PromptBlock] = []
        for contact_id in state.trigger_set:
            contact = state.contacts.get(contact_id)
            if contact is None:
                logger.warning(f"Contact {contact_id} not found, no history")
                continue
            checkpoint = state.checkpoint()
            try:
                if self.multimodal:
                    blocks.extend(await self._history_structured(contact, state))
                else:
                    texts.append(await self._history_text(contact, state))
            except Exception as e:
                logger.error(f"History for {contact.name} failed: {e}", exc_info=True)
                state.restore(checkpoint)
                placeholder = (
                    f"{markers.role_open(contact.name)}\n{markers.PAYLOAD_BEGIN}\n（聊天记录加载失败）\n"
                    f"{markers.PAYLOAD_END}\n{markers.role_close(contact.name)}"
                )
                if self.multimodal:
                    blocks.append(PromptBlock(role="system", content=placeholder))
                else:
                    texts.append(placeholder)
        if self.multimodal:
            return blocks
        return "\n\n".join(t for t in texts if t.strip())

    def _recent(self, contact: Contact, history: list[ChatMessage]) -> list[ChatMessage]:
        recent, _ = self._history_window(contact)
        return history[max(0, len(history) - recent):] if recent else []

    def _image_policy(self, msg: ChatMessage, contact_id: str, state: _BuildState) -> bool:
        return msg.has_real_image and should_forward(
            self.settings.image_mode, msg.image_round, state.rounds.get(contact_id, 1)
        )

    async def _history_text(self, contact: Contact, state: _BuildState) -> str:
        messages = self._recent(contact, await self._visible_history(contact, state))
        renderer = self._renderer(contact)
        images: list[ImageAttachment] = []
        lines = [markers.role_open(contact.name), markers.PAYLOAD_BEGIN]
        prev_time = None
        for msg in messages:
            number = state.ref_map.assign(msg.id, contact.id)
            lines.append(renderer.line(msg, number, prev_time))
            prev_time = msg.time
            if self._image_policy(msg, contact.id, state):
                images.append(ImageAttachment(msg.image_url, contact.id, msg.id, msg.image_round))
        if messages:
            lines.append(markers.READ_WATERMARK)
        lines += [markers.PAYLOAD_END, markers.role_close(contact.name)]

        for image in images:
            if state.attachments.add(image):
                state.deferred_images.append(image)
        return "\n".join(lines)

    async def _history_structured(self, contact: Contact, state: _BuildState) -> list[PromptBlock]:
        messages = self._recent(contact, await self._visible_history(contact, state))
        renderer = self._renderer(contact)
        header = f"{markers.role_open(contact.name)}\n{markers.PAYLOAD_BEGIN}\n"
        footer = f"{markers.PAYLOAD_END}\n{markers.role_close(contact.name)}"
        if not messages:
            return [PromptBlock(role="system", content=header + footer)]

        turns = TurnAggregator(header, self.signature_family)
        images: list[ImageAttachment] = []
        prev_time = None
        for msg in messages:
            number = state.ref_map.assign(msg.id, contact.id)
            if self._image_policy(msg, contact.id, state):
                text = renderer.line(msg, number, prev_time, image_inline=True)
                role = "user" if msg.sender == SENDER_USER else "assistant"
                turns.add_image(
                    role, text, msg.image_url, msg.id,
                    signature=msg.continuation_signature,
                    signature_family=msg.signature_family,
                )
                images.append(ImageAttachment(msg.image_url, contact.id, msg.id, msg.image_round))
            else:
                turns.add_line(
                    renderer.line(msg, number, prev_time),
                    msg.sender,
                    signature=msg.continuation_signature if msg.sender == SENDER_CONTACT else None,
                    signature_family=msg.signature_family,
                )
            prev_time = msg.time

        blocks = turns.finish(f"{markers.READ_WATERMARK}\n{footer}")
        for image in images:
            state.attachments.add(image)
        if turns.dropped_signatures:
            logger.debug(f"{contact.name}: {turns.dropped_signatures} signature(s) not forwarded to this transport")
        return blocks

    # ═══════════════════════════════════════════════════════════════
    # Pending operations
    # ═══════════════════════════════════════════════════════════════

    async def _pending_ops(self, item: PresetItem, state: _BuildState) -> ItemContent:
        segments: list[Union[str, ContentPart]] = []
        text: list[str] = []

        for contact_id, messages in state.pending.items():
            contact = state.contacts.get(contact_id) or Contact(id=contact_id, name=contact_id)
            renderer = self._renderer(contact)
            text.append(markers.PENDING_GROUP.format(name=contact.name))
            prev_time = None
            for msg in messages:
                number = state.ref_map.assign(msg.id, contact_id)
                forward = self._image_policy(msg, contact_id, state)
                inline = forward and self.multimodal
                line = renderer.line(msg, number, prev_time, sender_name=self.user.name, image_inline=inline)
                text.append(line)
                prev_time = msg.time
                if forward:
                    image = ImageAttachment(msg.image_url, contact_id, msg.id, msg.image_round)
                    if not state.attachments.add(image):
                        continue
                    if inline:
                        segments.append("\n".join(text) + "\n")
                        segments.append(ContentPart.image_part(msg.image_url, msg.id))
                        text = []
                    else:
                        state.deferred_images.append(image)
            text.append("")
            state.emitted_pending.append(contact_id)

        directives = await self._plan_directives(state)
        directives += self._signature_actions(state)
        directives += self._reapply_directive(state)

        if not segments and not any(t.strip() for t in text) and not directives:
            return ""

        text.extend(directives)
        text.append(markers.PENDING_CLOSE)
        segments.append("\n".join(text))
        head = f"{markers.PENDING_REMINDER}\n{markers.PENDING_OPEN}\n"

        if len(segments) == 1:
            return [PromptBlock(role=item.role, content=head + segments[0])]
        parts = []
        for i, segment in enumerate(segments):
            if isinstance(segment, str):
                parts.append(ContentPart.text_part(head + segment if i == 0 else segment))
            else:
                parts.append(segment)
        return [PromptBlock(role=item.role, content=parts)]

    async def _plan_directives(self, state: _BuildState) -> list[str]:
        if self.plans is None:
            return []
        out = []
        for contact_id in state.pending:
            unnarrated = await self.plans.unnarrated(contact_id)
            if not unnarrated:
                continue
            # only the newest plan per contact, one story at a time
            plan = unnarrated[-1]
            out.append(self._plan_task(plan))
            state.commits.plan_marks.append((contact_id, plan.id))
        return out

    @staticmethod
    def _plan_task(plan: Plan) -> str:
        lines = [
            markers.TASK_OPEN,
            "任务类型：约定计划执行",
            f"计划内容：{plan.title}",
            f"骰子结果：{plan.dice_result}/100 - {plan.outcome}",
            f"剧情提示：{plan.story}",
            "",
            "请按以下格式输出：",
            "",
            "[约定计划过程]请根据计划内容，结合骰子结果和剧情提示，用50-200字左右描述过程，禁止换行。",
            "",
        ]
        if plan.options.get("includeInnerThought") or plan.options.get("include_inner_thought"):
            lines += ["[约定计划内心印象]请描述角色对这次经历的内心感受（50-100字），禁止换行。", ""]
        if plan.options.get("includeRecord") or plan.options.get("include_record"):
            lines += ["[约定计划过程记录]请简要记录这次经历的关键事件（30-50字），禁止换行。", ""]
        return "\n".join(lines) + "\n" + _PLAN_TASK_TAIL + markers.TASK_CLOSE + "\n"

    def _signature_actions(self, state: _BuildState) -> list[str]:
        actions = state.queue.signature_actions
        if not actions:
            return []
        lines = [markers.OTHER_OPS_OPEN]
        name = self.user.name
        for action in actions:
            clock = f"[{format_clock(action.time, self.tz)}] "
            if action.action_type == "update":
                lines.append(f"{clock}{name}修改了个性签名：{action.signature}")
            elif action.action_type == "like":
                lines.append(f"{clock}{name}点赞了{action.contact_name}的个性签名")
            elif action.action_type == "comment":
                lines.append(f"{clock}{name}评论了{action.contact_name}的个性签名：{action.comment}")
            else:
                logger.warning(f"Unknown signature action {action.action_type!r}, skipped")
        lines.append(markers.OTHER_OPS_CLOSE)
        state.commits.drain_signature_actions = True
        return ["\n".join(lines) + "\n"]

    def _reapply_directive(self, state: _BuildState) -> list[str]:
        if not state.reapply_fired:
            return []
        lines = [
            markers.TASK_OPEN,
            "任务类型：AI感知删除的好友申请",
            "说明：以下角色在被删除后想要重新申请加为好友",
            "",
        ]
        for record in state.reapply_fired:
            when = f"{format_date(record.delete_time, self.tz)} {format_clock(record.delete_time, self.tz)}"
            lines += [
                markers.role_open(record.contact_name),
                f"{self.user.name}于{when}删除了你的好友",
                markers.role_close(record.contact_name),
                "",
            ]
        return ["\n".join(lines) + "\n" + _REAPPLY_GUIDE + markers.TASK_CLOSE + "\n"]

    # ═══════════════════════════════════════════════════════════════
    # Simple items
    # ═══════════════════════════════════════════════════════════════

    async def _signature_history(self, item: PresetItem, state: _BuildState) -> str:
        history = sorted(self.user.signature_history, key=lambda e: e.timestamp, reverse=True)[:3]
        if not history:
            return ""
        lines = [f"{format_timestamp(e.timestamp, self.tz)} - {e.content}" for e in history]
        return markers.section("用户个签历史", "\n".join(lines))

    async def _emoji_library(self, item: PresetItem, state: _BuildState) -> str:
        names = self.emojis.names()
        if not names:
            return ""
        content = markers.section("表情包库", "\n".join(names)) + "\n"
        if item.content and item.content.strip():
            content += item.content.strip()
        return content

    async def _literal(self, item: PresetItem, state: _BuildState) -> str:
        content = item.content or ""
        if USER_PERSONA_PLACEHOLDER in content:
            content = content.replace(USER_PERSONA_PLACEHOLDER, self.user.persona)
        return content
