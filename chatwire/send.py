"""One send round: assemble, call the model, parse, persist, commit."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import ChatwireSettings
from .context import AssemblyResult, ContextBuilder
from .errors import GenerationCancelled
from .images import bind_deferred_images, fetch_data_urls, materialize_blocks
from .llm.provider import EmptyReplyError, ModelTransport, TokenUsage, TransportResponse
from .models import ChatMessage
from .parser import ParsedBubble, ReplyParser, new_message_id, persistable_messages, validate_reply
from .store import PendingOperationQueue

logger = logging.getLogger("chatwire.send")

PHASE_IDLE = "idle"
PHASE_PREPARING = "preparing"
PHASE_WAITING = "waiting"
PHASE_COMMITTING = "committing"


@dataclass
class SendResult:
    messages: dict[str, list[ChatMessage]]
    bubbles: list[ParsedBubble]
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    reference_count: int = 0
    continuation_signature: Optional[str] = None
    reply: str = ""

    @property
    def message_count(self) -> int:
        return sum(len(msgs) for msgs in self.messages.values())


class SendController:
    """Runs at most one generation at a time.

    Starting a send while another is outstanding aborts the older one.
    A send that is aborted before its reply is accepted raises
    GenerationCancelled and leaves stores and queue untouched.
    """

    def __init__(
        self,
        builder: ContextBuilder,
        parser: ReplyParser,
        transport: ModelTransport,
        queue: PendingOperationQueue,
        settings: Optional[ChatwireSettings] = None,
        id_factory: Callable[[], str] = new_message_id,
        clock: Callable[[], float] = time.time,
    ):
        self.builder = builder
        self.parser = parser
        self.transport = transport
        self.queue = queue
        self.settings = settings or builder.settings
        self.id_factory = id_factory
        self.clock = clock
        self.builder.transport = transport

        self._task: Optional[asyncio.Task] = None
        self._aborted: set[asyncio.Task] = set()
        self._phase = PHASE_IDLE

    @property
    def is_generating(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def phase(self) -> str:
        return self._phase

    def abort(self) -> bool:
        """Cancel the outstanding send. Returns False if nothing could be cancelled.

        Once the reply has been accepted the round is committed as a unit.
        """
        if not self.is_generating:
            return False
        if self._phase == PHASE_COMMITTING:
            logger.info("Abort ignored: reply already accepted and being saved")
            return False
        self._aborted.add(self._task)
        self._task.cancel()
        logger.info(f"Generation aborted during {self._phase}")
        return True

    def _check_cancelled(self):
        if asyncio.current_task() in self._aborted:
            raise GenerationCancelled("Generation was aborted")

    async def send(
        self,
        contact_id: Optional[str] = None,
        pending_override: Optional[dict[str, list[ChatMessage]]] = None,
    ) -> SendResult:
        if self.is_generating:
            previous = self._task
            self.abort()
            try:
                await previous
            except (asyncio.CancelledError, GenerationCancelled):
                pass
            except Exception as e:
                logger.debug(f"Previous generation ended with {type(e).__name__}: {e}")

        task = asyncio.ensure_future(self._run(contact_id, pending_override))
        self._task = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._aborted:
                raise GenerationCancelled("Generation was aborted") from None
            raise
        finally:
            self._aborted.discard(task)
            if self._task is task:
                self._task = None
                self._phase = PHASE_IDLE

    async def _run(
        self,
        contact_id: Optional[str],
        pending_override: Optional[dict[str, list[ChatMessage]]],
    ) -> SendResult:
        self._phase = PHASE_PREPARING
        started = time.monotonic()

        result = await self.builder.build(self.queue, primary_contact_id=contact_id, pending=pending_override)
        if not result.trigger_set:
            logger.warning("Nothing to send: no pending messages and no re-apply trial fired")
        await self._prepare_images(result)

        self._check_cancelled()
        self._phase = PHASE_WAITING
        response = await self.transport.complete(
            result.blocks,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )
        self._check_cancelled()

        if not response.text or not response.text.strip():
            raise EmptyReplyError(f"{self.transport.name} returned an empty reply")
        validate_reply(response.text)

        self._phase = PHASE_COMMITTING
        bubbles = await self.parser.parse(response.text, result.ref_map)
        messages = await self._persist(bubbles, response)
        await self._apply_commits(result, pending_override is not None)

        elapsed = time.monotonic() - started
        logger.info(
            f"Send complete in {elapsed:.1f}s: {sum(len(m) for m in messages.values())} message(s) "
            f"for {len(messages)} contact(s), usage in={response.usage.input_tokens} "
            f"out={response.usage.output_tokens} thinking={response.usage.thinking_tokens}"
        )
        return SendResult(
            messages=messages,
            bubbles=bubbles,
            usage=response.usage,
            model=response.model,
            reference_count=len(result.ref_map),
            continuation_signature=response.continuation_signature,
            reply=response.text,
        )

    async def _prepare_images(self, result: AssemblyResult):
        bind_deferred_images(result.blocks, result.deferred_images)
        urls = [
            part.image_url
            for block in result.blocks if block.is_structured
            for part in block.content if part.type == "image_url" and part.image_url
        ]
        if not urls:
            return
        data_urls = await fetch_data_urls(urls, self.settings.media_base_url, self.settings.request_timeout)
        materialize_blocks(result.blocks, data_urls)

    async def _persist(self, bubbles: list[ParsedBubble], response: TransportResponse) -> dict[str, list[ChatMessage]]:
        chats = self.builder.chats
        pairs = await persistable_messages(bubbles, self.id_factory, self.clock)
        involved = list(dict.fromkeys(cid for cid, _ in pairs))

        for cid in involved:
            cleared = await chats.clear_signatures(cid)
            if cleared:
                logger.debug(f"Cleared {cleared} stale signature(s) for {cid}")

        if pairs:
            meta = {}
            if response.continuation_signature:
                meta["continuation_signature"] = response.continuation_signature
                meta["provider_family"] = response.provider_family or self.transport.family
            if response.usage.thinking_tokens:
                meta["thinking_tokens"] = response.usage.thinking_tokens
            if meta:
                first = pairs[0][1]
                first.metadata = {**(first.metadata or {}), **meta}

        messages: dict[str, list[ChatMessage]] = {}
        for cid, msg in pairs:
            await chats.append(cid, msg)
            messages.setdefault(cid, []).append(msg)
        return messages

    async def _apply_commits(self, result: AssemblyResult, overridden: bool):
        commits = result.commits
        if not overridden:
            for cid in commits.clear_pending:
                self.queue.clear_messages(cid)
        if commits.drain_signature_actions:
            drained = self.queue.drain_signature_actions()
            logger.debug(f"Drained {len(drained)} signature action(s)")
        if self.builder.plans is not None:
            for cid, plan_id in commits.plan_marks:
                await self.builder.plans.update(cid, plan_id, story_generated=True)
        for cid in commits.advance_rounds:
            await self.builder.chats.advance_round(cid)
