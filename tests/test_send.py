"""Tests for the send controller: commit semantics, cancellation and images."""

import asyncio
import random
from typing import Optional
from unittest.mock import AsyncMock, patch

import pytest

from chatwire.context import ContextBuilder
from chatwire.errors import GenerationCancelled, ReplyFormatError
from chatwire.llm.provider import (
    EmptyReplyError,
    ModelTransport,
    PromptBlock,
    TokenUsage,
    TransportResponse,
)
from chatwire.models import Plan, SignatureAction
from chatwire.parser import ReplyParser
from chatwire.send import SendController
from chatwire.store import MemoryChatStore, MemoryContactDirectory, MemoryPlanBook, PendingOperationQueue

from conftest import T0, make_msg, make_settings

REPLY = "[角色-小明]\n[消息]\n好呀\n[引用]#1[回复]哈哈\n[/消息]"


class FakeTransport(ModelTransport):
    """Returns canned replies; a reply of None blocks until cancelled."""

    def __init__(self, *replies: Optional[str], signature: Optional[str] = None):
        self.replies = list(replies)
        self.signature = signature
        self.calls: list[list[PromptBlock]] = []
        self.started = asyncio.Event()

    @property
    def name(self) -> str:
        return "fake"

    @property
    def family(self) -> str:
        return "gemini"

    async def complete(self, blocks, temperature=None, max_tokens=None) -> TransportResponse:
        self.calls.append(blocks)
        reply = self.replies.pop(0)
        self.started.set()
        if reply is None:
            await asyncio.Event().wait()
        return TransportResponse(
            text=reply,
            model="fake-1",
            usage=TokenUsage(input_tokens=10, output_tokens=5, thinking_tokens=2),
            continuation_signature=self.signature,
            provider_family=self.family if self.signature else None,
        )


def _controller(contacts, presets, transport, histories=None, queue=None, plans=None, settings=None):
    settings = settings or make_settings()
    chats = MemoryChatStore(histories or {})
    directory = MemoryContactDirectory(contacts)
    plan_book = MemoryPlanBook(plans or {})
    builder = ContextBuilder(
        chats=chats, contacts=directory, presets=presets, settings=settings,
        plans=plan_book, rng=random.Random(1), clock=lambda: T0,
    )
    parser = ReplyParser(chats=chats, contacts=directory, plans=plan_book, rng=random.Random(1))
    ids = (f"r{i}" for i in range(1, 100))
    return SendController(
        builder, parser, transport, queue or PendingOperationQueue(),
        id_factory=lambda: next(ids), clock=lambda: T0 + 100,
    )


def _queue_with(contact_id="c1", msg_id="p1"):
    queue = PendingOperationQueue()
    queue.add_message(contact_id, make_msg(msg_id, content="在干嘛"))
    return queue


class TestSendSuccess:

    @pytest.mark.asyncio
    async def test_persists_and_commits(self, contacts, history_presets):
        old_sig = {"continuation_signature": "b2xk", "provider_family": "gemini"}
        histories = {"c1": [make_msg("m1", sender="contact", content="早", metadata=old_sig)]}
        queue = _queue_with()
        transport = FakeTransport(REPLY, signature="c2lnMQ==")
        controller = _controller(contacts, history_presets, transport, histories, queue)

        result = await controller.send()

        history = await controller.builder.chats.load_history("c1")
        assert [m.id for m in history] == ["m1", "r1", "r2"]
        assert history[0].metadata is None
        assert history[1].metadata == {
            "continuation_signature": "c2lnMQ==",
            "provider_family": "gemini",
            "thinking_tokens": 2,
        }
        assert history[2].type == "quote"
        assert history[2].quoted_message["id"] == "m1"
        assert history[2].time == T0 + 100

        assert queue.pending_for("c1") == []
        assert result.message_count == 2
        assert result.reference_count == 2
        assert result.model == "fake-1"
        assert controller.phase == "idle"
        assert controller.is_generating is False

    @pytest.mark.asyncio
    async def test_builder_uses_controller_transport(self, contacts, history_presets):
        transport = FakeTransport(REPLY)
        controller = _controller(contacts, history_presets, transport)
        assert controller.builder.transport is transport
        assert controller.builder.signature_family == "gemini"

    @pytest.mark.asyncio
    async def test_signature_actions_drained(self, contacts, history_presets):
        queue = _queue_with()
        queue.add_signature_action(SignatureAction(action_type="update", time=T0, signature="新签名"))
        controller = _controller(contacts, history_presets, FakeTransport(REPLY), queue=queue)

        await controller.send()

        assert queue.signature_actions == []
        assert "我修改了个性签名：新签名" in controller.transport.calls[0][-1].text

    @pytest.mark.asyncio
    async def test_plan_marked_told(self, contacts, history_presets):
        plan = Plan(id="plan1", message_id="mp", title="看电影", status="completed", dice_result=90, outcome="好事")
        controller = _controller(
            contacts, history_presets, FakeTransport(REPLY), queue=_queue_with(), plans={"c1": [plan]},
        )
        await controller.send()
        assert plan.story_generated is True

    @pytest.mark.asyncio
    async def test_pending_override_keeps_queue(self, contacts, history_presets):
        queue = _queue_with()
        controller = _controller(contacts, history_presets, FakeTransport(REPLY), queue=queue)

        await controller.send(pending_override={"c1": [make_msg("earlier", content="上一轮")]})

        assert [m.id for m in queue.pending_for("c1")] == ["p1"]
        assert "上一轮" in controller.transport.calls[0][-1].text


class TestSendFailures:

    @pytest.mark.asyncio
    async def test_empty_reply(self, contacts, history_presets):
        queue = _queue_with()
        controller = _controller(contacts, history_presets, FakeTransport("   "), queue=queue)

        with pytest.raises(EmptyReplyError):
            await controller.send()

        assert await controller.builder.chats.load_history("c1") == []
        assert len(queue.pending_for("c1")) == 1
        assert controller.phase == "idle"

    @pytest.mark.asyncio
    async def test_malformed_reply(self, contacts, history_presets):
        queue = _queue_with()
        controller = _controller(contacts, history_presets, FakeTransport("我不想按格式回复"), queue=queue)

        with pytest.raises(ReplyFormatError) as exc_info:
            await controller.send()

        assert exc_info.value.reply == "我不想按格式回复"
        assert len(queue.pending_for("c1")) == 1

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, contacts, history_presets):
        transport = FakeTransport(REPLY)
        transport.complete = AsyncMock(side_effect=RuntimeError("down"))
        queue = _queue_with()
        controller = _controller(contacts, history_presets, transport, queue=queue)

        with pytest.raises(RuntimeError, match="down"):
            await controller.send()
        assert len(queue.pending_for("c1")) == 1


class TestCancellation:

    @pytest.mark.asyncio
    async def test_abort_when_idle(self, contacts, history_presets):
        controller = _controller(contacts, history_presets, FakeTransport(REPLY))
        assert controller.abort() is False

    @pytest.mark.asyncio
    async def test_abort_while_waiting(self, contacts, history_presets):
        queue = _queue_with()
        transport = FakeTransport(None)
        controller = _controller(contacts, history_presets, transport, queue=queue)

        pending_send = asyncio.ensure_future(controller.send())
        await transport.started.wait()
        assert controller.phase == "waiting"
        assert controller.abort() is True

        with pytest.raises(GenerationCancelled):
            await pending_send

        assert await controller.builder.chats.load_history("c1") == []
        assert len(queue.pending_for("c1")) == 1
        assert controller.is_generating is False
        assert controller.phase == "idle"

    @pytest.mark.asyncio
    async def test_new_send_aborts_outstanding_one(self, contacts, history_presets):
        queue = _queue_with()
        transport = FakeTransport(None, REPLY)
        controller = _controller(contacts, history_presets, transport, queue=queue)

        first = asyncio.ensure_future(controller.send())
        await transport.started.wait()
        result = await controller.send()

        with pytest.raises(GenerationCancelled):
            await first
        assert result.message_count == 2
        assert len(transport.calls) == 2
        history = await controller.builder.chats.load_history("c1")
        assert [m.id for m in history] == ["r1", "r2"]

    @pytest.mark.asyncio
    async def test_abort_refused_once_committing(self, contacts, history_presets):
        controller = _controller(contacts, history_presets, FakeTransport(REPLY), queue=_queue_with())
        original_parse = controller.parser.parse
        seen = {}

        async def parse_and_abort(text, ref_map=None):
            seen["phase"] = controller.phase
            seen["aborted"] = controller.abort()
            return await original_parse(text, ref_map)

        controller.parser.parse = parse_and_abort
        result = await controller.send()

        assert seen == {"phase": "committing", "aborted": False}
        assert result.message_count == 2


class TestImages:

    @pytest.mark.asyncio
    async def test_deferred_image_bound_and_round_advanced(self, contacts, history_presets):
        histories = {"c1": [make_msg("img1", type="image", image_url="https://x/a.png", image_round=1)]}
        controller = _controller(contacts, history_presets, FakeTransport(REPLY), histories, _queue_with())
        data_urls = {"https://x/a.png": "data:image/png;base64,AAA"}

        with patch("chatwire.send.fetch_data_urls", new=AsyncMock(return_value=data_urls)) as mock_fetch:
            await controller.send()

        mock_fetch.assert_awaited_once()
        sent = controller.transport.calls[0]
        assert sent[-1].role == "user"
        assert sent[-1].content[-1].image_url == "data:image/png;base64,AAA"
        assert await controller.builder.chats.current_round("c1") == 2

    @pytest.mark.asyncio
    async def test_failed_image_dropped(self, contacts, history_presets):
        histories = {"c1": [make_msg("img1", type="image", image_url="https://x/a.png", image_round=1)]}
        controller = _controller(contacts, history_presets, FakeTransport(REPLY), histories, _queue_with())

        with patch("chatwire.send.fetch_data_urls", new=AsyncMock(return_value={})):
            await controller.send()

        sent = controller.transport.calls[0]
        assert all(p.type != "image_url" for b in sent if b.is_structured for p in b.content)
