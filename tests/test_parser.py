"""Tests for reply parsing: segmentation, classification, reference resolution."""

from unittest.mock import MagicMock

import pytest

from chatwire.errors import ReplyFormatError
from chatwire.models import DeletedContactRecord, Emoji, Plan
from chatwire.numbering import ReferenceMap
from chatwire.parser import (
    ReplyParser,
    classify_bubble,
    extract_payload,
    persistable_messages,
    split_bubbles,
    split_role_blocks,
    validate_reply,
)
from chatwire.store import (
    DeletedContacts,
    EmojiCatalog,
    MemoryChatStore,
    MemoryContactDirectory,
    MemoryPlanBook,
)

from conftest import make_msg


# ═══════════════════════════════════════════════════════════════
# Segmentation
# ═══════════════════════════════════════════════════════════════

class TestSegmentation:

    def test_blocks_split_on_open_tags(self):
        text = "[角色-小明]\n[消息]\n你好\n[/消息]\n[/角色-小明]\n[角色-小红]\n[消息]\n在吗\n[/消息]"
        blocks = split_role_blocks(text)
        assert [b.role_name for b in blocks] == ["小明", "小红"]
        assert split_bubbles(extract_payload(blocks[1].content)) == ["在吗"]

    def test_text_before_first_tag_ignored(self):
        blocks = split_role_blocks("好的，我来回复。\n[角色-小明]\n[消息]\n嗨")
        assert len(blocks) == 1

    def test_missing_end_marker_consumes_rest(self):
        blocks = split_role_blocks("[角色-小明]\n[消息]\n第一句\n\n第二句\n第三句")
        assert split_bubbles(extract_payload(blocks[0].content)) == ["第一句", "第二句", "第三句"]

    def test_missing_end_marker_stops_at_next_block(self):
        blocks = split_role_blocks("[角色-小明]\n[消息]\n第一句\n[角色-小红]\n[消息]\n第二句")
        assert split_bubbles(extract_payload(blocks[0].content)) == ["第一句"]

    @pytest.mark.parametrize("boundary", ["[空间动态]\n发了条动态", "[操作-点赞]", "[/角色-小明]"])
    def test_payload_stops_at_other_sections(self, boundary):
        payload = extract_payload(f"[消息]\n你好\n{boundary}")
        assert split_bubbles(payload) == ["你好"]

    def test_no_payload_marker(self):
        assert extract_payload("只是内心独白") is None

    def test_blank_lines_dropped_and_stripped(self):
        assert split_bubbles("\n  你好  \n\n\t\n再见\n") == ["你好", "再见"]


class TestValidateReply:

    def test_valid(self):
        validate_reply("[角色-小明]\n[消息]\n你好")

    def test_missing_role_tag(self):
        with pytest.raises(ReplyFormatError, match="角色"):
            validate_reply("[消息]\n你好")

    def test_missing_payload_marker(self):
        with pytest.raises(ReplyFormatError, match="消息"):
            validate_reply("[角色-小明]\n你好")

    def test_empty(self):
        with pytest.raises(ReplyFormatError):
            validate_reply("")


# ═══════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════

class TestClassify:

    def test_plain_text_round_trip(self):
        bubble = classify_bubble("今天天气不错")
        assert bubble.type == "text"
        assert bubble.content == "今天天气不错"

    def test_redpacket(self):
        bubble = classify_bubble("[红包]88.88")
        assert bubble.type == "redpacket"
        assert bubble.amount == 88.88

    def test_redpacket_bad_amount_is_text(self):
        bubble = classify_bubble("[红包]很多钱")
        assert bubble.type == "text"
        assert bubble.content == "[红包]很多钱"

    def test_transfer(self):
        bubble = classify_bubble("[转账]¥50-生日快乐")
        assert bubble.type == "transfer"
        assert bubble.amount == 50
        assert bubble.message == "生日快乐"

    def test_transfer_without_message(self):
        bubble = classify_bubble("[转账]20")
        assert (bubble.amount, bubble.message) == (20, "")

    def test_image_with_url(self):
        bubble = classify_bubble("[图片]一只猫|https://x/y.png")
        assert bubble.type == "image"
        assert bubble.description == "一只猫"
        assert bubble.image_url == "https://x/y.png"

    def test_image_without_url(self):
        bubble = classify_bubble("[图片]夕阳")
        assert (bubble.description, bubble.image_url) == ("夕阳", None)

    def test_quote_placeholder(self):
        bubble = classify_bubble("[引用]#3[回复]好的")
        assert bubble.type == "quote-placeholder"
        assert (bubble.ref_number, bubble.reply_content) == (3, "好的")

    def test_legacy_quote_is_text(self):
        bubble = classify_bubble("[引用]你好[回复]好的")
        assert bubble.type == "text"
        assert bubble.content == "[引用]你好[回复]好的"

    def test_recall(self):
        bubble = classify_bubble("[撤回]不该说的")
        assert bubble.type == "recalled-pending"
        assert bubble.original_content == "不该说的"
        assert bubble.can_peek is True

    def test_plan_response(self):
        bubble = classify_bubble("[回复]#4 [约定计划]接受")
        assert bubble.type == "plan-response-placeholder"
        assert bubble.ref_number == 4
        assert bubble.content == "[约定计划]接受"

    def test_emoji_found(self):
        emojis = EmojiCatalog([Emoji(id="e1", name="小狗歪头")])
        bubble = classify_bubble("[表情]小狗歪头", emojis=emojis)
        assert (bubble.type, bubble.content, bubble.emoji_name) == ("emoji", "e1", "小狗歪头")

    def test_emoji_unknown_kept_by_name(self):
        bubble = classify_bubble("[表情]不存在")
        assert (bubble.type, bubble.content, bubble.emoji_name) == ("emoji", "不存在", "不存在")

    def test_video_and_file(self):
        assert classify_bubble("[视频]跳舞").description == "跳舞"
        file_bubble = classify_bubble("[文件]报告.pdf|2.3MB")
        assert (file_bubble.type, file_bubble.filename, file_bubble.size) == ("file", "报告.pdf", "2.3MB")

    @pytest.mark.parametrize("line", ["今天天气不错", "[引用]你好[回复]好的", "[红包]很多钱", "[文件]没有大小"])
    def test_demoted_text_is_stable(self, line):
        first = classify_bubble(line)
        second = classify_bubble(first.content)
        assert first.type == second.type == "text"
        assert second.content == first.content

    def test_recall_persists_as_recalled(self):
        msg = classify_bubble("[撤回]算了").to_chat_message("m9", 100)
        assert msg.type == "recalled"
        assert msg.recalled_time == 100
        assert msg.sender == "contact"

    def test_placeholder_cannot_persist(self):
        with pytest.raises(ValueError):
            classify_bubble("[引用]#1[回复]x").to_chat_message("m9", 100)


# ═══════════════════════════════════════════════════════════════
# ReplyParser
# ═══════════════════════════════════════════════════════════════

def _parser(contacts, histories=None, plans=None, deleted=None, rng=None):
    chats = MemoryChatStore(histories or {})
    parser = ReplyParser(
        chats=chats,
        contacts=MemoryContactDirectory(contacts),
        plans=MemoryPlanBook(plans or {}),
        deleted=DeletedContacts(deleted or []),
        user_name="我",
        rng=rng,
    )
    return parser, chats


def _map(*entries):
    ref_map = ReferenceMap()
    for message_id, contact_id in entries:
        ref_map.assign(message_id, contact_id)
    return ref_map


class TestReplyParser:

    @pytest.mark.asyncio
    async def test_routes_and_classifies(self, contacts):
        parser, _ = _parser(contacts)
        bubbles = await parser.parse("[角色-小明]\n[消息]\n你好\n[红包]8.8\n[/消息]\n[角色-小红]\n[消息]\n嗯")
        assert [(b.contact_id, b.type) for b in bubbles] == [("c1", "text"), ("c1", "redpacket"), ("c2", "text")]

    @pytest.mark.asyncio
    async def test_whitespace_insensitive_routing(self, contacts):
        parser, _ = _parser(contacts)
        bubbles = await parser.parse("[角色-小 明]\n[消息]\n你好")
        assert bubbles[0].contact_id == "c1"

    @pytest.mark.asyncio
    async def test_unknown_role_skipped(self, contacts):
        parser, _ = _parser(contacts)
        bubbles = await parser.parse("[角色-路人]\n[消息]\n你好\n[角色-小明]\n[消息]\n嗨")
        assert [b.content for b in bubbles] == ["嗨"]

    @pytest.mark.asyncio
    async def test_quote_resolves(self, contacts):
        histories = {"c1": [make_msg("msg_abc", sender="contact", content="明天见")]}
        parser, _ = _parser(contacts, histories)
        ref_map = _map(("m1", "c1"), ("m2", "c1"), ("msg_abc", "c1"))
        [bubble] = await parser.parse("[角色-小明]\n[消息]\n[引用]#3[回复]好的", ref_map)
        assert bubble.type == "quote"
        assert bubble.quoted_message["id"] == "msg_abc"
        assert bubble.quoted_message["sender_name"] == "小明"
        assert bubble.reply_content == "好的"

    @pytest.mark.asyncio
    async def test_quote_of_user_message(self, contacts):
        histories = {"c1": [make_msg("m1", content="在吗")]}
        parser, _ = _parser(contacts, histories)
        [bubble] = await parser.parse("[角色-小明]\n[消息]\n[引用]#1[回复]在", _map(("m1", "c1")))
        assert bubble.quoted_message["sender_name"] == "我"

    @pytest.mark.asyncio
    async def test_quote_across_contacts(self, contacts):
        histories = {"c1": [make_msg("m1", sender="contact", content="我是小明")]}
        parser, _ = _parser(contacts, histories)
        [bubble] = await parser.parse("[角色-小红]\n[消息]\n[引用]#1[回复]我知道", _map(("m1", "c1")))
        assert bubble.type == "quote"
        assert bubble.contact_id == "c2"
        assert bubble.quoted_message["sender_name"] == "小明"

    @pytest.mark.asyncio
    async def test_unresolved_quote_is_raw_text(self, contacts):
        parser, _ = _parser(contacts)
        [bubble] = await parser.parse("[角色-小明]\n[消息]\n[引用]#3[回复]好的", ReferenceMap())
        assert bubble.type == "text"
        assert bubble.content == "[引用]#3[回复]好的"

    @pytest.mark.asyncio
    async def test_quote_of_vanished_message_is_raw_text(self, contacts):
        parser, _ = _parser(contacts)
        [bubble] = await parser.parse("[角色-小明]\n[消息]\n[引用]#1[回复]好的", _map(("gone", "c1")))
        assert bubble.type == "text"

    @pytest.mark.asyncio
    async def test_reparsing_demoted_text_is_stable(self, contacts):
        parser, _ = _parser(contacts)
        [first] = await parser.parse("[角色-小明]\n[消息]\n[引用]#3[回复]好的")
        [second] = await parser.parse(f"[角色-小明]\n[消息]\n{first.content}")
        assert (second.type, second.content) == ("text", first.content)

    @pytest.mark.asyncio
    async def test_friend_request_block(self, contacts):
        deleted = [DeletedContactRecord(contact_id="c9", contact_name="小刚", delete_time=0)]
        parser, _ = _parser(contacts, deleted=deleted)
        bubbles = await parser.parse("[角色-小刚]\n[消息]\n[好友申请]对不起\n能加回来吗")
        assert [(b.type, b.contact_id, b.content) for b in bubbles] == [
            ("friend_request", "c9", "对不起"),
            ("friend_request", "c9", "能加回来吗"),
        ]

    @pytest.mark.asyncio
    async def test_friend_request_from_stranger_skipped(self, contacts):
        parser, _ = _parser(contacts)
        assert await parser.parse("[角色-小刚]\n[消息]\n[好友申请]你好") == []


class TestPlanResponses:

    @staticmethod
    def _setup(contacts, dice=30):
        histories = {"c1": [make_msg("m_plan", content="[约定计划]去看电影")]}
        plans = {"c1": [Plan(id="p1", message_id="m_plan", title="去看电影")]}
        rng = MagicMock()
        rng.randint.return_value = dice
        rng.choice.side_effect = lambda seq: seq[0]
        parser, chats = _parser(contacts, histories, plans=plans, rng=rng)
        return parser, chats

    @pytest.mark.asyncio
    async def test_accept_rolls_dice(self, contacts):
        parser, chats = self._setup(contacts, dice=30)
        [bubble] = await parser.parse("[角色-小明]\n[消息]\n[回复]#1[约定计划]接受", _map(("m_plan", "c1")))

        assert (bubble.type, bubble.content) == ("text", "[约定计划]接受")
        plan = await parser.plans.by_message_id("c1", "m_plan")
        assert plan.status == "completed"
        assert (plan.dice_result, plan.outcome) == (30, "顺利")
        assert plan.story == "一切都很顺利，没有发生意外"
        stored = await chats.find("c1", "m_plan")
        assert stored.content == "[约定计划已完成]去看电影"
        parser.rng.randint.assert_called_once_with(1, 100)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("dice,outcome", [(40, "顺利"), (41, "麻烦"), (80, "麻烦"), (81, "好事"), (100, "好事")])
    async def test_outcome_buckets(self, contacts, dice, outcome):
        parser, _ = self._setup(contacts, dice=dice)
        await parser.parse("[角色-小明]\n[消息]\n[回复]#1[约定计划]接受", _map(("m_plan", "c1")))
        plan = await parser.plans.by_message_id("c1", "m_plan")
        assert plan.outcome == outcome

    @pytest.mark.asyncio
    async def test_reject(self, contacts):
        parser, chats = self._setup(contacts)
        [bubble] = await parser.parse("[角色-小明]\n[消息]\n[回复]#1[约定计划]拒绝", _map(("m_plan", "c1")))
        plan = await parser.plans.by_message_id("c1", "m_plan")
        assert plan.status == "rejected"
        assert plan.dice_result is None
        assert (await chats.find("c1", "m_plan")).content == "[约定计划]去看电影"
        assert bubble.content == "[约定计划]拒绝"

    @pytest.mark.asyncio
    async def test_reference_to_non_plan_is_raw_text(self, contacts):
        histories = {"c1": [make_msg("m1", content="普通消息")]}
        parser, _ = _parser(contacts, histories)
        [bubble] = await parser.parse("[角色-小明]\n[消息]\n[回复]#1[约定计划]接受", _map(("m1", "c1")))
        assert (bubble.type, bubble.content) == ("text", "[回复]#1[约定计划]接受")


class TestPersistable:

    @pytest.mark.asyncio
    async def test_ids_and_order(self, contacts):
        parser, _ = _parser(contacts)
        bubbles = await parser.parse("[角色-小明]\n[消息]\n一\n[撤回]二")
        ids = iter(["a", "b"])
        pairs = await persistable_messages(bubbles, id_factory=lambda: next(ids), clock=lambda: 50)
        assert [(cid, m.id, m.type, m.time) for cid, m in pairs] == [
            ("c1", "a", "text", 50),
            ("c1", "b", "recalled", 50),
        ]
