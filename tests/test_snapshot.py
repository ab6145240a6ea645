"""Tests for loading and saving JSON snapshots."""

import json
import random

import pytest

from chatwire.snapshot import SnapshotError, load_snapshot, snapshot_from_dict, snapshot_to_dict

from conftest import T0, make_settings

SNAPSHOT = {
    "user": {"name": "阿杰", "persona": "程序员", "signature_history": [{"timestamp": T0, "content": "加油"}]},
    "contacts": [
        {"id": "c1", "name": "小明", "description": "大学生", "prompt_items": [
            {"id": "i1", "label": "人设", "kind": "auto", "content": "__AUTO_CHAR_DESC__"},
            {"id": "i2", "label": "线下剧情", "kind": "narrative", "order": 1},
        ]},
    ],
    "histories": {"c1": [{"id": "m1", "sender": "contact", "time": T0, "content": "早"}]},
    "rounds": {"c1": 3},
    "pending": {"c1": [{"id": "p1", "sender": "user", "time": T0 + 5, "content": "早呀"}]},
    "signature_actions": [{"action_type": "like", "time": T0, "contact_name": "小明"}],
    "emojis": [{"id": "e1", "name": "开心"}],
    "plans": {"c1": [{"id": "plan1", "message_id": "m0", "title": "爬山"}]},
    "regex_scripts": {"c1": [{"scriptName": "s", "findRegex": "/早/g", "replaceString": "早上好"}]},
    "narrative": {"c1": [{"speaker": "小明", "text": "早"}]},
    "macros": {"weather": "晴"},
}


class TestLoad:

    @pytest.mark.asyncio
    async def test_stores_populated(self):
        snap = snapshot_from_dict(SNAPSHOT, make_settings())

        assert snap.user.name == "阿杰"
        assert snap.user.signature_history[0].content == "加油"
        assert (await snap.contacts.get("c1")).prompt_items[0].kind == "auto"
        assert [m.id for m in await snap.chats.load_history("c1")] == ["m1"]
        assert await snap.chats.current_round("c1") == 3
        assert [m.id for m in snap.queue.pending_for("c1")] == ["p1"]
        assert snap.queue.signature_actions[0].action_type == "like"
        assert snap.emojis.find_by_name("开心").id == "e1"
        assert (await snap.plans.list_plans("c1"))[0].title == "爬山"
        assert snap.macros == {"weather": "晴"}

    def test_default_presets_when_missing(self):
        snap = snapshot_from_dict({}, make_settings())
        ids = [p.id for p in snap.presets]
        assert ids[0] == "task-header"
        assert "chat-history" in ids and "user-pending-ops" in ids

    def test_user_name_falls_back_to_settings(self):
        snap = snapshot_from_dict({}, make_settings(user_name="小李"))
        assert snap.user.name == "小李"

    def test_malformed_entry(self):
        with pytest.raises(SnapshotError, match="Malformed"):
            snapshot_from_dict({"emojis": [{"id": "e1"}]}, make_settings())

    def test_load_file(self, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text(json.dumps(SNAPSHOT, ensure_ascii=False), encoding="utf-8")
        assert load_snapshot(path, make_settings()).user.persona == "程序员"

    def test_load_not_json(self, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text("{oops", encoding="utf-8")
        with pytest.raises(SnapshotError, match="Cannot read"):
            load_snapshot(path, make_settings())

    def test_load_not_object(self, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(SnapshotError, match="JSON object"):
            load_snapshot(path, make_settings())


class TestBuildFromSnapshot:

    @pytest.mark.asyncio
    async def test_builder_uses_snapshot_state(self):
        settings = make_settings()
        snap = snapshot_from_dict(SNAPSHOT, settings)

        result = await snap.builder(settings=settings, rng=random.Random(0)).build(snap.queue)

        text = "\n".join(b.text for b in result.blocks)
        assert "[人设]\n大学生\n[/人设]" in text
        assert "小明: 早上好" in text
        assert "阿杰点赞了小明的个性签名" in text
        assert result.ref_map.as_dict() == {1: "m1", 2: "p1"}


class TestSave:

    @pytest.mark.asyncio
    async def test_round_trip_of_mutable_state(self):
        snap = snapshot_from_dict(SNAPSHOT, make_settings())
        await snap.chats.advance_round("c1")
        snap.queue.clear_messages("c1")

        data = snapshot_to_dict(snap)

        assert data["histories"]["c1"] == [{"id": "m1", "sender": "contact", "time": T0, "type": "text", "content": "早"}]
        assert data["rounds"] == {"c1": 4}
        assert data["pending"] == {}
        assert data["signature_actions"][0]["contact_name"] == "小明"
        assert data["plans"]["c1"][0]["status"] == "pending"

        reloaded = snapshot_from_dict({**SNAPSHOT, **data}, make_settings())
        assert await reloaded.chats.current_round("c1") == 4
        assert reloaded.queue.pending_for("c1") == []
