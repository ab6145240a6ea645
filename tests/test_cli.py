"""Tests for the chatwire command line."""

import json
import logging

import pytest
from click.testing import CliRunner

from chatwire.cli import cli

from conftest import T0

ENV = {"CHATWIRE_API_KEY": "test-key", "CHATWIRE_TIMEZONE": "UTC"}

SNAPSHOT = {
    "contacts": [{"id": "c1", "name": "小明", "description": "大学生"}],
    "histories": {"c1": [{"id": "m1", "sender": "contact", "time": T0, "content": "早"}]},
    "pending": {"c1": [{"id": "p1", "sender": "user", "time": T0 + 5, "content": "早呀"}]},
}


def _first_json(output: str) -> dict:
    data, _ = json.JSONDecoder().raw_decode(output[output.index("{"):])
    return data


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def snapshot_file(tmp_path):
    path = tmp_path / "snap.json"
    path.write_text(json.dumps(SNAPSHOT, ensure_ascii=False), encoding="utf-8")
    return str(path)


class TestBuildCommand:

    def test_as_json(self, snapshot_file):
        result = CliRunner().invoke(cli, ["build", snapshot_file, "--as-json", "--seed", "1"], env=ENV)
        assert result.exit_code == 0, result.output
        data = _first_json(result.output)
        assert data["references"] == {"1": "m1", "2": "p1"}
        assert data["trigger_set"] == ["c1"]
        assert any("[#1]" in b["content"] for b in data["blocks"] if isinstance(b["content"], str))

    def test_panels(self, snapshot_file):
        result = CliRunner().invoke(cli, ["build", snapshot_file], env=ENV)
        assert result.exit_code == 0, result.output
        assert "Reference map" in result.output

    def test_missing_file(self, tmp_path):
        result = CliRunner().invoke(cli, ["build", str(tmp_path / "nope.json")], env=ENV)
        assert result.exit_code != 0


class TestParseCommand:

    def test_without_snapshot(self):
        reply = "[角色-小明]\n[消息]\n你好\n[红包]8.8\n"
        result = CliRunner().invoke(cli, ["parse", "-"], input=reply, env=ENV)
        assert result.exit_code == 0, result.output
        assert "redpacket" in result.output
        assert "unresolved" in result.output

    def test_with_snapshot_resolves_quote(self, snapshot_file):
        reply = "[角色-小明]\n[消息]\n[引用]#1[回复]早上好\n"
        result = CliRunner().invoke(
            cli, ["parse", "-", "--snapshot", snapshot_file, "--show-map"], input=reply, env=ENV,
        )
        assert result.exit_code == 0, result.output
        assert "quote" in result.output
        assert "m1" in result.output

    def test_invalid_reply(self):
        result = CliRunner().invoke(cli, ["parse", "-"], input="今天不想按格式说话", env=ENV)
        assert result.exit_code == 1
        assert "not in chat format" in result.output


class TestSendCommand:

    def test_unknown_driver(self, snapshot_file):
        env = {**ENV, "CHATWIRE_DRIVER": "carrier-pigeon"}
        result = CliRunner().invoke(cli, ["send", snapshot_file], env=env)
        assert result.exit_code == 1
        assert "Unknown driver" in result.output
