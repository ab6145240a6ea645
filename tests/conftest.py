"""Pytest configuration and shared fixtures."""

import pytest

from chatwire.config import ChatwireSettings
from chatwire.models import ChatMessage, Contact, PresetItem

# 2023-11-14 22:13:20 UTC
T0 = 1700000000


def make_msg(msg_id, sender="user", time=T0, **kwargs) -> ChatMessage:
    """Text message unless a type is given."""
    if "type" not in kwargs and "content" not in kwargs:
        kwargs["content"] = f"text of {msg_id}"
    return ChatMessage(id=msg_id, sender=sender, time=time, **kwargs)


def make_settings(**overrides) -> ChatwireSettings:
    values = {"timezone": "UTC", "api_key": "test-key", "recent_count": 20}
    values.update(overrides)
    return ChatwireSettings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def contacts():
    return [
        Contact(id="c1", name="小明", description="爱笑的大学生"),
        Contact(id="c2", name="小红", description="话少的画家"),
    ]


@pytest.fixture
def history_presets():
    """Just the chat history and the pending operations."""
    return [
        PresetItem(id="chat-history", order=1),
        PresetItem(id="user-pending-ops", order=2),
    ]
