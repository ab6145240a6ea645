"""Default preset layout used when a snapshot brings none of its own."""

from .context import (
    ITEM_CHAR_INFO,
    ITEM_CHAT_HISTORY,
    ITEM_EMOJI_LIBRARY,
    ITEM_PENDING_OPS,
    ITEM_SIGNATURE_HISTORY,
    USER_PERSONA_PLACEHOLDER,
)
from .models import PresetItem

_TASK = (
    "[任务:当前正在使用QQ]\n\n"
    "核心需求：用户与角色正在使用QQ交流，在保持角色设定的基础上，用线上聊天的状态回复\n\n"
    "[/任务:当前正在使用QQ]"
)

_EMOJI_USAGE = (
    "[使用表情包]\n"
    "角色在回复中可以使用[表情包库]的表情来作为线上沟通的润色\n"
    "注意：只能使用[表情包库]内的表情\n"
    "格式：[表情]表情包名称\n"
    "[/使用表情包]"
)

_QUOTE_USAGE = (
    "[引用消息]\n"
    "聊天记录中每条消息前的[#序号]可用于引用\n"
    "格式：[引用]#序号[回复]回复内容\n"
    "回应约定计划：[回复]#序号[约定计划]接受 或 [回复]#序号[约定计划]拒绝\n"
    "[/引用消息]"
)

_FORMAT = (
    "##回复格式示例：\n\n"
    "[角色-角色名]\n"
    "[消息]\n"
    "气泡（换行）= 新气泡\n"
    "如需发送图片，格式:[图片]图片描述\n"
    "...\n\n"
    "#说明：\n"
    "所有消息无需加任何前缀、时间戳、序号"
)


def default_presets() -> list[PresetItem]:
    return [
        PresetItem(id="task-header", label="任务", content=_TASK, order=0),
        PresetItem(id="user-persona", label="用户角色设定", content=USER_PERSONA_PLACEHOLDER, order=1),
        PresetItem(id=ITEM_CHAR_INFO, label="角色档案", order=2),
        PresetItem(id=ITEM_SIGNATURE_HISTORY, label="用户个签历史", order=3),
        PresetItem(id=ITEM_EMOJI_LIBRARY, label="表情包库", content=_EMOJI_USAGE, order=4),
        PresetItem(id="quote-usage", label="引用消息", content=_QUOTE_USAGE, order=5),
        PresetItem(id="clock", label="时间信息", content="当前时间：{{当前时间}}", order=6),
        PresetItem(id=ITEM_CHAT_HISTORY, label="聊天记录", order=7),
        PresetItem(id=ITEM_PENDING_OPS, label="用户当前操作", order=8),
        PresetItem(id="format-req", label="回复格式要求", content=_FORMAT, order=9),
        PresetItem(id="footer", role="user", label="尾部",
                   content="请保持QQ线上交流风格，并使用正确格式进行回复。", order=10),
    ]
