"""Wire vocabulary shared by the serializer and the reply parser.

The model reads these markers in the prompt and writes them back in its
reply. Changing any of them breaks replies produced against older prompts,
so they live in one place.
"""

import re

# Role blocks
ROLE_OPEN = "[角色-{name}]"
ROLE_CLOSE = "[/角色-{name}]"
ROLE_OPEN_RE = re.compile(r"^\[角色-(.+?)\]")
ROLE_CLOSE_PREFIX = "[/角色-"

# Payload section inside a role block
PAYLOAD_BEGIN = "[消息]"
PAYLOAD_END = "[/消息]"
MOMENTS_MARKER = "[空间动态]"
OPERATION_PREFIX = "[操作-"
PAYLOAD_BOUNDARIES = (PAYLOAD_END, MOMENTS_MARKER, OPERATION_PREFIX, ROLE_CLOSE_PREFIX)

# Dossier
DOSSIER_OPEN = "[角色卡-{name}]"
DOSSIER_CLOSE = "[/角色卡-{name}]"
PERSONA = "人设"
NARRATIVE = "线下剧情"

# History lines
REF_PREFIX = "[#{number}] "
READ_WATERMARK = "----上方对话user已读-----"

# Bubble markers
RECALL = "[撤回]"
QUOTE = "[引用]"
REPLY = "[回复]"
PLAN = "[约定计划]"
PLAN_DONE = "[约定计划已完成]"
EMOJI = "[表情]"
EMOJI_DELETED = "[表情包已删除]"
REDPACKET = "[红包]"
TRANSFER = "[转账]"
IMAGE = "[图片]"
VIDEO = "[视频]"
FILE = "[文件]"
POKE = "[戳一戳]"
GIFT_MEMBERSHIP = "[送会员]"
BUY_MEMBERSHIP = "[开会员]"
FRIEND_REQUEST = "[好友申请]"
FAVORITE = "[收藏夹]"
FORWARDED_OPEN = "[转发消息]"
FORWARDED_CLOSE = "[/转发消息]"

RECALL_RE = re.compile(r"^\[撤回\](.+)$")
QUOTE_RE = re.compile(r"^\[引用\]#(\d+)\[回复\](.+)$")
LEGACY_QUOTE_RE = re.compile(r"^\[引用\](.+?)\[回复\](.+)$")
PLAN_RESPONSE_RE = re.compile(r"^\[回复\]#(\d+)\s*\[约定计划\](.+)$")
EMOJI_RE = re.compile(r"^\[表情\](.+)$")
REDPACKET_RE = re.compile(r"^\[红包\]\s*(.+)$")
TRANSFER_RE = re.compile(r"^\[转账\]\s*(.+)$")
AMOUNT_RE = re.compile(r"^¥?\s*(\d+(?:\.\d+)?)")
TRANSFER_SEP_RE = re.compile(r"^[|\-\s]+")
IMAGE_RE = re.compile(r"^\[图片\](.+)$")
VIDEO_RE = re.compile(r"^\[视频\](.+)$")
FILE_RE = re.compile(r"^\[文件\](.+?)\|(.+)$")

# Pending operations section
PENDING_REMINDER = "#提醒：需关注{{user}}本轮操作"
PENDING_OPEN = "[{{user}}本轮操作]"
PENDING_CLOSE = "[/{{user}}本轮操作]"
PENDING_GROUP = "[给{name}发送消息]"
TASK_OPEN = "[临时任务]"
TASK_CLOSE = "[/临时任务]"
OTHER_OPS_OPEN = "[其他操作]"
OTHER_OPS_CLOSE = "[/其他操作]"


def role_open(name: str) -> str:
    return ROLE_OPEN.format(name=name)


def role_close(name: str) -> str:
    return ROLE_CLOSE.format(name=name)


def ref_prefix(number: int) -> str:
    return REF_PREFIX.format(number=number)


def section(label: str, body: str) -> str:
    """Wrap body in [label]...[/label] lines."""
    return f"[{label}]\n{body}\n[/{label}]"
