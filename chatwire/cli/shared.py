"""Shared utilities for chatwire CLI commands."""

import logging
import random
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.markup import escape

from chatwire.config import ChatwireSettings, load_settings
from chatwire.llm.provider import PromptBlock
from chatwire.numbering import ReferenceMap
from chatwire.parser import ParsedBubble
from chatwire.snapshot import Snapshot, SnapshotError, load_snapshot

console = Console()

_log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_ROLE_STYLES = {"system": "cyan", "user": "green", "assistant": "magenta"}


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    handlers: list[logging.Handler] = [logging.StreamHandler()]   # stderr (console)
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=_log_format,
        handlers=handlers,
        force=True,
    )


def open_snapshot(path: str, settings: Optional[ChatwireSettings] = None) -> tuple[ChatwireSettings, Snapshot]:
    settings = settings or load_settings()
    try:
        return settings, load_snapshot(path, settings)
    except SnapshotError as e:
        raise click.ClickException(str(e))


def make_rng(seed: Optional[int]) -> random.Random:
    return random.Random(seed) if seed is not None else random.Random()


def _block_body(block: PromptBlock) -> str:
    if isinstance(block.content, str):
        return block.content
    lines = []
    for part in block.content:
        if part.type == "image_url":
            url = part.image_url or ""
            shown = url if not url.startswith("data:") else f"{url[:32]}… ({len(url)} chars)"
            lines.append(f"<image {part.message_id or ''}: {shown}>")
        else:
            lines.append(part.text or "")
            if part.thought_signature:
                lines.append(f"<signature {len(part.thought_signature)} chars>")
    return "\n".join(lines)


def print_blocks(blocks: list[PromptBlock]):
    for i, block in enumerate(blocks, start=1):
        style = _ROLE_STYLES.get(block.role, "white")
        kind = "structured" if block.is_structured else "text"
        console.print(Panel(
            Text(_block_body(block)),
            title=f"[bold {style}]#{i} {block.role}[/bold {style}] [dim]{kind}[/dim]",
            title_align="left",
            border_style=style,
        ))


def print_ref_map(ref_map: ReferenceMap):
    table = Table(title=f"Reference map ({len(ref_map)})")
    table.add_column("#", justify="right", style="bold")
    table.add_column("Message id")
    table.add_column("Contact", style="dim")
    for number, entry in ref_map.items():
        table.add_row(str(number), entry.message_id, entry.contact_id or "")
    console.print(table)


def _bubble_detail(bubble: ParsedBubble) -> str:
    if bubble.quoted_message:
        return f"→ {bubble.quoted_message.get('id')} / {bubble.reply_content}"
    if bubble.ref_number is not None:
        return f"#{bubble.ref_number} (unresolved)"
    if bubble.amount is not None:
        return f"¥{bubble.amount:g} {bubble.message or ''}".strip()
    if bubble.description is not None:
        return " | ".join(x for x in (bubble.description, bubble.image_url) if x)
    if bubble.filename:
        return f"{bubble.filename} ({bubble.size})"
    if bubble.original_content:
        return bubble.original_content
    return bubble.content or ""


def print_bubbles(bubbles: list[ParsedBubble], title: str = "Bubbles"):
    table = Table(title=f"{title} ({len(bubbles)})")
    table.add_column("Role", style="bold")
    table.add_column("Contact", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Content")
    for bubble in bubbles:
        table.add_row(escape(bubble.role_name), bubble.contact_id or "", bubble.type, escape(_bubble_detail(bubble)))
    console.print(table)
