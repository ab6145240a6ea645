"""Which images travel to the model this round, and how they get there."""

import asyncio
import base64
import logging
from typing import Iterable, Optional
from urllib.parse import urljoin

import httpx

from .llm.provider import ContentPart, PromptBlock
from .models import ImageAttachment

logger = logging.getLogger("chatwire.images")

MODE_ALWAYS = "always"
MODE_ONCE = "once"
MODE_NEVER = "never"

_DEFAULT_MIME = "image/jpeg"


def should_forward(mode: str, image_round: Optional[int], current_round: int) -> bool:
    """Policy check for one stored or pending image."""
    if mode == MODE_ALWAYS:
        return True
    if mode == MODE_ONCE:
        return image_round == current_round
    return False


class AttachmentSet:
    """Images collected during one build, unique per message id."""

    def __init__(self):
        self._items: list[ImageAttachment] = []
        self._seen: set[str] = set()

    def add(self, attachment: ImageAttachment) -> bool:
        key = attachment.message_id or attachment.url
        if key in self._seen:
            logger.debug(f"Image for message {key} already collected, skipping")
            return False
        self._seen.add(key)
        self._items.append(attachment)
        return True

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._seen

    def __iter__(self):
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> list[ImageAttachment]:
        return list(self._items)

    def rollback(self, size: int):
        """Forget every image collected after the first size."""
        for attachment in self._items[size:]:
            self._seen.discard(attachment.message_id or attachment.url)
        del self._items[size:]


def resolve_url(url: str, base_url: Optional[str]) -> str:
    if url.startswith(("http://", "https://", "data:")) or not base_url:
        return url
    return urljoin(base_url.rstrip("/") + "/", url.lstrip("/"))


async def _fetch_one(client: httpx.AsyncClient, url: str) -> str:
    resp = await client.get(url)
    resp.raise_for_status()
    mime = resp.headers.get("content-type", _DEFAULT_MIME).split(";")[0].strip() or _DEFAULT_MIME
    if not mime.startswith("image/"):
        raise ValueError(f"Not an image: {url} ({mime})")
    encoded = base64.b64encode(resp.content).decode("utf-8")
    logger.debug(f"Image fetched: {url} ({len(resp.content)} bytes, {mime})")
    return f"data:{mime};base64,{encoded}"


async def fetch_data_urls(
    urls: Iterable[str],
    base_url: Optional[str] = None,
    timeout: float = 30.0,
) -> dict[str, str]:
    """Fetch every non-data URL concurrently.

    Returns {original url: data url}. A URL that fails to download is
    absent from the result; callers drop that image and keep the rest.
    """
    unique = list(dict.fromkeys(urls))
    result = {u: u for u in unique if u.startswith("data:")}
    to_fetch = [u for u in unique if not u.startswith("data:")]
    if not to_fetch:
        return result

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        outcomes = await asyncio.gather(
            *(_fetch_one(client, resolve_url(u, base_url)) for u in to_fetch),
            return_exceptions=True,
        )

    for url, outcome in zip(to_fetch, outcomes):
        if isinstance(outcome, BaseException):
            logger.warning(f"Image dropped, fetch failed for {url}: {outcome}")
            continue
        result[url] = outcome
    logger.info(f"Images materialized: {len(result)}/{len(unique)}")
    return result


def materialize_blocks(blocks: list[PromptBlock], data_urls: dict[str, str]) -> list[PromptBlock]:
    """Swap image URLs for data URLs in place; image parts that failed are removed."""
    for block in blocks:
        if not block.is_structured:
            continue
        kept = []
        for part in block.content:
            if part.type == "image_url":
                data_url = data_urls.get(part.image_url)
                if data_url is None:
                    continue
                part.image_url = data_url
            kept.append(part)
        block.content = kept
    return blocks


def bind_deferred_images(blocks: list[PromptBlock], images: list[ImageAttachment]) -> list[PromptBlock]:
    """Attach images to the last user block, after macro expansion.

    A user block is appended when the prompt has none.
    """
    if not images:
        return blocks
    target = next((b for b in reversed(blocks) if b.role == "user"), None)
    if target is None:
        target = PromptBlock(role="user", content="")
        blocks.append(target)
    parts = list(target.content) if target.is_structured else [ContentPart.text_part(target.content)]
    for image in images:
        parts.append(ContentPart.image_part(image.url, image.message_id))
    target.content = parts
    logger.debug(f"Bound {len(images)} deferred image(s) to the last user block")
    return blocks
