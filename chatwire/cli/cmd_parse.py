"""Parse command."""

import asyncio
import click
from rich.markup import escape

from chatwire.errors import ReplyFormatError, classify_error
from chatwire.parser import classify_bubble, extract_payload, split_bubbles, split_role_blocks, validate_reply

from . import cli
from .shared import console, make_rng, open_snapshot, print_bubbles, print_ref_map


def _segment_only(text: str) -> list:
    """Classification without routing or reference resolution."""
    bubbles = []
    for block in split_role_blocks(text):
        payload = extract_payload(block.content)
        if payload is None:
            continue
        bubbles.extend(classify_bubble(line, block.role_name) for line in split_bubbles(payload))
    return bubbles


@cli.command()
@click.argument("reply", type=click.File("r", encoding="utf-8"))
@click.option("--snapshot", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Route bubbles and resolve [#N] references against this snapshot")
@click.option("--seed", type=int, default=None, help="Seed for re-apply trials and plan dice")
@click.option("--show-map", is_flag=True, help="Print the reference map used for resolution")
def parse(reply, snapshot, seed, show_map):
    """Parse a model reply (file path, or - for stdin)."""
    text = reply.read()
    try:
        validate_reply(text)
    except ReplyFormatError as e:
        console.print(f"[red]{classify_error(e)}[/red] [dim]({escape(str(e))})[/dim]")
        raise SystemExit(1)

    if snapshot is None:
        print_bubbles(_segment_only(text), title="Bubbles (unresolved)")
        return

    settings, snap = open_snapshot(snapshot)
    rng = make_rng(seed)

    async def _parse():
        # the map a build of this snapshot hands out is the one the reply cites
        result = await snap.builder(settings=settings, rng=rng).build(snap.queue)
        bubbles = await snap.parser(rng=rng).parse(text, result.ref_map)
        return result.ref_map, bubbles

    ref_map, bubbles = asyncio.run(_parse())
    if show_map:
        print_ref_map(ref_map)
    print_bubbles(bubbles)
