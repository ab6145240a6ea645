"""Build command."""

import asyncio
import json
import click

from . import cli
from .shared import console, make_rng, open_snapshot, print_blocks, print_ref_map


@cli.command()
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
@click.option("--contact", "contact_id", default=None, help="Primary contact id ({{char}} macro)")
@click.option("--seed", type=int, default=None, help="Seed for the re-apply trials")
@click.option("--mode", type=click.Choice(["text", "multimodal"]), default=None, help="Override transport mode")
@click.option("--family", default=None, help="Transport family whose signatures are replayed (gemini, openai)")
@click.option("--as-json", "as_json", is_flag=True, help="Print blocks as JSON instead of panels")
def build(snapshot, contact_id, seed, mode, family, as_json):
    """Assemble the prompt for a snapshot."""
    settings, snap = open_snapshot(snapshot)
    if mode:
        settings = settings.model_copy(update={"transport_mode": mode})

    async def _build():
        builder = snap.builder(settings=settings, rng=make_rng(seed), transport_family=family)
        return await builder.build(snap.queue, primary_contact_id=contact_id)

    result = asyncio.run(_build())

    if as_json:
        click.echo(json.dumps({
            "blocks": [b.to_dict() for b in result.blocks],
            "references": {str(n): mid for n, mid in result.ref_map.as_dict().items()},
            "trigger_set": result.trigger_set,
        }, ensure_ascii=False, indent=2))
        return

    print_blocks(result.blocks)
    print_ref_map(result.ref_map)
    if result.images:
        console.print(f"[bold]Images:[/bold] {len(result.images)} "
                      f"({len(result.deferred_images)} bound to the last user block)")
        for image in result.images:
            console.print(f"  [dim]{image.contact_id}[/dim] {image.message_id}: {image.url}")
    if result.reapply_fired:
        names = ", ".join(r.contact_name for r in result.reapply_fired)
        console.print(f"[yellow]Re-apply trial fired:[/yellow] {names}")
    console.print(
        f"[dim]Triggered: {', '.join(result.trigger_set) or '(none)'} · "
        f"{len(result.blocks)} block(s) · ~{result.estimated_tokens} tokens[/dim]"
    )
