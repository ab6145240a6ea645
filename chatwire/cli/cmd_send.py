"""Send command: one live round."""

import asyncio
import json
from pathlib import Path

import click
from rich.table import Table

from chatwire.errors import classify_error
from chatwire.llm.drivers import create_transport
from chatwire.send import SendController
from chatwire.snapshot import snapshot_to_dict

from . import cli
from .shared import console, make_rng, open_snapshot, print_bubbles


@cli.command()
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
@click.option("--contact", "contact_id", default=None, help="Primary contact id")
@click.option("--seed", type=int, default=None, help="Seed for re-apply trials and plan dice")
@click.option("--write", is_flag=True, help="Write the updated chat logs and queue back into the snapshot")
def send(snapshot, contact_id, seed, write):
    """Send the snapshot's pending operations to the model and save the reply."""
    settings, snap = open_snapshot(snapshot)
    try:
        transport = create_transport(settings)
    except RuntimeError as e:
        raise click.ClickException(str(e))

    rng = make_rng(seed)
    controller = SendController(
        builder=snap.builder(settings=settings, rng=rng),
        parser=snap.parser(rng=rng),
        transport=transport,
        queue=snap.queue,
        settings=settings,
    )

    with console.status(f"[bold]Waiting for {settings.model}...[/bold]"):
        try:
            result = asyncio.run(controller.send(contact_id))
        except KeyboardInterrupt:
            console.print("[yellow]Cancelled.[/yellow]")
            raise SystemExit(130)
        except Exception as e:
            console.print(f"[red]{classify_error(e)}[/red]")
            raise SystemExit(1)

    print_bubbles(result.bubbles, title="Reply")

    table = Table(show_header=False, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Model", result.model)
    table.add_row("Messages", f"{result.message_count} for {len(result.messages)} contact(s)")
    table.add_row("References", str(result.reference_count))
    table.add_row("Tokens", f"in {result.usage.input_tokens} · out {result.usage.output_tokens} "
                            f"· thinking {result.usage.thinking_tokens}")
    table.add_row("Signature", "yes" if result.continuation_signature else "no")
    console.print(table)

    if write:
        path = Path(snapshot)
        data = json.loads(path.read_text(encoding="utf-8"))
        data.update(snapshot_to_dict(snap))
        path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        console.print(f"[green]✓ Snapshot updated:[/green] {path}")
