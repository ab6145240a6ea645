"""chatwire CLI: command line interface."""

import click
from chatwire import __version__
from .shared import console, setup_logging


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="chatwire")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None, help="Also write logs to this file")
@click.pass_context
def cli(ctx, verbose, log_file):
    """chatwire: prompt assembly and reply parsing for multi-contact chat"""
    setup_logging(verbose, log_file)
    if ctx.invoked_subcommand is None:
        _show_help()


def _show_help():
    console.print(f"[bold]chatwire v{__version__}[/bold]: prompt assembly and reply parsing\n")

    commands = [
        ("build SNAPSHOT", "Assemble the prompt for a snapshot and show the reference map"),
        ("parse REPLY", "Parse a model reply into bubbles (--snapshot to resolve references)"),
        ("send SNAPSHOT", "Run one live round against the configured model"),
    ]
    for name, desc in commands:
        console.print(f"    [bold]chatwire {name:16s}[/bold] {desc}")
    console.print()
    console.print("[dim]Run 'chatwire <command> --help' for details on a specific command.[/dim]")


# Import all command modules (registers commands onto cli group)
from . import cmd_build  # noqa: E402, F401
from . import cmd_parse  # noqa: E402, F401
from . import cmd_send  # noqa: E402, F401


def main():
    """CLI entry point."""
    import sys
    try:
        cli(standalone_mode=False)
    except click.UsageError as e:
        if e.ctx:
            click.echo(e.ctx.command.get_usage(e.ctx), err=True)
        click.echo("Try 'chatwire --help' for help.\n", err=True)
        click.echo(f"Error: {e.format_message()}", err=True)
        sys.exit(2)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.exceptions.Exit as e:
        sys.exit(e.code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
