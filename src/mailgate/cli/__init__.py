"""Command line entry points for mailgate."""

from typer import Typer

from ..providers.imap.cli import imap_app


cli = Typer(help="mailgate command line tools")
cli.add_typer(imap_app, name="imap")

__all__ = ["cli", "imap_app"]
