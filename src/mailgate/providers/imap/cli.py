"""CLI commands for IMAP-backed disposable mailboxes."""

from __future__ import annotations

import asyncio
import json
from typing import Awaitable, Callable, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.markup import escape
from rich.table import Table

from mailgate.configuration.settings import ImapProviderSettings
from mailgate.errors import ConfigurationError, format_error_for_cli
from mailgate.providers.models import (
    DEFAULT_FOLDER,
    DEFAULT_IMAP_PORT,
    CreateEmailRequest,
    MailboxCredentials,
    ProviderResponse,
)

from .provider import ImapProvider

# Rich console for formatted output
console = Console()
error_console = Console(stderr=True)

imap_app = typer.Typer(help="IMAP disposable mailbox commands")

TOKEN_ENVVAR = "MAILGATE_ACCESS_TOKEN"


def _run(operation: Callable[[ImapProvider], Awaitable[ProviderResponse]]) -> ProviderResponse:
    async def runner() -> ProviderResponse:
        async with ImapProvider(ImapProviderSettings.from_env()) as provider:
            return await operation(provider)

    return asyncio.run(runner())


def _emit_failure(response: ProviderResponse, json_output: bool) -> None:
    if json_output:
        print(json.dumps(response.model_dump(mode="json", by_alias=True)))
    else:
        error = response.error
        hint = " (retryable)" if error and error.retryable else ""
        message = error.message if error else "Unknown error"
        error_console.print(f"[bold red]✗ {message}{hint}[/bold red]")
    raise typer.Exit(1)


def _dump(response: ProviderResponse) -> None:
    print(json.dumps(response.model_dump(mode="json", by_alias=True)))


@imap_app.command("create")
def create_mailbox(
    email: str = typer.Option(..., "--email", "-e", help="Real mailbox login (an e-mail address)"),
    host: str = typer.Option(..., "--host", "-h", help="IMAP hostname"),
    password: str = typer.Option(
        ..., "--password", "-p", prompt=True, hide_input=True, envvar="IMAP_PASSWORD", help="Password/App Password"
    ),
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Catch-all domain for generated addresses"),
    port: int = typer.Option(DEFAULT_IMAP_PORT, "--port", help="IMAP port (default: 993 for TLS)"),
    folder: str = typer.Option(DEFAULT_FOLDER, "--folder", "-f", help="Folder to read"),
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Local part to use instead of a generated one"),
    is_mine: bool = typer.Option(False, "--mine", help="Use the real mailbox address itself"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Verify mailbox credentials and issue a disposable address.

    Examples:
        mailgate imap create --email me@example.com --host imap.example.com --domain example.com
        mailgate imap create --email me@example.com --host imap.example.com --mine --json
    """
    try:
        request = CreateEmailRequest(
            provider="imap",
            imap=MailboxCredentials(
                domain=domain,
                host=host,
                port=port,
                username=email,
                password=password,
                folder=folder,
            ),
            prefix=prefix,
            is_mine=is_mine,
        )
    except ValueError as exc:
        error_console.print(f"[bold red]✗ Invalid input:[/bold red] {exc}")
        raise typer.Exit(2)

    try:
        response = _run(lambda provider: provider.create_email(request))
    except ConfigurationError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)

    if not response.success:
        _emit_failure(response, json_output)
    if json_output:
        _dump(response)
        return

    data = response.data
    console.print(f"[bold green]✓ Address created:[/bold green] {escape(data.address)}")
    console.print(Panel(data.access_token, title="Access token", expand=False))


@imap_app.command("list")
def list_messages(
    token: str = typer.Option(..., "--token", "-t", envvar=TOKEN_ENVVAR, help="Access token from 'create'"),
    address: str = typer.Option("", "--address", "-a", help="Temporary address (token address wins)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List messages received by the temporary address in the last 24 hours."""
    try:
        response = _run(lambda provider: provider.get_emails(address, token))
    except ConfigurationError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)

    if not response.success:
        _emit_failure(response, json_output)
    if json_output:
        _dump(response)
        return

    messages = response.data or []
    if not messages:
        console.print("[yellow]No messages in the last 24 hours.[/yellow]")
        return

    table = Table(title="Recent messages")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Received", style="magenta")
    table.add_column("From", style="green")
    table.add_column("Subject")
    table.add_column("Read", style="yellow")
    for message in messages:
        table.add_row(
            message.id,
            message.received_at.strftime("%Y-%m-%d %H:%M"),
            escape(message.sender.email),
            escape(message.subject),
            "yes" if message.is_read else "no",
        )
    console.print(table)


@imap_app.command("show")
def show_message(
    email_id: str = typer.Argument(..., help="Message UID from 'list'"),
    token: str = typer.Option(..., "--token", "-t", envvar=TOKEN_ENVVAR, help="Access token from 'create'"),
    address: str = typer.Option("", "--address", "-a", help="Temporary address"),
    html: bool = typer.Option(False, "--html", help="Print the HTML body instead of text"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show one message with its body and attachment list."""
    try:
        response = _run(lambda provider: provider.get_email_content(address, email_id, token))
    except ConfigurationError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)

    if not response.success:
        _emit_failure(response, json_output)
    if json_output:
        _dump(response)
        return

    message = response.data
    console.print(f"[bold]{escape(message.subject)}[/bold]")
    console.print(f"From: {escape(message.sender.email)}")
    console.print(f"To: {escape(', '.join(contact.email for contact in message.to))}")
    console.print(f"Received: {message.received_at.isoformat()}\n")
    body = message.html_content if html else (message.text_content or message.html_content)
    if body:
        console.print(body, markup=False)
    else:
        console.print("[dim](empty body)[/dim]")

    if message.attachments:
        table = Table(title="Attachments")
        table.add_column("Part", style="cyan")
        table.add_column("Filename", style="green")
        table.add_column("Type", style="blue")
        table.add_column("Size", justify="right")
        for attachment in message.attachments:
            table.add_row(
                attachment.id,
                escape(attachment.filename),
                escape(attachment.content_type),
                str(attachment.size),
            )
        console.print(table)


@imap_app.command("test-connection")
def test_connection(
    email: str = typer.Option(..., "--email", "-e", help="Mailbox login"),
    host: str = typer.Option(..., "--host", "-h", help="IMAP hostname"),
    password: str = typer.Option(
        ..., "--password", "-p", prompt=True, hide_input=True, envvar="IMAP_PASSWORD", help="Password/App Password"
    ),
    port: int = typer.Option(DEFAULT_IMAP_PORT, "--port", help="IMAP port (default: 993 for TLS)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Test IMAP credentials without issuing an address."""
    try:
        credentials = MailboxCredentials(host=host, port=port, username=email, password=password)
    except ValueError as exc:
        error_console.print(f"[bold red]✗ Invalid input:[/bold red] {exc}")
        raise typer.Exit(2)

    if not json_output:
        console.print(f"[bold blue]Testing IMAP connection to {host}...[/bold blue]")

    try:
        response = _run(lambda provider: provider.test_connection(credentials))
    except ConfigurationError as exc:
        error_console.print(format_error_for_cli(exc))
        raise typer.Exit(1)

    if not response.success:
        _emit_failure(response, json_output)
    if json_output:
        _dump(response)
    else:
        console.print("[bold green]✓ Connection successful![/bold green]")


__all__ = ["imap_app"]
