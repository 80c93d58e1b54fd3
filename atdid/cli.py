#!/usr/bin/env python
"""
atdid - ATProtocol DID CLI

Commands:
  keys                        - Generate a secp256k1 keypair
  aka <handle> <urls...>      - Add URLs to your DID document's alsoKnownAs
  did <handle-or-did>         - Print a DID document (or its PLC audit log)
  rotation <handle> [key-hex] - Add (or --remove) a PLC rotation key
"""

import asyncio
import json
import logging
import sys

import click
import httpx
from rich.console import Console
from rich.markup import escape

from . import __version__
from .config import Settings
from .errors import AtDidError
from .identity import IdentityResolver, clean_handle
from .keys import KeyFormat, export_keypair, generate, import_key
from .session import PdsSession
from .workflow import (
    AddRotationKey,
    LinkUrls,
    MutationWorkflow,
    RemoveRotationKey,
    WorkflowState,
)

console = Console(soft_wrap=True, emoji=False)
err_console = Console(stderr=True, soft_wrap=True, emoji=False)

FORMAT_CHOICE = click.Choice([f.value for f in KeyFormat])


def _settings(ctx: click.Context, pds: str | None = None) -> Settings:
    return ctx.obj["settings"].with_pds(pds)


def _http_client(ctx: click.Context) -> httpx.AsyncClient:
    # No client-side timeout: a hung request blocks until the process is stopped
    return httpx.AsyncClient(
        timeout=None,
        follow_redirects=True,
        transport=ctx.obj.get("transport"),
    )


def _fail(error: AtDidError):
    err_console.print(f"[bold red]Error:[/bold red] {escape(error.message)}")
    sys.exit(1)


def _run(coro):
    """Run a command coroutine, turning atdid errors into exit status 1."""
    try:
        return asyncio.run(coro)
    except AtDidError as e:
        _fail(e)


def _password_prompt(settings: Settings):
    def prompt(handle: str) -> str:
        if settings.password:
            return settings.password
        return click.prompt(f"Enter password for {handle}", hide_input=True)

    return prompt


def _code_prompt() -> str:
    return click.prompt("Enter the code from your email", default="", show_default=False)


async def _run_mutation(ctx: click.Context, settings: Settings, handle: str, mutation):
    async with _http_client(ctx) as client:
        workflow = MutationWorkflow(
            session=PdsSession(client, settings.pds),
            resolver=IdentityResolver(client, settings.pds, settings.plc_directory),
            mutation=mutation,
            prompt_password=_password_prompt(settings),
            prompt_code=_code_prompt,
            console=console,
        )
        return await workflow.run(handle)


@click.group()
@click.version_option(__version__, "--version", "-V", prog_name="atdid")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """atdid - Inspect and update ATProtocol DID documents."""
    ctx.ensure_object(dict)
    if "settings" not in ctx.obj:
        ctx.obj["settings"] = Settings.from_env()
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(message)s",
            stream=sys.stderr,
        )


@cli.command()
@click.option(
    "--format", "-f", "fmt",
    type=FORMAT_CHOICE,
    default=KeyFormat.HEX.value,
    show_default=True,
    help="hex prints only the private key; json adds the public key; jwk is a JSON Web Key",
)
def keys(fmt: str):
    """Generate a new secp256k1 keypair."""
    click.echo(export_keypair(generate(), KeyFormat(fmt)))


@cli.command()
@click.argument("handle")
@click.argument("urls", nargs=-1, required=True)
@click.option("--pds", help="Custom PDS server URL")
@click.pass_context
def aka(ctx: click.Context, handle: str, urls: tuple[str, ...], pds: str | None):
    """Add URLs to your DID document alsoKnownAs."""
    settings = _settings(ctx, pds)
    handle = clean_handle(handle)

    console.print(f"\n[blue]Setting up aka for [bold]{escape(handle)}[/bold][/blue]")
    console.print(f"[dim]PDS: {escape(settings.pds)}[/dim]")
    for url in urls:
        console.print(f"[dim]URL: {escape(url)}[/dim]")
    console.print()

    _run(_run_mutation(ctx, settings, handle, LinkUrls(handle, list(urls))))


@cli.command()
@click.argument("handle_or_did")
@click.option("--pds", help="Custom PDS server URL for handle resolution")
@click.option("--log", "-l", "show_log", is_flag=True, help="Fetch audit log from PLC directory")
@click.pass_context
def did(ctx: click.Context, handle_or_did: str, pds: str | None, show_log: bool):
    """Get the DID document for a handle or DID."""
    settings = _settings(ctx, pds)

    async def lookup():
        async with _http_client(ctx) as client:
            resolver = IdentityResolver(client, settings.pds, settings.plc_directory)
            did_value = await resolver.resolve(handle_or_did)
            if show_log:
                return await resolver.get_audit_log(did_value)
            return await resolver.get_did_document(did_value)

    click.echo(json.dumps(_run(lookup()), indent=2))


@cli.command()
@click.argument("handle")
@click.argument("private_key", required=False)
@click.option("--pds", help="Custom PDS server URL")
@click.option(
    "--format", "-f", "fmt",
    type=FORMAT_CHOICE,
    default=KeyFormat.HEX.value,
    show_default=True,
    help="Output format for a newly generated key",
)
@click.option("--remove", "remove_key", metavar="KEY", help="Remove this rotation key (did:key:... or z...)")
@click.pass_context
def rotation(
    ctx: click.Context,
    handle: str,
    private_key: str | None,
    pds: str | None,
    fmt: str,
    remove_key: str | None,
):
    """Add a rotation key to your DID (a new one unless PRIVATE_KEY hex is given)."""
    settings = _settings(ctx, pds)
    handle = clean_handle(handle)

    if remove_key:
        if private_key:
            raise click.UsageError("Pass either PRIVATE_KEY or --remove, not both")
        try:
            mutation = RemoveRotationKey(remove_key)
        except AtDidError as e:
            _fail(e)
        console.print(f"\n[blue]Removing rotation key for [bold]{escape(handle)}[/bold][/blue]\n")
        _run(_run_mutation(ctx, settings, handle, mutation))
        return

    generated = private_key is None
    if generated:
        keypair = generate()
    else:
        try:
            keypair = import_key(private_key)
        except AtDidError as e:
            _fail(e)

    console.print(f"\n[blue]Adding rotation key for [bold]{escape(handle)}[/bold][/blue]")
    console.print(f"[dim]Key: {keypair.did}[/dim]\n")
    result = _run(_run_mutation(ctx, settings, handle, AddRotationKey(keypair.did)))

    if generated and result.state is WorkflowState.SUBMITTED:
        console.print(
            "\n[yellow]New rotation key below. It is not stored anywhere; keep it safe.[/yellow]"
        )
        click.echo(export_keypair(keypair, KeyFormat(fmt)))


if __name__ == "__main__":
    cli()
