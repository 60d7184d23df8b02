"""Protocol discovery CLI commands.

Commands:
- protocols list: List protocols, optionally filtered by category or tag
- protocols info: Show metadata, fields and a sample command for one protocol
"""

from typing import Optional

import typer
from typer import Typer

from protocolos.cli.app import app
from protocolos.protocols.errors import UnknownProtocolError
from protocolos.protocols.registry import (
    CATEGORIES,
    PROTOCOL_METADATA,
    ProtocolRegistry,
    get_metadata,
    list_by_category,
    search_by_tag,
)

protocols_app = Typer(help="Inspect the supported authentication protocols")
app.add_typer(protocols_app, name="protocols")


@protocols_app.command(name="list")
def protocols_list(
    category: Optional[str] = typer.Option(None, "--category", "-c", help=f"One of: {', '.join(CATEGORIES)}"),
    tag: Optional[str] = typer.Option(None, "--tag", "-t", help="Tag substring, e.g. 'spa'"),
):
    """List supported protocols.

    Examples:
        protocolos protocols list
        protocolos protocols list --category oauth
        protocolos protocols list --tag legacy
    """
    types = list(PROTOCOL_METADATA)
    if category:
        types = [t for t in types if t in list_by_category(category)]
    if tag:
        types = [t for t in types if t in search_by_tag(tag)]

    if not types:
        typer.echo("No protocols match")
        return

    typer.echo(f"📋 Protocols ({len(types)}):")
    for protocol_type in types:
        meta = PROTOCOL_METADATA[protocol_type]
        typer.echo(f"  {protocol_type.value:<20} {meta.display_name:<22} [{meta.category}, {meta.complexity}]")


@protocols_app.command(name="info")
def protocols_info(
    protocol_type: str = typer.Argument(..., help="Protocol type, e.g. rest-api-key"),
):
    """Show metadata, configuration fields and a sample cURL command."""
    try:
        meta = get_metadata(protocol_type)
        handler = ProtocolRegistry().create_handler(protocol_type)
    except UnknownProtocolError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"🔐 {meta.display_name} ({meta.type.value})")
    typer.echo(f"   {meta.description}")
    typer.echo(f"   Category: {meta.category}  Complexity: {meta.complexity}")
    if meta.tags:
        typer.echo(f"   Tags: {', '.join(meta.tags)}")
    if meta.documentation_url:
        typer.echo(f"   Docs: {meta.documentation_url}")

    required = handler.required_fields()
    optional = handler.optional_fields()
    typer.echo(f"\n   Required fields: {', '.join(required) if required else '(none)'}")
    typer.echo(f"   Optional fields: {', '.join(optional) if optional else '(none)'}")

    typer.echo("\n   Sample:")
    sample = handler.generate_sample_curl(handler.config_model())
    for line in sample.splitlines():
        typer.echo(f"   {line}")
