"""cURL and placeholder CLI commands.

Commands:
- curl parse: Parse a command and print it as JSON
- curl validate: Report errors and warnings for a command
- curl format: Print the canonical form of a command
- placeholders: List or resolve placeholders in a template
"""

import json
from typing import List, Optional

import typer
from typer import Typer

from protocolos.cli.app import app, parse_vars
from protocolos.protocols.errors import ProtocolError
from protocolos.tools import curl
from protocolos.tools.placeholders import (
    PlaceholderContext,
    count_input_placeholders,
    extract_placeholders,
    resolve,
)

curl_app = Typer(help="Parse, validate and format cURL commands")
app.add_typer(curl_app, name="curl")


@curl_app.command(name="parse")
def curl_parse(
    command: str = typer.Argument(..., help="cURL command text"),
):
    """Parse a cURL command and print the result as JSON.

    Examples:
        protocolos curl parse "curl -X POST https://api.example.com -d '{}'"
    """
    parsed = curl.parse(command)
    typer.echo(json.dumps(parsed.to_dict(), indent=2))


@curl_app.command(name="validate")
def curl_validate(
    command: str = typer.Argument(..., help="cURL command text"),
):
    """Validate a cURL command. Exits 1 when it is invalid."""
    result = curl.validate(command)
    for warning in result.warnings:
        typer.echo(f"⚠️  {warning}")
    if not result.valid:
        for error in result.errors:
            typer.echo(f"❌ {error}", err=True)
        raise typer.Exit(1)
    typer.echo("✅ Command is valid")


@curl_app.command(name="format")
def curl_format(
    command: str = typer.Argument(..., help="cURL command text"),
):
    """Print the canonical, multi-line form of a cURL command."""
    typer.echo(curl.format_command(command))


@app.command(name="placeholders")
def placeholders(
    template: str = typer.Argument(..., help="Text containing {INPUT}, {VAR:name}, ... placeholders"),
    input_value: Optional[str] = typer.Option(None, "--input", "-i", help="Value for {INPUT}"),
    var: Optional[List[str]] = typer.Option(None, "--var", "-v", help="Variable as key=value (repeatable)"),
    strict: bool = typer.Option(False, "--strict", help="Fail on unresolved placeholders"),
):
    """List placeholders in a template, or resolve them.

    Examples:
        protocolos placeholders "https://api.example.com/{VAR:path}?q={INPUT}"
        protocolos placeholders "Bearer {VAR:token}" --var token=abc
    """
    names = extract_placeholders(template)
    if input_value is None and not var:
        if not names:
            typer.echo("No placeholders found")
            return
        typer.echo(f"🔍 Placeholders ({len(names)}):")
        for name in names:
            typer.echo(f"  - {name}")
        inputs = count_input_placeholders(template)
        if inputs:
            typer.echo(f"  {{INPUT}} used {inputs} time(s)")
        return

    context = PlaceholderContext(input=input_value, variables=parse_vars(var), strict=strict)
    try:
        result = resolve(template, context)
    except ProtocolError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    typer.echo(result.output)
    if result.unresolved_names:
        typer.echo(f"⚠️  Unresolved: {', '.join(result.unresolved_names)}", err=True)
