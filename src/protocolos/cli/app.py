"""CLI app setup and common utilities.

This module creates the main Typer app and provides helpers shared by the
command modules.
"""

import logging
from typing import Dict, List, Optional

import typer
from typer import Typer

from protocolos.config import config

# Initialize Typer app
app = Typer(
    name="protocolos",
    help="Protocol OS: parse cURL commands, inspect auth protocols and run handshakes.",
)


def parse_vars(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn repeated ``--var key=value`` options into a dict.

    Raises:
        typer.Exit: If a pair has no ``=``.
    """
    variables: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            typer.echo(f"❌ Invalid --var '{pair}': expected key=value", err=True)
            raise typer.Exit(1)
        variables[key.strip()] = value
    return variables


@app.callback()
def init_app(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Logging level (default: PO_LOG_LEVEL or INFO)",
    ),
):
    """Configure logging before any command runs."""
    level = (log_level or config.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
