"""CLI package for Protocol OS.

The main Typer app is created in app.py and commands are registered from
each module.
"""

# Import command modules to register commands with the app
import protocolos.cli.commands_curl  # noqa: F401
import protocolos.cli.commands_protocols  # noqa: F401
import protocolos.cli.commands_run  # noqa: F401
from protocolos.cli.app import app

__all__ = ["app"]
