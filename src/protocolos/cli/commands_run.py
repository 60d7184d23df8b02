"""Handshake execution CLI command.

Commands:
- run: Execute a handshake JSON file with the default transports
"""

import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from protocolos.cli.app import app, parse_vars
from protocolos.kernel.executor import ExecutionEngine
from protocolos.kernel.models import ExecutionResult, Handshake, LogEntry, LogLevel, RunStatus
from protocolos.protocols.base import RequestPolicy
from protocolos.protocols.http_client import HttpxTransport
from protocolos.protocols.registry import ProtocolRegistry

LEVEL_ICONS = {
    LogLevel.SYSTEM: "⚙️ ",
    LogLevel.INFO: "ℹ️ ",
    LogLevel.SUCCESS: "✅",
    LogLevel.WARNING: "⚠️ ",
    LogLevel.ERROR: "❌",
}


def load_handshake(path: Path) -> Handshake:
    """Read and validate a handshake JSON file.

    Raises:
        typer.Exit: If the file is missing or invalid.
    """
    if not path.exists():
        typer.echo(f"❌ File not found: {path}", err=True)
        raise typer.Exit(1)
    try:
        return Handshake.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except json.JSONDecodeError as e:
        typer.echo(f"❌ Invalid JSON in {path}: {e}", err=True)
        raise typer.Exit(1)
    except ValidationError as e:
        typer.echo(f"❌ Invalid handshake in {path}:\n{e}", err=True)
        raise typer.Exit(1)


def build_engine() -> ExecutionEngine:
    """Engine wired to the real httpx and aiohttp transports."""
    policy = RequestPolicy.from_config()
    registry = ProtocolRegistry(transport=HttpxTransport(policy), policy=policy)
    return ExecutionEngine(registry, policy=policy)


@app.command(name="run")
def run(
    handshake_file: Path = typer.Argument(..., help="Path to a handshake JSON file"),
    input_value: Optional[str] = typer.Option(None, "--input", "-i", help="Value for {INPUT}"),
    var: Optional[List[str]] = typer.Option(None, "--var", "-v", help="Variable as key=value (repeatable)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print request results and the final state"),
):
    """Execute a handshake against live endpoints.

    Examples:
        protocolos run handshake.json
        protocolos run handshake.json --input octocat --var repo=hello-world
    """
    handshake = load_handshake(handshake_file)
    variables = parse_vars(var)
    engine = build_engine()

    def on_log(entry: LogEntry) -> None:
        if not quiet:
            typer.echo(f"  {LEVEL_ICONS.get(entry.level, '')} {entry.message}")

    def on_result(result: ExecutionResult) -> None:
        icon = "✅" if result.success else "❌"
        status = result.status_code if result.status_code is not None else result.error_code.value
        retries = f", {result.retry_count} retries" if result.retry_count else ""
        typer.echo(f"{icon} {result.title or result.request_id}: {status} ({result.duration_ms:.0f} ms{retries})")

    typer.echo(f"🚀 Running handshake: {handshake.name or handshake.id}")
    asyncio.run(
        engine.execute_handshake(
            handshake,
            variables,
            input_value=input_value,
            on_log=on_log,
            on_result=on_result,
        )
    )

    final = engine.tracker.get_by_id(engine.last_run_id)
    typer.echo(f"\n🏁 Run {final.id}: {final.status.value}")
    if final.status != RunStatus.SUCCESS:
        if final.error:
            typer.echo(f"❌ {final.error}", err=True)
        raise typer.Exit(1)
