"""CLI commands for the agent-sandbox server."""
import asyncio
from typing import Annotated

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from agent_sandbox.sandbox.factory import provider_session
from agent_sandbox.sandbox.volumes import VolumeManager
from agent_sandbox.server.config import ServerConfig
from agent_sandbox.server.database import Database, ServerRepository, TaskRepository


console = Console()

server_app = typer.Typer(
    name="server",
    help="Agent sandbox API server commands.",
)


@server_app.callback(invoke_without_command=True)
def server(
    ctx: typer.Context,
    port: Annotated[
        int | None,
        typer.Option("--port", "-p", help="Port to listen on (default: from config/env)"),
    ] = None,
    bind_all: Annotated[
        bool,
        typer.Option(
            "--bind-all",
            help="Bind to all interfaces (0.0.0.0). WARNING: Exposes server to network.",
        ),
    ] = False,
    reload: Annotated[
        bool,
        typer.Option("--reload", help="Enable auto-reload for development"),
    ] = False,
) -> None:
    """Start the agent-sandbox API server.

    By default, binds to localhost (127.0.0.1) only.
    Port and host can be configured via AGENT_SANDBOX_PORT and AGENT_SANDBOX_HOST env vars.
    """
    if ctx.invoked_subcommand is not None:
        return

    config = ServerConfig()

    # CLI flags override config
    effective_port = port if port is not None else config.port
    effective_host = "0.0.0.0" if bind_all else config.host

    if bind_all:
        console.print(
            "[yellow]Warning:[/yellow] Server accessible to all network clients.",
            style="bold yellow",
        )
    if not config.api_tokens:
        console.print(
            "[yellow]Warning:[/yellow] AGENT_SANDBOX_API_TOKENS is empty; every user request will be rejected."
        )

    console.print(f"Starting agent-sandbox server on http://{effective_host}:{effective_port}")
    console.print(f"API docs: http://{effective_host}:{effective_port}/api/docs")

    try:
        uvicorn.run(
            "agent_sandbox.server.main:app",
            host=effective_host,
            port=effective_port,
            reload=reload,
            log_level="info",
        )
    except KeyboardInterrupt:
        console.print("\nServer stopped.")


async def _cleanup_volumes(server_id: str, dry_run: bool) -> None:
    config = ServerConfig()
    async with Database(config.database_path) as db:
        await db.ensure_schema()
        target = await ServerRepository(db).get(server_id)
        if target is None:
            console.print(f"[red]Server not found:[/red] {server_id}")
            raise typer.Exit(code=1)
        known = await TaskRepository(db).list_ids()

    async with provider_session(target) as provider:
        manager = VolumeManager(provider)
        if dry_run:
            orphans = await manager.get_orphaned_volumes(known)
            table = Table("Volume", "Sandbox", "Size (bytes)")
            for volume in orphans:
                table.add_row(volume.name, volume.sandbox_id or "-", str(volume.size_bytes))
            console.print(table)
            return
        result = await manager.cleanup_orphaned_volumes(known)

    console.print(f"Removed {len(result.removed)} volume(s), freed {result.freed_bytes} bytes")
    for error in result.errors:
        console.print(f"[red]Failed[/red] {error.volume}: {error.error}")


@server_app.command("cleanup-volumes")
def cleanup_volumes(
    server_id: Annotated[str, typer.Argument(help="Compute target whose volumes to clean")],
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be deleted without deleting"),
    ] = False,
) -> None:
    """Delete volumes no task refers to any more."""
    asyncio.run(_cleanup_volumes(server_id, dry_run))
