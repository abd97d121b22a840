"""CLI commands for running this host as a registered compute target."""
import asyncio
import signal
from pathlib import Path
from typing import Annotated

import typer
import yaml
from rich.console import Console

from agent_sandbox.client.agent import RegisteredAgent
from agent_sandbox.client.api import AgentSandboxClient, AgentSandboxClientError, ServerUnreachableError
from agent_sandbox.config import DEFAULT_AGENT_SETTINGS_FILE, AgentSettings, load_agent_settings
from agent_sandbox.sandbox.docker import DockerContainerProvider
from agent_sandbox.sandbox.provisioner import CLIProvisioner


console = Console()

agent_app = typer.Typer(
    name="agent",
    help="Run this host as a registered compute target.",
)


def _handle_client_error(exc: AgentSandboxClientError) -> None:
    """Print a client error and exit.

    Raises:
        typer.Exit: Always exits with code 1 after displaying error.
    """
    console.print(f"[red]Error:[/red] {exc}")
    if isinstance(exc, ServerUnreachableError):
        console.print("\n[yellow]Start the server:[/yellow] agent-sandbox server")
    raise typer.Exit(1) from None


def _load(config_path: Path | None, **overrides: object) -> AgentSettings:
    try:
        return load_agent_settings(config_path, **overrides)
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


def save_agent_settings(path: Path, settings: AgentSettings) -> None:
    """Write the connection part of the settings back to the YAML file."""
    existing: dict[str, object] = {}
    if path.exists():
        with open(path) as f:
            existing = yaml.safe_load(f) or {}
    existing.update(
        {
            "server_url": settings.server_url,
            "server_id": settings.server_id,
            "token": settings.token,
        }
    )
    with open(path, "w") as f:
        yaml.safe_dump(existing, f, sort_keys=False)


@agent_app.command("register")
def register(
    name: Annotated[str, typer.Option("--name", "-n", help="Display name for this host")] = "Registered Server",
    server_url: Annotated[str | None, typer.Option("--server-url", help="agent-sandbox server URL")] = None,
    user_token: Annotated[
        str | None,
        typer.Option("--user-token", envvar="AGENT_SANDBOX_AGENT_USER_TOKEN", help="Your API token"),
    ] = None,
    force: Annotated[bool, typer.Option("--force", help="Rotate the token if the name is taken")] = False,
    config_path: Annotated[
        Path,
        typer.Option("--config", "-c", help="Settings file to write the id and token to"),
    ] = Path(DEFAULT_AGENT_SETTINGS_FILE),
) -> None:
    """Register this host and store its id and token."""
    settings = _load(config_path if config_path.exists() else None, server_url=server_url, user_token=user_token)
    if not settings.user_token:
        console.print("[red]Error:[/red] A user token is required (--user-token).")
        raise typer.Exit(1)

    client = AgentSandboxClient(settings.server_url, timeout=settings.request_timeout_seconds)
    try:
        registration = asyncio.run(client.register(settings.user_token, name, force=force))
    except AgentSandboxClientError as e:
        _handle_client_error(e)
        return

    settings = settings.model_copy(update={"server_id": registration.id, "token": registration.token})
    save_agent_settings(config_path, settings)
    console.print(f"[green]✓[/green] Registered as [bold]{registration.id}[/bold]")
    console.print(f"  Settings written to {config_path}")


async def _run_agent(settings: AgentSettings) -> None:
    client = AgentSandboxClient(
        settings.server_url,
        server_id=settings.server_id,
        token=settings.token,
        timeout=settings.request_timeout_seconds,
    )
    provider = DockerContainerProvider(docker_host=f"unix://{settings.docker_socket_path}")
    agent = RegisteredAgent(
        client,
        provider,
        provisioner=CLIProvisioner(provider, use_runner=settings.use_runner),
        poll_interval=settings.poll_interval_seconds,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await agent.run_forever(stop)


@agent_app.command("start")
def start(
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Settings file (default: agent-sandbox.agent.yaml)"),
    ] = None,
    server_url: Annotated[str | None, typer.Option("--server-url", help="agent-sandbox server URL")] = None,
    server_id: Annotated[str | None, typer.Option("--server-id", help="Registered target id")] = None,
    token: Annotated[str | None, typer.Option("--token", help="Per-target token")] = None,
    use_runner: Annotated[
        bool | None,
        typer.Option("--use-runner/--no-use-runner", help="Run agents through agent-sandbox-runner"),
    ] = None,
) -> None:
    """Poll the server for work and run it in local sandboxes."""
    settings = _load(
        config_path,
        server_url=server_url,
        server_id=server_id,
        token=token,
        use_runner=use_runner,
    )
    if not settings.server_id or not settings.token:
        console.print("[red]Error:[/red] Not registered. Run [bold]agent-sandbox agent register[/bold] first.")
        raise typer.Exit(1)

    console.print(f"Agent polling {settings.server_url} as [bold]{settings.server_id}[/bold]")
    asyncio.run(_run_agent(settings))
    console.print("Agent stopped.")
