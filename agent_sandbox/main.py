from typing import Annotated

import typer

from agent_sandbox.client.cli import agent_app
from agent_sandbox.logging import configure_logging
from agent_sandbox.server.cli import server_app


app = typer.Typer(help="agent-sandbox: isolated sandboxes for AI coding agents")
app.add_typer(server_app, name="server")
app.add_typer(agent_app, name="agent")


@app.callback()
def main_callback(
    log_level: Annotated[
        str,
        typer.Option("--log-level", envvar="AGENT_SANDBOX_LOG_LEVEL", help="Log level for stderr output."),
    ] = "INFO",
) -> None:
    """
    agent-sandbox: run AI coding agents in isolated sandboxes.
    """
    configure_logging(log_level)


if __name__ == "__main__":
    app()
