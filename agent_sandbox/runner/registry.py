import contextlib
from collections.abc import AsyncIterator, Callable

from loguru import logger

from agent_sandbox.core.exceptions import AgentRunnerError
from agent_sandbox.runner.acp import AcpBackend
from agent_sandbox.runner.base import RunnerBackend, RunRequest
from agent_sandbox.runner.cli import CliBackend
from agent_sandbox.runner.events import RunnerEvent, StatusEvent
from agent_sandbox.runner.sdk import SdkBackend


BACKENDS: dict[str, Callable[[], RunnerBackend]] = {
    "cli": CliBackend,
    "sdk": SdkBackend,
    "acp": AcpBackend,
}


def get_backend(backend_id: str) -> RunnerBackend:
    """Resolve a backend from the prefix of its identifier.

    Args:
        backend_id: Identifier such as ``cli:opencode`` or ``sdk:anthropic``.

    Returns:
        A fresh backend instance.

    Raises:
        AgentRunnerError: If the prefix names no known backend.
    """
    prefix = backend_id.partition(":")[0].strip()
    if prefix not in BACKENDS:
        raise AgentRunnerError(f"Unknown agent runner backend: {backend_id}")
    return BACKENDS[prefix]()


async def run_agent(
    request: RunRequest, backend: RunnerBackend | None = None
) -> AsyncIterator[RunnerEvent]:
    """Run ``request`` on its backend and relay events in order.

    The stream always ends with exactly one terminal status event; a backend
    that stops without one is reported as failed.

    Raises:
        AgentRunnerError: If the backend identifier is unknown.
    """
    backend = backend or get_backend(request.backend)
    logger.debug("Running agent", backend=request.backend, workspace=request.workspace)
    async with contextlib.aclosing(backend.run(request)) as events:
        async for event in events:
            yield event
            if isinstance(event, StatusEvent) and event.is_terminal:
                return
    yield StatusEvent(status="failed", exit_code=1, message="Backend ended without a status")
