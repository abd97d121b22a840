"""Installs coding agents into sandboxes and runs them.

All work goes through ``ContainerProvider.execute_command``, so the same
provisioner drives local, tunneled and cluster sandboxes.
"""

from __future__ import annotations

import re
import shlex
from urllib.parse import urlsplit, urlunsplit

from loguru import logger
from pydantic import BaseModel, Field

from agent_sandbox.core.constants import (
    ACP_AGENTS,
    AGENT_TOOLS,
    DEFAULT_RUNNER_BACKEND,
    RUNNER_BINARY,
    RUNNER_FALLBACK_COMMAND,
    RUNNER_INSTALL_COMMAND,
    WORKSPACE_MOUNT_PATH,
    AgentTool,
)
from agent_sandbox.core.exceptions import SetupError
from agent_sandbox.core.types import ToolCallRecord
from agent_sandbox.runner.events import (
    PromptEvent,
    RunnerEvent,
    StatusEvent,
    StderrEvent,
    StdoutEvent,
    ToolCallEvent,
    parse_event_line,
)
from agent_sandbox.sandbox.provider import ContainerProvider, ExecResult


_VERSION_RE = re.compile(r"\d+\.\d+\.\d+")
_SYMREF_RE = re.compile(r"^ref:\s+refs/heads/(\S+)\s+HEAD$", re.MULTILINE)
_OPENCODE_ARCH_RE = re.compile(
    r"opencode-linux-(arm64|x64)|failed to install the right version", re.IGNORECASE
)

# Default runner backend per installed tool.
_TOOL_RUNNER_BACKENDS: dict[AgentTool, str] = {
    AgentTool.CLAUDE: "cli:claude-code",
    AgentTool.OPENCODE: "cli:opencode",
}


class InstallResult(BaseModel):
    """Outcome of installing a tool inside a sandbox.

    Attributes:
        success: True if either install attempt succeeded.
        version: Installed version, when it could be determined.
        message: Human-readable outcome; carries the primary error on failure.
        used_fallback: True when the pinned fallback path was taken.
    """

    success: bool
    version: str | None = None
    message: str
    used_fallback: bool = False


class SetupResult(BaseModel):
    """Outcome of synchronizing the workspace with a repository."""

    success: bool
    message: str
    branch: str | None = None


class TaskExecutionResult(BaseModel):
    """Outcome of one agent invocation.

    Attributes:
        success: True when the agent exited with code 0.
        exit_code: Agent exit code.
        output: Text output (stdout events, or raw output on the legacy path).
        tool_calls: Tool-call and prompt records parsed from the runner's events.
    """

    success: bool
    exit_code: int
    output: str
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)


def redact(text: str, secrets: list[str]) -> str:
    """Replace secret values in ``text`` with ``***``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


def with_token(repo_url: str, token: str | None) -> str:
    """Insert an access token into an https clone URL."""
    if not token:
        return repo_url
    parts = urlsplit(repo_url)
    if parts.scheme != "https" or "@" in parts.netloc:
        return repo_url
    return urlunsplit(parts._replace(netloc=f"x-access-token:{token}@{parts.netloc}"))


def env_prefix(secrets: dict[str, str]) -> list[str]:
    """argv prefix that sets ``secrets`` for one process only."""
    if not secrets:
        return []
    return ["env", *(f"{key}={value}" for key, value in secrets.items())]


def parse_runner_output(output: str) -> TaskExecutionResult:
    """Fold the runner's JSON-lines event stream into a TaskExecutionResult.

    Non-JSON lines (diagnostics interleaved by the exec stream) are kept as text.
    """
    text: list[str] = []
    tool_calls: list[ToolCallRecord] = []
    exit_code: int | None = None
    for line in output.splitlines():
        if not line.strip():
            continue
        event: RunnerEvent | None = parse_event_line(line)
        match event:
            case None:
                text.append(f"{line}\n")
            case StdoutEvent(data=data):
                text.append(data)
            case StderrEvent():
                pass
            case ToolCallEvent(id=call_id, name=name, input=call_input):
                tool_calls.append(
                    ToolCallRecord(id=call_id, type="tool_call", name=name, input=call_input)
                )
            case PromptEvent():
                tool_calls.append(
                    ToolCallRecord(
                        id=event.id,
                        type="prompt",
                        name="prompt",
                        input={
                            "prompt_id": event.id,
                            "question": event.question,
                            "options": [option.model_dump() for option in event.options],
                            "expires_at": event.expires_at.isoformat() if event.expires_at else None,
                        },
                    )
                )
            case StatusEvent(exit_code=code) if code is not None:
                exit_code = code
            case _:
                pass
    code = exit_code if exit_code is not None else 1
    return TaskExecutionResult(
        success=code == 0,
        exit_code=code,
        output="".join(text).strip(),
        tool_calls=tool_calls,
    )


class CLIProvisioner:
    """Installs and runs coding agents inside a sandbox.

    Args:
        provider: Backend the sandbox lives on.
        use_runner: Invoke agents through ``agent-sandbox-runner`` and parse
            its event stream instead of running the tool's CLI directly.
        workspace: Working directory inside the sandbox.
    """

    def __init__(
        self,
        provider: ContainerProvider,
        use_runner: bool = False,
        workspace: str = WORKSPACE_MOUNT_PATH,
    ) -> None:
        self.provider = provider
        self.use_runner = use_runner
        self.workspace = workspace

    async def _bash(self, container_id: str, script: str) -> ExecResult:
        return await self.provider.execute_command(container_id, ["bash", "-lc", script])

    async def _install_with_fallback(
        self, container_id: str, name: str, primary: str, fallback: str
    ) -> tuple[bool, bool, str]:
        """Try ``primary`` then ``fallback``.

        Returns:
            Tuple of (success, used_fallback, primary error output).
        """
        first = await self._bash(container_id, primary)
        if first.success:
            return True, False, ""
        primary_error = first.output or "Installation failed"
        logger.warning("Install failed, trying fallback", tool=name, exit_code=first.exit_code)

        second = await self._bash(container_id, fallback)
        if second.success:
            return True, True, primary_error
        return False, True, primary_error

    async def install_agent(
        self, container_id: str, tool: AgentTool, backend: str | None = None
    ) -> InstallResult:
        """Install an agent tool, then the runner when it is in use.

        Args:
            container_id: Sandbox compute unit.
            tool: Agent tool to install.
            backend: Runner backend identifier; ``acp:*`` backends also get
                their agent executable installed.

        Returns:
            InstallResult for the agent tool. Runner install failures turn the
            result into a failure.
        """
        spec = AGENT_TOOLS[tool]
        ok, used_fallback, primary_error = await self._install_with_fallback(
            container_id, spec.name, spec.install_command, spec.fallback_command
        )
        if not ok:
            return InstallResult(
                success=False,
                message=f"Failed to install {spec.name}: {primary_error}",
                used_fallback=True,
            )

        version = await self.verify_installation(container_id, tool)
        result = InstallResult(
            success=True,
            version=version,
            message=(
                f"Installed {spec.name} using fallback version"
                if used_fallback
                else f"Successfully installed {spec.name}"
            ),
            used_fallback=used_fallback,
        )
        logger.info("Agent installed", tool=tool.value, version=version, used_fallback=used_fallback)

        if not self.use_runner:
            return result

        runner = await self.install_runner(container_id)
        if not runner.success:
            return InstallResult(success=False, version=version, message=runner.message, used_fallback=runner.used_fallback)

        if backend and backend.startswith("acp:"):
            acp = await self.ensure_acp_agent(container_id, backend)
            if not acp.success:
                return InstallResult(success=False, version=version, message=acp.message, used_fallback=used_fallback)
        return result

    async def install_runner(self, container_id: str) -> InstallResult:
        """Install the agent runner with the same latest/fallback strategy."""
        ok, used_fallback, primary_error = await self._install_with_fallback(
            container_id, RUNNER_BINARY, RUNNER_INSTALL_COMMAND, RUNNER_FALLBACK_COMMAND
        )
        if not ok:
            return InstallResult(
                success=False,
                message=f"Failed to install {RUNNER_BINARY}: {primary_error}",
                used_fallback=True,
            )
        check = await self._bash(container_id, f"{RUNNER_BINARY} --version")
        match = _VERSION_RE.search(check.output) if check.success else None
        return InstallResult(
            success=True,
            version=match.group(0) if match else None,
            message=f"Installed {RUNNER_BINARY}",
            used_fallback=used_fallback,
        )

    async def ensure_acp_agent(self, container_id: str, backend: str) -> InstallResult:
        """Install an ACP agent executable unless it is already on PATH."""
        agent = backend.partition(":")[2]
        if agent not in ACP_AGENTS:
            return InstallResult(success=False, message=f"Unknown ACP agent: {agent}")
        binary, script = ACP_AGENTS[agent]
        result = await self._bash(
            container_id, f"command -v {shlex.quote(binary)} >/dev/null 2>&1 || {script}"
        )
        if not result.success:
            return InstallResult(success=False, message=f"Failed to install {binary}: {result.output}")
        return InstallResult(success=True, message=f"{binary} available")

    async def verify_installation(self, container_id: str, tool: AgentTool) -> str | None:
        """Return the installed tool's semantic version, if it reports one."""
        binary = AGENT_TOOLS[tool].binary
        result = await self._bash(
            container_id, f'which {binary} && {binary} --version 2>/dev/null || echo "unknown"'
        )
        if result.exit_code != 0 or not result.output:
            return None
        match = _VERSION_RE.search(result.output)
        return match.group(0) if match else None

    async def _git(self, container_id: str, *args: str, secrets: list[str]) -> ExecResult:
        result = await self.provider.execute_command(container_id, ["git", "-C", self.workspace, *args])
        if not result.success:
            raise SetupError(f"git {args[0]} failed: {redact(result.output, secrets)}")
        return result

    async def resolve_default_branch(
        self, container_id: str, repo_url: str, secrets: list[str] | None = None
    ) -> str:
        """Ask the remote which branch its HEAD points to.

        Raises:
            SetupError: If the remote cannot be queried or reports no HEAD branch.
        """
        result = await self.provider.execute_command(
            container_id, ["git", "ls-remote", "--symref", repo_url, "HEAD"]
        )
        if not result.success:
            raise SetupError(
                f"Could not query default branch: {redact(result.output, secrets or [])}"
            )
        match = _SYMREF_RE.search(result.output)
        if match is None:
            raise SetupError("Remote did not report a default branch")
        return match.group(1)

    async def setup_environment(
        self,
        container_id: str,
        repo_url: str,
        branch: str | None = None,
        github_token: str | None = None,
    ) -> SetupResult:
        """Synchronize the workspace with a repository.

        An existing checkout is re-pointed at ``repo_url`` and fast-forwarded;
        otherwise the branch is fetched shallow into a fresh repository.

        Args:
            container_id: Sandbox compute unit.
            repo_url: Clone URL.
            branch: Branch to check out; the remote's default when omitted.
            github_token: Token inserted into https URLs.

        Returns:
            SetupResult with the checked-out branch.

        Raises:
            SetupError: If any git step fails or no default branch can be resolved.
        """
        secrets = [github_token] if github_token else []
        url = with_token(repo_url, github_token)
        branch = branch or await self.resolve_default_branch(container_id, url, secrets)

        existing = await self.provider.execute_command(
            container_id, ["test", "-d", f"{self.workspace}/.git"]
        )
        if existing.success:
            logger.info("Updating existing checkout", branch=branch)
            await self._git(container_id, "remote", "set-url", "origin", url, secrets=secrets)
            await self._git(container_id, "fetch", "origin", branch, secrets=secrets)
            checkout = await self.provider.execute_command(
                container_id, ["git", "-C", self.workspace, "checkout", branch]
            )
            if not checkout.success:
                await self._git(
                    container_id, "checkout", "-b", branch, f"origin/{branch}", secrets=secrets
                )
            await self._git(container_id, "merge", "--ff-only", f"origin/{branch}", secrets=secrets)
        else:
            logger.info("Cloning repository", branch=branch)
            await self._git(container_id, "init", secrets=secrets)
            await self._git(container_id, "remote", "add", "origin", url, secrets=secrets)
            await self._git(container_id, "fetch", "--depth", "1", "origin", branch, secrets=secrets)
            await self._git(container_id, "checkout", "-B", branch, "FETCH_HEAD", secrets=secrets)

        return SetupResult(success=True, message="Environment setup complete", branch=branch)

    def _legacy_command(self, tool: AgentTool, prompt: str) -> str:
        binary = AGENT_TOOLS[tool].binary
        quoted = shlex.quote(prompt)
        if tool == AgentTool.OPENCODE:
            return f"cd {self.workspace} && {binary} run -- {quoted}"
        return f"cd {self.workspace} && {binary} -p {quoted}"

    async def _arch_fallback(self, container_id: str) -> None:
        arch = await self._bash(container_id, "uname -m")
        package = (
            "opencode-linux-arm64@latest"
            if re.search(r"aarch64|arm64", arch.output, re.IGNORECASE)
            else "opencode-linux-x64@latest"
        )
        logger.info("Installing architecture-specific package", package=package)
        await self._bash(container_id, f"npm install -g {package}")

    async def execute_agent_task(
        self,
        container_id: str,
        tool: AgentTool,
        prompt: str,
        secrets: dict[str, str] | None = None,
        backend: str | None = None,
    ) -> TaskExecutionResult:
        """Run the agent non-interactively against the workspace.

        Secrets are passed as environment for this one process only.

        Args:
            container_id: Sandbox compute unit.
            tool: Installed agent tool.
            prompt: Task prompt.
            secrets: Environment secrets (API keys).
            backend: Runner backend identifier when the runner is in use.

        Returns:
            TaskExecutionResult; execution failures are reported, not raised.
        """
        secrets = secrets or {}
        prefix = env_prefix(secrets)

        if self.use_runner:
            runner_backend = backend or _TOOL_RUNNER_BACKENDS.get(tool, DEFAULT_RUNNER_BACKEND)
            command = [
                *prefix,
                RUNNER_BINARY, "run",
                "--backend", runner_backend,
                "--workspace", self.workspace,
                "--prompt", prompt,
            ]
            result = await self.provider.execute_command(container_id, command)
            parsed = parse_runner_output(result.output)
            if result.exit_code != parsed.exit_code and not result.success:
                parsed.exit_code = result.exit_code
                parsed.success = False
            parsed.output = redact(parsed.output, list(secrets.values()))
            logger.info("Runner finished", backend=runner_backend, exit_code=parsed.exit_code, tool_calls=len(parsed.tool_calls))
            return parsed

        command = [*prefix, "bash", "-lc", self._legacy_command(tool, prompt)]
        result = await self.provider.execute_command(container_id, command)
        if (
            not result.success
            and tool == AgentTool.OPENCODE
            and _OPENCODE_ARCH_RE.search(result.output)
        ):
            await self._arch_fallback(container_id)
            result = await self.provider.execute_command(container_id, command)

        output = redact(result.output, list(secrets.values()))
        logger.info("Agent finished", tool=tool.value, exit_code=result.exit_code)
        return TaskExecutionResult(success=result.success, exit_code=result.exit_code, output=output)


