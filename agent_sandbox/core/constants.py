# agent_sandbox/core/constants.py
"""Constants used across the agent-sandbox codebase."""

from enum import StrEnum
from typing import NamedTuple


DEFAULT_CONTAINER_IMAGE = "node:20-bookworm"
WORKSPACE_MOUNT_PATH = "/workspace"
VOLUME_NAME_PREFIX = "agent-sandbox-"
CONTAINER_NAME_PREFIX = "agent-sandbox-"

DEFAULT_MEMORY_LIMIT = "2g"
DEFAULT_CPU_LIMIT = 2.0

DOCKER_SOCKET_UNIX = "/var/run/docker.sock"
CONTAINER_STOP_TIMEOUT_SECONDS = 30
POD_TERMINATION_POLL_SECONDS = 0.5
HEALTH_CHECK_TIMEOUT_SECONDS = 5.0

DEFAULT_SSH_PORT = 22
SSH_KEEPALIVE_INTERVAL_SECONDS = 60
SSH_CONNECT_TIMEOUT_SECONDS = 10.0
# Reconnect delays in seconds; the last entry is the cap.
SSH_RECONNECT_DELAYS: tuple[float, ...] = (1.0, 2.0, 4.0, 8.0, 16.0, 30.0)

VOLUME_SIZE_WARNING_THRESHOLD = 10 * 1024 * 1024 * 1024  # 10 GiB

# Exit code reported by execute_command when the command never reached the
# sandbox (daemon unreachable, tunnel down, exec stream broken).
TRANSPORT_FAILURE_EXIT_CODE = 255

# Labels written on every compute unit and volume.
LABEL_SANDBOX_ID = "agent-sandbox.id"
LABEL_VOLUME = "agent-sandbox.volume"
LABEL_CREATED_AT = "agent-sandbox.created"
LABEL_CREATED_BY = "agent-sandbox.created-by"
CREATED_BY_VALUE = "agent-sandbox"

DEFAULT_K8S_NAMESPACE = "default"
DEFAULT_K8S_STORAGE_SIZE = "10Gi"
K8S_POD_SPEC_ANNOTATION = "agent-sandbox.pod-spec"


class AgentTool(StrEnum):
    """Coding agent tools that can be installed into a sandbox."""

    CLAUDE = "claude"
    OPENCODE = "opencode"


class AgentToolSpec(NamedTuple):
    """Install recipe for one agent tool.

    Attributes:
        name: Human-readable name.
        binary: Executable name looked up on PATH.
        install_command: Preferred install command (tracks latest).
        fallback_command: Known-good pinned install command.
        env_var: Environment variable carrying the tool's API key.
    """

    name: str
    binary: str
    install_command: str
    fallback_command: str
    env_var: str


AGENT_TOOLS: dict[AgentTool, AgentToolSpec] = {
    AgentTool.CLAUDE: AgentToolSpec(
        name="Claude Code",
        binary="claude",
        install_command="npm install -g @anthropic-ai/claude-code@latest",
        fallback_command="npm install -g @anthropic-ai/claude-code@0.1.0",
        env_var="ANTHROPIC_API_KEY",
    ),
    AgentTool.OPENCODE: AgentToolSpec(
        name="OpenCode",
        binary="opencode",
        install_command="npm install -g opencode-ai@latest",
        fallback_command="npm install -g opencode-ai@1.1.25",
        env_var="ANTHROPIC_API_KEY",
    ),
}

# The runner is this package's own console script.
RUNNER_BINARY = "agent-sandbox-runner"
RUNNER_INSTALL_COMMAND = "pip install --upgrade agent-sandbox"
RUNNER_FALLBACK_COMMAND = "pip install agent-sandbox==0.1.0"

DEFAULT_RUNNER_BACKEND = "cli:claude-code"

# Executable and install script for each agent reachable over ACP.
ACP_AGENTS: dict[str, tuple[str, str]] = {
    "kimi": ("kimi", "pip install --upgrade kimi-cli"),
    "claude-code": ("claude-code-acp", "npm install -g @zed-industries/claude-code-acp"),
    "gemini": ("gemini", "npm install -g @google/gemini-cli"),
}

# Arguments that put each ACP agent into protocol mode.
ACP_AGENT_ARGS: dict[str, list[str]] = {
    "kimi": ["--acp"],
    "claude-code": [],
    "gemini": ["--experimental-acp"],
}
