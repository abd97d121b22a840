"""Shared domain models for agent-sandbox.

Contains the status vocabularies, the compute target connection variants
(a closed, discriminated set), and the task, message and inspect request
records exchanged between the server, the provisioner and registered agents.
"""
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from agent_sandbox.core.constants import (
    AGENT_TOOLS,
    DEFAULT_CONTAINER_IMAGE,
    DEFAULT_CPU_LIMIT,
    DEFAULT_K8S_NAMESPACE,
    DEFAULT_K8S_STORAGE_SIZE,
    DEFAULT_MEMORY_LIMIT,
    DEFAULT_SSH_PORT,
    DOCKER_SOCKET_UNIX,
    AgentTool,
)


class ContainerStatus(StrEnum):
    """Lifecycle status of a sandbox's compute unit, shared by all backends."""

    CREATING = "creating"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class TaskStatus(StrEnum):
    """Status of an agent task."""

    PENDING = "pending"
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"
    ERROR = "error"


class TargetStatus(StrEnum):
    """Connectivity status of a compute target."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ERROR = "error"


class InspectRequestStatus(StrEnum):
    """Status of an asynchronous inspect request."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class DirectConnection(BaseModel):
    """Local container daemon reached over its unix socket."""

    kind: Literal["direct"] = "direct"
    socket_path: str = DOCKER_SOCKET_UNIX


class TunneledConnection(BaseModel):
    """Container daemon on a remote host reached through an SSH tunnel.

    Attributes:
        host: SSH host name or address.
        port: SSH port.
        username: SSH login user.
        auth_type: ``ssh-key`` uses ``private_key``; ``ssh-agent`` uses the local agent.
        private_key: PEM-encoded private key (ssh-key auth only).
        passphrase: Optional passphrase for the private key.
        remote_socket_path: Docker socket path on the remote host.
    """

    kind: Literal["tunneled"] = "tunneled"
    host: str
    port: int = Field(default=DEFAULT_SSH_PORT, ge=1, le=65535)
    username: str
    auth_type: Literal["ssh-key", "ssh-agent"] = "ssh-key"
    private_key: str | None = None
    passphrase: str | None = None
    remote_socket_path: str = DOCKER_SOCKET_UNIX


class ClusterConnection(BaseModel):
    """Kubernetes cluster; pods and persistent volume claims stand in for containers and volumes.

    Attributes:
        kubeconfig: Kubeconfig YAML content. ``None`` uses in-cluster config,
            then the default kubeconfig file.
        context: Kubeconfig context to select.
        namespace: Namespace sandboxes live in.
        storage_class: Storage class for volume claims (cluster default if unset).
        storage_size: Requested size of each volume claim.
    """

    kind: Literal["cluster"] = "cluster"
    kubeconfig: str | None = None
    context: str | None = None
    namespace: str = DEFAULT_K8S_NAMESPACE
    storage_class: str | None = None
    storage_size: str = DEFAULT_K8S_STORAGE_SIZE


class RegisteredConnection(BaseModel):
    """Remote host that cannot be dialled; its own agent process polls for work."""

    kind: Literal["registered"] = "registered"


ConnectionConfig = Annotated[
    DirectConnection | TunneledConnection | ClusterConnection | RegisteredConnection,
    Field(discriminator="kind"),
]


class ComputeTarget(BaseModel):
    """A place where sandboxes can run.

    Attributes:
        id: Target identifier.
        user_id: Owning user.
        name: Display name, unique per user.
        connection: Backend-specific connection parameters.
        status: Last observed connectivity.
        token: Per-target bearer secret (registered targets only).
        stats: Host stats from the last heartbeat.
        last_connected_at: Time of the last heartbeat or successful probe.
        created_at: Creation time.
    """

    id: str
    user_id: str
    name: str
    connection: ConnectionConfig
    status: TargetStatus = TargetStatus.DISCONNECTED
    token: str | None = None
    stats: dict[str, Any] | None = None
    last_connected_at: datetime | None = None
    created_at: datetime

    @property
    def kind(self) -> str:
        """Declared kind of the target's connection."""
        return self.connection.kind


class SandboxConfig(BaseModel):
    """Resource limits and image for a new sandbox.

    Attributes:
        image: Container image.
        memory_limit: Memory limit in docker notation (``512m``, ``2g``).
        cpu_limit: Number of CPUs.
        env: Environment baked into the compute unit. Secrets do not belong here.
    """

    model_config = ConfigDict(frozen=True)

    image: str = DEFAULT_CONTAINER_IMAGE
    memory_limit: str = DEFAULT_MEMORY_LIMIT
    cpu_limit: float = Field(default=DEFAULT_CPU_LIMIT, gt=0)
    env: dict[str, str] = Field(default_factory=dict)


class InspectRequest(BaseModel):
    """Asynchronous inspect handshake record for a sandbox on a registered target."""

    id: str
    status: InspectRequestStatus = InspectRequestStatus.PENDING
    requested_at: datetime
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None


class TaskConfig(BaseModel):
    """Typed view of a task's config blob.

    The persisted blob is a plain dict that registered agents merge into;
    unknown keys are preserved.
    """

    model_config = ConfigDict(extra="allow")

    repo_url: str | None = None
    branch: str | None = None
    prompt: str | None = None
    backend: str | None = None
    image: str | None = None
    memory_limit: str | None = None
    cpu_limit: float | None = None
    anthropic_api_key: str | None = None
    github_token: str | None = None
    inspect_request: InspectRequest | None = None

    def sandbox_config(self) -> SandboxConfig:
        """Build the sandbox resource config, falling back to defaults."""
        values: dict[str, Any] = {}
        if self.image:
            values["image"] = self.image
        if self.memory_limit:
            values["memory_limit"] = self.memory_limit
        if self.cpu_limit:
            values["cpu_limit"] = self.cpu_limit
        return SandboxConfig(**values)

    def secrets(self, tool: AgentTool) -> dict[str, str]:
        """Environment secrets for a single agent invocation."""
        env: dict[str, str] = {}
        if self.anthropic_api_key:
            env[AGENT_TOOLS[tool].env_var] = self.anthropic_api_key
        return env


class Task(BaseModel):
    """An agent task bound to one sandbox.

    Attributes:
        id: Task identifier; doubles as the sandbox id.
        user_id: Owning user.
        project_id: Optional grouping.
        name: Display name.
        status: Task status.
        agent_tool: Coding agent used for the task.
        server_id: Compute target the sandbox lives on.
        container_id: Backend-assigned compute unit id.
        volume_id: Backend-assigned volume id.
        config: Free-form config blob (see TaskConfig).
        error_message: Human-readable failure synopsis.
        last_result: Output and exit code of the most recent run.
        version: Incremented on every update; used for optimistic concurrency.
    """

    id: str
    user_id: str
    project_id: str | None = None
    name: str
    status: TaskStatus = TaskStatus.CREATING
    agent_tool: AgentTool = AgentTool.CLAUDE
    server_id: str | None = None
    container_id: str | None = None
    volume_id: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    last_result: dict[str, Any] | None = None
    version: int = 1
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime | None = None

    @property
    def typed_config(self) -> TaskConfig:
        """Parse the config blob into a TaskConfig."""
        return TaskConfig.model_validate(self.config)


class ToolCallRecord(BaseModel):
    """One tool call (or prompt / prompt answer) attached to a message."""

    id: str
    type: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    output: str | None = None


class Message(BaseModel):
    """A conversation message stored for a task.

    Attributes:
        id: Message identifier.
        seq: Monotonic sequence number assigned by the store.
        task_id: Owning task.
        role: Author role.
        content: Text content.
        tool_calls: Structured tool-call records, if any.
        created_at: Creation time.
    """

    id: str
    seq: int | None = None
    task_id: str
    role: Literal["user", "assistant", "system"]
    content: str
    tool_calls: list[ToolCallRecord] | None = None
    created_at: datetime
