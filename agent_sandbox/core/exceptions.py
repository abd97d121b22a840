# agent_sandbox/core/exceptions.py
"""Custom exceptions for agent-sandbox."""


class AgentSandboxError(Exception):
    """Base exception for all agent-sandbox errors."""

    pass


class ConfigurationError(AgentSandboxError):
    """Raised when required configuration is missing or invalid."""

    pass


class ContainerProviderError(AgentSandboxError):
    """Raised when a container backend rejects or fails an operation.

    Attributes:
        operation: Provider operation that failed (e.g. ``create_container``).
        container_id: Container the operation targeted, if any.
    """

    def __init__(self, message: str, operation: str, container_id: str | None = None):
        super().__init__(message)
        self.operation = operation
        self.container_id = container_id


class ContainerNotFoundError(ContainerProviderError):
    """Raised when the targeted compute unit does not exist."""

    pass


class VolumeInUseError(AgentSandboxError):
    """Raised when deleting a volume that a running compute unit still mounts.

    Attributes:
        volume_name: Name of the volume.
    """

    def __init__(self, volume_name: str):
        super().__init__(f"Volume {volume_name} is in use by a running container")
        self.volume_name = volume_name


class TunnelError(AgentSandboxError):
    """Raised when the SSH tunnel cannot be established or has been closed."""

    pass


class ProviderResolutionError(AgentSandboxError):
    """Raised when a compute target cannot be turned into a provider.

    Registered targets are driven by their own polling process and never
    resolve to an outbound provider.
    """

    pass


class SetupError(AgentSandboxError):
    """Raised when repository setup inside a sandbox fails."""

    pass


class AgentRunnerError(AgentSandboxError):
    """Raised when the agent runner is misconfigured (e.g. unknown backend)."""

    pass
