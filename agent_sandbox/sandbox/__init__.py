"""Container providers, provisioning and volume management.

Lazy imports are used because the runner entrypoint
(agent_sandbox.runner.main) runs inside sandboxes that only need the event
models, and eagerly importing the kubernetes and paramiko backends would
slow it down or fail where those wheels are absent.
"""

from __future__ import annotations  # noqa: I001

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agent_sandbox.sandbox.docker import DockerContainerProvider
    from agent_sandbox.sandbox.factory import create_provider, provider_session
    from agent_sandbox.sandbox.kubernetes import KubernetesContainerProvider
    from agent_sandbox.sandbox.provider import ContainerProvider
    from agent_sandbox.sandbox.provisioner import CLIProvisioner
    from agent_sandbox.sandbox.remote import TunneledDockerProvider
    from agent_sandbox.sandbox.tunnel import SSHTunnel
    from agent_sandbox.sandbox.volumes import VolumeManager

__all__ = [
    "CLIProvisioner",
    "ContainerProvider",
    "DockerContainerProvider",
    "KubernetesContainerProvider",
    "SSHTunnel",
    "TunneledDockerProvider",
    "VolumeManager",
    "create_provider",
    "provider_session",
]

_LAZY: dict[str, str] = {
    "CLIProvisioner": "agent_sandbox.sandbox.provisioner",
    "ContainerProvider": "agent_sandbox.sandbox.provider",
    "DockerContainerProvider": "agent_sandbox.sandbox.docker",
    "KubernetesContainerProvider": "agent_sandbox.sandbox.kubernetes",
    "SSHTunnel": "agent_sandbox.sandbox.tunnel",
    "TunneledDockerProvider": "agent_sandbox.sandbox.remote",
    "VolumeManager": "agent_sandbox.sandbox.volumes",
    "create_provider": "agent_sandbox.sandbox.factory",
    "provider_session": "agent_sandbox.sandbox.factory",
}


def __getattr__(name: str) -> object:
    if name in _LAZY:
        import importlib  # noqa: PLC0415

        return getattr(importlib.import_module(_LAZY[name]), name)
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
