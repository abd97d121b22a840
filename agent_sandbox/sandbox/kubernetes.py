"""Kubernetes container provider.

A pod stands in for each sandbox container and a persistent volume claim for
its volume. The kubernetes client is synchronous, so every API call runs in
a worker thread. Stopping a sandbox deletes its pod; the pod manifest is kept
as an annotation on the claim so the pod can be recreated on start.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import yaml
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream as k8s_stream
from loguru import logger

from agent_sandbox.core.constants import (
    CONTAINER_STOP_TIMEOUT_SECONDS,
    CREATED_BY_VALUE,
    HEALTH_CHECK_TIMEOUT_SECONDS,
    K8S_POD_SPEC_ANNOTATION,
    LABEL_CREATED_BY,
    LABEL_SANDBOX_ID,
    LABEL_VOLUME,
    POD_TERMINATION_POLL_SECONDS,
    TRANSPORT_FAILURE_EXIT_CODE,
    WORKSPACE_MOUNT_PATH,
)
from agent_sandbox.core.exceptions import (
    ConfigurationError,
    ContainerNotFoundError,
    ContainerProviderError,
    VolumeInUseError,
)
from agent_sandbox.core.types import ClusterConnection, ContainerStatus, SandboxConfig
from agent_sandbox.sandbox.docker import parse_memory_limit
from agent_sandbox.sandbox.provider import (
    ContainerInfo,
    ContainerProvider,
    ContainerSummary,
    CreateContainerResult,
    ExecResult,
    HealthCheckResult,
    VolumeRecord,
)


T = TypeVar("T")

SANDBOX_CONTAINER_NAME = "sandbox"
POD_NAME_PREFIX = "sandbox-"
PVC_NAME_PREFIX = "pvc-"

_PHASES: dict[str, ContainerStatus] = {
    "Running": ContainerStatus.RUNNING,
    "Pending": ContainerStatus.CREATING,
    "Succeeded": ContainerStatus.STOPPED,
    "Failed": ContainerStatus.ERROR,
    "Unknown": ContainerStatus.ERROR,
}


def map_pod_phase(phase: str | None, deleting: bool = False) -> ContainerStatus:
    """Map a pod phase onto the shared status vocabulary."""
    if deleting:
        return ContainerStatus.STOPPING
    return _PHASES.get(phase or "", ContainerStatus.STOPPED)


def pvc_name_for_pod(pod_name: str) -> str:
    """Claim name paired with a sandbox pod name."""
    return f"{PVC_NAME_PREFIX}{pod_name.removeprefix(POD_NAME_PREFIX)}"


def _labels() -> dict[str, str]:
    return {LABEL_CREATED_BY: CREATED_BY_VALUE}


class KubernetesContainerProvider(ContainerProvider):
    """Manages sandbox pods and claims in one namespace.

    Args:
        connection: Cluster connection parameters.
        core_api: CoreV1Api for REST calls; built from ``connection`` if omitted.
        stream_api: CoreV1Api for exec streams. Kept separate from ``core_api``
            because ``kubernetes.stream`` patches the client it is given.
        health_timeout: Seconds to wait for the API server in health checks.
        termination_timeout: Seconds to wait for a deleted pod to disappear
            before it is recreated on start.
        poll_interval: Seconds between pod reads while waiting.
    """

    def __init__(
        self,
        connection: ClusterConnection,
        core_api: client.CoreV1Api | None = None,
        stream_api: client.CoreV1Api | None = None,
        health_timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS,
        termination_timeout: float = CONTAINER_STOP_TIMEOUT_SECONDS * 2,
        poll_interval: float = POD_TERMINATION_POLL_SECONDS,
    ) -> None:
        self.connection = connection
        self.namespace = connection.namespace
        self.health_timeout = health_timeout
        self.termination_timeout = termination_timeout
        self.poll_interval = poll_interval
        if core_api is None:
            core_api, stream_api = self._build_clients(connection)
        self._core_api = core_api
        self._stream_api = stream_api or core_api

    @staticmethod
    def _build_clients(connection: ClusterConnection) -> tuple[client.CoreV1Api, client.CoreV1Api]:
        """Load cluster credentials: explicit kubeconfig, then in-cluster, then ~/.kube/config.

        Raises:
            ConfigurationError: If no usable configuration is found.
        """
        try:
            if connection.kubeconfig:
                config_dict = yaml.safe_load(connection.kubeconfig)
                rest_client = config.new_client_from_config_dict(config_dict, context=connection.context)
                stream_client = config.new_client_from_config_dict(config_dict, context=connection.context)
            else:
                try:
                    config.load_incluster_config()
                    logger.debug("Using in-cluster Kubernetes config")
                except config.ConfigException:
                    config.load_kube_config(context=connection.context)
                    logger.debug("Using local Kubernetes config")
                rest_client = client.ApiClient()
                stream_client = client.ApiClient()
        except (config.ConfigException, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load Kubernetes configuration: {e}") from e
        return client.CoreV1Api(rest_client), client.CoreV1Api(stream_client)

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def close(self) -> None:
        """Release the underlying API clients."""
        for api in {id(self._core_api): self._core_api, id(self._stream_api): self._stream_api}.values():
            api_client = getattr(api, "api_client", None)
            if api_client is not None:
                await self._call(api_client.close)

    async def health_check(self) -> HealthCheckResult:
        version_api = client.VersionApi(self._core_api.api_client)
        try:
            info = await asyncio.wait_for(
                self._call(version_api.get_code), timeout=self.health_timeout
            )
        except TimeoutError:
            return HealthCheckResult(
                healthy=False,
                message=f"Kubernetes API did not respond within {self.health_timeout}s",
            )
        except Exception as e:
            return HealthCheckResult(healthy=False, message=f"Kubernetes API unreachable: {e}")
        version = getattr(info, "git_version", None)
        return HealthCheckResult(healthy=True, version=version, message=f"Kubernetes {version} available")

    def _pod_manifest(
        self, sandbox_id: str, pod_name: str, pvc_name: str, sandbox_config: SandboxConfig
    ) -> dict[str, Any]:
        memory = str(parse_memory_limit(sandbox_config.memory_limit))
        cpu = str(sandbox_config.cpu_limit)
        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": pod_name,
                "labels": {
                    **_labels(),
                    LABEL_SANDBOX_ID: sandbox_id,
                    LABEL_VOLUME: pvc_name,
                },
            },
            "spec": {
                "restartPolicy": "Always",
                "containers": [
                    {
                        "name": SANDBOX_CONTAINER_NAME,
                        "image": sandbox_config.image,
                        "command": ["tail", "-f", "/dev/null"],
                        "workingDir": WORKSPACE_MOUNT_PATH,
                        "env": [{"name": k, "value": v} for k, v in sandbox_config.env.items()],
                        "resources": {
                            "limits": {"memory": memory, "cpu": cpu},
                            "requests": {"memory": memory, "cpu": cpu},
                        },
                        "volumeMounts": [{"name": "workspace", "mountPath": WORKSPACE_MOUNT_PATH}],
                    }
                ],
                "volumes": [
                    {"name": "workspace", "persistentVolumeClaim": {"claimName": pvc_name}}
                ],
            },
        }

    async def _read_pod(self, pod_name: str) -> client.V1Pod | None:
        try:
            return await self._call(self._core_api.read_namespaced_pod, pod_name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise ContainerProviderError(
                f"Failed to read pod: {e.reason}", operation="inspect_container", container_id=pod_name
            ) from e

    async def _create_pod(self, manifest: dict[str, Any]) -> bool:
        """Create a pod. Returns False when a pod with that name already exists."""
        name = manifest["metadata"]["name"]
        try:
            await self._call(self._core_api.create_namespaced_pod, self.namespace, manifest)
        except ApiException as e:
            if e.status == 409:
                logger.debug("Pod already exists", pod=name)
                return False
            raise ContainerProviderError(
                f"Failed to create pod: {e.reason}", operation="create_container", container_id=name
            ) from e
        logger.info("Pod created", pod=name, namespace=self.namespace)
        return True

    async def _wait_for_pod_gone(self, pod_name: str, operation: str) -> None:
        """Poll until a deleted pod is no longer returned by the API server.

        Raises:
            ContainerProviderError: If the pod still exists after ``termination_timeout``.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.termination_timeout
        while await self._read_pod(pod_name) is not None:
            if loop.time() >= deadline:
                raise ContainerProviderError(
                    f"Pod {pod_name} still terminating after {self.termination_timeout}s",
                    operation=operation,
                    container_id=pod_name,
                )
            await asyncio.sleep(self.poll_interval)

    async def _create_pvc(
        self, name: str, labels: dict[str, str], annotations: dict[str, str] | None = None
    ) -> None:
        spec: dict[str, Any] = {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": self.connection.storage_size}},
        }
        if self.connection.storage_class:
            spec["storageClassName"] = self.connection.storage_class
        body = {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": name,
                "labels": {**_labels(), **labels},
                "annotations": annotations or {},
            },
            "spec": spec,
        }
        try:
            await self._call(
                self._core_api.create_namespaced_persistent_volume_claim, self.namespace, body
            )
        except ApiException as e:
            if e.status == 409:
                logger.debug("Volume claim already exists", pvc=name)
                return
            raise ContainerProviderError(
                f"Failed to create volume claim: {e.reason}", operation="create_volume"
            ) from e
        logger.info("Volume claim created", pvc=name, namespace=self.namespace)

    async def create_container(
        self, sandbox_id: str, config: SandboxConfig
    ) -> CreateContainerResult:
        pod_name = f"{POD_NAME_PREFIX}{sandbox_id}"
        pvc_name = f"{PVC_NAME_PREFIX}{sandbox_id}"
        manifest = self._pod_manifest(sandbox_id, pod_name, pvc_name, config)
        await self._create_pvc(
            pvc_name,
            labels={LABEL_SANDBOX_ID: sandbox_id},
            annotations={K8S_POD_SPEC_ANNOTATION: json.dumps(manifest)},
        )
        await self._create_pod(manifest)
        return CreateContainerResult(container_id=pod_name, volume_id=pvc_name)

    async def start_container(self, container_id: str) -> None:
        """Recreate the pod from the claim's stored manifest unless it is already up.

        A pod that is finished or still terminating from a previous stop is
        deleted and waited out before the new one is created, since the API
        server refuses to create a pod whose name is still taken.

        Raises:
            ContainerNotFoundError: If neither pod nor claim manifest exists.
            ContainerProviderError: If the old pod does not go away in time.
        """
        pod = await self._read_pod(container_id)
        if pod is not None:
            phase = pod.status.phase if pod.status else None
            if phase in ("Running", "Pending") and not pod.metadata.deletion_timestamp:
                logger.debug("Pod already running", pod=container_id)
                return
            await self._delete_pod(container_id, grace_seconds=0)
            await self._wait_for_pod_gone(container_id, "start_container")

        pvc_name = pvc_name_for_pod(container_id)
        try:
            pvc = await self._call(
                self._core_api.read_namespaced_persistent_volume_claim, pvc_name, self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                raise ContainerNotFoundError(
                    f"No pod or volume claim for {container_id}",
                    operation="start_container",
                    container_id=container_id,
                ) from e
            raise ContainerProviderError(
                f"Failed to read volume claim: {e.reason}", operation="start_container"
            ) from e

        annotations = pvc.metadata.annotations or {}
        if K8S_POD_SPEC_ANNOTATION not in annotations:
            raise ContainerNotFoundError(
                f"Volume claim {pvc_name} carries no pod manifest",
                operation="start_container",
                container_id=container_id,
            )
        if await self._create_pod(json.loads(annotations[K8S_POD_SPEC_ANNOTATION])):
            return
        # Name conflict: fine if a concurrent start won, not if the pod is going away.
        existing = await self._read_pod(container_id)
        if existing is None or existing.metadata.deletion_timestamp:
            raise ContainerProviderError(
                f"Pod {container_id} is terminating; retry start",
                operation="start_container",
                container_id=container_id,
            )

    async def _delete_pod(self, pod_name: str, grace_seconds: int = CONTAINER_STOP_TIMEOUT_SECONDS) -> bool:
        try:
            await self._call(
                self._core_api.delete_namespaced_pod,
                pod_name,
                self.namespace,
                grace_period_seconds=grace_seconds,
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise ContainerProviderError(
                f"Failed to delete pod: {e.reason}", operation="stop_container", container_id=pod_name
            ) from e
        return True

    async def stop_container(self, container_id: str) -> None:
        """Delete the pod. A missing pod is already stopped."""
        if await self._delete_pod(container_id):
            logger.info("Pod stopped", pod=container_id)

    async def inspect_container(self, container_id: str) -> ContainerInfo:
        pod = await self._read_pod(container_id)
        if pod is None:
            return ContainerInfo(container_id=container_id, status=ContainerStatus.STOPPED, exists=False)

        labels = pod.metadata.labels or {}
        status = map_pod_phase(
            pod.status.phase if pod.status else None,
            deleting=pod.metadata.deletion_timestamp is not None,
        )
        info = ContainerInfo(
            container_id=container_id,
            status=status,
            sandbox_id=labels.get(LABEL_SANDBOX_ID),
            volume_id=labels.get(LABEL_VOLUME),
        )
        started_at = pod.status.start_time if pod.status else None
        if status == ContainerStatus.RUNNING and started_at is not None:
            info.started_at = started_at
            info.uptime_seconds = (datetime.now(UTC) - started_at).total_seconds()
        containers = pod.spec.containers if pod.spec else []
        if containers and containers[0].resources and containers[0].resources.limits:
            memory = containers[0].resources.limits.get("memory")
            if memory and str(memory).isdigit():
                info.memory_limit_bytes = int(memory)
        return info

    async def get_logs(
        self, container_id: str, tail: int = 100, follow: bool = False
    ) -> AsyncIterator[str]:
        if not follow:
            try:
                text = await self._call(
                    self._core_api.read_namespaced_pod_log,
                    container_id,
                    self.namespace,
                    container=SANDBOX_CONTAINER_NAME,
                    tail_lines=tail,
                )
            except ApiException as e:
                if e.status == 404:
                    raise ContainerNotFoundError(
                        f"Pod not found: {container_id}", operation="get_logs", container_id=container_id
                    ) from e
                raise ContainerProviderError(
                    f"Failed to read logs: {e.reason}", operation="get_logs", container_id=container_id
                ) from e
            for line in str(text).splitlines():
                yield line
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        log_watch = watch.Watch()

        def pump() -> None:
            try:
                for line in log_watch.stream(
                    self._core_api.read_namespaced_pod_log,
                    container_id,
                    self.namespace,
                    container=SANDBOX_CONTAINER_NAME,
                    tail_lines=tail,
                ):
                    loop.call_soon_threadsafe(queue.put_nowait, line)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, None)

        pump_task = asyncio.create_task(asyncio.to_thread(pump))
        try:
            while (line := await queue.get()) is not None:
                yield line
        finally:
            log_watch.stop()
            if pump_task.done() and not pump_task.cancelled() and pump_task.exception():
                logger.debug("Log stream ended with error", pod=container_id, error=str(pump_task.exception()))

    async def remove_container(
        self,
        container_id: str,
        volume_id: str | None = None,
        preserve_volume: bool = False,
    ) -> None:
        pod = await self._read_pod(container_id)
        if pod is not None:
            volume_id = volume_id or (pod.metadata.labels or {}).get(LABEL_VOLUME)
            await self._delete_pod(container_id, grace_seconds=0)
            await self._wait_for_pod_gone(container_id, "remove_container")
            logger.info("Pod removed", pod=container_id)
        volume_id = volume_id or pvc_name_for_pod(container_id)

        if not preserve_volume:
            try:
                await self._delete_pvc(volume_id)
            except ContainerProviderError as e:
                logger.warning("Failed to remove volume claim", pvc=volume_id, error=str(e))

    async def list_containers(self) -> list[ContainerSummary]:
        try:
            pods = await self._call(
                self._core_api.list_namespaced_pod,
                self.namespace,
                label_selector=f"{LABEL_CREATED_BY}={CREATED_BY_VALUE}",
            )
        except ApiException as e:
            raise ContainerProviderError(f"Failed to list pods: {e.reason}", operation="list_containers") from e
        return [
            ContainerSummary(
                container_id=pod.metadata.name,
                sandbox_id=(pod.metadata.labels or {}).get(LABEL_SANDBOX_ID),
                status=map_pod_phase(
                    pod.status.phase if pod.status else None,
                    deleting=pod.metadata.deletion_timestamp is not None,
                ),
            )
            for pod in pods.items
        ]

    def _exec_blocking(self, container_id: str, command: list[str]) -> tuple[int | None, str]:
        resp = k8s_stream(
            self._stream_api.connect_get_namespaced_pod_exec,
            container_id,
            self.namespace,
            command=command,
            container=SANDBOX_CONTAINER_NAME,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
        )
        chunks: list[str] = []
        try:
            while resp.is_open():
                resp.update(timeout=1)
                if resp.peek_stdout():
                    chunks.append(resp.read_stdout())
                if resp.peek_stderr():
                    chunks.append(resp.read_stderr())
            return resp.returncode, "".join(chunks)
        finally:
            resp.close()

    async def execute_command(
        self, container_id: str, command: list[str]
    ) -> ExecResult:
        """Run a command through the pod exec subresource."""
        try:
            returncode, output = await self._call(self._exec_blocking, container_id, command)
        except Exception as e:
            logger.warning("Pod exec failed", pod=container_id, error=str(e))
            return ExecResult(exit_code=TRANSPORT_FAILURE_EXIT_CODE, output=str(e))
        exit_code = returncode if returncode is not None else TRANSPORT_FAILURE_EXIT_CODE
        return ExecResult(exit_code=exit_code, output=output.strip())

    async def create_volume(
        self, name: str, labels: dict[str, str] | None = None
    ) -> str:
        await self._create_pvc(name, labels or {})
        return name

    async def list_volumes(
        self, label: str | None = None, name_prefix: str | None = None
    ) -> list[VolumeRecord]:
        selector = label or f"{LABEL_CREATED_BY}={CREATED_BY_VALUE}"
        try:
            claims = await self._call(
                self._core_api.list_namespaced_persistent_volume_claim,
                self.namespace,
                label_selector=selector,
            )
        except ApiException as e:
            raise ContainerProviderError(f"Failed to list volume claims: {e.reason}", operation="list_volumes") from e
        volumes: list[VolumeRecord] = []
        for claim in claims.items:
            name = claim.metadata.name
            if name_prefix and not name.startswith(name_prefix):
                continue
            volumes.append(
                VolumeRecord(
                    name=name,
                    labels=claim.metadata.labels or {},
                    created_at=claim.metadata.creation_timestamp,
                )
            )
        return volumes

    async def _delete_pvc(self, name: str) -> None:
        try:
            await self._call(
                self._core_api.delete_namespaced_persistent_volume_claim, name, self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise ContainerProviderError(
                f"Failed to delete volume claim: {e.reason}", operation="delete_volume"
            ) from e
        logger.info("Volume claim removed", pvc=name)

    async def delete_volume(self, name: str) -> None:
        if await self.is_volume_in_use(name):
            raise VolumeInUseError(name)
        await self._delete_pvc(name)

    async def get_volume_size(self, name: str) -> int:
        # Claims do not expose used bytes.
        return 0

    async def is_volume_in_use(self, name: str) -> bool:
        try:
            pods = await self._call(self._core_api.list_namespaced_pod, self.namespace)
        except ApiException as e:
            raise ContainerProviderError(
                f"Failed to list pods: {e.reason}", operation="is_volume_in_use"
            ) from e
        for pod in pods.items:
            if not pod.status or pod.status.phase != "Running":
                continue
            for volume in (pod.spec.volumes or []) if pod.spec else []:
                claim = volume.persistent_volume_claim
                if claim is not None and claim.claim_name == name:
                    return True
        return False
