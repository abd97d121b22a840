"""Volume bookkeeping on top of a container provider.

Finds volumes whose sandbox no longer exists, flags oversized volumes and
removes orphans.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime

from loguru import logger
from pydantic import BaseModel, Field

from agent_sandbox.core.constants import (
    LABEL_SANDBOX_ID,
    VOLUME_NAME_PREFIX,
    VOLUME_SIZE_WARNING_THRESHOLD,
)
from agent_sandbox.core.exceptions import AgentSandboxError, VolumeInUseError
from agent_sandbox.sandbox.provider import ContainerProvider, VolumeRecord


class VolumeInfo(BaseModel):
    """A sandbox volume with its ownership and size status.

    Attributes:
        name: Volume name.
        sandbox_id: Owning sandbox, or None when orphaned.
        size_bytes: Used bytes; 0 when the backend cannot tell.
        created_at: Creation time, when known.
        is_orphaned: True when no known sandbox owns the volume.
        size_warning: True when the volume exceeds the size warning threshold.
    """

    name: str
    sandbox_id: str | None = None
    size_bytes: int = 0
    created_at: datetime | None = None
    is_orphaned: bool = False
    size_warning: bool = False


class CleanupError(BaseModel):
    volume: str
    error: str


class CleanupResult(BaseModel):
    """Outcome of an orphan cleanup pass."""

    removed: list[str] = Field(default_factory=list)
    freed_bytes: int = 0
    errors: list[CleanupError] = Field(default_factory=list)


class VolumeManager:
    """Inspects and prunes sandbox volumes on one backend.

    Args:
        provider: Backend to operate on.
        name_prefix: Prefix used to recover a sandbox id from a volume name
            when the volume carries no sandbox label.
        size_warning_threshold: Byte size above which a volume is flagged.
    """

    def __init__(
        self,
        provider: ContainerProvider,
        name_prefix: str = VOLUME_NAME_PREFIX,
        size_warning_threshold: int = VOLUME_SIZE_WARNING_THRESHOLD,
    ) -> None:
        self.provider = provider
        self.name_prefix = name_prefix
        self.size_warning_threshold = size_warning_threshold

    def _sandbox_id_of(self, record: VolumeRecord) -> str | None:
        if LABEL_SANDBOX_ID in record.labels:
            return record.labels[LABEL_SANDBOX_ID]
        if record.name.startswith(self.name_prefix):
            return record.name[len(self.name_prefix):]
        return None

    async def list_volumes(self, known_sandbox_ids: Collection[str]) -> list[VolumeInfo]:
        """List sandbox volumes, marking those no known sandbox owns.

        Args:
            known_sandbox_ids: Ids of sandboxes that still exist.

        Returns:
            One VolumeInfo per sandbox volume.
        """
        records = await self.provider.list_volumes(label=LABEL_SANDBOX_ID)
        volumes: list[VolumeInfo] = []
        for record in records:
            sandbox_id = self._sandbox_id_of(record)
            is_orphaned = sandbox_id is None or sandbox_id not in known_sandbox_ids
            size = await self.provider.get_volume_size(record.name)
            volumes.append(
                VolumeInfo(
                    name=record.name,
                    sandbox_id=None if is_orphaned else sandbox_id,
                    size_bytes=size,
                    created_at=record.created_at,
                    is_orphaned=is_orphaned,
                    size_warning=size > self.size_warning_threshold,
                )
            )
        return volumes

    async def get_orphaned_volumes(self, known_sandbox_ids: Collection[str]) -> list[VolumeInfo]:
        volumes = await self.list_volumes(known_sandbox_ids)
        return [volume for volume in volumes if volume.is_orphaned]

    async def delete_volume(self, name: str, check_in_use: bool = True) -> None:
        """Delete a volume.

        Raises:
            VolumeInUseError: If ``check_in_use`` and a running unit mounts it.
        """
        if check_in_use and await self.provider.is_volume_in_use(name):
            raise VolumeInUseError(name)
        await self.provider.delete_volume(name)

    async def cleanup_orphaned_volumes(self, known_sandbox_ids: Collection[str]) -> CleanupResult:
        """Remove every orphaned volume, collecting per-volume failures."""
        result = CleanupResult()
        for volume in await self.get_orphaned_volumes(known_sandbox_ids):
            try:
                await self.delete_volume(volume.name, check_in_use=False)
            except AgentSandboxError as e:
                result.errors.append(CleanupError(volume=volume.name, error=str(e)))
                continue
            result.removed.append(volume.name)
            result.freed_bytes += volume.size_bytes

        logger.info(
            "Orphaned volume cleanup finished",
            removed=len(result.removed),
            freed_bytes=result.freed_bytes,
            errors=len(result.errors),
        )
        return result
