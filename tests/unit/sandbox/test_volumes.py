"""Tests for VolumeManager."""
from datetime import UTC, datetime

import pytest

from agent_sandbox.core.exceptions import ContainerProviderError, VolumeInUseError
from agent_sandbox.sandbox.provider import VolumeRecord
from agent_sandbox.sandbox.volumes import VolumeManager


GIB = 1024**3


@pytest.fixture
def manager(mock_provider):
    mock_provider.list_volumes.return_value = [
        VolumeRecord(name="agent-sandbox-t1", labels={"agent-sandbox.id": "t1"}, created_at=datetime.now(UTC)),
        VolumeRecord(name="agent-sandbox-t2", labels={"agent-sandbox.id": "t2"}),
        VolumeRecord(name="agent-sandbox-t3"),
        VolumeRecord(name="scratch"),
    ]
    sizes = {"agent-sandbox-t1": 11 * GIB, "agent-sandbox-t2": 100, "agent-sandbox-t3": 200, "scratch": 5}
    mock_provider.get_volume_size.side_effect = lambda name: sizes[name]
    return VolumeManager(mock_provider)


class TestVolumeManager:
    async def test_list_marks_orphans_and_size_warnings(self, manager):
        volumes = {v.name: v for v in await manager.list_volumes({"t1", "t3"})}

        assert volumes["agent-sandbox-t1"].is_orphaned is False
        assert volumes["agent-sandbox-t1"].size_warning is True
        assert volumes["agent-sandbox-t2"].is_orphaned is True
        assert volumes["agent-sandbox-t2"].sandbox_id is None
        # Unlabeled volumes fall back to the name prefix.
        assert volumes["agent-sandbox-t3"].sandbox_id == "t3"
        assert volumes["scratch"].is_orphaned is True

    async def test_get_orphaned_volumes(self, manager):
        orphans = await manager.get_orphaned_volumes({"t1", "t2", "t3"})

        assert [v.name for v in orphans] == ["scratch"]

    async def test_delete_refuses_volume_in_use(self, manager, mock_provider):
        mock_provider.is_volume_in_use.return_value = True

        with pytest.raises(VolumeInUseError):
            await manager.delete_volume("agent-sandbox-t1")

        mock_provider.delete_volume.assert_not_awaited()

    async def test_cleanup_collects_errors(self, manager, mock_provider):
        async def delete(name):
            if name == "scratch":
                raise ContainerProviderError("permission denied", operation="delete_volume")

        mock_provider.delete_volume.side_effect = delete

        result = await manager.cleanup_orphaned_volumes({"t1"})

        assert result.removed == ["agent-sandbox-t2", "agent-sandbox-t3"]
        assert result.freed_bytes == 300
        assert [(e.volume, e.error) for e in result.errors] == [("scratch", "permission denied")]
        mock_provider.is_volume_in_use.assert_not_awaited()
