"""ZFS storage backend."""
from typing import List

from ctconf.core.commands import run_command
from ctconf.core.errors import NotFoundError
from ctconf.core.logger import get_logger
from .base import StorageBackend

logger = get_logger(__name__)


class ZFSStorage(StorageBackend):
    """Volumes are ZFS datasets below a pool prefix, e.g. ``rpool/data/subvol-100-disk-0``."""

    def __init__(self, storage_id: str, pool: str, mock: bool = False, timeout: int = 30):
        super().__init__(storage_id, mock)
        self.pool = pool.rstrip('/')
        self.timeout = timeout

    def dataset(self, volid: str) -> str:
        storage_id, volname = self.parse_volume_id(volid)
        if storage_id != self.storage_id:
            raise NotFoundError(f"volume '{volid}' is not on storage '{self.storage_id}'")
        return f"{self.pool}/{volname}"

    def has_feature(self, feature: str, volid: str, snapname: str = None) -> bool:
        _, volname = self.parse_volume_id(volid)
        if feature == 'snapshot':
            return volname.startswith(('subvol-', 'vm-', 'base-'))
        if feature == 'clone':
            return snapname is not None or volname.startswith('base-')
        return False

    def snapshot(self, volid: str, snapname: str):
        full_snapshot = f"{self.dataset(volid)}@{snapname}"
        run_command(["zfs", "snapshot", full_snapshot], timeout=self.timeout, mock=self.mock)
        logger.info(f"Created snapshot: {full_snapshot}")

    def delete_snapshot(self, volid: str, snapname: str):
        full_snapshot = f"{self.dataset(volid)}@{snapname}"
        run_command(["zfs", "destroy", full_snapshot], timeout=self.timeout, mock=self.mock)
        logger.info(f"Deleted snapshot: {full_snapshot}")

    def list_snapshots(self, volid: str) -> List[str]:
        """Snapshot names of the volume, oldest first."""
        dataset = self.dataset(volid)
        if self.mock:
            return []

        result = run_command(
            ["zfs", "list", "-t", "snapshot", "-H", "-o", "name", "-s", "creation", "-d", "1", dataset],
            timeout=self.timeout,
        )
        names = []
        for line in result.stdout.splitlines():
            if '@' in line:
                names.append(line.strip().split('@', 1)[1])
        return names

    def rollback_possible(self, volid: str, snapname: str) -> bool:
        """``zfs rollback`` without -r only works to the most recent snapshot."""
        snapshots = self.list_snapshots(volid)
        if self.mock:
            return True
        if snapname not in snapshots:
            return False
        return snapshots[-1] == snapname

    def rollback(self, volid: str, snapname: str):
        full_snapshot = f"{self.dataset(volid)}@{snapname}"
        run_command(["zfs", "rollback", full_snapshot], timeout=self.timeout, mock=self.mock)
        logger.info(f"Rolled back to {full_snapshot}")
