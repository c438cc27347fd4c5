"""Plain directory storage backend (no snapshot support)."""
from ctconf.core.errors import UnsupportedError
from .base import StorageBackend


class DirStorage(StorageBackend):
    """Volumes are subdirectories of a path; none of the snapshot features apply."""

    def __init__(self, storage_id: str, path: str, mock: bool = False):
        super().__init__(storage_id, mock)
        self.path = path

    def has_feature(self, feature: str, volid: str, snapname: str = None) -> bool:
        return False

    def _unsupported(self, volid: str):
        raise UnsupportedError(f"storage '{self.storage_id}' does not support snapshots ({volid})")

    def snapshot(self, volid: str, snapname: str):
        self._unsupported(volid)

    def delete_snapshot(self, volid: str, snapname: str):
        self._unsupported(volid)

    def rollback_possible(self, volid: str, snapname: str) -> bool:
        return False

    def rollback(self, volid: str, snapname: str):
        self._unsupported(volid)
