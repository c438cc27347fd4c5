"""Storage backends and volume id resolution.

- StorageBackend: abstract interface used by snapshot operations
- ZFSStorage: datasets managed through the zfs CLI
- DirStorage: plain directories, no snapshot capability
- StorageRegistry: routes a volume id to the backend owning it
"""
from typing import Dict, Optional

from ctconf.core.config import CtconfConfig, get_config
from ctconf.core.errors import NotFoundError
from .base import StorageBackend
from .dir import DirStorage
from .zfs import ZFSStorage


class StorageRegistry(StorageBackend):
    """Dispatches storage calls to the backend named in the volume id."""

    def __init__(self, backends: Optional[Dict[str, StorageBackend]] = None, mock: bool = False):
        super().__init__('registry', mock)
        self.backends = dict(backends or {})

    @classmethod
    def from_settings(cls, settings: Optional[CtconfConfig] = None, mock: bool = False) -> "StorageRegistry":
        settings = settings or get_config()
        backends: Dict[str, StorageBackend] = {}
        for storage_id, pool in settings.zfs_pools.items():
            backends[storage_id] = ZFSStorage(storage_id, pool, mock=mock, timeout=settings.command_timeout)
        for storage_id, path in settings.dir_storages.items():
            backends[storage_id] = DirStorage(storage_id, path, mock=mock)
        return cls(backends, mock=mock)

    def backend_for(self, volid: str) -> StorageBackend:
        storage_id, _ = self.parse_volume_id(volid)
        backend = self.backends.get(storage_id)
        if backend is None:
            raise NotFoundError(f"storage '{storage_id}' does not exist")
        return backend

    def has_feature(self, feature: str, volid: str, snapname: str = None) -> bool:
        if not volid:
            return False
        return self.backend_for(volid).has_feature(feature, volid, snapname)

    def snapshot(self, volid: str, snapname: str):
        self.backend_for(volid).snapshot(volid, snapname)

    def delete_snapshot(self, volid: str, snapname: str):
        self.backend_for(volid).delete_snapshot(volid, snapname)

    def rollback_possible(self, volid: str, snapname: str) -> bool:
        return self.backend_for(volid).rollback_possible(volid, snapname)

    def rollback(self, volid: str, snapname: str):
        self.backend_for(volid).rollback(volid, snapname)


__all__ = ['StorageBackend', 'ZFSStorage', 'DirStorage', 'StorageRegistry']
