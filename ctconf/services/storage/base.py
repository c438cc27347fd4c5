"""Abstract base class for storage backends."""
from abc import ABC, abstractmethod


class StorageBackend(ABC):
    """Abstract interface for volume storage (ZFS, directory, ...)."""

    def __init__(self, storage_id: str, mock: bool = False):
        """Initialize backend.

        Args:
            storage_id: Storage id used as the prefix of volume ids
            mock: If True, simulate operations without making real changes
        """
        self.storage_id = storage_id
        self.mock = mock

    @staticmethod
    def parse_volume_id(volid: str):
        """Split ``<storage>:<volname>`` into its parts."""
        storage_id, _, volname = volid.partition(':')
        if not storage_id or not volname:
            raise ValueError(f"unable to parse volume id '{volid}'")
        return storage_id, volname

    @abstractmethod
    def has_feature(self, feature: str, volid: str, snapname: str = None) -> bool:
        """Check whether the volume supports a feature (e.g. 'snapshot')."""
        pass

    @abstractmethod
    def snapshot(self, volid: str, snapname: str):
        """Create a snapshot of the volume.

        Raises:
            ExternalCommandError: If the storage command fails
        """
        pass

    @abstractmethod
    def delete_snapshot(self, volid: str, snapname: str):
        """Delete a snapshot of the volume."""
        pass

    @abstractmethod
    def rollback_possible(self, volid: str, snapname: str) -> bool:
        """Check whether the volume can be rolled back to the snapshot now."""
        pass

    @abstractmethod
    def rollback(self, volid: str, snapname: str):
        """Roll the volume back to the snapshot."""
        pass
