"""Container snapshots: create, delete and rollback.

Snapshot create/delete involve several non-atomic steps and the storage part
can take a long time, so the container lock is only held around config
updates. Between those phases the persisted ``lock`` token and the per-snapshot
``state`` are what keep other operations out, and every phase re-checks them
after taking the lock again.
"""
import time
from typing import List, Optional

from ctconf.config.keys import SNAPNAME_KEY, VALID_KEYS, parse_value
from ctconf.config.store import ConfigStore
from ctconf.core.config import CtconfConfig, get_config
from ctconf.core.errors import (
    CtconfError,
    DuplicateNameError,
    InconsistentError,
    LockedError,
    LockError,
    NotFoundError,
    UnsupportedError,
)
from ctconf.core.logger import get_logger
from ctconf.models.container import (
    Config,
    LockToken,
    SnapshotConfig,
    SnapshotState,
    copy_options,
)
from ctconf.services.lxc.runtime import LxcRuntime
from ctconf.services.storage import StorageBackend, StorageRegistry

logger = get_logger(__name__)


def check_lock(conf: Config, vmid: int, operation: str):
    """Fail if another long-running operation holds the container."""
    if conf.lock:
        raise LockedError(
            f"container is locked ({conf.lock.value})",
            token=conf.lock.value, vmid=vmid, operation=operation,
        )


class SnapshotEngine:
    """Manage config-level snapshots backed by storage snapshots."""

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        storage: Optional[StorageBackend] = None,
        runtime: Optional[LxcRuntime] = None,
        settings: Optional[CtconfConfig] = None,
        mock: bool = False,
    ):
        self.settings = settings or (store.settings if store else get_config())
        self.store = store or ConfigStore(self.settings)
        self.storage = storage or StorageRegistry.from_settings(self.settings, mock=mock)
        self.runtime = runtime or LxcRuntime(mock=mock, timeout=self.settings.command_timeout)

    def list(self, vmid: int) -> List[SnapshotConfig]:
        """Snapshots of a container, oldest first."""
        conf = self.store.load(vmid)
        return sorted(conf.snapshots.values(), key=lambda snap: (snap.snaptime or 0, snap.name))

    # Create

    def _prepare(self, vmid: int, name: str, comment: Optional[str]) -> SnapshotConfig:
        with self.store.locked(vmid):
            conf = self.store.load(vmid)
            check_lock(conf, vmid, "snapshot")

            if name in conf.snapshots:
                raise DuplicateNameError(
                    f"snapshot name '{name}' already used", vmid=vmid, operation="snapshot"
                )
            if not self.storage.has_feature('snapshot', conf.volid):
                raise UnsupportedError(
                    "snapshot feature is not available", vmid=vmid, operation="snapshot"
                )

            snap = SnapshotConfig(
                name=name,
                snaptime=int(time.time()),
                comment=comment or None,
                state=SnapshotState.PREPARING,
            )
            copy_options(conf, snap)
            conf.snapshots[name] = snap
            conf.lock = LockToken.SNAPSHOT
            self.store.write(vmid, conf)

        logger.debug(f"CT {vmid}: prepared snapshot '{name}'")
        return snap

    def _take_volume_snapshot(self, vmid: int, snap: SnapshotConfig):
        running = self.runtime.is_running(vmid)
        if running:
            self.runtime.freeze(vmid)
        try:
            self.storage.snapshot(snap.volid, snap.name)
        finally:
            if running:
                self.runtime.unfreeze(vmid)

    def _commit(self, vmid: int, name: str) -> SnapshotConfig:
        with self.store.locked(vmid):
            conf = self.store.load(vmid)

            if conf.lock != LockToken.SNAPSHOT:
                raise InconsistentError("missing snapshot lock", vmid=vmid, operation="snapshot")
            snap = conf.snapshots.get(name)
            if snap is None:
                raise InconsistentError(f"snapshot '{name}' does not exist", vmid=vmid, operation="snapshot")
            if snap.state != SnapshotState.PREPARING:
                raise InconsistentError("wrong snapshot state", vmid=vmid, operation="snapshot")

            snap.state = SnapshotState.READY
            conf.lock = None
            conf.parent = name
            self.store.write(vmid, conf)

        return snap

    def create(self, vmid: int, name: str, comment: Optional[str] = None) -> SnapshotConfig:
        """Snapshot the container config and its root volume.

        Args:
            vmid: Container ID
            name: Snapshot name (word characters only)
            comment: Optional free text, may span several lines

        Returns:
            The committed snapshot entry

        Raises:
            LockedError: If another operation holds the container
            DuplicateNameError: If the name is taken
            UnsupportedError: If the storage cannot snapshot the volume
            InconsistentError: If the prepared state changed before commit
        """
        name = parse_value(VALID_KEYS[SNAPNAME_KEY], name, key="snapname")
        snap = self._prepare(vmid, name, comment)

        try:
            self._take_volume_snapshot(vmid, snap)
            snap = self._commit(vmid, name)
        except Exception as e:
            logger.error(f"CT {vmid}: snapshot '{name}' failed: {e}")
            self._abort_create(vmid, name)
            raise

        logger.info(f"CT {vmid}: created snapshot '{name}'")
        return snap

    def _abort_create(self, vmid: int, name: str):
        """Remove a half-created snapshot and release the snapshot token."""
        try:
            self.delete(vmid, name, force=True)
        except Exception as e:
            logger.warning(f"CT {vmid}: cleanup of snapshot '{name}' reported: {e}")

        try:
            with self.store.locked(vmid):
                conf = self.store.load(vmid)
                changed = False
                if conf.snapshots.pop(name, None) is not None:
                    changed = True
                if conf.lock == LockToken.SNAPSHOT:
                    conf.lock = None
                    changed = True
                if changed:
                    self.store.write(vmid, conf)
        except Exception as e:
            logger.warning(f"CT {vmid}: unable to release snapshot lock after failed create: {e}")

    # Delete

    def delete(self, vmid: int, name: str, force: bool = False):
        """Delete a snapshot and its storage counterpart.

        Args:
            vmid: Container ID
            name: Snapshot name
            force: Ignore a foreign lock token and remove the entry even if the
                storage snapshot cannot be deleted

        Raises:
            LockedError: If another operation holds the container and force is unset
            NotFoundError: If the snapshot does not exist
            ExternalCommandError: If the storage deletion fails (after removing
                the entry when forced)
        """
        with self.store.locked(vmid):
            conf = self.store.load(vmid)
            if conf.lock and conf.lock != LockToken.DELETE and not force:
                check_lock(conf, vmid, "delsnapshot")

            snap = conf.snapshots.get(name)
            if snap is None:
                raise NotFoundError(f"snapshot '{name}' does not exist", vmid=vmid, operation="delsnapshot")

            snap.state = SnapshotState.DELETING
            self.store.write(vmid, conf)

        volid = snap.volid or conf.volid
        storage_error = None
        try:
            self.storage.delete_snapshot(volid, name)
        except Exception as e:
            if not force:
                logger.error(f"CT {vmid}: can't delete snapshot '{name}': {e}")
                raise
            logger.warning(f"CT {vmid}: storage snapshot '{name}' not deleted, removing entry anyway: {e}")
            storage_error = e

        with self.store.locked(vmid):
            conf = self.store.load(vmid)
            snap = conf.snapshots.pop(name, None)
            if snap is not None:
                if conf.parent == name:
                    conf.parent = snap.parent
                for other in conf.snapshots.values():
                    if other.parent == name:
                        other.parent = snap.parent
                self.store.write(vmid, conf)

        if storage_error is not None:
            raise storage_error

        logger.info(f"CT {vmid}: deleted snapshot '{name}'")

    # Rollback

    def rollback(self, vmid: int, name: str):
        """Restore the container config and volume to a snapshot.

        The container is stopped first. The rollback token is always cleared
        afterwards, also when the storage rollback fails.

        Raises:
            NotFoundError: If the snapshot does not exist
            InconsistentError: If the snapshot is incomplete or the container
                keeps running
            UnsupportedError: If the storage cannot roll back to this snapshot
            LockedError: If another operation holds the container
        """
        conf = self.store.load(vmid)
        snap = conf.snapshots.get(name)
        if snap is None:
            raise NotFoundError(f"snapshot '{name}' does not exist", vmid=vmid, operation="rollback")
        if snap.state != SnapshotState.READY:
            raise InconsistentError(
                f"unable to rollback to incomplete snapshot (snapstate = {snap.state.value})",
                vmid=vmid, operation="rollback",
            )

        volid = snap.volid or conf.volid
        if not self.storage.rollback_possible(volid, name):
            raise UnsupportedError(
                f"rollback to snapshot '{name}' is not possible", vmid=vmid, operation="rollback"
            )

        with self.store.locked(vmid):
            conf = self.store.load(vmid)
            snap = conf.snapshots.get(name)
            if snap is None:
                raise NotFoundError(f"snapshot '{name}' does not exist", vmid=vmid, operation="rollback")
            if snap.state != SnapshotState.READY:
                raise InconsistentError("snapshot changed state", vmid=vmid, operation="rollback")
            check_lock(conf, vmid, "rollback")

            if self.runtime.is_running(vmid):
                try:
                    self.runtime.stop(vmid, graceful=True, timeout=self.settings.stop_timeout)
                except CtconfError as e:
                    logger.warning(f"CT {vmid}: stop before rollback failed: {e}")
                if self.runtime.is_running(vmid):
                    raise InconsistentError(
                        "unable to rollback: container is running", vmid=vmid, operation="rollback"
                    )

            conf.lock = LockToken.ROLLBACK
            copy_options(snap, conf)
            conf.parent = name
            self.store.write(vmid, conf)

        try:
            self.storage.rollback(volid, name)
        except Exception as e:
            self._unlock_rollback(vmid, cause=e)
            raise
        self._unlock_rollback(vmid)

        logger.info(f"CT {vmid}: rolled back to snapshot '{name}'")

    def _unlock_rollback(self, vmid: int, cause: Optional[BaseException] = None):
        """Clear the rollback lock token.

        A lock failure after a failed storage rollback is raised chained to
        that storage error.
        """
        try:
            with self.store.locked(vmid, timeout=self.settings.rollback_unlock_timeout):
                conf = self.store.load(vmid)
                conf.lock = None
                self.store.write(vmid, conf)
        except LockError as e:
            logger.error(f"CT {vmid}: unable to clear rollback lock: {e}")
            if cause is None:
                raise
            raise e from cause
