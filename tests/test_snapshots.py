"""Tests for snapshot create/delete/rollback."""
import pytest

from ctconf.core.errors import (
    DuplicateNameError,
    ExternalCommandError,
    InconsistentError,
    InvalidValueError,
    LockedError,
    LockTimeoutError,
    NotFoundError,
    UnsupportedError,
)
from ctconf.core.snapshot_manager import SnapshotEngine
from ctconf.models.container import LockToken, SnapshotConfig, SnapshotState


@pytest.fixture
def engine(store, fake_storage, fake_runtime, settings):
    return SnapshotEngine(store=store, storage=fake_storage, runtime=fake_runtime, settings=settings)


def set_lock(store, vmid, token):
    conf = store.load(vmid)
    conf.lock = token
    store.write(vmid, conf)


class TestCreate:
    """Test snapshot creation."""

    def test_create_commits_snapshot(self, engine, store, fake_storage, container):
        snap = engine.create(container, 's1', 'before upgrade')

        assert snap.state == SnapshotState.READY
        conf = store.load(container)
        assert conf.lock is None
        assert conf.parent == 's1'
        assert conf.snapshots['s1'].state == SnapshotState.READY
        assert conf.snapshots['s1'].comment == 'before upgrade'
        assert conf.snapshots['s1'].utsname == 'ct100'
        assert conf.snapshots['s1'].net == conf.net
        assert conf.snapshots['s1'].snaptime > 0
        assert fake_storage.calls == [('snapshot', 'tank:subvol-100-disk-0', 's1')]

    def test_snapshot_file_format(self, engine, store, container):
        engine.create(container, 's1')

        raw = store.config_file(container).read_text()
        assert "\n\nsnap.pve.snapname = s1\n" in raw
        assert "pve.lock" not in raw
        assert "snapstate" not in raw
        assert "pve.parent = s1\n" in raw

    def test_running_container_frozen_during_snapshot(self, engine, fake_runtime, fake_storage, container):
        fake_runtime.running.add(container)

        engine.create(container, 's1')

        assert fake_runtime.calls == [('freeze', container), ('unfreeze', container)]
        assert fake_storage.calls == [('snapshot', 'tank:subvol-100-disk-0', 's1')]

    def test_stopped_container_not_frozen(self, engine, fake_runtime, container):
        engine.create(container, 's1')
        assert fake_runtime.calls == []

    def test_locked_container(self, engine, store, fake_storage, container):
        set_lock(store, container, LockToken.BACKUP)

        with pytest.raises(LockedError) as exc_info:
            engine.create(container, 's1')

        assert exc_info.value.token == 'backup'
        assert store.load(container).snapshots == {}
        assert fake_storage.calls == []

    def test_duplicate_name(self, engine, container):
        engine.create(container, 's1')

        with pytest.raises(DuplicateNameError):
            engine.create(container, 's1')

    def test_unsupported_storage(self, engine, store, fake_storage, container):
        fake_storage.snapshot_capable = False

        with pytest.raises(UnsupportedError):
            engine.create(container, 's1')

        conf = store.load(container)
        assert conf.lock is None
        assert conf.snapshots == {}

    def test_invalid_name(self, engine, container):
        with pytest.raises(InvalidValueError):
            engine.create(container, 'bad name')

    def test_storage_failure_cleans_up(self, engine, store, fake_storage, fake_runtime, container):
        """A failed storage snapshot removes the entry and the lock, then re-raises."""
        fake_runtime.running.add(container)
        fake_storage.fail.add('snapshot')

        with pytest.raises(ExternalCommandError):
            engine.create(container, 's1')

        conf = store.load(container)
        assert conf.lock is None
        assert 's1' not in conf.snapshots
        assert conf.parent is None
        assert ('unfreeze', container) in fake_runtime.calls
        assert ('delete_snapshot', 'tank:subvol-100-disk-0', 's1') in fake_storage.calls

    def test_cleanup_survives_failing_delete(self, engine, store, fake_storage, container):
        fake_storage.fail.update({'snapshot', 'delete_snapshot'})

        with pytest.raises(ExternalCommandError) as exc_info:
            engine.create(container, 's1')

        assert "snapshot failed" in str(exc_info.value)
        conf = store.load(container)
        assert conf.lock is None
        assert conf.snapshots == {}

    def test_commit_detects_lost_lock(self, engine, store, fake_storage, container):
        """Commit re-verifies the token written during prepare."""
        original_snapshot = fake_storage.snapshot

        def snapshot_and_unlock(volid, snapname):
            original_snapshot(volid, snapname)
            set_lock(store, container, None)

        fake_storage.snapshot = snapshot_and_unlock

        with pytest.raises(InconsistentError, match="missing snapshot lock"):
            engine.create(container, 's1')

        assert 's1' not in store.load(container).snapshots

    def test_list_oldest_first(self, engine, store, container):
        conf = store.load(container)
        conf.snapshots['b'] = SnapshotConfig(name='b', snaptime=200)
        conf.snapshots['a'] = SnapshotConfig(name='a', snaptime=100)
        store.write(container, conf)

        assert [snap.name for snap in engine.list(container)] == ['a', 'b']


class TestDelete:
    """Test snapshot deletion."""

    def test_create_then_delete(self, engine, store, container):
        engine.create(container, 's1')
        engine.delete(container, 's1')

        conf = store.load(container)
        assert conf.lock is None
        assert 's1' not in conf.snapshots
        assert conf.parent is None

    def test_delete_current_parent_reparents(self, engine, store, container):
        engine.create(container, 's1')
        engine.create(container, 's2')
        assert store.load(container).snapshots['s2'].parent == 's1'

        engine.delete(container, 's2')

        conf = store.load(container)
        assert conf.parent == 's1'
        assert list(conf.snapshots) == ['s1']

    def test_delete_reparents_children(self, engine, store, container):
        engine.create(container, 's1')
        engine.create(container, 's2')

        engine.delete(container, 's1')

        conf = store.load(container)
        assert conf.parent == 's2'
        assert conf.snapshots['s2'].parent is None

    def test_delete_missing(self, engine, container):
        with pytest.raises(NotFoundError):
            engine.delete(container, 'nope')

    def test_delete_while_locked(self, engine, store, container):
        engine.create(container, 's1')
        set_lock(store, container, LockToken.ROLLBACK)

        with pytest.raises(LockedError):
            engine.delete(container, 's1')
        assert store.load(container).snapshots['s1'].state == SnapshotState.READY

    def test_storage_failure_leaves_deleting_state(self, engine, store, fake_storage, container):
        engine.create(container, 's1')
        fake_storage.fail.add('delete_snapshot')

        with pytest.raises(ExternalCommandError):
            engine.delete(container, 's1')

        conf = store.load(container)
        assert conf.snapshots['s1'].state == SnapshotState.DELETING
        assert conf.parent == 's1'

    def test_forced_delete_removes_entry(self, engine, store, fake_storage, container):
        engine.create(container, 's1')
        set_lock(store, container, LockToken.BACKUP)
        fake_storage.fail.add('delete_snapshot')

        with pytest.raises(ExternalCommandError):
            engine.delete(container, 's1', force=True)

        conf = store.load(container)
        assert 's1' not in conf.snapshots
        assert conf.parent is None
        assert conf.lock == LockToken.BACKUP


class TestRollback:
    """Test rollback to a snapshot."""

    def test_rollback_restores_options(self, engine, store, fake_storage, container):
        engine.create(container, 's1')
        conf = store.load(container)
        conf.utsname = 'changed'
        conf.memory_limit = 2048 * 1024 * 1024
        conf.description = 'keep me'
        store.write(container, conf)

        engine.rollback(container, 's1')

        conf = store.load(container)
        assert conf.utsname == 'ct100'
        assert conf.memory_limit == 512 * 1024 * 1024
        assert conf.description == 'keep me'
        assert conf.parent == 's1'
        assert conf.lock is None
        assert 's1' in conf.snapshots
        assert ('rollback', 'tank:subvol-100-disk-0', 's1') in fake_storage.calls

    def test_rollback_stops_running_container(self, engine, fake_runtime, container):
        engine.create(container, 's1')
        fake_runtime.running.add(container)

        engine.rollback(container, 's1')

        assert ('stop', container, True) in fake_runtime.calls

    def test_rollback_fails_if_still_running(self, engine, store, fake_runtime, fake_storage, container):
        engine.create(container, 's1')
        fake_runtime.running.add(container)
        fake_runtime.keep_running = True

        with pytest.raises(InconsistentError, match="running"):
            engine.rollback(container, 's1')

        assert store.load(container).lock is None
        assert not any(call[0] == 'rollback' for call in fake_storage.calls)

    def test_storage_failure_still_unlocks(self, engine, store, fake_storage, container):
        engine.create(container, 's1')
        fake_storage.fail.add('rollback')

        with pytest.raises(ExternalCommandError):
            engine.rollback(container, 's1')

        assert store.load(container).lock is None

    def test_unlock_timeout_keeps_storage_error(self, engine, store, fake_storage, container, monkeypatch):
        """A lock timeout while unlocking is raised chained to the storage failure."""
        engine.create(container, 's1')

        def failing_rollback(volid, snapname):
            def lock_timeout(vmid, timeout=None):
                raise LockTimeoutError("can't lock file - got timeout", vmid=vmid)

            monkeypatch.setattr(store, 'locked', lock_timeout)
            raise ExternalCommandError(['zfs', 'rollback'], returncode=1, stderr="dataset is busy")

        monkeypatch.setattr(fake_storage, 'rollback', failing_rollback)

        with pytest.raises(LockTimeoutError) as exc_info:
            engine.rollback(container, 's1')

        assert isinstance(exc_info.value.__cause__, ExternalCommandError)
        assert store.load(container).lock == LockToken.ROLLBACK

    def test_rollback_not_possible(self, engine, fake_storage, container):
        engine.create(container, 's1')
        fake_storage.can_rollback = False

        with pytest.raises(UnsupportedError):
            engine.rollback(container, 's1')

    def test_rollback_missing_snapshot(self, engine, container):
        with pytest.raises(NotFoundError):
            engine.rollback(container, 'nope')

    def test_rollback_to_incomplete_snapshot(self, engine, store, container):
        conf = store.load(container)
        conf.snapshots['half'] = SnapshotConfig(name='half', snaptime=1, state=SnapshotState.PREPARING)
        store.write(container, conf)

        with pytest.raises(InconsistentError, match="incomplete"):
            engine.rollback(container, 'half')

    def test_rollback_while_locked(self, engine, store, container):
        engine.create(container, 's1')
        set_lock(store, container, LockToken.BACKUP)

        with pytest.raises(LockedError):
            engine.rollback(container, 's1')
        assert store.load(container).lock == LockToken.BACKUP
